"""
Serverless entry point for Review Remind.

The serverless filesystem is read-only outside /tmp, so set
DATABASE_PATH=/tmp/reviewremind.db there. That database is lost on cold
starts; use a persistent host (gunicorn, see gunicorn.conf.py) for real
tenants.
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import app, init_db  # noqa: E402

with app.app_context():
    init_db()

"""Flask extension instances, bound to the app in app.py."""

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_login import LoginManager
from flask_wtf.csrf import CSRFProtect

csrf = CSRFProtect()
login_manager = LoginManager()
limiter = Limiter(
    key_func=get_remote_address,
    strategy='fixed-window',
    default_limits=["1000 per day", "200 per hour"],
)

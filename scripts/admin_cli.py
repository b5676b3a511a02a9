#!/usr/bin/env python3
"""Admin maintenance CLI for slugs, onboarding state and database backups."""

from __future__ import annotations

import argparse
import gzip
import os
import sqlite3
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import boto3

from config import Config


def db_connect(db_path: Optional[str] = None):
    conn = sqlite3.connect(db_path or Config.DATABASE_PATH)
    conn.execute('PRAGMA foreign_keys = ON')
    return conn


def _user_id_for_email(cur, email: str) -> Optional[str]:
    cur.execute("SELECT id FROM users WHERE email = ?", (email.strip().lower(),))
    row = cur.fetchone()
    return row[0] if row else None


def reserve_slug(slug: str, db_path: Optional[str] = None):
    conn = db_connect(db_path); cur = conn.cursor()
    cur.execute("SELECT auth_id FROM myusers WHERE name = ?", (slug,))
    if cur.fetchone():
        conn.close()
        print("slug_in_use")
        return False
    cur.execute("INSERT OR IGNORE INTO reserved_slugs (slug) VALUES (?)", (slug,))
    conn.commit(); changed = cur.rowcount; conn.close()
    print(f"reserved_rows={changed}")
    return True


def release_slug(slug: str, db_path: Optional[str] = None):
    conn = db_connect(db_path); cur = conn.cursor()
    cur.execute("DELETE FROM reserved_slugs WHERE slug = ?", (slug,))
    conn.commit(); changed = cur.rowcount; conn.close()
    print(f"released_rows={changed}")
    return changed


def reset_onboarding(email: str, keep_sign_in: bool = True, db_path: Optional[str] = None):
    """Drop the user's onboarding actions so the step-flow starts again."""
    conn = db_connect(db_path); cur = conn.cursor()
    user_id = _user_id_for_email(cur, email)
    if not user_id:
        conn.close()
        print("user_not_found")
        return None
    if keep_sign_in:
        cur.execute("DELETE FROM user_actions WHERE user_id = ? AND action <> 'signed_in'", (user_id,))
    else:
        cur.execute("DELETE FROM user_actions WHERE user_id = ?", (user_id,))
    conn.commit(); changed = cur.rowcount; conn.close()
    print(f"deleted_actions={changed}")
    return changed


def list_actions(email: str, db_path: Optional[str] = None):
    conn = db_connect(db_path); cur = conn.cursor()
    user_id = _user_id_for_email(cur, email)
    if not user_id:
        conn.close()
        print("user_not_found")
        return []
    cur.execute(
        "SELECT action, created_at FROM user_actions WHERE user_id = ? ORDER BY created_at, id",
        (user_id,),
    )
    rows = cur.fetchall(); conn.close()
    for action, created_at in rows:
        print(f"{created_at}\t{action}")
    return rows


def backup_db(backup_dir: str = 'backups', bucket: Optional[str] = None, keep: int = 14,
              db_path: Optional[str] = None):
    """Gzipped online snapshot; only the newest `keep` archives stay on disk."""
    target = Path(backup_dir); target.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%SZ')
    snapshot = target / f"reviewremind_{stamp}.sqlite3"

    src = db_connect(db_path); dst = sqlite3.connect(str(snapshot))
    src.backup(dst)
    dst.close(); src.close()
    archive = snapshot.with_name(snapshot.name + '.gz')
    archive.write_bytes(gzip.compress(snapshot.read_bytes()))
    snapshot.unlink()

    stale = sorted(target.glob('reviewremind_*.sqlite3.gz'), reverse=True)[max(keep, 1):]
    for old in stale:
        old.unlink()

    if bucket:
        s3 = boto3.client('s3', region_name=Config.AWS_REGION, endpoint_url=Config.S3_ENDPOINT_URL)
        s3.upload_file(str(archive), bucket, f"db/{archive.name}")
    print(f"backup_created={archive} pruned={len(stale)}")
    return archive


def main(argv=None):
    parser = argparse.ArgumentParser(description='Review Remind admin utility')
    parser.add_argument('--db', help='SQLite database path (defaults to DATABASE_PATH)')
    sub = parser.add_subparsers(dest='cmd', required=True)

    p1 = sub.add_parser('reserve-slug')
    p1.add_argument('--slug', required=True)

    p2 = sub.add_parser('release-slug')
    p2.add_argument('--slug', required=True)

    p3 = sub.add_parser('reset-onboarding')
    p3.add_argument('--email', required=True)
    p3.add_argument('--include-sign-in', action='store_true')

    p4 = sub.add_parser('list-actions')
    p4.add_argument('--email', required=True)

    p5 = sub.add_parser('backup-db')
    p5.add_argument('--dir', default=os.environ.get('BACKUP_DIR', 'backups'))
    p5.add_argument('--bucket', default=os.environ.get('S3_BACKUP_BUCKET'))
    p5.add_argument('--keep', type=int, default=14)

    args = parser.parse_args(argv)

    if args.cmd == 'reserve-slug':
        reserve_slug(args.slug.strip().lower(), db_path=args.db)
    elif args.cmd == 'release-slug':
        release_slug(args.slug.strip().lower(), db_path=args.db)
    elif args.cmd == 'reset-onboarding':
        reset_onboarding(args.email, keep_sign_in=not args.include_sign_in, db_path=args.db)
    elif args.cmd == 'list-actions':
        list_actions(args.email, db_path=args.db)
    elif args.cmd == 'backup-db':
        backup_db(args.dir, bucket=args.bucket, keep=args.keep, db_path=args.db)
    return 0


if __name__ == '__main__':
    sys.exit(main())

"""Company logo storage on an S3-compatible bucket with signed download URLs."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import boto3
from flask import current_app

logger = logging.getLogger(__name__)

UPLOAD_URL_TTL = 60 * 60
DISPLAY_URL_TTL = 10 * 60
ALLOWED_LOGO_TYPES = {
    'image/png': 'png',
    'image/jpeg': 'jpg',
    'image/webp': 'webp',
    'image/gif': 'gif',
    'image/svg+xml': 'svg',
}


def _client():
    return boto3.client(
        's3',
        region_name=current_app.config.get('AWS_REGION'),
        endpoint_url=current_app.config.get('S3_ENDPOINT_URL'),
    )


def logo_extension(filename: str, content_type: Optional[str]) -> Optional[str]:
    if content_type in ALLOWED_LOGO_TYPES:
        return ALLOWED_LOGO_TYPES[content_type]
    ext = (filename or '').rsplit('.', 1)[-1].lower() if '.' in (filename or '') else ''
    if ext == 'jpeg':
        ext = 'jpg'
    return ext if ext in ALLOWED_LOGO_TYPES.values() else None


def logo_path(user_id: str, ext: str) -> str:
    return f"{user_id}/logo.{ext}"


def upload_logo(path: str, data: bytes, content_type: str) -> None:
    """Write the object, replacing any existing logo at the same key."""
    bucket = current_app.config['LOGO_BUCKET']
    _client().put_object(Bucket=bucket, Key=path, Body=data, ContentType=content_type)
    logger.info("Logo uploaded: bucket=%s key=%s bytes=%s", bucket, path, len(data))


def signed_url(path: str, expires_in: int) -> str:
    return _client().generate_presigned_url(
        'get_object',
        Params={'Bucket': current_app.config['LOGO_BUCKET'], 'Key': path},
        ExpiresIn=expires_in,
    )


def signed_url_payload(path: Optional[str], expires_in: int = DISPLAY_URL_TTL) -> dict:
    if not path:
        return {'url': None, 'expiresIn': 0, 'expiresAt': None}
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    return {
        'url': signed_url(path, expires_in),
        'expiresIn': expires_in,
        'expiresAt': expires_at.isoformat(),
    }

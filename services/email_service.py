"""Centralized transactional email delivery with retry logic."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from email.utils import parseaddr
from typing import Optional
from urllib.parse import urlencode

from flask import current_app, render_template
from flask_mail import Mail, Message

mail = Mail()
logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = 'We loved helping you! Please leave a review.'
DEFAULT_BODY = 'We hope you enjoyed our service! pease leave us a review.'
CUSTOMER_PLACEHOLDER = re.compile(r'\[customer\]', re.IGNORECASE)


@dataclass
class EmailPayload:
    to_email: str
    subject: str
    template_name: str
    context: dict
    reply_to: Optional[str] = None
    sender_name: Optional[str] = None


def init_mail(app):
    mail.init_app(app)


def is_valid_recipient(email: str) -> bool:
    _, parsed = parseaddr(email or "")
    return bool(parsed and "@" in parsed)


def send_templated_email(payload: EmailPayload, *, retries: Optional[int] = None, backoff_s: float = 1.5) -> bool:
    if not is_valid_recipient(payload.to_email):
        logger.warning("Skipping email; invalid recipient: %s", payload.to_email)
        return False

    if retries is None:
        retries = current_app.config.get('MAIL_MAX_RETRIES', 3)

    html_body = render_template(f"emails/{payload.template_name}.html", **payload.context)
    text_body = render_template(f"emails/{payload.template_name}.txt", **payload.context)

    sender = current_app.config.get('MAIL_DEFAULT_SENDER')
    if payload.sender_name and sender:
        sender = (payload.sender_name, sender)

    msg = Message(
        subject=payload.subject,
        recipients=[payload.to_email],
        html=html_body,
        body=text_body,
        sender=sender,
        reply_to=payload.reply_to,
    )

    for attempt in range(1, max(1, retries) + 1):
        try:
            mail.send(msg)
            logger.info("Email sent: subject=%s to=%s", payload.subject, payload.to_email)
            return True
        except Exception as exc:  # noqa: BLE001
            logger.exception("Email send failed on attempt %s: %s", attempt, exc)
            if attempt < retries:
                time.sleep(backoff_s * attempt)

    return False


def personalise(template: str, customer_name: str) -> str:
    """Replace every ``[customer]`` placeholder, in any letter case."""
    return CUSTOMER_PLACEHOLDER.sub(lambda _m: customer_name, template or '')


def review_link(client_id: str, user_id: str, review_type: str) -> str:
    base_url = current_app.config.get('BASE_URL', '').rstrip('/')
    query = urlencode({'type': review_type, 'userID': user_id})
    return f"{base_url}/submit-review/{client_id}?{query}"


def build_review_request(
    *,
    client_id: str,
    user_id: str,
    recipient_name: str,
    sender_name: str,
    subject_template: Optional[str],
    body_template: Optional[str],
) -> dict:
    """Subject, plain text and template context for one review-request email."""
    subject = personalise(subject_template or DEFAULT_SUBJECT, recipient_name)
    body = personalise(body_template or DEFAULT_BODY, recipient_name)
    text = f"Hi {recipient_name},\n\n{body}\n\nBest regards,\n{sender_name}"
    return {
        'subject': subject,
        'text': text,
        'context': {
            'recipient_name': recipient_name,
            'sender_name': sender_name,
            'body': body,
            'text': text,
            'good_url': review_link(client_id, user_id, 'good'),
            'bad_url': review_link(client_id, user_id, 'bad'),
        },
    }


def send_review_request_email(
    to_email: str,
    *,
    client_id: str,
    user_id: str,
    recipient_name: str,
    sender_name: str,
    subject_template: Optional[str] = None,
    body_template: Optional[str] = None,
    reply_to: Optional[str] = None,
) -> bool:
    request_email = build_review_request(
        client_id=client_id,
        user_id=user_id,
        recipient_name=recipient_name,
        sender_name=sender_name,
        subject_template=subject_template,
        body_template=body_template,
    )
    return send_templated_email(
        EmailPayload(
            to_email=to_email,
            subject=request_email['subject'],
            template_name="review_request",
            context=request_email['context'],
            reply_to=reply_to,
            sender_name=sender_name,
        )
    )

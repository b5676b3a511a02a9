"""JSON API blueprints."""

from flask import request
from flask_login import current_user

from errors import ApiError


def json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def request_value(name, body=None):
    """Look a field up in the JSON body first, then the query string."""
    body = json_body() if body is None else body
    value = body.get(name)
    if value is None:
        value = request.args.get(name)
    return value


def session_user_id(requested=None):
    """The signed-in user's id. An explicit userId for another tenant is refused."""
    if requested and str(requested) != str(current_user.id):
        raise ApiError(403, 'FORBIDDEN')
    return current_user.id

"""
Bearer token protection for the status API.
"""

from functools import wraps

from flask import current_app, jsonify, request
from werkzeug.security import generate_password_hash, check_password_hash


def hash_token(token: str) -> str:
    """
    Hash an API token using werkzeug's pbkdf2:sha256.

    Args:
        token: Plain text token

    Returns:
        Hashed token string (value for STATUS_API_TOKEN_HASH)
    """
    return generate_password_hash(token, method='pbkdf2:sha256')


def verify_token(token_hash: str, token: str) -> bool:
    return check_password_hash(token_hash, token)


def _bearer_token():
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


def token_required(view):
    """
    Require a matching bearer token when STATUS_API_TOKEN_HASH is configured.

    Without a configured hash the API is open (bind it to localhost).
    """
    @wraps(view)
    def wrapped(*args, **kwargs):
        token_hash = current_app.config.get('STATUS_API_TOKEN_HASH')
        if token_hash:
            token = _bearer_token()
            if token is None or not verify_token(token_hash, token):
                return jsonify({'error': 'Unauthorized'}), 401
        return view(*args, **kwargs)

    return wrapped

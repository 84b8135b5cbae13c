import logging

from flask import current_app, g, request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .errors import UnauthorizedError

logger = logging.getLogger(__name__)

TOKEN_SALT = 'impactlens-auth'
MUTATING_METHODS = frozenset({'POST', 'PUT', 'PATCH', 'DELETE'})


def _serializer(secret_key=None):
    return URLSafeTimedSerializer(secret_key or current_app.config['SECRET_KEY'], salt=TOKEN_SALT)


def issue_token(user_id, secret_key=None):
    """Mint a bearer token carrying ``user_id``."""
    return _serializer(secret_key).dumps({'uid': user_id})


def verify_token(token, secret_key=None, max_age=None):
    """Return the user id inside a valid token, or None."""
    if max_age is None:
        max_age = current_app.config.get('TOKEN_MAX_AGE_SECONDS')
    try:
        payload = _serializer(secret_key).loads(token, max_age=max_age)
    except SignatureExpired:
        logger.info("Rejected expired bearer token")
        return None
    except BadSignature:
        logger.info("Rejected bearer token with invalid signature")
        return None
    uid = payload.get('uid') if isinstance(payload, dict) else None
    return uid or None


def bearer_token():
    header = request.headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        return None
    return header[len('Bearer '):].strip() or None


def authenticate_request():
    """
    Resolve the caller for every API request. Writes need an identity unless
    ALLOW_ANONYMOUS_WRITES is set; reads never fail on a bad or missing token.
    """
    token = bearer_token()
    g.user_id = verify_token(token) if token else None

    if request.method in MUTATING_METHODS and g.user_id is None:
        if not current_app.config.get('ALLOW_ANONYMOUS_WRITES'):
            raise UnauthorizedError()

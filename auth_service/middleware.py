"""Bearer-token authentication for protected routes."""

import logging
from functools import wraps

from flask import current_app, g, request

from .errors import ExpiredToken, Forbidden, InvalidToken, Unauthorized
from .tokens import ACCESS

logger = logging.getLogger(__name__)


def bearer_token():
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    return header[len("Bearer "):].strip() or None


def authenticate(token, issuer, sessions):
    """
    Validate an access token and return ``(claims, session)``.

    The signature alone is not enough: the token must still belong to a
    live session, which is what makes logout and refresh rotation revoke
    tokens that have not expired yet.
    """
    if not token:
        logger.info("No token provided")
        raise Unauthorized("No token provided")

    try:
        claims = issuer.verify(token, ACCESS)
    except ExpiredToken:
        raise Unauthorized("Token expired", code="TOKEN_EXPIRED")
    except InvalidToken:
        raise Unauthorized("Invalid token")

    session = sessions.find_by_access_token(token, user_id=claims["user_id"])
    if not session:
        logger.info(f"Invalid session for user: {claims['user_id']}")
        raise Unauthorized("Invalid session")

    return claims, session


def auth_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        g.user, g.user_session = authenticate(
            bearer_token(),
            current_app.extensions["token_issuer"],
            current_app.extensions["session_store"],
        )
        return f(*args, **kwargs)

    return decorated


def admin_required(f):
    @wraps(f)
    @auth_required
    def decorated(*args, **kwargs):
        if g.user.get("role") != "admin":
            logger.error(f"User {g.user.get('user_id')} is not an admin")
            raise Forbidden("Admin access required")
        return f(*args, **kwargs)

    return decorated

"""
Identity for WebSocket connections.

Accounts and token issuance live outside this server. A client may pass an
HS256 JWT signed with SECRET_KEY as the `token` query parameter of /ws; its
`userId` (or `id`) claim becomes the connection's authenticated identity,
which is what lifetime stats are recorded against. Connections without a
valid token play as guests.
"""

import logging
from typing import Optional

import jwt

from config import config

logger = logging.getLogger(__name__)


def decode_token(token: str, secret: Optional[str] = None) -> dict:
    """
    Decode an identity token.

    Raises:
        jwt.ExpiredSignatureError: If the token has expired.
        jwt.InvalidTokenError: If the token is invalid for any reason.
    """
    return jwt.decode(token, secret or config.SECRET_KEY, algorithms=["HS256"])


def resolve_user_id(token: Optional[str], secret: Optional[str] = None) -> Optional[str]:
    """
    Get the account id carried by a token.

    Returns:
        The account id, or None for a missing, invalid or expired token, or
        when no secret is configured.
    """
    secret = secret or config.SECRET_KEY
    if not token or not secret:
        return None

    try:
        payload = decode_token(token, secret)
    except jwt.ExpiredSignatureError:
        logger.debug("WebSocket token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.debug(f"WebSocket token rejected: {e}")
        return None

    user_id = payload.get("userId") or payload.get("id")
    return str(user_id) if user_id is not None else None

"""Identity collaborator: JWT credentials for HTTP requests and socket handshakes.

Session management belongs to whichever auth provider fronts the app; the
realtime core only needs to turn a bearer credential into
``Identity(user_id, username)``. Tokens are HS256 JWTs with the user id in
``sub`` and the display name in ``username``.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from jose import JWTError, jwt
from pydantic import BaseModel

from bubbles.config import get_config
from bubbles.errors import AuthenticationError

logger = logging.getLogger(__name__)

# Browsers cannot set headers on a WebSocket handshake, so the web client
# smuggles the token in as a subprotocol: "Bearer.<token>".
SUBPROTOCOL_PREFIX = "Bearer."


class Identity(BaseModel):
    """The authenticated user behind a request or socket."""
    user_id: str
    username: str


def create_access_token(
    user_id: str,
    username: str,
    expires_minutes: Optional[int] = None,
) -> str:
    """Issue a signed access token for a user."""
    jwt_cfg = get_config().secrets.jwt
    minutes = expires_minutes if expires_minutes is not None else jwt_cfg.expire_minutes
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    claims = {"sub": user_id, "username": username, "exp": expire}
    return jwt.encode(claims, jwt_cfg.secret_key, algorithm=jwt_cfg.algorithm)


def resolve_credential(token: Optional[str]) -> Identity:
    """Resolve a bearer credential to an identity.

    Raises:
        AuthenticationError: Missing, malformed, expired or incomplete token.
    """
    if not token:
        raise AuthenticationError("Token required")

    jwt_cfg = get_config().secrets.jwt
    try:
        payload = jwt.decode(token, jwt_cfg.secret_key, algorithms=[jwt_cfg.algorithm])
    except JWTError as e:
        logger.warning(f"[Auth] Rejected token: {e}")
        raise AuthenticationError() from e

    user_id = payload.get("sub")
    username = payload.get("username")
    if not user_id or not username:
        raise AuthenticationError("Invalid token payload")
    return Identity(user_id=str(user_id), username=str(username))


def extract_bearer_token(
    authorization: Optional[str] = None,
    query_token: Optional[str] = None,
    subprotocols: Iterable[str] = (),
) -> Optional[str]:
    """Pick the credential out of whichever slot the client used.

    Order: explicit ``token`` query parameter, ``Authorization: Bearer``
    header, then a ``Bearer.<token>`` WebSocket subprotocol.
    """
    if query_token:
        return query_token
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    for proto in subprotocols:
        proto = proto.strip()
        if proto.startswith(SUBPROTOCOL_PREFIX) and len(proto) > len(SUBPROTOCOL_PREFIX):
            return proto[len(SUBPROTOCOL_PREFIX):]
    return None

"""Identity collaborator.

Resolves bearer credentials (HTTP header or socket handshake) to
``Identity(user_id, username)``. Tokens are HS256 JWTs issued by
``create_access_token``.
"""
from .dependencies import require_identity
from .service import (
    Identity,
    create_access_token,
    extract_bearer_token,
    resolve_credential,
)

__all__ = [
    "Identity",
    "create_access_token",
    "extract_bearer_token",
    "require_identity",
    "resolve_credential",
]

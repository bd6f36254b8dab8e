"""FastAPI dependencies for authenticated HTTP routes."""
from fastapi import Header, HTTPException

from bubbles.errors import AuthenticationError

from .service import Identity, extract_bearer_token, resolve_credential


async def require_identity(authorization: str = Header(default="")) -> Identity:
    """Resolve the ``Authorization: Bearer`` header to an identity (401 otherwise)."""
    try:
        return resolve_credential(extract_bearer_token(authorization=authorization))
    except AuthenticationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

"""FastAPI dependencies for authenticated REST routes."""
from typing import NoReturn, Optional

from fastapi import Header, HTTPException

from parley.errors import ChatError
from parley.store.schemas import User

from .service import get_auth_oracle

# Set by the authenticating gateway on REST calls and WebSocket upgrades.
IDENTITY_HEADER = "X-User-Id"


async def get_current_user(
    x_user_id: Optional[str] = Header(None, alias=IDENTITY_HEADER),
) -> User:
    """Resolve the caller from the gateway's identity header.

    Raises:
        HTTPException 401: Header missing or user unknown.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Access denied. No identity provided.")
    try:
        user = await get_auth_oracle().verify(x_user_id)
    except ChatError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid identity")
    return user


def raise_http(error: ChatError) -> NoReturn:
    """Translate a domain error into the matching HTTPException."""
    raise HTTPException(status_code=error.status_code, detail=error.message) from error

"""User directory router.

Endpoints:
    POST /users    - Register a user profile (the gateway owns credentials)
    GET  /users    - Users the caller can start a chat with
    GET  /users/me - The caller's own profile
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends

from parley.errors import ChatError
from parley.store.schemas import User, UserCreate
from parley.store.service import ChatStore

from .dependencies import get_current_user, raise_http

logger = logging.getLogger(__name__)

router = APIRouter(tags=["users"])


@router.post("/users", response_model=User, status_code=201)
async def register_user(request: UserCreate) -> User:
    """Register a user profile.

    Returns:
        The stored user. Its ``id`` is the value the gateway forwards as
        ``X-User-Id`` on REST calls and on the WebSocket upgrade.

    Raises:
        HTTPException 400: Username or email already taken.
    """
    try:
        user = await ChatStore.get_instance().create_user(
            request.username, email=request.email, avatar=request.avatar
        )
    except ChatError as e:
        raise_http(e)
    logger.info(f"Registered user {user.username}")
    return user


@router.get("/users", response_model=List[User])
async def list_users(
    search: Optional[str] = None,
    user: User = Depends(get_current_user),
) -> List[User]:
    """Every other registered user, optionally filtered by ``search``."""
    try:
        return await ChatStore.get_instance().list_users(exclude_id=user.id, search=search)
    except ChatError as e:
        raise_http(e)


@router.get("/users/me", response_model=User)
async def get_profile(user: User = Depends(get_current_user)) -> User:
    return user

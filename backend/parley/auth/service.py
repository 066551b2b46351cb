"""Authentication oracle interface.

Parley does not hash passwords or issue tokens. Whatever sits in front of
it (a reverse proxy, an API gateway, an SSO sidecar) authenticates the
caller; this module only turns the credential it forwards into a verified
user from the durable store.

Usage:
    from parley.auth import get_auth_oracle

    user = await get_auth_oracle().verify(credential)
    if user is None:
        ...  # unauthenticated
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

from parley.store.schemas import User
from parley.store.service import ChatStore

logger = logging.getLogger(__name__)


class AuthOracle(ABC):
    """Resolves a forwarded credential to a verified user."""

    @abstractmethod
    async def verify(self, credential: Optional[str]) -> Optional[User]:
        """Return the user the credential identifies, or None."""


class GatewayHeaderOracle(AuthOracle):
    """Trusts the user id forwarded by the authenticating gateway.

    The credential is the value of the ``X-User-Id`` header, on REST calls
    and on the WebSocket upgrade request. It is accepted only if a user
    with that id exists.
    """

    def __init__(self, store: Optional[ChatStore] = None) -> None:
        self._store = store

    @property
    def store(self) -> ChatStore:
        return self._store if self._store is not None else ChatStore.get_instance()

    async def verify(self, credential: Optional[str]) -> Optional[User]:
        if not credential:
            return None
        user = await self.store.get_user(credential.strip())
        if user is None:
            logger.warning("Rejected unknown user id from gateway: %s", credential)
        return user


_oracle: Optional[AuthOracle] = None


def get_auth_oracle() -> AuthOracle:
    """Return the active oracle, defaulting to :class:`GatewayHeaderOracle`."""
    global _oracle
    if _oracle is None:
        _oracle = GatewayHeaderOracle()
    return _oracle


def set_auth_oracle(oracle: Optional[AuthOracle]) -> None:
    """Install an oracle (None restores the default on next use)."""
    global _oracle
    _oracle = oracle

"""Authentication module: verified identities forwarded by the gateway.

- AuthOracle: interface turning a forwarded credential into a User
- GatewayHeaderOracle: trusts X-User-Id after checking the user exists
- get_current_user: FastAPI dependency for REST routes
"""

from .dependencies import get_current_user, raise_http
from .service import AuthOracle, GatewayHeaderOracle, get_auth_oracle, set_auth_oracle

__all__ = [
    "AuthOracle",
    "GatewayHeaderOracle",
    "get_auth_oracle",
    "get_current_user",
    "raise_http",
    "set_auth_oracle",
]

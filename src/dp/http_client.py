"""HTTP client construction for the remote backend.

One ``httpx.AsyncClient`` is created per backend instance so connection
pooling survives across renders. Reconfiguration disposes the backend and
with it the client.
"""

from __future__ import annotations

import base64
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from dp.config import Configuration, RemoteAuthConfig

__all__ = ["auth_headers", "create_client"]

USER_AGENT = "diagram-preview/1.0"


def auth_headers(auth: RemoteAuthConfig | None) -> dict[str, str]:
    """Build the Authorization header for the configured scheme."""
    if auth is None:
        return {}
    if auth.type == "basic":
        token = base64.b64encode(auth.credentials.encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {token}"}
    return {"Authorization": f"Bearer {auth.credentials}"}


def create_client(
    config: Configuration,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the async client used for remote renders.

    Args:
        config: Supplies timeout and auth
        transport: Optional transport override (tests pass httpx.MockTransport)
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.remote_timeout_s),
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT, **auth_headers(config.remote_auth)},
        limits=httpx.Limits(
            max_keepalive_connections=5,
            max_connections=10,
            keepalive_expiry=30.0,
        ),
        transport=transport,
    )

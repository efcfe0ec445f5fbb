"""Request-scoped authentication dependencies.

All variants read the access token from the ``access_token`` cookie only;
``Authorization`` headers are never consulted.
"""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request

from blogauth.service.audit import RequestContext
from blogauth.service.auth import Identity
from blogauth.service.risk import client_ip
from blogauth.service.runtime import get_runtime
from blogauth.storage.models import ROLE_ADMIN

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def request_context(request: Request) -> RequestContext:
    settings = get_runtime().settings
    peer = request.client.host if request.client else None
    return RequestContext(
        ip_addr=client_ip(request.headers, peer, trust_proxy_headers=settings.trust_proxy_headers),
        user_agent=request.headers.get("user-agent"),
    )


async def get_optional_identity(request: Request) -> Optional[Identity]:
    """Attach the caller's identity when a valid access cookie is present; never rejects."""
    token = request.cookies.get(ACCESS_COOKIE)
    identity = get_runtime().auth.authenticate(token) if token else None
    request.state.identity = identity
    return identity


async def get_current_identity(
    identity: Optional[Identity] = Depends(get_optional_identity),
) -> Identity:
    if identity is None:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return identity


def require_roles(*role_ids: int) -> Callable[..., Identity]:
    """Build a dependency admitting only the given role ids.

    The role comes from the access token, so a role change takes effect once
    the holder's current access token is refreshed.
    """
    allowed = frozenset(role_ids)

    async def _role_gate(identity: Identity = Depends(get_current_identity)) -> Identity:
        if identity.role_id not in allowed:
            raise _http_error("forbidden", "insufficient role", status_code=403)
        return identity

    return _role_gate


require_admin = require_roles(ROLE_ADMIN)

"""
FastAPI dependencies guarding routes with access-control decisions.

The authenticated user id is expected on ``request.state.user_id`` (set by
the authentication middleware, which lives outside this package). Denials are
always a generic 403 "Access denied" so responses never reveal which rule
applied.

Usage:
    @app.get("/reports", dependencies=[Depends(RequirePermission("analytics.view"))])
    def reports(): ...

    @app.get("/content/{content_id}")
    def show(content=Depends(RequireContentAccess())): ...
"""

import logging
import threading
from typing import AsyncIterator, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status

from services.logging_config import log_context

from .models import ContentAction
from .service import AccessControlService

logger = logging.getLogger(__name__)

ACCESS_DENIED = "Access denied"

_service: Optional[AccessControlService] = None
_service_lock = threading.Lock()


def get_access_service() -> AccessControlService:
    """Process-wide service, built from settings on first use."""
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                _service = AccessControlService.from_settings()
    return _service


def set_access_service(service: Optional[AccessControlService]) -> None:
    """Install (or with None, reset) the process-wide service."""
    global _service
    with _service_lock:
        _service = service


def _user_id_from_request(request: Request) -> Optional[UUID]:
    raw = getattr(request.state, "user_id", None)
    if raw is None or isinstance(raw, UUID):
        return raw
    try:
        return UUID(str(raw))
    except ValueError:
        logger.warning("Malformed user id on request state")
        return None


async def get_current_user_id(request: Request) -> AsyncIterator[UUID]:
    """Authenticated user id; 401 when the request carries none."""
    user_id = _user_id_from_request(request)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    with log_context(request_id=request.headers.get("X-Request-ID"), user_id=str(user_id)):
        yield user_id


def deny() -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=ACCESS_DENIED)


class RequirePermission:
    """Class-based dependency for a single permission."""

    def __init__(self, permission_name: str):
        self.permission_name = permission_name

    def __call__(
        self,
        user_id: UUID = Depends(get_current_user_id),
        service: AccessControlService = Depends(get_access_service),
    ) -> UUID:
        if not service.can(user_id, self.permission_name):
            logger.info(
                "Permission denied",
                extra={"extra_data": {"permission": self.permission_name}},
            )
            raise deny()
        return user_id


class RequireAnyPermission:
    """Class-based dependency satisfied by any one of several permissions."""

    def __init__(self, *permission_names: str):
        self.permission_names = permission_names

    def __call__(
        self,
        user_id: UUID = Depends(get_current_user_id),
        service: AccessControlService = Depends(get_access_service),
    ) -> UUID:
        if not service.can_any(user_id, self.permission_names):
            raise deny()
        return user_id


class RequireContentAccess:
    """
    Guard a route whose path carries a content id or slug.

    ``action`` is what the route does with the item (view by default).
    Anonymous requests are admitted for viewing public content only.
    """

    def __init__(self, param: str = "content_id", action: ContentAction = ContentAction.VIEW):
        self.param = param
        self.action = ContentAction(action)

    def __call__(
        self,
        request: Request,
        service: AccessControlService = Depends(get_access_service),
    ) -> str:
        raw = request.path_params.get(self.param)
        if raw is None:
            raise deny()
        try:
            reference = UUID(str(raw))
        except ValueError:
            reference = str(raw)

        if not service.can_access_content(_user_id_from_request(request), reference, action=self.action):
            raise deny()
        return raw

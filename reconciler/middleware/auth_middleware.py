"""Identity middleware: trusts the upstream auth layer's forwarded headers."""
from dataclasses import dataclass
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"

ADMIN_ROLE = "admin"


@dataclass
class CurrentUser:
    user_id: str
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def user_from_headers(headers) -> Optional[CurrentUser]:
    user_id = (headers.get(USER_ID_HEADER) or "").strip()
    if not user_id:
        return None
    role = (headers.get(USER_ROLE_HEADER) or "customer").strip().lower()
    return CurrentUser(user_id=user_id, role=role)


class AuthMiddleware(BaseHTTPMiddleware):
    """
    Attach the forwarded identity to request.state.user.

    Authentication itself happens upstream; routes decide whether an
    anonymous request is acceptable (webhooks and gateway callbacks are).
    """

    async def dispatch(self, request: Request, call_next):
        request.state.user = user_from_headers(request.headers)
        return await call_next(request)

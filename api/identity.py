"""Caller identity as attached by the upstream auth gateway."""

from __future__ import annotations

import re
from dataclasses import dataclass

from fastapi import Request

from engine.errors import AuthorizationError
from engine.stream_tokens import ClientInfo

ROLE_USER = "user"
ROLE_ADMIN = "admin"

_USER_ID_RE = re.compile(r"^[A-Za-z0-9_.:@\-]{1,128}$")


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str = ROLE_USER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


class IdentityResolver:
    def __init__(self, user_header: str = "X-User-Id", role_header: str = "X-User-Role") -> None:
        self.user_header = user_header
        self.role_header = role_header

    def resolve(self, request: Request) -> Identity | None:
        user_id = (request.headers.get(self.user_header) or "").strip()
        if not user_id or not _USER_ID_RE.match(user_id):
            return None
        role = (request.headers.get(self.role_header) or ROLE_USER).strip().lower()
        return Identity(user_id=user_id, role=role if role in (ROLE_USER, ROLE_ADMIN) else ROLE_USER)


_resolver = IdentityResolver()


def require_user(request: Request) -> Identity:
    identity = _resolver.resolve(request)
    if identity is None:
        raise AuthorizationError("Authentication required", code="auth_required")
    return identity


def require_admin(request: Request) -> Identity:
    identity = require_user(request)
    if not identity.is_admin:
        raise AuthorizationError("Admin access required", code="forbidden", http_status=403)
    return identity


def client_info(request: Request) -> ClientInfo:
    ip = request.client.host if request.client else None
    return ClientInfo(ip=ip, user_agent=request.headers.get("user-agent"))

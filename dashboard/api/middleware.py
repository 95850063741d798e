"""
PEAK CRM — Auth Middleware
============================
Validates the `Authorization: Bearer <jwt>` header with Supabase Auth and
loads the caller's profile (id, role, organization) from the users table.
The profile lands on `request.state.user` for the routers.

Roles: rep, manager, admin.

Public endpoints (health, docs) bypass auth. WebSocket upgrades are
authenticated inside the WebSocket endpoint.
"""
from __future__ import annotations

import time
from typing import Optional

from fastapi import HTTPException, Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse, Response

from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_client

logger = setup_logger("api_middleware")

# Paths that don't require auth
PUBLIC_PATHS = {
    "/api/health",
    "/api/integrations/monday/webhook",
    "/docs",
    "/openapi.json",
    "/redoc",
}

USER_COLUMNS = "id, email, full_name, role, organization_id"
ROLES = ("rep", "manager", "admin")


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthMiddleware(BaseHTTPMiddleware):
    """
    Resolves bearer tokens to CRM users, with a short in-process cache.

    Responds 401 itself (an HTTPException raised inside middleware would
    surface as a 500).
    """

    def __init__(self, app, cache_ttl: int = 60):
        super().__init__(app)
        self._cache: dict[str, dict] = {}  # token -> user row
        self._cache_ttl = cache_ttl

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path

        if path in PUBLIC_PATHS:
            return await call_next(request)

        if request.headers.get("upgrade", "").lower() == "websocket":
            return await call_next(request)

        if request.method == "OPTIONS":
            return await call_next(request)

        token = _bearer_token(request)
        if not token:
            return JSONResponse(status_code=401, content={"detail": "Missing bearer token"})

        user = self.resolve_user(token)
        if not user:
            return JSONResponse(status_code=401, content={"detail": "Invalid or expired token"})

        request.state.user = user
        return await call_next(request)

    def resolve_user(self, token: str) -> Optional[dict]:
        cached = self._cache.get(token)
        if cached and cached["_cached_at"] + self._cache_ttl > time.time():
            return {k: v for k, v in cached.items() if k != "_cached_at"}

        user = lookup_user(token)
        if user:
            self._cache[token] = {**user, "_cached_at": time.time()}
        return user


def lookup_user(token: str) -> Optional[dict]:
    """Supabase Auth user for a JWT, joined to its users row. None if unknown."""
    try:
        client = get_client()
        auth = client.auth.get_user(token)
        auth_user = getattr(auth, "user", None)
        if auth_user is None:
            return None
        result = (
            client.table("users")
            .select(USER_COLUMNS)
            .eq("id", auth_user.id)
            .limit(1)
            .execute()
        )
    except Exception as e:
        logger.warning("Token validation failed: %s", e)
        return None

    if not result.data:
        logger.warning("Authenticated user %s has no users row", auth_user.id)
        return None
    user = result.data[0]
    if user.get("role") not in ROLES or not user.get("organization_id"):
        logger.warning("User %s has no valid role or organization", user.get("id"))
        return None
    return user


# ─── Dependencies ───────────────────────────────────────────

def current_user(request: Request) -> dict:
    """
    The authenticated user set by AuthMiddleware.

    Usage:
        @router.get("/")
        async def list_things(user: dict = Depends(current_user)): ...
    """
    user = getattr(request.state, "user", None)
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def require_role(*roles: str):
    """
    Dependency that only lets the given roles through (403 otherwise).

    Usage:
        @router.put("/config")
        async def save(user: dict = Depends(require_role("admin"))): ...
    """
    async def _check(request: Request) -> dict:
        user = current_user(request)
        if user.get("role") not in roles:
            raise HTTPException(
                status_code=403,
                detail=f"Requires role {' or '.join(roles)}, current: '{user.get('role')}'",
            )
        return user

    return _check


def can_access(user: dict, row: dict) -> bool:
    """Managers and admins see the whole org; reps only rows they own or created."""
    if user.get("role") in ("manager", "admin"):
        return True
    return user["id"] in (row.get("assigned_to"), row.get("created_by"))


def ensure_access(user: dict, row: Optional[dict], resource: str) -> dict:
    """404 for missing rows, 403 for rows the user may not touch."""
    if not row:
        raise HTTPException(status_code=404, detail=f"{resource} not found")
    if not can_access(user, row):
        raise HTTPException(status_code=403, detail=f"Not allowed to access this {resource.lower()}")
    return row


def scope_query(query, user: dict):
    """Restrict a query to rows the user may see (reps: own or created)."""
    if user.get("role") in ("manager", "admin"):
        return query
    return query.or_(f"assigned_to.eq.{user['id']},created_by.eq.{user['id']}")

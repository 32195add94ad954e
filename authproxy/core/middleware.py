import time
import logging
import uuid
from typing import Iterable, Optional
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp, Receive, Scope, Send
from fastapi.responses import JSONResponse

from authproxy.core.auth import TokenValidator
from authproxy.core.errors import AuthError

logger = logging.getLogger("authproxy.request")
auth_logger = logging.getLogger("authproxy.auth")


def extract_bearer_token(header: Optional[str]) -> str:
    """Return the token from an ``Authorization: Bearer <token>`` header.

    Raises ValueError describing why the header is unusable.
    """
    if not header:
        raise ValueError("authorization header missing")

    parts = header.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        raise ValueError("invalid authorization header format")

    return parts[1]


class AuthMiddleware:
    """Gate protected paths behind a validated bearer JWT.

    Missing or malformed headers get 401, rejected tokens get 403. On success
    the claims are stored on the request state for downstream handlers.
    """

    def __init__(
        self,
        app: ASGIApp,
        validator: TokenValidator,
        protected_paths: Iterable[str] = ("/logs",),
    ):
        self.app = app
        self.validator = validator
        self.protected_paths = frozenset(protected_paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http" or scope.get("path", "") not in self.protected_paths:
            return await self.app(scope, receive, send)

        request = Request(scope, receive)

        try:
            token = extract_bearer_token(request.headers.get("authorization"))
        except ValueError as e:
            auth_logger.warning(f"Rejected request to {request.url.path}: {e}")
            res = JSONResponse(
                status_code=401,
                content={"detail": f"Unauthorized: {e}"},
                headers={"WWW-Authenticate": "Bearer"},
            )
            return await res(scope, receive, send)

        try:
            claims = self.validator.validate(token)
        except AuthError as e:
            auth_logger.warning(f"JWT validation failed: {e}")
            res = JSONResponse(
                status_code=403, content={"detail": f"Forbidden: {e.reason.value}"}
            )
            return await res(scope, receive, send)

        auth_logger.debug(f"Authenticated request from tenant {claims.tenant_id}")

        # Downstream Request objects read their state from this dict
        scope.setdefault("state", {})["claims"] = claims

        return await self.app(scope, receive, send)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id and logs its outcome with the submitting tenant.

    An ``X-Request-ID`` sent by the caller is reused. The tenant is read back
    from the request state once the auth gate has run.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            logger.exception(
                f"[{request_id}] {request.method} {request.url.path} failed after {elapsed_ms:.1f}ms "
                f"tenant={self._tenant(request)}"
            )
            raise

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        logger.log(
            level,
            f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} "
            f"tenant={self._tenant(request)} in {elapsed_ms:.1f}ms",
        )

        response.headers["X-Request-ID"] = request_id
        return response

    @staticmethod
    def _tenant(request: Request) -> str:
        claims = getattr(request.state, "claims", None)
        return claims.tenant_id if claims is not None else "-"

"""
Write protection: double-submit CSRF cookie and a fixed-window rate limiter.
"""

from __future__ import annotations

import secrets
import threading
import time
import uuid
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


class CsrfCookieMiddleware(BaseHTTPMiddleware):
    """Issue the CSRF cookie on any response to a client that lacks one."""

    def __init__(self, app, cookie_name: str = "unpwa_csrf"):
        super().__init__(app)
        self.cookie_name = cookie_name

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        if not request.cookies.get(self.cookie_name):
            secure = (
                request.url.scheme == "https"
                or request.headers.get("x-forwarded-proto") == "https"
            )
            response.set_cookie(
                self.cookie_name,
                str(uuid.uuid4()),
                httponly=False,
                samesite="lax",
                secure=secure,
                path="/",
            )
        return response


def csrf_tokens_match(cookie_token: Optional[str], header_token: Optional[str]) -> bool:
    if not cookie_token or not header_token:
        return False
    return secrets.compare_digest(cookie_token.encode("utf-8"), header_token.encode("utf-8"))


class WriteRateLimiter:
    """Allow ``limit`` writes per client per fixed window of ``window_seconds``."""

    def __init__(
        self,
        limit: int = 20,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._last_cleanup = clock()
        self._lock = threading.Lock()

    def allow(self, client_key: str) -> bool:
        now = self.clock()
        with self._lock:
            self._cleanup(now)
            started, count = self._windows.get(client_key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            if count >= self.limit:
                return False
            self._windows[client_key] = (started, count + 1)
            return True

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def _cleanup(self, now: float) -> None:
        if now - self._last_cleanup < self.window_seconds:
            return
        self._windows = {
            key: window
            for key, window in self._windows.items()
            if now - window[0] < self.window_seconds
        }
        self._last_cleanup = now

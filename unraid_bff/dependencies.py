"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from typing import Callable, Iterator, Optional

from fastapi import Depends, HTTPException, Request

from unraid_bff.audit import AuditLog
from unraid_bff.config import Settings, get_settings
from unraid_bff.scopes import has_write_scopes
from unraid_bff.secret_store import SecretStore
from unraid_bff.security import WriteRateLimiter, csrf_tokens_match
from unraid_bff.unraid_client import UnraidClient

ClientFactory = Callable[[str, str, Optional[bool]], UnraidClient]

_secret_store: SecretStore | None = None
_audit_log: AuditLog | None = None
_rate_limiter: WriteRateLimiter | None = None


def get_secret_store() -> SecretStore:
    """
    Return a singleton store so the key file is resolved once per process.
    """
    global _secret_store
    if _secret_store:
        return _secret_store

    settings = get_settings()
    _secret_store = SecretStore(settings.data_dir, encryption_key=settings.encryption_key)
    return _secret_store


def get_audit_log() -> AuditLog:
    global _audit_log
    if _audit_log:
        return _audit_log

    _audit_log = AuditLog(get_settings().data_dir)
    return _audit_log


def get_write_rate_limiter() -> WriteRateLimiter:
    global _rate_limiter
    if _rate_limiter:
        return _rate_limiter

    settings = get_settings()
    _rate_limiter = WriteRateLimiter(
        limit=settings.write_rate_limit,
        window_seconds=settings.write_rate_window_seconds,
    )
    return _rate_limiter


def get_client_factory() -> ClientFactory:
    """
    Return a callable building one client per server and trust policy.
    """
    settings = get_settings()

    def build(base_url: str, api_key: str, trust_self_signed: Optional[bool]) -> UnraidClient:
        return UnraidClient(
            base_url,
            api_key,
            trust_self_signed,
            allow_self_signed_default=settings.allow_self_signed,
            timeout=settings.request_timeout,
        )

    return build


def get_active_client(
    store: SecretStore = Depends(get_secret_store),
    factory: ClientFactory = Depends(get_client_factory),
) -> Iterator[UnraidClient]:
    server = store.load_active()
    if not server:
        raise HTTPException(status_code=404, detail="Server not configured")
    client = factory(server.base_url, server.api_key, server.trust_self_signed)
    try:
        yield client
    finally:
        client.close()


def require_csrf(request: Request, settings: Settings = Depends(get_settings)) -> None:
    cookie_token = request.cookies.get(settings.csrf_cookie_name)
    header_token = request.headers.get(settings.csrf_header_name)
    if not csrf_tokens_match(cookie_token, header_token):
        raise HTTPException(status_code=403, detail="CSRF validation failed.")


def limit_writes(
    request: Request, limiter: WriteRateLimiter = Depends(get_write_rate_limiter)
) -> None:
    client_key = request.client.host if request.client else "unknown"
    if not limiter.allow(client_key):
        raise HTTPException(status_code=429, detail="Write rate limit exceeded.")


def require_write_scopes(store: SecretStore = Depends(get_secret_store)) -> None:
    server = store.load_active()
    if server and not has_write_scopes(server.scopes):
        raise HTTPException(status_code=403, detail="API key does not grant write access.")

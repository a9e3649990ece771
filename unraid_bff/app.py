"""
FastAPI application entry point for the Unraid BFF.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from unraid_bff.config import get_settings
from unraid_bff.routes import router
from unraid_bff.secret_store import SecretStoreError
from unraid_bff.security import CsrfCookieMiddleware

logger = logging.getLogger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    error = errors[0]
    error_type = error.get("type")
    loc = [str(part) for part in error.get("loc", ()) if part != "body"]

    if error_type == "json_invalid":
        return "Request body must be valid JSON"
    if error_type == "value_error":
        cause = (error.get("ctx") or {}).get("error")
        if cause is not None:
            return str(cause)
        return str(error.get("msg", "")).removeprefix("Value error, ")
    if not loc:
        return "Request body must be a JSON object"
    if error_type == "missing":
        return f"{loc[-1]} is required"
    return f"{loc[-1]}: {error.get('msg')}"


async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {"error": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": _validation_message(exc)})


async def _store_exception_handler(request: Request, exc: SecretStoreError):
    logger.error("Credential store failure on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"error": "Credential store unavailable", "detail": str(exc)},
    )


async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "detail": str(exc)},
    )


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="Unraid BFF", version="0.1.0")
    app.add_middleware(CsrfCookieMiddleware, cookie_name=settings.csrf_cookie_name)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origin_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if settings.trust_proxy:
        app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=settings.trusted_proxy_hosts)
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(SecretStoreError, _store_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)

    @app.get("/health")
    def health():
        return {"ok": True, "service": "unraid-pwa-bff"}

    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()

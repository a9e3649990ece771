"""
Pydantic schemas for the BFF API.

Request models validate with field-specific messages; the app turns
validation failures into ``400 {"error": "<message>"}``.
"""

from __future__ import annotations

import re
from typing import Any, Literal, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, field_validator, model_validator

LEGACY_ACCENTS = {"amber", "orange", "purple", "blue", "green"}
HEX_COLOR = re.compile(r"^#(?:[0-9a-f]{3}|[0-9a-f]{6})$", re.IGNORECASE)


def _required_string(value: Any, field: str, max_length: int = 2048) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field} is required")
    value = value.strip()
    if len(value) > max_length:
        raise ValueError(f"{field} is too long")
    return value


def _optional_string(
    value: Any, field: str, max_length: int = 128, allow_empty: bool = False
) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{field} must be a string")
    value = value.strip()
    if not value and not allow_empty:
        raise ValueError(f"{field} cannot be empty")
    if len(value) > max_length:
        raise ValueError(f"{field} is too long")
    return value


def _optional_bool(value: Any, field: str) -> Optional[bool]:
    if value is not None and not isinstance(value, bool):
        raise ValueError(f"{field} must be a boolean")
    return value


def _accent_color(value: Any, field: str = "accentColor") -> Optional[str]:
    value = _optional_string(value, field, max_length=32)
    if value is None:
        return None
    value = value.lower()
    if not HEX_COLOR.match(value) and value not in LEGACY_ACCENTS:
        raise ValueError(f"{field} must be a valid color")
    return value


def normalize_base_url(value: Any) -> str:
    """Reduce ``value`` to an http(s) origin, rejecting paths and credentials."""
    value = _required_string(value, "baseUrl")
    parts = urlsplit(value)
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        raise ValueError("baseUrl must be an http(s) URL")
    if parts.username is not None or parts.password is not None:
        raise ValueError("baseUrl must not contain credentials")
    if parts.path not in ("", "/") or parts.query or parts.fragment:
        raise ValueError("baseUrl must not include a path, query or fragment")
    try:
        parts.port
    except ValueError as exc:
        raise ValueError("baseUrl has an invalid port") from exc
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


def parse_resource_id(value: Any, field: str = "Server id") -> str:
    return _required_string(value, field, max_length=160)


# ----------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------


class ServerConnectionTestRequest(BaseModel):
    baseUrl: str
    apiKey: str
    trustSelfSigned: Optional[bool] = None

    @field_validator("baseUrl", mode="before")
    @classmethod
    def _base_url(cls, value):
        return normalize_base_url(value)

    @field_validator("apiKey", mode="before")
    @classmethod
    def _api_key(cls, value):
        return _required_string(value, "apiKey", max_length=4096)

    @field_validator("trustSelfSigned", mode="before")
    @classmethod
    def _trust(cls, value):
        return _optional_bool(value, "trustSelfSigned")


class ServerCreateRequest(ServerConnectionTestRequest):
    name: Optional[str] = None
    accentColor: Optional[str] = None
    requestedScopes: list[str] = []

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, value):
        return _optional_string(value, "name", max_length=120, allow_empty=True) or None

    @field_validator("accentColor", mode="before")
    @classmethod
    def _accent(cls, value):
        return _accent_color(value)

    @field_validator("requestedScopes", mode="before")
    @classmethod
    def _scopes(cls, value):
        if value is None:
            return []
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise ValueError("requestedScopes must be an array of strings")
        scopes = [item.strip() for item in value if item.strip()]
        if any(len(scope) > 128 for scope in scopes):
            raise ValueError("requestedScopes contains a value that is too long")
        return scopes


class ServerApiKeyRequest(BaseModel):
    apiKey: str

    @field_validator("apiKey", mode="before")
    @classmethod
    def _api_key(cls, value):
        return _required_string(value, "apiKey", max_length=4096)


class ServerUpdateRequest(BaseModel):
    name: Optional[str] = None
    trustSelfSigned: Optional[bool] = None
    accentColor: Optional[str] = None
    apiKey: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, value):
        return _optional_string(value, "name", max_length=120, allow_empty=True)

    @field_validator("trustSelfSigned", mode="before")
    @classmethod
    def _trust(cls, value):
        return _optional_bool(value, "trustSelfSigned")

    @field_validator("accentColor", mode="before")
    @classmethod
    def _accent(cls, value):
        return _accent_color(value)

    @field_validator("apiKey", mode="before")
    @classmethod
    def _api_key(cls, value):
        return _optional_string(value, "apiKey", max_length=4096)

    @model_validator(mode="after")
    def _at_least_one(self):
        if (
            self.name is None
            and self.trustSelfSigned is None
            and self.accentColor is None
            and self.apiKey is None
        ):
            raise ValueError("name, trustSelfSigned, accentColor or apiKey is required")
        return self


class AppSettingsUpdateRequest(BaseModel):
    themeMode: Optional[Literal["dark", "light"]] = None
    accentColor: Optional[str] = None

    @field_validator("themeMode", mode="before")
    @classmethod
    def _theme(cls, value):
        if value is not None and value not in ("dark", "light"):
            raise ValueError("themeMode must be 'dark' or 'light'")
        return value

    @field_validator("accentColor", mode="before")
    @classmethod
    def _accent(cls, value):
        return _accent_color(value)

    @model_validator(mode="after")
    def _at_least_one(self):
        if self.themeMode is None and self.accentColor is None:
            raise ValueError("themeMode or accentColor is required")
        return self


# ----------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------


class OkResponse(BaseModel):
    ok: Literal[True] = True


class ServerCreateResponse(BaseModel):
    ok: Literal[True] = True
    serverId: str
    activated: bool


class ServerSummary(BaseModel):
    id: str
    name: str
    accentColor: str
    baseUrl: str
    trustSelfSigned: bool
    scopes: list[str]
    createdAt: str


class ServerListResponse(BaseModel):
    activeServerId: Optional[str]
    servers: list[ServerSummary]


class ServerStatusResponse(BaseModel):
    configured: bool
    id: Optional[str] = None
    name: Optional[str] = None
    accentColor: Optional[str] = None
    baseUrl: Optional[str] = None
    trustSelfSigned: Optional[bool] = None
    scopes: Optional[list[str]] = None
    canWrite: Optional[bool] = None
    createdAt: Optional[str] = None


class ConnectionTestResponse(BaseModel):
    ok: bool
    scopes: list[str]
    missingScopes: list[str]
    canWrite: bool


class AppSettingsResponse(BaseModel):
    themeMode: Literal["dark", "light"]
    accentColor: str

"""
Encrypted multi-server credential and settings store.

The whole store is one AES-GCM record in ``<data_dir>/servers.enc``. Every
operation performs a full read-decrypt-modify-encrypt-write cycle. There is
no locking across requests or processes, so overlapping writes resolve as
last-writer-wins.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from unraid_bff import crypto

logger = logging.getLogger(__name__)

DATA_FILE_NAME = "servers.enc"
LEGACY_DATA_FILE_NAME = "server.enc"

DEFAULT_THEME_MODE = "dark"
DEFAULT_ACCENT_COLOR = "#ea580c"
LEGACY_ACCENT_COLORS = {
    "amber": "#d97706",
    "orange": "#ea580c",
    "purple": "#9333ea",
    "blue": "#3b82f6",
    "green": "#22c55e",
}

_HEX3 = re.compile(r"^#([0-9a-f]{3})$")
_HEX6 = re.compile(r"^#[0-9a-f]{6}$")


class SecretStoreError(Exception):
    """The credential store could not be read or written."""


class CorruptStoreError(SecretStoreError):
    pass


class StoreDecryptionError(SecretStoreError):
    pass


class KeyUnavailableError(SecretStoreError):
    pass


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def normalize_theme_mode(value: Any) -> str:
    if value in ("dark", "light"):
        return value
    return DEFAULT_THEME_MODE


def normalize_accent_color(value: Any) -> str:
    if not isinstance(value, str):
        return DEFAULT_ACCENT_COLOR
    trimmed = value.strip().lower()
    if trimmed in LEGACY_ACCENT_COLORS:
        return LEGACY_ACCENT_COLORS[trimmed]
    short = _HEX3.match(trimmed)
    if short:
        return "#" + "".join(ch * 2 for ch in short.group(1))
    if _HEX6.match(trimmed):
        return trimmed
    return DEFAULT_ACCENT_COLOR


@dataclass
class StoredServer:
    id: str
    name: str
    base_url: str
    api_key: str
    trust_self_signed: bool = True
    accent_color: str = DEFAULT_ACCENT_COLOR
    scopes: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "accentColor": self.accent_color,
            "baseUrl": self.base_url,
            "apiKey": self.api_key,
            "trustSelfSigned": self.trust_self_signed,
            "scopes": list(self.scopes),
            "createdAt": self.created_at,
        }

    def public_dict(self) -> dict:
        """Same as as_dict() without the API key."""
        payload = self.as_dict()
        payload.pop("apiKey")
        return payload


@dataclass
class AppSettings:
    theme_mode: str = DEFAULT_THEME_MODE
    accent_color: str = DEFAULT_ACCENT_COLOR

    def as_dict(self) -> dict:
        return {"themeMode": self.theme_mode, "accentColor": self.accent_color}


@dataclass
class ServerStore:
    active_server_id: Optional[str] = None
    servers: list[StoredServer] = field(default_factory=list)
    app_settings: AppSettings = field(default_factory=AppSettings)

    def find(self, server_id: str) -> Optional[StoredServer]:
        for server in self.servers:
            if server.id == server_id:
                return server
        return None

    def as_dict(self) -> dict:
        return {
            "activeServerId": self.active_server_id,
            "servers": [server.as_dict() for server in self.servers],
            "appSettings": self.app_settings.as_dict(),
        }


def _non_blank(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def normalize_stored_server(raw: Any, index: int) -> StoredServer:
    item = raw if isinstance(raw, dict) else {}
    scopes = item.get("scopes")
    return StoredServer(
        id=item["id"] if _non_blank(item.get("id")) else str(uuid.uuid4()),
        name=item["name"].strip() if _non_blank(item.get("name")) else f"Server {index + 1}",
        base_url=item["baseUrl"] if isinstance(item.get("baseUrl"), str) else "",
        api_key=item["apiKey"] if isinstance(item.get("apiKey"), str) else "",
        trust_self_signed=(
            item["trustSelfSigned"] if isinstance(item.get("trustSelfSigned"), bool) else True
        ),
        accent_color=normalize_accent_color(item.get("accentColor")),
        scopes=[scope for scope in scopes if isinstance(scope, str)]
        if isinstance(scopes, list)
        else [],
        created_at=item["createdAt"] if _non_blank(item.get("createdAt")) else _now_iso(),
    )


def normalize_legacy(payload: Any) -> ServerStore:
    """
    Coerce any decoded payload into the current store shape.

    Accepts the multi-server shape, the single-server shape written by the
    first releases (``{baseUrl, apiKey, ...}`` at the top level), or
    anything else, which yields an empty store.
    """
    if isinstance(payload, dict) and isinstance(payload.get("servers"), list):
        servers: list[StoredServer] = []
        seen: set[str] = set()
        for index, raw in enumerate(payload["servers"]):
            server = normalize_stored_server(raw, index)
            if server.id in seen:
                server.id = str(uuid.uuid4())
            seen.add(server.id)
            servers.append(server)
        active_id = payload.get("activeServerId")
        if not any(server.id == active_id for server in servers):
            active_id = servers[0].id if servers else None
        settings = payload.get("appSettings")
        settings = settings if isinstance(settings, dict) else {}
        return ServerStore(
            active_server_id=active_id,
            servers=servers,
            app_settings=AppSettings(
                theme_mode=normalize_theme_mode(settings.get("themeMode")),
                accent_color=normalize_accent_color(settings.get("accentColor")),
            ),
        )

    if isinstance(payload, dict) and "baseUrl" in payload and "apiKey" in payload:
        legacy = dict(payload)
        legacy["id"] = None
        legacy.setdefault("name", "Primary server")
        legacy.setdefault("trustSelfSigned", True)
        server = normalize_stored_server(legacy, 0)
        return ServerStore(active_server_id=server.id, servers=[server])

    return ServerStore()


def _ids_changed(payload: Any, store: ServerStore) -> bool:
    """True when normalization had to mint ids the payload did not carry."""
    if not store.servers:
        return False
    raw = payload.get("servers") if isinstance(payload, dict) else None
    if not isinstance(raw, list):
        return True
    raw_ids = [item.get("id") if isinstance(item, dict) else None for item in raw]
    return raw_ids != [server.id for server in store.servers]


class SecretStore:
    """File-backed encrypted store for servers and app settings."""

    def __init__(
        self,
        data_dir: str | Path,
        key_resolver: Optional[crypto.KeyResolver] = None,
        encryption_key: Optional[str] = None,
    ):
        self.data_dir = Path(data_dir)
        self.data_file = self.data_dir / DATA_FILE_NAME
        self.legacy_data_file = self.data_dir / LEGACY_DATA_FILE_NAME
        self.keys = key_resolver or crypto.KeyResolver(self.data_dir, encryption_key)

    # ------------------------------------------------------------------
    # File I/O
    # ------------------------------------------------------------------

    def _current_key(self) -> bytes:
        try:
            return self.keys.current_key()
        except crypto.KeyFileError as exc:
            raise KeyUnavailableError(str(exc)) from exc

    def _candidate_keys(self) -> list[bytes]:
        try:
            return self.keys.candidate_keys()
        except crypto.KeyFileError as exc:
            raise KeyUnavailableError(str(exc)) from exc

    def _decode(self, content: str, path: Path) -> tuple[ServerStore, bool]:
        try:
            plaintext, key_index = crypto.decrypt_with_fallback(
                content, self._candidate_keys()
            )
        except crypto.CorruptRecordError as exc:
            raise CorruptStoreError(f"{path.name} is corrupt: {exc}") from exc
        except crypto.DecryptionError as exc:
            raise StoreDecryptionError(f"{path.name}: {exc}") from exc
        try:
            payload = json.loads(plaintext)
        except json.JSONDecodeError as exc:
            raise CorruptStoreError(f"{path.name} does not contain JSON") from exc
        store = normalize_legacy(payload)
        return store, key_index > 0 or _ids_changed(payload, store)

    def _read(self) -> ServerStore:
        try:
            content = self.data_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return self._read_legacy_file()
        except OSError as exc:
            raise SecretStoreError(f"Unable to read {self.data_file}: {exc}") from exc

        store, needs_rewrite = self._decode(content, self.data_file)
        if needs_rewrite:
            logger.info("Re-writing %s with the current key and stable ids", self.data_file)
            self._write(store)
        return store

    def _read_legacy_file(self) -> ServerStore:
        try:
            content = self.legacy_data_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ServerStore()
        except OSError as exc:
            raise SecretStoreError(f"Unable to read {self.legacy_data_file}: {exc}") from exc

        store, _ = self._decode(content, self.legacy_data_file)
        logger.info(
            "Migrating %s to %s", self.legacy_data_file.name, self.data_file.name
        )
        self._write(store)
        return store

    def _write(self, store: ServerStore) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        record = crypto.encrypt(self._current_key(), json.dumps(store.as_dict()))
        fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, prefix=".servers-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(record)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.data_file)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    # ------------------------------------------------------------------
    # Servers
    # ------------------------------------------------------------------

    def save_server(
        self,
        *,
        base_url: str,
        api_key: str,
        id: Optional[str] = None,
        name: Optional[str] = None,
        trust_self_signed: Optional[bool] = None,
        accent_color: Optional[str] = None,
        scopes: Optional[list[str]] = None,
        created_at: Optional[str] = None,
    ) -> StoredServer:
        """Insert or replace a server by id and return the stored record."""
        store = self._read()
        server_id = id or str(uuid.uuid4())
        existing = store.find(server_id)
        if name and name.strip():
            resolved_name = name.strip()
        else:
            resolved_name = f"Server {len(store.servers) + 1}"

        if trust_self_signed is None:
            trust_self_signed = existing.trust_self_signed if existing else True
        if accent_color is None:
            accent_color = existing.accent_color if existing else DEFAULT_ACCENT_COLOR
        if scopes is None:
            scopes = list(existing.scopes) if existing else []
        if created_at is None:
            created_at = existing.created_at if existing else _now_iso()

        record = StoredServer(
            id=server_id,
            name=resolved_name,
            base_url=base_url,
            api_key=api_key,
            trust_self_signed=trust_self_signed,
            accent_color=normalize_accent_color(accent_color),
            scopes=list(scopes),
            created_at=created_at,
        )
        if existing:
            store.servers[store.servers.index(existing)] = record
        else:
            store.servers.append(record)
        if not store.active_server_id:
            store.active_server_id = server_id
        self._write(store)
        return record

    def load_active(self) -> Optional[StoredServer]:
        store = self._read()
        if not store.active_server_id:
            return None
        return store.find(store.active_server_id)

    def load_by_id(self, server_id: str) -> Optional[StoredServer]:
        return self._read().find(server_id)

    def list_all(self) -> tuple[Optional[str], list[StoredServer]]:
        store = self._read()
        return store.active_server_id, store.servers

    def update_server(
        self,
        server_id: str,
        *,
        name: Optional[str] = None,
        trust_self_signed: Optional[bool] = None,
        accent_color: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> bool:
        """
        Apply the provided, non-empty fields to a server.

        A blank name leaves the stored name unchanged.
        """
        store = self._read()
        target = store.find(server_id)
        if not target:
            return False
        if name is not None and name.strip():
            target.name = name.strip()
        if trust_self_signed is not None:
            target.trust_self_signed = trust_self_signed
        if accent_color is not None and accent_color.strip():
            target.accent_color = normalize_accent_color(accent_color)
        if api_key is not None and api_key.strip():
            target.api_key = api_key.strip()
        self._write(store)
        return True

    def set_active(self, server_id: str) -> bool:
        store = self._read()
        if not store.find(server_id):
            return False
        store.active_server_id = server_id
        self._write(store)
        return True

    def delete_server(self, server_id: str) -> bool:
        store = self._read()
        remaining = [server for server in store.servers if server.id != server_id]
        if len(remaining) == len(store.servers):
            return False
        store.servers = remaining
        if store.active_server_id == server_id:
            store.active_server_id = remaining[0].id if remaining else None
        self._write(store)
        return True

    # ------------------------------------------------------------------
    # App settings
    # ------------------------------------------------------------------

    def get_settings(self) -> AppSettings:
        return self._read().app_settings

    def update_settings(
        self, *, theme_mode: Optional[str] = None, accent_color: Optional[str] = None
    ) -> AppSettings:
        store = self._read()
        current = store.app_settings
        store.app_settings = AppSettings(
            theme_mode=normalize_theme_mode(
                theme_mode if theme_mode is not None else current.theme_mode
            ),
            accent_color=normalize_accent_color(
                accent_color if accent_color is not None else current.accent_color
            ),
        )
        self._write(store)
        return store.app_settings

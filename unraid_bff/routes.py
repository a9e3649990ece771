"""
HTTP routes for the BFF API.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Response

from unraid_bff.audit import AuditLog
from unraid_bff.config import Settings, get_settings
from unraid_bff.dependencies import (
    ClientFactory,
    get_active_client,
    get_audit_log,
    get_client_factory,
    get_secret_store,
    limit_writes,
    require_csrf,
    require_write_scopes,
)
from unraid_bff.schemas import (
    AppSettingsResponse,
    AppSettingsUpdateRequest,
    ConnectionTestResponse,
    OkResponse,
    ServerApiKeyRequest,
    ServerConnectionTestRequest,
    ServerCreateRequest,
    ServerCreateResponse,
    ServerListResponse,
    ServerStatusResponse,
    ServerSummary,
    ServerUpdateRequest,
    parse_resource_id,
)
from unraid_bff.scopes import has_write_scopes
from unraid_bff.secret_store import SecretStore
from unraid_bff.unraid_client import (
    ARRAY_ACTIONS,
    CONTAINER_ACTIONS,
    VM_ACTIONS,
    UnraidClient,
    UpstreamError,
    stop_then_start,
)

logger = logging.getLogger(__name__)

router = APIRouter()

WRITE_GUARDS = [Depends(require_csrf), Depends(limit_writes), Depends(require_write_scopes)]


def _upstream_failure(error: str, exc: UpstreamError, status_code: int = 500) -> HTTPException:
    logger.warning("%s: %s", error, exc)
    return HTTPException(status_code=status_code, detail={"error": error, "detail": str(exc)})


def _resource_id(value: str, field: str) -> str:
    try:
        return parse_resource_id(value, field)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _require_action(action: str, supported: tuple[str, ...]) -> str:
    if action not in supported:
        raise HTTPException(status_code=400, detail="Unsupported action")
    return action


# ----------------------------------------------------------------------
# Servers
# ----------------------------------------------------------------------


@router.post("/servers/test", response_model=ConnectionTestResponse)
def test_server_connection(
    payload: ServerConnectionTestRequest,
    factory: ClientFactory = Depends(get_client_factory),
):
    with factory(payload.baseUrl, payload.apiKey, payload.trustSelfSigned) as client:
        try:
            return client.test_connection()
        except UpstreamError as exc:
            raise _upstream_failure("Connection test failed", exc, status_code=502)


@router.post(
    "/servers",
    response_model=ServerCreateResponse,
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def create_server(
    payload: ServerCreateRequest,
    store: SecretStore = Depends(get_secret_store),
    factory: ClientFactory = Depends(get_client_factory),
    settings: Settings = Depends(get_settings),
):
    trust = (
        payload.trustSelfSigned
        if payload.trustSelfSigned is not None
        else settings.allow_self_signed
    )
    name = payload.name
    if not name:
        with factory(payload.baseUrl, payload.apiKey, trust) as client:
            name = client.resolve_server_name()

    server = store.save_server(
        name=name,
        base_url=payload.baseUrl,
        api_key=payload.apiKey,
        trust_self_signed=trust,
        accent_color=payload.accentColor,
        scopes=payload.requestedScopes,
        created_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    )
    activated = store.set_active(server.id)
    logger.info("Stored server %s (%s)", server.id, server.base_url)
    return ServerCreateResponse(serverId=server.id, activated=activated)


@router.get("/servers", response_model=ServerListResponse)
def list_servers(store: SecretStore = Depends(get_secret_store)):
    active_id, servers = store.list_all()
    return ServerListResponse(
        activeServerId=active_id,
        servers=[ServerSummary(**server.public_dict()) for server in servers],
    )


@router.get(
    "/servers/status",
    response_model=ServerStatusResponse,
    response_model_exclude_none=True,
)
def server_status(store: SecretStore = Depends(get_secret_store)):
    server = store.load_active()
    if not server:
        return ServerStatusResponse(configured=False)
    return ServerStatusResponse(
        configured=True,
        canWrite=has_write_scopes(server.scopes),
        **server.public_dict(),
    )


@router.put("/servers/{server_id}", response_model=OkResponse, dependencies=[Depends(require_csrf)])
def update_server(
    server_id: str,
    payload: ServerUpdateRequest,
    store: SecretStore = Depends(get_secret_store),
    factory: ClientFactory = Depends(get_client_factory),
):
    server_id = _resource_id(server_id, "Server id")
    name = payload.name
    if name == "":
        # Blank rename: ask the server for its own name, else keep the current one.
        server = store.load_by_id(server_id)
        if not server:
            raise HTTPException(status_code=404, detail="Server not found")
        with factory(server.base_url, server.api_key, server.trust_self_signed) as client:
            name = client.resolve_server_name() or ""

    updated = store.update_server(
        server_id,
        name=name,
        trust_self_signed=payload.trustSelfSigned,
        accent_color=payload.accentColor,
        api_key=payload.apiKey,
    )
    if not updated:
        raise HTTPException(status_code=404, detail="Server not found")
    return OkResponse()


@router.post(
    "/servers/{server_id}/activate",
    response_model=OkResponse,
    dependencies=[Depends(require_csrf)],
)
def activate_server(server_id: str, store: SecretStore = Depends(get_secret_store)):
    server_id = _resource_id(server_id, "Server id")
    if not store.set_active(server_id):
        raise HTTPException(status_code=404, detail="Server not found")
    return OkResponse()


@router.delete("/servers/{server_id}", response_model=OkResponse, dependencies=[Depends(require_csrf)])
def delete_server(server_id: str, store: SecretStore = Depends(get_secret_store)):
    server_id = _resource_id(server_id, "Server id")
    if not store.delete_server(server_id):
        raise HTTPException(status_code=404, detail="Server not found")
    return OkResponse()


@router.post("/servers/{server_id}/test-key", response_model=ConnectionTestResponse)
def test_server_key(
    server_id: str,
    payload: ServerApiKeyRequest,
    store: SecretStore = Depends(get_secret_store),
    factory: ClientFactory = Depends(get_client_factory),
):
    server_id = _resource_id(server_id, "Server id")
    server = store.load_by_id(server_id)
    if not server:
        raise HTTPException(status_code=404, detail="Server not found")
    with factory(server.base_url, payload.apiKey, server.trust_self_signed) as client:
        try:
            return client.test_connection()
        except UpstreamError as exc:
            raise _upstream_failure("API key test failed", exc, status_code=502)


# ----------------------------------------------------------------------
# App settings
# ----------------------------------------------------------------------


@router.get("/settings/app", response_model=AppSettingsResponse)
def get_app_settings(store: SecretStore = Depends(get_secret_store)):
    return store.get_settings().as_dict()


@router.put(
    "/settings/app",
    response_model=AppSettingsResponse,
    dependencies=[Depends(require_csrf)],
)
def update_app_settings(
    payload: AppSettingsUpdateRequest, store: SecretStore = Depends(get_secret_store)
):
    settings = store.update_settings(
        theme_mode=payload.themeMode, accent_color=payload.accentColor
    )
    return settings.as_dict()


# ----------------------------------------------------------------------
# Reads
# ----------------------------------------------------------------------


@router.get("/overview")
def overview(client: UnraidClient = Depends(get_active_client)):
    try:
        return client.fetch_overview()
    except UpstreamError as exc:
        raise _upstream_failure("Overview fetch failed", exc)


@router.get("/array")
def array(client: UnraidClient = Depends(get_active_client)):
    try:
        return client.fetch_array()
    except UpstreamError as exc:
        raise _upstream_failure("Array fetch failed", exc)


@router.get("/docker")
def docker(client: UnraidClient = Depends(get_active_client)):
    try:
        return client.fetch_docker()
    except UpstreamError as exc:
        raise _upstream_failure("Docker fetch failed", exc)


@router.get("/vms")
def vms(client: UnraidClient = Depends(get_active_client)):
    try:
        return client.fetch_vms()
    except UpstreamError as exc:
        raise _upstream_failure("VM fetch failed", exc)


@router.get("/shares")
def shares(client: UnraidClient = Depends(get_active_client)):
    try:
        return client.fetch_shares()
    except UpstreamError as exc:
        raise _upstream_failure("Shares fetch failed", exc)


@router.get("/docker/{container_id}/icon")
def docker_icon(container_id: str, client: UnraidClient = Depends(get_active_client)):
    icon = client.fetch_docker_icon(container_id)
    if not icon:
        return Response(status_code=404)
    content, content_type = icon
    return Response(
        content=content,
        media_type=content_type,
        headers={"cache-control": "public, max-age=300"},
    )


# ----------------------------------------------------------------------
# Write actions
# ----------------------------------------------------------------------


@router.post("/docker/{container_id}/{action}", response_model=OkResponse, dependencies=WRITE_GUARDS)
def docker_action(
    container_id: str,
    action: str,
    client: UnraidClient = Depends(get_active_client),
    audit: AuditLog = Depends(get_audit_log),
):
    action = _require_action(action, CONTAINER_ACTIONS)
    container_id = _resource_id(container_id, "Container id")

    def run(step: str):
        return lambda: client.run_container_action(container_id, step)

    try:
        if action == "restart":
            stop_then_start(
                lambda: audit.run("docker:restart:stop", container_id, run("stop")),
                lambda: audit.run("docker:restart:start", container_id, run("start")),
            )
        else:
            audit.run(f"docker:{action}", container_id, run(action))
    except UpstreamError as exc:
        raise _upstream_failure("Container action failed", exc)
    return OkResponse()


@router.post("/vms/{vm_id}/{action}", response_model=OkResponse, dependencies=WRITE_GUARDS)
def vm_action(
    vm_id: str,
    action: str,
    client: UnraidClient = Depends(get_active_client),
    audit: AuditLog = Depends(get_audit_log),
):
    action = _require_action(action, VM_ACTIONS)
    vm_id = _resource_id(vm_id, "VM id")

    def run(step: str):
        return lambda: client.run_vm_action(vm_id, step)

    try:
        if action == "restart":
            stop_then_start(
                lambda: audit.run("vm:restart:stop", vm_id, run("stop")),
                lambda: audit.run("vm:restart:start", vm_id, run("start")),
            )
        else:
            audit.run(f"vm:{action}", vm_id, run(action))
    except UpstreamError as exc:
        raise _upstream_failure("VM action failed", exc)
    return OkResponse()


@router.post("/array/{action}", response_model=OkResponse, dependencies=WRITE_GUARDS)
def array_action(
    action: str,
    client: UnraidClient = Depends(get_active_client),
    audit: AuditLog = Depends(get_audit_log),
):
    action = _require_action(action, ARRAY_ACTIONS)
    try:
        audit.run(f"array:{action}", "array", lambda: client.run_array_action(action))
    except UpstreamError as exc:
        raise _upstream_failure("Array action failed", exc)
    return OkResponse()


@router.post(
    "/notifications/{notification_id}/archive",
    response_model=OkResponse,
    dependencies=WRITE_GUARDS,
)
def archive_notification(
    notification_id: str,
    client: UnraidClient = Depends(get_active_client),
    audit: AuditLog = Depends(get_audit_log),
):
    notification_id = _resource_id(notification_id, "Notification id")
    try:
        audit.run(
            "notification:archive",
            notification_id,
            lambda: client.archive_notification(notification_id),
        )
    except UpstreamError as exc:
        raise _upstream_failure("Archive notification failed", exc)
    return OkResponse()

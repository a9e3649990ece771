"""
GraphQL gateway client for a single Unraid server.

Unraid's GraphQL schema differs between releases, so reads are issued as
ordered lists of query variants (richest first) and writes as ordered lists
of mutation candidates. ``first_success`` runs a list until one variant
succeeds and otherwise raises with every failure message.

Each client carries its own TLS trust policy and passes it on every request,
so clients for servers with different trust settings can be used
concurrently.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional, TypeVar
from urllib.parse import urlsplit

import requests

from unraid_bff import mappers, scopes

logger = logging.getLogger(__name__)

T = TypeVar("T")
V = TypeVar("V")

REQUEST_TIMEOUT = 15  # seconds
API_KEY_HEADER = "x-api-key"
FAILURE_DELIMITER = " | "
ICON_DIR = "/plugins/dynamix.docker.manager/images"

CONTAINER_ACTIONS = ("start", "stop", "restart")
VM_ACTIONS = ("start", "stop", "pause", "resume", "forceStop", "reboot", "reset", "restart")
ARRAY_ACTIONS = ("start", "stop")


class UpstreamError(Exception):
    """The Unraid API was unreachable or returned an error."""


@dataclass
class GraphQLResult:
    data: dict
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Mutation:
    query: str
    variables: dict = field(default_factory=dict)


def first_success(variants: Iterable[V], attempt: Callable[[V], T]) -> T:
    """
    Return the result of the first variant ``attempt`` accepts.

    Raises:
        UpstreamError: With all failure messages joined when every variant fails.
    """
    failures: list[str] = []
    for variant in variants:
        try:
            return attempt(variant)
        except UpstreamError as exc:
            logger.debug("Request variant failed: %s", exc)
            failures.append(str(exc) or "Unknown failure")
    raise UpstreamError(FAILURE_DELIMITER.join(failures) or "No request variants to try")


def stop_then_start(stop: Callable[[], None], start: Callable[[], None]) -> None:
    """
    Run a synthesized restart.

    The start step runs even when stop fails; nothing is rolled back.
    """
    failures = []
    for step in (stop, start):
        try:
            step()
        except UpstreamError as exc:
            failures.append(str(exc))
    if failures:
        raise UpstreamError(FAILURE_DELIMITER.join(failures))


# ----------------------------------------------------------------------
# Queries
# ----------------------------------------------------------------------

PING_QUERY = "query Ping { __typename }"

SERVER_NAME_QUERY = "query ResolveServerName { vars { name } info { os { hostname } } }"

OVERVIEW_CORE_QUERIES = [
    "query OverviewCore { vars { name version regTy } info { time cpu { brand cores threads speed } "
    "os { distro platform kernel hostname uptime } baseboard { manufacturer model } } "
    "metrics { cpu { percentTotal } memory { percentTotal used total free } } "
    "array { state capacity { kilobytes { used free total } } "
    "parityCheckStatus { date duration speed status progress errors running } } }",
    "query OverviewCoreFallback { vars { name version regTy } info { time cpu { brand cores threads speed } "
    "os { distro kernel hostname uptime } } "
    "metrics { cpu { percentTotal } memory { percentTotal used total free } } "
    "array { state capacity { kilobytes { used free total } } "
    "parityCheckStatus { status progress errors running } } }",
]

NOTIFICATIONS_OVERVIEW_QUERY = (
    "query OverviewNotificationsOverview { notifications { overview { unread { info warning alert total } } } }"
)
NOTIFICATIONS_LIST_QUERY = (
    "query OverviewNotificationsList { notifications { warningsAndAlerts "
    "{ id title importance timestamp description } } }"
)
NOTIFICATIONS_LIST_FALLBACK_QUERY = (
    "query OverviewNotificationsListFallback { notifications { "
    "list(filter: { type: UNREAD, offset: 0, limit: 25 }) { id title importance timestamp description } } }"
)
NETWORK_QUERY = "query OverviewNetwork { network { accessUrls { type name ipv4 ipv6 } } }"
UPS_QUERY = (
    "query OverviewUps { upsDevices { id name model status "
    "battery { chargeLevel estimatedRuntime health } "
    "power { inputVoltage outputVoltage loadPercentage } } }"
)

ARRAY_QUERIES = [
    "query Array { array { state capacity { kilobytes { used free total } } "
    "parityCheckStatus { status progress errors running } "
    "parities { id name device type fsType temp size fsUsed fsFree numErrors } "
    "disks { id name device type fsType temp size fsUsed fsFree numErrors } "
    "caches { id name device type fsType temp size fsUsed fsFree numErrors } } }",
    "query ArrayFallback { array { state capacity { kilobytes { used free total } } "
    "parityCheckStatus { status progress errors running } "
    "disks { id name fsType temp size fsUsed fsFree numErrors } "
    "caches { id name fsType temp size fsUsed fsFree numErrors } } }",
]

_DOCKER_FIELDS = (
    "labels status state created autoStart hostConfig { networkMode } "
    "ports { privatePort publicPort type }"
)
DOCKER_QUERIES = [
    f"query Docker {{ docker {{ containers {{ id names image iconUrl webUiUrl {_DOCKER_FIELDS} }} }} }}",
    f"query Docker {{ docker {{ containers {{ id names image iconUrl {_DOCKER_FIELDS} }} }} }}",
    f"query Docker {{ docker {{ containers {{ id names image webUiUrl {_DOCKER_FIELDS} }} }} }}",
    f"query Docker {{ docker {{ containers {{ id names image {_DOCKER_FIELDS} }} }} }}",
]

VMS_QUERY = "query Vms { vms { domains { id name state } } }"

SHARES_QUERY = (
    "query Shares { shares { id name allocator splitLevel size used free cache include exclude } }"
)

DOCKER_ICON_META_QUERY = (
    "query DockerIconMeta($id: PrefixedID!) { docker { container(id: $id) { names image labels } } }"
)


# ----------------------------------------------------------------------
# Icon candidates
# ----------------------------------------------------------------------


def sanitize_for_icon_path(value: str) -> str:
    value = value.lower()
    if value.startswith("/"):
        value = value[1:]
    return re.sub(r"[^a-z0-9._-]+", "-", value)


def icon_candidates(container: Mapping[str, Any]) -> list[str]:
    names = container.get("names") or []
    first_name = names[0] if names and isinstance(names[0], str) else ""
    image = container.get("image") if isinstance(container.get("image"), str) else ""
    image_name = image.split("/")[-1].split(":")[0]
    labels = container.get("labels") if isinstance(container.get("labels"), dict) else {}
    label_icon = labels.get(mappers.DOCKER_ICON_LABEL)

    name_slug = sanitize_for_icon_path(first_name.lstrip("/"))
    image_slug = sanitize_for_icon_path(image_name)
    candidates = [label_icon if isinstance(label_icon, str) else ""]
    if name_slug:
        candidates += [f"{ICON_DIR}/{name_slug}-icon.png", f"{ICON_DIR}/{name_slug}.png"]
    if image_slug:
        candidates += [f"{ICON_DIR}/{image_slug}-icon.png", f"{ICON_DIR}/{image_slug}.png"]
    if name_slug:
        candidates.append(f"{ICON_DIR}/{name_slug}.jpg")
    if image_slug:
        candidates.append(f"{ICON_DIR}/{image_slug}.jpg")
    return [candidate for candidate in candidates if candidate]


def _origin(url: str) -> tuple[str, str]:
    parts = urlsplit(url)
    return parts.scheme.lower(), parts.netloc.lower()


class UnraidClient:
    """Talks to ``<base_url>/graphql`` with one API key and trust policy."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        trust_self_signed: Optional[bool] = None,
        *,
        allow_self_signed_default: bool = True,
        timeout: float = REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        if trust_self_signed is None:
            trust_self_signed = allow_self_signed_default
        self.verify = not trust_self_signed
        self.timeout = timeout
        self.session = session or requests.Session()

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "UnraidClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def request_graphql(
        self, query: str, variables: Optional[dict] = None
    ) -> GraphQLResult:
        try:
            response = self.session.post(
                f"{self.base_url}/graphql",
                json={"query": query, "variables": variables or {}},
                headers={"content-type": "application/json", API_KEY_HEADER: self.api_key},
                timeout=self.timeout,
                verify=self.verify,
            )
        except requests.RequestException as exc:
            raise UpstreamError(f"Unable to reach Unraid GraphQL endpoint: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        errors = payload.get("errors") if isinstance(payload.get("errors"), list) else []
        messages = [
            error.get("message")
            for error in errors
            if isinstance(error, dict) and error.get("message")
        ]

        if not response.ok:
            detail = FAILURE_DELIMITER.join(messages)
            if detail:
                raise UpstreamError(f"Unraid request failed: {response.status_code} ({detail})")
            raise UpstreamError(f"Unraid request failed: {response.status_code}")
        if errors:
            raise UpstreamError(messages[0] if messages else "Unknown GraphQL error")
        if not isinstance(payload.get("data"), dict):
            raise UpstreamError("No data returned by Unraid GraphQL API.")
        return GraphQLResult(data=payload["data"], headers=response.headers)

    def query(self, query: str, variables: Optional[dict] = None) -> dict:
        return self.request_graphql(query, variables).data

    def _optional(self, query: str, variables: Optional[dict] = None) -> Optional[dict]:
        try:
            return self.query(query, variables)
        except UpstreamError as exc:
            logger.debug("Optional query failed, section omitted: %s", exc)
            return None

    def request_binary(self, url: str) -> Optional[tuple[bytes, str]]:
        """Fetch an image; anything but a 2xx image response yields None."""
        headers = {}
        if _origin(url) == _origin(self.base_url):
            headers[API_KEY_HEADER] = self.api_key
        try:
            response = self.session.get(
                url, headers=headers, timeout=self.timeout, verify=self.verify
            )
        except requests.RequestException as exc:
            logger.debug("Binary fetch failed for %s: %s", url, exc)
            return None
        if not response.ok:
            return None
        content_type = response.headers.get("content-type") or "application/octet-stream"
        if not content_type.lower().startswith("image/"):
            return None
        return response.content, content_type

    def absolute_url(self, url_or_path: str) -> str:
        if re.match(r"^https?://", url_or_path, flags=re.IGNORECASE):
            return url_or_path
        return f"{self.base_url}/{url_or_path.lstrip('/')}"

    def _mutate(self, candidates: list[Mutation]) -> None:
        first_success(candidates, lambda candidate: self.query(candidate.query, candidate.variables))

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def test_connection(self) -> dict:
        result = self.request_graphql(PING_QUERY)
        granted = scopes.dedupe(scopes.scopes_from_headers(result.headers) or [scopes.DEFAULT_SCOPE])
        return {
            "ok": True,
            "scopes": granted,
            "missingScopes": scopes.missing_recommended_scopes(granted),
            "canWrite": scopes.has_write_scopes(granted),
        }

    def resolve_server_name(self) -> Optional[str]:
        data = self._optional(SERVER_NAME_QUERY)
        if not data:
            return None
        variables = data.get("vars") if isinstance(data.get("vars"), dict) else {}
        name = variables.get("name")
        if isinstance(name, str) and name.strip():
            return name.strip()
        info = data.get("info") if isinstance(data.get("info"), dict) else {}
        os_info = info.get("os") if isinstance(info.get("os"), dict) else {}
        hostname = os_info.get("hostname")
        if isinstance(hostname, str) and hostname.strip():
            return hostname.strip()
        return None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def fetch_overview(self) -> dict:
        core = first_success(OVERVIEW_CORE_QUERIES, self.query)
        notifications_overview = self._optional(NOTIFICATIONS_OVERVIEW_QUERY)
        notifications_list = self._optional(NOTIFICATIONS_LIST_QUERY)

        notifications = None
        if notifications_overview or notifications_list:
            overview = ((notifications_overview or {}).get("notifications") or {}).get("overview")
            items = ((notifications_list or {}).get("notifications") or {}).get("warningsAndAlerts")
            if items is None:
                fallback = self._optional(NOTIFICATIONS_LIST_FALLBACK_QUERY)
                items = ((fallback or {}).get("notifications") or {}).get("list")
            notifications = {
                "notifications": {"overview": overview, "warningsAndAlerts": items or []}
            }

        return mappers.map_overview(
            {
                "core": core,
                "notifications": notifications,
                "network": self._optional(NETWORK_QUERY),
                "ups": self._optional(UPS_QUERY),
            }
        )

    def fetch_array(self) -> dict:
        return mappers.map_array(first_success(ARRAY_QUERIES, self.query))

    def fetch_docker(self) -> dict:
        return mappers.map_docker(first_success(DOCKER_QUERIES, self.query))

    def fetch_vms(self) -> dict:
        return mappers.map_vms(self.query(VMS_QUERY))

    def fetch_shares(self) -> dict:
        return mappers.map_shares(self.query(SHARES_QUERY))

    def fetch_docker_icon(self, container_id: str) -> Optional[tuple[bytes, str]]:
        meta = self._optional(DOCKER_ICON_META_QUERY, {"id": container_id})
        container = ((meta or {}).get("docker") or {}).get("container")
        if not isinstance(container, dict):
            return None
        for candidate in icon_candidates(container):
            icon = self.request_binary(self.absolute_url(candidate))
            if icon:
                return icon
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def run_container_action(self, container_id: str, action: str) -> None:
        if action not in ("start", "stop"):
            raise ValueError(f"Unsupported container action: {action}")
        self._mutate(
            [
                Mutation(
                    f"mutation DockerAction($id: PrefixedID!) {{ docker {{ {action}(id: $id) {{ id }} }} }}",
                    {"id": container_id},
                ),
                Mutation(
                    "mutation DockerLegacyAction($id: String!, $action: String!) "
                    "{ dockerContainerAction(id: $id, action: $action) { __typename } }",
                    {"id": container_id, "action": action},
                ),
                Mutation(
                    "mutation DockerLegacyAction($id: String!, $action: String!) "
                    "{ dockerAction(id: $id, action: $action) { __typename } }",
                    {"id": container_id, "action": action},
                ),
            ]
        )

    def run_vm_action(self, vm_id: str, action: str) -> None:
        if action not in VM_ACTIONS or action == "restart":
            raise ValueError(f"Unsupported VM action: {action}")
        legacy_action = "force-stop" if action == "forceStop" else action.lower()
        self._mutate(
            [
                Mutation(
                    f"mutation VmAction($id: PrefixedID!) {{ vm {{ {action}(id: $id) }} }}",
                    {"id": vm_id},
                ),
                Mutation(
                    "mutation VmAction($id: String!, $action: String!) "
                    "{ vmAction(id: $id, action: $action) { __typename } }",
                    {"id": vm_id, "action": legacy_action},
                ),
                Mutation(
                    "mutation VmAction($id: String!, $action: String!) "
                    "{ virtualMachineAction(id: $id, action: $action) { __typename } }",
                    {"id": vm_id, "action": legacy_action},
                ),
            ]
        )

    def run_array_action(self, action: str) -> None:
        if action not in ARRAY_ACTIONS:
            raise ValueError(f"Unsupported array action: {action}")
        self._mutate(
            [
                Mutation(
                    "mutation ArraySetState($desiredState: ArrayStateInputState!) "
                    "{ array { setState(input: { desiredState: $desiredState }) { id } } }",
                    {"desiredState": action.upper()},
                ),
                Mutation(
                    "mutation ArrayAction($action: String!) { arrayAction(action: $action) { __typename } }",
                    {"action": action},
                ),
            ]
        )

    def archive_notification(self, notification_id: str) -> None:
        self._mutate(
            [
                Mutation(
                    "mutation ArchiveNotification($id: PrefixedID!) { archiveNotification(id: $id) { id } }",
                    {"id": notification_id},
                )
            ]
        )

"""
Normalize raw Unraid GraphQL payloads into the stable shapes the UI renders.

Everything here is a pure function over arbitrary, partially-absent JSON.
Missing or malformed values fall back to defaults instead of raising.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Optional

BYTE_UNITS = ["B", "KB", "MB", "GB", "TB", "PB"]
MAX_LISTED_PORTS = 4

RUNNING_STATES = {"running"}
STOPPED_STATES = {"stopped", "exited", "shutoff"}

DOCKER_ICON_LABEL = "net.unraid.docker.icon"
DOCKER_WEBUI_LABEL = "net.unraid.docker.webui"


# ----------------------------------------------------------------------
# Scalars
# ----------------------------------------------------------------------


def to_number(value: Any, fallback: float = 0) -> float:
    """Accept a finite number or numeric string; anything else is ``fallback``."""
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else fallback
    if isinstance(value, str) and value.strip():
        text = value.strip()
        # int() and float() accept digit-group underscores
        if "_" in text:
            return fallback
        try:
            return int(text)
        except ValueError:
            pass
        try:
            parsed = float(text)
        except ValueError:
            return fallback
        return parsed if math.isfinite(parsed) else fallback
    return fallback


def to_string(value: Any, fallback: str = "-") -> str:
    return value if isinstance(value, str) and value else fallback


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> list:
    return value if isinstance(value, list) else []


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp_percent(value: float) -> int:
    return min(100, max(0, round_half_up(value)))


def format_bytes(value: float) -> str:
    current = max(0.0, float(value))
    unit_index = 0
    while current >= 1024 and unit_index < len(BYTE_UNITS) - 1:
        current /= 1024
        unit_index += 1
    rounded = f"{current:.0f}" if current >= 100 else f"{current:.1f}"
    return f"{rounded} {BYTE_UNITS[unit_index]}"


def format_kilobytes(value: Any) -> str:
    kilobytes = to_number(value, 0)
    if kilobytes <= 0:
        return "-"
    return format_bytes(kilobytes * 1024)


def format_epoch_seconds(value: Any) -> str:
    seconds = to_number(value, 0)
    if seconds <= 0:
        return "-"
    try:
        created = datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return "-"
    return created.strftime("%Y-%m-%d %H:%M:%S UTC")


def format_duration(value: Any) -> str:
    seconds = int(to_number(value, 0))
    if seconds <= 0:
        return "-"
    hours, remainder = divmod(seconds, 3600)
    minutes, rest = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {rest}s"
    return f"{rest}s"


def _format_uptime_seconds(total: float) -> str:
    if not math.isfinite(total) or total <= 0:
        return "-"
    total = int(total)
    days, remainder = divmod(total, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes = remainder // 60
    if days > 0:
        return f"{days}d {hours}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def _parse_timestamp(text: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_uptime(value: Any, now: Optional[datetime] = None) -> str:
    """
    Render uptime as ``Xd Yh``, ``Xh Ym`` or ``Xm``.

    ``value`` may be seconds, a numeric string, or an ISO boot timestamp
    that is diffed against ``now``.
    """
    if isinstance(value, bool):
        return "-"
    if isinstance(value, (int, float)):
        return _format_uptime_seconds(value)
    if not isinstance(value, str) or not value.strip():
        return "-"
    text = value.strip()
    seconds = to_number(text, math.nan)
    if not math.isnan(seconds):
        return _format_uptime_seconds(seconds)
    booted = _parse_timestamp(text)
    if booted is None:
        return "-"
    now = now or datetime.now(timezone.utc)
    return _format_uptime_seconds((now - booted).total_seconds())


def format_license_type(value: Any) -> str:
    raw = to_string(value, "-")
    if raw == "-":
        return raw
    return raw.lower().capitalize()


def format_disk_temp(value: Any) -> str:
    temp = to_number(value, math.nan)
    if math.isnan(temp) or temp <= 0:
        return "-"
    return f"{round_half_up(temp)} C"


def normalize_status(value: Any) -> str:
    """Collapse a source state into ``running``, ``stopped`` or ``unknown``."""
    state = value.strip().lower() if isinstance(value, str) else ""
    if state in RUNNING_STATES:
        return "running"
    if state in STOPPED_STATES:
        return "stopped"
    return "unknown"


def _parity(status: dict) -> dict:
    return {
        "status": to_string(status.get("status"), "-"),
        "progress": clamp_percent(to_number(status.get("progress"))),
        "errors": to_number(status.get("errors")),
        "running": bool(status.get("running")),
    }


# ----------------------------------------------------------------------
# Overview
# ----------------------------------------------------------------------


def _notification_type(importance: str) -> str:
    importance = importance.lower()
    if importance in ("alert", "info"):
        return importance
    return "warning"


def map_overview(data: Any) -> dict:
    """
    Map the overview payload.

    ``data`` is either ``{core, notifications, network, ups}`` as assembled by
    the client, or a bare core payload (``{info, metrics, array, vars}``).
    """
    record = _dict(data)
    core = _dict(record.get("core"))
    info = _dict(core.get("info") or record.get("info"))
    metrics = _dict(core.get("metrics") or record.get("metrics"))
    array = _dict(core.get("array") or record.get("array"))
    variables = _dict(core.get("vars") or record.get("vars"))
    capacity = _dict(_dict(array.get("capacity")).get("kilobytes"))
    parity_status = _dict(array.get("parityCheckStatus"))

    notifications = _dict(_dict(record.get("notifications")).get("notifications"))
    unread = _dict(_dict(notifications.get("overview")).get("unread"))
    warnings_and_alerts = _list(
        notifications.get("warningsAndAlerts")
        if notifications.get("warningsAndAlerts") is not None
        else notifications.get("list")
    )
    access_urls = _list(_dict(_dict(record.get("network")).get("network")).get("accessUrls"))
    ups_devices = _list(_dict(record.get("ups")).get("upsDevices"))

    cpu = _dict(info.get("cpu"))
    os_info = _dict(info.get("os"))
    baseboard = _dict(info.get("baseboard"))
    cpu_metrics = _dict(metrics.get("cpu"))
    memory_metrics = _dict(metrics.get("memory"))

    cpu_percent = clamp_percent(
        to_number(cpu_metrics.get("percentTotal"), to_number(info.get("cpuUsage")))
    )
    memory_percent = clamp_percent(
        to_number(memory_metrics.get("percentTotal"), to_number(info.get("memoryUsage")))
    )
    memory_used = to_number(memory_metrics.get("used"), to_number(info.get("memoryUsed")))
    memory_total = to_number(memory_metrics.get("total"), to_number(info.get("memoryTotal")))
    memory_free = to_number(memory_metrics.get("free"))
    used_kb = to_number(capacity.get("used"))
    free_kb = to_number(capacity.get("free"))
    total_kb = to_number(capacity.get("total"))

    motherboard = " ".join(
        [to_string(baseboard.get("manufacturer"), ""), to_string(baseboard.get("model"), "")]
    ).strip()

    return {
        "cpuPercent": cpu_percent,
        "cpuModel": to_string(cpu.get("brand"), to_string(info.get("cpuModel"), "Unknown CPU")),
        "cpuCores": to_number(cpu.get("cores")),
        "cpuThreads": to_number(cpu.get("threads")),
        "cpuSpeedGhz": to_number(cpu.get("speed")),
        "memoryPercent": memory_percent,
        "memoryUsed": format_bytes(memory_used) if memory_used > 0 else "-",
        "memoryTotal": format_bytes(memory_total) if memory_total > 0 else "-",
        "memoryFree": format_bytes(memory_free) if memory_free > 0 else "-",
        "serverName": to_string(variables.get("name"), "Unraid"),
        "licenseType": format_license_type(variables.get("regTy")),
        "unraidVersion": to_string(variables.get("version"), "-"),
        "kernelVersion": to_string(os_info.get("kernel"), "-"),
        "osDistro": to_string(os_info.get("distro"), "-"),
        "osType": to_string(os_info.get("platform"), "-"),
        "hostname": to_string(os_info.get("hostname"), "-"),
        "motherboard": motherboard or "-",
        "uptime": format_uptime(os_info.get("uptime")),
        "serverTime": to_string(info.get("time"), "-"),
        "arrayState": to_string(array.get("state"), "-"),
        "arrayUsagePercent": clamp_percent(used_kb / total_kb * 100) if total_kb > 0 else 0,
        "arrayUsed": format_kilobytes(used_kb),
        "arrayFree": format_kilobytes(free_kb),
        "arrayTotal": format_kilobytes(total_kb),
        "parity": _parity(parity_status),
        "lastParityCheck": {
            "date": to_string(parity_status.get("date"), "-"),
            "duration": format_duration(parity_status.get("duration")),
            "speed": to_string(parity_status.get("speed"), "-"),
        },
        "ups": {"devices": [_map_ups_device(_dict(device)) for device in ups_devices]},
        "unreadNotifications": {
            "info": to_number(unread.get("info")),
            "warning": to_number(unread.get("warning")),
            "alert": to_number(unread.get("alert")),
            "total": to_number(unread.get("total")),
        },
        "accessUrls": [
            {
                "type": to_string(item.get("type")),
                "name": to_string(item.get("name")),
                "ipv4": to_string(item.get("ipv4")),
                "ipv6": to_string(item.get("ipv6")),
            }
            for item in map(_dict, access_urls)
        ],
        "notifications": [
            {
                "id": to_string(item.get("id")),
                "type": _notification_type(to_string(item.get("importance"), "warning")),
                "title": to_string(item.get("title"), "Notification"),
                "category": to_string(item.get("importance"), "warning"),
                "date": to_string(
                    item.get("timestamp"), datetime.now(timezone.utc).isoformat()
                ),
                "snippet": to_string(item.get("description"), ""),
            }
            for item in map(_dict, warnings_and_alerts)
        ],
    }


def _map_ups_device(device: dict) -> dict:
    battery = _dict(device.get("battery"))
    power = _dict(device.get("power"))
    return {
        "id": to_string(device.get("id")),
        "name": to_string(device.get("name")),
        "model": to_string(device.get("model")),
        "status": to_string(device.get("status")),
        "batteryLevel": to_number(battery.get("chargeLevel")),
        "estimatedRuntimeSeconds": to_number(battery.get("estimatedRuntime")),
        "batteryHealth": to_string(battery.get("health")),
        "inputVoltage": to_number(power.get("inputVoltage")),
        "outputVoltage": to_number(power.get("outputVoltage")),
        "loadPercentage": to_number(power.get("loadPercentage")),
    }


# ----------------------------------------------------------------------
# Array
# ----------------------------------------------------------------------


def classify_device(source_kind: Optional[str], api_type: Any) -> str:
    """
    Tag a device as ``parity``, ``array`` or ``pool``.

    The list the device came from wins over its ``type`` field.
    """
    if source_kind:
        return source_kind
    kind = to_string(api_type, "").upper()
    if kind == "PARITY":
        return "parity"
    if kind == "CACHE":
        return "pool"
    return "array"


def _map_device(item: dict, source_kind: Optional[str]) -> dict:
    role = classify_device(source_kind, item.get("type"))
    size = to_number(item.get("size"))
    used = to_number(item.get("used"), to_number(item.get("fsUsed")))
    free = to_number(item.get("free"), to_number(item.get("fsFree")))
    fallback_usage = used / size * 100 if size > 0 else 0
    return {
        "id": to_string(item.get("id")),
        "role": role,
        "diskType": "pool" if role == "pool" else "array",
        "isParity": role == "parity",
        "pool": to_string(item.get("pool"), role),
        "filesystem": to_string(item.get("filesystem"), to_string(item.get("fsType"), "unknown")),
        "temp": format_disk_temp(item.get("temp")),
        "size": format_bytes(size * 1024),
        "used": format_bytes(used * 1024),
        "free": format_bytes(free * 1024),
        "errors": to_number(item.get("errors"), to_number(item.get("numErrors"))),
        "usagePercent": clamp_percent(to_number(item.get("usagePercent"), fallback_usage)),
    }


def map_array(data: Any) -> dict:
    record = _dict(data)
    root = _dict(record.get("array"))
    capacity = _dict(_dict(root.get("capacity")).get("kilobytes"))
    used_kb = to_number(capacity.get("used"))
    free_kb = to_number(capacity.get("free"))
    total_kb = to_number(capacity.get("total"))

    structural = [
        ("parity", _list(root.get("parities"))),
        ("array", _list(root.get("disks"))),
        ("pool", _list(root.get("caches"))),
    ]
    if any(items for _, items in structural):
        sources = [(kind, item) for kind, items in structural for item in items]
    else:
        flat = record.get("devices") or record.get("arrayDevices") or root.get("devices")
        sources = [(None, item) for item in _list(flat)]

    return {
        "state": to_string(root.get("state"), "-"),
        "capacity": {
            "used": format_kilobytes(used_kb),
            "free": format_kilobytes(free_kb),
            "total": format_kilobytes(total_kb),
            "usagePercent": clamp_percent(used_kb / total_kb * 100) if total_kb > 0 else 0,
        },
        "parity": _parity(_dict(root.get("parityCheckStatus"))),
        "devices": [_map_device(_dict(item), kind) for kind, item in sources],
    }


# ----------------------------------------------------------------------
# Docker
# ----------------------------------------------------------------------


def _port_value(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and math.isfinite(value) and value > 0:
        return str(round_half_up(value))
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def summarize_ports(ports: list) -> str:
    parts = []
    for port in map(_dict, ports[:MAX_LISTED_PORTS]):
        private = _port_value(port.get("privatePort"))
        public = _port_value(port.get("publicPort"))
        protocol = to_string(port.get("type"), "tcp").lower()
        if public and private:
            parts.append(f"{public}->{private}/{protocol}")
        elif public or private:
            parts.append(f"{public or private}/{protocol}")
    summary = ", ".join(parts)
    if not summary:
        return "-"
    return f"{summary}..." if len(ports) > MAX_LISTED_PORTS else summary


def _map_container(item: dict) -> dict:
    status = normalize_status(to_string(item.get("state"), "unknown"))
    if status == "unknown":
        status = normalize_status(item.get("status"))
    names = _list(item.get("names"))
    preferred_name = to_string(names[0] if names else None, "").lstrip("/")
    labels = _dict(item.get("labels"))
    host_config = _dict(item.get("hostConfig"))
    return {
        "id": to_string(item.get("id")),
        "name": preferred_name or to_string(item.get("name")),
        "image": to_string(item.get("image")),
        "iconUrl": to_string(item.get("iconUrl"), to_string(labels.get(DOCKER_ICON_LABEL), "")),
        "network": to_string(item.get("network"), to_string(host_config.get("networkMode"), "bridge")),
        "endpoint": to_string(
            item.get("webUiUrl"),
            to_string(item.get("endpoint"), to_string(labels.get(DOCKER_WEBUI_LABEL))),
        ),
        "ports": summarize_ports(_list(item.get("ports"))),
        "createdAt": format_epoch_seconds(item.get("created")),
        "autoStart": bool(item.get("autoStart")),
        "updateAvailable": bool(item.get("isUpdateAvailable")),
        "rebuildReady": bool(item.get("isRebuildReady")),
        "stateLabel": to_string(item.get("state"), "UNKNOWN"),
        "status": status,
    }


def map_docker(data: Any) -> dict:
    record = _dict(data)
    source = (
        record.get("containers")
        or record.get("dockerContainers")
        or _dict(record.get("docker")).get("containers")
    )
    containers = [_map_container(_dict(item)) for item in _list(source)]
    running = sum(1 for item in containers if item["status"] == "running")
    return {
        "summary": {
            "running": running,
            "stopped": max(0, len(containers) - running),
            "updatesAvailable": sum(
                1 for item in containers if item["updateAvailable"] or item["rebuildReady"]
            ),
        },
        "containers": containers,
    }


# ----------------------------------------------------------------------
# VMs
# ----------------------------------------------------------------------


def map_vms(data: Any) -> dict:
    record = _dict(data)
    vms = record.get("vms")
    if isinstance(vms, list):
        source = vms
    else:
        source = (
            record.get("virtualMachines")
            or _dict(record.get("virtualization")).get("vms")
            or _dict(vms).get("domains")
        )

    mapped = []
    summary = {"running": 0, "stopped": 0, "paused": 0, "other": 0}
    for item in map(_dict, _list(source)):
        raw = to_string(item.get("status"), to_string(item.get("state"), "unknown"))
        vm = {
            "id": to_string(item.get("id")),
            "name": to_string(item.get("name")),
            "status": normalize_status(raw),
            "stateLabel": to_string(item.get("state"), to_string(item.get("status"), "UNKNOWN")),
        }
        if vm["status"] in ("running", "stopped"):
            summary[vm["status"]] += 1
        elif vm["stateLabel"].upper() == "PAUSED":
            summary["paused"] += 1
        else:
            summary["other"] += 1
        mapped.append(vm)
    return {"summary": summary, "vms": mapped}


# ----------------------------------------------------------------------
# Shares
# ----------------------------------------------------------------------


def _disk_list(value: Any) -> list[str]:
    return [item for item in _list(value) if isinstance(item, str) and item.strip()]


def map_shares(data: Any) -> dict:
    shares = []
    for share in map(_dict, _list(_dict(data).get("shares"))):
        size = to_number(share.get("size"))
        used = to_number(share.get("used"))
        free = to_number(share.get("free"))
        denominator = size if size > 0 else used + free
        include = _disk_list(share.get("include"))
        exclude = _disk_list(share.get("exclude"))
        if include:
            location = f"Include: {', '.join(include)}"
        elif exclude:
            location = f"Exclude: {', '.join(exclude)}"
        else:
            location = "All disks"
        cache = share.get("cache")
        shares.append(
            {
                "id": str(share.get("id") or "-"),
                "name": str(share.get("name") or "-"),
                "allocator": str(share.get("allocator") or "-"),
                "splitLevel": str(share.get("splitLevel") or "-"),
                "size": format_kilobytes(size),
                "used": format_kilobytes(used),
                "free": format_kilobytes(free),
                "cached": "-" if cache is None else ("yes" if cache else "no"),
                "usagePercent": clamp_percent(used / denominator * 100) if denominator > 0 else 0,
                "location": location,
            }
        )
    return {"shares": shares}

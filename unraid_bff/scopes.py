"""
Write-permission inference from Unraid API key scopes.

Unraid authorizes with resource/action pairs (``CREATE_ANY``,
``UPDATE_ANY``, ``DELETE_ANY`` and ``_OWN`` variants) rather than a single
"write" scope, so write capability has to be inferred.
"""

from __future__ import annotations

from typing import Iterable, Mapping, Optional

DEFAULT_SCOPE = "read:monitoring"

RECOMMENDED_READ_SCOPES = ["read:monitoring", "read:docker", "read:vms", "read:array"]

# Patterns that already grant each recommended read capability.
SATISFIES_READ = {
    "read:monitoring": ["read:monitoring", "monitoring", "info", "read_any", "read_own"],
    "read:docker": ["read:docker", "docker", "read_any", "read_own"],
    "read:vms": ["read:vms", "vms", "read_any", "read_own"],
    "read:array": ["read:array", "array", "read_any", "read_own"],
}

# Keys with full read access may only report a monitoring/info scope.
IMPLIES_FULL_READ = ["read:monitoring", "monitoring", "info", "read_any", "read_own"]

WRITE_ACTIONS = [
    "create_any",
    "create_own",
    "update_any",
    "update_own",
    "delete_any",
    "delete_own",
]

SCOPE_HEADERS = ("x-unraid-scopes", "x-api-scopes", "x-scopes")


def is_uncertain(scopes: Iterable[str]) -> bool:
    """True when the API gave us no real scope information."""
    scopes = list(scopes)
    if not scopes:
        return True
    return len(scopes) == 1 and scopes[0].lower() == DEFAULT_SCOPE


def has_write_scopes(scopes: Iterable[str]) -> bool:
    """
    Decide whether a key may run write actions.

    Uncertain scope sets are treated as writable so a missing scope header
    does not disable every control in the UI.
    """
    scopes = list(scopes)
    if is_uncertain(scopes):
        return True
    lowered = [scope.lower() for scope in scopes]
    return any(
        "admin" in scope
        or "write" in scope
        or any(action in scope for action in WRITE_ACTIONS)
        for scope in lowered
    )


def missing_recommended_scopes(scopes: Iterable[str]) -> list[str]:
    lowered = [scope.lower() for scope in scopes]
    if any(pattern in scope for scope in lowered for pattern in IMPLIES_FULL_READ):
        return []
    return [
        label
        for label in RECOMMENDED_READ_SCOPES
        if not any(pattern in scope for scope in lowered for pattern in SATISFIES_READ[label])
    ]


def dedupe(scopes: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(scopes))


def scopes_from_headers(headers: Mapping[str, str]) -> list[str]:
    value: Optional[str] = None
    for name in SCOPE_HEADERS:
        value = headers.get(name)
        if value:
            break
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]

"""Utilities to normalize incoming heartbeat fields."""

from __future__ import annotations

import re
from dataclasses import replace
from typing import Optional

from .models import Heartbeat

_WHITESPACE = re.compile(r"\s{2,}")

# e.g. "wakatime/13.0.7 (Linux-5.4.0-x86_64-with-glibc2.29) Python3.8.0.final.0 vscode/1.42.1 vscode-wakatime/4.0.0"
_USER_AGENT_PATTERN = re.compile(
    r"^(?:wakatime|codetime)/[\w.+-]+\s\((?P<os>[A-Za-z]+)[^)]*\)\s.*?(?P<editor>[\w.]+)-(?:wakatime|codetime)/\S+",
    re.IGNORECASE,
)

_OS_NAMES = {
    "linux": "Linux",
    "darwin": "Darwin",
    "macos": "Darwin",
    "windows": "Windows",
    "win32": "Windows",
}

_FILE_PREFIXES = ("file://",)


def normalize_name(value: Optional[str]) -> Optional[str]:
    """Trim and collapse whitespace; empty values become ``None``."""
    if value is None:
        return None
    normalized = _WHITESPACE.sub(" ", value).strip()
    return normalized or None


def normalize_entity(entity: str, entity_type: str) -> str:
    normalized = entity.strip()
    if entity_type != "file":
        return normalized
    for prefix in _FILE_PREFIXES:
        if normalized.startswith(prefix):
            normalized = normalized[len(prefix):]
            break
    return normalized.replace("\\", "/")


def parse_user_agent(user_agent: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Extract ``(operating_system, editor)`` from a plugin user agent."""
    if not user_agent:
        return None, None
    match = _USER_AGENT_PATTERN.match(user_agent.strip())
    if not match:
        return None, None
    os_name = match.group("os")
    return _OS_NAMES.get(os_name.lower(), os_name), match.group("editor")


def normalize_heartbeat(heartbeat: Heartbeat) -> Heartbeat:
    entity_type = (heartbeat.entity_type or "file").strip().lower()
    return replace(
        heartbeat,
        entity=normalize_entity(heartbeat.entity, entity_type),
        entity_type=entity_type,
        project=normalize_name(heartbeat.project),
        language=normalize_name(heartbeat.language),
        editor=normalize_name(heartbeat.editor),
        operating_system=normalize_name(heartbeat.operating_system),
        machine=normalize_name(heartbeat.machine),
        origin=normalize_name(heartbeat.origin),
        branch=normalize_name(heartbeat.branch),
        category=normalize_name(heartbeat.category),
    )

"""
Queue metadata codec.

Dispatch parameters live in a delimited block appended to the bead
description:

    <user text>

    ---gt:queue:v1---
    target_rig: gastown
    formula: mol-polecat-work
    var: issue=gt-abc
    var: priority=high
    enqueued_at: 2026-01-01T00:00:00+00:00

One ``key: value`` per line, ``var`` repeats, no escaping. Everything after
the single space following the colon is the value, surrounding whitespace
included; embedded newlines are flattened to spaces. Unknown keys are
ignored so older dispatchers can read blocks written by newer ones.
"""

from __future__ import annotations

import logging

from features.queue.models import QueueMetadata

log = logging.getLogger(__name__)

DELIMITER = "---gt:queue:v1---"

# key → (attribute, kind); order here is the order format_metadata emits
_FIELDS: dict[str, tuple[str, str]] = {
    "target_rig": ("target_rig", "str"),
    "formula": ("formula", "str"),
    "args": ("args", "str"),
    "var": ("vars", "list"),
    "enqueued_at": ("enqueued_at", "str"),
    "merge": ("merge", "str"),
    "convoy": ("convoy", "str"),
    "base_branch": ("base_branch", "str"),
    "no_merge": ("no_merge", "bool"),
    "hook_raw_bead": ("hook_raw_bead", "bool"),
    "owned": ("owned", "bool"),
    "account": ("account", "str"),
    "agent": ("agent", "str"),
    "mode": ("mode", "str"),
    "dispatch_failures": ("dispatch_failures", "int"),
    "last_failure": ("last_failure", "str"),
}

_TRUE_VALUES = {"true", "1", "yes"}


def _one_line(value: str) -> str:
    return " ".join(value.splitlines())


def format_metadata(meta: QueueMetadata) -> str:
    """Render the metadata block (delimiter line first, no trailing newline)."""
    lines = [DELIMITER]
    for key, (attr, kind) in _FIELDS.items():
        value = getattr(meta, attr)
        if kind == "list":
            lines.extend(f"{key}: {_one_line(v)}" for v in value if v)
        elif kind == "bool":
            if value:
                lines.append(f"{key}: true")
        elif kind == "int":
            if value:
                lines.append(f"{key}: {value}")
        elif value:
            lines.append(f"{key}: {_one_line(value)}")
    return "\n".join(lines)


def with_metadata(description: str, meta: QueueMetadata) -> str:
    """Replace any existing block in description with a freshly formatted one."""
    base = strip_metadata(description or "")
    block = format_metadata(meta)
    if not base.strip():
        return block
    return f"{base}\n\n{block}"


def parse_metadata(description: str) -> QueueMetadata | None:
    """Decode the metadata block, or None if the description has none.

    Bad individual values fall back to their defaults instead of failing
    the whole block.
    """
    if not description:
        return None
    idx = description.find(DELIMITER)
    if idx < 0:
        return None

    meta = QueueMetadata()
    body = description[idx + len(DELIMITER):]
    for line in body.splitlines():
        if not line.strip():
            continue
        if line.strip() == DELIMITER:
            break
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = key.strip()
        # Only the separator space is syntax; the rest of the value is data
        if value.startswith(" "):
            value = value[1:]
        field_def = _FIELDS.get(key)
        if field_def is None:
            continue
        attr, kind = field_def
        if kind == "list":
            if value.strip():
                getattr(meta, attr).append(value)
        elif kind == "bool":
            setattr(meta, attr, value.strip().lower() in _TRUE_VALUES)
        elif kind == "int":
            try:
                setattr(meta, attr, max(0, int(value.strip())))
            except ValueError:
                log.debug("Ignoring malformed %s value %r", key, value)
                setattr(meta, attr, 0)
        else:
            setattr(meta, attr, value)
    return meta


def strip_metadata(description: str) -> str:
    """Remove the metadata block, keeping any user text before it."""
    if not description:
        return ""
    idx = description.find(DELIMITER)
    if idx < 0:
        return description
    return description[:idx].rstrip("\n")

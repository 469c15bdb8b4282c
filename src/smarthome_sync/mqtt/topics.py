"""Topic templating and its inverse.

Scheme v1: ``{base}/{namespace}/{device_id}/{channel}/{field}``. The scheme is
shared with device firmware and identical for both brokers apart from ``base``,
so a binding keeps working unmodified after a broker switch. An empty
namespace drops its segment.
"""

from __future__ import annotations

import re

__all__ = [
    "FIELD_TOPIC_TEMPLATE",
    "SCHEME_VERSION",
    "bridge_status_topic",
    "compile_topic_pattern",
    "match_topic",
    "placeholders",
    "render_topic",
]

SCHEME_VERSION = "v1"
FIELD_TOPIC_TEMPLATE = "{base}/{namespace}/{device_id}/{channel}/{field}"

_PLACEHOLDER = re.compile(r"\{(\w+)\}")
_WILDCARDS = frozenset("+#")


def placeholders(template: str) -> list[str]:
    return _PLACEHOLDER.findall(template)


def render_topic(template: str, /, **params: str) -> str:
    """Substitute the given placeholders, leaving unknown ones in place.

    Empty segments are removed, so ``namespace=""`` yields ``base/device/...``.

    Raises:
        ValueError: A parameter contains an MQTT wildcard.

    """
    for name, value in params.items():
        if _WILDCARDS.intersection(value):
            msg = f"topic parameter {name}={value!r} contains an MQTT wildcard"
            raise ValueError(msg)

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1)
        return params[name] if name in params else match.group(0)

    rendered = _PLACEHOLDER.sub(_sub, template)
    return "/".join(segment for segment in rendered.split("/") if segment)


def compile_topic_pattern(template: str) -> re.Pattern[str]:
    """Compile a template into a regex; each placeholder matches one topic level."""
    parts: list[str] = []
    pos = 0
    for match in _PLACEHOLDER.finditer(template):
        parts.append(re.escape(template[pos : match.start()]))
        parts.append(f"(?P<{match.group(1)}>[^/]+)")
        pos = match.end()
    parts.append(re.escape(template[pos:]))
    return re.compile("^" + "".join(parts) + "$")


def match_topic(pattern: re.Pattern[str] | str, topic: str) -> dict[str, str] | None:
    """Return the placeholder values if *topic* matches, else None."""
    if isinstance(pattern, str):
        pattern = compile_topic_pattern(pattern)
    match = pattern.match(topic)
    return match.groupdict() if match else None


def bridge_status_topic(base: str, controller_namespace: str) -> str:
    return render_topic("{base}/{namespace}/bridge/status", base=base, namespace=controller_namespace)

"""Matching primitives used by the resolver stages.

Pure functions: no store access, no logging. Each stage in
``memgate.core.resolver`` composes these over a manifest snapshot.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from memgate.stores.manifest import ManifestSnapshot, local_name

_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_SEPARATOR_RE = re.compile(r"[\s_\-.:/]+")

_FORMAT_PATTERNS = {
    "email": re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$"),
    "date": re.compile(r"^\d{4}-\d{2}-\d{2}$"),
    "date-time": re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?$"),
    "time": re.compile(r"^\d{2}:\d{2}(:\d{2})?$"),
    "uri": re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*:\S+$"),
    "phone": re.compile(r"^\+?[\d\s().-]{7,}$"),
}

_CANONICAL_ANNOTATIONS = ("x-canonical-type", "$ref", "$id")


def name_tokens(name: str) -> List[str]:
    """Split ``seatPreference`` / ``seat_pref`` / ``Seat-Pref`` into lowercase tokens."""
    spaced = _CAMEL_BOUNDARY_RE.sub(" ", str(name))
    return [token.lower() for token in _SEPARATOR_RE.split(spaced) if token]


def normalize_name(name: str) -> str:
    """Case- and separator-insensitive form of a field name."""
    return "".join(name_tokens(name))


def iter_requested_fields(requested_schema: Mapping[str, Any]) -> List[Tuple[str, Dict[str, Any]]]:
    """Flatten a requested schema into ``(key, fragment)`` pairs in declaration order.

    Accepts a JSON-Schema object (``{"type": "object", "properties": {...}}``)
    or a flat mapping of ``key -> type name`` / ``key -> fragment``.
    """
    if not isinstance(requested_schema, Mapping):
        raise ValueError("requested schema must be a mapping")
    properties = requested_schema.get("properties")
    if isinstance(properties, Mapping):
        source = properties
    else:
        source = requested_schema
    fields: List[Tuple[str, Dict[str, Any]]] = []
    for key, fragment in source.items():
        if isinstance(fragment, str):
            fields.append((str(key), {"type": fragment}))
        elif isinstance(fragment, Mapping):
            fields.append((str(key), dict(fragment)))
        else:
            fields.append((str(key), {}))
    return fields


def declared_canonical_type(fragment: Mapping[str, Any]) -> Optional[str]:
    for key in _CANONICAL_ANNOTATIONS:
        value = fragment.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def names_for_entry(type_id: str, snapshot: ManifestSnapshot) -> Set[str]:
    names = {type_id, local_name(type_id)}
    names |= set(snapshot.aliases_of(type_id))
    return names


def is_alias_match(
    requested_key: str,
    type_id: str,
    snapshot: ManifestSnapshot,
    agent_aliases: Iterable[str] = (),
) -> bool:
    """Bidirectional alias check.

    Matches when the requested key is a manifest alias of the stored type,
    when the stored id is an alias of the requested key's type, or when an
    agent-declared alias of the key names the stored type.
    """
    stored_names = snapshot.aliases_of(type_id)
    if requested_key in stored_names and requested_key not in {type_id, local_name(type_id)}:
        return True
    requested_type = snapshot.canonicalize(requested_key)
    if requested_type and type_id != requested_key and type_id in snapshot.aliases_of(requested_type):
        return True
    for alias in agent_aliases:
        if alias in {type_id, local_name(type_id)} or alias in stored_names:
            return True
    return False


def canonical_for_request(
    requested_key: str,
    fragment: Mapping[str, Any],
    snapshot: ManifestSnapshot,
    agent_aliases: Iterable[str] = (),
) -> Set[str]:
    """Canonical ids the requested field resolves to through the registry."""
    resolved: Set[str] = set()
    declared = declared_canonical_type(fragment)
    for name in [declared, requested_key, *agent_aliases]:
        if not name:
            continue
        canonical = snapshot.canonicalize(name)
        if canonical is None and "/" in name:
            canonical = snapshot.canonicalize(local_name(name))
        if canonical:
            resolved.add(canonical)
    return resolved


def is_normalized_match(requested_key: str, type_id: str, snapshot: ManifestSnapshot) -> bool:
    wanted = normalize_name(requested_key)
    if not wanted:
        return False
    return any(normalize_name(name) == wanted for name in names_for_entry(type_id, snapshot))


# ---------------------------------------------------------------------------
# Schema-shape inference
# ---------------------------------------------------------------------------

def _type_matches(expected: Any, value: Any) -> bool:
    if expected is None:
        return True
    if isinstance(expected, list):
        return any(_type_matches(item, value) for item in expected)
    if expected == "string":
        return isinstance(value, str)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "array":
        return isinstance(value, (list, tuple))
    if expected == "object":
        return isinstance(value, Mapping)
    if expected == "null":
        return value is None
    return False


def is_discriminating(fragment: Mapping[str, Any]) -> bool:
    """True when the fragment constrains more than the bare JSON type."""
    if "enum" in fragment or "const" in fragment:
        return True
    if "pattern" in fragment or "format" in fragment:
        return True
    return bool(fragment.get("required")) or bool(fragment.get("properties"))


def is_shape_match(fragment: Mapping[str, Any], value: Any) -> bool:
    """Type/enum compatibility between a requested fragment and a stored value."""
    if not fragment or not is_discriminating(fragment):
        return False
    if not _type_matches(fragment.get("type"), value):
        return False
    if "const" in fragment and value != fragment["const"]:
        return False
    if "enum" in fragment:
        options = fragment.get("enum") or []
        if isinstance(value, str):
            lowered = {str(option).lower() for option in options}
            if value.lower() not in lowered:
                return False
        elif value not in options:
            return False
    if "pattern" in fragment:
        if not isinstance(value, str):
            return False
        try:
            if re.search(fragment["pattern"], value) is None:
                return False
        except re.error:
            return False
    if "format" in fragment:
        matcher = _FORMAT_PATTERNS.get(str(fragment["format"]).lower())
        if matcher is None or not isinstance(value, str) or not matcher.match(value):
            return False
    if isinstance(value, Mapping):
        required = fragment.get("required") or []
        if any(key not in value for key in required):
            return False
        properties = fragment.get("properties") or {}
        if properties and not required:
            # at least one declared property must be present and well-typed
            present = [
                key for key, sub in properties.items()
                if key in value and _type_matches((sub or {}).get("type"), value[key])
            ]
            if not present:
                return False
    elif fragment.get("required") or fragment.get("properties"):
        return False
    return True


def semantic_text_for_request(requested_key: str, fragment: Mapping[str, Any]) -> str:
    parts = [" ".join(name_tokens(requested_key))]
    for key in ("title", "description"):
        if fragment.get(key):
            parts.append(str(fragment[key]))
    return " ".join(parts)


def semantic_text_for_type(type_id: str, snapshot: ManifestSnapshot) -> str:
    mtype = snapshot.get(type_id)
    parts = [" ".join(name_tokens(local_name(type_id)))]
    if mtype is not None and mtype.title:
        parts.append(mtype.title)
    return " ".join(parts)

"""Manifest Registry: canonical type URIs, aliases and schemas per capability.

The registry is read-only to the core. Updates arrive as whole documents
through :meth:`ManifestRegistry.reload`, which swaps in a new immutable
snapshot; in-flight requests keep the snapshot they started with.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from memgate.core.types import ManifestType
from memgate.exceptions import InvalidDocument

logger = logging.getLogger(__name__)


class ManifestTypeModel(BaseModel):
    id: str
    title: str = ""
    aliases: List[str] = Field(default_factory=list)
    schema_: Dict[str, Any] = Field(default_factory=dict, alias="schema")

    @field_validator("id")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        v = str(v).strip()
        if not v:
            raise ValueError("type id must not be empty")
        return v


class CapabilityModel(BaseModel):
    scope: Optional[str] = None
    types: List[ManifestTypeModel] = Field(default_factory=list)


class ManifestDocument(BaseModel):
    version: str = "unversioned"
    capabilities: Dict[str, CapabilityModel] = Field(default_factory=dict)


def local_name(type_id: str) -> str:
    """Last path/fragment segment of a type URI (``https://x/y#seat`` -> ``seat``)."""
    text = str(type_id).rstrip("/")
    for sep in ("#", "/", ":"):
        if sep in text:
            text = text.rsplit(sep, 1)[-1]
    return text


@dataclass(frozen=True)
class ManifestSnapshot:
    version: str
    generation: int
    types: Mapping[str, ManifestType] = field(default_factory=dict)
    # alias / local name -> canonical ids
    _index: Mapping[str, frozenset] = field(default_factory=dict, repr=False)

    def get(self, type_id: str) -> Optional[ManifestType]:
        return self.types.get(type_id)

    def aliases_of(self, type_id: str) -> frozenset:
        """Every name that refers to *type_id*: the id, its local name and aliases."""
        mtype = self.types.get(type_id)
        if mtype is None:
            return frozenset()
        return frozenset({mtype.type_id, local_name(mtype.type_id)} | set(mtype.aliases))

    def canonicalize(self, name: str) -> Optional[str]:
        """Map an id, URI local name or alias to its canonical id.

        Returns None when the name is unknown or ambiguous.
        """
        if name in self.types:
            return name
        owners = self._index.get(name, frozenset())
        if len(owners) == 1:
            return next(iter(owners))
        if len(owners) > 1:
            logger.debug("Alias %r is ambiguous across %s", name, sorted(owners))
        return None

    def scope_of(self, type_id: str) -> Optional[str]:
        mtype = self.types.get(type_id)
        if mtype is None:
            canonical = self.canonicalize(type_id)
            mtype = self.types.get(canonical) if canonical else None
        return mtype.scope if mtype else None

    def __len__(self) -> int:
        return len(self.types)


def build_snapshot(document: Union[Dict[str, Any], ManifestDocument], generation: int = 0) -> ManifestSnapshot:
    try:
        doc = document if isinstance(document, ManifestDocument) else ManifestDocument.model_validate(document)
    except ValidationError as exc:
        raise InvalidDocument(f"Invalid manifest document: {exc}") from exc

    types: Dict[str, ManifestType] = {}
    index: Dict[str, set] = {}
    for capability_name, capability in doc.capabilities.items():
        scope = (capability.scope or capability_name).strip()
        for item in capability.types:
            if item.id in types:
                raise InvalidDocument(
                    f"Type {item.id} published by both {types[item.id].capability} and {capability_name}"
                )
            aliases = frozenset(a.strip() for a in item.aliases if str(a).strip())
            types[item.id] = ManifestType(
                type_id=item.id,
                capability=capability_name,
                scope=scope,
                title=item.title,
                aliases=aliases,
                json_schema=dict(item.schema_),
            )
            for name in aliases | {local_name(item.id)}:
                index.setdefault(name, set()).add(item.id)

    return ManifestSnapshot(
        version=doc.version,
        generation=generation,
        types=MappingProxyType(types),
        _index=MappingProxyType({k: frozenset(v) for k, v in index.items()}),
    )


class ManifestRegistry:
    """Holds the current manifest snapshot; supports hot reload."""

    def __init__(self, document: Optional[Dict[str, Any]] = None):
        self._lock = threading.Lock()
        self._generation = 0
        self._snapshot = build_snapshot(document or {}, generation=0)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ManifestRegistry":
        return cls(_read_json(path))

    def snapshot(self) -> ManifestSnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.generation

    def reload(self, document: Dict[str, Any]) -> ManifestSnapshot:
        """Validate *document* and publish it; the old snapshot stays on failure."""
        with self._lock:
            snapshot = build_snapshot(document, generation=self._generation + 1)
            self._generation += 1
            self._snapshot = snapshot
        logger.info(
            "Manifest reloaded: version=%s generation=%d types=%d",
            snapshot.version, snapshot.generation, len(snapshot),
        )
        return snapshot


def _read_json(path: Union[str, Path]) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return json.load(handle)
    except json.JSONDecodeError as exc:
        raise InvalidDocument(f"{path} is not valid JSON: {exc}") from exc

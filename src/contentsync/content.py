"""Host content store boundary.

The engine never talks to a CMS directly; it goes through a
:class:`ContentStore`.  Entities are addressed by ``(entity_type, uuid)``
everywhere in the engine, local ids only matter inside field values.

Field values follow the usual CMS item-list shape, e.g.
``[{"value": "Hello"}]`` or ``[{"target_id": 4}]``.
"""

from __future__ import annotations

import copy
import html
import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from contentsync.errors import ContentStoreError


@dataclass(frozen=True)
class FieldDefinition:
    """Shape of one field on a bundle."""

    name: str
    type: str
    target_type: str | None = None  # referenced entity type for reference fields
    multiple: bool = False
    required: bool = False


@dataclass
class BundleSchema:
    """All field definitions of one (entity type, bundle)."""

    entity_type: str
    bundle: str
    fields: dict[str, FieldDefinition] = field(default_factory=dict)
    is_config: bool = False

    def add(self, name: str, type: str, **kw: Any) -> BundleSchema:
        self.fields[name] = FieldDefinition(name=name, type=type, **kw)
        return self


@dataclass
class Entity:
    """A content or config entity as seen by the engine."""

    entity_type: str
    bundle: str
    uuid: str
    id: int | str | None = None
    label: str = ""
    fields: dict[str, Any] = field(default_factory=dict)
    created: float = 0.0
    changed: float = 0.0
    published: bool = True
    is_config: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.entity_type, self.uuid)

    def get(self, name: str) -> Any:
        return self.fields.get(name)

    def set(self, name: str, value: Any) -> None:
        if value is None:
            self.fields.pop(name, None)
        else:
            self.fields[name] = value


class ContentStore(Protocol):
    """What the engine needs from the host CMS entity API."""

    def schema(self, entity_type: str, bundle: str) -> BundleSchema | None: ...

    def bundles(self) -> list[BundleSchema]: ...

    async def load(self, entity_type: str, entity_id: int | str) -> Entity | None: ...

    async def load_by_uuid(self, entity_type: str, uuid: str) -> Entity | None: ...

    async def load_by_label(self, entity_type: str, bundle: str, label: str) -> Entity | None: ...

    async def list_entities(self, entity_type: str, bundle: str) -> list[Entity]: ...

    async def load_file(self, uri: str) -> Entity | None: ...

    def new_entity(self, entity_type: str, bundle: str, uuid: str, *, label: str = "") -> Entity: ...

    async def save(self, entity: Entity) -> Entity: ...

    async def delete(self, entity: Entity) -> None: ...

    async def read_file(self, uri: str) -> bytes | None: ...

    async def write_file(self, uri: str, content: bytes) -> None: ...

    async def delete_file(self, uri: str) -> None: ...

    def render_preview(self, entity: Entity) -> str: ...


class MemoryContentStore:
    """In-memory :class:`ContentStore` used by tests and embedding hosts.

    Entities are copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self, schemas: list[BundleSchema] | None = None) -> None:
        self._schemas: dict[tuple[str, str], BundleSchema] = {}
        self._entities: dict[tuple[str, str], Entity] = {}
        self._files: dict[str, bytes] = {}
        self._counter = itertools.count(1)
        for schema in schemas or []:
            self.add_schema(schema)

    # -- schema ---------------------------------------------------------------

    def add_schema(self, schema: BundleSchema) -> None:
        self._schemas[(schema.entity_type, schema.bundle)] = schema

    def schema(self, entity_type: str, bundle: str) -> BundleSchema | None:
        return self._schemas.get((entity_type, bundle))

    def bundles(self) -> list[BundleSchema]:
        return list(self._schemas.values())

    # -- entities -------------------------------------------------------------

    async def load(self, entity_type: str, entity_id: int | str) -> Entity | None:
        for entity in self._entities.values():
            if entity.entity_type == entity_type and str(entity.id) == str(entity_id):
                return copy.deepcopy(entity)
        return None

    async def load_by_uuid(self, entity_type: str, uuid: str) -> Entity | None:
        entity = self._entities.get((entity_type, uuid))
        return copy.deepcopy(entity) if entity else None

    async def load_by_label(self, entity_type: str, bundle: str, label: str) -> Entity | None:
        for entity in self._entities.values():
            if entity.entity_type == entity_type and entity.bundle == bundle and entity.label == label:
                return copy.deepcopy(entity)
        return None

    async def list_entities(self, entity_type: str, bundle: str) -> list[Entity]:
        return [
            copy.deepcopy(e)
            for e in self._entities.values()
            if e.entity_type == entity_type and e.bundle == bundle
        ]

    async def load_file(self, uri: str) -> Entity | None:
        """The file entity stored at *uri*, if any."""
        for entity in self._entities.values():
            if entity.entity_type == "file" and (entity.get("uri") or [{}])[0].get("value") == uri:
                return copy.deepcopy(entity)
        return None

    def new_entity(self, entity_type: str, bundle: str, uuid: str, *, label: str = "") -> Entity:
        schema = self.schema(entity_type, bundle)
        if schema is None:
            msg = f"Unknown bundle {entity_type}.{bundle}"
            raise ContentStoreError(msg)
        return Entity(
            entity_type=entity_type,
            bundle=bundle,
            uuid=uuid,
            label=label,
            is_config=schema.is_config,
        )

    async def save(self, entity: Entity) -> Entity:
        if self.schema(entity.entity_type, entity.bundle) is None:
            msg = f"Unknown bundle {entity.entity_type}.{entity.bundle}"
            raise ContentStoreError(msg)
        if entity.id is None:
            if entity.is_config:
                msg = f"Config entity {entity.uuid} needs a machine name"
                raise ContentStoreError(msg)
            entity.id = next(self._counter)
        now = time.time()
        if not entity.created:
            entity.created = now
        entity.changed = now
        self._entities[entity.key] = copy.deepcopy(entity)
        return entity

    async def delete(self, entity: Entity) -> None:
        self._entities.pop(entity.key, None)

    # -- files ----------------------------------------------------------------

    async def read_file(self, uri: str) -> bytes | None:
        return self._files.get(uri)

    async def write_file(self, uri: str, content: bytes) -> None:
        self._files[uri] = content

    async def delete_file(self, uri: str) -> None:
        self._files.pop(uri, None)

    # -- preview --------------------------------------------------------------

    def render_preview(self, entity: Entity) -> str:
        return f"<h3>{html.escape(entity.label)}</h3>"

"""Base classes for entity and field handlers.

An entity handler flattens a whole entity into the intent's field map and
rebuilds it on the other side; for every regular field it hands off to the
field handler the registry picks for that field's type.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar

import structlog

from contentsync.policy.models import PreviewMode

if TYPE_CHECKING:
    from contentsync.content import BundleSchema, ContentStore, Entity, FieldDefinition
    from contentsync.policy.models import Flow
    from contentsync.sync.export import ExportIntent
    from contentsync.sync.imports import ImportIntent
    from contentsync.sync.intent import SyncIntent, SyncServices

log = structlog.get_logger(__name__)

PREVIEW_DISABLED = "<em>Previews are disabled for this entity.</em>"

# Properties every entity handler manages itself.
BASE_FORBIDDEN_FIELDS = frozenset({"id", "uuid", "title", "created", "changed", "status", "preview"})


class FieldHandler:
    """Converts one field between its local item list and its wire value."""

    id: ClassVar[str] = ""
    field_types: ClassVar[frozenset[str]] = frozenset()

    def __init__(self, entity_type: str, bundle: str, field: FieldDefinition, settings: dict[str, Any]) -> None:
        self.entity_type = entity_type
        self.bundle = bundle
        self.field = field
        self.settings = settings

    @property
    def field_name(self) -> str:
        return self.field.name

    @classmethod
    def supports(cls, entity_type: str, bundle: str, field: FieldDefinition) -> bool:
        return field.type in cls.field_types

    async def export(self, intent: ExportIntent, entity: Entity) -> Any:
        raise NotImplementedError

    async def import_(self, intent: ImportIntent, entity: Entity, value: Any) -> None:
        raise NotImplementedError

    async def resolve(
        self, store: ContentStore, owner: Entity, referenced: Entity, data: dict[str, Any] | None
    ) -> None:
        """Point *owner*'s field at *referenced* now that it exists locally."""
        msg = f"{self.id} fields carry no references"
        raise NotImplementedError(msg)


class EntityHandler:
    """Default whole-entity behaviour shared by all entity handlers."""

    id: ClassVar[str] = ""
    label: ClassVar[str] = ""

    def __init__(self, entity_type: str, bundle: str, settings: dict[str, Any]) -> None:
        self.entity_type = entity_type
        self.bundle = bundle
        self.settings = settings

    @classmethod
    def supports(cls, entity_type: str, bundle: str, schema: BundleSchema) -> bool:
        return False

    @classmethod
    def allowed_preview_options(cls) -> list[PreviewMode]:
        return [PreviewMode.TABLE, PreviewMode.DISABLED]

    def forbidden_fields(self) -> set[str]:
        return set(BASE_FORBIDDEN_FIELDS)

    async def ignore_export(self, intent: ExportIntent) -> bool:
        return False

    async def ignore_import(self, intent: ImportIntent) -> bool:
        return False

    # -- export ---------------------------------------------------------------

    async def export(self, intent: ExportIntent, entity: Entity) -> bool:
        intent.set_field("title", entity.label)
        intent.set_field("created", int(entity.created))
        intent.set_field("status", entity.published)

        preview = intent.entity_type_config.preview
        if preview == PreviewMode.TABLE and preview in self.allowed_preview_options():
            intent.set_field("preview", intent.store.render_preview(entity))
        else:
            intent.set_field("preview", PREVIEW_DISABLED)

        for field in self._handled_fields(intent):
            handler = intent.field_handler(field)
            if handler is None:
                continue
            intent.set_field(field.name, await handler.export(intent, entity))
        return True

    # -- import ---------------------------------------------------------------

    async def import_(self, intent: ImportIntent) -> bool:
        entity = intent.entity
        if entity is None:
            entity = intent.store.new_entity(self.entity_type, self.bundle, intent.uuid)
            if entity.is_config:
                entity.id = intent.remote_id
            intent.entity = entity

        entity.label = intent.get_field("title") or ""
        created = intent.get_field("created")
        if created:
            entity.created = float(created)
        published = intent.get_field("status")
        if published is not None:
            entity.published = bool(published)

        for field in self._handled_fields(intent):
            handler = intent.field_handler(field)
            if handler is None:
                continue
            await handler.import_(intent, entity, intent.get_field(field.name))

        await self.prepare_entity(intent, entity)
        await intent.store.save(entity)
        return True

    async def prepare_entity(self, intent: ImportIntent, entity: Entity) -> None:
        """Hook that runs after all fields are set and before the entity is saved."""

    async def delete_entity(self, intent: SyncIntent, entity: Entity) -> None:
        await intent.store.delete(entity)

    # -- deferred references --------------------------------------------------

    async def resolve_reference(
        self,
        services: SyncServices,
        flow: Flow | None,
        owner: Entity,
        field: str,
        referenced: Entity,
        data: dict[str, Any] | None,
    ) -> bool:
        """Finish a reference that was left open at import time.

        Returns False if the field no longer exists on the owner's bundle.
        """
        schema = services.store.schema(owner.entity_type, owner.bundle)
        definition = schema.fields.get(field) if schema else None
        if definition is None:
            log.warning("dependency_field_missing", owner=owner.uuid, field=field)
            return False
        handler = services.field_handler(flow, owner.entity_type, owner.bundle, definition, "import")
        if handler is None:
            return False
        await handler.resolve(services.store, owner, referenced, data)
        return True

    # -- helpers --------------------------------------------------------------

    def _handled_fields(self, intent: SyncIntent) -> list[FieldDefinition]:
        schema = intent.store.schema(self.entity_type, self.bundle)
        if schema is None:
            return []
        forbidden = self.forbidden_fields()
        return [f for name, f in schema.fields.items() if name not in forbidden]

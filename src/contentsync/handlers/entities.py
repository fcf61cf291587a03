"""Entity handlers for the built-in entity types."""

from __future__ import annotations

import base64
import binascii
import copy
import re
from typing import TYPE_CHECKING, Any

import structlog

from contentsync.errors import ContentStoreError, InvalidPayloadError
from contentsync.handlers.base import EntityHandler
from contentsync.policy.models import Action, PreviewMode
from contentsync.references import EmbedMode, is_reference

if TYPE_CHECKING:
    from contentsync.content import BundleSchema, Entity
    from contentsync.policy.models import Flow
    from contentsync.sync.export import ExportIntent
    from contentsync.sync.imports import ImportIntent
    from contentsync.sync.intent import SyncIntent, SyncServices

log = structlog.get_logger(__name__)

FILE_CONTENT_FIELD = "apiu_file_content"

_ENTITY_URI = re.compile(r"^entity:([a-z0-9_]+)/(\d+)$")
_PLACEHOLDER_URI = re.compile(r"^internal:/([a-z0-9_]+)/([^/]+)$")


def _first_value(items: Any) -> Any:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0].get("value")
    return None


class DefaultContentEntityHandler(EntityHandler):
    id = "default_entity_handler"
    label = "Default"

    @classmethod
    def supports(cls, entity_type: str, bundle: str, schema: BundleSchema) -> bool:
        return not schema.is_config


class DefaultConfigEntityHandler(EntityHandler):
    """Config entities: addressed by machine name, values copied verbatim."""

    id = "default_config_entity_handler"
    label = "Default configuration"

    @classmethod
    def supports(cls, entity_type: str, bundle: str, schema: BundleSchema) -> bool:
        return schema.is_config

    @classmethod
    def allowed_preview_options(cls) -> list[PreviewMode]:
        return [PreviewMode.DISABLED]

    async def export(self, intent: ExportIntent, entity: Entity) -> bool:
        intent.set_field("title", entity.label)
        forbidden = self.forbidden_fields()
        for name, value in entity.fields.items():
            if name not in forbidden:
                intent.set_field(name, copy.deepcopy(value))
        return True

    async def import_(self, intent: ImportIntent) -> bool:
        entity = intent.entity
        if entity is None:
            entity = intent.store.new_entity(self.entity_type, self.bundle, intent.uuid)
            entity.id = intent.remote_id
            intent.entity = entity

        entity.label = intent.get_field("title") or ""
        schema = intent.store.schema(self.entity_type, self.bundle)
        known = set(schema.fields) if schema else set()
        forbidden = self.forbidden_fields()
        for name in known - forbidden:
            entity.set(name, copy.deepcopy(intent.get_field(name)))

        await intent.store.save(entity)
        return True


class NodeHandler(DefaultContentEntityHandler):
    """Nodes: unpublished revisions are skipped unless explicitly unpublished.

    Settings: ``ignore_unpublished`` (default on) and
    ``allow_explicit_unpublishing`` (default on). With both on, unpublishing
    a node that was already exported is still sent so the remote side
    unpublishes it too.
    """

    id = "default_node_handler"
    label = "Node"

    @classmethod
    def supports(cls, entity_type: str, bundle: str, schema: BundleSchema) -> bool:
        return entity_type == "node"

    @property
    def ignore_unpublished(self) -> bool:
        return bool(self.settings.get("ignore_unpublished", True))

    @property
    def allow_explicit_unpublishing(self) -> bool:
        return bool(self.settings.get("allow_explicit_unpublishing", True))

    async def ignore_export(self, intent: ExportIntent) -> bool:
        entity = intent.entity
        if entity is not None and not entity.published and self.ignore_unpublished:
            if not self.allow_explicit_unpublishing or intent.status.last_export is None:
                return True
        return await super().ignore_export(intent)

    async def ignore_import(self, intent: ImportIntent) -> bool:
        if intent.action == Action.DELETE:
            return await super().ignore_import(intent)
        if not intent.get_field("status") and self.ignore_unpublished and not self.allow_explicit_unpublishing:
            return True
        return await super().ignore_import(intent)


class TaxonomyHandler(DefaultContentEntityHandler):
    """Taxonomy terms: the parent hierarchy travels as embedded dependencies.

    With ``map_by_label`` set, an incoming term whose label matches an
    existing local term of the same vocabulary updates that term instead of
    creating a duplicate.
    """

    id = "default_taxonomy_handler"
    label = "Taxonomy term"

    @classmethod
    def supports(cls, entity_type: str, bundle: str, schema: BundleSchema) -> bool:
        return entity_type == "taxonomy_term"

    def forbidden_fields(self) -> set[str]:
        return super().forbidden_fields() | {"parent"}

    async def export(self, intent: ExportIntent, entity: Entity) -> bool:
        if not await super().export(intent, entity):
            return False

        parents = []
        for item in entity.get("parent") or []:
            if not item.get("target_id"):
                continue
            parent = await intent.store.load(self.entity_type, item["target_id"])
            if parent is None:
                continue
            parents.append(await intent.embed_entity(parent, EmbedMode.EXPORT_AS_DEPENDENCY))
        if parents:
            intent.set_field("parent", parents)
        return True

    async def import_(self, intent: ImportIntent) -> bool:
        if intent.entity is None and self.settings.get("map_by_label"):
            existing = await intent.store.load_by_label(self.entity_type, self.bundle, intent.get_field("title") or "")
            if existing is not None:
                log.info("taxonomy_term_mapped_by_label", uuid=intent.uuid, local_uuid=existing.uuid)
                intent.entity = existing
        return await super().import_(intent)

    async def prepare_entity(self, intent: ImportIntent, entity: Entity) -> None:
        items = []
        for definition in intent.get_field("parent") or []:
            if not is_reference(definition):
                continue
            parent = await intent.load_embedded_entity(definition)
            if parent is None:
                intent.save_unresolved_dependency(definition, "parent")
                continue
            items.append({"target_id": parent.id})
        entity.set("parent", items or [{"target_id": 0}])

    async def resolve_reference(
        self,
        services: SyncServices,
        flow: Flow | None,
        owner: Entity,
        field: str,
        referenced: Entity,
        data: dict[str, Any] | None,
    ) -> bool:
        if field != "parent":
            return await super().resolve_reference(services, flow, owner, field, referenced, data)
        items = [i for i in owner.get("parent") or [] if i.get("target_id") and i["target_id"] != referenced.id]
        items.append({"target_id": referenced.id})
        owner.set("parent", items)
        return True


class MenuLinkHandler(DefaultContentEntityHandler):
    """Menu links: stay disabled while their link target is missing.

    Settings: ``ignore_unpublished`` (default on) skips disabled links and
    ``restrict_menus`` limits synchronisation to the listed menu names.
    """

    id = "default_menu_link_content_handler"
    label = "Menu link"

    @classmethod
    def supports(cls, entity_type: str, bundle: str, schema: BundleSchema) -> bool:
        return entity_type == "menu_link_content"

    @classmethod
    def allowed_preview_options(cls) -> list[PreviewMode]:
        return [PreviewMode.TABLE]

    @property
    def ignore_unpublished(self) -> bool:
        return bool(self.settings.get("ignore_unpublished", True))

    def _menu_allowed(self, menu: Any) -> bool:
        restrict = self.settings.get("restrict_menus") or []
        return not restrict or menu in restrict

    async def ignore_export(self, intent: ExportIntent) -> bool:
        entity = intent.entity
        if entity is None:
            return await super().ignore_export(intent)
        if not entity.published and self.ignore_unpublished:
            return True
        if not self._menu_allowed(_first_value(entity.get("menu_name"))):
            return True

        links = entity.get("link") or []
        uri = links[0].get("uri", "") if links else ""
        if uri.startswith("entity:") and not _ENTITY_URI.match(uri):
            return True
        if await self._awaits_target(intent, entity, uri):
            # Placeholder for a link target that has not been imported yet.
            return True
        match = _ENTITY_URI.match(uri)
        if match and await intent.store.load(match.group(1), match.group(2)) is None:
            log.debug("menu_link_dead_reference", uuid=entity.uuid, uri=uri)
            return True
        return await super().ignore_export(intent)

    @staticmethod
    async def _awaits_target(intent: ExportIntent, entity: Entity, uri: str) -> bool:
        match = _PLACEHOLDER_URI.match(uri)
        if match is None:
            return False
        pending = await intent.services.dependencies.pending(match.group(1), match.group(2))
        return any(r.owner_uuid == entity.uuid and r.field == "link" for r in pending)

    async def ignore_import(self, intent: ImportIntent) -> bool:
        if intent.action == Action.DELETE:
            return await super().ignore_import(intent)
        enabled = intent.get_field("status")
        if enabled is not None and not enabled and self.ignore_unpublished:
            return True
        if not self._menu_allowed(_first_value(intent.get_field("menu_name"))):
            return True
        return await super().ignore_import(intent)

    async def prepare_entity(self, intent: ImportIntent, entity: Entity) -> None:
        for pending in intent.unresolved:
            if pending["field"] == "link":
                pending["data"] = {**(pending["data"] or {}), "enabled": entity.published}
                entity.published = False

    async def resolve_reference(
        self,
        services: SyncServices,
        flow: Flow | None,
        owner: Entity,
        field: str,
        referenced: Entity,
        data: dict[str, Any] | None,
    ) -> bool:
        if not await super().resolve_reference(services, flow, owner, field, referenced, data):
            return False
        if data and "enabled" in data:
            owner.published = bool(data["enabled"])
        return True


class FileHandler(DefaultContentEntityHandler):
    """Files: the binary content travels base64 encoded next to the URI."""

    id = "default_file_handler"
    label = "File"

    @classmethod
    def supports(cls, entity_type: str, bundle: str, schema: BundleSchema) -> bool:
        return entity_type == "file"

    def forbidden_fields(self) -> set[str]:
        return super().forbidden_fields() | {"uri", "filemime", "filesize"}

    async def export(self, intent: ExportIntent, entity: Entity) -> bool:
        if not await super().export(intent, entity):
            return False

        uri = _first_value(entity.get("uri"))
        content = await intent.store.read_file(uri) if uri else None
        if content is None:
            msg = f"No file content for {entity.uuid} at {uri!r}"
            raise ContentStoreError(msg)
        intent.set_field("uri", [{"value": uri}])
        intent.set_field(FILE_CONTENT_FIELD, base64.b64encode(content).decode("ascii"))
        intent.set_field("filemime", copy.deepcopy(entity.get("filemime")))
        return True

    async def import_(self, intent: ImportIntent) -> bool:
        uri = _first_value(intent.get_field("uri"))
        encoded = intent.get_field(FILE_CONTENT_FIELD)
        if not uri or not encoded:
            msg = f"File {intent.uuid} arrived without uri or content"
            raise InvalidPayloadError(msg)
        try:
            content = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            msg = f"File {intent.uuid} carries invalid base64 content"
            raise InvalidPayloadError(msg) from exc

        await intent.store.write_file(uri, content)
        return await super().import_(intent)

    async def prepare_entity(self, intent: ImportIntent, entity: Entity) -> None:
        uri = _first_value(intent.get_field("uri"))
        content = await intent.store.read_file(uri) or b""
        entity.set("uri", [{"value": uri}])
        entity.set("filemime", copy.deepcopy(intent.get_field("filemime")))
        entity.set("filesize", [{"value": len(content)}])

    async def delete_entity(self, intent: SyncIntent, entity: Entity) -> None:
        uri = _first_value(entity.get("uri"))
        if uri:
            await intent.store.delete_file(uri)
        await super().delete_entity(intent, entity)

"""Generic field handlers: scalar values, formatted text, paths, entity references and links."""

from __future__ import annotations

import copy
import re
from typing import TYPE_CHECKING, Any

import structlog

from contentsync.handlers.base import FieldHandler
from contentsync.references import EmbedMode, is_reference, placeholder_uri, reference_details

if TYPE_CHECKING:
    from contentsync.content import ContentStore, Entity
    from contentsync.sync.export import ExportIntent
    from contentsync.sync.imports import ImportIntent

log = structlog.get_logger(__name__)

_ENTITY_URI = re.compile(r"^entity:([a-z0-9_]+)/([^/]+)$")
_FILE_LINK = re.compile(r'(<(?:img|a)[^>]+(?:src|href)=)"/sites/[^/]+/files/([^"]+)"')
_EMBEDDED_ENTITY = re.compile(r'<drupal-entity[^>]+data-entity-type="([^"]+)"\s+data-entity-uuid="([^"]+)"')
_NODE_LINK = re.compile(r'data-entity-uuid="([0-9a-z-]+)" href="/node/([0-9]+)"')
_LOCAL_PATH_KEYS = frozenset({"pid", "source"})

DEFAULT_FILES_PATH = "sites/default/files"


class DefaultFieldHandler(FieldHandler):
    """Copies item lists of plain value fields as they are."""

    id = "default_field_handler"
    field_types = frozenset(
        {
            "boolean",
            "decimal",
            "email",
            "float",
            "integer",
            "list_float",
            "list_integer",
            "list_string",
            "string",
            "string_long",
            "telephone",
            "text",
            "text_long",
            "text_with_summary",
            "timestamp",
            "datetime",
        }
    )

    async def export(self, intent: ExportIntent, entity: Entity) -> Any:
        value = entity.get(self.field_name)
        return copy.deepcopy(value) if value else None

    async def import_(self, intent: ImportIntent, entity: Entity, value: Any) -> None:
        entity.set(self.field_name, copy.deepcopy(value) if value else None)


class FormattedTextHandler(FieldHandler):
    """Formatted text whose markup may embed files and other entities.

    On export every file linked from ``/sites/<site>/files/`` and every
    ``<drupal-entity>`` tag is sent along as a dependency. On import those
    file links are pointed at the local files directory (setting
    ``files_path``) and ``/node/<id>`` links carrying a ``data-entity-uuid``
    get the local node id. Links whose target is not here are left as they
    are.
    """

    id = "default_formatted_text_handler"
    field_types = frozenset({"text_with_summary", "text_long"})

    @property
    def files_path(self) -> str:
        return str(self.settings.get("files_path", DEFAULT_FILES_PATH)).strip("/")

    async def export(self, intent: ExportIntent, entity: Entity) -> Any:
        value = entity.get(self.field_name)
        if not value:
            return None
        for item in value:
            text = item.get("value") or ""
            for match in _FILE_LINK.finditer(text):
                file = await intent.store.load_file(f"public://{match.group(2)}")
                if file is not None:
                    await intent.embed_entity(file, EmbedMode.EXPORT_AS_DEPENDENCY)
            for match in _EMBEDDED_ENTITY.finditer(text):
                embedded = await intent.store.load_by_uuid(match.group(1), match.group(2))
                if embedded is not None:
                    await intent.embed_entity(embedded, EmbedMode.EXPORT_AS_DEPENDENCY)
        return copy.deepcopy(value)

    async def import_(self, intent: ImportIntent, entity: Entity, value: Any) -> None:
        if not value:
            entity.set(self.field_name, None)
            return
        items = []
        for item in value:
            item = copy.deepcopy(item)
            if item.get("value"):
                item["value"] = await self._localize(intent.store, item["value"])
            items.append(item)
        entity.set(self.field_name, items)

    async def _localize(self, store: ContentStore, text: str) -> str:
        files: dict[str, bool] = {}
        for match in _FILE_LINK.finditer(text):
            path = match.group(2)
            if path not in files:
                files[path] = await store.load_file(f"public://{path}") is not None
        nodes: dict[str, Any] = {}
        for match in _NODE_LINK.finditer(text):
            uuid = match.group(1)
            if uuid not in nodes:
                node = await store.load_by_uuid("node", uuid)
                nodes[uuid] = node.id if node is not None else match.group(2)

        def local_file(match: re.Match[str]) -> str:
            if not files[match.group(2)]:
                return match.group(0)
            return f'{match.group(1)}"/{self.files_path}/{match.group(2)}"'

        def local_node(match: re.Match[str]) -> str:
            return f'data-entity-uuid="{match.group(1)}" href="/node/{nodes[match.group(1)]}"'

        return _NODE_LINK.sub(local_node, _FILE_LINK.sub(local_file, text))


class PathHandler(FieldHandler):
    """URL aliases; the local path id and source path stay on this site."""

    id = "default_path_handler"
    field_types = frozenset({"path"})

    async def export(self, intent: ExportIntent, entity: Entity) -> Any:
        items = [
            {k: v for k, v in item.items() if k not in _LOCAL_PATH_KEYS} for item in entity.get(self.field_name) or []
        ]
        return items or None

    async def import_(self, intent: ImportIntent, entity: Entity, value: Any) -> None:
        items = [{k: v for k, v in item.items() if k not in _LOCAL_PATH_KEYS} for item in value or []]
        entity.set(self.field_name, items or None)


class EntityReferenceHandler(FieldHandler):
    """``target_id`` items on the local side, reference definitions on the wire."""

    id = "default_entity_reference_handler"
    field_types = frozenset({"entity_reference", "entity_reference_revisions", "image", "file"})

    def _embed_mode(self, referenced: Entity) -> EmbedMode:
        if referenced.is_config:
            return EmbedMode.REFERENCE_ONLY
        if self.settings.get("export_referenced_entities", True):
            return EmbedMode.EXPORT_AS_DEPENDENCY
        return EmbedMode.EXPORT_IF_CONFIGURED

    async def export(self, intent: ExportIntent, entity: Entity) -> Any:
        target_type = self.field.target_type
        if not target_type:
            return None
        result = []
        for item in entity.get(self.field_name) or []:
            referenced = await intent.store.load(target_type, item["target_id"])
            if referenced is None:
                log.debug("reference_target_missing", field=self.field_name, target_id=item["target_id"])
                continue
            details = {k: v for k, v in item.items() if k != "target_id"}
            result.append(await intent.embed_entity(referenced, self._embed_mode(referenced), details))
        return result or None

    async def import_(self, intent: ImportIntent, entity: Entity, value: Any) -> None:
        references = [d for d in value or [] if is_reference(d)]
        order = [d.get("uuid") for d in references]
        items = []
        for delta, definition in enumerate(references):
            details = reference_details(definition)
            referenced = await intent.load_embedded_entity(definition)
            if referenced is None:
                # Position and neighbours let the late reference go back where it was.
                data: dict[str, Any] = {"delta": delta, "order": order}
                if details:
                    data["details"] = details
                intent.save_unresolved_dependency(definition, self.field_name, data)
                continue
            items.append({"target_id": referenced.id, **details})
        entity.set(self.field_name, items or None)

    async def resolve(
        self, store: ContentStore, owner: Entity, referenced: Entity, data: dict[str, Any] | None
    ) -> None:
        data = data or {}
        item = {"target_id": referenced.id, **(data.get("details") or {})}
        if not self.field.multiple:
            owner.set(self.field_name, [item])
            return

        items = [i for i in owner.get(self.field_name) or [] if i.get("target_id") != referenced.id]
        order = data.get("order") or []
        delta = data.get("delta", len(order))
        position = len(items)
        for index, existing in enumerate(items):
            if await self._rank(store, existing, order) > delta:
                position = index
                break
        items.insert(position, item)
        owner.set(self.field_name, items)

    async def _rank(self, store: ContentStore, item: dict[str, Any], order: list[str | None]) -> int:
        target = await store.load(self.field.target_type, item["target_id"])
        if target is None or target.uuid not in order:
            return len(order)
        return order.index(target.uuid)


class LinkHandler(FieldHandler):
    """Link fields; ``entity:`` URIs are exchanged as reference definitions."""

    id = "default_link_handler"
    field_types = frozenset({"link"})

    async def export(self, intent: ExportIntent, entity: Entity) -> Any:
        result = []
        for item in entity.get(self.field_name) or []:
            match = _ENTITY_URI.match(item.get("uri", ""))
            if match is None:
                result.append(copy.deepcopy(item))
                continue
            referenced = await intent.store.load(match.group(1), match.group(2))
            if referenced is None:
                continue
            details = {k: v for k, v in item.items() if k != "uri"}
            mode = EmbedMode.EXPORT_IF_CONFIGURED
            if self.settings.get("export_referenced_entities", False):
                mode = EmbedMode.EXPORT_AS_DEPENDENCY
            result.append(await intent.embed_entity(referenced, mode, details))
        return result or None

    async def import_(self, intent: ImportIntent, entity: Entity, value: Any) -> None:
        items = []
        for item in value or []:
            if not is_reference(item):
                items.append(copy.deepcopy(item))
                continue
            details = reference_details(item)
            referenced = await intent.load_embedded_entity(item)
            if referenced is None:
                items.append({"uri": placeholder_uri(item["type"], item["uuid"]), **details})
                intent.save_unresolved_dependency(item, self.field_name)
                continue
            items.append({"uri": f"entity:{referenced.entity_type}/{referenced.id}", **details})
        entity.set(self.field_name, items or None)

    async def resolve(
        self, store: ContentStore, owner: Entity, referenced: Entity, data: dict[str, Any] | None
    ) -> None:
        placeholder = placeholder_uri(referenced.entity_type, referenced.uuid)
        items = []
        for item in owner.get(self.field_name) or []:
            if item.get("uri") == placeholder:
                item = {**item, "uri": f"entity:{referenced.entity_type}/{referenced.id}"}
            items.append(item)
        owner.set(self.field_name, items or None)

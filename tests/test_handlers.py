"""Tests for handler registration and selection."""

from __future__ import annotations

import pytest

from contentsync.content import BundleSchema, FieldDefinition
from contentsync.handlers import (
    DefaultConfigEntityHandler,
    DefaultContentEntityHandler,
    DefaultFieldHandler,
    EntityHandler,
    EntityReferenceHandler,
    FormattedTextHandler,
    LinkHandler,
    NodeHandler,
    PathHandler,
    TaxonomyHandler,
    default_registry,
)
from contentsync.handlers.registry import HandlerRegistry
from contentsync.policy.models import EntityTypeConfig, ExportMode

ARTICLE = BundleSchema("node", "article").add("body", "text_with_summary")
BLOCK = BundleSchema("block_content", "basic").add("body", "text_long")
VIEW = BundleSchema("view", "view", is_config=True)


class _Everything(EntityHandler):
    id = "everything"

    @classmethod
    def supports(cls, entity_type, bundle, schema):
        return True


class _AlsoEverything(_Everything):
    id = "also_everything"


# ---------------------------------------------------------------------------
# Entity handlers
# ---------------------------------------------------------------------------


def test_type_specific_handler_wins():
    registry = default_registry()
    assert isinstance(registry.entity_handler_for("node", "article", ARTICLE), NodeHandler)
    assert isinstance(
        registry.entity_handler_for("taxonomy_term", "tags", BundleSchema("taxonomy_term", "tags")),
        TaxonomyHandler,
    )


def test_generic_handlers_by_schema_kind():
    registry = default_registry()
    assert type(registry.entity_handler_for("block_content", "basic", BLOCK)) is DefaultContentEntityHandler
    assert type(registry.entity_handler_for("view", "view", VIEW)) is DefaultConfigEntityHandler


def test_handler_ids_in_priority_order():
    registry = default_registry()
    assert registry.entity_handler_ids_for("node", "article", ARTICLE) == [
        "default_node_handler",
        "default_entity_handler",
    ]
    assert registry.entity_handler_ids_for("view", "view", VIEW) == ["default_config_entity_handler"]


def test_explicit_handler_id_and_settings():
    registry = default_registry()
    handler = registry.entity_handler_for(
        "node", "article", ARTICLE, handler_id="default_entity_handler", settings={"x": 1}
    )
    assert type(handler) is DefaultContentEntityHandler
    assert handler.settings == {"x": 1}

    assert registry.entity_handler_for("node", "article", ARTICLE, handler_id="ignore") is None
    assert registry.entity_handler_for("node", "article", ARTICLE, handler_id="no_such_handler") is None


def test_lowest_weight_wins_regardless_of_registration_order():
    registry = HandlerRegistry()
    registry.register_entity_handler(_Everything, 100)
    registry.register_entity_handler(_AlsoEverything, 5)
    assert registry.entity_handler_ids_for("node", "article", ARTICLE) == ["also_everything", "everything"]


def test_equal_weight_keeps_registration_order():
    registry = HandlerRegistry()
    registry.register_entity_handler(_AlsoEverything)
    registry.register_entity_handler(_Everything)
    assert type(registry.entity_handler_for("node", "article", ARTICLE)) is _AlsoEverything


def test_empty_registry_finds_nothing():
    assert HandlerRegistry().entity_handler_for("node", "article", ARTICLE) is None


def test_taxonomy_handler_manages_parent_itself():
    handler = TaxonomyHandler("taxonomy_term", "tags", {})
    assert "parent" in handler.forbidden_fields()
    assert {"id", "uuid", "created"} <= handler.forbidden_fields()


# ---------------------------------------------------------------------------
# Field handlers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("field_type", "expected"),
    [
        ("string", DefaultFieldHandler),
        ("text_with_summary", FormattedTextHandler),
        ("text_long", FormattedTextHandler),
        ("path", PathHandler),
        ("integer", DefaultFieldHandler),
        ("entity_reference", EntityReferenceHandler),
        ("image", EntityReferenceHandler),
        ("file", EntityReferenceHandler),
        ("link", LinkHandler),
    ],
)
def test_field_handler_by_type(field_type, expected):
    registry = default_registry()
    field = FieldDefinition("f", field_type, target_type="file")
    assert type(registry.field_handler_for("node", "article", field)) is expected


def test_unsupported_field_type_defaults_to_ignore():
    registry = default_registry()
    field = FieldDefinition("layout", "layout_section")
    assert registry.field_handler_for("node", "article", field) is None
    assert registry.default_field_handler_id("node", "article", field) == "ignore"
    assert registry.default_field_handler_id("node", "article", FieldDefinition("b", "text")) == (
        "default_field_handler"
    )


# ---------------------------------------------------------------------------
# Field configs inside a Flow
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_field_config_without_modes_keeps_field(site):
    flow = site.repository.get_flow("content")
    flow.entity_types["node-article-tags"] = EntityTypeConfig(handler_settings={"export_referenced_entities": False})
    tags = site.store.schema("node", "article").fields["tags"]

    handler = site.engine.services.field_handler(flow, "node", "article", tags, "export")
    assert isinstance(handler, EntityReferenceHandler)
    assert handler.settings == {"export_referenced_entities": False}


@pytest.mark.asyncio()
async def test_field_config_disables_one_direction(site):
    flow = site.repository.get_flow("content")
    flow.entity_types["node-article-body"] = EntityTypeConfig(export=ExportMode.DISABLED)
    body = site.store.schema("node", "article").fields["body"]
    services = site.engine.services

    assert services.field_handler(flow, "node", "article", body, "export") is None
    assert isinstance(services.field_handler(flow, "node", "article", body, "import"), FormattedTextHandler)


@pytest.mark.asyncio()
async def test_ignored_field_config(site):
    flow = site.repository.get_flow("content")
    flow.entity_types["node-article-body"] = EntityTypeConfig(handler="ignore")
    body = site.store.schema("node", "article").fields["body"]
    assert site.engine.services.field_handler(flow, "node", "article", body, "import") is None


@pytest.mark.asyncio()
async def test_entity_handler_takes_flow_settings(make_site, make_flow):
    site = await make_site([make_flow(handler_settings={"ignore_unpublished": False})])
    flow = site.repository.get_flow("content")
    handler = site.engine.services.entity_handler(flow, "node", "article")
    assert isinstance(handler, NodeHandler)
    assert handler.ignore_unpublished is False
    assert site.engine.services.entity_handler(flow, "node", "page") is None

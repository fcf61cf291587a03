"""Entity and field handlers plus the registry that selects between them."""

from contentsync.handlers.base import EntityHandler, FieldHandler
from contentsync.handlers.entities import (
    DefaultConfigEntityHandler,
    DefaultContentEntityHandler,
    FileHandler,
    MenuLinkHandler,
    NodeHandler,
    TaxonomyHandler,
)
from contentsync.handlers.fields import (
    DefaultFieldHandler,
    EntityReferenceHandler,
    FormattedTextHandler,
    LinkHandler,
    PathHandler,
)
from contentsync.handlers.registry import DEFAULT_WEIGHT, HandlerRegistry

SPECIFIC_WEIGHT = 10


def default_registry() -> HandlerRegistry:
    """Registry with every built-in handler; type-specific ones win over the defaults."""
    registry = HandlerRegistry()
    for cls in (NodeHandler, TaxonomyHandler, MenuLinkHandler, FileHandler):
        registry.register_entity_handler(cls, SPECIFIC_WEIGHT)
    registry.register_entity_handler(DefaultConfigEntityHandler, DEFAULT_WEIGHT)
    registry.register_entity_handler(DefaultContentEntityHandler, DEFAULT_WEIGHT)

    registry.register_field_handler(EntityReferenceHandler, DEFAULT_WEIGHT)
    registry.register_field_handler(LinkHandler, DEFAULT_WEIGHT)
    registry.register_field_handler(FormattedTextHandler, DEFAULT_WEIGHT)
    registry.register_field_handler(PathHandler, DEFAULT_WEIGHT)
    registry.register_field_handler(DefaultFieldHandler, DEFAULT_WEIGHT)
    return registry


__all__ = [
    "DefaultConfigEntityHandler",
    "DefaultContentEntityHandler",
    "DefaultFieldHandler",
    "EntityHandler",
    "EntityReferenceHandler",
    "FieldHandler",
    "FileHandler",
    "FormattedTextHandler",
    "HandlerRegistry",
    "LinkHandler",
    "MenuLinkHandler",
    "NodeHandler",
    "PathHandler",
    "TaxonomyHandler",
    "default_registry",
]

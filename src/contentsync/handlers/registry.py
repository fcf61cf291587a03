"""Explicit handler registry with weight-ordered selection."""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from contentsync.handlers.base import EntityHandler, FieldHandler
from contentsync.policy.models import HANDLER_IGNORE

if TYPE_CHECKING:
    from contentsync.content import BundleSchema, FieldDefinition

DEFAULT_WEIGHT = 100


@dataclass(frozen=True)
class _Registration:
    cls: type
    weight: int
    order: int

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.weight, self.order)


class HandlerRegistry:
    """Entity and field handler variants, tried in ascending weight order.

    The lowest weight wins; registrations with equal weight keep their
    registration order.
    """

    def __init__(self) -> None:
        self._entity: list[_Registration] = []
        self._field: list[_Registration] = []
        self._order = itertools.count()

    def register_entity_handler(self, cls: type[EntityHandler], weight: int = DEFAULT_WEIGHT) -> None:
        self._entity.append(_Registration(cls, weight, next(self._order)))
        self._entity.sort(key=lambda r: r.sort_key)

    def register_field_handler(self, cls: type[FieldHandler], weight: int = DEFAULT_WEIGHT) -> None:
        self._field.append(_Registration(cls, weight, next(self._order)))
        self._field.sort(key=lambda r: r.sort_key)

    # -- entity handlers ------------------------------------------------------

    def entity_handler_ids_for(self, entity_type: str, bundle: str, schema: BundleSchema) -> list[str]:
        return [r.cls.id for r in self._entity if r.cls.supports(entity_type, bundle, schema)]

    def entity_handler_for(
        self,
        entity_type: str,
        bundle: str,
        schema: BundleSchema,
        *,
        handler_id: str = "",
        settings: dict[str, Any] | None = None,
    ) -> EntityHandler | None:
        if handler_id == HANDLER_IGNORE:
            return None
        for reg in self._entity:
            if handler_id and reg.cls.id != handler_id:
                continue
            if reg.cls.supports(entity_type, bundle, schema):
                return reg.cls(entity_type, bundle, settings or {})
        return None

    # -- field handlers -------------------------------------------------------

    def field_handler_ids_for(self, entity_type: str, bundle: str, field: FieldDefinition) -> list[str]:
        return [r.cls.id for r in self._field if r.cls.supports(entity_type, bundle, field)]

    def field_handler_for(
        self,
        entity_type: str,
        bundle: str,
        field: FieldDefinition,
        *,
        handler_id: str = "",
        settings: dict[str, Any] | None = None,
    ) -> FieldHandler | None:
        if handler_id == HANDLER_IGNORE:
            return None
        for reg in self._field:
            if handler_id and reg.cls.id != handler_id:
                continue
            if reg.cls.supports(entity_type, bundle, field):
                return reg.cls(entity_type, bundle, field, settings or {})
        return None

    def default_field_handler_id(self, entity_type: str, bundle: str, field: FieldDefinition) -> str:
        ids = self.field_handler_ids_for(entity_type, bundle, field)
        return ids[0] if ids else HANDLER_IGNORE

"""List and item queries against a remote storage.

List requests take ``items_per_page`` (at most 100), ``page``, ``order_by``
(a JSON field -> ASC|DESC map), ``condition`` (a JSON condition tree),
``property_list`` and ``session``.  Responses look like::

    {"items": [...], "total_number_of_items": 42, "number_of_pages": 1,
     "session": "..."}
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from contentsync.remote.storage import Storage

MAX_ITEMS_PER_PAGE = 100

ORDER_ASCENDING = "ASC"
ORDER_DESCENDING = "DESC"


# -- conditions --------------------------------------------------------------


class Condition:
    operator: str

    def to_dict(self) -> dict[str, Any]:
        raise NotImplementedError

    def serialize(self) -> str:
        return json.dumps(self.to_dict())


class DataCondition(Condition):
    """Compares one data field of the remote items with a value."""

    OPERATORS = frozenset({"==", "!=", ">", "<", ">=", "<=", "in", "not-in", "regex"})

    def __init__(self, field: str, operator: str, value: Any) -> None:
        if operator not in self.OPERATORS:
            msg = f"Unknown operator {operator}"
            raise ValueError(msg)
        self.field = field
        self.operator = operator
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        return {
            "operator": self.operator,
            "values": [
                {"source": "data", "field": self.field},
                {"source": "value", "value": self.value},
            ],
        }


class ParentCondition(Condition):
    """Combines child conditions with and / or / nor."""

    OPERATORS = frozenset({"and", "or", "nor"})

    def __init__(self, operator: str, conditions: list[Condition]) -> None:
        if operator not in self.OPERATORS:
            msg = f"Unknown operator {operator}"
            raise ValueError(msg)
        self.operator = operator
        self.conditions = list(conditions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operator": self.operator,
            "conditions": [c.to_dict() for c in self.conditions],
        }


# -- list query --------------------------------------------------------------


class ListQuery:
    """Fluent builder for a paged list request."""

    def __init__(self, storage: Storage) -> None:
        self.storage = storage
        self._items_per_page: int | None = None
        self._page: int | None = None
        self._order_by: dict[str, str] = {}
        self._condition: Condition | None = None
        self._property_list: str | None = None
        self._session: str | None = None

    def items_per_page(self, count: int | None) -> ListQuery:
        self._items_per_page = None if count is None else max(1, min(count, MAX_ITEMS_PER_PAGE))
        return self

    def page(self, page: int) -> ListQuery:
        self._page = page
        return self

    def order_by(self, field: str, direction: str = ORDER_ASCENDING) -> ListQuery:
        if direction not in (ORDER_ASCENDING, ORDER_DESCENDING):
            msg = f"Unknown order direction {direction}"
            raise ValueError(msg)
        self._order_by[field] = direction
        return self

    def condition(self, condition: Condition | None) -> ListQuery:
        self._condition = condition
        return self

    def property_list(self, name: str = "details") -> ListQuery:
        self._property_list = name
        return self

    def session(self, token: str | None) -> ListQuery:
        self._session = token
        return self

    def params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self._items_per_page is not None:
            params["items_per_page"] = str(self._items_per_page)
        if self._page is not None:
            params["page"] = str(self._page)
        if self._order_by:
            params["order_by"] = json.dumps(self._order_by)
        if self._condition is not None:
            params["condition"] = self._condition.serialize()
        if self._property_list:
            params["property_list"] = self._property_list
        if self._session:
            params["session"] = self._session
        return params

    def url(self) -> str:
        return self.storage.url

    async def execute(self) -> ListResult:
        data = await self.storage.client.get_json(self.url(), params=self.params())
        return ListResult.from_response(self, data or {})


@dataclass
class ListResult:
    """One page of a list response plus what is needed to fetch the rest."""

    query: ListQuery
    items: list[dict[str, Any]] = field(default_factory=list)
    total: int = 0
    number_of_pages: int = 0
    page: int = 1
    session: str | None = None

    @classmethod
    def from_response(cls, query: ListQuery, data: dict[str, Any]) -> ListResult:
        return cls(
            query=query,
            items=list(data.get("items") or []),
            total=int(data.get("total_number_of_items") or 0),
            number_of_pages=int(data.get("number_of_pages") or 0),
            page=query._page or 1,
            session=data.get("session"),
        )

    async def get_all(self) -> AsyncIterator[dict[str, Any]]:
        """Yield every item of every page.

        Later pages are requested with the session the server handed out
        for the first one, so the listing stays one consistent snapshot.
        """
        for item in self.items:
            yield item
        page = self.page
        session = self.session
        while page < self.number_of_pages:
            page += 1
            self.query.page(page).session(session)
            result = await self.query.execute()
            for item in result.items:
                yield item
            session = result.session or session


# -- item query --------------------------------------------------------------


class ItemQuery:
    def __init__(self, storage: Storage, item_id: str) -> None:
        self.storage = storage
        self.item_id = item_id

    def url(self) -> str:
        return f"{self.storage.url}/{self.item_id}"

    async def execute(self) -> dict[str, Any] | None:
        """Return the item, or None if the remote side does not know it."""
        return await self.storage.client.get_json(self.url(), allow_missing=True)

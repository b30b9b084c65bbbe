"""Translate loosely structured list requests into the canonical ListRequest.

Two wire dialects are accepted: a bracketed query string
(``filters[0][field]=status&filters[0][value]=open``) and the JSON body
modelled by ``RefineListRequest``. Both end up in ``adapt_list_request``.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Mapping, Union

from crudkit.core.config import settings
from crudkit.schemas.listing import FilterClause, ListRequest, Pagination, RefineListRequest, SortSpec

_INDEXED_KEY = re.compile(r"^(?P<root>[A-Za-z_]+)\[(?P<index>\d+)\]\[(?P<leaf>[A-Za-z_]+)\](?P<array>\[\])?$")

Pairs = Union[Iterable[tuple[str, Any]], Mapping[str, Any]]


def _group(pairs: Pairs) -> dict[str, list[Any]]:
    items = pairs.items() if isinstance(pairs, Mapping) else pairs
    grouped: dict[str, list[Any]] = {}
    for key, value in items:
        if isinstance(value, (list, tuple)):
            grouped.setdefault(key, []).extend(value)
        else:
            grouped.setdefault(key, []).append(value)
    return grouped


def _first(grouped: dict[str, list[Any]], *keys: str) -> Any:
    for key in keys:
        values = grouped.get(key)
        if values and str(values[0]).strip() != "":
            return values[0]
    return None


def _to_int(value: Any) -> int | None:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _indexed(grouped: dict[str, list[Any]], root: str) -> dict[int, dict[str, list[Any]]]:
    entries: dict[int, dict[str, list[Any]]] = {}
    for key, values in grouped.items():
        match = _INDEXED_KEY.match(key)
        if match is None or match.group("root") != root:
            continue
        entry = entries.setdefault(int(match.group("index")), {})
        leaf = match.group("leaf") + ("[]" if match.group("array") else "")
        entry.setdefault(leaf, []).extend(values)
    return {index: entries[index] for index in sorted(entries)}


def parse_list_query(pairs: Pairs) -> RefineListRequest:
    grouped = _group(pairs)

    sorters = []
    for entry in _indexed(grouped, "sorters").values():
        field = _first(entry, "field")
        if field is not None:
            sorters.append({"field": field, "order": _first(entry, "order") or ""})
    if not sorters:
        flat = _first(grouped, "sorters", "sort")
        if flat is not None:
            sorters.append({"field": flat, "order": _first(grouped, "order") or ""})

    filters = []
    for entry in _indexed(grouped, "filters").values():
        field = _first(entry, "field")
        if field is None:
            continue
        if "value[]" in entry:
            value: Any = list(entry["value[]"])
        elif len(entry.get("value", [])) > 1:
            value = list(entry["value"])
        else:
            value = (entry.get("value") or [None])[0]
        filters.append({"field": field, "operator": _first(entry, "operator") or "eq", "value": value})

    search_fields = grouped.get("searchFields[]") or grouped.get("searchFields") or []
    if len(search_fields) == 1:
        # A single value may still be a comma separated list.
        search_fields = search_fields[0]

    return RefineListRequest.model_validate(
        {
            "pagination": {
                "current": _to_int(_first(grouped, "current", "page")),
                "pageSize": _to_int(_first(grouped, "pageSize", "perPage", "per_page")),
            },
            "sorters": sorters,
            "filters": filters,
            "search": _first(grouped, "search") or "",
            "q": _first(grouped, "q") or "",
            "searchFields": search_fields,
        }
    )


def adapt_list_request(wire: RefineListRequest, default_per_page: int | None = None) -> ListRequest:
    if default_per_page is None:
        default_per_page = settings.DEFAULT_PER_PAGE
    page = wire.pagination.current if wire.pagination.current and wire.pagination.current > 0 else 1
    per_page = wire.pagination.page_size
    if not per_page or per_page < 1:
        per_page = default_per_page

    sort = None
    if wire.sorters:
        first = wire.sorters[0]
        direction = "desc" if first.order.strip().lower() == "desc" else "asc"
        sort = SortSpec(field=first.field.strip(), direction=direction)

    filters = [
        FilterClause(field=item.field.strip(), operator=(item.operator or "eq").strip().lower(), value=item.value)
        for item in wire.filters
        if item.field.strip()
    ]

    search = wire.search.strip() or wire.q.strip()
    search_fields = [name.strip() for name in wire.search_fields if str(name).strip()]

    return ListRequest(
        filters=filters,
        sort=sort,
        search=search,
        search_fields=search_fields,
        pagination=Pagination(page=page, per_page=per_page),
    )


def parse_ids(pairs: Pairs) -> list[Any]:
    grouped = _group(pairs)
    raw = grouped.get("ids[]") or grouped.get("ids") or []
    ids: list[Any] = []
    for value in raw:
        # ``ids=1,2,3`` is accepted next to repeated keys.
        if isinstance(value, str) and "," in value:
            ids.extend(chunk.strip() for chunk in value.split(",") if chunk.strip())
        elif str(value).strip() != "":
            ids.append(value)
    return ids

# plansync/sync/rows.py
"""
Pure helpers over cached values.

Cached values are nested JSON structures (dicts and lists) whose row dicts
carry an "id". Every helper returns a new structure and never mutates its
input; when nothing changes the original object is returned unchanged, so
callers can detect no-ops with an identity check.
"""

from typing import Any, Callable, Iterator

Row = dict[str, Any]


def _rebuild(value: Any, on_dict: Callable[[dict], dict]) -> Any:
    """Rebuild containers bottom-up, applying on_dict to every dict."""
    if isinstance(value, list):
        items = [_rebuild(item, on_dict) for item in value]
        if all(new is old for new, old in zip(items, value)):
            return value
        return items
    if isinstance(value, dict):
        items = {k: _rebuild(v, on_dict) for k, v in value.items()}
        if all(items[k] is value[k] for k in value):
            return on_dict(value)
        return on_dict(items)
    return value


def merge_row(value: Any, row_id: str, fields: dict[str, Any]) -> Any:
    """Merge fields into every row with this id, wherever it is nested."""

    def on_dict(d: dict) -> dict:
        if d.get("id") != row_id:
            return d
        if all(k in d and d[k] == v for k, v in fields.items()):
            return d
        return {**d, **fields}

    return _rebuild(value, on_dict)


def rekey_row(
    value: Any, old_id: str, new_id: str, server_row: dict[str, Any] | None = None
) -> Any:
    """Replace a temporary id with the server id, adopting server fields."""

    def on_dict(d: dict) -> dict:
        if d.get("id") != old_id:
            return d
        return {**d, **(server_row or {}), "id": new_id}

    return _rebuild(value, on_dict)


def prune_row(value: Any, row_id: str) -> Any:
    """Remove every row with this id from every list."""
    if isinstance(value, list):
        kept = [
            prune_row(item, row_id)
            for item in value
            if not (isinstance(item, dict) and item.get("id") == row_id)
        ]
        if len(kept) == len(value) and all(new is old for new, old in zip(kept, value)):
            return value
        return kept
    if isinstance(value, dict):
        items = {k: prune_row(v, row_id) for k, v in value.items()}
        if all(items[k] is value[k] for k in value):
            return value
        return items
    return value


def contains_row(value: Any, row_id: str) -> bool:
    """True if a row with this id appears anywhere in value."""
    if isinstance(value, list):
        return any(contains_row(item, row_id) for item in value)
    if isinstance(value, dict):
        if value.get("id") == row_id:
            return True
        return any(contains_row(v, row_id) for v in value.values())
    return False


def row_ids(rows: list[Row]) -> list[str]:
    return [row["id"] for row in rows if isinstance(row, dict) and "id" in row]


def upsert_row(
    rows: list[Row],
    row: Row,
    *,
    order_field: str | None = None,
    newest_first: bool = False,
) -> list[Row]:
    """
    Insert a row into a list, or merge it into the existing row with its id.

    New rows go to their order_field position when given, else to the
    front (newest_first) or the end.
    """
    if any(existing.get("id") == row["id"] for existing in rows):
        return merge_row(rows, row["id"], row)

    if newest_first:
        return [row, *rows]
    if order_field is not None and isinstance(row.get(order_field), int):
        position = row[order_field]
        before = [r for r in rows if (r.get(order_field) or 0) < position]
        after = [r for r in rows if (r.get(order_field) or 0) >= position]
        return [*before, row, *after]
    return [*rows, row]


def reorder_rows(rows: list[Row], id_order: list[str], order_field: str) -> list[Row]:
    """
    Arrange rows in id_order and assign dense zero-based positions.

    Rows not named in id_order keep their relative order after the
    reordered ones.
    """
    by_id = {row["id"]: row for row in rows}
    ordered = [by_id[row_id] for row_id in id_order if row_id in by_id]
    named = set(id_order)
    rest = [row for row in rows if row["id"] not in named]
    return [
        row if row.get(order_field) == index else {**row, order_field: index}
        for index, row in enumerate([*ordered, *rest])
    ]


def find_row(value: Any, row_id: str) -> Row | None:
    """First row with this id anywhere in value."""
    if isinstance(value, list):
        for item in value:
            found = find_row(item, row_id)
            if found is not None:
                return found
    elif isinstance(value, dict):
        if value.get("id") == row_id:
            return value
        for item in value.values():
            found = find_row(item, row_id)
            if found is not None:
                return found
    return None


def iter_rows(value: Any) -> Iterator[Row]:
    """Every row dict in value, depth first, in display order."""
    if isinstance(value, list):
        for item in value:
            yield from iter_rows(item)
    elif isinstance(value, dict):
        if "id" in value:
            yield value
        for item in value.values():
            yield from iter_rows(item)


def holds_rows(value: Any) -> bool:
    """True for a nested row or a list of rows (as opposed to a column value)."""
    if isinstance(value, dict):
        return "id" in value
    if isinstance(value, list):
        return any(isinstance(item, dict) and "id" in item for item in value)
    return False

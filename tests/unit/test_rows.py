# tests/unit/test_rows.py
"""
Tests for the pure row helpers used to patch cached values.
"""

from plansync.sync.rows import (
    contains_row,
    find_row,
    holds_rows,
    iter_rows,
    merge_row,
    prune_row,
    rekey_row,
    reorder_rows,
    upsert_row,
)


def _detail() -> dict:
    return {
        "initiative": {"id": "i1", "name": "Checkout"},
        "release_plans": [
            {"id": "r1", "goal": "MVP", "epics": [{"id": "e1", "name": "Cart"}]},
            {"id": "r2", "goal": "GA", "epics": []},
        ],
    }


def test_merge_row_updates_nested_row():
    """Test merging fields into a row nested inside a detail view."""
    value = _detail()

    merged = merge_row(value, "e1", {"name": "Basket"})

    assert merged["release_plans"][0]["epics"][0] == {"id": "e1", "name": "Basket"}
    assert value["release_plans"][0]["epics"][0]["name"] == "Cart"  # input untouched


def test_merge_row_returns_same_object_when_unchanged():
    """Test that a no-op merge returns the original object."""
    value = _detail()

    assert merge_row(value, "e1", {"name": "Cart"}) is value
    assert merge_row(value, "missing", {"name": "x"}) is value


def test_merge_row_keeps_fields_missing_from_partial_payload():
    """Test that merging a partial row never drops existing fields."""
    rows = [{"id": "a", "name": "A", "status": "Development"}]

    merged = merge_row(rows, "a", {"status": "Released"})

    assert merged == [{"id": "a", "name": "A", "status": "Released"}]


def test_prune_row_removes_from_every_list():
    """Test pruning a row id from nested lists."""
    value = _detail()

    pruned = prune_row(value, "r2")

    assert [p["id"] for p in pruned["release_plans"]] == ["r1"]
    assert prune_row(pruned, "r2") is pruned


def test_rekey_row_adopts_server_fields():
    """Test re-keying a temporary id to the stored row."""
    rows = [{"id": "tmp-1", "name": "Draft"}]

    rekeyed = rekey_row(rows, "tmp-1", "srv-1", {"id": "srv-1", "name": "Draft", "order_index": 3})

    assert rekeyed == [{"id": "srv-1", "name": "Draft", "order_index": 3}]


def test_contains_and_find_row():
    """Test locating rows anywhere in a value."""
    value = _detail()

    assert contains_row(value, "e1")
    assert not contains_row(value, "e9")
    assert find_row(value, "r2")["goal"] == "GA"
    assert find_row(value, "e9") is None


def test_upsert_row_inserts_at_order_position():
    """Test that a new row lands at its order_index position."""
    rows = [
        {"id": "a", "order_index": 0},
        {"id": "c", "order_index": 2},
    ]

    result = upsert_row(rows, {"id": "b", "order_index": 1}, order_field="order_index")

    assert [r["id"] for r in result] == ["a", "b", "c"]


def test_upsert_row_newest_first_and_existing_merge():
    """Test newest-first insertion and merge of an already present row."""
    rows = [{"id": "u1", "content": "old"}]

    inserted = upsert_row(rows, {"id": "u2", "content": "new"}, newest_first=True)
    assert [r["id"] for r in inserted] == ["u2", "u1"]

    merged = upsert_row(inserted, {"id": "u2", "content": "new"}, newest_first=True)
    assert merged is inserted


def test_reorder_rows_assigns_dense_indices():
    """Test reordering [a, b, c] to [c, a, b]."""
    rows = [
        {"id": "a", "order_index": 0},
        {"id": "b", "order_index": 1},
        {"id": "c", "order_index": 2},
    ]

    result = reorder_rows(rows, ["c", "a", "b"], "order_index")

    assert [(r["id"], r["order_index"]) for r in result] == [("c", 0), ("a", 1), ("b", 2)]


def test_reorder_rows_closes_gaps():
    """Test that sparse positions are rewritten densely."""
    rows = [{"id": "a", "order_index": 4}, {"id": "b", "order_index": 9}]

    result = reorder_rows(rows, ["a", "b"], "order_index")

    assert [r["order_index"] for r in result] == [0, 1]


def test_iter_rows_walks_nested_rows_in_order():
    """Test that every row of an aggregate is visited depth first."""
    ids = [row["id"] for row in iter_rows(_detail())]

    assert ids == ["i1", "r1", "e1", "r2"]


def test_holds_rows_tells_nested_rows_from_columns():
    """Test that nested rows are told apart from list-valued columns."""
    assert holds_rows([{"id": "e1"}])
    assert holds_rows({"id": "p1"})
    assert not holds_rows(["Eli", "Fay"])
    assert not holds_rows("Checkout")

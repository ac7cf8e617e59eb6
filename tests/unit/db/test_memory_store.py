from __future__ import annotations

import pytest

from bulkload.db.memory import MemoryStore
from bulkload.errors import FunctionCallError, StoreError, UniqueViolation
from bulkload.parsing.schema import make_column


def test_unique_violation_names_the_index(store: MemoryStore) -> None:
    table = store.open_table("items")
    table.insert((1, "a", None))
    with pytest.raises(UniqueViolation) as e:
        table.insert((1, "b", None))
    assert e.value.constraint == "items_pkey"


def test_null_keys_never_collide() -> None:
    store = MemoryStore()
    store.create_table(
        "codes",
        [make_column("id", "integer", nullable=False), make_column("code", "text")],
        unique_keys=[("id",), ("code",)],
    )
    table = store.open_table("codes")
    table.insert((1, None))
    table.insert((2, None))
    table.insert((3, "x"))
    with pytest.raises(UniqueViolation) as e:
        table.insert((4, "x"))
    assert e.value.constraint == "codes_code_key"


def test_store_errors(store: MemoryStore) -> None:
    with pytest.raises(StoreError, match="does not exist"):
        store.open_table("missing")
    table = store.open_table("public.items")
    with pytest.raises(StoreError, match="not-null"):
        table.insert((None, "a", None))
    with pytest.raises(StoreError):
        table.insert((1, "a"))


def test_rollback_undoes_uncommitted_work(store: MemoryStore) -> None:
    table = store.open_table("items")
    table.insert((1, "a", None))
    table.commit()
    table.insert((2, "b", None))
    table.rollback()
    assert store.rows("items") == [(1, "a", None)]


def test_savepoint_rolls_back_only_its_block(store: MemoryStore) -> None:
    table = store.open_table("items")
    table.insert((1, "a", None))
    with pytest.raises(UniqueViolation):
        table.insert_many([(2, "b", None), (1, "dup", None)])
    assert store.rows("items") == [(1, "a", None)]


def test_remove_conflicts_and_restore_order(store: MemoryStore) -> None:
    table = store.open_table("items")
    for i in (1, 2, 3):
        table.insert((i, str(i), None))
    table.commit()

    assert table.remove_conflicts((2, "new", None)) == [(2, "2", None)]
    table.insert((2, "new", None))
    assert store.rows("items") == [(1, "1", None), (3, "3", None), (2, "new", None)]

    table.rollback()
    assert store.rows("items") == [(1, "1", None), (2, "2", None), (3, "3", None)]


def test_function_errors_are_wrapped(store: MemoryStore) -> None:
    spec = store.functions.register("div", lambda a: (1 // a, "x", None), arg_types=["integer"])
    assert store.functions.invoke(spec, (1,)).values == (1, "x", None)
    with pytest.raises(FunctionCallError, match="div"):
        store.functions.invoke(spec, (0,))

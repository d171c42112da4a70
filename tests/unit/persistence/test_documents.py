"""Versioned document store: compare-and-swap writes and optimistic updates."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from agent_foreman.persistence.documents import (
    DocumentStore,
    StaleDocumentError,
    append_capped,
)
from agent_foreman.persistence.state_db import StateDB

try:
    from hypothesis import given, settings
    from hypothesis import strategies as st
except ModuleNotFoundError:
    _HYPOTHESIS_AVAILABLE = False
else:
    _HYPOTHESIS_AVAILABLE = True

if TYPE_CHECKING:
    from pathlib import Path


def _store(tmp_path: Path) -> DocumentStore:
    return DocumentStore(StateDB(tmp_path / "state" / "foreman.sqlite"))


def test_missing_document_loads_as_version_zero(tmp_path: Path) -> None:
    store = _store(tmp_path)
    document = store.load("dispatcher")

    assert document.version == 0
    assert not document.exists
    assert document.payload == {}
    assert store.read("dispatcher", lambda: {"tickets": {}}) == {"tickets": {}}


def test_save_increments_version_and_rejects_stale_writers(tmp_path: Path) -> None:
    store = _store(tmp_path)

    assert store.save("usage", {"sessions": []}, expected_version=0) == 1
    assert store.save("usage", {"sessions": [1]}, expected_version=1) == 2

    with pytest.raises(StaleDocumentError) as excinfo:
        store.save("usage", {"sessions": [2]}, expected_version=1)
    assert excinfo.value.expected_version == 1
    assert excinfo.value.actual_version == 2

    with pytest.raises(StaleDocumentError):
        store.save("usage", {"sessions": []}, expected_version=0)

    assert store.load("usage").payload == {"sessions": [1]}


def test_two_stores_on_one_file_see_each_other(tmp_path: Path) -> None:
    first = _store(tmp_path)
    second = _store(tmp_path)

    first.save("oversight", {"queue": ["a"]}, expected_version=0)
    snapshot = second.load("oversight")
    assert snapshot.payload == {"queue": ["a"]}

    first.save("oversight", {"queue": []}, expected_version=snapshot.version)
    with pytest.raises(StaleDocumentError):
        second.save("oversight", {"queue": ["b"]}, expected_version=snapshot.version)


def test_update_retries_against_fresh_state(tmp_path: Path) -> None:
    store = _store(tmp_path)
    rival = _store(tmp_path)
    store.save("recovery", {"failures": []}, expected_version=0)
    calls: list[int] = []

    def mutate(payload: dict[str, object]) -> int:
        calls.append(len(calls))
        if len(calls) == 1:
            # Another process commits between our read and our write.
            current = rival.load("recovery")
            rival.save("recovery", {"failures": ["rival"]}, expected_version=current.version)
        failures = payload["failures"]
        assert isinstance(failures, list)
        failures.append("mine")
        return len(failures)

    result = store.update("recovery", mutate)

    assert len(calls) == 2
    assert result == 2
    assert store.load("recovery").payload == {"failures": ["rival", "mine"]}


def test_update_gives_up_after_bounded_attempts(tmp_path: Path) -> None:
    db = StateDB(tmp_path / "foreman.sqlite")
    store = DocumentStore(db, max_update_attempts=2)
    rival = DocumentStore(db)
    store.save("usage", {"n": 0}, expected_version=0)

    def always_lose(payload: dict[str, object]) -> None:
        current = rival.load("usage")
        rival.save("usage", {"n": current.version}, expected_version=current.version)
        payload["n"] = -1

    with pytest.raises(StaleDocumentError):
        store.update("usage", always_lose)


def test_update_uses_default_factory_for_new_documents(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.update(
        "validation",
        lambda payload: payload["history"].append({"valid": True}),
        default_factory=lambda: {"history": []},
    )

    assert store.load("validation").payload == {"history": [{"valid": True}]}
    assert store.load("validation").version == 1


def test_delete_and_names(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save("b", {}, expected_version=0)
    store.save("a", {}, expected_version=0)

    assert store.names() == ["a", "b"]
    assert store.delete("a") is True
    assert store.delete("a") is False
    assert store.names() == ["b"]


def test_invalid_document_names_are_rejected(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with pytest.raises(ValueError):
        store.load("  ")


def test_append_capped_evicts_oldest_first() -> None:
    items = [1, 2, 3]
    append_capped(items, 4, 3)
    assert items == [2, 3, 4]
    with pytest.raises(ValueError):
        append_capped(items, 5, 0)


if _HYPOTHESIS_AVAILABLE:
    _json_scalars = st.none() | st.booleans() | st.integers(-(2**53), 2**53) | st.text(max_size=12)
    _json_values = st.recursive(
        _json_scalars,
        lambda children: st.lists(children, max_size=4)
        | st.dictionaries(st.text(max_size=8), children, max_size=4),
        max_leaves=12,
    )

    @settings(max_examples=30, deadline=None)
    @given(payload=st.dictionaries(st.text(min_size=1, max_size=8), _json_values, max_size=5))
    def test_round_trip_is_deep_equal(tmp_path_factory: pytest.TempPathFactory, payload: dict) -> None:
        store = DocumentStore(StateDB(tmp_path_factory.mktemp("docs") / "foreman.sqlite"))
        store.save("round-trip", payload, expected_version=0)
        assert store.load("round-trip").payload == payload

else:

    def test_round_trip_is_deep_equal() -> None:
        pytest.skip("hypothesis is not installed")

from __future__ import annotations

import pytest

from replwire.errors import UnknownSessionError
from replwire.sessions import SessionRegistry


def test_clone_without_parent_creates_root() -> None:
    registry = SessionRegistry()

    session_id = registry.clone()

    assert session_id in registry
    assert registry.lookup(session_id).parent is None
    assert registry.lookup(session_id).context == {}


def test_clone_copies_parent_context() -> None:
    registry = SessionRegistry()
    parent = registry.create_root()
    registry.lookup(parent).context["x"] = 1

    child = registry.clone(parent)
    registry.lookup(child).context["x"] = 2

    assert registry.lookup(child).parent == parent
    assert registry.lookup(parent).context == {"x": 1}


def test_custom_context_factory() -> None:
    registry = SessionRegistry(context_factory=lambda parent: (parent or 0) + 1)

    root = registry.create_root()
    child = registry.clone(root)

    assert registry.lookup(root).context == 1
    assert registry.lookup(child).context == 2


def test_close_removes_session_and_second_close_fails() -> None:
    registry = SessionRegistry()
    session_id = registry.create_root()

    state = registry.close(session_id)

    assert state.id == session_id
    assert session_id not in registry
    with pytest.raises(UnknownSessionError):
        registry.close(session_id)
    with pytest.raises(UnknownSessionError):
        registry.lookup(session_id)


def test_clone_of_unknown_parent_fails() -> None:
    with pytest.raises(UnknownSessionError) as excinfo:
        SessionRegistry().clone("nope")
    assert excinfo.value.session_id == "nope"


def test_ids_are_unique_and_never_reused() -> None:
    registry = SessionRegistry()
    seen = set()
    for _ in range(50):
        session_id = registry.create_root()
        registry.close(session_id)
        assert session_id not in seen
        seen.add(session_id)
    assert len(registry) == 0


def test_pending_request_tracking() -> None:
    registry = SessionRegistry()
    session_id = registry.create_root()

    registry.track(session_id, "r1")
    registry.track(session_id, "r2")
    registry.untrack(session_id, "r1")
    registry.untrack("gone", "r2")

    assert registry.lookup(session_id).pending == {"r2"}
    assert registry.ids() == [session_id]

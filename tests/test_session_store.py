from unittest.mock import MagicMock

import pytest

from session_models import Session
from session_store import SessionStore


def test_history_keeps_the_most_recent_twenty_messages():
    session = Session(id="s1")

    for i in range(11):
        session.add_exchange(f"user {i}", f"assistant {i}")

    assert len(session.messages) == 20
    assert session.messages[0].content == "user 1"
    assert session.messages[0].role == "user"
    assert session.messages[-1].content == "assistant 10"


def test_history_trims_whole_pairs_with_odd_limit():
    session = Session(id="s1")

    for i in range(3):
        session.add_exchange(f"u{i}", f"a{i}", limit=3)

    assert [m.role for m in session.messages] == ["user", "assistant"]
    assert session.messages[0].content == "u2"


def test_history_is_provider_neutral_dicts():
    session = Session(id="s1")
    session.add_exchange("open notes", '{"tool": "open_application"}')

    assert session.history() == [
        {"role": "user", "content": "open notes"},
        {"role": "assistant", "content": '{"tool": "open_application"}'},
    ]


def test_active_contexts_keep_last_five_in_order():
    session = Session(id="s1")

    for i in range(7):
        session.add_active_context(f"step {i}")

    assert session.active_contexts == ["step 2", "step 3", "step 4", "step 5", "step 6"]


def test_session_age_is_measured_from_creation():
    session = Session(id="s1", created_at=1000.0)

    assert session.age(now=1600.0) == 600.0


def test_get_or_create_returns_the_same_session():
    store = SessionStore()

    first = store.get_or_create("abc")
    second = store.get_or_create("abc")

    assert first is second
    assert len(store) == 1
    assert "abc" in store
    assert store.get("missing") is None


def test_sweep_removes_only_expired_sessions():
    # ARRANGE
    store = SessionStore(max_age=7200)
    store.get_or_create("old").created_at = 0.0
    store.get_or_create("fresh").created_at = 5000.0

    # ACT
    removed = store.sweep(now=7201.0)

    # ASSERT
    assert removed == ["old"]
    assert "old" not in store
    assert "fresh" in store


def test_sweep_at_exact_max_age_keeps_session():
    store = SessionStore(max_age=100)
    store.get_or_create("edge").created_at = 0.0

    assert store.sweep(now=100.0) == []


def test_expired_id_starts_a_fresh_session():
    store = SessionStore(max_age=10)
    old = store.get_or_create("abc")
    old.add_exchange("hi", "hello")
    old.created_at = 0.0
    store.sweep(now=100.0)

    new = store.get_or_create("abc")

    assert new is not old
    assert new.messages == []


def test_sweeper_loop_sleeps_between_passes(mocker):
    store = SessionStore()
    sweep = mocker.patch.object(store, "sweep")
    socketio = MagicMock()
    socketio.sleep.side_effect = [None, None, KeyboardInterrupt]

    with pytest.raises(KeyboardInterrupt):
        store.run_sweeper(socketio, interval=5)

    assert sweep.call_count == 2
    socketio.sleep.assert_called_with(5)


def test_session_lock_is_not_shared():
    a, b = Session(id="a"), Session(id="b")

    assert a.lock is not b.lock
    with a.lock:
        assert b.lock.acquire(blocking=False)
        b.lock.release()

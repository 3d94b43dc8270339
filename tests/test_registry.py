from __future__ import annotations

import pytest

from agent_relay import protocol
from agent_relay.registry import SessionRegistry, SessionState


def test_register_last_writer_wins() -> None:
    registry = SessionRegistry()
    first, second = object(), object()

    assert registry.register("echo", first) is None
    assert registry.register("echo", second) is first
    assert registry.handler_for("echo") is second

    # The replaced connection cannot remove the new owner
    assert registry.unregister("echo", first) is False
    assert registry.drop_handler(first) == []
    assert registry.agent_ids() == ["echo"]

    assert registry.unregister("echo", second) is True
    assert registry.agent_ids() == []


def test_drop_handler_removes_every_entry_it_owns() -> None:
    registry = SessionRegistry()
    conn, other = object(), object()
    registry.register("a", conn)
    registry.register("b", conn)
    registry.register("c", other)

    assert sorted(registry.drop_handler(conn)) == ["a", "b"]
    assert registry.agent_ids() == ["c"]


def test_open_session_rejects_duplicate_ids() -> None:
    registry = SessionRegistry()
    registry.open_session("s1", "echo", object(), object())
    with pytest.raises(KeyError):
        registry.open_session("s1", "echo", object(), object())


def test_record_output_walks_the_state_machine() -> None:
    registry = SessionRegistry()
    session = registry.open_session("s1", "echo", object(), object())
    assert session.state is SessionState.PENDING

    assert registry.record_output(session, protocol.content_message("a")) is SessionState.STREAMING
    assert registry.record_output(session, protocol.content_message("b")) is SessionState.STREAMING
    assert registry.get_session("s1") is session

    assert registry.record_output(session, protocol.done_message()) is SessionState.COMPLETED
    assert registry.get_session("s1") is None
    assert session.messages_forwarded == 3
    assert session.state.is_terminal


def test_close_session_is_idempotent() -> None:
    registry = SessionRegistry()
    registry.open_session("s1", "echo", object(), object())

    closed = registry.close_session("s1", SessionState.CANCELLED)
    assert closed is not None and closed.state is SessionState.CANCELLED
    assert registry.close_session("s1", SessionState.FAILED) is None


def test_session_lookups_by_connection() -> None:
    registry = SessionRegistry()
    browser, handler = object(), object()
    registry.open_session("s1", "a", browser, handler)
    registry.open_session("s2", "b", browser, handler)
    registry.open_session("s3", "a", object(), object())

    assert [s.session_id for s in registry.sessions_for_requester(browser)] == ["s1", "s2"]
    assert [s.session_id for s in registry.sessions_for_handler(handler, "a")] == ["s1"]
    assert len(registry.sessions_for_handler(handler)) == 2


def test_get_status() -> None:
    registry = SessionRegistry()
    registry.register("echo", object())
    registry.open_session("s1", "echo", object(), object(), kind=protocol.UNDO)

    status = registry.get_status()
    assert status["handlers"] == ["echo"]
    assert status["sessions_active"] == 1
    assert status["sessions"][0]["kind"] == "undo"
    assert status["sessions"][0]["state"] == "pending"

from __future__ import annotations

import pytest

from agent_relay.agents import EchoAgent


@pytest.mark.asyncio
async def test_echo_run_without_context() -> None:
    agent = EchoAgent(agent_id="parrot")
    messages = [m async for m in agent.run("hello  there")]

    assert [(m.type, m.content) for m in messages] == [
        ("content", "hello"), ("content", "there"), ("done", "")]
    assert agent.history == ["hello  there"]


@pytest.mark.asyncio
async def test_empty_prompt_only_finishes() -> None:
    messages = [m async for m in EchoAgent().run("")]
    assert [m.type for m in messages] == ["done"]


@pytest.mark.asyncio
async def test_undo_redo_stacks() -> None:
    agent = EchoAgent()
    with pytest.raises(RuntimeError, match="Nothing to undo"):
        await agent.undo()

    [m async for m in agent.run("a")]
    [m async for m in agent.run("b")]
    await agent.undo()
    assert agent.history == ["a"]
    assert agent.undone == ["b"]

    await agent.redo()
    assert agent.history == ["a", "b"]
    with pytest.raises(RuntimeError, match="Nothing to redo"):
        await agent.redo()


@pytest.mark.asyncio
async def test_new_run_clears_redo_stack() -> None:
    agent = EchoAgent()
    [m async for m in agent.run("a")]
    await agent.undo()
    [m async for m in agent.run("b")]
    assert agent.undone == []

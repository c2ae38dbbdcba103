from __future__ import annotations

import asyncio

import pytest

from research_chat.core.errors import ResearchChatError
from research_chat.schemas.chat import ChatMessage, SourceDocument
from research_chat.services.bot_runtime import (
    BotRuntime,
    ExecutionMode,
    PartialResult,
    TurnState,
    merge_chat_log,
)
from research_chat.services.turn_runner import TurnRunner


class EchoStrategy:
    name = "echo"

    def __init__(self, fail_in: str = "", pieces: tuple[str, ...] = ("Hello", " world")) -> None:
        self.fail_in = fail_in
        self.pieces = pieces
        self.routes: list[str] = []

    async def route(self, ctx):
        route = "follow_up" if ctx.has_prior_answer else "first"
        self.routes.append(route)
        return route

    async def execute(self, ctx):
        if self.fail_in == "execute":
            raise ResearchChatError("BROKEN", "execute broke")
        ctx.meter.charge(10, 5, 0.25)
        return PartialResult(sources=[SourceDocument(title="Doc", url="https://doc.org")])

    async def compose(self, ctx, partial):
        for index, piece in enumerate(self.pieces):
            if self.fail_in == "compose" and index == 1:
                raise RuntimeError("stream dropped")
            yield piece


def user(text: str) -> ChatMessage:
    return ChatMessage(sender="user", message=text)


def test_merge_chat_log_skips_overlap():
    stored = [user("q1"), ChatMessage(sender="bot", message="a1")]
    incoming = [user("q1"), ChatMessage(sender="bot", message="a1"), user("q2")]

    merged = merge_chat_log(stored, incoming)

    assert [item.message for item in merged] == ["q1", "a1", "q2"]
    assert [item.message for item in merge_chat_log(stored, [user("q2")])] == ["q1", "a1", "q2"]
    assert [item.message for item in merge_chat_log([], incoming)] == ["q1", "a1", "q2"]


@pytest.mark.anyio
async def test_streaming_turn_ends_exactly_once_and_persists(store, registry, ws_client):
    client_id, connection = ws_client
    runtime = BotRuntime(EchoStrategy(), store, registry, client_id=client_id)
    memory_id = store.new_memory_id()

    outcome = await runtime.run_turn([user("Hi?")], memory_id)

    assert outcome.ok
    assert outcome.text == "Hello world"
    assert connection.types() == ["clientId", "stream", "stream", "end"]
    assert [item["message"] for item in connection.sent[1:3]] == ["Hello", " world"]

    memory = await store.load(memory_id)
    assert [item.sender for item in memory.chat_log] == ["user", "bot"]
    reply = memory.chat_log[-1]
    assert reply.message == "Hello world"
    assert reply.turn_id == outcome.turn_id
    assert reply.source_documents[0].url == "https://doc.org"
    assert memory.cumulative_cost == pytest.approx(0.25)
    assert memory.agent_metadata["bot"] == "echo"


@pytest.mark.anyio
async def test_follow_up_turn_accumulates_cost_and_log(store, registry):
    strategy = EchoStrategy()
    runtime = BotRuntime(strategy, store, registry)
    memory_id = store.new_memory_id()

    await runtime.run_turn([user("q1")], memory_id)
    memory = await store.load(memory_id)
    await runtime.run_turn(memory.chat_log + [user("q2")], memory_id)

    memory = await store.load(memory_id)
    assert [item.message for item in memory.chat_log] == ["q1", "Hello world", "q2", "Hello world"]
    assert memory.cumulative_cost == pytest.approx(0.5)
    assert strategy.routes == ["first", "follow_up"]


@pytest.mark.anyio
async def test_generated_memory_id_is_announced(store, registry, ws_client):
    client_id, connection = ws_client
    runtime = BotRuntime(EchoStrategy(), store, registry, client_id=client_id)

    outcome = await runtime.run_turn([user("Hi?")])

    assert connection.sent[1] == {"type": "memoryIdCreated", "data": outcome.memory_id}
    assert await store.load(outcome.memory_id) is not None


@pytest.mark.anyio
async def test_execute_failure_emits_single_error_and_keeps_user_message(
    store, registry, ws_client
):
    client_id, connection = ws_client
    runtime = BotRuntime(EchoStrategy(fail_in="execute"), store, registry, client_id=client_id)
    memory_id = store.new_memory_id()

    outcome = await runtime.run_turn([user("Hi?")], memory_id)

    assert outcome.state is TurnState.ERRORED
    assert outcome.error == "execute broke"
    assert connection.types() == ["clientId", "error"]
    assert connection.sent[-1]["message"] == "execute broke"
    memory = await store.load(memory_id)
    assert [item.sender for item in memory.chat_log] == ["user"]


@pytest.mark.anyio
async def test_compose_failure_persists_partial_text(store, registry, ws_client):
    client_id, connection = ws_client
    runtime = BotRuntime(EchoStrategy(fail_in="compose"), store, registry, client_id=client_id)
    memory_id = store.new_memory_id()

    outcome = await runtime.run_turn([user("Hi?")], memory_id)

    assert outcome.state is TurnState.ERRORED
    assert connection.types() == ["clientId", "stream", "error"]
    memory = await store.load(memory_id)
    assert memory.chat_log[-1].sender == "bot"
    assert memory.chat_log[-1].message == "Hello"
    assert memory.cumulative_cost == pytest.approx(0.25)


@pytest.mark.anyio
async def test_chat_log_must_end_with_user_message(store, registry, ws_client):
    client_id, connection = ws_client
    runtime = BotRuntime(EchoStrategy(), store, registry, client_id=client_id)

    outcome = await runtime.run_turn(
        [user("q"), ChatMessage(sender="bot", message="a")], store.new_memory_id()
    )

    assert outcome.state is TurnState.ERRORED
    assert connection.types()[-1] == "error"
    assert connection.types().count("error") == 1


@pytest.mark.anyio
async def test_captured_mode_never_touches_the_socket(store, registry, ws_client):
    client_id, connection = ws_client
    runtime = BotRuntime(EchoStrategy(), store, registry, client_id=client_id)

    outcome = await runtime.run_turn(
        [user("Hi?")], store.new_memory_id(), mode=ExecutionMode.CAPTURED
    )

    assert outcome.ok
    assert outcome.text == "Hello world"
    assert outcome.cost == pytest.approx(0.25)
    assert connection.types() == ["clientId"]


@pytest.mark.anyio
async def test_silent_runtime_forces_captured_mode(store, registry, ws_client):
    client_id, connection = ws_client
    runtime = BotRuntime(EchoStrategy(), store, registry, client_id=client_id, silent=True)

    outcome = await runtime.run_turn(
        [user("Hi?")], store.new_memory_id(), mode=ExecutionMode.STREAMING
    )

    assert outcome.ok
    assert connection.types() == ["clientId"]


@pytest.mark.anyio
async def test_turn_completes_after_client_disconnects(store, registry, ws_client):
    client_id, connection = ws_client
    runtime = BotRuntime(EchoStrategy(), store, registry, client_id=client_id)
    await registry.unregister(client_id)
    memory_id = store.new_memory_id()

    outcome = await runtime.run_turn([user("Hi?")], memory_id)

    assert outcome.ok
    memory = await store.load(memory_id)
    assert memory.chat_log[-1].message == "Hello world"


class StalledStrategy(EchoStrategy):
    async def execute(self, ctx):
        ctx.meter.charge(10, 5, 0.25)
        await asyncio.sleep(30)
        return await super().execute(ctx)


@pytest.mark.anyio
async def test_cancelled_turn_sends_one_error_and_persists(store, registry, ws_client):
    client_id, connection = ws_client
    runner = TurnRunner()
    runtime = BotRuntime(StalledStrategy(), store, registry, client_id=client_id)
    memory_id = store.new_memory_id()

    runner.start(runtime.run_turn([user("Hi?")], memory_id), name="stalled")
    await asyncio.sleep(0.2)
    await runner.shutdown()

    assert connection.types() == ["clientId", "error"]
    assert runtime.state is TurnState.ERRORED
    assert runner.active == 0
    memory = await store.load(memory_id)
    assert [item.sender for item in memory.chat_log] == ["user"]
    assert memory.cumulative_cost == pytest.approx(0.25)

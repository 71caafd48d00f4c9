import asyncio

import pytest

from ferrox.actions import ActionBuilder, ActionRegistry
from ferrox.agent import Agent
from ferrox.chain import Chain
from ferrox.errors import ChainConfigError, ModelUnavailable
from ferrox.frontend import InboundMessage
from ferrox.models import Role
from ferrox.orchestrator import DEFAULT_ERROR_MESSAGE, Ferrox

from conftest import FakeFrontEnd, ScriptedModel, call, final


def _chain(model: ScriptedModel, actions=None, name: str = "default") -> Chain:
    agent = Agent(name=f"{name}-agent", client=model, system_prompt="Reply.", registry=ActionRegistry(actions or []))
    return Chain([agent], name=name)


class GatedModel:
    """Answers with the user's text, but only after the gate opens; tracks overlap."""

    model = "gated/model"

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.in_flight = 0
        self.peak = 0
        self.started = 0

    async def complete(self, transcript, system_prompt, available_actions):
        self.in_flight += 1
        self.started += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await self.gate.wait()
        finally:
            self.in_flight -= 1
        return final(f"echo: {transcript.last.content}")


# ---------------------------------------------------------------------------
# Construction & routing
# ---------------------------------------------------------------------------


def test_needs_a_chain():
    with pytest.raises(ChainConfigError):
        Ferrox([])


def test_duplicate_chain_names_rejected():
    with pytest.raises(ChainConfigError, match="Duplicate chain"):
        Ferrox([_chain(ScriptedModel()), _chain(ScriptedModel())])


async def test_router_selects_chain():
    prices = ScriptedModel(final("BTC is 1.0"))
    chat = ScriptedModel(final("hello"))
    ferrox = Ferrox(
        [_chain(prices, name="prices"), _chain(chat, name="chat")],
        router=lambda message: "prices" if "price" in message.text else "chat",
    )

    assert ferrox.chains == ["prices", "chat"]
    assert await ferrox.handle("hi") == "hello"
    assert await ferrox.handle("btc price") == "BTC is 1.0"


async def test_router_naming_unknown_chain_raises():
    ferrox = Ferrox(_chain(ScriptedModel()), router=lambda message: "missing")
    with pytest.raises(ChainConfigError, match="missing"):
        await ferrox.handle("hi")


# ---------------------------------------------------------------------------
# Replies
# ---------------------------------------------------------------------------


async def test_success_returns_terminal_output():
    ferrox = Ferrox(_chain(ScriptedModel(final("done"))))
    assert await ferrox.handle("go") == "done"


async def test_failure_becomes_generic_message():
    ferrox = Ferrox(_chain(ScriptedModel(ModelUnavailable("provider returned 503 for key sk-123"))))

    reply = await ferrox.handle("go")

    assert reply == DEFAULT_ERROR_MESSAGE
    assert "503" not in reply and "sk-123" not in reply


async def test_iteration_limit_becomes_generic_message():
    ferrox = Ferrox(_chain(ScriptedModel([call("missing")], repeat_last=True)), error_message="nope")
    assert await ferrox.handle("go") == "nope"


async def test_unexpected_exception_becomes_generic_message():
    def explode(run):
        raise RuntimeError("adapter bug")

    first = Agent(name="a", client=ScriptedModel(final("x")), system_prompt="")
    second = Agent(name="b", client=ScriptedModel(final("y")), system_prompt="")
    ferrox = Ferrox(Chain([first, second], adapters=[explode]))

    assert await ferrox.handle("go") == DEFAULT_ERROR_MESSAGE


async def test_run_timeout_returns_timeout_message():
    model = GatedModel()
    ferrox = Ferrox(_chain(model), run_timeout=0.01, timeout_message="too slow")

    assert await ferrox.handle("go") == "too slow"
    assert model.in_flight == 0


async def test_cancel_returns_cancelled_message():
    model = GatedModel()
    ferrox = Ferrox(_chain(model), cancelled_message="stopped")

    pending = asyncio.create_task(ferrox.handle("go", conversation_id="c1"))
    while model.started == 0:
        await asyncio.sleep(0)

    assert ferrox.cancel("other") == 0
    assert ferrox.cancel("c1") == 1
    assert await pending == "stopped"


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


async def test_same_conversation_runs_are_serialized():
    model = GatedModel()
    ferrox = Ferrox(_chain(model))

    first = asyncio.create_task(ferrox.handle("one", conversation_id="c1"))
    second = asyncio.create_task(ferrox.handle("two", conversation_id="c1"))
    while model.started == 0:
        await asyncio.sleep(0)
    await asyncio.sleep(0.01)
    assert model.started == 1

    model.gate.set()
    assert await first == "echo: one"
    assert await second == "echo: two"
    assert model.peak == 1


async def test_different_conversations_run_concurrently():
    model = GatedModel()
    ferrox = Ferrox(_chain(model))

    first = asyncio.create_task(ferrox.handle("one", conversation_id="c1"))
    second = asyncio.create_task(ferrox.handle("two", conversation_id="c2"))
    while model.started < 2:
        await asyncio.sleep(0)

    model.gate.set()
    await asyncio.gather(first, second)
    assert model.peak == 2


async def test_concurrent_sessions_allow_overlap_within_conversation():
    model = GatedModel()
    ferrox = Ferrox(_chain(model), concurrent_sessions=True)

    first = asyncio.create_task(ferrox.handle("one", conversation_id="c1"))
    second = asyncio.create_task(ferrox.handle("two", conversation_id="c1"))
    while model.started < 2:
        await asyncio.sleep(0)

    model.gate.set()
    await asyncio.gather(first, second)
    assert model.peak == 2


async def test_runs_are_independent_without_history():
    model = ScriptedModel(final("first"), final("second"))
    ferrox = Ferrox(_chain(model))

    await ferrox.handle("a", conversation_id="c1")
    await ferrox.handle("b", conversation_id="c1")

    assert len(model.calls[1]) == 1
    assert ferrox.history("c1") == []


async def test_history_is_prepended_per_conversation():
    model = ScriptedModel(final("r1"), final("r2"), final("r3"), final("other"))
    ferrox = Ferrox(_chain(model), history_turns=1)

    await ferrox.handle("q1", conversation_id="c1")
    await ferrox.handle("q2", conversation_id="c1")
    await ferrox.handle("q3", conversation_id="c1")
    await ferrox.handle("x", conversation_id="c2")

    third = model.calls[2]
    assert [(m.role, m.content) for m in third.messages] == [
        (Role.USER, "q2"),
        (Role.AGENT, "r2"),
        (Role.USER, "q3"),
    ]
    assert len(model.calls[3]) == 1
    assert ferrox.history("c1") == [("q3", "r3")]


async def test_failed_runs_are_not_remembered():
    model = ScriptedModel(ModelUnavailable("down"), final("ok"))
    ferrox = Ferrox(_chain(model), history_turns=3)

    await ferrox.handle("q1")
    await ferrox.handle("q2")

    assert ferrox.history("default") == [("q2", "ok")]


# ---------------------------------------------------------------------------
# Front-end loop
# ---------------------------------------------------------------------------


async def test_serve_replies_to_every_message():
    action = ActionBuilder("get_price", lambda args: 1.0).parameter("symbol", "string").build()
    model = ScriptedModel([call("get_price", symbol="BTC")], final("BTC is 1.0"), final("bye"))
    frontend = FakeFrontEnd([
        InboundMessage(conversation_id="c1", text="btc?"),
        InboundMessage(conversation_id="c1", text="thanks", source="voice"),
    ])
    ferrox = Ferrox(_chain(model, [action]), frontend=frontend)

    await ferrox.serve()

    assert frontend.sent == [("c1", "BTC is 1.0"), ("c1", "bye")]


async def test_serve_sends_error_message_on_failure():
    frontend = FakeFrontEnd([InboundMessage(conversation_id="c9", text="go")])
    ferrox = Ferrox(_chain(ScriptedModel(ModelUnavailable("down"))), frontend=frontend)

    await ferrox.serve()

    assert frontend.sent == [("c9", DEFAULT_ERROR_MESSAGE)]


async def test_serve_needs_frontend():
    with pytest.raises(ChainConfigError):
        await Ferrox(_chain(ScriptedModel())).serve()


async def test_serve_survives_a_message_that_cannot_be_routed():
    model = ScriptedModel(final("hello"))
    frontend = FakeFrontEnd([
        InboundMessage(conversation_id="c1", text="route me nowhere"),
        InboundMessage(conversation_id="c2", text="hi"),
    ])
    ferrox = Ferrox(
        _chain(model),
        frontend=frontend,
        router=lambda message: "nope" if "nowhere" in message.text else "default",
    )

    await ferrox.serve()

    assert sorted(frontend.sent) == [("c1", DEFAULT_ERROR_MESSAGE), ("c2", "hello")]


async def test_serve_survives_a_raising_router():
    def router(message):
        if message.conversation_id == "c1":
            raise KeyError("no route table")
        return "default"

    frontend = FakeFrontEnd([InboundMessage(conversation_id="c1", text="a"), InboundMessage(conversation_id="c2", text="b")])
    ferrox = Ferrox(_chain(ScriptedModel(final("ok"))), frontend=frontend, router=router)

    await ferrox.serve()

    assert sorted(frontend.sent) == [("c1", DEFAULT_ERROR_MESSAGE), ("c2", "ok")]


async def test_serve_survives_a_failing_send():
    class FlakyFrontEnd(FakeFrontEnd):
        async def send(self, conversation_id, text):
            if conversation_id == "c1":
                raise ConnectionError("socket closed")
            await super().send(conversation_id, text)

    frontend = FlakyFrontEnd([InboundMessage(conversation_id="c1", text="a"), InboundMessage(conversation_id="c2", text="b")])
    ferrox = Ferrox(_chain(ScriptedModel(final("one"), final("two"))), frontend=frontend)

    await ferrox.serve()

    assert len(frontend.sent) == 1
    assert frontend.sent[0][0] == "c2"


# ---------------------------------------------------------------------------
# Bookkeeping
# ---------------------------------------------------------------------------


async def test_per_conversation_state_is_released_after_runs():
    model = ScriptedModel(final("ok"), repeat_last=True)
    ferrox = Ferrox(_chain(model))

    for index in range(50):
        await ferrox.handle("hi", conversation_id=f"c{index}")

    assert ferrox._locks == {}
    assert ferrox._lock_users == {}
    assert ferrox._running == {}


async def test_lock_is_kept_while_a_run_is_waiting():
    model = GatedModel()
    ferrox = Ferrox(_chain(model))

    first = asyncio.create_task(ferrox.handle("one", conversation_id="c1"))
    second = asyncio.create_task(ferrox.handle("two", conversation_id="c1"))
    while model.started == 0:
        await asyncio.sleep(0)
    await asyncio.sleep(0.01)
    assert ferrox._lock_users == {"c1": 2}

    model.gate.set()
    await asyncio.gather(first, second)
    assert model.peak == 1
    assert ferrox._locks == {}


async def test_history_keeps_most_recent_conversations():
    model = ScriptedModel(final("ok"), repeat_last=True)
    ferrox = Ferrox(_chain(model), history_turns=2, history_conversations=2)

    await ferrox.handle("a", conversation_id="c1")
    await ferrox.handle("b", conversation_id="c2")
    await ferrox.handle("c", conversation_id="c1")
    await ferrox.handle("d", conversation_id="c3")

    assert ferrox.history("c2") == []
    assert ferrox.history("c1") == [("a", "ok"), ("c", "ok")]
    assert ferrox.history("c3") == [("d", "ok")]

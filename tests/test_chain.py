import json

import pytest

from ferrox.actions import ActionBuilder, ActionRegistry
from ferrox.agent import Agent, AgentRun
from ferrox.chain import Chain, decision_handoff, results_handoff, text_handoff
from ferrox.errors import ChainConfigError, ChainStageFailed, IterationLimitExceeded, ModelUnavailable
from ferrox.models import AgentState, Role, Transcript

from conftest import ScriptedModel, call, final


def _agent(name: str, model: ScriptedModel, actions=None, **kwargs) -> Agent:
    return Agent(name=name, client=model, system_prompt=f"You are {name}.", registry=ActionRegistry(actions or []), **kwargs)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def test_empty_chain_rejected():
    with pytest.raises(ChainConfigError, match="at least one agent"):
        Chain([])


def test_adapter_count_must_match():
    agents = [_agent("a", ScriptedModel()), _agent("b", ScriptedModel())]
    with pytest.raises(ChainConfigError, match="needs 1 adapter"):
        Chain(agents, adapters=[text_handoff, text_handoff])


def test_missing_adapters_default_to_text():
    agents = [_agent("a", ScriptedModel()), _agent("b", ScriptedModel()), _agent("c", ScriptedModel())]
    chain = Chain(agents, adapters=[None, decision_handoff])
    assert chain.adapters == [text_handoff, decision_handoff]
    assert chain.stage_names == ["a", "b", "c"]


# ---------------------------------------------------------------------------
# Running
# ---------------------------------------------------------------------------


async def test_single_agent_chain():
    chain = Chain([_agent("only", ScriptedModel(final("hi there")))])
    result = await chain.run("hi")

    assert result.ok
    assert result.output == "hi there"
    assert len(result.runs) == 1


async def test_default_handoff_passes_text_verbatim():
    first = ScriptedModel(final("normalized request"))
    second = ScriptedModel(final("answer"))
    chain = Chain([_agent("a", first), _agent("b", second)])

    result = await chain.run("raw voice text")

    assert result.output == "answer"
    seed = second.calls[0]
    assert len(seed) == 1
    assert seed.messages[0].role is Role.USER
    assert seed.messages[0].content == "normalized request"


async def test_middle_failure_short_circuits():
    first = ScriptedModel(final("normalized"))
    middle = ScriptedModel(ModelUnavailable("provider down"))
    last = ScriptedModel(final("never"))
    chain = Chain([_agent("a", first), _agent("b", middle), _agent("c", last)])

    result = await chain.run("go")

    assert not result.ok
    assert last.calls == []
    assert len(result.runs) == 2
    assert isinstance(result.failure, ChainStageFailed)
    assert result.failure.stage == 1
    assert result.failure.agent == "b"
    assert result.failure.cause is result.runs[1].error
    assert isinstance(result.failure.cause, ModelUnavailable)
    assert result.output is None


async def test_middle_iteration_limit_short_circuits():
    middle = ScriptedModel([call("missing")], repeat_last=True)
    last = ScriptedModel(final("never"))
    chain = Chain([
        _agent("a", ScriptedModel(final("x"))),
        _agent("b", middle, max_iterations=2),
        _agent("c", last),
    ])

    result = await chain.run("go")

    assert isinstance(result.failure.cause, IterationLimitExceeded)
    assert result.runs[1].state is AgentState.FAILED
    assert last.calls == []


async def test_stages_do_not_overlap():
    events = []

    async def execute_trade(args):
        events.append("trade-start")
        events.append("trade-end")
        return "filled"

    def formatter_turn(transcript):
        events.append("formatter-called")
        return final("Your order was filled.")

    trader = ScriptedModel([call("execute_trade")], final("filled"))
    formatter = ScriptedModel(formatter_turn)
    chain = Chain(
        [
            _agent("trader", trader, [ActionBuilder("execute_trade", execute_trade).build()]),
            _agent("formatter", formatter),
        ],
        adapters=[results_handoff],
    )

    result = await chain.run("buy")

    assert result.ok
    assert events == ["trade-start", "trade-end", "formatter-called"]


async def test_shared_agent_across_chains():
    model = ScriptedModel(final("one"), final("two"))
    shared = _agent("shared", model)
    first = Chain([shared], name="first")
    second = Chain([shared], name="second")

    assert (await first.run("a")).output == "one"
    assert (await second.run("b")).output == "two"


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


async def test_decision_handoff_wraps_request():
    run = await _agent("normalizer", ScriptedModel(final("buy 1 SOL"))).run("uh buy like one sol")
    seed = decision_handoff(run)

    payload = json.loads(seed.messages[0].content)
    assert payload == {"request": "buy 1 SOL", "normalized_by": "normalizer"}


async def test_results_handoff_includes_action_outcomes():
    action = ActionBuilder("get_price", lambda args: 101.5).parameter("symbol", "string").build()
    model = ScriptedModel(
        [call("get_price", symbol="SOL"), call("get_volume")],
        final("SOL is 101.5"),
    )
    run = await _agent("trader", model, [action]).run("price")
    seed = results_handoff(run)

    payload = json.loads(seed.messages[0].content)
    assert payload["answer"] == "SOL is 101.5"
    assert payload["actions"][0] == {"action": "get_price", "ok": True, "value": 101.5}
    assert payload["actions"][1]["ok"] is False
    assert payload["actions"][1]["error"] == "unknown_action"


def test_adapters_are_pure():
    transcript = Transcript.from_text("hi")
    transcript.add_agent("out")
    run = AgentRun(agent="a", state=AgentState.DONE, transcript=transcript, output="out")

    for adapter in (text_handoff, decision_handoff, results_handoff):
        assert adapter(run).model_dump() == adapter(run).model_dump()
    assert len(run.transcript) == 2

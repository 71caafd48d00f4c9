# chain.py
# Sequential composition of agents.
#
# Stage i runs its whole invocation loop to DONE or FAILED before stage i+1
# starts. A FAILED stage short-circuits the chain: nothing after it runs, so
# a formatting stage never sees a half-executed trade.
#
# Between stages sits a hand-off adapter: a pure function from the upstream
# AgentRun to the downstream seed. Adapters must not perform I/O.

import json
import logging
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from ferrox import display
from ferrox.agent import Agent, AgentRun
from ferrox.errors import ChainConfigError, ChainStageFailed
from ferrox.models import Transcript

logger = logging.getLogger(__name__)

Adapter = Callable[[AgentRun], Transcript | str]


# ---------------------------------------------------------------------------
# Hand-off adapters
# ---------------------------------------------------------------------------


def text_handoff(run: AgentRun) -> Transcript:
    """Upstream text becomes the downstream seed verbatim."""
    return Transcript.from_text(run.output or "")


def decision_handoff(run: AgentRun) -> Transcript:
    """Wrap normalized text as a structured request for a deciding agent."""
    payload = {"request": run.output or "", "normalized_by": run.agent}
    return Transcript.from_text(json.dumps(payload, ensure_ascii=False))


def results_handoff(run: AgentRun) -> Transcript:
    """Hand the upstream answer plus every action outcome it produced to a formatting agent."""
    actions = []
    for result in run.transcript.results():
        entry = {"action": result.action, "ok": result.ok}
        if result.ok:
            entry["value"] = result.value
            if result.preview:
                entry["preview"] = True
        else:
            entry["error"] = result.error.kind.value
            entry["detail"] = result.error.detail
        actions.append(entry)

    payload = {"answer": run.output or "", "actions": actions}
    return Transcript.from_text(json.dumps(payload, default=str, ensure_ascii=False))


HANDOFFS: dict[str, Adapter] = {
    "text": text_handoff,
    "decision": decision_handoff,
    "results": results_handoff,
}


def _as_seed(value: Transcript | str) -> Transcript:
    return Transcript.from_text(value) if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------


class ChainResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    chain: str
    runs: list[AgentRun] = Field(default_factory=list)
    output: str | None = None
    failure: ChainStageFailed | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


class Chain:
    """
    An ordered list of agents plus the adapters between them.

    `adapters[i]` converts the output of agents[i] into the seed of
    agents[i + 1]; a None entry (or no adapter list at all) means
    text_handoff.
    """

    def __init__(
        self,
        agents: list[Agent],
        adapters: list[Adapter | None] | None = None,
        name: str = "default",
    ) -> None:
        if not agents:
            raise ChainConfigError("A chain needs at least one agent.")
        if adapters is None:
            adapters = [None] * (len(agents) - 1)
        if len(adapters) != len(agents) - 1:
            raise ChainConfigError(
                f"Chain '{name}' has {len(agents)} agent(s) and needs {len(agents) - 1} adapter(s), "
                f"got {len(adapters)}."
            )
        self.name = name
        self.agents = list(agents)
        self.adapters: list[Adapter] = [a or text_handoff for a in adapters]

    def __len__(self) -> int:
        return len(self.agents)

    @property
    def stage_names(self) -> list[str]:
        return [agent.name for agent in self.agents]

    async def run(self, initial_input: Transcript | str) -> ChainResult:
        seed = _as_seed(initial_input)
        runs: list[AgentRun] = []
        total = len(self.agents)

        for index, agent in enumerate(self.agents):
            display.stage_start(index, total, agent.name, agent.model)
            run = await agent.run(seed)
            runs.append(run)

            if not run.ok:
                failure = ChainStageFailed(index, agent.name, run.error)
                logger.warning("Chain %s short-circuited at stage %d: %s", self.name, index, run.error)
                display.stage_failed(index, agent.name, str(run.error))
                display.chain_summary(runs)
                return ChainResult(chain=self.name, runs=runs, failure=failure)

            if index < total - 1:
                seed = _as_seed(self.adapters[index](run))

        display.chain_summary(runs)
        return ChainResult(chain=self.name, runs=runs, output=runs[-1].output)

# agent.py
# The agent invocation loop.
#
# The Agent is the kernel. The model is a passive responder; this class owns
# all control flow: it asks the model for a decision, dispatches requested
# actions through the registry, feeds results back and asks again.
#
# States:
#   AWAITING_MODEL → DONE               model returned a final message
#   AWAITING_MODEL → EXECUTING_ACTIONS  model requested one or more actions
#   EXECUTING_ACTIONS → AWAITING_MODEL  every request has a result
#   * → FAILED                          model boundary error or iteration bound
#
# The iteration bound caps AWAITING_MODEL visits. Without it a model that
# keeps requesting failing actions would loop forever.
#
# All terminal output is delegated to display.py. No formatting here.

import asyncio
import logging

from pydantic import BaseModel, ConfigDict

from ferrox import display
from ferrox.actions import DEFAULT_ACTION_TIMEOUT, ActionRegistry
from ferrox.errors import IterationLimitExceeded, ModelError, ModelProtocolError
from ferrox.model_client import ModelClient
from ferrox.models import (
    ActionErrorKind,
    ActionInvocationRequest,
    ActionResult,
    AgentState,
    FinalMessage,
    Transcript,
    new_correlation_id,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 8


class AgentRun(BaseModel):
    """Outcome of one invocation. FAILED is a value here, not an exception."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    agent: str
    state: AgentState
    transcript: Transcript
    model_calls: int = 0
    output: str | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.state is AgentState.DONE


class Agent:
    """
    One model, one system prompt, one action registry, one bounded loop.

    Agents hold no per-conversation state: every run() starts from a fresh
    copy of the seed transcript, so one instance can serve many chains and
    many concurrent runs.

    Example:
        agent = Agent(
            name="trader",
            client=OpenAIModelClient(model="openai/gpt-4o"),
            system_prompt="You decide and execute trades.",
            registry=ActionRegistry([get_price]),
        )
        run = await agent.run("What is BTC trading at?")
    """

    def __init__(
        self,
        name: str,
        client: ModelClient,
        system_prompt: str,
        registry: ActionRegistry | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        action_timeout: float = DEFAULT_ACTION_TIMEOUT,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1.")
        self.name = name
        self.system_prompt = system_prompt
        self.registry = registry if registry is not None else ActionRegistry()
        self.max_iterations = max_iterations
        self.action_timeout = action_timeout
        self._client = client

    @property
    def model(self) -> str:
        return self._client.model

    def __repr__(self) -> str:
        return f"Agent(name={self.name!r}, model={self.model!r}, actions={len(self.registry)})"

    # ------------------------------------------------------------------
    # Action turn
    # ------------------------------------------------------------------

    def _assign_correlation_ids(
        self, requests: list[ActionInvocationRequest], transcript: Transcript
    ) -> list[ActionInvocationRequest]:
        """Give every request a unique correlation id so results map back one-to-one."""
        seen = {m.correlation_id for m in transcript.messages if m.correlation_id}
        unique: list[ActionInvocationRequest] = []
        for request in requests:
            if not request.correlation_id or request.correlation_id in seen:
                request = request.model_copy(update={"correlation_id": new_correlation_id()})
            seen.add(request.correlation_id)
            unique.append(request)
        return unique

    async def _execute_turn(self, requests: list[ActionInvocationRequest]) -> list[ActionResult]:
        """
        Run one turn's requests concurrently and return results in issue order.

        Exclusive actions share a lock for the turn, so they run one at a
        time in the order they were requested while everything else runs
        freely around them.
        """
        exclusive = asyncio.Lock()

        async def run_one(request: ActionInvocationRequest) -> ActionResult:
            if self.registry.is_exclusive(request.action):
                async with exclusive:
                    return await self.registry.execute(request, self.action_timeout)
            return await self.registry.execute(request, self.action_timeout)

        tasks = [asyncio.ensure_future(run_one(request)) for request in requests]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        results: list[ActionResult] = []
        for request, outcome in zip(requests, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                results.append(
                    ActionResult.failure(request, ActionErrorKind.CANCELLED, f"Action '{request.action}' was cancelled.")
                )
            elif isinstance(outcome, Exception):
                logger.error("Unexpected failure dispatching %s", request.action, exc_info=outcome)
                results.append(
                    ActionResult.failure(request, ActionErrorKind.EXECUTION_ERROR, f"{type(outcome).__name__}: {outcome}")
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)
        return results

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _finish(
        self,
        state: AgentState,
        transcript: Transcript,
        model_calls: int,
        output: str | None = None,
        error: Exception | None = None,
    ) -> AgentRun:
        logger.info("%s finished %s after %d model call(s)", self.name, state.value, model_calls)
        return AgentRun(
            agent=self.name,
            state=state,
            transcript=transcript,
            model_calls=model_calls,
            output=output,
            error=error,
        )

    async def run(self, seed: Transcript | str | None = None) -> AgentRun:
        """
        Drive the invocation loop from `seed` to DONE or FAILED.

        The seed is copied, never mutated. Cancellation propagates out of
        this coroutine after in-flight cancellable actions are cancelled.
        """
        if isinstance(seed, str):
            transcript = Transcript.from_text(seed)
        elif seed is None:
            transcript = Transcript()
        else:
            transcript = seed.copy_fresh()

        signatures = self.registry.signatures()
        model_calls = 0

        while True:
            # ── AWAITING_MODEL ───────────────────────────────────────────
            if model_calls >= self.max_iterations:
                display.iteration_limit(self.name, self.max_iterations)
                return self._finish(
                    AgentState.FAILED,
                    transcript,
                    model_calls,
                    error=IterationLimitExceeded(self.name, self.max_iterations),
                )

            model_calls += 1
            display.model_call(self.name, model_calls, self.max_iterations)
            try:
                response = await self._client.complete(transcript, self.system_prompt, signatures)
                if not isinstance(response, FinalMessage) and not response:
                    raise ModelProtocolError("Model returned neither a final message nor any action request.")
            except ModelError as exc:
                display.model_failed(self.name, str(exc))
                return self._finish(AgentState.FAILED, transcript, model_calls, error=exc)
            except Exception as exc:
                logger.exception("%s: model client raised", self.name)
                error = ModelProtocolError(f"Model client raised {type(exc).__name__}: {exc}")
                error.__cause__ = exc
                display.model_failed(self.name, str(error))
                return self._finish(AgentState.FAILED, transcript, model_calls, error=error)

            if isinstance(response, FinalMessage):
                transcript.add_agent(response.content)
                display.final_message(self.name, response.content)
                return self._finish(AgentState.DONE, transcript, model_calls, output=response.content)

            # ── EXECUTING_ACTIONS ────────────────────────────────────────
            requests = self._assign_correlation_ids(list(response), transcript)
            transcript.add_agent(requests=requests)
            display.actions_requested(self.name, requests)
            logger.debug("%s executing %d action(s)", self.name, len(requests))

            for result in await self._execute_turn(requests):
                transcript.add_result(result)
                display.action_result(result)

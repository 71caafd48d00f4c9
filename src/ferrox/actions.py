# actions.py
# Action registry: the set of capabilities one agent may invoke.
#
# The agent never calls an executor directly: every invocation goes through
# ActionRegistry.execute(), which resolves, validates and runs under a
# timeout. Anything that goes wrong on the action side comes back as an
# ActionResult, so the model can see it and adapt.

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from ferrox.errors import ArgumentMismatch, DuplicateAction, UnknownAction
from ferrox.models import (
    ActionErrorKind,
    ActionInvocationRequest,
    ActionParameter,
    ActionResult,
    ActionSignature,
    ParamType,
)

logger = logging.getLogger(__name__)

DEFAULT_ACTION_TIMEOUT = 30.0

Executor = Callable[[dict[str, Any]], Any]

# Offered to the model whenever a registered action has a confirm step.
CONFIRM_ACTION = "confirm_action"
CONFIRM_SIGNATURE = ActionSignature(
    name=CONFIRM_ACTION,
    description=(
        "Commit an action that returned a preview. Pass the action's name and "
        "the preview value exactly as it was returned."
    ),
    parameters=(
        ActionParameter(name="name", description="Name of the previewed action"),
        ActionParameter(name="preview", type=ParamType.ANY, description="The preview value to commit"),
    ),
)

# Shielded executions that outlived their caller's wait. Held so the event
# loop does not garbage-collect them mid-flight.
_DETACHED: set[asyncio.Future] = set()


# ---------------------------------------------------------------------------
# Action pair & groups
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Action:
    """A signature and the executor behind it. Optional confirm step for staged side effects."""

    signature: ActionSignature
    executor: Executor
    confirm: Executor | None = None

    @property
    def name(self) -> str:
        return self.signature.name


@dataclass
class ActionGroup:
    """A named bundle of related actions, registered together."""

    name: str
    actions: list[Action] = field(default_factory=list)

    def add(self, action: Action) -> "ActionGroup":
        self.actions.append(action)
        return self


class ActionBuilder:
    """
    Fluent construction of an Action from a plain or async function.

    Example:
        get_price = (
            ActionBuilder("get_price", _get_price)
            .description("Spot price for a coin id")
            .parameter("symbol", "string", description="Coin id, e.g. bitcoin")
            .parameter("vs_currency", "string", required=False, default="usd")
            .build()
        )
    """

    def __init__(self, name: str, executor: Executor, confirm: Executor | None = None) -> None:
        self._name = name
        self._executor = executor
        self._confirm = confirm
        self._description = ""
        self._parameters: list[ActionParameter] = []
        self._exclusive = False
        self._cancellable = True

    def description(self, text: str) -> "ActionBuilder":
        self._description = text
        return self

    def parameter(
        self,
        name: str,
        type: str | ParamType = ParamType.STRING,
        required: bool = True,
        default: Any = None,
        description: str = "",
    ) -> "ActionBuilder":
        self._parameters.append(
            ActionParameter(
                name=name,
                type=ParamType(type),
                required=required,
                default=default,
                description=description,
            )
        )
        return self

    def exclusive(self, flag: bool = True) -> "ActionBuilder":
        self._exclusive = flag
        return self

    def not_cancellable(self) -> "ActionBuilder":
        self._cancellable = False
        return self

    def build(self) -> Action:
        signature = ActionSignature(
            name=self._name,
            description=self._description,
            parameters=tuple(self._parameters),
            exclusive=self._exclusive,
            cancellable=self._cancellable,
        )
        return Action(signature=signature, executor=self._executor, confirm=self._confirm)


# ---------------------------------------------------------------------------
# Argument checking
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


_TYPE_CHECKS: dict[ParamType, Callable[[Any], bool]] = {
    ParamType.STRING: lambda v: isinstance(v, str),
    ParamType.INTEGER: lambda v: isinstance(v, int) and not isinstance(v, bool),
    ParamType.NUMBER: _is_number,
    ParamType.BOOLEAN: lambda v: isinstance(v, bool),
    ParamType.ARRAY: lambda v: isinstance(v, (list, tuple)),
    ParamType.OBJECT: lambda v: isinstance(v, dict),
    ParamType.ANY: lambda v: True,
}


async def _call(fn: Executor, arguments: dict[str, Any]) -> Any:
    """Await async executors; push blocking ones onto a worker thread."""
    if inspect.iscoroutinefunction(fn):
        return await fn(arguments)
    result = await asyncio.to_thread(fn, arguments)
    if inspect.isawaitable(result):
        return await result
    return result


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ActionRegistry:
    """
    Name → Action mapping owned by one agent.

    Read-only once configured; safe to share between agents running
    concurrently on the same event loop.
    """

    def __init__(self, actions: list[Action] | None = None) -> None:
        self._actions: dict[str, Action] = {}
        for action in actions or []:
            self.add(action)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def register(self, signature: ActionSignature, executor: Executor, confirm: Executor | None = None) -> Action:
        if signature.name == CONFIRM_ACTION:
            raise DuplicateAction(f"Action name '{CONFIRM_ACTION}' is reserved.")
        if signature.name in self._actions:
            raise DuplicateAction(f"Action '{signature.name}' is already registered.")
        action = Action(signature=signature, executor=executor, confirm=confirm)
        self._actions[signature.name] = action
        logger.debug("Registered action %s", signature.name)
        return action

    def add(self, action: Action) -> Action:
        return self.register(action.signature, action.executor, action.confirm)

    def include(self, group: ActionGroup) -> None:
        for action in group.actions:
            self.add(action)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def resolve(self, name: str) -> Action:
        try:
            return self._actions[name]
        except KeyError:
            raise UnknownAction(f"Action '{name}' is not registered.") from None

    @property
    def confirmable(self) -> bool:
        return any(action.confirm is not None for action in self._actions.values())

    def signatures(self) -> list[ActionSignature]:
        """Registered signatures in order, plus confirm_action when anything can be confirmed."""
        signatures = [action.signature for action in self._actions.values()]
        if self.confirmable:
            signatures.append(CONFIRM_SIGNATURE)
        return signatures

    def is_exclusive(self, name: str) -> bool:
        action = self._actions.get(name)
        return action is not None and action.signature.exclusive

    def __contains__(self, name: object) -> bool:
        return name in self._actions

    def __len__(self) -> int:
        return len(self._actions)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, signature: ActionSignature, arguments: dict[str, Any]) -> dict[str, Any]:
        """
        Check arguments against the signature and return them with defaults filled.

        Raises ArgumentMismatch for a missing required parameter, an argument
        the signature does not declare, or a value of the wrong semantic type.
        Optional parameters may be passed as None.
        """
        if not isinstance(arguments, dict):
            raise ArgumentMismatch(f"Arguments for '{signature.name}' must be an object.")

        declared = {p.name for p in signature.parameters}
        extra = sorted(set(arguments) - declared)
        if extra:
            raise ArgumentMismatch(f"'{signature.name}' got undeclared argument(s): {', '.join(extra)}")

        resolved: dict[str, Any] = {}
        for param in signature.parameters:
            if param.name not in arguments or arguments[param.name] is None:
                if param.required:
                    raise ArgumentMismatch(f"'{signature.name}' is missing required parameter '{param.name}'.")
                resolved[param.name] = param.default
                continue

            value = arguments[param.name]
            if not _TYPE_CHECKS[param.type](value):
                raise ArgumentMismatch(
                    f"'{signature.name}' parameter '{param.name}' expects {param.type.value}, "
                    f"got {type(value).__name__}."
                )
            resolved[param.name] = value
        return resolved

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _invoke(self, action: Action, fn: Executor, arguments: dict[str, Any], timeout: float) -> Any:
        if action.signature.cancellable:
            return await asyncio.wait_for(_call(fn, arguments), timeout)

        # Side effects cannot be abandoned: the work runs to completion even
        # if this wait times out or is cancelled.
        task = asyncio.ensure_future(_call(fn, arguments))
        _DETACHED.add(task)
        task.add_done_callback(_DETACHED.discard)
        return await asyncio.wait_for(asyncio.shield(task), timeout)

    async def _run(
        self,
        request: ActionInvocationRequest,
        action: Action,
        fn: Executor,
        arguments: dict[str, Any],
        timeout: float,
        preview: bool,
    ) -> ActionResult:
        try:
            value = await self._invoke(action, fn, arguments, timeout)
        except TimeoutError:
            logger.warning("Action %s (%s) timed out after %ss", request.action, request.correlation_id, timeout)
            return ActionResult.failure(
                request, ActionErrorKind.TIMEOUT, f"Action '{request.action}' did not finish within {timeout}s."
            )
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            return ActionResult.failure(request, ActionErrorKind.CANCELLED, f"Action '{request.action}' was cancelled.")
        except Exception as exc:
            logger.warning("Action %s (%s) failed: %s", request.action, request.correlation_id, exc)
            return ActionResult.failure(request, ActionErrorKind.EXECUTION_ERROR, f"{type(exc).__name__}: {exc}")
        return ActionResult.success(request, value, preview=preview)

    async def execute(self, request: ActionInvocationRequest, timeout: float = DEFAULT_ACTION_TIMEOUT) -> ActionResult:
        """
        Resolve, validate and run one request. Never raises for action-side failures.

        Actions that carry a confirm step return a preview result; the side
        effect only happens through confirm(), which the model reaches by
        requesting confirm_action.
        """
        if request.action == CONFIRM_ACTION and self.confirmable:
            try:
                arguments = self.validate(CONFIRM_SIGNATURE, request.arguments)
            except ArgumentMismatch as exc:
                return ActionResult.failure(request, ActionErrorKind.ARGUMENT_MISMATCH, str(exc))
            return await self.confirm(arguments["name"], arguments["preview"], timeout, request.correlation_id)

        try:
            action = self.resolve(request.action)
        except UnknownAction as exc:
            return ActionResult.failure(request, ActionErrorKind.UNKNOWN_ACTION, str(exc))

        try:
            arguments = self.validate(action.signature, request.arguments)
        except ArgumentMismatch as exc:
            return ActionResult.failure(request, ActionErrorKind.ARGUMENT_MISMATCH, str(exc))

        return await self._run(request, action, action.executor, arguments, timeout, preview=action.confirm is not None)

    async def confirm(
        self,
        name: str,
        preview: Any,
        timeout: float = DEFAULT_ACTION_TIMEOUT,
        correlation_id: str | None = None,
    ) -> ActionResult:
        """Commit a previewed action by running its confirm step on the preview value."""
        request = ActionInvocationRequest(action=name, arguments={"preview": preview})
        if correlation_id:
            request.correlation_id = correlation_id
        try:
            action = self.resolve(name)
        except UnknownAction as exc:
            return ActionResult.failure(request, ActionErrorKind.UNKNOWN_ACTION, str(exc))

        if action.confirm is None:
            return ActionResult.failure(
                request, ActionErrorKind.EXECUTION_ERROR, f"Action '{name}' has no confirmation step."
            )
        return await self._run(request, action, action.confirm, request.arguments, timeout, preview=False)

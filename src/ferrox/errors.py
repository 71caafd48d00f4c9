# errors.py
# Exception taxonomy for the Ferrox engine.
#
# Action-level failures (unknown action, bad arguments, executor errors,
# timeouts, cancellation) never escape as exceptions from the agent loop:
# they are folded into ActionResult values. The classes for them exist so the
# registry can raise internally and so callers using the registry directly
# get typed errors from resolve()/validate().


class FerroxError(Exception):
    """Base class for every error raised by the engine."""


# ---------------------------------------------------------------------------
# Registry / action errors
# ---------------------------------------------------------------------------


class DuplicateAction(FerroxError):
    """Raised when an action name is registered twice in one registry."""


class UnknownAction(FerroxError):
    """Raised when a requested action name is absent from the registry."""


class ArgumentMismatch(FerroxError):
    """Raised when invocation arguments do not satisfy the action's parameters."""


class ActionExecutionError(FerroxError):
    """Raised when an action executor itself fails."""


# ---------------------------------------------------------------------------
# Model boundary errors
# ---------------------------------------------------------------------------


class ModelError(FerroxError):
    """Base class for failures on the model boundary. Always fatal to the loop."""


class ModelUnavailable(ModelError):
    """Network, auth or server-side failure talking to the model back-end."""


class ModelRateLimited(ModelError):
    """The model back-end rejected the call for rate-limit reasons."""


class ModelProtocolError(ModelError):
    """The model back-end returned something that cannot be interpreted."""


# ---------------------------------------------------------------------------
# Loop / chain errors
# ---------------------------------------------------------------------------


class IterationLimitExceeded(FerroxError):
    """Raised when an agent visits the model more times than its bound allows."""

    def __init__(self, agent: str, limit: int) -> None:
        super().__init__(f"Agent '{agent}' exceeded its limit of {limit} model calls.")
        self.agent = agent
        self.limit = limit


class ChainConfigError(FerroxError):
    """Raised when a chain is constructed with an invalid shape."""


class ChainStageFailed(FerroxError):
    """A chain stage ended FAILED; carries the stage position and the cause."""

    def __init__(self, stage: int, agent: str, cause: BaseException) -> None:
        super().__init__(f"Stage {stage} ({agent}) failed: {cause}")
        self.stage = stage
        self.agent = agent
        self.cause = cause

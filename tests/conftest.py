import asyncio

import pytest

from ferrox import display
from ferrox.frontend import InboundMessage
from ferrox.models import ActionInvocationRequest, FinalMessage, Transcript


@pytest.fixture(autouse=True)
def quiet_display():
    display.set_enabled(False)
    yield
    display.set_enabled(True)


def final(text: str) -> FinalMessage:
    return FinalMessage(content=text)


def call(action: str, correlation_id: str | None = None, **arguments) -> ActionInvocationRequest:
    if correlation_id is None:
        return ActionInvocationRequest(action=action, arguments=arguments)
    return ActionInvocationRequest(action=action, arguments=arguments, correlation_id=correlation_id)


class ScriptedModel:
    """
    A ModelClient that replays canned responses in order.

    Each entry may be a FinalMessage, a list of requests, an exception to
    raise, or a callable taking the transcript. With repeat_last the final
    entry is replayed forever.
    """

    def __init__(self, *responses, model: str = "scripted/model", repeat_last: bool = False) -> None:
        self.model = model
        self._responses = list(responses)
        self._repeat_last = repeat_last
        self.calls: list[Transcript] = []
        self.system_prompts: list[str] = []
        self.available: list = []

    async def complete(self, transcript, system_prompt, available_actions):
        self.calls.append(transcript.copy_fresh())
        self.system_prompts.append(system_prompt)
        self.available = list(available_actions)
        if not self._responses:
            raise AssertionError("ScriptedModel ran out of responses")

        if self._repeat_last and len(self._responses) == 1:
            response = self._responses[0]
        else:
            response = self._responses.pop(0)

        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(transcript)
            if asyncio.iscoroutine(response):
                response = await response
        if isinstance(response, list):
            # Fresh request objects per call so repeated replays stay independent.
            return [r.model_copy() for r in response]
        return response


class FakeFrontEnd:
    def __init__(self, messages: list[InboundMessage]) -> None:
        self._inbox = list(messages)
        self.sent: list[tuple[str, str]] = []

    async def receive(self):
        await asyncio.sleep(0)
        if not self._inbox:
            return None
        return self._inbox.pop(0)

    async def send(self, conversation_id: str, text: str) -> None:
        self.sent.append((conversation_id, text))

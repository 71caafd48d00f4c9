# model_client.py
# Model boundary: the only place that knows how a provider speaks.
#
# The agent loop talks to a ModelClient and nothing else. Each call is
# stateless: the whole transcript and the full action list are resent every
# time. Provider failures are classified into the three ModelError kinds;
# nothing provider-specific leaks past this module.

import json
import logging
import os
from typing import Any, Protocol, runtime_checkable

import openai
from openai import AsyncOpenAI
from pydantic import ValidationError

from ferrox.errors import ModelProtocolError, ModelRateLimited, ModelUnavailable
from ferrox.models import (
    ActionInvocationRequest,
    ActionSignature,
    FinalMessage,
    ModelResponse,
    ParamType,
    Role,
    Transcript,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


@runtime_checkable
class ModelClient(Protocol):
    """Stateless request/response boundary to a language model."""

    model: str

    async def complete(
        self,
        transcript: Transcript,
        system_prompt: str,
        available_actions: list[ActionSignature],
    ) -> ModelResponse: ...


# ---------------------------------------------------------------------------
# Wire conversion (OpenAI chat-completions dialect)
# ---------------------------------------------------------------------------


def action_to_tool(signature: ActionSignature) -> dict[str, Any]:
    """Render an ActionSignature as a function-calling tool schema."""
    properties: dict[str, Any] = {}
    for param in signature.parameters:
        prop: dict[str, Any] = {}
        if param.type is not ParamType.ANY:
            prop["type"] = param.type.value
        if param.type is ParamType.ARRAY:
            # Some providers reject array schemas without an items clause.
            prop["items"] = {"type": "string"}
        if param.description:
            prop["description"] = param.description
        if not param.required and param.default is not None:
            prop["default"] = param.default
        properties[param.name] = prop

    return {
        "type": "function",
        "function": {
            "name": signature.name,
            "description": signature.description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": [p.name for p in signature.parameters if p.required],
            },
        },
    }


def transcript_to_messages(transcript: Transcript, system_prompt: str) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})

    for message in transcript.messages:
        if message.role is Role.USER:
            messages.append({"role": "user", "content": message.content})
        elif message.role is Role.AGENT:
            entry: dict[str, Any] = {"role": "assistant", "content": message.content or None}
            if message.requests:
                entry["tool_calls"] = [
                    {
                        "id": request.correlation_id,
                        "type": "function",
                        "function": {
                            "name": request.action,
                            "arguments": json.dumps(request.arguments),
                        },
                    }
                    for request in message.requests
                ]
            messages.append(entry)
        else:
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": message.correlation_id,
                    "content": message.content,
                }
            )
    return messages


def parse_completion(completion: Any) -> ModelResponse:
    """Turn a chat-completion response into a FinalMessage or a list of requests."""
    choices = getattr(completion, "choices", None)
    if not choices:
        raise ModelProtocolError("No completion choices returned from the API.")

    message = choices[0].message
    tool_calls = getattr(message, "tool_calls", None) or []
    if not tool_calls:
        return FinalMessage(content=(message.content or "").strip())

    requests: list[ActionInvocationRequest] = []
    for call in tool_calls:
        function = getattr(call, "function", None)
        if function is None or not getattr(function, "name", None):
            raise ModelProtocolError(f"Tool call without a function name: {call!r}")

        raw = function.arguments or "{}"
        try:
            arguments = json.loads(raw, strict=False)
        except (json.JSONDecodeError, TypeError) as exc:
            raise ModelProtocolError(f"Tool call arguments are malformed: {exc}\nPayload: {raw}") from exc
        if not isinstance(arguments, dict):
            raise ModelProtocolError(f"Tool call arguments must be a JSON object, got: {raw}")

        # A missing id is left empty; the agent assigns a fresh one.
        try:
            request = ActionInvocationRequest(
                action=function.name,
                arguments=arguments,
                correlation_id=getattr(call, "id", None) or "",
            )
        except ValidationError as exc:
            raise ModelProtocolError(f"Tool call could not be parsed: {exc}") from exc
        requests.append(request)
    return requests


# ---------------------------------------------------------------------------
# OpenAI-compatible client
# ---------------------------------------------------------------------------


class OpenAIModelClient:
    """
    ModelClient over any OpenAI-compatible chat-completions endpoint.

    Defaults to OpenRouter so the same class serves every provider it
    fronts; pass base_url to talk to OpenAI directly.

    Example:
        client = OpenAIModelClient(model="openai/gpt-4o")
        response = await client.complete(transcript, "You are...", registry.signatures())
    """

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        temperature: float | None = 0.7,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.model = model
        self._temperature = temperature
        self._client = client or AsyncOpenAI(
            base_url=base_url or DEFAULT_BASE_URL,
            api_key=api_key or os.getenv("OPENROUTER_API_KEY") or os.getenv("OPENAI_API_KEY"),
        )

    async def complete(
        self,
        transcript: Transcript,
        system_prompt: str,
        available_actions: list[ActionSignature],
    ) -> ModelResponse:
        request: dict[str, Any] = {
            "model": self.model,
            "messages": transcript_to_messages(transcript, system_prompt),
        }
        if self._temperature is not None:
            request["temperature"] = self._temperature
        if available_actions:
            request["tools"] = [action_to_tool(s) for s in available_actions]
            request["tool_choice"] = "auto"
            request["parallel_tool_calls"] = True

        logger.debug("Calling %s with %d message(s)", self.model, len(request["messages"]))
        try:
            completion = await self._client.chat.completions.create(**request)
        except openai.RateLimitError as exc:
            raise ModelRateLimited(str(exc)) from exc
        except (openai.BadRequestError, openai.UnprocessableEntityError, openai.APIResponseValidationError) as exc:
            raise ModelProtocolError(str(exc)) from exc
        except openai.APIError as exc:
            raise ModelUnavailable(str(exc)) from exc

        return parse_completion(completion)

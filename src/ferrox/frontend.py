# frontend.py
# Front-end boundary. The engine only ever sees already-normalized text:
# voice and image payloads are transcribed/described before they get here.

import asyncio
from typing import Literal, Protocol, runtime_checkable

from pydantic import BaseModel, Field
from rich.console import Console
from rich.prompt import Prompt


class InboundMessage(BaseModel):
    """A normalized message from a front-end conversation."""

    conversation_id: str = Field(default="default", min_length=1)
    text: str
    source: Literal["text", "voice", "image"] = Field(
        default="text", description="What the text was normalized from. Informational only."
    )


@runtime_checkable
class FrontEnd(Protocol):
    async def receive(self) -> InboundMessage | None:
        """Next inbound message, or None when the front-end is closed."""
        ...

    async def send(self, conversation_id: str, text: str) -> None: ...


class ConsoleFrontEnd:
    """Single-conversation terminal front-end. Empty line, `exit` or EOF closes it."""

    def __init__(self, conversation_id: str = "console", console: Console | None = None) -> None:
        self._conversation_id = conversation_id
        self._console = console or Console()

    async def receive(self) -> InboundMessage | None:
        try:
            text = await asyncio.to_thread(Prompt.ask, "[bold cyan]you[/bold cyan]", console=self._console)
        except EOFError:
            return None
        text = text.strip()
        if not text or text.lower() in {"exit", "quit"}:
            return None
        return InboundMessage(conversation_id=self._conversation_id, text=text)

    async def send(self, conversation_id: str, text: str) -> None:
        self._console.print(f"[bold green]ferrox[/bold green] {text}")

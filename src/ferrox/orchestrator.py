# orchestrator.py
# The Ferrox top-level façade.
#
# One inbound message → one chain run → one outbound message. Runs for the
# same conversation never interleave unless concurrent sessions are enabled.
# Whatever goes wrong inside the chain, the front-end only ever receives a
# plain user-facing sentence.

import asyncio
import logging
from collections import OrderedDict, deque
from typing import Callable

from ferrox import display
from ferrox.chain import Chain
from ferrox.errors import ChainConfigError
from ferrox.frontend import FrontEnd, InboundMessage
from ferrox.models import Transcript

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGE = "Sorry, I couldn't complete that request. Please try again in a moment."
DEFAULT_TIMEOUT_MESSAGE = "Sorry, that took too long and was stopped. Please try again."
DEFAULT_CANCELLED_MESSAGE = "Okay, I stopped working on that request."
DEFAULT_HISTORY_CONVERSATIONS = 1000

Router = Callable[[InboundMessage], str]


class Ferrox:
    """
    Binds front-end conversations to chain runs.

    Example:
        ferrox = Ferrox(build_chain(config, catalog, client_factory), frontend=ConsoleFrontEnd())
        await ferrox.serve()
    """

    def __init__(
        self,
        chains: Chain | list[Chain],
        frontend: FrontEnd | None = None,
        router: Router | None = None,
        concurrent_sessions: bool = False,
        history_turns: int = 0,
        history_conversations: int = DEFAULT_HISTORY_CONVERSATIONS,
        run_timeout: float | None = None,
        error_message: str = DEFAULT_ERROR_MESSAGE,
        timeout_message: str = DEFAULT_TIMEOUT_MESSAGE,
        cancelled_message: str = DEFAULT_CANCELLED_MESSAGE,
    ) -> None:
        if isinstance(chains, Chain):
            chains = [chains]
        if not chains:
            raise ChainConfigError("Ferrox needs at least one chain.")

        self._chains: dict[str, Chain] = {}
        for chain in chains:
            if chain.name in self._chains:
                raise ChainConfigError(f"Duplicate chain name '{chain.name}'.")
            self._chains[chain.name] = chain

        self._frontend = frontend
        self._router = router
        self._concurrent_sessions = concurrent_sessions
        self._history_turns = history_turns
        self._history_conversations = history_conversations
        self._run_timeout = run_timeout
        self.error_message = error_message
        self.timeout_message = timeout_message
        self.cancelled_message = cancelled_message

        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._running: dict[str, set[asyncio.Task]] = {}
        # Least recently active conversation first.
        self._history: OrderedDict[str, deque[tuple[str, str]]] = OrderedDict()

        display.banner(list(self._chains))

    # ------------------------------------------------------------------
    # Routing & seeding
    # ------------------------------------------------------------------

    @property
    def chains(self) -> list[str]:
        return list(self._chains)

    def select(self, message: InboundMessage) -> Chain:
        if self._router is None:
            return next(iter(self._chains.values()))
        name = self._router(message)
        try:
            return self._chains[name]
        except KeyError:
            raise ChainConfigError(f"Router selected unknown chain '{name}'.") from None

    def history(self, conversation_id: str) -> list[tuple[str, str]]:
        return list(self._history.get(conversation_id, ()))

    def _seed(self, message: InboundMessage) -> Transcript:
        transcript = Transcript()
        if self._history_turns:
            for user_text, reply in self._history.get(message.conversation_id, ()):
                transcript.add_user(user_text)
                transcript.add_agent(reply)
        transcript.add_user(message.text)
        return transcript

    # ------------------------------------------------------------------
    # Handling
    # ------------------------------------------------------------------

    async def handle(self, message: InboundMessage | str, conversation_id: str = "default") -> str:
        """
        Run one chain for one message and return the text to send back.

        Returns a string in all cases: the front-end always gets a reply,
        whether it's the terminal agent's output or a user-facing error.
        Only a router naming a chain that does not exist raises.
        """
        if isinstance(message, str):
            message = InboundMessage(conversation_id=conversation_id, text=message)

        display.message_received(message.conversation_id, message.text)
        if self._concurrent_sessions:
            return await self._run(message)

        cid = message.conversation_id
        lock = self._locks.get(cid)
        if lock is None:
            lock = self._locks[cid] = asyncio.Lock()
        self._lock_users[cid] = self._lock_users.get(cid, 0) + 1
        try:
            async with lock:
                return await self._run(message)
        finally:
            # Forget the lock once no run holds or awaits it.
            self._lock_users[cid] -= 1
            if not self._lock_users[cid]:
                del self._lock_users[cid]
                del self._locks[cid]

    async def _run(self, message: InboundMessage) -> str:
        chain = self.select(message)
        display.chain_start(chain.name, chain.stage_names)

        cid = message.conversation_id
        task = asyncio.ensure_future(chain.run(self._seed(message)))
        running = self._running.setdefault(cid, set())
        running.add(task)
        try:
            result = await asyncio.wait_for(task, self._run_timeout)
        except TimeoutError:
            logger.warning("Chain %s timed out for %s after %ss", chain.name, cid, self._run_timeout)
            display.halt(f"Chain '{chain.name}' exceeded the {self._run_timeout}s run timeout.")
            return self.timeout_message
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            logger.info("Chain %s cancelled for %s", chain.name, cid)
            display.halt(f"Chain '{chain.name}' was cancelled.")
            return self.cancelled_message
        except Exception:
            logger.exception("Chain %s raised for %s", chain.name, cid)
            display.halt(f"Chain '{chain.name}' raised an unexpected error.")
            return self.error_message
        finally:
            running.discard(task)
            if not running and self._running.get(cid) is running:
                del self._running[cid]

        if not result.ok:
            logger.warning("Chain %s failed for %s: %s", chain.name, cid, result.failure)
            display.halt(str(result.failure))
            return self.error_message

        reply = result.output or ""
        if self._history_turns:
            self._remember(cid, message.text, reply)
        display.reply_sent(reply)
        return reply

    def _remember(self, conversation_id: str, text: str, reply: str) -> None:
        turns = self._history.get(conversation_id)
        if turns is None:
            turns = self._history[conversation_id] = deque(maxlen=self._history_turns)
        turns.append((text, reply))
        self._history.move_to_end(conversation_id)
        while len(self._history) > self._history_conversations:
            self._history.popitem(last=False)

    def cancel(self, conversation_id: str) -> int:
        """Cancel every in-flight chain run of a conversation. Returns how many were cancelled."""
        tasks = [t for t in self._running.get(conversation_id, ()) if not t.done()]
        for task in tasks:
            task.cancel()
        return len(tasks)

    # ------------------------------------------------------------------
    # Front-end loop
    # ------------------------------------------------------------------

    async def _respond(self, message: InboundMessage) -> None:
        # One bad message must not take the serve loop or its siblings down.
        try:
            reply = await self.handle(message)
        except Exception:
            logger.exception("Handling a message for %s failed", message.conversation_id)
            display.halt("A message could not be routed to a chain.")
            reply = self.error_message

        try:
            await self._frontend.send(message.conversation_id, reply)
        except Exception:
            logger.exception("Sending the reply to %s failed", message.conversation_id)

    async def serve(self) -> None:
        """Pump messages from the front-end until it closes, then drain in-flight replies."""
        if self._frontend is None:
            raise ChainConfigError("serve() needs a front-end.")

        async with asyncio.TaskGroup() as group:
            while True:
                message = await self._frontend.receive()
                if message is None:
                    break
                group.create_task(self._respond(message))

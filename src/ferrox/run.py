# run.py
# Entry point. Config and wiring only. No logic lives here.
#
# Swap model strings for any OpenRouter-supported model.
# https://openrouter.ai/models

import asyncio
import logging

import httpx
from dotenv import load_dotenv
from rich.logging import RichHandler

from ferrox.config import AgentConfig, ChainConfig, FerroxSettings, build_chain
from ferrox.frontend import ConsoleFrontEnd
from ferrox.market import coingecko_actions, coingecko_client, dexscreener_actions, dexscreener_client
from ferrox.model_client import OpenAIModelClient
from ferrox.orchestrator import Ferrox

NORMALIZER_PROMPT = """\
You receive a single user message that may have been transcribed from voice \
or described from an image, so it can be noisy. Rewrite it as one clear, \
self-contained request. Keep every ticker, amount, address and chain name \
exactly as given. Reply with the rewritten request only.\
"""

TRADER_PROMPT = """\
You are an onchain trading assistant with native capability to pull data \
from CoinGecko and DexScreener.

You receive a JSON object with a "request" field. Use the available actions \
to gather whatever data the request needs; request several actions at once \
when they are independent. When you have enough information, answer with \
the facts you found and any decision you reached. Never invent prices.\
"""

FORMATTER_PROMPT = """\
You receive a JSON object with an "answer" and the "actions" that produced \
it. Write the reply a chat user will read: short, plain text, numbers \
rounded sensibly, no JSON, no mention of internal actions. If an action \
failed, say which information is unavailable.\
"""

PIPELINE = ChainConfig(
    name="trading",
    agents=[
        AgentConfig(name="normalizer", system_prompt=NORMALIZER_PROMPT),
        AgentConfig(name="trader", system_prompt=TRADER_PROMPT, actions=["coingecko", "dexscreener"]),
        AgentConfig(name="formatter", system_prompt=FORMATTER_PROMPT),
    ],
    handoffs=["decision", "results"],
)


async def serve(ferrox: Ferrox, clients: list[httpx.AsyncClient]) -> None:
    """Run the front-end loop, then close the action HTTP clients."""
    try:
        await ferrox.serve()
    finally:
        for client in clients:
            await client.aclose()


def main() -> None:
    load_dotenv()
    settings = FerroxSettings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )

    clients = [coingecko_client(settings.coingecko_api_key), dexscreener_client()]
    catalog = {
        "coingecko": coingecko_actions(client=clients[0]),
        "dexscreener": dexscreener_actions(client=clients[1]),
    }

    def client_factory(model: str) -> OpenAIModelClient:
        return OpenAIModelClient(
            model=model,
            api_key=settings.api_key,
            base_url=settings.base_url,
            temperature=settings.temperature,
        )

    ferrox = Ferrox(
        build_chain(PIPELINE, catalog, client_factory, settings),
        frontend=ConsoleFrontEnd(),
        concurrent_sessions=settings.concurrent_sessions,
        history_turns=settings.history_turns,
        history_conversations=settings.history_conversations,
        run_timeout=settings.run_timeout,
    )
    asyncio.run(serve(ferrox, clients))


if __name__ == "__main__":
    main()

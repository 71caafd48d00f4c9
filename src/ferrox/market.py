# market.py
# Reference market-data action groups.
#
# Thin pass-throughs: every action returns the provider's JSON untouched.
# The engine treats them like any other executor; nothing here is part of
# the loop's correctness. HTTP failures raise and surface to the model as
# action_execution_error results.

import logging
from typing import Any

import httpx

from ferrox.actions import ActionBuilder, ActionGroup

logger = logging.getLogger(__name__)

COINGECKO_URL = "https://api.coingecko.com/api/v3"
COINGECKO_PRO_URL = "https://pro-api.coingecko.com/api/v3"
DEXSCREENER_URL = "https://api.dexscreener.com"


async def _get_json(client: httpx.AsyncClient, path: str, params: dict[str, Any] | None = None) -> Any:
    # Drop unset optionals so providers apply their own defaults.
    query = {k: v for k, v in (params or {}).items() if v is not None}
    logger.debug("GET %s%s %s", client.base_url, path, query)
    response = await client.get(path, params=query)
    response.raise_for_status()
    return response.json()


# ---------------------------------------------------------------------------
# CoinGecko
# ---------------------------------------------------------------------------


def coingecko_client(api_key: str | None = None) -> httpx.AsyncClient:
    """HTTP client for CoinGecko. With an api_key the pro endpoint is used."""
    headers = {"accept": "application/json"}
    if api_key:
        headers["x-cg-pro-api-key"] = api_key
    return httpx.AsyncClient(
        base_url=COINGECKO_PRO_URL if api_key else COINGECKO_URL,
        headers=headers,
        timeout=10,
    )


def coingecko_actions(client: httpx.AsyncClient | None = None, api_key: str | None = None) -> ActionGroup:
    """
    CoinGecko price and market actions.

    Pass a client from coingecko_client() (or one with an injected transport
    in tests) to control its lifetime; the caller closes it with aclose().
    """
    if client is None:
        client = coingecko_client(api_key)

    async def get_price(args: dict) -> Any:
        return await _get_json(
            client,
            "/simple/price",
            {"ids": args["ids"], "vs_currencies": args["vs_currencies"]},
        )

    async def get_coin_market_chart(args: dict) -> Any:
        return await _get_json(
            client,
            f"/coins/{args['id']}/market_chart",
            {"vs_currency": args["vs_currency"], "days": args["days"], "interval": args["interval"]},
        )

    async def search_coins(args: dict) -> Any:
        return await _get_json(client, "/search", {"query": args["query"]})

    async def get_global_data(args: dict) -> Any:
        return await _get_json(client, "/global")

    group = ActionGroup("coingecko")
    group.add(
        ActionBuilder("get_price", get_price)
        .description("Current price of one or more coins by CoinGecko id")
        .parameter("ids", "string", description="Comma-separated coin ids (e.g. bitcoin,ethereum)")
        .parameter("vs_currencies", "string", required=False, default="usd", description="Comma-separated quote currencies")
        .build()
    )
    group.add(
        ActionBuilder("get_coin_market_chart", get_coin_market_chart)
        .description("Historical market data include price, market cap, and 24h volume")
        .parameter("id", "string", description="The coin id (e.g. bitcoin)")
        .parameter("vs_currency", "string", required=False, default="usd", description="The target currency")
        .parameter("days", "string", description="Data up to number of days ago")
        .parameter("interval", "string", required=False, description="Data interval, e.g. daily")
        .build()
    )
    group.add(
        ActionBuilder("search_coins", search_coins)
        .description("Search coins, exchanges and categories by name or symbol")
        .parameter("query", "string", description="Search text, e.g. BTC")
        .build()
    )
    group.add(
        ActionBuilder("get_global_data", get_global_data)
        .description("Global cryptocurrency market data")
        .build()
    )
    return group


# ---------------------------------------------------------------------------
# DexScreener
# ---------------------------------------------------------------------------


def dexscreener_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=DEXSCREENER_URL, timeout=10)


def dexscreener_actions(client: httpx.AsyncClient | None = None) -> ActionGroup:
    if client is None:
        client = dexscreener_client()

    async def search_pairs(args: dict) -> Any:
        return await _get_json(client, "/latest/dex/search", {"q": args["query"]})

    async def get_token_pairs(args: dict) -> Any:
        return await _get_json(client, f"/token-pairs/v1/{args['chain_id']}/{args['token_address']}")

    async def get_pairs(args: dict) -> Any:
        return await _get_json(client, f"/latest/dex/pairs/{args['chain_id']}/{args['pair_id']}")

    group = ActionGroup("dexscreener")
    group.add(
        ActionBuilder("search_pairs", search_pairs)
        .description("Search for pairs or tokens matching query")
        .parameter("query", "string", description="Search query")
        .build()
    )
    group.add(
        ActionBuilder("get_token_pairs", get_token_pairs)
        .description("Get the pools of a given token address")
        .parameter("chain_id", "string", description="The chain ID (e.g. solana)")
        .parameter("token_address", "string", description="Token's address")
        .build()
    )
    group.add(
        ActionBuilder("get_pairs", get_pairs)
        .description("Get one or multiple pairs by chain and pair address")
        .parameter("chain_id", "string", description="The chain ID (e.g. solana)")
        .parameter("pair_id", "string", description="Pair ID")
        .build()
    )
    return group

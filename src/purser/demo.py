"""Built-in catalog and canned provider payloads for dry runs."""

from __future__ import annotations

from typing import Any

from .gateway import CatalogAction, DryRunGateway, StaticCatalog


DEMO_TOOLS: list[dict[str, Any]] = [
    {
        "id": "market-data",
        "name": "Real-Time Market Data",
        "description": "Current price, volume, market cap and 24h change for a token pair.",
        "endpoint": "/api/v1/market-data",
        "priceUSD": 0.01,
        "category": "market-data",
        "parameters": [{"name": "pair"}, {"name": "interval"}],
    },
    {
        "id": "sentiment",
        "name": "Sentiment Analysis",
        "description": "Sentiment from news, a fear/greed index and on-chain signals.",
        "endpoint": "/api/v1/sentiment",
        "priceUSD": 0.05,
        "category": "sentiment",
        "parameters": [{"name": "token"}, {"name": "sources"}],
    },
    {
        "id": "route-optimizer",
        "name": "DEX Route Optimizer",
        "description": "Optimal swap route across DEXes with price impact and gas estimates.",
        "endpoint": "/api/v1/route",
        "priceUSD": 0.02,
        "category": "routing",
        "parameters": [{"name": "tokenIn"}, {"name": "tokenOut"}, {"name": "amountIn"}, {"name": "chain"}],
    },
    {
        "id": "trade-execute",
        "name": "Trade Execution",
        "description": "Execute a swap via the optimal route.",
        "endpoint": "/api/v1/execute",
        "priceUSD": 0.10,
        "category": "execution",
        "parameters": [{"name": "routeId"}, {"name": "maxSlippageBps"}, {"name": "deadline"}],
    },
    {
        "id": "portfolio-analytics",
        "name": "Portfolio Analytics",
        "description": "Portfolio risk metrics and rebalancing suggestions.",
        "endpoint": "/api/v1/analytics",
        "priceUSD": 0.03,
        "category": "analytics",
        "parameters": [{"name": "address"}, {"name": "chain"}],
    },
    {
        "id": "web-search",
        "name": "Web Search",
        "description": "Search the web for news and research on any topic.",
        "endpoint": "/api/v1/search",
        "priceUSD": 0.02,
        "category": "market-data",
        "parameters": [{"name": "query"}],
    },
]


def _market_data(params: dict) -> dict:
    return {"pair": params.get("pair", "ETH/USDC"), "price": 3412.55, "change24h": "2.35%", "volume24h": 1.82e10}


def _sentiment(params: dict) -> dict:
    return {
        "token": params.get("token", "ETH"),
        "signals": [
            {"source": "news", "score": 0.42, "confidence": 0.86},
            {"source": "fear-greed-index", "score": 0.3, "confidence": 0.75},
            {"source": "onchain", "score": 0.1, "confidence": 0.65},
        ],
        "news": [{"title": "Staking inflows reach a three-month high"}],
    }


def _route(params: dict) -> dict:
    return {
        "bestRoute": "aerodrome",
        "routes": [
            {"dex": "aerodrome", "priceImpactBps": 12, "expectedOut": "0.01465"},
            {"dex": "uniswap-v3", "priceImpactBps": 18, "expectedOut": "0.01462"},
        ],
        "tokenIn": params.get("tokenIn", "USDC"),
        "tokenOut": params.get("tokenOut", "ETH"),
    }


def _portfolio(params: dict) -> dict:
    return {
        "address": params.get("address", "0xdemo"),
        "positions": [{"token": "USDC", "allocation": 55.0}, {"token": "ETH", "allocation": 45.0}],
        "riskMetrics": {"largestPositionPct": 55.0, "concentrationRisk": "moderate"},
    }


def _web_search(params: dict) -> dict:
    return {"query": params.get("query", ""), "summary": "Analysts expect continued strength on rising L2 activity"}


def _trade(params: dict) -> dict:
    return {"routeId": params.get("routeId", "latest"), "status": "simulated", "txHash": None}


DEMO_PAYLOADS = {
    "market-data": _market_data,
    "sentiment": _sentiment,
    "route-optimizer": _route,
    "portfolio-analytics": _portfolio,
    "web-search": _web_search,
    "trade-execute": _trade,
}


def demo_actions() -> list[CatalogAction]:
    return [CatalogAction.from_dict(t) for t in DEMO_TOOLS]


def demo_catalog() -> StaticCatalog:
    return StaticCatalog(demo_actions())


def demo_gateway() -> DryRunGateway:
    return DryRunGateway(payloads=DEMO_PAYLOADS)

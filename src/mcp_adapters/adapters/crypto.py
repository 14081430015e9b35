"""Cryptocurrency market data and rule-based insights from CoinMarketCap.

Requires ``COINMARKETCAP_API_KEY``.  The scoring helpers are pure functions
over CoinMarketCap listing/quote payloads; only the handlers do I/O.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx
from mcp.server import Server
from mcp.types import TextContent, Tool

from ..base import (
    ToolHandler,
    build_server,
    configure_logging,
    fetch_json,
    int_arg,
    json_response,
    require_args,
    require_env,
    run_stdio,
)
from ..config import HTTP_TIMEOUT
from ..errors import ValidationError

logger = logging.getLogger(__name__)

BASE_URL = "https://pro-api.coinmarketcap.com/v1"
API_KEY_ENV = "COINMARKETCAP_API_KEY"
DEFAULT_CURRENCY = "USD"
LISTING_LIMIT = 100

STRATEGIES = ("buy", "sell", "short", "long")
INTERVALS = ("short-term", "medium-term", "long-term")
RISK_LEVELS = ("low", "medium", "high")

TIME_WINDOWS: dict[str, list[str]] = {
    "short-term": ["percent_change_1h", "percent_change_24h", "percent_change_7d"],
    "medium-term": ["percent_change_7d", "percent_change_30d"],
    "long-term": ["percent_change_30d", "percent_change_60d", "percent_change_90d"],
}

# Global-metrics field holding the market change for each horizon.
MARKET_CHANGE_FIELDS: dict[str, str] = {
    "short-term": "total_market_cap_yesterday_percentage_change",
    "medium-term": "total_market_cap_7d_percentage_change",
    "long-term": "total_market_cap_30d_percentage_change",
}


def _build_tools() -> list[Tool]:
    convert = {"type": "string", "default": DEFAULT_CURRENCY, "description": "Quote currency"}
    interval = {"type": "string", "enum": list(INTERVALS)}
    return [
        Tool(
            name="getCryptoDetails",
            description="Price, market cap, volume and supply for one cryptocurrency.",
            inputSchema={
                "type": "object",
                "properties": {
                    "symbol": {"type": "string", "description": "Ticker, e.g. BTC"},
                    "convert": convert,
                },
                "required": ["symbol"],
            },
        ),
        Tool(
            name="getMarketOverview",
            description="Global market metrics, top gainers and losers, and a sentiment rating.",
            inputSchema={"type": "object", "properties": {"convert": convert}},
        ),
        Tool(
            name="getCryptoRecommendations",
            description=(
                "Rank the top 100 coins for a strategy and time horizon using momentum, "
                "volume, rank-based risk and market alignment. Not financial advice."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "strategy": {"type": "string", "enum": list(STRATEGIES)},
                    "timeInterval": interval,
                    "limit": {"type": "integer", "minimum": 1, "maximum": 100, "default": 5},
                    "riskTolerance": {"type": "string", "enum": list(RISK_LEVELS), "default": "medium"},
                },
                "required": ["strategy", "timeInterval"],
            },
        ),
        Tool(
            name="analyzeTrends",
            description="Trend direction, volatility and market comparison for up to 10 coins.",
            inputSchema={
                "type": "object",
                "properties": {
                    "symbols": {"type": "string", "description": "Comma-separated tickers, e.g. BTC,ETH"},
                    "convert": convert,
                    "timeInterval": {**interval, "default": "medium-term"},
                },
                "required": ["symbols"],
            },
        ),
    ]


TOOLS = _build_tools()

# ---------------------------------------------------------------------------
# API access
# ---------------------------------------------------------------------------


def _make_client() -> httpx.AsyncClient:
    key = require_env(API_KEY_ENV)[API_KEY_ENV]
    return httpx.AsyncClient(
        base_url=BASE_URL,
        headers={"X-CMC_PRO_API_KEY": key, "Accept": "application/json"},
        timeout=HTTP_TIMEOUT,
    )


async def _cmc(client: httpx.AsyncClient, path: str, **params: Any) -> Any:
    body = await fetch_json(client, "GET", path, params=params)
    return body.get("data") if isinstance(body, dict) else None


def _choice(args: dict[str, Any], name: str, allowed: tuple[str, ...], default: str | None = None) -> str:
    value = args.get(name) or default
    if value not in allowed:
        raise ValidationError(f"{name} must be one of {', '.join(allowed)}")
    return value


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def _is_bullish(strategy: str) -> bool:
    return strategy in ("buy", "long")


def score_coin(
    coin: dict[str, Any],
    strategy: str,
    interval: str,
    risk: str,
    market_change: float,
    currency: str = DEFAULT_CURRENCY,
) -> dict[str, Any]:
    """Score one listing for *strategy*; higher is a better fit."""
    quote = coin["quote"][currency]
    bullish = _is_bullish(strategy)
    score = 0.0
    reasons: list[str] = []

    for window in TIME_WINDOWS[interval]:
        change = quote.get(window)
        if not change:
            continue
        label = window.replace("percent_change_", "")
        if bullish:
            score += change
            if change > 10:
                reasons.append(f"Strong upward momentum: {label} change of {change:.2f}%")
        else:
            score -= change
            if change < -10:
                reasons.append(f"Downward trend: {label} change of {change:.2f}%")

    market_cap = quote.get("market_cap") or 0
    ratio = (quote.get("volume_24h") or 0) / market_cap if market_cap else 0.0
    if ratio > 0.1:
        score += 10 if bullish else -10
        reasons.append(f"High trading volume relative to market cap: {ratio * 100:.2f}%")

    rank = coin.get("cmc_rank") or 0
    if risk == "low" and 0 < rank <= 20:
        score += 20
        reasons.append("Large market cap (top 20) provides reduced volatility risk")
    elif risk == "high" and 50 < rank <= 200:
        score += 15
        reasons.append("Smaller market cap with growth potential")

    day, week = quote.get("percent_change_24h") or 0, quote.get("percent_change_7d") or 0
    if day * week > 0:
        direction = "positive" if day > 0 else "negative"
        favourable = (direction == "positive") == bullish
        score += 15 if favourable else -15
        reasons.append(f"Consistent {direction} trend in 24h and 7d periods")

    if (market_change > 0 and bullish) or (market_change < 0 and not bullish):
        score += 10
        reasons.append(f"Aligned with overall market trend ({market_change:.2f}% 24h change)")

    return {
        "name": coin.get("name"),
        "symbol": coin.get("symbol"),
        "rank": coin.get("cmc_rank"),
        "score": round(score, 2),
        "reasons": reasons,
        "metrics": {
            "price": quote.get("price"),
            "market_cap": quote.get("market_cap"),
            "volume_24h": quote.get("volume_24h"),
            "percent_change_1h": quote.get("percent_change_1h"),
            "percent_change_24h": quote.get("percent_change_24h"),
            "percent_change_7d": quote.get("percent_change_7d"),
            "percent_change_30d": quote.get("percent_change_30d"),
            "volume_to_market_cap_ratio": ratio,
        },
    }


def generate_recommendations(
    coins: list[dict[str, Any]],
    metrics: dict[str, Any],
    strategy: str,
    interval: str,
    risk: str,
    limit: int,
    currency: str = DEFAULT_CURRENCY,
) -> dict[str, Any]:
    global_quote = metrics["quote"][currency]
    market_change = global_quote.get("total_market_cap_yesterday_percentage_change") or 0
    scored = [score_coin(c, strategy, interval, risk, market_change, currency) for c in coins]
    # Scores are already oriented to the strategy, so the best fit is always first.
    scored.sort(key=lambda s: s["score"], reverse=True)
    return {
        "strategy": strategy,
        "timeInterval": interval,
        "riskTolerance": risk,
        "marketConditions": {
            "total_market_cap": global_quote.get("total_market_cap"),
            "btc_dominance": metrics.get("btc_dominance"),
            "market_cap_change_24h": market_change,
        },
        "recommendations": scored[:limit],
        "disclaimer": "Rule-based ranking from market data; not financial advice.",
    }


def market_sentiment(cap_change: float, volume_change: float) -> dict[str, str]:
    if cap_change > 5:
        rating = "Strongly Bullish"
        text = f"Market cap increased significantly by {cap_change:.2f}% in the last 24 hours."
    elif cap_change > 2:
        rating = "Bullish"
        text = f"Market cap increased by {cap_change:.2f}% in the last 24 hours."
    elif cap_change > -2:
        rating = "Neutral"
        text = f"Market cap relatively stable with {cap_change:.2f}% change in the last 24 hours."
    elif cap_change > -5:
        rating = "Bearish"
        text = f"Market cap decreased by {abs(cap_change):.2f}% in the last 24 hours."
    else:
        rating = "Strongly Bearish"
        text = f"Market cap decreased significantly by {abs(cap_change):.2f}% in the last 24 hours."

    if volume_change > 20 and cap_change > 0:
        text += f" Trading volume increased by {volume_change:.2f}%, indicating strong buying pressure."
    elif volume_change > 20 and cap_change < 0:
        text += f" Trading volume increased by {volume_change:.2f}%, indicating strong selling pressure."
    elif volume_change < -20:
        text += f" Trading volume decreased by {abs(volume_change):.2f}%, indicating reduced market activity."
    return {"rating": rating, "explanation": text}


def trend_direction(change: float) -> str:
    if change > 5:
        return "Strong Uptrend"
    if change > 1:
        return "Moderate Uptrend"
    if change > -1:
        return "Sideways/Neutral"
    if change > -5:
        return "Moderate Downtrend"
    return "Strong Downtrend"


def volatility_label(strength: float) -> str:
    if strength > 20:
        return "Very High"
    if strength > 10:
        return "High"
    if strength > 5:
        return "Moderate"
    return "Low"


def analyze_coin(coin: dict[str, Any], interval: str, market_change: float, currency: str) -> dict[str, Any]:
    quote = coin["quote"][currency]
    windows = TIME_WINDOWS[interval]
    changes = [quote.get(w) or 0 for w in windows]
    average = sum(changes) / len(windows)
    strength = sum(abs(c) for c in changes) / len(windows)
    direction = trend_direction(average)
    volatility = volatility_label(strength)
    outperforming = average > market_change
    return {
        "name": coin.get("name"),
        "symbol": coin.get("symbol"),
        "current_price": quote.get("price"),
        "market_cap": quote.get("market_cap"),
        "metrics": {w: quote.get(w) for w in windows},
        "analysis": {
            "trend_direction": direction,
            "volatility": volatility,
            "outperforming_market": outperforming,
            "average_change": average,
            "strength": strength,
        },
        "trend_summary": (
            f"{coin.get('name')} is in a {direction.lower()} with {volatility.lower()} volatility, "
            f"{'outperforming' if outperforming else 'underperforming'} the overall market "
            f"over this {interval}."
        ),
    }


# ---------------------------------------------------------------------------
# Individual tool handlers
# ---------------------------------------------------------------------------


async def _handle_details(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "symbol")
    symbol = str(args["symbol"]).strip().upper()
    currency = str(args.get("convert") or DEFAULT_CURRENCY).upper()
    async with _make_client() as client:
        data = await _cmc(client, "/cryptocurrency/quotes/latest", symbol=symbol, convert=currency)
    coin = (data or {}).get(symbol)
    if isinstance(coin, list):
        coin = coin[0] if coin else None
    if not coin:
        raise ValidationError(f'Cryptocurrency with symbol "{symbol}" not found.')
    quote = (coin.get("quote") or {}).get(currency)
    if not quote:
        raise ValidationError(f"Price data for {symbol} in {currency} is not available.")
    return json_response(
        {
            "name": coin.get("name"),
            "symbol": coin.get("symbol"),
            "rank": coin.get("cmc_rank"),
            "price": quote.get("price"),
            "market_cap": quote.get("market_cap"),
            "volume_24h": quote.get("volume_24h"),
            "percent_change_1h": quote.get("percent_change_1h"),
            "percent_change_24h": quote.get("percent_change_24h"),
            "percent_change_7d": quote.get("percent_change_7d"),
            "percent_change_30d": quote.get("percent_change_30d"),
            "circulating_supply": coin.get("circulating_supply"),
            "total_supply": coin.get("total_supply"),
            "max_supply": coin.get("max_supply"),
            "last_updated": quote.get("last_updated"),
            "tags": coin.get("tags") or [],
            "platform": coin.get("platform"),
            "date_added": coin.get("date_added"),
        }
    )


def _mover(coin: dict[str, Any], currency: str) -> dict[str, Any]:
    quote = coin["quote"][currency]
    return {
        "name": coin.get("name"),
        "symbol": coin.get("symbol"),
        "price": quote.get("price"),
        "percent_change_24h": quote.get("percent_change_24h"),
    }


async def _handle_overview(args: dict[str, Any]) -> list[TextContent]:
    currency = str(args.get("convert") or DEFAULT_CURRENCY).upper()
    async with _make_client() as client:
        metrics = await _cmc(client, "/global-metrics/quotes/latest", convert=currency)
        coins = await _cmc(
            client, "/cryptocurrency/listings/latest", limit=LISTING_LIMIT, convert=currency
        )
    market = metrics["quote"][currency]

    def change(coin: dict[str, Any]) -> float:
        return coin["quote"][currency].get("percent_change_24h") or 0

    gainers = sorted((c for c in coins if change(c) > 0), key=change, reverse=True)[:5]
    losers = sorted((c for c in coins if change(c) < 0), key=change)[:5]
    cap_change = market.get("total_market_cap_yesterday_percentage_change") or 0
    volume_change = market.get("total_volume_24h_yesterday_percentage_change") or 0
    return json_response(
        {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "market_data": {
                "total_market_cap": market.get("total_market_cap"),
                "total_volume_24h": market.get("total_volume_24h"),
                "btc_dominance": metrics.get("btc_dominance"),
                "eth_dominance": metrics.get("eth_dominance"),
                "market_cap_change_24h": cap_change,
                "volume_change_24h": volume_change,
            },
            "sentiment": market_sentiment(cap_change, volume_change),
            "top_gainers": [_mover(c, currency) for c in gainers],
            "top_losers": [_mover(c, currency) for c in losers],
        }
    )


async def _handle_recommendations(args: dict[str, Any]) -> list[TextContent]:
    strategy = _choice(args, "strategy", STRATEGIES)
    interval = _choice(args, "timeInterval", INTERVALS)
    risk = _choice(args, "riskTolerance", RISK_LEVELS, "medium")
    limit = int_arg(args, "limit", 5, 1, 100)
    async with _make_client() as client:
        coins = await _cmc(
            client, "/cryptocurrency/listings/latest", limit=LISTING_LIMIT, convert=DEFAULT_CURRENCY
        )
        metrics = await _cmc(client, "/global-metrics/quotes/latest", convert=DEFAULT_CURRENCY)
    return json_response(generate_recommendations(coins, metrics, strategy, interval, risk, limit))


async def _handle_trends(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "symbols")
    symbols = [s.strip().upper() for s in str(args["symbols"]).split(",") if s.strip()]
    if not 1 <= len(symbols) <= 10:
        raise ValidationError("Please provide between 1 and 10 cryptocurrency symbols")
    currency = str(args.get("convert") or DEFAULT_CURRENCY).upper()
    interval = _choice(args, "timeInterval", INTERVALS, "medium-term")

    async with _make_client() as client:
        data = await _cmc(
            client, "/cryptocurrency/quotes/latest", symbol=",".join(symbols), convert=currency
        )
        metrics = await _cmc(client, "/global-metrics/quotes/latest", convert=currency)
    market_change = metrics["quote"][currency].get(MARKET_CHANGE_FIELDS[interval]) or 0

    analyses: list[dict[str, Any]] = []
    missing: list[dict[str, str]] = []
    for symbol in symbols:
        coin = (data or {}).get(symbol)
        if isinstance(coin, list):
            coin = coin[0] if coin else None
        if not coin or currency not in (coin.get("quote") or {}):
            missing.append({"symbol": symbol, "error": "Coin not found or data unavailable"})
            continue
        analyses.append(analyze_coin(coin, interval, market_change, currency))
    analyses.sort(key=lambda a: a["analysis"]["average_change"], reverse=True)

    comparison = None
    if len(analyses) > 1:
        top, bottom = analyses[0], analyses[-1]
        top_change = top["analysis"]["average_change"]
        bottom_change = bottom["analysis"]["average_change"]
        comparison = {
            "top_performer": f"{top['name']} ({top['symbol']}) with {top_change:.2f}% average change",
            "worst_performer": (
                f"{bottom['name']} ({bottom['symbol']}) with {bottom_change:.2f}% average change"
            ),
            "relative_strength": (
                "The difference between top and bottom performers is "
                f"{top_change - bottom_change:.2f}%"
            ),
        }
    return json_response(
        {
            "timeInterval": interval,
            "market_trend": {
                "relevant_market_change": market_change,
                "trend": trend_direction(market_change),
            },
            "comparative_analysis": comparison,
            "coin_analyses": analyses + missing,
        }
    )


HANDLERS: dict[str, ToolHandler] = {
    "getCryptoDetails": _handle_details,
    "getMarketOverview": _handle_overview,
    "getCryptoRecommendations": _handle_recommendations,
    "analyzeTrends": _handle_trends,
}


def create_mcp_server(name: str = "crypto-advisor") -> Server:
    return build_server(name, TOOLS, HANDLERS)


def main_stdio() -> None:
    configure_logging()
    run_stdio(create_mcp_server())


if __name__ == "__main__":
    main_stdio()

"""Weather adapter backed by the OpenWeatherMap API.

Requires ``OPENWEATHER_API_KEY``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
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
    require_args,
    require_env,
    run_stdio,
    text_response,
)
from ..config import HTTP_TIMEOUT
from ..errors import ValidationError

logger = logging.getLogger(__name__)

BASE_URL = "https://api.openweathermap.org"
API_KEY_ENV = "OPENWEATHER_API_KEY"

UNITS = ("metric", "imperial")

_UNITS_SCHEMA = {
    "type": "string",
    "enum": list(UNITS),
    "default": "metric",
    "description": "metric (°C, m/s) or imperial (°F, mph)",
}


def _build_tools() -> list[Tool]:
    return [
        Tool(
            name="getCurrentWeather",
            description="Current weather conditions for a city.",
            inputSchema={
                "type": "object",
                "properties": {
                    "city": {"type": "string", "description": "City name, e.g. 'London' or 'London,GB'"},
                    "units": _UNITS_SCHEMA,
                },
                "required": ["city"],
            },
        ),
        Tool(
            name="getForecast",
            description="Daily forecast for a city, one midday reading per day.",
            inputSchema={
                "type": "object",
                "properties": {
                    "city": {"type": "string", "description": "City name, e.g. 'Paris,FR'"},
                    "units": _UNITS_SCHEMA,
                    "days": {"type": "integer", "minimum": 1, "maximum": 5, "default": 3},
                },
                "required": ["city"],
            },
        ),
        Tool(
            name="searchCity",
            description="Find cities matching a name, to get the exact form for weather queries.",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Full or partial city name"},
                    "limit": {"type": "integer", "minimum": 1, "maximum": 5, "default": 5},
                },
                "required": ["query"],
            },
        ),
    ]


TOOLS = _build_tools()

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=BASE_URL, timeout=HTTP_TIMEOUT)


def _units(args: dict[str, Any]) -> str:
    units = args.get("units") or "metric"
    if units not in UNITS:
        raise ValidationError(f"units must be one of {', '.join(UNITS)}")
    return units


def _unit_labels(units: str) -> tuple[str, str]:
    return ("°C", "m/s") if units == "metric" else ("°F", "mph")


def _local_time(ts: int, offset: int) -> datetime:
    return datetime.fromtimestamp(ts, timezone.utc) + timedelta(seconds=offset)


async def _get(path: str, params: dict[str, Any]) -> Any:
    key = require_env(API_KEY_ENV)[API_KEY_ENV]
    async with _make_client() as client:
        return await fetch_json(client, "GET", path, params={**params, "appid": key})


def format_current(data: dict[str, Any], units: str) -> str:
    temp, wind = _unit_labels(units)
    main = data.get("main", {})
    weather = (data.get("weather") or [{}])[0]
    offset = data.get("timezone", 0)
    sys_info = data.get("sys", {})
    lines = [
        f"Weather in {data.get('name')}, {sys_info.get('country', '')}",
        "-" * 31,
        f"Temperature: {main.get('temp')}{temp} (feels like: {main.get('feels_like')}{temp})",
        f"Conditions: {weather.get('main', '')} - {weather.get('description', '')}",
        f"Humidity: {main.get('humidity')}%",
        f"Wind: {data.get('wind', {}).get('speed')} {wind}",
        f"Pressure: {main.get('pressure')} hPa",
    ]
    if data.get("visibility") is not None:
        lines.append(f"Visibility: {round(data['visibility'] / 1000)} km")
    for label in ("sunrise", "sunset"):
        if sys_info.get(label):
            lines.append(f"{label.title()}: {_local_time(sys_info[label], offset):%H:%M} (local)")
    return "\n".join(lines)


def pick_daily(entries: list[dict[str, Any]], offset: int, days: int) -> list[dict[str, Any]]:
    """Keep the 3-hour slot closest to local noon for each day, first *days* days."""
    by_day: dict[str, dict[str, Any]] = {}
    for entry in entries:
        local = _local_time(entry["dt"], offset)
        day = local.date().isoformat()
        best = by_day.get(day)
        if best is None or abs(local.hour - 12) < abs(_local_time(best["dt"], offset).hour - 12):
            by_day[day] = entry
    return [by_day[d] for d in sorted(by_day)[:days]]


def format_forecast(data: dict[str, Any], units: str, days: int) -> str:
    temp, wind = _unit_labels(units)
    city = data.get("city", {})
    offset = city.get("timezone", 0)
    header = f"Weather Forecast for {city.get('name')}, {city.get('country', '')}"
    out = [header, "=" * len(header), ""]
    for entry in pick_daily(data.get("list", []), offset, days):
        title = f"{_local_time(entry['dt'], offset):%a %b %d %Y}"
        main = entry.get("main", {})
        weather = (entry.get("weather") or [{}])[0]
        out += [
            title,
            "-" * len(title),
            f"Conditions: {weather.get('main', '')} - {weather.get('description', '')}",
            f"Temperature: {main.get('temp')}{temp} "
            f"(min: {main.get('temp_min')}{temp}, max: {main.get('temp_max')}{temp})",
            f"Humidity: {main.get('humidity')}%",
            f"Wind: {entry.get('wind', {}).get('speed')} {wind}",
            f"Pressure: {main.get('pressure')} hPa",
            "",
        ]
    return "\n".join(out).strip()


# ---------------------------------------------------------------------------
# Individual tool handlers
# ---------------------------------------------------------------------------


async def _handle_current(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "city")
    units = _units(args)
    data = await _get("/data/2.5/weather", {"q": args["city"], "units": units})
    return text_response(format_current(data, units))


async def _handle_forecast(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "city")
    units = _units(args)
    days = int_arg(args, "days", 3, 1, 5)
    data = await _get("/data/2.5/forecast", {"q": args["city"], "units": units})
    return text_response(format_forecast(data, units, days))


async def _handle_search(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "query")
    limit = int_arg(args, "limit", 5, 1, 5)
    data = await _get("/geo/1.0/direct", {"q": args["query"], "limit": limit})
    if not data:
        return text_response(f'No cities found matching "{args["query"]}".')
    lines = []
    for city in data:
        parts = [city.get("name"), city.get("state"), city.get("country")]
        location = ",".join(p for p in parts if p)
        lines.append(f"- {location} (lat {city.get('lat')}, lon {city.get('lon')})")
    return text_response("Matching cities:\n" + "\n".join(lines))


HANDLERS: dict[str, ToolHandler] = {
    "getCurrentWeather": _handle_current,
    "getForecast": _handle_forecast,
    "searchCity": _handle_search,
}


def create_mcp_server(name: str = "weather") -> Server:
    return build_server(name, TOOLS, HANDLERS)


def main_stdio() -> None:
    configure_logging()
    run_stdio(create_mcp_server())


if __name__ == "__main__":
    main_stdio()

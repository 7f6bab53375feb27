"""Actions that need no device integration: weather, web search, date and time."""

from __future__ import annotations

import logging
import time
from datetime import date, datetime
from typing import Any, Callable, Dict

import httpx
from pydantic import BaseModel, Field

from nova_voice.config.store import ConfigStore

from .executor import ActionRegistry

LOGGER = logging.getLogger(__name__)

OPEN_METEO_URL = "https://api.open-meteo.com/v1/forecast"
DUCKDUCKGO_URL = "https://api.duckduckgo.com/"
CACHE_TTL_SEC = 600

WEATHER_CODES: Dict[int, str] = {
    0: "clear",
    1: "partly cloudy",
    2: "partly cloudy",
    3: "partly cloudy",
    45: "foggy",
    48: "foggy",
    51: "drizzle",
    53: "drizzle",
    55: "drizzle",
    61: "rain",
    63: "rain",
    65: "rain",
    66: "freezing rain",
    67: "freezing rain",
    71: "snow",
    73: "snow",
    75: "snow",
    77: "snow grains",
    80: "rain showers",
    81: "rain showers",
    82: "rain showers",
    85: "snow showers",
    86: "snow showers",
    95: "thunderstorms",
    96: "thunderstorms with hail",
    99: "thunderstorms with hail",
}


def describe_weather_code(code: Any) -> str:
    try:
        return WEATHER_CODES.get(int(code), "unknown conditions")
    except (TypeError, ValueError):
        return "unknown conditions"


def format_clock(moment: datetime) -> str:
    hour = moment.hour % 12 or 12
    suffix = "AM" if moment.hour < 12 else "PM"
    return f"{hour}:{moment.minute:02d} {suffix}"


def format_day(moment: date) -> str:
    return f"{moment:%A}, {moment:%B} {moment.day}, {moment.year}"


class LocationParams(BaseModel):
    lat: float | None = None
    lon: float | None = None


class ForecastParams(LocationParams):
    days: int = Field(5, ge=1, le=16)


class SearchParams(BaseModel):
    query: str = Field(min_length=1)


class BuiltinActions:
    """Handlers backed by Open-Meteo and the DuckDuckGo instant-answer API."""

    def __init__(
        self,
        store: ConfigStore,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = datetime.now,
        timeout: float = 5.0,
    ) -> None:
        self.store = store
        self._transport = transport
        self._clock = clock
        self._timeout = timeout
        self._cache: dict[tuple[Any, ...], tuple[float, str]] = {}

    # ------------------------------------------------------------------ #
    # Handlers
    # ------------------------------------------------------------------ #
    def tell_date(self) -> str:
        return f"It's {format_day(self._clock())}"

    def tell_time(self) -> str:
        return f"It's {format_clock(self._clock())}"

    async def weather(self, params: LocationParams) -> str:
        location = self._location(params)
        if location is None:
            return "I don't know where you are yet. Set weather_latitude and weather_longitude."
        unit = self.store.current.weather_temperature_unit
        key = ("current", *location, unit)
        cached = self._cached(key)
        if cached is not None:
            return cached
        query = {
            "latitude": location[0],
            "longitude": location[1],
            "current": "temperature_2m,apparent_temperature,weather_code,wind_speed_10m",
            "temperature_unit": unit,
            "wind_speed_unit": "mph",
        }
        try:
            data = await self._get_json(OPEN_METEO_URL, query)
        except httpx.TimeoutException:
            return "The weather service timed out."
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.warning("Weather lookup failed: %s", exc)
            return "Couldn't fetch the weather."
        current = data.get("current") or {}
        if current.get("temperature_2m") is None:
            return "Couldn't fetch the weather."
        letter = "F" if unit == "fahrenheit" else "C"
        temperature = round(float(current["temperature_2m"]))
        summary = f"{temperature}{letter} and {describe_weather_code(current.get('weather_code'))}"
        feels = current.get("apparent_temperature")
        if feels is not None and round(float(feels)) != temperature:
            summary += f", feels like {round(float(feels))}{letter}"
        wind = current.get("wind_speed_10m")
        if wind is not None:
            summary += f". Wind {round(float(wind))} mph"
        return self._remember(key, summary)

    async def forecast(self, params: ForecastParams) -> str:
        location = self._location(params)
        if location is None:
            return "I don't know where you are yet. Set weather_latitude and weather_longitude."
        unit = self.store.current.weather_temperature_unit
        key = ("daily", *location, unit, params.days)
        cached = self._cached(key)
        if cached is not None:
            return cached
        query = {
            "latitude": location[0],
            "longitude": location[1],
            "daily": "temperature_2m_max,temperature_2m_min,weather_code",
            "temperature_unit": unit,
            "forecast_days": params.days,
            "timezone": "auto",
        }
        try:
            data = await self._get_json(OPEN_METEO_URL, query)
        except httpx.TimeoutException:
            return "The weather service timed out."
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.warning("Forecast lookup failed: %s", exc)
            return "Couldn't fetch the forecast."
        daily = data.get("daily") or {}
        days = daily.get("time") or []
        highs = daily.get("temperature_2m_max") or []
        lows = daily.get("temperature_2m_min") or []
        codes = daily.get("weather_code") or []
        parts: list[str] = []
        for index in range(min(params.days, len(days), len(highs), len(lows), len(codes))):
            label = "Today" if index == 0 else self._weekday_name(days[index])
            parts.append(
                f"{label}: {round(float(highs[index]))} over {round(float(lows[index]))}, "
                f"{describe_weather_code(codes[index])}"
            )
        if not parts:
            return "Couldn't fetch the forecast."
        return self._remember(key, ". ".join(parts))

    async def search(self, params: SearchParams) -> str:
        query = {"q": params.query, "format": "json", "no_html": 1, "skip_disambig": 1}
        try:
            data = await self._get_json(DUCKDUCKGO_URL, query)
        except httpx.TimeoutException:
            return "The search timed out."
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.warning("Search failed: %s", exc)
            return "Couldn't search right now."
        if data.get("AbstractText"):
            return str(data["AbstractText"])
        if data.get("Answer"):
            return str(data["Answer"])
        for topic in data.get("RelatedTopics") or []:
            if isinstance(topic, dict) and topic.get("Text"):
                return str(topic["Text"])
        return f"Found nothing for {params.query}."

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    def _location(self, params: LocationParams) -> tuple[float, float] | None:
        settings = self.store.current
        lat = params.lat if params.lat is not None else settings.weather_latitude
        lon = params.lon if params.lon is not None else settings.weather_longitude
        if lat is None or lon is None:
            return None
        return round(lat, 3), round(lon, 3)

    async def _get_json(self, url: str, query: dict[str, Any]) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout), transport=self._transport) as client:
            response = await client.get(url, params=query)
            response.raise_for_status()
            data = response.json()
        return data if isinstance(data, dict) else {}

    def _cached(self, key: tuple[Any, ...]) -> str | None:
        entry = self._cache.get(key)
        if entry and (time.monotonic() - entry[0]) < CACHE_TTL_SEC:
            return entry[1]
        return None

    def _remember(self, key: tuple[Any, ...], value: str) -> str:
        self._cache[key] = (time.monotonic(), value)
        return value

    @staticmethod
    def _weekday_name(value: str) -> str:
        try:
            return f"{date.fromisoformat(value):%A}"
        except ValueError:
            return value


def register_builtin_actions(
    registry: ActionRegistry,
    store: ConfigStore,
    **options: Any,
) -> BuiltinActions:
    """Register weather, forecast, search, date and time on ``registry``."""
    actions = BuiltinActions(store, **options)
    registry.register("weather", actions.weather, schema=LocationParams, description="Current weather", aliases=("get_weather",))
    registry.register("forecast", actions.forecast, schema=ForecastParams, description="Daily forecast", aliases=("weather_forecast",))
    registry.register("search", actions.search, schema=SearchParams, description="Web search", aliases=("web_search",))
    registry.register("date", actions.tell_date, description="Today's date", aliases=("today",))
    registry.register("time", actions.tell_time, description="Current time")
    return actions

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from api.models import utc_now
from lib.commands import days_ahead
from lib.error_handler import AppError

logger = logging.getLogger(__name__)

SWEDISH_LOCATIONS = {
    'stockholm': (59.3293, 18.0686, 'Stockholm'),
    'göteborg': (57.7089, 11.9746, 'Goteborg'),
    'goteborg': (57.7089, 11.9746, 'Goteborg'),
    'gothenburg': (57.7089, 11.9746, 'Goteborg'),
    'malmö': (55.6050, 13.0038, 'Malmo'),
    'malmo': (55.6050, 13.0038, 'Malmo'),
    'uppsala': (59.8586, 17.6389, 'Uppsala'),
    'västerås': (59.6099, 16.5448, 'Vasteras'),
    'vasteras': (59.6099, 16.5448, 'Vasteras'),
    'örebro': (59.2753, 15.2134, 'Orebro'),
    'orebro': (59.2753, 15.2134, 'Orebro'),
    'linköping': (58.4108, 15.6214, 'Linkoping'),
    'linkoping': (58.4108, 15.6214, 'Linkoping'),
    'helsingborg': (56.0465, 12.6945, 'Helsingborg'),
    'jönköping': (57.7826, 14.1618, 'Jonkoping'),
    'jonkoping': (57.7826, 14.1618, 'Jonkoping'),
    'norrköping': (58.5877, 16.1924, 'Norrkoping'),
    'norrkoping': (58.5877, 16.1924, 'Norrkoping'),
    'lund': (55.7047, 13.1910, 'Lund'),
    'umeå': (63.8258, 20.2630, 'Umea'),
    'umea': (63.8258, 20.2630, 'Umea'),
    'gävle': (60.6749, 17.1413, 'Gavle'),
    'gavle': (60.6749, 17.1413, 'Gavle'),
    'borås': (57.7210, 12.9401, 'Boras'),
    'boras': (57.7210, 12.9401, 'Boras'),
    'eskilstuna': (59.3711, 16.5077, 'Eskilstuna'),
    'karlstad': (59.3793, 13.5036, 'Karlstad'),
    'sundsvall': (62.3908, 17.3069, 'Sundsvall'),
    'luleå': (65.5848, 22.1547, 'Lulea'),
    'lulea': (65.5848, 22.1547, 'Lulea'),
    'kiruna': (67.8558, 20.2253, 'Kiruna'),
    'abisko': (68.3495, 18.8312, 'Abisko'),
    'åre': (63.3990, 13.0815, 'Are'),
    'are': (63.3990, 13.0815, 'Are'),
}

# SMHI Wsymb2 codes
WEATHER_CONDITIONS = {
    1: ('Klart', 'Clear'),
    2: ('Latt molnighet', 'Nearly clear'),
    3: ('Halvklart', 'Variable cloudiness'),
    4: ('Molnigt', 'Halfclear'),
    5: ('Mulet', 'Cloudy'),
    6: ('Mulet', 'Overcast'),
    7: ('Dimma', 'Fog'),
    8: ('Latta regnskurar', 'Light rain showers'),
    9: ('Mattliga regnskurar', 'Moderate rain showers'),
    10: ('Kraftiga regnskurar', 'Heavy rain showers'),
    11: ('Aska', 'Thunderstorm'),
    12: ('Latta byar av snoblandat regn', 'Light sleet showers'),
    13: ('Mattliga byar av snoblandat regn', 'Moderate sleet showers'),
    14: ('Kraftiga byar av snoblandat regn', 'Heavy sleet showers'),
    15: ('Latta snobyar', 'Light snow showers'),
    16: ('Mattliga snobyar', 'Moderate snow showers'),
    17: ('Kraftiga snobyar', 'Heavy snow showers'),
    18: ('Latt regn', 'Light rain'),
    19: ('Mattligt regn', 'Moderate rain'),
    20: ('Kraftigt regn', 'Heavy rain'),
    21: ('Aska', 'Thunder'),
    22: ('Latt snoblandat regn', 'Light sleet'),
    23: ('Mattligt snoblandat regn', 'Moderate sleet'),
    24: ('Kraftigt snoblandat regn', 'Heavy sleet'),
    25: ('Latt snofall', 'Light snowfall'),
    26: ('Mattligt snofall', 'Moderate snowfall'),
    27: ('Kraftigt snofall', 'Heavy snowfall'),
}

@dataclass
class WeatherData:
    temperature: float
    wind_speed: float
    precipitation: float
    humidity: float
    symbol: int

@dataclass
class WeatherAnswer:
    """Reply to a weather question; ``resolved`` is False for follow-up prompts"""
    text: str
    resolved: bool

class WeatherService:
    def __init__(
        self,
        base_url: str = 'https://opendata-download-metfcst.smhi.se/api',
        timeout: float = 10.0,
        clock: Callable[[], datetime] = utc_now
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.clock = clock

    async def get_weather_by_coordinates(self, lat: float, lon: float, language: str = 'en', days: int = 0) -> str:
        weather = await self._fetch_forecast(lat, lon, days)
        label = 'Din position' if language == 'sv' else 'Your position'
        return self._format_weather(weather, label, language, days)

    async def get_weather(self, location_name: str, language: str = 'en', days: int = 0) -> Optional[str]:
        """Forecast for a known Swedish town, or None when the name is unknown"""
        location = find_location(location_name)
        if not location:
            return None

        lat, lon, name = location
        weather = await self._fetch_forecast(lat, lon, days)
        return self._format_weather(weather, name, language, days)

    async def answer_query(self, text: str, language: str, chat) -> WeatherAnswer:
        """Answer a free-text weather question, e.g. "weather in Umea tomorrow"."""
        location_name = await chat.extract_location(text)
        if not location_name:
            if language == 'sv':
                return WeatherAnswer('Vilken plats vill du veta vadret for? T.ex "Stockholm", "Goteborg".', False)
            return WeatherAnswer('Which location would you like weather for? E.g "Stockholm", "Goteborg".', False)

        forecast = await self.get_weather(location_name, language, days_ahead(text))
        if forecast is None:
            if language == 'sv':
                return WeatherAnswer(
                    f'Kunde inte hitta platsen "{location_name}". Prova en storre stad som Stockholm, Goteborg eller Malmo.',
                    False
                )
            return WeatherAnswer(
                f'Could not find location "{location_name}". Try a major city like Stockholm, Goteborg or Malmo.',
                False
            )

        return WeatherAnswer(forecast, True)

    async def _fetch_forecast(self, lat: float, lon: float, days: int) -> WeatherData:
        url = (
            f"{self.base_url}/category/pmp3g/version/2/geotype/point/"
            f"lon/{round(lon, 4)}/lat/{round(lat, 4)}/data.json"
        )
        logger.info(f"Fetching SMHI forecast for {lat}, {lon} ({days} days ahead)")

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        logger.error(f"SMHI returned {response.status}: {await response.text()}")
                        raise AppError(f"Weather service returned {response.status}", status_code=502)
                    data = await response.json()
        except aiohttp.ClientError as e:
            raise AppError(f"Weather request failed: {str(e)}", status_code=502)

        forecast = self._closest_to_noon(data.get('timeSeries') or [], days)
        parameters = forecast.get('parameters', [])
        return WeatherData(
            temperature=_parameter(parameters, 't'),
            wind_speed=_parameter(parameters, 'ws'),
            precipitation=_parameter(parameters, 'pmean'),
            humidity=_parameter(parameters, 'r'),
            symbol=int(_parameter(parameters, 'Wsymb2'))
        )

    def _closest_to_noon(self, time_series: List[Dict[str, Any]], days: int) -> Dict[str, Any]:
        if not time_series:
            raise AppError("No weather data available", status_code=502)

        target = (self.clock() + timedelta(days=days)).replace(hour=12, minute=0, second=0, microsecond=0)
        return min(time_series, key=lambda entry: abs(_parse_valid_time(entry['validTime']) - target))

    def _format_weather(self, weather: WeatherData, location: str, language: str, days: int) -> str:
        sv, en = WEATHER_CONDITIONS.get(weather.symbol, ('Okant', 'Unknown'))
        time_label = _time_label(days, language)

        if language == 'sv':
            return (
                f"{location} {time_label}\n"
                f"- {sv}\n"
                f"- Temp: {round(weather.temperature)} C\n"
                f"- Vind: {round(weather.wind_speed)} m/s\n"
                f"- Nederbord: {round(weather.precipitation)} mm/h\n"
                f"- Luftfuktighet: {round(weather.humidity)}%"
            )
        return (
            f"{location} {time_label}\n"
            f"- {en}\n"
            f"- Temp: {round(weather.temperature)} C\n"
            f"- Wind: {round(weather.wind_speed)} m/s\n"
            f"- Precip: {round(weather.precipitation)} mm/h\n"
            f"- Humidity: {round(weather.humidity)}%"
        )

def find_location(name: str) -> Optional[tuple]:
    return SWEDISH_LOCATIONS.get(name.strip().lower())

def _parameter(parameters: List[Dict[str, Any]], name: str) -> float:
    for parameter in parameters:
        if parameter.get('name') == name and parameter.get('values'):
            return parameter['values'][0]
    return 0

def _parse_valid_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace('Z', '+00:00'))

def _time_label(days: int, language: str) -> str:
    if days == 0:
        return '(nu)' if language == 'sv' else '(now)'
    if days == 1:
        return '(imorgon)' if language == 'sv' else '(tomorrow)'
    if days == 2:
        return '(i overmorgon)' if language == 'sv' else '(day after tomorrow)'
    return f'(om {days} dagar)' if language == 'sv' else f'(in {days} days)'

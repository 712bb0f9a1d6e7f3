"""GPS parsing and geographic helpers.

Understands the ways people paste a position into an SMS:

- Google Maps links (``?q=lat,lon`` and ``/@lat,lon``)
- Apple Maps links (``ll=`` or ``coordinate=``)
- raw pairs, with decimal point or Swedish decimal comma
  (``59.3293, 18.0686`` and ``59,3293, 18,0686``)
- degrees with hemisphere letters (``59.3293° N, 18.0686° E``)
- ``lat: 59.3293 lon: 18.0686`` prefixes
"""
import math
import re
from typing import Optional

from pydantic import BaseModel

EARTH_RADIUS_KM = 6371.0

_NUMBER = r'(-?\d+(?:[.,]\d+)?)'

_GOOGLE_PATTERNS = [
    re.compile(r'maps\.google\.[a-z.]+.*[?&]q=(-?\d+(?:\.\d+)?),\s*(-?\d+(?:\.\d+)?)', re.IGNORECASE),
    re.compile(r'google\.[a-z.]+/maps.*@(-?\d+(?:\.\d+)?),(-?\d+(?:\.\d+)?)', re.IGNORECASE),
]
_APPLE_PATTERN = re.compile(
    r'maps\.apple\.com.*[?&](?:ll|coordinate)=(-?\d+(?:\.\d+)?),(-?\d+(?:\.\d+)?)',
    re.IGNORECASE
)
_RAW_PATTERNS = [
    # Pairs inside longer text need coordinate precision (3+ decimals);
    # comma-decimal pairs also need whitespace after the separating comma
    re.compile(r'(?<![\d.,])(-?\d+,\d{3,})\s*,\s+(-?\d+,\d{3,})(?![\d.,])'),
    re.compile(r'(?<![\d.,])(-?\d+\.\d{3,})\s*,\s*(-?\d+\.\d{3,})(?![\d.,])'),
    re.compile(r'^\s*(-?\d+(?:\.\d+)?)\s*,\s*(-?\d+(?:\.\d+)?)\s*$'),
    re.compile(_NUMBER + r'\s*°?\s*([NS])\b[,\s]+' + _NUMBER + r'\s*°?\s*([EWÖV])\b', re.IGNORECASE),
    re.compile(r'lat(?:itude)?\s*:?\s*' + _NUMBER + r'[,\s]+lon(?:gitude)?\s*:?\s*' + _NUMBER, re.IGNORECASE),
]

class Coordinates(BaseModel):
    lat: float
    lon: float

class ParsedLocation(BaseModel):
    coordinates: Coordinates
    source: str
    original_text: str

def _to_float(value: str) -> float:
    return float(value.replace(',', '.'))

def is_valid_coordinate(lat: float, lon: float) -> bool:
    return -90 <= lat <= 90 and -180 <= lon <= 180

def _build(lat: float, lon: float, source: str, text: str) -> Optional[ParsedLocation]:
    if not is_valid_coordinate(lat, lon):
        return None
    return ParsedLocation(
        coordinates=Coordinates(lat=lat, lon=lon),
        source=source,
        original_text=text
    )

def parse_location(message: str) -> Optional[ParsedLocation]:
    """Extract a coordinate pair from free text, or None"""
    text = message.strip()

    for pattern in _GOOGLE_PATTERNS:
        match = pattern.search(text)
        if match:
            return _build(_to_float(match.group(1)), _to_float(match.group(2)), 'google_maps', text)

    match = _APPLE_PATTERN.search(text)
    if match:
        return _build(_to_float(match.group(1)), _to_float(match.group(2)), 'apple_maps', text)

    for pattern in _RAW_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue

        groups = match.groups()
        if len(groups) == 4:
            # Hemisphere notation: S and W/V flip the sign
            lat = abs(_to_float(groups[0]))
            lon = abs(_to_float(groups[2]))
            if groups[1].upper() == 'S':
                lat = -lat
            if groups[3].upper() in ('W', 'V'):
                lon = -lon
        else:
            lat = _to_float(groups[0])
            lon = _to_float(groups[1])

        location = _build(lat, lon, 'raw_coords', text)
        if location:
            return location

    return None

def format_coordinates(coords: Coordinates) -> str:
    lat_dir = 'N' if coords.lat >= 0 else 'S'
    lon_dir = 'E' if coords.lon >= 0 else 'W'
    return f"{abs(coords.lat):.4f} {lat_dir}, {abs(coords.lon):.4f} {lon_dir}"

def maps_link(coords: Coordinates) -> str:
    return f"https://maps.google.com/?q={coords.lat},{coords.lon}"

def distance_km(origin: Coordinates, target: Coordinates) -> float:
    """Great-circle distance (haversine)"""
    d_lat = math.radians(target.lat - origin.lat)
    d_lon = math.radians(target.lon - origin.lon)

    a = (math.sin(d_lat / 2) ** 2 +
         math.cos(math.radians(origin.lat)) * math.cos(math.radians(target.lat)) *
         math.sin(d_lon / 2) ** 2)

    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

def bearing(origin: Coordinates, target: Coordinates) -> float:
    d_lon = math.radians(target.lon - origin.lon)
    lat1 = math.radians(origin.lat)
    lat2 = math.radians(target.lat)

    y = math.sin(d_lon) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(d_lon)

    return (math.degrees(math.atan2(y, x)) + 360) % 360

def compass_direction(degrees: float, language: str = 'en') -> str:
    if language == 'sv':
        directions = ['N', 'NO', 'O', 'SO', 'S', 'SV', 'V', 'NV']
    else:
        directions = ['N', 'NE', 'E', 'SE', 'S', 'SW', 'W', 'NW']
    return directions[round(degrees / 45) % 8]

def format_distance(km: float) -> str:
    if km < 1:
        return f"{round(km * 1000)}m"
    return f"{km:.1f}km"

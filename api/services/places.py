import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from lib.commands import PlaceCategory
from lib.error_handler import AppError
from lib.gps import Coordinates, bearing, compass_direction, distance_km, format_distance

logger = logging.getLogger(__name__)

KM_PER_DEGREE = 111.0

CATEGORY_TAGS = {
    PlaceCategory.GAS_STATION: ['amenity=fuel'],
    PlaceCategory.RESTAURANT: ['amenity=restaurant'],
    PlaceCategory.CAFE: ['amenity=cafe'],
    PlaceCategory.SUPERMARKET: ['shop=supermarket', 'shop=convenience'],
    PlaceCategory.HOSPITAL: ['amenity=hospital', 'amenity=clinic'],
    PlaceCategory.PHARMACY: ['amenity=pharmacy'],
    PlaceCategory.HOTEL: ['tourism=hotel', 'tourism=motel', 'tourism=guest_house'],
    PlaceCategory.CAMPING: ['tourism=camp_site', 'tourism=caravan_site'],
    PlaceCategory.SHELTER: ['amenity=shelter', 'tourism=wilderness_hut', 'tourism=alpine_hut'],
    PlaceCategory.EMERGENCY: ['emergency=phone', 'emergency=access_point'],
    PlaceCategory.PARKING: ['amenity=parking'],
    PlaceCategory.ATM: ['amenity=atm'],
}

CATEGORY_NAMES = {
    PlaceCategory.GAS_STATION: ('Bensinstation', 'Gas station'),
    PlaceCategory.RESTAURANT: ('Restaurang', 'Restaurant'),
    PlaceCategory.CAFE: ('Cafe', 'Cafe'),
    PlaceCategory.SUPERMARKET: ('Mataffar', 'Supermarket'),
    PlaceCategory.HOSPITAL: ('Sjukhus', 'Hospital'),
    PlaceCategory.PHARMACY: ('Apotek', 'Pharmacy'),
    PlaceCategory.HOTEL: ('Hotell', 'Hotel'),
    PlaceCategory.CAMPING: ('Camping', 'Camping'),
    PlaceCategory.SHELTER: ('Stuga/Skydd', 'Cabin/Shelter'),
    PlaceCategory.EMERGENCY: ('Nodtelefon', 'Emergency phone'),
    PlaceCategory.PARKING: ('Parkering', 'Parking'),
    PlaceCategory.ATM: ('Bankomat', 'ATM'),
}

def category_name(category: PlaceCategory, language: str = 'en') -> str:
    sv, en = CATEGORY_NAMES[category]
    return sv if language == 'sv' else en

@dataclass
class Place:
    name: str
    lat: float
    lon: float
    distance_km: float
    direction: str
    address: Optional[str] = None
    phone: Optional[str] = None
    opening_hours: Optional[str] = None

@dataclass
class PlaceSearchResult:
    category: PlaceCategory
    origin: Coordinates
    radius_km: float
    places: List[Place] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.places)

class PlaceService:
    """Nearby points of interest from OpenStreetMap's Overpass API"""

    def __init__(self, overpass_url: str = 'https://overpass-api.de/api/interpreter', timeout: float = 10.0):
        self.overpass_url = overpass_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def search_nearby(
        self,
        origin: Coordinates,
        category: PlaceCategory,
        radius_km: float = 10.0,
        limit: int = 5,
        language: str = 'en'
    ) -> PlaceSearchResult:
        query = build_overpass_query(origin, category, radius_km)
        logger.info(f"Searching {category.value} within {radius_km}km of {origin.lat}, {origin.lon}")

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    self.overpass_url,
                    data=query,
                    headers={'Content-Type': 'text/plain'}
                ) as response:
                    if response.status != 200:
                        logger.error(f"Overpass returned {response.status}: {await response.text()}")
                        raise AppError(f"Map search returned {response.status}", status_code=502)
                    data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise AppError(f"Map search failed: {str(e)}", status_code=502)

        places = parse_overpass_elements(data.get('elements') or [], origin, category, language)
        places.sort(key=lambda place: place.distance_km)
        logger.info(f"Overpass returned {len(places)} {category.value} results, keeping {min(limit, len(places))}")

        return PlaceSearchResult(category=category, origin=origin, radius_km=radius_km, places=places[:limit])

    def format_search_result(self, result: PlaceSearchResult, language: str = 'en') -> str:
        name = category_name(result.category, language)
        radius = f"{result.radius_km:g}"

        if not result.places:
            if language == 'sv':
                return f"Hittade inga {name.lower()} inom {radius} km."
            return f"No {name.lower()} found within {radius} km."

        header = f"{name} (inom {radius} km):" if language == 'sv' else f"{name} (within {radius} km):"
        hours_label = "Öppet" if language == 'sv' else "Open"

        lines = []
        for index, place in enumerate(result.places, 1):
            line = f"{index}. {place.name}\n   {format_distance(place.distance_km)} {place.direction}"
            if place.address:
                line += f"\n   {place.address}"
            if place.phone:
                line += f"\n   Tel: {place.phone}"
            if place.opening_hours:
                line += f"\n   {hours_label}: {place.opening_hours}"
            lines.append(line)

        return header + "\n\n" + "\n\n".join(lines)

def bounding_box(origin: Coordinates, radius_km: float) -> str:
    lat_delta = radius_km / KM_PER_DEGREE
    lon_delta = radius_km / (KM_PER_DEGREE * math.cos(math.radians(origin.lat)))
    south, north = origin.lat - lat_delta, origin.lat + lat_delta
    west, east = origin.lon - lon_delta, origin.lon + lon_delta
    return f"{south},{west},{north},{east}"

def build_overpass_query(origin: Coordinates, category: PlaceCategory, radius_km: float) -> str:
    bbox = bounding_box(origin, radius_km)
    statements = []
    for tag in CATEGORY_TAGS[category]:
        key, value = tag.split('=')
        statements.append(f'node["{key}"="{value}"]({bbox});')
        statements.append(f'way["{key}"="{value}"]({bbox});')

    body = "\n  ".join(statements)
    return f"[out:json][timeout:10];\n(\n  {body}\n);\nout center;"

def _format_address(tags: Dict[str, Any]) -> Optional[str]:
    parts = [
        tags.get('addr:street'),
        tags.get('addr:housenumber'),
        tags.get('addr:postcode'),
        tags.get('addr:city'),
    ]
    parts = [part for part in parts if part]
    return ' '.join(parts) if parts else None

def parse_overpass_elements(
    elements: List[Dict[str, Any]],
    origin: Coordinates,
    category: PlaceCategory,
    language: str = 'en'
) -> List[Place]:
    places = []
    for element in elements:
        # Ways only carry a center point
        center = element.get('center') or {}
        lat = center.get('lat', element.get('lat'))
        lon = center.get('lon', element.get('lon'))
        if lat is None or lon is None:
            continue

        tags = element.get('tags') or {}
        target = Coordinates(lat=lat, lon=lon)
        places.append(Place(
            name=tags.get('name') or f"{category_name(category, language)} #{element.get('id')}",
            lat=lat,
            lon=lon,
            distance_km=distance_km(origin, target),
            direction=compass_direction(bearing(origin, target), language),
            address=_format_address(tags),
            phone=tags.get('phone') or tags.get('contact:phone'),
            opening_hours=tags.get('opening_hours')
        ))
    return places

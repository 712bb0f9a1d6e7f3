from dataclasses import dataclass
from typing import List, Optional

from lib.gps import Coordinates, bearing, compass_direction, distance_km, format_coordinates, format_distance

@dataclass
class PointOfInterest:
    name: str
    kind: str
    lat: float
    lon: float
    phone: Optional[str] = None

@dataclass
class NearbyPoint:
    poi: PointOfInterest
    distance_km: float
    direction: str

# Swedish mountain stations, cabins and emergency contacts
SWEDISH_POIS = [
    PointOfInterest('Kebnekaise Fjallstation', 'cabin', 67.9023, 18.5429, '+46980550000'),
    PointOfInterest('STF Singi', 'cabin', 67.8654, 18.2967),
    PointOfInterest('STF Salka', 'cabin', 67.6989, 18.0234),
    PointOfInterest('Nikkaluokta', 'parking', 67.8503, 19.0123),
    PointOfInterest('STF Abisko Turiststation', 'cabin', 68.3544, 18.7889, '+46980402000'),
    PointOfInterest('Abiskojaure', 'cabin', 68.3289, 18.1567),
    PointOfInterest('Aktse', 'cabin', 67.3456, 17.6234),
    PointOfInterest('Sitojaure', 'cabin', 67.4123, 17.8901),
    PointOfInterest('STF Sylarna', 'cabin', 63.1345, 12.4567),
    PointOfInterest('STF Blahammaren', 'cabin', 63.2789, 12.3456),
    PointOfInterest('Grovelsjon Fjallstation', 'cabin', 61.6234, 12.2345),
    PointOfInterest('SOS Alarm', 'emergency', 59.3293, 18.0686, '112'),
]

KIND_LABELS = {
    'cabin': ('Stugor', 'cabins'),
    'emergency': ('Nodhjalp', 'emergency services'),
    'parking': ('Parkeringar', 'parking'),
    'all': ('Platser', 'places'),
}

class LocationService:
    """Nearest points from a static dataset, no network access"""

    def __init__(self, points: Optional[List[PointOfInterest]] = None):
        self.points = points if points is not None else SWEDISH_POIS

    def find_nearest(self, origin: Coordinates, kind: Optional[str] = None, limit: int = 5, language: str = 'en') -> List[NearbyPoint]:
        candidates = [poi for poi in self.points if kind is None or poi.kind == kind]

        results = []
        for poi in candidates:
            target = Coordinates(lat=poi.lat, lon=poi.lon)
            results.append(NearbyPoint(
                poi=poi,
                distance_km=distance_km(origin, target),
                direction=compass_direction(bearing(origin, target), language)
            ))

        results.sort(key=lambda result: result.distance_km)
        return results[:limit]

    def format_nearest_response(self, origin: Coordinates, kind: str, language: str = 'en') -> str:
        nearest = self.find_nearest(origin, None if kind == 'all' else kind, 3, language)

        if not nearest:
            if language == 'sv':
                return 'Ingen plats hittades i narheten. Du kanske ar utanfor tackningsomradet.'
            return 'No locations found nearby. You might be outside coverage area.'

        sv, en = KIND_LABELS.get(kind, (kind, kind))
        lines = [f"{sv} narmast dig:" if language == 'sv' else f"Nearest {en}:", ""]

        for result in nearest:
            lines.append(f"- {result.poi.name}")
            lines.append(f"  {format_distance(result.distance_km)} {result.direction}")
            if result.poi.phone:
                lines.append(f"  Tel: {result.poi.phone}")

        label = 'Din position' if language == 'sv' else 'Your position'
        lines.append("")
        lines.append(f"{label}: {format_coordinates(origin)}")
        return "\n".join(lines)

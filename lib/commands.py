"""Command predicates for inbound SMS text.

Every function here is pure. The SMS handler decides the order they are
applied in.
"""
import re
from enum import Enum
from typing import Optional

DEFAULT_SEARCH_RADIUS_KM = 10.0
KM_PER_MILE = 1.6

YES_WORDS = {'yes', 'y', 'ja', 'j'}
STOP_WORDS = {'stop', 'unsubscribe', 'avsluta'}
HELP_WORDS = {'help', 'hjälp', 'info'}
MORE_WORDS = {'more', 'more info', 'tell me more'}
LOCATION_QUERY_WORDS = {'where am i', 'var är jag', 'my location', 'min position'}

PLACE_KEYWORDS = (
    'närmaste', 'nearest', 'hitta', 'find', 'var är', 'where is',
    'show me', 'visa', 'sök', 'search', 'leta', 'look for',
)

WEATHER_KEYWORDS = (
    'väder', 'vädret', 'vader', 'weather', 'prognos', 'forecast',
    'temperatur', 'temperature',
)

SHELTER_KEYWORDS = ('närmaste', 'nearest', 'skydd', 'shelter', 'stuga', 'cabin')

class PlaceCategory(str, Enum):
    GAS_STATION = 'gas_station'
    RESTAURANT = 'restaurant'
    CAFE = 'cafe'
    SUPERMARKET = 'supermarket'
    HOSPITAL = 'hospital'
    PHARMACY = 'pharmacy'
    HOTEL = 'hotel'
    CAMPING = 'camping'
    SHELTER = 'shelter'
    EMERGENCY = 'emergency'
    PARKING = 'parking'
    ATM = 'atm'

# Checked in order; words match at the start of a word so that Swedish
# compounds ("bensinstation") resolve while "weather" does not hit "eat".
_CATEGORY_PATTERNS = [
    (r'bensin|gas|tanken|fuel', PlaceCategory.GAS_STATION),
    (r'mataffär|affär|butik|supermarket|shop|store', PlaceCategory.SUPERMARKET),
    (r'restaurang|restaurant|mat\b|food|äta\b|eat\b', PlaceCategory.RESTAURANT),
    (r'café|cafe|kaffe|coffee', PlaceCategory.CAFE),
    (r'sjukhus|hospital|läkare|doctor|akuten|emergency room', PlaceCategory.HOSPITAL),
    (r'apotek|pharmacy|medicin', PlaceCategory.PHARMACY),
    (r'hotell|hotel|boende|logi\b|accommodation', PlaceCategory.HOTEL),
    (r'camping|campground|husvagn|caravan', PlaceCategory.CAMPING),
    (r'stuga|skydd|shelter|hut\b|cabin', PlaceCategory.SHELTER),
    (r'nöd|emergency|sos\b|hjälp|help\b', PlaceCategory.EMERGENCY),
    (r'parkering|parking|parkera', PlaceCategory.PARKING),
    (r'bankomat|atm\b|kontanter|cash\b', PlaceCategory.ATM),
]
_COMPILED_CATEGORIES = [
    (re.compile(r'\b(?:' + pattern + r')', re.IGNORECASE), category)
    for pattern, category in _CATEGORY_PATTERNS
]

_RADIUS_KM_PATTERNS = [
    re.compile(r'inom\s+(\d+)\s*km', re.IGNORECASE),
    re.compile(r'within\s+(\d+)\s*km', re.IGNORECASE),
    re.compile(r'(\d+)\s*km\s+radie', re.IGNORECASE),
    re.compile(r'(\d+)\s*km\s+radius', re.IGNORECASE),
]
_RADIUS_MILE_PATTERN = re.compile(r'(\d+)\s*miles?\b', re.IGNORECASE)

def _normalize(message: str) -> str:
    return message.strip().lower()

def is_yes_confirmation(message: str) -> bool:
    return _normalize(message) in YES_WORDS

def is_stop_command(message: str) -> bool:
    return _normalize(message) in STOP_WORDS

def is_help_command(message: str) -> bool:
    return _normalize(message) in HELP_WORDS

def is_more_command(message: str) -> bool:
    return _normalize(message) in MORE_WORDS

def is_location_query_command(message: str) -> bool:
    return _normalize(message).rstrip('?').rstrip() in LOCATION_QUERY_WORDS

def has_place_keyword(message: str) -> bool:
    normalized = _normalize(message)
    return any(keyword in normalized for keyword in PLACE_KEYWORDS)

def parse_place_category(message: str) -> Optional[PlaceCategory]:
    for pattern, category in _COMPILED_CATEGORIES:
        if pattern.search(message):
            return category
    return None

def parse_radius(message: str) -> float:
    """Search radius in km; miles are converted, default 10 km"""
    for pattern in _RADIUS_KM_PATTERNS:
        match = pattern.search(message)
        if match:
            return float(match.group(1))

    match = _RADIUS_MILE_PATTERN.search(message)
    if match:
        return float(match.group(1)) * KM_PER_MILE

    return DEFAULT_SEARCH_RADIUS_KM

def is_weather_query(message: str) -> bool:
    normalized = _normalize(message)
    return any(keyword in normalized for keyword in WEATHER_KEYWORDS)

def references_weather(message: str) -> bool:
    normalized = _normalize(message)
    return any(keyword in normalized for keyword in ('väder', 'vader', 'weather'))

def references_shelter(message: str) -> bool:
    normalized = _normalize(message)
    return any(keyword in normalized for keyword in SHELTER_KEYWORDS)

def days_ahead(message: str) -> int:
    """How many days ahead a weather question asks about"""
    normalized = _normalize(message)

    if 'övermorgon' in normalized or 'day after tomorrow' in normalized:
        return 2
    if 'imorgon' in normalized or 'tomorrow' in normalized:
        return 1

    match = re.search(r'om (\d+) dag', normalized) or re.search(r'in (\d+) day', normalized)
    if match:
        return int(match.group(1))

    return 0

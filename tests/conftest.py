import pytest
from unittest.mock import MagicMock
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to Python path
project_root = str(Path(__file__).parent.parent)
sys.path.append(project_root)

from api.models import AccountStatus, InboundMessage
from api.services.accounts import AccountService
from api.services.chat import ChatService
from api.services.credits import CreditService
from api.services.locations import LocationService
from api.services.places import PlaceService
from api.services.sessions import SessionService
from api.services.sms import SMSService
from api.services.weather import WeatherService
from api.sms_handler import SMSHandler
from lib.database import MemoryDatabase
from lib.rate_limiter import RateLimiter

PHONE = '+46701234567'
US_NUMBER = '+15550001111'
SE_NUMBER = '+46766860000'

class FakeClock:
    """Settable clock for the services (datetime) and the rate limiter (epoch seconds)"""

    def __init__(self, start: datetime = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def time(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

def inbound(body: str = '', phone: str = PHONE, to: str = US_NUMBER, **kwargs) -> InboundMessage:
    return InboundMessage(
        phone_number=phone,
        receiving_number=to,
        body=body,
        language='sv' if to.startswith('+46') else 'en',
        **kwargs
    )

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def db():
    return MemoryDatabase()

@pytest.fixture
def accounts(db, clock):
    return AccountService(db, clock=clock)

@pytest.fixture
def credits(db, clock):
    return CreditService(db, clock=clock)

@pytest.fixture
def sessions(db, clock):
    return SessionService(db, clock=clock)

@pytest.fixture
def rate_limiter(clock):
    return RateLimiter(clock=clock.time)

@pytest.fixture
def mock_sms_service():
    return MagicMock(spec=SMSService)

@pytest.fixture
def mock_chat_service():
    chat = MagicMock(spec=ChatService)
    chat.generate_response.return_value = "Build a fire with dry birch bark."
    chat.generate_response_with_instructions.return_value = "Agent answer."
    chat.expand_response.return_value = "Longer answer about birch bark."
    chat.analyze_image.return_value = "That is a chanterelle. Safe to eat."
    return chat

@pytest.fixture
def mock_weather_service():
    return MagicMock(spec=WeatherService)

@pytest.fixture
def mock_place_service():
    return MagicMock(spec=PlaceService)

@pytest.fixture
def handler(accounts, credits, sessions, rate_limiter, mock_sms_service, mock_chat_service,
            mock_weather_service, mock_place_service):
    return SMSHandler(
        accounts=accounts,
        credits=credits,
        sessions=sessions,
        rate_limiter=rate_limiter,
        sms=mock_sms_service,
        chat=mock_chat_service,
        weather=mock_weather_service,
        places=mock_place_service,
        locations=LocationService(),
        signup_bonus_credits=3
    )

@pytest.fixture
def make_account(db, clock):
    """Insert an account row directly"""
    async def _make(phone=PHONE, status=AccountStatus.ACTIVE, credits=10, **fields):
        now = clock().isoformat()
        record = {
            'phone_number': phone,
            'status': status.value,
            'credits_remaining': credits,
            'pricing_tier': None,
            'consent_timestamp': None,
            'selected_categories': ['outdoor'],
            'language': 'en',
            'twilio_number': US_NUMBER,
            'created_at': now,
            'updated_at': now
        }
        record.update(fields)
        return await db.insert_user(record)
    return _make

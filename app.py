import logging
import sys
from typing import Optional

from flask import Flask, Response, jsonify, request
from openai import OpenAI
from twilio.rest import Client

from api.services.accounts import AccountService
from api.services.chat import ChatService
from api.services.credits import CreditService
from api.services.locations import LocationService
from api.services.places import PlaceService
from api.services.sessions import SessionService
from api.services.sms import SMSService
from api.services.weather import WeatherService
from api.sms_handler import SMSHandler
from lib.config import Settings, get_settings
from lib.database import MemoryDatabase, SupabaseDatabase
from lib.error_handler import AppError
from lib.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

def configure_logging(level: str = 'INFO') -> None:
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stdout,
        force=True  # Ensure our config takes precedence
    )

def build_handler(settings: Settings) -> SMSHandler:
    """Wire the SMS handler and its collaborators from settings"""
    if settings.supabase_configured:
        db = SupabaseDatabase.from_settings(settings)
    else:
        logger.warning("Supabase is not configured, using in-memory storage")
        db = MemoryDatabase()

    logger.info("Initializing OpenAI client...")
    openai_client = OpenAI(api_key=settings.openai_api_key)

    logger.info("Initializing Twilio client...")
    twilio_client = Client(settings.twilio_account_sid, settings.twilio_auth_token)

    rate_limiter = RateLimiter(
        max_per_minute=settings.rate_limit_per_minute,
        max_per_hour=settings.rate_limit_per_hour,
        max_per_day=settings.rate_limit_per_day,
        sweep_interval=settings.rate_limit_sweep_seconds
    )

    return SMSHandler(
        accounts=AccountService(db),
        credits=CreditService(db),
        sessions=SessionService(
            db,
            timeout_minutes=settings.session_timeout_minutes,
            max_messages=settings.session_max_messages,
            location_max_age_hours=settings.location_max_age_hours
        ),
        rate_limiter=rate_limiter,
        sms=SMSService(
            twilio_client=twilio_client,
            phone_number=settings.twilio_phone_number,
            auth_token=settings.twilio_auth_token,
            base_url=settings.base_url
        ),
        chat=ChatService(openai_client, model=settings.openai_model, max_tokens=settings.openai_max_tokens),
        weather=WeatherService(settings.smhi_base_url, timeout=settings.http_timeout_seconds),
        places=PlaceService(settings.overpass_url, timeout=settings.http_timeout_seconds),
        locations=LocationService(),
        signup_bonus_credits=settings.signup_bonus_credits
    )

def create_app(handler: Optional[SMSHandler] = None, settings: Optional[Settings] = None) -> Flask:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = Flask(__name__)
    sms_handler = handler or build_handler(settings)
    app.config['SMS_HANDLER'] = sms_handler

    @app.route("/health", methods=['GET'])
    def health():
        """Basic health check"""
        return jsonify({"status": "ok"})

    @app.route("/sms/incoming", methods=['POST'])
    async def incoming_sms():
        """Handle incoming SMS webhooks from Twilio"""
        webhook_data = request.form.to_dict(flat=False)

        if settings.twilio_validate_signature:
            signature = request.headers.get('X-Twilio-Signature', '')
            if not sms_handler.sms.validate_request(signature, request.url, request.form.to_dict()):
                logger.warning("Rejected webhook with invalid Twilio signature")
                return Response('Invalid signature', status=403)

        try:
            twiml = await sms_handler.handle_incoming_message(webhook_data)
        except AppError as e:
            logger.error(f"Rejected webhook: {e.message}")
            return Response(e.message, status=e.status_code)

        return Response(twiml, mimetype='text/xml')

    return app

if __name__ == "__main__":
    app = create_app()
    logger.info("Starting Flask server...")
    app.run(debug=True, port=8000)

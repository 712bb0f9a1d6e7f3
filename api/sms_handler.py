import logging
from typing import Any, Dict, Optional

from twilio.twiml.messaging_response import MessagingResponse

from api.models import AccountStatus, InboundMessage, TransactionType
from api.pricing import CREDIT_COSTS
from api.services.accounts import AccountService
from api.services.chat import DEFAULT_IMAGE_QUESTION, ChatService
from api.services.credits import CreditService
from api.services.locations import LocationService
from api.services.places import PlaceService, category_name
from api.services.sessions import SessionService
from api.services.sms import SMSService
from api.services.weather import WeatherService
from lib import commands
from lib.error_handler import AppError, ErrorHandler
from lib.gps import ParsedLocation, format_coordinates, maps_link, parse_location
from lib.rate_limiter import RateLimiter
from lib.sms_text import normalize_phone_number, sanitize_input

logger = logging.getLogger(__name__)

SWEDISH_PREFIX = '+46'

def detect_language(receiving_number: str) -> str:
    """Replies follow the number the user texted: Swedish numbers get Swedish"""
    return 'sv' if receiving_number.startswith(SWEDISH_PREFIX) else 'en'

def _field(webhook_data: Dict[str, Any], key: str) -> Optional[str]:
    # Flask's form.to_dict(flat=False) wraps every value in a list
    value = webhook_data.get(key)
    if isinstance(value, list):
        value = value[0] if value else None
    return value or None

class SMSHandler:
    def __init__(
        self,
        accounts: AccountService,
        credits: CreditService,
        sessions: SessionService,
        rate_limiter: RateLimiter,
        sms: SMSService,
        chat: ChatService,
        weather: WeatherService,
        places: PlaceService,
        locations: LocationService,
        signup_bonus_credits: int = 3
    ):
        self.accounts = accounts
        self.credits = credits
        self.sessions = sessions
        self.rate_limiter = rate_limiter
        self.sms = sms
        self.chat = chat
        self.weather = weather
        self.places = places
        self.locations = locations
        self.signup_bonus_credits = signup_bonus_credits

    async def handle_incoming_message(self, webhook_data: Dict[str, Any]) -> str:
        """Handle incoming SMS webhook from Twilio"""
        from_number = _field(webhook_data, 'From')
        to_number = _field(webhook_data, 'To')
        if not from_number or not to_number:
            logger.error(f"Webhook missing From or To: {webhook_data}")
            raise AppError("Missing required fields: From and To", status_code=400)

        receiving_number = normalize_phone_number(to_number)
        body = _field(webhook_data, 'Body')
        num_media = _field(webhook_data, 'NumMedia') or '0'
        if not num_media.isdigit():
            logger.error(f"Webhook has invalid NumMedia: {num_media}")
            raise AppError(f"Invalid NumMedia: {num_media}", status_code=400)
        has_media = int(num_media) > 0

        message = InboundMessage(
            phone_number=normalize_phone_number(from_number),
            receiving_number=receiving_number,
            body=sanitize_input(body) if body else '',
            media_url=_field(webhook_data, 'MediaUrl0') if has_media else None,
            media_type=_field(webhook_data, 'MediaContentType0') if has_media else None,
            language=detect_language(receiving_number)
        )
        logger.info(
            f"Incoming message from {message.phone_number} to {receiving_number} "
            f"(language={message.language}, media={message.media_type})"
        )

        await self.dispatch(message)
        return str(MessagingResponse())

    async def dispatch(self, message: InboundMessage) -> None:
        """Pick exactly one handling path for the message.

        Failures never propagate: the sender gets a generic apology instead.
        """
        try:
            await self._dispatch(message)
        except Exception as e:
            apology = ErrorHandler.handle_dispatch_error(e, message.language)
            await self.sms.send_error_message(message.phone_number, apology)

    async def _dispatch(self, message: InboundMessage) -> None:
        phone = message.phone_number
        body = message.body

        account = await self.accounts.get_account(phone)
        if not account:
            try:
                await self.accounts.create_account(phone, message.language, message.receiving_number)
            except AppError as e:
                if e.status_code != 409:
                    raise
                # Another message from the same sender created the account first
                logger.info(f"Account for {phone} already created, continuing")
                account = await self.accounts.get_account(phone)
            else:
                await self.sms.send_opt_in(phone, message.language)
                logger.info(f"New user {phone}, opt-in sent")
                return

        await self.accounts.sync_contact(phone, message.language, message.receiving_number)

        if account.status != AccountStatus.ACTIVE:
            await self._handle_opt_in(message)
            return

        limit = self.rate_limiter.check_limits(phone)
        if not limit.allowed:
            logger.info(f"Rate limited {phone} ({limit.window})")
            await self.sms.send_rate_limited(phone, message.language, limit.window, limit.limit)
            return

        if message.has_image:
            await self._handle_image(message)
            return

        if not body.strip():
            logger.info(f"Empty message from {phone}, ignoring")
            return

        if commands.is_stop_command(body):
            await self.accounts.deactivate(phone)
            await self.sms.send_stop_confirmation(phone, message.language)
            return

        if commands.is_help_command(body):
            balance = await self.credits.get_balance(phone)
            await self.sms.send_help(phone, message.language, balance)
            return

        location = parse_location(body)
        if location:
            await self._handle_gps(message, location)
            return

        if commands.has_place_keyword(body):
            category = commands.parse_place_category(body)
            if category:
                await self._handle_place_search(message, category)
                return

        if commands.is_location_query_command(body):
            await self._handle_location_query(message)
            return

        if commands.is_more_command(body):
            await self._handle_more(message)
            return

        if commands.is_weather_query(body):
            await self._handle_weather_query(message)
            return

        await self._handle_conversation(message)

    async def _handle_opt_in(self, message: InboundMessage) -> None:
        phone = message.phone_number

        if not commands.is_yes_confirmation(message.body):
            await self.sms.send_opt_in(phone, message.language)
            return

        previous = await self.accounts.activate(phone)
        if previous == AccountStatus.ACTIVE:
            logger.info(f"Duplicate confirmation from {phone}, already activated")
            return

        bonus = 0
        if previous == AccountStatus.PENDING:
            bonus = self.signup_bonus_credits
            await self.credits.grant(phone, bonus, TransactionType.PURCHASE, 'Free trial credits')

        await self.sms.send_activation(phone, message.language, bonus)
        logger.info(f"User {phone} activated (was {previous.value})")

    async def _ensure_credits(self, message: InboundMessage, amount: int = 1) -> bool:
        if await self.credits.has_credits(message.phone_number, amount):
            return True
        await self._send_no_credits(message)
        return False

    async def _charge(self, message: InboundMessage, kind: str, description: str) -> bool:
        """Debit for an answer that is ready to send; notifies the user when it can't be paid"""
        if await self.credits.charge(message.phone_number, CREDIT_COSTS[kind], description):
            return True
        await self._send_no_credits(message)
        return False

    async def _send_no_credits(self, message: InboundMessage) -> None:
        balance = await self.credits.get_balance(message.phone_number)
        logger.info(f"No credits left for {message.phone_number}")
        await self.sms.send_no_credits(message.phone_number, message.language, balance)

    async def _handle_image(self, message: InboundMessage) -> None:
        phone = message.phone_number
        question = message.body or DEFAULT_IMAGE_QUESTION

        if not await self._ensure_credits(message, CREDIT_COSTS['image_analysis']):
            return

        categories = await self.accounts.get_selected_categories(phone)
        logger.info(f"Analyzing image from {phone} with question: {question}")
        try:
            reply = await self.chat.analyze_image(message.media_url, question, categories, message.language)
        except Exception as e:
            await self.sms.send_sms(phone, ErrorHandler.handle_image_error(e, message.language))
            return

        if not await self._charge(message, 'image_analysis', 'AI conversation (image analysis)'):
            return
        await self.sessions.update_session(phone, f"[Image] {question}", reply)
        await self.sms.send_sms(phone, reply)

    async def _handle_gps(self, message: InboundMessage, location: ParsedLocation) -> None:
        phone = message.phone_number
        language = message.language
        body = message.body
        coordinates = location.coordinates

        logger.info(f"GPS fix from {phone} via {location.source}: {coordinates.lat}, {coordinates.lon}")
        await self.sessions.save_location(phone, coordinates.lat, coordinates.lon)

        category = commands.parse_place_category(body)
        if category:
            if not await self._ensure_credits(message, CREDIT_COSTS['place_search']):
                return
            result = await self.places.search_nearby(
                coordinates, category, commands.parse_radius(body), language=language
            )
            reply = self.places.format_search_result(result, language)
            if not await self._charge(message, 'place_search', 'Place search'):
                return
            await self.sessions.update_session(phone, body, reply)
            await self.sms.send_sms(phone, reply)
            return

        if commands.references_weather(body):
            reply = await self.weather.get_weather_by_coordinates(
                coordinates.lat, coordinates.lon, language, commands.days_ahead(body)
            )
        elif commands.references_shelter(body):
            reply = self.locations.format_nearest_response(coordinates, 'cabin', language)
        else:
            reply = _position_saved_text(format_coordinates(coordinates), language)

        await self.sms.send_sms(phone, reply)

    async def _handle_place_search(self, message: InboundMessage, category: commands.PlaceCategory) -> None:
        phone = message.phone_number
        language = message.language

        fix = await self.sessions.get_last_location(phone)
        if not fix:
            name = category_name(category, language).lower()
            if language == 'sv':
                reply = f"For att hitta narmaste {name}, dela din position via GPS eller en Apple/Google Maps-lank forst."
            else:
                reply = f"To find the nearest {name}, please share your location via GPS or an Apple/Google Maps link first."
            await self.sms.send_sms(phone, reply)
            return

        if not await self._ensure_credits(message, CREDIT_COSTS['place_search']):
            return

        radius = commands.parse_radius(message.body)
        logger.info(f"{phone} searching for {category.value} within {radius}km")
        result = await self.places.search_nearby(fix.coordinates, category, radius, language=language)
        reply = self.places.format_search_result(result, language)

        if not await self._charge(message, 'place_search', 'Place search'):
            return
        await self.sessions.update_session(phone, message.body, reply)
        await self.sms.send_sms(phone, reply)

    async def _handle_location_query(self, message: InboundMessage) -> None:
        phone = message.phone_number
        fix = await self.sessions.get_last_location(phone)

        if not fix:
            await self.sms.send_sms(phone, _share_location_text(message.language))
            return

        coordinates = fix.coordinates
        if message.language == 'sv':
            reply = f"Din senast kanda position:\n{format_coordinates(coordinates)}\n\nVisa pa karta:\n{maps_link(coordinates)}"
        else:
            reply = f"Your last known position:\n{format_coordinates(coordinates)}\n\nView on map:\n{maps_link(coordinates)}"
        await self.sms.send_sms(phone, reply)

    async def _handle_more(self, message: InboundMessage) -> None:
        phone = message.phone_number
        context = await self.sessions.get_context(phone)

        if not context.last_ai_response:
            if message.language == 'sv':
                reply = "Inget tidigare svar att utveckla. Stall en fraga forst."
            else:
                reply = "No previous response to expand. Please ask a question first."
            await self.sms.send_sms(phone, reply)
            return

        if not await self._ensure_credits(message, CREDIT_COSTS['more']):
            return

        categories = await self.accounts.get_selected_categories(phone)
        expanded = await self.chat.expand_response(
            context.last_ai_response, context.last_user_message, categories, message.language
        )

        if not await self._charge(message, 'more', 'Expanded response (MORE)'):
            return
        await self.sessions.update_session(phone, None, expanded)
        await self.sms.send_sms(phone, expanded)

    async def _handle_weather_query(self, message: InboundMessage) -> None:
        phone = message.phone_number

        if not await self._ensure_credits(message, CREDIT_COSTS['weather_query']):
            return

        answer = await self.weather.answer_query(message.body, message.language, self.chat)
        if not answer.resolved:
            await self.sms.send_sms(phone, answer.text)
            return

        if not await self._charge(message, 'weather_query', 'Weather query'):
            return
        await self.sessions.update_session(phone, message.body, answer.text)
        await self.sms.send_sms(phone, answer.text)
        logger.info(f"Natural language forecast sent to {phone}")

    async def _handle_conversation(self, message: InboundMessage) -> None:
        phone = message.phone_number

        if not await self._ensure_credits(message, CREDIT_COSTS['ai_conversation']):
            return

        context = await self.sessions.get_context(phone)
        agent = await self.accounts.get_active_agent(phone)

        if agent:
            logger.info(f"Using custom agent {agent.name} ({agent.id}) for {phone}")
            reply = await self.chat.generate_response_with_instructions(
                message.body, context.messages, context.last_ai_response, agent.system_prompt, message.language
            )
        else:
            categories = await self.accounts.get_selected_categories(phone)
            reply = await self.chat.generate_response(
                message.body, context.messages, context.last_ai_response, categories, message.language
            )

        if not await self._charge(message, 'ai_conversation', 'AI conversation'):
            return
        await self.sessions.update_session(phone, message.body, reply)
        await self.sms.send_sms(phone, reply)
        logger.info(f"Response sent to {phone}")

def _share_location_text(language: str) -> str:
    if language == 'sv':
        return (
            "Ingen sparad position. Dela din position via:\n"
            "- GPS-koordinater (t.ex. 59.3293, 18.0686)\n"
            "- Google/Apple Maps-lank\n"
            "- Platsdelning fran telefonen"
        )
    return (
        "No saved location found. Share your position via:\n"
        "- GPS coordinates (e.g. 59.3293, 18.0686)\n"
        "- Google/Apple Maps link\n"
        "- Location sharing from your phone"
    )

def _position_saved_text(coordinates: str, language: str) -> str:
    if language == 'sv':
        return (
            f"Position sparad!\n{coordinates}\n\n"
            "Du kan nu anvanda:\n"
            '- "HITTA SJUKHUS"\n'
            '- "MIN POSITION"\n'
            "Skicka positionen med VADER for lokal prognos."
        )
    return (
        f"Position saved!\n{coordinates}\n\n"
        "You can now use:\n"
        '- "FIND HOSPITAL"\n'
        '- "MY LOCATION"\n'
        "Send your position with WEATHER for a local forecast."
    )

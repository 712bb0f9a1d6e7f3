import asyncio
import logging
from typing import Any, Dict

from twilio.request_validator import RequestValidator
from twilio.rest import Client

from lib.error_handler import ErrorHandler
from lib.sms_text import estimate_sms_segments, normalize_sms_text, truncate_for_sms

logger = logging.getLogger(__name__)

OPT_IN_MESSAGES = {
    'sv': 'Svara JA for att aktivera SMS-assistenten. Vid nodfall, ring 112.',
    'en': 'Reply YES to activate the SMS assistant. For emergencies, contact local rescue services.',
}

ACTIVATION_MESSAGES = {
    'sv': (
        'Aktiverad! Du har {credits} gratis fragor for att testa tjansten. Fraga om navigering, '
        'vader, friluftsliv eller vad du vill. Svara MORE for att fa ett langre svar.'
    ),
    'en': (
        'Activated! You got {credits} free conversations to test the service. Ask me about '
        'navigation, weather, camping, or any topic. Reply MORE to expand any answer.'
    ),
}

REACTIVATION_MESSAGES = {
    'sv': 'Valkommen tillbaka! Tjansten ar aktiverad igen. Svara HELP for att se ditt saldo.',
    'en': 'Welcome back! The service is active again. Reply HELP to see your balance.',
}

HELP_MESSAGES = {
    'sv': (
        'SMS-assistenten\n\nDitt saldo: {credits} meddelanden\n\nExempel pa fragor:\n'
        '- Vad blir det for vader i Stockholm imorgon?\n'
        '- Dela GPS-position + narmaste sjukhus\n'
        '- Hur overlever jag i snostorm?\n\n'
        'Kommandon:\n- MORE - Langre svar\n- MIN POSITION - Senaste position\n'
        '- STOP - Avregistrera\n- HELP - Denna hjalp'
    ),
    'en': (
        'SMS Assistant\n\nYour balance: {credits} messages\n\nExample questions:\n'
        "- What's the weather in Stockholm tomorrow?\n"
        '- Share GPS position + nearest hospital\n'
        '- How to survive a snowstorm?\n\n'
        'Commands:\n- MORE - Expand last answer\n- WHERE AM I - Last position\n'
        '- STOP - Unsubscribe\n- HELP - This help'
    ),
}

NO_CREDITS_MESSAGES = {
    'sv': (
        'Du har inga credits kvar!\n\nDitt saldo: {credits} meddelanden\n\nKop fler pa: {base_url}\n\n'
        'Paket:\n- Starter: 30 meddelanden\n- Pro: 100 meddelanden\n- Premium: 350 meddelanden'
    ),
    'en': (
        "You're out of credits!\n\nYour balance: {credits} messages\n\nBuy more at: {base_url}\n\n"
        'Packages:\n- Starter: 30 messages\n- Pro: 100 messages\n- Premium: 350 messages'
    ),
}

STOP_MESSAGES = {
    'sv': 'Du har avregistrerats. Tack for att du anvant tjansten. Svara JA for att aktivera igen.',
    'en': 'You have been unsubscribed. Thank you for using the service. Reply YES to reactivate.',
}

RATE_LIMIT_MESSAGES = {
    'sv': 'Du har skickat for manga meddelanden. Max {limit} per {window}.',
    'en': 'You have sent too many messages. Max {limit} per {window}.',
}

WINDOW_NAMES = {
    'sv': {'minute': 'minut', 'hour': 'timme', 'day': 'dag'},
    'en': {'minute': 'minute', 'hour': 'hour', 'day': 'day'},
}

def _pick(messages: Dict[str, str], language: str) -> str:
    return messages.get(language, messages['en'])

class SMSService:
    def __init__(self, twilio_client: Client, phone_number: str, auth_token: str = '', base_url: str = ''):
        self.client = twilio_client
        self.phone_number = phone_number
        self.validator = RequestValidator(auth_token)
        self.base_url = base_url
        logger.info(f"SMS service initialized with phone number: {phone_number}")

    async def send_sms(self, to_number: str, message: str) -> None:
        """Send SMS message, folded to plain ASCII"""
        body = truncate_for_sms(normalize_sms_text(message))
        segments = estimate_sms_segments(body)
        try:
            logger.info(f"Sending SMS to {to_number}: {len(body)} chars, ~{segments} segments")
            # Run Twilio API call in an executor to prevent blocking
            loop = asyncio.get_running_loop()
            sent = await loop.run_in_executor(
                None,
                lambda: self.client.messages.create(
                    body=body,
                    from_=self.phone_number,
                    to=to_number
                )
            )
            logger.info(f"Message sent successfully: {sent.sid}")
        except Exception as e:
            logger.error(f"Failed to send SMS: {str(e)}")
            raise

    async def send_opt_in(self, to_number: str, language: str) -> None:
        await self.send_sms(to_number, _pick(OPT_IN_MESSAGES, language))

    async def send_activation(self, to_number: str, language: str, bonus_credits: int = 0) -> None:
        """Welcome message; accounts coming back from STOP get no bonus"""
        if bonus_credits > 0:
            message = _pick(ACTIVATION_MESSAGES, language).format(credits=bonus_credits)
        else:
            message = _pick(REACTIVATION_MESSAGES, language)
        await self.send_sms(to_number, message)

    async def send_help(self, to_number: str, language: str, credits: int) -> None:
        await self.send_sms(to_number, _pick(HELP_MESSAGES, language).format(credits=credits))

    async def send_no_credits(self, to_number: str, language: str, credits: int = 0) -> None:
        await self.send_sms(
            to_number,
            _pick(NO_CREDITS_MESSAGES, language).format(credits=credits, base_url=self.base_url)
        )

    async def send_stop_confirmation(self, to_number: str, language: str) -> None:
        await self.send_sms(to_number, _pick(STOP_MESSAGES, language))

    async def send_rate_limited(self, to_number: str, language: str, window: str, limit: int) -> None:
        window_name = _pick(WINDOW_NAMES, language).get(window, window)
        await self.send_sms(to_number, _pick(RATE_LIMIT_MESSAGES, language).format(limit=limit, window=window_name))

    async def send_error_message(self, to_number: str, message: str) -> None:
        """Send error message"""
        try:
            await self.send_sms(to_number, message)
        except Exception as e:
            ErrorHandler.handle_sms_error(e)
            # Don't raise here to avoid error cascade

    def validate_request(self, signature: str, url: str, params: Dict[str, Any]) -> bool:
        return self.validator.validate(url, params, signature)

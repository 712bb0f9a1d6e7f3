from typing import Optional
import logging

logger = logging.getLogger(__name__)

class AppError(Exception):
    def __init__(self, message: str, status_code: int = 500, user_message: Optional[str] = None):
        self.message = message
        self.status_code = status_code
        self.user_message = user_message or "An error occurred. Please try again later."
        super().__init__(self.message)

class ErrorHandler:
    @staticmethod
    def handle_dispatch_error(error: Exception, language: str = 'en') -> str:
        logger.error(f"Dispatch error: {str(error)}", exc_info=error)
        if language == 'sv':
            return "Tyvarr uppstod ett fel nar ditt meddelande behandlades. Forsok igen."
        return "Sorry, I encountered an error processing your request. Please try again."

    @staticmethod
    def handle_image_error(error: Exception, language: str = 'en') -> str:
        logger.error(f"Image analysis error: {str(error)}", exc_info=error)
        if language == 'sv':
            return "Kunde inte analysera bilden. Forsok igen eller skicka en textfraga."
        return "Unable to analyze image. Please try again or send a text question."

    @staticmethod
    def handle_sms_error(error: Exception) -> str:
        logger.error(f"SMS error: {str(error)}")
        return "Message couldn't be sent. Please try again later."

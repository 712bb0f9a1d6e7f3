import asyncio
import logging
from typing import Dict, List, Optional

from openai import OpenAI

from api.prompts import TopicCategory, system_prompt_for_agent, system_prompt_for_categories
from lib.error_handler import AppError
from lib.sms_text import normalize_sms_text

logger = logging.getLogger(__name__)

EXPAND_INSTRUCTIONS = (
    "The user has requested MORE detail on your previous response. Expand ONLY on what "
    "you already said. Do NOT introduce new topics. Keep it SMS-friendly."
)

IMAGE_INSTRUCTIONS = {
    'sv': (
        "Du analyserar en bild som skickats via MMS. Var praktisk och sakerhetsfokuserad. "
        "Identifiera vaxter, djur, terrang, vader eller faror nar det ar relevant."
    ),
    'en': (
        "You are analyzing an image sent via MMS. Be practical and safety-focused. "
        "Identify plants, animals, terrain, weather, or hazards as relevant."
    ),
}

DEFAULT_IMAGE_QUESTION = "What is this? Is it safe?"

LOCATION_EXTRACTION_PROMPT = (
    'Extract ONLY the city/location name from the weather query. Return just the city '
    'name, nothing else. If no city found, return "NONE".'
)

class ChatService:
    def __init__(self, openai_client: OpenAI, model: str = "gpt-4o-mini", max_tokens: int = 180):
        self.client = openai_client
        self.model = model
        self.max_tokens = max_tokens

    def _build_messages(
        self,
        system_prompt: str,
        message: str,
        history: List[str],
        last_reply: Optional[str]
    ) -> List[Dict]:
        """System prompt, earlier user turns, the last reply, then the new message"""
        messages = [{"role": "system", "content": system_prompt}]
        for previous in history:
            messages.append({"role": "user", "content": previous})
        if last_reply:
            messages.append({"role": "assistant", "content": last_reply})
        messages.append({"role": "user", "content": message})
        return messages

    async def _complete(self, messages: List[Dict], action: str, max_tokens: Optional[int] = None, temperature: float = 0.7) -> str:
        try:
            # Run OpenAI API call in an executor to prevent blocking
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(
                None,
                lambda: self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    max_tokens=max_tokens or self.max_tokens,
                    temperature=temperature
                )
            )
        except Exception as e:
            logger.error(f"OpenAI request failed during {action}: {str(e)}")
            raise AppError(f"Failed to {action}: {str(e)}", status_code=502)

        content = response.choices[0].message.content or ''
        return normalize_sms_text(content)

    async def generate_response(
        self,
        message: str,
        history: List[str],
        last_reply: Optional[str],
        categories: List[TopicCategory],
        language: str = 'en'
    ) -> str:
        system_prompt = system_prompt_for_categories(categories, language)
        messages = self._build_messages(system_prompt, message, history, last_reply)

        logger.info(f"Generating response with {len(history)} earlier messages")
        response = await self._complete(messages, "generate response")
        return response or "Unable to generate response. Please try again."

    async def generate_response_with_instructions(
        self,
        message: str,
        history: List[str],
        last_reply: Optional[str],
        instructions: str,
        language: str = 'en'
    ) -> str:
        """Same as generate_response, but with a custom agent's instructions"""
        system_prompt = system_prompt_for_agent(instructions, language)
        messages = self._build_messages(system_prompt, message, history, last_reply)

        logger.info("Generating response with custom agent instructions")
        response = await self._complete(messages, "generate agent response")
        return response or "Unable to generate response. Please try again."

    async def expand_response(
        self,
        last_reply: str,
        last_user_message: Optional[str],
        categories: List[TopicCategory],
        language: str = 'en'
    ) -> str:
        system_prompt = f"{system_prompt_for_categories(categories, language)}\n\n{EXPAND_INSTRUCTIONS}"
        messages = [{"role": "system", "content": system_prompt}]
        if last_user_message:
            messages.append({"role": "user", "content": last_user_message})
        messages.append({"role": "assistant", "content": last_reply})
        messages.append({"role": "user", "content": "MORE"})

        logger.info("Expanding previous response")
        response = await self._complete(messages, "expand response")
        return response or "Unable to expand response. Please ask a specific question instead."

    async def analyze_image(
        self,
        image_url: str,
        question: str,
        categories: List[TopicCategory],
        language: str = 'en'
    ) -> str:
        system_prompt = (
            f"{system_prompt_for_categories(categories, language)}\n\n"
            f"{IMAGE_INSTRUCTIONS.get(language, IMAGE_INSTRUCTIONS['en'])}"
        )
        messages = [
            {"role": "system", "content": system_prompt},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": question or DEFAULT_IMAGE_QUESTION},
                    {"type": "image_url", "image_url": {"url": image_url}}
                ]
            }
        ]

        logger.info(f"Analyzing image: {image_url}")
        response = await self._complete(messages, "analyze image")
        return response or "Unable to analyze image. Please try again."

    async def extract_location(self, query: str) -> Optional[str]:
        """City name mentioned in a weather question, if any"""
        messages = [
            {"role": "system", "content": LOCATION_EXTRACTION_PROMPT},
            {"role": "user", "content": query}
        ]
        try:
            location = await self._complete(messages, "extract location", max_tokens=20, temperature=0)
        except AppError:
            return None

        location = location.strip()
        if not location or location.upper() == 'NONE':
            return None
        return location

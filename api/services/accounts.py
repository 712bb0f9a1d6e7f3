import logging
from datetime import datetime
from typing import Callable, List, Optional

from api.models import Account, AccountStatus, CustomAgent, utc_now
from api.pricing import max_categories_for_tier
from api.prompts import DEFAULT_CATEGORY, TopicCategory, parse_categories
from lib.database import Database
from lib.error_handler import AppError

logger = logging.getLogger(__name__)

class AccountService:
    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    async def get_account(self, phone_number: str) -> Optional[Account]:
        row = await self.db.get_user(phone_number)
        return Account(**row) if row else None

    async def create_account(self, phone_number: str, language: str = 'en', receiving_number: Optional[str] = None) -> Account:
        now = self.clock().isoformat()
        row = await self.db.insert_user({
            'phone_number': phone_number,
            'status': AccountStatus.PENDING.value,
            'credits_remaining': 0,
            'pricing_tier': None,
            'consent_timestamp': None,
            'selected_categories': [DEFAULT_CATEGORY.value],
            'language': language,
            'twilio_number': receiving_number,
            'created_at': now,
            'updated_at': now
        })
        logger.info(f"Created pending account for {phone_number}")
        return Account(**row)

    async def activate(self, phone_number: str) -> AccountStatus:
        """Opt the account in and return the status it had before.

        Only one of several concurrent calls sees the pending or inactive
        status; the others get ACTIVE.
        """
        previous = await self.db.activate_user(phone_number, self.clock().isoformat())
        if previous is None:
            if not await self.db.get_user(phone_number):
                raise AppError(f"No account for {phone_number}", status_code=404)
            logger.info(f"{phone_number} is already active")
            return AccountStatus.ACTIVE

        logger.info(f"Activated {phone_number} (was {previous})")
        return AccountStatus(previous)

    async def deactivate(self, phone_number: str) -> None:
        await self.db.update_user(phone_number, {
            'status': AccountStatus.INACTIVE.value,
            'updated_at': self.clock().isoformat()
        })
        logger.info(f"Deactivated {phone_number}")

    async def sync_contact(self, phone_number: str, language: str, receiving_number: str) -> None:
        """Keep language and the number the user texts in line with the latest message"""
        account = await self.get_account(phone_number)
        if not account:
            return
        if account.language == language and account.twilio_number == receiving_number:
            return

        await self.db.update_user(phone_number, {
            'language': language,
            'twilio_number': receiving_number,
            'updated_at': self.clock().isoformat()
        })

    async def get_selected_categories(self, phone_number: str) -> List[TopicCategory]:
        account = await self.get_account(phone_number)
        return parse_categories(account.selected_categories if account else [])

    async def update_selected_categories(self, phone_number: str, categories: List[str]) -> List[TopicCategory]:
        account = await self.get_account(phone_number)
        if not account:
            raise AppError(f"No account for {phone_number}", status_code=404)

        selected = []
        for value in categories:
            try:
                category = TopicCategory(value)
            except ValueError:
                raise AppError(f"Unknown category: {value}", status_code=400)
            if category not in selected:
                selected.append(category)

        if not selected:
            raise AppError("At least one category must be selected", status_code=400)

        max_categories = max_categories_for_tier(account.pricing_tier)
        if len(selected) > max_categories:
            raise AppError(
                f"Plan allows {max_categories} categories, got {len(selected)}",
                status_code=400
            )

        await self.db.update_user(phone_number, {
            'selected_categories': [category.value for category in selected],
            'updated_at': self.clock().isoformat()
        })
        logger.info(f"Categories for {phone_number}: {[category.value for category in selected]}")
        return selected

    # Custom agents

    async def create_agent(self, phone_number: str, name: str, system_prompt: str, description: Optional[str] = None) -> CustomAgent:
        if not name.strip() or not system_prompt.strip():
            raise AppError("Agent name and instructions are required", status_code=400)

        now = self.clock().isoformat()
        row = await self.db.insert_agent({
            'phone_number': phone_number,
            'name': name.strip(),
            'description': description,
            'system_prompt': system_prompt.strip(),
            'active': False,
            'created_at': now,
            'updated_at': now
        })
        return CustomAgent(**row)

    async def list_agents(self, phone_number: str) -> List[CustomAgent]:
        rows = await self.db.list_agents(phone_number)
        return [CustomAgent(**row) for row in rows]

    async def get_agent(self, phone_number: str, agent_id: int) -> CustomAgent:
        row = await self.db.get_agent(agent_id)
        if not row:
            raise AppError(f"Agent {agent_id} not found", status_code=404)
        if row['phone_number'] != phone_number:
            logger.warning(f"{phone_number} tried to access agent {agent_id} owned by another user")
            raise AppError(f"Agent {agent_id} belongs to another user", status_code=403)
        return CustomAgent(**row)

    async def update_agent(
        self,
        phone_number: str,
        agent_id: int,
        name: Optional[str] = None,
        system_prompt: Optional[str] = None,
        description: Optional[str] = None
    ) -> CustomAgent:
        agent = await self.get_agent(phone_number, agent_id)

        fields = {}
        if name is not None:
            fields['name'] = name.strip()
        if system_prompt is not None:
            fields['system_prompt'] = system_prompt.strip()
        if description is not None:
            fields['description'] = description
        if not fields.get('name', agent.name) or not fields.get('system_prompt', agent.system_prompt):
            raise AppError("Agent name and instructions are required", status_code=400)

        fields['updated_at'] = self.clock().isoformat()
        await self.db.update_agent(agent.id, fields)
        return CustomAgent(**{**agent.model_dump(), **fields})

    async def activate_agent(self, phone_number: str, agent_id: int) -> CustomAgent:
        agent = await self.get_agent(phone_number, agent_id)
        await self.db.set_active_agent(phone_number, agent.id, self.clock().isoformat())
        logger.info(f"Activated agent {agent.id} for {phone_number}")
        return agent.model_copy(update={'active': True})

    async def deactivate_agents(self, phone_number: str) -> None:
        await self.db.set_active_agent(phone_number, None, self.clock().isoformat())

    async def delete_agent(self, phone_number: str, agent_id: int) -> None:
        agent = await self.get_agent(phone_number, agent_id)
        await self.db.delete_agent(agent.id)
        logger.info(f"Deleted agent {agent.id} for {phone_number}")

    async def get_active_agent(self, phone_number: str) -> Optional[CustomAgent]:
        for agent in await self.list_agents(phone_number):
            if agent.active:
                return agent
        return None

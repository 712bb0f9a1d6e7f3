import logging
from datetime import datetime
from typing import Callable, List, Optional

from api.models import AccountStatus, Transaction, TransactionType, utc_now
from api.pricing import PlanTier
from lib.database import Database

logger = logging.getLogger(__name__)

class CreditService:
    """Credit balance plus the append-only transaction log"""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    async def get_balance(self, phone_number: str) -> int:
        user = await self.db.get_user(phone_number)
        return user['credits_remaining'] if user else 0

    async def has_credits(self, phone_number: str, amount: int = 1) -> bool:
        return await self.get_balance(phone_number) >= amount

    async def deduct_credits(self, phone_number: str, amount: int = 1) -> bool:
        """Take ``amount`` credits if the balance covers them.

        The check and the decrement happen in one storage operation, so two
        concurrent messages can never drive the balance below zero.
        """
        deducted = await self.db.debit_credits(phone_number, amount, self.clock().isoformat())
        if not deducted:
            logger.info(f"Insufficient credits for {phone_number} (needed {amount})")
        return deducted

    async def add_credits(self, phone_number: str, amount: int) -> None:
        await self.db.add_credits(phone_number, amount, self.clock().isoformat())
        logger.info(f"Added {amount} credits for {phone_number}")

    async def log_transaction(
        self,
        phone_number: str,
        transaction_type: TransactionType,
        credits_delta: int,
        description: str,
        external_ref: Optional[str] = None
    ) -> Transaction:
        row = await self.db.insert_transaction({
            'phone_number': phone_number,
            'type': TransactionType(transaction_type).value,
            'credits_delta': credits_delta,
            'description': description,
            'external_ref': external_ref,
            'created_at': self.clock().isoformat()
        })
        return Transaction(**row)

    async def get_transactions(self, phone_number: str, limit: int = 50) -> List[Transaction]:
        rows = await self.db.list_transactions(phone_number, limit)
        return [Transaction(**row) for row in rows]

    async def charge(self, phone_number: str, amount: int, description: str) -> bool:
        """Debit and log a usage entry; False leaves balance and log untouched"""
        if not await self.deduct_credits(phone_number, amount):
            return False
        await self.log_transaction(phone_number, TransactionType.USAGE, -amount, description)
        return True

    async def grant(
        self,
        phone_number: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        external_ref: Optional[str] = None
    ) -> None:
        await self.add_credits(phone_number, amount)
        await self.log_transaction(phone_number, transaction_type, amount, description, external_ref)

    async def record_purchase(self, phone_number: str, tier: str, payment_ref: str, credits: Optional[int] = None) -> bool:
        """Apply a completed credit purchase.

        Creates a pending account for unknown numbers. Returns True when the
        account still needs to confirm opt-in. Without an explicit amount the
        plan's credit bundle is granted.
        """
        plan = PlanTier(tier)
        if credits is None:
            credits = plan.credits
        now = self.clock().isoformat()
        user = await self.db.get_user(phone_number)

        if not user:
            user = await self.db.insert_user({
                'phone_number': phone_number,
                'status': AccountStatus.PENDING.value,
                'credits_remaining': 0,
                'pricing_tier': plan.value,
                'consent_timestamp': None,
                'selected_categories': [],
                'language': 'en',
                'twilio_number': None,
                'created_at': now,
                'updated_at': now
            })
            logger.info(f"Created pending account for purchase by {phone_number}")
        else:
            await self.db.update_user(phone_number, {'pricing_tier': plan.value, 'updated_at': now})

        await self.grant(
            phone_number,
            credits,
            TransactionType.PURCHASE,
            f"Purchased {credits} credits ({plan.value})",
            external_ref=payment_ref
        )
        return user['status'] == AccountStatus.PENDING.value

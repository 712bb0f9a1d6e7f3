from enum import Enum
from typing import Optional

UNLIMITED_CATEGORIES = 999

class PlanTier(str, Enum):
    STARTER = 'starter'
    PRO = 'pro'
    PREMIUM = 'premium'

    @property
    def max_categories(self) -> int:
        return TIER_CATEGORY_LIMITS[self]

    @property
    def credits(self) -> int:
        return TIER_CREDITS[self]

TIER_CATEGORY_LIMITS = {
    PlanTier.STARTER: 1,
    PlanTier.PRO: 3,
    PlanTier.PREMIUM: UNLIMITED_CATEGORIES,
}

TIER_CREDITS = {
    PlanTier.STARTER: 30,
    PlanTier.PRO: 100,
    PlanTier.PREMIUM: 350,
}

# Credits charged per handled message
CREDIT_COSTS = {
    'ai_conversation': 1,
    'more': 1,
    'image_analysis': 1,
    'place_search': 1,
    'weather_query': 1,
}

def max_categories_for_tier(tier: Optional[str]) -> int:
    """Accounts without a (known) plan get the starter cap"""
    try:
        return PlanTier(tier).max_categories
    except ValueError:
        return TIER_CATEGORY_LIMITS[PlanTier.STARTER]

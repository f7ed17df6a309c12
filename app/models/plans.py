"""
Plan pricing and trade-in credit tables

The plan table is versioned. A subscription copies its pricing and
entitlements (plus PLAN_PRICE_VERSION) at creation time and keeps them;
bumping a price here never rewrites existing subscriptions.
"""
from typing import Dict

from app.models.entities import MattressCondition, SubscriptionPlan

PLAN_PRICE_VERSION = 1

PLAN_PRICES: Dict[str, Dict] = {
    SubscriptionPlan.BASIC.value: {
        "monthly": 25,
        "yearly": 250,
        "cleanings": 3,
        "inspections": 1,
        "protection": False,
        "trade_in": False,
    },
    SubscriptionPlan.PREMIUM.value: {
        "monthly": 50,
        "yearly": 500,
        "cleanings": 6,
        "inspections": 2,
        "protection": True,
        "trade_in": False,
    },
    SubscriptionPlan.ELITE.value: {
        "monthly": 75,
        "yearly": 750,
        "cleanings": 12,
        "inspections": 2,
        "protection": True,
        "trade_in": True,
    },
}

CONDITION_FACTORS: Dict[str, float] = {
    MattressCondition.EXCELLENT.value: 0.8,
    MattressCondition.GOOD.value: 0.6,
    MattressCondition.FAIR.value: 0.4,
    MattressCondition.POOR.value: 0.2,
}


def calculate_credit(estimated_value: float, condition: str) -> int:
    """
    Trade-in credit for a mattress: estimated value scaled by its condition,
    rounded half-up to a whole currency unit.

    Raises:
        ValueError: unknown condition or negative value
    """
    condition = MattressCondition(condition).value
    if estimated_value < 0:
        raise ValueError("estimated_value must be non-negative")
    credit = estimated_value * CONDITION_FACTORS[condition]
    return int(credit + 0.5)


def plan_price(plan: str, interval: str = "month") -> float:
    prices = PLAN_PRICES[SubscriptionPlan(plan).value]
    return prices["yearly"] if interval == "year" else prices["monthly"]


def plan_for_amount(amount: float, interval: str = "month") -> str:
    """Pick the highest plan whose price for the interval the amount covers"""
    for plan in (SubscriptionPlan.ELITE, SubscriptionPlan.PREMIUM):
        if amount >= plan_price(plan.value, interval):
            return plan.value
    return SubscriptionPlan.BASIC.value


def plan_entitlements(plan: str) -> Dict:
    prices = PLAN_PRICES[SubscriptionPlan(plan).value]
    return {
        "cleanings": prices["cleanings"],
        "inspections": prices["inspections"],
        "protection": prices["protection"],
        "trade_in": prices["trade_in"],
    }

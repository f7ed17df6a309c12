"""
Record-store entities

Every collection in the record store is a plain JSON document. These models
describe the fields the sync engine reads and writes; unknown fields are kept
so rows round-trip untouched.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Collections:
    """Record-store collection names"""
    CUSTOMERS = "customers"
    SUBSCRIPTIONS = "subscriptions"
    EVALUATIONS = "evaluations"
    COUPONS = "coupons"
    ENTITY_MAPPINGS = "entity_mappings"
    SYNC_HISTORY = "sync_history"
    PAYMENTS_WEBHOOKS = "payments_webhooks"
    COMMERCE_WEBHOOKS = "commerce_webhooks"
    PAYMENTS_CONFIG = "payments_config"
    PAYMENTS_SUBSCRIPTIONS = "payments_subscriptions"
    PAYMENTS_PAYMENT_LINKS = "payments_payment_links"
    COMMERCE_SETTINGS = "commerce_settings"
    COMMERCE_PRODUCTS = "commerce_products"
    COMMERCE_CUSTOMERS = "commerce_customers"


# Prefix used when the record store client generates an id locally
ID_PREFIXES: Dict[str, str] = {
    Collections.CUSTOMERS: "cust",
    Collections.SUBSCRIPTIONS: "sub",
    Collections.EVALUATIONS: "eval",
    Collections.COUPONS: "cpn",
    Collections.ENTITY_MAPPINGS: "map",
    Collections.SYNC_HISTORY: "sync",
    Collections.PAYMENTS_WEBHOOKS: "pwh",
    Collections.COMMERCE_WEBHOOKS: "cwh",
    Collections.PAYMENTS_CONFIG: "pcfg",
    Collections.PAYMENTS_SUBSCRIPTIONS: "psub",
    Collections.PAYMENTS_PAYMENT_LINKS: "plink",
    Collections.COMMERCE_SETTINGS: "ccfg",
    Collections.COMMERCE_PRODUCTS: "cprod",
    Collections.COMMERCE_CUSTOMERS: "ccust",
}


class EntityType(str, Enum):
    CUSTOMER = "customer"
    PRODUCT = "product"
    SUBSCRIPTION = "subscription"


class SubscriptionPlan(str, Enum):
    BASIC = "basic"
    PREMIUM = "premium"
    ELITE = "elite"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class EvaluationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REDEEMED = "redeemed"


class MattressCondition(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class SyncService(str, Enum):
    PAYMENTS = "payments"
    COMMERCE = "commerce"
    ALL = "all"


class SyncType(str, Enum):
    FULL_SYNC = "full_sync"
    PARTIAL_SYNC = "partial_sync"
    WEBHOOK = "webhook"


class SyncStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class Record(BaseModel):
    """Base for record-store documents"""
    model_config = ConfigDict(extra="allow", use_enum_values=True)

    id: Optional[str] = None
    created_at: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        """Serialize for the record store, dropping unset optionals"""
        return self.model_dump(mode="json", exclude_none=True)


class Customer(Record):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    payments_customer_id: Optional[str] = None
    commerce_customer_id: Optional[str] = None
    subscription_status: Optional[str] = None


class EntityMapping(Record):
    entity_type: EntityType
    local_id: str
    payments_id: Optional[str] = None
    commerce_id: Optional[str] = None
    last_synced: str


class Pricing(BaseModel):
    amount: float
    currency: str = "usd"
    interval: str = "month"
    version: int


class Billing(BaseModel):
    method: Optional[str] = None
    last_payment: Optional[str] = None


class Services(BaseModel):
    cleanings: int
    inspections: int
    protection: bool
    trade_in: bool


class Credits(BaseModel):
    cleanings_used: int = 0
    inspections_used: int = 0


class Subscription(Record):
    customer_id: str
    plan: SubscriptionPlan
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    pricing: Pricing
    billing: Billing = Field(default_factory=Billing)
    services: Services
    credits: Credits = Field(default_factory=Credits)
    start_date: str
    paused_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    payments_subscription_id: Optional[str] = None


class Mattress(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    brand: Optional[str] = None
    model: Optional[str] = None
    age: Optional[int] = None
    condition: MattressCondition
    size: Optional[str] = None


class Evaluation(Record):
    customer_id: str
    mattress: Mattress
    estimated_value: float
    credit_approved: int
    status: EvaluationStatus = EvaluationStatus.PENDING
    coupon_code: Optional[str] = None
    coupon_id: Optional[str] = None
    expires_at: Optional[str] = None
    redeemed_at: Optional[str] = None
    rejection_reason: Optional[str] = None


class Coupon(Record):
    code: str
    description: str = ""
    value: float
    value_type: str = "fixed_amount"
    usage_count: int = 0
    usage_limit: int = 1
    active: bool = True
    starts_at: Optional[str] = None
    expires_at: Optional[str] = None
    customer_id: Optional[str] = None
    evaluation_id: Optional[str] = None
    created_for: str = "trade_in"
    commerce_price_rule_id: Optional[str] = None
    commerce_discount_code_id: Optional[str] = None
    orphaned_price_rule_id: Optional[str] = None
    redeemed_event_ids: List[str] = Field(default_factory=list)


class SyncHistory(Record):
    service: SyncService
    type: SyncType
    status: SyncStatus = SyncStatus.STARTED
    details: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    started_at: str
    completed_at: Optional[str] = None


class WebhookLog(Record):
    external_event_id: str
    type: str
    payload: Dict[str, Any]
    processed: bool = False
    error: Optional[str] = None
    received_at: Optional[str] = None
    processed_at: Optional[str] = None

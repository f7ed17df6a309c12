"""Record-store models for the CRM sync engine"""

from app.models.entities import (
    Collections,
    ID_PREFIXES,
    EntityType,
    SubscriptionPlan,
    SubscriptionStatus,
    EvaluationStatus,
    MattressCondition,
    SyncService,
    SyncType,
    SyncStatus,
    Customer,
    EntityMapping,
    Subscription,
    Mattress,
    Evaluation,
    Coupon,
    SyncHistory,
    WebhookLog,
)

from app.models.plans import (
    PLAN_PRICE_VERSION,
    PLAN_PRICES,
    CONDITION_FACTORS,
    calculate_credit,
    plan_for_amount,
    plan_entitlements,
)

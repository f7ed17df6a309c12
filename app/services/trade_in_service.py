"""
Trade-In Coupon Workflow

Evaluation state machine:

    pending -> approved -> redeemed
    pending -> rejected

rejected and redeemed are terminal. Operator actions that break the machine
raise InvalidTransitionError; storefront redemptions that arrive for an
evaluation in the wrong state are logged and ignored.

Approval is local-first: the coupon and evaluation are written before the
storefront discount is created, and a storefront failure only annotates the
local coupon.
"""
import re
from datetime import timedelta
from typing import Any, Dict, Optional

from app.config import Settings, commerce_config, get_settings, record_store_config
from app.connectors.base import CouponCreationError
from app.connectors.commerce import CommerceClient
from app.connectors.record_store import RecordStoreClient
from app.models.entities import Collections, Coupon, Evaluation, EvaluationStatus, Mattress
from app.models.plans import calculate_credit
from app.services.exceptions import InvalidTransitionError, NotFoundError
from app.utils.helpers import epoch_millis, to_base36, utcnow, utcnow_iso
from app.utils.logger import log

COUPON_VALIDITY_DAYS = 90
COMMERCE_FAILURE_MARKER = "[commerce sync failed]"
APPROVAL_FAILURE_MARKER = "[approval failed]"


def trade_in_code(evaluation_id: str, millis: Optional[int] = None) -> str:
    """TRADEIN-<first 8 alphanumerics of the id>-<base36 millis>, uppercased"""
    head = re.sub(r"[^A-Za-z0-9]", "", evaluation_id)[:8].upper()
    stamp = to_base36(epoch_millis() if millis is None else millis).upper()
    return f"TRADEIN-{head}-{stamp}"


class TradeInWorkflow:

    def __init__(
        self,
        store: RecordStoreClient,
        commerce: Optional[CommerceClient] = None,
        validity_days: int = COUPON_VALIDITY_DAYS
    ):
        self.store = store
        self.commerce = commerce
        self.validity_days = validity_days

    async def _require_evaluation(self, evaluation_id: str) -> Dict:
        evaluation = await self.store.get_evaluation(evaluation_id)
        if not evaluation:
            raise NotFoundError("evaluation", evaluation_id)
        return evaluation

    async def create_evaluation(
        self,
        customer_id: str,
        mattress: Dict[str, Any],
        estimated_value: float
    ) -> Dict:
        """Open a pending evaluation with its credit computed from condition"""
        mattress_model = Mattress(**mattress)
        evaluation = Evaluation(
            customer_id=customer_id,
            mattress=mattress_model,
            estimated_value=estimated_value,
            credit_approved=calculate_credit(estimated_value, mattress_model.condition),
        )
        row = await self.store.create_evaluation(evaluation.to_record())
        log.info(f"Evaluation {row['id']} opened for customer {customer_id}: credit {row['credit_approved']}")
        return row

    async def approve(self, evaluation_id: str) -> Dict:
        """
        Approve a pending evaluation and issue its coupon

        Returns:
            Dict with evaluation, coupon and commerce_synced flag
        """
        evaluation = await self._require_evaluation(evaluation_id)
        current = evaluation.get("status")
        if current != EvaluationStatus.PENDING.value:
            raise InvalidTransitionError("evaluation", evaluation_id, current, EvaluationStatus.APPROVED.value)

        code = trade_in_code(evaluation_id)
        now = utcnow()
        expires_at = (now + timedelta(days=self.validity_days)).isoformat()
        credit = evaluation.get("credit_approved") or 0

        coupon = Coupon(
            code=code,
            description=f"Trade-in credit for evaluation {evaluation_id}",
            value=credit,
            usage_limit=1,
            active=True,
            starts_at=now.isoformat(),
            expires_at=expires_at,
            customer_id=evaluation.get("customer_id"),
            evaluation_id=evaluation_id,
            created_for="trade_in",
        )
        coupon_row = await self.store.create(Collections.COUPONS, coupon.to_record())

        try:
            evaluation = await self.store.update_evaluation(evaluation_id, {
                "status": EvaluationStatus.APPROVED.value,
                "coupon_code": code,
                "coupon_id": coupon_row["id"],
                "expires_at": expires_at,
            })
        except Exception as e:
            log.error(f"Approving evaluation {evaluation_id} failed: {str(e)}")
            await self._void_coupon(coupon_row, str(e))
            raise
        log.info(f"Evaluation {evaluation_id} approved with coupon {code}")

        coupon_row, synced = await self._push_coupon(coupon_row, evaluation_id)
        return {"evaluation": evaluation, "coupon": coupon_row, "commerce_synced": synced}

    async def _push_coupon(self, coupon: Dict, evaluation_id: str):
        """Best-effort storefront discount for a local coupon"""
        if self.commerce is None:
            return await self._mark_commerce_failure(coupon, "commerce client is not configured"), False

        try:
            result = await self.commerce.create_coupon(
                title=f"Trade-in {coupon['code']}",
                code=coupon["code"],
                value=coupon["value"],
                value_type=coupon.get("value_type", "fixed_amount"),
                usage_limit=coupon.get("usage_limit", 1),
                once_per_customer=True,
                starts_at=coupon.get("starts_at"),
                ends_at=coupon.get("expires_at"),
            )
        except Exception as e:
            log.error(f"Storefront coupon for evaluation {evaluation_id} failed: {str(e)}")
            orphan = e.price_rule_id if isinstance(e, CouponCreationError) else None
            return await self._mark_commerce_failure(coupon, str(e), orphan), False

        price_rule_id = str(result["price_rule"]["id"])
        discount_code_id = str(result["discount_code"].get("id", ""))
        updated = await self.store.update(Collections.COUPONS, coupon["id"], {
            "commerce_price_rule_id": price_rule_id,
            "commerce_discount_code_id": discount_code_id,
        })
        await self.store.update_evaluation(evaluation_id, {"commerce_price_rule_id": price_rule_id})
        return updated, True

    async def _void_coupon(self, coupon: Dict, error: str) -> None:
        """Deactivate a coupon whose evaluation never reached approved"""
        try:
            await self.store.update(Collections.COUPONS, coupon["id"], {
                "active": False,
                "description": f"{coupon.get('description', '')} {APPROVAL_FAILURE_MARKER} {error}".strip(),
            })
        except Exception as e:
            log.error(f"Could not deactivate coupon {coupon['code']}: {str(e)}")

    async def _mark_commerce_failure(self, coupon: Dict, error: str, orphan: Optional[str] = None) -> Dict:
        updates: Dict[str, Any] = {
            "description": f"{coupon.get('description', '')} {COMMERCE_FAILURE_MARKER} {error}".strip()
        }
        if orphan:
            updates["orphaned_price_rule_id"] = orphan
        return await self.store.update(Collections.COUPONS, coupon["id"], updates)

    async def reject(self, evaluation_id: str, reason: Optional[str] = None) -> Dict:
        evaluation = await self._require_evaluation(evaluation_id)
        current = evaluation.get("status")
        if current != EvaluationStatus.PENDING.value:
            raise InvalidTransitionError("evaluation", evaluation_id, current, EvaluationStatus.REJECTED.value)

        updates: Dict[str, Any] = {"status": EvaluationStatus.REJECTED.value}
        if reason:
            updates["rejection_reason"] = reason
        log.info(f"Evaluation {evaluation_id} rejected")
        return await self.store.update_evaluation(evaluation_id, updates)

    async def redeem_code(self, code: str, event_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Record a storefront redemption of a coupon code

        An event id already seen on the coupon does not count usage again,
        but still finishes the evaluation step a failed delivery left
        undone. Codes not issued here are ignored.
        """
        coupon = await self.store.find_coupon_by_code(code)
        if not coupon:
            log.info(f"Discount code {code} is not a tracked coupon")
            return {"status": "unknown_code", "code": code}

        seen = list(coupon.get("redeemed_event_ids") or [])
        replay = bool(event_id) and event_id in seen
        if replay:
            log.info(f"Redemption of {code} for event {event_id} already recorded")
        else:
            usage_count = (coupon.get("usage_count") or 0) + 1
            usage_limit = coupon.get("usage_limit") or 1
            updates: Dict[str, Any] = {
                "usage_count": usage_count,
                "active": usage_count < usage_limit,
            }
            if event_id:
                updates["redeemed_event_ids"] = seen + [event_id]
            await self.store.update(Collections.COUPONS, coupon["id"], updates)

        evaluation = await self._evaluation_for_coupon(coupon)
        if evaluation is None:
            if replay:
                return {"status": "duplicate", "code": code}
            return {"status": "redeemed", "code": code, "evaluation_id": None}

        current = evaluation.get("status")
        if current != EvaluationStatus.APPROVED.value:
            if replay:
                return {"status": "duplicate", "code": code}
            log.warning(
                f"Ignoring redemption of {code}: evaluation {evaluation['id']} is {current}, not approved"
            )
            return {"status": "ignored", "code": code, "evaluation_id": evaluation["id"]}

        await self.store.update_evaluation(evaluation["id"], {
            "status": EvaluationStatus.REDEEMED.value,
            "redeemed_at": utcnow_iso(),
        })
        log.info(f"Evaluation {evaluation['id']} redeemed via {code}")
        return {"status": "redeemed", "code": code, "evaluation_id": evaluation["id"]}

    async def _evaluation_for_coupon(self, coupon: Dict) -> Optional[Dict]:
        if coupon.get("evaluation_id"):
            evaluation = await self.store.get_evaluation(coupon["evaluation_id"])
            if evaluation:
                return evaluation
        matches = await self.store.get_evaluations({"coupon_code": {"_eq": coupon["code"]}})
        return matches[0] if matches else None


def build_trade_in_workflow(settings: Optional[Settings] = None) -> TradeInWorkflow:
    settings = settings or get_settings()
    shop_config = commerce_config(settings)
    commerce = CommerceClient(shop_config) if shop_config.shop_domain and shop_config.access_token else None
    return TradeInWorkflow(
        RecordStoreClient(record_store_config(settings)),
        commerce,
        validity_days=settings.coupon_validity_days,
    )

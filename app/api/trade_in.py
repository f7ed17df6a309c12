"""
Trade-in operator endpoints
"""
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from app.models.entities import Mattress
from app.services.exceptions import InvalidTransitionError, NotFoundError
from app.services.trade_in_service import build_trade_in_workflow
from app.utils.logger import log

router = APIRouter(prefix="/trade-in", tags=["trade-in"])


class EvaluationRequest(BaseModel):
    customer_id: str
    mattress: Mattress
    estimated_value: float = Field(ge=0)


class RejectRequest(BaseModel):
    reason: Optional[str] = None


@router.post("/evaluations")
async def create_evaluation(request: EvaluationRequest):
    try:
        return await build_trade_in_workflow().create_evaluation(
            request.customer_id,
            request.mattress.model_dump(),
            request.estimated_value,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        log.error(f"Create evaluation error: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/evaluations/{evaluation_id}/approve")
async def approve_evaluation(evaluation_id: str):
    """
    Approve a pending evaluation and issue its coupon.

    The coupon is kept even when the storefront discount cannot be created;
    `commerce_synced` reports whether it was.
    """
    try:
        return await build_trade_in_workflow().approve(evaluation_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        log.error(f"Approve evaluation error: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/evaluations/{evaluation_id}/reject")
async def reject_evaluation(evaluation_id: str, request: Optional[RejectRequest] = None):
    try:
        return await build_trade_in_workflow().reject(evaluation_id, request.reason if request else None)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        log.error(f"Reject evaluation error: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

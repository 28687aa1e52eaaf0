"""
Swap Routes for ReWear Exchange API

Swap requests, their acceptance and decline, and points redemption.
"""

from fastapi import APIRouter, HTTPException, Depends, Header, Query, status
from auth import get_current_user
from database import LedgerStore, get_ledger_store
from error_handling import ReWearError, ResponseHelpers
from models import SwapProposal, User
from services.catalog import CatalogService
from services.exchange_workflow import ExchangeWorkflow
import logging
from typing import Optional

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["swaps"])


def get_exchange_workflow(store: LedgerStore = Depends(get_ledger_store)) -> ExchangeWorkflow:
    return ExchangeWorkflow(store)


@router.get("/swaps")
async def list_swaps(
    role: str = Query("all", pattern="^(requester|uploader|all)$"),
    user: User = Depends(get_current_user),
    store: LedgerStore = Depends(get_ledger_store),
):
    """Swap requests the user made (requester), received (uploader), or both"""
    swaps = CatalogService(store).list_swaps(user.uid, role)
    return {
        "swaps": [swap.to_response() for swap in swaps],
        "count": len(swaps),
    }


@router.post("/swaps", status_code=status.HTTP_201_CREATED)
async def request_swap(
    proposal: SwapProposal,
    user: User = Depends(get_current_user),
    workflow: ExchangeWorkflow = Depends(get_exchange_workflow),
):
    """Propose a swap for an item, optionally offering one of your own"""
    try:
        logger.info(f"User {user.uid} requesting swap for item {proposal.item_id}")
        request = workflow.request_swap(
            proposal.item_id,
            user.uid,
            requester_item_id=proposal.requester_item_id,
            message=proposal.message,
        )
        return ResponseHelpers.success_response("Swap request sent", {"request": request.to_response()})
    except ReWearError:
        raise
    except Exception as e:
        logger.error(f"Error creating swap request: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to create swap request: {str(e)}"
        )


@router.post("/swaps/{request_id}/accept")
async def accept_swap(
    request_id: str,
    user: User = Depends(get_current_user),
    workflow: ExchangeWorkflow = Depends(get_exchange_workflow),
):
    """Accept a pending swap request on one of your items"""
    result = workflow.accept_swap(request_id, user.uid)
    return ResponseHelpers.success_response("Swap completed", {
        "request": result.request.to_response(),
        "items": [item.to_response() for item in result.items],
        "declined_request_ids": result.declined_request_ids,
    })


@router.post("/swaps/{request_id}/decline")
async def decline_swap(
    request_id: str,
    user: User = Depends(get_current_user),
    workflow: ExchangeWorkflow = Depends(get_exchange_workflow),
):
    """Decline a pending swap request on one of your items"""
    request = workflow.decline_swap(request_id, user.uid)
    return ResponseHelpers.success_response("Swap request declined", {"request": request.to_response()})


@router.post("/items/{item_id}/redeem")
async def redeem_item(
    item_id: str,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    user: User = Depends(get_current_user),
    workflow: ExchangeWorkflow = Depends(get_exchange_workflow),
):
    """
    Redeem an item with points

    Clients should send an Idempotency-Key header so a retried request
    cannot debit twice.
    """
    result = workflow.redeem_with_points(item_id, user.uid, idempotency_key=idempotency_key)
    return ResponseHelpers.success_response(
        "Item already redeemed with this key" if result.replayed else "Item redeemed successfully",
        {
            "request": result.request.to_response(),
            "item": result.item.to_response(),
            "remaining_points": result.remaining_points,
            "replayed": result.replayed,
        },
    )

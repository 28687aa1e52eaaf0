"""
Admin Routes for ReWear Exchange API

This module contains read-only admin endpoints: user and item listings and
platform statistics. Admins do not edit balances or item statuses directly;
those only change through the exchange workflow.
"""

from fastapi import APIRouter, HTTPException, Depends, Query, status
from auth import verify_admin_access
from database import LedgerStore, get_ledger_store
from error_handling import ReWearError, ResponseHelpers
from models import ItemStatus, SwapStatus, SwapType, User
import logging
from collections import Counter
from typing import Optional

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/users")
async def get_all_users(
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    admin: User = Depends(verify_admin_access),
    store: LedgerStore = Depends(get_ledger_store),
):
    """Get all users for admin management"""
    users = sorted(store.reader().list_users(), key=lambda user: user.created_at, reverse=True)
    logger.info(f"Retrieved {len(users)} users for admin {admin.uid}")

    start = (page - 1) * per_page
    return ResponseHelpers.paginated_response(
        [user.to_response() for user in users[start:start + per_page]],
        total=len(users),
        page=page,
        per_page=per_page,
    )


@router.get("/items")
async def get_all_items(
    item_status: Optional[str] = Query(None, alias="status", pattern="^(available|pending|swapped|redeemed)$"),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    admin: User = Depends(verify_admin_access),
    store: LedgerStore = Depends(get_ledger_store),
):
    """Get every listed item, optionally filtered by status"""
    filters = [('status', '==', item_status)] if item_status else []
    items = store.reader().list_items(filters)

    start = (page - 1) * per_page
    return ResponseHelpers.paginated_response(
        [item.to_response() for item in items[start:start + per_page]],
        total=len(items),
        page=page,
        per_page=per_page,
    )


@router.get("/stats")
async def get_platform_stats(
    admin: User = Depends(verify_admin_access),
    store: LedgerStore = Depends(get_ledger_store),
):
    """Get platform statistics: item and exchange counts, points in circulation"""
    try:
        reader = store.reader()
        users = reader.list_users()
        items = reader.list_items()
        requests = reader.list_swap_requests()

        items_by_status = Counter(item.status.value for item in items)
        swaps = [request for request in requests if request.type == SwapType.SWAP]
        redemptions = [request for request in requests if request.type == SwapType.POINTS]

        stats = {
            "total_users": len(users),
            "points_in_circulation": sum(user.points for user in users),
            "total_items": len(items),
            "items_by_status": {item_status.value: items_by_status.get(item_status.value, 0)
                                for item_status in ItemStatus},
            "swap_requests_by_status": {swap_status.value: sum(1 for swap in swaps if swap.status == swap_status)
                                        for swap_status in SwapStatus},
            "total_redemptions": len(redemptions),
            "points_redeemed": sum(
                item.point_value for item in items
                if item.status == ItemStatus.REDEEMED
            ),
        }
        logger.info(f"Platform stats computed for admin {admin.uid}")
        return {"success": True, "stats": stats}

    except ReWearError:
        raise
    except Exception as e:
        logger.error(f"Error computing platform stats: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to get platform stats: {str(e)}"
        )

"""
User Routes for ReWear Exchange API

This module contains the signed-in user's profile and dashboard endpoints.
"""

from fastapi import APIRouter, HTTPException, Depends, status
from auth import get_current_user
from database import LedgerStore, get_ledger_store
from error_handling import ReWearError
from models import User
from services.accounts import AccountService
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/user", tags=["user"])


@router.get("/profile")
async def get_profile(user: User = Depends(get_current_user)):
    """Get the signed-in user's profile, including the points balance"""
    return {"user": user.to_response()}


@router.get("/dashboard")
async def get_dashboard(
    user: User = Depends(get_current_user),
    store: LedgerStore = Depends(get_ledger_store),
):
    """Points balance, listings and swap activity for the dashboard"""
    try:
        dashboard = AccountService(store).get_dashboard(user.uid)
        logger.info(f"Dashboard loaded for user {user.uid}: {dashboard['items_listed']} items listed")
        return {"success": True, "dashboard": dashboard}
    except ReWearError:
        raise
    except Exception as e:
        logger.error(f"Error loading dashboard: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to load dashboard: {str(e)}"
        )

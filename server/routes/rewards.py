from fastapi import APIRouter, HTTPException, Depends, status, Request
from auth import get_current_user, verify_admin_access
from database import LedgerStore, get_ledger_store
from error_handling import ReWearError, ValidationError
from models import User
from services.accounts import AccountService
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["rewards"])


@router.get("/admin/rewards-config")
async def get_rewards_config(
    admin: User = Depends(verify_admin_access),
    store: LedgerStore = Depends(get_ledger_store),
):
    """Get current rewards system configuration"""
    logger.info("Admin fetching rewards configuration")
    config = AccountService(store).get_rewards_config()
    return {
        "success": True,
        "config": config.model_dump(by_alias=True)
    }


@router.post("/admin/rewards-config")
async def update_rewards_config(
    request: Request,
    admin: User = Depends(verify_admin_access),
    store: LedgerStore = Depends(get_ledger_store),
):
    """Update rewards system configuration"""
    try:
        data = await request.json()
    except ValueError:
        raise ValidationError("Request body must be JSON", "config")

    config = data.get('config', data) if isinstance(data, dict) else None
    if not isinstance(config, dict) or not config:
        raise ValidationError("A configuration object is required", "config")

    try:
        updated = AccountService(store).update_rewards_config(config, admin)
        return {
            "success": True,
            "message": "Rewards configuration updated successfully",
            "config": updated.model_dump(by_alias=True)
        }
    except ReWearError:
        raise
    except Exception as e:
        logger.error(f"Error updating rewards config: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to update rewards config: {str(e)}"
        )


@router.get("/user/rewards-info")
async def get_user_rewards_info(
    user: User = Depends(get_current_user),
    store: LedgerStore = Depends(get_ledger_store),
):
    """Get user's points balance and redemption history"""
    info = AccountService(store).get_rewards_info(user.uid)
    return {
        "success": True,
        **info
    }

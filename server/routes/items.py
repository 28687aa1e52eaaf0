"""
Item Routes for ReWear Exchange API

Catalog endpoints: list a garment, browse and search, view, edit and remove
items, and the placeholder image generator used by the listing form.
"""

from fastapi import APIRouter, HTTPException, Depends, Query, status
from auth import get_current_user
from database import LedgerStore, get_ledger_store
from error_handling import ReWearError, ResponseHelpers
from models import ImagePrompt, ItemCategory, ItemSubmission, ItemUpdate, User
from services.catalog import CatalogService
import logging
from typing import Optional

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/items", tags=["items"])


def get_catalog_service(store: LedgerStore = Depends(get_ledger_store)) -> CatalogService:
    return CatalogService(store)


@router.post("", status_code=status.HTTP_201_CREATED)
async def list_item(
    submission: ItemSubmission,
    user: User = Depends(get_current_user),
    catalog: CatalogService = Depends(get_catalog_service),
):
    """List a new item; it is immediately available for swaps and redemption"""
    try:
        logger.info(f"User {user.uid} listing item: {submission.title}")
        item = catalog.list_item(user.uid, submission)
        return ResponseHelpers.success_response("Item listed successfully", {"item": item.to_response()})
    except ReWearError:
        raise
    except Exception as e:
        logger.error(f"Error listing item: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to list item: {str(e)}"
        )


@router.get("")
async def browse_items(
    category: Optional[ItemCategory] = None,
    size: Optional[str] = Query(None, max_length=10),
    item_status: str = Query("available", alias="status", pattern="^(available|pending|swapped|redeemed|all)$"),
    search: Optional[str] = Query(None, max_length=100),
    catalog: CatalogService = Depends(get_catalog_service),
):
    """Browse the catalog, newest first. Defaults to available items."""
    items = catalog.browse(
        category=category.value if category else None,
        size=size,
        status=None if item_status == "all" else item_status,
        search=search,
    )
    return {
        "items": [item.to_response() for item in items],
        "count": len(items),
    }


@router.post("/generate-image")
async def generate_image(
    prompt: ImagePrompt,
    user: User = Depends(get_current_user),
):
    """Return a stock image URL for the listing form"""
    return {"image_url": CatalogService.generate_placeholder_image(prompt.prompt)}


@router.get("/{item_id}")
async def get_item(item_id: str, catalog: CatalogService = Depends(get_catalog_service)):
    """Item detail"""
    return {"item": catalog.get_item(item_id).to_response()}


@router.put("/{item_id}")
async def update_item(
    item_id: str,
    update: ItemUpdate,
    user: User = Depends(get_current_user),
    catalog: CatalogService = Depends(get_catalog_service),
):
    """Edit an available item (owner or admin)"""
    try:
        item = catalog.update_item(item_id, user, update)
        return ResponseHelpers.success_response("Item updated successfully", {"item": item.to_response()})
    except ReWearError:
        raise
    except Exception as e:
        logger.error(f"Error updating item {item_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to update item: {str(e)}"
        )


@router.delete("/{item_id}")
async def remove_item(
    item_id: str,
    user: User = Depends(get_current_user),
    catalog: CatalogService = Depends(get_catalog_service),
):
    """Remove an available item (owner or admin)"""
    try:
        declined = catalog.remove_item(item_id, user)
        return ResponseHelpers.success_response(
            "Item removed successfully",
            {"item_id": item_id, "declined_request_ids": declined},
        )
    except ReWearError:
        raise
    except Exception as e:
        logger.error(f"Error removing item {item_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to remove item: {str(e)}"
        )

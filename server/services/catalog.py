"""
Catalog Services

Listing, browsing, editing and removing clothing items. None of these
operations move an item through the exchange status machine; that belongs to
the exchange workflow.
"""

from database import COLLECTION_ITEMS, LedgerStore, LedgerTransaction
from error_handling import (
    ItemNotFoundError, ItemUnavailableError, NotAuthorizedError, UserNotFoundError,
    ValidationError,
)
from models import (
    ClothingItem, ItemStatus, ItemSubmission, ItemUpdate, RewardsConfig,
    SwapStatus, User,
)
from services.accounts import load_rewards_config
from utils import PLACEHOLDER_IMAGES, matches_search, normalize_tags, sanitize_string
from datetime import datetime, timezone
import logging
import random
from typing import List, Optional

logger = logging.getLogger(__name__)


class CatalogService:
    """Manages the lifecycle of listed items outside of exchanges"""

    def __init__(self, store: LedgerStore):
        self.store = store

    def list_item(self, uploader_id: str, submission: ItemSubmission) -> ClothingItem:
        """Create an available listing owned by the uploader"""

        def _list(txn: LedgerTransaction):
            uploader = txn.get_user(uploader_id)
            if uploader is None:
                raise UserNotFoundError(uploader_id)
            config = load_rewards_config(txn)
            self._validate_point_value(submission.point_value, config)

            item = ClothingItem(
                id=txn.new_id(COLLECTION_ITEMS),
                title=sanitize_string(submission.title, 120),
                description=sanitize_string(submission.description, 2000),
                images=submission.images,
                category=submission.category,
                size=sanitize_string(submission.size, 10),
                condition=submission.condition,
                tags=submission.tags,
                status=ItemStatus.AVAILABLE,
                uploader_id=uploader.uid,
                uploader_name=uploader.name,
                point_value=submission.point_value,
                created_at=datetime.now(timezone.utc),
            )
            txn.create_item(item)
            if config.listing_bonus:
                txn.adjust_user_points(uploader.uid, config.listing_bonus)
            return item, config.listing_bonus

        item, bonus = self.store.run_transaction(_list)
        logger.info(f"User {uploader_id} listed item {item.id} ({item.title}) for {item.point_value} points")
        if bonus:
            logger.info(f"Granted {bonus} listing points to user {uploader_id}")
        return item

    def browse(self, category: Optional[str] = None, size: Optional[str] = None,
               status: Optional[str] = ItemStatus.AVAILABLE.value, search: Optional[str] = None) -> List[ClothingItem]:
        """Items matching the filters, newest first"""
        filters = []
        if status:
            filters.append(('status', '==', status))
        if category:
            filters.append(('category', '==', category))
        if size:
            filters.append(('size', '==', size))

        items = self.store.reader().list_items(filters)
        if search:
            items = [item for item in items if matches_search(item, search)]
        return items

    def get_item(self, item_id: str) -> ClothingItem:
        item = self.store.reader().get_item(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return item

    def update_item(self, item_id: str, acting_user: User, update: ItemUpdate) -> ClothingItem:
        """Edit listing details; only while the item is still available"""
        changes = update.model_dump(exclude_unset=True)
        if 'tags' in changes:
            changes['tags'] = normalize_tags(changes['tags'] or [])
        if 'images' in changes:
            changes['images'] = [url for url in changes['images'] or [] if url and url.strip()]
            if not changes['images']:
                raise ValidationError("At least one image is required", "images")

        def _update(txn: LedgerTransaction) -> ClothingItem:
            item = self._require_editable(txn, item_id, acting_user)
            if 'point_value' in changes:
                self._validate_point_value(changes['point_value'], load_rewards_config(txn))
            updated = item.model_copy(update=changes)
            stored = ClothingItem.model_validate(updated.model_dump()).to_document()
            txn.update_item(item_id, {key: stored[key] for key in stored
                                      if key in _aliases(changes)})
            return updated

        item = self.store.run_transaction(_update)
        logger.info(f"User {acting_user.uid} updated item {item_id}: {sorted(changes)}")
        return item

    def remove_item(self, item_id: str, acting_user: User) -> List[str]:
        """Delete an available item, declining pending requests that reference it"""

        def _remove(txn: LedgerTransaction) -> List[str]:
            self._require_editable(txn, item_id, acting_user)
            declined = [request.id for request in txn.list_pending_requests_for_item(item_id)]
            for request_id in declined:
                txn.update_swap_request_status(request_id, SwapStatus.DECLINED, expected_status=SwapStatus.PENDING)
            txn.delete_item(item_id)
            return declined

        declined = self.store.run_transaction(_remove)
        logger.info(f"User {acting_user.uid} removed item {item_id}; declined {len(declined)} pending request(s)")
        return declined

    def list_swaps(self, uid: str, role: str = 'all'):
        """Swap requests the user made, received, or both"""
        reader = self.store.reader()
        if role == 'requester':
            return reader.list_swap_requests([('requesterId', '==', uid)])
        if role == 'uploader':
            return reader.list_swap_requests([('uploaderId', '==', uid)])
        if role != 'all':
            raise ValidationError("role must be one of: requester, uploader, all", "role", role)

        merged = {request.id: request for request in reader.list_swap_requests([('requesterId', '==', uid)])}
        merged.update({request.id: request for request in reader.list_swap_requests([('uploaderId', '==', uid)])})
        return sorted(merged.values(), key=lambda request: request.created_at, reverse=True)

    @staticmethod
    def generate_placeholder_image(prompt: str) -> str:
        """Stand-in for AI image generation: a stock photo regardless of the prompt"""
        logger.info(f"Generating placeholder image for prompt: {prompt[:50]}")
        return random.choice(PLACEHOLDER_IMAGES)

    @staticmethod
    def _validate_point_value(point_value: int, config: RewardsConfig):
        if not config.min_point_value <= point_value <= config.max_point_value:
            raise ValidationError(
                f"Point value must be between {config.min_point_value} and {config.max_point_value}",
                "pointValue",
                point_value,
            )

    @staticmethod
    def _require_editable(txn: LedgerTransaction, item_id: str, acting_user: User) -> ClothingItem:
        item = txn.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        if item.uploader_id != acting_user.uid and not acting_user.is_admin:
            raise NotAuthorizedError("You can only change your own items", acting_user.uid)
        if item.status != ItemStatus.AVAILABLE:
            raise ItemUnavailableError(item_id, item.status.value)
        return item


def _aliases(changes: dict) -> set:
    return {ClothingItem.model_fields[name].alias or name for name in changes}

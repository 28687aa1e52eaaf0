"""
Account Services

Profile bootstrap, points grants, dashboard figures and the rewards
configuration document.
"""

from database import LedgerStore, LedgerTransaction
from error_handling import UserNotFoundError, ValidationError
from models import RewardsConfig, SwapStatus, SwapType, User, UserRole
from pydantic import ValidationError as ModelValidationError
from utils import sanitize_string
from datetime import datetime, timezone
import logging
from typing import Any, Dict

logger = logging.getLogger(__name__)

REWARDS_CONFIG_DOC = 'rewards'

# Default rewards configuration
DEFAULT_REWARDS_CONFIG = {
    'welcomeBonus': 100,  # points granted on registration
    'listingBonus': 0,  # points granted per listed item (disabled)
    'minPointValue': 10,
    'maxPointValue': 200,
}


def load_rewards_config(txn: LedgerTransaction) -> RewardsConfig:
    stored = txn.get_config(REWARDS_CONFIG_DOC) or {}
    known = {key: stored[key] for key in DEFAULT_REWARDS_CONFIG if key in stored}
    return RewardsConfig.model_validate({**DEFAULT_REWARDS_CONFIG, **known})


class AccountService:
    """User profiles, balances and rewards settings"""

    def __init__(self, store: LedgerStore):
        self.store = store

    def ensure_profile(self, uid: str, email: str = '', name: str = '') -> User:
        """Return the user's profile, creating it with the welcome bonus on first access"""

        def _ensure(txn: LedgerTransaction):
            existing = txn.get_user(uid)
            if existing is not None:
                return existing, False
            config = load_rewards_config(txn)
            user = User(
                uid=uid,
                name=sanitize_string(name, 100) or 'User',
                email=email or '',
                role=UserRole.USER,
                points=config.welcome_bonus,
                created_at=datetime.now(timezone.utc),
            )
            return txn.create_user(user), True

        user, created = self.store.run_transaction(_ensure)
        if created:
            logger.info(f"Created profile for user {uid} with {user.points} starting points")
        return user

    def get_user(self, uid: str) -> User:
        user = self.store.reader().get_user(uid)
        if user is None:
            raise UserNotFoundError(uid)
        return user

    def get_dashboard(self, uid: str) -> Dict[str, Any]:
        """Figures shown on the user's dashboard"""
        reader = self.store.reader()
        user = reader.get_user(uid)
        if user is None:
            raise UserNotFoundError(uid)

        items = reader.list_items([('uploaderId', '==', uid)])
        swaps = reader.list_swap_requests([('requesterId', '==', uid)])
        incoming = reader.list_swap_requests([('uploaderId', '==', uid), ('status', '==', SwapStatus.PENDING.value)])

        return {
            "points_balance": user.points,
            "items_listed": len(items),
            "active_swaps": sum(1 for swap in swaps if swap.status == SwapStatus.PENDING),
            "completed_swaps": sum(1 for swap in swaps if swap.status == SwapStatus.COMPLETED),
            "incoming_requests": len(incoming),
            "recent_items": [item.to_response() for item in items[:4]],
            "recent_swaps": [swap.to_response() for swap in swaps[:4]],
        }

    def get_rewards_info(self, uid: str) -> Dict[str, Any]:
        """Points balance and redemption history"""
        reader = self.store.reader()
        user = reader.get_user(uid)
        if user is None:
            raise UserNotFoundError(uid)

        redemptions = reader.list_swap_requests([
            ('requesterId', '==', uid),
            ('type', '==', SwapType.POINTS.value),
        ])
        history = []
        for record in redemptions[:10]:
            item = reader.get_item(record.item_id)
            history.append({
                'request_id': record.id,
                'item_id': record.item_id,
                'item_title': item.title if item else None,
                'points_spent': item.point_value if item else None,
                'date': record.created_at.isoformat(),
            })

        return {
            "points_balance": user.points,
            "redemption_history": history,
            "config": load_rewards_config(reader).model_dump(by_alias=True),
            "user_id": uid,
        }

    def get_rewards_config(self) -> RewardsConfig:
        return load_rewards_config(self.store.reader())

    def update_rewards_config(self, updates: Dict[str, Any], admin: User) -> RewardsConfig:
        """Merge updates into the rewards configuration; the merged result is validated"""

        def _update(txn: LedgerTransaction) -> RewardsConfig:
            current = load_rewards_config(txn).model_dump(by_alias=True)
            try:
                merged = RewardsConfig.model_validate({**current, **updates})
            except ModelValidationError as e:
                raise ValidationError(f"Invalid rewards configuration: {e.errors()[0]['msg']}", "config") from e
            document = merged.model_dump(by_alias=True)
            document.update({
                'updatedAt': datetime.now(timezone.utc),
                'updatedBy': admin.uid,
                'updatedByName': admin.name,
            })
            txn.set_config(REWARDS_CONFIG_DOC, document)
            return merged

        config = self.store.run_transaction(_update)
        logger.info(f"Admin {admin.uid} updated rewards configuration: {config.model_dump(by_alias=True)}")
        return config


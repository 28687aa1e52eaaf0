"""
Exchange Workflow

Decides whether a swap or redemption is admissible and applies the resulting
record mutations through the ledger store. The workflow keeps no state of its
own; every call receives the acting user explicitly.

Redemption runs as a single store transaction: the debit, the item status
change, the audit record and the declines of competing requests commit
together. Accepting a swap is two transactions. The first marks the request
accepted (the commitment point), the second swaps the items and completes
the request. If the second fails the request is compensated back.

A process that dies between the two transactions leaves the request
accepted with its items still available. The uploader retrying the accept
resumes from there and runs the second transaction again.
"""

from database import COLLECTION_SWAPS, LedgerStore, LedgerTransaction
from error_handling import (
    DuplicateRequestError, InsufficientPointsError, InvalidRequestStateError, ItemNotFoundError,
    ItemUnavailableError, NotAuthorizedError, PartialFailureError,
    ReconciliationRequiredError, SelfTransactionError, SwapRequestNotFoundError,
    ValidationError,
)
from models import (
    ClothingItem, ItemStatus, RedemptionResult, SwapRequest, SwapResult,
    SwapStatus, SwapType,
)
from utils import redemption_record_id, sanitize_string, validate_status_transition
import logging
from typing import List, Optional

logger = logging.getLogger(__name__)


class ExchangeWorkflow:
    """Validates and executes swap and points-redemption transitions"""

    def __init__(self, store: LedgerStore):
        self.store = store

    # Swap requests

    def request_swap(self, item_id: str, requester_id: str, requester_item_id: Optional[str] = None,
                     message: Optional[str] = None) -> SwapRequest:
        """Create a pending swap request. The target item stays available."""

        def _request(txn: LedgerTransaction) -> SwapRequest:
            item = self._require_item(txn, item_id)
            if item.uploader_id == requester_id:
                raise SelfTransactionError(item_id, requester_id)
            self._require_available(item, ItemStatus.SWAPPED)

            if requester_item_id:
                self._require_offerable(txn, requester_item_id, item_id, requester_id)

            for existing in txn.list_pending_requests_for_item(item_id):
                if existing.item_id == item_id and existing.requester_id == requester_id:
                    raise DuplicateRequestError(item_id, existing.id)

            request = SwapRequest(
                id=txn.new_id(COLLECTION_SWAPS),
                item_id=item_id,
                requester_id=requester_id,
                uploader_id=item.uploader_id,
                requester_item_id=requester_item_id or None,
                type=SwapType.SWAP,
                status=SwapStatus.PENDING,
                message=sanitize_string(message, 1000) or None,
            )
            return txn.create_swap_request(request)

        request = self.store.run_transaction(_request)
        logger.info(f"User {requester_id} requested swap {request.id} on item {item_id}")
        return request

    def accept_swap(self, request_id: str, acting_user_id: str) -> SwapResult:
        """Accept a pending swap: swap the item(s), complete the request, decline competing requests.

        A request left accepted by an interrupted earlier call is resumed.
        """

        def _mark_accepted(txn: LedgerTransaction) -> SwapRequest:
            request = self._require_request(txn, request_id)
            if acting_user_id != request.uploader_id:
                raise NotAuthorizedError("Only the item owner can accept this swap request", acting_user_id)
            if request.type != SwapType.SWAP or request.status not in (SwapStatus.PENDING, SwapStatus.ACCEPTED):
                raise InvalidRequestStateError(request_id, request.status.value, "accept")
            if request.status == SwapStatus.ACCEPTED:
                return request

            for item_id in self._request_item_ids(request):
                self._require_available(self._require_item(txn, item_id), ItemStatus.SWAPPED)

            txn.update_swap_request_status(request_id, SwapStatus.ACCEPTED, expected_status=SwapStatus.PENDING)
            return request

        def _complete(txn: LedgerTransaction) -> SwapResult:
            request = self._require_request(txn, request_id)
            if request.status != SwapStatus.ACCEPTED:
                raise InvalidRequestStateError(request_id, request.status.value, "complete")
            item_ids = self._request_item_ids(request)
            items = [self._require_item(txn, item_id) for item_id in item_ids]
            for item in items:
                self._require_available(item, ItemStatus.SWAPPED)

            competing = {}
            for item_id in item_ids:
                for other in txn.list_pending_requests_for_item(item_id):
                    if other.id != request_id:
                        competing[other.id] = other

            for item in items:
                txn.set_item_status(item.id, ItemStatus.SWAPPED, expected_status=ItemStatus.AVAILABLE)
            txn.update_swap_request_status(request_id, SwapStatus.COMPLETED, expected_status=SwapStatus.ACCEPTED)
            for other_id in competing:
                txn.update_swap_request_status(other_id, SwapStatus.DECLINED, expected_status=SwapStatus.PENDING)

            return SwapResult(
                request=request.model_copy(update={'status': SwapStatus.COMPLETED}),
                items=[item.model_copy(update={'status': ItemStatus.SWAPPED}) for item in items],
                declined_request_ids=sorted(competing),
            )

        request = self.store.run_transaction(_mark_accepted)
        logger.info(f"User {acting_user_id} accepted swap request {request_id}")

        try:
            result = self.store.run_transaction(_complete)
        except InvalidRequestStateError:
            # A concurrent accept already finished or rolled back this request
            raise
        except (ItemUnavailableError, ItemNotFoundError):
            # Another exchange took one of the items after acceptance; the request is moot.
            self._compensate(request, SwapStatus.DECLINED)
            logger.warning(f"Swap request {request_id} lost its item after acceptance and was declined")
            raise
        except Exception as e:
            self._compensate(request, SwapStatus.PENDING, cause=e)
            logger.error(f"Swap request {request_id} rolled back to pending after failed item update: {e}")
            raise PartialFailureError(
                "The swap could not be completed and was rolled back. Please try again",
                request_id=request_id,
                cause=e,
            ) from e

        logger.info(
            f"Swap request {request_id} completed: items {[item.id for item in result.items]} swapped, "
            f"{len(result.declined_request_ids)} competing request(s) declined"
        )
        return result

    def decline_swap(self, request_id: str, acting_user_id: str) -> SwapRequest:
        """Decline a pending swap request (item owner only)"""

        def _decline(txn: LedgerTransaction) -> SwapRequest:
            request = self._require_request(txn, request_id)
            if acting_user_id != request.uploader_id:
                raise NotAuthorizedError("Only the item owner can decline this swap request", acting_user_id)
            if request.status != SwapStatus.PENDING:
                raise InvalidRequestStateError(request_id, request.status.value, "decline")
            txn.update_swap_request_status(request_id, SwapStatus.DECLINED, expected_status=SwapStatus.PENDING)
            return request.model_copy(update={'status': SwapStatus.DECLINED})

        request = self.store.run_transaction(_decline)
        logger.info(f"User {acting_user_id} declined swap request {request_id}")
        return request

    # Points redemption

    def redeem_with_points(self, item_id: str, requester_id: str,
                           idempotency_key: Optional[str] = None) -> RedemptionResult:
        """Debit the requester and mark the item redeemed in one transaction.

        With an idempotency key the completed record is stored under a
        deterministic ID, so replaying the call returns the first outcome
        instead of debiting twice. The uploader is not credited.
        """
        record_id = None
        if idempotency_key:
            try:
                record_id = redemption_record_id(idempotency_key)
            except ValueError as e:
                raise ValidationError(str(e), "idempotencyKey", idempotency_key) from e

        def _redeem(txn: LedgerTransaction) -> RedemptionResult:
            if record_id:
                existing = txn.get_swap_request(record_id)
                if existing is not None:
                    return self._replay(txn, existing, item_id, requester_id)

            item = self._require_item(txn, item_id)
            if item.uploader_id == requester_id:
                raise SelfTransactionError(item_id, requester_id)
            self._require_available(item, ItemStatus.REDEEMED)

            balance = txn.get_user_points(requester_id)
            if balance < item.point_value:
                raise InsufficientPointsError(requester_id, balance, item.point_value)

            competing = txn.list_pending_requests_for_item(item_id)

            remaining = txn.adjust_user_points(requester_id, -item.point_value)
            txn.set_item_status(item_id, ItemStatus.REDEEMED, expected_status=ItemStatus.AVAILABLE)
            record = txn.create_swap_request(SwapRequest(
                id=record_id or txn.new_id(COLLECTION_SWAPS),
                item_id=item_id,
                requester_id=requester_id,
                uploader_id=item.uploader_id,
                type=SwapType.POINTS,
                status=SwapStatus.COMPLETED,
            ))
            for other in competing:
                txn.update_swap_request_status(other.id, SwapStatus.DECLINED, expected_status=SwapStatus.PENDING)

            return RedemptionResult(
                request=record,
                item=item.model_copy(update={'status': ItemStatus.REDEEMED}),
                remaining_points=remaining,
            )

        result = self.store.run_transaction(_redeem)
        if result.replayed:
            logger.info(f"Replayed redemption {result.request.id} for user {requester_id}")
        else:
            logger.info(
                f"User {requester_id} redeemed item {item_id} for {result.item.point_value} points "
                f"({result.remaining_points} remaining)"
            )
        return result

    # Helpers

    @staticmethod
    def _replay(txn: LedgerTransaction, existing: SwapRequest, item_id: str, requester_id: str) -> RedemptionResult:
        if existing.type != SwapType.POINTS or existing.item_id != item_id or existing.requester_id != requester_id:
            raise ValidationError("Idempotency key was already used for a different request", "idempotencyKey")
        item = txn.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return RedemptionResult(
            request=existing,
            item=item,
            remaining_points=txn.get_user_points(requester_id),
            replayed=True,
        )

    @staticmethod
    def _require_item(txn: LedgerTransaction, item_id: str) -> ClothingItem:
        item = txn.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return item

    @staticmethod
    def _require_request(txn: LedgerTransaction, request_id: str) -> SwapRequest:
        request = txn.get_swap_request(request_id)
        if request is None:
            raise SwapRequestNotFoundError(request_id)
        return request

    @staticmethod
    def _require_available(item: ClothingItem, target_status: ItemStatus):
        if not validate_status_transition(item.status, target_status):
            raise ItemUnavailableError(item.id, item.status.value)

    @staticmethod
    def _require_offerable(txn: LedgerTransaction, offered_id: str, target_id: str, requester_id: str):
        if offered_id == target_id:
            raise ValidationError("An item cannot be offered in exchange for itself", "requesterItemId", offered_id)
        offered = txn.get_item(offered_id)
        if offered is None:
            raise ItemNotFoundError(offered_id)
        if offered.uploader_id != requester_id:
            raise ValidationError("You can only offer items you listed", "requesterItemId", offered_id)
        ExchangeWorkflow._require_available(offered, ItemStatus.SWAPPED)

    @staticmethod
    def _request_item_ids(request: SwapRequest) -> List[str]:
        item_ids = [request.item_id]
        if request.requester_item_id:
            item_ids.append(request.requester_item_id)
        return item_ids

    def _compensate(self, request: SwapRequest, new_status: SwapStatus, cause: Exception = None):
        """Move an accepted request back out of ``accepted``; escalate if that fails"""
        try:
            self.store.run_transaction(
                lambda txn: txn.update_swap_request_status(request.id, new_status, expected_status=SwapStatus.ACCEPTED)
            )
        except Exception as rollback_error:
            item_ids = self._request_item_ids(request)
            logger.critical(
                f"MANUAL RECONCILIATION REQUIRED: swap request {request.id} is stuck in 'accepted' "
                f"(items {item_ids}); rollback to '{new_status.value}' failed: {rollback_error}"
            )
            raise ReconciliationRequiredError(
                "The swap failed and could not be rolled back; it has been flagged for manual review",
                request_id=request.id,
                item_ids=item_ids,
                cause=cause,
                rollback_error=rollback_error,
            ) from rollback_error

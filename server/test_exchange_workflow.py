import pytest
import threading
from unittest.mock import patch

from database import InMemoryLedgerStore, InMemoryTransaction
from error_handling import (
    DuplicateRequestError, InsufficientPointsError, InvalidRequestStateError,
    ItemNotFoundError, ItemUnavailableError, NotAuthorizedError, PartialFailureError,
    ReconciliationRequiredError, SelfTransactionError, SwapRequestNotFoundError,
    ValidationError,
)
from models import (
    ClothingItem, ItemCategory, ItemCondition, ItemStatus, SwapStatus, SwapType, User,
)
from services.exchange_workflow import ExchangeWorkflow


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def workflow(store):
    return ExchangeWorkflow(store)


def add_user(store, uid, points=100):
    return store.run_transaction(lambda txn: txn.create_user(User(uid=uid, name=uid.title(), points=points)))


def add_item(store, item_id, uploader_id, point_value=50, status=ItemStatus.AVAILABLE):
    item = ClothingItem(
        id=item_id,
        title=f"Item {item_id}",
        images=["https://example.com/image.jpg"],
        category=ItemCategory.UNISEX,
        size="M",
        condition=ItemCondition.GOOD,
        status=status,
        uploader_id=uploader_id,
        point_value=point_value,
    )
    return store.run_transaction(lambda txn: txn.create_item(item))


def points_of(store, uid):
    return store.reader().get_user(uid).points


def item_status(store, item_id):
    return store.reader().get_item(item_id).status


def request_status(store, request_id):
    return store.reader().get_swap_request(request_id).status


class TestRedeemWithPoints:
    """Points redemption"""

    def test_redeem_debits_and_marks_item_redeemed(self, store, workflow):
        """User with 100 points redeems a 50 point item"""
        add_user(store, "alice", points=100)
        add_user(store, "carol", points=0)
        add_item(store, "x", "carol", point_value=50)

        result = workflow.redeem_with_points("x", "alice")

        assert result.remaining_points == 50
        assert result.replayed is False
        assert points_of(store, "alice") == 50
        assert item_status(store, "x") == ItemStatus.REDEEMED

        records = store.reader().list_swap_requests([('type', '==', SwapType.POINTS.value)])
        assert len(records) == 1
        assert records[0].status == SwapStatus.COMPLETED
        assert records[0].requester_id == "alice"
        assert records[0].uploader_id == "carol"
        assert records[0].id == result.request.id

    def test_uploader_is_not_credited(self, store, workflow):
        """Redemption only debits the requester"""
        add_user(store, "alice", points=100)
        add_user(store, "carol", points=20)
        add_item(store, "x", "carol", point_value=50)

        workflow.redeem_with_points("x", "alice")

        assert points_of(store, "carol") == 20

    def test_insufficient_points_leaves_state_unchanged(self, store, workflow):
        """Balance below the point value is rejected without side effects"""
        add_user(store, "alice", points=30)
        add_user(store, "carol")
        add_item(store, "x", "carol", point_value=50)

        with pytest.raises(InsufficientPointsError) as exc_info:
            workflow.redeem_with_points("x", "alice")

        assert exc_info.value.shortfall == 20
        assert points_of(store, "alice") == 30
        assert item_status(store, "x") == ItemStatus.AVAILABLE
        assert store.reader().list_swap_requests() == []

    def test_exact_balance_is_enough(self, store, workflow):
        add_user(store, "alice", points=50)
        add_user(store, "carol")
        add_item(store, "x", "carol", point_value=50)

        result = workflow.redeem_with_points("x", "alice")

        assert result.remaining_points == 0

    def test_self_redemption_rejected(self, store, workflow):
        """Owners cannot redeem their own items"""
        add_user(store, "carol", points=500)
        add_item(store, "x", "carol")

        with pytest.raises(SelfTransactionError):
            workflow.redeem_with_points("x", "carol")
        assert points_of(store, "carol") == 500

    def test_self_redemption_rejected_even_when_unavailable(self, store, workflow):
        add_user(store, "carol", points=500)
        add_item(store, "x", "carol", status=ItemStatus.SWAPPED)

        with pytest.raises(SelfTransactionError):
            workflow.redeem_with_points("x", "carol")

    def test_unavailable_item_rejected(self, store, workflow):
        add_user(store, "alice", points=500)
        add_user(store, "carol")
        add_item(store, "x", "carol", status=ItemStatus.SWAPPED)

        with pytest.raises(ItemUnavailableError):
            workflow.redeem_with_points("x", "alice")
        assert points_of(store, "alice") == 500

    def test_missing_item(self, store, workflow):
        add_user(store, "alice")
        with pytest.raises(ItemNotFoundError):
            workflow.redeem_with_points("missing", "alice")

    def test_second_redemption_fails(self, store, workflow):
        """Redeemed is terminal"""
        add_user(store, "alice", points=100)
        add_user(store, "bob", points=100)
        add_user(store, "carol")
        add_item(store, "x", "carol", point_value=50)

        workflow.redeem_with_points("x", "alice")
        with pytest.raises(ItemUnavailableError):
            workflow.redeem_with_points("x", "bob")

        assert points_of(store, "bob") == 100
        assert item_status(store, "x") == ItemStatus.REDEEMED

    def test_redemption_declines_pending_swap_requests(self, store, workflow):
        """Pending swaps on the redeemed item, as target or as offer, are declined"""
        add_user(store, "alice", points=100)
        add_user(store, "bob")
        add_user(store, "carol")
        add_user(store, "dave")
        add_item(store, "x", "carol", point_value=50)
        add_item(store, "d1", "dave")

        targeting = workflow.request_swap("x", "bob")
        offering = workflow.request_swap("d1", "carol", requester_item_id="x")

        workflow.redeem_with_points("x", "alice")

        assert request_status(store, targeting.id) == SwapStatus.DECLINED
        assert request_status(store, offering.id) == SwapStatus.DECLINED

    def test_idempotent_replay_does_not_debit_twice(self, store, workflow):
        add_user(store, "alice", points=100)
        add_user(store, "carol")
        add_item(store, "x", "carol", point_value=50)

        first = workflow.redeem_with_points("x", "alice", idempotency_key="checkout-0001")
        second = workflow.redeem_with_points("x", "alice", idempotency_key="checkout-0001")

        assert second.replayed is True
        assert second.request.id == first.request.id
        assert second.remaining_points == 50
        assert points_of(store, "alice") == 50
        assert len(store.reader().list_swap_requests()) == 1

    def test_idempotency_key_reused_for_other_item(self, store, workflow):
        add_user(store, "alice", points=200)
        add_user(store, "carol")
        add_item(store, "x", "carol", point_value=50)
        add_item(store, "y", "carol", point_value=50)

        workflow.redeem_with_points("x", "alice", idempotency_key="checkout-0001")
        with pytest.raises(ValidationError):
            workflow.redeem_with_points("y", "alice", idempotency_key="checkout-0001")

        assert points_of(store, "alice") == 150
        assert item_status(store, "y") == ItemStatus.AVAILABLE

    def test_malformed_idempotency_key(self, store, workflow):
        add_user(store, "alice")
        add_user(store, "carol")
        add_item(store, "x", "carol")

        with pytest.raises(ValidationError):
            workflow.redeem_with_points("x", "alice", idempotency_key="bad key!")

    def test_idempotency_key_with_trailing_newline(self, store, workflow):
        add_user(store, "alice")
        add_user(store, "carol")
        add_item(store, "x", "carol")

        with pytest.raises(ValidationError):
            workflow.redeem_with_points("x", "alice", idempotency_key="checkout-0001\n")
        assert points_of(store, "alice") == 100

    def test_failure_mid_transaction_rolls_back_debit(self, store, workflow):
        """A failed status write leaves the balance untouched"""
        add_user(store, "alice", points=100)
        add_user(store, "carol")
        add_item(store, "x", "carol", point_value=50)

        with patch.object(InMemoryTransaction, 'set_item_status', side_effect=RuntimeError("write failed")):
            with pytest.raises(RuntimeError):
                workflow.redeem_with_points("x", "alice")

        assert points_of(store, "alice") == 100
        assert item_status(store, "x") == ItemStatus.AVAILABLE
        assert store.reader().list_swap_requests() == []


class TestConcurrentRedemption:
    """Concurrent redemptions are serialized by the store"""

    def run_concurrently(self, calls):
        barrier = threading.Barrier(len(calls))
        outcomes = [None] * len(calls)

        def worker(index, call):
            barrier.wait()
            try:
                outcomes[index] = call()
            except Exception as e:
                outcomes[index] = e

        threads = [threading.Thread(target=worker, args=(i, call)) for i, call in enumerate(calls)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        return outcomes

    def test_exactly_one_redemption_succeeds(self, store, workflow):
        add_user(store, "carol")
        requesters = [f"user{i}" for i in range(8)]
        for uid in requesters:
            add_user(store, uid, points=100)
        add_item(store, "x", "carol", point_value=50)

        outcomes = self.run_concurrently([
            lambda uid=uid: workflow.redeem_with_points("x", uid) for uid in requesters
        ])

        successes = [o for o in outcomes if not isinstance(o, Exception)]
        failures = [o for o in outcomes if isinstance(o, Exception)]
        assert len(successes) == 1
        assert len(failures) == len(requesters) - 1
        assert all(isinstance(f, ItemUnavailableError) for f in failures)

        winner = successes[0].request.requester_id
        for uid in requesters:
            assert points_of(store, uid) == (50 if uid == winner else 100)
        assert item_status(store, "x") == ItemStatus.REDEEMED
        assert len(store.reader().list_swap_requests()) == 1

    def test_balance_never_negative_across_items(self, store, workflow):
        """One balance, two items it can only afford one of"""
        add_user(store, "alice", points=100)
        add_user(store, "carol")
        add_item(store, "x", "carol", point_value=80)
        add_item(store, "y", "carol", point_value=80)

        outcomes = self.run_concurrently([
            lambda: workflow.redeem_with_points("x", "alice"),
            lambda: workflow.redeem_with_points("y", "alice"),
        ])

        successes = [o for o in outcomes if not isinstance(o, Exception)]
        failures = [o for o in outcomes if isinstance(o, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], InsufficientPointsError)
        assert points_of(store, "alice") == 20


class TestRequestSwap:
    """Creating swap requests"""

    def test_creates_pending_request(self, store, workflow):
        add_user(store, "bob")
        add_user(store, "carol")
        add_item(store, "y", "carol")

        request = workflow.request_swap("y", "bob", message="Love this jacket")

        assert request.status == SwapStatus.PENDING
        assert request.type == SwapType.SWAP
        assert request.uploader_id == "carol"
        assert request.message == "Love this jacket"
        assert item_status(store, "y") == ItemStatus.AVAILABLE
        assert request_status(store, request.id) == SwapStatus.PENDING

    def test_self_swap_rejected(self, store, workflow):
        add_user(store, "carol")
        add_item(store, "y", "carol")

        with pytest.raises(SelfTransactionError):
            workflow.request_swap("y", "carol")

    def test_duplicate_pending_request_rejected(self, store, workflow):
        add_user(store, "bob")
        add_user(store, "carol")
        add_item(store, "y", "carol")

        first = workflow.request_swap("y", "bob")
        with pytest.raises(DuplicateRequestError) as exc_info:
            workflow.request_swap("y", "bob")

        assert exc_info.value.details['existing_request_id'] == first.id

    def test_new_request_allowed_after_decline(self, store, workflow):
        add_user(store, "bob")
        add_user(store, "carol")
        add_item(store, "y", "carol")

        first = workflow.request_swap("y", "bob")
        workflow.decline_swap(first.id, "carol")

        second = workflow.request_swap("y", "bob")
        assert second.id != first.id

    def test_unavailable_item_rejected(self, store, workflow):
        add_user(store, "bob")
        add_user(store, "carol")
        add_item(store, "y", "carol", status=ItemStatus.REDEEMED)

        with pytest.raises(ItemUnavailableError):
            workflow.request_swap("y", "bob")

    def test_missing_item(self, store, workflow):
        add_user(store, "bob")
        with pytest.raises(ItemNotFoundError):
            workflow.request_swap("missing", "bob")

    def test_offered_item_must_belong_to_requester(self, store, workflow):
        add_user(store, "bob")
        add_user(store, "carol")
        add_user(store, "dave")
        add_item(store, "y", "carol")
        add_item(store, "d1", "dave")

        with pytest.raises(ValidationError):
            workflow.request_swap("y", "bob", requester_item_id="d1")

    def test_offered_item_must_be_available(self, store, workflow):
        add_user(store, "bob")
        add_user(store, "carol")
        add_item(store, "y", "carol")
        add_item(store, "b1", "bob", status=ItemStatus.SWAPPED)

        with pytest.raises(ItemUnavailableError):
            workflow.request_swap("y", "bob", requester_item_id="b1")

    def test_item_cannot_be_offered_for_itself(self, store, workflow):
        add_user(store, "bob")
        add_user(store, "carol")
        add_item(store, "y", "carol")

        with pytest.raises(ValidationError):
            workflow.request_swap("y", "bob", requester_item_id="y")


class TestAcceptSwap:
    """Accepting swap requests"""

    def test_accept_swaps_item_and_declines_competitors(self, store, workflow):
        """B and E request Y from C; C accepts B"""
        add_user(store, "bob")
        add_user(store, "carol")
        add_user(store, "erin")
        add_item(store, "y", "carol")

        accepted = workflow.request_swap("y", "bob")
        competing = workflow.request_swap("y", "erin")

        result = workflow.accept_swap(accepted.id, "carol")

        assert result.request.status == SwapStatus.COMPLETED
        assert result.declined_request_ids == [competing.id]
        assert item_status(store, "y") == ItemStatus.SWAPPED
        assert request_status(store, accepted.id) == SwapStatus.COMPLETED
        assert request_status(store, competing.id) == SwapStatus.DECLINED

    def test_accept_swaps_offered_item_too(self, store, workflow):
        add_user(store, "bob")
        add_user(store, "carol")
        add_user(store, "erin")
        add_item(store, "y", "carol")
        add_item(store, "b1", "bob")
        add_item(store, "e1", "erin")

        accepted = workflow.request_swap("y", "bob", requester_item_id="b1")
        # erin asked for bob's offered item
        elsewhere = workflow.request_swap("b1", "erin", requester_item_id="e1")

        result = workflow.accept_swap(accepted.id, "carol")

        assert sorted(item.id for item in result.items) == ["b1", "y"]
        assert item_status(store, "y") == ItemStatus.SWAPPED
        assert item_status(store, "b1") == ItemStatus.SWAPPED
        assert item_status(store, "e1") == ItemStatus.AVAILABLE
        assert request_status(store, elsewhere.id) == SwapStatus.DECLINED

    def test_retry_resumes_interrupted_accept(self, store, workflow):
        """A request left accepted with its item still available is finished by a retry"""
        add_user(store, "bob")
        add_user(store, "carol")
        add_user(store, "erin")
        add_item(store, "y", "carol")
        request = workflow.request_swap("y", "bob")
        competing = workflow.request_swap("y", "erin")
        store.run_transaction(
            lambda txn: txn.update_swap_request_status(request.id, SwapStatus.ACCEPTED, expected_status=SwapStatus.PENDING)
        )

        result = workflow.accept_swap(request.id, "carol")

        assert result.request.status == SwapStatus.COMPLETED
        assert result.declined_request_ids == [competing.id]
        assert item_status(store, "y") == ItemStatus.SWAPPED
        assert request_status(store, request.id) == SwapStatus.COMPLETED

    def test_resume_still_requires_uploader(self, store, workflow):
        add_user(store, "bob")
        add_user(store, "carol")
        add_item(store, "y", "carol")
        request = workflow.request_swap("y", "bob")
        store.run_transaction(
            lambda txn: txn.update_swap_request_status(request.id, SwapStatus.ACCEPTED)
        )

        with pytest.raises(NotAuthorizedError):
            workflow.accept_swap(request.id, "bob")
        assert request_status(store, request.id) == SwapStatus.ACCEPTED

    def test_accept_does_not_move_points(self, store, workflow):
        add_user(store, "bob", points=100)
        add_user(store, "carol", points=100)
        add_item(store, "y", "carol")

        request = workflow.request_swap("y", "bob")
        workflow.accept_swap(request.id, "carol")

        assert points_of(store, "bob") == 100
        assert points_of(store, "carol") == 100

    def test_only_uploader_can_accept(self, store, workflow):
        add_user(store, "bob")
        add_user(store, "carol")
        add_item(store, "y", "carol")

        request = workflow.request_swap("y", "bob")
        with pytest.raises(NotAuthorizedError):
            workflow.accept_swap(request.id, "bob")

        assert request_status(store, request.id) == SwapStatus.PENDING

    def test_cannot_accept_twice(self, store, workflow):
        add_user(store, "bob")
        add_user(store, "carol")
        add_item(store, "y", "carol")

        request = workflow.request_swap("y", "bob")
        workflow.accept_swap(request.id, "carol")

        with pytest.raises(InvalidRequestStateError):
            workflow.accept_swap(request.id, "carol")

    def test_cannot_accept_declined_request(self, store, workflow):
        add_user(store, "bob")
        add_user(store, "carol")
        add_item(store, "y", "carol")

        request = workflow.request_swap("y", "bob")
        workflow.decline_swap(request.id, "carol")

        with pytest.raises(InvalidRequestStateError):
            workflow.accept_swap(request.id, "carol")

    def test_missing_request(self, store, workflow):
        with pytest.raises(SwapRequestNotFoundError):
            workflow.accept_swap("missing", "carol")

    def test_item_redeemed_before_accept(self, store, workflow):
        add_user(store, "alice", points=100)
        add_user(store, "bob")
        add_user(store, "carol")
        add_item(store, "y", "carol", point_value=50)

        request = workflow.request_swap("y", "bob")
        workflow.redeem_with_points("y", "alice")

        with pytest.raises(InvalidRequestStateError):
            workflow.accept_swap(request.id, "carol")
        assert item_status(store, "y") == ItemStatus.REDEEMED

    def test_item_taken_between_steps_declines_request(self, store, workflow):
        """The item is redeemed after the request is marked accepted"""
        add_user(store, "bob")
        add_user(store, "carol")
        add_item(store, "y", "carol")
        request = workflow.request_swap("y", "bob")

        real_run = store.run_transaction
        calls = []

        def run_then_take_item(operation):
            result = real_run(operation)
            if not calls:
                calls.append(operation)
                real_run(lambda txn: txn.set_item_status("y", ItemStatus.REDEEMED))
            return result

        with patch.object(store, 'run_transaction', side_effect=run_then_take_item):
            with pytest.raises(ItemUnavailableError):
                workflow.accept_swap(request.id, "carol")

        assert request_status(store, request.id) == SwapStatus.DECLINED
        assert item_status(store, "y") == ItemStatus.REDEEMED

    def test_failed_completion_rolls_request_back_to_pending(self, store, workflow):
        add_user(store, "bob")
        add_user(store, "carol")
        add_item(store, "y", "carol")
        request = workflow.request_swap("y", "bob")

        with patch.object(InMemoryTransaction, 'set_item_status', side_effect=RuntimeError("write failed")):
            with pytest.raises(PartialFailureError) as exc_info:
                workflow.accept_swap(request.id, "carol")

        assert not isinstance(exc_info.value, ReconciliationRequiredError)
        assert request_status(store, request.id) == SwapStatus.PENDING
        assert item_status(store, "y") == ItemStatus.AVAILABLE

        # The request can be accepted again once the store recovers
        result = workflow.accept_swap(request.id, "carol")
        assert result.request.status == SwapStatus.COMPLETED

    def test_failed_rollback_requires_reconciliation(self, store, workflow, caplog):
        add_user(store, "bob")
        add_user(store, "carol")
        add_item(store, "y", "carol")
        request = workflow.request_swap("y", "bob")

        real_update = InMemoryTransaction.update_swap_request_status

        def fail_on_rollback(self, request_id, new_status, expected_status=None):
            if new_status == SwapStatus.PENDING:
                raise RuntimeError("store offline")
            return real_update(self, request_id, new_status, expected_status)

        with patch.object(InMemoryTransaction, 'set_item_status', side_effect=RuntimeError("write failed")), \
                patch.object(InMemoryTransaction, 'update_swap_request_status', fail_on_rollback):
            with pytest.raises(ReconciliationRequiredError) as exc_info:
                workflow.accept_swap(request.id, "carol")

        assert exc_info.value.details['request_id'] == request.id
        assert request_status(store, request.id) == SwapStatus.ACCEPTED
        assert item_status(store, "y") == ItemStatus.AVAILABLE
        assert any(record.levelname == "CRITICAL" for record in caplog.records)


class TestDeclineSwap:
    """Declining swap requests"""

    def test_decline_pending_request(self, store, workflow):
        add_user(store, "bob")
        add_user(store, "carol")
        add_item(store, "y", "carol")

        request = workflow.request_swap("y", "bob")
        declined = workflow.decline_swap(request.id, "carol")

        assert declined.status == SwapStatus.DECLINED
        assert request_status(store, request.id) == SwapStatus.DECLINED
        assert item_status(store, "y") == ItemStatus.AVAILABLE

    def test_only_uploader_can_decline(self, store, workflow):
        add_user(store, "bob")
        add_user(store, "carol")
        add_item(store, "y", "carol")

        request = workflow.request_swap("y", "bob")
        with pytest.raises(NotAuthorizedError):
            workflow.decline_swap(request.id, "bob")

    def test_cannot_decline_completed_request(self, store, workflow):
        add_user(store, "bob")
        add_user(store, "carol")
        add_item(store, "y", "carol")

        request = workflow.request_swap("y", "bob")
        workflow.accept_swap(request.id, "carol")

        with pytest.raises(InvalidRequestStateError):
            workflow.decline_swap(request.id, "carol")

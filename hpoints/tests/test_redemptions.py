"""
Unit Tests for Redemptions

Tests cover:
1. Redeeming products against the HPoints balance
2. All-or-nothing behaviour on failure
3. Optimistic stock updates and retries
4. Fulfilment and cancellation with refunds
"""

import threading
from datetime import timedelta
from uuid import uuid4

import pytest

from hpoints.errors import (
    ConflictError,
    InsufficientBalanceError,
    InvalidTransitionError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from hpoints.models import LedgerSource, ProductCreate, ProductStock, ProductUpdate, RedemptionStatus
from hpoints.storage import DEMO_ADMIN_ID, DEMO_MEMBER_2_ID, DEMO_MEMBER_ID


@pytest.fixture
def water_bottle(products):
    return products.create(ProductCreate(
        name="Water bottle",
        category="gear",
        points_cost=50,
        stock=ProductStock(quantity=5),
    ))


@pytest.fixture
def funded_member(ledger):
    ledger.credit(DEMO_MEMBER_ID, 200, LedgerSource.WORKOUT, "Workout approved")
    return DEMO_MEMBER_ID


class TestRedeem:
    """Tests for the happy path."""

    def test_redeem_debits_and_decrements_stock(self, redemptions, products, ledger, funded_member, water_bottle):
        result = redemptions.redeem(funded_member, water_bottle.id, quantity=2)

        assert result.redemption.status == RedemptionStatus.PENDING
        assert result.redemption.points_spent == 100
        assert result.ledger_entry.points == -100
        assert result.ledger_entry.source == LedgerSource.REDEMPTION
        assert result.ledger_entry.reference_id == result.redemption.id
        assert result.balance == 100
        assert len(result.redemption.code) == 8
        assert products.get(water_bottle.id).stock.quantity == 3
        assert ledger.get_balance(funded_member).total_redeemed == 100

    def test_points_spent_is_a_snapshot(self, redemptions, products, funded_member, water_bottle):
        result = redemptions.redeem(funded_member, water_bottle.id)
        products.update(water_bottle.id, ProductUpdate(points_cost=500))

        assert redemptions.get(result.redemption.id).points_spent == 50

    def test_listing_is_scoped_to_user(self, redemptions, ledger, funded_member, water_bottle):
        ledger.credit(DEMO_MEMBER_2_ID, 100, LedgerSource.WORKOUT, "Workout approved")
        redemptions.redeem(funded_member, water_bottle.id)
        redemptions.redeem(DEMO_MEMBER_2_ID, water_bottle.id)

        assert len(redemptions.list_for_user(funded_member)) == 1
        assert len(redemptions.list_all()) == 2


class TestRedeemFailures:
    """Failed redemptions leave no trace."""

    def test_insufficient_balance(self, redemptions, products, ledger, water_bottle):
        ledger.credit(DEMO_MEMBER_ID, 49, LedgerSource.WORKOUT, "Workout approved")

        with pytest.raises(InsufficientBalanceError):
            redemptions.redeem(DEMO_MEMBER_ID, water_bottle.id)

        assert products.get(water_bottle.id).stock.quantity == 5
        assert ledger.get_balance(DEMO_MEMBER_ID).balance == 49
        assert redemptions.list_all() == []

    def test_not_enough_stock(self, redemptions, products, funded_member):
        product = products.create(ProductCreate(name="Race bib", points_cost=10, stock=ProductStock(quantity=1)))

        with pytest.raises(UnavailableError):
            redemptions.redeem(funded_member, product.id, quantity=2)

    def test_inactive_product(self, redemptions, products, funded_member, water_bottle):
        products.delete(water_bottle.id)

        with pytest.raises(UnavailableError):
            redemptions.redeem(funded_member, water_bottle.id)

    def test_unavailable_flag(self, redemptions, products, funded_member):
        product = products.create(ProductCreate(
            name="Cap", points_cost=30, stock=ProductStock(quantity=10, available=False),
        ))

        with pytest.raises(UnavailableError):
            redemptions.redeem(funded_member, product.id)

    def test_missing_product(self, redemptions, funded_member):
        with pytest.raises(NotFoundError):
            redemptions.redeem(funded_member, uuid4())

    def test_invalid_quantity(self, redemptions, funded_member, water_bottle):
        with pytest.raises(ValidationError):
            redemptions.redeem(funded_member, water_bottle.id, quantity=0)

    def test_abort_after_writes_rolls_back(self, redemptions, products, ledger, storage, funded_member,
                                           water_bottle, monkeypatch):
        def broken_insert(redemption):
            raise RuntimeError("disk full")

        monkeypatch.setattr(storage, "insert_redemption", broken_insert)

        with pytest.raises(RuntimeError):
            redemptions.redeem(funded_member, water_bottle.id)

        assert products.get(water_bottle.id).stock.quantity == 5
        assert ledger.get_balance(funded_member).balance == 200
        assert ledger.get_balance(funded_member).total_redeemed == 0


class TestStockConflicts:
    """Concurrent stock writes force a retry."""

    def test_conflict_is_retried(self, redemptions, products, storage, funded_member, water_bottle, monkeypatch):
        original = storage.update_product
        calls = []

        def racing_update(product_id, changes, expected_version=None):
            calls.append(expected_version)
            if expected_version is not None and len(calls) == 1:
                # another writer lands first
                original(product_id, {"description": "restocked"})
            return original(product_id, changes, expected_version=expected_version)

        monkeypatch.setattr(storage, "update_product", racing_update)

        result = redemptions.redeem(funded_member, water_bottle.id)

        assert result.redemption.status == RedemptionStatus.PENDING
        assert len(calls) == 2
        assert products.get(water_bottle.id).stock.quantity == 4

    def test_persistent_conflict_gives_up(self, redemptions, products, ledger, storage, funded_member,
                                          water_bottle, monkeypatch):
        original = storage.update_product

        def always_racing(product_id, changes, expected_version=None):
            if expected_version is not None:
                original(product_id, {"description": "restocked"})
            return original(product_id, changes, expected_version=expected_version)

        monkeypatch.setattr(storage, "update_product", always_racing)

        with pytest.raises(ConflictError):
            redemptions.redeem(funded_member, water_bottle.id)

        assert products.get(water_bottle.id).stock.quantity == 5
        assert ledger.get_balance(funded_member).balance == 200


class TestFulfilAndCancel:
    """Tests for the redemption lifecycle after creation."""

    def test_fulfill(self, redemptions, funded_member, water_bottle):
        created = redemptions.redeem(funded_member, water_bottle.id).redemption

        fulfilled = redemptions.fulfill(created.id, DEMO_ADMIN_ID)

        assert fulfilled.status == RedemptionStatus.FULFILLED
        assert fulfilled.fulfilled_by == DEMO_ADMIN_ID

    def test_cancel_refunds_and_restocks(self, redemptions, products, ledger, funded_member, water_bottle):
        created = redemptions.redeem(funded_member, water_bottle.id, quantity=2).redemption

        cancelled = redemptions.cancel(created.id, funded_member)

        summary = ledger.get_balance(funded_member)
        assert cancelled.status == RedemptionStatus.CANCELLED
        assert summary.balance == 200
        assert summary.total_redeemed == 0
        assert summary.total_earned == 200
        assert products.get(water_bottle.id).stock.quantity == 5

    def test_cancel_twice_is_refused(self, redemptions, ledger, funded_member, water_bottle):
        created = redemptions.redeem(funded_member, water_bottle.id).redemption
        redemptions.cancel(created.id, funded_member)

        with pytest.raises(InvalidTransitionError):
            redemptions.cancel(created.id, funded_member)

        assert ledger.get_balance(funded_member).balance == 200

    def test_cancel_after_fulfill_is_refused(self, redemptions, funded_member, water_bottle):
        created = redemptions.redeem(funded_member, water_bottle.id).redemption
        redemptions.fulfill(created.id, DEMO_ADMIN_ID)

        with pytest.raises(InvalidTransitionError):
            redemptions.cancel(created.id, funded_member)

    def test_member_cannot_cancel_someone_elses_redemption(self, redemptions, funded_member, water_bottle):
        created = redemptions.redeem(funded_member, water_bottle.id).redemption

        with pytest.raises(NotFoundError):
            redemptions.cancel(created.id, DEMO_MEMBER_2_ID)

    def test_admin_cancel_requires_reason(self, redemptions, funded_member, water_bottle):
        created = redemptions.redeem(funded_member, water_bottle.id).redemption

        with pytest.raises(ValidationError):
            redemptions.cancel(created.id, DEMO_ADMIN_ID, as_admin=True)

        cancelled = redemptions.cancel(created.id, DEMO_ADMIN_ID, "Out of stock at the store", as_admin=True)
        assert cancelled.cancel_reason == "Out of stock at the store"
        assert cancelled.cancelled_by == DEMO_ADMIN_ID

    def test_cancel_does_not_extend_expiry(self, redemptions, ledger, clock, water_bottle):
        """Points refunded by a cancellation still expire when they were earned to."""
        start = clock.now
        ledger.credit(DEMO_MEMBER_ID, 50, LedgerSource.WORKOUT, "Workout approved")
        clock.advance(days=179)
        created = redemptions.redeem(DEMO_MEMBER_ID, water_bottle.id).redemption

        redemptions.cancel(created.id, DEMO_MEMBER_ID)

        assert ledger.get_balance(DEMO_MEMBER_ID).balance == 50
        clock.now = start + timedelta(days=180)
        assert ledger.get_balance(DEMO_MEMBER_ID).balance == 0


class TestConcurrentRedemption:
    """Racing redemptions are re-validated inside the transaction."""

    def test_only_one_redemption_is_funded(self, redemptions, products, ledger):
        ledger.credit(DEMO_MEMBER_ID, 100, LedgerSource.WORKOUT, "Workout approved")
        product = products.create(ProductCreate(name="Jacket", points_cost=100, stock=ProductStock(quantity=5)))
        barrier = threading.Barrier(4)
        outcomes = []

        def redeem():
            barrier.wait()
            try:
                redemptions.redeem(DEMO_MEMBER_ID, product.id)
                outcomes.append("ok")
            except InsufficientBalanceError:
                outcomes.append("insufficient")

        threads = [threading.Thread(target=redeem) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("insufficient") == 3
        assert ledger.get_balance(DEMO_MEMBER_ID).balance == 0
        assert products.get(product.id).stock.quantity == 4
        assert len(redemptions.list_all()) == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

"""
Concurrency Tests

Two admins confirming the same purchase at once must credit the user exactly
once. Uses a file-backed SQLite database so each thread gets its own
connection.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from conftest import USER_ID, build_service
from wallet.models import CreatePurchaseRequest, UserUpsert
from wallet.service import AlreadyCompletedError, InsufficientCreditsError


@pytest.fixture
def file_service(settings, tmp_path):
    service = build_service(settings, database_url=f"sqlite:///{tmp_path / 'wallet.db'}")
    service.upsert_user(UserUpsert(id=USER_ID))
    return service


class TestConcurrentConfirm:
    """Tests for racing confirmations."""

    def test_two_confirms_credit_once(self, file_service):
        """Test that only one of two simultaneous confirms succeeds."""
        request = file_service.create_purchase_request(
            USER_ID, CreatePurchaseRequest(credits_requested=1000, usd_amount=Decimal("10.00"))
        )
        barrier = threading.Barrier(2)

        def confirm():
            barrier.wait()
            try:
                return file_service.confirm_payment(request.id)
            except AlreadyCompletedError as e:
                return e

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(lambda _: confirm(), range(2)))

        successes = [r for r in results if not isinstance(r, AlreadyCompletedError)]
        conflicts = [r for r in results if isinstance(r, AlreadyCompletedError)]
        assert len(successes) == 1
        assert len(conflicts) == 1

        assert file_service.get_balance(USER_ID).credits == 1000
        check = file_service.check_ledger(USER_ID)
        assert check.transaction_count == 1
        assert check.consistent

    def test_concurrent_redemptions_never_overdraw(self, file_service):
        """Test that racing redemptions cannot push the balance below zero."""
        request = file_service.create_purchase_request(
            USER_ID, CreatePurchaseRequest(credits_requested=500, usd_amount=Decimal("5.00"))
        )
        file_service.confirm_payment(request.id)
        barrier = threading.Barrier(4)

        def redeem():
            barrier.wait()
            try:
                file_service.redeem_credits(USER_ID, 200)
                return True
            except InsufficientCreditsError:
                return False

        with ThreadPoolExecutor(max_workers=4) as pool:
            outcomes = list(pool.map(lambda _: redeem(), range(4)))

        assert outcomes.count(True) == 2
        assert file_service.get_balance(USER_ID).credits == 100
        assert file_service.check_ledger(USER_ID).consistent

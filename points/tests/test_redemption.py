import pytest

from points.catalog import RewardCatalog
from points.earn import EarnService
from points.errors import (
    AccountNotFoundError,
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidRewardError,
    ValidationError,
)
from points.models import EntryKind, VoucherStatus
from points.recorder import LedgerRecorder
from points.redemption import RedemptionService
from points.vouchers import VoucherIssuer

RIDE_VOUCHER = "₹50 Ride Voucher"


def make_services(store):
    recorder = LedgerRecorder(store)
    issuer = VoucherIssuer(store)
    earn = EarnService(store, recorder)
    redeem = RedemptionService(RewardCatalog.default(), store, recorder, issuer)
    return earn, redeem


class TestRedeemFlow:
    """Tests for turning points into vouchers."""

    def test_redeem_success(self, store):
        """Test that a covered redemption debits the balance and issues a voucher."""
        earn, redeem = make_services(store)
        earn.earn("student-1", 200, "ride_completed")

        response = redeem.redeem("student-1", RIDE_VOUCHER, 200)

        assert response.new_balance == 0
        assert response.voucher.status == VoucherStatus.ACTIVE
        assert response.voucher.cost_paid == 200
        assert response.voucher.reward_id == RIDE_VOUCHER
        assert response.voucher.account_id == "student-1"
        assert response.entry.kind == EntryKind.REDEEM
        assert response.entry.delta == -200
        assert response.entry.voucher_id == response.voucher.id
        assert response.entry.reward_id == RIDE_VOUCHER
        assert store.get_account("student-1").balance == 0
        assert [v.id for v in store.list_vouchers("student-1")] == [response.voucher.id]

    def test_second_redeem_is_insufficient(self, store):
        """Test that an immediate second redemption fails without side effects."""
        earn, redeem = make_services(store)
        earn.earn("student-1", 200, "ride_completed")
        redeem.redeem("student-1", RIDE_VOUCHER, 200)

        with pytest.raises(InsufficientBalanceError):
            redeem.redeem("student-1", RIDE_VOUCHER, 200)

        assert store.get_account("student-1").balance == 0
        assert len(store.list_vouchers("student-1")) == 1
        assert len(store.list_entries("student-1")) == 2

    def test_partial_balance_is_insufficient(self, store):
        """Test that a balance short of the cost leaves everything untouched."""
        earn, redeem = make_services(store)
        earn.earn("student-1", 450, "ride_completed")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            redeem.redeem("student-1", "Amazon Gift Card", 500)

        assert exc_info.value.balance == 450
        assert exc_info.value.cost == 500
        assert store.get_account("student-1").balance == 450
        assert store.list_vouchers("student-1") == []

    def test_unknown_account(self, store):
        """Test that redeeming for an unknown account fails."""
        _, redeem = make_services(store)

        with pytest.raises(AccountNotFoundError):
            redeem.redeem("ghost", RIDE_VOUCHER, 200)


class TestRedeemTampering:
    """Tests for rejecting client-supplied reward claims."""

    def test_unknown_reward_rejected(self, store):
        """Test that a reward missing from the catalog is refused without side effects."""
        earn, redeem = make_services(store)
        earn.earn("student-1", 500, "ride_completed")

        with pytest.raises(InvalidRewardError):
            redeem.redeem("student-1", "Free Car", 1)

        assert store.get_account("student-1").balance == 500
        assert len(store.list_entries("student-1")) == 1

    @pytest.mark.parametrize("claimed", [1, 100, 199, 201, 1000])
    def test_cost_mismatch_rejected_regardless_of_balance(self, store, claimed):
        """Test that a wrong cost fails even when the balance could cover it."""
        earn, redeem = make_services(store)
        earn.earn("student-1", 1000, "referral_bonus")

        with pytest.raises(InvalidRewardError):
            redeem.redeem("student-1", RIDE_VOUCHER, claimed)

        assert store.get_account("student-1").balance == 1000
        assert store.list_vouchers("student-1") == []

    @pytest.mark.parametrize("claimed", [0, -200, "200", None, 200.0])
    def test_malformed_cost_rejected(self, store, claimed):
        """Test that malformed costs fail validation."""
        _, redeem = make_services(store)

        with pytest.raises(ValidationError, match="Invalid points cost"):
            redeem.redeem("student-1", RIDE_VOUCHER, claimed)

    @pytest.mark.parametrize("title", ["", "   ", None])
    def test_malformed_title_rejected(self, store, title):
        """Test that empty titles fail validation."""
        _, redeem = make_services(store)

        with pytest.raises(ValidationError, match="Invalid reward title"):
            redeem.redeem("student-1", title, 200)


class TestRedeemIdempotency:
    """Tests for client-supplied idempotency keys on redeem."""

    def test_retry_returns_same_voucher(self, store):
        """Test that a retried redemption does not debit twice."""
        earn, redeem = make_services(store)
        earn.earn("student-1", 600, "referral_bonus")

        first = redeem.redeem("student-1", RIDE_VOUCHER, 200, idempotency_key="tap-1")
        second = redeem.redeem("student-1", RIDE_VOUCHER, 200, idempotency_key="tap-1")

        assert second.replayed is True
        assert second.voucher.id == first.voucher.id
        assert second.new_balance == first.new_balance == 400
        assert store.get_account("student-1").balance == 400
        assert len(store.list_vouchers("student-1")) == 1

    def test_key_reused_for_other_reward(self, store):
        """Test that a key bound to one reward cannot redeem another."""
        earn, redeem = make_services(store)
        earn.earn("student-1", 600, "referral_bonus")
        redeem.redeem("student-1", RIDE_VOUCHER, 200, idempotency_key="tap-1")

        with pytest.raises(IdempotencyConflictError):
            redeem.redeem("student-1", "Canteen Coupon", 300, idempotency_key="tap-1")

        assert store.get_account("student-1").balance == 400

    def test_key_shared_with_earn_conflicts(self, store):
        """Test that an earn key cannot be replayed as a redemption."""
        earn, redeem = make_services(store)
        earn.earn("student-1", 600, "referral_bonus", idempotency_key="op-1")

        with pytest.raises(IdempotencyConflictError):
            redeem.redeem("student-1", RIDE_VOUCHER, 200, idempotency_key="op-1")

import pytest
from fastapi.testclient import TestClient

from points.actions import get_economy
from points.api import app

RIDE_VOUCHER = "₹50 Ride Voucher"


@pytest.fixture
def client(economy):
    app.dependency_overrides[get_economy] = lambda: economy
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestSystemRoutes:
    """Tests for health and catalog routes."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_rewards(self, client):
        response = client.get("/rewards")

        assert response.status_code == 200
        rewards = {r["reward_id"]: r["cost"] for r in response.json()}
        assert rewards[RIDE_VOUCHER] == 200


class TestPointsRoutes:
    """Tests for earning and redeeming over HTTP."""

    def test_earn_and_redeem(self, client):
        """Test the full earn then redeem flow."""
        earned = client.post("/accounts/student-1/earn", json={"amount": 200, "reason": "ride_completed"})
        assert earned.status_code == 200
        assert earned.json() == {"success": True, "newPoints": 200}

        redeemed = client.post(
            "/accounts/student-1/redeem", json={"reward_title": RIDE_VOUCHER, "points_cost": 200}
        )
        assert redeemed.status_code == 200
        body = redeemed.json()
        assert body["success"] is True
        assert body["newPoints"] == 0
        assert body["voucherId"]

        again = client.post(
            "/accounts/student-1/redeem", json={"reward_title": RIDE_VOUCHER, "points_cost": 200}
        )
        assert again.status_code == 400
        assert again.json() == {"success": False, "error": "Insufficient points"}

    def test_tampered_cost(self, client):
        """Test that a tampered cost is refused."""
        client.post("/accounts/student-1/earn", json={"amount": 500, "reason": "referral_bonus"})

        response = client.post("/accounts/student-1/redeem", json={"reward_title": RIDE_VOUCHER, "points_cost": 1})

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid reward or points mismatch"

    def test_over_limit_earn(self, client):
        response = client.post("/accounts/student-1/earn", json={"amount": 1500, "reason": "first_ride"})

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Invalid points amount"}

    def test_unknown_account_redeem(self, client):
        response = client.post("/accounts/ghost/redeem", json={"reward_title": RIDE_VOUCHER, "points_cost": 200})

        assert response.status_code == 404
        assert response.json()["error"] == "User not found"

    def test_idempotency_conflict(self, client):
        """Test that a reused key with other parameters is a conflict."""
        client.post(
            "/accounts/student-1/earn",
            json={"amount": 10, "reason": "ride_completed", "idempotency_key": "k1"},
        )

        response = client.post(
            "/accounts/student-1/earn",
            json={"amount": 20, "reason": "ride_completed", "idempotency_key": "k1"},
        )

        assert response.status_code == 409

    def test_string_amount_is_rejected(self, client):
        """Test that the request body must carry an integer amount."""
        response = client.post("/accounts/student-1/earn", json={"amount": "50", "reason": "ride_completed"})

        assert response.status_code == 422


class TestAccountRoutes:
    """Tests for balance, ledger, audit and vouchers."""

    def test_balance_ledger_audit(self, client):
        client.post("/accounts/student-1/earn", json={"amount": 300, "reason": "ride_completed"})
        client.post("/accounts/student-1/redeem", json={"reward_title": RIDE_VOUCHER, "points_cost": 200})

        balance = client.get("/accounts/student-1/balance").json()
        assert balance["balance"] == 100
        assert balance["total_entries"] == 2

        ledger = client.get("/accounts/student-1/ledger", params={"limit": 1}).json()
        assert ledger["total_count"] == 2
        assert [e["delta"] for e in ledger["entries"]] == [-200]

        audit = client.get("/accounts/student-1/audit").json()
        assert audit["consistent"] is True

    def test_unknown_account_reads(self, client):
        assert client.get("/accounts/ghost/balance").status_code == 404
        assert client.get("/accounts/ghost/ledger").status_code == 404
        assert client.get("/accounts/ghost/audit").status_code == 404

    def test_voucher_lifecycle(self, client):
        client.post("/accounts/student-1/earn", json={"amount": 200, "reason": "ride_completed"})
        voucher_id = client.post(
            "/accounts/student-1/redeem", json={"reward_title": RIDE_VOUCHER, "points_cost": 200}
        ).json()["voucherId"]

        active = client.get("/accounts/student-1/vouchers", params={"status": "active"}).json()
        assert [v["id"] for v in active] == [voucher_id]

        used = client.post(f"/vouchers/{voucher_id}/use")
        assert used.status_code == 200
        assert used.json()["status"] == "used"

        assert client.post(f"/vouchers/{voucher_id}/expire").status_code == 400
        assert client.post("/vouchers/00000000-0000-0000-0000-000000000000/use").status_code == 404
        assert client.get("/accounts/student-1/vouchers", params={"status": "active"}).json() == []

"""
HTTP tests for the HPoints API

Tests cover:
1. Response envelope and camelCase payloads
2. Identity headers and admin authorization
3. Workout validation and redemption flows end to end
4. Error codes and status mapping
"""

from uuid import uuid4

import pytest

from hpoints.storage import DEMO_ADMIN_ID, DEMO_MEMBER_2_ID, DEMO_MEMBER_ID

MEMBER = {"X-User-Id": str(DEMO_MEMBER_ID)}
ADMIN = {"X-Admin-Id": str(DEMO_ADMIN_ID)}

WORKOUT = {
    "date": "2025-01-01",
    "type": "base",
    "kind": "individual",
    "distanceKm": 10,
    "durationSeconds": 3000,
    "photoRef": "uploads/workouts/long.jpg",
    "shares": {"strava": True, "instagram": True},
}


def grant(client, points, user_id=DEMO_MEMBER_ID):
    response = client.post(
        "/admin/hpoints/adjust",
        json={"userId": str(user_id), "points": points, "reason": "Starting balance for tests"},
        headers=ADMIN,
    )
    assert response.status_code == 200
    return response.json()["data"]


def create_product(client, cost=50, quantity=3):
    response = client.post(
        "/products",
        json={"name": "Water bottle", "pointsCost": cost, "stock": {"quantity": quantity}},
        headers=ADMIN,
    )
    assert response.status_code == 201
    return response.json()["data"]


class TestEnvelope:
    """Tests for the response shape."""

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_balance_uses_camel_case(self, client):
        response = client.get("/hpoints/balance", headers=MEMBER)

        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["data"] == {
            "balance": 0,
            "totalEarned": 0,
            "totalRedeemed": 0,
            "expiring": 0,
            "nextExpirationDate": None,
        }

    def test_error_envelope(self, client):
        response = client.get(f"/products/{uuid4()}")

        body = response.json()
        assert response.status_code == 404
        assert body["success"] is False
        assert body["error"]["code"] == "NOT_FOUND"
        assert "not found" in body["error"]["message"]


class TestIdentity:
    """Tests for identity headers."""

    def test_missing_user_header(self, client):
        response = client.get("/hpoints/balance")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_member_cannot_use_admin_routes(self, client):
        response = client.get("/admin/validation/queue", headers={"X-Admin-Id": str(DEMO_MEMBER_ID)})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    def test_unknown_admin_is_forbidden(self, client):
        response = client.post("/admin/hpoints/expire", headers={"X-Admin-Id": str(uuid4())})

        assert response.status_code == 403

    def test_malformed_header_is_a_validation_error(self, client):
        response = client.get("/hpoints/balance", headers={"X-User-Id": "not-a-uuid"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


class TestWorkoutFlow:
    """Submit, queue, approve and the resulting balance."""

    def test_submit_and_approve(self, client):
        submitted = client.post("/workouts", json=WORKOUT, headers=MEMBER)
        assert submitted.status_code == 201
        workout = submitted.json()["data"]
        assert workout["status"] == "pending"
        assert workout["paceSecondsPerKm"] == 300

        queue = client.get("/admin/validation/queue", headers=ADMIN).json()["data"]
        assert [w["id"] for w in queue] == [workout["id"]]

        approved = client.post(f"/admin/validation/{workout['id']}/approve", headers=ADMIN)
        assert approved.status_code == 200
        assert approved.json()["data"]["pointsAwarded"] == 14
        assert approved.json()["data"]["ledgerEntry"]["referenceId"] == workout["id"]

        balance = client.get("/hpoints/balance", headers=MEMBER).json()["data"]
        assert balance["balance"] == 14
        assert balance["totalEarned"] == 14

        again = client.post(f"/admin/validation/{workout['id']}/approve", headers=ADMIN)
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "INVALID_TRANSITION"

    def test_approve_with_override(self, client):
        workout = client.post("/workouts", json=WORKOUT, headers=MEMBER).json()["data"]

        response = client.post(
            f"/admin/validation/{workout['id']}/approve",
            json={"points": 33},
            headers=ADMIN,
        )

        assert response.json()["data"]["pointsAwarded"] == 33

    def test_reject_requires_reason(self, client):
        workout = client.post("/workouts", json=WORKOUT, headers=MEMBER).json()["data"]

        response = client.post(f"/admin/validation/{workout['id']}/reject", json={"reason": ""}, headers=ADMIN)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_submit_without_photo(self, client):
        payload = dict(WORKOUT, photoRef=None)

        response = client.post("/workouts", json=payload, headers=MEMBER)

        assert response.status_code == 400

    def test_other_members_workout_is_hidden(self, client):
        workout = client.post("/workouts", json=WORKOUT, headers=MEMBER).json()["data"]

        response = client.get(f"/workouts/{workout['id']}", headers={"X-User-Id": str(DEMO_MEMBER_2_ID)})

        assert response.status_code == 404


class TestLedgerEndpoints:
    """Tests for history and admin adjustments."""

    def test_history_pagination(self, client):
        grant(client, 10)
        grant(client, 20)

        body = client.get("/hpoints/history", params={"limit": 1}, headers=MEMBER).json()["data"]

        assert body["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}
        assert body["entries"][0]["points"] == 20
        assert body["entries"][0]["source"] == "manual_admin"

    def test_short_adjustment_reason(self, client):
        response = client.post(
            "/admin/hpoints/adjust",
            json={"userId": str(DEMO_MEMBER_ID), "points": 5, "reason": "oops"},
            headers=ADMIN,
        )

        assert response.status_code == 400

    def test_expiring_window_query(self, client, clock):
        grant(client, 40)
        clock.advance(days=170)

        narrow = client.get("/hpoints/balance", params={"windowDays": 5}, headers=MEMBER).json()["data"]
        wide = client.get("/hpoints/balance", params={"windowDays": 15}, headers=MEMBER).json()["data"]

        assert narrow["expiring"] == 0
        assert wide["expiring"] == 40

    def test_expiration_sweep(self, client, clock):
        grant(client, 40)
        clock.advance(days=365)

        result = client.post("/admin/hpoints/expire", headers=ADMIN).json()["data"]

        assert result["expiredEntries"] == 1
        assert result["pointsExpired"] == 40


class TestRedemptionFlow:
    """Redeem, cancel and fulfil over HTTP."""

    def test_redeem_and_cancel(self, client):
        grant(client, 120)
        product = create_product(client)

        redeemed = client.post("/redemptions", json={"productId": product["id"], "quantity": 2}, headers=MEMBER)
        assert redeemed.status_code == 201
        data = redeemed.json()["data"]
        assert data["balance"] == 20
        assert data["redemption"]["pointsSpent"] == 100

        stock = client.get(f"/products/{product['id']}").json()["data"]["stock"]
        assert stock["quantity"] == 1

        cancelled = client.post(f"/redemptions/{data['redemption']['id']}/cancel", headers=MEMBER)
        assert cancelled.status_code == 200
        assert cancelled.json()["data"]["status"] == "cancelled"

        balance = client.get("/hpoints/balance", headers=MEMBER).json()["data"]
        assert balance["balance"] == 120
        assert balance["totalRedeemed"] == 0

    def test_insufficient_balance(self, client):
        product = create_product(client)

        response = client.post("/redemptions", json={"productId": product["id"]}, headers=MEMBER)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INSUFFICIENT_BALANCE"

    def test_out_of_stock(self, client):
        grant(client, 500)
        product = create_product(client, quantity=1)

        response = client.post("/redemptions", json={"productId": product["id"], "quantity": 2}, headers=MEMBER)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "UNAVAILABLE"

    def test_fulfilled_redemption_cannot_be_cancelled(self, client):
        grant(client, 100)
        product = create_product(client)
        redemption = client.post(
            "/redemptions", json={"productId": product["id"]}, headers=MEMBER,
        ).json()["data"]["redemption"]

        fulfilled = client.post(f"/admin/redemptions/{redemption['id']}/fulfill", headers=ADMIN)
        assert fulfilled.json()["data"]["status"] == "fulfilled"

        response = client.post(
            f"/admin/redemptions/{redemption['id']}/cancel", json={"reason": "Member asked"}, headers=ADMIN,
        )
        assert response.status_code == 409

    def test_deleted_product_disappears_from_catalogue(self, client):
        product = create_product(client)

        client.delete(f"/products/{product['id']}", headers=ADMIN)

        assert client.get("/products").json()["data"] == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

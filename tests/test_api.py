"""HTTP tests for the escrow service API."""
from uuid import uuid4

import pytest

BUYER_ID = "buyer-001"
PROVIDER_ID = "provider-001"
ADMIN_ID = "admin-001"
GATEWAY_ID = "gateway-mpesa"


@pytest.fixture
async def booking(client, as_user):
    """A pending booking created through the API."""
    response = await client.post(
        "/transactions",
        json={"provider_id": PROVIDER_ID, "amount": 1500, "payment_method": "mpesa"},
        headers=as_user(BUYER_ID),
    )
    assert response.status_code == 201
    return response.json()


@pytest.fixture
async def in_escrow(client, as_user, booking):
    response = await client.post(
        f"/transactions/{booking['id']}/escrow", headers=as_user(GATEWAY_ID, "payment_gateway")
    )
    assert response.status_code == 200
    return response.json()


class TestCreateTransaction:
    """POST /transactions"""

    async def test_creates_pending_booking(self, booking) -> None:
        assert booking["status"] == "pending"
        assert booking["buyer_id"] == BUYER_ID
        assert booking["provider_id"] == PROVIDER_ID
        assert booking["amount"] == 1500
        assert booking["currency"] == "MZN"
        assert booking["version"] == 1
        assert booking["confirmed_at"] is None
        assert booking["refunded_at"] is None

    async def test_self_booking_rejected(self, client, as_user) -> None:
        response = await client.post(
            "/transactions",
            json={"provider_id": PROVIDER_ID, "amount": 1500, "payment_method": "mpesa"},
            headers=as_user(PROVIDER_ID),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    async def test_fractional_amount_rejected(self, client, as_user) -> None:
        response = await client.post(
            "/transactions",
            json={"provider_id": PROVIDER_ID, "amount": 15.5, "payment_method": "mpesa"},
            headers=as_user(BUYER_ID),
        )
        assert response.status_code == 422

    async def test_unknown_payment_method(self, client, as_user) -> None:
        response = await client.post(
            "/transactions",
            json={"provider_id": PROVIDER_ID, "amount": 1500, "payment_method": "paypal"},
            headers=as_user(BUYER_ID),
        )
        assert response.status_code == 400

    async def test_hidden_provider_not_bookable(self, client, as_user) -> None:
        response = await client.post(
            "/transactions",
            json={"provider_id": "provider-hidden", "amount": 1500, "payment_method": "emis"},
            headers=as_user(BUYER_ID),
        )
        assert response.status_code == 400

    async def test_missing_identity(self, client) -> None:
        response = await client.post(
            "/transactions",
            json={"provider_id": PROVIDER_ID, "amount": 1500, "payment_method": "mpesa"},
        )
        assert response.status_code == 403
        assert response.json()["error"] == "unauthorized"

    async def test_amount_beyond_column_range(self, client, as_user) -> None:
        response = await client.post(
            "/transactions",
            json={"provider_id": PROVIDER_ID, "amount": 10**20, "payment_method": "mpesa"},
            headers=as_user(BUYER_ID),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    async def test_overlong_identity(self, client, as_user) -> None:
        response = await client.post(
            "/transactions",
            json={"provider_id": PROVIDER_ID, "amount": 1500, "payment_method": "mpesa"},
            headers=as_user("u" * 65),
        )
        assert response.status_code == 403

    async def test_buyer_cannot_mark_payment(self, client, as_user, booking) -> None:
        response = await client.post(
            f"/transactions/{booking['id']}/escrow", headers=as_user(BUYER_ID)
        )
        assert response.status_code == 403
        assert response.json()["current_status"] == "pending"


class TestLifecycle:
    """Escrow, confirm and read endpoints."""

    async def test_escrow_sets_deadline(self, in_escrow) -> None:
        assert in_escrow["status"] == "in_escrow"
        assert in_escrow["escrow_expires_at"] is not None
        assert in_escrow["version"] == 2

    async def test_provider_confirm_completes(self, client, as_user, in_escrow) -> None:
        response = await client.post(
            f"/transactions/{in_escrow['id']}/confirm", headers=as_user(PROVIDER_ID)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["confirmed_at"] is not None
        assert body["completed_at"] is not None
        assert body["refunded_at"] is None

    async def test_buyer_cannot_confirm(self, client, as_user, in_escrow) -> None:
        response = await client.post(
            f"/transactions/{in_escrow['id']}/confirm", headers=as_user(BUYER_ID)
        )

        assert response.status_code == 403
        assert response.json()["current_status"] == "in_escrow"

    async def test_stranger_sees_not_found(self, client, as_user, in_escrow) -> None:
        response = await client.get(
            f"/transactions/{in_escrow['id']}", headers=as_user("someone-else")
        )

        assert response.status_code == 404
        assert response.json()["current_status"] is None

    async def test_unknown_id_matches_stranger_response(self, client, as_user) -> None:
        response = await client.get(f"/transactions/{uuid4()}", headers=as_user(BUYER_ID))

        assert response.status_code == 404
        assert response.json()["detail"] == "Not found or not permitted"

    async def test_confirm_twice_is_invalid(self, client, as_user, in_escrow) -> None:
        url = f"/transactions/{in_escrow['id']}/confirm"
        await client.post(url, headers=as_user(PROVIDER_ID))

        response = await client.post(url, headers=as_user(PROVIDER_ID))

        assert response.status_code == 409
        assert response.json() == {
            "error": "invalid_transition",
            "detail": response.json()["detail"],
            "current_status": "completed",
        }

    async def test_stale_if_match(self, client, as_user, in_escrow) -> None:
        response = await client.post(
            f"/transactions/{in_escrow['id']}/confirm",
            headers=as_user(PROVIDER_ID, **{"If-Match": "1"}),
        )

        assert response.status_code == 409
        assert response.json()["error"] == "stale_state"
        assert response.json()["current_status"] == "in_escrow"

    async def test_matching_if_match(self, client, as_user, in_escrow) -> None:
        response = await client.post(
            f"/transactions/{in_escrow['id']}/confirm",
            headers=as_user(PROVIDER_ID, **{"If-Match": str(in_escrow["version"])}),
        )
        assert response.status_code == 200

    async def test_list_by_role(self, client, as_user, in_escrow) -> None:
        as_buyer = await client.get("/transactions?role=buyer", headers=as_user(BUYER_ID))
        as_provider = await client.get("/transactions?role=provider", headers=as_user(BUYER_ID))
        for_provider = await client.get("/transactions?role=provider", headers=as_user(PROVIDER_ID))

        assert [t["id"] for t in as_buyer.json()] == [in_escrow["id"]]
        assert as_provider.json() == []
        assert [t["id"] for t in for_provider.json()] == [in_escrow["id"]]

    async def test_admin_lists_everything(self, client, as_user, in_escrow) -> None:
        response = await client.get("/transactions", headers=as_user(ADMIN_ID, "admin"))
        assert [t["id"] for t in response.json()] == [in_escrow["id"]]

    async def test_history(self, client, as_user, in_escrow) -> None:
        await client.post(f"/transactions/{in_escrow['id']}/confirm", headers=as_user(PROVIDER_ID))

        response = await client.get(
            f"/transactions/{in_escrow['id']}/history", headers=as_user(BUYER_ID)
        )

        assert response.status_code == 200
        assert [(h["from_status"], h["to_status"]) for h in response.json()] == [
            (None, "pending"),
            ("pending", "in_escrow"),
            ("in_escrow", "confirmed"),
            ("confirmed", "completed"),
        ]


class TestRefundsAndDisputes:
    """Refund, dispute and admin endpoints."""

    async def test_refund_while_in_escrow(self, client, as_user, in_escrow) -> None:
        response = await client.post(
            f"/transactions/{in_escrow['id']}/refund",
            json={"reason": "provider cancelled"},
            headers=as_user(BUYER_ID),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["transaction"]["status"] == "refunded"
        assert body["refund"]["status"] == "processed"

        refunds = await client.get(
            f"/transactions/{in_escrow['id']}/refunds", headers=as_user(PROVIDER_ID)
        )
        assert [r["reason"] for r in refunds.json()] == ["provider cancelled"]

    async def test_provider_cannot_request_refund(self, client, as_user, in_escrow) -> None:
        response = await client.post(
            f"/transactions/{in_escrow['id']}/refund",
            json={"reason": "changed my mind"},
            headers=as_user(PROVIDER_ID),
        )
        assert response.status_code == 403

    async def test_dispute_then_admin_refunds(self, client, as_user, in_escrow) -> None:
        transaction_id = in_escrow["id"]
        disputed = await client.post(
            f"/transactions/{transaction_id}/dispute",
            json={"reason": "no show"},
            headers=as_user(BUYER_ID),
        )
        assert disputed.json()["status"] == "disputed"

        refused = await client.post(
            f"/admin/disputes/{transaction_id}/resolve",
            json={"outcome": "refunded"},
            headers=as_user(BUYER_ID),
        )
        assert refused.status_code == 403

        resolved = await client.post(
            f"/admin/disputes/{transaction_id}/resolve",
            json={"outcome": "refunded", "reason": "provider did not attend"},
            headers=as_user(ADMIN_ID, "admin"),
        )
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "refunded"
        assert resolved.json()["confirmed_at"] is None

        refunds = await client.get(f"/transactions/{transaction_id}/refunds", headers=as_user(BUYER_ID))
        assert [r["status"] for r in refunds.json()] == ["processed"]

    async def test_invalid_resolution_outcome(self, client, as_user, in_escrow) -> None:
        response = await client.post(
            f"/admin/disputes/{in_escrow['id']}/resolve",
            json={"outcome": "completed"},
            headers=as_user(ADMIN_ID, "admin"),
        )
        assert response.status_code == 422

    async def test_admin_processes_requested_refund(self, client, as_user, in_escrow) -> None:
        transaction_id = in_escrow["id"]
        await client.post(f"/transactions/{transaction_id}/dispute", json={}, headers=as_user(PROVIDER_ID))
        requested = await client.post(
            f"/transactions/{transaction_id}/refund",
            json={"reason": "session cut short"},
            headers=as_user(BUYER_ID),
        )
        refund = requested.json()["refund"]
        assert refund["status"] == "requested"

        response = await client.post(
            f"/admin/refunds/{refund['id']}/process",
            json={"outcome": "processed"},
            headers=as_user(ADMIN_ID, "moderator"),
        )

        assert response.status_code == 200
        assert response.json()["refund"]["status"] == "processed"
        assert response.json()["transaction"]["status"] == "refunded"

        again = await client.post(
            f"/admin/refunds/{refund['id']}/process",
            json={"outcome": "rejected"},
            headers=as_user(ADMIN_ID, "admin"),
        )
        assert again.status_code == 409


class TestProviders:
    """Provider directory endpoints."""

    async def test_lists_only_bookable(self, client, as_user) -> None:
        response = await client.get("/providers", headers=as_user(BUYER_ID))

        ids = {p["user_id"] for p in response.json()}
        assert ids == {"provider-001", "provider-002"}

    async def test_admin_hides_provider(self, client, as_user) -> None:
        response = await client.put(
            f"/admin/providers/{PROVIDER_ID}",
            json={"is_visible": False},
            headers=as_user(ADMIN_ID, "admin"),
        )
        assert response.status_code == 200
        assert response.json()["is_visible"] is False

        listed = await client.get("/providers", headers=as_user(BUYER_ID))
        assert PROVIDER_ID not in {p["user_id"] for p in listed.json()}

    async def test_non_admin_cannot_manage(self, client, as_user) -> None:
        response = await client.put(
            "/admin/providers/provider-003",
            json={"display_name": "Carla"},
            headers=as_user(BUYER_ID),
        )
        assert response.status_code == 403

    async def test_provider_toggles_own_visibility(self, client, as_user) -> None:
        hidden = await client.patch(
            "/providers/me", json={"is_visible": False}, headers=as_user(PROVIDER_ID)
        )
        assert hidden.status_code == 200
        assert hidden.json()["is_visible"] is False
        assert hidden.json()["is_approved"] is True

        listed = await client.get("/providers", headers=as_user(BUYER_ID))
        assert PROVIDER_ID not in {p["user_id"] for p in listed.json()}

        shown = await client.patch(
            "/providers/me", json={"is_visible": True}, headers=as_user(PROVIDER_ID)
        )
        assert shown.json()["is_visible"] is True

    async def test_visibility_toggle_cannot_approve(self, client, as_user) -> None:
        await client.put(
            "/admin/providers/provider-003",
            json={"display_name": "Carla", "is_approved": False},
            headers=as_user(ADMIN_ID, "admin"),
        )

        response = await client.patch(
            "/providers/me",
            json={"is_visible": True, "is_approved": True},
            headers=as_user("provider-003"),
        )

        assert response.status_code == 200
        assert response.json()["is_approved"] is False

    async def test_visibility_toggle_needs_profile(self, client, as_user) -> None:
        response = await client.patch(
            "/providers/me", json={"is_visible": False}, headers=as_user(BUYER_ID)
        )
        assert response.status_code == 404

    async def test_own_summary(self, client, as_user, in_escrow) -> None:
        response = await client.get("/providers/me/summary", headers=as_user(PROVIDER_ID))

        assert response.status_code == 200
        assert response.json() == {
            "provider_id": PROVIDER_ID,
            "in_escrow_count": 1,
            "in_escrow_amount": 1500,
            "completed_count": 0,
            "completed_amount": 0,
        }


class TestAdminSweep:
    """POST /admin/sweeps"""

    async def test_admin_runs_sweep(self, client, as_user, in_escrow) -> None:
        response = await client.post("/admin/sweeps", headers=as_user(ADMIN_ID, "admin"))

        assert response.status_code == 200
        assert response.json() == {"refunded": 0, "completed": 0, "skipped": 0, "failed": 0}

    async def test_user_cannot_sweep(self, client, as_user) -> None:
        response = await client.post("/admin/sweeps", headers=as_user(BUYER_ID))
        assert response.status_code == 403


async def test_health(client) -> None:
    response = await client.get("/health")
    assert response.json() == {"status": "healthy", "service": "escrow-service"}

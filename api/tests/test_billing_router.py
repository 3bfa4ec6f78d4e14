"""Tests for api/api/routers/billing.py

Covers:
- GET /billing/plans: list prices
- POST /billing/paynow/webhook: hash verification, idempotent redelivery
- POST /billing/paynow/initiate and GET /billing/payments/{id}/status
  against a mocked Paynow gateway
- Bank transfers: request, platform listing and confirmation
- Subscription: read, trial, suspend / reinstate / cancel
- The subscription access gate on tenant routes
"""

from __future__ import annotations

import time
from datetime import datetime
from decimal import Decimal

import httpx
import pytest
from helpers import OTHER_TENANT_ID, PAYNOW_KEY, TENANT_ID, auth_headers, create_ticket
from httpx import AsyncClient
from servicedesk_core.billing.paynow import decode_form, encode_form, sign
from servicedesk_core.models.billing import SubscriptionStatus
from servicedesk_core.state.repository import PaymentRepository, SubscriptionRepository

from api.services.paynow_client import PaynowClient

_FORM = {"Content-Type": "application/x-www-form-urlencoded"}
_ADMIN = auth_headers("tenant-admin")
_PLATFORM = auth_headers("super-admin")


def _reference(tenant_id: str = TENANT_ID) -> str:
    return f"SUB-{tenant_id}-{int(time.time() * 1000)}"


def _notice(reference: str, status: str = "Paid", amount: str = "79.00", key: str = PAYNOW_KEY) -> str:
    fields = {
        "reference": reference,
        "paynowreference": "991122",
        "amount": amount,
        "status": status,
        "pollurl": "https://paynow.test/interface/checkpayment/?guid=abc",
    }
    return encode_form(sign(fields, key))


async def _seed_payment(session_factory, reference: str, *, amount: str = "79.00") -> None:
    async with session_factory() as session:
        await PaymentRepository(session, tenant_id=TENANT_ID).ensure(
            reference,
            amount=Decimal(amount),
            plan="PRO",
            billing_cycle="monthly",
            provider="paynow",
        )
        await session.commit()


async def _set_status(session_factory, status: SubscriptionStatus) -> None:
    async with session_factory() as session:
        repo = SubscriptionRepository(session, tenant_id=TENANT_ID)
        sub = await repo.get()
        assert await repo.change_status(sub.id, from_status=SubscriptionStatus(sub.status), to_status=status)
        await session.commit()


async def _post_webhook(client: AsyncClient, body: str) -> httpx.Response:
    return await client.post("/api/v1/billing/paynow/webhook", content=body, headers=_FORM)


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class TestPlans:
    @pytest.mark.asyncio
    async def test_lists_every_plan_with_prices(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/billing/plans", headers=auth_headers("requester"))

        assert resp.status_code == 200
        plans = {p["plan"]: p for p in resp.json()["plans"]}
        assert set(plans) == {"BASIC", "PRO", "ENTERPRISE"}
        assert plans["PRO"]["monthly_price"] == "79.00"
        assert plans["PRO"]["yearly_price"] == "790.00"


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


class TestPaynowWebhook:
    @pytest.mark.asyncio
    async def test_paid_notification_extends_subscription(self, client: AsyncClient, session_factory) -> None:
        before = (await client.get("/api/v1/billing/subscription", headers=_ADMIN)).json()
        reference = _reference()
        await _seed_payment(session_factory, reference)

        resp = await _post_webhook(client, _notice(reference))

        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.json()["outcome"] == "applied"
        after = (await client.get("/api/v1/billing/subscription", headers=_ADMIN)).json()
        assert after["status"] == "ACTIVE"
        extended = datetime.fromisoformat(after["current_period_end"]) - datetime.fromisoformat(
            before["current_period_end"]
        )
        assert extended.days == 30

    @pytest.mark.asyncio
    async def test_redelivery_is_acknowledged_without_effect(self, client: AsyncClient, session_factory) -> None:
        reference = _reference()
        await _seed_payment(session_factory, reference)
        body = _notice(reference)
        await _post_webhook(client, body)
        first = (await client.get("/api/v1/billing/subscription", headers=_ADMIN)).json()

        resp = await _post_webhook(client, body)

        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.json()["code"] == "already_processed"
        again = (await client.get("/api/v1/billing/subscription", headers=_ADMIN)).json()
        assert again["current_period_end"] == first["current_period_end"]

    @pytest.mark.asyncio
    async def test_invalid_hash_rejected(self, client: AsyncClient, session_factory) -> None:
        reference = _reference()
        await _seed_payment(session_factory, reference)

        resp = await _post_webhook(client, _notice(reference, key="not-the-key"))

        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_signature"
        payments = (await client.get("/api/v1/billing/payments", headers=_ADMIN)).json()
        assert [p["status"] for p in payments] == ["pending"]

    @pytest.mark.asyncio
    async def test_missing_hash_rejected(self, client: AsyncClient) -> None:
        body = encode_form({"reference": _reference(), "status": "Paid"})

        resp = await _post_webhook(client, body)

        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_tenant_is_not_found(self, client: AsyncClient) -> None:
        resp = await _post_webhook(client, _notice(_reference("ghost-tenant")))

        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_foreign_reference_rejected(self, client: AsyncClient) -> None:
        resp = await _post_webhook(client, _notice("ORDER-12345"))

        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"

    @pytest.mark.asyncio
    async def test_missing_payment_record_is_created(self, client: AsyncClient) -> None:
        resp = await _post_webhook(client, _notice(_reference()))

        assert resp.status_code == 200
        payments = (await client.get("/api/v1/billing/payments", headers=_ADMIN)).json()
        assert len(payments) == 1
        assert payments[0]["status"] == "success"

    @pytest.mark.asyncio
    async def test_cancelled_notification_fails_payment(self, client: AsyncClient, session_factory) -> None:
        reference = _reference()
        await _seed_payment(session_factory, reference)

        resp = await _post_webhook(client, _notice(reference, status="Cancelled"))

        assert resp.json()["outcome"] == "failed"
        payment = (await client.get("/api/v1/billing/payments", headers=_ADMIN)).json()[0]
        assert payment["status"] == "failed"
        assert payment["failure_reason"] == "Paynow status: Cancelled"
        inbox = (await client.get("/api/v1/notifications", headers=_ADMIN)).json()
        assert [n["event_type"] for n in inbox] == ["payment.failed"]

    @pytest.mark.asyncio
    async def test_pending_notification_changes_nothing(self, client: AsyncClient, session_factory) -> None:
        reference = _reference()
        await _seed_payment(session_factory, reference)

        resp = await _post_webhook(client, _notice(reference, status="Sent"))

        assert resp.json()["outcome"] == "pending"
        payment = (await client.get("/api/v1/billing/payments", headers=_ADMIN)).json()[0]
        assert payment["status"] == "pending"


# ---------------------------------------------------------------------------
# Paynow checkout
# ---------------------------------------------------------------------------


def _gateway(status: str = "Ok", *, poll_status: str = "Paid", http_status: int = 200) -> httpx.MockTransport:
    """Mock Paynow: answers initiate and poll requests for one transaction."""
    seen: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if http_status != 200:
            return httpx.Response(http_status, text="gateway down")
        if request.url.path.endswith("initiatetransaction"):
            fields = decode_form(request.content)
            seen["reference"] = fields["reference"]
            seen["amount"] = fields["amount"]
            if status != "Ok":
                return httpx.Response(200, text=encode_form({"status": "Error", "error": "Invalid merchant"}))
            reply = sign(
                {
                    "status": "Ok",
                    "browserurl": "https://paynow.test/payment/confirm/?guid=abc",
                    "pollurl": "https://paynow.test/interface/checkpayment/?guid=abc",
                },
                PAYNOW_KEY,
            )
            return httpx.Response(200, text=encode_form(reply))
        reply = sign(
            {
                "reference": seen["reference"],
                "paynowreference": "991122",
                "amount": seen["amount"],
                "status": poll_status,
                "pollurl": str(request.url),
            },
            PAYNOW_KEY,
        )
        return httpx.Response(200, text=encode_form(reply))

    return httpx.MockTransport(handler)


@pytest.fixture()
def install_gateway(monkeypatch):
    def install(transport: httpx.MockTransport) -> None:
        def from_settings(cls, settings):
            return cls(
                settings.paynow_integration_id,
                settings.paynow_integration_key.get_secret_value(),
                settings.paynow_init_url,
                transport=transport,
            )

        monkeypatch.setattr(PaynowClient, "from_settings", classmethod(from_settings))

    return install


class TestPaynowCheckout:
    @pytest.mark.asyncio
    async def test_initiate_stores_pending_payment(self, client: AsyncClient, install_gateway) -> None:
        install_gateway(_gateway())

        resp = await client.post(
            "/api/v1/billing/paynow/initiate",
            json={"plan": "BASIC", "billing_cycle": "yearly", "email": "billing@acme.test"},
            headers=_ADMIN,
        )

        assert resp.status_code == 201
        body = resp.json()
        assert body["amount"] == "290.00"
        assert body["reference"].startswith(f"SUB-{TENANT_ID}-")
        assert body["redirect_url"] == "https://paynow.test/payment/confirm/?guid=abc"
        assert body["invoice_number"].startswith("INV-ACME-")
        payments = (await client.get("/api/v1/billing/payments", headers=_ADMIN)).json()
        assert [(p["status"], p["plan"], p["billing_cycle"]) for p in payments] == [("pending", "BASIC", "yearly")]

    @pytest.mark.asyncio
    async def test_refused_initiation_stores_nothing(self, client: AsyncClient, install_gateway) -> None:
        install_gateway(_gateway(status="Error"))

        resp = await client.post(
            "/api/v1/billing/paynow/initiate",
            json={"plan": "PRO", "email": "billing@acme.test"},
            headers=_ADMIN,
        )

        assert resp.status_code == 502
        assert (await client.get("/api/v1/billing/payments", headers=_ADMIN)).json() == []

    @pytest.mark.asyncio
    async def test_unreachable_gateway_is_provider_error(self, client: AsyncClient, install_gateway) -> None:
        install_gateway(_gateway(http_status=503))

        resp = await client.post(
            "/api/v1/billing/paynow/initiate",
            json={"plan": "PRO", "email": "billing@acme.test"},
            headers=_ADMIN,
        )

        assert resp.status_code == 502

    @pytest.mark.asyncio
    async def test_requester_cannot_initiate(self, client: AsyncClient, install_gateway) -> None:
        install_gateway(_gateway())

        resp = await client.post(
            "/api/v1/billing/paynow/initiate",
            json={"plan": "PRO", "email": "me@acme.test"},
            headers=auth_headers("requester"),
        )

        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_poll_settles_paid_transaction(self, client: AsyncClient, install_gateway) -> None:
        install_gateway(_gateway(poll_status="Paid"))
        started = await client.post(
            "/api/v1/billing/paynow/initiate",
            json={"plan": "PRO", "email": "billing@acme.test"},
            headers=_ADMIN,
        )
        payment_id = started.json()["payment_id"]

        resp = await client.get(f"/api/v1/billing/payments/{payment_id}/status", headers=_ADMIN)

        assert resp.status_code == 200
        assert resp.json()["status"] == "success"
        assert resp.json()["paid_at"] is not None
        inbox = (await client.get("/api/v1/notifications", headers=_ADMIN)).json()
        assert "subscription.activated" in [n["event_type"] for n in inbox]

    @pytest.mark.asyncio
    async def test_poll_leaves_pending_transaction(self, client: AsyncClient, install_gateway) -> None:
        install_gateway(_gateway(poll_status="Sent"))
        started = await client.post(
            "/api/v1/billing/paynow/initiate",
            json={"plan": "PRO", "email": "billing@acme.test"},
            headers=_ADMIN,
        )

        resp = await client.get(f"/api/v1/billing/payments/{started.json()['payment_id']}/status", headers=_ADMIN)

        assert resp.json()["status"] == "pending"


# ---------------------------------------------------------------------------
# Bank transfers
# ---------------------------------------------------------------------------


class TestBankTransfer:
    @pytest.mark.asyncio
    async def test_request_returns_instructions(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/v1/billing/bank-transfer",
            json={"plan": "ENTERPRISE", "billing_cycle": "monthly"},
            headers=_ADMIN,
        )

        assert resp.status_code == 201
        body = resp.json()
        assert body["payment"]["provider"] == "bank_transfer"
        assert body["payment"]["status"] == "pending"
        assert body["bank_details"]["account_number"] == "000111222"
        assert body["bank_details"]["amount"] == "199.00"
        assert body["bank_details"]["reference"] == body["reference"]

    @pytest.mark.asyncio
    async def test_platform_admin_confirms_transfer(self, client: AsyncClient) -> None:
        created = await client.post(
            "/api/v1/billing/bank-transfer",
            json={"plan": "ENTERPRISE"},
            headers=_ADMIN,
        )
        payment_id = created.json()["payment"]["id"]

        pending = await client.get("/api/v1/billing/bank-transfers/pending", headers=_PLATFORM)
        assert [p["id"] for p in pending.json()] == [payment_id]

        resp = await client.post(f"/api/v1/billing/payments/{payment_id}/confirm", headers=_PLATFORM)

        assert resp.status_code == 200
        assert resp.json()["status"] == "success"
        assert resp.json()["confirmed_by_id"] == "super-admin"
        sub = (await client.get("/api/v1/billing/subscription", headers=_ADMIN)).json()
        assert sub["plan"] == "ENTERPRISE"

    @pytest.mark.asyncio
    async def test_second_confirmation_conflicts(self, client: AsyncClient) -> None:
        created = await client.post("/api/v1/billing/bank-transfer", json={"plan": "BASIC"}, headers=_ADMIN)
        payment_id = created.json()["payment"]["id"]
        await client.post(f"/api/v1/billing/payments/{payment_id}/confirm", headers=_PLATFORM)

        resp = await client.post(f"/api/v1/billing/payments/{payment_id}/confirm", headers=_PLATFORM)

        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_tenant_admin_cannot_confirm(self, client: AsyncClient) -> None:
        created = await client.post("/api/v1/billing/bank-transfer", json={"plan": "BASIC"}, headers=_ADMIN)

        resp = await client.post(
            f"/api/v1/billing/payments/{created.json()['payment']['id']}/confirm",
            headers=_ADMIN,
        )

        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Subscription administration
# ---------------------------------------------------------------------------


class TestSubscription:
    @pytest.mark.asyncio
    async def test_read_includes_access_level(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/billing/subscription", headers=_ADMIN)

        assert resp.status_code == 200
        assert resp.json()["status"] == "ACTIVE"
        assert resp.json()["plan"] == "PRO"
        assert resp.json()["access_level"] == "full"

    @pytest.mark.asyncio
    async def test_tenant_without_subscription_starts_trial(self, client: AsyncClient) -> None:
        headers = auth_headers("outsider", tenant_id=OTHER_TENANT_ID, role="TENANT_ADMIN")
        missing = await client.get("/api/v1/billing/subscription", headers=headers)
        assert missing.status_code == 404

        resp = await client.post("/api/v1/billing/subscription/trial", json={}, headers=headers)

        assert resp.status_code == 201
        assert resp.json()["status"] == "TRIAL"
        assert resp.json()["trial_ends_at"] is not None
        again = await client.post("/api/v1/billing/subscription/trial", json={}, headers=headers)
        assert again.status_code == 409

    @pytest.mark.asyncio
    async def test_suspend_blocks_then_reinstate_restores(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/v1/billing/subscription/suspend",
            json={"tenant_id": TENANT_ID, "reason": "Chargeback under review"},
            headers=_PLATFORM,
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "SUSPENDED"
        assert resp.json()["suspended_reason"] == "Chargeback under review"

        blocked = await client.get("/api/v1/tickets", headers=auth_headers("requester"))
        assert blocked.status_code == 403
        assert blocked.json()["code"] == "subscription_blocked"

        resp = await client.post(
            "/api/v1/billing/subscription/reinstate",
            json={"tenant_id": TENANT_ID},
            headers=_PLATFORM,
        )
        assert resp.json()["status"] == "ACTIVE"
        assert resp.json()["suspended_reason"] is None
        assert (await client.get("/api/v1/tickets", headers=auth_headers("requester"))).status_code == 200

    @pytest.mark.asyncio
    async def test_reinstate_requires_suspension(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/v1/billing/subscription/reinstate",
            json={"tenant_id": TENANT_ID},
            headers=_PLATFORM,
        )

        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_state"

    @pytest.mark.asyncio
    async def test_cancel_notifies_tenant_admins(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/v1/billing/subscription/cancel",
            json={"tenant_id": TENANT_ID},
            headers=_PLATFORM,
        )

        assert resp.json()["status"] == "CANCELLED"
        assert resp.json()["access_level"] == "blocked"
        inbox = (await client.get("/api/v1/notifications", headers=_ADMIN)).json()
        assert inbox[0]["event_type"] == "subscription.changed"
        assert inbox[0]["data"]["to_status"] == "CANCELLED"

    @pytest.mark.asyncio
    async def test_tenant_admin_cannot_suspend(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/v1/billing/subscription/suspend",
            json={"tenant_id": TENANT_ID},
            headers=_ADMIN,
        )

        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Access gate
# ---------------------------------------------------------------------------


class TestAccessGate:
    @pytest.mark.asyncio
    async def test_full_access_sets_level_header(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/tickets", headers=auth_headers("requester"))

        assert resp.headers["X-Subscription-Level"] == "full"
        assert "X-Subscription-Warning" not in resp.headers

    @pytest.mark.asyncio
    async def test_read_only_allows_reads_only(self, client: AsyncClient, session_factory) -> None:
        ticket = await create_ticket(client)
        await _set_status(session_factory, SubscriptionStatus.READ_ONLY)

        read = await client.get(f"/api/v1/tickets/{ticket['id']}", headers=auth_headers("requester"))
        write = await client.post(
            "/api/v1/tickets",
            json={"title": "Another leak"},
            headers=auth_headers("requester"),
        )

        assert read.status_code == 200
        assert read.headers["X-Subscription-Level"] == "read_only"
        assert "expired" in read.headers["X-Subscription-Warning"]
        assert write.status_code == 403
        assert write.json()["code"] == "subscription_blocked"
        assert write.json()["details"]["access_level"] == "read_only"

    @pytest.mark.asyncio
    async def test_grace_keeps_full_access_with_warning(self, client: AsyncClient, session_factory) -> None:
        await _set_status(session_factory, SubscriptionStatus.GRACE)

        resp = await client.get("/api/v1/tickets", headers=auth_headers("requester"))

        assert resp.status_code == 200
        assert resp.headers["X-Subscription-Level"] == "full"
        assert resp.headers["X-Subscription-Warning"].startswith("Payment overdue")

    @pytest.mark.asyncio
    async def test_billing_reachable_while_blocked(self, client: AsyncClient, session_factory) -> None:
        await _set_status(session_factory, SubscriptionStatus.SUSPENDED)

        resp = await client.get("/api/v1/billing/subscription", headers=_ADMIN)

        assert resp.status_code == 200
        assert resp.json()["access_level"] == "blocked"

    @pytest.mark.asyncio
    async def test_platform_admin_bypasses_gate(self, client: AsyncClient, session_factory) -> None:
        await _set_status(session_factory, SubscriptionStatus.SUSPENDED)

        resp = await client.get("/api/v1/tickets", headers=_PLATFORM)

        assert resp.status_code == 200

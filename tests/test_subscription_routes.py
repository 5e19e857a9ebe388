from __future__ import annotations

import pytest

from app.core.security import create_access_token
from app.models.subscription_models import SubscriptionStatus

from conftest import load


def _auth_headers(user_id: int) -> dict[str, str]:
    token = create_access_token(str(user_id))
    return {"Authorization": f"Bearer {token}"}


def _subscribe_and_confirm(client, processor, user_id: int = 1, plan: str = "monthly") -> str:
    headers = _auth_headers(user_id)
    resp = client.post("/subscriptions/subscribe", json={"plan_type": plan}, headers=headers)
    assert resp.status_code == 200, resp.text
    remote_id = resp.json()["approval_url"].rsplit("/", 1)[1]
    processor.remote[remote_id] = "ACTIVE"
    resp = client.post("/subscriptions/confirm", json={"remote_subscription_id": remote_id}, headers=headers)
    assert resp.status_code == 200, resp.text
    return remote_id


class TestAuth:
    def test_requires_bearer_token(self, client):
        assert client.get("/subscriptions/status").status_code == 401
        assert client.post("/subscriptions/cancel").status_code == 401

    def test_rejects_bad_token(self, client):
        resp = client.get("/subscriptions/status", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401


class TestReads:
    def test_status_for_new_user(self, client):
        resp = client.get("/subscriptions/status", headers=_auth_headers(5))
        assert resp.status_code == 200
        assert resp.json() == {
            "plan": "free",
            "status": "none",
            "is_premium": False,
            "auto_renewal": False,
            "started_at": None,
            "expires_at": None,
            "next_plan": None,
            "next_plan_starts_at": None,
            "cancelled_at": None,
            "suspended_at": None,
            "payment_failure": None,
        }

    def test_plans_catalog(self, client):
        resp = client.get("/subscriptions/plans")
        assert resp.status_code == 200
        plans = resp.json()
        assert [p["plan_type"] for p in plans] == ["monthly", "yearly"]
        assert plans[0]["price_usd"] == pytest.approx(4.99)
        assert plans[1]["billing_interval"] == "YEAR"

    def test_premium_flag_follows_lifecycle(self, client, processor):
        headers = _auth_headers(1)
        assert client.get("/subscriptions/premium", headers=headers).json() == {"is_premium": False}
        _subscribe_and_confirm(client, processor)
        assert client.get("/subscriptions/premium", headers=headers).json() == {"is_premium": True}
        client.post("/subscriptions/suspend", headers=headers)
        assert client.get("/subscriptions/premium", headers=headers).json() == {"is_premium": False}


class TestLifecycleEndpoints:
    def test_subscribe_returns_approval_url(self, client):
        resp = client.post("/subscriptions/subscribe", json={"plan_type": "yearly"}, headers=_auth_headers(1))
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["new_status"] == "pending"
        assert body["approval_url"].startswith("https://paypal.test/approve/")

    def test_subscribe_rejects_unknown_plan(self, client):
        resp = client.post("/subscriptions/subscribe", json={"plan_type": "weekly"}, headers=_auth_headers(1))
        assert resp.status_code == 422

    def test_full_status_after_activation(self, client, processor):
        _subscribe_and_confirm(client, processor)
        body = client.get("/subscriptions/status", headers=_auth_headers(1)).json()
        assert body["plan"] == "monthly"
        assert body["status"] == "active"
        assert body["auto_renewal"] is True
        assert body["expires_at"].startswith("2025-03-01")

    def test_schedule_and_unschedule(self, client, processor):
        _subscribe_and_confirm(client, processor)
        headers = _auth_headers(1)

        resp = client.post("/subscriptions/schedule-change", json={"plan_type": "yearly"}, headers=headers)
        assert resp.status_code == 200
        status = client.get("/subscriptions/status", headers=headers).json()
        assert status["plan"] == "monthly"
        assert status["next_plan"] == "yearly"

        resp = client.delete("/subscriptions/schedule-change", headers=headers)
        assert resp.status_code == 200
        assert client.get("/subscriptions/status", headers=headers).json()["next_plan"] is None

    def test_forbidden_downgrade_is_400_with_code(self, client, processor):
        _subscribe_and_confirm(client, processor, plan="yearly")
        resp = client.post("/subscriptions/change-plan", json={"plan_type": "monthly"}, headers=_auth_headers(1))
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert body["code"] == "SUB003"
        assert body["new_status"] == "active"

    def test_cancel_is_idempotent_over_http(self, client, processor):
        _subscribe_and_confirm(client, processor)
        headers = _auth_headers(1)
        first = client.post("/subscriptions/cancel", json={"reason": "too expensive"}, headers=headers)
        second = client.post("/subscriptions/cancel", headers=headers)
        assert first.status_code == 200 and second.status_code == 200
        assert first.json()["new_status"] == second.json()["new_status"] == "cancelled"
        assert load(1).status is SubscriptionStatus.CANCELLED

    def test_reactivate_requiring_resubscription(self, client, processor):
        _subscribe_and_confirm(client, processor)
        headers = _auth_headers(1)
        client.post("/subscriptions/cancel", headers=headers)
        body = client.post("/subscriptions/reactivate", headers=headers).json()
        assert body["resubscription_required"] is True
        assert body["new_status"] == "pending"
        assert body["approval_url"]

    def test_retry_payment_when_nothing_failed(self, client, processor):
        _subscribe_and_confirm(client, processor)
        resp = client.post("/subscriptions/retry-payment", headers=_auth_headers(1))
        assert resp.status_code == 200
        assert resp.json()["success"] is True

    def test_unknown_user_is_404(self, client):
        resp = client.post("/subscriptions/suspend", headers=_auth_headers(99))
        assert resp.status_code == 404
        assert resp.json()["code"] == "SUB010"

    def test_processor_outage_is_503_and_retryable(self, client, processor):
        from app.core.exceptions import ProcessorTransientError

        processor.errors["create_subscription"] = ProcessorTransientError("create_subscription", "timeout", attempts=3)
        resp = client.post("/subscriptions/subscribe", json={"plan_type": "monthly"}, headers=_auth_headers(1))
        assert resp.status_code == 503
        assert resp.json()["retryable"] is True

    def test_security_headers_present(self, client):
        resp = client.get("/subscriptions/plans")
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"

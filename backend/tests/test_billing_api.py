from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

API = "/api/v1"


def _bootstrap(client):
    tenant = client.post(f"{API}/tenants", json={"name": "Hospital Central", "slug": "hospital-central"})
    assert tenant.status_code == 201, tenant.text
    plan = client.post(
        f"{API}/plans",
        json={"name": "Basic", "code": "basic", "price_monthly": "100.00", "price_yearly": "1000.00", "tier_rank": 1},
    )
    assert plan.status_code == 201, plan.text
    entity = client.post(f"{API}/entities", json={"code": "lab_report", "name": "Lab report", "module": "lab"})
    assert entity.status_code == 201, entity.text
    return tenant.json(), plan.json(), entity.json()


def test_health_endpoints(client):
    assert client.get("/health/live").status_code == 200
    assert client.get("/health/ready").status_code == 200


def test_billing_flow_over_http(client):
    tenant, plan, entity = _bootstrap(client)
    rule = client.post(
        f"{API}/pricing/rules",
        json={
            "name": "Lab reports",
            "rule_type": "tiered",
            "plan_id": plan["id"],
            "entity_id": entity["id"],
            "tiers": [
                {"min_units": 0, "max_units": 10, "unit_price": "1.00"},
                {"min_units": 10, "max_units": None, "unit_price": "0.50"},
            ],
        },
    )
    assert rule.status_code == 201, rule.text

    subscription = client.post(f"{API}/subscriptions", json={"tenant_id": tenant["id"], "plan_id": plan["id"]})
    assert subscription.status_code == 201, subscription.text
    subscription = subscription.json()
    assert subscription["status"] == "active"

    usage = client.post(
        f"{API}/usage",
        json={"subscription_id": subscription["id"], "entity_id": entity["id"], "units": 15},
    )
    assert usage.status_code == 201, usage.text

    invoice = client.post(
        f"{API}/invoices",
        json={
            "subscription_id": subscription["id"],
            "period_start": subscription["starts_at"],
            "period_end": subscription["ends_at"],
        },
    )
    assert invoice.status_code == 201, invoice.text
    body = invoice.json()
    assert body["number"] == "INV-202604-00001"
    assert Decimal(body["total"]) == Decimal("112.50")
    assert [item["kind"] for item in body["line_items"]] == ["base_fee", "usage"]

    sent = client.post(f"{API}/invoices/{body['id']}/finalize")
    assert sent.json()["status"] == "sent"
    paid = client.post(f"{API}/invoices/{body['id']}/pay")
    assert paid.json()["status"] == "paid"

    current = client.get(f"{API}/tenants/{tenant['id']}/subscription")
    assert current.json()["id"] == subscription["id"]


def test_domain_errors_share_one_payload_shape(client):
    tenant, plan, _ = _bootstrap(client)

    missing = client.get(f"{API}/subscriptions/{uuid4()}")
    assert missing.status_code == 404
    assert missing.json()["error"] == "not_found"
    assert "detail" in missing.json()

    duplicate = client.post(f"{API}/tenants", json={"name": "Outro", "slug": "hospital-central"})
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "conflict"

    subscription = client.post(f"{API}/subscriptions", json={"tenant_id": tenant["id"], "plan_id": plan["id"]}).json()
    bad_usage = client.post(
        f"{API}/usage",
        json={"subscription_id": subscription["id"], "entity_id": str(uuid4()), "units": 0},
    )
    assert bad_usage.status_code == 422
    assert bad_usage.json()["error"] == "validation"

    first_cancel = client.post(f"{API}/subscriptions/{subscription['id']}/cancel", json={"reason": "closing"})
    assert first_cancel.status_code == 200
    second_cancel = client.post(f"{API}/subscriptions/{subscription['id']}/cancel", json={"reason": "closing"})
    assert second_cancel.status_code == 409

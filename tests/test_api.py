"""
统一响应格式与主要接口测试
"""

import inspect
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from api_interface import app, run_active_member_check
from database_setup import get_db_session, get_session_factory, orders
from settings_store import get_settings_store


@pytest.fixture
def client(session_factory, settings_store):
    def override_db_session():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db_session] = override_db_session
    app.dependency_overrides[get_settings_store] = lambda: settings_store
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def scenario(seed):
    seed.tiers([(1, 1, "0.05", 1)])
    direct = seed.member(distributor_level=1)
    buyer = seed.member(referrer_id=direct, points=5000)
    return {
        "buyer": buyer,
        "direct": direct,
        "product": seed.product(price="200.00"),
        "coupon": seed.coupon(value="10", min_order_amount="50", valid_to_days=3650, valid_from_days=-3650),
    }


class TestEnvelope:
    """统一响应格式。"""

    def test_root(self, client):
        assert client.get("/").status_code == 200

    def test_validation_error_envelope(self, client):
        response = client.post("/api/pricing/quote", json={"memberId": 1})
        assert response.status_code == 422
        body = response.json()
        assert body["code"] != 0
        assert body["message"]

    def test_not_found_envelope(self, client, scenario):
        response = client.post("/api/pricing/quote", json={
            "memberId": scenario["buyer"], "productId": 99999, "quantity": 1,
        })
        assert response.status_code == 404
        assert response.json()["code"] == 404


class TestPricingRoutes:
    """计价与订单接口。"""

    def test_quote(self, client, scenario):
        response = client.post("/api/pricing/quote", json={
            "memberId": scenario["buyer"],
            "productId": scenario["product"],
            "quantity": 1,
            "appliedCoupons": [scenario["coupon"]],
            "appliedPromotions": [],
            "pointUsage": None,
        })
        body = response.json()
        assert body["code"] == 0
        pricing = body["data"]["pricing"]
        assert pricing["originalAmount"] == "200.00"
        assert pricing["finalPrice"] == "190.00"
        assert body["data"]["appliedCoupons"] == [scenario["coupon"]]

        release = client.post(f"/api/pricing/reservations/{body['data']['reservationKey']}/release")
        assert release.json()["data"]["released"] == 1

    def test_invalid_quantity(self, client, scenario):
        response = client.post("/api/pricing/quote", json={
            "memberId": scenario["buyer"], "productId": scenario["product"], "quantity": 0,
        })
        assert response.status_code == 400
        assert response.json()["code"] == 400

    def test_order_lifecycle(self, client, scenario):
        response = client.post("/api/orders", json={
            "memberId": scenario["buyer"],
            "productId": scenario["product"],
            "quantity": 1,
            "appliedCoupons": [scenario["coupon"]],
            "orderNo": "API-ORDER-1",
        })
        body = response.json()
        assert body["code"] == 0
        assert body["data"]["order"]["orderNo"] == "API-ORDER-1"
        assert body["data"]["commissionCreated"] == 1

        records = client.get("/api/orders/API-ORDER-1/commissions").json()["data"]["records"]
        assert [(r["beneficiary_member_id"], r["amount"]) for r in records] == [(scenario["direct"], "9.50")]

        again = client.post("/api/orders/API-ORDER-1/commissions/redistribute").json()
        assert again["data"]["created_count"] == 0

        settled = client.post("/api/orders/API-ORDER-1/settle").json()
        assert settled["data"]["status"] == "settled"

        cancelled = client.post("/api/orders/API-ORDER-1/cancel")
        assert cancelled.status_code == 400
        assert cancelled.json()["code"] == 400

    def test_order_ignores_client_unit_price(self, client, session, scenario):
        response = client.post("/api/orders", json={
            "memberId": scenario["buyer"],
            "productId": scenario["product"],
            "quantity": 1,
            "unitPrice": "0.01",
            "orderNo": "API-ORDER-PRICE",
        })
        body = response.json()
        assert body["code"] == 0
        assert body["data"]["pricing"]["originalAmount"] == "200.00"

        row = session.execute(select(orders).where(orders.c.order_no == "API-ORDER-PRICE")).first()
        assert Decimal(str(row.original_amount)) == Decimal("200.00")
        assert Decimal(str(row.final_price)) == Decimal("200.00")

    def test_unknown_order_commissions(self, client):
        response = client.get("/api/orders/NOPE/commissions")
        assert response.status_code == 404


class TestSettingsRoutes:
    """系统设置接口。"""

    def test_get_defaults(self, client):
        data = client.get("/api/settings/system").json()["data"]
        assert data["activeMemberCheckEnabled"] is False
        assert data["activeMemberCheckDays"] == 30

    def test_put_clamps(self, client):
        response = client.put("/api/settings/system", json={
            "activeMemberCheckEnabled": True,
            "activeMemberCheckDays": 0,
            "activeMemberCheckIntervalHours": 9999,
            "activeMemberCondition": "somethingElse",
        })
        data = response.json()["data"]
        assert data == {
            "activeMemberCheckEnabled": True,
            "activeMemberCheckDays": 30,
            "activeMemberCondition": "lastActiveAt",
            "activeMemberCheckIntervalHours": 720,
        }

    def test_manual_run_is_threadpool_route(self):
        # 同步路由由 FastAPI 放入线程池执行，批量更新不阻塞事件循环
        assert not inspect.iscoroutinefunction(run_active_member_check)

    def test_manual_run(self, client, seed):
        seed.member(last_active_days_ago=100, active=True)
        client.put("/api/settings/system", json={"activeMemberCheckEnabled": True})
        data = client.post("/api/settings/active-member-check/run").json()["data"]
        assert data["skipped"] is False
        assert data["deactivated"] == 1

"""
Recurring Billing Engine (RBE) - HTTP API Test Suite
Version: 1.0.0

Drives the FastAPI surface end to end against a fresh in-memory engine
with a controllable clock.
"""

import pytest
from fastapi.testclient import TestClient

import rbe_main_api
from rbe_config import BillingSettings
from rbe_asset_ledger_v1 import AssetLedgerError

ADMIN = "ADMIN-001"
MERCHANT = "MER-001"
SUBSCRIBER = "SUB-001"
ASSET = "TOKEN-T"
ENGINE = "RBE-ENGINE"
DAY = 86_400
T0 = 1_700_000_000

class FakeClock:
    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def state(monkeypatch, clock):
    settings = BillingSettings(
        administrator=ADMIN,
        engine_identity=ENGINE,
        min_interval=DAY,
        max_amount=100_000_000_000,
        min_allowance=1_000
    )
    app_state = rbe_main_api.AppState(settings=settings, clock=clock)
    app_state.asset_ledger.mint(ASSET, SUBSCRIBER, 1_000_000)
    app_state.asset_ledger.approve(ASSET, SUBSCRIBER, ENGINE, 1_000_000)
    monkeypatch.setattr(rbe_main_api, "app_state", app_state)
    return app_state

@pytest.fixture
def client(state):
    with TestClient(rbe_main_api.app) as test_client:
        yield test_client

def as_caller(identity: str):
    return {"X-Caller-Id": identity}

def subscribe(client, amount=200, interval=DAY, merchant=MERCHANT, caller=SUBSCRIBER):
    return client.post(
        "/api/v1/subscriptions",
        json={"merchant": merchant, "amount": amount, "interval": interval, "asset_ref": ASSET},
        headers=as_caller(caller)
    )

# ============================================
# HEALTH
# ============================================

class TestHealth:

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "operational"

    def test_health_counts_subscriptions(self, client):
        subscribe(client)

        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["total_subscriptions"] == 1
        assert body["active_subscriptions"] == 1
        assert body["decision_ledger_integrity"] is True
        assert body["notification_chain_integrity"] is True

    def test_metrics_endpoint(self, client):
        subscribe(client)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "rbe_subscriptions_created_total" in response.text

# ============================================
# SUBSCRIPTIONS
# ============================================

class TestSubscriptionEndpoints:

    def test_create_and_read(self, client):
        response = subscribe(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "active"
        assert body["last_charge_cursor"] == T0
        assert body["next_charge_time"] == T0 + DAY + 1

        read = client.get(f"/api/v1/subscriptions/{MERCHANT}/{SUBSCRIBER}").json()
        assert read == body

    def test_caller_header_required(self, client):
        response = client.post(
            "/api/v1/subscriptions",
            json={"merchant": MERCHANT, "amount": 200, "interval": DAY, "asset_ref": ASSET}
        )
        assert response.status_code == 422

    def test_create_without_allowance(self, client):
        response = subscribe(client, caller="SUB-UNFUNDED")

        assert response.status_code == 402
        assert response.json()["error"] == "AllowanceInsufficient"

    def test_duplicate_create(self, client):
        subscribe(client)

        response = subscribe(client)

        assert response.status_code == 409
        assert response.json()["error"] == "AlreadySubscribed"

    @pytest.mark.parametrize("amount,interval,error", [
        (150, DAY, "InvalidAmount"),
        (200, 60, "IntervalTooLow"),
        (100_000_000_100, DAY, "AmountTooHigh"),
    ])
    def test_rejected_terms(self, client, amount, interval, error):
        response = subscribe(client, amount=amount, interval=interval)

        assert response.status_code == 400
        assert response.json()["error"] == error

    def test_zero_interval_rejected_by_engine(self, client):
        response = subscribe(client, interval=0)

        assert response.status_code == 400
        assert response.json()["error"] == "IntervalTooLow"

    def test_negative_interval_rejected_at_the_edge(self, client):
        response = subscribe(client, interval=-5)
        assert response.status_code == 422

    def test_ledger_outage(self, client, state, monkeypatch):
        def unavailable(asset_ref, owner, spender):
            raise AssetLedgerError("ledger node unavailable")

        monkeypatch.setattr(state.asset_ledger, "allowance", unavailable)

        response = subscribe(client)

        assert response.status_code == 503
        assert response.json()["error"] == "LedgerUnavailable"

    def test_unknown_pair_reads_inactive(self, client):
        body = client.get(f"/api/v1/subscriptions/{MERCHANT}/NOBODY").json()

        assert body["amount"] == 0
        assert body["status"] == "inactive"
        assert body["next_charge_time"] is None

    def test_modify(self, client, clock):
        subscribe(client)
        clock.now = T0 + 500

        response = client.put(
            f"/api/v1/subscriptions/{MERCHANT}",
            json={"amount": 300, "interval": 2 * DAY, "asset_ref": ASSET},
            headers=as_caller(SUBSCRIBER)
        )

        assert response.status_code == 200
        assert response.json()["amount"] == 300
        assert response.json()["last_charge_cursor"] == T0 + 500

        modified = [n for n in client.get("/api/v1/notifications").json() if n["type"] == "subscription_modified"]
        assert len(modified) == 1
        assert modified[0]["timestamp"] == T0 + 500
        assert modified[0]["payload"] == {
            "merchant": MERCHANT,
            "subscriber": SUBSCRIBER,
            "amount": 300,
            "interval": 2 * DAY,
            "asset_ref": ASSET
        }

    def test_modify_unknown(self, client):
        response = client.put(
            f"/api/v1/subscriptions/{MERCHANT}",
            json={"amount": 300, "interval": DAY, "asset_ref": ASSET},
            headers=as_caller(SUBSCRIBER)
        )
        assert response.status_code == 404

    def test_subscriber_cancel(self, client):
        subscribe(client)

        response = client.delete(f"/api/v1/subscriptions/{MERCHANT}", headers=as_caller(SUBSCRIBER))

        assert response.status_code == 200
        assert response.json()["amount"] == 0

# ============================================
# MERCHANT VIEW
# ============================================

class TestMerchantEndpoints:

    def test_listing_scoped_to_caller(self, client):
        subscribe(client)

        own = client.get("/api/v1/merchant/subscribers", headers=as_caller(MERCHANT)).json()
        other = client.get("/api/v1/merchant/subscribers", headers=as_caller("MER-002")).json()

        assert [s["subscriber"] for s in own] == [SUBSCRIBER]
        assert other == []

    def test_merchant_cancel(self, client):
        subscribe(client)

        response = client.delete(f"/api/v1/merchant/subscribers/{SUBSCRIBER}", headers=as_caller(MERCHANT))

        assert response.json()["status"] == "inactive"

# ============================================
# CHARGING
# ============================================

class TestChargeEndpoint:

    def _charge(self, client):
        return client.post(
            f"/api/v1/subscriptions/{MERCHANT}/{SUBSCRIBER}/charge",
            headers=as_caller("RELAYER-001")
        )

    def test_charge_splits_commission(self, client, clock, state):
        subscribe(client)
        clock.now = T0 + DAY + 1

        response = self._charge(client)

        assert response.status_code == 200
        body = response.json()
        assert (body["gross"], body["net"], body["commission"]) == (200, 198, 2)
        assert body["subscription"]["last_charge_cursor"] == T0 + DAY
        assert state.asset_ledger.balance_of(ASSET, MERCHANT) == 198
        assert state.asset_ledger.balance_of(ASSET, ADMIN) == 2

    def test_early_charge(self, client, clock):
        subscribe(client)
        clock.now = T0 + DAY

        response = self._charge(client)

        assert response.status_code == 409
        assert response.json()["error"] == "PeriodNotElapsed"

    def test_charge_without_funds(self, client, clock, state):
        # Allowance granted but no balance behind it
        state.asset_ledger.approve(ASSET, "SUB-EMPTY", ENGINE, 1_000_000)
        subscribe(client, caller="SUB-EMPTY")
        clock.now = T0 + DAY + 1

        response = client.post(
            f"/api/v1/subscriptions/{MERCHANT}/SUB-EMPTY/charge",
            headers=as_caller("RELAYER-001")
        )

        assert response.status_code == 402
        assert response.json()["error"] == "TransferFailed"

    def test_notifications_feed(self, client, clock):
        subscribe(client)
        clock.now = T0 + DAY + 1
        self._charge(client)

        feed = client.get("/api/v1/notifications").json()
        tail = client.get("/api/v1/notifications", params={"since": 1}).json()

        assert [n["type"] for n in feed] == ["subscription_created", "subscription_charged"]
        assert [n["sequence"] for n in tail] == [1]

# ============================================
# GOVERNANCE
# ============================================

class TestGovernanceEndpoints:

    def test_read_governance(self, client):
        body = client.get("/api/v1/governance").json()
        assert body == {"administrator": ADMIN, "min_interval": DAY, "max_amount": 100_000_000_000}

    def test_raise_limits_requires_administrator(self, client):
        response = client.post(
            "/api/v1/governance/limits",
            json={"max_amount": 200_000_000_000, "min_interval": 3_600},
            headers=as_caller(MERCHANT)
        )
        assert response.status_code == 403
        assert response.json()["error"] == "NotAuthorized"

    def test_raise_limits(self, client):
        response = client.post(
            "/api/v1/governance/limits",
            json={"max_amount": 200_000_000_000, "min_interval": 3_600},
            headers=as_caller(ADMIN)
        )
        assert response.status_code == 200
        assert response.json()["min_interval"] == 3_600

    def test_floor_cannot_reach_zero(self, client):
        response = client.post(
            "/api/v1/governance/limits",
            json={"max_amount": 200_000_000_000, "min_interval": 0},
            headers=as_caller(ADMIN)
        )

        assert response.status_code == 400
        assert response.json()["error"] == "LimitsNotLoosened"
        assert client.get("/api/v1/governance").json()["min_interval"] == DAY

    def test_tightening_rejected(self, client):
        response = client.post(
            "/api/v1/governance/limits",
            json={"max_amount": 50_000_000_000, "min_interval": 3_600},
            headers=as_caller(ADMIN)
        )
        assert response.status_code == 400
        assert response.json()["error"] == "LimitsNotLoosened"

    def test_change_administrator(self, client):
        response = client.put(
            "/api/v1/governance/administrator",
            json={"new_administrator": "ADMIN-002"},
            headers=as_caller(ADMIN)
        )

        assert response.status_code == 200
        assert client.get("/api/v1/governance/administrator").json() == {"administrator": "ADMIN-002"}

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])

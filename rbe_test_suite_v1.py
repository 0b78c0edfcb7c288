"""
Recurring Billing Engine (RBE) - Test Suite
Version: 1.0.0

- Unit tests (invariant in isolation)
- Engine tests (lifecycle, charging, governance)
- Failure tests (rollback correctness)
- Concurrency tests (serialized charging)
"""

import pytest
from dataclasses import replace
from datetime import datetime
import threading

from rbe_enforcement_v1 import (
    Invariant,
    InvariantType,
    Criticality,
    InvariantEnforcer,
    DecisionLedger,
    EnforcementDecision,
    EnforcementResult,
    InvariantViolation,
    SystemCompromised,
    AllowanceInsufficient,
    AlreadySubscribed,
    InvalidAmount,
    IntervalTooLow,
    AmountTooHigh,
    SubscriptionNotFound,
    PeriodNotElapsed,
    TransferFailed,
    NotAuthorized,
    LimitsNotLoosened,
    LedgerUnavailable
)
from rbe_invariants_v1 import (
    AllowanceSufficient,
    NoActiveSubscription,
    AmountShapeValid,
    IntervalAboveFloor,
    AmountWithinCeiling,
    BillingPeriodElapsed,
    CommissionSplitExact,
    LimitsLoosened
)
from rbe_asset_ledger_v1 import AssetLedgerError, InMemoryAssetLedger
from rbe_subscription_registry_v1 import Subscription, SubscriptionRegistry, SubscriptionStatus
from rbe_notifications_v1 import NotificationLog, NotificationType
from rbe_governance_v1 import GovernanceState
from rbe_billing_engine_v1 import SubscriptionBillingEngine, split_charge
from rbe_metrics import metrics_registry
from rbe_config import BillingSettings

ADMIN = "ADMIN-001"
MERCHANT = "MER-001"
SUBSCRIBER = "SUB-001"
RELAYER = "RELAYER-001"
ASSET = "TOKEN-T"
ENGINE = "RBE-ENGINE"
DAY = 86_400
T0 = 1_700_000_000
FUNDING = 1_000_000

# ============================================
# MOCK SERVICES
# ============================================

class FakeClock:
    """Controllable unix-seconds clock."""

    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int):
        self.now += seconds

class RefusingAssetLedger(InMemoryAssetLedger):
    """Ledger that refuses (or errors on) transfers to one recipient."""

    def __init__(self, refuse_recipient: str, raise_error: bool = False):
        super().__init__()
        self.refuse_recipient = refuse_recipient
        self.raise_error = raise_error

    def transfer_from(self, asset_ref, spender, owner, recipient, amount):
        if recipient == self.refuse_recipient:
            if self.raise_error:
                raise AssetLedgerError("ledger node unavailable")
            return False
        return super().transfer_from(asset_ref, spender, owner, recipient, amount)

class UnreachableAssetLedger(InMemoryAssetLedger):
    """Ledger whose allowance query fails, as during an outage."""

    def allowance(self, asset_ref, owner, spender):
        raise AssetLedgerError("ledger node unavailable")

def fund(ledger: InMemoryAssetLedger, subscriber: str = SUBSCRIBER,
         balance: int = FUNDING, allowance: int = FUNDING):
    ledger.mint(ASSET, subscriber, balance)
    ledger.approve(ASSET, subscriber, ENGINE, allowance)

def build_engine(ledger=None, clock=None, min_allowance: int = 1_000, **governance) -> SubscriptionBillingEngine:
    if ledger is None:
        ledger = InMemoryAssetLedger()
        fund(ledger)
    return SubscriptionBillingEngine(
        GovernanceState(administrator=ADMIN, **governance),
        ledger,
        engine_identity=ENGINE,
        min_allowance=min_allowance,
        clock=clock or FakeClock()
    )

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def engine(clock):
    return build_engine(clock=clock)

# ============================================
# UNIT TESTS - SUBSCRIPTION INVARIANTS
# ============================================

class TestAllowanceSufficient:
    """Test INV-001: Allowance granted to the engine."""

    def test_pre_check_sufficient(self):
        inv = AllowanceSufficient()
        ledger = InMemoryAssetLedger()
        ledger.approve(ASSET, SUBSCRIBER, ENGINE, 5_000)

        assert inv.pre_check(asset_ledger=ledger, asset_ref=ASSET, subscriber=SUBSCRIBER,
                             engine_identity=ENGINE, min_allowance=5_000) == True

    def test_pre_check_insufficient(self):
        inv = AllowanceSufficient()
        ledger = InMemoryAssetLedger()
        ledger.approve(ASSET, SUBSCRIBER, ENGINE, 4_999)

        assert inv.pre_check(asset_ledger=ledger, asset_ref=ASSET, subscriber=SUBSCRIBER,
                             engine_identity=ENGINE, min_allowance=5_000) == False

    def test_allowance_for_other_spender_does_not_count(self):
        inv = AllowanceSufficient()
        ledger = InMemoryAssetLedger()
        ledger.approve(ASSET, SUBSCRIBER, "OTHER-SPENDER", 10_000)

        assert inv.pre_check(asset_ledger=ledger, asset_ref=ASSET, subscriber=SUBSCRIBER,
                             engine_identity=ENGINE, min_allowance=1) == False

class TestNoActiveSubscription:
    """Test INV-002: One active subscription per pair."""

    def test_unknown_pair_passes(self):
        inv = NoActiveSubscription()
        assert inv.pre_check(registry=SubscriptionRegistry(), merchant=MERCHANT, subscriber=SUBSCRIBER) == True

    def test_active_pair_fails(self):
        inv = NoActiveSubscription()
        registry = SubscriptionRegistry()
        registry.set(MERCHANT, SUBSCRIBER, Subscription(MERCHANT, SUBSCRIBER, SubscriptionStatus.ACTIVE, 200, DAY, ASSET, T0))

        assert inv.pre_check(registry=registry, merchant=MERCHANT, subscriber=SUBSCRIBER) == False

    def test_cancelled_pair_passes(self):
        inv = NoActiveSubscription()
        registry = SubscriptionRegistry()
        registry.set(MERCHANT, SUBSCRIBER, Subscription(MERCHANT, SUBSCRIBER, SubscriptionStatus.ACTIVE, 200, DAY, ASSET, T0))
        registry.clear_amount(MERCHANT, SUBSCRIBER)

        assert inv.pre_check(registry=registry, merchant=MERCHANT, subscriber=SUBSCRIBER) == True

class TestAmountShapeValid:
    """Test INV-004: Amounts are positive multiples of 100."""

    @pytest.mark.parametrize("amount", [100, 200, 12_300, 100_000_000_000])
    def test_valid_amounts(self, amount):
        assert AmountShapeValid().pre_check(amount=amount) == True

    @pytest.mark.parametrize("amount", [0, 1, 99, 150, 201])
    def test_invalid_amounts(self, amount):
        assert AmountShapeValid().pre_check(amount=amount) == False

class TestGovernanceLimits:
    """Test INV-005 / INV-006: Interval floor and amount ceiling."""

    def test_interval_at_floor_passes(self):
        governance = GovernanceState(administrator=ADMIN)
        assert IntervalAboveFloor().pre_check(interval=DAY, governance=governance) == True

    def test_interval_below_floor_fails(self):
        governance = GovernanceState(administrator=ADMIN)
        assert IntervalAboveFloor().pre_check(interval=DAY - 1, governance=governance) == False

    @pytest.mark.parametrize("interval", [0, -5])
    def test_non_positive_interval_fails_even_without_floor(self, interval):
        governance = GovernanceState(administrator=ADMIN, min_interval=0)
        assert IntervalAboveFloor().pre_check(interval=interval, governance=governance) == False

    def test_amount_at_ceiling_passes(self):
        governance = GovernanceState(administrator=ADMIN, max_amount=10_000)
        assert AmountWithinCeiling().pre_check(amount=10_000, governance=governance) == True

    def test_amount_above_ceiling_fails(self):
        governance = GovernanceState(administrator=ADMIN, max_amount=10_000)
        assert AmountWithinCeiling().pre_check(amount=10_100, governance=governance) == False

class TestBillingPeriodElapsed:
    """Test INV-101: Charge only after a full interval."""

    def _registry(self):
        registry = SubscriptionRegistry()
        registry.set(MERCHANT, SUBSCRIBER, Subscription(MERCHANT, SUBSCRIBER, SubscriptionStatus.ACTIVE, 200, DAY, ASSET, T0))
        return registry

    def test_exactly_one_interval_is_not_enough(self):
        inv = BillingPeriodElapsed()
        assert inv.pre_check(registry=self._registry(), merchant=MERCHANT, subscriber=SUBSCRIBER, now=T0 + DAY) == False

    def test_one_second_past_interval_passes(self):
        inv = BillingPeriodElapsed()
        assert inv.pre_check(registry=self._registry(), merchant=MERCHANT, subscriber=SUBSCRIBER, now=T0 + DAY + 1) == True

class TestCommissionSplit:
    """Test INV-202: Legs sum to the gross amount."""

    @pytest.mark.parametrize("amount", [100, 200, 9_900, 12_300, 100_000_000_000])
    def test_split_is_exact(self, amount):
        net, commission = split_charge(amount)
        assert net + commission == amount
        assert commission == amount // 100

    def test_post_check_detects_leak(self):
        inv = CommissionSplitExact()
        result = {
            'gross': 200,
            'legs': [{'amount': 198}, {'amount': 1}]
        }
        assert inv.post_check(result) == False

class TestLimitsLoosened:
    """Test INV-302: Limits only loosen."""

    @pytest.mark.parametrize("new_max,new_min,expected", [
        (200_000_000_000, 3_600, True),
        (100_000_000_000, 3_600, False),   # ceiling unchanged
        (200_000_000_000, DAY, False),     # floor unchanged
        (50_000_000_000, 3_600, False),    # ceiling tightened
        (200_000_000_000, 2 * DAY, False), # floor tightened
        (200_000_000_000, 0, False),       # floor dropped to zero
        (200_000_000_000, -10, False),     # floor negative
    ])
    def test_pre_check(self, new_max, new_min, expected):
        governance = GovernanceState(administrator=ADMIN)
        result = LimitsLoosened().pre_check(new_max_amount=new_max, new_min_interval=new_min, governance=governance)
        assert result == expected

# ============================================
# ENFORCER & DECISION LEDGER
# ============================================

class _FlagInvariant(Invariant):
    def __init__(self, id, dependencies, passes=True, rollback_raises=False):
        super().__init__(
            id=id,
            statement=f"{id} holds",
            type=InvariantType.STATE,
            criticality=Criticality.IMPORTANT,
            dependencies=dependencies,
            owner="tests"
        )
        self.passes = passes
        self.rollback_raises = rollback_raises

    def pre_check(self, **kwargs) -> bool:
        return self.passes

    def rollback_action(self, state_before):
        if self.rollback_raises:
            raise RuntimeError("cannot undo")

class TestInvariantEnforcer:

    def test_dependency_chain_fixes_order(self):
        enforcer = InvariantEnforcer(
            [AmountWithinCeiling(), IntervalAboveFloor(), AmountShapeValid()],
            DecisionLedger()
        )
        assert [inv.id for inv in enforcer.sorted_invariants] == [
            "inv_004_amount_shape",
            "inv_005_interval_floor",
            "inv_006_amount_ceiling",
        ]

    def test_circular_dependency_rejected(self):
        with pytest.raises(InvariantViolation):
            InvariantEnforcer(
                [_FlagInvariant("a", ["b"]), _FlagInvariant("b", ["a"])],
                DecisionLedger()
            )

    def test_failed_pre_check_skips_action(self):
        calls = []
        enforcer = InvariantEnforcer([_FlagInvariant("a", [], passes=False)], DecisionLedger())

        with pytest.raises(InvariantViolation):
            enforcer.enforce_action(lambda **kwargs: calls.append(kwargs))

        assert calls == []

    def test_rollback_failure_is_system_compromised(self):
        enforcer = InvariantEnforcer([_FlagInvariant("a", [], rollback_raises=True)], DecisionLedger())

        def failing_action(**kwargs):
            raise ValueError("boom")

        with pytest.raises(SystemCompromised):
            enforcer.enforce_action(failing_action)

    def test_decisions_are_signed_and_recorded(self):
        ledger = DecisionLedger()
        enforcer = InvariantEnforcer([_FlagInvariant("a", []), _FlagInvariant("b", ["a"])], ledger)

        enforcer.enforce_action(lambda **kwargs: {})

        assert [(d.invariant_id, d.check_type) for d in ledger.entries] == [
            ("a", "PRE"), ("b", "PRE"), ("a", "POST"), ("b", "POST")
        ]
        assert ledger.verify_chain_integrity()

    def test_forged_decision_rejected(self):
        ledger = DecisionLedger()
        forged = EnforcementDecision(
            invariant_id="a",
            check_type="PRE",
            result=True,
            action=EnforcementResult.PROCEED,
            timestamp=datetime.now(),
            operation="tests",
            signature="0" * 64
        )
        with pytest.raises(SystemCompromised):
            ledger.record(forged)

# ============================================
# ENGINE TESTS - LIFECYCLE
# ============================================

class TestCreateSubscription:

    def test_create_reflects_terms_and_cursor(self, engine):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)

        subscription = engine.read_subscription(MERCHANT, SUBSCRIBER)
        assert subscription.is_active
        assert subscription.amount == 200
        assert subscription.interval == DAY
        assert subscription.asset_ref == ASSET
        assert subscription.last_charge_cursor == T0

    def test_create_emits_notification(self, engine):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)

        created = engine.notifications.of_type(NotificationType.SUBSCRIPTION_CREATED)
        assert len(created) == 1
        assert created[0].payload == {
            'merchant': MERCHANT,
            'subscriber': SUBSCRIBER,
            'amount': 200,
            'interval': DAY,
            'asset_ref': ASSET
        }

    def test_allowance_checked_first(self, clock):
        ledger = InMemoryAssetLedger()
        fund(ledger, allowance=999)
        engine = build_engine(ledger=ledger, clock=clock, min_allowance=1_000)

        # Every other check would also fail
        with pytest.raises(AllowanceInsufficient):
            engine.create_subscription(SUBSCRIBER, 150, 1, MERCHANT, ASSET)

    def test_uniqueness_checked_before_amount(self, engine):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)

        with pytest.raises(AlreadySubscribed):
            engine.create_subscription(SUBSCRIBER, 150, 1, MERCHANT, ASSET)

    def test_amount_shape_checked_before_interval(self, engine):
        with pytest.raises(InvalidAmount):
            engine.create_subscription(SUBSCRIBER, 150, 1, MERCHANT, ASSET)

    def test_interval_checked_before_ceiling(self, engine):
        with pytest.raises(IntervalTooLow):
            engine.create_subscription(SUBSCRIBER, 200_000_000_000, DAY - 1, MERCHANT, ASSET)

    def test_amount_ceiling(self, engine):
        with pytest.raises(AmountTooHigh):
            engine.create_subscription(SUBSCRIBER, 100_000_000_100, DAY, MERCHANT, ASSET)

    def test_zero_amount_rejected(self, engine):
        with pytest.raises(InvalidAmount):
            engine.create_subscription(SUBSCRIBER, 0, DAY, MERCHANT, ASSET)

    @pytest.mark.parametrize("interval", [0, -5])
    def test_non_positive_interval_rejected_without_floor(self, clock, interval):
        engine = build_engine(clock=clock, min_interval=0)

        with pytest.raises(IntervalTooLow):
            engine.create_subscription(SUBSCRIBER, 200, interval, MERCHANT, ASSET)

        assert engine.registry.get(MERCHANT, SUBSCRIBER) is None

    def test_ledger_outage_is_not_reported_as_missing_allowance(self, clock):
        engine = build_engine(ledger=UnreachableAssetLedger(), clock=clock)

        with pytest.raises(LedgerUnavailable):
            engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)

        assert engine.registry.get(MERCHANT, SUBSCRIBER) is None
        assert [d.invariant_id for d in engine.decision_ledger.failures()] == ["inv_001_allowance_sufficient"]

    def test_failed_create_leaves_no_trace(self, engine):
        with pytest.raises(InvalidAmount):
            engine.create_subscription(SUBSCRIBER, 150, DAY, MERCHANT, ASSET)

        assert engine.registry.get(MERCHANT, SUBSCRIBER) is None
        assert engine.notifications.entries == []

    def test_same_subscriber_many_merchants(self, engine):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)
        engine.create_subscription(SUBSCRIBER, 300, DAY, "MER-002", ASSET)

        assert engine.read_subscription("MER-002", SUBSCRIBER).amount == 300
        assert [s.subscriber for s in engine.read_merchant_subscriptions(MERCHANT)] == [SUBSCRIBER]

class TestModifySubscription:

    def test_modify_unknown_subscription(self, engine):
        with pytest.raises(SubscriptionNotFound):
            engine.modify_subscription(SUBSCRIBER, MERCHANT, 200, DAY, ASSET)

    def test_modify_cancelled_subscription(self, engine):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)
        engine.cancel_by_subscriber(SUBSCRIBER, MERCHANT)

        with pytest.raises(SubscriptionNotFound):
            engine.modify_subscription(SUBSCRIBER, MERCHANT, 200, DAY, ASSET)

    def test_modify_overwrites_terms_and_restarts_period(self, engine, clock):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)
        clock.advance(1_000)

        subscription = engine.modify_subscription(SUBSCRIBER, MERCHANT, 500, 2 * DAY, "TOKEN-U")

        assert (subscription.amount, subscription.interval, subscription.asset_ref) == (500, 2 * DAY, "TOKEN-U")
        assert subscription.last_charge_cursor == T0 + 1_000

    def test_modify_forfeits_elapsed_period(self, engine, clock):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)
        clock.advance(1_000)
        engine.modify_subscription(SUBSCRIBER, MERCHANT, 200, DAY, ASSET)
        clock.now = T0 + DAY + 1

        with pytest.raises(PeriodNotElapsed):
            engine.charge(RELAYER, MERCHANT, SUBSCRIBER)

    def test_modify_validates_terms(self, engine):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)

        with pytest.raises(InvalidAmount):
            engine.modify_subscription(SUBSCRIBER, MERCHANT, 250, DAY, ASSET)
        with pytest.raises(IntervalTooLow):
            engine.modify_subscription(SUBSCRIBER, MERCHANT, 200, 60, ASSET)
        with pytest.raises(AmountTooHigh):
            engine.modify_subscription(SUBSCRIBER, MERCHANT, 100_000_000_100, DAY, ASSET)

        assert engine.read_subscription(MERCHANT, SUBSCRIBER).amount == 200

    def test_modify_scoped_to_caller(self, engine):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)

        with pytest.raises(SubscriptionNotFound):
            engine.modify_subscription("SUB-999", MERCHANT, 500, DAY, ASSET)

    def test_modify_emits_notification(self, engine, clock):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)
        clock.advance(1_000)

        engine.modify_subscription(SUBSCRIBER, MERCHANT, 500, 2 * DAY, "TOKEN-U")

        modified = engine.notifications.of_type(NotificationType.SUBSCRIPTION_MODIFIED)
        assert len(modified) == 1
        assert modified[0].timestamp == T0 + 1_000
        assert modified[0].payload == {
            'merchant': MERCHANT,
            'subscriber': SUBSCRIBER,
            'amount': 500,
            'interval': 2 * DAY,
            'asset_ref': "TOKEN-U"
        }

    def test_rejected_modify_emits_nothing(self, engine):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)

        with pytest.raises(IntervalTooLow):
            engine.modify_subscription(SUBSCRIBER, MERCHANT, 200, -5, ASSET)

        assert engine.notifications.of_type(NotificationType.SUBSCRIPTION_MODIFIED) == []
        assert engine.read_subscription(MERCHANT, SUBSCRIBER).interval == DAY

class TestCancel:

    def test_subscriber_cancels(self, engine):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)

        engine.cancel_by_subscriber(SUBSCRIBER, MERCHANT)

        subscription = engine.read_subscription(MERCHANT, SUBSCRIBER)
        assert subscription.amount == 0
        assert subscription.status is SubscriptionStatus.INACTIVE

    def test_merchant_cancels(self, engine):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)

        engine.cancel_by_merchant(MERCHANT, SUBSCRIBER)

        assert engine.read_subscription(MERCHANT, SUBSCRIBER).amount == 0
        cancelled = engine.notifications.of_type(NotificationType.SUBSCRIPTION_CANCELLED)
        assert cancelled[0].payload['initiator'] == "merchant"

    def test_cancel_is_idempotent(self, engine):
        engine.cancel_by_subscriber(SUBSCRIBER, MERCHANT)
        engine.cancel_by_subscriber(SUBSCRIBER, MERCHANT)

        assert engine.read_subscription(MERCHANT, SUBSCRIBER).amount == 0
        assert len(engine.notifications.of_type(NotificationType.SUBSCRIPTION_CANCELLED)) == 2

    def test_merchant_cannot_cancel_other_merchants_subscriber(self, engine):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)

        engine.cancel_by_merchant("MER-002", SUBSCRIBER)

        assert engine.read_subscription(MERCHANT, SUBSCRIBER).is_active

    def test_cancel_then_create_round_trip(self, engine, clock):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)
        clock.advance(DAY + 1)
        engine.charge(RELAYER, MERCHANT, SUBSCRIBER)
        engine.cancel_by_subscriber(SUBSCRIBER, MERCHANT)
        clock.advance(10)

        engine.create_subscription(SUBSCRIBER, 400, 2 * DAY, MERCHANT, ASSET)

        subscription = engine.read_subscription(MERCHANT, SUBSCRIBER)
        assert (subscription.amount, subscription.interval) == (400, 2 * DAY)
        assert subscription.last_charge_cursor == T0 + DAY + 11

class TestReadAccessors:

    def test_unknown_pair_reads_as_zero_amount(self, engine):
        subscription = engine.read_subscription(MERCHANT, "NOBODY")
        assert subscription.amount == 0
        assert not subscription.is_active
        assert engine.read_next_charge_time(MERCHANT, "NOBODY") is None

    def test_next_charge_time(self, engine):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)
        assert engine.read_next_charge_time(MERCHANT, SUBSCRIBER) == T0 + DAY + 1

    def test_read_limits_is_a_copy(self, engine):
        limits = engine.read_limits()
        limits.max_amount = 1

        assert engine.governance.max_amount == 100_000_000_000

# ============================================
# ENGINE TESTS - CHARGING
# ============================================

class TestCharge:

    def test_reference_scenario(self, engine, clock):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)
        assert engine.read_subscription(MERCHANT, SUBSCRIBER).last_charge_cursor == T0

        clock.now = T0 + DAY + 1
        receipt = engine.charge(RELAYER, MERCHANT, SUBSCRIBER)

        ledger = engine.asset_ledger
        assert (receipt['net'], receipt['commission']) == (198, 2)
        assert ledger.balance_of(ASSET, MERCHANT) == 198
        assert ledger.balance_of(ASSET, ADMIN) == 2
        assert ledger.balance_of(ASSET, SUBSCRIBER) == FUNDING - 200
        assert engine.read_subscription(MERCHANT, SUBSCRIBER).last_charge_cursor == T0 + DAY

        clock.now = T0 + DAY + 2
        with pytest.raises(PeriodNotElapsed):
            engine.charge(RELAYER, MERCHANT, SUBSCRIBER)

        engine.cancel_by_subscriber(SUBSCRIBER, MERCHANT)
        assert engine.read_subscription(MERCHANT, SUBSCRIBER).amount == 0

    def test_early_charge_changes_nothing(self, engine, clock):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)
        clock.now = T0 + DAY
        balances_before = engine.asset_ledger.snapshot()

        with pytest.raises(PeriodNotElapsed):
            engine.charge(RELAYER, MERCHANT, SUBSCRIBER)

        assert engine.asset_ledger.snapshot() == balances_before
        assert engine.read_subscription(MERCHANT, SUBSCRIBER).last_charge_cursor == T0

    def test_charge_unknown_subscription(self, engine, clock):
        clock.advance(10 * DAY)
        with pytest.raises(SubscriptionNotFound):
            engine.charge(RELAYER, MERCHANT, SUBSCRIBER)

    def test_charge_cancelled_subscription(self, engine, clock):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)
        engine.cancel_by_merchant(MERCHANT, SUBSCRIBER)
        clock.advance(10 * DAY)

        with pytest.raises(SubscriptionNotFound):
            engine.charge(RELAYER, MERCHANT, SUBSCRIBER)

    def test_back_to_back_charges_succeed_once(self, engine, clock):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)
        clock.advance(DAY + 1)

        engine.charge(RELAYER, MERCHANT, SUBSCRIBER)
        with pytest.raises(PeriodNotElapsed):
            engine.charge("RELAYER-002", MERCHANT, SUBSCRIBER)

        assert engine.asset_ledger.balance_of(ASSET, MERCHANT) == 198

    def test_late_charges_keep_cadence_grid(self, engine, clock):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)
        clock.now = T0 + 3 * DAY + 5

        for period in range(1, 4):
            receipt = engine.charge(RELAYER, MERCHANT, SUBSCRIBER)
            assert receipt['subscription'].last_charge_cursor == T0 + period * DAY

        with pytest.raises(PeriodNotElapsed):
            engine.charge(RELAYER, MERCHANT, SUBSCRIBER)

    def test_commission_goes_to_current_administrator(self, engine, clock):
        engine.create_subscription(SUBSCRIBER, 10_000, DAY, MERCHANT, ASSET)
        engine.change_administrator(ADMIN, "ADMIN-002")
        clock.advance(DAY + 1)

        engine.charge(RELAYER, MERCHANT, SUBSCRIBER)

        assert engine.asset_ledger.balance_of(ASSET, "ADMIN-002") == 100
        assert engine.asset_ledger.balance_of(ASSET, ADMIN) == 0

    def test_charge_notification(self, engine, clock):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)
        clock.advance(DAY + 1)

        engine.charge(RELAYER, MERCHANT, SUBSCRIBER)

        charged = engine.notifications.of_type(NotificationType.SUBSCRIPTION_CHARGED)
        assert charged[0].payload['amount'] == 200
        assert charged[0].payload['relayer'] == RELAYER

    def test_charge_metrics(self, engine, clock):
        labels = {'asset_ref': ASSET}
        before = metrics_registry.get_sample_value('rbe_charges_completed_total', labels) or 0.0
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)
        clock.advance(DAY + 1)

        engine.charge(RELAYER, MERCHANT, SUBSCRIBER)

        assert metrics_registry.get_sample_value('rbe_charges_completed_total', labels) == before + 1

# ============================================
# FAILURE / ROLLBACK TESTS
# ============================================

class TestChargeAtomicity:

    def _engine_with(self, ledger, clock):
        fund(ledger)
        engine = build_engine(ledger=ledger, clock=clock)
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)
        clock.advance(DAY + 1)
        return engine

    def test_commission_leg_refused_rolls_back_net_leg(self, clock):
        ledger = RefusingAssetLedger(refuse_recipient=ADMIN)
        engine = self._engine_with(ledger, clock)
        balances_before = ledger.snapshot()

        with pytest.raises(TransferFailed):
            engine.charge(RELAYER, MERCHANT, SUBSCRIBER)

        assert ledger.snapshot() == balances_before
        assert ledger.balance_of(ASSET, MERCHANT) == 0
        assert engine.read_subscription(MERCHANT, SUBSCRIBER).last_charge_cursor == T0

    def test_ledger_error_is_transfer_failed(self, clock):
        ledger = RefusingAssetLedger(refuse_recipient=ADMIN, raise_error=True)
        engine = self._engine_with(ledger, clock)

        with pytest.raises(TransferFailed):
            engine.charge(RELAYER, MERCHANT, SUBSCRIBER)

        assert ledger.balance_of(ASSET, SUBSCRIBER) == FUNDING

    def test_insufficient_balance(self, clock):
        ledger = InMemoryAssetLedger()
        fund(ledger, balance=150)
        engine = build_engine(ledger=ledger, clock=clock)
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)
        clock.advance(DAY + 1)

        with pytest.raises(TransferFailed):
            engine.charge(RELAYER, MERCHANT, SUBSCRIBER)

        assert ledger.balance_of(ASSET, SUBSCRIBER) == 150
        assert engine.notifications.of_type(NotificationType.SUBSCRIPTION_CHARGED) == []

    def test_retry_after_topping_up_allowance(self, clock):
        ledger = InMemoryAssetLedger()
        fund(ledger, allowance=1_000)
        engine = build_engine(ledger=ledger, clock=clock, min_allowance=1_000)
        engine.create_subscription(SUBSCRIBER, 800, DAY, MERCHANT, ASSET)
        clock.advance(DAY + 1)
        engine.charge(RELAYER, MERCHANT, SUBSCRIBER)
        clock.advance(DAY)

        # Only 200 allowance left for an 800 charge
        with pytest.raises(TransferFailed):
            engine.charge(RELAYER, MERCHANT, SUBSCRIBER)

        ledger.approve(ASSET, SUBSCRIBER, ENGINE, 1_000)
        engine.charge(RELAYER, MERCHANT, SUBSCRIBER)

        assert ledger.balance_of(ASSET, MERCHANT) == 2 * 792

# ============================================
# GOVERNANCE TESTS
# ============================================

class TestGovernance:

    def test_change_administrator(self, engine):
        engine.change_administrator(ADMIN, "ADMIN-002")

        assert engine.read_administrator() == "ADMIN-002"
        changed = engine.notifications.of_type(NotificationType.ADMINISTRATOR_CHANGED)
        assert changed[0].payload == {'previous_administrator': ADMIN, 'new_administrator': "ADMIN-002"}

    def test_change_administrator_requires_administrator(self, engine):
        with pytest.raises(NotAuthorized):
            engine.change_administrator(MERCHANT, MERCHANT)

        assert engine.read_administrator() == ADMIN

    def test_old_administrator_loses_rights(self, engine):
        engine.change_administrator(ADMIN, "ADMIN-002")

        with pytest.raises(NotAuthorized):
            engine.raise_limits(ADMIN, 200_000_000_000, 3_600)

    def test_raise_limits_authorization_checked_first(self, engine):
        with pytest.raises(NotAuthorized):
            engine.raise_limits(MERCHANT, 1, 10 * DAY)

    def test_raise_limits_requires_both_directions(self, engine):
        with pytest.raises(LimitsNotLoosened):
            engine.raise_limits(ADMIN, 200_000_000_000, DAY)
        with pytest.raises(LimitsNotLoosened):
            engine.raise_limits(ADMIN, 100_000_000_000, 3_600)

        limits = engine.read_limits()
        assert (limits.max_amount, limits.min_interval) == (100_000_000_000, DAY)

    @pytest.mark.parametrize("new_min_interval", [0, -10])
    def test_interval_floor_stays_positive(self, engine, new_min_interval):
        with pytest.raises(LimitsNotLoosened):
            engine.raise_limits(ADMIN, 200_000_000_000, new_min_interval)

        limits = engine.read_limits()
        assert (limits.max_amount, limits.min_interval) == (100_000_000_000, DAY)

    def test_lowest_floor_still_allows_one_charge_per_period(self, engine, clock):
        engine.raise_limits(ADMIN, 200_000_000_000, 1)
        engine.create_subscription(SUBSCRIBER, 200, 1, MERCHANT, ASSET)
        clock.advance(2)

        engine.charge(RELAYER, MERCHANT, SUBSCRIBER)
        for _ in range(4):
            with pytest.raises(PeriodNotElapsed):
                engine.charge(RELAYER, MERCHANT, SUBSCRIBER)

        assert engine.asset_ledger.balance_of(ASSET, MERCHANT) == 198

    def test_raise_limits_is_monotonic(self, engine):
        history = [engine.read_limits()]
        for new_max, new_min in ((200_000_000_000, 3_600), (300_000_000_000, 60)):
            engine.raise_limits(ADMIN, new_max, new_min)
            history.append(engine.read_limits())

        for older, newer in zip(history, history[1:]):
            assert newer.max_amount > older.max_amount
            assert newer.min_interval < older.min_interval

    def test_loosened_limits_apply_to_new_writes(self, engine):
        engine.raise_limits(ADMIN, 200_000_000_000, 3_600)

        subscription = engine.create_subscription(SUBSCRIBER, 150_000_000_000, 3_600, MERCHANT, ASSET)

        assert subscription.interval == 3_600
        changed = engine.notifications.of_type(NotificationType.LIMITS_CHANGED)
        assert changed[0].payload['max_amount'] == 200_000_000_000

# ============================================
# REGISTRY & NOTIFICATION LOG
# ============================================

class TestSubscriptionRegistry:

    def test_clear_amount_on_unknown_pair_is_noop(self):
        registry = SubscriptionRegistry()
        registry.clear_amount(MERCHANT, SUBSCRIBER)
        assert registry.get(MERCHANT, SUBSCRIBER) is None

    def test_clear_amount_keeps_record(self):
        registry = SubscriptionRegistry()
        registry.set(MERCHANT, SUBSCRIBER, Subscription(MERCHANT, SUBSCRIBER, SubscriptionStatus.ACTIVE, 200, DAY, ASSET, T0))

        registry.clear_amount(MERCHANT, SUBSCRIBER)

        record = registry.get(MERCHANT, SUBSCRIBER)
        assert (record.amount, record.interval, record.last_charge_cursor) == (0, DAY, T0)

    def test_merchant_scoping(self):
        registry = SubscriptionRegistry()
        registry.set(MERCHANT, SUBSCRIBER, Subscription(MERCHANT, SUBSCRIBER))
        registry.set("MER-002", "SUB-002", Subscription("MER-002", "SUB-002"))

        assert [s.subscriber for s in registry.list_for_merchant("MER-002")] == ["SUB-002"]

class TestNotificationLog:

    def test_chain_integrity(self, engine, clock):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)
        clock.advance(DAY + 1)
        engine.charge(RELAYER, MERCHANT, SUBSCRIBER)
        engine.cancel_by_subscriber(SUBSCRIBER, MERCHANT)

        assert [e.sequence for e in engine.notifications.entries] == [0, 1, 2]
        assert engine.notifications.verify_chain_integrity()

    def test_tampering_detected(self):
        log = NotificationLog()
        log.emit(NotificationType.SUBSCRIPTION_CHARGED, T0, amount=200)
        log.emit(NotificationType.SUBSCRIPTION_CHARGED, T0 + DAY, amount=200)

        log.entries[0] = replace(log.entries[0], payload={'amount': 20_000})

        assert not log.verify_chain_integrity()

    def test_entries_since(self):
        log = NotificationLog()
        for i in range(3):
            log.emit(NotificationType.SUBSCRIPTION_CANCELLED, T0 + i, merchant=MERCHANT)

        assert [e.sequence for e in log.entries_since(1)] == [1, 2]

    def test_retention_keeps_sequence_and_chain(self):
        log = NotificationLog(max_entries=2)
        for i in range(5):
            log.emit(NotificationType.SUBSCRIPTION_CHARGED, T0 + i, amount=200)

        assert [e.sequence for e in log.entries] == [3, 4]
        assert [e.sequence for e in log.entries_since(0)] == [3, 4]
        assert [e.sequence for e in log.entries_since(4)] == [4]
        assert log.verify_chain_integrity()

        log.entries[0] = replace(log.entries[0], payload={'amount': 20_000})
        assert not log.verify_chain_integrity()

class TestDecisionLedgerRetention:

    def test_oldest_decisions_dropped(self):
        ledger = DecisionLedger(max_entries=3)
        enforcer = InvariantEnforcer([_FlagInvariant("a", []), _FlagInvariant("b", ["a"])], ledger)

        enforcer.enforce_action(lambda **kwargs: {})
        enforcer.enforce_action(lambda **kwargs: {})

        assert len(ledger.entries) == 3
        assert [(d.invariant_id, d.check_type) for d in ledger.entries] == [
            ("b", "PRE"), ("a", "POST"), ("b", "POST")
        ]
        assert ledger.verify_chain_integrity()

    def test_settings_wire_retention(self):
        settings = BillingSettings(
            administrator=ADMIN,
            engine_identity=ENGINE,
            decision_ledger_max_entries=10,
            notification_max_entries=2
        )

        engine = SubscriptionBillingEngine.from_settings(settings, InMemoryAssetLedger())

        assert engine.decision_ledger.max_entries == 10
        assert engine.notifications.max_entries == 2

# ============================================
# CONCURRENCY TESTS
# ============================================

class TestConcurrency:

    def test_parallel_relayers_charge_once(self, engine, clock):
        engine.create_subscription(SUBSCRIBER, 200, DAY, MERCHANT, ASSET)
        clock.advance(DAY + 1)

        barrier = threading.Barrier(8)
        outcomes = []
        outcomes_lock = threading.Lock()

        def relay(name):
            barrier.wait()
            try:
                engine.charge(name, MERCHANT, SUBSCRIBER)
                outcome = "charged"
            except PeriodNotElapsed:
                outcome = "rejected"
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=relay, args=(f"RELAYER-{i}",)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("charged") == 1
        assert outcomes.count("rejected") == 7
        assert engine.asset_ledger.balance_of(ASSET, MERCHANT) == 198

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])

"""
Recurring Billing Engine (RBE) - Subscription & Governance Invariants
Version: 1.0.0

Concrete invariants enforced by the billing engine and the governance
service. Each invariant names the error kind raised when its pre-check
fails; dependency chains fix the order in which callers see failures.
"""

from typing import Any, Dict

from rbe_enforcement_v1 import (
    Invariant,
    InvariantType,
    Criticality,
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
    LedgerUnavailable,
    logger
)
from rbe_asset_ledger_v1 import AssetLedgerError

AMOUNT_GRANULARITY = 100

# ============================================
# SUBSCRIPTION STATE INVARIANTS
# ============================================

class AllowanceSufficient(Invariant):
    """INV-001: Subscriber granted the engine a standing allowance."""

    violation = AllowanceInsufficient

    def __init__(self):
        super().__init__(
            id="inv_001_allowance_sufficient",
            statement="It is FORBIDDEN to register a subscription without a sufficient spending allowance to the engine",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="billing_engine"
        )

    def pre_check(self, asset_ledger, asset_ref: str, subscriber: str,
                  engine_identity: str, min_allowance: int, **kwargs) -> bool:
        try:
            allowance = asset_ledger.allowance(asset_ref, subscriber, engine_identity)
        except AssetLedgerError as e:
            raise LedgerUnavailable(f"Allowance query for {subscriber} on {asset_ref} failed: {e}") from e
        valid = allowance >= min_allowance

        logger.info(f"PRE-CHECK {self.id}: subscriber={subscriber}, asset={asset_ref}, allowance={allowance}, required={min_allowance}, valid={valid}")
        return valid

    def describe_failure(self, subscriber: str = "", asset_ref: str = "", **kwargs) -> str:
        return f"{subscriber} has not approved a sufficient {asset_ref} allowance"

class NoActiveSubscription(Invariant):
    """INV-002: At most one active subscription per merchant/subscriber pair."""

    violation = AlreadySubscribed

    def __init__(self):
        super().__init__(
            id="inv_002_no_active_subscription",
            statement="It is FORBIDDEN to create a second active subscription for the same merchant and subscriber",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_001_allowance_sufficient"],
            owner="billing_engine"
        )

    def pre_check(self, registry, merchant: str, subscriber: str, **kwargs) -> bool:
        current = registry.get(merchant, subscriber)
        active = current is not None and current.is_active

        logger.info(f"PRE-CHECK {self.id}: pair={merchant}/{subscriber}, active={active}")
        return not active

    def describe_failure(self, merchant: str = "", subscriber: str = "", **kwargs) -> str:
        return f"{subscriber} already has an active subscription to {merchant}"

class SubscriptionExists(Invariant):
    """INV-003: Modification and charging require an active subscription."""

    violation = SubscriptionNotFound

    def __init__(self):
        super().__init__(
            id="inv_003_subscription_exists",
            statement="It is FORBIDDEN to modify or charge a subscription that is not active",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="billing_engine"
        )

    def pre_check(self, registry, merchant: str, subscriber: str, **kwargs) -> bool:
        current = registry.get(merchant, subscriber)
        active = current is not None and current.is_active

        logger.info(f"PRE-CHECK {self.id}: pair={merchant}/{subscriber}, active={active}")
        return active

    def describe_failure(self, merchant: str = "", subscriber: str = "", **kwargs) -> str:
        return f"No active subscription from {subscriber} to {merchant}"

class AmountShapeValid(Invariant):
    """INV-004: Amounts are positive multiples of 100 base units."""

    violation = InvalidAmount

    def __init__(self):
        super().__init__(
            id="inv_004_amount_shape",
            statement="The system MUST always ensure subscription amounts are nonzero multiples of 100 base units",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_002_no_active_subscription"],
            owner="billing_engine"
        )

    def pre_check(self, amount: int, **kwargs) -> bool:
        valid = amount > 0 and amount % AMOUNT_GRANULARITY == 0
        logger.info(f"PRE-CHECK {self.id}: amount={amount}, valid={valid}")
        return valid

    def describe_failure(self, amount: int = 0, **kwargs) -> str:
        return f"Amount {amount} is not a positive multiple of {AMOUNT_GRANULARITY}"

class IntervalAboveFloor(Invariant):
    """INV-005: Interval respects the governance minimum at write time."""

    violation = IntervalTooLow

    def __init__(self):
        super().__init__(
            id="inv_005_interval_floor",
            statement="It is FORBIDDEN to set a billing interval that is not positive or is below the governance minimum",
            type=InvariantType.GOVERNANCE,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_004_amount_shape"],
            owner="governance"
        )

    def pre_check(self, interval: int, governance, **kwargs) -> bool:
        # A non-positive interval would never move the cursor forward
        valid = interval > 0 and interval >= governance.min_interval
        logger.info(f"PRE-CHECK {self.id}: interval={interval}s, floor={governance.min_interval}s, valid={valid}")
        return valid

    def describe_failure(self, interval: int = 0, governance=None, **kwargs) -> str:
        return f"Interval {interval}s is below the minimum of {max(governance.min_interval, 1)}s"

class AmountWithinCeiling(Invariant):
    """INV-006: Amount respects the governance maximum at write time."""

    violation = AmountTooHigh

    def __init__(self):
        super().__init__(
            id="inv_006_amount_ceiling",
            statement="It is FORBIDDEN to set a subscription amount above the governance maximum",
            type=InvariantType.GOVERNANCE,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_005_interval_floor"],
            owner="governance"
        )

    def pre_check(self, amount: int, governance, **kwargs) -> bool:
        valid = amount <= governance.max_amount
        logger.info(f"PRE-CHECK {self.id}: amount={amount}, ceiling={governance.max_amount}, valid={valid}")
        return valid

    def describe_failure(self, amount: int = 0, governance=None, **kwargs) -> str:
        return f"Amount {amount} exceeds the maximum of {governance.max_amount}"

# ============================================
# TEMPORAL INVARIANTS
# ============================================

class BillingPeriodElapsed(Invariant):
    """INV-101: At most one charge per billing period."""

    violation = PeriodNotElapsed

    def __init__(self):
        super().__init__(
            id="inv_101_period_elapsed",
            statement="It is FORBIDDEN to charge before a full interval has elapsed since the billing cursor",
            type=InvariantType.TEMPORAL,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_003_subscription_exists"],
            owner="billing_engine"
        )

    def pre_check(self, registry, merchant: str, subscriber: str, now: int, **kwargs) -> bool:
        subscription = registry.get(merchant, subscriber)
        elapsed = now - subscription.last_charge_cursor
        valid = elapsed > subscription.interval

        logger.info(f"PRE-CHECK {self.id}: pair={merchant}/{subscriber}, elapsed={elapsed}s, interval={subscription.interval}s, valid={valid}")
        return valid

    def describe_failure(self, registry=None, merchant: str = "", subscriber: str = "", **kwargs) -> str:
        subscription = registry.get(merchant, subscriber)
        return f"Billing period for {merchant}/{subscriber} opens after {subscription.next_charge_time() - 1}"

# ============================================
# TRANSITION INVARIANTS
# ============================================

class AtomicChargeLegs(Invariant):
    """INV-201: Both charge legs and the cursor advance commit together or not at all."""

    violation = TransferFailed

    def __init__(self):
        super().__init__(
            id="inv_201_atomic_charge",
            statement="The system MUST always ensure both transfers and the cursor advance complete or all roll back",
            type=InvariantType.TRANSITION,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_101_period_elapsed"],
            owner="billing_engine"
        )

    def pre_check(self, **kwargs) -> bool:
        # Ledger outcomes are only known once the legs execute
        return True

    def post_check(self, result: Any, **kwargs) -> bool:
        before = result['subscription_before']
        after = result['subscription_after']

        legs_complete = len(result['legs']) == 2
        cursor_advanced = after.last_charge_cursor == before.last_charge_cursor + before.interval
        terms_untouched = (after.amount, after.interval, after.asset_ref) == (before.amount, before.interval, before.asset_ref)

        atomic = legs_complete and cursor_advanced and terms_untouched
        logger.info(f"POST-CHECK {self.id}: legs_complete={legs_complete}, cursor_advanced={cursor_advanced}, terms_untouched={terms_untouched}, atomic={atomic}")
        return atomic

    def rollback_action(self, state_before: Dict[str, Any]):
        asset_ledger = state_before['asset_ledger']
        asset_ledger.restore_balances(state_before['balances_snapshot'])

        registry = state_before['registry']
        registry.restore(
            state_before['merchant'],
            state_before['subscriber'],
            state_before['subscription_before']
        )

        logger.critical(f"ROLLBACK {self.id}: Discarded charge legs for {state_before['merchant']}/{state_before['subscriber']}")

class CommissionSplitExact(Invariant):
    """INV-202: Net leg plus commission leg equals the gross amount."""

    def __init__(self):
        super().__init__(
            id="inv_202_commission_split",
            statement="The system MUST always route exactly the gross amount across merchant and administrator legs",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_201_atomic_charge"],
            owner="billing_engine"
        )

    def pre_check(self, **kwargs) -> bool:
        return True

    def post_check(self, result: Any, **kwargs) -> bool:
        gross = result['gross']
        routed = sum(leg['amount'] for leg in result['legs'])
        exact = routed == gross

        logger.info(f"POST-CHECK {self.id}: gross={gross}, routed={routed}, exact={exact}")
        if not exact:
            logger.critical(f"COMMISSION SPLIT DISCREPANCY: gross {gross}, routed {routed}")
        return exact

# ============================================
# SECURITY / GOVERNANCE INVARIANTS
# ============================================

class AdministratorOnly(Invariant):
    """INV-301: Governance changes are reserved to the administrator."""

    violation = NotAuthorized

    def __init__(self):
        super().__init__(
            id="inv_301_administrator_only",
            statement="It is FORBIDDEN for any identity other than the administrator to change governance state",
            type=InvariantType.SECURITY,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="governance"
        )

    def pre_check(self, caller: str, governance, **kwargs) -> bool:
        authorized = caller == governance.administrator

        logger.info(f"PRE-CHECK {self.id}: caller={caller}, authorized={authorized}")
        if not authorized:
            logger.warning(f"AUTHORIZATION VIOLATION: {caller} attempted a governance change")
        return authorized

    def describe_failure(self, caller: str = "", **kwargs) -> str:
        return f"{caller} is not the administrator"

class LimitsLoosened(Invariant):
    """INV-302: Limits only ever move towards permitting more."""

    violation = LimitsNotLoosened

    def __init__(self):
        super().__init__(
            id="inv_302_limits_loosened",
            statement="It is FORBIDDEN to tighten either limit or to drop the interval floor below one second",
            type=InvariantType.GOVERNANCE,
            criticality=Criticality.CRITICAL,
            dependencies=["inv_301_administrator_only"],
            owner="governance"
        )

    def pre_check(self, new_max_amount: int, new_min_interval: int, governance, **kwargs) -> bool:
        loosened = (
            new_max_amount > governance.max_amount
            and 0 < new_min_interval < governance.min_interval
        )

        logger.info(f"PRE-CHECK {self.id}: max {governance.max_amount}->{new_max_amount}, min_interval {governance.min_interval}->{new_min_interval}, loosened={loosened}")
        return loosened

    def describe_failure(self, new_max_amount: int = 0, new_min_interval: int = 0, governance=None, **kwargs) -> str:
        return (
            f"Limits must strictly loosen: max_amount {governance.max_amount} -> {new_max_amount}, "
            f"min_interval {governance.min_interval} -> {new_min_interval} (floor must stay positive)"
        )

"""
Recurring Billing Engine (RBE) - Subscription Lifecycle & Billing Service
Version: 1.0.0

Registration, modification, cancellation and time-gated charging of
merchant/subscriber subscriptions, with a 1% commission routed to the
administrator on every charge.
"""

from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple
import threading
import time

from rbe_enforcement_v1 import (
    InvariantEnforcer,
    DecisionLedger,
    InvariantViolation,
    TransferFailed,
    logger
)
from rbe_invariants_v1 import (
    AllowanceSufficient,
    NoActiveSubscription,
    SubscriptionExists,
    AmountShapeValid,
    IntervalAboveFloor,
    AmountWithinCeiling,
    BillingPeriodElapsed,
    AtomicChargeLegs,
    CommissionSplitExact
)
from rbe_asset_ledger_v1 import AssetLedger, AssetLedgerError, InMemoryAssetLedger
from rbe_subscription_registry_v1 import Subscription, SubscriptionRegistry, SubscriptionStatus
from rbe_notifications_v1 import NotificationLog, NotificationType
from rbe_governance_v1 import GovernanceService, GovernanceState
from rbe_metrics import (
    subscription_created_counter,
    subscription_modified_counter,
    subscription_cancelled_counter,
    record_charge_completed,
    record_charge_failed
)

DEFAULT_ENGINE_IDENTITY = "RBE-ENGINE"
DEFAULT_MIN_ALLOWANCE = 100_000_000_000

NET_SHARE_PERCENT = 99

def split_charge(amount: int) -> Tuple[int, int]:
    """Return (net to merchant, commission to administrator)."""
    net = amount * NET_SHARE_PERCENT // 100
    return net, amount - net

# ============================================
# BILLING ENGINE
# ============================================

class SubscriptionBillingEngine:
    """Subscription state machine over the registry and governance state.

    Every operation takes the caller identity explicitly and runs under one
    re-entrant lock, so no two operations interleave their reads and
    writes. Failed operations leave registry, governance state and ledger
    balances exactly as they were.
    """

    def __init__(
        self,
        governance: GovernanceState,
        asset_ledger: AssetLedger,
        registry: Optional[SubscriptionRegistry] = None,
        notifications: Optional[NotificationLog] = None,
        decision_ledger: Optional[DecisionLedger] = None,
        engine_identity: str = DEFAULT_ENGINE_IDENTITY,
        min_allowance: int = DEFAULT_MIN_ALLOWANCE,
        clock: Optional[Callable[[], int]] = None
    ):
        self.asset_ledger = asset_ledger
        self.registry = registry or SubscriptionRegistry()
        self.notifications = notifications or NotificationLog()
        self.decision_ledger = decision_ledger or DecisionLedger()
        self.engine_identity = engine_identity
        self.min_allowance = min_allowance
        self.clock = clock or (lambda: int(time.time()))
        self.lock = threading.RLock()

        self.governance_service = GovernanceService(
            governance,
            self.decision_ledger,
            self.notifications,
            clock=self.clock,
            lock=self.lock
        )

        self.create_enforcer = InvariantEnforcer(
            [
                AllowanceSufficient(),
                NoActiveSubscription(),
                AmountShapeValid(),
                IntervalAboveFloor(),
                AmountWithinCeiling()
            ],
            self.decision_ledger,
            operation="create_subscription"
        )
        self.modify_enforcer = InvariantEnforcer(
            [
                SubscriptionExists(),
                AmountShapeValid(),
                IntervalAboveFloor(),
                AmountWithinCeiling()
            ],
            self.decision_ledger,
            operation="modify_subscription"
        )
        self.charge_enforcer = InvariantEnforcer(
            [
                SubscriptionExists(),
                BillingPeriodElapsed(),
                AtomicChargeLegs(),
                CommissionSplitExact()
            ],
            self.decision_ledger,
            operation="charge"
        )

        logger.info(f"[BILLING_ENGINE] Initialized as {engine_identity} (min_allowance={min_allowance})")

    @classmethod
    def from_settings(cls, settings, asset_ledger: AssetLedger,
                      clock: Optional[Callable[[], int]] = None) -> "SubscriptionBillingEngine":
        governance = GovernanceState(
            administrator=settings.administrator,
            min_interval=settings.min_interval,
            max_amount=settings.max_amount
        )
        return cls(
            governance,
            asset_ledger,
            notifications=NotificationLog(max_entries=settings.notification_max_entries),
            decision_ledger=DecisionLedger(
                settings.decision_secret.get_secret_value().encode(),
                max_entries=settings.decision_ledger_max_entries
            ),
            engine_identity=settings.engine_identity,
            min_allowance=settings.min_allowance,
            clock=clock
        )

    @property
    def governance(self) -> GovernanceState:
        return self.governance_service.state

    # Governance

    def change_administrator(self, caller: str, new_administrator: str) -> GovernanceState:
        return self.governance_service.change_administrator(caller, new_administrator)

    def raise_limits(self, caller: str, new_max_amount: int, new_min_interval: int) -> GovernanceState:
        return self.governance_service.raise_limits(caller, new_max_amount, new_min_interval)

    # Lifecycle

    def create_subscription(self, caller: str, amount: int, interval: int,
                            merchant: str, asset_ref: str) -> Subscription:
        """
        Register a subscription of ``caller`` (the subscriber) to ``merchant``.

        Checks, in order: allowance, no active subscription, amount shape,
        interval floor, amount ceiling. The billing cursor starts now.
        """
        with self.lock:
            subscriber = caller
            now = self.clock()

            def _create_action(**kwargs) -> Dict[str, Any]:
                subscription = Subscription(
                    merchant=merchant,
                    subscriber=subscriber,
                    status=SubscriptionStatus.ACTIVE,
                    amount=amount,
                    interval=interval,
                    asset_ref=asset_ref,
                    last_charge_cursor=now
                )
                self.registry.set(merchant, subscriber, subscription)
                return {'subscription': subscription}

            result = self.create_enforcer.enforce_action(
                _create_action,
                asset_ledger=self.asset_ledger,
                registry=self.registry,
                governance=self.governance,
                engine_identity=self.engine_identity,
                min_allowance=self.min_allowance,
                merchant=merchant,
                subscriber=subscriber,
                amount=amount,
                interval=interval,
                asset_ref=asset_ref,
                now=now
            )

            self.notifications.emit(
                NotificationType.SUBSCRIPTION_CREATED,
                now,
                merchant=merchant,
                subscriber=subscriber,
                amount=amount,
                interval=interval,
                asset_ref=asset_ref
            )
            subscription_created_counter.labels(asset_ref=asset_ref).inc()
            return result['subscription']

    def modify_subscription(self, caller: str, merchant: str, amount: int,
                            interval: int, asset_ref: str) -> Subscription:
        """
        Overwrite the terms of ``caller``'s active subscription to ``merchant``.

        The billing period restarts: the cursor resets to now and any
        partially elapsed period is forfeited.
        """
        with self.lock:
            subscriber = caller
            now = self.clock()

            def _modify_action(**kwargs) -> Dict[str, Any]:
                subscription = replace(
                    self.registry.get(merchant, subscriber),
                    amount=amount,
                    interval=interval,
                    asset_ref=asset_ref,
                    last_charge_cursor=now
                )
                self.registry.set(merchant, subscriber, subscription)
                return {'subscription': subscription}

            result = self.modify_enforcer.enforce_action(
                _modify_action,
                registry=self.registry,
                governance=self.governance,
                merchant=merchant,
                subscriber=subscriber,
                amount=amount,
                interval=interval,
                asset_ref=asset_ref,
                now=now
            )

            self.notifications.emit(
                NotificationType.SUBSCRIPTION_MODIFIED,
                now,
                merchant=merchant,
                subscriber=subscriber,
                amount=amount,
                interval=interval,
                asset_ref=asset_ref
            )
            subscription_modified_counter.labels(asset_ref=asset_ref).inc()
            return result['subscription']

    def cancel_by_merchant(self, caller: str, subscriber: str) -> Subscription:
        """Merchant ``caller`` drops ``subscriber``."""
        return self._cancel(merchant=caller, subscriber=subscriber, initiator="merchant")

    def cancel_by_subscriber(self, caller: str, merchant: str) -> Subscription:
        """Subscriber ``caller`` leaves ``merchant``."""
        return self._cancel(merchant=merchant, subscriber=caller, initiator="subscriber")

    def _cancel(self, merchant: str, subscriber: str, initiator: str) -> Subscription:
        # Idempotent: cancelling an inactive pair still succeeds
        with self.lock:
            self.registry.clear_amount(merchant, subscriber)
            self.notifications.emit(
                NotificationType.SUBSCRIPTION_CANCELLED,
                self.clock(),
                merchant=merchant,
                subscriber=subscriber,
                initiator=initiator
            )
            subscription_cancelled_counter.labels(initiator=initiator).inc()
            logger.info(f"[BILLING_ENGINE] Cancelled {merchant}/{subscriber} by {initiator}")
            return self.read_subscription(merchant, subscriber)

    # Charging

    def charge(self, caller: str, merchant: str, subscriber: str) -> Dict[str, Any]:
        """
        Bill one period of the merchant/subscriber subscription.

        Anyone may call. Two transfers run through the asset ledger: the
        net amount to the merchant, then the commission to the
        administrator. The cursor advances by exactly one interval, keeping
        the cadence grid fixed even when charges run late. If either leg
        fails the ledger is restored from its pre-charge snapshot, the
        cursor stays put and ``TransferFailed`` is raised.
        """
        with self.lock:
            now = self.clock()
            administrator = self.governance.administrator
            subscription_before = self.registry.get(merchant, subscriber)
            balances_snapshot = self.asset_ledger.snapshot()

            def _charge_action(**kwargs) -> Dict[str, Any]:
                gross = subscription_before.amount
                net, commission = split_charge(gross)

                legs = []
                for leg_type, recipient, leg_amount in (
                    ("NET", merchant, net),
                    ("COMMISSION", administrator, commission)
                ):
                    logger.info(f"[CHARGE] Leg {len(legs) + 1}/2 ({leg_type}): {subscriber} → {recipient} {leg_amount}")
                    self._transfer_leg(subscription_before.asset_ref, subscriber, recipient, leg_amount)
                    legs.append({'leg_type': leg_type, 'recipient': recipient, 'amount': leg_amount})

                subscription_after = replace(
                    subscription_before,
                    last_charge_cursor=subscription_before.last_charge_cursor + subscription_before.interval
                )
                self.registry.set(merchant, subscriber, subscription_after)

                return {
                    'subscription_before': subscription_before,
                    'subscription_after': subscription_after,
                    'legs': legs,
                    'gross': gross,
                    'net': net,
                    'commission': commission
                }

            try:
                result = self.charge_enforcer.enforce_action(
                    _charge_action,
                    asset_ledger=self.asset_ledger,
                    registry=self.registry,
                    merchant=merchant,
                    subscriber=subscriber,
                    caller=caller,
                    now=now,
                    subscription_before=subscription_before,
                    balances_snapshot=balances_snapshot
                )
            except InvariantViolation as e:
                record_charge_failed(type(e).__name__)
                raise

            subscription_after = result['subscription_after']
            self.notifications.emit(
                NotificationType.SUBSCRIPTION_CHARGED,
                now,
                merchant=merchant,
                subscriber=subscriber,
                amount=result['gross'],
                net=result['net'],
                commission=result['commission'],
                asset_ref=subscription_after.asset_ref,
                period_start=subscription_after.last_charge_cursor,
                relayer=caller
            )
            record_charge_completed(subscription_after.asset_ref, result['gross'], result['commission'])
            logger.info(f"[CHARGE] ✅ {merchant}/{subscriber} charged {result['gross']}, cursor={subscription_after.last_charge_cursor}")

            return {
                'subscription': subscription_after,
                'gross': result['gross'],
                'net': result['net'],
                'commission': result['commission']
            }

    def _transfer_leg(self, asset_ref: str, subscriber: str, recipient: str, amount: int):
        try:
            succeeded = self.asset_ledger.transfer_from(
                asset_ref, self.engine_identity, subscriber, recipient, amount
            )
        except AssetLedgerError as e:
            raise TransferFailed(f"Ledger error moving {amount} {asset_ref} from {subscriber} to {recipient}: {e}") from e

        if not succeeded:
            raise TransferFailed(f"Ledger refused moving {amount} {asset_ref} from {subscriber} to {recipient}")

    # Read accessors

    def read_administrator(self) -> str:
        with self.lock:
            return self.governance.administrator

    def read_limits(self) -> GovernanceState:
        with self.lock:
            return replace(self.governance)

    def read_subscription(self, merchant: str, subscriber: str) -> Subscription:
        """Stored record, or a zero-amount inactive record for unknown pairs."""
        with self.lock:
            subscription = self.registry.get(merchant, subscriber)
            return subscription or Subscription.inactive(merchant, subscriber)

    def read_merchant_subscriptions(self, merchant: str) -> List[Subscription]:
        with self.lock:
            return self.registry.list_for_merchant(merchant)

    def read_next_charge_time(self, merchant: str, subscriber: str) -> Optional[int]:
        return self.read_subscription(merchant, subscriber).next_charge_time()

# ============================================
# DEMONSTRATION
# ============================================

def demonstrate_billing():
    """Walk one subscription through create, charge, early charge and cancel."""

    print("\n" + "="*80)
    print("RECURRING BILLING ENGINE - DEMONSTRATION")
    print("="*80 + "\n")

    t0 = 1_700_000_000
    current = {'now': t0}

    ledger = InMemoryAssetLedger()
    ledger.mint("TOKEN-T", "SUB-001", 10_000)
    ledger.approve("TOKEN-T", "SUB-001", DEFAULT_ENGINE_IDENTITY, DEFAULT_MIN_ALLOWANCE)

    engine = SubscriptionBillingEngine(
        GovernanceState(administrator="ADMIN-001"),
        ledger,
        clock=lambda: current['now']
    )

    subscription = engine.create_subscription("SUB-001", 200, 86_400, "MER-001", "TOKEN-T")
    print(f"Created: {subscription.to_dict()}")

    current['now'] = t0 + 86_400 + 1
    receipt = engine.charge("RELAYER-001", "MER-001", "SUB-001")
    print(f"Charged: net={receipt['net']}, commission={receipt['commission']}, cursor={receipt['subscription'].last_charge_cursor}")

    current['now'] = t0 + 86_400 + 2
    try:
        engine.charge("RELAYER-001", "MER-001", "SUB-001")
        print("❌ Second charge in the same period was allowed")
    except InvariantViolation as e:
        print(f"✅ Second charge blocked: {type(e).__name__}")

    engine.cancel_by_subscriber("SUB-001", "MER-001")
    print(f"After cancel: amount={engine.read_subscription('MER-001', 'SUB-001').amount}")

    print("\nBalances:")
    for account in ("SUB-001", "MER-001", "ADMIN-001"):
        print(f"  {account}: {ledger.balance_of('TOKEN-T', account)}")
    print(f"Notifications: {len(engine.notifications.entries)} (chain intact: {engine.notifications.verify_chain_integrity()})")

if __name__ == "__main__":
    demonstrate_billing()

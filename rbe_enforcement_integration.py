"""
Recurring Billing Engine - Enforcement Layer Integration
Re-exports engine components for API usage
"""

# Core enforcement
from rbe_enforcement_v1 import (
    Invariant,
    InvariantType,
    Criticality,
    InvariantEnforcer,
    DecisionLedger,
    EnforcementDecision,
    EnforcementResult,

    # Exceptions
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
    LedgerUnavailable,

    # Logging
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
    CommissionSplitExact,
    AdministratorOnly,
    LimitsLoosened
)

# Services
from rbe_asset_ledger_v1 import AssetLedger, AssetLedgerError, InMemoryAssetLedger
from rbe_subscription_registry_v1 import Subscription, SubscriptionRegistry, SubscriptionStatus
from rbe_notifications_v1 import Notification, NotificationLog, NotificationType
from rbe_governance_v1 import GovernanceService, GovernanceState
from rbe_billing_engine_v1 import SubscriptionBillingEngine, split_charge

__all__ = [
    # Core classes
    'Invariant',
    'InvariantType',
    'Criticality',
    'InvariantEnforcer',
    'DecisionLedger',
    'EnforcementDecision',
    'EnforcementResult',

    # Exceptions
    'InvariantViolation',
    'SystemCompromised',
    'AllowanceInsufficient',
    'AlreadySubscribed',
    'InvalidAmount',
    'IntervalTooLow',
    'AmountTooHigh',
    'SubscriptionNotFound',
    'PeriodNotElapsed',
    'TransferFailed',
    'NotAuthorized',
    'LimitsNotLoosened',
    'LedgerUnavailable',

    # Invariants
    'AllowanceSufficient',
    'NoActiveSubscription',
    'SubscriptionExists',
    'AmountShapeValid',
    'IntervalAboveFloor',
    'AmountWithinCeiling',
    'BillingPeriodElapsed',
    'AtomicChargeLegs',
    'CommissionSplitExact',
    'AdministratorOnly',
    'LimitsLoosened',

    # Services
    'AssetLedger',
    'AssetLedgerError',
    'InMemoryAssetLedger',
    'Subscription',
    'SubscriptionRegistry',
    'SubscriptionStatus',
    'Notification',
    'NotificationLog',
    'NotificationType',
    'GovernanceService',
    'GovernanceState',
    'SubscriptionBillingEngine',
    'split_charge',

    # Logging
    'logger'
]

"""
Recurring Billing Engine (RBE) - Governance Service
Version: 1.0.0

Administrator identity and the two global limits. Changes are reserved to
the administrator and limits may only be loosened.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Optional
import threading
import time

from rbe_enforcement_v1 import (
    InvariantEnforcer,
    DecisionLedger,
    logger
)
from rbe_invariants_v1 import AdministratorOnly, LimitsLoosened
from rbe_notifications_v1 import NotificationLog, NotificationType
from rbe_metrics import governance_change_counter, update_governance_limits

DEFAULT_MIN_INTERVAL = 86_400
DEFAULT_MAX_AMOUNT = 100_000_000_000

# ============================================
# DATA MODELS
# ============================================

@dataclass
class GovernanceState:
    """Explicit policy object handed to every engine operation."""
    administrator: str
    min_interval: int = DEFAULT_MIN_INTERVAL
    max_amount: int = DEFAULT_MAX_AMOUNT

    def to_dict(self) -> Dict:
        return {
            'administrator': self.administrator,
            'min_interval': self.min_interval,
            'max_amount': self.max_amount
        }

# ============================================
# GOVERNANCE SERVICE
# ============================================

class GovernanceService:
    """Administrator-only mutation of governance state."""

    def __init__(
        self,
        state: GovernanceState,
        decision_ledger: DecisionLedger,
        notifications: NotificationLog,
        clock: Optional[Callable[[], int]] = None,
        lock: Optional[threading.RLock] = None
    ):
        self.state = state
        self.decision_ledger = decision_ledger
        self.notifications = notifications
        self.clock = clock or (lambda: int(time.time()))
        self.lock = lock or threading.RLock()

        self.admin_enforcer = InvariantEnforcer(
            [AdministratorOnly()], decision_ledger, operation="change_administrator"
        )
        self.limits_enforcer = InvariantEnforcer(
            [AdministratorOnly(), LimitsLoosened()], decision_ledger, operation="raise_limits"
        )

        update_governance_limits(state.max_amount, state.min_interval)
        logger.info(f"[GOVERNANCE] Initialized: administrator={state.administrator}, min_interval={state.min_interval}s, max_amount={state.max_amount}")

    def change_administrator(self, caller: str, new_administrator: str) -> GovernanceState:
        """Hand the administrator role to ``new_administrator``."""
        with self.lock:
            previous = self.state.administrator

            def _change_action(**kwargs):
                self.state.administrator = new_administrator
                return {'governance': self.state}

            self.admin_enforcer.enforce_action(
                _change_action,
                caller=caller,
                governance=self.state
            )

            self.notifications.emit(
                NotificationType.ADMINISTRATOR_CHANGED,
                self.clock(),
                previous_administrator=previous,
                new_administrator=new_administrator
            )
            governance_change_counter.labels(change_type="administrator").inc()
            logger.info(f"[GOVERNANCE] Administrator changed: {previous} -> {new_administrator}")
            return self.state

    def raise_limits(self, caller: str, new_max_amount: int, new_min_interval: int) -> GovernanceState:
        """Loosen both limits at once: a higher ceiling and a lower floor."""
        with self.lock:
            previous_max = self.state.max_amount
            previous_min = self.state.min_interval

            def _raise_action(**kwargs):
                self.state.max_amount = new_max_amount
                self.state.min_interval = new_min_interval
                return {'governance': self.state}

            self.limits_enforcer.enforce_action(
                _raise_action,
                caller=caller,
                governance=self.state,
                new_max_amount=new_max_amount,
                new_min_interval=new_min_interval
            )

            self.notifications.emit(
                NotificationType.LIMITS_CHANGED,
                self.clock(),
                previous_max_amount=previous_max,
                previous_min_interval=previous_min,
                max_amount=new_max_amount,
                min_interval=new_min_interval
            )
            governance_change_counter.labels(change_type="limits").inc()
            update_governance_limits(new_max_amount, new_min_interval)
            logger.info(f"[GOVERNANCE] Limits loosened: max_amount {previous_max}->{new_max_amount}, min_interval {previous_min}->{new_min_interval}")
            return self.state

"""
Recurring Billing Engine (RBE) - Enforcement Layer
Version: 1.0.0

Base invariant machinery shared by the governance and billing services:
error kinds, signed decision records, the append-only decision ledger and
the dependency-ordered enforcer that runs pre-checks, actions, post-checks
and rollbacks.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Type
from enum import Enum
import hmac
import logging
from abc import ABC, abstractmethod

from rbe_metrics import record_invariant_check, record_rollback

# ============================================
# SYSTEM CONFIGURATION
# ============================================

DEFAULT_DECISION_SECRET = b"RBE_DECISION_SECRET_ROTATE_QUARTERLY"

class InvariantType(Enum):
    STATE = "state"
    TRANSITION = "transition"
    TEMPORAL = "temporal"
    SECURITY = "security"
    FINANCIAL = "financial"
    GOVERNANCE = "governance"

class Criticality(Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"
    OPTIONAL = "optional"

class EnforcementResult(Enum):
    PROCEED = "proceed"
    REJECT = "reject"
    ROLLBACK = "rollback"

# ============================================
# LOGGING SETUP
# ============================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("RBE.Enforcement")

# ============================================
# EXCEPTIONS
# ============================================

class InvariantViolation(Exception):
    """Raised when an invariant is violated."""
    pass

class SystemCompromised(Exception):
    """Raised when rollback fails - system integrity lost."""
    pass

class AllowanceInsufficient(InvariantViolation):
    """Subscriber has not granted the engine a sufficient spending allowance."""

class AlreadySubscribed(InvariantViolation):
    """An active subscription already exists for the merchant/subscriber pair."""

class InvalidAmount(InvariantViolation):
    """Amount is zero or not a multiple of 100 base units."""

class IntervalTooLow(InvariantViolation):
    """Interval is below the governance minimum."""

class AmountTooHigh(InvariantViolation):
    """Amount is above the governance maximum."""

class SubscriptionNotFound(InvariantViolation):
    """No active subscription for the merchant/subscriber pair."""

class PeriodNotElapsed(InvariantViolation):
    """The current billing period has not elapsed yet."""

class TransferFailed(InvariantViolation):
    """A charge leg was refused by the asset ledger."""

class NotAuthorized(InvariantViolation):
    """Caller lacks the capability required by the operation."""

class LimitsNotLoosened(InvariantViolation):
    """Proposed governance limits do not strictly loosen both bounds."""

class LedgerUnavailable(InvariantViolation):
    """The asset ledger could not answer a query needed to validate the operation."""

# ============================================
# ENFORCEMENT DECISION RECORD
# ============================================

def sign_decision(secret: bytes, invariant_id: str, result: bool, timestamp: datetime) -> str:
    """HMAC-SHA256 over the decision's identifying fields."""
    data = f"{invariant_id}:{result}:{timestamp.isoformat()}"
    return hmac.new(secret, data.encode(), 'sha256').hexdigest()

@dataclass
class EnforcementDecision:
    """Immutable record of enforcement decision."""
    invariant_id: str
    check_type: str  # "PRE" | "POST"
    result: bool
    action: EnforcementResult
    timestamp: datetime
    operation: str
    signature: str

    def verify_signature(self, secret: bytes) -> bool:
        """Verify cryptographic signature."""
        expected = sign_decision(secret, self.invariant_id, self.result, self.timestamp)
        return hmac.compare_digest(self.signature, expected)

# ============================================
# DECISION LEDGER
# ============================================

class DecisionLedger:
    """Immutable, append-only ledger of all enforcement decisions.

    Entries are held in memory. With ``max_entries`` set only the most
    recent decisions are retained; older ones are dropped oldest first.
    """

    def __init__(self, secret: bytes = DEFAULT_DECISION_SECRET, max_entries: Optional[int] = None):
        self.secret = secret
        self.max_entries = max_entries
        self.entries: List[EnforcementDecision] = []

    def record(self, decision: EnforcementDecision):
        """Append decision to ledger (write-only)."""
        if not decision.verify_signature(self.secret):
            raise SystemCompromised("Invalid signature on enforcement decision")

        self.entries.append(decision)
        if self.max_entries is not None and len(self.entries) > self.max_entries:
            del self.entries[:-self.max_entries]
        logger.info(f"LEDGER: Recorded {decision.check_type} for {decision.invariant_id}: {decision.result}")

    def failures(self) -> List[EnforcementDecision]:
        return [entry for entry in self.entries if not entry.result]

    def verify_chain_integrity(self) -> bool:
        """Verify ledger has not been tampered with."""
        return all(entry.verify_signature(self.secret) for entry in self.entries)

# ============================================
# BASE INVARIANT CLASS
# ============================================

class Invariant(ABC):
    """Base class for all invariants.

    ``violation`` is the error kind raised by the enforcer when the
    pre-check of this invariant fails.
    """

    violation: Type[InvariantViolation] = InvariantViolation

    def __init__(
        self,
        id: str,
        statement: str,
        type: InvariantType,
        criticality: Criticality,
        dependencies: List[str],
        owner: str
    ):
        self.id = id
        self.statement = statement
        self.type = type
        self.criticality = criticality
        self.dependencies = dependencies
        self.owner = owner

    @abstractmethod
    def pre_check(self, **kwargs) -> bool:
        """Execute before action. Returns True if action can proceed."""
        pass

    def post_check(self, result: Any, **kwargs) -> bool:
        """Execute after action. Returns True if invariant still holds."""
        return True

    def rollback_action(self, state_before: Dict[str, Any]):
        """Undo the action's effects. Validation-only invariants have nothing to undo."""
        pass

    def describe_failure(self, **kwargs) -> str:
        return f"{self.id}: {self.statement}"

# ============================================
# INVARIANT ENFORCER
# ============================================

class InvariantEnforcer:
    """Non-bypassable enforcement layer."""

    def __init__(self, invariants: List[Invariant], ledger: DecisionLedger, operation: str = "action"):
        self.invariants = invariants
        self.ledger = ledger
        self.operation = operation
        self.sorted_invariants = self._topological_sort(invariants)

    def _topological_sort(self, invariants: List[Invariant]) -> List[Invariant]:
        """Sort invariants by dependency order, keeping list order among peers.

        Dependencies on invariants outside this enforcer are treated as
        already satisfied.
        """
        sorted_invs = []
        remaining = [inv.id for inv in invariants]

        while remaining:
            ready = [
                inv for inv in invariants
                if inv.id in remaining and all(dep not in remaining for dep in inv.dependencies)
            ]

            if not ready:
                raise InvariantViolation("Circular dependency detected in invariants")

            # Release one invariant per round so a declared chain is never
            # reordered by list position.
            first = ready[0]
            sorted_invs.append(first)
            remaining.remove(first.id)

        return sorted_invs

    def enforce_action(self, action: Callable, *args, **kwargs) -> Any:
        """Execute action with full invariant enforcement.

        Pre-checks run first, in dependency order; the first failing check
        raises its own error kind and nothing is executed. If the action
        raises, or a post-check fails, every invariant's rollback runs in
        reverse order before the error propagates.
        """
        state_before = self._capture_state(kwargs)

        for inv in self.sorted_invariants:
            try:
                decision = self._pre_check(inv, **kwargs)
            except InvariantViolation as e:
                # A check's own error kind wins over the invariant's
                self.ledger.record(self._decision(inv.id, "PRE", False, EnforcementResult.REJECT))
                record_invariant_check(inv.id, "PRE", False, inv.criticality.value)
                logger.error(f"PRE-CHECK ABORTED: {inv.id}: {type(e).__name__}: {e}")
                raise
            self.ledger.record(decision)
            record_invariant_check(inv.id, "PRE", decision.result, inv.criticality.value)

            if not decision.result:
                message = inv.describe_failure(**kwargs)
                logger.error(f"PRE-CHECK FAILED: {message}")
                raise inv.violation(message)

        try:
            result = action(*args, **kwargs)
        except Exception as e:
            logger.error(f"ACTION FAILED ({self.operation}): {e}")
            self._rollback(state_before, reason=type(e).__name__)
            raise

        for inv in self.sorted_invariants:
            decision = self._post_check(inv, result)
            self.ledger.record(decision)
            record_invariant_check(inv.id, "POST", decision.result, inv.criticality.value)

            if not decision.result:
                logger.error(f"POST-CHECK FAILED: {inv.id}")
                self._rollback(state_before, reason=inv.id)
                raise InvariantViolation(f"Post-check failed: {inv.id}")

        logger.info(f"All invariant checks PASSED for {self.operation}")
        return result

    def _pre_check(self, inv: Invariant, **kwargs) -> EnforcementDecision:
        """Execute pre-action check."""
        try:
            result = bool(inv.pre_check(**kwargs))
        except InvariantViolation:
            raise
        except Exception as e:
            logger.error(f"Pre-check exception: {inv.id}", exc_info=e)
            result = False

        action = EnforcementResult.PROCEED if result else EnforcementResult.REJECT
        return self._decision(inv.id, "PRE", result, action)

    def _post_check(self, inv: Invariant, result: Any) -> EnforcementDecision:
        """Execute post-action check."""
        try:
            check_result = bool(inv.post_check(result))
        except Exception as e:
            logger.error(f"Post-check exception: {inv.id}", exc_info=e)
            check_result = False

        action = EnforcementResult.PROCEED if check_result else EnforcementResult.ROLLBACK
        return self._decision(inv.id, "POST", check_result, action)

    def _decision(self, invariant_id: str, check_type: str, result: bool,
                  action: EnforcementResult) -> EnforcementDecision:
        timestamp = datetime.now()
        return EnforcementDecision(
            invariant_id=invariant_id,
            check_type=check_type,
            result=result,
            action=action,
            timestamp=timestamp,
            operation=self.operation,
            signature=sign_decision(self.ledger.secret, invariant_id, result, timestamp)
        )

    def _rollback(self, state_before: Dict[str, Any], reason: str):
        """Automatic rollback to previous state."""
        logger.warning(f"ROLLBACK INITIATED ({self.operation}): {reason}")
        record_rollback(reason)

        for inv in reversed(self.sorted_invariants):
            try:
                inv.rollback_action(state_before)
            except Exception as e:
                logger.critical(f"ROLLBACK FAILED for {inv.id}: {e}")
                raise SystemCompromised(f"Rollback failed for {inv.id}") from e

        logger.info("ROLLBACK COMPLETE")

    def _capture_state(self, kwargs: Dict) -> Dict[str, Any]:
        """Capture current system state."""
        return {
            'timestamp': datetime.now(),
            **kwargs
        }

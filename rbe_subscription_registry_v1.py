"""
Recurring Billing Engine (RBE) - Subscription Registry
Version: 1.0.0

Durable mapping from (merchant, subscriber) to the subscription record.
Pure storage: all policy is enforced by the billing engine before it
writes here.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple

from rbe_enforcement_v1 import logger

# ============================================
# DATA MODELS
# ============================================

class SubscriptionStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"

@dataclass(frozen=True)
class Subscription:
    """Terms and billing cursor for one merchant/subscriber pair."""
    merchant: str
    subscriber: str
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    amount: int = 0
    interval: int = 0
    asset_ref: Optional[str] = None
    last_charge_cursor: int = 0

    @classmethod
    def inactive(cls, merchant: str, subscriber: str) -> "Subscription":
        return cls(merchant=merchant, subscriber=subscriber)

    @property
    def is_active(self) -> bool:
        return self.status is SubscriptionStatus.ACTIVE

    def next_charge_time(self) -> Optional[int]:
        """Earliest timestamp at which a charge passes the period gate."""
        if not self.is_active:
            return None
        return self.last_charge_cursor + self.interval + 1

    def to_dict(self) -> Dict:
        return {
            'merchant': self.merchant,
            'subscriber': self.subscriber,
            'status': self.status.value,
            'amount': self.amount,
            'interval': self.interval,
            'asset_ref': self.asset_ref,
            'last_charge_cursor': self.last_charge_cursor
        }

# ============================================
# STORAGE LAYER
# ============================================

class SubscriptionRegistry:
    """In-memory subscription storage, scoped per merchant."""

    def __init__(self):
        self.merchant_ledgers: Dict[str, Dict[str, Subscription]] = {}

    def get(self, merchant: str, subscriber: str) -> Optional[Subscription]:
        """Retrieve the stored record, if the pair was ever written."""
        return self.merchant_ledgers.get(merchant, {}).get(subscriber)

    def set(self, merchant: str, subscriber: str, subscription: Subscription):
        """Store (or overwrite) the record for the pair."""
        self.merchant_ledgers.setdefault(merchant, {})[subscriber] = subscription
        logger.info(f"[REGISTRY] Stored {merchant}/{subscriber}: {subscription.status.value}, amount={subscription.amount}")

    def clear_amount(self, merchant: str, subscriber: str):
        """Deactivate the pair, keeping the rest of the record."""
        current = self.get(merchant, subscriber)
        if current is None:
            return
        self.set(merchant, subscriber, replace(current, status=SubscriptionStatus.INACTIVE, amount=0))

    def restore(self, merchant: str, subscriber: str, subscription: Optional[Subscription]):
        """Put back a record captured before a failed operation."""
        if subscription is None:
            self.merchant_ledgers.get(merchant, {}).pop(subscriber, None)
        else:
            self.merchant_ledgers.setdefault(merchant, {})[subscriber] = subscription
        logger.warning(f"[REGISTRY] Restored {merchant}/{subscriber}")

    def list_for_merchant(self, merchant: str) -> List[Subscription]:
        return list(self.merchant_ledgers.get(merchant, {}).values())

    def pairs(self) -> List[Tuple[str, str]]:
        return [
            (merchant, subscriber)
            for merchant, ledger in self.merchant_ledgers.items()
            for subscriber in ledger
        ]

"""
Recurring Billing Engine (RBE) - Notification Stream
Version: 1.0.0

Append-only, hash-chained audit log of every state change. Downstream
observers read it; the engine only writes.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional
import hashlib
import json

from rbe_enforcement_v1 import logger

GENESIS_DIGEST = "0" * 64

class NotificationType(Enum):
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_MODIFIED = "subscription_modified"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_CHARGED = "subscription_charged"
    LIMITS_CHANGED = "limits_changed"
    ADMINISTRATOR_CHANGED = "administrator_changed"

@dataclass(frozen=True)
class Notification:
    sequence: int
    type: NotificationType
    timestamp: int
    payload: Dict[str, Any] = field(default_factory=dict)
    previous_digest: str = GENESIS_DIGEST
    digest: str = ""

    def compute_digest(self) -> str:
        body = json.dumps({
            'sequence': self.sequence,
            'type': self.type.value,
            'timestamp': self.timestamp,
            'payload': self.payload,
            'previous_digest': self.previous_digest
        }, sort_keys=True)
        return hashlib.sha256(body.encode()).hexdigest()

    def to_dict(self) -> Dict:
        return {
            'sequence': self.sequence,
            'type': self.type.value,
            'timestamp': self.timestamp,
            'payload': dict(self.payload),
            'digest': self.digest
        }

class NotificationLog:
    """Immutable ledger of emitted notifications.

    With ``max_entries`` set, the oldest entries are pruned once the log
    grows past that size. Sequence numbers keep counting and the digest
    of the last pruned entry anchors chain verification of what remains.
    """

    def __init__(self, max_entries: Optional[int] = None):
        self.max_entries = max_entries
        self.entries: List[Notification] = []
        self.first_sequence = 0
        self.anchor_digest = GENESIS_DIGEST

    def emit(self, type: NotificationType, timestamp: int, **payload) -> Notification:
        """Append a notification (write-only)."""
        previous = self.entries[-1].digest if self.entries else self.anchor_digest
        draft = Notification(
            sequence=self.first_sequence + len(self.entries),
            type=type,
            timestamp=timestamp,
            payload=payload,
            previous_digest=previous
        )
        notification = replace(draft, digest=draft.compute_digest())
        self.entries.append(notification)
        logger.info(f"[NOTIFY] #{notification.sequence} {type.value}: {payload}")

        if self.max_entries is not None and len(self.entries) > self.max_entries:
            self._prune(len(self.entries) - self.max_entries)
        return notification

    def _prune(self, count: int):
        self.anchor_digest = self.entries[count - 1].digest
        self.first_sequence += count
        del self.entries[:count]
        logger.info(f"[NOTIFY] Pruned {count} entries, retained from #{self.first_sequence}")

    def entries_since(self, sequence: int) -> List[Notification]:
        return self.entries[max(sequence - self.first_sequence, 0):]

    def of_type(self, type: NotificationType) -> List[Notification]:
        return [entry for entry in self.entries if entry.type is type]

    def verify_chain_integrity(self) -> bool:
        """Recompute every digest and link."""
        previous = self.anchor_digest
        for entry in self.entries:
            if entry.previous_digest != previous or entry.compute_digest() != entry.digest:
                return False
            previous = entry.digest
        return True

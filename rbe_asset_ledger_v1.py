"""
Recurring Billing Engine (RBE) - Asset Ledger Interface
Version: 1.0.0

The engine never stores balances. It consumes an external asset ledger
through an allowance query and a delegated transfer; the in-memory ledger
below backs the HTTP app, the demonstration and the test suites.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Tuple

from rbe_enforcement_v1 import logger

# ============================================
# INTERFACE
# ============================================

class AssetLedgerError(Exception):
    """Raised by a ledger implementation when a call cannot be completed."""
    pass

class AssetLedger(ABC):
    """Interface consumed by the billing engine.

    ``snapshot`` / ``restore_balances`` are the compensation hooks used to
    discard a partially executed charge when a later leg fails.
    """

    @abstractmethod
    def allowance(self, asset_ref: str, owner: str, spender: str) -> int:
        """Amount ``spender`` may still move out of ``owner``'s balance."""

    @abstractmethod
    def transfer_from(self, asset_ref: str, spender: str, owner: str,
                      recipient: str, amount: int) -> bool:
        """Move ``amount`` from ``owner`` to ``recipient`` against ``spender``'s allowance."""

    @abstractmethod
    def snapshot(self) -> Any:
        """Opaque copy of ledger state for compensation."""

    @abstractmethod
    def restore_balances(self, snapshot: Any):
        """Restore state captured by ``snapshot``."""

# ============================================
# IN-MEMORY LEDGER
# ============================================

class InMemoryAssetLedger(AssetLedger):
    """Balances and allowances per asset, held in dictionaries."""

    def __init__(self):
        self.balances: Dict[Tuple[str, str], int] = {}
        self.allowances: Dict[Tuple[str, str, str], int] = {}

    def mint(self, asset_ref: str, owner: str, amount: int):
        """Credit an account out of thin air (test and demo funding)."""
        key = (asset_ref, owner)
        self.balances[key] = self.balances.get(key, 0) + amount
        logger.info(f"[ASSET_LEDGER] Minted {amount} {asset_ref} to {owner}")

    def approve(self, asset_ref: str, owner: str, spender: str, amount: int):
        """Set the standing allowance ``owner`` grants ``spender``."""
        self.allowances[(asset_ref, owner, spender)] = amount
        logger.info(f"[ASSET_LEDGER] {owner} approved {spender} for {amount} {asset_ref}")

    def balance_of(self, asset_ref: str, owner: str) -> int:
        return self.balances.get((asset_ref, owner), 0)

    def allowance(self, asset_ref: str, owner: str, spender: str) -> int:
        return self.allowances.get((asset_ref, owner, spender), 0)

    def transfer_from(self, asset_ref: str, spender: str, owner: str,
                      recipient: str, amount: int) -> bool:
        if amount < 0:
            raise AssetLedgerError(f"Negative transfer amount {amount}")

        allowed = self.allowance(asset_ref, owner, spender)
        balance = self.balance_of(asset_ref, owner)

        if allowed < amount:
            logger.warning(f"[ASSET_LEDGER] Transfer refused: allowance {allowed} < {amount} ({owner} -> {recipient})")
            return False
        if balance < amount:
            logger.warning(f"[ASSET_LEDGER] Transfer refused: balance {balance} < {amount} ({owner} -> {recipient})")
            return False

        self.allowances[(asset_ref, owner, spender)] = allowed - amount
        self.balances[(asset_ref, owner)] = balance - amount
        self.balances[(asset_ref, recipient)] = self.balance_of(asset_ref, recipient) + amount

        logger.info(f"[ASSET_LEDGER] Transfer: {owner} → {recipient} {amount} {asset_ref}")
        return True

    def snapshot(self) -> Dict[str, Dict]:
        return {
            'balances': self.balances.copy(),
            'allowances': self.allowances.copy()
        }

    def restore_balances(self, snapshot: Dict[str, Dict]):
        self.balances = snapshot['balances'].copy()
        self.allowances = snapshot['allowances'].copy()
        logger.warning("[ASSET_LEDGER] Restored balances from snapshot")

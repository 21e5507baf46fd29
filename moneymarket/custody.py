"""
custody.py - Asset custody and the transfer capability used by markets

CustodyLedger is a double-entry balance book: every transfer debits one
wallet and credits another, so the total of each asset only changes through
mint(). A wallet may register a receive hook that runs synchronously after
funds land in it, which is how external code can call back into an engine in
the middle of an action.

AssetTransfer is the single interface a Market uses to move its underlying:

- TokenTransfer: allowance-style pull; attached value is rejected
- NativeTransfer: value arrives attached to the call; the excess is returned
  to the market so it can be refunded
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from .core import (
    InsufficientValue,
    InvalidParameter,
    NonPositiveAmount,
    TransferFailed,
    UnexpectedValue,
)


@dataclass(frozen=True, slots=True)
class Transfer:
    """A single completed movement of an asset between two wallets."""
    asset: str
    source: str
    dest: str
    amount: int
    memo: str = ""


ReceiveHook = Callable[[Transfer], None]


class CustodyLedger:
    """
    Balances of every wallet in every asset, in smallest units.
    """

    def __init__(self, name: str = "custody", verbose: bool = False):
        self.name = name
        self.verbose = verbose
        self.balances: Dict[str, Dict[str, int]] = {}
        self.issued: Dict[str, int] = {}
        self.log: List[Transfer] = []
        self._hooks: Dict[str, ReceiveHook] = {}

    def get_balance(self, wallet: str, asset: str) -> int:
        return self.balances.get(wallet, {}).get(asset, 0)

    def total_supply(self, asset: str) -> int:
        return sum(held.get(asset, 0) for held in self.balances.values())

    def verify_conservation(self) -> Dict[str, Any]:
        """
        Check that every asset's total balance equals the amount minted.

        Returns:
            Dict with 'valid' (bool) and 'discrepancies' (list of (asset, issued, held)).
        """
        discrepancies = []
        assets = set(self.issued)
        for held in self.balances.values():
            assets.update(held)
        for asset in sorted(assets):
            issued = self.issued.get(asset, 0)
            held = self.total_supply(asset)
            if issued != held:
                discrepancies.append((asset, issued, held))
        return {"valid": not discrepancies, "discrepancies": discrepancies}

    def mint(self, wallet: str, asset: str, amount: int) -> None:
        """Create new funds in a wallet (test funding and external deposits)."""
        if amount <= 0:
            raise NonPositiveAmount(f"mint amount must be positive, got {amount}")
        held = self.balances.setdefault(wallet, {})
        held[asset] = held.get(asset, 0) + amount
        self.issued[asset] = self.issued.get(asset, 0) + amount

    def transfer(self, asset: str, source: str, dest: str, amount: int, memo: str = "") -> Transfer:
        """
        Move funds from source to dest, then run dest's receive hook.

        Raises:
            NonPositiveAmount: amount <= 0
            TransferFailed: source balance is too low
        """
        if amount <= 0:
            raise NonPositiveAmount(f"transfer amount must be positive, got {amount}")
        available = self.get_balance(source, asset)
        if available < amount:
            if self.verbose:
                print(f"✗ TRANSFER FAILED: {source} holds {available} {asset}, needs {amount}")
            raise TransferFailed(f"{source} holds {available} {asset}, cannot send {amount}")

        self.balances[source][asset] = available - amount
        held = self.balances.setdefault(dest, {})
        held[asset] = held.get(asset, 0) + amount
        record = Transfer(asset, source, dest, amount, memo)
        self.log.append(record)
        if self.verbose:
            print(f"✓ {asset}: {source} → {dest} {amount}" + (f" ({memo})" if memo else ""))

        hook = self._hooks.get(dest)
        if hook is not None:
            hook(record)
        return record

    def register_hook(self, wallet: str, hook: ReceiveHook) -> None:
        self._hooks[wallet] = hook

    def remove_hook(self, wallet: str) -> None:
        self._hooks.pop(wallet, None)

    # ------------------------------------------------------------------
    # Checkpoint / rollback
    # ------------------------------------------------------------------

    def checkpoint(self) -> Tuple[Dict[str, Dict[str, int]], Dict[str, int], int]:
        return (
            {wallet: dict(held) for wallet, held in self.balances.items()},
            dict(self.issued),
            len(self.log),
        )

    def rollback(self, snapshot) -> None:
        balances, issued, log_length = snapshot
        self.balances = {wallet: dict(held) for wallet, held in balances.items()}
        self.issued = dict(issued)
        del self.log[log_length:]

    def __repr__(self):
        return f"CustodyLedger({self.name!r}, {len(self.balances)} wallets, {len(self.log)} transfers)"


# ============================================================================
# ASSET TRANSFER CAPABILITY
# ============================================================================

class TransferKind(Enum):
    """How the underlying asset reaches the market."""
    TOKEN = "token"
    NATIVE = "native"


@runtime_checkable
class AssetTransfer(Protocol):
    """
    Movement of one market's underlying in and out of custody.

    pull() returns the excess value that arrived beyond `amount`; the market
    refunds it with push() as the last step of the action.
    """
    kind: TransferKind
    asset: str
    custody_wallet: str

    def pull(self, source: str, amount: int, attached_value: int = 0) -> int:
        ...

    def push(self, dest: str, amount: int) -> None:
        ...

    def custody_balance(self) -> int:
        ...

    def checkpoint(self) -> Any:
        ...

    def rollback(self, snapshot: Any) -> None:
        ...


class _CustodyTransfer:
    """Shared plumbing: both representations keep funds in a CustodyLedger."""

    kind: TransferKind

    def __init__(self, custody: CustodyLedger, asset: str, custody_wallet: Optional[str] = None):
        if not asset:
            raise InvalidParameter("asset cannot be empty")
        self.custody = custody
        self.asset = asset
        self.custody_wallet = custody_wallet or f"market:{asset}"

    def push(self, dest: str, amount: int) -> None:
        self.custody.transfer(self.asset, self.custody_wallet, dest, amount, memo="push")

    def custody_balance(self) -> int:
        return self.custody.get_balance(self.custody_wallet, self.asset)

    def checkpoint(self):
        return self.custody.checkpoint()

    def rollback(self, snapshot) -> None:
        self.custody.rollback(snapshot)

    def __repr__(self):
        return f"{type(self).__name__}({self.asset!r}, wallet={self.custody_wallet!r})"


class TokenTransfer(_CustodyTransfer):
    """Pulls exactly `amount` from the source wallet."""

    kind = TransferKind.TOKEN

    def pull(self, source: str, amount: int, attached_value: int = 0) -> int:
        if attached_value:
            raise UnexpectedValue(f"{self.asset} is a token market; attached value {attached_value} rejected")
        self.custody.transfer(self.asset, source, self.custody_wallet, amount, memo="pull")
        return 0


class NativeTransfer(_CustodyTransfer):
    """Accepts value attached to the call and reports what exceeds `amount`."""

    kind = TransferKind.NATIVE

    def pull(self, source: str, amount: int, attached_value: int = 0) -> int:
        if attached_value < amount:
            raise InsufficientValue(
                f"{self.asset}: attached value {attached_value} does not cover {amount}"
            )
        self.custody.transfer(self.asset, source, self.custody_wallet, attached_value, memo="attached")
        return attached_value - amount

"""
Core types and helpers shared by the lending engines.

This module provides:
1. Decimal context and fixed-point helpers (18 fractional digits)
2. A forward-only logical clock
3. Exceptions: LendingError and the action-rejection taxonomy
4. Reentrancy guard and atomic checkpoint/rollback scope
5. Immutable account snapshots used by the risk engine

Amounts (cash, shares, borrows, reserves, fees) are integers in the smallest
unit of their asset. Rates, indices, exchange rates and prices are Decimals.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN, ROUND_UP, getcontext
import functools
from typing import Any, Callable, Iterable, Iterator, List, Protocol, Union, runtime_checkable


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# All engine arithmetic is deterministic Decimal arithmetic. The context is
# configured once at import time; prec=50 leaves ample headroom for products
# of 18-digit mantissas with large integer amounts.
#
_LENDING_DECIMAL_CONTEXT = getcontext()
_LENDING_DECIMAL_CONTEXT.prec = 50
_LENDING_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Fractional digits of exchange rates and oracle prices.
MANTISSA_PLACES = 18
MANTISSA = Decimal(1).scaleb(-MANTISSA_PLACES)

SECONDS_PER_YEAR = 365 * 24 * 3600

# Underlying units per share before any share exists.
DEFAULT_INITIAL_EXCHANGE_RATE = Decimal("0.02")

# Risk ratio of an account with debt and no weighted collateral.
INFINITE_RISK = Decimal("Infinity")

# Default administrator identity.
DEFAULT_ADMIN = "admin"


# ============================================================================
# TYPE ALIASES
# ============================================================================

AccountId = str

# Oracle feed identifiers are numeric on some oracle networks, symbolic on others.
FeedId = Union[int, str]


# ============================================================================
# FIXED-POINT HELPERS
# ============================================================================

def to_decimal(value: Any) -> Decimal:
    """Convert int/str/Decimal to Decimal. Floats go through str() to avoid binary noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def quantize_mantissa(value: Decimal) -> Decimal:
    """Truncate to 18 fractional digits."""
    if not value.is_finite():
        return value
    return value.quantize(MANTISSA, rounding=ROUND_DOWN)


def truncate(value: Decimal) -> int:
    """Round toward zero to a whole number of smallest units."""
    return int(value.to_integral_value(rounding=ROUND_DOWN))


def round_up(value: Decimal) -> int:
    """Round away from zero to a whole number of smallest units."""
    return int(value.to_integral_value(rounding=ROUND_UP))


def units_to_value(amount: int, decimals: int, price: Decimal) -> Decimal:
    """USD value of `amount` smallest units of an asset with `decimals` places."""
    return Decimal(amount).scaleb(-decimals) * price


def value_to_units(value: Decimal, decimals: int, price: Decimal) -> int:
    """Smallest units worth at most `value` USD."""
    return truncate((value / price).scaleb(decimals))


# ============================================================================
# CLOCK
# ============================================================================

class ManualClock:
    """
    Logical clock shared by markets and time-aware oracles.

    Time only moves forward; interest accrual reads whole elapsed seconds.
    """

    def __init__(self, start: datetime = datetime(2024, 1, 1)):
        self._now = start

    @property
    def now(self) -> datetime:
        return self._now

    def advance(self, delta: Union[int, timedelta]) -> datetime:
        """Move forward by a timedelta or a number of seconds."""
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        if delta < timedelta(0):
            raise ValueError(f"Cannot move clock backwards by {delta}")
        self._now = self._now + delta
        return self._now

    def advance_to(self, when: datetime) -> datetime:
        if when < self._now:
            raise ValueError(f"Cannot move clock backwards: {when} < {self._now}")
        self._now = when
        return self._now

    def __repr__(self) -> str:
        return f"ManualClock({self._now.isoformat()})"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LendingError(Exception):
    """Base exception for all rejected lending actions."""
    retryable = False


# --- (a) input validation ---------------------------------------------------

class InvalidInput(LendingError):
    """Raised before any mutation when the request itself is malformed."""
    retryable = True


class NonPositiveAmount(InvalidInput):
    """Raised when an amount or share count is zero or negative."""
    pass


class DustAmount(InvalidInput):
    """Raised when an amount converts to zero shares or zero underlying."""
    pass


class InsufficientShares(InvalidInput):
    """Raised when an account redeems or burns more shares than it holds."""
    pass


class InsufficientValue(InvalidInput):
    """Raised when attached native value does not cover the requested amount."""
    pass


class UnexpectedValue(InvalidInput):
    """Raised when native value is attached to a token-denominated action."""
    pass


class NothingToRepay(InvalidInput):
    """Raised when repaying an account that owes nothing."""
    pass


class NoMarketsEntered(InvalidInput):
    """Raised when assessing an account that never touched any market."""
    pass


class InvalidParameter(InvalidInput, ValueError):
    """Raised when a configuration or admin parameter is out of range."""
    pass


class MarketAlreadyListed(InvalidInput):
    """Raised when listing a market symbol twice."""
    pass


# --- (b) capacity -------------------------------------------------------------

class CapacityError(LendingError):
    """Raised when a cap, liquidity or reserve limit blocks the action."""
    retryable = True


class SupplyCapExceeded(CapacityError):
    pass


class BorrowCapExceeded(CapacityError):
    pass


class InsufficientCash(CapacityError):
    """Raised when the market does not hold enough free cash."""
    pass


class InsufficientReserves(CapacityError):
    pass


class InsufficientFees(CapacityError):
    pass


class CustodyShortfall(CapacityError):
    """Raised when custody holds less than the market's books say it should."""
    pass


# --- (c) authorization --------------------------------------------------------

class Unauthorized(LendingError):
    """Raised for wrong callers and unlisted, paused or frozen markets."""
    pass


class NotAdmin(Unauthorized):
    pass


class NotRiskEngine(Unauthorized):
    """Raised when a liquidation primitive is called by anyone but the risk engine."""
    pass


class MarketNotListed(Unauthorized):
    pass


class MarketPaused(Unauthorized):
    pass


class MarketFrozen(Unauthorized):
    pass


# --- (d) collateralization ---------------------------------------------------

class CollateralizationError(LendingError):
    """Expected steady-state rejections driven by account health."""
    pass


class Undercollateralized(CollateralizationError):
    """Raised when an action would leave weighted collateral below debt."""
    pass


class LiquidationNotEligible(CollateralizationError):
    """Raised when the borrower's risk ratio is below the liquidation threshold."""
    pass


class BadDebtPosition(CollateralizationError):
    """Raised when the borrower is at or beyond 100% risk and needs the bad-debt path."""
    pass


class SelfLiquidation(CollateralizationError):
    pass


class NoOpenBorrow(CollateralizationError):
    pass


class LiquidatorUndercollateralized(CollateralizationError):
    """Raised when the liquidator's free collateral cannot cover the borrower's debt."""
    pass


# --- (e) prices and infrastructure -------------------------------------------

class PriceUnavailable(LendingError):
    """Raised when a feed has no usable price. Never substituted with a default."""
    retryable = True


class ReentrancyError(LendingError):
    """Raised when a guarded entry point is re-entered during an action."""
    pass


class TransferFailed(LendingError):
    """Raised when custody cannot move funds."""
    pass


# ============================================================================
# CHECKPOINT / ROLLBACK
# ============================================================================

@runtime_checkable
class Checkpointable(Protocol):
    """
    Anything whose state can be captured and restored.

    checkpoint() returns an opaque snapshot; rollback(snapshot) restores it.
    Snapshots are values, so nested atomic scopes over the same participant
    never interfere with each other.
    """

    def checkpoint(self) -> Any:
        ...

    def rollback(self, snapshot: Any) -> None:
        ...


@contextmanager
def atomic(participants: Iterable[Checkpointable]) -> Iterator[None]:
    """
    All-or-nothing scope over several participants.

    Every participant is checkpointed on entry. If the body raises, all of
    them are restored (in reverse order) and the exception propagates.
    """
    unique: List[Checkpointable] = []
    seen = set()
    for participant in participants:
        if participant is None or id(participant) in seen:
            continue
        seen.add(id(participant))
        unique.append(participant)

    snapshots = [(p, p.checkpoint()) for p in unique]
    try:
        yield
    except Exception:
        for participant, snapshot in reversed(snapshots):
            participant.rollback(snapshot)
        raise


class ReentrancyGuard:
    """
    Exclusive per-engine lock held for the duration of one action.

    Used as a context manager so the lock is released on every exit path.
    """

    __slots__ = ("owner", "_entered")

    def __init__(self, owner: str = ""):
        self.owner = owner
        self._entered = False

    @property
    def locked(self) -> bool:
        return self._entered

    def __enter__(self) -> ReentrancyGuard:
        if self._entered:
            raise ReentrancyError(f"{self.owner}: reentrant call rejected")
        self._entered = True
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._entered = False


def guarded(method: Callable) -> Callable:
    """
    Decorator for state-changing engine entry points.

    Runs the method under the engine's ReentrancyGuard and inside an atomic
    scope over the engine's participants. The engine must provide `_guard`,
    `_participants()`, `name` and `verbose`.
    """

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            with self._guard:
                with atomic(self._participants()):
                    return method(self, *args, **kwargs)
        except LendingError as exc:
            if self.verbose:
                print(f"✗ REJECTED {self.name}.{method.__name__}: {type(exc).__name__}: {exc}")
            raise

    return wrapper


def require_positive(amount: int, what: str = "amount") -> None:
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise InvalidParameter(f"{what} must be an integer number of smallest units, got {amount!r}")
    if amount <= 0:
        raise NonPositiveAmount(f"{what} must be positive, got {amount}")


# ============================================================================
# SNAPSHOTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class AccountSnapshot:
    """
    Live position of one account in one market, projected to the current time.

    Attributes:
        market: Market symbol
        shares: Share balance
        supply_balance: Underlying redeemable for the shares (rounded down)
        borrow_balance: Outstanding debt (rounded up)
        exchange_rate: Underlying units per share used for supply_balance
    """
    market: str
    shares: int
    supply_balance: int
    borrow_balance: int
    exchange_rate: Decimal

    @property
    def is_empty(self) -> bool:
        return self.shares == 0 and self.borrow_balance == 0


@dataclass(frozen=True, slots=True)
class RiskAssessment:
    """
    Aggregate account health across every market the account touched.

    Attributes:
        risk_ratio: debt_usd / supplied_usd; 0 with no debt, Infinity with
            debt but no weighted collateral. 1 is exactly at the LTV boundary.
        debt_usd: Total debt value
        supplied_usd: LTV-weighted collateral value
        gross_supplied_usd: Unweighted collateral value
    """
    risk_ratio: Decimal
    debt_usd: Decimal
    supplied_usd: Decimal
    gross_supplied_usd: Decimal = Decimal(0)

    @property
    def free_collateral_usd(self) -> Decimal:
        return self.supplied_usd - self.debt_usd

    def __iter__(self):
        return iter((self.risk_ratio, self.debt_usd, self.supplied_usd))


def compute_risk_ratio(debt_usd: Decimal, weighted_collateral_usd: Decimal) -> Decimal:
    """Risk ratio = debt / weighted collateral with the zero cases made explicit."""
    if debt_usd <= 0:
        return Decimal(0)
    if weighted_collateral_usd <= 0:
        return INFINITE_RISK
    return debt_usd / weighted_collateral_usd


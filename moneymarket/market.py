"""
market.py - Market engine: one instance per listed asset

Tracks share ownership, supply and borrow principals, interest accrual,
reserves and protocol fees for a single underlying asset.

Accounting model:
- Suppliers hold shares. exchange_rate = (cash + total_borrows - total_reserves)
  / total_shares, derived on every read and never stored.
- Supply and borrow principals are recorded with the index at last touch;
  current value = principal * current_index / recorded_index.
- cash is the free underlying behind the pool (reserves included). Protocol
  fees sit outside it, so custody always holds cash + total_fees.

Every state-changing entry point is reentrancy-guarded and atomic. Outgoing
transfers are the last step of each action, after all bookkeeping is written.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .core import (
    DEFAULT_ADMIN,
    DEFAULT_INITIAL_EXCHANGE_RATE,
    AccountId,
    AccountSnapshot,
    BorrowCapExceeded,
    CustodyShortfall,
    DustAmount,
    InsufficientCash,
    InsufficientFees,
    InsufficientReserves,
    InsufficientShares,
    InvalidParameter,
    ManualClock,
    MarketPaused,
    NoOpenBorrow,
    NotAdmin,
    NotRiskEngine,
    NothingToRepay,
    ReentrancyGuard,
    SelfLiquidation,
    SupplyCapExceeded,
    guarded,
    quantize_mantissa,
    require_positive,
    round_up,
    to_decimal,
    truncate,
)
from .custody import AssetTransfer
from .interest_rate import JumpRateModel

if TYPE_CHECKING:
    from .risk_engine import RiskEngine


# ============================================================================
# CONFIGURATION AND STATE
# ============================================================================

@dataclass(frozen=True, slots=True)
class MarketParams:
    """
    Listing parameters of a market.

    Attributes:
        symbol: Asset symbol, unique across the risk engine
        decimals: Fractional digits of the underlying's smallest unit
        reserve_factor: Share of accrued interest routed into reserves
        initial_exchange_rate: Underlying units per share while no shares exist
        supply_cap: Maximum underlying supplied, None for uncapped
        borrow_cap: Maximum total borrows, None for uncapped
        borrow_fee_rate: Fraction of each borrow kept as protocol fee
        redeem_fee_rate: Fraction of each redemption kept as protocol fee
    """
    symbol: str
    decimals: int
    reserve_factor: Decimal = Decimal("0")
    initial_exchange_rate: Decimal = DEFAULT_INITIAL_EXCHANGE_RATE
    supply_cap: Optional[int] = None
    borrow_cap: Optional[int] = None
    borrow_fee_rate: Decimal = Decimal("0")
    redeem_fee_rate: Decimal = Decimal("0")

    def __post_init__(self):
        for name in ("reserve_factor", "initial_exchange_rate", "borrow_fee_rate", "redeem_fee_rate"):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        object.__setattr__(self, "initial_exchange_rate", quantize_mantissa(self.initial_exchange_rate))

        if not self.symbol or not self.symbol.strip():
            raise InvalidParameter("symbol cannot be empty")
        if not (0 <= self.decimals <= 36):
            raise InvalidParameter(f"decimals must be in [0, 36], got {self.decimals}")
        if self.initial_exchange_rate <= 0:
            raise InvalidParameter(f"initial_exchange_rate must be positive, got {self.initial_exchange_rate}")
        validate_reserve_factor(self.reserve_factor)
        validate_fee_rate(self.borrow_fee_rate, "borrow_fee_rate")
        validate_fee_rate(self.redeem_fee_rate, "redeem_fee_rate")
        validate_cap(self.supply_cap, "supply_cap")
        validate_cap(self.borrow_cap, "borrow_cap")


def validate_reserve_factor(value: Decimal) -> None:
    if not (0 <= value <= 1):
        raise InvalidParameter(f"reserve_factor must be in [0, 1], got {value}")


def validate_fee_rate(value: Decimal, name: str) -> None:
    if not (0 <= value < 1):
        raise InvalidParameter(f"{name} must be in [0, 1), got {value}")


def validate_cap(value: Optional[int], name: str) -> None:
    if value is not None and value < 0:
        raise InvalidParameter(f"{name} must be non-negative or None, got {value}")


@dataclass(slots=True)
class MarketState:
    """Mutable totals of a market. Copied wholesale on checkpoint."""
    accrual_time: datetime
    reserve_factor: Decimal
    borrow_fee_rate: Decimal
    redeem_fee_rate: Decimal
    supply_cap: Optional[int] = None
    borrow_cap: Optional[int] = None
    cash: int = 0
    total_shares: int = 0
    total_borrows: int = 0
    total_reserves: int = 0
    total_fees: int = 0
    borrow_index: Decimal = Decimal(1)
    supply_index: Decimal = Decimal(1)
    paused: bool = False


@dataclass(frozen=True, slots=True)
class BalanceSnapshot:
    """Principal as of the last touch, with the index recorded then."""
    principal: int
    index: Decimal


@dataclass(frozen=True, slots=True)
class AccrualResult:
    """Totals after accruing interest up to accrual_time."""
    accrual_time: datetime
    borrow_index: Decimal
    supply_index: Decimal
    total_borrows: int
    total_reserves: int
    interest: int


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_exchange_rate(
    cash: int,
    total_borrows: int,
    total_reserves: int,
    total_shares: int,
    initial_exchange_rate: Decimal,
) -> Decimal:
    """Underlying units per share, truncated to 18 fractional digits."""
    if total_shares == 0:
        return initial_exchange_rate
    return quantize_mantissa(Decimal(cash + total_borrows - total_reserves) / Decimal(total_shares))


def calculate_accrual(state: MarketState, rate_model: JumpRateModel, now: datetime) -> AccrualResult:
    """
    Simple interest from state.accrual_time to now, at whole-second resolution.

    Indices grow by (1 + rate * elapsed). Total borrows roll forward by the
    borrow-index ratio, rounded up, and reserve_factor of that interest is
    credited to reserves (rounded down). Zero elapsed seconds is a no-op.
    """
    elapsed = int((now - state.accrual_time).total_seconds())
    if elapsed <= 0:
        return AccrualResult(
            accrual_time=state.accrual_time,
            borrow_index=state.borrow_index,
            supply_index=state.supply_index,
            total_borrows=state.total_borrows,
            total_reserves=state.total_reserves,
            interest=0,
        )

    borrow_rate = rate_model.get_borrow_rate(state.cash, state.total_borrows, state.total_reserves)
    supply_rate = rate_model.get_supply_rate(
        state.cash, state.total_borrows, state.total_reserves, state.reserve_factor
    )
    borrow_factor = borrow_rate * elapsed
    borrow_index = state.borrow_index * (1 + borrow_factor)
    supply_index = state.supply_index * (1 + supply_rate * elapsed)

    interest = round_up(Decimal(state.total_borrows) * borrow_factor)
    reserves = state.total_reserves + truncate(Decimal(interest) * state.reserve_factor)

    return AccrualResult(
        accrual_time=state.accrual_time + timedelta(seconds=elapsed),
        borrow_index=borrow_index,
        supply_index=supply_index,
        total_borrows=state.total_borrows + interest,
        total_reserves=reserves,
        interest=interest,
    )


def settle_supply(balance: Optional[BalanceSnapshot], supply_index: Decimal) -> int:
    """Current supply principal, rounded down."""
    if balance is None or balance.principal == 0:
        return 0
    return truncate(Decimal(balance.principal) * supply_index / balance.index)


def settle_borrow(balance: Optional[BalanceSnapshot], borrow_index: Decimal) -> int:
    """Current debt, rounded up."""
    if balance is None or balance.principal == 0:
        return 0
    return round_up(Decimal(balance.principal) * borrow_index / balance.index)


# ============================================================================
# MARKET ENGINE
# ============================================================================

class Market:
    """
    Share and interest accounting for one underlying asset.

    Users: supply, redeem, redeem_underlying, borrow, repay_borrow, add_reserves.
    Risk engine only: liquidate_borrow, seize_collateral, seize_bad_collateral,
    liquidate_bad_debt.
    Admin only: the set_*, convert_*, remove_reserves, withdraw_fees, pause,
    unpause and reconcile_reserves operations.
    """

    def __init__(
        self,
        params: MarketParams,
        rate_model: JumpRateModel,
        transfer: AssetTransfer,
        risk_engine: RiskEngine,
        clock: ManualClock,
        admin: str = DEFAULT_ADMIN,
        verbose: bool = True,
    ):
        if transfer.asset != params.symbol:
            raise InvalidParameter(
                f"transfer moves {transfer.asset!r} but market is {params.symbol!r}"
            )
        self.params = params
        self.rate_model = rate_model
        self.transfer = transfer
        self.risk_engine = risk_engine
        self.clock = clock
        self.admin = admin
        self.verbose = verbose
        self.state = MarketState(
            accrual_time=clock.now,
            reserve_factor=params.reserve_factor,
            borrow_fee_rate=params.borrow_fee_rate,
            redeem_fee_rate=params.redeem_fee_rate,
            supply_cap=params.supply_cap,
            borrow_cap=params.borrow_cap,
        )
        self._shares: Dict[AccountId, int] = {}
        self._supplies: Dict[AccountId, BalanceSnapshot] = {}
        self._borrows: Dict[AccountId, BalanceSnapshot] = {}
        self._guard = ReentrancyGuard(params.symbol)

    @property
    def symbol(self) -> str:
        return self.params.symbol

    @property
    def name(self) -> str:
        return self.params.symbol

    @property
    def decimals(self) -> int:
        return self.params.decimals

    def __repr__(self):
        return f"Market({self.symbol!r}, shares={self.state.total_shares}, borrows={self.state.total_borrows})"

    # ------------------------------------------------------------------
    # Read-only views (projected to the current time, never mutating)
    # ------------------------------------------------------------------

    def _projected(self) -> AccrualResult:
        return calculate_accrual(self.state, self.rate_model, self.clock.now)

    @property
    def total_borrows(self) -> int:
        return self._projected().total_borrows

    @property
    def total_reserves(self) -> int:
        return self._projected().total_reserves

    @property
    def cash(self) -> int:
        return self.state.cash

    @property
    def total_shares(self) -> int:
        return self.state.total_shares

    @property
    def total_fees(self) -> int:
        return self.state.total_fees

    def exchange_rate(self) -> Decimal:
        projected = self._projected()
        return calculate_exchange_rate(
            self.state.cash,
            projected.total_borrows,
            projected.total_reserves,
            self.state.total_shares,
            self.params.initial_exchange_rate,
        )

    def utilization(self) -> Decimal:
        projected = self._projected()
        return self.rate_model.utilization_rate(
            self.state.cash, projected.total_borrows, projected.total_reserves
        )

    def borrow_rate_per_second(self) -> Decimal:
        projected = self._projected()
        return self.rate_model.get_borrow_rate(
            self.state.cash, projected.total_borrows, projected.total_reserves
        )

    def supply_rate_per_second(self) -> Decimal:
        projected = self._projected()
        return self.rate_model.get_supply_rate(
            self.state.cash, projected.total_borrows, projected.total_reserves, self.state.reserve_factor
        )

    def balance_of(self, account: AccountId) -> int:
        """Share balance."""
        return self._shares.get(account, 0)

    def supply_balance(self, account: AccountId) -> int:
        """Settled supply principal at the current supply index."""
        return settle_supply(self._supplies.get(account), self._projected().supply_index)

    def borrow_balance(self, account: AccountId) -> int:
        """Settled debt at the current borrow index."""
        return settle_borrow(self._borrows.get(account), self._projected().borrow_index)

    def underlying_balance(self, account: AccountId) -> int:
        """Underlying redeemable for the account's shares."""
        return truncate(Decimal(self.balance_of(account)) * self.exchange_rate())

    def get_account_snapshot(self, account: AccountId) -> AccountSnapshot:
        rate = self.exchange_rate()
        shares = self.balance_of(account)
        return AccountSnapshot(
            market=self.symbol,
            shares=shares,
            supply_balance=truncate(Decimal(shares) * rate),
            borrow_balance=self.borrow_balance(account),
            exchange_rate=rate,
        )

    def accounts(self) -> List[AccountId]:
        """Every account with a share, supply or borrow record, in first-seen order."""
        seen: Dict[AccountId, None] = {}
        for book in (self._shares, self._supplies, self._borrows):
            for account in book:
                seen.setdefault(account, None)
        return list(seen)

    def verify_accounting(self) -> Dict[str, Any]:
        """
        Check share conservation and custody backing.

        Returns:
            Dict with:
            - 'valid': True if both checks pass
            - 'total_shares', 'sum_of_share_balances'
            - 'custody_balance', 'expected_custody' (cash + total_fees)
            - 'discrepancies': list of descriptions
        """
        share_sum = sum(self._shares.values())
        custody = self.transfer.custody_balance()
        expected = self.state.cash + self.state.total_fees
        discrepancies = []
        if share_sum != self.state.total_shares:
            discrepancies.append(f"shares: total {self.state.total_shares} != sum {share_sum}")
        if custody != expected:
            discrepancies.append(f"custody: holds {custody} != cash + fees {expected}")
        if any(v < 0 for v in (self.state.cash, self.state.total_borrows,
                               self.state.total_reserves, self.state.total_fees)):
            discrepancies.append("negative total")
        return {
            "valid": not discrepancies,
            "total_shares": self.state.total_shares,
            "sum_of_share_balances": share_sum,
            "custody_balance": custody,
            "expected_custody": expected,
            "discrepancies": discrepancies,
        }

    # ------------------------------------------------------------------
    # Checkpoint / rollback
    # ------------------------------------------------------------------

    def checkpoint(self):
        return (
            replace(self.state),
            dict(self._shares),
            dict(self._supplies),
            dict(self._borrows),
            self.rate_model,
        )

    def rollback(self, snapshot) -> None:
        state, shares, supplies, borrows, rate_model = snapshot
        self.state = replace(state)
        self._shares = dict(shares)
        self._supplies = dict(supplies)
        self._borrows = dict(borrows)
        self.rate_model = rate_model

    def _participants(self):
        # receive hooks may act on any listed market
        return [self, *self.risk_engine.participants(), self.transfer]

    # ------------------------------------------------------------------
    # Internal bookkeeping
    # ------------------------------------------------------------------

    def accrue_interest(self) -> int:
        """Bring indices, borrows and reserves up to the clock. Returns interest accrued."""
        result = self._projected()
        if result.accrual_time == self.state.accrual_time:
            return 0
        self.state.accrual_time = result.accrual_time
        self.state.borrow_index = result.borrow_index
        self.state.supply_index = result.supply_index
        self.state.total_borrows = result.total_borrows
        self.state.total_reserves = result.total_reserves
        return result.interest

    def _current_rate(self) -> Decimal:
        return calculate_exchange_rate(
            self.state.cash,
            self.state.total_borrows,
            self.state.total_reserves,
            self.state.total_shares,
            self.params.initial_exchange_rate,
        )

    def _settled_supply(self, account: AccountId) -> int:
        return settle_supply(self._supplies.get(account), self.state.supply_index)

    def _settled_debt(self, account: AccountId) -> int:
        return settle_borrow(self._borrows.get(account), self.state.borrow_index)

    def _write_supply(self, account: AccountId, principal: int) -> None:
        self._supplies[account] = BalanceSnapshot(max(principal, 0), self.state.supply_index)

    def _write_borrow(self, account: AccountId, principal: int) -> None:
        self._borrows[account] = BalanceSnapshot(max(principal, 0), self.state.borrow_index)

    def _mint(self, account: AccountId, shares: int) -> None:
        self._shares[account] = self._shares.get(account, 0) + shares
        self.state.total_shares += shares

    def _burn(self, account: AccountId, shares: int) -> None:
        balance = self._shares.get(account, 0)
        if shares > balance:
            raise InsufficientShares(f"{account} holds {balance} {self.symbol} shares, needs {shares}")
        self._shares[account] = balance - shares
        self.state.total_shares -= shares

    def _reduce_debt(self, account: AccountId, debt: int, repay: int) -> None:
        self._write_borrow(account, debt - repay)
        self.state.total_borrows = max(self.state.total_borrows - repay, 0)

    def _require_active(self) -> None:
        if self.state.paused:
            raise MarketPaused(f"market {self.symbol} is paused")

    def _require_admin(self, caller: str) -> None:
        if caller != self.admin:
            raise NotAdmin(f"{caller} is not the admin of {self.symbol}")

    def _require_risk_engine(self, caller: Any) -> None:
        if caller is not self.risk_engine:
            raise NotRiskEngine(f"only the risk engine may call this on {self.symbol}")

    def _refund(self, dest: str, excess: int) -> None:
        if excess > 0:
            self.transfer.push(dest, excess)

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"✓ {self.symbol} {message}")

    # ------------------------------------------------------------------
    # Supply side
    # ------------------------------------------------------------------

    @guarded
    def supply(self, account: AccountId, amount: int, attached_value: int = 0) -> int:
        """
        Deposit underlying and mint shares at the current exchange rate.

        Returns:
            Shares minted.

        Raises:
            NonPositiveAmount, MarketPaused, SupplyCapExceeded, DustAmount,
            plus risk-engine listing checks and transfer failures.
        """
        require_positive(amount)
        self._require_active()
        self.risk_engine.validate_supply(self, account)
        self.accrue_interest()

        cap = self.state.supply_cap
        pool = self.state.cash + self.state.total_borrows - self.state.total_reserves
        if cap is not None and pool + amount > cap:
            raise SupplyCapExceeded(f"{self.symbol}: supplying {amount} breaches cap {cap} (pool {pool})")

        rate = self._current_rate()
        shares = truncate(Decimal(amount) / rate)
        if shares == 0:
            raise DustAmount(f"{self.symbol}: {amount} buys zero shares at rate {rate}")

        principal = self._settled_supply(account)
        self._mint(account, shares)
        self._write_supply(account, principal + amount)
        self.state.cash += amount

        excess = self.transfer.pull(account, amount, attached_value)
        self._refund(account, excess)
        self._log(f"SUPPLY {account}: {amount} → {shares} shares @ {rate}")
        return shares

    @guarded
    def redeem(self, account: AccountId, shares: int) -> int:
        """
        Burn shares for underlying.

        Returns:
            Underlying paid out after the redeem fee.
        """
        require_positive(shares, "shares")
        self._require_active()
        balance = self.balance_of(account)
        if shares > balance:
            raise InsufficientShares(f"{account} holds {balance} {self.symbol} shares, redeeming {shares}")
        self.accrue_interest()
        amount = truncate(Decimal(shares) * self._current_rate())
        if amount == 0:
            raise DustAmount(f"{self.symbol}: {shares} shares redeem for zero underlying")
        return self._redeem(account, shares, amount)

    @guarded
    def redeem_underlying(self, account: AccountId, amount: int) -> int:
        """
        Redeem an exact amount of underlying, burning shares rounded up.

        Returns:
            Underlying paid out after the redeem fee.
        """
        require_positive(amount)
        self._require_active()
        self.accrue_interest()
        shares = round_up(Decimal(amount) / self._current_rate())
        balance = self.balance_of(account)
        if shares > balance:
            raise InsufficientShares(
                f"{account} holds {balance} {self.symbol} shares, {amount} needs {shares}"
            )
        return self._redeem(account, shares, amount)

    def _redeem(self, account: AccountId, shares: int, amount: int) -> int:
        if amount > self.state.cash:
            raise InsufficientCash(f"{self.symbol}: cash {self.state.cash} cannot cover {amount}")
        self.risk_engine.validate_redeem(self, account, amount)

        principal = self._settled_supply(account)
        self._burn(account, shares)
        self._write_supply(account, principal - amount)

        fee = truncate(Decimal(amount) * self.state.redeem_fee_rate)
        self.state.cash -= amount
        self.state.total_fees += fee
        payout = amount - fee
        if payout > 0:
            self.transfer.push(account, payout)
        self._log(f"REDEEM {account}: {shares} shares → {amount} (fee {fee})")
        return payout

    # ------------------------------------------------------------------
    # Borrow side
    # ------------------------------------------------------------------

    @guarded
    def borrow(self, account: AccountId, amount: int) -> int:
        """
        Borrow underlying against collateral held across all entered markets.

        Returns:
            Underlying paid out after the borrow fee. The full amount is owed.
        """
        require_positive(amount)
        self._require_active()
        self.accrue_interest()

        cap = self.state.borrow_cap
        if cap is not None and self.state.total_borrows + amount > cap:
            raise BorrowCapExceeded(
                f"{self.symbol}: borrowing {amount} breaches cap {cap} (borrows {self.state.total_borrows})"
            )
        self.risk_engine.validate_borrow(self, account, amount)
        if amount > self.state.cash:
            raise InsufficientCash(f"{self.symbol}: cash {self.state.cash} cannot cover borrow {amount}")

        debt = self._settled_debt(account)
        self._write_borrow(account, debt + amount)
        self.state.total_borrows += amount
        self.state.cash -= amount

        fee = truncate(Decimal(amount) * self.state.borrow_fee_rate)
        self.state.total_fees += fee
        payout = amount - fee
        if payout > 0:
            self.transfer.push(account, payout)
        self._log(f"BORROW {account}: {amount} (fee {fee})")
        return payout

    @guarded
    def repay_borrow(self, payer: AccountId, borrower: AccountId, amount: int, attached_value: int = 0) -> int:
        """
        Repay up to `amount` of borrower's debt from payer's funds.

        An amount above the debt repays in full. For native markets the excess
        of attached_value over the amount repaid is refunded to the payer.

        Returns:
            Amount of debt repaid.
        """
        require_positive(amount)
        self.accrue_interest()
        debt = self._settled_debt(borrower)
        if debt == 0:
            raise NothingToRepay(f"{borrower} owes nothing in {self.symbol}")
        repay = min(amount, debt)

        self._reduce_debt(borrower, debt, repay)
        self.state.cash += repay

        excess = self.transfer.pull(payer, repay, attached_value)
        self._refund(payer, excess)
        self._log(f"REPAY {payer} for {borrower}: {repay} (debt {debt} → {debt - repay})")
        return repay

    # ------------------------------------------------------------------
    # Liquidation primitives (risk engine only)
    # ------------------------------------------------------------------

    @guarded
    def liquidate_borrow(self, caller: Any, liquidator: AccountId, borrower: AccountId, repay_amount: int) -> int:
        """
        Repay borrower's debt out of the liquidator's own supply in this market.

        Burns ceil(repay / exchange_rate) of the liquidator's shares.

        Returns:
            Debt repaid (clamped to the borrower's debt).
        """
        self._require_risk_engine(caller)
        require_positive(repay_amount, "repay_amount")
        if liquidator == borrower:
            raise SelfLiquidation(f"{borrower} cannot liquidate itself")
        self.accrue_interest()
        debt = self._settled_debt(borrower)
        if debt == 0:
            raise NoOpenBorrow(f"{borrower} has no borrow in {self.symbol}")
        repay = min(repay_amount, debt)

        shares = round_up(Decimal(repay) / self._current_rate())
        liquidator_principal = self._settled_supply(liquidator)
        self._reduce_debt(borrower, debt, repay)
        self._burn(liquidator, shares)
        self._write_supply(liquidator, liquidator_principal - repay)
        self._log(f"LIQUIDATE {borrower} by {liquidator}: repaid {repay} with {shares} shares")
        return repay

    @guarded
    def seize_collateral(
        self,
        caller: Any,
        liquidator: AccountId,
        borrower: AccountId,
        seize_amount: int,
        protocol_share_pct: Decimal,
    ) -> int:
        """
        Move borrower shares worth seize_amount to the liquidator.

        protocol_share_pct of the seized shares is retired instead and its
        underlying value credited to reserves.

        Returns:
            Underlying value of all shares taken from the borrower.
        """
        self._require_risk_engine(caller)
        require_positive(seize_amount, "seize_amount")
        pct = to_decimal(protocol_share_pct)
        if not (0 <= pct <= 1):
            raise InvalidParameter(f"protocol_share_pct must be in [0, 1], got {pct}")
        if liquidator == borrower:
            raise SelfLiquidation(f"{borrower} cannot seize from itself")
        self.accrue_interest()

        rate = self._current_rate()
        shares = min(truncate(Decimal(seize_amount) / rate), self.balance_of(borrower))
        if shares == 0:
            return 0
        protocol_shares = truncate(Decimal(shares) * pct)
        liquidator_shares = shares - protocol_shares

        seized = truncate(Decimal(shares) * rate)
        protocol_value = truncate(Decimal(protocol_shares) * rate)
        liquidator_value = truncate(Decimal(liquidator_shares) * rate)

        borrower_principal = self._settled_supply(borrower)
        self._burn(borrower, shares)
        self._write_supply(borrower, borrower_principal - seized)

        if liquidator_shares:
            liquidator_principal = self._settled_supply(liquidator)
            self._mint(liquidator, liquidator_shares)
            self._write_supply(liquidator, liquidator_principal + liquidator_value)

        self.state.total_reserves += protocol_value
        self._log(
            f"SEIZE {borrower} → {liquidator}: {shares} shares ({seized}), "
            f"protocol {protocol_shares} shares ({protocol_value})"
        )
        return seized

    @guarded
    def seize_bad_collateral(self, caller: Any, borrower: AccountId, seize_amount: int) -> int:
        """
        Retire borrower shares worth seize_amount and credit the value to reserves.

        An amount at or above the borrower's full balance takes every share.

        Returns:
            Underlying value moved into reserves.
        """
        self._require_risk_engine(caller)
        require_positive(seize_amount, "seize_amount")
        self.accrue_interest()

        rate = self._current_rate()
        balance = self.balance_of(borrower)
        if balance == 0:
            return 0
        if seize_amount >= truncate(Decimal(balance) * rate):
            shares = balance
        else:
            shares = min(truncate(Decimal(seize_amount) / rate), balance)
        if shares == 0:
            return 0

        value = truncate(Decimal(shares) * rate)
        principal = self._settled_supply(borrower)
        self._burn(borrower, shares)
        self._write_supply(borrower, 0 if shares == balance else principal - value)
        self.state.total_reserves += value
        self._log(f"SEIZE BAD COLLATERAL {borrower}: {shares} shares ({value}) → reserves")
        return value

    @guarded
    def liquidate_bad_debt(self, caller: Any, borrower: AccountId, repay_amount: int) -> int:
        """
        Write off borrower debt against reserves.

        Returns:
            Debt written off.
        """
        self._require_risk_engine(caller)
        require_positive(repay_amount, "repay_amount")
        self.accrue_interest()
        debt = self._settled_debt(borrower)
        if debt == 0:
            raise NoOpenBorrow(f"{borrower} has no borrow in {self.symbol}")
        repay = min(repay_amount, debt)
        if self.state.total_reserves < repay:
            raise InsufficientReserves(
                f"{self.symbol}: reserves {self.state.total_reserves} cannot absorb bad debt {repay}"
            )
        self._reduce_debt(borrower, debt, repay)
        self.state.total_reserves -= repay
        self._log(f"WRITE OFF {borrower}: {repay} against reserves")
        return repay

    # ------------------------------------------------------------------
    # Reserves and fees
    # ------------------------------------------------------------------

    @guarded
    def add_reserves(self, payer: AccountId, amount: int, attached_value: int = 0) -> int:
        """Fund reserves from any account."""
        require_positive(amount)
        self.accrue_interest()
        self.state.cash += amount
        self.state.total_reserves += amount
        excess = self.transfer.pull(payer, amount, attached_value)
        self._refund(payer, excess)
        self._log(f"ADD RESERVES {payer}: {amount} (reserves {self.state.total_reserves})")
        return self.state.total_reserves

    @guarded
    def remove_reserves(self, caller: str, amount: int, to: Optional[AccountId] = None) -> int:
        self._require_admin(caller)
        require_positive(amount)
        self.accrue_interest()
        if amount > self.state.total_reserves:
            raise InsufficientReserves(f"{self.symbol}: reserves {self.state.total_reserves} < {amount}")
        if amount > self.state.cash:
            raise InsufficientCash(f"{self.symbol}: cash {self.state.cash} < {amount}")
        self.state.total_reserves -= amount
        self.state.cash -= amount
        self.transfer.push(to or caller, amount)
        self._log(f"REMOVE RESERVES {amount} → {to or caller}")
        return self.state.total_reserves

    @guarded
    def withdraw_fees(self, caller: str, amount: int, to: Optional[AccountId] = None) -> int:
        self._require_admin(caller)
        require_positive(amount)
        if amount > self.state.total_fees:
            raise InsufficientFees(f"{self.symbol}: fees {self.state.total_fees} < {amount}")
        self.state.total_fees -= amount
        self.transfer.push(to or caller, amount)
        self._log(f"WITHDRAW FEES {amount} → {to or caller}")
        return self.state.total_fees

    @guarded
    def convert_fees_to_reserves(self, caller: str, amount: int) -> None:
        self._require_admin(caller)
        require_positive(amount)
        self.accrue_interest()
        if amount > self.state.total_fees:
            raise InsufficientFees(f"{self.symbol}: fees {self.state.total_fees} < {amount}")
        self.state.total_fees -= amount
        self.state.cash += amount
        self.state.total_reserves += amount
        self._log(f"FEES → RESERVES {amount}")

    @guarded
    def convert_reserves_to_fees(self, caller: str, amount: int) -> None:
        self._require_admin(caller)
        require_positive(amount)
        self.accrue_interest()
        if amount > self.state.total_reserves:
            raise InsufficientReserves(f"{self.symbol}: reserves {self.state.total_reserves} < {amount}")
        if amount > self.state.cash:
            raise InsufficientCash(f"{self.symbol}: cash {self.state.cash} < {amount}")
        self.state.total_reserves -= amount
        self.state.cash -= amount
        self.state.total_fees += amount
        self._log(f"RESERVES → FEES {amount}")

    @guarded
    def reconcile_reserves(self, caller: str) -> int:
        """
        Credit any custody surplus over cash + fees to cash and reserves.

        Returns:
            The surplus credited (0 when custody matches the books).

        Raises:
            CustodyShortfall: custody holds less than cash + fees.
        """
        self._require_admin(caller)
        self.accrue_interest()
        actual = self.transfer.custody_balance()
        expected = self.state.cash + self.state.total_fees
        surplus = actual - expected
        if surplus < 0:
            raise CustodyShortfall(f"{self.symbol}: custody {actual} < cash + fees {expected}")
        if surplus:
            self.state.cash += surplus
            self.state.total_reserves += surplus
            self._log(f"RECONCILE: +{surplus} to reserves")
        return surplus

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    @guarded
    def set_reserve_factor(self, caller: str, reserve_factor: Any) -> None:
        self._require_admin(caller)
        value = to_decimal(reserve_factor)
        validate_reserve_factor(value)
        self.accrue_interest()
        self.state.reserve_factor = value
        self._log(f"reserve_factor = {value}")

    @guarded
    def set_interest_rate_model(self, caller: str, rate_model: JumpRateModel) -> None:
        """Swap the rate model; interest up to now accrues under the old one."""
        self._require_admin(caller)
        self.accrue_interest()
        self.rate_model = rate_model
        self._log(f"rate model = {rate_model!r}")

    @guarded
    def set_fee_rates(self, caller: str, borrow_fee_rate: Any = None, redeem_fee_rate: Any = None) -> None:
        """Update either fee rate; None leaves it unchanged."""
        self._require_admin(caller)
        if borrow_fee_rate is not None:
            value = to_decimal(borrow_fee_rate)
            validate_fee_rate(value, "borrow_fee_rate")
            self.state.borrow_fee_rate = value
        if redeem_fee_rate is not None:
            value = to_decimal(redeem_fee_rate)
            validate_fee_rate(value, "redeem_fee_rate")
            self.state.redeem_fee_rate = value
        self._log(f"fees: borrow {self.state.borrow_fee_rate}, redeem {self.state.redeem_fee_rate}")

    @guarded
    def set_caps(self, caller: str, supply_cap: Optional[int], borrow_cap: Optional[int]) -> None:
        """Replace both caps. None removes a cap."""
        self._require_admin(caller)
        validate_cap(supply_cap, "supply_cap")
        validate_cap(borrow_cap, "borrow_cap")
        self.state.supply_cap = supply_cap
        self.state.borrow_cap = borrow_cap
        self._log(f"caps: supply {supply_cap}, borrow {borrow_cap}")

    @guarded
    def pause(self, caller: str) -> None:
        self._require_admin(caller)
        self.state.paused = True
        self._log("PAUSED")

    @guarded
    def unpause(self, caller: str) -> None:
        self._require_admin(caller)
        self.state.paused = False
        self._log("UNPAUSED")

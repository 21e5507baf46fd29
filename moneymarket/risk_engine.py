"""
risk_engine.py - Cross-market collateral checks and liquidation orchestration

The risk engine owns only cross-cutting metadata: which markets are listed
and their risk parameters, which markets each account has touched, and the
registry of accounts that ever borrowed. Balances are always read live from
the markets, projected to the current time, and priced through the oracle.

Risk ratio = debt_usd / sum(collateral_usd * ltv). 1.0 is exactly at the
LTV boundary; liquidators may act between the liquidation threshold and 1.0;
at or beyond 1.0 the position is bad debt and only the admin sweep applies.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from .core import (
    DEFAULT_ADMIN,
    AccountId,
    AccountSnapshot,
    BadDebtPosition,
    FeedId,
    InvalidParameter,
    LiquidationNotEligible,
    LiquidatorUndercollateralized,
    MarketAlreadyListed,
    MarketFrozen,
    MarketNotListed,
    MarketPaused,
    NoMarketsEntered,
    NoOpenBorrow,
    NonPositiveAmount,
    NotAdmin,
    ReentrancyGuard,
    RiskAssessment,
    SelfLiquidation,
    Undercollateralized,
    compute_risk_ratio,
    guarded,
    to_decimal,
    units_to_value,
    value_to_units,
)
from .oracle import PriceOracle


# ============================================================================
# MARKET HANDLE
# ============================================================================

@runtime_checkable
class MarketHandle(Protocol):
    """What the risk engine needs from a market."""
    symbol: str
    decimals: int
    risk_engine: Any
    transfer: Any
    total_borrows: int

    def get_account_snapshot(self, account: AccountId) -> AccountSnapshot:
        ...

    def borrow_balance(self, account: AccountId) -> int:
        ...

    def seize_collateral(self, caller: Any, liquidator: AccountId, borrower: AccountId,
                         seize_amount: int, protocol_share_pct: Decimal) -> int:
        ...

    def seize_bad_collateral(self, caller: Any, borrower: AccountId, seize_amount: int) -> int:
        ...

    def liquidate_borrow(self, caller: Any, liquidator: AccountId, borrower: AccountId,
                         repay_amount: int) -> int:
        ...

    def liquidate_bad_debt(self, caller: Any, borrower: AccountId, repay_amount: int) -> int:
        ...

    def checkpoint(self) -> Any:
        ...

    def rollback(self, snapshot: Any) -> None:
        ...


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass(frozen=True, slots=True)
class MarketRiskConfig:
    """
    Risk parameters of one listed market.

    Attributes:
        ltv: Fraction of supplied value counted as collateral
        price_feed_id: Oracle feed for the underlying's USD price
        frozen: No new supply or borrow
        borrow_paused: No new borrow
        supply_paused: No new supply
    """
    ltv: Decimal
    price_feed_id: FeedId
    frozen: bool = False
    borrow_paused: bool = False
    supply_paused: bool = False

    def __post_init__(self):
        object.__setattr__(self, "ltv", to_decimal(self.ltv))
        validate_ltv(self.ltv)


def validate_ltv(ltv: Decimal) -> None:
    if not (0 <= ltv <= 1):
        raise InvalidParameter(f"ltv must be in [0, 1], got {ltv}")


@dataclass(frozen=True, slots=True)
class RiskParams:
    """
    Global liquidation parameters.

    Attributes:
        liquidation_risk_threshold: Risk ratio from which liquidators may act
        protocol_seize_share: Scale of the protocol's cut of seized collateral
        liquidation_incentive: Seized value per unit of repaid value
        max_liquidate_rate: Scale of the repayable amount, debt * rate / risk_ratio
    """
    liquidation_risk_threshold: Decimal = Decimal("0.90")
    protocol_seize_share: Decimal = Decimal("0.2")
    liquidation_incentive: Decimal = Decimal("1.08")
    max_liquidate_rate: Decimal = Decimal("0.5")

    def __post_init__(self):
        for name in ("liquidation_risk_threshold", "protocol_seize_share",
                     "liquidation_incentive", "max_liquidate_rate"):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))
        if not (0 < self.liquidation_risk_threshold <= 1):
            raise InvalidParameter(
                f"liquidation_risk_threshold must be in (0, 1], got {self.liquidation_risk_threshold}"
            )
        if not (0 <= self.protocol_seize_share <= 1):
            raise InvalidParameter(f"protocol_seize_share must be in [0, 1], got {self.protocol_seize_share}")
        if self.liquidation_incentive < 1:
            raise InvalidParameter(f"liquidation_incentive must be >= 1, got {self.liquidation_incentive}")
        if not (0 < self.max_liquidate_rate <= 1):
            raise InvalidParameter(f"max_liquidate_rate must be in (0, 1], got {self.max_liquidate_rate}")


# ============================================================================
# RESULTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class LiquidationResult:
    """Outcome of one liquidator-initiated liquidation."""
    borrower: AccountId
    liquidator: AccountId
    market: str
    repay_amount: int
    repay_usd: Decimal
    seized: Tuple[Tuple[str, int], ...]
    protocol_share_pct: Decimal
    risk_ratio_before: Decimal
    risk_ratio_after: Decimal


@dataclass(frozen=True, slots=True)
class BadDebtSweepResult:
    """Outcome of an admin bad-debt sweep."""
    liquidated: Tuple[AccountId, ...]
    skipped: Tuple[AccountId, ...]
    written_off: Dict[str, int] = field(default_factory=dict)
    seized: Dict[str, int] = field(default_factory=dict)


# ============================================================================
# RISK ENGINE
# ============================================================================

class RiskEngine:
    """
    Listing registry, account memberships and collateral checks.
    """

    def __init__(
        self,
        oracle: PriceOracle,
        admin: str = DEFAULT_ADMIN,
        params: Optional[RiskParams] = None,
        name: str = "risk",
        verbose: bool = True,
    ):
        self.oracle = oracle
        self.admin = admin
        self.params = params or RiskParams()
        self.name = name
        self.verbose = verbose
        self._markets: Dict[str, MarketHandle] = {}
        self._configs: Dict[str, MarketRiskConfig] = {}
        self._memberships: Dict[AccountId, List[str]] = {}
        self._borrowers: List[AccountId] = []
        self._guard = ReentrancyGuard(name)

    def __repr__(self):
        return f"RiskEngine({len(self._markets)} markets, {len(self._borrowers)} borrowers)"

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def markets(self) -> Dict[str, MarketHandle]:
        return dict(self._markets)

    def get_market(self, symbol: str) -> MarketHandle:
        market = self._markets.get(symbol)
        if market is None:
            raise MarketNotListed(f"market {symbol} is not listed")
        return market

    def is_listed(self, symbol: str) -> bool:
        return symbol in self._markets

    def market_config(self, symbol: str) -> MarketRiskConfig:
        self.get_market(symbol)
        return self._configs[symbol]

    def memberships(self, account: AccountId) -> List[str]:
        """Markets the account touched, in join order. Never pruned."""
        return list(self._memberships.get(account, []))

    def borrowers(self) -> List[AccountId]:
        return list(self._borrowers)

    def price_of(self, symbol: str) -> Decimal:
        return self.oracle.get_price(self._configs[symbol].price_feed_id)

    def check_liquidation_risk(self, account: AccountId) -> RiskAssessment:
        """
        Aggregate LTV-weighted collateral and debt over the account's markets.

        Delisted markets and markets where the account holds nothing are
        skipped; every other market needs a price.

        Raises:
            NoMarketsEntered: the account never touched a market
            PriceUnavailable: any needed price is missing
        """
        return self._assess(account)

    def _assess(
        self,
        account: AccountId,
        borrow_delta: Optional[Tuple[str, int]] = None,
        redeem_delta: Optional[Tuple[str, int]] = None,
    ) -> RiskAssessment:
        joined = self._memberships.get(account)
        if not joined:
            raise NoMarketsEntered(f"{account} has not entered any market")

        debt_usd = Decimal(0)
        weighted_usd = Decimal(0)
        gross_usd = Decimal(0)
        for symbol in joined:
            market = self._markets.get(symbol)
            if market is None:
                continue
            snapshot = market.get_account_snapshot(account)
            supplied = snapshot.supply_balance
            borrowed = snapshot.borrow_balance
            if borrow_delta is not None and borrow_delta[0] == symbol:
                borrowed += borrow_delta[1]
            if redeem_delta is not None and redeem_delta[0] == symbol:
                supplied = max(supplied - redeem_delta[1], 0)
            if supplied == 0 and borrowed == 0:
                continue

            price = self.price_of(symbol)
            supplied_usd = units_to_value(supplied, market.decimals, price)
            gross_usd += supplied_usd
            weighted_usd += supplied_usd * self._configs[symbol].ltv
            debt_usd += units_to_value(borrowed, market.decimals, price)

        return RiskAssessment(
            risk_ratio=compute_risk_ratio(debt_usd, weighted_usd),
            debt_usd=debt_usd,
            supplied_usd=weighted_usd,
            gross_supplied_usd=gross_usd,
        )

    def has_debt(self, account: AccountId) -> bool:
        return any(
            symbol in self._markets and self._markets[symbol].borrow_balance(account) > 0
            for symbol in self._memberships.get(account, [])
        )

    # ------------------------------------------------------------------
    # Checkpoint / rollback
    # ------------------------------------------------------------------

    def checkpoint(self):
        return (
            dict(self._markets),
            dict(self._configs),
            {account: list(joined) for account, joined in self._memberships.items()},
            list(self._borrowers),
            self.params,
        )

    def rollback(self, snapshot) -> None:
        markets, configs, memberships, borrowers, params = snapshot
        self._markets = dict(markets)
        self._configs = dict(configs)
        self._memberships = {account: list(joined) for account, joined in memberships.items()}
        self._borrowers = list(borrowers)
        self.params = params

    def participants(self) -> List[Any]:
        """The engine, every listed market and each market's transfer."""
        participants: List[Any] = [self]
        for market in self._markets.values():
            participants.append(market)
            participants.append(market.transfer)
        return participants

    def _participants(self):
        return self.participants()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_admin(self, caller: str) -> None:
        if caller != self.admin:
            raise NotAdmin(f"{caller} is not the risk engine admin")

    def _require_seize_headroom(self, symbol: str, ltv: Decimal, incentive: Decimal) -> None:
        # seizing repay * incentive must not cost more weighted collateral than the debt repaid
        if ltv * incentive > 1:
            raise InvalidParameter(
                f"{symbol}: ltv {ltv} x liquidation_incentive {incentive} exceeds 1"
            )

    def _listed(self, market: MarketHandle) -> MarketRiskConfig:
        if self._markets.get(market.symbol) is not market:
            raise MarketNotListed(f"market {market.symbol} is not listed")
        return self._configs[market.symbol]

    def _enter(self, account: AccountId, symbol: str) -> None:
        joined = self._memberships.setdefault(account, [])
        if symbol not in joined:
            joined.append(symbol)

    def _update_config(self, symbol: str, **changes) -> MarketRiskConfig:
        self.get_market(symbol)
        config = replace(self._configs[symbol], **changes)
        self._configs[symbol] = config
        return config

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"✓ {self.name} {message}")

    # ------------------------------------------------------------------
    # Market-facing validation
    # ------------------------------------------------------------------

    @guarded
    def validate_supply(self, market: MarketHandle, account: AccountId) -> None:
        """Check the market accepts supply and register the account's membership."""
        config = self._listed(market)
        if config.frozen:
            raise MarketFrozen(f"market {market.symbol} is frozen")
        if config.supply_paused:
            raise MarketPaused(f"supply is paused in {market.symbol}")
        self._enter(account, market.symbol)

    @guarded
    def validate_borrow(self, market: MarketHandle, account: AccountId, amount: int) -> None:
        """
        Permit a borrow iff weighted collateral covers debt including the new borrow.

        Registers membership and the borrower registry entry on success.
        """
        config = self._listed(market)
        if config.frozen:
            raise MarketFrozen(f"market {market.symbol} is frozen")
        if config.borrow_paused:
            raise MarketPaused(f"borrowing is paused in {market.symbol}")
        self._enter(account, market.symbol)

        assessment = self._assess(account, borrow_delta=(market.symbol, amount))
        if assessment.supplied_usd < assessment.debt_usd:
            raise Undercollateralized(
                f"{account}: collateral {assessment.supplied_usd} < debt {assessment.debt_usd} "
                f"after borrowing {amount} {market.symbol}"
            )
        if account not in self._borrowers:
            self._borrowers.append(account)

    def validate_redeem(self, market: MarketHandle, account: AccountId, amount: int) -> None:
        """
        Permit a redemption iff weighted collateral still covers debt afterwards.

        Delisted markets are redeemable. Accounts without debt always pass.
        """
        if market.risk_engine is not self:
            raise MarketNotListed(f"market {market.symbol} does not report to this risk engine")
        if not self.has_debt(account):
            return
        assessment = self._assess(account, redeem_delta=(market.symbol, amount))
        if assessment.supplied_usd < assessment.debt_usd:
            raise Undercollateralized(
                f"{account}: collateral {assessment.supplied_usd} < debt {assessment.debt_usd} "
                f"after redeeming {amount} {market.symbol}"
            )

    # ------------------------------------------------------------------
    # Liquidation
    # ------------------------------------------------------------------

    def protocol_share_pct(self, risk_ratio: Decimal) -> Decimal:
        """Protocol's cut of seized collateral, growing with how far underwater the position is."""
        incentive = self.params.liquidation_incentive
        pct = self.params.protocol_seize_share * risk_ratio * (incentive - 1) / incentive
        return min(max(pct, Decimal(0)), Decimal(1))

    @guarded
    def liquidate_borrow(self, liquidator: AccountId, borrower: AccountId, market_symbol: str) -> LiquidationResult:
        """
        Repay part of borrower's debt in market_symbol and seize collateral.

        The liquidator repays from its own supply in the target market and
        receives borrower collateral worth repay * liquidation_incentive,
        taken from the borrower's markets in membership order.
        """
        if liquidator == borrower:
            raise SelfLiquidation(f"{borrower} cannot liquidate itself")
        target = self.get_market(market_symbol)
        target_debt = target.borrow_balance(borrower)
        if target_debt == 0:
            raise NoOpenBorrow(f"{borrower} has no borrow in {market_symbol}")

        before = self._assess(borrower)
        ratio = before.risk_ratio
        if ratio < self.params.liquidation_risk_threshold:
            raise LiquidationNotEligible(
                f"{borrower}: risk ratio {ratio} below threshold {self.params.liquidation_risk_threshold}"
            )
        if ratio >= 1:
            raise BadDebtPosition(f"{borrower}: risk ratio {ratio} is bad debt")

        if not self._memberships.get(liquidator):
            raise LiquidatorUndercollateralized(f"{liquidator} has no collateral")
        liquidator_position = self._assess(liquidator)
        if liquidator_position.free_collateral_usd < before.debt_usd:
            raise LiquidatorUndercollateralized(
                f"{liquidator}: free collateral {liquidator_position.free_collateral_usd} "
                f"< borrower debt {before.debt_usd}"
            )

        target_price = self.price_of(market_symbol)
        target_debt_usd = units_to_value(target_debt, target.decimals, target_price)
        repay_usd = min(before.debt_usd * self.params.max_liquidate_rate / ratio, target_debt_usd)
        repay_amount = min(value_to_units(repay_usd, target.decimals, target_price), target_debt)
        if repay_amount <= 0:
            raise NonPositiveAmount(f"liquidation of {borrower} in {market_symbol} rounds to zero")
        repay_usd = units_to_value(repay_amount, target.decimals, target_price)

        pct = self.protocol_share_pct(ratio)
        remaining_usd = repay_usd * self.params.liquidation_incentive
        seized: List[Tuple[str, int]] = []
        for symbol in list(self._memberships[borrower]):
            if remaining_usd <= 0:
                break
            market = self._markets.get(symbol)
            if market is None:
                continue
            supplied = market.get_account_snapshot(borrower).supply_balance
            if supplied == 0:
                continue
            price = self.price_of(symbol)
            take_usd = min(remaining_usd, units_to_value(supplied, market.decimals, price))
            seize_amount = value_to_units(take_usd, market.decimals, price)
            if seize_amount == 0:
                continue
            taken = market.seize_collateral(self, liquidator, borrower, seize_amount, pct)
            if taken == 0:
                continue
            self._enter(liquidator, symbol)
            seized.append((symbol, taken))
            remaining_usd -= units_to_value(taken, market.decimals, price)

        target.liquidate_borrow(self, liquidator, borrower, repay_amount)
        after = self._assess(borrower)
        self._log(
            f"LIQUIDATE {borrower} in {market_symbol} by {liquidator}: repaid {repay_amount}, "
            f"seized {seized}, risk {ratio:.6f} → {after.risk_ratio:.6f}"
        )
        return LiquidationResult(
            borrower=borrower,
            liquidator=liquidator,
            market=market_symbol,
            repay_amount=repay_amount,
            repay_usd=repay_usd,
            seized=tuple(seized),
            protocol_share_pct=pct,
            risk_ratio_before=ratio,
            risk_ratio_after=after.risk_ratio,
        )

    def find_bad_debts(self) -> List[AccountId]:
        """Registered borrowers whose risk ratio is at or beyond 1.0."""
        result = []
        for account in self._borrowers:
            assessment = self._assess(account)
            if assessment.debt_usd > 0 and assessment.risk_ratio >= 1:
                result.append(account)
        return result

    @guarded
    def liquidate_bad_debts(self, caller: str, borrowers: Optional[Sequence[AccountId]] = None) -> BadDebtSweepResult:
        """
        Write off every debt and retire every supply of each bad-debt borrower.

        Borrowers below a 1.0 risk ratio are skipped. A reserve shortfall in
        any market aborts the whole batch.
        """
        self._require_admin(caller)
        candidates = list(self._borrowers) if borrowers is None else list(borrowers)
        liquidated: List[AccountId] = []
        skipped: List[AccountId] = []
        written_off: Dict[str, int] = {}
        seized: Dict[str, int] = {}

        for borrower in candidates:
            if not self._memberships.get(borrower):
                skipped.append(borrower)
                continue
            assessment = self._assess(borrower)
            if assessment.debt_usd <= 0 or assessment.risk_ratio < 1:
                skipped.append(borrower)
                continue

            joined = [s for s in self._memberships[borrower] if s in self._markets]
            for symbol in joined:
                market = self._markets[symbol]
                debt = market.borrow_balance(borrower)
                if debt > 0:
                    repaid = market.liquidate_bad_debt(self, borrower, debt)
                    written_off[symbol] = written_off.get(symbol, 0) + repaid
            for symbol in joined:
                market = self._markets[symbol]
                supplied = market.get_account_snapshot(borrower)
                if supplied.shares > 0:
                    value = market.seize_bad_collateral(self, borrower, max(supplied.supply_balance, 1))
                    seized[symbol] = seized.get(symbol, 0) + value

            if borrower in self._borrowers:
                self._borrowers.remove(borrower)
            liquidated.append(borrower)

        self._log(f"BAD DEBT SWEEP: liquidated {liquidated}, skipped {skipped}")
        return BadDebtSweepResult(
            liquidated=tuple(liquidated),
            skipped=tuple(skipped),
            written_off=written_off,
            seized=seized,
        )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    @guarded
    def support_market(self, caller: str, market: MarketHandle, ltv: Any, price_feed_id: FeedId) -> None:
        """List a market. The market must already point at this risk engine."""
        self._require_admin(caller)
        if market.symbol in self._markets:
            raise MarketAlreadyListed(f"market {market.symbol} is already listed")
        if market.risk_engine is not self:
            raise InvalidParameter(f"market {market.symbol} reports to a different risk engine")
        config = MarketRiskConfig(ltv=ltv, price_feed_id=price_feed_id)
        self._require_seize_headroom(market.symbol, config.ltv, self.params.liquidation_incentive)
        self._configs[market.symbol] = config
        self._markets[market.symbol] = market
        self._log(f"LISTED {market.symbol} (ltv {self._configs[market.symbol].ltv}, feed {price_feed_id!r})")

    @guarded
    def remove_market(self, caller: str, symbol: str) -> None:
        """
        Delist a market with no outstanding borrows.

        Only risk metadata goes; balances stay queryable and redeemable.
        """
        self._require_admin(caller)
        market = self.get_market(symbol)
        if market.total_borrows > 0:
            raise InvalidParameter(f"market {symbol} still has {market.total_borrows} borrowed")
        del self._markets[symbol]
        del self._configs[symbol]
        self._log(f"DELISTED {symbol}")

    @guarded
    def set_market_frozen(self, caller: str, symbol: str, frozen: bool) -> None:
        self._require_admin(caller)
        self._update_config(symbol, frozen=frozen)
        self._log(f"{symbol} frozen = {frozen}")

    @guarded
    def set_borrow_paused(self, caller: str, symbol: str, paused: bool) -> None:
        self._require_admin(caller)
        self._update_config(symbol, borrow_paused=paused)
        self._log(f"{symbol} borrow_paused = {paused}")

    @guarded
    def set_supply_paused(self, caller: str, symbol: str, paused: bool) -> None:
        self._require_admin(caller)
        self._update_config(symbol, supply_paused=paused)
        self._log(f"{symbol} supply_paused = {paused}")

    @guarded
    def set_ltv(self, caller: str, symbol: str, ltv: Any) -> None:
        self._require_admin(caller)
        ltv = to_decimal(ltv)
        self.get_market(symbol)
        self._require_seize_headroom(symbol, ltv, self.params.liquidation_incentive)
        config = self._update_config(symbol, ltv=ltv)
        self._log(f"{symbol} ltv = {config.ltv}")

    @guarded
    def set_price_feed(self, caller: str, symbol: str, price_feed_id: FeedId) -> None:
        self._require_admin(caller)
        self._update_config(symbol, price_feed_id=price_feed_id)
        self._log(f"{symbol} feed = {price_feed_id!r}")

    def _set_param(self, caller: str, **changes) -> None:
        self._require_admin(caller)
        self.params = replace(self.params, **changes)
        self._log(", ".join(f"{k} = {v}" for k, v in changes.items()))

    @guarded
    def set_liquidation_risk_threshold(self, caller: str, threshold: Any) -> None:
        self._set_param(caller, liquidation_risk_threshold=to_decimal(threshold))

    @guarded
    def set_protocol_seize_share(self, caller: str, share: Any) -> None:
        self._set_param(caller, protocol_seize_share=to_decimal(share))

    @guarded
    def set_liquidation_incentive(self, caller: str, incentive: Any) -> None:
        self._require_admin(caller)
        incentive = to_decimal(incentive)
        for symbol, config in self._configs.items():
            self._require_seize_headroom(symbol, config.ltv, incentive)
        self._set_param(caller, liquidation_incentive=incentive)

    @guarded
    def set_max_liquidate_rate(self, caller: str, rate: Any) -> None:
        self._set_param(caller, max_liquidate_rate=to_decimal(rate))

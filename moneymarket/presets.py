"""
presets.py - Listing parameters for the production asset set

Each MarketPreset bundles what listing an asset needs: underlying decimals,
LTV, reserve factor, the jump-rate curve, caps in whole tokens and the price
feed. Protocol-wide defaults (fees, liquidation thresholds) are module
constants.

Prices for assets quoted against WHBAR come from cross feeds; see
CROSS_FEEDS and oracle.DerivedPriceOracle.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Tuple

from .core import DEFAULT_ADMIN, FeedId, ManualClock, to_decimal
from .custody import CustodyLedger, NativeTransfer, TokenTransfer, TransferKind
from .interest_rate import JumpRateModel
from .market import Market, MarketParams
from .risk_engine import RiskEngine, RiskParams


# ============================================================================
# PROTOCOL DEFAULTS
# ============================================================================

# Fees are expressed in basis points of 1/10000.
FEE_DENOMINATOR = 10000
BORROW_FEE_BPS = 0
REDEEM_FEE_BPS = 50

# Shares carry 8 decimals. Initial exchange rates are mantissas over 10**8,
# 0.02 * 10**(decimals - 8) underlying units per share unit.
SHARE_DECIMALS = 8

TESTNET_RISK_PARAMS = RiskParams(
    liquidation_risk_threshold=Decimal("0.90"),
    protocol_seize_share=Decimal("0.2"),
)
MAINNET_RISK_PARAMS = RiskParams(
    liquidation_risk_threshold=Decimal("0.85"),
    protocol_seize_share=Decimal("0.2"),
)

# Oracle pair ids.
FEED_HBAR_USD = 432
FEED_USDC_USD = 89
FEED_HBARX_WHBAR = 427
FEED_SAUCE_WHBAR = 425
FEED_XSAUCE_WHBAR = 426
FEED_HST_WHBAR = 428
FEED_HSUITE_WHBAR = 488
FEED_PACK_WHBAR = 478

# USD feed id -> (pair feed, quote USD feed). WHBAR trades 1:1 with HBAR.
CROSS_FEEDS: Dict[str, Tuple[FeedId, FeedId]] = {
    "HBARX/USD": (FEED_HBARX_WHBAR, FEED_HBAR_USD),
    "SAUCE/USD": (FEED_SAUCE_WHBAR, FEED_HBAR_USD),
    "XSAUCE/USD": (FEED_XSAUCE_WHBAR, FEED_HBAR_USD),
    "HST/USD": (FEED_HST_WHBAR, FEED_HBAR_USD),
    "HSUITE/USD": (FEED_HSUITE_WHBAR, FEED_HBAR_USD),
    "PACK/USD": (FEED_PACK_WHBAR, FEED_HBAR_USD),
}


def fee_rate(bps: int) -> Decimal:
    return Decimal(bps) / FEE_DENOMINATOR


# ============================================================================
# MARKET PRESETS
# ============================================================================

@dataclass(frozen=True, slots=True)
class MarketPreset:
    """
    Listing parameters for one asset.

    Caps are whole tokens; market_params() scales them to smallest units.
    """
    symbol: str
    decimals: int
    ltv: Decimal
    reserve_factor: Decimal
    base_rate_per_year: Decimal
    multiplier_per_year: Decimal
    jump_multiplier_per_year: Decimal
    kink: Decimal
    supply_cap_tokens: Optional[int]
    borrow_cap_tokens: Optional[int]
    initial_exchange_rate_mantissa: int
    price_feed_id: FeedId
    kind: TransferKind = TransferKind.TOKEN

    def __post_init__(self):
        for name in ("ltv", "reserve_factor", "base_rate_per_year", "multiplier_per_year",
                     "jump_multiplier_per_year", "kink"):
            object.__setattr__(self, name, to_decimal(getattr(self, name)))

    def _scaled(self, tokens: Optional[int]) -> Optional[int]:
        return None if tokens is None else tokens * 10 ** self.decimals

    @property
    def initial_exchange_rate(self) -> Decimal:
        return Decimal(self.initial_exchange_rate_mantissa).scaleb(-SHARE_DECIMALS)

    def market_params(self, initial_exchange_rate: Optional[Decimal] = None) -> MarketParams:
        if initial_exchange_rate is None:
            initial_exchange_rate = self.initial_exchange_rate
        return MarketParams(
            symbol=self.symbol,
            decimals=self.decimals,
            reserve_factor=self.reserve_factor,
            initial_exchange_rate=initial_exchange_rate,
            supply_cap=self._scaled(self.supply_cap_tokens),
            borrow_cap=self._scaled(self.borrow_cap_tokens),
            borrow_fee_rate=fee_rate(BORROW_FEE_BPS),
            redeem_fee_rate=fee_rate(REDEEM_FEE_BPS),
        )

    def rate_model(self, owner: str = DEFAULT_ADMIN) -> JumpRateModel:
        return JumpRateModel(
            self.base_rate_per_year,
            self.multiplier_per_year,
            self.jump_multiplier_per_year,
            self.kink,
            owner=owner,
            name=f"{self.symbol} rate model",
        )


def _preset(symbol, decimals, ltv, reserve_factor, curve, cap_tokens, feed, kind=TransferKind.TOKEN, mantissa=20000):
    base, multiplier, jump, kink = curve
    return MarketPreset(
        symbol=symbol,
        decimals=decimals,
        ltv=Decimal(ltv) / 100,
        reserve_factor=Decimal(reserve_factor),
        base_rate_per_year=Decimal(base),
        multiplier_per_year=Decimal(multiplier),
        jump_multiplier_per_year=Decimal(jump),
        kink=Decimal(kink),
        supply_cap_tokens=cap_tokens,
        borrow_cap_tokens=cap_tokens,
        initial_exchange_rate_mantissa=mantissa,
        price_feed_id=feed,
        kind=kind,
    )


PRESETS: Dict[str, MarketPreset] = {
    p.symbol: p
    for p in (
        _preset("HBAR", 8, 75, "0.2", ("0.015", "0.1", "3", "0.85"), 500_000_000,
                FEED_HBAR_USD, TransferKind.NATIVE, mantissa=2_000_000),
        _preset("HBARX", 8, 70, "0.25", ("0.015", "0.1", "3", "0.8"), 300_000_000, "HBARX/USD", mantissa=2_000_000),
        _preset("USDC", 6, 80, "0.1", ("0.02", "0.15", "3", "0.8"), 1_000_000_000, FEED_USDC_USD),
        _preset("SAUCE", 6, 65, "0.25", ("0.015", "0.15", "3", "0.65"), 100_000_000, "SAUCE/USD"),
        _preset("XSAUCE", 6, 60, "0.25", ("0.015", "0.15", "3", "0.6"), 100_000_000, "XSAUCE/USD"),
        _preset("HST", 8, 50, "0.3", ("0.8", "0.225", "1.25", "0.8"), 200_000_000, "HST/USD", mantissa=2_000_000),
        _preset("HSUITE", 4, 45, "0.3", ("0.02", "0.2", "3", "0.75"), 2_000_000_000, "HSUITE/USD", mantissa=200),
        _preset("PACK", 6, 60, "0.015", ("0.015", "0.15", "3", "0.6"), 100_000_000, "PACK/USD"),
    )
}


def get_preset(symbol: str) -> MarketPreset:
    try:
        return PRESETS[symbol]
    except KeyError:
        raise KeyError(f"no preset for {symbol!r}; known: {sorted(PRESETS)}") from None


def preset_market(
    preset: MarketPreset,
    risk_engine: RiskEngine,
    custody: CustodyLedger,
    clock: ManualClock,
    admin: str = DEFAULT_ADMIN,
    list_market: bool = True,
    verbose: bool = True,
) -> Market:
    """
    Build a Market for a preset and (by default) list it with the risk engine.
    """
    transfer_cls = NativeTransfer if preset.kind is TransferKind.NATIVE else TokenTransfer
    market = Market(
        preset.market_params(),
        preset.rate_model(owner=admin),
        transfer_cls(custody, preset.symbol),
        risk_engine,
        clock,
        admin=admin,
        verbose=verbose,
    )
    if list_market:
        risk_engine.support_market(admin, market, preset.ltv, preset.price_feed_id)
    return market

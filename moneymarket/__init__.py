"""
moneymarket - Multi-asset lending protocol core

Markets hold one underlying each; a shared RiskEngine checks collateral
across markets and orchestrates liquidations.

Usage:
    from moneymarket import (
        CustodyLedger, JumpRateModel, ManualClock, Market, MarketParams,
        RiskEngine, StaticPriceOracle, TokenTransfer,
    )

    clock = ManualClock()
    custody = CustodyLedger()
    oracle = StaticPriceOracle({"USDC/USD": "1.00"})
    risk = RiskEngine(oracle, admin="admin")

    usdc = Market(
        MarketParams("USDC", decimals=6, reserve_factor="0.1"),
        JumpRateModel("0.02", "0.15", "3", "0.8"),
        TokenTransfer(custody, "USDC"),
        risk,
        clock,
    )
    risk.support_market("admin", usdc, ltv="0.8", price_feed_id="USDC/USD")

    custody.mint("alice", "USDC", 1_000_000_000)
    usdc.supply("alice", 500_000_000)
    usdc.borrow("alice", 100_000_000)
    clock.advance(86400)
    usdc.repay_borrow("alice", "alice", usdc.borrow_balance("alice"))
"""

# Core types
from .core import (
    MANTISSA_PLACES,
    SECONDS_PER_YEAR,
    DEFAULT_INITIAL_EXCHANGE_RATE,
    INFINITE_RISK,
    ManualClock,
    ReentrancyGuard,
    AccountSnapshot,
    RiskAssessment,
    atomic,
    guarded,
    to_decimal,
    quantize_mantissa,
    truncate,
    round_up,
    units_to_value,
    value_to_units,
    require_positive,
    compute_risk_ratio,
    # Exceptions
    LendingError,
    InvalidInput,
    NonPositiveAmount,
    DustAmount,
    InsufficientShares,
    InsufficientValue,
    UnexpectedValue,
    NothingToRepay,
    NoMarketsEntered,
    InvalidParameter,
    MarketAlreadyListed,
    CapacityError,
    SupplyCapExceeded,
    BorrowCapExceeded,
    InsufficientCash,
    InsufficientReserves,
    InsufficientFees,
    CustodyShortfall,
    Unauthorized,
    NotAdmin,
    NotRiskEngine,
    MarketNotListed,
    MarketPaused,
    MarketFrozen,
    CollateralizationError,
    Undercollateralized,
    LiquidationNotEligible,
    BadDebtPosition,
    SelfLiquidation,
    NoOpenBorrow,
    LiquidatorUndercollateralized,
    PriceUnavailable,
    ReentrancyError,
    TransferFailed,
)

# Interest rates
from .interest_rate import JumpRateModel

# Prices
from .oracle import (
    PriceOracle,
    StaticPriceOracle,
    TimeSeriesPriceOracle,
    DerivedPriceOracle,
)

# Custody and transfers
from .custody import (
    CustodyLedger,
    Transfer,
    TransferKind,
    AssetTransfer,
    TokenTransfer,
    NativeTransfer,
)

# Markets
from .market import (
    Market,
    MarketParams,
    MarketState,
    BalanceSnapshot,
    AccrualResult,
    calculate_exchange_rate,
    calculate_accrual,
)

# Risk
from .risk_engine import (
    RiskEngine,
    RiskParams,
    MarketRiskConfig,
    MarketHandle,
    LiquidationResult,
    BadDebtSweepResult,
)

# Presets
from .presets import (
    MarketPreset,
    PRESETS,
    CROSS_FEEDS,
    SHARE_DECIMALS,
    TESTNET_RISK_PARAMS,
    MAINNET_RISK_PARAMS,
    get_preset,
    preset_market,
)


__all__ = [
    # Core
    'MANTISSA_PLACES', 'SECONDS_PER_YEAR', 'DEFAULT_INITIAL_EXCHANGE_RATE', 'INFINITE_RISK',
    'ManualClock', 'ReentrancyGuard', 'AccountSnapshot', 'RiskAssessment',
    'atomic', 'guarded', 'to_decimal', 'quantize_mantissa', 'truncate', 'round_up',
    'units_to_value', 'value_to_units', 'require_positive', 'compute_risk_ratio',
    # Exceptions
    'LendingError', 'InvalidInput', 'NonPositiveAmount', 'DustAmount', 'InsufficientShares',
    'InsufficientValue', 'UnexpectedValue', 'NothingToRepay', 'NoMarketsEntered',
    'InvalidParameter', 'MarketAlreadyListed',
    'CapacityError', 'SupplyCapExceeded', 'BorrowCapExceeded', 'InsufficientCash',
    'InsufficientReserves', 'InsufficientFees', 'CustodyShortfall',
    'Unauthorized', 'NotAdmin', 'NotRiskEngine', 'MarketNotListed', 'MarketPaused', 'MarketFrozen',
    'CollateralizationError', 'Undercollateralized', 'LiquidationNotEligible', 'BadDebtPosition',
    'SelfLiquidation', 'NoOpenBorrow', 'LiquidatorUndercollateralized',
    'PriceUnavailable', 'ReentrancyError', 'TransferFailed',
    # Interest rates
    'JumpRateModel',
    # Prices
    'PriceOracle', 'StaticPriceOracle', 'TimeSeriesPriceOracle', 'DerivedPriceOracle',
    # Custody
    'CustodyLedger', 'Transfer', 'TransferKind', 'AssetTransfer', 'TokenTransfer', 'NativeTransfer',
    # Markets
    'Market', 'MarketParams', 'MarketState', 'BalanceSnapshot', 'AccrualResult',
    'calculate_exchange_rate', 'calculate_accrual',
    # Risk
    'RiskEngine', 'RiskParams', 'MarketRiskConfig', 'MarketHandle',
    'LiquidationResult', 'BadDebtSweepResult',
    # Presets
    'MarketPreset', 'PRESETS', 'CROSS_FEEDS', 'SHARE_DECIMALS', 'TESTNET_RISK_PARAMS', 'MAINNET_RISK_PARAMS',
    'get_preset', 'preset_market',
]

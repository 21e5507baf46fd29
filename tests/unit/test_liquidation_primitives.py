"""
test_liquidation_primitives.py - Unit tests for the market-side liquidation primitives

The risk engine is the only permitted caller; these tests invoke the
primitives directly with the engine as caller to check each one in isolation.
"""

import pytest
from decimal import Decimal

from moneymarket import (
    InsufficientReserves,
    InsufficientShares,
    InvalidParameter,
    NoOpenBorrow,
    NotRiskEngine,
    SelfLiquidation,
)


@pytest.fixture
def positions(three_markets):
    """bob: 1 A supplied, 0.5 C borrowed. carol: 10 C. liz: 5 C."""
    three_markets.supply("bob", "A", 1_000_000)
    three_markets.supply("carol", "C", 10_000_000)
    three_markets.supply("liz", "C", 5_000_000)
    three_markets["C"].borrow("bob", 500_000)
    return three_markets


class TestCallerCheck:

    @pytest.mark.parametrize("action, args", [
        ("liquidate_borrow", ("liz", "bob", 1)),
        ("seize_collateral", ("liz", "bob", 1, Decimal(0))),
        ("seize_bad_collateral", ("bob", 1)),
        ("liquidate_bad_debt", ("bob", 1)),
    ])
    def test_only_risk_engine(self, positions, action, args):
        market = positions["C"] if "liquidate" in action else positions["A"]
        with pytest.raises(NotRiskEngine):
            getattr(market, action)(positions.risk.admin, *args)


class TestLiquidateBorrow:

    def test_repays_from_liquidator_supply(self, positions):
        market = positions["C"]
        assert market.liquidate_borrow(positions.risk, "liz", "bob", 200_000) == 200_000
        assert market.borrow_balance("bob") == 300_000
        assert market.balance_of("liz") == 250_000_000 - 10_000_000
        assert market.supply_balance("liz") == 4_800_000
        assert market.total_borrows == 300_000
        assert market.cash == 14_500_000

    def test_clamps_to_debt(self, positions):
        assert positions["C"].liquidate_borrow(positions.risk, "liz", "bob", 10**9) == 500_000
        assert positions["C"].borrow_balance("bob") == 0

    def test_self_liquidation(self, positions):
        with pytest.raises(SelfLiquidation):
            positions["C"].liquidate_borrow(positions.risk, "bob", "bob", 1)

    def test_no_open_borrow(self, positions):
        with pytest.raises(NoOpenBorrow):
            positions["A"].liquidate_borrow(positions.risk, "liz", "bob", 1)

    def test_liquidator_without_supply_rolls_back(self, positions):
        with pytest.raises(InsufficientShares):
            positions["C"].liquidate_borrow(positions.risk, "dave", "bob", 1_000)
        assert positions["C"].borrow_balance("bob") == 500_000


class TestSeizeCollateral:

    def test_splits_between_liquidator_and_reserves(self, positions):
        market = positions["A"]
        seized = market.seize_collateral(positions.risk, "liz", "bob", 500_000, Decimal("0.1"))
        assert seized == 500_000
        assert market.balance_of("bob") == 25_000_000
        assert market.balance_of("liz") == 22_500_000
        assert market.total_reserves == 50_000
        assert market.supply_balance("bob") == 500_000
        assert market.supply_balance("liz") == 450_000
        # the protocol cut stays in the pool as reserves, so the rate holds
        assert market.exchange_rate() == Decimal("0.02")
        assert market.verify_accounting()["valid"]

    def test_capped_at_borrower_balance(self, positions):
        market = positions["A"]
        assert market.seize_collateral(positions.risk, "liz", "bob", 5_000_000, Decimal(0)) == 1_000_000
        assert market.balance_of("bob") == 0
        assert market.balance_of("liz") == 50_000_000

    def test_nothing_to_seize(self, positions):
        assert positions["B"].seize_collateral(positions.risk, "liz", "bob", 1_000, Decimal(0)) == 0

    @pytest.mark.parametrize("pct", ["-0.1", "1.5"])
    def test_share_out_of_range(self, positions, pct):
        with pytest.raises(InvalidParameter):
            positions["A"].seize_collateral(positions.risk, "liz", "bob", 1_000, Decimal(pct))

    def test_self_seize(self, positions):
        with pytest.raises(SelfLiquidation):
            positions["A"].seize_collateral(positions.risk, "bob", "bob", 1_000, Decimal(0))


class TestSeizeBadCollateral:

    def test_full_balance_retired_into_reserves(self, positions):
        market = positions["A"]
        assert market.seize_bad_collateral(positions.risk, "bob", 1_000_000) == 1_000_000
        assert market.balance_of("bob") == 0
        assert market.supply_balance("bob") == 0
        assert market.total_reserves == 1_000_000
        assert market.total_shares == 0

    def test_partial(self, positions):
        market = positions["A"]
        assert market.seize_bad_collateral(positions.risk, "bob", 400_000) == 400_000
        assert market.balance_of("bob") == 30_000_000
        assert market.supply_balance("bob") == 600_000

    def test_no_shares(self, positions):
        assert positions["B"].seize_bad_collateral(positions.risk, "bob", 1) == 0


class TestLiquidateBadDebt:

    def test_requires_reserves(self, positions):
        with pytest.raises(InsufficientReserves):
            positions["C"].liquidate_bad_debt(positions.risk, "bob", 500_000)
        assert positions["C"].borrow_balance("bob") == 500_000

    def test_writes_off_against_reserves(self, positions):
        market = positions["C"]
        positions.fund("dave", "C", 1_000_000)
        market.add_reserves("dave", 1_000_000)
        assert market.liquidate_bad_debt(positions.risk, "bob", 10**9) == 500_000
        assert market.borrow_balance("bob") == 0
        assert market.total_borrows == 0
        assert market.total_reserves == 500_000
        # suppliers keep their rate
        assert market.exchange_rate() == Decimal("0.02")

    def test_no_open_borrow(self, positions):
        with pytest.raises(NoOpenBorrow):
            positions["A"].liquidate_bad_debt(positions.risk, "bob", 1)

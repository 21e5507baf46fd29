"""
test_market_supply_redeem.py - Unit tests for the supply side of a market

Tests:
- Share minting at the initial and derived exchange rate
- Dust guard and supply cap
- Redeem by shares and by exact underlying
- Redeem fee routed to protocol fees
- Principal tracking and zero-floor on redeem
- Native-value supply with refund
- Pause and listing checks
"""

import pytest
from decimal import Decimal

from moneymarket import (
    DustAmount,
    InsufficientCash,
    InsufficientShares,
    InsufficientValue,
    MarketFrozen,
    MarketNotListed,
    MarketPaused,
    NonPositiveAmount,
    SupplyCapExceeded,
    TransferFailed,
    UnexpectedValue,
)

from tests.builders import ADMIN, build_world


# ============================================================================
# SUPPLY
# ============================================================================

class TestSupply:

    def test_first_supply_uses_initial_rate(self, three_markets):
        shares = three_markets.supply("alice", "A", 1_000_000)
        market = three_markets["A"]
        assert shares == 50_000_000
        assert market.balance_of("alice") == 50_000_000
        assert market.total_shares == 50_000_000
        assert market.cash == 1_000_000
        assert market.supply_balance("alice") == 1_000_000
        assert market.underlying_balance("alice") == 1_000_000
        assert three_markets.wallet("alice", "A") == 0

    def test_supply_registers_membership(self, three_markets):
        three_markets.supply("alice", "B", 1_000)
        three_markets.supply("alice", "A", 1_000)
        three_markets.supply("alice", "B", 1_000)
        assert three_markets.risk.memberships("alice") == ["B", "A"]

    def test_later_supply_uses_derived_rate(self, three_markets):
        market = three_markets["A"]
        three_markets.supply("alice", "A", 1_000_000)
        # no borrows yet, so the rate is still 0.02
        three_markets.supply("bob", "A", 500_000)
        assert market.balance_of("bob") == 25_000_000
        assert market.exchange_rate() == Decimal("0.02")

    def test_non_positive_amount_rejected(self, three_markets):
        with pytest.raises(NonPositiveAmount):
            three_markets["A"].supply("alice", 0)

    def test_dust_rejected(self, world):
        world.add_market("D", initial_exchange_rate="10")
        world.fund("alice", "D", 100)
        with pytest.raises(DustAmount):
            world["D"].supply("alice", 9)
        assert world["D"].supply("alice", 10) == 1
        assert world.wallet("alice", "D") == 90

    def test_supply_cap(self, world):
        world.add_market("D", supply_cap=1_000)
        world.supply("alice", "D", 600)
        world.fund("bob", "D", 401)
        with pytest.raises(SupplyCapExceeded):
            world["D"].supply("bob", 401)
        assert world["D"].supply("bob", 400) == 20_000

    def test_insufficient_wallet_funds_roll_back(self, three_markets):
        market = three_markets["A"]
        three_markets.fund("alice", "A", 100)
        with pytest.raises(TransferFailed):
            market.supply("alice", 101)
        assert market.total_shares == 0
        assert market.cash == 0
        assert market.balance_of("alice") == 0

    def test_attached_value_rejected_for_tokens(self, three_markets):
        three_markets.fund("alice", "A", 1_000)
        with pytest.raises(UnexpectedValue):
            three_markets["A"].supply("alice", 1_000, attached_value=1_000)
        assert three_markets.wallet("alice", "A") == 1_000

    def test_paused_market_rejects_supply(self, three_markets):
        three_markets["A"].pause(ADMIN)
        three_markets.fund("alice", "A", 1_000)
        with pytest.raises(MarketPaused):
            three_markets["A"].supply("alice", 1_000)

    def test_supply_paused_in_risk_engine(self, three_markets):
        three_markets.risk.set_supply_paused(ADMIN, "A", True)
        three_markets.fund("alice", "A", 1_000)
        with pytest.raises(MarketPaused):
            three_markets["A"].supply("alice", 1_000)
        assert three_markets.risk.memberships("alice") == []

    def test_frozen_market_rejects_supply(self, three_markets):
        three_markets.risk.set_market_frozen(ADMIN, "A", True)
        three_markets.fund("alice", "A", 1_000)
        with pytest.raises(MarketFrozen):
            three_markets["A"].supply("alice", 1_000)

    def test_unlisted_market_rejects_supply(self, three_markets):
        three_markets.risk.remove_market(ADMIN, "A")
        three_markets.fund("alice", "A", 1_000)
        with pytest.raises(MarketNotListed):
            three_markets["A"].supply("alice", 1_000)


class TestNativeSupply:

    @pytest.fixture
    def native_world(self):
        world = build_world()
        world.add_market("HBAR", native=True, decimals=8)
        world.fund("alice", "HBAR", 10_000)
        return world

    def test_excess_value_refunded(self, native_world):
        shares = native_world["HBAR"].supply("alice", 1_000, attached_value=1_500)
        assert shares == 50_000
        assert native_world.wallet("alice", "HBAR") == 9_000
        assert native_world["HBAR"].transfer.custody_balance() == 1_000
        assert native_world["HBAR"].verify_accounting()["valid"]

    def test_short_value_rejected(self, native_world):
        with pytest.raises(InsufficientValue):
            native_world["HBAR"].supply("alice", 1_000, attached_value=999)
        assert native_world["HBAR"].total_shares == 0
        assert native_world.wallet("alice", "HBAR") == 10_000


# ============================================================================
# REDEEM
# ============================================================================

class TestRedeem:

    def test_full_round_trip(self, three_markets):
        market = three_markets["A"]
        shares = three_markets.supply("alice", "A", 1_000_000)
        paid = market.redeem("alice", shares)
        assert paid == 1_000_000
        assert market.total_shares == 0
        assert market.supply_balance("alice") == 0
        assert three_markets.wallet("alice", "A") == 1_000_000

    def test_redeem_fee_goes_to_protocol_fees(self, world):
        market = world.add_market("D", redeem_fee_rate="0.005")
        shares = world.supply("alice", "D", 1_000_000)
        paid = market.redeem("alice", shares)
        assert paid == 995_000
        assert market.total_fees == 5_000
        assert market.cash == 0
        assert market.transfer.custody_balance() == 5_000
        assert market.verify_accounting()["valid"]

    def test_partial_redeem(self, three_markets):
        market = three_markets["A"]
        three_markets.supply("alice", "A", 1_000_000)
        assert market.redeem("alice", 20_000_000) == 400_000
        assert market.balance_of("alice") == 30_000_000
        assert market.supply_balance("alice") == 600_000

    def test_redeem_underlying_burns_matching_shares(self, three_markets):
        market = three_markets["A"]
        three_markets.supply("alice", "A", 1_000_000)
        assert market.redeem_underlying("alice", 333_333) == 333_333
        # 333_333 / 0.02 = 16_666_650 exactly
        assert market.balance_of("alice") == 50_000_000 - 16_666_650

    def test_redeem_more_shares_than_held(self, three_markets):
        three_markets.supply("alice", "A", 1_000)
        with pytest.raises(InsufficientShares):
            three_markets["A"].redeem("alice", 50_001)

    def test_redeem_underlying_more_than_held(self, three_markets):
        three_markets.supply("alice", "A", 1_000)
        with pytest.raises(InsufficientShares):
            three_markets["A"].redeem_underlying("alice", 1_001)

    def test_zero_shares_rejected(self, three_markets):
        with pytest.raises(NonPositiveAmount):
            three_markets["A"].redeem("alice", 0)

    def test_dust_shares_rejected(self, three_markets):
        three_markets.supply("alice", "A", 1_000)
        with pytest.raises(DustAmount):
            three_markets["A"].redeem("alice", 49)

    def test_insufficient_cash(self, three_markets):
        three_markets.supply("alice", "A", 1_000_000)
        three_markets.supply("bob", "C", 10_000_000)
        three_markets["A"].borrow("bob", 900_000)
        with pytest.raises(InsufficientCash):
            three_markets["A"].redeem_underlying("alice", 100_001)
        assert three_markets["A"].redeem_underlying("alice", 100_000) == 100_000

    def test_paused_market_rejects_redeem(self, three_markets):
        three_markets.supply("alice", "A", 1_000)
        three_markets["A"].pause(ADMIN)
        with pytest.raises(MarketPaused):
            three_markets["A"].redeem("alice", 50_000)
        three_markets["A"].unpause(ADMIN)
        assert three_markets["A"].redeem("alice", 50_000) == 1_000

    def test_delisted_market_stays_redeemable(self, three_markets):
        three_markets.supply("alice", "A", 1_000)
        three_markets.risk.remove_market(ADMIN, "A")
        assert three_markets["A"].redeem("alice", 50_000) == 1_000


class TestPrincipalFloor:

    def test_redeeming_earned_interest_floors_principal_at_zero(self, accruing_markets):
        """
        Shares earn at the pool's rate, principal at the supply index. When
        the share value exceeds principal, a full redemption pays the share
        value and the principal floors at zero instead of going negative.
        """
        world = accruing_markets
        market = world["A"]
        world.supply("alice", "A", 10_000_000)
        world.supply("bob", "C", 100_000_000)
        market.borrow("bob", 8_000_000)
        world.clock.advance(365 * 24 * 3600)
        world.fund("bob", "A", 5_000_000)
        market.repay_borrow("bob", "bob", 10**12)

        principal = market.supply_balance("alice")
        value = market.underlying_balance("alice")
        assert value >= principal > 10_000_000

        market.redeem("alice", market.balance_of("alice"))
        assert market.supply_balance("alice") == 0
        assert market.balance_of("alice") == 0
        # the discarded remainder is a few smallest units
        assert value - principal <= 10

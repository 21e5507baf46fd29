"""
Round-Trip Conformance Tests

INVARIANT: Undoing an action returns the books to where they started,
less any fee charged on the way.
    supply(x); redeem(all)      → x - floor(x * redeem_fee_rate)
    borrow(b); repay(b)         → market totals unchanged (no interest)
    repay(borrow_balance(a))    → borrow_balance(a) = 0
"""

from decimal import Decimal

from hypothesis import given, settings
from hypothesis import strategies as st

from tests.builders import build_flat_world, build_three_markets, build_world, market_totals


class TestSupplyRedeem:

    @given(
        st.integers(min_value=1, max_value=10**12),
        st.sampled_from(["0", "0.001", "0.005"]),
    )
    @settings(max_examples=100, deadline=None)
    def test_full_redeem_returns_deposit_less_fee(self, amount, fee_rate):
        world = build_world()
        market = world.add_market("D", redeem_fee_rate=fee_rate)
        world.supply("alice", "D", amount)

        payout = market.redeem("alice", market.balance_of("alice"))

        fee = int(Decimal(amount) * Decimal(fee_rate))
        assert payout == amount - fee
        assert world.wallet("alice", "D") == payout
        assert market.total_shares == 0
        assert market.cash == 0
        assert market.total_fees == fee


class TestBorrowRepay:

    @given(st.integers(min_value=1, max_value=7_500_000))
    @settings(max_examples=100, deadline=None)
    def test_interest_free_round_trip_restores_market(self, amount):
        world = build_three_markets()
        world.supply("alice", "A", 10_000_000)
        world.supply("bob", "C", 10_000_000)
        before = market_totals(world["A"])

        world["A"].borrow("bob", amount)
        world["A"].repay_borrow("bob", "bob", amount)

        assert market_totals(world["A"]) == before
        assert world["A"].borrow_balance("bob") == 0
        assert world.wallet("bob", "A") == 0

    @given(st.integers(min_value=1, max_value=2 * 365 * 86400))
    @settings(max_examples=60, deadline=None)
    def test_repaying_balance_clears_debt(self, seconds):
        world = build_flat_world()
        market = world["A"]
        world.clock.advance(seconds)

        debt = market.borrow_balance("bob")
        assert debt >= 1_000_000
        world.fund("bob", "A", debt - world.wallet("bob", "A"))

        assert market.repay_borrow("bob", "bob", debt) == debt
        assert market.borrow_balance("bob") == 0
        assert world.wallet("bob", "A") == 0

    @given(st.integers(min_value=1, max_value=365 * 86400), st.integers(min_value=1, max_value=10**9))
    @settings(max_examples=60, deadline=None)
    def test_overpayment_repays_exact_debt(self, seconds, extra):
        world = build_flat_world()
        market = world["A"]
        world.clock.advance(seconds)

        debt = market.borrow_balance("bob")
        world.fund("bob", "A", debt + extra)
        held = world.wallet("bob", "A")

        assert market.repay_borrow("bob", "bob", debt + extra) == debt
        assert market.borrow_balance("bob") == 0
        assert world.wallet("bob", "A") == held - debt

"""
Exchange Rate Conformance Tests

INVARIANT: While shares are outstanding, the exchange rate of a market
never decreases: accrual adds interest to the pool, and every rounding in
supply and redeem is in the pool's favour.
"""

from hypothesis import given, settings, note
from hypothesis import strategies as st

from tests.builders import actions, apply_action, build_three_markets, jump_rate_model


class TestExchangeRateGrowth:

    @given(
        st.integers(min_value=1_000_000, max_value=50_000_000),
        st.integers(min_value=1, max_value=95),
        st.lists(st.integers(min_value=1, max_value=90 * 86400), min_size=1, max_size=10),
    )
    @settings(max_examples=50, deadline=None)
    def test_accrual_never_lowers_rate(self, supplied, utilization_pct, gaps):
        world = build_three_markets(rate_model_factory=jump_rate_model)
        world.supply("alice", "A", supplied)
        world.supply("bob", "C", supplied * 2)
        world["A"].borrow("bob", supplied * utilization_pct // 100)

        market = world["A"]
        previous = market.exchange_rate()
        for gap in gaps:
            world.clock.advance(gap)
            market.accrue_interest()
            current = market.exchange_rate()
            assert current >= previous
            previous = current

    @given(st.lists(actions(), min_size=1, max_size=25))
    @settings(max_examples=60, deadline=None)
    def test_user_actions_never_lower_rate(self, sequence):
        world = build_three_markets(rate_model_factory=jump_rate_model)
        world.supply("carol", "C", 20_000_000)

        for action in sequence:
            before = {s: (m.total_shares, m.exchange_rate()) for s, m in world.markets.items()}
            apply_action(world, action)
            note(str(action))
            for symbol, market in world.markets.items():
                shares_before, rate_before = before[symbol]
                if shares_before > 0 and market.total_shares > 0:
                    assert market.exchange_rate() >= rate_before

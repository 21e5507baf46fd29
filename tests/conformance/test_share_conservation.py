"""
Share Conservation Conformance Tests

INVARIANT: For every market m, after every action:
    total_shares(m) = Σ_{a ∈ accounts} shares(m, a)
    custody(m) = cash(m) + total_fees(m)

and custody as a whole never creates or destroys an asset.
"""

from hypothesis import given, settings, note
from hypothesis import strategies as st

from tests.builders import actions, apply_action, build_three_markets, jump_rate_model


class TestShareConservation:

    @given(st.lists(actions(), min_size=1, max_size=25))
    @settings(max_examples=60, deadline=None)
    def test_books_balance_after_every_action(self, sequence):
        world = build_three_markets(rate_model_factory=jump_rate_model)
        # seed liquidity so borrows have something to draw on
        world.supply("carol", "C", 20_000_000)

        for action in sequence:
            accepted = apply_action(world, action)
            note(f"{action} -> {'ok' if accepted else 'rejected'}")
            for market in world.markets.values():
                report = market.verify_accounting()
                assert report["valid"], report["discrepancies"]
            assert world.custody.verify_conservation()["valid"]

    @given(st.lists(actions(), min_size=1, max_size=25))
    @settings(max_examples=30, deadline=None)
    def test_no_negative_balances(self, sequence):
        world = build_three_markets(rate_model_factory=jump_rate_model)
        world.supply("carol", "C", 20_000_000)

        for action in sequence:
            apply_action(world, action)
        for market in world.markets.values():
            assert market.cash >= 0
            assert market.total_borrows >= 0
            assert market.total_reserves >= 0
            assert all(market.balance_of(a) >= 0 for a in market.accounts())

"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the lending engines.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. share_conservation.py - Shares and custody always balance
2. exchange_rate_growth.py - Accrual never lowers the exchange rate
3. accrual_idempotence.py - Accruing twice at one instant changes nothing
4. no_free_value.py - Rounding never pays out more than was put in
5. action_atomicity.py - Rejected actions leave every participant untouched
6. round_trips.py - Supply/redeem and borrow/repay return to the start
7. collateral_sufficiency.py - Borrows are accepted exactly when covered

These tests use hypothesis for property-based testing.
"""

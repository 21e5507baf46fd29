"""
conftest.py - Shared pytest fixtures for lending engine tests

Provides:
- An empty world (clock, custody, oracle, risk engine)
- A three-market world (A, B, C, zero interest)
- The same world with a kinked interest curve
- A liquidation-ready world (bob borrowing against A and B)
"""

import pytest

from moneymarket import RiskParams

from tests.builders import (
    build_liquidation_world,
    build_three_markets,
    build_world,
    jump_rate_model,
)


@pytest.fixture
def world():
    return build_world()


@pytest.fixture
def three_markets():
    return build_three_markets()


@pytest.fixture
def accruing_markets():
    return build_three_markets(rate_model_factory=jump_rate_model)


@pytest.fixture
def liquidation_world():
    return build_liquidation_world()


@pytest.fixture
def exact_liquidation_world():
    """Liquidation incentive 1.25 keeps every split a terminating decimal."""
    return build_liquidation_world(RiskParams(liquidation_incentive="1.25"))

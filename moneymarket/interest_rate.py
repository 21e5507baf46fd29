"""
interest_rate.py - Jump-rate (kinked) interest rate model

Maps market utilization to per-second borrow and supply rates:

    utilization = borrows / (cash + borrows - reserves)

    borrow_rate = utilization * multiplier + base                     (u <= kink)
                = kink * multiplier + base + (u - kink) * jump        (u >  kink)

    supply_rate = utilization * borrow_rate * (1 - reserve_factor)

Parameters are supplied per year and converted to per-second values whenever
they are set, so an update applies to every later accrual immediately.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Any, Dict, Optional

import numpy as np

from .core import (
    DEFAULT_ADMIN,
    SECONDS_PER_YEAR,
    InvalidParameter,
    NotAdmin,
    to_decimal,
)


class JumpRateModel:
    """
    Piecewise-linear borrow rate with a steeper slope above the kink.

    Attributes:
        base_rate_per_second: Borrow rate at zero utilization
        multiplier_per_second: Slope below the kink
        jump_multiplier_per_second: Slope above the kink
        kink: Utilization at which the jump slope starts
    """

    def __init__(
        self,
        base_rate_per_year: Any,
        multiplier_per_year: Any,
        jump_multiplier_per_year: Any,
        kink: Any,
        owner: str = DEFAULT_ADMIN,
        seconds_per_year: int = SECONDS_PER_YEAR,
        name: str = "JumpRateModel",
    ):
        if seconds_per_year <= 0:
            raise InvalidParameter(f"seconds_per_year must be positive, got {seconds_per_year}")
        self.owner = owner
        self.name = name
        self.seconds_per_year = seconds_per_year
        self._set_parameters(base_rate_per_year, multiplier_per_year, jump_multiplier_per_year, kink)

    def _set_parameters(self, base, multiplier, jump, kink) -> None:
        base, multiplier, jump, kink = (to_decimal(v) for v in (base, multiplier, jump, kink))
        for label, value in (("base rate", base), ("multiplier", multiplier), ("jump multiplier", jump)):
            if value < 0:
                raise InvalidParameter(f"{label} must be non-negative, got {value}")
        if not (0 <= kink <= 1):
            raise InvalidParameter(f"kink must be in [0, 1], got {kink}")

        self.base_rate_per_year = base
        self.multiplier_per_year = multiplier
        self.jump_multiplier_per_year = jump
        self.kink = kink

        periods = Decimal(self.seconds_per_year)
        self.base_rate_per_second = base / periods
        self.multiplier_per_second = multiplier / periods
        self.jump_multiplier_per_second = jump / periods

    def update_jump_rate_model(self, caller: str, base_rate_per_year, multiplier_per_year,
                               jump_multiplier_per_year, kink) -> None:
        """Replace all four curve parameters. Owner only."""
        if caller != self.owner:
            raise NotAdmin(f"{caller} is not the owner of {self.name}")
        self._set_parameters(base_rate_per_year, multiplier_per_year, jump_multiplier_per_year, kink)

    # ------------------------------------------------------------------
    # Rates
    # ------------------------------------------------------------------

    @staticmethod
    def utilization_rate(cash: int, borrows: int, reserves: int) -> Decimal:
        if borrows == 0:
            return Decimal(0)
        denominator = cash + borrows - reserves
        if denominator <= 0:
            return Decimal(0)
        return Decimal(borrows) / Decimal(denominator)

    def get_borrow_rate(self, cash: int, borrows: int, reserves: int) -> Decimal:
        """Per-second borrow rate."""
        util = self.utilization_rate(cash, borrows, reserves)
        if util <= self.kink:
            return util * self.multiplier_per_second + self.base_rate_per_second
        normal_rate = self.kink * self.multiplier_per_second + self.base_rate_per_second
        return normal_rate + (util - self.kink) * self.jump_multiplier_per_second

    def get_supply_rate(self, cash: int, borrows: int, reserves: int, reserve_factor: Decimal) -> Decimal:
        """Per-second supply rate after the reserve cut."""
        util = self.utilization_rate(cash, borrows, reserves)
        borrow_rate = self.get_borrow_rate(cash, borrows, reserves)
        return util * borrow_rate * (1 - to_decimal(reserve_factor))

    # ------------------------------------------------------------------
    # Curve inspection
    # ------------------------------------------------------------------

    def rate_curve(self, reserve_factor: Any = 0, points: int = 101) -> Dict[str, np.ndarray]:
        """
        Annualized borrow and supply rates sampled over utilization 0..1.

        Float arithmetic; meant for reviewing a parameter set, never for accrual.

        Returns:
            Dict with 'utilization', 'borrow_apr' and 'supply_apr' arrays.
        """
        if points < 2:
            raise InvalidParameter(f"points must be at least 2, got {points}")
        util = np.linspace(0.0, 1.0, points)
        base = float(self.base_rate_per_year)
        multiplier = float(self.multiplier_per_year)
        jump = float(self.jump_multiplier_per_year)
        kink = float(self.kink)

        below = util * multiplier + base
        above = kink * multiplier + base + (util - kink) * jump
        borrow_apr = np.where(util <= kink, below, above)
        supply_apr = util * borrow_apr * (1.0 - float(to_decimal(reserve_factor)))
        return {"utilization": util, "borrow_apr": borrow_apr, "supply_apr": supply_apr}

    def describe(self, reserve_factor: Optional[Any] = None) -> Dict[str, Decimal]:
        """Per-year parameters plus the borrow rate at the kink."""
        result = {
            "base_rate_per_year": self.base_rate_per_year,
            "multiplier_per_year": self.multiplier_per_year,
            "jump_multiplier_per_year": self.jump_multiplier_per_year,
            "kink": self.kink,
            "borrow_rate_at_kink": self.kink * self.multiplier_per_year + self.base_rate_per_year,
        }
        if reserve_factor is not None:
            result["supply_rate_at_kink"] = (
                self.kink * result["borrow_rate_at_kink"] * (1 - to_decimal(reserve_factor))
            )
        return result

    def __repr__(self) -> str:
        return (f"JumpRateModel(base={self.base_rate_per_year}, multiplier={self.multiplier_per_year}, "
                f"jump={self.jump_multiplier_per_year}, kink={self.kink})")

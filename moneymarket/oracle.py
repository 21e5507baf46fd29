"""
oracle.py - Price feeds for collateral valuation

Provides:
- PriceOracle: Protocol defining the pricing interface
- StaticPriceOracle: Prices set explicitly, valid until replaced
- TimeSeriesPriceOracle: Observations over time with a staleness window
- DerivedPriceOracle: USD prices composed from pair and quote feeds

All prices are USD per whole unit of the asset, truncated to 18 fractional
digits. A missing, zero, negative or stale price raises PriceUnavailable;
there is no fallback value.
"""

from bisect import bisect_right, insort
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, runtime_checkable

from .core import FeedId, ManualClock, PriceUnavailable, quantize_mantissa, to_decimal


@runtime_checkable
class PriceOracle(Protocol):
    """
    Protocol for price sources.

    Implementations return a strictly positive Decimal or raise PriceUnavailable.
    """

    def get_price(self, feed_id: FeedId) -> Decimal:
        """USD price of one whole unit of the asset behind `feed_id`."""
        ...


def _validated(feed_id: FeedId, price: Any) -> Decimal:
    value = quantize_mantissa(to_decimal(price))
    if not value.is_finite() or value <= 0:
        raise PriceUnavailable(f"feed {feed_id!r} reported non-positive price {price}")
    return value


class StaticPriceOracle:
    """
    Oracle with explicitly set prices (time-independent).

    Setting a price to zero is allowed and models a feed outage: reads fail.
    """

    def __init__(self, prices: Optional[Mapping[FeedId, Any]] = None):
        self.prices: Dict[FeedId, Decimal] = {}
        for feed_id, price in (prices or {}).items():
            self.set_price(feed_id, price)

    def get_price(self, feed_id: FeedId) -> Decimal:
        if feed_id not in self.prices:
            raise PriceUnavailable(f"no price for feed {feed_id!r}")
        return _validated(feed_id, self.prices[feed_id])

    def set_price(self, feed_id: FeedId, price: Any) -> None:
        self.prices[feed_id] = quantize_mantissa(to_decimal(price))

    def set_prices(self, prices: Mapping[FeedId, Any]) -> None:
        for feed_id, price in prices.items():
            self.set_price(feed_id, price)

    def remove_price(self, feed_id: FeedId) -> None:
        self.prices.pop(feed_id, None)

    def __repr__(self):
        return f"StaticPriceOracle({len(self.prices)} feeds)"


class TimeSeriesPriceOracle:
    """
    Oracle backed by timestamped observations.

    Reads return the latest observation at or before the clock's current time.
    With max_age set, an observation older than max_age is stale and
    unavailable.
    """

    def __init__(self, clock: ManualClock, max_age: Optional[timedelta] = None):
        self.clock = clock
        self.max_age = max_age
        self._series: Dict[FeedId, List[Tuple[datetime, Decimal]]] = {}

    def add_price(self, feed_id: FeedId, timestamp: datetime, price: Any) -> None:
        """Record an observation, keeping the series sorted by timestamp."""
        series = self._series.setdefault(feed_id, [])
        series[:] = [(ts, p) for ts, p in series if ts != timestamp]
        insort(series, (timestamp, quantize_mantissa(to_decimal(price))))

    def add_prices(self, feed_id: FeedId, observations: List[Tuple[datetime, Any]]) -> None:
        for timestamp, price in observations:
            self.add_price(feed_id, timestamp, price)

    def get_price(self, feed_id: FeedId) -> Decimal:
        series = self._series.get(feed_id)
        if not series:
            raise PriceUnavailable(f"no price for feed {feed_id!r}")
        now = self.clock.now
        idx = bisect_right(series, (now, Decimal("Infinity")))
        if idx == 0:
            raise PriceUnavailable(f"no price for feed {feed_id!r} at or before {now}")
        timestamp, price = series[idx - 1]
        if self.max_age is not None and now - timestamp > self.max_age:
            raise PriceUnavailable(
                f"stale price for feed {feed_id!r}: last update {timestamp}, max age {self.max_age}"
            )
        return _validated(feed_id, price)

    def feeds(self) -> List[FeedId]:
        return list(self._series)

    def __repr__(self):
        total = sum(len(s) for s in self._series.values())
        return f"TimeSeriesPriceOracle({len(self._series)} feeds, {total} observations)"


class DerivedPriceOracle:
    """
    USD prices composed from a pair feed and the quote asset's USD feed.

    For a feed mapped to (pair_feed, quote_feed) the price is
    pair_price * quote_price. Unmapped feeds are read from the source directly.
    """

    def __init__(self, source: PriceOracle, cross_feeds: Mapping[FeedId, Tuple[FeedId, FeedId]]):
        self.source = source
        self.cross_feeds = dict(cross_feeds)

    def get_price(self, feed_id: FeedId) -> Decimal:
        if feed_id not in self.cross_feeds:
            return self.source.get_price(feed_id)
        pair_feed, quote_feed = self.cross_feeds[feed_id]
        price = self.source.get_price(pair_feed) * self.source.get_price(quote_feed)
        return _validated(feed_id, price)

    def __repr__(self):
        return f"DerivedPriceOracle({len(self.cross_feeds)} cross feeds over {self.source!r})"

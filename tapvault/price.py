import time
import logging
import threading
import typing as t
from dataclasses import dataclass

import requests

from .errors import PriceFeedUnavailable

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceQuote:
    price: float
    using_fallback: bool
    fetched_at: float


def parse_coingecko(payload: t.Any) -> float:
    """Pull the USD price out of a `simple/price?ids=bitcoin` response."""
    try:
        price = float(payload["bitcoin"]["usd"])
    except (KeyError, TypeError, ValueError):
        raise PriceFeedUnavailable("price feed returned an unexpected payload")
    if not price > 0:
        raise PriceFeedUnavailable(f"price feed returned a bad price: {price}")
    return price


class PriceFeed:
    """
    BTC/USD price with a short-lived cache.

    A failed fetch never raises; the last live price (or the configured fallback,
    if there has never been one) is returned, marked `using_fallback`.
    """

    def __init__(
        self,
        url: str,
        fallback_price: float,
        ttl_secs: float = 60,
        timeout: float = 10,
        session: requests.Session | None = None,
        clock: t.Callable[[], float] = time.monotonic,
    ):
        self.url = url
        self.fallback_price = fallback_price
        self.ttl_secs = ttl_secs
        self.timeout = timeout
        self.session = session or requests.Session()
        self.clock = clock
        self._quote: PriceQuote | None = None
        self._last_live: PriceQuote | None = None
        self._lock = threading.Lock()

    def fetch(self) -> float:
        try:
            resp = self.session.get(
                self.url, headers={"accept": "application/json"}, timeout=self.timeout)
            resp.raise_for_status()
            payload = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise PriceFeedUnavailable(f"unable to fetch BTC price: {e}")
        return parse_coingecko(payload)

    def get(self) -> PriceQuote:
        with self._lock:
            now = self.clock()
            if self._quote and now - self._quote.fetched_at < self.ttl_secs:
                return self._quote

            try:
                self._quote = self._last_live = PriceQuote(self.fetch(), False, now)
            except PriceFeedUnavailable as e:
                stale = self._last_live.price if self._last_live else self.fallback_price
                log.warning("using fallback BTC price %s: %s", stale, e)
                self._quote = PriceQuote(stale, True, now)

            return self._quote


class StaticPrice:
    """A fixed price, e.g. for previews without network access."""

    def __init__(self, price: float, using_fallback: bool = False):
        self.quote = PriceQuote(price, using_fallback, 0)

    def get(self) -> PriceQuote:
        return self.quote

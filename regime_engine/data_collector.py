"""
Market Data Acquisition: caching, retry and sequential batch fetching.

PIPELINE (per ticker)
    Stage 1 - CACHE
        In-process, TTL-keyed lookup on (ticker, start, end, timespan).
        Expired entries are evicted lazily on the read that finds them.

    Stage 2 - STORE (optional)
        A persistent price store is consulted when configured. Its rows are
        trusted only when they cover at least 80% of the expected trading
        days; a thin store triggers a fresh network fetch.

    Stage 3 - ACQUIRE
        Network retrieval through the injected transport with up to three
        attempts and a 300/600/1200 ms backoff schedule. Credential
        failures (401/403) are never retried.

    Stage 4 - REPAIR & VALIDATE
        Weekend-aware forward fill of missing trading days, then the
        quality assessment for the requested range.

    Stage 5 - DERIVE
        Log returns and annualised volatility for the batch's AssetSeries.

Tickers are processed one at a time with a fixed delay between them to
respect upstream rate limits. A failure on one ticker is recorded in the
diagnostics and never aborts the batch.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar

import numpy as np

from regime_engine.bars import (
    Bar,
    annualized_volatility,
    bars_from_aggregates,
    close_prices,
    compute_log_returns,
    forward_fill_gaps,
)
from regime_engine.config import (
    DEFAULT_SETTINGS,
    DataQuality,
    DataSource,
    EngineSettings,
)
from regime_engine.data_validator import ValidationResult, validate_ticker_data
from regime_engine.market_calendar import US_EQUITY, CalendarParams, expected_trading_days, to_iso
from regime_engine.transports import (
    AuthorizationError,
    MalformedDataError,
    MarketDataError,
    MarketDataTransport,
    TransportError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[str, float], None]

NO_DATA_ERROR: str = "No data returned"

# Real-asset ETF universe offered by the portfolio builder
REAL_ASSET_ETFS: Tuple[str, ...] = ("VNQ", "XLRE", "GLD", "IAU", "DBC", "TIP", "SCHP")


# =============================================================================
# TIME-BOUNDED CACHE
# =============================================================================

@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value with its expiry and validation metadata."""
    data: T
    expires_at: float
    fetched_at: float
    validation: Optional[ValidationResult] = None


class TimedCache:
    """
    In-process cache with per-entry TTL.

    Lookups past expiry count as misses and evict the entry; there is no
    background sweep. Not synchronised: one instance belongs to one
    single-threaded engine context.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._entries: Dict[str, CacheEntry[Any]] = {}
        self._clock = clock

    def get(self, key: str) -> Optional[CacheEntry[Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None

        if self._clock() > entry.expires_at:
            del self._entries[key]
            return None

        return entry

    def set(
        self,
        key: str,
        data: Any,
        ttl: float,
        validation: Optional[ValidationResult] = None
    ) -> CacheEntry[Any]:
        now = self._clock()
        entry = CacheEntry(data=data, expires_at=now + ttl, fetched_at=now, validation=validation)
        self._entries[key] = entry
        return entry

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


def history_cache_key(ticker: str, start: str, end: str, timespan: str) -> str:
    return f"history:{ticker}:{start}:{end}:{timespan}"


# =============================================================================
# PERSISTENT STORE INTERFACE
# =============================================================================

class PriceStore:
    """
    Long-lived price store keyed by (ticker, trade date).

    Implemented outside this package (e.g. a database table); the engine
    only reads ranges and upserts freshly fetched bars.
    """

    def read(self, ticker: str, start: str, end: str) -> List[Bar]:
        raise NotImplementedError

    def upsert(self, ticker: str, bars: Sequence[Bar]) -> None:
        raise NotImplementedError


def store_coverage(bars: Sequence[Bar], start: str, end: str,
                   calendar: CalendarParams = US_EQUITY) -> float:
    """Share of expected trading days present in a stored range."""
    expected = expected_trading_days(start, end, calendar)
    if expected <= 0:
        return 1.0 if bars else 0.0
    return len(bars) / expected


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class FetchResult:
    """One ticker's repaired and validated history."""
    ticker: str
    bars: Tuple[Bar, ...]
    validation: ValidationResult
    source: DataSource


@dataclass(frozen=True)
class AssetSeries:
    """
    A ticker's bars with derived return statistics.

    Built fresh by every batch fetch; ``returns`` is a read-only array of
    log returns aligned with ``bars[1:]``.
    """
    ticker: str
    bars: Tuple[Bar, ...]
    returns: np.ndarray
    volatility: float
    validation: ValidationResult

    @property
    def timestamps(self) -> List[int]:
        return [b.timestamp for b in self.bars]


@dataclass
class FetchDiagnostic:
    """Per-ticker outcome of a batch fetch."""
    ticker: str
    success: bool
    bar_count: int = 0
    error: Optional[str] = None
    data_quality: Optional[DataQuality] = None
    source: Optional[DataSource] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticker": self.ticker,
            "success": self.success,
            "bar_count": self.bar_count,
            "error": self.error,
            "data_quality": self.data_quality.value if self.data_quality else None,
            "source": self.source.value if self.source else None,
        }


@dataclass
class BatchResult:
    """Assets and diagnostics from one batch fetch, in input order."""
    assets: "OrderedDict[str, AssetSeries]"
    diagnostics: List[FetchDiagnostic]
    start: str
    end: str
    data_source: str = "unknown"

    @property
    def failed_tickers(self) -> List[str]:
        return [d.ticker for d in self.diagnostics if not d.success]

    @property
    def returns_by_ticker(self) -> "OrderedDict[str, np.ndarray]":
        return OrderedDict((t, a.returns) for t, a in self.assets.items())


# =============================================================================
# FETCH ORCHESTRATOR
# =============================================================================

class MarketDataHandler:
    """
    Cached, retrying market data fetcher.

    One handler is created per engine context and shared by every caller in
    that process; its cache is the only mutable state.
    """

    def __init__(
        self,
        transport: MarketDataTransport,
        settings: EngineSettings = DEFAULT_SETTINGS,
        cache: Optional[TimedCache] = None,
        store: Optional[PriceStore] = None,
        sleep: Callable[[float], None] = time.sleep,
        calendar: CalendarParams = US_EQUITY
    ):
        """
        Initialize the handler.

        Args:
            transport: Upstream provider
            settings: Engine settings (retry, cache TTL, validation)
            cache: Shared cache (a private one is created when omitted)
            store: Optional persistent price store
            sleep: Blocking delay function used for backoff and rate limits
            calendar: Trading calendar parameters
        """
        self.transport = transport
        self.settings = settings
        self.cache = cache if cache is not None else TimedCache()
        self.store = store
        self.calendar = calendar
        self._sleep = sleep

    # -------------------------------------------------------------------------
    # Single ticker
    # -------------------------------------------------------------------------

    def fetch_history(
        self,
        ticker: str,
        start: str,
        end: str,
        timespan: Optional[str] = None,
        force_refresh: bool = False
    ) -> FetchResult:
        """
        Fetch one ticker's repaired and validated history.

        Args:
            ticker: Ticker symbol
            start: Start date (YYYY-MM-DD)
            end: End date (YYYY-MM-DD)
            timespan: Bar granularity (default from settings)
            force_refresh: Bypass the cache and refetch

        Returns:
            FetchResult (bars may be empty)

        Raises:
            AuthorizationError: Credentials rejected (not retried)
            TransportError: Retries exhausted
            MalformedDataError: Provider rows could not be normalised
        """
        timespan = timespan or self.settings.fetch.default_timespan
        start, end = to_iso(start), to_iso(end)
        key = history_cache_key(ticker, start, end, timespan)

        if not force_refresh:
            entry = self.cache.get(key)
            if entry is not None:
                logger.debug(f"Cache hit for {ticker}")
                return FetchResult(ticker, entry.data, entry.validation, DataSource.CACHE)

        source = DataSource.NETWORK
        bars = self._read_store(ticker, start, end)

        if bars is not None:
            source = DataSource.STORE
        else:
            logger.info(f"Fetching {ticker} from {start} to {end}")
            rows = self._fetch_with_retry(ticker, start, end, timespan)
            try:
                bars = bars_from_aggregates(rows)
            except (KeyError, TypeError, ValueError) as e:
                raise MalformedDataError(f"Malformed aggregate row for {ticker}: {e}") from e
            logger.info(f"Got {len(bars)} bars for {ticker}")

        filled = tuple(forward_fill_gaps(bars, self.calendar))
        validation = validate_ticker_data(
            ticker, filled, (start, end), self.settings.validation
        )

        if filled:
            self.cache.set(key, filled, self.settings.cache.history_ttl, validation)
            if source == DataSource.NETWORK and self.store is not None:
                self._write_store(ticker, bars)

        return FetchResult(ticker, filled, validation, source)

    def _fetch_with_retry(
        self,
        ticker: str,
        start: str,
        end: str,
        timespan: str
    ) -> List[Dict[str, Any]]:
        """Call the transport with bounded retries and exponential backoff."""
        max_attempts = max(1, self.settings.fetch.max_attempts)
        last_error: Optional[TransportError] = None

        for attempt in range(max_attempts):
            try:
                return self.transport.fetch_aggregates(ticker, start, end, timespan)
            except AuthorizationError as e:
                logger.error(f"Authorization failed for {ticker}: {e}")
                raise
            except TransportError as e:
                last_error = e
                if attempt < max_attempts - 1:
                    wait_time = self.settings.fetch.delay_for(attempt)
                    logger.warning(
                        f"Fetch failed for {ticker} (attempt {attempt + 1}/{max_attempts}): "
                        f"{e}, retrying in {wait_time:.1f}s..."
                    )
                    self._sleep(wait_time)
                else:
                    logger.error(
                        f"Fetch failed for {ticker} after {max_attempts} attempts: {e}"
                    )

        raise last_error

    def _read_store(self, ticker: str, start: str, end: str) -> Optional[List[Bar]]:
        """Stored bars when they cover enough of the range, else None."""
        if self.store is None:
            return None

        try:
            bars = self.store.read(ticker, start, end)
        except Exception as e:
            logger.warning(f"Could not read {ticker} from price store: {e}")
            return None

        coverage = store_coverage(bars, start, end, self.calendar)

        if bars and coverage >= self.settings.validation.min_coverage:
            logger.debug(f"Store hit for {ticker} ({coverage:.0%} coverage)")
            return list(bars)

        logger.info(
            f"Store coverage for {ticker} is {coverage:.0%}, fetching from upstream"
        )
        return None

    def _write_store(self, ticker: str, bars: Sequence[Bar]) -> None:
        try:
            self.store.upsert(ticker, bars)
        except Exception as e:
            # Store failures never fail the fetch
            logger.warning(f"Could not persist {ticker} to price store: {e}")

    # -------------------------------------------------------------------------
    # Batch
    # -------------------------------------------------------------------------

    def fetch_and_clean_history(
        self,
        tickers: Sequence[str],
        start: str,
        end: str,
        on_progress: Optional[ProgressCallback] = None
    ) -> BatchResult:
        """
        Fetch, repair, validate and derive returns for a list of tickers.

        Tickers are processed sequentially. Failures are recorded in the
        diagnostics and the batch carries on with the next ticker.

        Args:
            tickers: Ticker symbols, processed in order
            start: Start date (YYYY-MM-DD)
            end: End date (YYYY-MM-DD)
            on_progress: Optional ``(message, percentage)`` callback

        Returns:
            BatchResult with an AssetSeries per successful ticker and one
            diagnostic per input ticker
        """
        start, end = to_iso(start), to_iso(end)
        assets: "OrderedDict[str, AssetSeries]" = OrderedDict()
        diagnostics: List[FetchDiagnostic] = []
        total = len(tickers)

        for i, ticker in enumerate(tickers):
            self._report(on_progress, f"Fetching {ticker}...", i / total * 100)
            logger.info(f"Processing {ticker} ({i + 1}/{total})")

            try:
                result = self.fetch_history(ticker, start, end)
            except MarketDataError as e:
                logger.error(f"Failed to fetch {ticker}: {e}")
                diagnostics.append(FetchDiagnostic(ticker=ticker, success=False, error=str(e)))
            else:
                if not result.bars:
                    logger.warning(f"No data for {ticker}")
                    diagnostics.append(FetchDiagnostic(
                        ticker=ticker,
                        success=False,
                        error=NO_DATA_ERROR,
                        data_quality=result.validation.data_quality,
                        source=result.source,
                    ))
                else:
                    asset = self._build_asset(result)
                    assets[ticker] = asset
                    diagnostics.append(FetchDiagnostic(
                        ticker=ticker,
                        success=True,
                        bar_count=len(result.bars),
                        data_quality=result.validation.data_quality,
                        source=result.source,
                    ))
                    logger.info(f"{ticker} - Vol: {asset.volatility * 100:.2f}%")

            if i < total - 1:
                self._sleep(self.settings.fetch.inter_ticker_delay)

        self._report(on_progress, "Data fetching complete", 100.0)

        return BatchResult(
            assets=assets,
            diagnostics=diagnostics,
            start=start,
            end=end,
            data_source=getattr(self.transport, "source_name", "unknown"),
        )

    def _build_asset(self, result: FetchResult) -> AssetSeries:
        returns = compute_log_returns(close_prices(result.bars))
        returns.setflags(write=False)
        return AssetSeries(
            ticker=result.ticker,
            bars=result.bars,
            returns=returns,
            volatility=annualized_volatility(returns, self.calendar),
            validation=result.validation,
        )

    @staticmethod
    def _report(callback: Optional[ProgressCallback], message: str, pct: float) -> None:
        """Invoke the progress callback; it is advisory and cannot fail the batch."""
        if callback is None:
            return
        try:
            callback(message, pct)
        except Exception as e:
            logger.warning(f"Progress callback raised: {e}")

    # -------------------------------------------------------------------------
    # Misc
    # -------------------------------------------------------------------------

    @staticmethod
    def real_asset_etfs() -> List[str]:
        """Real-asset ETF universe (REITs, gold, commodities, TIPS)."""
        return list(REAL_ASSET_ETFS)

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("Cache cleared")

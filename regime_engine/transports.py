"""
Upstream market-data transports.

Every transport answers one question: the aggregate bars for a ticker over a
date range at a given granularity, as a list of provider-style rows

    {"t": ms epoch, "o": open, "h": high, "l": low, "c": close,
     "v": volume, "vw": vwap (optional)}

Failures are reported through a small exception hierarchy so the fetch
orchestrator can tell retryable errors from credential failures:

    MarketDataError
    ├── TransportError          (retryable, carries an HTTP-style status)
    │   └── AuthorizationError  (401/403, never retried)
    └── MalformedDataError      (unparseable provider rows, never retried)

Transports:
    PolygonTransport  Polygon.io REST aggregates endpoint
    ProxyTransport    Backend function that holds the provider credentials
    YahooTransport    Yahoo Finance via yfinance
"""

from __future__ import annotations

import json
import logging
import os
import re
from datetime import timedelta
from typing import Any, Dict, List, Optional

import pandas as pd
import requests

from regime_engine.market_calendar import date_to_timestamp, to_date, to_iso

logger = logging.getLogger(__name__)


POLYGON_BASE_URL: str = "https://api.polygon.io"
AUTH_STATUS_CODES = (401, 403)

PLAN_LIMIT_PATTERN = re.compile(r"plan doesn't include this data timeframe", re.IGNORECASE)
PLAN_LIMIT_HINT = (
    " Try a more recent date range (e.g. last 6-12 months) or upgrade your Polygon plan."
)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class MarketDataError(RuntimeError):
    """Base class for market data failures."""


class TransportError(MarketDataError):
    """A retryable upstream failure."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return True


class AuthorizationError(TransportError):
    """Credential or permission failure (HTTP 401/403). Never retried."""

    @property
    def retryable(self) -> bool:
        return False


class MalformedDataError(MarketDataError):
    """Provider rows that cannot be normalised into bars. Never retried."""


def raise_for_status(status_code: int, message: str) -> None:
    """Raise the exception matching an HTTP-style error status."""
    if status_code in AUTH_STATUS_CODES:
        raise AuthorizationError(message, status_code)
    raise TransportError(message, status_code)


# =============================================================================
# BASE TRANSPORT
# =============================================================================

class MarketDataTransport:
    """Interface for upstream aggregate-bar providers."""

    source_name: str = "unknown"

    def fetch_aggregates(
        self,
        ticker: str,
        start: str,
        end: str,
        timespan: str = "day"
    ) -> List[Dict[str, Any]]:
        """
        Fetch aggregate bars.

        Args:
            ticker: Ticker symbol
            start: Start date (YYYY-MM-DD, inclusive)
            end: End date (YYYY-MM-DD, inclusive)
            timespan: Bar granularity ('day', 'week', 'month', ...)

        Returns:
            Provider rows in ascending time order

        Raises:
            AuthorizationError: Credentials rejected
            TransportError: Any other upstream failure
        """
        raise NotImplementedError


# =============================================================================
# POLYGON.IO
# =============================================================================

class PolygonTransport(MarketDataTransport):
    """
    Polygon.io aggregates (``/v2/aggs``) over HTTPS.

    The API key is read from ``POLYGON_API_KEY`` unless passed explicitly.
    Paginated responses are followed through ``next_url``.
    """

    source_name = "Polygon.io API"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = POLYGON_BASE_URL,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None
    ):
        self.api_key = api_key if api_key is not None else os.environ.get("POLYGON_API_KEY", "")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch_aggregates(
        self,
        ticker: str,
        start: str,
        end: str,
        timespan: str = "day"
    ) -> List[Dict[str, Any]]:
        if not self.api_key:
            raise AuthorizationError("POLYGON_API_KEY is not configured", 401)

        url = (
            f"{self.base_url}/v2/aggs/ticker/{ticker}/range/1/{timespan}/"
            f"{to_iso(start)}/{to_iso(end)}"
        )
        params: Optional[Dict[str, Any]] = {
            "adjusted": "true",
            "sort": "asc",
            "limit": 50000,
            "apiKey": self.api_key,
        }

        rows: List[Dict[str, Any]] = []
        while url:
            payload = self._get(url, params)
            rows.extend(payload.get("results") or [])

            next_url = payload.get("next_url")
            if next_url:
                url = next_url
                params = {"apiKey": self.api_key}
            else:
                url = None

        logger.debug(f"Polygon returned {len(rows)} bars for {ticker}")
        return rows

    def _get(self, url: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"Polygon request failed: {e}") from e

        if response.status_code != 200:
            raise_for_status(
                response.status_code,
                _error_message(response, f"Polygon returned HTTP {response.status_code}")
            )

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Polygon returned invalid JSON: {e}", response.status_code) from e


# =============================================================================
# BACKEND PROXY
# =============================================================================

class ProxyTransport(MarketDataTransport):
    """
    Aggregates routed through a backend function.

    Keeps provider credentials server-side. The function receives
    ``{ticker, startDate, endDate, timespan}`` and answers
    ``{ok, results, status?, error?, details?}``.
    """

    source_name = "Polygon.io API (proxy)"

    def __init__(
        self,
        endpoint: str,
        auth_token: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None
    ):
        self.endpoint = endpoint
        self.auth_token = auth_token
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch_aggregates(
        self,
        ticker: str,
        start: str,
        end: str,
        timespan: str = "day"
    ) -> List[Dict[str, Any]]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        body = {
            "ticker": ticker,
            "startDate": to_iso(start),
            "endDate": to_iso(end),
            "timespan": timespan,
        }

        try:
            response = self.session.post(
                self.endpoint, json=body, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise TransportError(f"Backend function request failed: {e}") from e

        if response.status_code in AUTH_STATUS_CODES:
            raise AuthorizationError(
                _error_message(response, "Backend function rejected credentials"),
                response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(
                f"Backend function returned invalid JSON (HTTP {response.status_code})",
                response.status_code
            ) from e

        if not isinstance(data, dict) or not data.get("ok"):
            self._raise_backend_error(data if isinstance(data, dict) else {}, response.status_code)

        results = data.get("results")
        return results if isinstance(results, list) else []

    @staticmethod
    def _raise_backend_error(data: Dict[str, Any], http_status: int) -> None:
        """Surface the provider's own message where the backend forwarded it."""
        message = data.get("error") or "Polygon backend error"
        details = data.get("details")

        if isinstance(details, str) and details.strip().startswith("{"):
            try:
                parsed = json.loads(details)
            except ValueError:
                parsed = None
            if isinstance(parsed, dict) and parsed.get("message"):
                message = str(parsed["message"])

        status = data.get("status") or http_status
        if status == 403 and PLAN_LIMIT_PATTERN.search(message):
            message = f"{message}{PLAN_LIMIT_HINT}"

        raise_for_status(int(status), message)


# =============================================================================
# YAHOO FINANCE
# =============================================================================

YAHOO_INTERVALS: Dict[str, str] = {
    "day": "1d",
    "week": "1wk",
    "month": "1mo",
}


class YahooTransport(MarketDataTransport):
    """Yahoo Finance daily/weekly/monthly bars via yfinance."""

    source_name = "Yahoo Finance"

    def __init__(self, timeout: int = 30):
        self._yf = None
        self.timeout = timeout

    def _get_yf(self):
        """Lazy load yfinance to avoid import overhead."""
        if self._yf is None:
            import yfinance as yf
            self._yf = yf
        return self._yf

    def fetch_aggregates(
        self,
        ticker: str,
        start: str,
        end: str,
        timespan: str = "day"
    ) -> List[Dict[str, Any]]:
        interval = YAHOO_INTERVALS.get(timespan)
        if interval is None:
            raise TransportError(f"Unsupported timespan for Yahoo Finance: {timespan}", 400)

        yf = self._get_yf()
        # yfinance treats ``end`` as exclusive
        end_exclusive = (to_date(end) + timedelta(days=1)).isoformat()

        try:
            df = yf.download(
                ticker,
                start=to_iso(start),
                end=end_exclusive,
                interval=interval,
                auto_adjust=False,
                progress=False,
                timeout=self.timeout,
            )
        except Exception as e:
            raise TransportError(f"Yahoo Finance download failed for {ticker}: {e}") from e

        df = self._normalize_dataframe(df)
        if df is None:
            return []

        rows = []
        for ts, row in df.iterrows():
            rows.append({
                "t": date_to_timestamp(ts),
                "o": float(row["Open"]),
                "h": float(row["High"]),
                "l": float(row["Low"]),
                "c": float(row["Close"]),
                "v": float(row["Volume"]) if pd.notna(row["Volume"]) else 0.0,
            })
        return rows

    @staticmethod
    def _normalize_dataframe(df: Optional[pd.DataFrame]) -> Optional[pd.DataFrame]:
        """Flatten columns, drop timezone and empty rows."""
        if df is None or len(df) == 0:
            return None

        if isinstance(df.columns, pd.MultiIndex):
            df = df.copy()
            df.columns = df.columns.get_level_values(0)

        if not isinstance(df.index, pd.DatetimeIndex):
            df.index = pd.to_datetime(df.index)

        if df.index.tz is not None:
            df.index = df.index.tz_localize(None)

        required = ["Open", "High", "Low", "Close", "Volume"]
        missing = [col for col in required if col not in df.columns]
        if missing:
            logger.warning(f"Missing required columns: {missing}")
            return None

        df = df.dropna(subset=["Open", "High", "Low", "Close"], how="any")

        return df if len(df) > 0 else None


# =============================================================================
# HELPERS
# =============================================================================

def _error_message(response: requests.Response, default: str) -> str:
    """Best-effort extraction of an error message from a JSON body."""
    try:
        payload = response.json()
    except ValueError:
        return default
    if isinstance(payload, dict):
        for key in ("message", "error"):
            if payload.get(key):
                return str(payload[key])
    return default

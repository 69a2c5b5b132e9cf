"""
Engine context and end-to-end analysis pipeline.

EngineContext owns the single fetch handler (and therefore the single
cache) for a process; every consumer receives the context explicitly
rather than reaching for a module-level instance.

Pipeline stages:
    1. ACQUIRE:    Sequential batch fetch with retry, repair and validation
    2. CORRELATE:  Pairwise correlation matrix over the fetched returns
    3. CLASSIFY:   Rolling turbulence regime signals
    4. AUDIT:      Integrity report over the batch and matrix
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from regime_engine.config import DEFAULT_SETTINGS, EngineSettings, TurbulenceMethod
from regime_engine.correlation import CorrelationMatrix, build_correlation_matrix, returns_map
from regime_engine.data_collector import (
    BatchResult,
    MarketDataHandler,
    PriceStore,
    ProgressCallback,
    TimedCache,
)
from regime_engine.integrity_audit import IntegrityAuditor, IntegrityReport
from regime_engine.market_calendar import to_iso
from regime_engine.regime_detector import RegimeAnalysis, RegimeClassifier
from regime_engine.stress_testing import StressTestEngine
from regime_engine.transports import MarketDataTransport

logger = logging.getLogger(__name__)


# =============================================================================
# ENGINE CONTEXT
# =============================================================================

@dataclass
class EngineContext:
    """Process-wide collaborators, constructed once and passed to callers."""
    settings: EngineSettings
    handler: MarketDataHandler
    classifier: RegimeClassifier
    stress: StressTestEngine
    auditor: IntegrityAuditor

    @classmethod
    def create(
        cls,
        transport: MarketDataTransport,
        settings: Optional[EngineSettings] = None,
        store: Optional[PriceStore] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        method: Optional[TurbulenceMethod] = None
    ) -> "EngineContext":
        settings = settings or DEFAULT_SETTINGS
        handler = MarketDataHandler(
            transport,
            settings=settings,
            cache=TimedCache(clock=clock),
            store=store,
            sleep=sleep,
        )
        return cls(
            settings=settings,
            handler=handler,
            classifier=RegimeClassifier(settings.regime, method),
            stress=StressTestEngine(handler, settings.stress),
            auditor=IntegrityAuditor(settings.validation),
        )


# =============================================================================
# PIPELINE
# =============================================================================

@dataclass
class AnalysisOutput:
    """Everything a portfolio optimiser needs from one run."""
    batch: BatchResult
    correlation: CorrelationMatrix
    regime: RegimeAnalysis
    audit: IntegrityReport
    processing_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": {"start": self.batch.start, "end": self.batch.end},
            "assets": {
                t: {
                    "bars": len(a.bars),
                    "volatility": a.volatility,
                    "data_quality": a.validation.data_quality.value,
                }
                for t, a in self.batch.assets.items()
            },
            "diagnostics": [d.to_dict() for d in self.batch.diagnostics],
            "correlation": self.correlation.to_dict(),
            "regime": self.regime.to_dict(),
            "audit": self.audit.to_dict(),
            "processing_time_ms": self.processing_time_ms,
        }


class MarketAnalysisPipeline:
    """
    Fetch, correlate, classify and audit a ticker universe.

    Usage:
        context = EngineContext.create(PolygonTransport())
        output = MarketAnalysisPipeline(context).run(["SPY", "TLT", "GLD"],
                                                    "2023-01-01", "2024-01-01")
    """

    def __init__(self, context: EngineContext):
        self.context = context

    def run(
        self,
        tickers: Sequence[str],
        start: str,
        end: str,
        on_progress: Optional[ProgressCallback] = None,
        metrics: Optional[Mapping[str, float]] = None
    ) -> AnalysisOutput:
        """
        Execute the pipeline.

        Args:
            tickers: Ticker universe, processed in order
            start: Start date (YYYY-MM-DD)
            end: End date (YYYY-MM-DD)
            on_progress: Optional ``(message, percentage)`` callback for the
                fetch stage
            metrics: Optional portfolio metrics to include in the audit

        Returns:
            AnalysisOutput (correlation and regime may be empty)
        """
        t0 = time.perf_counter()
        start, end = to_iso(start), to_iso(end)
        min_assets = self.context.settings.regime.min_tickers

        # =====================================================================
        # STAGE 1: ACQUIRE
        # =====================================================================
        logger.info(f"Stage 1: Fetching {len(tickers)} tickers ({start} to {end})...")
        batch = self.context.handler.fetch_and_clean_history(tickers, start, end, on_progress)
        failed = batch.failed_tickers
        logger.info(f"Fetched {len(batch.assets)}/{len(tickers)} tickers")
        if failed:
            logger.warning(f"Failed tickers: {', '.join(failed)}")

        # =====================================================================
        # STAGE 2: CORRELATE
        # =====================================================================
        logger.info("Stage 2: Building correlation matrix...")
        correlation = build_correlation_matrix(returns_map(batch.assets), min_assets)

        # =====================================================================
        # STAGE 3: CLASSIFY
        # =====================================================================
        logger.info("Stage 3: Detecting market regime...")
        regime = self.context.classifier.analyze(batch.assets)

        # =====================================================================
        # STAGE 4: AUDIT
        # =====================================================================
        logger.info("Stage 4: Auditing data integrity...")
        audit = self.context.auditor.audit(batch, correlation, metrics)

        processing_time = (time.perf_counter() - t0) * 1000
        logger.info(f"Pipeline complete in {processing_time:.0f}ms ({audit.status.value})")

        return AnalysisOutput(
            batch=batch,
            correlation=correlation,
            regime=regime,
            audit=audit,
            processing_time_ms=processing_time,
        )

"""
Data integrity audit for a completed fetch batch.

Every asset is re-validated against the batch's requested range, the
correlation matrix is checked for its structural invariants, and any
portfolio metrics supplied by the caller are range-checked and documented
with the methodology used to compute them. The result is one report whose
status callers surface next to the fetch diagnostics:

    errors     at least one asset rated low quality, or every ticker failed
    warnings   any other validator issue
    valid      no issues at all
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from regime_engine.bars import date_range_of
from regime_engine.config import VALIDATION, AuditStatus, DataQuality, ValidationThresholds
from regime_engine.correlation import CorrelationMatrix, build_correlation_matrix, returns_map
from regime_engine.data_collector import BatchResult
from regime_engine.data_validator import (
    MatrixValidationResult,
    MetricsValidationResult,
    validate_correlation_matrix,
    validate_portfolio_metrics,
    validate_ticker_data,
)

logger = logging.getLogger(__name__)


# (label, methodology, inputs) per metric key
METRIC_METHODOLOGY: Dict[str, tuple] = {
    "cagr": (
        "CAGR",
        "Compound Annual Growth Rate: (EndValue/StartValue)^(1/Years) - 1",
        ["Portfolio daily values", "Date range"],
    ),
    "annual_return": (
        "Annual Return",
        "Mean daily log return x 252",
        ["Daily log returns", "Annualization factor (252)"],
    ),
    "sharpe_ratio": (
        "Sharpe Ratio",
        "(Portfolio Return - Risk Free Rate) / Portfolio Std Dev, annualized",
        ["Daily returns", "Risk-free rate", "Annualization factor (sqrt 252)"],
    ),
    "sortino_ratio": (
        "Sortino Ratio",
        "(Portfolio Return - MAR) / Downside Deviation, annualized",
        ["Daily returns", "Minimum acceptable return", "Downside returns only"],
    ),
    "max_drawdown": (
        "Max Drawdown",
        "Maximum peak-to-trough decline in portfolio value",
        ["Portfolio daily values", "Running maximum"],
    ),
    "annual_volatility": (
        "Annualized Volatility",
        "Standard deviation of daily returns x sqrt(252)",
        ["Daily log returns", "Annualization factor"],
    ),
    "calmar_ratio": (
        "Calmar Ratio",
        "Annual Return / |Max Drawdown|",
        ["Annual return", "Max drawdown"],
    ),
    "beta": (
        "Beta",
        "Covariance(Portfolio, Benchmark) / Variance(Benchmark)",
        ["Portfolio daily returns", "Benchmark daily returns (SPY)"],
    ),
    "alpha": (
        "Alpha",
        "Portfolio Return - (Risk Free Rate + Beta x (Benchmark Return - Risk Free Rate))",
        ["Portfolio return", "Benchmark return", "Beta", "Risk-free rate"],
    ),
}


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class TickerAudit:
    ticker: str
    data_source: str
    start: str
    end: str
    bar_count: int
    synthetic_bars: int
    data_quality: DataQuality
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticker": self.ticker,
            "data_source": self.data_source,
            "date_range": {"start": self.start, "end": self.end},
            "bar_count": self.bar_count,
            "synthetic_bars": self.synthetic_bars,
            "data_quality": self.data_quality.value,
            "issues": list(self.issues),
        }


@dataclass
class MetricCalculation:
    metric: str
    value: float
    methodology: str
    inputs_used: List[str] = field(default_factory=list)


@dataclass
class IntegrityReport:
    """Aggregated integrity findings for one batch."""
    generated_at: datetime
    ticker_audits: List[TickerAudit]
    correlation_validation: Optional[MatrixValidationResult]
    metric_calculations: List[MetricCalculation]
    overall_quality: DataQuality
    total_issues: int
    status: AuditStatus
    summary: str
    metrics_validation: Optional[MetricsValidationResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "ticker_audits": [a.to_dict() for a in self.ticker_audits],
            "correlation_validation": (
                self.correlation_validation.to_dict() if self.correlation_validation else None
            ),
            "metric_calculations": [
                {
                    "metric": m.metric,
                    "value": m.value,
                    "methodology": m.methodology,
                    "inputs_used": list(m.inputs_used),
                }
                for m in self.metric_calculations
            ],
            "overall_quality": self.overall_quality.value,
            "total_issues": self.total_issues,
            "status": self.status.value,
            "summary": self.summary,
        }


# =============================================================================
# AUDITOR
# =============================================================================

_QUALITY_RANK = {DataQuality.HIGH: 2, DataQuality.MEDIUM: 1, DataQuality.LOW: 0}


class IntegrityAuditor:
    """Builds an IntegrityReport from a batch fetch."""

    def __init__(self, thresholds: ValidationThresholds = VALIDATION):
        self.thresholds = thresholds

    def audit(
        self,
        batch: BatchResult,
        correlation: Optional[CorrelationMatrix] = None,
        metrics: Optional[Mapping[str, float]] = None
    ) -> IntegrityReport:
        """
        Audit a batch.

        Args:
            batch: Completed batch fetch
            correlation: Matrix to check; built from the batch when omitted
                and at least two assets are present
            metrics: Optional portfolio metrics (keys as in METRIC_METHODOLOGY)

        Returns:
            IntegrityReport
        """
        logger.info(f"Auditing {len(batch.assets)} assets")

        audits: List[TickerAudit] = []
        overall = DataQuality.HIGH
        total_issues = 0
        any_low = False

        for ticker, asset in batch.assets.items():
            validation = validate_ticker_data(
                ticker, asset.bars, (batch.start, batch.end), self.thresholds
            )
            first, last = date_range_of(asset.bars) or ("N/A", "N/A")

            audits.append(TickerAudit(
                ticker=ticker,
                data_source=batch.data_source,
                start=first,
                end=last,
                bar_count=len(asset.bars),
                synthetic_bars=sum(1 for b in asset.bars if b.synthetic),
                data_quality=validation.data_quality,
                issues=list(validation.issues),
            ))

            total_issues += len(validation.issues)
            if validation.data_quality == DataQuality.LOW:
                any_low = True
            if _QUALITY_RANK[validation.data_quality] < _QUALITY_RANK[overall]:
                overall = validation.data_quality

        if not audits and batch.failed_tickers:
            # Nothing usable was fetched
            overall = DataQuality.LOW
            any_low = True
            total_issues += len(batch.failed_tickers)

        correlation_validation = self._check_correlation(batch, correlation)
        if correlation_validation is not None:
            total_issues += len(correlation_validation.issues)

        calculations: List[MetricCalculation] = []
        metrics_validation = None
        if metrics:
            calculations = document_metrics(metrics)
            metrics_validation = validate_portfolio_metrics(dict(metrics))
            total_issues += len(metrics_validation.issues)

        if any_low:
            status = AuditStatus.ERRORS
        elif total_issues > 0:
            status = AuditStatus.WARNINGS
        else:
            status = AuditStatus.VALID

        total_bars = sum(a.bar_count for a in audits)
        summary = (
            f"Audit of {len(audits)} tickers with {total_bars:,} total bars. "
            f"Data quality: {overall.value}. "
            f"{total_issues} issue(s) found. "
            f"All data sourced from {batch.data_source}."
        )
        logger.info(f"Audit complete: {summary}")

        return IntegrityReport(
            generated_at=datetime.now(timezone.utc),
            ticker_audits=audits,
            correlation_validation=correlation_validation,
            metric_calculations=calculations,
            overall_quality=overall,
            total_issues=total_issues,
            status=status,
            summary=summary,
            metrics_validation=metrics_validation,
        )

    def _check_correlation(
        self,
        batch: BatchResult,
        correlation: Optional[CorrelationMatrix]
    ) -> Optional[MatrixValidationResult]:
        if correlation is not None and not correlation.is_empty:
            return validate_correlation_matrix(
                correlation.matrix, correlation.tickers, self.thresholds
            )

        if len(batch.assets) >= 2:
            built = build_correlation_matrix(returns_map(batch.assets), min_assets=2)
            return validate_correlation_matrix(built.matrix, built.tickers, self.thresholds)

        return None


def document_metrics(metrics: Mapping[str, float]) -> List[MetricCalculation]:
    """Methodology notes for the known metrics present in ``metrics``."""
    notes: List[MetricCalculation] = []
    for key, (label, methodology, inputs) in METRIC_METHODOLOGY.items():
        if key in metrics and metrics[key] is not None:
            notes.append(MetricCalculation(label, float(metrics[key]), methodology, list(inputs)))
    return notes

"""
Scoring and filtering of backtest reports.

Step 1 applies hard filters: a report failing any threshold is kept in
storage as Filtered but never ranked. Step 2 normalizes each scored metric to
[0, 1] and combines them with non-negative weights. An undefined metric
(e.g. profit factor without losing trades) contributes zero to its term.

Two normalization modes:
    fixed    Each metric is clamped into a reference band [floor, ceiling].
             A score depends only on its own report and the config, so it can
             be stored as soon as the run completes.
    min_max  Each metric is scaled by the min and max over the unfiltered
             reports of the same job. Scores are comparable only within that
             job and are computed once the whole batch is known.

All arithmetic runs in a dedicated decimal context and the final score is
quantized to 10 places, so the same report and config always yield the same
stored score.
"""
import decimal
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Literal, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from zenith_engine.core.jobs import BacktestRun, RankedReport
from zenith_engine.core.reports import PerformanceReport
from zenith_engine.utils.logging_config import get_optimization_logger

logger = get_optimization_logger('SCORING')

SCORED_METRICS = (
    'profit_factor',
    'calmar_ratio',
    'payoff_ratio',
    'sharpe_ratio',
    'win_rate_pct',
    'total_return_pct',
)

NORMALIZATION_MODES = ('fixed', 'min_max')

SCORING_CONTEXT = decimal.Context(prec=28, rounding=decimal.ROUND_HALF_EVEN)
SCORE_QUANTUM = Decimal('1E-10')

ZERO = Decimal('0')
ONE = Decimal('1')

_EPOCH = datetime(1970, 1, 1)


def _decimal_from_float(value: Any) -> Any:
    # str() round-trip keeps 0.1 as Decimal('0.1')
    if isinstance(value, float):
        return Decimal(str(value))
    return value


class FilterConfig(BaseModel):
    """Hard thresholds a report must pass to be ranked."""
    model_config = ConfigDict(extra='forbid')

    min_total_trades: int = Field(0, ge=0, description="Discard reports with fewer trades")
    max_drawdown_pct: Optional[Decimal] = Field(
        None, ge=0, description="Discard reports whose drawdown % is strictly greater"
    )
    min_net_profit: Optional[Decimal] = Field(
        None, description="Discard reports with lower net profit"
    )

    @field_validator('max_drawdown_pct', 'min_net_profit', mode='before')
    @classmethod
    def _coerce_float(cls, value: Any) -> Any:
        return _decimal_from_float(value)


class ScoringWeights(BaseModel):
    """Non-negative weight per scored metric."""
    model_config = ConfigDict(extra='forbid')

    profit_factor: Decimal = Field(Decimal('1'), ge=0)
    calmar_ratio: Decimal = Field(Decimal('1'), ge=0)
    payoff_ratio: Decimal = Field(Decimal('1'), ge=0)
    sharpe_ratio: Decimal = Field(Decimal('0'), ge=0)
    win_rate_pct: Decimal = Field(Decimal('0'), ge=0)
    total_return_pct: Decimal = Field(Decimal('0'), ge=0)

    @field_validator(*SCORED_METRICS, mode='before')
    @classmethod
    def _coerce_float(cls, value: Any) -> Any:
        return _decimal_from_float(value)

    def active(self) -> List[Tuple[str, Decimal]]:
        """(metric, weight) pairs with a positive weight, in SCORED_METRICS order."""
        return [(name, getattr(self, name)) for name in SCORED_METRICS if getattr(self, name) > 0]


class MetricScale(BaseModel):
    """Reference band used by fixed normalization."""
    model_config = ConfigDict(extra='forbid')

    floor: Decimal
    ceiling: Decimal

    @field_validator('floor', 'ceiling', mode='before')
    @classmethod
    def _coerce_float(cls, value: Any) -> Any:
        return _decimal_from_float(value)

    @model_validator(mode='after')
    def _check_band(self) -> 'MetricScale':
        if self.ceiling <= self.floor:
            raise ValueError(f"ceiling ({self.ceiling}) must be greater than floor ({self.floor})")
        return self


class ReferenceScales(BaseModel):
    """Fixed normalization bands per metric."""
    model_config = ConfigDict(extra='forbid')

    profit_factor: MetricScale = MetricScale(floor=Decimal('0'), ceiling=Decimal('3'))
    calmar_ratio: MetricScale = MetricScale(floor=Decimal('0'), ceiling=Decimal('5'))
    payoff_ratio: MetricScale = MetricScale(floor=Decimal('0'), ceiling=Decimal('3'))
    sharpe_ratio: MetricScale = MetricScale(floor=Decimal('0'), ceiling=Decimal('1'))
    win_rate_pct: MetricScale = MetricScale(floor=Decimal('0'), ceiling=Decimal('100'))
    total_return_pct: MetricScale = MetricScale(floor=Decimal('0'), ceiling=Decimal('100'))


class AnalysisConfig(BaseModel):
    """
    Filters, weights and normalization for one job.

    Passed explicitly into every scoring call. Accepts the flat legacy layout
    as well as the nested one:

        AnalysisConfig.model_validate({
            'min_total_trades': 10,
            'max_drawdown_pct': 25,
            'weight_profit_factor': 1,
            'weight_calmar_ratio': 1,
            'weight_avg_win_loss_ratio': 1,
        })
    """
    model_config = ConfigDict(extra='forbid')

    filters: FilterConfig = Field(default_factory=FilterConfig)
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    normalization: Literal['fixed', 'min_max'] = 'fixed'
    scales: ReferenceScales = Field(default_factory=ReferenceScales)

    @model_validator(mode='before')
    @classmethod
    def _accept_flat_layout(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        data = dict(data)
        filters = dict(data.get('filters') or {})
        weights = dict(data.get('weights') or {})

        for key in ('min_total_trades', 'max_drawdown_pct', 'min_net_profit'):
            if key in data:
                filters[key] = data.pop(key)

        for key in list(data):
            if key.startswith('weight_'):
                metric = key[len('weight_'):]
                if metric == 'avg_win_loss_ratio':
                    metric = 'payoff_ratio'
                weights[metric] = data.pop(key)

        if filters:
            data['filters'] = filters
        if weights:
            data['weights'] = weights
        return data

    @property
    def is_batch_relative(self) -> bool:
        return self.normalization == 'min_max'

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe dict (decimals as strings) for persistence."""
        return self.model_dump(mode='json')


@dataclass(frozen=True)
class Filtered:
    """
    A report that failed one or more hard filters.

    Attributes:
        run: The run whose report was filtered
        reasons: Human-readable threshold violations
    """
    run: BacktestRun
    reasons: Tuple[str, ...]


MetricBounds = Dict[str, Tuple[Decimal, Decimal]]


def rank_key(ranked: RankedReport) -> Tuple:
    """
    Sort key for ranking: score descending, then lower max drawdown %, then
    earlier run creation, then run id for a total order.
    """
    created = ranked.run.created_at
    return (
        -ranked.score,
        ranked.report.max_drawdown_pct,
        created is None,
        created or _EPOCH,
        ranked.run_id,
    )


def rank_reports(ranked: Iterable[RankedReport]) -> List[RankedReport]:
    """Return ranked reports in rank order."""
    return sorted(ranked, key=rank_key)


class ScoringEngine:
    """
    Stateless filter + weighted score evaluator.

    Example:
        engine = ScoringEngine()
        config = AnalysisConfig.model_validate({'filters': {'min_total_trades': 5}})

        outcome = engine.evaluate(run, config)
        if isinstance(outcome, Filtered):
            print(outcome.reasons)
        else:
            print(outcome.score)
    """

    def filter_reasons(
        self, report: PerformanceReport, filters: FilterConfig
    ) -> List[str]:
        """
        List every threshold the report violates.

        Returns:
            Empty list when the report passes all filters
        """
        reasons = []
        if report.total_trades < filters.min_total_trades:
            reasons.append(
                f"total_trades {report.total_trades} < min_total_trades {filters.min_total_trades}"
            )
        if filters.max_drawdown_pct is not None and report.max_drawdown_pct > filters.max_drawdown_pct:
            reasons.append(
                f"max_drawdown_pct {report.max_drawdown_pct} > limit {filters.max_drawdown_pct}"
            )
        if filters.min_net_profit is not None and report.net_profit < filters.min_net_profit:
            reasons.append(
                f"net_profit {report.net_profit} < min_net_profit {filters.min_net_profit}"
            )
        return reasons

    def passes_filters(self, report: PerformanceReport, config: AnalysisConfig) -> bool:
        return not self.filter_reasons(report, config.filters)

    def compute_bounds(
        self, reports: Iterable[PerformanceReport], config: AnalysisConfig
    ) -> MetricBounds:
        """
        Min and max of every weighted metric over a batch, ignoring undefined values.
        """
        bounds: MetricBounds = {}
        reports = list(reports)
        for metric, _ in config.weights.active():
            values = [r.metric(metric) for r in reports if r.metric(metric) is not None]
            if values:
                bounds[metric] = (min(values), max(values))
        return bounds

    def normalize(
        self,
        metric: str,
        value: Optional[Decimal],
        config: AnalysisConfig,
        bounds: Optional[MetricBounds] = None,
    ) -> Decimal:
        """
        Scale one metric value to [0, 1].

        Undefined values normalize to 0. Under min_max, a batch where every
        value is equal normalizes to 1.

        Raises:
            ValueError: If min_max normalization is requested without bounds
        """
        if value is None:
            return ZERO

        with decimal.localcontext(SCORING_CONTEXT):
            if config.is_batch_relative:
                if bounds is None:
                    raise ValueError("min_max normalization needs batch bounds")
                if metric not in bounds:
                    return ZERO
                low, high = bounds[metric]
                if high == low:
                    return ONE
                clamped = min(max(value, low), high)
                return (clamped - low) / (high - low)

            scale = getattr(config.scales, metric)
            clamped = min(max(value, scale.floor), scale.ceiling)
            return (clamped - scale.floor) / (scale.ceiling - scale.floor)

    def score(
        self,
        report: PerformanceReport,
        config: AnalysisConfig,
        bounds: Optional[MetricBounds] = None,
    ) -> Decimal:
        """
        Weighted sum of normalized metrics, quantized to 10 decimal places.
        """
        with decimal.localcontext(SCORING_CONTEXT):
            total = ZERO
            for metric, weight in config.weights.active():
                total += weight * self.normalize(metric, report.metric(metric), config, bounds)
            return total.quantize(SCORE_QUANTUM)

    def evaluate(
        self,
        run: BacktestRun,
        config: AnalysisConfig,
        bounds: Optional[MetricBounds] = None,
    ) -> Union[RankedReport, Filtered]:
        """
        Filter then score one run's report.

        Args:
            run: Run carrying a PerformanceReport
            config: Analysis configuration of the owning job
            bounds: Batch bounds, required under min_max normalization

        Returns:
            RankedReport, or Filtered listing the violated thresholds
        """
        if run.report is None:
            raise ValueError(f"Run {run.run_id} has no report to evaluate")

        reasons = self.filter_reasons(run.report, config.filters)
        if reasons:
            logger.debug(f"Run {run.run_id} filtered: {'; '.join(reasons)}")
            return Filtered(run=run, reasons=tuple(reasons))

        value = self.score(run.report, config, bounds)
        logger.debug(f"Score for run {run.run_id} ({run.assignment}): {value}")
        return RankedReport(run=run, score=value)

    def score_batch(
        self, runs: Sequence[BacktestRun], config: AnalysisConfig
    ) -> Tuple[List[RankedReport], List[Filtered]]:
        """
        Evaluate a whole batch, computing min_max bounds over survivors first.

        Returns:
            (ranked reports in rank order, filtered runs)
        """
        survivors = []
        filtered = []
        for run in runs:
            reasons = self.filter_reasons(run.report, config.filters)
            if reasons:
                filtered.append(Filtered(run=run, reasons=tuple(reasons)))
            else:
                survivors.append(run)

        bounds = None
        if config.is_batch_relative:
            bounds = self.compute_bounds((run.report for run in survivors), config)

        ranked = [RankedReport(run=run, score=self.score(run.report, config, bounds))
                  for run in survivors]
        return rank_reports(ranked), filtered

"""
Adaptive Squeeze Scoring
Seven-factor 0-100 score with weights and thresholds that are re-tuned from
tracked recommendation outcomes.

Parameter sets are immutable and versioned. Adoption publishes a new version
to the store and then swaps the in-memory pointer, so readers never see a
half-updated set.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, asdict, replace
from typing import Dict, List, Optional

from core.config import SCORING_CONFIG

logger = logging.getLogger(__name__)

METRIC_ALIASES = {
    'short_interest': ('short_interest', 'shortInt', 'shortInterest', 'short_pct_float'),
    'days_to_cover': ('days_to_cover', 'daysToCover'),
    'borrow_rate': ('borrow_rate', 'borrowRate'),
    'volume_ratio': ('volume_ratio', 'volumeRatio'),
    'float': ('float', 'float_shares', 'floatShares'),
    'price_change': ('price_change', 'priceChange'),
    'sentiment': ('sentiment',),
    'current_price': ('current_price', 'currentPrice', 'price'),
}


def normalize_metrics(raw: Optional[Dict]) -> Dict[str, float]:
    """Map screener metrics (camelCase or snake_case) to canonical snake_case floats."""
    metrics: Dict[str, float] = {}
    if not raw:
        return metrics
    for canonical, aliases in METRIC_ALIASES.items():
        for alias in aliases:
            value = raw.get(alias)
            if value is None:
                continue
            try:
                metrics[canonical] = float(value)
            except (TypeError, ValueError):
                logger.debug(f"Ignoring non-numeric {alias}={value!r}")
                continue
            break
    return metrics


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class ScoringWeights:
    short_interest: float = 0.25
    days_to_cover: float = 0.20
    borrow_rate: float = 0.15
    volume: float = 0.15
    float: float = 0.10
    price_action: float = 0.10
    sentiment: float = 0.05

    def total(self) -> float:
        return sum(asdict(self).values())

    def normalized(self) -> 'ScoringWeights':
        total = self.total()
        if total <= 0:
            return ScoringWeights()
        return ScoringWeights(**{k: v / total for k, v in asdict(self).items()})


@dataclass(frozen=True)
class ScoringThresholds:
    min_short_interest: float = 8.0
    min_days_to_cover: float = 1.0
    min_borrow_rate: float = 0.0
    min_volume_ratio: float = 1.2
    min_score_threshold: float = 40.0


@dataclass(frozen=True)
class PerformanceSnapshot:
    recommendations_count: int = 0
    successful_recommendations: int = 0
    total_return: float = 0.0
    avg_return: float = 0.0
    win_rate: float = 0.0
    sharpe_ratio: float = 0.0


@dataclass(frozen=True)
class StrategyParameters:
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    thresholds: ScoringThresholds = field(default_factory=ScoringThresholds)
    performance: PerformanceSnapshot = field(default_factory=PerformanceSnapshot)
    version: int = 0
    parameter_set_name: str = SCORING_CONFIG['parameter_set_name']

    @classmethod
    def defaults(cls) -> 'StrategyParameters':
        return cls(
            weights=ScoringWeights(**SCORING_CONFIG['default_weights']),
            thresholds=ScoringThresholds(**SCORING_CONFIG['default_thresholds']),
        )

    @classmethod
    def from_record(cls, record: Dict) -> 'StrategyParameters':
        return cls(
            weights=ScoringWeights(**record['weights']),
            thresholds=ScoringThresholds(**record['thresholds']),
            performance=PerformanceSnapshot(**record.get('performance') or {}),
            version=record['version'],
            parameter_set_name=record.get('parameter_set_name', SCORING_CONFIG['parameter_set_name']),
        )

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class OptimizationResult:
    candidate: StrategyParameters
    current_avg_return: float
    candidate_avg_return: float
    improvement: float
    confidence: float
    sample_size: int
    method: str = 'pattern_analysis'

    def to_dict(self) -> Dict:
        return {
            'candidate': self.candidate.to_dict(),
            'current_avg_return': self.current_avg_return,
            'candidate_avg_return': self.candidate_avg_return,
            'improvement': self.improvement,
            'confidence': self.confidence,
            'sample_size': self.sample_size,
            'method': self.method,
        }


def normalize_value(value: float, low: float, high: float, threshold: float) -> float:
    """Linear 0..1 scaling between low and high; anything under threshold scores 0."""
    if value < threshold:
        return 0.0
    if high <= low:
        return 1.0
    return clamp((value - low) / (high - low), 0.0, 1.0)


def float_score(float_shares: float) -> float:
    if float_shares <= 0:
        return 0.0
    for upper, score in SCORING_CONFIG['float_tiers']:
        if float_shares < upper:
            return score
    return SCORING_CONFIG['large_float_score']


def price_action_score(price_change: float, volume_ratio: float) -> float:
    score = 0.0
    if price_change > 0:
        score += 0.3
    if price_change > 0.05:
        score += 0.2
    if volume_ratio > 2:
        score += 0.3
    if volume_ratio > 5:
        score += 0.2
    return min(1.0, score)


def component_scores(metrics: Dict[str, float], thresholds: ScoringThresholds) -> Dict[str, float]:
    ranges = SCORING_CONFIG['metric_ranges']
    volume_ratio = metrics.get('volume_ratio', 0.0)
    return {
        'short_interest': normalize_value(metrics.get('short_interest', 0.0), *ranges['short_interest'],
                                          thresholds.min_short_interest),
        'days_to_cover': normalize_value(metrics.get('days_to_cover', 0.0), *ranges['days_to_cover'],
                                         thresholds.min_days_to_cover),
        'borrow_rate': normalize_value(metrics.get('borrow_rate', 0.0), *ranges['borrow_rate'],
                                       thresholds.min_borrow_rate),
        'volume': normalize_value(volume_ratio, *ranges['volume_ratio'], thresholds.min_volume_ratio),
        'float': float_score(metrics.get('float', 0.0)),
        'price_action': price_action_score(metrics.get('price_change', 0.0), volume_ratio),
        'sentiment': clamp(metrics.get('sentiment', 0.0), 0.0, 1.0),
    }


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class AdaptiveScorer:
    def __init__(self, store):
        self.store = store
        self._active = StrategyParameters.defaults()
        self.parameter_set_name = SCORING_CONFIG['parameter_set_name']

    @property
    def current_parameters(self) -> StrategyParameters:
        return self._active

    async def load_active_parameters(self) -> StrategyParameters:
        """Load the newest version from the store, seeding version 1 on an empty database."""
        record = await self.store.get_active_strategy_parameters(self.parameter_set_name)
        if record is None:
            defaults = StrategyParameters.defaults()
            await self.store.save_strategy_parameters(
                self.parameter_set_name,
                asdict(defaults.weights),
                asdict(defaults.thresholds),
                asdict(defaults.performance),
                reason='initial defaults',
            )
            record = await self.store.get_active_strategy_parameters(self.parameter_set_name)
        self._active = StrategyParameters.from_record(record)
        logger.info(f"Loaded scoring parameters v{self._active.version}")
        return self._active

    def calculate_score(self, metrics: Dict, parameters: Optional[StrategyParameters] = None) -> int:
        """Integer squeeze score in [0, 100]."""
        params = parameters or self._active
        components = component_scores(normalize_metrics(metrics), params.thresholds)
        weights = asdict(params.weights)
        total = sum(components[name] * weights[name] for name in weights) * 100
        return round_half_up(clamp(total, 0.0, 100.0))

    def score_breakdown(self, metrics: Dict, parameters: Optional[StrategyParameters] = None) -> Dict:
        params = parameters or self._active
        components = component_scores(normalize_metrics(metrics), params.thresholds)
        weights = asdict(params.weights)
        return {
            'score': self.calculate_score(metrics, params),
            'components': components,
            'weighted': {name: components[name] * weights[name] * 100 for name in weights},
            'version': params.version,
        }

    # === Optimization ===

    def _backtest(self, recommendations: List[Dict], params: StrategyParameters) -> Dict:
        """Re-score each stored snapshot; average the realised return of those that pass."""
        passed = [
            rec for rec in recommendations
            if self.calculate_score(rec.get('market_conditions') or {}, params) >= params.thresholds.min_score_threshold
        ]
        returns = [rec.get('outcome_return') or 0.0 for rec in passed]
        successful = sum(1 for rec in passed if rec.get('outcome_type') == 'profitable')
        return {
            'recommendations_count': len(passed),
            'successful_recommendations': successful,
            'total_return': sum(returns),
            'avg_return': sum(returns) / len(returns) if returns else 0.0,
            'win_rate': successful / len(passed) if passed else 0.0,
        }

    def _propose(self, recommendations: List[Dict]) -> StrategyParameters:
        current = self._active
        learning_rate = SCORING_CONFIG['learning_rate']
        caps = SCORING_CONFIG['weight_caps']

        profitable = [normalize_metrics(r.get('market_conditions')) for r in recommendations
                      if r.get('outcome_type') == 'profitable']
        unprofitable = [normalize_metrics(r.get('market_conditions')) for r in recommendations
                        if r.get('outcome_type') == 'unprofitable']

        def mean(rows: List[Dict], key: str) -> float:
            values = [row.get(key, 0.0) for row in rows]
            return sum(values) / len(values) if values else 0.0

        weights = asdict(current.weights)
        metric_to_weight = {
            'short_interest': 'short_interest',
            'days_to_cover': 'days_to_cover',
            'volume_ratio': 'volume',
        }
        for metric, weight_name in metric_to_weight.items():
            if mean(profitable, metric) > mean(unprofitable, metric):
                weights[weight_name] = min(caps[weight_name], weights[weight_name] + learning_rate * 0.1)
        new_weights = ScoringWeights(**weights).normalized()

        thresholds = asdict(current.thresholds)
        if profitable:
            factor = SCORING_CONFIG['threshold_factor']
            for name, (metric, low, high) in SCORING_CONFIG['threshold_bands'].items():
                thresholds[name] = clamp(mean(profitable, metric) * factor, low, high)

        return replace(
            current,
            weights=new_weights,
            thresholds=ScoringThresholds(**thresholds),
            performance=PerformanceSnapshot(),
        )

    async def optimize_parameters(self) -> Optional[OptimizationResult]:
        """Propose a candidate parameter set from the last 90 days of tracked outcomes.

        Returns None when there are too few tracked recommendations. The
        candidate is not adopted here; see adopt_parameters().
        """
        lookback = SCORING_CONFIG['optimization_lookback_days']
        recommendations = await self.store.get_recent_recommendations(days=lookback, tracked=True)
        min_samples = SCORING_CONFIG['min_samples_for_optimization']
        if len(recommendations) < min_samples:
            logger.info(f"Parameter optimization skipped: {len(recommendations)}/{min_samples} tracked outcomes")
            return None

        candidate = self._propose(recommendations)
        current_bt = self._backtest(recommendations, self._active)
        candidate_bt = self._backtest(recommendations, candidate)
        candidate = replace(candidate, performance=PerformanceSnapshot(sharpe_ratio=0.0, **candidate_bt))

        n = len(recommendations)
        confidence = min(
            SCORING_CONFIG['max_confidence'],
            SCORING_CONFIG['max_confidence'] * n / SCORING_CONFIG['confidence_full_samples'],
        )
        result = OptimizationResult(
            candidate=candidate,
            current_avg_return=current_bt['avg_return'],
            candidate_avg_return=candidate_bt['avg_return'],
            improvement=candidate_bt['avg_return'] - current_bt['avg_return'],
            confidence=confidence,
            sample_size=n,
        )
        logger.info(
            f"Parameter candidate from {n} outcomes: improvement {result.improvement:+.4f}, "
            f"confidence {confidence:.2f}"
        )
        return result

    async def adopt_parameters(self, candidate: StrategyParameters, reason: str) -> StrategyParameters:
        """Publish candidate as a new version, then make it the active set."""
        version = await self.store.save_strategy_parameters(
            self.parameter_set_name,
            asdict(candidate.weights),
            asdict(candidate.thresholds),
            asdict(candidate.performance),
            reason=reason,
        )
        previous = self._active.version
        self._active = replace(candidate, version=version, parameter_set_name=self.parameter_set_name)
        logger.info(f"Adopted scoring parameters v{version} (was v{previous}): {reason}")
        return self._active

    async def rollback_parameters(self, version: int) -> Optional[StrategyParameters]:
        """Republish an earlier version as the newest one."""
        record = await self.store.get_strategy_parameters(self.parameter_set_name, version)
        if record is None:
            logger.warning(f"Cannot roll back: parameter version {version} not found")
            return None
        return await self.adopt_parameters(StrategyParameters.from_record(record), f"rollback to v{version}")

    async def get_parameter_history(self, limit: int = 10) -> List[Dict]:
        return await self.store.get_parameter_history(self.parameter_set_name, limit)

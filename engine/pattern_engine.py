"""
Pattern Recognition over tracked recommendation outcomes.

Closed recommendations are bucketed by short interest, days-to-cover, volume
ratio and outcome. A bucket becomes a MarketPattern once it has enough
observations; later observations are folded in incrementally. Live metrics
are matched against the known patterns to estimate squeeze probability.
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field, asdict, replace
from typing import Dict, List, Optional, Tuple

from core.config import PATTERN_CONFIG
from engine.adaptive_scoring import normalize_metrics

logger = logging.getLogger(__name__)

Range = Tuple[float, float]


@dataclass(frozen=True)
class MarketPattern:
    pattern_name: str
    pattern_type: str
    outcome_type: str
    short_interest_range: Range
    days_to_cover_range: Range
    volume_ratio_range: Range
    price_action: str
    occurrences: int
    successful_outcomes: int
    success_rate: float
    avg_return: float
    avg_hold_period: float
    confidence_score: float
    market_conditions: Dict = field(default_factory=dict)
    sentiment: str = 'neutral'
    first_observed: Optional[str] = None
    last_observed: Optional[str] = None
    revision: int = 0

    @property
    def risk_level(self) -> str:
        return risk_level(self.success_rate, self.avg_return, self.occurrences)

    def to_record(self) -> Dict:
        return {
            'pattern_name': self.pattern_name,
            'pattern_type': self.pattern_type,
            'pattern_features': {
                'outcome_type': self.outcome_type,
                'short_interest_range': list(self.short_interest_range),
                'days_to_cover_range': list(self.days_to_cover_range),
                'volume_ratio_range': list(self.volume_ratio_range),
                'price_action': self.price_action,
                'market_conditions': self.market_conditions,
                'sentiment': self.sentiment,
            },
            'occurrences': self.occurrences,
            'successful_outcomes': self.successful_outcomes,
            'success_rate': self.success_rate,
            'avg_return': self.avg_return,
            'avg_hold_period': self.avg_hold_period,
            'confidence_score': self.confidence_score,
            'first_observed': self.first_observed,
            'last_observed': self.last_observed,
        }

    @classmethod
    def from_record(cls, record: Dict) -> 'MarketPattern':
        features = record.get('pattern_features') or {}
        return cls(
            pattern_name=record['pattern_name'],
            pattern_type=record['pattern_type'],
            outcome_type=features.get('outcome_type', 'unknown'),
            short_interest_range=tuple(features.get('short_interest_range', (0.0, 0.0))),
            days_to_cover_range=tuple(features.get('days_to_cover_range', (0.0, 0.0))),
            volume_ratio_range=tuple(features.get('volume_ratio_range', (0.0, 0.0))),
            price_action=features.get('price_action', 'sideways'),
            occurrences=record['occurrences'],
            successful_outcomes=record['successful_outcomes'],
            success_rate=record['success_rate'],
            avg_return=record['avg_return'],
            avg_hold_period=record['avg_hold_period'],
            confidence_score=record['confidence_score'],
            market_conditions=features.get('market_conditions') or {},
            sentiment=features.get('sentiment', 'neutral'),
            first_observed=record.get('first_observed'),
            last_observed=record.get('last_observed'),
            revision=record.get('revision', 0),
        )

    def summary(self) -> Dict:
        return {
            'pattern_name': self.pattern_name,
            'pattern_type': self.pattern_type,
            'occurrences': self.occurrences,
            'success_rate': self.success_rate,
            'avg_return': self.avg_return,
            'confidence_score': self.confidence_score,
            'risk_level': self.risk_level,
        }


def bucket_label(value: float, edges: List[float]) -> str:
    for low, high in zip(edges, edges[1:]):
        if low <= value < high:
            return f"{low}-{high}"
    if value < edges[0]:
        return f"{edges[0]}-{edges[1]}"
    return f"{edges[-1]}+"


def pattern_key(metrics: Dict[str, float], outcome_type: str) -> str:
    return "_".join([
        bucket_label(metrics.get('short_interest', 0.0), PATTERN_CONFIG['short_interest_buckets']),
        bucket_label(metrics.get('days_to_cover', 0.0), PATTERN_CONFIG['days_to_cover_buckets']),
        bucket_label(metrics.get('volume_ratio', 0.0), PATTERN_CONFIG['volume_ratio_buckets']),
        outcome_type,
    ])


def classify_pattern_type(avg_short_interest: float) -> str:
    if avg_short_interest >= 30:
        return 'squeeze_setup'
    if avg_short_interest >= 15:
        return 'breakout'
    return 'continuation'


def describe_price_action(avg_price_change: float) -> str:
    if avg_price_change > 0.05:
        return 'strong_uptrend'
    if avg_price_change > 0.02:
        return 'moderate_uptrend'
    if avg_price_change > -0.02:
        return 'sideways'
    return 'downtrend'


def confidence_score(occurrences: int, success_rate: float) -> float:
    return (min(1.0, occurrences / PATTERN_CONFIG['reliable_occurrences']) + success_rate) / 2


def risk_level(success_rate: float, avg_return: float, occurrences: int) -> str:
    if success_rate >= 0.7 and avg_return >= 0.10 and occurrences >= 10:
        return 'low'
    if success_rate >= 0.5 and avg_return >= 0.05 and occurrences >= 5:
        return 'medium'
    return 'high'


def range_match(value: float, value_range: Range) -> float:
    """1 inside the range, decaying linearly to 0 over 20% of its width outside."""
    low, high = value_range
    if low <= value <= high:
        return 1.0
    tolerance = (high - low) * PATTERN_CONFIG['range_tolerance']
    if tolerance <= 0:
        return 0.0
    distance = low - value if value < low else value - high
    return max(0.0, 1.0 - distance / tolerance)


def price_action_match(descriptor: str, price_change: float) -> float:
    if descriptor == 'strong_uptrend':
        return 1.0 if price_change > 0.05 else max(0.0, price_change * 20)
    if descriptor == 'moderate_uptrend':
        return 1.0 if price_change > 0.02 else max(0.0, price_change * 50)
    if descriptor == 'sideways':
        return 1.0 if abs(price_change) < 0.02 else max(0.0, 1 - abs(price_change) * 25)
    if descriptor == 'downtrend':
        return 1.0 if price_change < -0.02 else max(0.0, -price_change * 50)
    return 0.5


def match_score(pattern: MarketPattern, metrics: Dict[str, float]) -> float:
    weights = PATTERN_CONFIG['match_weights']
    score = (
        weights['short_interest'] * range_match(metrics.get('short_interest', 0.0), pattern.short_interest_range)
        + weights['days_to_cover'] * range_match(metrics.get('days_to_cover', 0.0), pattern.days_to_cover_range)
        + weights['volume_ratio'] * range_match(metrics.get('volume_ratio', 0.0), pattern.volume_ratio_range)
        + weights['price_action'] * price_action_match(pattern.price_action, metrics.get('price_change', 0.0))
        # market regime is not modelled yet, count it as a neutral half match
        + weights['market_conditions'] * 0.5
    )
    return min(1.0, score)


def assess_risk(matches: List[Dict], probability: float) -> str:
    if probability < 0.3:
        return "High risk - Low probability of success"
    high_risk = sum(1 for m in matches if m['risk_level'] == 'high')
    if high_risk > len(matches) / 2:
        return "High risk - Conflicting patterns"
    if probability < 0.6:
        return "Medium risk - Mixed signals"
    return "Low risk - Consistent positive patterns"


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class PatternEngine:
    def __init__(self, store):
        self.store = store
        self._patterns: Dict[str, MarketPattern] = {}
        self._lock = asyncio.Lock()

    async def load_patterns(self) -> int:
        records = await self.store.get_patterns()
        self._patterns = {r['pattern_name']: MarketPattern.from_record(r) for r in records}
        logger.info(f"Loaded {len(self._patterns)} market patterns")
        return len(self._patterns)

    async def discover_patterns(self) -> Dict[str, List[str]]:
        """Build patterns from the full discovery window of tracked outcomes."""
        recommendations = await self.store.get_recent_recommendations(
            days=PATTERN_CONFIG['discovery_lookback_days'], tracked=True
        )
        return await self.update_patterns(recommendations)

    def _build(self, name: str, outcome_type: str, group: List[Dict]) -> MarketPattern:
        metrics = [normalize_metrics(r.get('market_conditions')) for r in group]
        si = [m.get('short_interest', 0.0) for m in metrics]
        dtc = [m.get('days_to_cover', 0.0) for m in metrics]
        vr = [m.get('volume_ratio', 0.0) for m in metrics]
        price_change = [m.get('price_change', 0.0) for m in metrics]
        successful = sum(1 for r in group if r.get('outcome_type') == 'profitable')
        occurrences = len(group)
        success_rate = successful / occurrences

        return MarketPattern(
            pattern_name=name,
            pattern_type=classify_pattern_type(_mean(si)),
            outcome_type=outcome_type,
            short_interest_range=(min(si), max(si)),
            days_to_cover_range=(min(dtc), max(dtc)),
            volume_ratio_range=(min(vr), max(vr)),
            price_action=describe_price_action(_mean(price_change)),
            occurrences=occurrences,
            successful_outcomes=successful,
            success_rate=success_rate,
            avg_return=_mean([r.get('outcome_return') or 0.0 for r in group]),
            avg_hold_period=_mean([r.get('days_to_outcome') or 0.0 for r in group]),
            confidence_score=confidence_score(occurrences, success_rate),
            market_conditions={
                'avg_short_interest': _mean(si),
                'avg_price_change': _mean(price_change),
            },
            first_observed=min(r['created_at'] for r in group),
            last_observed=max(r.get('outcome_date') or r['created_at'] for r in group),
        )

    def _merge(self, pattern: MarketPattern, group: List[Dict]) -> MarketPattern:
        """Fold new observations into an existing pattern without recounting old ones."""
        metrics = [normalize_metrics(r.get('market_conditions')) for r in group]
        n, k = pattern.occurrences, len(group)
        total = n + k

        def running(old: float, values: List[float]) -> float:
            return (old * n + sum(values)) / total

        def widen(current: Range, values: List[float]) -> Range:
            return (min([current[0]] + values), max([current[1]] + values))

        si = [m.get('short_interest', 0.0) for m in metrics]
        dtc = [m.get('days_to_cover', 0.0) for m in metrics]
        vr = [m.get('volume_ratio', 0.0) for m in metrics]
        price_change = [m.get('price_change', 0.0) for m in metrics]
        successful = pattern.successful_outcomes + sum(1 for r in group if r.get('outcome_type') == 'profitable')
        success_rate = successful / total
        avg_price_change = running(pattern.market_conditions.get('avg_price_change', 0.0), price_change)

        return replace(
            pattern,
            short_interest_range=widen(pattern.short_interest_range, si),
            days_to_cover_range=widen(pattern.days_to_cover_range, dtc),
            volume_ratio_range=widen(pattern.volume_ratio_range, vr),
            price_action=describe_price_action(avg_price_change),
            occurrences=total,
            successful_outcomes=successful,
            success_rate=success_rate,
            avg_return=running(pattern.avg_return, [r.get('outcome_return') or 0.0 for r in group]),
            avg_hold_period=running(pattern.avg_hold_period, [r.get('days_to_outcome') or 0.0 for r in group]),
            confidence_score=confidence_score(total, success_rate),
            market_conditions={
                'avg_short_interest': running(pattern.market_conditions.get('avg_short_interest', 0.0), si),
                'avg_price_change': avg_price_change,
            },
            last_observed=max([pattern.last_observed or ''] + [r.get('outcome_date') or r['created_at'] for r in group]),
        )

    async def update_patterns(self, recommendations: List[Dict]) -> Dict[str, List[str]]:
        """Absorb closed recommendations not yet seen by any pattern.

        Returns the names of patterns created and updated.
        """
        created: List[str] = []
        updated: List[str] = []
        async with self._lock:
            absorbed = await self.store.get_absorbed_recommendation_ids()
            groups: Dict[Tuple[str, str], List[Dict]] = defaultdict(list)
            for rec in recommendations:
                outcome_type = rec.get('outcome_type')
                if not rec.get('outcome_tracked') or not outcome_type or rec['id'] in absorbed:
                    continue
                metrics = normalize_metrics(rec.get('market_conditions'))
                groups[(pattern_key(metrics, outcome_type), outcome_type)].append(rec)

            for (key, outcome_type), group in groups.items():
                name = f"pattern_{key}"
                existing = self._patterns.get(name)
                if existing:
                    pattern = self._merge(existing, group)
                elif len(group) >= PATTERN_CONFIG['min_occurrences']:
                    pattern = self._build(name, outcome_type, group)
                else:
                    continue

                revision = await self.store.save_pattern(pattern.to_record(), [r['id'] for r in group])
                self._patterns[name] = replace(pattern, revision=revision)
                (updated if existing else created).append(name)

        if created or updated:
            logger.info(f"Patterns refreshed: {len(created)} new, {len(updated)} updated")
        return {'created': created, 'updated': updated}

    def get_known_patterns(self) -> List[MarketPattern]:
        return sorted(self._patterns.values(), key=lambda p: p.confidence_score, reverse=True)

    async def analyze_stock(self, symbol: str, metrics: Dict) -> Dict:
        """Match live metrics against known patterns and blend with the symbol's history."""
        current = normalize_metrics(metrics)
        matches = []
        for pattern in self._patterns.values():
            score = match_score(pattern, current)
            if score < PATTERN_CONFIG['min_match_score']:
                continue
            matches.append({
                'pattern_name': pattern.pattern_name,
                'pattern_type': pattern.pattern_type,
                'match_score': score,
                'expected_return': pattern.avg_return,
                'probability': pattern.success_rate,
                'time_horizon': pattern.avg_hold_period,
                'confidence': pattern.confidence_score,
                'risk_level': pattern.risk_level,
            })
        matches.sort(key=lambda m: m['match_score'], reverse=True)

        memory = await self.store.get_stock_memory(symbol)
        return {
            'symbol': symbol.upper(),
            'current_metrics': current,
            'pattern_matches': matches,
            'overall_prediction': self._overall_prediction(matches, memory),
        }

    @staticmethod
    def _overall_prediction(matches: List[Dict], memory: Optional[Dict]) -> Dict:
        weights = [m['match_score'] * m['confidence'] for m in matches]
        total_weight = sum(weights)
        if not matches or total_weight <= 0:
            return {
                'squeeze_probability': 0.1,
                'expected_return': 0.0,
                'risk_assessment': 'No matching patterns found',
                'confidence_level': 0.1,
            }

        pattern_probability = sum(m['probability'] * w for m, w in zip(matches, weights)) / total_weight
        pattern_return = sum(m['expected_return'] * w for m, w in zip(matches, weights)) / total_weight

        has_history = bool(memory and (memory.get('total_recommendations') or 0) > 0)
        stock_success_rate = memory['success_rate'] if has_history else 0.5
        probability = pattern_probability * 0.7 + stock_success_rate * 0.3
        expected_return = pattern_return
        if has_history:
            expected_return = pattern_return * 0.8 + (memory.get('avg_recommendation_return') or 0.0) * 0.2

        return {
            'squeeze_probability': probability,
            'expected_return': expected_return,
            'risk_assessment': assess_risk(matches, probability),
            'confidence_level': min(0.9, total_weight / len(matches)),
        }

    def get_pattern_summary(self) -> Dict:
        patterns = list(self._patterns.values())
        top = 5
        return {
            'total_patterns': len(patterns),
            'best_performing': [p.summary() for p in sorted(patterns, key=lambda p: p.avg_return, reverse=True)[:top]],
            'most_reliable': [p.summary() for p in sorted(patterns, key=lambda p: p.confidence_score, reverse=True)[:top]],
            'most_frequent': [p.summary() for p in sorted(patterns, key=lambda p: p.occurrences, reverse=True)[:top]],
        }

    def get_pattern_insights(self, previous_avg_confidence: Optional[float] = None) -> Dict:
        """Distribution and reliability figures used in optimization reports."""
        patterns = list(self._patterns.values())
        distribution: Dict[str, int] = defaultdict(int)
        for p in patterns:
            distribution[p.pattern_type] += 1
        avg_confidence = _mean([p.confidence_score for p in patterns])
        if previous_avg_confidence is None or abs(avg_confidence - previous_avg_confidence) < 0.01:
            confidence_trend = 'stable'
        elif avg_confidence > previous_avg_confidence:
            confidence_trend = 'improving'
        else:
            confidence_trend = 'declining'
        return {
            'total_patterns': len(patterns),
            'pattern_distribution': dict(distribution),
            'reliable_patterns': sum(1 for p in patterns if p.success_rate >= 0.7),
            'unreliable_patterns': sum(1 for p in patterns if p.success_rate < 0.4),
            'avg_confidence': avg_confidence,
            'confidence_trend': confidence_trend,
            'best_pattern': max(patterns, key=lambda p: p.success_rate).summary() if patterns else None,
            'worst_pattern': min(patterns, key=lambda p: p.success_rate).summary() if patterns else None,
        }

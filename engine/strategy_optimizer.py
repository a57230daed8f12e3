"""
Strategy Optimizer
Decides when the learning loop should re-tune itself and orchestrates one
optimization pass: outcome sweep, parameter search and adoption, pattern
refresh and a report with narrative guidance.
"""
import asyncio
import logging
import time
from collections import deque
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional, Tuple

import numpy as np

from core.config import OPTIMIZER_CONFIG, SCORING_CONFIG
from engine.adaptive_scoring import StrategyParameters

logger = logging.getLogger(__name__)

INSUFFICIENT_DATA_ADVICE = "Continue current strategy - insufficient data for optimization"


def sharpe_ratio(returns: np.ndarray, risk_free_rate: float = OPTIMIZER_CONFIG['risk_free_rate']) -> float:
    """Per-trade Sharpe ratio of closed recommendation returns."""
    if returns.size < 2:
        return 0.0
    volatility = float(np.std(returns, ddof=1))
    if volatility == 0:
        return 0.0
    return (float(np.mean(returns)) - risk_free_rate) / volatility


def max_drawdown(returns: np.ndarray) -> float:
    """Largest peak-to-trough loss of the compounded closed-trade equity curve, as a positive fraction."""
    if returns.size == 0:
        return 0.0
    equity = np.concatenate(([1.0], np.cumprod(1.0 + returns)))
    peaks = np.maximum.accumulate(equity)
    drawdowns = (peaks - equity) / peaks
    return float(drawdowns.max())


class StrategyOptimizer:
    def __init__(self, store, scorer, patterns, tracker, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.scorer = scorer
        self.patterns = patterns
        self.tracker = tracker
        self.clock = clock
        self.history: Deque[Dict] = deque(maxlen=OPTIMIZER_CONFIG['history_size'])
        self._run_lock = asyncio.Lock()

    async def load_history(self) -> int:
        reports = await self.store.get_optimization_reports(limit=OPTIMIZER_CONFIG['history_size'])
        self.history.clear()
        self.history.extend(r for r in reports if r.get('status') == 'completed')
        return len(self.history)

    @property
    def last_optimization(self) -> Optional[datetime]:
        if not self.history:
            return None
        return datetime.fromisoformat(self.history[-1]['timestamp'])

    @property
    def next_optimization(self) -> datetime:
        last = self.last_optimization
        if last is None:
            return self.clock()
        return last + timedelta(days=OPTIMIZER_CONFIG['interval_days'])

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def _historical_win_rate(self) -> Optional[float]:
        recent = list(self.history)[-OPTIMIZER_CONFIG['trend_window']:]
        if not recent:
            return None
        return sum(r['performance_summary'].get('win_rate', 0.0) for r in recent) / len(recent)

    def get_performance_trend(self) -> str:
        recent = list(self.history)[-OPTIMIZER_CONFIG['trend_window']:]
        if len(recent) < 2:
            return 'stable'
        change = recent[-1]['performance_summary'].get('win_rate', 0.0) - recent[0]['performance_summary'].get('win_rate', 0.0)
        if change > 0.02:
            return 'improving'
        if change < -0.02:
            return 'declining'
        return 'stable'

    async def should_run_optimization(self, force: bool = False) -> Tuple[bool, str]:
        tracked = await self.store.count_tracked_recommendations()
        minimum = OPTIMIZER_CONFIG['min_tracked_recommendations']
        if tracked < minimum:
            return False, f"insufficient data: {tracked}/{minimum} tracked recommendations"
        if force:
            return True, 'manual trigger'

        last = self.last_optimization
        if last is None:
            return True, 'first optimization'
        days_since = (self.clock() - last).total_seconds() / 86400
        if days_since >= OPTIMIZER_CONFIG['interval_days']:
            return True, f"scheduled ({days_since:.1f} days since last run)"

        historical = self._historical_win_rate()
        if historical:
            recent = await self.store.get_recommendation_performance(days=OPTIMIZER_CONFIG['performance_window_days'])
            if recent['win_rate'] < historical * OPTIMIZER_CONFIG['degradation_factor']:
                return True, f"performance degradation (win rate {recent['win_rate']:.1%} vs {historical:.1%})"

        return False, f"next optimization due in {OPTIMIZER_CONFIG['interval_days'] - days_since:.1f} days"

    def _skipped_report(self, reason: str) -> Dict:
        advice = INSUFFICIENT_DATA_ADVICE if reason.startswith('insufficient data') else \
            "Continue current strategy - no optimization due"
        return {
            'status': 'skipped',
            'reason': reason,
            'timestamp': self.clock().isoformat(),
            'performance_summary': {},
            'parameter_changes': {},
            'pattern_insights': {},
            'recommendations': {
                'strategy_adjustments': [advice],
                'risk_warnings': [],
                'opportunities': [],
            },
        }

    async def run_optimization(self, force: bool = False) -> Dict:
        """Run one optimization pass if the gate allows it, otherwise return a skipped report."""
        if self._run_lock.locked():
            logger.info("Optimization already in progress, skipping")
            return self._skipped_report('optimization already in progress')

        async with self._run_lock:
            started = time.monotonic()
            should_run, reason = await self.should_run_optimization(force)
            if not should_run:
                logger.info(f"Optimization skipped: {reason}")
                return self._skipped_report(reason)

            logger.info(f"Starting strategy optimization: {reason}")
            await self.tracker.update_tracking()

            before = self.scorer.current_parameters
            result = await self.scorer.optimize_parameters()
            adopted = False
            if result and result.improvement > SCORING_CONFIG['min_improvement_to_adopt']:
                await self.scorer.adopt_parameters(
                    result.candidate,
                    reason=f"optimization: expected improvement {result.improvement:+.2%}",
                )
                adopted = True

            previous_confidence = None
            if self.history:
                previous_confidence = self.history[-1]['pattern_insights'].get('avg_confidence')
            recent = await self.store.get_recent_recommendations(
                days=OPTIMIZER_CONFIG['pattern_refresh_days'], tracked=True
            )
            changes = await self.patterns.update_patterns(recent)
            pattern_insights = self.patterns.get_pattern_insights(previous_confidence)
            pattern_insights['new_patterns_discovered'] = len(changes['created'])
            pattern_insights['updated_patterns'] = len(changes['updated'])

            performance = await self._performance_summary()
            parameter_changes = self._parameter_changes(before, self.scorer.current_parameters, result, adopted)

            report = {
                'status': 'completed',
                'reason': reason,
                'timestamp': self.clock().isoformat(),
                'performance_summary': performance,
                'parameter_changes': parameter_changes,
                'pattern_insights': pattern_insights,
                'recommendations': self._build_recommendations(performance, parameter_changes, pattern_insights),
            }
            report['duration_ms'] = int((time.monotonic() - started) * 1000)

            self.history.append(report)
            await self.store.save_optimization_report(report, keep=OPTIMIZER_CONFIG['history_size'])
            logger.info(
                f"Optimization complete in {report['duration_ms']}ms: win rate {performance['win_rate']:.1%}, "
                f"parameters {'adopted v' + str(self.scorer.current_parameters.version) if adopted else 'unchanged'}"
            )
            return report

    async def _performance_summary(self) -> Dict:
        window = OPTIMIZER_CONFIG['performance_window_days']
        performance = await self.store.get_recommendation_performance(days=window)
        tracked = await self.store.get_recent_recommendations(days=window, tracked=True)
        tracked.sort(key=lambda r: r.get('outcome_date') or r['created_at'])
        returns = np.array([r.get('outcome_return') or 0.0 for r in tracked], dtype=float)
        return {
            'total_recommendations': performance['total_recommendations'],
            'tracked_outcomes': performance['tracked_outcomes'],
            'successful_recommendations': performance['profitable_count'],
            'win_rate': performance['win_rate'],
            'avg_return': performance['avg_return'],
            'avg_days_to_outcome': performance['avg_days_to_outcome'],
            'tracking_rate': performance['tracking_rate'],
            'sharpe_ratio': sharpe_ratio(returns),
            'max_drawdown': max_drawdown(returns),
        }

    @staticmethod
    def _parameter_changes(before: StrategyParameters, after: StrategyParameters, result, adopted: bool) -> Dict:
        old_weights, new_weights = asdict(before.weights), asdict(after.weights)
        old_thresholds, new_thresholds = asdict(before.thresholds), asdict(after.thresholds)
        return {
            'adopted': adopted,
            'previous_version': before.version,
            'current_version': after.version,
            'weight_adjustments': {k: new_weights[k] - old_weights[k] for k in old_weights},
            'threshold_adjustments': {k: new_thresholds[k] - old_thresholds[k] for k in old_thresholds},
            'improvement_expected': result.improvement if result else 0.0,
            'confidence': result.confidence if result else 0.0,
            'sample_size': result.sample_size if result else 0,
        }

    @staticmethod
    def _build_recommendations(performance: Dict, parameter_changes: Dict, pattern_insights: Dict) -> Dict:
        adjustments: List[str] = []
        warnings: List[str] = []
        opportunities: List[str] = []

        if performance['win_rate'] < 0.5:
            adjustments.append("Consider tightening screening criteria to improve win rate")
            warnings.append("Current win rate below 50% - review risk management")
        if performance['avg_return'] < 0.05:
            adjustments.append("Focus on higher-conviction trades with better risk/reward ratios")

        improvement = parameter_changes['improvement_expected']
        if improvement > 0.1:
            adjustments.append("New scoring parameters show significant improvement potential")
            opportunities.append(f"Expected performance improvement: {improvement * 100:.1f}%")

        if pattern_insights.get('new_patterns_discovered'):
            opportunities.append(f"{pattern_insights['new_patterns_discovered']} new trading patterns discovered")
        if pattern_insights.get('unreliable_patterns', 0) > pattern_insights.get('reliable_patterns', 0):
            warnings.append("High number of unreliable patterns - consider more conservative approach")

        if performance['tracking_rate'] < 0.8:
            adjustments.append("Improve trade outcome tracking for better learning")
        if performance['avg_days_to_outcome'] > 14:
            adjustments.append("Consider shorter holding periods or tighter stop losses")

        return {
            'strategy_adjustments': adjustments,
            'risk_warnings': warnings,
            'opportunities': opportunities,
        }

    def get_optimization_history(self) -> List[Dict]:
        return list(self.history)

    def get_strategy_state(self) -> Dict:
        last = self.last_optimization
        return {
            'current_parameters': self.scorer.current_parameters.to_dict(),
            'last_optimization': last.isoformat() if last else None,
            'next_optimization': self.next_optimization.isoformat(),
            'optimization_count': len(self.history),
            'performance_trend': self.get_performance_trend(),
            'is_running': self.is_running,
        }

    def get_learning_insights(self) -> Dict:
        latest = self.history[-1] if self.history else None
        key_learnings: List[str] = []
        if latest:
            recs = latest['recommendations']
            key_learnings = recs['opportunities'] + recs['risk_warnings'] + recs['strategy_adjustments']
        return {
            'strategy_state': self.get_strategy_state(),
            'latest_report': latest,
            'key_learnings': key_learnings[:10],
        }

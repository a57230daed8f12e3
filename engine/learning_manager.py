"""
Learning Manager
Facade over the learning components. Everything is wired through an explicit
LearningContext, so several independent instances (tests, tools, the web app)
can coexist in one process.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from core.config import DB_PATH, SCORING_CONFIG, TRACKING_CONFIG
from core.database import MemoryStore
from engine.adaptive_scoring import AdaptiveScorer, clamp, normalize_metrics, round_half_up
from engine.pattern_engine import PatternEngine
from engine.recommendation_parser import RecommendationParser
from engine.recommendation_tracker import RecommendationTracker
from engine.strategy_optimizer import StrategyOptimizer

logger = logging.getLogger(__name__)


@dataclass
class LearningContext:
    store: MemoryStore
    parser: RecommendationParser
    scorer: AdaptiveScorer
    patterns: PatternEngine
    tracker: RecommendationTracker
    optimizer: StrategyOptimizer


def build_learning_context(db_path: Path = DB_PATH, quote_client=None,
                           clock: Callable[[], datetime] = datetime.now) -> LearningContext:
    """Construct an isolated set of learning components sharing one store."""
    if quote_client is None:
        from clients.quote_client import QuoteClient
        quote_client = QuoteClient()

    store = MemoryStore(db_path, clock=clock)
    scorer = AdaptiveScorer(store)
    patterns = PatternEngine(store)
    tracker = RecommendationTracker(store, quote_client, clock=clock)
    optimizer = StrategyOptimizer(store, scorer, patterns, tracker, clock=clock)
    return LearningContext(
        store=store,
        parser=RecommendationParser(),
        scorer=scorer,
        patterns=patterns,
        tracker=tracker,
        optimizer=optimizer,
    )


class LearningManager:
    def __init__(self, context: LearningContext):
        self.context = context
        self.is_initialized = False

    @property
    def current_session_id(self) -> str:
        return self.context.store.current_session_id

    def start_new_session(self) -> str:
        return self.context.store.start_new_session()

    async def initialize(self):
        """Load persisted state and run a first tracking sweep."""
        if self.is_initialized:
            return
        ctx = self.context
        await ctx.scorer.load_active_parameters()
        if await ctx.patterns.load_patterns() == 0:
            await ctx.patterns.discover_patterns()
        await ctx.optimizer.load_history()
        await ctx.tracker.restore_open_tracking()
        await ctx.tracker.update_tracking()
        self.is_initialized = True
        logger.info("Learning system initialized")

    async def save_conversation_with_insights(self, message: str, message_type: str = 'assistant',
                                              session_id: Optional[str] = None,
                                              metadata: Optional[Dict] = None) -> List[Dict]:
        """Store a chat message; for assistant replies also store and track the recommendations in it."""
        ctx = self.context
        metadata = metadata or {}
        await ctx.store.save_conversation(message_type, message, session_id, metadata)
        if message_type != 'assistant':
            return []

        market_conditions = normalize_metrics(metadata.get('market_conditions'))
        saved = []
        for parsed in ctx.parser.parse_message(message):
            recommendation_id = await ctx.store.save_recommendation(
                parsed.symbol,
                parsed.type,
                parsed.context,
                confidence=parsed.confidence,
                reasoning=parsed.reasoning,
                market_conditions=market_conditions,
                price_targets=parsed.price_targets,
                timeframe=parsed.timeframe,
                session_id=session_id,
                source=parsed.source,
            )
            await ctx.store.record_stock_mention(parsed.symbol, parsed.type)

            tracked = False
            if parsed.type in TRACKING_CONFIG['tracked_types']:
                # No price in the metadata means the tracker quotes the symbol itself
                entry = await ctx.tracker.start_tracking(
                    parsed.symbol, recommendation_id,
                    entry_price=market_conditions.get('current_price'),
                    entry_conditions=market_conditions,
                )
                tracked = entry is not None

            record = parsed.to_dict()
            record.update({'id': recommendation_id, 'tracked': tracked})
            saved.append(record)

        if saved:
            logger.info(f"Saved {len(saved)} recommendation(s) from assistant message: "
                        f"{', '.join(r['symbol'] + ':' + r['type'] for r in saved)}")
        return saved

    async def calculate_enhanced_score(self, metrics: Dict, symbol: str) -> Dict:
        """Adaptive score adjusted by pattern matches and the symbol's track record."""
        ctx = self.context
        adaptive_score = ctx.scorer.calculate_score(metrics)
        pattern_analysis = await ctx.patterns.analyze_stock(symbol, metrics)
        memory = await ctx.store.get_stock_memory(symbol)

        adjustment = self._confidence_adjustment(pattern_analysis, memory, normalize_metrics(metrics))
        final_score = round_half_up(clamp(adaptive_score + adjustment * 20, 0.0, 100.0))
        return {
            'symbol': symbol.upper(),
            'adaptive_score': adaptive_score,
            'pattern_analysis': pattern_analysis,
            'confidence_adjustment': adjustment,
            'final_score': final_score,
            'reasoning': self._scoring_reasoning(adaptive_score, pattern_analysis, adjustment, memory),
        }

    @staticmethod
    def _confidence_adjustment(pattern_analysis: Dict, memory: Optional[Dict], metrics: Dict) -> float:
        adjustment = 0.0
        probability = pattern_analysis['overall_prediction']['squeeze_probability']
        if probability > 0.7:
            adjustment += 0.2
        elif probability < 0.3:
            adjustment -= 0.2

        if memory and memory.get('success_rate') is not None:
            if memory['success_rate'] > 0.7:
                adjustment += 0.15
            elif memory['success_rate'] < 0.3:
                adjustment -= 0.15

        if metrics.get('volume_ratio', 0.0) > 5:
            adjustment += 0.1
        if metrics.get('short_interest', 0.0) > 50:
            adjustment += 0.1
        return max(-0.5, min(0.5, adjustment))

    @staticmethod
    def _scoring_reasoning(adaptive_score: int, pattern_analysis: Dict, adjustment: float,
                           memory: Optional[Dict]) -> str:
        reasons = [f"Base adaptive score: {adaptive_score}/100"]
        matches = pattern_analysis['pattern_matches']
        if matches:
            top = matches[0]
            reasons.append(f'Matches pattern "{top["pattern_name"]}" with {top["match_score"] * 100:.0f}% confidence')
        if adjustment > 0.1:
            reasons.append(f"Confidence boosted by {adjustment * 100:.0f}% due to positive indicators")
        elif adjustment < -0.1:
            reasons.append(f"Confidence reduced by {abs(adjustment) * 100:.0f}% due to risk factors")
        if memory and memory.get('success_rate') is not None:
            reasons.append(f"Historical success rate: {memory['success_rate'] * 100:.0f}%")
        return ". ".join(reasons)

    async def update_tracking(self) -> Dict:
        return await self.context.tracker.update_tracking()

    async def force_close_tracking(self, recommendation_id: int) -> Optional[Dict]:
        return await self.context.tracker.force_close_tracking(recommendation_id)

    async def run_periodic_optimization(self) -> Dict:
        return await self.context.optimizer.run_optimization()

    async def force_optimization(self) -> Dict:
        return await self.context.optimizer.run_optimization(force=True)

    async def get_learning_status(self) -> Dict:
        ctx = self.context
        try:
            overall = await ctx.store.get_recommendation_performance(days=None)
            recent_count = await ctx.store.count_recommendations(days=7)
            tracked_90d = await ctx.store.count_tracked_recommendations(
                days=SCORING_CONFIG['optimization_lookback_days'])
            tracking = await ctx.tracker.get_performance_summary()
            strategy = ctx.optimizer.get_strategy_state()
            pattern_summary = ctx.patterns.get_pattern_summary()
            return {
                'system_initialized': self.is_initialized,
                'memory_system': {
                    'total': overall['total_recommendations'],
                    'recent': recent_count,
                    'win_rate': overall['win_rate'],
                },
                'adaptive_scoring': {
                    'current_parameters': ctx.scorer.current_parameters.to_dict(),
                    'optimization_ready': tracked_90d >= SCORING_CONFIG['min_samples_for_optimization'],
                },
                'pattern_recognition': {
                    'total_patterns': pattern_summary['total_patterns'],
                    'best_patterns': pattern_summary['best_performing'][:3],
                },
                'recommendation_tracking': {
                    'active_tracking_count': tracking['active_tracking_count'],
                    'performance_summary': tracking['overall_performance'],
                },
                'strategy_optimization': {
                    'last_optimization': strategy['last_optimization'],
                    'next_optimization': strategy['next_optimization'],
                    'trend': strategy['performance_trend'],
                },
            }
        except Exception as e:
            logger.error(f"Failed to build learning status: {e}", exc_info=True)
            return {
                'system_initialized': self.is_initialized,
                'error': str(e),
                'recommendation_tracking': {'active_tracking_count': ctx.tracker.active_count},
            }

    async def get_conversation_context(self, session_id: Optional[str] = None) -> Dict:
        """Everything a chat prompt needs to reflect what the system has learned."""
        ctx = self.context
        context = await ctx.store.build_conversation_context(session_id)
        context['learning_insights'] = await ctx.store.generate_learning_insights()
        context['current_parameters'] = ctx.scorer.current_parameters.to_dict()
        context['active_tracking'] = ctx.tracker.get_active_tracking()
        context['pattern_summary'] = ctx.patterns.get_pattern_summary()
        context['strategy_state'] = ctx.optimizer.get_strategy_state()
        return context

    def close(self):
        self.context.store.close()
        self.is_initialized = False
        logger.info("Learning system closed")

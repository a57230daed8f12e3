"""
Tests for the LearningManager facade
"""
import unittest
from unittest.mock import AsyncMock, patch

from engine.learning_manager import LearningManager, build_learning_context
from learning_fixtures import (
    PROFITABLE_SETUP,
    FakeQuoteClient,
    FrozenClock,
    make_temp_db,
    remove_temp_db,
    seed_learning_history,
)

STATUS_KEYS = {
    'system_initialized', 'memory_system', 'adaptive_scoring', 'pattern_recognition',
    'recommendation_tracking', 'strategy_optimization',
}


class TestLearningManager(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.db_path = make_temp_db()
        self.clock = FrozenClock()
        self.quotes = FakeQuoteClient()
        self.manager = LearningManager(build_learning_context(self.db_path, self.quotes, clock=self.clock))
        await self.manager.initialize()

    async def asyncTearDown(self):
        self.manager.close()
        remove_temp_db(self.db_path)

    async def test_initialize_seeds_parameters(self):
        self.assertTrue(self.manager.is_initialized)
        self.assertEqual(self.manager.context.scorer.current_parameters.version, 1)

        # Second call is a no-op
        await self.manager.initialize()
        history = await self.manager.context.scorer.get_parameter_history()
        self.assertEqual(len(history), 1)

    async def test_assistant_message_creates_tracked_recommendation(self):
        saved = await self.manager.save_conversation_with_insights(
            "I strongly recommend buying ABCD, target $25, short-term",
            metadata={'market_conditions': {'currentPrice': 12.0, 'shortInt': 40}},
        )
        self.assertEqual(len(saved), 1)
        rec = saved[0]
        self.assertEqual(rec['symbol'], 'ABCD')
        self.assertEqual(rec['type'], 'buy')
        self.assertTrue(rec['tracked'])
        self.assertEqual(rec['price_targets'], ['$25'])

        stored = await self.manager.context.store.get_recommendation(rec['id'])
        self.assertEqual(stored['market_conditions'], {'current_price': 12.0, 'short_interest': 40.0})
        self.assertEqual(stored['timeframe'], 'short-term')

        active = self.manager.context.tracker.get_active_tracking()
        self.assertEqual([(a['symbol'], a['entry_price']) for a in active], [('ABCD', 12.0)])

        memory = await self.manager.context.store.get_stock_memory('ABCD')
        self.assertEqual(memory['times_recommended'], 1)

    async def test_sell_recommendation_is_not_tracked(self):
        saved = await self.manager.save_conversation_with_insights(
            "Time to sell AMC before the lockup ends.",
            metadata={'market_conditions': {'current_price': 5.0}},
        )
        self.assertFalse(saved[0]['tracked'])
        self.assertEqual(self.manager.context.tracker.active_count, 0)

    async def test_unpriced_recommendation_is_tracked_from_live_quote(self):
        self.quotes.prices['AAPL'] = 150.0
        saved = await self.manager.save_conversation_with_insights("I like AAPL into earnings.")
        self.assertEqual(saved[0]['type'], 'buy')
        self.assertTrue(saved[0]['tracked'])
        self.assertEqual(self.quotes.calls, ['AAPL'])

        active = self.manager.context.tracker.get_active_tracking()
        self.assertEqual([(a['symbol'], a['entry_price']) for a in active], [('AAPL', 150.0)])

    async def test_unpriced_recommendation_without_quote_is_not_tracked(self):
        saved = await self.manager.save_conversation_with_insights("I like AAPL into earnings.")
        self.assertFalse(saved[0]['tracked'])
        self.assertEqual(self.quotes.calls, ['AAPL'])
        self.assertEqual(self.manager.context.tracker.active_count, 0)

    async def test_user_message_is_only_stored(self):
        saved = await self.manager.save_conversation_with_insights("Should I buy GME?", message_type='user')
        self.assertEqual(saved, [])
        self.assertEqual(await self.manager.context.store.count_recommendations(), 0)

        history = await self.manager.context.store.get_conversation_history()
        self.assertEqual(history[0]['message_content'], "Should I buy GME?")

    async def test_enhanced_score_without_history(self):
        result = await self.manager.calculate_enhanced_score(PROFITABLE_SETUP, 'gme')
        self.assertEqual(result['symbol'], 'GME')
        self.assertEqual(result['adaptive_score'], 47)
        self.assertAlmostEqual(result['confidence_adjustment'], -0.2)
        self.assertEqual(result['final_score'], 43)
        self.assertIn("Base adaptive score: 47/100", result['reasoning'])
        self.assertIn("Confidence reduced by 20%", result['reasoning'])

    async def test_enhanced_score_with_learned_pattern(self):
        await seed_learning_history(self.manager.context.store)
        await self.manager.context.patterns.discover_patterns()
        await self.manager.context.store.record_stock_outcome('GME', 0.12, 5, 'profitable')

        result = await self.manager.calculate_enhanced_score(PROFITABLE_SETUP, 'GME')
        self.assertTrue(result['pattern_analysis']['pattern_matches'])
        self.assertGreater(result['confidence_adjustment'], 0)
        self.assertGreater(result['final_score'], result['adaptive_score'])
        self.assertIn("Historical success rate: 100%", result['reasoning'])

    async def test_status_structure(self):
        status = await self.manager.get_learning_status()
        self.assertEqual(set(status), STATUS_KEYS)
        self.assertEqual(set(status['memory_system']), {'total', 'recent', 'win_rate'})
        self.assertFalse(status['adaptive_scoring']['optimization_ready'])
        self.assertEqual(status['recommendation_tracking']['active_tracking_count'], 0)
        self.assertEqual(status['strategy_optimization']['trend'], 'stable')

        await seed_learning_history(self.manager.context.store)
        status = await self.manager.get_learning_status()
        self.assertEqual(status['memory_system']['total'], 24)
        self.assertTrue(status['adaptive_scoring']['optimization_ready'])

    async def test_status_survives_store_errors(self):
        store = self.manager.context.store
        with patch.object(store, 'get_recommendation_performance', AsyncMock(side_effect=RuntimeError("boom"))):
            status = await self.manager.get_learning_status()
        self.assertEqual(status['error'], 'boom')
        self.assertEqual(status['recommendation_tracking']['active_tracking_count'], 0)

    async def test_contexts_are_isolated(self):
        other_path = make_temp_db()
        other = LearningManager(build_learning_context(other_path, FakeQuoteClient(), clock=self.clock))
        try:
            await other.initialize()
            await self.manager.save_conversation_with_insights("MSFT is a top pick for me.")
            mine = await self.manager.get_learning_status()
            theirs = await other.get_learning_status()
            self.assertEqual(mine['memory_system']['total'], 1)
            self.assertEqual(theirs['memory_system']['total'], 0)
            self.assertNotEqual(self.manager.current_session_id, other.current_session_id)
        finally:
            other.close()
            remove_temp_db(other_path)

    async def test_initialize_restores_open_recommendations(self):
        store = self.manager.context.store
        await store.save_recommendation('GME', 'buy', 'GME', market_conditions={'current_price': 20.0})

        restarted = LearningManager(build_learning_context(self.db_path, FakeQuoteClient(), clock=self.clock))
        try:
            await restarted.initialize()
            self.assertEqual(restarted.context.tracker.active_count, 1)
        finally:
            restarted.close()

    async def test_optimization_entry_points(self):
        report = await self.manager.run_periodic_optimization()
        self.assertEqual(report['status'], 'skipped')

        await seed_learning_history(self.manager.context.store)
        report = await self.manager.force_optimization()
        self.assertEqual(report['status'], 'completed')
        self.assertEqual(self.manager.context.scorer.current_parameters.version, 2)

    async def test_conversation_context(self):
        await self.manager.save_conversation_with_insights("hello", message_type='user')
        context = await self.manager.get_conversation_context()
        for key in ('recent_conversations', 'learning_insights', 'current_parameters',
                    'active_tracking', 'pattern_summary', 'strategy_state'):
            self.assertIn(key, context)
        self.assertEqual(len(context['recent_conversations']), 1)

    async def test_new_session(self):
        before = self.manager.current_session_id
        self.assertNotEqual(self.manager.start_new_session(), before)


if __name__ == '__main__':
    unittest.main()

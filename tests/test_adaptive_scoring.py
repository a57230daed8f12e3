"""
Tests for the adaptive squeeze scorer
"""
import sqlite3
import unittest
from dataclasses import asdict
from unittest.mock import patch

from core.database import MemoryStore
from engine.adaptive_scoring import (
    AdaptiveScorer,
    ScoringWeights,
    StrategyParameters,
    float_score,
    normalize_metrics,
    price_action_score,
    round_half_up,
)
from learning_fixtures import (
    PROFITABLE_SETUP,
    UNPROFITABLE_SETUP,
    FrozenClock,
    make_temp_db,
    remove_temp_db,
    seed_learning_history,
)

MAXED_SETUP = {
    'short_interest': 100, 'days_to_cover': 10, 'borrow_rate': 200, 'volume_ratio': 10,
    'float': 1_000_000, 'price_change': 0.1, 'sentiment': 1.0,
}


class TestScoringFunctions(unittest.TestCase):

    def setUp(self):
        self.scorer = AdaptiveScorer(store=None)

    def test_score_is_bounded_integer(self):
        for metrics in ({}, PROFITABLE_SETUP, UNPROFITABLE_SETUP, MAXED_SETUP, {'short_interest': 500}):
            score = self.scorer.calculate_score(metrics)
            self.assertIsInstance(score, int)
            self.assertGreaterEqual(score, 0)
            self.assertLessEqual(score, 100)

    def test_all_zero_metrics_score_zero(self):
        zeros = {key: 0 for key in MAXED_SETUP}
        self.assertEqual(self.scorer.calculate_score(zeros), 0)
        self.assertEqual(self.scorer.calculate_score({}), 0)

    def test_maxed_metrics_score_hundred(self):
        self.assertEqual(self.scorer.calculate_score(MAXED_SETUP), 100)

    def test_known_setups(self):
        self.assertEqual(self.scorer.calculate_score(PROFITABLE_SETUP), 47)
        self.assertEqual(self.scorer.calculate_score(UNPROFITABLE_SETUP), 42)

    def test_value_below_threshold_contributes_nothing(self):
        self.assertEqual(self.scorer.calculate_score({'short_interest': 5}), 0)
        self.assertEqual(self.scorer.calculate_score({'short_interest': 8}), 2)

    def test_camel_case_metrics(self):
        camel = {
            'shortInt': 45, 'daysToCover': 4, 'volumeRatio': 3, 'borrowRate': 100,
            'priceChange': 0.03, 'floatShares': 30_000_000,
        }
        self.assertEqual(normalize_metrics(camel)['short_interest'], 45.0)
        self.assertEqual(self.scorer.calculate_score(camel), self.scorer.calculate_score(PROFITABLE_SETUP))

    def test_non_numeric_metrics_are_ignored(self):
        self.assertEqual(normalize_metrics({'short_interest': 'n/a', 'days_to_cover': '4'}), {'days_to_cover': 4.0})

    def test_float_tiers(self):
        self.assertEqual(float_score(0), 0.0)
        self.assertEqual(float_score(30_000_000), 1.0)
        self.assertEqual(float_score(60_000_000), 0.8)
        self.assertEqual(float_score(200_000_000), 0.6)
        self.assertEqual(float_score(1_000_000_000), 0.2)

    def test_price_action(self):
        self.assertEqual(price_action_score(0, 1), 0.0)
        self.assertAlmostEqual(price_action_score(0.03, 3), 0.6)
        self.assertAlmostEqual(price_action_score(0.1, 6), 1.0)

    def test_round_half_up(self):
        self.assertEqual(round_half_up(41.5), 42)
        self.assertEqual(round_half_up(42.5), 43)
        self.assertEqual(round_half_up(41.49), 41)

    def test_weights_normalize(self):
        weights = ScoringWeights(short_interest=0.5, days_to_cover=0.5, borrow_rate=0, volume=0,
                                 float=0, price_action=0, sentiment=0)
        self.assertAlmostEqual(weights.normalized().total(), 1.0)
        self.assertEqual(ScoringWeights(0, 0, 0, 0, 0, 0, 0).normalized(), ScoringWeights())

    def test_breakdown(self):
        breakdown = self.scorer.score_breakdown(PROFITABLE_SETUP)
        self.assertEqual(breakdown['score'], 47)
        self.assertAlmostEqual(breakdown['components']['short_interest'], 0.45)
        self.assertAlmostEqual(sum(breakdown['weighted'].values()), 47.25)


class TestAdaptiveOptimization(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.db_path = make_temp_db()
        self.store = MemoryStore(self.db_path, clock=FrozenClock())
        self.scorer = AdaptiveScorer(self.store)

    async def asyncTearDown(self):
        self.store.close()
        remove_temp_db(self.db_path)

    async def test_load_seeds_version_one(self):
        params = await self.scorer.load_active_parameters()
        self.assertEqual(params.version, 1)
        self.assertEqual(params.weights, StrategyParameters.defaults().weights)

        again = await self.scorer.load_active_parameters()
        self.assertEqual(again.version, 1)
        self.assertEqual(len(await self.scorer.get_parameter_history()), 1)

    async def test_too_few_samples(self):
        await self.scorer.load_active_parameters()
        await seed_learning_history(self.store, profitable=10, unprofitable=9)
        self.assertIsNone(await self.scorer.optimize_parameters())

    async def test_optimization_learns_from_outcomes(self):
        await self.scorer.load_active_parameters()
        await seed_learning_history(self.store, profitable=12, unprofitable=12)

        result = await self.scorer.optimize_parameters()
        self.assertIsNotNone(result)
        candidate = result.candidate

        self.assertAlmostEqual(candidate.weights.total(), 1.0, delta=1e-9)
        self.assertGreater(candidate.weights.short_interest, 0.25)
        self.assertAlmostEqual(candidate.thresholds.min_short_interest, 36.0)
        self.assertAlmostEqual(candidate.thresholds.min_days_to_cover, 3.2)
        self.assertAlmostEqual(candidate.thresholds.min_volume_ratio, 2.4)

        self.assertAlmostEqual(result.current_avg_return, 0.02)
        self.assertAlmostEqual(result.candidate_avg_return, 0.12)
        self.assertGreater(result.improvement, 0.05)
        self.assertAlmostEqual(result.confidence, 0.64)
        self.assertEqual(result.sample_size, 24)

        # Proposing never changes the active set
        self.assertEqual(self.scorer.current_parameters.version, 1)

    async def test_adopt_and_rollback(self):
        original = await self.scorer.load_active_parameters()
        await seed_learning_history(self.store)
        result = await self.scorer.optimize_parameters()

        adopted = await self.scorer.adopt_parameters(result.candidate, 'test adoption')
        self.assertEqual(adopted.version, 2)
        self.assertEqual(self.scorer.current_parameters.version, 2)
        stored = await self.store.get_active_strategy_parameters(self.scorer.parameter_set_name)
        self.assertEqual(stored['version'], 2)
        self.assertEqual(stored['creation_reason'], 'test adoption')
        self.assertEqual(self.scorer.calculate_score(UNPROFITABLE_SETUP), 27)

        rolled_back = await self.scorer.rollback_parameters(1)
        self.assertEqual(rolled_back.version, 3)
        self.assertEqual(asdict(rolled_back.weights), asdict(original.weights))
        self.assertEqual(rolled_back.thresholds, original.thresholds)

        self.assertIsNone(await self.scorer.rollback_parameters(99))
        self.assertEqual(self.scorer.current_parameters.version, 3)

    async def test_read_error_keeps_learned_parameters(self):
        await self.scorer.load_active_parameters()
        await seed_learning_history(self.store)
        result = await self.scorer.optimize_parameters()
        adopted = await self.scorer.adopt_parameters(result.candidate, 'learned')

        real_get_conn = self.store._get_conn
        calls = []

        def flaky_get_conn(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise sqlite3.OperationalError("disk I/O error")
            return real_get_conn(*args, **kwargs)

        restarted = AdaptiveScorer(self.store)
        with patch.object(self.store, '_get_conn', side_effect=flaky_get_conn):
            with self.assertRaises(sqlite3.OperationalError):
                await restarted.load_active_parameters()

        history = await self.scorer.get_parameter_history()
        self.assertEqual([(p['version'], p['creation_reason']) for p in history],
                         [(2, 'learned'), (1, 'initial defaults')])

        reloaded = await restarted.load_active_parameters()
        self.assertEqual(reloaded.version, 2)
        self.assertEqual(reloaded.weights, adopted.weights)


if __name__ == '__main__':
    unittest.main()

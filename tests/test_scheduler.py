"""
Tests for the learning scheduler
"""
import unittest
from unittest.mock import AsyncMock, MagicMock

from scheduler import LearningScheduler


def make_manager(settings=None):
    settings = settings or {
        'outcome_check_interval_minutes': 60,
        'optimization_check_interval_hours': 24,
        'timezone': 'US/Eastern',
    }
    manager = MagicMock()
    manager.context.store.get_settings = AsyncMock(side_effect=lambda *keys: {key: settings.get(key) for key in keys})
    manager.update_tracking = AsyncMock(return_value={'skipped': False, 'closed': 1})
    manager.run_periodic_optimization = AsyncMock(
        return_value={'status': 'skipped', 'reason': 'insufficient data', 'timestamp': '2024-03-01T12:00:00'})
    manager.force_optimization = AsyncMock(
        return_value={'status': 'completed', 'reason': 'manual trigger', 'timestamp': '2024-03-01T12:00:00'})
    return manager


class TestLearningScheduler(unittest.IsolatedAsyncioTestCase):

    async def test_settings_come_from_store(self):
        manager = make_manager({
            'outcome_check_interval_minutes': 15,
            'optimization_check_interval_hours': 12,
            'timezone': 'US/Eastern',
        })
        scheduler = await LearningScheduler.from_store(manager)
        manager.context.store.get_settings.assert_awaited_once()
        self.assertEqual(scheduler.outcome_interval_minutes, 15)
        self.assertEqual(scheduler.optimization_interval_hours, 12)

        explicit = await LearningScheduler.from_store(make_manager(), outcome_interval_minutes=5, timezone='UTC')
        self.assertEqual(explicit.outcome_interval_minutes, 5)
        self.assertEqual(explicit.timezone, 'UTC')

    def test_constructor_does_not_touch_the_store(self):
        manager = make_manager()
        scheduler = LearningScheduler(manager)
        self.assertEqual(scheduler.outcome_interval_minutes, 60)
        self.assertEqual(scheduler.timezone, 'US/Eastern')
        manager.context.store.get_settings.assert_not_called()
        manager.context.store.get_setting.assert_not_called()

    async def test_start_and_stop(self):
        scheduler = LearningScheduler(make_manager())
        scheduler.start()
        try:
            status = scheduler.get_status()
            self.assertTrue(status['is_running'])
            self.assertEqual({job['id'] for job in status['jobs']}, {'outcome_sweep', 'strategy_optimization'})
            self.assertTrue(scheduler.trigger_manual_optimization())
        finally:
            scheduler.stop()
        self.assertFalse(scheduler.get_status()['is_running'])
        self.assertFalse(scheduler.trigger_manual_optimization())

    async def test_sweep_delegates_to_manager(self):
        manager = make_manager()
        scheduler = LearningScheduler(manager)
        result = await scheduler.run_outcome_sweep()
        self.assertEqual(result['closed'], 1)
        manager.update_tracking.assert_awaited_once()
        self.assertFalse(scheduler.is_sweeping)

    async def test_optimization_check(self):
        manager = make_manager()
        scheduler = LearningScheduler(manager)

        await scheduler.run_optimization_check()
        manager.run_periodic_optimization.assert_awaited_once()
        self.assertEqual(scheduler.last_optimization_result['status'], 'skipped')

        await scheduler.run_optimization_check(force=True)
        manager.force_optimization.assert_awaited_once()
        self.assertEqual(scheduler.last_optimization_result['reason'], 'manual trigger')

    async def test_job_errors_are_logged_not_raised(self):
        manager = make_manager()
        manager.update_tracking.side_effect = RuntimeError("feed down")
        manager.run_periodic_optimization.side_effect = RuntimeError("db locked")
        scheduler = LearningScheduler(manager)

        with self.assertLogs('scheduler', level='ERROR'):
            self.assertIsNone(await scheduler.run_outcome_sweep())
        with self.assertLogs('scheduler', level='ERROR'):
            self.assertIsNone(await scheduler.run_optimization_check())
        self.assertFalse(scheduler.is_sweeping)
        self.assertFalse(scheduler.is_optimizing)


if __name__ == '__main__':
    unittest.main()

import threading
from datetime import timedelta
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.test import SimpleTestCase, TestCase

from apps.jobs.scheduler import PeriodicTask, settlement_tasks


@patch('apps.jobs.scheduler.close_old_connections')
class PeriodicTaskTest(SimpleTestCase):
    def test_run_once_returns_result(self, _close):
        task = PeriodicTask('answer', lambda: 42, interval=1)
        self.assertEqual(task.run_once(), 42)
        self.assertEqual(task.runs, 1)
        self.assertEqual(task.failures, 0)

    def test_failure_is_counted_not_raised(self, _close):
        def boom():
            raise RuntimeError('db went away')

        task = PeriodicTask('boom', boom, interval=1)
        with self.assertLogs('apps.jobs.scheduler', level='ERROR'):
            self.assertIsNone(task.run_once())
        self.assertEqual(task.failures, 1)
        self.assertEqual(task.runs, 1)

    def test_timedelta_interval(self, _close):
        task = PeriodicTask('slow', lambda: None, interval=timedelta(minutes=5))
        self.assertEqual(task.interval, 300)

    def test_interval_must_be_positive(self, _close):
        with self.assertRaises(ValueError):
            PeriodicTask('bad', lambda: None, interval=0)

    def test_thread_runs_until_stopped(self, _close):
        ticked = threading.Event()
        task = PeriodicTask('tick', ticked.set, interval=0.01)
        task.start()
        try:
            self.assertTrue(ticked.wait(5))
            self.assertTrue(task.is_running)
        finally:
            task.stop(timeout=5)
        self.assertFalse(task.is_running)
        self.assertTrue(task.stop_event.is_set())

    def test_stop_during_initial_delay(self, _close):
        calls = []
        task = PeriodicTask('late', lambda: calls.append(1), interval=1, initial_delay=60)
        task.start()
        task.stop(timeout=5)
        self.assertEqual(calls, [])

    def test_tasks_stop_independently(self, _close):
        first = PeriodicTask('first', lambda: None, interval=0.01)
        second = PeriodicTask('second', lambda: None, interval=0.01)
        first.start()
        second.start()
        try:
            first.stop(timeout=5)
            self.assertFalse(first.is_running)
            self.assertTrue(second.is_running)
        finally:
            second.stop(timeout=5)


class SettlementTasksTest(SimpleTestCase):
    def test_configured_jobs(self):
        tasks = {task.name: task for task in settlement_tasks()}
        self.assertEqual(set(tasks), {'disconnect-monitor', 'timeout-sweeper', 'claim-expiry'})
        self.assertEqual(tasks['disconnect-monitor'].interval, 10)
        self.assertEqual(tasks['timeout-sweeper'].interval, 60)
        self.assertEqual(tasks['claim-expiry'].interval, 300)


@patch('apps.jobs.scheduler.close_old_connections')
class RunSettlementJobsCommandTest(TestCase):
    def test_once(self, _close):
        out = StringIO()
        call_command('run_settlement_jobs', '--once', stdout=out)
        output = out.getvalue()
        self.assertIn('disconnect-monitor', output)
        self.assertIn('claim-expiry: 0', output)
        self.assertIn('All jobs ran.', output)

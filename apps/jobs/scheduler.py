"""Periodic settlement jobs.

Each job runs in its own thread with its own stop event, so a slow tick of
one job never delays another and each can be stopped independently. Job
bodies are re-entrant (guarded conditional updates), which makes an
overlapping or repeated tick harmless.
"""
from __future__ import annotations

import logging
import threading
from datetime import timedelta

from django.conf import settings
from django.db import close_old_connections

logger = logging.getLogger(__name__)


class PeriodicTask:
    def __init__(self, name, func, interval, initial_delay=0):
        if isinstance(interval, timedelta):
            interval = interval.total_seconds()
        if interval <= 0:
            raise ValueError(f'{name}: interval must be positive')
        self.name = name
        self.func = func
        self.interval = interval
        self.initial_delay = initial_delay
        self.stop_event = threading.Event()
        self.runs = 0
        self.failures = 0
        self._thread = None

    def __repr__(self):
        return f'<PeriodicTask {self.name} every {self.interval}s>'

    @property
    def is_running(self):
        return self._thread is not None and self._thread.is_alive()

    def run_once(self):
        """Run one tick. Errors are logged and counted; the loop keeps going."""
        close_old_connections()
        try:
            result = self.func()
        except Exception:
            self.failures += 1
            logger.exception('Job %s failed', self.name)
            return None
        finally:
            self.runs += 1
            close_old_connections()
        logger.debug('Job %s finished: %r', self.name, result)
        return result

    def _loop(self):
        if self.initial_delay and self.stop_event.wait(self.initial_delay):
            return
        while not self.stop_event.is_set():
            self.run_once()
            self.stop_event.wait(self.interval)

    def start(self):
        if self.is_running:
            return
        self.stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=f'job-{self.name}', daemon=True)
        self._thread.start()
        logger.info('Started job %s (every %ss)', self.name, self.interval)

    def stop(self, timeout=None):
        self.stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info('Stopped job %s', self.name)


def settlement_tasks():
    """The three background jobs with their configured intervals."""
    from apps.claims.expiry import expire_unclaimed_matches
    from apps.matches.monitor import check_player_disconnects
    from apps.payments.sweeper import sweep_timeouts

    return [
        PeriodicTask(
            'disconnect-monitor', check_player_disconnects,
            getattr(settings, 'DISCONNECT_CHECK_INTERVAL', timedelta(seconds=10)),
        ),
        PeriodicTask(
            'timeout-sweeper', sweep_timeouts,
            getattr(settings, 'TIMEOUT_SWEEP_INTERVAL', timedelta(seconds=60)),
        ),
        PeriodicTask(
            'claim-expiry', expire_unclaimed_matches,
            getattr(settings, 'CLAIM_EXPIRY_INTERVAL', timedelta(minutes=5)),
        ),
    ]

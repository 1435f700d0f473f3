import signal
import threading

from django.core.management.base import BaseCommand

from apps.jobs.scheduler import settlement_tasks


class Command(BaseCommand):
    help = 'Run the disconnect monitor, timeout sweeper and claim expiry in the foreground'

    def add_arguments(self, parser):
        parser.add_argument(
            '--once', action='store_true',
            help='Run every job a single time and exit',
        )

    def handle(self, *args, **options):
        tasks = settlement_tasks()

        if options['once']:
            for task in tasks:
                result = task.run_once()
                self.stdout.write(f'{task.name}: {result!r}')
            failed = sum(task.failures for task in tasks)
            if failed:
                self.stdout.write(self.style.ERROR(f'{failed} jobs failed.'))
            else:
                self.stdout.write(self.style.SUCCESS('All jobs ran.'))
            return

        shutdown = threading.Event()

        def request_shutdown(signum, frame):
            shutdown.set()

        signal.signal(signal.SIGINT, request_shutdown)
        signal.signal(signal.SIGTERM, request_shutdown)

        for task in tasks:
            task.start()
        self.stdout.write(self.style.SUCCESS(f'Running {len(tasks)} jobs; Ctrl-C to stop.'))

        shutdown.wait()
        for task in tasks:
            task.stop(timeout=30)
        self.stdout.write(self.style.SUCCESS('Jobs stopped.'))

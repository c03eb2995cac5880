"""
Charitrace Retry Failed Verifications Management Command

Re-submits every donation whose blockchain verification is waiting for a
retry. Records are updated in place; a donation verified in the meantime is
left alone.

Run it once (e.g. from cron) or keep it running with --loop.

Usage:
    python manage.py retry_failed_verifications
    python manage.py retry_failed_verifications --loop --interval 300
"""

import time

from django.conf import settings
from django.core.management.base import BaseCommand

from charitrace.apps import get_verification_service


class Command(BaseCommand):
    help = 'Retry blockchain verification of donations recorded as pending retry'

    def add_arguments(self, parser):
        parser.add_argument(
            '--loop',
            action='store_true',
            help='Keep running and retry on an interval',
        )
        parser.add_argument(
            '--interval',
            type=int,
            default=None,
            help='Seconds between sweeps with --loop (default: VERIFICATION_RETRY_INTERVAL)',
        )

    def handle(self, *args, **options):
        interval = options['interval'] or settings.VERIFICATION_RETRY_INTERVAL
        service = get_verification_service()

        while True:
            result = service.retry_failed_verifications()
            style = self.style.SUCCESS if not result['failed'] else self.style.WARNING
            self.stdout.write(
                style(
                    f"Retried {result['retried']} verifications: "
                    f"{result['successful']} successful, {result['failed']} failed"
                )
            )
            if not options['loop']:
                break
            time.sleep(interval)

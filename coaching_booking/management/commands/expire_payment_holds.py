from django.core.management.base import BaseCommand

from coaching_booking.services import EnrollmentWorkflow


class Command(BaseCommand):
    help = 'Releases time slot seats held by payments that were never completed.'

    def handle(self, *args, **options):
        expired = EnrollmentWorkflow.expire_stale_payments()

        if expired == 0:
            self.stdout.write(self.style.SUCCESS('No stale payment holds found.'))
            return

        self.stdout.write(self.style.SUCCESS(f'Released {expired} stale payment holds.'))

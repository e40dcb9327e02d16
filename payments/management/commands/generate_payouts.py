from datetime import date

from dateutil.relativedelta import relativedelta
from django.core.exceptions import ValidationError
from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from accounts.models import CoachProfile
from core.exceptions import CoachingServiceError, NoBillableActivityError
from payments.services import PayoutEngine


class Command(BaseCommand):
    help = 'Generates pending payouts for coaches from their billable enrollments in a period.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--start',
            type=date.fromisoformat,
            help='First day of the period (YYYY-MM-DD). Defaults to the first day of the previous month.'
        )
        parser.add_argument(
            '--end',
            type=date.fromisoformat,
            help='Last day of the period (YYYY-MM-DD). Defaults to the last day of the previous month.'
        )
        parser.add_argument(
            '--coach',
            type=int,
            action='append',
            help='Only generate for this coach profile id. Can be repeated.'
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show what would be paid without creating payouts.'
        )

    def handle(self, *args, **options):
        first_of_this_month = timezone.localdate().replace(day=1)
        start = options['start'] or first_of_this_month - relativedelta(months=1)
        end = options['end'] or first_of_this_month - relativedelta(days=1)
        if start > end:
            raise CommandError("--start must be on or before --end.")

        coaches = CoachProfile.objects.select_related('user').filter(user__is_active=True)
        if options['coach']:
            coaches = coaches.filter(pk__in=options['coach'])

        self.stdout.write(self.style.SUCCESS(f"Generating payouts for {start} to {end}..."))

        created = 0
        for coach in coaches:
            if options['dry_run']:
                summary = PayoutEngine.calculate_payout(coach, start, end)
                self.stdout.write(
                    f" - {coach.name}: {summary['total_students']} students, gross {summary['gross_amount']}"
                )
                continue

            try:
                payout = PayoutEngine.generate_payout(coach, start, end)
            except NoBillableActivityError:
                continue
            except (CoachingServiceError, ValidationError) as e:
                self.stdout.write(self.style.WARNING(f" - {coach.name}: {e}"))
                continue

            created += 1
            self.stdout.write(
                f" - {coach.name}: {payout.payout_number}, {payout.total_students} students, "
                f"net {payout.net_amount} {payout.currency}"
            )

        if not options['dry_run']:
            self.stdout.write(self.style.SUCCESS(f"Created {created} payouts."))

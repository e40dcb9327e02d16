from concurrent.futures import ThreadPoolExecutor
from datetime import date, time, timedelta

from django.db import connections
from django.test import TransactionTestCase, skipUnlessDBFeature
from django.utils import timezone

from accounts.models import CoachProfile, User
from coaching_availability.models import TimeSlot
from coaching_availability.services import SlotLedger
from coaching_booking.models import Enrollment, PaymentStatus
from coaching_core.models import Course
from core.exceptions import CoachingServiceError, SlotFullError
from payments.models import Payout, PayoutLineItem
from payments.services import PayoutEngine


class SlotConcurrencyTest(TransactionTestCase):
    # TransactionTestCase so every thread sees committed rows.

    def setUp(self):
        self.user = User.objects.create(username='coach', email='coach@test.com', is_coach=True)
        self.coach = CoachProfile.objects.create(user=self.user, time_zone='UTC')
        self.slot = TimeSlot.objects.create(
            coach=self.coach,
            date=timezone.localdate() + timedelta(days=1),
            start_time=time(10, 0),
            end_time=time(11, 0),
            max_bookings=1,  # Only 1 spot
        )

    def attempt_reservation(self, _):
        try:
            SlotLedger.reserve_slot(self.slot.pk)
            return "SUCCESS"
        except SlotFullError:
            return "FAILED_FULL"
        except Exception as e:
            return f"ERROR: {e}"
        finally:
            connections.close_all()

    def test_two_clients_race_for_last_seat(self):
        with ThreadPoolExecutor(max_workers=2) as executor:
            results = list(executor.map(self.attempt_reservation, range(2)))

        self.assertEqual(results.count("SUCCESS"), 1, results)
        self.assertEqual(results.count("FAILED_FULL"), 1, results)
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.current_bookings, 1)

    def test_many_clients_never_overfill(self):
        self.slot.max_bookings = 3
        self.slot.save()

        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(self.attempt_reservation, range(8)))

        self.assertEqual(results.count("SUCCESS"), 3, results)
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.current_bookings, 3)


@skipUnlessDBFeature('has_select_for_update')
class PayoutConcurrencyTest(TransactionTestCase):

    def setUp(self):
        coach_user = User.objects.create(username='coach', email='coach@test.com', is_coach=True)
        self.coach = CoachProfile.objects.create(user=coach_user, time_zone='UTC')
        PayoutEngine.create_or_update_coach_settings(self.coach, payment_rate_per_student=50000)
        course = Course.objects.create(title='Tax Planning 101', price=50000)

        for i in range(3):
            slot = TimeSlot.objects.create(
                coach=self.coach, date=date(2026, 1, 5 + i), start_time=time(10, 0), end_time=time(11, 0)
            )
            Enrollment.objects.create(
                user=User.objects.create(username=f'student{i}'),
                course=course,
                coach=self.coach,
                time_slot=slot,
                payment_status=PaymentStatus.PAID,
                scheduled_at=slot.starts_at,
                amount_paid=50000,
            )

    def attempt_generation(self, _):
        try:
            PayoutEngine.generate_payout(self.coach, date(2026, 1, 1), date(2026, 1, 31))
            return "SUCCESS"
        except CoachingServiceError as e:
            return type(e).__name__
        finally:
            connections.close_all()

    def test_concurrent_generation_creates_one_payout(self):
        with ThreadPoolExecutor(max_workers=3) as executor:
            results = list(executor.map(self.attempt_generation, range(3)))

        self.assertEqual(results.count("SUCCESS"), 1, results)
        self.assertEqual(Payout.objects.count(), 1)
        self.assertEqual(PayoutLineItem.objects.count(), 3)

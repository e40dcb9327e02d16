from datetime import datetime, time, timedelta
from unittest import mock

import pytz
from django.db import DatabaseError
from django.test import TestCase
from django.utils import timezone

from accounts.models import CoachProfile, User
from coaching_availability.models import TimeSlot
from coaching_availability.services import SlotLedger
from core.exceptions import PersistenceError, SlotFullError, SlotNotFoundError


def make_slot(coach, days_ahead=2, start=time(10, 0), end=time(11, 0), **fields):
    return TimeSlot.objects.create(
        coach=coach,
        date=timezone.localdate() + timedelta(days=days_ahead),
        start_time=start,
        end_time=end,
        **fields
    )


class TimeSlotModelTests(TestCase):
    def setUp(self):
        self.user = User.objects.create(username='coach', email='coach@test.com', is_coach=True)
        self.coach = CoachProfile.objects.create(user=self.user, time_zone='Asia/Kolkata')

    def test_starts_at_uses_coach_time_zone(self):
        slot = make_slot(self.coach, start=time(10, 0), end=time(11, 0))

        local = pytz.timezone('Asia/Kolkata').localize(datetime.combine(slot.date, time(10, 0)))
        self.assertEqual(slot.starts_at, local)
        self.assertEqual(slot.scheduled_at, slot.starts_at)
        self.assertEqual(slot.ends_at - slot.starts_at, timedelta(hours=1))

    def test_overnight_slot_ends_next_day(self):
        slot = make_slot(self.coach, start=time(23, 30), end=time(0, 30))
        self.assertEqual(slot.ends_at - slot.starts_at, timedelta(hours=1))

    def test_saving_stale_instance_keeps_bookings(self):
        slot = make_slot(self.coach, max_bookings=3)
        stale = TimeSlot.objects.get(pk=slot.pk)

        SlotLedger.reserve_slot(slot.pk)
        stale.is_available = False
        stale.save()

        slot.refresh_from_db()
        self.assertEqual(slot.current_bookings, 1)
        self.assertFalse(slot.is_available)


class SlotLedgerListTests(TestCase):
    def setUp(self):
        self.user = User.objects.create(username='coach', email='coach@test.com', is_coach=True)
        self.coach = CoachProfile.objects.create(user=self.user, time_zone='UTC')

    def test_lists_open_slots_in_window_earliest_first(self):
        later = make_slot(self.coach, days_ahead=5)
        sooner = make_slot(self.coach, days_ahead=1)
        make_slot(self.coach, days_ahead=20)   # outside the 14 day window
        make_slot(self.coach, days_ahead=-1)   # already happened
        make_slot(self.coach, days_ahead=3, is_available=False)

        slots = list(SlotLedger.list_available_slots(self.coach))
        self.assertEqual(slots, [sooner, later])

    def test_full_slots_are_hidden(self):
        slot = make_slot(self.coach, max_bookings=1)
        SlotLedger.reserve_slot(slot.pk)
        self.assertFalse(SlotLedger.list_available_slots(self.coach).exists())

    def test_window_can_be_widened(self):
        far = make_slot(self.coach, days_ahead=20)
        self.assertIn(far, SlotLedger.list_available_slots(self.coach, window_days=30))

    def test_other_coaches_slots_not_listed(self):
        other = CoachProfile.objects.create(user=User.objects.create(username='other', is_coach=True))
        make_slot(other)
        self.assertFalse(SlotLedger.list_available_slots(self.coach).exists())


class SlotLedgerReservationTests(TestCase):
    def setUp(self):
        self.user = User.objects.create(username='coach', email='coach@test.com', is_coach=True)
        self.coach = CoachProfile.objects.create(user=self.user, time_zone='UTC')
        self.slot = make_slot(self.coach, max_bookings=3)

    def test_reserve_increments_bookings(self):
        slot = SlotLedger.reserve_slot(self.slot.pk)
        self.assertEqual(slot.current_bookings, 1)
        self.assertEqual(slot.remaining_capacity, 2)

    def test_capacity_is_never_exceeded(self):
        results = []
        for _ in range(5):
            try:
                SlotLedger.reserve_slot(self.slot.pk)
                results.append('SUCCESS')
            except SlotFullError:
                results.append('FULL')

        self.assertEqual(results, ['SUCCESS'] * 3 + ['FULL'] * 2)
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.current_bookings, 3)
        self.assertFalse(self.slot.is_bookable)

    def test_missing_slot(self):
        with self.assertRaises(SlotNotFoundError):
            SlotLedger.reserve_slot(999999)

    def test_started_slot_cannot_be_reserved(self):
        past = make_slot(self.coach, days_ahead=-1)
        with self.assertRaises(SlotFullError):
            SlotLedger.reserve_slot(past.pk)

    def test_unavailable_slot_cannot_be_reserved(self):
        self.slot.is_available = False
        self.slot.save()
        with self.assertRaises(SlotFullError):
            SlotLedger.reserve_slot(self.slot.pk)

    def test_release_gives_seat_back(self):
        SlotLedger.reserve_slot(self.slot.pk)
        self.assertTrue(SlotLedger.release_slot(self.slot.pk))
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.current_bookings, 0)

    def test_release_on_empty_slot_is_ignored(self):
        with self.assertLogs('coaching_availability.services', level='WARNING'):
            self.assertFalse(SlotLedger.release_slot(self.slot.pk))
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.current_bookings, 0)

    def test_database_errors_are_wrapped(self):
        with mock.patch('django.db.models.query.QuerySet.update', side_effect=DatabaseError('gone')):
            with self.assertRaises(PersistenceError) as ctx:
                SlotLedger.reserve_slot(self.slot.pk)
        self.assertTrue(ctx.exception.retryable)

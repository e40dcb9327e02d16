import re
from datetime import date, datetime, time
from io import StringIO
from unittest import mock

import pytz
import stripe
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.db import connection
from django.test import TestCase, override_settings

from accounts.models import CoachProfile, User
from coaching_availability.models import TimeSlot
from coaching_booking.models import Enrollment, EnrollmentStatus, PaymentStatus
from coaching_core.models import Course
from core.exceptions import (
    DuplicatePayoutError,
    InvalidPayoutTransitionError,
    NoBillableActivityError,
    PaymentGatewayError,
    SettingsMissingError,
)
from payments.details import display_details, detail_fields, normalise_details
from payments.gateway import StripeGateway
from payments.models import Payout, PayoutSettings, PayoutStatus, Purchase, PurchaseStatus
from payments.services import PayoutEngine

JAN_START = date(2026, 1, 1)
JAN_END = date(2026, 1, 31)


class PayoutDetailsTests(TestCase):
    def test_mapping_is_structured(self):
        self.assertEqual(
            normalise_details({'account_number': '001122', 'ifsc': 'HDFC0001'}),
            {'kind': 'structured', 'fields': {'account_number': '001122', 'ifsc': 'HDFC0001'}},
        )

    def test_json_text_is_structured(self):
        value = normalise_details(' {"pan": "ABCDE1234F"} ')
        self.assertEqual(value, {'kind': 'structured', 'fields': {'pan': 'ABCDE1234F'}})
        self.assertEqual(detail_fields(value), {'pan': 'ABCDE1234F'})

    def test_other_text_is_kept_verbatim(self):
        value = normalise_details('Pay to HDFC a/c ending 4411')
        self.assertEqual(value, {'kind': 'freeform', 'text': 'Pay to HDFC a/c ending 4411'})
        self.assertEqual(display_details(value), 'Pay to HDFC a/c ending 4411')
        self.assertEqual(detail_fields(value), {})

        # A JSON list is not a set of fields
        self.assertEqual(normalise_details('["a", "b"]'), {'kind': 'freeform', 'text': '["a", "b"]'})

    def test_empty_input_means_no_details(self):
        self.assertIsNone(normalise_details(''))
        self.assertIsNone(normalise_details('   '))
        self.assertIsNone(normalise_details({}))
        self.assertIsNone(normalise_details(None))

    def test_tagged_values_pass_through(self):
        tagged = {'kind': 'freeform', 'text': 'cash'}
        self.assertIs(normalise_details(tagged), tagged)

    def test_other_types_rejected(self):
        with self.assertRaises(ValidationError):
            normalise_details(42)


class PayoutTestBase(TestCase):
    def setUp(self):
        coach_user = User.objects.create_user(username='coach', email='coach@test.com', first_name='Ravi', is_coach=True)
        self.coach = CoachProfile.objects.create(user=coach_user, time_zone='UTC')
        self.course = Course.objects.create(title='Tax Planning 101', price=50000)
        self.settings = PayoutEngine.create_or_update_coach_settings(
            self.coach, payment_rate_per_student=50000, currency='inr'
        )
        self.students = [
            User.objects.create_user(username=f'student{i}', email=f'student{i}@test.com', first_name=f'Student{i}')
            for i in range(1, 4)
        ]

    def _slot(self, coach, day, hour=10):
        return TimeSlot.objects.create(coach=coach, date=day, start_time=time(hour, 0), end_time=time(hour + 1, 0), max_bookings=10)

    def _enroll(self, user, day, coach=None, **fields):
        coach = coach or self.coach
        slot = self._slot(coach, day)
        values = {
            'status': EnrollmentStatus.CONFIRMED,
            'payment_status': PaymentStatus.PAID,
            'amount_paid': self.course.price,
        }
        values.update(fields)
        return Enrollment.objects.create(
            user=user, course=self.course, coach=coach, time_slot=slot, scheduled_at=slot.starts_at, **values
        )

    def _enroll_january(self):
        return [
            self._enroll(self.students[0], date(2026, 1, 5)),
            self._enroll(self.students[1], date(2026, 1, 15)),
            self._enroll(self.students[2], date(2026, 1, 31)),
        ]


class CoachSettingsTests(PayoutTestBase):
    def test_details_are_encrypted_at_rest(self):
        PayoutEngine.create_or_update_coach_settings(
            self.coach,
            bank_details='{"account_number": "001122", "ifsc": "HDFC0001"}',
            tax_details='PAN on file with accounts team',
        )

        stored = PayoutSettings.objects.get(coach=self.coach)
        self.assertEqual(stored.bank_details, {'kind': 'structured', 'fields': {'account_number': '001122', 'ifsc': 'HDFC0001'}})
        self.assertEqual(stored.tax_details, {'kind': 'freeform', 'text': 'PAN on file with accounts team'})

        with connection.cursor() as cursor:
            cursor.execute('SELECT bank_details FROM payments_payoutsettings WHERE id = %s', [stored.pk])
            raw = cursor.fetchone()[0]
        self.assertNotIn('HDFC0001', raw)

    def test_update_keeps_other_fields(self):
        PayoutEngine.create_or_update_coach_settings(self.coach, bank_details={'upi': 'ravi@bank'})
        PayoutEngine.create_or_update_coach_settings(self.coach, payment_rate_per_student=60000)

        stored = PayoutSettings.objects.get(coach=self.coach)
        self.assertEqual(stored.payment_rate_per_student, 60000)
        self.assertEqual(stored.currency, 'INR')
        self.assertEqual(detail_fields(stored.bank_details), {'upi': 'ravi@bank'})
        self.assertEqual(PayoutSettings.objects.count(), 1)

    def test_new_settings_need_a_rate(self):
        other = CoachProfile.objects.create(user=User.objects.create_user(username='other', is_coach=True))
        with self.assertRaises(ValidationError):
            PayoutEngine.create_or_update_coach_settings(other, currency='INR')

    def test_unknown_fields_rejected(self):
        with self.assertRaises(ValidationError):
            PayoutEngine.create_or_update_coach_settings(self.coach, bonus=10)


class CalculatePayoutTests(PayoutTestBase):
    def test_counts_billable_students_in_period(self):
        self._enroll_january()

        summary = PayoutEngine.calculate_payout(self.coach, JAN_START, JAN_END)

        self.assertEqual(summary['total_students'], 3)
        self.assertEqual(summary['payment_rate_per_student'], 50000)
        self.assertEqual(summary['gross_amount'], 150000)
        self.assertEqual(len(summary['enrollment_details']), 3)
        self.assertEqual(summary['enrollment_details'][0]['student_name'], 'Student3')

    def test_excludes_records_that_are_not_billable(self):
        self._enroll_january()
        other_coach = CoachProfile.objects.create(user=User.objects.create_user(username='other', is_coach=True))
        self._enroll(self.students[0], date(2026, 1, 10), status=EnrollmentStatus.CANCELLED)
        self._enroll(self.students[0], date(2026, 1, 11), payment_status=PaymentStatus.FAILED)
        self._enroll(self.students[0], date(2026, 2, 1))
        self._enroll(self.students[0], date(2025, 12, 31))
        self._enroll(self.students[0], date(2026, 1, 12), coach=other_coach)

        self.assertEqual(PayoutEngine.calculate_payout(self.coach, JAN_START, JAN_END)['total_students'], 3)

    def test_completed_and_skipped_enrollments_count(self):
        self._enroll(self.students[0], date(2026, 1, 5), status=EnrollmentStatus.COMPLETED)
        self._enroll(self.students[1], date(2026, 1, 6), payment_status=PaymentStatus.SKIPPED, amount_paid=0)

        self.assertEqual(PayoutEngine.calculate_payout(self.coach, JAN_START, JAN_END)['total_students'], 2)

    def test_standalone_purchases_count_once(self):
        enrollment = self._enroll(self.students[0], date(2026, 1, 5))
        jan = pytz.UTC.localize(datetime(2026, 1, 20, 9, 0))
        Purchase.objects.create(user=self.students[1], course=self.course, coach=self.coach,
                                status=PurchaseStatus.COMPLETED, amount_paid=50000, purchased_at=jan)
        # Already represented by its enrollment
        Purchase.objects.create(user=self.students[0], course=self.course, coach=self.coach, enrollment=enrollment,
                                status=PurchaseStatus.COMPLETED, amount_paid=50000, purchased_at=jan)
        Purchase.objects.create(user=self.students[2], course=self.course, coach=self.coach,
                                status=PurchaseStatus.PENDING, purchased_at=jan)

        summary = PayoutEngine.calculate_payout(self.coach, JAN_START, JAN_END)
        self.assertEqual(summary['total_students'], 2)

    def test_empty_period_is_zero(self):
        summary = PayoutEngine.calculate_payout(self.coach, JAN_START, JAN_END)
        self.assertEqual(summary['total_students'], 0)
        self.assertEqual(summary['gross_amount'], 0)
        self.assertEqual(summary['enrollment_details'], [])

    def test_no_settings_means_zero_rate(self):
        self.settings.is_active = False
        self.settings.save()
        self._enroll_january()

        summary = PayoutEngine.calculate_payout(self.coach, JAN_START, JAN_END)
        self.assertEqual(summary['total_students'], 3)
        self.assertEqual(summary['gross_amount'], 0)


class GeneratePayoutTests(PayoutTestBase):
    def test_three_students_at_500_with_150_tax(self):
        self._enroll_january()

        payout = PayoutEngine.generate_payout(self.coach, JAN_START, JAN_END, tax_amount=15000, notes='January')

        self.assertEqual(payout.status, PayoutStatus.PENDING)
        self.assertEqual(payout.total_students, 3)
        self.assertEqual(payout.payment_rate_per_student, 50000)
        self.assertEqual(payout.gross_amount, 150000)
        self.assertEqual(payout.tax_amount, 15000)
        self.assertEqual(payout.net_amount, 135000)
        self.assertEqual(payout.currency, 'INR')
        self.assertRegex(payout.payout_number, r'^PO-\d{6}-[A-Z0-9]{8}$')

        items = list(PayoutEngine.get_line_items(payout.pk))
        self.assertEqual(len(items), 3)
        self.assertTrue(all(item.amount == 50000 for item in items))
        self.assertEqual([item.student_name for item in items], ['Student3', 'Student2', 'Student1'])

    def test_claimed_students_are_not_billed_twice(self):
        self._enroll_january()
        PayoutEngine.generate_payout(self.coach, JAN_START, JAN_END)

        self.assertEqual(PayoutEngine.calculate_payout(self.coach, JAN_START, JAN_END)['total_students'], 0)
        with self.assertRaises(DuplicatePayoutError):
            PayoutEngine.generate_payout(self.coach, JAN_START, JAN_END)

        # An overlapping period finds nothing left to pay
        with self.assertRaises(NoBillableActivityError):
            PayoutEngine.generate_payout(self.coach, date(2026, 1, 15), JAN_END)

    def test_empty_period_raises(self):
        with self.assertRaises(NoBillableActivityError):
            PayoutEngine.generate_payout(self.coach, JAN_START, JAN_END)
        self.assertFalse(Payout.objects.exists())

    def test_missing_settings_raise(self):
        self.settings.delete()
        self._enroll_january()

        with self.assertRaises(SettingsMissingError):
            PayoutEngine.generate_payout(self.coach, JAN_START, JAN_END)
        self.assertFalse(Payout.objects.exists())

    def test_inactive_settings_raise(self):
        self.settings.is_active = False
        self.settings.save()
        self._enroll_january()

        with self.assertRaises(SettingsMissingError):
            PayoutEngine.generate_payout(self.coach, JAN_START, JAN_END)

    def test_tax_must_fit_within_gross(self):
        self._enroll_january()
        with self.assertRaises(ValidationError):
            PayoutEngine.generate_payout(self.coach, JAN_START, JAN_END, tax_amount=150001)
        with self.assertRaises(ValidationError):
            PayoutEngine.generate_payout(self.coach, JAN_START, JAN_END, tax_amount=-1)
        self.assertFalse(Payout.objects.exists())
        self.assertEqual(PayoutEngine.calculate_payout(self.coach, JAN_START, JAN_END)['total_students'], 3)

    def test_period_must_be_ordered(self):
        with self.assertRaises(ValidationError):
            PayoutEngine.generate_payout(self.coach, JAN_END, JAN_START)

    def test_net_is_recomputed_on_save(self):
        self._enroll_january()
        payout = PayoutEngine.generate_payout(self.coach, JAN_START, JAN_END, tax_amount=15000)

        payout.tax_amount = 0
        payout.save(update_fields=['tax_amount'])
        payout.refresh_from_db()
        self.assertEqual(payout.net_amount, 150000)


class PayoutStatusTests(PayoutTestBase):
    def setUp(self):
        super().setUp()
        self.enrollments = self._enroll_january()
        self.payout = PayoutEngine.generate_payout(self.coach, JAN_START, JAN_END, tax_amount=15000)

    def test_pending_to_processing_to_paid(self):
        PayoutEngine.update_payout_status(self.payout.pk, PayoutStatus.PROCESSING)
        payout = PayoutEngine.update_payout_status(self.payout.pk, PayoutStatus.PAID, payment_reference='NEFT-991')

        self.assertEqual(payout.status, PayoutStatus.PAID)
        self.assertIsNotNone(payout.payment_date)
        self.assertEqual(payout.payment_reference, 'NEFT-991')

    def test_paid_is_final(self):
        PayoutEngine.update_payout_status(self.payout.pk, PayoutStatus.PAID)
        for status in (PayoutStatus.CANCELLED, PayoutStatus.PENDING, PayoutStatus.FAILED):
            with self.assertRaises(InvalidPayoutTransitionError):
                PayoutEngine.update_payout_status(self.payout.pk, status)

    def test_failed_transfer_can_be_retried(self):
        PayoutEngine.update_payout_status(self.payout.pk, PayoutStatus.PROCESSING)
        PayoutEngine.update_payout_status(self.payout.pk, PayoutStatus.FAILED)
        payout = PayoutEngine.update_payout_status(self.payout.pk, PayoutStatus.PROCESSING)
        self.assertEqual(payout.status, PayoutStatus.PROCESSING)

    def test_pending_cannot_fail(self):
        with self.assertRaises(InvalidPayoutTransitionError):
            PayoutEngine.update_payout_status(self.payout.pk, PayoutStatus.FAILED)

    def test_unknown_status_rejected(self):
        with self.assertRaises(InvalidPayoutTransitionError):
            PayoutEngine.update_payout_status(self.payout.pk, 'refunded')

    def test_missing_payout(self):
        with self.assertRaises(ValidationError):
            PayoutEngine.update_payout_status(999999, PayoutStatus.PAID)

    def test_cancelling_frees_students_for_a_new_payout(self):
        PayoutEngine.update_payout_status(self.payout.pk, PayoutStatus.CANCELLED)

        self.assertFalse(Enrollment.objects.filter(claimed_by_payout__isnull=False).exists())
        # Line items stay as history
        self.assertEqual(self.payout.line_items.count(), 3)

        replacement = PayoutEngine.generate_payout(self.coach, JAN_START, JAN_END)
        self.assertEqual(replacement.total_students, 3)
        self.assertNotEqual(replacement.payout_number, self.payout.payout_number)


class GeneratePayoutsCommandTests(PayoutTestBase):
    def test_generates_for_period(self):
        self._enroll_january()
        out = StringIO()

        call_command('generate_payouts', '--start', '2026-01-01', '--end', '2026-01-31', stdout=out)

        self.assertEqual(Payout.objects.count(), 1)
        self.assertIn('Created 1 payouts', out.getvalue())

    def test_dry_run_creates_nothing(self):
        self._enroll_january()
        out = StringIO()

        call_command('generate_payouts', '--start', '2026-01-01', '--end', '2026-01-31', '--dry-run', stdout=out)

        self.assertFalse(Payout.objects.exists())
        self.assertIn('3 students', out.getvalue())


@override_settings(STRIPE_SECRET_KEY='sk_test_123', SITE_URL='https://coaching.example.com')
class StripeGatewayTests(TestCase):
    metadata = {'order_ref': 'abc123', 'email': 'client@test.com', 'course_title': 'Tax Planning 101', 'coach_id': 7}

    def test_creates_checkout_session(self):
        session = mock.Mock(id='cs_test_abc', url='https://checkout.stripe.com/c/pay/cs_test_abc')
        with mock.patch('payments.gateway.stripe.checkout.Session.create', return_value=session) as create:
            order = StripeGateway().create_order(50000, 'INR', self.metadata)

        self.assertEqual(order, {'order_ref': 'abc123', 'gateway_order_id': 'cs_test_abc', 'url': session.url})
        kwargs = create.call_args.kwargs
        self.assertEqual(kwargs['line_items'][0]['price_data']['unit_amount'], 50000)
        self.assertEqual(kwargs['line_items'][0]['price_data']['currency'], 'inr')
        self.assertEqual(kwargs['metadata']['type'], 'course_enrollment')
        self.assertEqual(kwargs['metadata']['coach_id'], '7')
        self.assertTrue(re.match(r'^https://coaching\.example\.com/coach/payment/return/\?order=abc123', kwargs['success_url']))

    def test_stripe_errors_are_wrapped(self):
        error = stripe.APIConnectionError('Network down')
        with mock.patch('payments.gateway.stripe.checkout.Session.create', side_effect=error):
            with self.assertRaises(PaymentGatewayError) as ctx:
                StripeGateway().create_order(50000, 'INR', self.metadata)
        self.assertTrue(ctx.exception.retryable)

    def test_cancel_order_expires_session(self):
        with mock.patch('payments.gateway.stripe.checkout.Session.expire') as expire:
            StripeGateway().cancel_order('cs_test_abc')
        expire.assert_called_once_with('cs_test_abc', api_key='sk_test_123')

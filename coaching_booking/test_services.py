from datetime import time, timedelta
from decimal import Decimal
from unittest import mock

from django.core.exceptions import ValidationError
from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.utils import timezone

from accounts.models import CoachProfile, User, UserType
from coaching_availability.models import TimeSlot
from coaching_availability.services import SlotLedger
from coaching_booking.models import (
    Enrollment,
    EnrollmentDraft,
    EnrollmentStatus,
    PaymentState,
    PaymentStatus,
    WorkflowStage,
)
from coaching_booking.services import EnrollmentWorkflow
from coaching_core.models import Course
from core.exceptions import IncompleteWorkflowError, PaymentGatewayError, PersistenceError
from payments.gateway import PaymentGateway


class FakeGateway(PaymentGateway):
    """Records orders instead of talking to a payment provider."""

    def __init__(self, fail=False):
        self.fail = fail
        self.orders = []
        self.cancelled = []

    def create_order(self, amount, currency, metadata):
        if self.fail:
            raise PaymentGatewayError("Card network unavailable.")
        self.orders.append({'amount': amount, 'currency': currency, 'metadata': metadata})
        return {
            'order_ref': metadata['order_ref'],
            'gateway_order_id': f"cs_test_{len(self.orders)}",
            'url': f"https://pay.example.com/{metadata['order_ref']}",
        }

    def cancel_order(self, gateway_order_id):
        self.cancelled.append(gateway_order_id)


@override_settings(PAYMENT_GATEWAY='coaching_booking.test_services.FakeGateway', PAYMENT_CURRENCY='INR')
class EnrollmentWorkflowTestBase(TestCase):
    def setUp(self):
        self.client_user = User.objects.create_user(username='client', email='client@test.com', first_name='Asha')
        self.employee = User.objects.create_user(
            username='employee', email='employee@test.com', user_type=UserType.EMPLOYEE
        )

        coach_user = User.objects.create_user(username='coach', email='coach@test.com', first_name='Ravi', is_coach=True)
        self.coach = CoachProfile.objects.create(
            user=coach_user, specialties=['Tax Planning', 'Retirement'], rating=Decimal('4.50'), time_zone='UTC'
        )
        other_user = User.objects.create_user(username='other', email='other@test.com', is_coach=True)
        self.other_coach = CoachProfile.objects.create(
            user=other_user, specialties=['Investing'], rating=Decimal('4.90'), time_zone='UTC'
        )

        self.course = Course.objects.create(title='Tax Planning 101', price=50000, tags=['tax planning'])
        self.free_course = Course.objects.create(title='Money Basics', price=0, tags=['retirement'])

        self.slot = self._slot(self.coach, max_bookings=2)
        self.other_slot = self._slot(self.other_coach)
        self.gateway = FakeGateway()

    def _slot(self, coach, days_ahead=2, hour=10, **fields):
        return TimeSlot.objects.create(
            coach=coach,
            date=timezone.localdate() + timedelta(days=days_ahead),
            start_time=time(hour, 0),
            end_time=time(hour + 1, 0),
            **fields
        )

    def _at_payment_stage(self, user, course=None, slot=None):
        workflow = EnrollmentWorkflow.start(user, course or self.course)
        workflow.next_step()
        workflow.select_coach(self.coach)
        workflow.next_step()
        workflow.select_time_slot(slot or self.slot)
        workflow.next_step()
        workflow.next_step()
        self.assertEqual(workflow.stage, WorkflowStage.PAYMENT)
        return workflow

    def _bookings(self, slot=None):
        slot = slot or self.slot
        slot.refresh_from_db()
        return slot.current_bookings


class WorkflowNavigationTests(EnrollmentWorkflowTestBase):
    def test_cannot_leave_course_preview_without_course(self):
        workflow = EnrollmentWorkflow.start(self.client_user)
        with self.assertRaises(IncompleteWorkflowError):
            workflow.next_step()
        self.assertEqual(workflow.stage, WorkflowStage.COURSE_PREVIEW)

    def test_each_stage_needs_its_selection(self):
        workflow = EnrollmentWorkflow.start(self.client_user, self.course)
        self.assertEqual(workflow.next_step(), WorkflowStage.COACH_SELECTION)

        with self.assertRaises(IncompleteWorkflowError):
            workflow.next_step()
        workflow.select_coach(self.coach)
        self.assertEqual(workflow.next_step(), WorkflowStage.SLOT_SELECTION)

        with self.assertRaises(IncompleteWorkflowError):
            workflow.next_step()
        workflow.select_time_slot(self.slot)
        self.assertEqual(workflow.next_step(), WorkflowStage.REVIEW)
        self.assertEqual(workflow.next_step(), WorkflowStage.PAYMENT)

        # Payment is the last stage
        self.assertEqual(workflow.next_step(), WorkflowStage.PAYMENT)

    def test_selections_can_be_made_ahead_of_stage(self):
        workflow = EnrollmentWorkflow.start(self.client_user)
        workflow.select_coach(self.coach)
        workflow.select_time_slot(self.slot)
        workflow.set_course(self.course)

        for _ in range(4):
            workflow.next_step()
        self.assertEqual(workflow.stage, WorkflowStage.PAYMENT)

    def test_previous_step_keeps_selections(self):
        workflow = self._at_payment_stage(self.client_user)
        self.assertEqual(workflow.previous_step(), WorkflowStage.REVIEW)
        for _ in range(5):
            workflow.previous_step()

        workflow.draft.refresh_from_db()
        self.assertEqual(workflow.stage, WorkflowStage.COURSE_PREVIEW)
        self.assertEqual(workflow.draft.course, self.course)
        self.assertEqual(workflow.draft.time_slot, self.slot)

    def test_progress_survives_between_requests(self):
        workflow = EnrollmentWorkflow.start(self.client_user, self.course)
        workflow.next_step()

        resumed = EnrollmentWorkflow.start(self.client_user)
        self.assertEqual(resumed.stage, WorkflowStage.COACH_SELECTION)
        self.assertEqual(resumed.draft.course, self.course)

    def test_user_type_defaults_to_account_type(self):
        self.assertEqual(EnrollmentWorkflow.start(self.employee).draft.user_type, UserType.EMPLOYEE)
        self.assertEqual(EnrollmentWorkflow.start(self.client_user).draft.user_type, UserType.INDIVIDUAL)


class WorkflowSelectionTests(EnrollmentWorkflowTestBase):
    def test_coach_candidates_match_course_tags(self):
        workflow = EnrollmentWorkflow.start(self.client_user, self.course)
        result = workflow.coach_candidates()
        self.assertEqual(result, {'type': 'coaches', 'coaches': [self.coach]})

    def test_no_matching_coach_is_explicit(self):
        course = Course.objects.create(title='Astrology for Investors', price=1000, tags=['Astrology'])
        workflow = EnrollmentWorkflow.start(self.client_user, course)
        self.assertEqual(workflow.coach_candidates(), {'type': 'no_matching_coach', 'coaches': []})

    def test_untagged_course_matches_every_coach(self):
        course = Course.objects.create(title='General Coaching', price=1000)
        workflow = EnrollmentWorkflow.start(self.client_user, course)
        self.assertEqual(workflow.coach_candidates()['coaches'], [self.other_coach, self.coach])

    def test_coach_candidates_need_a_course(self):
        with self.assertRaises(IncompleteWorkflowError):
            EnrollmentWorkflow.start(self.client_user).coach_candidates()

    def test_slot_must_belong_to_selected_coach(self):
        workflow = EnrollmentWorkflow.start(self.client_user, self.course)
        workflow.select_coach(self.coach)
        with self.assertRaises(ValidationError):
            workflow.select_time_slot(self.other_slot)

    def test_full_slot_cannot_be_selected(self):
        slot = self._slot(self.coach, hour=14, max_bookings=1)
        SlotLedger.reserve_slot(slot.pk)

        workflow = EnrollmentWorkflow.start(self.client_user, self.course)
        workflow.select_coach(self.coach)
        with self.assertRaises(ValidationError):
            workflow.select_time_slot(slot)

    def test_changing_coach_clears_their_slot(self):
        workflow = EnrollmentWorkflow.start(self.client_user, self.course)
        workflow.select_coach(self.coach)
        workflow.select_time_slot(self.slot)
        workflow.select_coach(self.other_coach)
        self.assertIsNone(workflow.draft.time_slot)

    def test_inactive_course_rejected(self):
        self.course.is_active = False
        self.course.save()
        with self.assertRaises(ValidationError):
            EnrollmentWorkflow.start(self.client_user, self.course)


class NoPaymentEnrollmentTests(EnrollmentWorkflowTestBase):
    def test_employee_enrolls_without_payment(self):
        workflow = self._at_payment_stage(self.employee)
        result = workflow.confirm(self.gateway)

        self.assertEqual(result['type'], 'confirmed')
        enrollment = result['enrollment']
        self.assertEqual(enrollment.status, EnrollmentStatus.CONFIRMED)
        self.assertEqual(enrollment.payment_status, PaymentStatus.SKIPPED)
        self.assertEqual(enrollment.amount_paid, 0)
        self.assertEqual(enrollment.scheduled_at, self.slot.starts_at)
        self.assertEqual(self.gateway.orders, [])
        self.assertEqual(self._bookings(), 1)

        draft = workflow.draft
        draft.refresh_from_db()
        self.assertEqual(draft.stage, WorkflowStage.COURSE_PREVIEW)
        self.assertIsNone(draft.course)
        self.assertIsNone(draft.time_slot)

    def test_free_course_skips_gateway(self):
        workflow = self._at_payment_stage(self.client_user, course=self.free_course)
        result = workflow.confirm(self.gateway)

        self.assertEqual(result['type'], 'confirmed')
        self.assertEqual(result['enrollment'].payment_status, PaymentStatus.PAID)
        self.assertEqual(result['enrollment'].amount_paid, 0)
        self.assertEqual(self.gateway.orders, [])

    def test_confirm_only_from_payment_stage(self):
        workflow = EnrollmentWorkflow.start(self.employee, self.course)
        with self.assertRaises(IncompleteWorkflowError):
            workflow.confirm(self.gateway)

    def test_submit_needs_every_selection(self):
        workflow = EnrollmentWorkflow.start(self.employee, self.course)
        with self.assertRaises(IncompleteWorkflowError):
            workflow.submit_enrollment(UserType.EMPLOYEE)

    def test_slot_taken_before_confirm_sends_user_back(self):
        slot = self._slot(self.coach, hour=14, max_bookings=1)
        workflow = self._at_payment_stage(self.employee, slot=slot)
        SlotLedger.reserve_slot(slot.pk)

        result = workflow.confirm(self.gateway)

        self.assertEqual(result['type'], 'slot_full')
        self.assertEqual(workflow.stage, WorkflowStage.SLOT_SELECTION)
        self.assertIsNone(workflow.draft.time_slot)
        self.assertEqual(workflow.draft.course, self.course)
        self.assertFalse(Enrollment.objects.exists())
        self.assertEqual(self._bookings(slot), 1)

    def test_database_failure_leaves_nothing_behind(self):
        workflow = self._at_payment_stage(self.employee)

        with mock.patch.object(Enrollment.objects, 'create', side_effect=DatabaseError('disk full')):
            with self.assertRaises(PersistenceError):
                workflow.confirm(self.gateway)

        self.assertFalse(Enrollment.objects.exists())
        self.assertEqual(self._bookings(), 0)
        self.assertEqual(workflow.stage, WorkflowStage.PAYMENT)
        self.assertEqual(workflow.draft.time_slot, self.slot)


class PaidEnrollmentTests(EnrollmentWorkflowTestBase):
    def _checkout(self, user=None, slot=None):
        workflow = self._at_payment_stage(user or self.client_user, slot=slot)
        result = workflow.confirm(self.gateway)
        self.assertEqual(result['type'], 'checkout')
        return workflow, result

    def test_confirm_starts_checkout_and_holds_seat(self):
        workflow, result = self._checkout()

        self.assertEqual(result['gateway_order_id'], 'cs_test_1')
        self.assertTrue(result['url'].endswith(result['order_ref']))
        self.assertEqual(self.gateway.orders[0]['amount'], 50000)
        self.assertEqual(self.gateway.orders[0]['currency'], 'INR')
        self.assertEqual(self._bookings(), 1)
        self.assertFalse(Enrollment.objects.exists())
        self.assertEqual(workflow.draft.payment_state, PaymentState.AWAITING)

    def test_confirm_again_reuses_open_checkout(self):
        workflow, first = self._checkout()
        second = workflow.confirm(self.gateway)

        self.assertEqual(second, first)
        self.assertEqual(len(self.gateway.orders), 1)
        self.assertEqual(self._bookings(), 1)

    def test_selection_locked_while_paying(self):
        workflow, _ = self._checkout()
        with self.assertRaises(ValidationError):
            workflow.select_coach(self.other_coach)

    def test_payment_success_creates_enrollment(self):
        workflow, checkout = self._checkout()

        result = EnrollmentWorkflow.handle_payment_success(checkout['order_ref'], 'cs_test_1')

        self.assertEqual(result['type'], 'confirmed')
        enrollment = result['enrollment']
        self.assertEqual(enrollment.payment_status, PaymentStatus.PAID)
        self.assertEqual(enrollment.amount_paid, 50000)
        self.assertEqual(enrollment.payment_reference, 'cs_test_1')
        # The held seat becomes the enrollment's seat
        self.assertEqual(self._bookings(), 1)

        workflow.draft.refresh_from_db()
        self.assertEqual(workflow.draft.stage, WorkflowStage.COURSE_PREVIEW)
        self.assertFalse(workflow.draft.holds_reservation)
        self.assertIsNone(workflow.draft.order_ref)

    def test_repeated_success_is_ignored(self):
        _, checkout = self._checkout()
        EnrollmentWorkflow.handle_payment_success(checkout['order_ref'], 'cs_test_1')

        result = EnrollmentWorkflow.handle_payment_success(checkout['order_ref'], 'cs_test_1')

        self.assertEqual(result, {'type': 'ignored'})
        self.assertEqual(Enrollment.objects.count(), 1)
        self.assertEqual(self._bookings(), 1)

    def test_unknown_order_is_ignored(self):
        self.assertEqual(EnrollmentWorkflow.handle_payment_success('nope'), {'type': 'ignored'})
        self.assertEqual(EnrollmentWorkflow.handle_payment_failure('nope'), {'type': 'ignored'})
        self.assertEqual(EnrollmentWorkflow.handle_payment_cancel('nope'), {'type': 'ignored'})

    def test_payment_failure_releases_seat_and_allows_retry(self):
        workflow, checkout = self._checkout()

        result = EnrollmentWorkflow.handle_payment_failure(checkout['order_ref'], 'Card declined')

        self.assertEqual(result, {'type': 'payment_error', 'error': 'Card declined'})
        self.assertEqual(self._bookings(), 0)
        workflow.draft.refresh_from_db()
        self.assertEqual(workflow.stage, WorkflowStage.PAYMENT)
        self.assertEqual(workflow.draft.time_slot, self.slot)
        self.assertEqual(workflow.draft.payment_state, PaymentState.FAILED)

        retry = workflow.confirm(self.gateway)
        self.assertEqual(retry['type'], 'checkout')
        # Same order, new checkout session
        self.assertEqual(retry['order_ref'], checkout['order_ref'])
        self.assertEqual(retry['gateway_order_id'], 'cs_test_2')
        self.assertEqual(self._bookings(), 1)

    def test_payment_cancel_releases_seat(self):
        workflow, checkout = self._checkout()

        result = EnrollmentWorkflow.handle_payment_cancel(checkout['order_ref'], gateway=self.gateway)

        self.assertEqual(result, {'type': 'cancelled'})
        self.assertEqual(self._bookings(), 0)
        self.assertEqual(self.gateway.cancelled, ['cs_test_1'])
        workflow.draft.refresh_from_db()
        self.assertEqual(workflow.draft.payment_state, PaymentState.CANCELLED)
        self.assertEqual(workflow.stage, WorkflowStage.PAYMENT)

    def test_gateway_error_keeps_user_on_payment_stage(self):
        workflow = self._at_payment_stage(self.client_user)

        result = workflow.confirm(FakeGateway(fail=True))

        self.assertEqual(result, {'type': 'payment_error', 'error': 'Card network unavailable.'})
        self.assertEqual(self._bookings(), 0)
        self.assertEqual(workflow.stage, WorkflowStage.PAYMENT)
        self.assertTrue(workflow.draft.is_complete)

    def test_unsaved_checkout_gives_the_seat_back(self):
        workflow = self._at_payment_stage(self.client_user)
        save = EnrollmentDraft.save

        def save_fails_when_awaiting(draft, *args, **kwargs):
            if draft.payment_state == PaymentState.AWAITING:
                raise DatabaseError("connection lost")
            return save(draft, *args, **kwargs)

        with mock.patch.object(EnrollmentDraft, 'save', autospec=True, side_effect=save_fails_when_awaiting):
            with self.assertRaises(PersistenceError):
                workflow.confirm(self.gateway)

        self.assertEqual(self._bookings(), 0)
        self.assertEqual(self.gateway.cancelled, ['cs_test_1'])
        workflow.draft.refresh_from_db()
        self.assertFalse(workflow.draft.holds_reservation)
        self.assertEqual(workflow.draft.payment_state, PaymentState.NONE)

        retry = workflow.confirm(self.gateway)
        self.assertEqual(retry['type'], 'checkout')
        self.assertEqual(self._bookings(), 1)

        EnrollmentWorkflow.handle_payment_failure(retry['order_ref'], 'Card declined')
        self.assertEqual(self._bookings(), 0)

    def test_unexpected_gateway_error_gives_the_seat_back(self):
        workflow = self._at_payment_stage(self.client_user)

        with mock.patch.object(FakeGateway, 'create_order', side_effect=RuntimeError("boom")):
            with self.assertRaises(RuntimeError):
                workflow.confirm(self.gateway)

        self.assertEqual(self._bookings(), 0)
        self.assertFalse(workflow.draft.holds_reservation)

    def test_seat_already_held_is_not_taken_twice(self):
        workflow = self._at_payment_stage(self.client_user)
        SlotLedger.reserve_slot(self.slot.pk)
        EnrollmentDraft.objects.filter(pk=workflow.draft.pk).update(holds_reservation=True)
        workflow.draft.refresh_from_db()

        result = workflow.confirm(self.gateway)

        self.assertEqual(result['type'], 'checkout')
        self.assertEqual(self._bookings(), 1)

    def test_late_success_for_earlier_checkout_still_matches(self):
        workflow, first = self._checkout()
        EnrollmentWorkflow.handle_payment_failure(first['order_ref'], 'Card declined')
        second = workflow.confirm(self.gateway)
        self.assertEqual(second['gateway_order_id'], 'cs_test_2')

        result = EnrollmentWorkflow.handle_payment_success(first['order_ref'], 'cs_test_1', gateway=self.gateway)

        self.assertEqual(result['type'], 'confirmed')
        self.assertEqual(result['enrollment'].payment_reference, 'cs_test_1')
        # The replacement checkout is closed so it cannot be paid as well
        self.assertEqual(self.gateway.cancelled, ['cs_test_2'])
        self.assertEqual(self._bookings(), 1)

    def test_user_type_locked_while_paying(self):
        self._checkout()

        with self.assertRaises(ValidationError):
            EnrollmentWorkflow.start(self.client_user, user_type=UserType.EMPLOYEE)

        resumed = EnrollmentWorkflow.start(self.client_user)
        self.assertEqual(resumed.draft.user_type, UserType.INDIVIDUAL)
        self.assertEqual(resumed.draft.payment_state, PaymentState.AWAITING)

    def test_stepping_back_from_payment_abandons_checkout(self):
        workflow, _ = self._checkout()

        self.assertEqual(workflow.previous_step(), WorkflowStage.REVIEW)

        self.assertEqual(self._bookings(), 0)
        self.assertEqual(workflow.draft.payment_state, PaymentState.CANCELLED)
        self.assertFalse(workflow.draft.holds_reservation)

    def test_stale_payment_hold_expires(self):
        workflow, checkout = self._checkout()

        expired = EnrollmentWorkflow.expire_stale_payments(
            now=timezone.now() + timedelta(minutes=16), gateway=self.gateway
        )

        self.assertEqual(expired, 1)
        self.assertEqual(self._bookings(), 0)
        self.assertEqual(self.gateway.cancelled, ['cs_test_1'])
        workflow.draft.refresh_from_db()
        self.assertEqual(workflow.draft.payment_state, PaymentState.EXPIRED)

    def test_recent_payment_hold_is_kept(self):
        self._checkout()
        self.assertEqual(EnrollmentWorkflow.expire_stale_payments(gateway=self.gateway), 0)
        self.assertEqual(self._bookings(), 1)

    def test_late_success_after_expiry_reserves_again(self):
        _, checkout = self._checkout()
        EnrollmentWorkflow.expire_stale_payments(now=timezone.now() + timedelta(minutes=16), gateway=self.gateway)

        result = EnrollmentWorkflow.handle_payment_success(checkout['order_ref'], 'cs_test_1')

        self.assertEqual(result['type'], 'confirmed')
        self.assertEqual(self._bookings(), 1)

    def test_late_success_on_filled_slot_keeps_payment_for_new_slot(self):
        slot = self._slot(self.coach, hour=14, max_bookings=1)
        workflow, checkout = self._checkout(slot=slot)
        EnrollmentWorkflow.expire_stale_payments(now=timezone.now() + timedelta(minutes=16), gateway=self.gateway)
        SlotLedger.reserve_slot(slot.pk)

        result = EnrollmentWorkflow.handle_payment_success(checkout['order_ref'], 'cs_test_1')

        self.assertEqual(result['type'], 'slot_full')
        workflow.draft.refresh_from_db()
        self.assertEqual(workflow.stage, WorkflowStage.SLOT_SELECTION)
        self.assertEqual(workflow.draft.payment_state, PaymentState.CONFIRMED)
        self.assertFalse(Enrollment.objects.exists())

        # Picking another slot completes the enrollment without charging again
        workflow.select_time_slot(self.slot)
        workflow.next_step()
        workflow.next_step()
        result = workflow.confirm(self.gateway)

        self.assertEqual(result['type'], 'confirmed')
        self.assertEqual(result['enrollment'].payment_reference, 'cs_test_1')
        self.assertEqual(len(self.gateway.orders), 1)
        self.assertEqual(self._bookings(), 1)

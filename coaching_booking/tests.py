from datetime import timedelta
from io import StringIO
from unittest import mock

import stripe
from django.core.management import call_command
from django.test import override_settings
from django.urls import reverse
from django.utils import timezone

from coaching_availability.services import SlotLedger
from coaching_booking.models import Enrollment, EnrollmentDraft, EnrollmentStatus, PaymentState, PaymentStatus
from coaching_booking.test_services import EnrollmentWorkflowTestBase


class EnrollmentModelTests(EnrollmentWorkflowTestBase):
    def _enrollment(self):
        SlotLedger.reserve_slot(self.slot.pk)
        return Enrollment.objects.create(
            user=self.client_user,
            course=self.course,
            coach=self.coach,
            time_slot=self.slot,
            payment_status=PaymentStatus.PAID,
            scheduled_at=self.slot.starts_at,
            amount_paid=self.course.price,
        )

    def test_cancel_frees_the_seat(self):
        enrollment = self._enrollment()

        self.assertTrue(enrollment.cancel())

        self.assertEqual(enrollment.status, EnrollmentStatus.CANCELLED)
        self.assertEqual(self._bookings(), 0)
        # Already cancelled
        self.assertFalse(enrollment.cancel())
        self.assertEqual(self._bookings(), 0)

    def test_mark_completed(self):
        enrollment = self._enrollment()
        self.assertTrue(enrollment.mark_completed())
        enrollment.refresh_from_db()
        self.assertEqual(enrollment.status, EnrollmentStatus.COMPLETED)
        self.assertFalse(enrollment.cancel())


@override_settings(STRIPE_WEBHOOK_SECRET='whsec_test')
class StripeWebhookTests(EnrollmentWorkflowTestBase):
    def setUp(self):
        super().setUp()
        self.url = reverse('coaching_booking:stripe_webhook')
        workflow = self._at_payment_stage(self.client_user)
        self.checkout = workflow.confirm(self.gateway)
        self.draft = workflow.draft

    def _event(self, event_type, payment_status='paid', metadata_type='course_enrollment'):
        return {
            'type': event_type,
            'data': {'object': {
                'id': self.checkout['gateway_order_id'],
                'payment_status': payment_status,
                'client_reference_id': self.checkout['order_ref'],
                'metadata': {'type': metadata_type, 'order_ref': self.checkout['order_ref']},
            }},
        }

    def _post(self, event):
        with mock.patch('coaching_booking.webhooks.stripe.Webhook.construct_event', return_value=event):
            return self.client.post(self.url, data=b'{}', content_type='application/json', HTTP_STRIPE_SIGNATURE='t=1,v1=x')

    def test_completed_checkout_confirms_enrollment(self):
        response = self._post(self._event('checkout.session.completed'))

        self.assertEqual(response.status_code, 200)
        enrollment = Enrollment.objects.get()
        self.assertEqual(enrollment.payment_reference, 'cs_test_1')
        self.assertEqual(self._bookings(), 1)

    def test_redelivered_event_does_not_duplicate(self):
        self._post(self._event('checkout.session.completed'))
        response = self._post(self._event('checkout.session.completed'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(Enrollment.objects.count(), 1)

    def test_unpaid_completion_waits_for_async_payment(self):
        self._post(self._event('checkout.session.completed', payment_status='unpaid'))
        self.assertFalse(Enrollment.objects.exists())

        self._post(self._event('checkout.session.async_payment_succeeded'))
        self.assertEqual(Enrollment.objects.count(), 1)

    def test_failed_async_payment_releases_seat(self):
        self._post(self._event('checkout.session.async_payment_failed'))

        self.draft.refresh_from_db()
        self.assertEqual(self.draft.payment_state, PaymentState.FAILED)
        self.assertEqual(self._bookings(), 0)

    def test_expired_session_releases_seat(self):
        self._post(self._event('checkout.session.expired'))

        self.draft.refresh_from_db()
        self.assertEqual(self.draft.payment_state, PaymentState.CANCELLED)
        self.assertEqual(self._bookings(), 0)

    def test_other_checkout_types_are_ignored(self):
        response = self._post(self._event('checkout.session.completed', metadata_type='shop_order'))

        self.assertEqual(response.status_code, 200)
        self.assertFalse(Enrollment.objects.exists())
        self.assertEqual(self._bookings(), 1)

    def test_bad_signature_rejected(self):
        error = stripe.SignatureVerificationError('No signatures found', 'bad')
        with mock.patch('coaching_booking.webhooks.stripe.Webhook.construct_event', side_effect=error):
            response = self.client.post(self.url, data=b'{}', content_type='application/json', HTTP_STRIPE_SIGNATURE='bad')

        self.assertEqual(response.status_code, 400)
        self.assertFalse(Enrollment.objects.exists())


class PaymentReturnViewTests(EnrollmentWorkflowTestBase):
    def setUp(self):
        super().setUp()
        workflow = self._at_payment_stage(self.client_user)
        self.checkout = workflow.confirm(self.gateway)
        self.client.force_login(self.client_user)
        self.url = reverse('coaching_booking:payment_return')

    def test_cancelled_checkout_releases_seat(self):
        response = self.client.get(self.url, {'order': self.checkout['order_ref'], 'cancelled': '1'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['payment_state'], PaymentState.CANCELLED)
        self.assertEqual(self._bookings(), 0)

    def test_return_reports_state(self):
        response = self.client.get(self.url, {'order': self.checkout['order_ref']})
        self.assertEqual(response.json()['payment_state'], PaymentState.AWAITING)
        self.assertEqual(self._bookings(), 1)

    def test_other_users_order_not_found(self):
        self.client.force_login(self.employee)
        response = self.client.get(self.url, {'order': self.checkout['order_ref']})
        self.assertEqual(response.status_code, 404)


class ExpirePaymentHoldsCommandTests(EnrollmentWorkflowTestBase):
    def test_command_releases_stale_holds(self):
        workflow = self._at_payment_stage(self.client_user)
        workflow.confirm(self.gateway)
        EnrollmentDraft.objects.filter(pk=workflow.draft.pk).update(
            payment_started_at=timezone.now() - timedelta(minutes=30)
        )

        out = StringIO()
        call_command('expire_payment_holds', stdout=out)

        self.assertIn('Released 1 stale payment holds', out.getvalue())
        self.assertEqual(self._bookings(), 0)
        workflow.draft.refresh_from_db()
        self.assertEqual(workflow.draft.payment_state, PaymentState.EXPIRED)

    def test_command_with_nothing_to_do(self):
        out = StringIO()
        call_command('expire_payment_holds', stdout=out)
        self.assertIn('No stale payment holds found', out.getvalue())

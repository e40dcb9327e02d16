import logging
import uuid
from datetime import timedelta

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import DatabaseError, transaction
from django.utils import timezone

from accounts.models import UserType
from accounts.services import CoachDirectory
from coaching_availability.services import SlotLedger
from core.exceptions import (
    IncompleteWorkflowError,
    PaymentGatewayError,
    PersistenceError,
    SlotFullError,
)
from payments.gateway import get_payment_gateway
from .models import Enrollment, EnrollmentDraft, EnrollmentStatus, PaymentState, PaymentStatus, WorkflowStage

logger = logging.getLogger(__name__)


class EnrollmentWorkflow:
    """
    Drives a user from course preview to a confirmed Enrollment:

        1 course preview -> 2 coach -> 3 time slot -> 4 review -> 5 payment

    Selections can be made in any order, but the user can only move forward
    once the current stage's selection is in place. Employees and free
    courses skip payment; everyone else pays through the gateway while the
    draft holds their seat.

    Results of confirm() and the payment callbacks are dicts keyed by 'type':
    'confirmed', 'checkout', 'slot_full', 'payment_error', 'cancelled' or
    'ignored'.
    """

    def __init__(self, draft):
        self.draft = draft

    @classmethod
    def start(cls, user, course=None, user_type=None):
        draft, _ = EnrollmentDraft.objects.get_or_create(
            user=user,
            defaults={'user_type': user_type or user.user_type},
        )
        workflow = cls(draft)
        new_type = user_type or user.user_type
        if draft.user_type != new_type:
            workflow._ensure_editable()
            draft.user_type = new_type
        if course is not None:
            workflow.set_course(course)
        else:
            draft.save()
        return workflow

    @property
    def stage(self):
        return self.draft.stage

    def _ensure_editable(self):
        if self.draft.holds_reservation or self.draft.payment_state == PaymentState.AWAITING:
            raise ValidationError("A payment is in progress. Go back a step to change your selection.")

    # --- Selections ---

    def set_course(self, course):
        self._ensure_editable()
        if not course.is_active:
            raise ValidationError("This course is not currently offered.")
        self.draft.course = course
        self.draft.save()

    def select_coach(self, coach):
        self._ensure_editable()
        draft = self.draft
        draft.coach = coach
        if draft.time_slot_id and draft.time_slot.coach_id != coach.pk:
            draft.time_slot = None
        draft.save()

    def select_time_slot(self, slot):
        self._ensure_editable()
        draft = self.draft
        if draft.coach_id and slot.coach_id != draft.coach_id:
            raise ValidationError("That time slot belongs to a different coach.")
        if not SlotLedger.list_available_slots(slot.coach).filter(pk=slot.pk).exists():
            raise ValidationError("That time slot is no longer available.")
        draft.time_slot = slot
        draft.last_error = ''
        draft.save()

    # --- Navigation ---

    def next_step(self):
        draft = self.draft
        if draft.stage == WorkflowStage.COURSE_PREVIEW and not draft.course_id:
            raise IncompleteWorkflowError("Please choose a course first.")
        if draft.stage == WorkflowStage.COACH_SELECTION and not draft.coach_id:
            raise IncompleteWorkflowError("Please choose a coach first.")
        if draft.stage == WorkflowStage.SLOT_SELECTION and not draft.time_slot_id:
            raise IncompleteWorkflowError("Please choose a time slot first.")

        if draft.stage < WorkflowStage.PAYMENT:
            draft.stage += 1
            draft.save(update_fields=['stage', 'updated_at'])
        return draft.stage

    def previous_step(self):
        draft = self.draft
        with transaction.atomic():
            if draft.stage == WorkflowStage.PAYMENT:
                self._abandon_payment()
            draft.stage = max(draft.stage - 1, WorkflowStage.COURSE_PREVIEW)
            draft.save()
        return draft.stage

    def coach_candidates(self, directory=None):
        """Coaches whose specialties overlap the selected course's tags."""
        course = self.draft.course
        if course is None:
            raise IncompleteWorkflowError("Please choose a course first.")

        directory = directory or CoachDirectory()
        tags = course.tag_set()
        if tags:
            coaches = directory.list_coaches({'specialties': sorted(tags)})
        else:
            coaches = directory.list_coaches()

        if not coaches:
            logger.info(f"No coach matches course {course.pk} tags {sorted(tags)}.")
            return {'type': 'no_matching_coach', 'coaches': []}
        return {'type': 'coaches', 'coaches': coaches}

    # --- Confirmation ---

    def confirm(self, gateway=None):
        draft = self.draft
        if draft.stage != WorkflowStage.PAYMENT:
            raise IncompleteWorkflowError("Please review your enrollment before confirming.")
        if not draft.is_complete:
            raise IncompleteWorkflowError()

        # Already paid for, e.g. the original slot filled up before payment landed
        if draft.payment_state == PaymentState.CONFIRMED:
            return self._submit_or_reselect(payment_reference=draft.gateway_order_id)

        if draft.user_type == UserType.EMPLOYEE or draft.course.is_free:
            return self._submit_or_reselect()

        if draft.payment_state == PaymentState.AWAITING:
            return self._checkout_result()

        return self._begin_payment(gateway or get_payment_gateway())

    def _submit_or_reselect(self, payment_reference=''):
        try:
            enrollment = self.submit_enrollment(self.draft.user_type, payment_reference=payment_reference)
        except SlotFullError as e:
            return self._slot_full(e)
        return {'type': 'confirmed', 'enrollment': enrollment}

    def _begin_payment(self, gateway):
        draft = self.draft
        # A seat left behind by an interrupted attempt is reused, never doubled
        if not draft.holds_reservation:
            try:
                with transaction.atomic():
                    SlotLedger.reserve_slot(draft.time_slot_id)
                    draft.holds_reservation = True
                    draft.save(update_fields=['holds_reservation', 'updated_at'])
            except SlotFullError as e:
                draft.refresh_from_db()
                return self._slot_full(e)
            except (DatabaseError, PersistenceError) as e:
                draft.refresh_from_db()
                logger.error(f"Could not hold slot {draft.time_slot_id} for draft {draft.pk}: {e}", exc_info=True)
                if isinstance(e, PersistenceError):
                    raise
                raise PersistenceError(draft_id=draft.pk) from e

        # Retries keep the same reference so a late success for an earlier checkout still matches
        order_ref = draft.order_ref or uuid.uuid4().hex
        try:
            course = draft.course
            metadata = {
                'order_ref': order_ref,
                'user_id': draft.user_id,
                'email': draft.user.email,
                'course_id': course.pk,
                'course_title': course.title,
                'coach_id': draft.coach_id,
                'time_slot_id': draft.time_slot_id,
            }
            order = gateway.create_order(course.price, settings.PAYMENT_CURRENCY, metadata)
        except PaymentGatewayError as e:
            with transaction.atomic():
                self._release_hold()
                draft.payment_state = PaymentState.FAILED
                draft.last_error = str(e)
                draft.save()
            logger.warning(f"Payment could not be started for draft {draft.pk}: {e}")
            return {'type': 'payment_error', 'error': str(e)}
        except Exception as e:
            logger.error(f"Payment could not be started for draft {draft.pk}: {e}", exc_info=True)
            self._drop_hold()
            if isinstance(e, DatabaseError):
                raise PersistenceError(draft_id=draft.pk) from e
            raise

        draft.order_ref = order['order_ref']
        draft.gateway_order_id = order['gateway_order_id']
        draft.checkout_url = order['url']
        draft.payment_state = PaymentState.AWAITING
        draft.payment_started_at = timezone.now()
        draft.last_error = ''
        try:
            draft.save()
        except DatabaseError as e:
            logger.error(f"Checkout {order['gateway_order_id']} for draft {draft.pk} could not be saved: {e}", exc_info=True)
            try:
                gateway.cancel_order(order['gateway_order_id'])
            except PaymentGatewayError as cancel_error:
                logger.warning(f"Could not cancel gateway order {order['gateway_order_id']}: {cancel_error}")
            self._drop_hold()
            raise PersistenceError(draft_id=draft.pk) from e

        logger.info(f"Draft {draft.pk} awaiting payment for order {draft.order_ref}.")
        return self._checkout_result()

    def _checkout_result(self):
        draft = self.draft
        return {
            'type': 'checkout',
            'order_ref': draft.order_ref,
            'gateway_order_id': draft.gateway_order_id,
            'url': draft.checkout_url,
        }

    def _slot_full(self, error):
        draft = self.draft
        self._release_hold()
        draft.time_slot = None
        draft.stage = WorkflowStage.SLOT_SELECTION
        draft.last_error = str(error)
        draft.save()
        return {'type': 'slot_full', 'error': str(error)}

    def submit_enrollment(self, user_type=None, payment_reference=''):
        """
        Creates the Enrollment and resets the draft for the next booking.

        The seat is taken in the same transaction unless the draft already
        holds one from the payment stage. On a database failure nothing is
        created and any held seat stays with the draft so the call can be
        retried.
        """
        draft = self.draft
        if not draft.is_complete:
            raise IncompleteWorkflowError()

        is_employee = (user_type or draft.user_type) == UserType.EMPLOYEE
        course = draft.course

        try:
            with transaction.atomic():
                if draft.holds_reservation:
                    slot = draft.time_slot
                else:
                    slot = SlotLedger.reserve_slot(draft.time_slot_id)

                enrollment = Enrollment.objects.create(
                    user=draft.user,
                    course=course,
                    coach=draft.coach,
                    time_slot=slot,
                    status=EnrollmentStatus.CONFIRMED,
                    payment_status=PaymentStatus.SKIPPED if is_employee else PaymentStatus.PAID,
                    scheduled_at=slot.scheduled_at,
                    amount_paid=0 if is_employee else course.price,
                    payment_reference=payment_reference or '',
                )

                draft.holds_reservation = False
                draft.clear_selections()
                draft.clear_payment()
                draft.stage = WorkflowStage.COURSE_PREVIEW
                draft.last_error = ''
                draft.save()
        except (DatabaseError, PersistenceError) as e:
            draft.refresh_from_db()
            logger.error(f"Enrollment for draft {draft.pk} could not be saved: {e}", exc_info=True)
            if isinstance(e, PersistenceError):
                raise
            raise PersistenceError(draft_id=draft.pk) from e

        logger.info(f"Enrollment {enrollment.pk} confirmed for user {enrollment.user_id} on slot {enrollment.time_slot_id}.")
        return enrollment

    # --- Holds ---

    def _release_hold(self):
        draft = self.draft
        if draft.holds_reservation:
            if draft.time_slot_id:
                SlotLedger.release_slot(draft.time_slot_id)
            draft.holds_reservation = False

    def _drop_hold(self):
        """Gives back a held seat after a failed payment start, without saving the draft itself."""
        draft = self.draft
        if not draft.holds_reservation:
            return
        with transaction.atomic():
            if draft.time_slot_id:
                SlotLedger.release_slot(draft.time_slot_id)
            EnrollmentDraft.objects.filter(pk=draft.pk).update(holds_reservation=False, updated_at=timezone.now())
        draft.refresh_from_db()

    def _cancel_gateway_order(self, gateway=None):
        if not self.draft.gateway_order_id:
            return
        try:
            (gateway or get_payment_gateway()).cancel_order(self.draft.gateway_order_id)
        except PaymentGatewayError as e:
            logger.warning(f"Could not cancel gateway order {self.draft.gateway_order_id}: {e}")

    def _abandon_payment(self):
        draft = self.draft
        self._release_hold()
        if draft.payment_state == PaymentState.AWAITING:
            self._cancel_gateway_order()
            draft.payment_state = PaymentState.CANCELLED

    # --- Payment callbacks ---

    @classmethod
    def _locked_draft(cls, order_ref):
        if not order_ref:
            return None
        return EnrollmentDraft.objects.select_for_update().filter(order_ref=order_ref).first()

    @classmethod
    def handle_payment_success(cls, order_ref, gateway_order_id='', gateway=None):
        """
        The gateway reports the order as paid. Safe to call more than once:
        an unknown or already settled order is ignored.

        A success for an earlier checkout of the same order closes the
        checkout that replaced it.
        """
        with transaction.atomic():
            draft = cls._locked_draft(order_ref)
            if draft is None or draft.payment_state in (PaymentState.NONE, PaymentState.CONFIRMED):
                logger.info(f"Ignoring payment success for unknown or settled order {order_ref}.")
                return {'type': 'ignored'}

            workflow = cls(draft)
            if (
                draft.payment_state == PaymentState.AWAITING
                and gateway_order_id
                and draft.gateway_order_id
                and gateway_order_id != draft.gateway_order_id
            ):
                workflow._cancel_gateway_order(gateway)
            draft.gateway_order_id = gateway_order_id or draft.gateway_order_id
            draft.payment_state = PaymentState.CONFIRMED
            draft.stage = WorkflowStage.PAYMENT
            draft.save()
            logger.info(f"Payment confirmed for order {order_ref} (draft {draft.pk}).")

            if not draft.is_complete:
                # Selection was changed after checkout; the payment is kept on the draft
                draft.stage = WorkflowStage.SLOT_SELECTION if draft.course_id and draft.coach_id else WorkflowStage.COURSE_PREVIEW
                draft.save()
                return {'type': 'slot_full', 'error': "Please choose your session again."}

            return workflow._submit_or_reselect(payment_reference=draft.gateway_order_id)

    @classmethod
    def handle_payment_failure(cls, order_ref, reason=''):
        with transaction.atomic():
            draft = cls._locked_draft(order_ref)
            if draft is None or draft.payment_state != PaymentState.AWAITING:
                logger.info(f"Ignoring payment failure for order {order_ref}.")
                return {'type': 'ignored'}

            cls(draft)._release_hold()
            draft.payment_state = PaymentState.FAILED
            draft.last_error = (reason or "Payment failed.")[:255]
            draft.save()

        logger.warning(f"Payment failed for order {order_ref}: {reason}")
        return {'type': 'payment_error', 'error': draft.last_error}

    @classmethod
    def handle_payment_cancel(cls, order_ref, gateway=None):
        with transaction.atomic():
            draft = cls._locked_draft(order_ref)
            if draft is None or draft.payment_state != PaymentState.AWAITING:
                logger.info(f"Ignoring payment cancellation for order {order_ref}.")
                return {'type': 'ignored'}

            workflow = cls(draft)
            workflow._release_hold()
            # The client may have left checkout without the gateway closing it
            workflow._cancel_gateway_order(gateway)
            draft.payment_state = PaymentState.CANCELLED
            draft.save()

        logger.info(f"Payment cancelled for order {order_ref}.")
        return {'type': 'cancelled'}

    @classmethod
    def expire_stale_payments(cls, now=None, gateway=None):
        """
        Releases seats held by payments that have been pending longer than
        PAYMENT_HOLD_MINUTES. Returns the number of drafts expired.
        """
        now = now or timezone.now()
        cutoff = now - timedelta(minutes=settings.PAYMENT_HOLD_MINUTES)
        stale_ids = list(
            EnrollmentDraft.objects.filter(
                payment_state=PaymentState.AWAITING,
                payment_started_at__lt=cutoff,
            ).values_list('pk', flat=True)
        )

        expired = 0
        for draft_id in stale_ids:
            with transaction.atomic():
                draft = (
                    EnrollmentDraft.objects.select_for_update()
                    .filter(pk=draft_id, payment_state=PaymentState.AWAITING)
                    .first()
                )
                if draft is None:
                    continue
                workflow = cls(draft)
                workflow._release_hold()
                workflow._cancel_gateway_order(gateway)
                draft.payment_state = PaymentState.EXPIRED
                draft.last_error = "Payment window expired."
                draft.save()
                expired += 1

        if expired:
            logger.info(f"Expired {expired} stale payment holds.")
        return expired

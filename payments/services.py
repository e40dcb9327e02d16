import logging
import string

from django.core.exceptions import ValidationError
from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone
from django.utils.crypto import get_random_string

from coaching_booking.models import Enrollment, EnrollmentStatus, PaymentStatus
from core.exceptions import (
    DuplicatePayoutError,
    InvalidPayoutTransitionError,
    NoBillableActivityError,
    PersistenceError,
    SettingsMissingError,
)
from .details import normalise_details
from .models import (
    PAYOUT_TRANSITIONS,
    Payout,
    PayoutLineItem,
    PayoutSettings,
    PayoutStatus,
    Purchase,
    PurchaseStatus,
)

logger = logging.getLogger(__name__)

PAYOUT_NUMBER_CHARS = string.ascii_uppercase + string.digits
SETTINGS_FIELDS = {'payment_rate_per_student', 'currency', 'bank_details', 'tax_details', 'is_active'}


def _student_name(user):
    return user.get_full_name() or user.username


class PayoutEngine:
    """
    Settles coach compensation: counts billable students in a period, turns
    them into a Payout with one line item each, and drives the payout through
    its status lifecycle.
    """

    @staticmethod
    def _billable_enrollments(coach, period_start, period_end):
        return (
            Enrollment.objects.filter(
                coach=coach,
                status__in=[EnrollmentStatus.CONFIRMED, EnrollmentStatus.COMPLETED],
                scheduled_at__date__gte=period_start,
                scheduled_at__date__lte=period_end,
                claimed_by_payout__isnull=True,
            )
            .exclude(payment_status=PaymentStatus.FAILED)
            .select_related('user', 'course')
        )

    @staticmethod
    def _billable_purchases(coach, period_start, period_end):
        return Purchase.objects.filter(
            coach=coach,
            status=PurchaseStatus.COMPLETED,
            enrollment__isnull=True,
            purchased_at__date__gte=period_start,
            purchased_at__date__lte=period_end,
            claimed_by_payout__isnull=True,
        ).select_related('user', 'course')

    @staticmethod
    def _validate_period(period_start, period_end):
        if period_start > period_end:
            raise ValidationError("Period start must be on or before period end.")

    @classmethod
    def calculate_payout(cls, coach, period_start, period_end):
        """
        Read-only summary of what the coach is owed for the period.

        A period with no billable students is a valid result (zero totals);
        it only becomes an error when someone tries to generate a payout.
        """
        cls._validate_period(period_start, period_end)

        settings_obj = PayoutSettings.objects.filter(coach=coach, is_active=True).first()
        rate = settings_obj.payment_rate_per_student if settings_obj else 0

        details = []
        for enrollment in cls._billable_enrollments(coach, period_start, period_end):
            details.append({
                'enrollment_id': enrollment.pk,
                'purchase_id': None,
                'student_name': _student_name(enrollment.user),
                'student_email': enrollment.user.email,
                'course_title': enrollment.course.title,
                'enrollment_date': enrollment.scheduled_at,
                'amount': rate,
            })
        for purchase in cls._billable_purchases(coach, period_start, period_end):
            details.append({
                'enrollment_id': None,
                'purchase_id': purchase.pk,
                'student_name': _student_name(purchase.user),
                'student_email': purchase.user.email,
                'course_title': purchase.course.title,
                'enrollment_date': purchase.purchased_at,
                'amount': rate,
            })
        details.sort(key=lambda d: d['enrollment_date'], reverse=True)

        return {
            'total_students': len(details),
            'payment_rate_per_student': rate,
            'gross_amount': len(details) * rate,
            'enrollment_details': details,
        }

    @staticmethod
    def _new_payout_number():
        prefix = f"PO-{timezone.now():%Y%m}-"
        while True:
            number = prefix + get_random_string(8, allowed_chars=PAYOUT_NUMBER_CHARS)
            if not Payout.objects.filter(payout_number=number).exists():
                return number

    @classmethod
    def generate_payout(cls, coach, period_start, period_end, tax_amount=0, notes=''):
        """
        Creates a pending Payout for the coach and period, snapshots one line
        item per billable student and claims those records so they cannot be
        paid twice.
        """
        cls._validate_period(period_start, period_end)
        if tax_amount < 0:
            raise ValidationError("Tax amount cannot be negative.")

        try:
            with transaction.atomic():
                # Serialises generation per coach
                settings_obj = (
                    PayoutSettings.objects.select_for_update()
                    .filter(coach=coach)
                    .first()
                )

                open_payouts = Payout.objects.filter(
                    coach=coach,
                    period_start=period_start,
                    period_end=period_end,
                ).exclude(status=PayoutStatus.CANCELLED)
                if open_payouts.exists():
                    raise DuplicatePayoutError(coach_id=coach.pk)

                summary = cls.calculate_payout(coach, period_start, period_end)
                if summary['total_students'] == 0:
                    raise NoBillableActivityError(coach_id=coach.pk)
                if settings_obj is None or not settings_obj.is_active:
                    raise SettingsMissingError(coach_id=coach.pk)

                gross = summary['gross_amount']
                if tax_amount > gross:
                    raise ValidationError("Tax amount cannot exceed the gross amount.")

                payout = Payout.objects.create(
                    payout_number=cls._new_payout_number(),
                    coach=coach,
                    period_start=period_start,
                    period_end=period_end,
                    total_students=summary['total_students'],
                    payment_rate_per_student=summary['payment_rate_per_student'],
                    gross_amount=gross,
                    tax_amount=tax_amount,
                    currency=settings_obj.currency,
                    status=PayoutStatus.PENDING,
                    notes=notes,
                )

                details = summary['enrollment_details']
                PayoutLineItem.objects.bulk_create([
                    PayoutLineItem(
                        payout=payout,
                        enrollment_id=d['enrollment_id'],
                        purchase_id=d['purchase_id'],
                        student_name=d['student_name'],
                        student_email=d['student_email'],
                        course_title=d['course_title'],
                        enrollment_date=d['enrollment_date'],
                        amount=d['amount'],
                    )
                    for d in details
                ])

                enrollment_ids = [d['enrollment_id'] for d in details if d['enrollment_id']]
                purchase_ids = [d['purchase_id'] for d in details if d['purchase_id']]
                claimed = Enrollment.objects.filter(
                    pk__in=enrollment_ids, claimed_by_payout__isnull=True
                ).update(claimed_by_payout=payout)
                claimed += Purchase.objects.filter(
                    pk__in=purchase_ids, claimed_by_payout__isnull=True
                ).update(claimed_by_payout=payout)
                if claimed != len(details):
                    raise DuplicatePayoutError(
                        "Some students were claimed by another payout. Please try again.",
                        coach_id=coach.pk,
                    )
        except IntegrityError as e:
            logger.warning(f"Payout for coach {coach.pk} ({period_start} - {period_end}) hit a constraint: {e}")
            raise DuplicatePayoutError(coach_id=coach.pk) from e
        except DatabaseError as e:
            logger.error(f"Generating payout for coach {coach.pk} failed: {e}", exc_info=True)
            raise PersistenceError(coach_id=coach.pk) from e

        logger.info(
            f"Generated payout {payout.payout_number} for coach {coach.pk}: "
            f"{payout.total_students} students, net {payout.net_amount} {payout.currency}."
        )
        return payout

    @staticmethod
    def update_payout_status(payout_id, new_status, payment_reference=None):
        """
        Moves a payout along its lifecycle. Paid and cancelled are final;
        cancelling frees the payout's students for a later payout.
        """
        if new_status not in PayoutStatus.values:
            raise InvalidPayoutTransitionError(f"Unknown payout status '{new_status}'.")

        try:
            with transaction.atomic():
                try:
                    payout = Payout.objects.select_for_update().get(pk=payout_id)
                except Payout.DoesNotExist:
                    raise ValidationError(f"Payout {payout_id} does not exist.")

                if new_status not in PAYOUT_TRANSITIONS.get(payout.status, set()):
                    raise InvalidPayoutTransitionError(
                        f"Cannot move payout {payout.payout_number} from {payout.status} to {new_status}.",
                        payout_id=payout.pk,
                    )

                previous = payout.status
                payout.status = new_status
                if payment_reference:
                    payout.payment_reference = payment_reference
                if new_status == PayoutStatus.PAID:
                    payout.payment_date = timezone.now()
                payout.save()

                if new_status == PayoutStatus.CANCELLED:
                    released = Enrollment.objects.filter(claimed_by_payout=payout).update(claimed_by_payout=None)
                    released += Purchase.objects.filter(claimed_by_payout=payout).update(claimed_by_payout=None)
                    logger.info(f"Cancelled payout {payout.payout_number} released {released} billable records.")
        except DatabaseError as e:
            logger.error(f"Updating payout {payout_id} to {new_status} failed: {e}", exc_info=True)
            raise PersistenceError(payout_id=payout_id) from e

        logger.info(f"Payout {payout.payout_number}: {previous} -> {new_status}.")
        return payout

    @staticmethod
    def get_line_items(payout_id):
        return PayoutLineItem.objects.filter(payout_id=payout_id).order_by('-enrollment_date', '-id')

    @staticmethod
    def create_or_update_coach_settings(coach, **fields):
        """
        Upserts the coach's payout settings. Bank and tax details may be given
        as a mapping or as text; text holding a JSON object is stored
        structured, anything else is kept as typed.
        """
        unknown = set(fields) - SETTINGS_FIELDS
        if unknown:
            raise ValidationError(f"Unknown payout settings: {', '.join(sorted(unknown))}.")

        for key in ('bank_details', 'tax_details'):
            if key in fields:
                fields[key] = normalise_details(fields[key])

        settings_obj = PayoutSettings.objects.filter(coach=coach).first()
        created = settings_obj is None
        if created:
            if fields.get('payment_rate_per_student') is None:
                raise ValidationError("A payment rate is required for new payout settings.")
            settings_obj = PayoutSettings(coach=coach)

        for key, value in fields.items():
            setattr(settings_obj, key, value)
        settings_obj.full_clean()

        try:
            settings_obj.save()
        except DatabaseError as e:
            logger.error(f"Saving payout settings for coach {coach.pk} failed: {e}", exc_info=True)
            raise PersistenceError(coach_id=coach.pk) from e

        logger.info(f"{'Created' if created else 'Updated'} payout settings for coach {coach.pk}.")
        return settings_obj

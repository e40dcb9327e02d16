from django.conf import settings
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from accounts.models import CoachProfile
from coaching_core.models import Course
from .details import normalise_details
from .fields import PayoutDetailsField


class PayoutSettings(models.Model):
    """Per-coach pay rate and payment details. Upserted by staff."""
    coach = models.OneToOneField(
        CoachProfile,
        on_delete=models.CASCADE,
        related_name='payout_settings',
    )
    payment_rate_per_student = models.PositiveIntegerField(
        help_text="Amount owed per billable student, in minor currency units."
    )
    currency = models.CharField(max_length=3, default='INR')

    bank_details = PayoutDetailsField(
        max_length=4096, null=True, blank=True,
        help_text="JSON object, e.g. {\"account_number\": \"...\", \"ifsc\": \"...\"}, or plain text."
    )
    tax_details = PayoutDetailsField(
        max_length=4096, null=True, blank=True,
        help_text="JSON object, e.g. {\"pan\": \"...\", \"gst\": \"...\"}, or plain text."
    )
    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Coach Payout Settings"
        verbose_name_plural = "Coach Payout Settings"
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.coach.name}: {self.payment_rate_per_student} {self.currency} per student"

    def save(self, *args, **kwargs):
        self.bank_details = normalise_details(self.bank_details)
        self.tax_details = normalise_details(self.tax_details)
        self.currency = (self.currency or 'INR').upper()
        super().save(*args, **kwargs)


class PayoutStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    PROCESSING = 'processing', 'Processing'
    PAID = 'paid', 'Paid'
    FAILED = 'failed', 'Failed'
    CANCELLED = 'cancelled', 'Cancelled'


# Paid and cancelled payouts are closed for good. A failed bank transfer can
# be retried by moving it back to processing.
PAYOUT_TRANSITIONS = {
    PayoutStatus.PENDING: {PayoutStatus.PROCESSING, PayoutStatus.PAID, PayoutStatus.CANCELLED},
    PayoutStatus.PROCESSING: {PayoutStatus.PAID, PayoutStatus.FAILED, PayoutStatus.CANCELLED},
    PayoutStatus.FAILED: {PayoutStatus.PROCESSING, PayoutStatus.CANCELLED},
    PayoutStatus.PAID: set(),
    PayoutStatus.CANCELLED: set(),
}


class Payout(models.Model):
    payout_number = models.CharField(max_length=32, unique=True, editable=False)
    coach = models.ForeignKey(CoachProfile, on_delete=models.PROTECT, related_name='payouts')
    period_start = models.DateField()
    period_end = models.DateField()

    total_students = models.PositiveIntegerField()
    # Snapshot of the coach's rate when the payout was generated
    payment_rate_per_student = models.PositiveIntegerField()
    gross_amount = models.PositiveIntegerField()
    tax_amount = models.PositiveIntegerField(default=0)
    net_amount = models.IntegerField(editable=False, help_text="Always gross minus tax.")
    currency = models.CharField(max_length=3, default='INR')

    status = models.CharField(max_length=20, choices=PayoutStatus.choices, default=PayoutStatus.PENDING)
    payment_date = models.DateTimeField(null=True, blank=True)
    payment_reference = models.CharField(max_length=255, blank=True)
    notes = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['coach', 'period_start', 'period_end'],
                condition=~Q(status='cancelled'),
                name='unique_open_payout_per_coach_period',
            ),
            models.CheckConstraint(condition=Q(period_start__lte=F('period_end')), name='payout_period_ordered'),
            models.CheckConstraint(
                condition=Q(net_amount=F('gross_amount') - F('tax_amount')),
                name='payout_net_is_gross_minus_tax',
            ),
        ]

    def __str__(self):
        return f"{self.payout_number} ({self.coach.name}, {self.get_status_display()})"

    def save(self, *args, **kwargs):
        self.net_amount = self.gross_amount - self.tax_amount
        update_fields = kwargs.get('update_fields')
        if update_fields is not None and {'gross_amount', 'tax_amount'} & set(update_fields):
            kwargs['update_fields'] = set(update_fields) | {'net_amount'}
        super().save(*args, **kwargs)

    def can_transition_to(self, status):
        return status in PAYOUT_TRANSITIONS.get(self.status, set())

    @property
    def is_closed(self):
        return not PAYOUT_TRANSITIONS.get(self.status)


class PayoutLineItem(models.Model):
    """
    One student's contribution to a payout, copied at generation time.
    Never updated afterwards; later edits to the student or course do not
    change historical payouts.
    """
    payout = models.ForeignKey(Payout, on_delete=models.CASCADE, related_name='line_items')
    enrollment = models.ForeignKey(
        'coaching_booking.Enrollment',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='payout_line_items',
    )
    purchase = models.ForeignKey(
        'Purchase',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='payout_line_items',
    )
    student_name = models.CharField(max_length=255)
    student_email = models.EmailField(blank=True)
    course_title = models.CharField(max_length=255)
    enrollment_date = models.DateTimeField()
    amount = models.PositiveIntegerField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-enrollment_date']
        constraints = [
            models.CheckConstraint(
                condition=(
                    (Q(enrollment__isnull=False) & Q(purchase__isnull=True))
                    | (Q(enrollment__isnull=True) & Q(purchase__isnull=False))
                ),
                name='payout_line_item_single_source',
            ),
        ]

    def __str__(self):
        return f"{self.student_name} - {self.course_title}"


class PurchaseStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    COMPLETED = 'completed', 'Completed'
    FAILED = 'failed', 'Failed'
    REFUNDED = 'refunded', 'Refunded'


class Purchase(models.Model):
    """
    A course bought outside the booking flow (e.g. a programme bundle).
    Completed purchases count towards the coach's payout unless they are
    already represented by an enrollment.
    """
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='purchases')
    course = models.ForeignKey(Course, on_delete=models.PROTECT, related_name='purchases')
    coach = models.ForeignKey(CoachProfile, on_delete=models.PROTECT, related_name='purchases')
    enrollment = models.ForeignKey(
        'coaching_booking.Enrollment',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='purchases',
    )
    amount_paid = models.PositiveIntegerField(default=0)
    status = models.CharField(max_length=20, choices=PurchaseStatus.choices, default=PurchaseStatus.PENDING)
    transaction_id = models.CharField(max_length=255, blank=True)
    purchased_at = models.DateTimeField(default=timezone.now)

    claimed_by_payout = models.ForeignKey(
        Payout,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='claimed_purchases',
    )

    class Meta:
        ordering = ['-purchased_at']

    def __str__(self):
        return f"{self.user} bought {self.course} ({self.get_status_display()})"

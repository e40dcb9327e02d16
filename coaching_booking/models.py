from django.conf import settings
from django.db import models
from django.db import transaction
from django.utils import timezone

from accounts.models import CoachProfile, UserType
from coaching_availability.models import TimeSlot
from coaching_availability.services import SlotLedger
from coaching_core.models import Course


class EnrollmentStatus(models.TextChoices):
    CONFIRMED = 'confirmed', 'Confirmed'
    CANCELLED = 'cancelled', 'Cancelled'
    COMPLETED = 'completed', 'Completed'


class PaymentStatus(models.TextChoices):
    PAID = 'paid', 'Paid'
    SKIPPED = 'skipped', 'Skipped'
    FAILED = 'failed', 'Failed'


class Enrollment(models.Model):
    """
    A client booked onto a course with a coach in a specific time slot.
    Created once per completed enrollment workflow; counts towards the
    coach's payout while confirmed or completed.
    """
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='enrollments')
    course = models.ForeignKey(Course, on_delete=models.PROTECT, related_name='enrollments')
    coach = models.ForeignKey(CoachProfile, on_delete=models.PROTECT, related_name='enrollments')
    # A slot with bookings against it can never be deleted
    time_slot = models.ForeignKey(TimeSlot, on_delete=models.PROTECT, related_name='enrollments')

    status = models.CharField(max_length=20, choices=EnrollmentStatus.choices, default=EnrollmentStatus.CONFIRMED)
    payment_status = models.CharField(max_length=20, choices=PaymentStatus.choices)
    scheduled_at = models.DateTimeField()
    amount_paid = models.PositiveIntegerField(default=0, help_text="Minor currency units.")
    payment_reference = models.CharField(max_length=255, blank=True)

    claimed_by_payout = models.ForeignKey(
        'payments.Payout',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='claimed_enrollments',
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-scheduled_at']
        indexes = [models.Index(fields=['coach', 'scheduled_at'], name='enrollment_coach_sched_idx')]

    def __str__(self):
        return f"{self.user} - {self.course.title} with {self.coach.name} ({self.get_status_display()})"

    def mark_completed(self):
        if self.status != EnrollmentStatus.CONFIRMED:
            return False
        self.status = EnrollmentStatus.COMPLETED
        self.save(update_fields=['status'])
        return True

    def cancel(self):
        """Cancels the enrollment and gives its seat back to the slot."""
        if self.status != EnrollmentStatus.CONFIRMED:
            return False
        with transaction.atomic():
            self.status = EnrollmentStatus.CANCELLED
            self.save(update_fields=['status'])
            if self.time_slot.starts_at > timezone.now():
                SlotLedger.release_slot(self.time_slot_id)
        return True


class WorkflowStage(models.IntegerChoices):
    COURSE_PREVIEW = 1, 'Course preview'
    COACH_SELECTION = 2, 'Coach selection'
    SLOT_SELECTION = 3, 'Time slot selection'
    REVIEW = 4, 'Review'
    PAYMENT = 5, 'Payment'


class PaymentState(models.TextChoices):
    NONE = '', 'Not started'
    AWAITING = 'awaiting', 'Awaiting payment'
    CONFIRMED = 'confirmed', 'Payment confirmed'
    FAILED = 'failed', 'Payment failed'
    CANCELLED = 'cancelled', 'Payment cancelled'
    EXPIRED = 'expired', 'Payment expired'


class EnrollmentDraft(models.Model):
    """
    Where a user is in the enrollment workflow. Each step, and the payment
    provider's callback, arrives as a separate request, so progress lives
    here rather than in memory.

    While `holds_reservation` is set the draft owns one seat on `time_slot`
    and is responsible for giving it back.
    """
    user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='enrollment_draft')
    stage = models.PositiveSmallIntegerField(choices=WorkflowStage.choices, default=WorkflowStage.COURSE_PREVIEW)
    course = models.ForeignKey(Course, on_delete=models.SET_NULL, null=True, blank=True, related_name='+')
    coach = models.ForeignKey(CoachProfile, on_delete=models.SET_NULL, null=True, blank=True, related_name='+')
    time_slot = models.ForeignKey(TimeSlot, on_delete=models.SET_NULL, null=True, blank=True, related_name='+')
    user_type = models.CharField(max_length=20, choices=UserType.choices, default=UserType.INDIVIDUAL)

    holds_reservation = models.BooleanField(default=False)
    payment_state = models.CharField(max_length=20, choices=PaymentState.choices, default=PaymentState.NONE, blank=True)
    order_ref = models.CharField(max_length=64, unique=True, null=True, blank=True)
    gateway_order_id = models.CharField(max_length=255, blank=True)
    checkout_url = models.URLField(max_length=2048, blank=True)
    payment_started_at = models.DateTimeField(null=True, blank=True)
    last_error = models.CharField(max_length=255, blank=True)

    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Enrollment Draft"
        verbose_name_plural = "Enrollment Drafts"
        indexes = [models.Index(fields=['payment_state', 'payment_started_at'], name='draft_payment_state_idx')]

    def __str__(self):
        return f"{self.user}: {self.get_stage_display()}"

    @property
    def is_complete(self):
        return bool(self.course_id and self.coach_id and self.time_slot_id)

    def clear_selections(self):
        self.course = None
        self.coach = None
        self.time_slot = None

    def clear_payment(self):
        self.payment_state = PaymentState.NONE
        self.order_ref = None
        self.gateway_order_id = ''
        self.checkout_url = ''
        self.payment_started_at = None

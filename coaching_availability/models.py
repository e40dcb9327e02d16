from datetime import datetime, timedelta

import pytz
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from accounts.models import CoachProfile


class SlotType(models.TextChoices):
    COACHING = 'coaching', 'Coaching'
    CONSULTATION = 'consultation', 'Consultation'


class TimeSlot(models.Model):
    """
    A window in a coach's calendar that can take up to `max_bookings` clients.

    `current_bookings` is only ever changed through SlotLedger, which uses a
    conditional UPDATE so concurrent bookings cannot overfill the slot.
    """
    coach = models.ForeignKey(
        CoachProfile,
        on_delete=models.CASCADE,
        related_name='time_slots',
    )
    date = models.DateField(help_text="Day of the session in the coach's time zone.")
    start_time = models.TimeField()
    end_time = models.TimeField()

    # Derived from date/start_time/end_time and the coach's time zone on save
    starts_at = models.DateTimeField(editable=False, db_index=True)
    ends_at = models.DateTimeField(editable=False)

    max_bookings = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])
    current_bookings = models.PositiveIntegerField(default=0, editable=False)
    slot_type = models.CharField(max_length=20, choices=SlotType.choices, default=SlotType.COACHING)
    is_available = models.BooleanField(
        default=True,
        help_text="Coaches can switch a slot off without deleting it."
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Time Slot"
        verbose_name_plural = "Time Slots"
        ordering = ['starts_at']
        indexes = [models.Index(fields=['coach', 'starts_at'], name='timeslot_coach_starts_idx')]
        constraints = [
            models.CheckConstraint(condition=Q(max_bookings__gte=1), name='timeslot_max_bookings_positive'),
            models.CheckConstraint(
                condition=Q(current_bookings__gte=0) & Q(current_bookings__lte=F('max_bookings')),
                name='timeslot_bookings_within_capacity',
            ),
        ]

    def __str__(self):
        return f"{self.coach.name}: {self.date} {self.start_time.strftime('%H:%M')}-{self.end_time.strftime('%H:%M')}"

    def clean(self):
        if self.start_time and self.end_time and self.start_time == self.end_time:
            raise ValidationError("A slot must end after it starts.")
        if self.pk:
            booked = TimeSlot.objects.filter(pk=self.pk).values_list('current_bookings', flat=True).first()
            if booked and self.max_bookings < booked:
                raise ValidationError(f"Capacity cannot drop below the {booked} existing bookings.")

    def save(self, *args, **kwargs):
        self.starts_at, self.ends_at = self._localised_bounds()
        if not self._state.adding and kwargs.get('update_fields') is None:
            # Occupancy belongs to SlotLedger; a stale instance must not overwrite it
            kwargs['update_fields'] = [
                f.name for f in self._meta.concrete_fields
                if not f.primary_key and f.name != 'current_bookings'
            ]
        super().save(*args, **kwargs)

    def _localised_bounds(self):
        try:
            coach_tz = pytz.timezone(self.coach.time_zone or 'UTC')
        except pytz.UnknownTimeZoneError:
            coach_tz = pytz.UTC

        start = coach_tz.localize(datetime.combine(self.date, self.start_time))
        end_date = self.date
        # Sessions that run past midnight end on the following day
        if self.end_time <= self.start_time:
            end_date = self.date + timedelta(days=1)
        end = coach_tz.localize(datetime.combine(end_date, self.end_time))
        return start.astimezone(pytz.UTC), end.astimezone(pytz.UTC)

    @property
    def scheduled_at(self):
        """The session start as an aware datetime (date + start time)."""
        return self.starts_at

    @property
    def remaining_capacity(self):
        return max(self.max_bookings - self.current_bookings, 0)

    @property
    def is_bookable(self):
        return (
            self.is_available
            and self.current_bookings < self.max_bookings
            and self.starts_at is not None
            and self.starts_at > timezone.now()
        )

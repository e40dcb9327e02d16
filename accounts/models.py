from django.db import models
from django.conf import settings
from django.contrib.auth.models import AbstractUser, UserManager as BaseUserManager
from django.core.validators import MaxValueValidator, MinValueValidator
from django.utils.translation import gettext_lazy as _


class UserType(models.TextChoices):
    INDIVIDUAL = 'individual', 'Individual'
    EMPLOYEE = 'employee', 'Employee'


class UserManager(BaseUserManager):
    """Custom manager for the User model."""

    def get_coaches(self):
        """Returns a queryset of all users where is_coach=True."""
        return self.get_queryset().filter(is_coach=True)

    def get_employees(self):
        return self.get_queryset().filter(user_type=UserType.EMPLOYEE)


class User(AbstractUser):
    is_coach = models.BooleanField(
        default=False,
        help_text=_("Designates whether this user is a coaching staff member.")
    )
    user_type = models.CharField(
        max_length=20,
        choices=UserType.choices,
        default=UserType.INDIVIDUAL,
        help_text=_("Employees enroll through their organisation and skip payment.")
    )

    objects = UserManager()

    def __str__(self):
        return self.username

    @property
    def is_employee(self):
        return self.user_type == UserType.EMPLOYEE


class CoachProfile(models.Model):
    """
    Public coaching profile. Read-only to the booking and payout services;
    maintained by staff through the admin.
    """
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='coach_profile',
        limit_choices_to={'is_coach': True}
    )
    bio = models.TextField(
        blank=True,
        help_text="A short bio describing the coach's style and background."
    )
    specialties = models.JSONField(
        default=list,
        blank=True,
        help_text="List of specialty tags, e.g. [\"tax planning\", \"retirement\"]."
    )
    rating = models.DecimalField(
        max_digits=3,
        decimal_places=2,
        default=0,
        validators=[MinValueValidator(0), MaxValueValidator(5)],
    )
    experience = models.CharField(
        max_length=50,
        blank=True,
        help_text="Display label, e.g. '8+ years'."
    )
    time_zone = models.CharField(
        max_length=50,
        default='UTC',
        help_text="The coach's local time zone for accurate scheduling conversions."
    )
    is_available_for_new_clients = models.BooleanField(
        default=True,
        help_text="Allows staff to quickly block new enrollments to this coach."
    )

    class Meta:
        ordering = ['-rating', 'id']

    def __str__(self):
        return f"Profile for {self.name}"

    @property
    def name(self):
        return self.user.get_full_name() or self.user.username

    def specialty_set(self):
        return {s.strip().lower() for s in (self.specialties or []) if s and s.strip()}

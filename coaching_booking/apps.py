from django.apps import AppConfig


class CoachingBookingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'coaching_booking'
    verbose_name = 'Coaching Booking'

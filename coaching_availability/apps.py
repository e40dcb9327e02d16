from django.apps import AppConfig


class CoachingAvailabilityConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'coaching_availability'
    verbose_name = 'Coach Availability'

from django.apps import AppConfig


class CoachingCoreConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'coaching_core'
    verbose_name = 'Course Catalogue'

from django.apps import AppConfig


class EconomyConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.economy'
    verbose_name = 'Economy'
    label = 'economy'

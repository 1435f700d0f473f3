from django.apps import AppConfig


class JobsConfig(AppConfig):
    name = 'apps.jobs'
    verbose_name = 'Settlement jobs'
    label = 'jobs'

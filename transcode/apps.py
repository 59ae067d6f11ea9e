from django.apps import AppConfig


class TranscodeConfig(AppConfig):
    name = "transcode"
    verbose_name = "Transcode flows"
    default_auto_field = "django.db.models.BigAutoField"

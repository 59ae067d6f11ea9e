import uuid
from django.db import models


class Upload(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    workspace_id = models.CharField(max_length=64, db_index=True)
    storage_key = models.CharField(max_length=512)      # relative to MEDIA_ROOT or S3 key
    original_name = models.CharField(max_length=255, blank=True, default="")
    size = models.PositiveBigIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)


class Media(models.Model):
    class MediaType(models.TextChoices):
        VIDEO = "video"
        AUDIO = "audio"
        IMAGE = "image"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    upload = models.ForeignKey(Upload, on_delete=models.CASCADE, related_name="media")
    media_type = models.CharField(max_length=16, choices=MediaType.choices, default=MediaType.VIDEO)
    media_date = models.DateTimeField(null=True, blank=True)
    duration = models.FloatField(default=0)
    width = models.PositiveIntegerField(default=0)
    height = models.PositiveIntegerField(default=0)
    aspect_ratio = models.FloatField(null=True, blank=True)
    has_audio = models.BooleanField(default=False)
    media_data = models.JSONField(default=dict, blank=True)   # probe output
    is_active = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)


class MediaFile(models.Model):
    class FileType(models.TextChoices):
        THUMBNAIL = "thumbnail"
        SPRITE = "sprite"
        FILMSTRIP = "filmstrip"
        PROXY = "proxy"
        AUDIO = "audio"

    media = models.ForeignKey(Media, on_delete=models.CASCADE, related_name="files")
    file_type = models.CharField(max_length=16, choices=FileType.choices)
    storage_key = models.CharField(max_length=512)
    mime_type = models.CharField(max_length=64, blank=True, default="")
    meta = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)


class Task(models.Model):
    class Status(models.TextChoices):
        QUEUED = "queued"
        RUNNING = "running"
        SUCCESS = "success"
        FAILED = "failed"
        CANCELED = "canceled"

    class Type(models.TextChoices):
        PROCESS_UPLOAD = "process_upload"

    TERMINAL_STATUSES = (Status.SUCCESS, Status.FAILED, Status.CANCELED)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    workspace_id = models.CharField(max_length=64, db_index=True)
    type = models.CharField(max_length=32, choices=Type.choices, default=Type.PROCESS_UPLOAD)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.QUEUED)
    progress = models.PositiveSmallIntegerField(default=0)  # 0..100
    attempts = models.PositiveSmallIntegerField(default=1)
    priority = models.SmallIntegerField(default=0)
    provider = models.CharField(max_length=32, blank=True, default="")
    # {uploadId, mediaId, thumbnail?, sprite?, filmstrip?, transcode?, audio?}
    payload = models.JSONField(default=dict, blank=True)
    # {steps: {<stepType>: StepResult}, completedSteps, failedSteps, startedAt, completedAt}
    result = models.JSONField(default=dict, blank=True)
    error_log = models.TextField(blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

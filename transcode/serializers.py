from rest_framework import serializers
from .models import Task

# Providers with an executor in this worker
SUPPORTED_PROVIDERS = ("ffmpeg",)


class ThumbnailConfigSerializer(serializers.Serializer):
    # seconds into the media, or "midpoint"
    timestamp = serializers.JSONField(default="midpoint")
    width = serializers.IntegerField(min_value=2)
    height = serializers.IntegerField(min_value=2)

    def validate_timestamp(self, value):
        if value == "midpoint":
            return value
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise serializers.ValidationError("Must be a non-negative number of seconds or 'midpoint'.")
        return value


class SpriteConfigSerializer(serializers.Serializer):
    fps = serializers.FloatField(min_value=0.001)
    cols = serializers.IntegerField(min_value=1)
    rows = serializers.IntegerField(min_value=1)
    tileWidth = serializers.IntegerField(min_value=2)
    tileHeight = serializers.IntegerField(min_value=2)


class FilmstripConfigSerializer(serializers.Serializer):
    cols = serializers.IntegerField(min_value=1)
    rows = serializers.IntegerField(min_value=1)
    tileWidth = serializers.IntegerField(min_value=2)
    tileHeight = serializers.IntegerField(min_value=2, required=False)


class TranscodeConfigSerializer(serializers.Serializer):
    enabled = serializers.BooleanField()
    codec = serializers.ChoiceField(choices=["h264", "h265", "vp9"], default="h264")
    resolution = serializers.ChoiceField(choices=["720p", "1080p", "original"], default="720p")
    bitrate = serializers.IntegerField(min_value=1, required=False)   # bits per second


class AudioConfigSerializer(serializers.Serializer):
    enabled = serializers.BooleanField()
    format = serializers.ChoiceField(choices=["mp3", "aac", "wav"], required=False)
    bitrate = serializers.RegexField(r"^\d+k$", required=False)
    channels = serializers.IntegerField(min_value=1, max_value=8, required=False)
    sampleRate = serializers.IntegerField(min_value=8000, required=False)


class ProcessUploadPayloadSerializer(serializers.Serializer):
    """
    Validates a process-upload payload before a task is created for it.
    Unknown keys are dropped; optional sub-configs stay absent when not given.
    """
    uploadId = serializers.CharField()
    mediaId = serializers.CharField()
    provider = serializers.ChoiceField(choices=SUPPORTED_PROVIDERS, required=False)
    thumbnail = ThumbnailConfigSerializer(required=False)
    sprite = SpriteConfigSerializer(required=False)
    filmstrip = FilmstripConfigSerializer(required=False)
    transcode = TranscodeConfigSerializer(required=False)
    audio = AudioConfigSerializer(required=False)


class TaskSerializer(serializers.ModelSerializer):
    class Meta:
        model = Task
        fields = [
            "id",
            "workspace_id",
            "type",
            "status",
            "progress",
            "attempts",
            "provider",
            "payload",
            "result",
            "error_log",
            "created_at",
            "updated_at",
        ]

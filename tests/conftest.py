import uuid
from types import SimpleNamespace

import pytest

from transcode.models import Media, Task, Upload


@pytest.fixture(autouse=True)
def media_root(settings, tmp_path):
    settings.MEDIA_ROOT = tmp_path / "media"
    settings.STORAGE_BACKEND = "local"
    settings.TRANSCODE_STEP_ATTEMPTS = 3
    settings.TRANSCODE_STEP_BACKOFF = 30
    return settings.MEDIA_ROOT


@pytest.fixture
def full_payload():
    return {
        "uploadId": "up-1",
        "mediaId": "media-1",
        "thumbnail": {"timestamp": 5, "width": 320, "height": 180},
        "sprite": {"fps": 1, "cols": 10, "rows": 10, "tileWidth": 160, "tileHeight": 90},
        "filmstrip": {"cols": 100, "rows": 1, "tileWidth": 80},
        "transcode": {"enabled": True, "codec": "h264", "resolution": "720p"},
        "audio": {"enabled": True, "format": "aac", "bitrate": "256k", "channels": 1, "sampleRate": 44100},
    }


@pytest.fixture
def make_task():
    """Unsaved task-like object for the pure builder."""
    def factory(payload, task_id="task-1", workspace_id="ws-1"):
        return SimpleNamespace(id=task_id, workspace_id=workspace_id, payload=payload)
    return factory


@pytest.fixture
def upload(db, media_root):
    source = media_root / "sources" / "clip.mp4"
    source.parent.mkdir(parents=True, exist_ok=True)
    source.write_bytes(b"not really a video")
    return Upload.objects.create(workspace_id="ws-1", storage_key="sources/clip.mp4", original_name="clip.mp4")


@pytest.fixture
def media(upload):
    return Media.objects.create(
        upload=upload,
        media_type=Media.MediaType.VIDEO,
        duration=250.0,
        width=1920,
        height=1080,
        aspect_ratio=16 / 9,
        has_audio=True,
        media_data={"displayWidth": 1920, "displayHeight": 1080},
    )


@pytest.fixture
def task(media):
    payload = {
        "uploadId": str(media.upload_id),
        "mediaId": str(media.pk),
        "thumbnail": {"timestamp": "midpoint", "width": 320, "height": 180},
        "audio": {"enabled": True},
    }
    return Task.objects.create(
        id=uuid.uuid4(),
        workspace_id="ws-1",
        provider="ffmpeg",
        payload=payload,
        result={"steps": {}, "flowSteps": ["transcode:probe", "transcode:thumbnail", "transcode:audio"]},
    )

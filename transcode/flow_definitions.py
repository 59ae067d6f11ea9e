"""
Canonical table of transcode flow steps.

PROBE always runs first and extracts the media metadata every other step
needs; the remaining steps are optional and depend only on PROBE.
"""
from django.conf import settings
from django.db import models


class TranscodeStepType(models.TextChoices):
    PROBE = "transcode:probe"
    THUMBNAIL = "transcode:thumbnail"
    SPRITE = "transcode:sprite"
    FILMSTRIP = "transcode:filmstrip"
    TRANSCODE = "transcode:transcode"
    AUDIO = "transcode:audio"


TRANSCODE_FLOW_STEPS = {
    "PROBE": TranscodeStepType.PROBE,
    "THUMBNAIL": TranscodeStepType.THUMBNAIL,
    "SPRITE": TranscodeStepType.SPRITE,
    "FILMSTRIP": TranscodeStepType.FILMSTRIP,
    "TRANSCODE": TranscodeStepType.TRANSCODE,
    "AUDIO": TranscodeStepType.AUDIO,
}

ROOT_STEP = TranscodeStepType.PROBE

# Registry order; children are built in this order so flows are deterministic.
OPTIONAL_STEPS = (
    TranscodeStepType.THUMBNAIL,
    TranscodeStepType.SPRITE,
    TranscodeStepType.FILMSTRIP,
    TranscodeStepType.TRANSCODE,
    TranscodeStepType.AUDIO,
)

# Per-step overrides of the default retry policy, e.g. {TranscodeStepType.TRANSCODE: {"attempts": 5}}
STEP_JOB_OPTIONS = {}


def step_name(step_type) -> str:
    """'transcode:audio' -> 'audio'"""
    return TranscodeStepType(step_type).value.split(":", 1)[1]


def get_step_job_options(step_type) -> dict:
    """Retry options for a step: attempts and the base of an exponential backoff (seconds)."""
    options = {
        "attempts": settings.TRANSCODE_STEP_ATTEMPTS,
        "backoff": {"type": "exponential", "delay": settings.TRANSCODE_STEP_BACKOFF},
    }
    options.update(STEP_JOB_OPTIONS.get(TranscodeStepType(step_type), {}))
    return options

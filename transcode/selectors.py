"""
Which optional steps a process-upload payload asks for.

Thumbnail, sprite and filmstrip are requested by providing their config at
all. Transcode and audio must be switched on with ``enabled: True``; a config
object with ``enabled: False`` (or no flag) requests nothing.
"""
from collections.abc import Mapping

from .flow_definitions import OPTIONAL_STEPS, TranscodeStepType


def _config(payload, key):
    if not isinstance(payload, Mapping):
        return None
    value = payload.get(key)
    return value if isinstance(value, Mapping) else None


def _present(key):
    def predicate(payload) -> bool:
        return _config(payload, key) is not None
    predicate.__name__ = f"wants_{key}"
    return predicate


def _enabled(key):
    def predicate(payload) -> bool:
        config = _config(payload, key)
        return config is not None and config.get("enabled") is True
    predicate.__name__ = f"wants_{key}"
    return predicate


wants_thumbnail = _present("thumbnail")
wants_sprite = _present("sprite")
wants_filmstrip = _present("filmstrip")
wants_transcode = _enabled("transcode")
wants_audio = _enabled("audio")

SELECTORS = {
    TranscodeStepType.THUMBNAIL: wants_thumbnail,
    TranscodeStepType.SPRITE: wants_sprite,
    TranscodeStepType.FILMSTRIP: wants_filmstrip,
    TranscodeStepType.TRANSCODE: wants_transcode,
    TranscodeStepType.AUDIO: wants_audio,
}


def selected_steps(payload) -> list:
    """Optional step types requested by ``payload``, in registry order."""
    return [step for step in OPTIONAL_STEPS if SELECTORS[step](payload)]

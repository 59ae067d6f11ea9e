"""
What each flow step actually does. Every processor takes the node input built
by ``transcode.flows`` and returns a JSON-serializable output that ends up in
``Task.result["steps"]``.
"""
import logging
import math
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from django.utils.dateparse import parse_datetime

from . import ffmpeg, storage
from .errors import StepExecutionError, UnknownStepError
from .flow_definitions import TranscodeStepType
from .models import Media, MediaFile
from .utils import guess_kind

log = logging.getLogger(__name__)

FILMSTRIP_FPS = 1


def _get_media(input: dict) -> Media:
    try:
        return Media.objects.select_related("upload").get(pk=input["mediaId"])
    except Media.DoesNotExist:
        raise StepExecutionError(f"Media {input['mediaId']} not found")


@contextmanager
def _source(media: Media):
    path, is_temp = storage.fetch_source(media.upload.storage_key)
    try:
        yield path
    finally:
        if is_temp:
            storage.cleanup(path)


@contextmanager
def _scratch():
    path = storage.work_dir()
    try:
        yield path
    finally:
        storage.cleanup(path)


def _save_file(media: Media, local: Path, file_type: str, file_name: str, mime_type: str, meta=None) -> MediaFile:
    key = storage.output_key(media.upload.workspace_id, media.upload_id, file_type, file_name)
    storage.store_output(local, key, content_type=mime_type)
    # keyed on the storage key so a retried step replaces its earlier row
    media_file, _ = MediaFile.objects.update_or_create(
        media=media,
        file_type=file_type,
        storage_key=key,
        defaults={"mime_type": mime_type, "meta": meta or {}},
    )
    return media_file


def _source_size(media: Media) -> tuple[int, int]:
    data = media.media_data or {}
    width = data.get("displayWidth") or media.width
    height = data.get("displayHeight") or media.height
    return width, height


def _tile_height(tile_width: int, tile_height, source_width: int, source_height: int) -> int:
    if source_width and source_height:
        return ffmpeg.even(tile_width / (source_width / source_height))
    return tile_height


def process_probe(input: dict) -> dict:
    media = _get_media(input)
    with _source(media) as path:
        probe_output = ffmpeg.probe(path)
        media_date = probe_output.get("mediaDate")
        if not media_date:
            media_date = Path(path).stat().st_mtime

    width, height = probe_output["width"], probe_output["height"]
    if guess_kind(media.upload.storage_key) == "image":
        media.media_type = Media.MediaType.IMAGE
    elif width > 0 and height > 0:
        media.media_type = Media.MediaType.VIDEO
    else:
        media.media_type = Media.MediaType.AUDIO

    if isinstance(media_date, str):
        media.media_date = parse_datetime(media_date)
    else:
        media.media_date = datetime.fromtimestamp(media_date, tz=timezone.utc)

    audio = probe_output.get("audio")
    media.duration = probe_output["duration"]
    media.width = width
    media.height = height
    media.aspect_ratio = width / height if width > 0 and height > 0 else None
    media.has_audio = bool(audio) and (audio.get("channels", 0) > 0 or bool(audio.get("codec")))
    media.media_data = probe_output
    media.save()

    log.info("Probed media %s: %sx%s, %.2fs", media.pk, width, height, media.duration)
    return {"probeOutput": probe_output, "mediaId": str(media.pk)}


def process_thumbnail(input: dict) -> dict:
    media = _get_media(input)
    if media.media_type == Media.MediaType.AUDIO:
        log.info("Skipping thumbnail for audio media %s", media.pk)
        return {"skipped": True, "reason": "audio media"}
    timestamp = ffmpeg.clamp_timestamp(input.get("timestamp", "midpoint"), media.duration)
    file_name = "thumbnail.jpg"

    with _source(media) as path, _scratch() as tmp:
        out = tmp / file_name
        size = ffmpeg.generate_thumbnail(path, out, timestamp, input["width"], input["height"])
        media_file = _save_file(
            media, out, MediaFile.FileType.THUMBNAIL, file_name, "image/jpeg",
            meta={"timestamp": timestamp, "width": size[0], "height": size[1]},
        )
    return {"thumbnailKey": media_file.storage_key, "thumbnailFileId": media_file.pk}


def process_sprite(input: dict) -> dict:
    media = _get_media(input)
    if media.media_type != Media.MediaType.VIDEO:
        log.info("Skipping sprite generation for %s media %s", media.media_type, media.pk)
        return {"skipped": True, "reason": f"{media.media_type} media"}

    source_width, source_height = _source_size(media)
    tile_height = _tile_height(input["tileWidth"], input["tileHeight"], source_width, source_height)
    file_name = "sprite.jpg"

    with _source(media) as path, _scratch() as tmp:
        out = tmp / file_name
        ffmpeg.generate_sprite(
            path, out,
            fps=input["fps"], cols=input["cols"], rows=input["rows"],
            tile_width=input["tileWidth"], tile_height=tile_height,
        )
        media_file = _save_file(
            media, out, MediaFile.FileType.SPRITE, file_name, "image/jpeg",
            meta={"fps": input["fps"], "cols": input["cols"], "rows": input["rows"],
                  "tileWidth": input["tileWidth"], "tileHeight": tile_height},
        )
    return {"spriteKey": media_file.storage_key, "spriteFileId": media_file.pk}


def process_filmstrip(input: dict) -> dict:
    """One cols x rows strip per segment, sampled at one frame per second."""
    media = _get_media(input)
    if media.media_type != Media.MediaType.VIDEO:
        log.info("Skipping filmstrip generation for %s media %s", media.media_type, media.pk)
        return {"skipped": True, "reason": f"{media.media_type} media"}

    cols, rows = input["cols"], input["rows"]
    tile_width = input["tileWidth"]
    tile_height = input.get("tileHeight")
    if not tile_height:
        source_width, source_height = _source_size(media)
        tile_height = _tile_height(tile_width, None, source_width, source_height) or tile_width

    segment_duration = cols * rows / FILMSTRIP_FPS
    segment_count = max(1, math.ceil(media.duration / segment_duration))
    file_ids = []
    keys = []

    with _source(media) as path, _scratch() as tmp:
        for i in range(segment_count):
            start_time = i * segment_duration
            file_name = f"filmstrip_{i}.jpg"
            log.debug("Filmstrip segment %d/%d for media %s at %ss", i + 1, segment_count, media.pk, start_time)
            out = tmp / file_name
            ffmpeg.generate_sprite(
                path, out,
                fps=FILMSTRIP_FPS, cols=cols, rows=rows,
                tile_width=tile_width, tile_height=tile_height, start_time=start_time,
            )
            media_file = _save_file(
                media, out, MediaFile.FileType.FILMSTRIP, file_name, "image/jpeg",
                meta={"segment": i, "startTime": start_time, "cols": cols, "rows": rows,
                      "tileWidth": tile_width, "tileHeight": tile_height},
            )
            file_ids.append(media_file.pk)
            keys.append(media_file.storage_key)

    return {"filmstripKey": keys[0], "filmstripFileId": file_ids[0], "allFilmstripFileIds": file_ids}


def process_transcode(input: dict) -> dict:
    provider = input.get("provider", "ffmpeg")
    if provider != "ffmpeg":
        raise StepExecutionError(f"Unsupported processing provider: {provider}")

    media = _get_media(input)
    if media.media_type != Media.MediaType.VIDEO:
        log.info("Skipping proxy transcode for %s media %s", media.media_type, media.pk)
        return {"skipped": True, "reason": f"{media.media_type} media"}

    display_width, display_height = _source_size(media)
    width, height = ffmpeg.resolve_resolution(input.get("resolution", "720p"), display_width, display_height)
    file_name = "proxy.mp4"

    with _source(media) as path, _scratch() as tmp:
        out = tmp / file_name
        ffmpeg.transcode(
            path, out,
            width=width, height=height,
            video_codec=ffmpeg.resolve_codec(input.get("codec", "h264")),
            video_bitrate=ffmpeg.resolve_bitrate(input.get("bitrate")),
        )
        media_file = _save_file(
            media, out, MediaFile.FileType.PROXY, file_name, "video/mp4",
            meta={"width": width, "height": height, "codec": input.get("codec", "h264")},
        )
    return {"proxyKey": media_file.storage_key, "proxyFileId": media_file.pk}


AUDIO_MIME_TYPES = {"mp3": "audio/mpeg", "aac": "audio/aac", "wav": "audio/wav"}


def process_audio(input: dict) -> dict:
    media = _get_media(input)
    if not media.has_audio:
        log.info("Media %s has no audio stream; nothing to extract", media.pk)
        return {"skipped": True, "reason": "no audio stream"}

    fmt = input.get("format") or ffmpeg.AUDIO_DEFAULTS["format"]
    file_name = f"audio.{'m4a' if fmt == 'aac' else fmt}"

    with _source(media) as path, _scratch() as tmp:
        out = tmp / file_name
        ffmpeg.extract_audio(path, out, input)
        media_file = _save_file(media, out, MediaFile.FileType.AUDIO, file_name, AUDIO_MIME_TYPES[fmt])
    return {"audioKey": media_file.storage_key, "audioFileId": media_file.pk}


PROCESSORS = {
    TranscodeStepType.PROBE: process_probe,
    TranscodeStepType.THUMBNAIL: process_thumbnail,
    TranscodeStepType.SPRITE: process_sprite,
    TranscodeStepType.FILMSTRIP: process_filmstrip,
    TranscodeStepType.TRANSCODE: process_transcode,
    TranscodeStepType.AUDIO: process_audio,
}


def execute_node(step_type, input: dict) -> dict:
    try:
        processor = PROCESSORS[TranscodeStepType(step_type)]
    except (KeyError, ValueError):
        raise UnknownStepError(step_type)
    return processor(input)

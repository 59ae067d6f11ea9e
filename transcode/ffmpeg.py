"""
Thin wrappers around the ffmpeg/ffprobe binaries used by the step processors,
plus the sizing/argument helpers they rely on.
"""
import json
import logging
import math
import subprocess
from pathlib import Path

from django.conf import settings
from django.utils.dateparse import parse_datetime
from PIL import Image

from .errors import StepExecutionError

log = logging.getLogger(__name__)

RESOLUTIONS = {
    "720p": (1280, 720),
    "1080p": (1920, 1080),
}

VIDEO_CODECS = {
    "h264": "libx264",
    "h265": "libx265",
    "vp9": "libvpx-vp9",
}

AUDIO_DEFAULTS = {"format": "mp3", "bitrate": "192k", "channels": 2, "sampleRate": 48000}

DATE_TAGS = ("creation_time", "date", "DATE", "com.apple.quicktime.creationdate")


def _run(cmd: list) -> subprocess.CompletedProcess:
    log.debug("Running %s", " ".join(str(c) for c in cmd))
    try:
        return subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except FileNotFoundError as e:
        raise StepExecutionError(f"{cmd[0]} not found; is it installed?") from e
    except subprocess.CalledProcessError as e:
        err = e.stderr.decode("utf-8", errors="ignore") if e.stderr else ""
        raise StepExecutionError(f"{Path(cmd[0]).name} exited with status {e.returncode}", stderr=err) from e


def _ensure_output(path: Path, what: str):
    if not Path(path).exists():
        raise StepExecutionError(f"{what} was not created: {path}")


# -----------------------------------------------------
# Helpers
# -----------------------------------------------------
def even(value: float) -> int:
    """Round half-up to the nearest even integer (codecs want even dimensions)."""
    return int(math.floor(value / 2 + 0.5)) * 2


def parse_fps(rate) -> float:
    """'30000/1001' -> 29.97; unparseable or zero denominators give 0.0"""
    if not rate:
        return 0.0
    try:
        if "/" in str(rate):
            num, den = str(rate).split("/", 1)
            den = float(den)
            return round(float(num) / den, 3) if den else 0.0
        return float(rate)
    except ValueError:
        return 0.0


def clamp_timestamp(timestamp, duration: float) -> float:
    """Seek position for a thumbnail: 'midpoint' or seconds, kept inside [0, duration - 1]."""
    ts = duration / 2 if timestamp == "midpoint" else float(timestamp)
    return max(0.0, min(ts, duration - 1))


def fit_within(source_width: int, source_height: int, max_width: int, max_height: int) -> tuple[int, int]:
    """Largest even-sized box with the source aspect ratio that fits max_width x max_height."""
    if not source_width or not source_height:
        return max_width, max_height
    aspect = source_width / source_height
    width = max_width
    height = round(width / aspect)
    if height > max_height:
        height = max_height
        width = round(height * aspect)
    return even(width), even(height)


def resolve_resolution(resolution: str, display_width: int, display_height: int) -> tuple[int, int]:
    if resolution == "original":
        return display_width, display_height
    max_width, max_height = RESOLUTIONS.get(resolution, RESOLUTIONS["720p"])
    return fit_within(display_width, display_height, max_width, max_height)


def resolve_codec(codec: str) -> str:
    return VIDEO_CODECS.get(codec, "libx264")


def resolve_bitrate(bitrate: int | None) -> str:
    """Bits per second -> ffmpeg rate string; 6M when unset."""
    if not bitrate:
        return "6M"
    if bitrate >= 1_000_000:
        return f"{round(bitrate / 1_000_000)}M"
    return f"{max(1, round(bitrate / 1000))}k"


def audio_args(config: dict) -> list:
    """ffmpeg output arguments for an audio-only extraction."""
    fmt = config.get("format") or AUDIO_DEFAULTS["format"]
    bitrate = config.get("bitrate") or AUDIO_DEFAULTS["bitrate"]
    channels = config.get("channels") or AUDIO_DEFAULTS["channels"]
    sample_rate = config.get("sampleRate") or AUDIO_DEFAULTS["sampleRate"]

    args = ["-vn", "-ac", str(channels), "-ar", str(sample_rate)]
    if fmt == "mp3":
        args += ["-codec:a", "libmp3lame", "-b:a", bitrate]
    elif fmt == "aac":
        args += ["-codec:a", "aac", "-b:a", bitrate]
    elif fmt == "wav":
        args += ["-codec:a", "pcm_s16le"]
    else:
        raise StepExecutionError(f"Unsupported audio format: {fmt}")
    return args


def _rotation(stream: dict) -> int:
    tags = stream.get("tags") or {}
    rotation = tags.get("rotate")
    if rotation is None:
        for side in stream.get("side_data_list") or []:
            if "rotation" in side:
                rotation = side["rotation"]
                break
    try:
        return int(float(rotation or 0)) % 360
    except (TypeError, ValueError):
        return 0


def _media_date(data: dict, video: dict):
    for tags in ((data.get("format") or {}).get("tags") or {}, video.get("tags") or {}):
        for name in DATE_TAGS:
            if tags.get(name):
                try:
                    parsed = parse_datetime(str(tags[name]))
                except ValueError:
                    parsed = None
                if parsed:
                    return parsed.isoformat()
    return None


def _int_or_none(value):
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def convert_probe_result(data: dict) -> dict:
    """Turn raw ``ffprobe -show_format -show_streams`` JSON into the probe output stored on Media."""
    streams = data.get("streams") or []
    fmt = data.get("format") or {}
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)
    if video is None and audio is None:
        raise StepExecutionError("No video or audio stream found in input file")

    # audio-only sources probe as 0x0
    video = video or {}
    width = int(video.get("width") or 0)
    height = int(video.get("height") or 0)
    rotation = _rotation(video)
    display_width, display_height = (height, width) if rotation in (90, 270) else (width, height)

    output = {
        "duration": float(fmt.get("duration") or 0),
        "width": width,
        "height": height,
        "displayWidth": display_width,
        "displayHeight": display_height,
        "rotation": rotation,
        "codec": video.get("codec_name") or "unknown",
        "fps": parse_fps(video.get("r_frame_rate") or video.get("avg_frame_rate")),
        "bitrate": _int_or_none(fmt.get("bit_rate")),
        "format": fmt.get("format_name") or "unknown",
        "size": _int_or_none(fmt.get("size")),
        "video": {
            "codec": video.get("codec_name") or "unknown",
            "profile": video.get("profile"),
            "width": width,
            "height": height,
            "aspectRatio": video.get("display_aspect_ratio"),
            "pixFmt": video.get("pix_fmt"),
            "level": str(video["level"]) if video.get("level") is not None else None,
            "colorSpace": video.get("color_space"),
            "rotation": rotation,
        },
    }
    if audio is not None:
        output["audio"] = {
            "codec": audio.get("codec_name") or "unknown",
            "channels": int(audio.get("channels") or 0),
            "sampleRate": int(audio.get("sample_rate") or 0),
            "bitrate": _int_or_none(audio.get("bit_rate")),
        }
    media_date = _media_date(data, video)
    if media_date:
        output["mediaDate"] = media_date
    return output


# -----------------------------------------------------
# Executors
# -----------------------------------------------------
def probe(input_path: Path) -> dict:
    cmd = [
        settings.FFPROBE_BIN,
        "-v", "error",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(input_path),
    ]
    proc = _run(cmd)
    try:
        data = json.loads(proc.stdout.decode("utf-8", errors="ignore") or "{}")
    except json.JSONDecodeError as e:
        raise StepExecutionError(f"ffprobe returned invalid JSON for {input_path}") from e
    return convert_probe_result(data)


def generate_thumbnail(input_path: Path, output_path: Path, timestamp: float, width: int, height: int) -> tuple[int, int]:
    """Grab one frame at ``timestamp`` and save it as a JPEG bounded by width x height."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    frame_path = output_path.parent / f"{output_path.stem}_frame.png"

    cmd = [
        settings.FFMPEG_BIN,
        "-y",
        "-ss", str(timestamp),
        "-i", str(input_path),
        "-frames:v", "1",
        "-update", "1",
        str(frame_path),
    ]
    _run(cmd)
    _ensure_output(frame_path, "Thumbnail frame")

    try:
        with Image.open(frame_path) as frame:
            img = frame.convert("RGB")
        img.thumbnail((width, height))
        img.save(output_path, format="JPEG", quality=90)
    finally:
        frame_path.unlink(missing_ok=True)
    return img.size


def generate_sprite(input_path: Path, output_path: Path, *, fps: float, cols: int, rows: int,
                    tile_width: int, tile_height: int, start_time: float = 0) -> Path:
    """Sample frames at ``fps`` and tile them into a single cols x rows sheet."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    cmd = [settings.FFMPEG_BIN, "-y"]
    if start_time > 0:
        cmd += ["-ss", str(start_time)]
    cmd += [
        "-i", str(input_path),
        "-vf", f"fps={fps},scale={tile_width}:{tile_height},tile={cols}x{rows}",
        "-frames:v", "1",
        "-q:v", "2",
        str(output_path),
    ]
    _run(cmd)
    _ensure_output(output_path, "Sprite sheet")
    return output_path


def transcode(input_path: Path, output_path: Path, *, width: int, height: int,
              video_codec: str, video_bitrate: str, audio_bitrate: str = "128k") -> Path:
    """Proxy MP4 at width x height."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    cmd = [
        settings.FFMPEG_BIN,
        "-y",
        "-i", str(input_path),
        "-vf", f"scale={width}:{height}",
        "-c:v", video_codec,
        "-b:v", video_bitrate,
    ]
    if video_codec in ("libx264", "libx265"):
        cmd += ["-preset", "veryfast", "-pix_fmt", "yuv420p"]
    cmd += [
        "-c:a", "aac",
        "-b:a", audio_bitrate,
        "-movflags", "+faststart",
        str(output_path),
    ]
    _run(cmd)
    _ensure_output(output_path, "Transcoded file")
    return output_path


def extract_audio(input_path: Path, output_path: Path, config: dict) -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    cmd = [settings.FFMPEG_BIN, "-y", "-i", str(input_path), *audio_args(config), str(output_path)]
    _run(cmd)
    _ensure_output(output_path, "Audio file")
    return output_path

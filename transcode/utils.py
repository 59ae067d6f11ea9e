import mimetypes
from datetime import datetime, timezone


def guess_kind(path: str) -> str:
    """Return 'image' | 'video' | 'audio' | 'other' based on mimetype/extension."""
    mime, _ = mimetypes.guess_type(path)
    if not mime:
        return "other"
    for kind in ("image", "video", "audio"):
        if mime.startswith(f"{kind}/"):
            return kind
    return "other"


def progress_for_steps(done: int, total: int) -> int:
    """Map finished-step count to a 10..95 range; leave last 5% for finalize."""
    if total <= 0:
        return 100
    start, end = 10.0, 95.0
    return int(start + (end - start) * (done / total))


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def truncate(text: str, limit: int = 4000) -> str:
    return text if len(text) <= limit else text[:limit]

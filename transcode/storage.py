import logging
import shutil
import tempfile
from pathlib import Path
import boto3
from botocore.config import Config as BotoConfig
from django.conf import settings

log = logging.getLogger(__name__)


def get_s3_client():
    """
    SDK client for worker-side upload/download.
    """
    session = boto3.session.Session(
        aws_access_key_id=settings.S3_ACCESS_KEY,
        aws_secret_access_key=settings.S3_SECRET_KEY,
        region_name=settings.S3_REGION,
    )
    return session.client(
        "s3",
        endpoint_url=settings.S3_ENDPOINT_URL,  # e.g. http://127.0.0.1:9000
        config=BotoConfig(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        ),
    )


def output_key(workspace_id: str, upload_id: str, file_type: str, file_name: str) -> str:
    return f"uploads/{workspace_id}/{upload_id}/{file_type}/{file_name}"


def local_path(key: str) -> Path:
    return Path(settings.MEDIA_ROOT) / key


def fetch_source(rel_or_key: str) -> tuple[Path, bool]:
    """
    Return (local_path, is_temp). If the file exists under MEDIA_ROOT, use it.
    Otherwise treat rel_or_key as an S3 key, download to a temp file, and return that.
    """
    local_candidate = local_path(rel_or_key)
    if local_candidate.exists():
        return local_candidate, False
    if settings.STORAGE_BACKEND != "s3":
        raise FileNotFoundError(f"Source file not found: {local_candidate}")

    s3 = get_s3_client()
    tf = tempfile.NamedTemporaryFile(delete=False, suffix=Path(rel_or_key).suffix)
    tf.close()
    log.debug("Downloading s3://%s/%s to %s", settings.S3_BUCKET, rel_or_key, tf.name)
    s3.download_file(settings.S3_BUCKET, rel_or_key, tf.name)
    return Path(tf.name), True


def work_dir(prefix: str = "transcode-") -> Path:
    """Scratch directory for one step; remove it with ``cleanup``."""
    return Path(tempfile.mkdtemp(prefix=prefix))


def cleanup(path: Path):
    path = Path(path)
    if path.is_dir():
        shutil.rmtree(path, ignore_errors=True)
    else:
        path.unlink(missing_ok=True)


def store_output(file_path: Path, key: str, content_type: str | None = None) -> str:
    """
    Persist a generated file under ``key``: copied below MEDIA_ROOT for the local
    backend, uploaded to S3/MinIO otherwise. Returns the key.
    """
    if settings.STORAGE_BACKEND == "s3":
        s3 = get_s3_client()
        extra = {}
        if content_type:
            extra["ContentType"] = content_type
        s3.upload_file(str(file_path), settings.S3_BUCKET, key, ExtraArgs=extra or None)
    else:
        dest = local_path(key)
        dest.parent.mkdir(parents=True, exist_ok=True)
        if Path(file_path).resolve() != dest.resolve():
            shutil.copyfile(file_path, dest)
    log.debug("Stored %s as %s", file_path, key)
    return key

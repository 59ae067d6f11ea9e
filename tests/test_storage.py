import pytest

from transcode import storage


def test_output_key():
    assert storage.output_key("ws-1", "up-1", "sprite", "sprite.jpg") == "uploads/ws-1/up-1/sprite/sprite.jpg"


def test_fetch_local_source(media_root):
    src = media_root / "a" / "clip.mov"
    src.parent.mkdir(parents=True)
    src.write_bytes(b"x")
    path, is_temp = storage.fetch_source("a/clip.mov")
    assert path == src
    assert is_temp is False


def test_fetch_missing_local_source():
    with pytest.raises(FileNotFoundError):
        storage.fetch_source("nope/clip.mov")


def test_fetch_source_downloads_from_s3(settings, monkeypatch):
    settings.STORAGE_BACKEND = "s3"
    settings.S3_BUCKET = "bucket"
    calls = []

    class FakeClient:
        def download_file(self, bucket, key, filename):
            calls.append((bucket, key))
            with open(filename, "wb") as fh:
                fh.write(b"data")

    monkeypatch.setattr(storage, "get_s3_client", FakeClient)
    path, is_temp = storage.fetch_source("remote/clip.mp4")
    try:
        assert is_temp is True
        assert path.suffix == ".mp4"
        assert path.read_bytes() == b"data"
        assert calls == [("bucket", "remote/clip.mp4")]
    finally:
        storage.cleanup(path)
    assert not path.exists()


def test_store_output_local(media_root, tmp_path):
    generated = tmp_path / "thumb.jpg"
    generated.write_bytes(b"jpeg")
    key = storage.store_output(generated, "uploads/ws/up/thumbnail/thumbnail.jpg", content_type="image/jpeg")
    assert key == "uploads/ws/up/thumbnail/thumbnail.jpg"
    assert (media_root / key).read_bytes() == b"jpeg"


def test_store_output_s3(settings, monkeypatch, tmp_path):
    settings.STORAGE_BACKEND = "s3"
    settings.S3_BUCKET = "bucket"
    uploaded = []

    class FakeClient:
        def upload_file(self, filename, bucket, key, ExtraArgs=None):
            uploaded.append((filename, bucket, key, ExtraArgs))

    monkeypatch.setattr(storage, "get_s3_client", FakeClient)
    generated = tmp_path / "proxy.mp4"
    generated.write_bytes(b"mp4")
    storage.store_output(generated, "uploads/ws/up/proxy/proxy.mp4", content_type="video/mp4")
    assert uploaded == [(str(generated), "bucket", "uploads/ws/up/proxy/proxy.mp4", {"ContentType": "video/mp4"})]


def test_work_dir_cleanup():
    path = storage.work_dir()
    (path / "f").write_text("x")
    storage.cleanup(path)
    assert not path.exists()

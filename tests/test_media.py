"""Extension inference and video persistence."""

import pytest

from conftest import FakeResponse, redirect
from services import media
from services.media import infer_extension, persist

MP4_HEAD = b"\x00\x00\x00\x18ftypmp42\x00\x00\x00\x00"


class TestInferExtension:

    def test_disposition_wins(self):
        ext = infer_extension(
            disposition='attachment; filename="clip.webm"',
            url="https://cdn/x.mp4",
            content_type="video/x-flv",
        )
        assert ext == "webm"

    def test_url_then_mime(self):
        assert infer_extension(url="https://cdn/a/b.MOV?sig=1", content_type="video/mp4") == "mov"
        assert infer_extension(url="https://cdn/a/b", content_type="video/x-flv; charset=binary") == "flv"

    def test_unknown_url_extension_ignored(self):
        assert infer_extension(url="https://cdn/a/b.php", content_type="video/webm") == "webm"

    @pytest.mark.parametrize("data, expected", [
        (MP4_HEAD, "mp4"),
        (b"FLV\x01\x05", "flv"),
        (b"\x1a\x45\xdf\xa3\x01\x00webm", "webm"),
        (b"\x1a\x45\xdf\xa3\x01\x00matroska", "mkv"),
    ])
    def test_sniffing(self, data, expected):
        assert infer_extension(url="https://cdn/x", content_type="application/octet-stream", data=data) == expected

    def test_format_hint_then_default(self):
        assert infer_extension(format_hint="flv720") == "flv"
        assert infer_extension(format_hint="dash") == "mp4"


class TestPersist:

    def test_falls_back_to_next_directory(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a dir")
        target = tmp_path / "ok"

        path = persist(b"data", "v.mp4", [blocker / "sub", target])

        assert path == (target / "v.mp4").resolve()
        assert path.read_bytes() == b"data"

    def test_nothing_writable(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        assert persist(b"data", "v.mp4", [blocker / "a", blocker / "b"]) is None


class TestDownloadVideo:

    async def test_sniffs_and_persists(self, http, session, tmp_path):
        session.add("https://v.cdn/clip", FakeResponse(body=MP4_HEAD + b"rest", content_type="application/octet-stream"))
        path = await media.download_video(http, "https://v.cdn/clip", dirs=[tmp_path], stem="douyin-1")
        assert path.suffix == ".mp4"
        assert path.name.startswith("douyin-1-")
        assert path.read_bytes() == MP4_HEAD + b"rest"

    async def test_oversized_returns_none(self, http, session, tmp_path):
        session.add("https://v.cdn/clip", FakeResponse(body=b"x" * 64))
        assert await media.download_video(http, "https://v.cdn/clip", max_bytes=16, dirs=[tmp_path]) is None
        assert list(tmp_path.iterdir()) == []

    async def test_transport_failure_returns_none(self, http, tmp_path):
        assert await media.download_video(http, "https://v.cdn/missing", dirs=[tmp_path]) is None

    async def test_empty_body_returns_none(self, http, session, tmp_path):
        session.add("https://v.cdn/clip", FakeResponse(body=b""))
        assert await media.download_video(http, "https://v.cdn/clip", dirs=[tmp_path]) is None

    async def test_private_url_never_requested(self, http, session, tmp_path):
        session.add("http://127.0.0.1:8080/admin.mp4", FakeResponse(body=b"secret"))
        assert await media.download_video(http, "http://127.0.0.1:8080/admin.mp4", dirs=[tmp_path]) is None
        assert session.requests == []

    async def test_redirect_to_private_host_refused(self, http, session, tmp_path):
        session.add("https://upos.bilivideo.com/v.mp4", redirect("http://169.254.169.254/latest/meta-data"))
        session.add("http://169.254.169.254/latest/meta-data", FakeResponse(body=b"iam-creds"))
        path = await media.download_video(
            http, "https://upos.bilivideo.com/v.mp4", dirs=[tmp_path], domains=("bilivideo.com",)
        )
        assert path is None
        assert session.urls() == ["https://upos.bilivideo.com/v.mp4"]
        assert list(tmp_path.iterdir()) == []

    async def test_redirect_off_cdn_list_refused(self, http, session, tmp_path):
        session.add("https://upos.bilivideo.com/v.mp4", redirect("https://elsewhere.example/v.mp4"))
        path = await media.download_video(
            http, "https://upos.bilivideo.com/v.mp4", dirs=[tmp_path], domains=("bilivideo.com",)
        )
        assert path is None
        assert session.urls() == ["https://upos.bilivideo.com/v.mp4"]


class TestFetch:

    async def test_returns_body_and_type(self, http, session):
        session.add("https://i0.hdslb.com/c.png", FakeResponse(body=b"png", content_type="image/png"))
        assert await media.fetch("https://i0.hdslb.com/c.png", http=http) == (b"png", "image/png")

    async def test_private_url_never_requested(self, http, session):
        assert await media.fetch("http://127.0.0.1/x.png", http=http) is None
        assert session.requests == []

    async def test_redirect_to_private_host_refused(self, http, session):
        session.add("https://i0.hdslb.com/c.png", redirect("http://10.0.0.5/internal.png"))
        assert await media.fetch("https://i0.hdslb.com/c.png", http=http) is None
        assert session.urls() == ["https://i0.hdslb.com/c.png"]

    async def test_oversized(self, http, session):
        session.add("https://i0.hdslb.com/c.png", FakeResponse(body=b"x" * 32))
        assert await media.fetch("https://i0.hdslb.com/c.png", max_bytes=8, http=http) is None

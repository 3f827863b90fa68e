"""Bilibili resolver against canned API responses."""

import pytest

from conftest import FakeResponse, redirect
from resolvers.bili import (
    BiliConfig,
    BiliPlayUrl,
    BiliResolver,
    extract_id_from_url,
    format_pubdate,
    format_stats,
    parse_play_payload,
    parse_view_payload,
)
from services.error import FetchError, InputRejected
from services.message import LinkTarget

BVID = "BV1xx411c7mD"
VIEW_BV = f"https://api.bilibili.com/x/web-interface/view?bvid={BVID}"
VIEW_AV = "https://api.bilibili.com/x/web-interface/view?aid=170001"


def view_payload(**overrides):
    data = {
        "bvid": BVID,
        "aid": 170001,
        "title": "T",
        "desc": "D",
        "pic": "https://i0.hdslb.com/cover.jpg",
        "owner": {"name": "up"},
        "stat": {"view": 1000},
    }
    data.update(overrides)
    return {"code": 0, "data": data}


@pytest.fixture
def resolver(http):
    return BiliResolver(BiliConfig(fetch_play_url=False, download_video=False), http)


class TestParsing:

    def test_ids_from_path(self):
        assert extract_id_from_url(f"https://www.bilibili.com/video/{BVID}?p=1") == ("bv", BVID)
        assert extract_id_from_url("https://m.bilibili.com/video/av170001") == ("av", "170001")
        assert extract_id_from_url("https://www.bilibili.com/read/cv1") is None

    def test_view_payload(self):
        video = parse_view_payload(view_payload(duration=125, tname="知识", cid=42), "bv", BVID)
        assert video.url == f"https://www.bilibili.com/video/{BVID}"
        assert (video.title, video.desc, video.author) == ("T", "D", "up")
        assert (video.cid, video.duration, video.partition) == (42, 125, "知识")
        assert video.stats.view == 1000 and video.stats.like is None

    def test_non_zero_code_is_not_found(self):
        assert parse_view_payload({"code": -404, "message": "啥都木有"}, "bv", BVID) is None
        assert parse_view_payload({"code": 0, "data": None}, "bv", BVID) is None

    def test_play_payload(self):
        play = parse_play_payload({
            "code": 0,
            "data": {"format": "mp4720", "durl": [{"url": "https://up/v.mp4", "backup_url": ["https://bk/v.mp4"], "size": 9}]},
        })
        assert (play.url, play.backup_urls, play.size, play.format) == ("https://up/v.mp4", ["https://bk/v.mp4"], 9, "mp4720")
        assert parse_play_payload({"code": 0, "data": {"durl": []}}) is None

    def test_stats_line(self):
        video = parse_view_payload(view_payload(stat={"view": 123456, "like": 25000, "danmaku": 3}), "bv", BVID)
        assert format_stats(video.stats) == "数据：播放 12.3万 / 赞 2.5万 / 弹幕 3"


class TestResolve:

    async def test_short_link_end_to_end(self, resolver, session):
        session.add("https://b23.tv/abcd123", redirect(f"https://www.bilibili.com/video/{BVID}?share_source=qq"))
        session.add(f"https://www.bilibili.com/video/{BVID}?share_source=qq", FakeResponse(body="<html></html>"))
        session.add(VIEW_BV, FakeResponse(body=view_payload()))

        video = await resolver.resolve(LinkTarget(kind="bili", url="https://b23.tv/abcd123"))

        assert video.bvid == BVID
        assert VIEW_BV in session.urls()
        api_headers = dict(session.requests)[VIEW_BV]
        assert api_headers["Referer"] == "https://www.bilibili.com/"

    async def test_short_link_anchor_fallback(self, resolver, session):
        session.add("https://b23.tv/abc", FakeResponse(body=f'<a href="https://www.bilibili.com/video/{BVID}">x</a>'))
        session.add(VIEW_BV, FakeResponse(body=view_payload()))
        video = await resolver.resolve_from_url("https://b23.tv/abc")
        assert video.title == "T"

    async def test_short_link_to_foreign_host_rejected(self, resolver, session):
        session.add("https://b23.tv/abc", FakeResponse(body='<a href="https://evil.example/video/x">x</a>'))
        with pytest.raises(InputRejected):
            await resolver.resolve_from_url("https://b23.tv/abc")

    async def test_short_link_redirect_to_private_rejected(self, resolver, session):
        session.add("https://b23.tv/abc", redirect("http://10.0.0.1/video/BV1xx411c7mD"))
        with pytest.raises(InputRejected):
            await resolver.resolve_from_url("https://b23.tv/abc")

    async def test_unparseable_id_rejected_before_network(self, resolver, session):
        with pytest.raises(InputRejected):
            await resolver.resolve_from_url("https://www.bilibili.com/read/cv1")
        with pytest.raises(InputRejected):
            await resolver.resolve_from_id("bv", "BV123")
        assert session.requests == []

    async def test_av_id(self, resolver, session):
        session.add(VIEW_AV, FakeResponse(body=view_payload()))
        video = await resolver.resolve(LinkTarget(kind="bili-id", id_type="av", id="170001"))
        assert video.aid == 170001

    async def test_api_not_found_returns_none(self, resolver, session):
        session.add(VIEW_BV, FakeResponse(body={"code": -404}))
        assert await resolver.resolve_from_id("bv", BVID) is None

    async def test_transport_failure_raises(self, resolver, session):
        session.add(VIEW_BV, FakeResponse(status=502))
        with pytest.raises(FetchError):
            await resolver.resolve_from_id("bv", BVID)

    async def test_play_url_enrichment(self, http, session):
        resolver = BiliResolver(BiliConfig(download_video=False, cookie="SESSDATA=abc"), http)
        session.add(VIEW_BV, FakeResponse(body=view_payload(cid=42)))
        play_api = (
            f"https://api.bilibili.com/x/player/playurl?bvid={BVID}&cid=42&qn=64"
            "&fnval=1&platform=html5&high_quality=1"
        )
        session.add(play_api, FakeResponse(body={"code": 0, "data": {"durl": [{"url": "https://up/v.mp4"}]}}))
        video = await resolver.resolve_from_id("bv", BVID)
        assert video.play.url == "https://up/v.mp4"
        assert dict(session.requests)[play_api]["Cookie"] == "SESSDATA=abc"

    async def test_play_url_failure_is_swallowed(self, http, session):
        resolver = BiliResolver(BiliConfig(download_video=False), http)
        session.add(VIEW_BV, FakeResponse(body=view_payload(cid=42)))
        video = await resolver.resolve_from_id("bv", BVID)
        assert video is not None and video.play is None

    async def test_download_short_video(self, http, session, tmp_path):
        resolver = BiliResolver(BiliConfig(), http, media_dirs=[tmp_path])
        video = parse_view_payload(view_payload(duration=30), "bv", BVID)
        video.play = BiliPlayUrl(url="https://upos-sz.bilivideo.com/v", format="flv360")
        session.add("https://upos-sz.bilivideo.com/v", FakeResponse(body=b"FLV\x01rest", content_type="application/octet-stream"))
        await resolver.prepare_media(video)
        assert video.video_path is not None
        assert video.video_path.suffix == ".flv"
        assert video.video_path.parent == tmp_path.resolve()

    async def test_redirect_to_metadata_host_skipped_for_backup(self, http, session, tmp_path):
        resolver = BiliResolver(BiliConfig(), http, media_dirs=[tmp_path])
        video = parse_view_payload(view_payload(duration=30), "bv", BVID)
        video.play = BiliPlayUrl(
            url="https://upos.bilivideo.com/v.mp4",
            backup_urls=["https://upos-bak.bilivideo.com/v.mp4"],
        )
        session.add("https://upos.bilivideo.com/v.mp4", redirect("http://169.254.169.254/latest/meta-data"))
        session.add("http://169.254.169.254/latest/meta-data", FakeResponse(body=b"iam-creds"))
        session.add("https://upos-bak.bilivideo.com/v.mp4", FakeResponse(body=b"\x00\x00\x00\x18ftypmp42"))

        await resolver.prepare_media(video)

        assert session.urls() == ["https://upos.bilivideo.com/v.mp4", "https://upos-bak.bilivideo.com/v.mp4"]
        assert video.video_path.read_bytes() == b"\x00\x00\x00\x18ftypmp42"

    async def test_play_url_off_cdn_list_not_requested(self, http, session, tmp_path):
        resolver = BiliResolver(BiliConfig(), http, media_dirs=[tmp_path])
        video = parse_view_payload(view_payload(duration=30), "bv", BVID)
        video.play = BiliPlayUrl(url="https://up/v")
        await resolver.prepare_media(video)
        assert video.video_path is None
        assert session.requests == []

    async def test_long_video_not_downloaded(self, http, session, tmp_path):
        resolver = BiliResolver(BiliConfig(), http, media_dirs=[tmp_path])
        video = parse_view_payload(view_payload(duration=600), "bv", BVID)
        video.play = BiliPlayUrl(url="https://up/v")
        await resolver.prepare_media(video)
        assert video.video_path is None
        assert session.requests == []


class TestKeysAndRendering:

    def test_cache_keys(self, resolver):
        assert resolver.cache_keys(LinkTarget(kind="bili-id", id_type="bv", id=BVID)) == [
            f"bili:bv:{BVID}",
            f"bili-id:bv:{BVID}",
        ]
        url = f"https://www.bilibili.com/video/{BVID}"
        assert resolver.cache_keys(LinkTarget(kind="bili", url=url)) == [f"bili:bv:{BVID}", f"bili:{url}"]

    def test_alias_keys_cover_both_ids(self, resolver):
        video = parse_view_payload(view_payload(), "bv", BVID)
        keys = resolver.alias_keys(video)
        assert f"bili:bv:{BVID}" in keys and "bili:av:170001" in keys
        assert resolver.canonical_key(video) == f"bili:bv:{BVID}"

    def test_forward_messages(self, resolver):
        video = parse_view_payload(view_payload(duration=65, tname="知识"), "bv", BVID)
        messages = resolver.build_forward_messages(video, "10001")
        assert [m.segments[0].type for m in messages] == ["image", "text"]
        assert all(m.user_name == "B站解析" and m.user_id == "10001" for m in messages)
        text = messages[1].segments[0].data["text"]
        assert text.splitlines() == [
            "标题：T",
            f"BV号：{BVID} / av170001",
            "UP主：up",
            "时长：1:05 | 分区：知识",
            "简介：D",
            "数据：播放 1000",
            f"链接：https://www.bilibili.com/video/{BVID}",
        ]

    def test_direct_link_when_not_downloaded(self, resolver):
        video = parse_view_payload(view_payload(), "bv", BVID)
        video.play = BiliPlayUrl(url="https://up/v.mp4")
        messages = resolver.build_forward_messages(video, "1")
        assert messages[-1].segments[0].data["text"] == "视频直链：https://up/v.mp4"

    def test_pubdate_formatting(self):
        assert format_pubdate(1700000000).startswith("2023-11-1")
        assert format_pubdate(None) == ""
        assert format_pubdate(-5) == ""
        assert format_pubdate(10**18) == ""

    def test_out_of_range_pubdate_still_renders(self, resolver):
        video = parse_view_payload(view_payload(duration=65, pubdate=10**18), "bv", BVID)
        preview = resolver.to_preview(video)
        assert preview.detail == "时长：1:05"
        assert len(resolver.build_forward_messages(video, "1")) == 2

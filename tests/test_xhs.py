"""Xiaohongshu note parsing and fetching."""

import json

import pytest

from conftest import FakeResponse, redirect
from resolvers import PLACEHOLDER_TITLE
from resolvers.xhs import (
    XhsConfig,
    XhsResolver,
    extract_note_id,
    images_from_image_list,
    is_likely_note_html,
    parse_note,
)
from services.error import FetchError, InputRejected
from services.message import LinkTarget, ShareMeta
from services.http import MOBILE_USER_AGENT

NOTE_ID = "64f1a2b3c4d5e6f708091a2b"
NOTE_URL = f"https://www.xiaohongshu.com/explore/{NOTE_ID}"


def note_page(note_data=None, image_list=None, head=""):
    note_data = note_data if note_data is not None else {"title": "Note title", "desc": "Note body"}
    image_list = image_list if image_list is not None else [
        {"infoList": [
            {"imageScene": "WB_PRV", "url": "https://sns-webpic.xhscdn.com/a!prv"},
            {"imageScene": "WB_DFT", "url": "https://sns-webpic.xhscdn.com/a!dft"},
        ]},
        {"url": "//sns-webpic.xhscdn.com/b"},
    ]
    return (
        f"<html><head>{head}</head><body><script>"
        f'var x = {{"noteData": {json.dumps(note_data, ensure_ascii=False)}, '
        f'"imageList": {json.dumps(image_list)}}};'
        "</script></body></html>"
    )


@pytest.fixture
def resolver(http):
    return XhsResolver(XhsConfig(), http)


class TestNoteId:

    @pytest.mark.parametrize("url", [
        f"https://www.xiaohongshu.com/explore/{NOTE_ID}",
        f"https://www.xiaohongshu.com/discovery/item/{NOTE_ID.upper()}?xsec_token=x",
        f"https://www.xiaohongshu.com/user/profile/1/notes/{NOTE_ID}",
        f"https://www.xiaohongshu.com/share?noteId={NOTE_ID}",
        f"https://www.xiaohongshu.com/share?source_note_id={NOTE_ID}",
    ])
    def test_found(self, url):
        assert extract_note_id(url) == NOTE_ID

    def test_missing(self):
        assert extract_note_id("https://xhslink.com/a/AbCd") is None
        assert extract_note_id(None) is None


class TestParseNote:

    def test_note_data_and_image_list(self):
        note = parse_note(note_page(), NOTE_URL)
        assert note.title == "Note title"
        assert note.desc == "Note body"
        assert note.images == ["https://sns-webpic.xhscdn.com/a!dft", "https://sns-webpic.xhscdn.com/b"]
        assert note.cover == note.images[0]
        assert note.note_id == NOTE_ID

    def test_wrapped_note_data_with_author_stats_video(self):
        record = {
            "data": {"noteData": {
                "title": "T",
                "desc": "D",
                "user": {"nickName": "alice"},
                "interactInfo": {"likedCount": "12000", "collectedCount": "10+", "commentCount": 3},
                "video": {"media": {"stream": {"h264": [{"masterUrl": "http://sns-video.xhscdn.com/v.mp4"}]}}},
            }}
        }
        note = parse_note(note_page(note_data=record), NOTE_URL)
        assert (note.title, note.author) == ("T", "alice")
        assert (note.liked, note.collected, note.comments) == ("1.2万", "10+", "3")
        assert note.video_url == "http://sns-video.xhscdn.com/v.mp4"

    def test_meta_fallbacks(self):
        head = (
            '<meta property="og:title" content="OG title">'
            '<meta name="description" content="OG desc">'
            '<meta property="og:image" content="//sns-webpic.xhscdn.com/og">'
        )
        html = f'<html><head>{head}</head><body>"imageList": []</body></html>'
        note = parse_note(html, NOTE_URL)
        assert note.title == "OG title"
        assert note.desc == "OG desc"
        assert note.images == ["https://sns-webpic.xhscdn.com/og"]

    def test_json_ld(self):
        ld = {"headline": "LD title", "articleBody": "LD body", "image": ["https://sns-webpic.xhscdn.com/ld.jpg"]}
        html = f'<script type="application/ld+json">{json.dumps(ld)}</script>"imageList": []'
        note = parse_note(html, NOTE_URL)
        assert (note.title, note.desc) == ("LD title", "LD body")
        assert note.images == ["https://sns-webpic.xhscdn.com/ld.jpg"]

    def test_initial_state(self):
        state = {"note": {"noteDetailMap": {NOTE_ID: {"note": {
            "title": "State title",
            "desc": "State desc",
            "user": {"nickname": "bob"},
            "video": None,
            "imageList": [{"urlDefault": "https://sns-webpic.xhscdn.com/s1"}],
        }}}}}
        state_js = json.dumps(state, ensure_ascii=False).replace("null", "undefined")
        html = f"<script>window.__INITIAL_STATE__={state_js}</script>"
        note = parse_note(html, NOTE_URL)
        assert (note.title, note.desc, note.author) == ("State title", "State desc", "bob")
        assert note.images == ["https://sns-webpic.xhscdn.com/s1"]

    def test_regex_sweep_last(self):
        html = '"imageList": null <img src="https://sns-webpic.xhscdn.com/swept.jpg">'
        note = parse_note(html, NOTE_URL)
        assert note.title == PLACEHOLDER_TITLE
        assert note.images == ["https://sns-webpic.xhscdn.com/swept.jpg"]

    def test_cdn_suffix_dedup(self):
        image_list = [{"url": "https://sns-webpic.xhscdn.com/x!a"}, {"url": "https://sns-webpic.xhscdn.com/x!b"}]
        note = parse_note(note_page(image_list=image_list), NOTE_URL)
        assert note.images == ["https://sns-webpic.xhscdn.com/x!a"]

    def test_image_list_scene_preference(self):
        items = [{"infoList": [{"imageScene": "OTHER", "url": "https://c/o"}]}, "junk"]
        assert images_from_image_list(items) == ["https://c/o"]
        assert images_from_image_list(None) == []

    def test_page_markers(self):
        assert is_likely_note_html('"noteData": {}')
        assert not is_likely_note_html("<html>nothing</html>")
        assert not is_likely_note_html('"noteData": {} 你访问的页面不见了')


class TestResolve:

    async def test_desktop_then_mobile(self, resolver, session):
        session.add(NOTE_URL, FakeResponse(body="<html>blocked</html>"), FakeResponse(body="<html>blocked</html>"),
                    FakeResponse(body=note_page()))
        note = await resolver.resolve_from_url(NOTE_URL)
        assert note.title == "Note title"
        agents = [headers["User-Agent"] for _, headers in session.requests]
        assert agents[-1] == MOBILE_USER_AGENT and agents[0] != MOBILE_USER_AGENT
        assert len(session.requests) == 3

    async def test_all_attempts_fail(self, resolver, session):
        session.add(NOTE_URL, FakeResponse(status=461))
        with pytest.raises(FetchError):
            await resolver.resolve_from_url(NOTE_URL)
        assert len(session.requests) == 4

    async def test_short_link_redirect(self, resolver, session):
        session.add("https://xhslink.com/a/AbCd", redirect(f"{NOTE_URL}?xsec_token=T"))
        session.add(f"{NOTE_URL}?xsec_token=T", FakeResponse(body=note_page()))
        note = await resolver.resolve(LinkTarget(kind="xhs", url="https://xhslink.com/a/AbCd"))
        assert note.url == f"{NOTE_URL}?xsec_token=T"
        assert note.note_id == NOTE_ID
        assert "xhs:" + NOTE_ID in resolver.alias_keys(note)

    async def test_redirect_to_private_rejected(self, resolver, session):
        session.add("https://xhslink.com/a/AbCd", redirect("http://192.168.0.1/"))
        with pytest.raises(InputRejected):
            await resolver.resolve_from_url("https://xhslink.com/a/AbCd")
        assert len(session.requests) == 1

    async def test_share_jump_url_used_for_fetch(self, resolver, session):
        jump = f"https://www.xiaohongshu.com/discovery/item/{NOTE_ID}?xsec_token=T"
        session.add(jump, FakeResponse(body=note_page()))
        share = ShareMeta(title="Card", desc="Card desc", jump_url=jump)
        target = LinkTarget(kind="xhs", url=NOTE_URL)
        assert resolver.matches_share(target, share)
        note = await resolver.resolve(target, share)
        assert session.urls() == [jump]
        resolver.apply_share_meta(note, share, "fallback")
        assert note.source_url == jump
        assert note.title == "Note title"


class TestRendering:

    def test_forward_messages(self, resolver):
        note = parse_note(note_page(), NOTE_URL)
        note.source_url = f"{NOTE_URL}?xsec_token=T"
        messages = resolver.build_forward_messages(note, "42")
        types = [m.segments[0].type for m in messages]
        assert types == ["image", "text", "image"]
        text = messages[1].segments[0].data["text"]
        assert text.splitlines() == ["标题：Note title", "内容：Note body", f"链接：{NOTE_URL}?xsec_token=T"]
        assert all(m.user_name == "小红书解析" for m in messages)

    def test_image_cap(self, resolver):
        image_list = [{"url": f"https://sns-webpic.xhscdn.com/{i}"} for i in range(10)]
        note = parse_note(note_page(image_list=image_list), NOTE_URL)
        messages = resolver.build_forward_messages(note, "42")
        assert sum(1 for m in messages if m.segments[0].type == "image") == 6

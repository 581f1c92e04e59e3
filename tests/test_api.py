import json

import httpx
import pytest

from pixsync import api as api_module
from pixsync.api import PixivAPI, normalize_tags, regular_to_original
from pixsync.config import PixivConfig
from pixsync.errors import PixivAuthError, PixivError


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(api_module.time, "sleep", lambda s: None)


def _client(handler, phpsessid="abc"):
    cfg = PixivConfig(phpsessid=phpsessid, request_delay=0)
    return PixivAPI(cfg, transport=httpx.MockTransport(handler))


def _json(data, status=200):
    return httpx.Response(status, content=json.dumps(data).encode(), headers={"content-type": "application/json"})


def test_regular_to_original():
    url = "https://i.pximg.net/c/600x1200_90/img-master/img/2024/01/01/00/00/00/123_p0_master1200.jpg"
    assert regular_to_original(url) == "https://i.pximg.net/img-original/img/2024/01/01/00/00/00/123_p0.jpg"


def test_normalize_tags_accepts_all_shapes():
    assert normalize_tags(["a", "b"]) == ["a", "b"]
    assert normalize_tags([{"tag": "a"}, {"tag": ""}, 3]) == ["a"]
    assert normalize_tags({"tags": [{"tag": "x"}]}) == ["x"]
    assert normalize_tags(None) == []


def test_requests_carry_session_cookie_and_referer():
    seen = {}

    def handler(request):
        seen["cookie"] = request.headers.get("cookie")
        seen["referer"] = request.headers.get("referer")
        return _json({"error": False, "body": {"illustId": "1", "title": "t"}})

    with _client(handler) as client:
        assert client.get_illust_detail(1)["title"] == "t"
    assert seen["cookie"] == "PHPSESSID=abc"
    assert seen["referer"] == "https://www.pixiv.net/"


def test_missing_session_raises_auth_error():
    with _client(lambda r: _json({}), phpsessid="") as client:
        with pytest.raises(PixivAuthError):
            client.get_illust_detail(1)


def test_detail_error_body_returns_none():
    with _client(lambda r: _json({"error": True, "message": "deleted"})) as client:
        assert client.get_illust_detail(1) is None


def test_image_info_single_page_uses_original_url():
    body = {
        "title": "", "userName": "", "pageCount": 1, "width": 1200, "height": 800,
        "tags": {"tags": [{"tag": "風景"}]},
        "urls": {"original": "https://i.pximg.net/img-original/img/1_p0.png"},
    }
    with _client(lambda r: _json({"error": False, "body": body})) as client:
        info = client.get_image_info(1)
    assert info.title == "Untitled"
    assert info.artist == "Unknown"
    assert info.tags == ["風景"]
    assert info.original_urls == ["https://i.pximg.net/img-original/img/1_p0.png"]
    assert (info.width, info.height) == (1200, 800)


def test_image_info_multi_page_uses_pages_endpoint():
    def handler(request):
        if request.url.path.endswith("/pages"):
            return _json({"error": False, "body": [
                {"urls": {"original": "https://i.pximg.net/img-original/img/2_p0.jpg"}},
                {"urls": {"original": "https://i.pximg.net/img-original/img/2_p1.jpg"}},
            ]})
        return _json({"error": False, "body": {"title": "multi", "userName": "u", "pageCount": 2, "urls": {}}})

    with _client(handler) as client:
        info = client.get_image_info(2)
    assert len(info.original_urls) == 2


def test_image_info_falls_back_to_regular_rewrite():
    body = {"title": "t", "userName": "u", "pageCount": 1, "urls": {
        "regular": "https://i.pximg.net/img-master/img/3_p0_master1200.jpg"}}
    with _client(lambda r: _json({"error": False, "body": body})) as client:
        info = client.get_image_info(3)
    assert info.original_urls == ["https://i.pximg.net/img-original/img/3_p0.jpg"]


def test_ranking_parses_contents():
    def handler(request):
        assert request.url.params["format"] == "json"
        assert request.url.params["mode"] == "daily"
        return _json({"mode": "daily", "contents": [
            {"illust_id": 10, "title": "a", "user_name": "x", "width": 1920, "height": 1080, "tags": ["t"]},
        ]})

    with _client(handler) as client:
        illusts = client.get_ranking("daily")
    assert illusts[0].pid == 10
    assert illusts[0].width == 1920


def test_ranking_without_contents_looks_like_expired_session():
    with _client(lambda r: _json({"error": "login required"})) as client:
        with pytest.raises(PixivAuthError):
            client.get_ranking()


def test_ranking_empty_contents_is_plain_error():
    with _client(lambda r: _json({"mode": "daily", "contents": []})) as client:
        with pytest.raises(PixivError) as exc:
            client.get_ranking()
    assert not isinstance(exc.value, PixivAuthError)


def test_search_by_tag_skips_entries_without_id():
    def handler(request):
        assert request.url.params["order"] == "popular_d"
        assert request.url.params["s_mode"] == "s_tag"
        return _json({"error": False, "body": {"illustManga": {"data": [
            {"id": "5", "title": "a", "width": 100, "height": 200, "tags": ["x"], "bookmarkCount": 12},
            {"isAdContainer": True},
        ]}}})

    with _client(handler) as client:
        illusts = client.search_by_tag("風景")
    assert [i.pid for i in illusts] == [5]
    assert illusts[0].bookmark_count == 12


def test_related_works_respect_limit():
    body = {"illusts": [{"id": str(i), "title": "r", "bookmarkCount": i} for i in range(1, 30)]}
    with _client(lambda r: _json({"error": False, "body": body})) as client:
        assert len(client.get_related_works(1, limit=5)) == 5


def test_retries_server_errors_then_raises():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(503)

    with _client(handler) as client:
        with pytest.raises(PixivError):
            client.get_illust_detail(1)
    assert len(calls) == 3


def test_retry_recovers_after_transient_error():
    responses = [httpx.Response(502), _json({"error": False, "body": {"title": "ok"}})]
    with _client(lambda r: responses.pop(0)) as client:
        assert client.get_illust_detail(1) == {"title": "ok"}


def test_forbidden_is_auth_error():
    with _client(lambda r: httpx.Response(403)) as client:
        with pytest.raises(PixivAuthError):
            client.get_illust_detail(1)


def test_download_sends_no_cookie_and_derives_type():
    seen = {}

    def handler(request):
        seen["cookie"] = request.headers.get("cookie")
        seen["referer"] = request.headers.get("referer")
        return httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})

    with _client(handler) as client:
        image = client.download_image("https://i.pximg.net/img-original/img/1_p0.png")
    assert seen["cookie"] is None
    assert seen["referer"] == "https://www.pixiv.net/"
    assert image.extension == "png"
    assert image.content_type == "image/png"
    assert image.data == b"\x89PNG"


def test_download_missing_returns_none():
    with _client(lambda r: httpx.Response(404)) as client:
        assert client.download_image("https://i.pximg.net/x.jpg") is None


def test_download_forbidden_raises():
    with _client(lambda r: httpx.Response(403)) as client:
        with pytest.raises(PixivError):
            client.download_image("https://i.pximg.net/x.jpg")

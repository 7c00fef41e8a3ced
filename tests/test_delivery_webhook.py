import pytest
import requests

from core.errors import UpstreamUnavailable
from core.models import DownloadReference
from delivery_webhook import DeliveryWebhook, build_delivery_webhook


class RecordingHTTP:
    def __init__(self, status=200, error=None):
        self.status = status
        self.error = error
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        if self.error:
            raise self.error
        resp = requests.Response()
        resp.status_code = self.status
        return resp


REF = DownloadReference("hazard_20260301-080000_U1.zip", "/data/archives/hazard_20260301-080000_U1.zip",
                        "https://bot.example.com/downloads/hazard_20260301-080000_U1.zip")


def test_posts_notice_payload():
    http = RecordingHTTP()
    DeliveryWebhook("https://ops.example.com/hook", timeout=3, session=http).notify(REF, REF.filename, "hazard")
    url, payload, timeout = http.posts[0]
    assert url == "https://ops.example.com/hook"
    assert timeout == 3
    assert payload["url"] == REF.url
    assert payload["filename"] == REF.filename
    assert payload["category"] == "hazard"
    assert "sentAt" in payload


def test_falls_back_to_local_path_without_public_url():
    http = RecordingHTTP()
    ref = DownloadReference("a.zip", "/tmp/a.zip")
    DeliveryWebhook("https://ops.example.com/hook", session=http).notify(ref, "a.zip", "sighting")
    assert http.posts[0][1]["url"] == "/tmp/a.zip"


@pytest.mark.parametrize("http", [RecordingHTTP(status=502), RecordingHTTP(error=requests.Timeout("slow"))])
def test_failures_raise_upstream(http):
    with pytest.raises(UpstreamUnavailable):
        DeliveryWebhook("https://ops.example.com/hook", session=http).notify(REF, REF.filename, "hazard")


def test_unconfigured_webhook_is_none():
    assert build_delivery_webhook("") is None
    assert build_delivery_webhook("   ") is None
    assert isinstance(build_delivery_webhook("https://ops.example.com/hook"), DeliveryWebhook)

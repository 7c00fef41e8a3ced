# delivery_webhook.py — forwards finished report archives to an ops endpoint
from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Optional

import requests

from core.errors import UpstreamUnavailable
from core.models import DownloadReference
from core.schemas import DeliveryNoticeSchema

logger = logging.getLogger("delivery_webhook")

_NOTICE_SCHEMA = DeliveryNoticeSchema()


class DeliveryWebhook:
    """POSTs {url, filename, category, sentAt} as JSON. Failures raise UpstreamUnavailable."""

    def __init__(self, url: str, timeout: float = 10, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.http = session or requests.Session()

    def notify(self, reference: DownloadReference, filename: str, category: str) -> None:
        payload = _NOTICE_SCHEMA.dump({
            "url": reference.link,
            "filename": filename,
            "category": category,
            "sent_at": datetime.now(timezone.utc),
        })
        try:
            resp = self.http.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamUnavailable("delivery-webhook", str(e))
        if resp.status_code >= 300:
            raise UpstreamUnavailable("delivery-webhook", f"HTTP {resp.status_code}")
        logger.info("Forwarded %s to delivery webhook", filename)


def build_delivery_webhook(url: str, timeout: float = 10) -> Optional[DeliveryWebhook]:
    """None when no webhook is configured; absence is not an error."""
    url = (url or "").strip()
    if not url:
        return None
    return DeliveryWebhook(url, timeout=timeout)

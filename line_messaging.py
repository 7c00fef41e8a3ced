# line_messaging.py — LINE Messaging API transport (reply / push / profile / content)
from __future__ import annotations
import base64
import hashlib
import hmac
import logging
import threading
import time
import uuid
from typing import Any, Dict, Optional

import requests

from core.errors import UpstreamUnavailable

logger = logging.getLogger("line_messaging")

# LINE rejects text messages longer than this
MAX_TEXT_LENGTH = 5000


def verify_signature(channel_secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Check X-Line-Signature: base64(HMAC-SHA256(channel_secret, raw body))."""
    if not channel_secret or not signature:
        return False
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, signature.strip())


class ReplyContext:
    """Single-use holder for an event's reply token.

    A reply token can be spent exactly once; the first notice of a chat
    event goes out as a reply and anything after that is pushed.
    """

    def __init__(self, reply_token: Optional[str]):
        self._token = reply_token or None
        self._lock = threading.Lock()

    def take(self) -> Optional[str]:
        with self._lock:
            token, self._token = self._token, None
            return token

    @property
    def available(self) -> bool:
        return self._token is not None


def send_notice(notifier, user_id: str, text: str, reply: Optional[ReplyContext] = None) -> None:
    """Deliver `text`, by reply when the triggering event still has a token, else by push.

    Raises UpstreamUnavailable when delivery fails.
    """
    token = reply.take() if reply is not None else None
    if token:
        notifier.send_immediate(user_id, text, token)
    else:
        notifier.send_deferred(user_id, text)


class LineMessagingClient:
    """Thin requests-based client for the parts of the Messaging API the bot uses.

    Transient failures (connection errors, timeouts, 429/5xx) are retried up
    to `max_attempts` times with a short linear backoff; anything else fails
    immediately. Every failure surfaces as UpstreamUnavailable.
    """

    def __init__(self, access_token: str, api_base: str = "https://api.line.me",
                 data_api_base: str = "https://api-data.line.me", timeout: float = 10,
                 max_attempts: int = 3, backoff_seconds: float = 0.5,
                 session: Optional[requests.Session] = None):
        self.access_token = access_token
        self.api_base = api_base.rstrip("/")
        self.data_api_base = data_api_base.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.http = session or requests.Session()

    @classmethod
    def from_config(cls, line_config) -> "LineMessagingClient":
        return cls(
            access_token=line_config.channel_access_token,
            api_base=line_config.api_base,
            data_api_base=line_config.data_api_base,
            timeout=line_config.http_timeout,
            max_attempts=line_config.max_attempts,
        )

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method: str, url: str, service: str, already_delivered=(), **kwargs) -> requests.Response:
        """
        `already_delivered` lists statuses LINE answers to a retry whose
        earlier attempt was in fact accepted (409 for a push carrying the
        same X-Line-Retry-Key, 400 for a spent reply token). They count as
        success only after an attempt whose outcome is unknown.
        """
        last_error = ""
        maybe_delivered = False
        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = self.http.request(method, url, timeout=self.timeout, **kwargs)
            except requests.RequestException as e:
                last_error = str(e)
                maybe_delivered = True
                logger.warning("[line] %s attempt %d/%d failed: %s", service, attempt, self.max_attempts, e)
            else:
                if resp.status_code < 300:
                    return resp
                if maybe_delivered and resp.status_code in already_delivered:
                    logger.info("[line] %s already accepted on an earlier attempt (HTTP %s, request id %s)",
                                service, resp.status_code, resp.headers.get("x-line-accepted-request-id", "-"))
                    return resp
                last_error = f"HTTP {resp.status_code}: {(resp.text or '').strip()[:200]}"
                if resp.status_code != 429 and resp.status_code < 500:
                    break
                if resp.status_code >= 500:
                    maybe_delivered = True
                logger.warning("[line] %s attempt %d/%d got %s", service, attempt, self.max_attempts, resp.status_code)
            if attempt < self.max_attempts:
                time.sleep(self.backoff_seconds * attempt)
        raise UpstreamUnavailable(service, last_error)

    @staticmethod
    def _text_message(text: str) -> Dict[str, Any]:
        return {"type": "text", "text": text[:MAX_TEXT_LENGTH]}

    # --- Notifier ---------------------------------------------------------

    def send_immediate(self, user_id: str, text: str, reply_token: str) -> None:
        """Reply to the triggering event (free of push quota)."""
        self._request(
            "POST", f"{self.api_base}/v2/bot/message/reply", "line-reply",
            already_delivered=(400,),
            headers=self._headers(),
            json={"replyToken": reply_token, "messages": [self._text_message(text)]},
        )
        logger.debug("[line] replied to %s", user_id)

    def send_deferred(self, user_id: str, text: str) -> None:
        """Push a message; one retry key per logical send so retries never duplicate."""
        self._request(
            "POST", f"{self.api_base}/v2/bot/message/push", "line-push",
            already_delivered=(409,),
            headers=self._headers({"X-Line-Retry-Key": str(uuid.uuid4())}),
            json={"to": user_id, "messages": [self._text_message(text)]},
        )
        logger.debug("[line] pushed to %s", user_id)

    # --- ProfileResolver --------------------------------------------------

    def resolve_display_name(self, user_id: str) -> str:
        """Best-effort; empty string when the profile cannot be fetched."""
        try:
            resp = self._request(
                "GET", f"{self.api_base}/v2/bot/profile/{user_id}", "line-profile",
                headers=self._headers(),
            )
            return (resp.json().get("displayName") or "").strip()
        except (UpstreamUnavailable, ValueError) as e:
            logger.warning("[line] profile lookup failed for %s: %s", user_id, e)
            return ""

    # --- Content ----------------------------------------------------------

    def get_message_content(self, message_id: str) -> bytes:
        """Download the binary payload of an image message."""
        resp = self._request(
            "GET", f"{self.data_api_base}/v2/bot/message/{message_id}/content", "line-content",
            headers=self._headers(),
        )
        return resp.content

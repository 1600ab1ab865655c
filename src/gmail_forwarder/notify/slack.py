"""Slack chat transports: incoming webhook (stateless) and Web API (threaded)."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import requests

from gmail_forwarder.core.exceptions import DispatchError

logger = logging.getLogger(__name__)

POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"


class ChatTransport(Protocol):
    """Posts one JSON payload to a channel; returns a thread handle when it has one."""

    def post_message(
        self, channel: str, payload: dict[str, Any], thread_ref: str | None = None
    ) -> str | None: ...


class WebhookTransport:
    """Slack incoming webhook. Never yields a thread handle."""

    def __init__(
        self,
        webhook_url: str,
        *,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.webhook_url = webhook_url
        self.session = session or requests.Session()
        self.timeout = timeout

    def post_message(
        self, channel: str, payload: dict[str, Any], thread_ref: str | None = None
    ) -> str | None:
        body = {"channel": channel, **payload}
        try:
            response = self.session.post(self.webhook_url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise DispatchError(f"Webhook request failed: {e}") from e

        if response.status_code != 200:
            logger.error("Slack webhook failed (%s): %s", response.status_code, response.text)
            raise DispatchError(
                f"Slack webhook error: {response.status_code} - {response.text}"
            )
        return None


class WebApiTransport:
    """Slack Web API ``chat.postMessage`` with a bot token; returns the message ``ts``."""

    def __init__(
        self,
        bot_token: str,
        *,
        session: requests.Session | None = None,
        timeout: float = 30.0,
        api_url: str = POST_MESSAGE_URL,
    ) -> None:
        self.bot_token = bot_token
        self.session = session or requests.Session()
        self.timeout = timeout
        self.api_url = api_url

    def post_message(
        self, channel: str, payload: dict[str, Any], thread_ref: str | None = None
    ) -> str | None:
        body: dict[str, Any] = {
            **payload,
            "channel": channel.lstrip("#"),
            "unfurl_links": False,
            "unfurl_media": False,
        }
        if not body.get("text"):
            body["text"] = self._fallback_text(payload)
        if thread_ref:
            body["thread_ts"] = thread_ref

        headers = {"Authorization": f"Bearer {self.bot_token}"}
        try:
            response = self.session.post(
                self.api_url, headers=headers, json=body, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise DispatchError(f"Slack API request failed: {e}") from e

        data = self._parse_response_body(response)
        if response.status_code >= 400 or not isinstance(data, dict) or not data.get("ok"):
            error = data.get("error") if isinstance(data, dict) else data
            logger.error("Slack API call failed (%s): %s", response.status_code, error)
            raise DispatchError(f"Slack API error: {error}")
        return data.get("ts")

    @staticmethod
    def _fallback_text(payload: dict[str, Any]) -> str:
        for attachment in payload.get("attachments", []):
            if attachment.get("title"):
                return attachment["title"]
        return " "

    @staticmethod
    def _parse_response_body(response) -> dict | str:
        try:
            return response.json()
        except ValueError:
            return response.text

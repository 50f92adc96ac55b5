"""
Slack collaborator: post replies into the thread a request came from.

Uses the Web API `chat.postMessage` with a bot token. Transport errors are
retried; an `ok: false` answer from Slack is not (it will not get better).
"""

from __future__ import annotations

import asyncio

import requests
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from patchbay.trigger import WriteTrigger

SLACK_API_URL = "https://slack.com/api"
SLACK_TIMEOUT_SECONDS = 10


class SlackApiError(Exception):
    def __init__(self, error: str):
        super().__init__(f"Slack API error: {error}")
        self.error = error


class SlackThreadPublisher:
    def __init__(self, token: str, api_url: str = SLACK_API_URL):
        self.token = token
        self.api_url = api_url.rstrip("/")

    async def publish_in_thread(self, channel: str, thread_ts: str, text: str) -> str:
        """Post `text` as a threaded reply. Returns the new message's ts."""
        return await asyncio.to_thread(self.post_message, channel, thread_ts, text)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_exception_type(requests.RequestException),
        reraise=True,
    )
    def post_message(self, channel: str, thread_ts: str | None, text: str) -> str:
        payload = {"channel": channel, "text": text, "unfurl_links": False}
        if thread_ts:
            payload["thread_ts"] = thread_ts

        resp = requests.post(
            f"{self.api_url}/chat.postMessage",
            json=payload,
            headers={"Authorization": f"Bearer {self.token}"},
            timeout=SLACK_TIMEOUT_SECONDS,
        )
        resp.raise_for_status()
        data = resp.json()
        if not data.get("ok"):
            raise SlackApiError(data.get("error", "unknown_error"))

        logger.debug(f"[SLACK] Posted to {channel} (thread {thread_ts})")
        return data.get("ts", "")


class SlackReplier:
    def __init__(self, publisher: SlackThreadPublisher):
        self.publisher = publisher

    async def reply(self, trigger: WriteTrigger, text: str) -> None:
        await self.publisher.publish_in_thread(trigger.channel, trigger.thread_id, text)

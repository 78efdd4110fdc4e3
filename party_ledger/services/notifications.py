"""
Notification Channels: outbound delivery of milestone events.

Channels are best-effort. `send_milestone` reports success as a bool and
never raises, so a chat outage can never unwind the state change that
produced the event.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone

import httpx

from ..core.config import Settings
from .milestones import MilestoneEvent


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


# =============================================================================
# MESSAGE BUILDERS
# =============================================================================


class SlackBlocks:
    """Block Kit builders for Slack messages."""

    @staticmethod
    def milestone_reached(player_name: str, points: int, action: str) -> list[dict]:
        plural = "" if points == 1 else "s"
        return [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "🎯 Milestone Reached! 🎯", "emoji": True},
            },
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"*{player_name}* just reached *{points} point{plural}*!",
                },
            },
            {"type": "divider"},
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Points:*\n{points}"},
                    {"type": "mrkdwn", "text": f"*Consequence:*\n{action}"},
                ],
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": "🍻 *Time to pay up!* 🍻"},
            },
        ]

    @staticmethod
    def alert(title: str, message: str, severity: str, details: dict | None = None) -> list[dict]:
        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"🚨 {title}", "emoji": True},
            },
            {"type": "section", "text": {"type": "mrkdwn", "text": message}},
        ]
        if details:
            details_text = "\n".join([f"• *{k}*: {v}" for k, v in details.items()])
            blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": details_text}})
        blocks.append({
            "type": "context",
            "elements": [
                {
                    "type": "mrkdwn",
                    "text": f"Severity: *{severity.upper()}* | Time: {datetime.now(timezone.utc).isoformat()}",
                },
            ],
        })
        return blocks


def milestone_text(event: MilestoneEvent) -> str:
    """Plain-text rendition of a milestone, for channels without rich blocks."""
    return (
        f"🎯 MILESTONE REACHED! 🎯\n\n"
        f"{event.player_name} just reached {event.points} points!\n\n"
        f"Consequence: {event.action}\n\n"
        f"Time to pay up! 🍻"
    )


# =============================================================================
# CHANNELS
# =============================================================================


class NotificationChannel(ABC):
    """Abstract base for notification delivery channels."""

    name: str = "channel"

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self._client = client
        self._timeout = timeout

    @property
    @abstractmethod
    def enabled(self) -> bool:
        """Whether the channel has the configuration it needs."""

    @abstractmethod
    async def send_milestone(self, event: MilestoneEvent) -> bool:
        """Deliver a milestone event. Returns success; never raises."""

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, timeout=self._timeout, **kwargs)
        async with httpx.AsyncClient() as client:
            return await client.post(url, timeout=self._timeout, **kwargs)


class SlackChannel(NotificationChannel):
    """Slack incoming-webhook channel."""

    name = "slack"

    def __init__(self, webhook_url: str | None, client: httpx.AsyncClient | None = None, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        super().__init__(client=client, timeout=timeout)
        self._webhook_url = webhook_url
        if not webhook_url:
            logger.warning("SLACK_WEBHOOK_URL is not set. Slack notifications will be disabled.")

    @property
    def enabled(self) -> bool:
        return bool(self._webhook_url)

    async def send_text(self, text: str) -> bool:
        """Send a simple text message."""
        return await self._send({"text": text}, what="message")

    async def send_blocks(self, blocks: list[dict], fallback_text: str = "") -> bool:
        payload: dict = {"blocks": blocks}
        if fallback_text:
            payload["text"] = fallback_text
        return await self._send(payload, what="blocks")

    async def send_milestone(self, event: MilestoneEvent) -> bool:
        blocks = SlackBlocks.milestone_reached(event.player_name, event.points, event.action)
        return await self._send(
            {"blocks": blocks, "text": f"{event.player_name} reached {event.points} points"},
            what="milestone",
        )

    async def _send(self, payload: dict, what: str) -> bool:
        if not self._webhook_url:
            logger.warning("Slack webhook URL not configured")
            return False

        try:
            response = await self._post(self._webhook_url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Error sending Slack {what}: {e}")
            return False

        if response.is_error:
            logger.error(f"Failed to send Slack {what}: {response.status_code} {response.text[:200]}")
            return False
        return True


class WhatsAppChannel(NotificationChannel):
    """Group WhatsApp message through the Twilio Messages API."""

    name = "whatsapp"
    api_base = "https://api.twilio.com/2010-04-01"

    def __init__(
        self,
        account_sid: str | None,
        auth_token: str | None,
        from_number: str | None,
        to_number: str | None,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        super().__init__(client=client, timeout=timeout)
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._to_number = to_number

    @property
    def enabled(self) -> bool:
        return bool(self._account_sid and self._auth_token and self._from_number and self._to_number)

    async def send_milestone(self, event: MilestoneEvent) -> bool:
        if not self.enabled:
            logger.warning("Twilio WhatsApp is not configured")
            return False

        url = f"{self.api_base}/Accounts/{self._account_sid}/Messages.json"
        try:
            response = await self._post(
                url,
                data={
                    "From": self._from_number,
                    "To": self._to_number,
                    "Body": milestone_text(event),
                },
                auth=(self._account_sid, self._auth_token),
            )
        except httpx.HTTPError as e:
            logger.error(f"Error sending WhatsApp milestone: {e}")
            return False

        if response.is_error:
            logger.error(f"Twilio error: {response.status_code} {response.text[:200]}")
            return False
        return True


def channels_from_settings(
    settings: Settings,
    client: httpx.AsyncClient | None = None,
) -> list[NotificationChannel]:
    """Build every configured channel."""
    channels: list[NotificationChannel] = []
    if settings.slack_enabled:
        channels.append(SlackChannel(settings.slack_webhook_url, client=client))
    if settings.whatsapp_enabled:
        channels.append(WhatsAppChannel(
            settings.twilio_account_sid,
            settings.twilio_auth_token,
            settings.twilio_whatsapp_number,
            settings.group_whatsapp_number,
            client=client,
        ))
    return channels

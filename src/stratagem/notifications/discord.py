"""Discord webhook notifications for escalated governance alerts."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from stratagem.governance.alert_store import AlertRecord
    from stratagem.governance.escalation import EscalationRecord


class DiscordError(Exception):
    """Discord webhook error."""

    pass


SEVERITY_COLORS = {
    "critical": 0xED4245,  # Red
    "warn": 0xFEE75C,  # Yellow
    "info": 0x5865F2,  # Blurple
}


class DiscordWebhookClient:
    """Posts messages to a Discord channel webhook."""

    def __init__(self, webhook_url: str, timeout: float = 10.0):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send_message(self, content: str, embeds: list[dict] | None = None) -> None:
        data: dict = {"content": content}
        if embeds:
            data["embeds"] = embeds

        client = await self._get_client()
        try:
            response = await client.post(self.webhook_url, json=data)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DiscordError(f"Discord webhook error: {str(e)}") from e

    async def send_escalation_alert(self, alert: AlertRecord, escalation: EscalationRecord) -> None:
        """Notify that an unacknowledged alert breached its SLA."""
        age_min = escalation.age_ms_at_escalation / 60_000
        embed = {
            "title": f"Escalated: {alert.alert_id} ({alert.strategy})",
            "color": SEVERITY_COLORS.get(alert.severity, SEVERITY_COLORS["critical"]),
            "description": alert.message,
            "fields": [
                {"name": "Severity", "value": alert.severity.upper(), "inline": True},
                {"name": "Unacked For", "value": f"{age_min:.1f} min", "inline": True},
                {"name": "SLA", "value": f"{escalation.threshold_ms / 60_000:.1f} min", "inline": True},
                {"name": "Alert ID", "value": str(alert.id), "inline": True},
                {"name": "Reason", "value": escalation.reason_code, "inline": True},
            ],
            "footer": {"text": f"Dedup group {alert.dedup_group}"},
        }
        await self.send_message(
            content=f"**GOVERNANCE ESCALATION: {alert.strategy}**",
            embeds=[embed],
        )

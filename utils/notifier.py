#!/usr/bin/env python3
"""
Discord Alert Sink for Remote Monitoring

Sends notifications to Discord via webhook for:
- Circuit breaker trips, recoveries and manual actions
- Treasury health changes and critical balance
- Relayer startup/shutdown

Usage:
    from utils.notifier import get_notifier
    notifier = get_notifier()
    notifier.attach(breaker, treasury)
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Set

import httpx

from config.settings import NotifierConfig, notifier_config
from relay_guard.circuit_breaker import CircuitBreaker, CircuitEvent
from relay_guard.treasury_manager import TreasuryEvent, TreasuryManager

logger = logging.getLogger(__name__)

GREEN = 0x00FF00
YELLOW = 0xFFFF00
ORANGE = 0xFF6600
RED = 0xFF0000

TREASURY_ALERT_KINDS = ("health_changed", "critical", "warning")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class DiscordNotifier:
    """
    Discord webhook alert sink.

    Set DISCORD_WEBHOOK_URL in your .env file.
    Get webhook URL from Discord: Server Settings > Integrations > Webhooks
    """

    def __init__(self, config: Optional[NotifierConfig] = None, webhook_url: Optional[str] = None):
        self.config = config or notifier_config
        self.webhook_url = webhook_url if webhook_url is not None else self.config.discord_webhook_url
        self.enabled = bool(self.webhook_url)
        self.bot_name = "Relay Guard"
        self.instance_id = self.config.instance_id
        self._pending: Set[asyncio.Task] = set()

        if self.enabled:
            logger.info("📣 Discord notifications enabled")
        else:
            logger.warning("📣 Discord notifications disabled (no webhook URL)")

    async def _send(self, content: str, embeds: Optional[list] = None) -> bool:
        """Send message to Discord webhook."""
        if not self.enabled:
            return False

        payload = {"content": content}
        if embeds:
            payload["embeds"] = embeds

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                resp = await client.post(
                    self.webhook_url,
                    json=payload,
                    headers={"Content-Type": "application/json"}
                )
                if resp.status_code not in (200, 204):
                    logger.warning(f"Discord webhook failed: {resp.status_code}")
                    return False
                return True
        except httpx.HTTPError as e:
            logger.error(f"Discord notification failed: {e}")
            return False

    def is_configured(self) -> bool:
        """Check if Discord webhook is configured and valid."""
        if not self.webhook_url:
            return False
        return self.webhook_url.startswith("https://discord.com/api/webhooks/")

    def get_status(self) -> dict:
        return {
            "enabled": self.enabled,
            "configured": self.is_configured(),
            "webhook_url_set": bool(self.webhook_url),
            "instance_id": self.instance_id,
        }

    # =========================================================================
    # LISTENER BRIDGE
    # =========================================================================

    def _schedule(self, coro) -> None:
        """
        Guard listeners are synchronous; webhook calls are not. Schedule on
        the running loop, or drop the alert when there is none.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.debug("No running event loop, alert not sent")
            return
        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def attach(self, breaker: CircuitBreaker, treasury: TreasuryManager) -> None:
        """Subscribe to breaker transitions and treasury health alerts."""
        breaker.add_listener(self.handle_circuit_event)
        treasury.add_listener(self.handle_treasury_event)

    def handle_circuit_event(self, event: CircuitEvent) -> None:
        self._schedule(self.on_circuit_event(event))

    def handle_treasury_event(self, event: TreasuryEvent) -> None:
        if event.kind in TREASURY_ALERT_KINDS:
            self._schedule(self.on_treasury_event(event))

    async def flush(self) -> None:
        """Wait for in-flight alerts (used before shutdown)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    # =========================================================================
    # ALERTS
    # =========================================================================

    async def on_startup(self, mode: str = "live"):
        """Send notification when the relayer starts."""
        embed = {
            "title": "🚀 Relayer Guard Active",
            "description": f"**{self.bot_name}** is now admitting relays",
            "color": GREEN,
            "fields": [
                {"name": "Mode", "value": mode.upper(), "inline": True},
                {"name": "Instance", "value": self.instance_id, "inline": True},
                {"name": "Started", "value": _now_iso(), "inline": False},
            ],
            "footer": {"text": "Relayer Fleet"}
        }

        await self._send("", embeds=[embed])
        logger.info(f"📣 Sent startup notification (mode: {mode})")

    async def on_shutdown(self, reason: str = "Manual stop"):
        embed = {
            "title": "🛑 Relayer Shutdown",
            "description": f"**{self.bot_name}** has stopped",
            "color": RED,
            "fields": [
                {"name": "Reason", "value": reason, "inline": False},
                {"name": "Instance", "value": self.instance_id, "inline": True},
            ],
            "footer": {"text": "Relayer Fleet"}
        }

        await self._send("", embeds=[embed])
        logger.info(f"📣 Sent shutdown notification (reason: {reason})")

    async def on_circuit_event(self, event: CircuitEvent):
        """Trips page everyone; recoveries are informational."""
        reason = event.reason.value if event.reason else "-"
        if event.kind in ("trip", "manual_trip"):
            title, color, mention = f"🚨 CIRCUIT OPEN: {reason}", RED, "@everyone"
        elif event.kind == "half_open":
            title, color, mention = "🔄 Circuit testing recovery", YELLOW, ""
        else:
            title, color, mention = f"✅ Circuit {event.kind.replace('_', ' ')}", GREEN, ""

        fields = [
            {"name": "State", "value": event.state.value, "inline": True},
            {"name": "Instance", "value": self.instance_id, "inline": True},
        ]
        for key, value in event.details.items():
            fields.append({"name": key, "value": str(value), "inline": True})

        embed = {
            "title": title,
            "color": color,
            "fields": fields,
            "timestamp": event.to_dict()["timestamp"],
        }
        await self._send(mention, embeds=[embed])

    async def on_treasury_event(self, event: TreasuryEvent):
        critical = event.kind == "critical" or event.health.value == "CRITICAL"
        embed = {
            "title": f"{'🚨' if critical else '⚠️'} Treasury {event.health.value}",
            "description": str(event.details.get("message", event.kind.replace("_", " "))),
            "color": RED if critical else ORANGE,
            "fields": [
                {"name": "Balance", "value": f"{event.balance} XRP", "inline": True},
                {"name": "Available", "value": f"{event.available} XRP", "inline": True},
                {"name": "Instance", "value": self.instance_id, "inline": True},
            ],
            "timestamp": _now_iso(),
        }
        await self._send("@here" if critical else "", embeds=[embed])

    async def on_error(self, error: str, traceback: Optional[str] = None):
        embed = {
            "title": "⚠️ ERROR",
            "description": f"```\n{error[:1000]}\n```",
            "color": RED,
            "fields": [
                {"name": "Instance", "value": self.instance_id, "inline": True},
            ],
            "timestamp": _now_iso(),
        }

        if traceback:
            embed["fields"].append({
                "name": "Traceback",
                "value": f"```\n{traceback[:500]}\n```",
                "inline": False
            })

        await self._send("@here", embeds=[embed])
        logger.error(f"📣 Sent error notification: {error[:100]}")


# Global instance (lazy initialization)
_notifier: Optional[DiscordNotifier] = None


def get_notifier() -> DiscordNotifier:
    """Get or create the global notifier instance."""
    global _notifier
    if _notifier is None:
        _notifier = DiscordNotifier()
    return _notifier

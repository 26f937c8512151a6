"""
Campaign alerts — webhook notifications about the state of a fill campaign.

Events:
- campaign done         (info, carries the final summary)
- campaign stalled      (critical, N batches in a row without a successful send)
- campaign exhausted    (critical, no work left while the size target is unmet)
- fatal config error    (critical, raised before the first batch)

Every alert carries the campaign context (id, phase, progress) as structured
fields, rendered per channel.

Configuration via env vars:
    ALERT_WEBHOOK_URL=https://hooks.slack.com/services/...
    ALERT_CHANNEL=slack  (or 'discord', 'telegram')
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Tuple

import aiohttp

import config

logger = logging.getLogger("mailfill.alerts")

Fields = List[Tuple[str, str]]


class AlertLevel:
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


LEVEL_COLORS = {
    AlertLevel.CRITICAL: 0xD7263D,
    AlertLevel.WARNING: 0xF49D37,
    AlertLevel.INFO: 0x1B998B,
}
DEFAULT_COLOR = 0x808080


def _campaign_fields(phase: str = None, **extra) -> Fields:
    fields = [("Campaign", config.CAMPAIGN_ID)]
    if phase:
        fields.append(("Phase", phase))
    fields.extend((name.replace("_", " ").capitalize(), str(value)) for name, value in extra.items())
    return fields


def _mb(n_bytes: int) -> str:
    return f"{n_bytes / (1024 * 1024):.1f} MB"


async def send_alert(
    title: str,
    message: str,
    level: str = AlertLevel.INFO,
    fields: Fields = None,
) -> bool:
    """
    Post one campaign event to the configured webhook.

    Returns:
        True if the webhook accepted it; False when alerts are disabled or the
        post failed (a broken webhook never stops the campaign)
    """
    webhook_url = config.ALERT_WEBHOOK_URL
    channel = config.ALERT_CHANNEL
    if not webhook_url:
        logger.debug(f"alert_skipped: [{level}] {title}")
        return False

    fields = fields or []
    builder = PAYLOAD_BUILDERS.get(channel, slack_payload)
    payload = builder(title, message, level, fields)

    url = webhook_url
    if channel == "telegram":
        url = f"https://api.telegram.org/bot{webhook_url}/sendMessage"

    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=10)) as resp:
                if resp.status in (200, 204):
                    logger.info(f"alert_sent: [{level}] {title}")
                    return True
                body = await resp.text()
                logger.error(f"alert_rejected: {channel} webhook returned {resp.status}: {body[:200]}")
                return False
    except Exception as e:
        logger.error(f"alert_failed: {channel} webhook unreachable ({e})")
        return False


def slack_payload(title: str, message: str, level: str, fields: Fields) -> dict:
    return {
        "attachments": [
            {
                "color": "#{:06X}".format(LEVEL_COLORS.get(level, DEFAULT_COLOR)),
                "title": title,
                "text": message,
                "fields": [{"title": name, "value": value, "short": True} for name, value in fields],
                "footer": "mailbox-filler",
                "ts": int(datetime.now(timezone.utc).timestamp()),
            }
        ]
    }


def discord_payload(title: str, message: str, level: str, fields: Fields) -> dict:
    return {
        "embeds": [
            {
                "title": title,
                "description": message,
                "color": LEVEL_COLORS.get(level, DEFAULT_COLOR),
                "fields": [{"name": name, "value": value, "inline": True} for name, value in fields],
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        ]
    }


def telegram_payload(title: str, message: str, level: str, fields: Fields) -> dict:
    lines = [f"*{title}*", "", message]
    if fields:
        lines.append("")
        lines.extend(f"{name}: `{value}`" for name, value in fields)
    return {
        "chat_id": config.TELEGRAM_CHAT_ID,
        "text": "\n".join(lines),
        "parse_mode": "Markdown",
    }


PAYLOAD_BUILDERS = {
    "slack": slack_payload,
    "discord": discord_payload,
    "telegram": telegram_payload,
}


# ── campaign events ──────────────────────────────────────────────────


def format_summary(summary: Dict) -> str:
    lines = [
        f"Estimated mailbox size: {summary['estimated_mb']:.1f} MB of {summary['target_mb']:.1f} MB",
    ]
    for kind, counts in summary["kinds"].items():
        lines.append(
            f"  {kind}: {counts['succeeded']}/{counts['target']} sent ({counts['attempted']} attempted)"
        )
    if summary.get("started_at"):
        lines.append(f"Started: {summary['started_at']} (elapsed {summary['elapsed']})")
    return "\n".join(lines)


async def alert_campaign_done(summary: Dict):
    await send_alert(
        title="Mailbox fill complete",
        message=format_summary(summary),
        level=AlertLevel.INFO,
        fields=_campaign_fields(summary["phase"]),
    )


async def alert_campaign_stalled(phase: str, empty_batches: int, last_error: str = None):
    message = (
        f"Stage '{phase}' produced no successful send for {empty_batches} batches in a row. "
        f"Progress is saved; restart once the endpoint accepts logins again."
    )
    await send_alert(
        title="Mailbox fill stalled",
        message=message,
        level=AlertLevel.CRITICAL,
        fields=_campaign_fields(phase, empty_batches=empty_batches, last_error=(last_error or "n/a")[:300]),
    )


async def alert_campaign_exhausted(phase: str, reason: str, estimated_bytes: int, target_bytes: int):
    await send_alert(
        title="Mailbox fill ran out of work",
        message=f"No more sends can be generated before the size target: {reason}.",
        level=AlertLevel.CRITICAL,
        fields=_campaign_fields(phase, estimated=_mb(estimated_bytes), target=_mb(target_bytes)),
    )


async def alert_fatal_config(error: str):
    await send_alert(
        title="Mailbox fill not started",
        message=f"Configuration error before the first batch:\n{error}",
        level=AlertLevel.CRITICAL,
        fields=_campaign_fields(),
    )

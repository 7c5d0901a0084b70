from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

from pricewatch.alerts.models import TriggerEvent
from pricewatch.utils.time import epoch_s

NOTES_MAX = 1000
CONTEXT_MAX = 500

DISCORD_COLORS = {"above": 0x00FF00, "below": 0xFF0000, "either": 0xFFA500}
DISCORD_DEFAULT_COLOR = 0x808080
TEAMS_STYLES = {"above": "good", "below": "attention", "either": "accent"}
ICONS = {"above": "⬆️", "below": "⬇️", "either": "🔄"}


def truncate(text: Optional[str], limit: int) -> Optional[str]:
    if text is None:
        return None
    return text if len(text) <= limit else text[:limit] + "..."

def crossed_side(evt: TriggerEvent) -> str:
    return "above" if evt.current_price >= evt.target_price else "below"

def headline(evt: TriggerEvent) -> str:
    sym = evt.symbol
    if evt.direction == "above":
        return f"**{sym}** has risen above your target price!"
    if evt.direction == "below":
        return f"**{sym}** has fallen below your target price!"
    if evt.direction == "either":
        return f"**{sym}** has crossed your target price (now {crossed_side(evt)} target)!"
    return f"**{sym}** price alert triggered!"

def change_text(evt: TriggerEvent) -> Optional[str]:
    pc = evt.price_change
    if pc is None:
        return None
    arrow = "📈" if pc.change >= 0 else "📉"
    sign = "+" if pc.change >= 0 else "-"
    pct_sign = "+" if pc.change_pct >= 0 else ""
    return f"{arrow} {sign}${abs(pc.change):.2f} ({pct_sign}{pc.change_pct:.2f}%)"

def _fmt_volume(v: float) -> str:
    return f"{v:,.0f}" if float(v).is_integer() else f"{v:,.4f}".rstrip("0").rstrip(".")

def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat()


# --------- Discord ----------

def discord_embed(evt: TriggerEvent) -> dict[str, Any]:
    fields: list[dict[str, Any]] = [
        {"name": "💰 Current Price", "value": f"${evt.current_price:.2f}", "inline": True},
        {"name": "🎯 Target Price", "value": f"${evt.target_price:.2f}", "inline": True},
        {"name": "📊 Direction", "value": evt.direction.capitalize(), "inline": True},
    ]
    change = change_text(evt)
    if change:
        fields.append({"name": "📈 Price Change", "value": change, "inline": False})
    if evt.volume:
        fields.append({"name": "📦 Volume", "value": _fmt_volume(evt.volume), "inline": True})
    if evt.alert_type:
        fields.append({"name": "🔔 Alert Type", "value": evt.alert_type, "inline": True})
    fields.append({"name": "⏰ Time", "value": f"<t:{int(epoch_s(evt.timestamp))}:F>", "inline": False})
    if evt.notes:
        fields.append({"name": "📝 Notes", "value": truncate(evt.notes, NOTES_MAX), "inline": False})
    if evt.prompt:
        fields.append({"name": "🤖 AI Context", "value": truncate(evt.prompt, CONTEXT_MAX), "inline": False})

    return {
        "title": f"{ICONS.get(evt.direction, '🔔')} Price Alert: {evt.symbol}",
        "description": headline(evt),
        "color": DISCORD_COLORS.get(evt.direction, DISCORD_DEFAULT_COLOR),
        "fields": fields,
        "timestamp": _iso(evt.timestamp),
        "footer": {"text": "Price Tracker Bot"},
    }

def discord_status_embed(status: dict[str, Any]) -> dict[str, Any]:
    running = bool(status.get("running"))
    connected = bool(status.get("connection", {}).get("connected"))
    return {
        "title": "🤖 Price Tracker Status",
        "description": "System status update",
        "color": 0x00FF00 if running else 0xFF0000,
        "fields": [
            {"name": "🔄 Status", "value": "✅ Running" if running else "❌ Stopped", "inline": True},
            {"name": "📊 Active Symbols", "value": str(len(status.get("symbols", []))), "inline": True},
            {"name": "🔔 Total Alerts", "value": str(status.get("total_alerts", 0)), "inline": True},
            {"name": "🌐 Tick Stream", "value": "✅ Connected" if connected else "❌ Disconnected", "inline": True},
        ],
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "footer": {"text": "Price Tracker Bot Status"},
    }

def discord_error_embed(context: str, message: str) -> dict[str, Any]:
    return {
        "title": "🚨 Price Tracker Error",
        "description": truncate(message, 2000),
        "color": 0xFF0000,
        "fields": [{"name": "📍 Context", "value": context, "inline": True}],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# --------- Microsoft Teams ----------

def teams_card(evt: TriggerEvent) -> dict[str, Any]:
    """Adaptive Card 1.4 wrapped in a Teams message envelope."""
    if evt.direction == "either":
        subtitle = f"Crossed Target ({crossed_side(evt)})"
    else:
        subtitle = {"above": "Above Target", "below": "Below Target"}.get(evt.direction, "Alert Triggered")

    facts = [
        {"title": "💰 Current Price:", "value": f"${evt.current_price:.2f}"},
        {"title": "🎯 Target Price:", "value": f"${evt.target_price:.2f}"},
        {"title": "📊 Direction:", "value": evt.direction.capitalize()},
    ]
    change = change_text(evt)
    if change:
        facts.append({"title": "📈 Price Change:", "value": change})
    if evt.volume:
        facts.append({"title": "📦 Volume:", "value": _fmt_volume(evt.volume)})
    if evt.alert_type:
        facts.append({"title": "🔔 Alert Type:", "value": evt.alert_type})
    facts.append({"title": "⏰ Time:", "value": _iso(evt.timestamp)})

    body: list[dict[str, Any]] = [
        {
            "type": "Container",
            "style": TEAMS_STYLES.get(evt.direction, "default"),
            "items": [
                {"type": "TextBlock", "text": f"{ICONS.get(evt.direction, '🔔')} Price Alert: {evt.symbol}",
                 "weight": "Bolder", "size": "Large", "wrap": True},
                {"type": "TextBlock", "text": subtitle, "weight": "Lighter", "size": "Medium",
                 "spacing": "None", "wrap": True},
            ],
        },
        {"type": "FactSet", "facts": facts},
    ]
    if evt.notes and evt.notes.strip():
        body.append({"type": "TextBlock", "text": "📝 **Notes:**", "weight": "Bolder", "spacing": "Medium"})
        body.append({"type": "TextBlock", "text": truncate(evt.notes, NOTES_MAX), "wrap": True, "spacing": "Small"})
    if evt.prompt and evt.prompt.strip():
        body.append({"type": "TextBlock", "text": "🤖 **AI Context:**", "weight": "Bolder", "spacing": "Medium"})
        body.append({"type": "TextBlock", "text": truncate(evt.prompt, CONTEXT_MAX), "wrap": True, "spacing": "Small"})

    card = {
        "$schema": "http://adaptivecards.io/schemas/adaptive-card.json",
        "type": "AdaptiveCard",
        "version": "1.4",
        "body": body,
    }
    return {
        "type": "message",
        "attachments": [{"contentType": "application/vnd.microsoft.card.adaptive", "content": card}],
    }


# --------- plain text (console / Telegram) ----------

def _fmt_ts(ts: datetime, tz_name: str) -> str:
    return ts.astimezone(ZoneInfo(tz_name)).strftime("%Y-%m-%d %H:%M:%S %Z")

def alert_text(evt: TriggerEvent, tz_name: str = "UTC") -> str:
    label = evt.direction.upper() if evt.direction in ICONS else "ALERT"
    if evt.direction == "either":
        label = f"CROSSED {crossed_side(evt).upper()}"
    lines = [
        f"[{evt.symbol} {label}] {_fmt_ts(evt.timestamp, tz_name)}  "
        f"{evt.current_price:.2f} vs target {evt.target_price:.2f}"
    ]
    change = change_text(evt)
    if change:
        lines.append(f"change: {change}")
    if evt.volume:
        lines.append(f"volume: {_fmt_volume(evt.volume)}")
    if evt.alert_type:
        lines.append(f"type: {evt.alert_type}")
    if evt.notes:
        lines.append(f"notes: {truncate(evt.notes, NOTES_MAX)}")
    if evt.prompt:
        lines.append(f"context: {truncate(evt.prompt, CONTEXT_MAX)}")
    return "\n".join(lines)

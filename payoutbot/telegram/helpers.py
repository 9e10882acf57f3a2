from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from telegram.ext import ContextTypes

try:
    USER_TIMEZONE = ZoneInfo("Asia/Jakarta")
except ZoneInfoNotFoundError:
    USER_TIMEZONE = timezone(timedelta(hours=7))

STATUS_EMOJI = {
    "success": "✅",
    "pending": "⏳",
    "failed": "❌",
}

_MARKDOWN_SPECIALS = ("\\", "_", "*", "`", "[")


def bot_data(context: ContextTypes.DEFAULT_TYPE) -> dict[str, Any]:
    return context.application.bot_data


def escape_markdown(text: Any) -> str:
    value = str(text)
    for char in _MARKDOWN_SPECIALS:
        value = value.replace(char, f"\\{char}")
    return value


def format_rupiah(amount: Any) -> str:
    try:
        value = Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return f"Rp {amount}"
    return "Rp " + f"{int(value):,}".replace(",", ".")


def compute_fee(amount: int, fee_percentage: float) -> int:
    fee = Decimal(amount) * Decimal(str(fee_percentage))
    return int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_percentage(fraction: float) -> str:
    value = Decimal(str(fraction)) * 100
    text = f"{value.normalize():f}"
    return f"{text}%"


def parse_percentage(raw: str) -> float:
    """Parse ``"2.5"`` or ``"2,5%"`` into the fraction ``0.025``."""
    cleaned = raw.strip().rstrip("%").replace(",", ".")
    try:
        value = Decimal(cleaned)
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid percentage '{raw}'.") from exc
    if value < 0 or value > 100:
        raise ValueError("Percentage must be between 0 and 100.")
    return float(value / 100)


def status_emoji(status: Any) -> str:
    key = getattr(status, "value", status)
    return STATUS_EMOJI.get(str(key), "❔")


def format_timestamp(value: datetime | str | None) -> str:
    if value is None:
        return "Never"
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(USER_TIMEZONE).strftime("%d/%m/%Y %H:%M")


def format_uptime(seconds: float) -> str:
    total = int(seconds)
    days, remainder = divmod(total, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, secs = divmod(remainder, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)

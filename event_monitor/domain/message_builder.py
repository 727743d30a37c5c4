from __future__ import annotations

from collections.abc import Iterable, Mapping

from event_monitor.domain.models import Advertisement, Category, Message

CATEGORY_LABELS: dict[Category, str] = {
    Category.RECHARGE: "💰 Recharge",
    Category.WITHDRAW: "💸 Withdrawal",
    Category.REDPACKET: "🧧 Red packet",
    Category.ADVERTISEMENT: "📢 Advertisement",
}


def build_record_message(category: Category, row: Mapping[str, object]) -> Message:
    label = CATEGORY_LABELS.get(category, category.value)
    lines = [f"{label} #{row.get('id')}"]
    for key in ("user_id", "sender_id", "amount", "status", "created_at", "create_time"):
        value = row.get(key)
        if value is not None and value != "":
            lines.append(f"{key}: {value}")
    return Message(text="\n".join(lines))


def build_advertisement_message(ad: Advertisement) -> Message:
    text = f"{ad.title}\n\n{ad.content}" if ad.title else ad.content
    return Message(text=text, image_url=ad.image_url or None)


def build_startup_message(categories: Iterable[Category], interval_sec: int) -> Message:
    lines = ["🚀 Monitor started", "", "Watching:"]
    lines.extend(f"• {CATEGORY_LABELS.get(category, category.value)}" for category in categories)
    lines.append("")
    lines.append(f"Checking every {interval_sec}s.")
    return Message(text="\n".join(lines))

"""
WhatsApp handoff helpers: phone normalization, order summary text and
click-to-chat deep links.
"""

import re
from typing import List, Optional
from urllib.parse import quote

from errors import ValidationError
from schemas import OrderItem

WA_LINK = "https://wa.me/{phone}?text={text}"


def format_currency(amount: float, currency: str = "IDR") -> str:
    # id-ID grouping: "Rp 15.000"
    grouped = f"{round(amount):,}".replace(",", ".")
    if currency == "IDR":
        return f"Rp {grouped}"
    return f"{currency} {grouped}"


def normalize_phone(phone_number: str) -> str:
    """Digits-only international form, e.g. ``0812-3456-789`` -> ``628123456789``."""
    cleaned = re.sub(r"[^\d+]", "", phone_number or "")
    if cleaned.startswith("0"):
        cleaned = "62" + cleaned[1:]
    elif cleaned.startswith("+62"):
        cleaned = cleaned[1:]
    elif not cleaned.startswith("62"):
        raise ValidationError(f"Invalid WhatsApp number: {phone_number!r}")
    if len(cleaned) < 9:
        raise ValidationError(f"Invalid WhatsApp number: {phone_number!r}")
    return cleaned


def build_order_message(
    store_name: str,
    items: List[OrderItem],
    subtotal: float,
    order_id: Optional[str] = None,
    buyer_name: Optional[str] = None,
    buyer_email: Optional[str] = None,
    notes: Optional[str] = None,
    currency: str = "IDR",
) -> str:
    lines = [f"Order from {store_name}"]
    if buyer_name or buyer_email:
        buyer = buyer_name or ""
        if buyer_email:
            buyer = f"{buyer} ({buyer_email})" if buyer else buyer_email
        lines.append(f"Buyer: {buyer}")
    if order_id:
        lines.append(f"Order no: {order_id}")
    lines.append("")
    for item in items:
        lines.append(f"{item.quantity}x {item.product_name} - {format_currency(item.subtotal, currency)}")
    lines.append("")
    lines.append(f"Total: {format_currency(subtotal, currency)}")
    if notes:
        lines.append(f"Notes: {notes}")
    lines.append("")
    lines.append("Thank you!")
    return "\n".join(lines)


def build_link(phone_number: str, text: str) -> str:
    return WA_LINK.format(phone=normalize_phone(phone_number), text=quote(text, safe=""))


def build_status_link(phone_number: str, order_id: str) -> str:
    return build_link(phone_number, f"Hello, I would like to ask about the status of order {order_id}")

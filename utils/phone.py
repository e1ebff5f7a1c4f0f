"""
Phone address helpers.

Two forms exist for the same recipient:
  - display form:  +447900000001          (what the dashboard stores)
  - channel form:  447900000001@c.us      (what the WhatsApp session routes to)
"""
from __future__ import annotations

CONTACT_SUFFIX = "@c.us"
GROUP_SUFFIX = "@g.us"


def strip_channel_suffix(address: str) -> str:
    """Drop any '@...' suffix (contact or group)."""
    return address.split("@", 1)[0].strip()


def normalize_phone(address: str) -> str:
    """Normalize any address to the '+'-prefixed display form."""
    cleaned = strip_channel_suffix(address)
    return cleaned if cleaned.startswith("+") else f"+{cleaned}"


def to_channel_address(address: str) -> str:
    """Convert any address to the routable contact address.

    +447900000001 -> 447900000001@c.us
    """
    cleaned = strip_channel_suffix(address).lstrip("+")
    return f"{cleaned}{CONTACT_SUFFIX}"


def is_group_address(address: str) -> bool:
    return GROUP_SUFFIX in (address or "")

"""Utility functions for plugwatch."""

from ipaddress import IPv4Address, ip_address

from .exceptions import ValidationError


def validate_ip(ip_str: str) -> IPv4Address:
    """Validate and parse an IP address string."""
    try:
        ip = ip_address(ip_str)
        if ip.version == 6:
            raise ValidationError(f"IPv6 address not supported: {ip_str}")
        return ip
    except ValueError as e:
        raise ValidationError(f"Invalid IP address: {ip_str}", str(e)) from e


def validate_local_key(key: str | None) -> bool:
    """Check a Tuya local key: 16 printable ASCII characters."""
    if not key or len(key) != 16:
        return False
    return all(0x20 <= ord(c) <= 0x7E for c in key)


def mask_key(key: str | None) -> str:
    """Mask a local key for display, keeping the first and last two characters."""
    if not key:
        return "-"
    if len(key) <= 4:
        return "*" * len(key)
    return f"{key[:2]}{'*' * (len(key) - 4)}{key[-2:]}"


def format_duration(seconds: float) -> str:
    """Format a duration as ``1h 02m 03s`` / ``2m 03s`` / ``3s``."""
    total = int(round(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"

"""MAC address and naming helpers shared by the parsers, scheduler and discovery."""

import re
from dataclasses import dataclass, field
from typing import List

_MAC_PATTERN = re.compile(r'^[0-9a-f]{12}$')


def normalize_mac(mac_address: str) -> str:
    """Normalize a MAC address to lowercase hex without separators.

    Example: "12:3B:6A:1B:85:EF" -> "123b6a1b85ef"

    Raises:
        ValueError: if the value is not a string of 12 hex digits
            (colons allowed)
    """
    if not mac_address or not isinstance(mac_address, str):
        raise ValueError("MAC address must be a non-empty string")

    normalized = mac_address.strip().replace(':', '').lower()
    if not _MAC_PATTERN.match(normalized):
        raise ValueError(
            f"Invalid MAC address format: {mac_address}. "
            f"Expected 12 hex characters with or without colons."
        )
    return normalized


def format_mac(mac_address: str) -> str:
    """Format a MAC address as colon separated uppercase.

    Example: "123b6a1b85ef" -> "12:3B:6A:1B:85:EF"
    """
    normalized = normalize_mac(mac_address)
    return ':'.join(normalized[i:i + 2] for i in range(0, 12, 2)).upper()


def slugify(text: str) -> str:
    """Convert a friendly name into an identifier usable in MQTT topics.

    Example: "Car Token #1" -> "car_token_1"
    """
    if not text or not isinstance(text, str):
        return ''

    slug = text.lower().strip()
    slug = re.sub(r'[\s.]+', '_', slug)
    slug = re.sub(r'[&/\\#,+()$~%\'":*?<>{}]', '', slug)
    slug = re.sub(r'_+', '_', slug)
    return slug.strip('_')


@dataclass
class ValidationResult:
    """Outcome of a structural check: errors make a record unusable, warnings do not."""
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

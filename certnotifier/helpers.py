"""
Common utility functions.

Provides expiry evaluation, date formatting, certificate selection,
and notification message construction.
"""

import math
from datetime import datetime, timezone
from typing import Optional, List, Any, Callable
from dataclasses import dataclass
from enum import Enum


def _ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def days_to_expiry(not_after: datetime, now: datetime) -> float:
    """
    Fractional number of days until expiry (negative if already expired).

    Args:
        not_after: Certificate expiration datetime
        now: Reference time

    Returns:
        Days remaining as a float
    """
    delta = _ensure_aware(not_after) - _ensure_aware(now)
    return delta.total_seconds() / 3600 / 24


def evaluate_expiry(
    not_after: Optional[datetime],
    threshold_days: int,
    now: datetime,
) -> bool:
    """
    Decide whether a certificate should trigger a notification.

    Already-expired certificates trigger as well.

    Args:
        not_after: Certificate expiration datetime, None if not yet known
        threshold_days: Notification window in days
        now: Reference time

    Returns:
        True if the certificate expires within threshold_days of now
    """
    if not_after is None:
        return False

    return days_to_expiry(not_after, now) <= threshold_days


def format_expiration_status(
    not_after: Optional[datetime],
    threshold_days: int,
    now: datetime,
) -> str:
    """
    Format a human-readable expiration status.

    Args:
        not_after: Certificate expiration datetime
        threshold_days: Days threshold for "expiring" status
        now: Reference time

    Returns:
        Formatted status string
    """
    if not_after is None:
        return "Unknown expiration"

    remaining = days_to_expiry(not_after, now)

    if remaining < 0:
        days = math.ceil(-remaining) if -remaining >= 1 else 0
        if days == 0:
            return "EXPIRED (today)"
        return f"EXPIRED ({days} day{'s' if days != 1 else ''} ago)"

    days = math.floor(remaining)
    if days == 0:
        return "EXPIRES TODAY"
    elif remaining <= threshold_days:
        return f"EXPIRING in {days} day{'s' if days != 1 else ''}"
    else:
        return f"Valid ({days} days remaining)"


def build_message(
    certificate_name: str,
    not_after: Optional[datetime],
    threshold_days: int,
    now: datetime,
    namespace: Optional[str] = None,
    dns_names: Optional[List[str]] = None,
) -> str:
    """
    Build the plain-text notification body for a certificate.

    Args:
        certificate_name: Certificate name
        not_after: Certificate expiration datetime
        threshold_days: Policy threshold in days
        now: Reference time
        namespace: Namespace (or vault) the certificate lives in
        dns_names: Domains covered by the certificate

    Returns:
        Message text
    """
    identity = f"{namespace}/{certificate_name}" if namespace else certificate_name
    expiry_str = (
        _ensure_aware(not_after).strftime("%Y-%m-%d %H:%M UTC") if not_after else "N/A"
    )

    lines = [
        f"Certificate {identity} is close to expiry.",
        f"Status: {format_expiration_status(not_after, threshold_days, now)}",
        f"Expires: {expiry_str}",
    ]
    if dns_names:
        lines.append(f"Domains: {', '.join(dns_names)}")
    lines.append(f"Notification threshold: {threshold_days} days")

    return "\n".join(lines)


class SelectionReason(Enum):
    """Reason why a certificate was selected or excluded."""
    INCLUDED = "included"           # In include_list (or include_list empty)
    IGNORED = "ignored"             # In ignore_list
    NOT_IN_INCLUDE_LIST = "not_in_include_list"  # Not in non-empty include_list


@dataclass
class CertificateSelection:
    """Result of certificate selection for a single certificate."""
    name: str
    selected: bool
    reason: SelectionReason


@dataclass
class SelectionResult:
    """Complete result of certificate selection for one policy."""
    selected: List[Any]
    ignored: List[str]
    excluded: List[str]
    total_discovered: int
    selections: List[CertificateSelection]


def select_certificates(
    all_certificates: List[Any],
    include_list: Optional[List[str]] = None,
    ignore_list: Optional[List[str]] = None,
    name_extractor: Optional[Callable[[Any], str]] = None,
) -> SelectionResult:
    """
    Select certificates based on include and ignore lists.

    Selection rules (in order of precedence):
    1. ignore_list ALWAYS takes precedence - certificates in this list are never evaluated
    2. If include_list is empty/None - evaluate ALL certificates (minus ignored)
    3. If include_list has entries - ONLY evaluate certificates in this list (minus ignored)

    Listing order is preserved in the selected list.

    Args:
        all_certificates: Certificates from the certificate source
        include_list: Optional list of certificate names to include
        ignore_list: Optional list of certificate names to always exclude
        name_extractor: Optional function to extract the name from a certificate.
                        Defaults to using the .name attribute.

    Returns:
        SelectionResult with selected certificates and detailed selection info
    """
    include_set = set(include_list or [])
    ignore_set = set(ignore_list or [])

    if name_extractor is None:
        name_extractor = lambda cert: cert.name

    include_mode = len(include_set) > 0

    selected = []
    ignored = []
    excluded = []
    selections = []

    for cert in all_certificates:
        cert_name = name_extractor(cert)

        if cert_name in ignore_set:
            ignored.append(cert_name)
            selections.append(CertificateSelection(cert_name, False, SelectionReason.IGNORED))
            continue

        if include_mode and cert_name not in include_set:
            excluded.append(cert_name)
            selections.append(
                CertificateSelection(cert_name, False, SelectionReason.NOT_IN_INCLUDE_LIST)
            )
            continue

        selected.append(cert)
        selections.append(CertificateSelection(cert_name, True, SelectionReason.INCLUDED))

    return SelectionResult(
        selected=selected,
        ignored=ignored,
        excluded=excluded,
        total_discovered=len(all_certificates),
        selections=selections,
    )

"""
Lock key derivation for contended resources.

A lock key identifies one resource instance (a table at a time, an offering
slot, a unit of inventory). Equal inputs always produce the same key, so the
Resource Lock Store can enforce "one hold per slot" with a plain keyed write.

Canonical formats:
    {business_id}:table:{table_id}:{YYYY-MM-DDTHH:MM}
    {business_id}:offering:{offering_id}:{YYYY-MM-DDTHH:MM}
    {business_id}:inventory:{sku}:{YYYY-MM-DD}:token:{N}

All functions here are pure: no I/O, no clock reads.
"""

from datetime import UTC, date, datetime
from enum import Enum

DEFAULT_SLOT_MINUTES = 15


class ResourceClass(str, Enum):
    """Kinds of contended resources. Part of the key so classes never collide."""

    TABLE = "table"
    OFFERING = "offering"
    INVENTORY = "inventory"


def _check_part(name: str, value: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    value = value.strip()
    if ":" in value:
        raise ValueError(f"{name} must not contain ':' (got {value!r})")
    return value


def _parse_slot(slot: datetime | str) -> datetime:
    if isinstance(slot, datetime):
        parsed = slot
    elif isinstance(slot, str):
        try:
            parsed = datetime.fromisoformat(slot.strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise ValueError(f"Invalid slot descriptor: {slot!r}") from e
    else:
        raise ValueError(f"slot must be datetime or ISO string, got {type(slot)}")

    # Aware datetimes are pinned to UTC; naive ones are taken as wall-clock time
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed


def normalize_slot(slot: datetime | str, slot_minutes: int = DEFAULT_SLOT_MINUTES) -> str:
    """
    Normalize a slot descriptor to ``YYYY-MM-DDTHH:MM`` on a slot boundary.

    Minutes are floored to multiples of ``slot_minutes``; seconds are dropped.

    Example:
        >>> normalize_slot("2024-06-01T19:07:31")
        '2024-06-01T19:00'
        >>> normalize_slot("2024-06-01T17:10:00+02:00", slot_minutes=5)
        '2024-06-01T15:10'
    """
    if slot_minutes <= 0 or slot_minutes > 60 * 24:
        raise ValueError(f"slot_minutes out of range: {slot_minutes}")

    parsed = _parse_slot(slot)
    minute_of_day = parsed.hour * 60 + parsed.minute
    floored = (minute_of_day // slot_minutes) * slot_minutes
    hours, minutes = divmod(floored, 60)
    return f"{parsed.date().isoformat()}T{hours:02d}:{minutes:02d}"


def derive_lock_key(
    business_id: str,
    resource_class: ResourceClass | str,
    resource_id: str,
    slot: datetime | str,
    slot_minutes: int = DEFAULT_SLOT_MINUTES,
) -> str:
    """Build the canonical key for a time-slotted resource."""
    resource_class = ResourceClass(resource_class)
    if resource_class is ResourceClass.INVENTORY:
        raise ValueError("Use inventory_lock_key() for inventory units")

    return ":".join(
        (
            _check_part("business_id", business_id),
            resource_class.value,
            _check_part("resource_id", resource_id),
            normalize_slot(slot, slot_minutes),
        )
    )


def table_lock_key(
    business_id: str,
    table_id: str,
    slot: datetime | str,
    slot_minutes: int = DEFAULT_SLOT_MINUTES,
) -> str:
    """Lock key for a restaurant table at a time slot."""
    return derive_lock_key(business_id, ResourceClass.TABLE, table_id, slot, slot_minutes)


def offering_lock_key(
    business_id: str,
    offering_id: str,
    slot: datetime | str,
    slot_minutes: int = DEFAULT_SLOT_MINUTES,
) -> str:
    """Lock key for a bookable offering at a time slot."""
    return derive_lock_key(business_id, ResourceClass.OFFERING, offering_id, slot, slot_minutes)


def inventory_lock_key(
    business_id: str,
    sku: str,
    day: date | datetime | str,
    token: int = 1,
) -> str:
    """Lock key for one capacity token of an inventory item on a given day."""
    if token < 1:
        raise ValueError(f"token must be >= 1, got {token}")

    if isinstance(day, datetime):
        day_str = _parse_slot(day).date().isoformat()
    elif isinstance(day, date):
        day_str = day.isoformat()
    else:
        day_str = _parse_slot(day).date().isoformat()

    return (
        f"{_check_part('business_id', business_id)}:{ResourceClass.INVENTORY.value}:"
        f"{_check_part('sku', sku)}:{day_str}:token:{token}"
    )


def infer_resource_class(resource_id: str) -> ResourceClass:
    """Guess the resource class from an id prefix (``table_5`` -> TABLE)."""
    if resource_id.startswith("table_"):
        return ResourceClass.TABLE
    return ResourceClass.OFFERING


def lock(
    business_id: str,
    resource_id: str,
    slot: datetime | str,
    slot_minutes: int = DEFAULT_SLOT_MINUTES,
) -> str:
    """
    Shorthand used by the caller API.

    Example:
        >>> lock("biz_1", "table_5", "2024-06-01T19:00")
        'biz_1:table:table_5:2024-06-01T19:00'
    """
    return derive_lock_key(
        business_id, infer_resource_class(resource_id), resource_id, slot, slot_minutes
    )

"""
Unit tests for ledger/lock_keys.py - Lock key derivation.

Tests coverage:
- Canonical key formats for table, offering and inventory resources
- Slot normalization (seconds dropped, minutes floored, UTC conversion)
- Class separation (same id never collides across resource classes)
- Input validation (empty parts, ':' in parts, bad slots)
"""

from datetime import UTC, date, datetime, timedelta, timezone

import pytest

from ledger.lock_keys import (
    ResourceClass,
    derive_lock_key,
    infer_resource_class,
    inventory_lock_key,
    lock,
    normalize_slot,
    offering_lock_key,
    table_lock_key,
)


class TestNormalizeSlot:
    """Tests for normalize_slot()."""

    def test_iso_string_on_boundary_is_unchanged(self):
        assert normalize_slot("2024-06-01T19:00") == "2024-06-01T19:00"

    def test_seconds_are_dropped_and_minutes_floored(self):
        assert normalize_slot("2024-06-01T19:07:31") == "2024-06-01T19:00"
        assert normalize_slot("2024-06-01T19:44:59") == "2024-06-01T19:30"

    def test_custom_granularity(self):
        assert normalize_slot("2024-06-01T19:07", slot_minutes=5) == "2024-06-01T19:05"
        assert normalize_slot("2024-06-01T19:59", slot_minutes=60) == "2024-06-01T19:00"

    def test_aware_datetime_converted_to_utc(self):
        madrid_summer = timezone(timedelta(hours=2))
        slot = datetime(2024, 6, 1, 21, 0, tzinfo=madrid_summer)

        assert normalize_slot(slot) == "2024-06-01T19:00"

    def test_zulu_suffix_accepted(self):
        assert normalize_slot("2024-06-01T19:00:00Z") == "2024-06-01T19:00"

    def test_equal_instants_give_equal_slots(self):
        utc_slot = datetime(2024, 6, 1, 19, 0, tzinfo=UTC)
        offset_slot = "2024-06-01T21:00:00+02:00"

        assert normalize_slot(utc_slot) == normalize_slot(offset_slot)

    def test_invalid_string_raises(self):
        with pytest.raises(ValueError, match="Invalid slot"):
            normalize_slot("tomorrow at seven")

    def test_invalid_granularity_raises(self):
        with pytest.raises(ValueError):
            normalize_slot("2024-06-01T19:00", slot_minutes=0)


class TestDeriveLockKey:
    """Tests for derive_lock_key() and the per-class helpers."""

    def test_table_key_format(self):
        key = table_lock_key("biz_1", "table_5", "2024-06-01T19:00")

        assert key == "biz_1:table:table_5:2024-06-01T19:00"

    def test_offering_key_format(self):
        key = offering_lock_key("biz_1", "svc_haircut", "2024-06-01T10:10")

        assert key == "biz_1:offering:svc_haircut:2024-06-01T10:00"

    def test_same_id_differs_across_classes(self):
        as_table = derive_lock_key("biz_1", ResourceClass.TABLE, "r1", "2024-06-01T19:00")
        as_offering = derive_lock_key("biz_1", ResourceClass.OFFERING, "r1", "2024-06-01T19:00")

        assert as_table != as_offering

    def test_same_inputs_are_deterministic(self):
        first = derive_lock_key("biz_1", "offering", "svc_1", "2024-06-01T19:03")
        second = derive_lock_key("biz_1", "offering", "svc_1", "2024-06-01T19:12")

        assert first == second

    def test_businesses_do_not_collide(self):
        assert table_lock_key("biz_1", "t1", "2024-06-01T19:00") != table_lock_key(
            "biz_2", "t1", "2024-06-01T19:00"
        )

    @pytest.mark.parametrize("business_id", ["", "   ", "biz:1"])
    def test_invalid_business_id_rejected(self, business_id):
        with pytest.raises(ValueError):
            table_lock_key(business_id, "t1", "2024-06-01T19:00")

    def test_colon_in_resource_id_rejected(self):
        with pytest.raises(ValueError, match="must not contain ':'"):
            offering_lock_key("biz_1", "svc:1", "2024-06-01T19:00")

    def test_inventory_class_requires_inventory_helper(self):
        with pytest.raises(ValueError, match="inventory_lock_key"):
            derive_lock_key("biz_1", ResourceClass.INVENTORY, "sku_1", "2024-06-01T19:00")


class TestInventoryLockKey:
    """Tests for inventory_lock_key()."""

    def test_format_with_date(self):
        key = inventory_lock_key("biz_1", "bike_m", date(2024, 6, 1), token=3)

        assert key == "biz_1:inventory:bike_m:2024-06-01:token:3"

    def test_datetime_reduced_to_day(self):
        key = inventory_lock_key("biz_1", "bike_m", "2024-06-01T23:30:00+00:00")

        assert key == "biz_1:inventory:bike_m:2024-06-01:token:1"

    def test_token_must_be_positive(self):
        with pytest.raises(ValueError):
            inventory_lock_key("biz_1", "bike_m", date(2024, 6, 1), token=0)


class TestLockShorthand:
    """Tests for lock() used by the caller API."""

    def test_table_ids_lock_tables(self):
        assert lock("biz_1", "table_5", "2024-06-01T19:00") == (
            "biz_1:table:table_5:2024-06-01T19:00"
        )

    def test_other_ids_lock_offerings(self):
        assert infer_resource_class("svc_color") == ResourceClass.OFFERING
        assert lock("biz_1", "svc_color", "2024-06-01T19:00").startswith("biz_1:offering:")

    def test_table_prefix_needs_separator(self):
        assert infer_resource_class("tableware_rental") == ResourceClass.OFFERING
        assert lock("biz_1", "tableware_rental", "2024-06-01T19:00") == (
            "biz_1:offering:tableware_rental:2024-06-01T19:00"
        )

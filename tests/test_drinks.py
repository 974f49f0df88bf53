"""Tests for drink types and entries."""

import pytest
from datetime import datetime

from sipsync.drinks import DRINK_TABLE, DrinkCategory, DrinkType
from sipsync.replica import DrinkEntry

from conftest import EST, NOW


class TestDrinkType:
    """Tests for the drink type table."""

    def test_every_type_has_a_table_row(self):
        """Test that no drink type is missing its volume."""
        assert set(DRINK_TABLE) == set(DrinkType)

    def test_fixed_volumes(self):
        """Test a few well-known volumes."""
        assert DrinkType.REGULAR_CAN.ounces == 12
        assert DrinkType.TALL_CAN.ounces == 16
        assert DrinkType.MINI_CAN.ounces == 7.5
        assert DrinkType.BOTTLE_20OZ.ounces == 20
        assert DrinkType.BOTTLE_2LITER.ounces == 67.6

    def test_categories_cover_all_types(self):
        """Test that every type belongs to exactly one listed category."""
        listed = [t for category in DrinkCategory for t in category.types]
        assert sorted(listed, key=lambda t: t.value) == sorted(DrinkType, key=lambda t: t.value)

    def test_parse_display_name(self):
        """Test parsing the wire tag."""
        assert DrinkType.parse("Regular Can") == DrinkType.REGULAR_CAN

    def test_parse_member_name(self):
        """Test parsing enum member names, case-insensitively."""
        assert DrinkType.parse("tall_can") == DrinkType.TALL_CAN
        assert DrinkType.parse("MINI-CAN") == DrinkType.MINI_CAN

    def test_parse_short_name(self):
        """Test parsing the short display name."""
        assert DrinkType.parse("20oz") == DrinkType.BOTTLE_20OZ
        assert DrinkType.parse("2l") == DrinkType.BOTTLE_2LITER

    def test_parse_unknown(self):
        """Test that unknown names are rejected."""
        with pytest.raises(ValueError, match="Unknown drink type"):
            DrinkType.parse("Milkshake")


class TestDrinkEntry:
    """Tests for DrinkEntry."""

    def test_create_assigns_unique_ids(self):
        """Test that every new entry gets its own id."""
        a = DrinkEntry.create(DrinkType.REGULAR_CAN, now=NOW)
        b = DrinkEntry.create(DrinkType.REGULAR_CAN, now=NOW)

        assert a.id != b.id
        assert a.timestamp == b.timestamp == NOW

    def test_create_from_name(self):
        """Test creating an entry from a drink name."""
        entry = DrinkEntry.create("Tall Can", now=NOW)
        assert entry.drink_type == DrinkType.TALL_CAN

    def test_create_unknown_type(self):
        """Test that an unknown classification fails at construction."""
        with pytest.raises(ValueError):
            DrinkEntry.create("Milkshake", now=NOW)

    def test_create_defaults_to_aware_now(self):
        """Test that the default timestamp carries a timezone."""
        entry = DrinkEntry.create(DrinkType.REGULAR_CAN)
        assert entry.timestamp.tzinfo is not None

    def test_custom_ounces_override(self):
        """Test that custom ounces replace the type's volume."""
        entry = DrinkEntry.create(DrinkType.REGULAR_CAN, now=NOW, custom_ounces=10.5)
        assert entry.ounces == 10.5

    def test_custom_ounces_must_be_positive(self):
        """Test that zero or negative volumes are rejected."""
        with pytest.raises(ValueError):
            DrinkEntry.create(DrinkType.REGULAR_CAN, now=NOW, custom_ounces=0)

    def test_entries_are_immutable(self):
        """Test that an entry cannot be changed after creation."""
        entry = DrinkEntry.create(DrinkType.REGULAR_CAN, now=NOW)
        with pytest.raises(AttributeError):
            entry.note = "changed"

    def test_to_dict(self):
        """Test the serialized shape."""
        entry = DrinkEntry.create(DrinkType.MINI_CAN, now=NOW, note="after lunch")
        d = entry.to_dict()

        assert d == {
            "id": entry.id,
            "type": "Mini Can",
            "timestamp": "2026-03-10T12:00:00-05:00",
            "customOunces": None,
            "note": "after lunch",
        }

    def test_from_dict_tolerates_missing_optional_fields(self):
        """Test that older records without optional keys still load."""
        entry = DrinkEntry.from_dict({
            "id": "abc",
            "type": "Regular Can",
            "timestamp": "2026-03-10T08:15:00-05:00",
        })

        assert entry.custom_ounces is None
        assert entry.note is None
        assert entry.timestamp == datetime(2026, 3, 10, 8, 15, tzinfo=EST)

    def test_from_dict_rejects_unknown_type(self):
        """Test that an unknown type tag is an error."""
        with pytest.raises(ValueError):
            DrinkEntry.from_dict({
                "id": "abc",
                "type": "Milkshake",
                "timestamp": "2026-03-10T08:15:00-05:00",
            })

    def test_from_dict_requires_id(self):
        """Test that a record without id is an error."""
        with pytest.raises(KeyError):
            DrinkEntry.from_dict({"type": "Regular Can", "timestamp": "2026-03-10T08:15:00"})

import math

import pytest

from placemark.models.place import PLACE_FIELDS, Coordinate, PlaceRecord


def test_place_record_defaults_to_empty_strings():
    record = PlaceRecord(name="Dallas", locality=None)
    assert record.name == "Dallas"
    assert record.locality == ""
    assert all(isinstance(getattr(record, key), str) for key in PLACE_FIELDS)


def test_place_record_from_short_sequence_pads_missing_fields():
    record = PlaceRecord.from_strings(["Main St", "Main Street", ""])
    assert record.name == "Main St"
    assert record.thoroughfare == "Main Street"
    assert record.street_address == ""
    assert record.iso_country_code == ""


def test_place_record_is_immutable():
    record = PlaceRecord(name="Dallas")
    with pytest.raises(AttributeError):
        record.name = "Houston"  # type: ignore[misc]


def test_formatted_addresses():
    record = PlaceRecord(
        thoroughfare="Elm St",
        street_address="411 Elm St",
        locality="Dallas",
        administrative_area="TX",
        postal_code="75202",
        iso_country_code="US",
    )
    assert record.formatted_address == "Elm St, Dallas, TX 75202 US"
    assert record.formatted_street_address == "411 Elm St, Dallas, TX 75202 US"
    assert PlaceRecord(locality="Paris").formatted_street_address == "Paris"


def test_coordinate_identity_ignores_metadata():
    first = Coordinate(32.78, -96.81, altitude=130.0)
    second = Coordinate(32.78, -96.81, horizontal_accuracy=5.0)
    assert first == second
    assert hash(first) == hash(second)
    assert first.key == "32.78_-96.81"


def test_coordinate_keys_are_not_rounded():
    assert Coordinate(32.78, -96.81).key != Coordinate(32.780001, -96.81).key


@pytest.mark.parametrize("lat,lon", [(math.nan, 0.0), (0.0, math.inf), (91.0, 0.0), (0.0, -180.5)])
def test_coordinate_rejects_invalid_values(lat, lon):
    with pytest.raises(ValueError):
        Coordinate(lat, lon)


def test_coordinate_parse():
    assert Coordinate.parse(" 45.508889, -73.553167 ") == Coordinate(45.508889, -73.553167)
    with pytest.raises(ValueError):
        Coordinate.parse("45.5")

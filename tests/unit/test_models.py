"""
Unit tests for position report decoding and enriched record rendering.
"""

import json
import math

import pytest
from hypothesis import given, strategies as st

from errors.codes import ErrorCode
from errors.exceptions import AppException
from ingestion.models import (
    RESERVED_FIELDS,
    EnrichedRecord,
    PositionReport,
    decode_message,
    parse_report,
)


class TestParseReport:

    def test_valid_report(self, sample_report):
        report = parse_report(sample_report)

        assert report.id == 1
        assert report.timestamp == 1700000000
        assert report.longitude == -122.4
        assert report.latitude == 37.8
        assert report.has_coordinates

    def test_missing_coordinates_is_valid(self):
        report = parse_report({"id": 2, "timestamp": 1700000000})

        assert not report.has_coordinates
        assert report.longitude is None
        assert report.latitude is None

    def test_null_coordinates_counts_as_absent(self):
        report = parse_report({"id": 2, "timestamp": 1700000000, "coordinates": None})

        assert not report.has_coordinates

    def test_integer_coordinates_accepted(self):
        report = parse_report({"id": 2, "timestamp": 1, "coordinates": [10, 20]})

        assert report.coordinates == (10.0, 20.0)

    @pytest.mark.parametrize("data", [
        {"timestamp": 1700000000},
        {"id": 1},
        {"id": "1", "timestamp": 1700000000},
        {"id": 1, "timestamp": "1700000000"},
        {"id": 1.5, "timestamp": 1700000000},
    ])
    def test_missing_or_mistyped_id_or_timestamp_is_malformed(self, data):
        with pytest.raises(AppException) as exc_info:
            parse_report(data)

        assert exc_info.value.error_code == ErrorCode.MALFORMED_MESSAGE
        assert exc_info.value.is_skippable

    @pytest.mark.parametrize("data", [[1, 2], "report", 42, None])
    def test_non_object_is_malformed(self, data):
        with pytest.raises(AppException) as exc_info:
            parse_report(data, reference="0/7")

        assert exc_info.value.error_code == ErrorCode.MALFORMED_MESSAGE
        assert exc_info.value.details == {"message_ref": "0/7"}

    @pytest.mark.parametrize("coordinates", [
        [1.0],
        [1.0, 2.0, 3.0],
        ["1.0", "2.0"],
        [1.0, None],
        "1.0,2.0",
    ])
    def test_bad_coordinate_pair_is_invalid_record(self, coordinates):
        with pytest.raises(AppException) as exc_info:
            parse_report({"id": 9, "timestamp": 1, "coordinates": coordinates})

        assert exc_info.value.error_code == ErrorCode.INVALID_RECORD
        assert exc_info.value.record_id == 9
        assert exc_info.value.is_skippable

    def test_non_finite_coordinates_are_invalid(self):
        with pytest.raises(AppException) as exc_info:
            parse_report({"id": 9, "timestamp": 1, "coordinates": [math.inf, 1.0]})

        assert exc_info.value.error_code == ErrorCode.INVALID_RECORD


class TestDecodeMessage:

    def test_decodes_json_bytes(self, sample_report):
        report = decode_message(json.dumps(sample_report).encode("utf-8"), "0/1")

        assert report.id == 1

    @pytest.mark.parametrize("payload", [b"not json", b"{\"id\": 1,", b"\xff\xff\xff"])
    def test_undecodable_payload_is_malformed(self, payload):
        with pytest.raises(AppException) as exc_info:
            decode_message(payload, "0/13")

        assert exc_info.value.error_code == ErrorCode.MALFORMED_MESSAGE
        assert exc_info.value.details["message_ref"] == "0/13"

    def test_deeply_nested_payload_is_malformed(self):
        payload = b"[" * 100000 + b"]" * 100000

        with pytest.raises(AppException) as exc_info:
            decode_message(payload, "0/7")

        assert exc_info.value.error_code == ErrorCode.MALFORMED_MESSAGE
        assert exc_info.value.is_skippable

    def test_nan_literal_is_invalid_record(self):
        with pytest.raises(AppException) as exc_info:
            decode_message(b'{"id": 4, "timestamp": 1, "coordinates": [NaN, 1.0]}')

        assert exc_info.value.error_code == ErrorCode.INVALID_RECORD


class TestPassthroughFields:

    def test_extra_fields_pass_through(self, sample_report):
        report = parse_report({**sample_report, "heading": 90, "meta": {"driver": "a"}})

        assert report.passthrough_fields() == {"speed": 12, "heading": 90, "meta": {"driver": "a"}}

    def test_reserved_names_never_pass_through(self, sample_report):
        report = parse_report({**sample_report, "elevation": 9999, "expiration": 0, "ts": 5})

        assert report.passthrough_fields() == {"speed": 12}

    def test_allow_list(self, sample_report):
        report = parse_report({**sample_report, "heading": 90})

        assert report.passthrough_fields(["heading"]) == {"heading": 90}
        assert report.passthrough_fields([]) == {}


class TestEnrichedRecord:

    def test_to_item_with_enrichment(self):
        record = EnrichedRecord(
            id=1, ts=1700000000, longitude=-122.4, latitude=37.8, elevation=12.5,
            geofenceStatus="INSIDE", geofenceName="ZoneA", expiration=1700000300,
            passthrough={"speed": 12},
        )

        assert record.to_item() == {
            "id": 1,
            "ts": 1700000000,
            "longitude": -122.4,
            "latitude": 37.8,
            "expiration": 1700000300,
            "elevation": 12.5,
            "geofenceStatus": "INSIDE",
            "geofenceName": "ZoneA",
            "speed": 12,
        }

    def test_to_item_without_coordinates_omits_enrichment(self):
        record = EnrichedRecord(id=2, ts=100, expiration=400)

        item = record.to_item()

        assert item == {"id": 2, "ts": 100, "longitude": None, "latitude": None, "expiration": 400}

    def test_outside_has_no_name(self):
        record = EnrichedRecord(
            id=3, ts=1, longitude=0.0, latitude=0.0, elevation=0.0,
            geofenceStatus="OUTSIDE", expiration=301,
        )

        assert "geofenceName" not in record.to_item()

    def test_to_json_is_compact(self):
        record = EnrichedRecord(id=2, ts=100, expiration=400)

        assert record.to_json() == (
            '{"id":2,"ts":100,"longitude":null,"latitude":null,"expiration":400}'
        )

    def test_record_is_frozen(self):
        record = EnrichedRecord(id=2, ts=100, expiration=400)

        with pytest.raises(Exception):
            record.id = 3


@given(
    extras=st.dictionaries(
        st.one_of(
            st.sampled_from(sorted(RESERVED_FIELDS - {"coordinates"})),
            st.text(min_size=1, max_size=12).filter(lambda key: key != "coordinates"),
        ),
        st.one_of(st.integers(), st.text(max_size=8), st.booleans()),
        max_size=6,
    )
)
def test_passthrough_never_contains_reserved_keys(extras):
    data = {**extras, "id": 1, "timestamp": 1700000000}

    report = parse_report(data)
    fields = report.passthrough_fields()

    assert not (set(fields) & RESERVED_FIELDS)
    assert all(extras[key] == value for key, value in fields.items())


@given(
    record_id=st.integers(min_value=-(2 ** 53), max_value=2 ** 53),
    timestamp=st.integers(min_value=0, max_value=2 ** 40),
)
def test_position_report_accepts_any_integer_id_and_timestamp(record_id, timestamp):
    report = PositionReport.model_validate({"id": record_id, "timestamp": timestamp})

    assert report.id == record_id
    assert report.timestamp == timestamp

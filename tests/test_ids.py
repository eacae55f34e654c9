"""
Unit tests for prefixed ULID identifiers.
"""

import pytest

from app.replay.ids import (
    generate,
    generate_campaign_id,
    generate_event_id,
    id_timestamp_ms,
    is_valid_campaign_id,
    is_valid_event_id,
    new_ulid,
)


class TestGenerate:
    def test_prefixes(self):
        assert generate_campaign_id().startswith("cmp_")
        assert generate_event_id().startswith("evt_")

    def test_length_and_alphabet(self):
        cid = generate_campaign_id()
        ulid = cid.split("_", 1)[1]
        assert len(ulid) == 26
        assert not set(ulid) & set("ILOU")

    def test_unique(self):
        ids = {generate_event_id() for _ in range(2000)}
        assert len(ids) == 2000

    def test_sortable_by_creation_order(self):
        ids = [generate_event_id() for _ in range(500)]
        assert ids == sorted(ids)

    def test_monotonic_within_same_millisecond(self):
        a = new_ulid(now_ms=1_700_000_000_000)
        b = new_ulid(now_ms=1_700_000_000_000)
        assert b > a
        assert a[:10] == b[:10]

    def test_clock_going_backwards_stays_monotonic(self):
        a = new_ulid(now_ms=1_800_000_000_000)
        b = new_ulid(now_ms=1_799_999_999_000)
        assert b > a

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            generate("order")

    def test_timestamp_roundtrip(self):
        assert id_timestamp_ms("cmp_" + new_ulid(now_ms=1_900_000_000_123)) == 1_900_000_000_123


class TestValidation:
    def test_valid_ids(self):
        assert is_valid_campaign_id(generate_campaign_id())
        assert is_valid_event_id(generate_event_id())

    def test_wrong_prefix(self):
        assert not is_valid_campaign_id(generate_event_id())
        assert not is_valid_event_id(generate_campaign_id())

    @pytest.mark.parametrize(
        "value",
        [
            None,
            "",
            123,
            "cmp_",
            "cmp_123",
            "cmp_01HQZ3X5K7M9P2R4T6V8W0Y1Z",  # 25 chars
            "cmp_01HQZ3X5K7M9P2R4T6V8W0Y1ZI",  # I is not Crockford
            "CMP_01HQZ3X5K7M9P2R4T6V8W0Y1Z2",
        ],
    )
    def test_malformed(self, value):
        assert not is_valid_campaign_id(value)

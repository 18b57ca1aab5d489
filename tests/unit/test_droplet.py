"""
Unit tests for Droplet identifiers.

Tests cover:
- Layout of generated Droplets
- Rolling counter and ordering
- Validation rules
- Time extraction
"""

from datetime import datetime, timezone

import pytest

from wikidb.wiki_engine.droplet import (
    EPOCH_MS,
    DropletGenerator,
    checksum,
    get_datetime,
    get_iso,
    get_time,
    is_valid,
)
from wikidb.wiki_engine.errors import ValidationError

FIXED_MS = EPOCH_MS + 274_913_512_345


class TestDropletGenerator:
    """Tests for DropletGenerator."""

    @pytest.fixture
    def generator(self):
        return DropletGenerator(machine_tag=4821, clock=lambda: FIXED_MS)

    def test_layout(self, generator):
        """Generated Droplet has prefix, offset, tag, counter and checksum."""
        droplet = generator.generate()

        assert len(droplet) == 23
        assert droplet[0] == "1"
        assert droplet[1:14] == "0274913512345"
        assert droplet[14:18] == "4821"
        assert droplet[18:22] == "0001"
        assert int(droplet[22]) == checksum(droplet[:22])

    def test_epoch_droplet(self):
        """A Droplet at the epoch has a zero offset."""
        generator = DropletGenerator(machine_tag=1000)
        assert generator.generate(time=EPOCH_MS) == "10000000000000100000013"

    def test_counter_increments(self, generator):
        """Counter increments per Droplet."""
        first, second = generator.generate(), generator.generate()
        assert first[18:22] == "0001"
        assert second[18:22] == "0002"
        assert first < second

    def test_counter_wraps_to_one(self, generator):
        """Counter wraps from 9999 back to 1."""
        generator.reset(9999)
        assert generator.generate()[18:22] == "9999"
        assert generator.generate()[18:22] == "0001"

    def test_reset_rejects_out_of_range(self, generator):
        """Counter must stay in 1-9999."""
        with pytest.raises(ValueError):
            generator.reset(0)

    def test_string_order_is_creation_order(self):
        """Later Droplets sort after earlier ones."""
        clock = iter([FIXED_MS, FIXED_MS, FIXED_MS + 1, FIXED_MS + 500])
        generator = DropletGenerator(machine_tag=1234, clock=lambda: next(clock))

        droplets = [generator.generate() for _ in range(4)]

        assert droplets == sorted(droplets)
        assert len(set(droplets)) == 4

    def test_explicit_datetime(self, generator):
        """Time can be given as an aware datetime."""
        when = datetime(2023, 5, 1, 12, 0, tzinfo=timezone.utc)
        assert get_datetime(generator.generate(time=when)) == when

    def test_time_before_epoch_rejected(self, generator):
        """Times before the epoch cannot be encoded."""
        with pytest.raises(ValidationError):
            generator.generate(time=EPOCH_MS - 1)

    def test_machine_tag_range(self):
        """Machine tag must have four digits."""
        with pytest.raises(ValueError):
            DropletGenerator(machine_tag=999)

    def test_random_machine_tag(self):
        """Machine tag is chosen when not given."""
        assert 1000 <= DropletGenerator().machine_tag <= 9999


class TestDropletValidation:
    """Tests for is_valid."""

    @pytest.fixture
    def droplet(self):
        return DropletGenerator(machine_tag=4821, clock=lambda: FIXED_MS).generate()

    def test_valid(self, droplet):
        """Generated Droplet is valid."""
        assert is_valid(droplet, now=FIXED_MS)

    def test_wrong_length(self, droplet):
        """Length other than 23 is invalid."""
        assert not is_valid(droplet[:-1], now=FIXED_MS)

    def test_non_digits(self, droplet):
        """Non-digit characters are invalid."""
        assert not is_valid("a" + droplet[1:], now=FIXED_MS)

    def test_wrong_prefix(self, droplet):
        """Prefix must be 1."""
        body = "2" + droplet[1:22]
        assert not is_valid(body + str(checksum(body)), now=FIXED_MS)

    def test_future_timestamp(self, droplet):
        """A Droplet from the future is invalid."""
        assert not is_valid(droplet, now=FIXED_MS - 1)

    def test_bad_checksum(self, droplet):
        """Checksum mismatch is invalid."""
        bad = droplet[:22] + str((int(droplet[22]) + 1) % 10)
        assert not is_valid(bad, now=FIXED_MS)

    def test_not_a_string(self):
        """Non-strings are invalid."""
        assert not is_valid(12345678901234567890123)

    def test_throws_with_reason(self, droplet):
        """throws=True raises with the failing rule."""
        with pytest.raises(ValidationError) as exc_info:
            is_valid(droplet, throws=True, now=FIXED_MS - 1)
        assert exc_info.value.code == "INVALID_DROPLET"
        assert exc_info.value.details["reason"] == "timestamp"


class TestDropletTime:
    """Tests for time extraction."""

    def test_get_time(self):
        """Embedded time comes back in epoch milliseconds."""
        droplet = DropletGenerator(machine_tag=1000).generate(time=FIXED_MS)
        assert get_time(droplet) == FIXED_MS

    def test_get_iso(self):
        """ISO rendering has millisecond precision and a Z suffix."""
        assert get_iso("10000000000000100000013") == "2017-02-01T00:00:00.000Z"

    def test_get_time_rejects_garbage(self):
        """Malformed values raise ValidationError."""
        with pytest.raises(ValidationError):
            get_time("not-a-droplet")

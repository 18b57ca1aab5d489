"""
Droplet identifiers.

A Droplet is a 23-character decimal string used both as entity id and as
version stamp:

    1 | 0274913512345 | 4821 | 0007 | 3
    ^   ^               ^      ^      ^
    |   |               |      |      checksum: sum of the 22 digits before it, mod 10
    |   |               |      rolling counter 0001-9999
    |   |               machine tag 1000-9999
    |   milliseconds since 2017-02-01T00:00:00Z, zero padded to 13 digits
    prefix

Invariants:
    - Lexicographic order of Droplets equals creation order
    - Droplets from one generator are strictly increasing within a millisecond
    - A valid Droplet never carries a timestamp from the future

How to change safely:
    - The layout is persisted in every key of the wiki table; never change it
    - Only the generator owns counter state; share one generator per process
"""

from __future__ import annotations

import logging
import random
import threading
import time as _time
from datetime import datetime, timedelta, timezone
from typing import Callable

from .errors import ValidationError

logger = logging.getLogger(__name__)

UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
EPOCH = datetime(2017, 2, 1, tzinfo=timezone.utc)
EPOCH_MS = (EPOCH - UNIX_EPOCH) // timedelta(milliseconds=1)

DROPLET_LENGTH = 23
PREFIX = "1"
TIMESTAMP_DIGITS = 13
MAX_OFFSET = 10**TIMESTAMP_DIGITS - 1
MIN_MACHINE_TAG = 1000
MAX_MACHINE_TAG = 9999
MAX_COUNTER = 9999


def _now_ms() -> int:
    return int(_time.time() * 1000)


def _to_ms(value: datetime | int) -> int:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return (value - UNIX_EPOCH) // timedelta(milliseconds=1)
    return int(value)


def checksum(digits: str) -> int:
    """Checksum digit of a Droplet body: digit sum mod 10."""
    return sum(int(c) for c in digits) % 10


class DropletGenerator:
    """Generates Droplets for one process.

    The generator owns the machine tag and the rolling counter; the counter
    and the clock read happen under one lock so that concurrent callers get
    distinct, ordered identifiers.

    Example:
        >>> gen = DropletGenerator(machine_tag=4821)
        >>> droplet = gen.generate()
        >>> is_valid(droplet)
        True
    """

    def __init__(
        self,
        machine_tag: int | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        """Initialize the generator.

        Args:
            machine_tag: 4-digit tag identifying this process; random if None
            clock: Returns the current time in epoch milliseconds
        """
        if machine_tag is None:
            machine_tag = random.randint(MIN_MACHINE_TAG, MAX_MACHINE_TAG)
        if not MIN_MACHINE_TAG <= machine_tag <= MAX_MACHINE_TAG:
            raise ValueError(f"machine_tag must be in {MIN_MACHINE_TAG}-{MAX_MACHINE_TAG}")
        self._machine_tag = machine_tag
        self._clock = clock or _now_ms
        self._lock = threading.Lock()
        self._counter = 1

    @property
    def machine_tag(self) -> int:
        return self._machine_tag

    def reset(self, counter: int = 1) -> None:
        """Reset the rolling counter (testing helper)."""
        if not 1 <= counter <= MAX_COUNTER:
            raise ValueError(f"counter must be in 1-{MAX_COUNTER}")
        with self._lock:
            self._counter = counter

    def generate(self, time: datetime | int | None = None) -> str:
        """Generate a new Droplet.

        Args:
            time: Creation time as aware datetime or epoch milliseconds;
                defaults to the generator clock

        Returns:
            23-character Droplet string

        Raises:
            ValidationError: If the time falls outside the representable range
        """
        with self._lock:
            ms = self._clock() if time is None else _to_ms(time)
            count = self._counter
            self._counter = 1 if count >= MAX_COUNTER else count + 1

        offset = ms - EPOCH_MS
        if offset < 0 or offset > MAX_OFFSET:
            raise ValidationError(
                "Droplet time out of range",
                details={"time_ms": ms},
            )

        body = f"{PREFIX}{offset:0{TIMESTAMP_DIGITS}d}{self._machine_tag:04d}{count:04d}"
        return body + str(checksum(body))


def _invalid(droplet: object, reason: str, throws: bool) -> bool:
    if throws:
        raise ValidationError(
            f"Invalid droplet: {reason}",
            code="INVALID_DROPLET",
            details={"droplet": droplet, "reason": reason},
        )
    return False


def is_valid(droplet: object, throws: bool = False, now: datetime | int | None = None) -> bool:
    """Check whether a value is a well-formed Droplet.

    Args:
        droplet: Value to check
        throws: Raise ValidationError instead of returning False
        now: Reference time for the "not in the future" rule

    Returns:
        True if the Droplet is valid, False otherwise

    Raises:
        ValidationError: Only when throws=True and the Droplet is invalid
    """
    if not isinstance(droplet, str) or len(droplet) != DROPLET_LENGTH:
        return _invalid(droplet, "length", throws)
    if not droplet.isascii() or not droplet.isdigit():
        return _invalid(droplet, "digits", throws)
    if not droplet.startswith(PREFIX):
        return _invalid(droplet, "prefix", throws)

    now_ms = _now_ms() if now is None else _to_ms(now)
    if EPOCH_MS + int(droplet[1 : 1 + TIMESTAMP_DIGITS]) > now_ms:
        return _invalid(droplet, "timestamp", throws)

    if checksum(droplet[:-1]) != int(droplet[-1]):
        return _invalid(droplet, "checksum", throws)
    return True


def get_time(droplet: str) -> int:
    """Creation time of a Droplet in epoch milliseconds.

    Raises:
        ValidationError: If the value is not shaped like a Droplet
    """
    if not isinstance(droplet, str) or len(droplet) != DROPLET_LENGTH or not droplet.isdigit():
        raise ValidationError("Invalid droplet", code="INVALID_DROPLET", details={"droplet": droplet})
    return EPOCH_MS + int(droplet[1 : 1 + TIMESTAMP_DIGITS])


def get_datetime(droplet: str) -> datetime:
    """Creation time of a Droplet as an aware UTC datetime."""
    return UNIX_EPOCH + timedelta(milliseconds=get_time(droplet))


def get_iso(droplet: str) -> str:
    """Creation time of a Droplet as an ISO-8601 string with millisecond precision."""
    return get_datetime(droplet).isoformat(timespec="milliseconds").replace("+00:00", "Z")

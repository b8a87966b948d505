"""Time-ordered 128-bit resource identifiers."""

import os
import re
import threading
import time
import uuid
from resourcestore.resourcestore_exceptions import IdentifierParseError

# Offset between the UUID epoch (1582-10-15) and the Unix epoch in 100ns intervals
_UUID_EPOCH_OFFSET = 0x01B21DD213814000

# Fixed grammar for the canonical string form. The clock sequence is captured as
# two separate bytes so each group converts directly with int(..., 16).
_IDENTIFIER_PATTERN = re.compile(
    r"([0-9a-fA-F]{8})-([0-9a-fA-F]{4})-([0-9a-fA-F]{4})-"
    r"([0-9a-fA-F]{2})([0-9a-fA-F]{2})-([0-9a-fA-F]{12})\Z"
)

_generator_lock = threading.Lock()
_last_timestamp = None
_clock_seq = int.from_bytes(os.urandom(2), "big") & 0x3FFF
_node = None


class Identifier(uuid.UUID):
    """A 128-bit resource identifier.

    Identifiers are generated with the time-ordered layout of a version 6 UUID:
    the 60-bit timestamp comes first (most significant bits first), followed by
    a clock sequence and the node value. Ascending identifier order therefore
    follows creation order, and the canonical string form sorts the same way as
    the underlying integer.

    Equality, hashing and ordering all operate on the 128-bit value, so
    identifiers parsed from upper or lower case hex compare equal.
    """

    __slots__ = ()

    @classmethod
    def generate(cls):
        """Create a new identifier from the current time, the process clock sequence
        and the host node value. Identifiers created by one process are strictly
        increasing even if the system clock does not advance between calls.

        :return: A new time-ordered identifier.
        :rtype: Identifier
        """
        global _last_timestamp, _node  # pylint: disable=W0603

        with _generator_lock:
            if _node is None:
                _node = uuid.getnode()
            timestamp = time.time_ns() // 100 + _UUID_EPOCH_OFFSET
            if _last_timestamp is not None and timestamp <= _last_timestamp:
                timestamp = _last_timestamp + 1
            _last_timestamp = timestamp
            node = _node

        time_high = (timestamp >> 28) & 0xFFFFFFFF
        time_mid = (timestamp >> 12) & 0xFFFF
        time_low_and_version = 0x6000 | (timestamp & 0x0FFF)
        clock_seq_and_variant = 0x8000 | _clock_seq
        value = (
            (time_high << 96)
            | (time_mid << 80)
            | (time_low_and_version << 64)
            | (clock_seq_and_variant << 48)
            | node
        )
        return cls(int=value)

    @classmethod
    def parse(cls, text):
        """Parse the canonical `xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx` form, in
        either case, into an identifier.

        :param str text: Identifier string.

        :raises IdentifierParseError: If `text` does not match the canonical form.

        :return: The parsed identifier.
        :rtype: Identifier
        """
        if not isinstance(text, str):
            raise IdentifierParseError(
                f"Identifier - parse: expected a string, got {type(text)}"
            )
        match = _IDENTIFIER_PATTERN.match(text)
        if match is None:
            raise IdentifierParseError(f"Identifier - parse: invalid identifier {text!r}")

        time_high, time_mid, time_low, clock_hi, clock_low, node = match.groups()
        value = (
            (int(time_high, 16) << 96)
            | (int(time_mid, 16) << 80)
            | (int(time_low, 16) << 64)
            | (int(clock_hi, 16) << 56)
            | (int(clock_low, 16) << 48)
            | int(node, 16)
        )
        return cls(int=value)

    @classmethod
    def coerce(cls, value):
        """Accept an identifier in parsed or string form and return an `Identifier`.

        :param value: `Identifier`, `uuid.UUID` or canonical string.

        :raises TypeError: If `value` is of any other type.
        :raises IdentifierParseError: If `value` is a malformed string.

        :return: The identifier.
        :rtype: Identifier
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, uuid.UUID):
            return cls(int=value.int)
        if isinstance(value, str):
            return cls.parse(value)
        raise TypeError(
            f"Identifier - coerce: expected an Identifier or string, got {type(value)}"
        )

    def __repr__(self):
        return f"Identifier('{self}')"


def canonical(value):
    """Return the canonical lowercase string form of an identifier given as an
    `Identifier` or a string."""
    return str(Identifier.coerce(value))

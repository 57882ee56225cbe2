"""
OpenPGP v4 key fingerprints.
"""

from __future__ import annotations

import re
from functools import total_ordering

_PATTERN = re.compile(r"^(0x)?[A-Fa-f0-9]{40}$")


@total_ordering
class Fingerprint:
    """A 20 byte OpenPGP fingerprint.

    Accepts the usual human spellings: spaces, upper or lower case and an
    optional ``0x`` prefix.
    """

    __slots__ = ("_bytes",)

    def __init__(self, raw: bytes):
        if len(raw) != 20:
            raise ValueError("fingerprint must be 20 bytes")
        self._bytes = bytes(raw)

    @classmethod
    def parse(cls, text: str) -> Fingerprint:
        without_spaces = text.replace(" ", "")
        if not without_spaces:
            raise ValueError("invalid fingerprint: empty")
        if not _PATTERN.match(without_spaces):
            raise ValueError("invalid v4 fingerprint: not 40 hex characters")
        if without_spaces.startswith("0x"):
            without_spaces = without_spaces[2:]
        return cls(bytes.fromhex(without_spaces))

    def hex(self) -> str:
        """40 uppercase hex characters, e.g. ``AB01AB01...``."""
        return self._bytes.hex().upper()

    def uri(self) -> str:
        return f"OPENPGP4FPR:{self.hex()}"

    def __str__(self) -> str:
        h = self.hex()
        groups = [h[i:i + 4] for i in range(0, 40, 4)]
        return " ".join(groups[:5]) + "  " + " ".join(groups[5:])

    def __repr__(self) -> str:
        return f"Fingerprint({self.hex()!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Fingerprint):
            return NotImplemented
        return self._bytes == other._bytes

    def __lt__(self, other: Fingerprint) -> bool:
        if not isinstance(other, Fingerprint):
            return NotImplemented
        return self._bytes < other._bytes

    def __hash__(self) -> int:
        return hash(self._bytes)


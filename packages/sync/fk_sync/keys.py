"""
Contracts for the OpenPGP collaborators.

The sync core never touches key material directly: it goes through a
KeyEngine (load, unlock, sign, verify, certify) and a Keyring (the user's
GnuPG keyring). fk_sync.gpg.GnuPG implements both by running gpg.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from .fingerprint import Fingerprint


@dataclass(frozen=True)
class PublicKey:
    """An ASCII-armored public key and what we know about it."""
    fingerprint: Fingerprint
    armored: str
    emails: tuple[str, ...] = ()


@dataclass(frozen=True)
class UnlockedKey:
    """A private key that's ready to sign. ``handle`` is engine-specific."""
    fingerprint: Fingerprint
    handle: Any = field(default=None, compare=False)


class KeyEngine(Protocol):
    def load_public_key(self, armored: str) -> PublicKey: ...

    def unlock(self, fingerprint: Fingerprint) -> UnlockedKey: ...

    def sign_detached(self, data: str, key: UnlockedKey) -> str: ...

    def verify_detached(self, data: str, signature: str, key: PublicKey) -> bool: ...

    def certify_email(
        self,
        key: PublicKey,
        email: str,
        certifier: UnlockedKey,
        now: datetime,
    ) -> PublicKey: ...


class Keyring(Protocol):
    def import_armored_key(self, armored: str) -> None: ...

    def export_public_key(self, fingerprint: Fingerprint) -> str | None: ...

    def list_secret_keys(self) -> list[Fingerprint]: ...

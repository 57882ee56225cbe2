"""
GnuPG process wrapper.

Implements the KeyEngine and Keyring contracts by running ``gpg``. Keys we
only need to inspect or verify against are imported into a throwaway home
directory so the user's keyring is only touched by import and certify.
"""

from __future__ import annotations

import re
import subprocess
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import structlog

from .errors import GpgError
from .fingerprint import Fingerprint
from .keys import PublicKey, UnlockedKey

log = structlog.get_logger()

_EMAIL_IN_UID = re.compile(r"<([^<>\s]+@[^<>\s]+)>")
_ESCAPED = re.compile(r"\\x([0-9a-fA-F]{2})")


@dataclass
class KeyListing:
    """A primary key parsed from ``gpg --with-colons`` output."""
    fingerprint: Fingerprint
    uids: list[str] = field(default_factory=list)

    @property
    def emails(self) -> tuple[str, ...]:
        return tuple(email for email in map(_email_of, self.uids) if email)


def _email_of(uid: str) -> str | None:
    match = _EMAIL_IN_UID.search(uid)
    if match:
        return match.group(1)
    if "@" in uid and " " not in uid.strip():
        return uid.strip()
    return None


def parse_colon_listing(output: str) -> list[KeyListing]:
    """Parse ``--with-colons --fingerprint`` listings of public or secret keys."""
    keys: list[KeyListing] = []
    record = ""
    for line in output.splitlines():
        fields = line.split(":")
        kind = fields[0]
        if kind in ("pub", "sec", "sub", "ssb"):
            record = kind
        elif kind == "fpr" and record in ("pub", "sec") and len(fields) > 9:
            keys.append(KeyListing(fingerprint=Fingerprint.parse(fields[9])))
            record = kind
        elif kind == "uid" and keys and len(fields) > 9:
            keys[-1].uids.append(_unescape(fields[9]))
    return keys


def _unescape(value: str) -> str:
    return _ESCAPED.sub(lambda m: chr(int(m.group(1), 16)), value)


def _valid_signers(status_output: str) -> set[Fingerprint]:
    """Primary key fingerprints from ``[GNUPG:] VALIDSIG`` status lines."""
    signers = set()
    for line in status_output.splitlines():
        parts = line.split()
        if len(parts) >= 3 and parts[0] == "[GNUPG:]" and parts[1] == "VALIDSIG":
            # last field is the primary key fingerprint, the first the signing (sub)key
            signers.add(Fingerprint.parse(parts[-1]))
            signers.add(Fingerprint.parse(parts[2]))
    return signers


class GnuPG:
    """Runs the ``gpg`` binary. ``homedir`` None means gpg's default home."""

    def __init__(self, binary: str = "gpg", homedir: str | None = None):
        self._binary = binary
        self._homedir = homedir

    # --- Keyring ---

    def import_armored_key(self, armored: str) -> None:
        self._run("--import", stdin=armored)

    def export_public_key(self, fingerprint: Fingerprint) -> str | None:
        out = self._run(
            "--export-options", "export-minimal", "--armor", "--export", fingerprint.hex(),
        ).stdout
        return out or None

    def list_secret_keys(self) -> list[Fingerprint]:
        out = self._run(
            "--with-colons", "--with-fingerprint", "--fixed-list-mode", "--list-secret-keys",
        ).stdout
        return [k.fingerprint for k in parse_colon_listing(out)]

    # --- KeyEngine ---

    def load_public_key(self, armored: str) -> PublicKey:
        with tempfile.TemporaryDirectory(prefix="fk-sync-") as scratch:
            self._run("--import", stdin=armored, homedir=scratch)
            out = self._run(
                "--with-colons", "--fingerprint", "--list-keys", homedir=scratch,
            ).stdout

        listings = parse_colon_listing(out)
        if len(listings) != 1:
            raise GpgError(f"expected exactly one key, got {len(listings)}")
        return PublicKey(
            fingerprint=listings[0].fingerprint,
            armored=armored,
            emails=listings[0].emails,
        )

    def unlock(self, fingerprint: Fingerprint) -> UnlockedKey:
        # gpg-agent owns the passphrase: all we can do is check the secret key is here
        if fingerprint not in self.list_secret_keys():
            raise GpgError(f"no secret key for {fingerprint} in GnuPG")
        return UnlockedKey(fingerprint=fingerprint, handle=fingerprint.hex())

    def sign_detached(self, data: str, key: UnlockedKey) -> str:
        return self._run(
            "--armor", "--detach-sign", "--local-user", f"{key.fingerprint.hex()}!",
            stdin=data,
        ).stdout

    def verify_detached(self, data: str, signature: str, key: PublicKey) -> bool:
        with tempfile.TemporaryDirectory(prefix="fk-sync-") as scratch:
            self._run("--import", stdin=key.armored, homedir=scratch)
            signature_path = Path(scratch) / "roster.toml.asc"
            signature_path.write_text(signature, encoding="utf-8")
            result = self._run(
                "--status-fd", "1", "--verify", str(signature_path), "-",
                stdin=data, homedir=scratch, check=False,
            )
        if result.returncode != 0:
            log.debug("gpg.verify_failed", fingerprint=key.fingerprint.hex(), stderr=result.stderr)
            return False
        return key.fingerprint in _valid_signers(result.stdout)

    def certify_email(
        self,
        key: PublicKey,
        email: str,
        certifier: UnlockedKey,
        now: datetime,
    ) -> PublicKey:
        """Make a local (non-exportable) certification of ``email`` on ``key``.

        gpg stamps the certification with its own clock, so ``now`` is only logged.
        """
        if key.fingerprint == certifier.fingerprint:
            raise GpgError("key and certifier key are the same")

        self.import_armored_key(key.armored)
        out = self._run(
            "--with-colons", "--fingerprint", "--list-keys", key.fingerprint.hex(),
        ).stdout
        listings = parse_colon_listing(out)
        uids = [
            uid for listing in listings for uid in listing.uids
            if (_email_of(uid) or "").lower() == email.lower()
        ]
        if not uids:
            raise GpgError(f"no identities on {key.fingerprint} match {email}")

        self._run(
            "--default-key", certifier.fingerprint.hex(),
            "--quick-lsign-key", key.fingerprint.hex(), *uids,
        )
        log.info(
            "gpg.certified",
            key=key.fingerprint.hex(),
            email=email,
            certifier=certifier.fingerprint.hex(),
            at=now.isoformat(),
        )
        armored = self.export_public_key(key.fingerprint) or key.armored
        return PublicKey(fingerprint=key.fingerprint, armored=armored, emails=key.emails)

    # --- Internals ---

    def _run(
        self,
        *arguments: str,
        stdin: str | None = None,
        homedir: str | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args = [self._binary, "--keyid-format", "0xlong", "--batch", "--no-tty"]
        home = homedir or self._homedir
        if home:
            args += ["--homedir", home]
        args += list(arguments)

        try:
            result = subprocess.run(args, input=stdin, capture_output=True, text=True)
        except OSError as exc:
            raise GpgError(f"error starting gpg: {exc}") from exc

        if check and result.returncode != 0:
            raise GpgError(
                f"gpg {' '.join(arguments)} failed ({result.returncode}): {result.stderr.strip()}"
            )
        return result

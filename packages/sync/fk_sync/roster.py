"""
Roster codec, signer and verifier.

A roster is the TOML serialisation of a Team. Serialisation is deterministic
so that an unchanged team always produces byte-identical text: signatures stay
stable and an unchanged roster can be detected by plain string comparison.
"""

from __future__ import annotations

import re
import tomllib

import structlog
import tomli_w
from pydantic import ValidationError

from .errors import InvalidRoster, SignatureInvalid, UnrecognisedFields
from .keys import KeyEngine, PublicKey, UnlockedKey
from .team import Team

log = structlog.get_logger()

# TOML comments can't hold control characters other than tab
_COMMENT_UNSAFE = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]+")


def _header(team_name: str) -> str:
    team_name = _COMMENT_UNSAFE.sub(" ", team_name)
    return (
        f"# {team_name} team roster. Everyone in the team has a copy of this file.\n"
        "#\n"
        "# It is used to look up which key to use for an email address and fetch keys\n"
        "# automatically.\n"
    )


def serialize(team: Team) -> str:
    """Return the team as roster TOML. Raises InvalidRoster for an invalid team."""
    try:
        team.validate_roster()
    except InvalidRoster as exc:
        raise InvalidRoster(f"invalid team: {exc}") from exc

    chunks = [_header(team.name), tomli_w.dumps({"uuid": str(team.uuid), "name": team.name})]
    # always [[person]] tables: tomli_w would inline an array of short tables
    for person in team.people:
        chunks.append("\n[[person]]\n")
        chunks.append(tomli_w.dumps({
            "email": person.email,
            "fingerprint": person.fingerprint.hex(),
            "is_admin": person.is_admin,
        }))
    return "".join(chunks)


def parse(roster: str) -> Team:
    """Decode roster TOML into a Team without validating it."""
    try:
        raw = tomllib.loads(roster)
    except tomllib.TOMLDecodeError as exc:
        raise InvalidRoster(f"error decoding roster: {exc}") from exc

    try:
        # only the roster's own key names: `people` is the Python-side name for `person`
        return Team.model_validate(raw, by_alias=True, by_name=False)
    except ValidationError as exc:
        unrecognised = [
            ".".join(str(part) for part in err["loc"])
            for err in exc.errors()
            if err["type"] == "extra_forbidden"
        ]
        if unrecognised:
            raise UnrecognisedFields(unrecognised) from exc
        raise InvalidRoster(f"error decoding roster: {exc}") from exc


def load(roster: str) -> Team:
    """Parse and validate a roster."""
    team = parse(roster)
    try:
        team.validate_roster()
    except InvalidRoster as exc:
        raise InvalidRoster(f"error validating team: {exc}") from exc
    return team


def sign_roster(
    team: Team, signing_key: UnlockedKey, engine: KeyEngine,
) -> tuple[str, str]:
    """Serialise and sign the team, returning ``(roster, signature)``."""
    roster = serialize(team)

    if not team.is_admin(signing_key.fingerprint):
        raise InvalidRoster(
            f"can't sign with key {signing_key.fingerprint} that's not an admin of the team"
        )

    signature = engine.sign_detached(roster, signing_key)
    return roster, signature


def verify_roster(
    roster: str,
    signature: str,
    admin_keys: list[PublicKey],
    engine: KeyEngine,
) -> PublicKey:
    """Check the detached signature over ``roster``.

    Only candidate keys that are listed as admins inside the roster itself are
    tried. Returns the key that made the signature.
    """
    if not signature:
        raise SignatureInvalid("empty signature")

    team = parse(roster)

    for key in admin_keys:
        if not team.is_admin(key.fingerprint):
            log.debug("roster.verifier_not_admin", fingerprint=key.fingerprint.hex())
            continue
        if engine.verify_detached(roster, signature, key):
            return key

    raise SignatureInvalid(
        f"roster signature not made by any of {len(admin_keys)} admin key(s)"
    )

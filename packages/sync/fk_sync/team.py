"""
Team roster data model.

A Team is rebuilt from its signed roster on every verified fetch and never
patched in place. Validation rules here are the client's only defence against
a malformed roster that a legitimate admin key has nonetheless signed.
"""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any
from uuid import UUID

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    StrictBool,
    StrictStr,
)

from .errors import InvalidRoster, InvalidRosterUpdate
from .fingerprint import Fingerprint

NIL_UUID = UUID(int=0)


def _to_fingerprint(value: Any) -> Any:
    if isinstance(value, str):
        return Fingerprint.parse(value)
    return value


FingerprintField = Annotated[
    Fingerprint,
    BeforeValidator(_to_fingerprint),
    PlainSerializer(lambda f: f.hex(), return_type=str),
]


class Person(BaseModel):
    """A human team member and the key that represents them."""

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    email: StrictStr
    fingerprint: FingerprintField
    is_admin: StrictBool = False


class Team(BaseModel):
    """A team and its ordered list of people."""

    model_config = ConfigDict(
        extra="forbid", arbitrary_types_allowed=True, validate_by_name=True,
    )

    uuid: UUID = NIL_UUID
    name: StrictStr = ""
    people: list[Person] = Field(default_factory=list, alias="person")

    def validate_roster(self) -> None:
        """Raise InvalidRoster unless the team is structurally sound."""
        if self.uuid == NIL_UUID:
            raise InvalidRoster("invalid roster: invalid UUID")

        emails_seen: set[str] = set()
        for person in self.people:
            if person.email in emails_seen:
                raise InvalidRoster(f"email listed more than once: {person.email}")
            emails_seen.add(person.email)

        fingerprints_seen: set[Fingerprint] = set()
        for person in self.people:
            if person.fingerprint in fingerprints_seen:
                raise InvalidRoster(
                    f"fingerprint listed more than once: {person.fingerprint}"
                )
            fingerprints_seen.add(person.fingerprint)

        if not self.people:
            raise InvalidRoster("team has no members")

        if not self.admins():
            raise InvalidRoster("team has no administrators")

    def admins(self) -> list[Person]:
        return [p for p in self.people if p.is_admin]

    def is_admin(self, fingerprint: Fingerprint) -> bool:
        return any(p.is_admin and p.fingerprint == fingerprint for p in self.people)

    def contains(self, fingerprint: Fingerprint) -> bool:
        return any(p.fingerprint == fingerprint for p in self.people)

    def get_person(self, fingerprint: Fingerprint) -> Person | None:
        for person in self.people:
            if person.fingerprint == fingerprint:
                return person
        return None

    def fingerprints(self) -> list[Fingerprint]:
        return [p.fingerprint for p in self.people]


class RequestToJoinTeam(BaseModel):
    """A request this client made to join a team, awaiting an admin."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: UUID
    team_uuid: UUID
    team_name: str
    email: str = ""
    fingerprint: FingerprintField
    requested_at: datetime


def validate_update(before: Team, after: Team, me: Person) -> None:
    """Check that ``after`` may replace ``before`` when ``me`` made the change.

    ``me`` is the admin acting on the roster: for a fetched roster, the admin
    whose key signed it.
    """
    try:
        after.validate_roster()
    except InvalidRosterUpdate:
        raise
    except InvalidRoster as exc:
        raise InvalidRosterUpdate(str(exc)) from exc

    if before.uuid != after.uuid:
        raise InvalidRosterUpdate("team UUID cannot be changed")

    if before.name != after.name:
        raise InvalidRosterUpdate("team name cannot currently be changed")

    if not before.is_admin(me.fingerprint):
        raise InvalidRosterUpdate(f"{me.email} is not a team admin")

    if not after.contains(me.fingerprint):
        raise InvalidRosterUpdate(f"{me.email} can't remove themself from the team")

    if not after.is_admin(me.fingerprint):
        raise InvalidRosterUpdate(f"{me.email} can't demote themself as team admin")


# --- Team directories ---

_SLUG_SUBS = {"&": "and", "@": "a"}


def slugify(text: str) -> str:
    slug = text.strip().lower()
    slug = "".join(_SLUG_SUBS.get(char, char) for char in slug)
    slug = re.sub(r"[^a-z0-9\-_]", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-_")


def team_subdirectory(team: Team) -> str:
    slug = slugify(team.name)
    if not slug:
        return str(team.uuid)
    return f"{slug}-{team.uuid}"


def teams_directory(fluidkeys_dir: str | Path) -> Path:
    return Path(fluidkeys_dir) / "teams"


def team_directory(team: Team, fluidkeys_dir: str | Path) -> Path:
    """e.g. ``~/.config/fluidkeys/teams/kiffix-74bb40b4-...``"""
    return teams_directory(fluidkeys_dir) / team_subdirectory(team)

"""
Local state persisted in a single JSON document (``db.json``).

Stores:
- keys imported into GnuPG (a set of fingerprints)
- requests to join teams, deduplicated so the earliest request wins
- "last done" timestamps keyed by (action, subject), used to throttle remote
  calls and to remember certifications already made

Every write loads the whole document, modifies it and atomically replaces the
file, so between calls db.json is always one consistent snapshot. No file
locking: one process at a time.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Union
from uuid import UUID, uuid4

import structlog
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from .errors import DatabaseError
from .fingerprint import Fingerprint
from .keys import PublicKey
from .team import NIL_UUID, FingerprintField, RequestToJoinTeam, Team

log = structlog.get_logger()

DB_FILENAME = "db.json"


# --- Subjects ---

@dataclass(frozen=True)
class KeySubject:
    fingerprint: Fingerprint

    def render(self) -> str:
        return f"key:{self.fingerprint.hex()}"


@dataclass(frozen=True)
class TeamSubject:
    team_uuid: UUID

    def render(self) -> str:
        return f"team:{self.team_uuid}"


@dataclass(frozen=True)
class CertificationSubject:
    """``certifier`` certified that ``email`` belongs to ``key``."""
    email: str
    key: Fingerprint
    certifier: Fingerprint

    def render(self) -> str:
        # both fingerprints are fixed width, so this can always be split back
        return f"certification:{self.email}-{self.key.hex()}-{self.certifier.hex()}"


Subject = Union[KeySubject, TeamSubject, CertificationSubject]


def subject_for(item: Any) -> Subject:
    """Lift a Fingerprint, PublicKey or Team into its Subject."""
    if isinstance(item, (KeySubject, TeamSubject, CertificationSubject)):
        return item
    if isinstance(item, Fingerprint):
        return KeySubject(item)
    if isinstance(item, PublicKey):
        return KeySubject(item.fingerprint)
    if isinstance(item, Team):
        return TeamSubject(item.uuid)
    raise TypeError(f"can't record an action against {type(item).__name__}")


# --- On-disk document ---

class _ImportedKey(BaseModel):
    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    fingerprint: FingerprintField = Field(alias="Fingerprint")


class _JoinRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    id: UUID = Field(default=NIL_UUID, alias="UUID")
    team_uuid: UUID = Field(alias="TeamUUID")
    team_name: str = Field(default="", alias="TeamName")
    email: str = Field(default="", alias="Email")
    fingerprint: FingerprintField = Field(alias="Fingerprint")
    requested_at: datetime = Field(alias="RequestedAt")

    @field_validator("requested_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return _utc(value)


class _Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    keys_imported: list[_ImportedKey] = Field(
        default_factory=list, alias="KeysImportedIntoGnuPG",
    )
    requests: list[_JoinRequest] = Field(
        default_factory=list, alias="RequestsToJoinTeams",
    )
    last_updated: dict[str, datetime] = Field(
        default_factory=dict, alias="LastUpdated",
    )

    @field_validator("keys_imported", "requests", "last_updated", mode="before")
    @classmethod
    def _null_is_empty(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return {} if info.field_name == "last_updated" else []
        return value


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _earliest_first(request: _JoinRequest) -> tuple[datetime, str]:
    # ties on requested_at break on the request id so the order is stable
    return (request.requested_at, str(request.id))


def _deduplicate_requests(requests: list[_JoinRequest]) -> list[_JoinRequest]:
    """Keep only the earliest request for each (team UUID, fingerprint) pair."""
    earliest: dict[tuple[UUID, Fingerprint], _JoinRequest] = {}
    for request in requests:
        pair = (request.team_uuid, request.fingerprint)
        existing = earliest.get(pair)
        if existing is None or _earliest_first(request) < _earliest_first(existing):
            earliest[pair] = request
    return sorted(earliest.values(), key=_earliest_first)


def _deduplicate_keys(keys: list[_ImportedKey]) -> list[_ImportedKey]:
    seen: set[Fingerprint] = set()
    deduped = []
    for key in keys:
        if key.fingerprint not in seen:
            seen.add(key.fingerprint)
            deduped.append(key)
    return deduped


def _to_request(msg: _JoinRequest) -> RequestToJoinTeam:
    return RequestToJoinTeam(
        id=msg.id,
        team_uuid=msg.team_uuid,
        team_name=msg.team_name,
        email=msg.email,
        fingerprint=msg.fingerprint,
        requested_at=msg.requested_at,
    )


class Database:
    """The user's Fluidkeys database, stored at ``<fluidkeys_dir>/db.json``."""

    def __init__(self, fluidkeys_dir: str | Path):
        self.path = Path(fluidkeys_dir) / DB_FILENAME

    # --- Keys imported into GnuPG ---

    def record_fingerprint_imported_into_gnupg(self, fingerprint: Fingerprint) -> None:
        doc = self._load()
        doc.keys_imported = _deduplicate_keys(
            doc.keys_imported + [_ImportedKey(fingerprint=fingerprint)]
        )
        self._save(doc)

    def get_fingerprints_imported_into_gnupg(self) -> list[Fingerprint]:
        return [k.fingerprint for k in self._load().keys_imported]

    # --- Requests to join teams ---

    def record_request_to_join_team(
        self,
        team_uuid: UUID,
        team_name: str,
        fingerprint: Fingerprint,
        requested_at: datetime,
        email: str = "",
    ) -> RequestToJoinTeam:
        doc = self._load()
        new_request = _JoinRequest(
            id=uuid4(),
            team_uuid=team_uuid,
            team_name=team_name,
            email=email,
            fingerprint=fingerprint,
            requested_at=_utc(requested_at),
        )
        doc.requests = _deduplicate_requests(doc.requests + [new_request])
        self._save(doc)

        surviving = self.get_existing_request_to_join_team(team_uuid, fingerprint)
        assert surviving is not None
        return surviving

    def get_requests_to_join_teams(self) -> list[RequestToJoinTeam]:
        return [_to_request(r) for r in _deduplicate_requests(self._load().requests)]

    def get_existing_request_to_join_team(
        self, team_uuid: UUID, fingerprint: Fingerprint,
    ) -> RequestToJoinTeam | None:
        for request in self.get_requests_to_join_teams():
            if request.team_uuid == team_uuid and request.fingerprint == fingerprint:
                return request
        return None

    def delete_request_to_join_team(self, team_uuid: UUID, fingerprint: Fingerprint) -> None:
        """Delete every request matching the team and fingerprint, duplicates included."""
        doc = self._load()
        kept = []
        for request in doc.requests:
            if request.team_uuid == team_uuid and request.fingerprint == fingerprint:
                log.info(
                    "database.request_deleted",
                    team_uuid=str(team_uuid),
                    fingerprint=fingerprint.hex(),
                )
                continue
            kept.append(request)
        doc.requests = kept
        self._save(doc)

    # --- Last done ---

    def record_last(self, action: str, subject: Any, now: datetime) -> None:
        doc = self._load()
        doc.last_updated[_last_key(action, subject)] = _utc(now)
        self._save(doc)

    def get_last(self, action: str, subject: Any) -> datetime | None:
        """When ``action`` was last recorded for ``subject``, or None if never."""
        last = self._load().last_updated.get(_last_key(action, subject))
        return _utc(last) if last is not None else None

    def is_older_than(
        self, action: str, subject: Any, max_age: timedelta, now: datetime,
    ) -> bool:
        last = self.get_last(action, subject)
        if last is None:
            return True
        return _utc(now) - last > max_age

    # --- Persistence ---

    def _load(self) -> _Document:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return _Document()
        except OSError as exc:
            raise DatabaseError(f"couldn't open '{self.path}': {exc}") from exc

        try:
            doc = _Document.model_validate_json(raw)
        except ValidationError as exc:
            raise DatabaseError(f"error loading json from '{self.path}': {exc}") from exc

        doc.keys_imported = _deduplicate_keys(doc.keys_imported)
        return doc

    def _save(self, doc: _Document) -> None:
        data = doc.model_dump_json(by_alias=True, indent=4)
        try:
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".tmp.db.json", dir=self.path.parent)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data + "\n")
            os.replace(tmp_name, self.path)
        except OSError as exc:
            raise DatabaseError(f"couldn't write '{self.path}': {exc}") from exc


def _last_key(action: str, subject: Any) -> str:
    return f"{action}:{subject_for(subject).render()}"

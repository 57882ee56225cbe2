"""
Team sync orchestrator.

One run, per team the user is a member of:
1. skip remote calls if unattended and the team was fetched recently
2. fetch the roster; if it changed, verify it against the current roster's admins
3. commit the verified roster to disk
4. fetch, certify and import every other member's key
then, for each outstanding request to join a team, expire it, report it as
awaiting approval, or (once approved) trust and commit the new team's roster.

Failures are isolated per team, per person and per request: they're collected
in the SyncResult and the run carries on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import UUID

import structlog
from structlog.contextvars import bound_contextvars

from .api import ApiClient
from .database import CertificationSubject, Database
from .errors import (
    AlreadyMember,
    FluidkeysError,
    Forbidden,
    GpgError,
    InvalidRoster,
    SignatureInvalid,
)
from .fingerprint import Fingerprint
from .keys import KeyEngine, Keyring, PublicKey, UnlockedKey
from .metrics import MetricsCollector
from .roster import load, verify_roster
from .rostersaver import RosterSaver, StoredTeam, load_teams
from .team import Person, RequestToJoinTeam, Team, team_directory, validate_update

log = structlog.get_logger()

FETCH = "fetch"
CERTIFY = "certify"


@dataclass
class SyncContext:
    """Everything a sync run needs, passed explicitly instead of held in globals."""
    fluidkeys_dir: Path
    db: Database
    api: ApiClient
    engine: KeyEngine
    keyring: Keyring
    metrics: MetricsCollector = field(default_factory=MetricsCollector)
    fetch_interval: timedelta = timedelta(hours=24)
    request_expiry: timedelta = timedelta(days=7)
    unlocked_keys: dict[Fingerprint, UnlockedKey] = field(default_factory=dict)

    def unlock(self, fingerprint: Fingerprint) -> UnlockedKey:
        """Unlock a private key, at most once per run."""
        if fingerprint not in self.unlocked_keys:
            self.unlocked_keys[fingerprint] = self.engine.unlock(fingerprint)
        return self.unlocked_keys[fingerprint]


@dataclass
class ItemError:
    item: str
    error: FluidkeysError

    def __str__(self) -> str:
        return f"{self.item}: {self.error}"


@dataclass
class SyncResult:
    synced: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    joined: list[str] = field(default_factory=list)
    expired: list[RequestToJoinTeam] = field(default_factory=list)
    awaiting_approval: list[RequestToJoinTeam] = field(default_factory=list)
    errors: list[ItemError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def _utc_now(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


class TeamSync:
    """Runs one sync pass over the user's teams and join requests."""

    def __init__(self, ctx: SyncContext):
        self._ctx = ctx

    async def run(self, unattended: bool = False, now: datetime | None = None) -> SyncResult:
        now = _utc_now(now)
        result = SyncResult()
        log.info("sync.starting", unattended=unattended)

        try:
            stored_teams = load_teams(self._ctx.fluidkeys_dir)
            my_keys = self._ctx.keyring.list_secret_keys()
        except FluidkeysError as exc:
            log.error("sync.startup_failed", error=str(exc))
            self._failed(result, "local teams", exc)
            return result

        self._ctx.metrics.set_gauge("teams", len(stored_teams))
        for stored in stored_teams:
            with bound_contextvars(team=stored.team.name):
                await self._sync_membership(stored, my_keys, unattended, now, result)

        await self._process_requests(stored_teams, unattended, now, result)

        log.info(
            "sync.finished",
            ok=result.ok,
            synced=len(result.synced),
            joined=len(result.joined),
            errors=len(result.errors),
        )
        return result

    # --- Teams ---

    async def _sync_membership(
        self,
        stored: StoredTeam,
        my_keys: list[Fingerprint],
        unattended: bool,
        now: datetime,
        result: SyncResult,
    ) -> None:
        memberships = [fpr for fpr in my_keys if stored.team.contains(fpr)]
        if not memberships:
            log.info("sync.not_a_member")
            return
        me = memberships[0]

        if unattended and not self._ctx.db.is_older_than(
            FETCH, stored.team, self._ctx.fetch_interval, now,
        ):
            log.info("sync.team_recently_fetched")
            result.skipped.append(stored.team.name)
            return

        try:
            team = await self._refresh_roster(stored, me, now)
        except Forbidden as exc:
            log.warning("sync.roster_forbidden", hint="you may have been removed from the team")
            self._failed(result, stored.team.name, exc)
            return
        except FluidkeysError as exc:
            if isinstance(exc, (SignatureInvalid, InvalidRoster)):
                self._ctx.metrics.inc("rosters_rejected_total")
            log.error("sync.roster_rejected", error=str(exc))
            self._failed(result, stored.team.name, exc)
            return

        result.synced.append(team.name)
        await self._certify_members(team, me, unattended, now, result)

    async def _refresh_roster(self, stored: StoredTeam, me: Fingerprint, now: datetime) -> Team:
        """Fetch the team's roster and commit it if it changed and checks out."""
        ctx = self._ctx
        roster, signature = await ctx.api.get_team_roster(stored.team.uuid, me)
        ctx.metrics.inc("rosters_fetched_total")

        if roster == stored.roster:
            log.info("sync.roster_unchanged")
            ctx.metrics.inc("rosters_unchanged_total")
            ctx.db.record_last(FETCH, stored.team, now)
            return stored.team

        fetched, acting = await self._verify_update(stored.team, roster, signature)

        RosterSaver(stored.directory).save(roster, signature)
        ctx.db.record_last(FETCH, fetched, now)
        ctx.metrics.inc("rosters_updated_total")
        log.info("sync.roster_committed", signed_by=acting.email)
        return fetched

    async def _verify_update(
        self, current: Team, roster: str, signature: str,
    ) -> tuple[Team, Person]:
        """Check ``roster`` is a permitted update of ``current``, signed by one of its admins."""
        # trust is anchored to the admins of the roster we already hold
        signer = verify_roster(roster, signature, await self._admin_keys(current), self._ctx.engine)
        fetched = load(roster)

        acting = current.get_person(signer.fingerprint)
        assert acting is not None
        validate_update(current, fetched, acting)
        return fetched, acting

    async def _admin_keys(self, team: Team) -> list[PublicKey]:
        keys = []
        for admin in team.admins():
            try:
                keys.append(await self._public_key(admin.fingerprint))
            except FluidkeysError as exc:
                log.warning(
                    "sync.admin_key_unavailable",
                    admin=admin.email,
                    fingerprint=admin.fingerprint.hex(),
                    error=str(exc),
                )
        if not keys:
            raise SignatureInvalid("couldn't get the public key of any team admin")
        return keys

    async def _public_key(self, fingerprint: Fingerprint) -> PublicKey:
        """Look the key up in GnuPG first, then the API."""
        armored = self._ctx.keyring.export_public_key(fingerprint)
        if armored:
            key = self._ctx.engine.load_public_key(armored)
            if key.fingerprint == fingerprint:
                return key
            log.warning(
                "sync.gnupg_key_mismatch",
                requested=fingerprint.hex(),
                got=key.fingerprint.hex(),
            )
        return await self._ctx.api.get_public_key_by_fingerprint(fingerprint, self._ctx.engine)

    # --- Members ---

    async def _certify_members(
        self,
        team: Team,
        me: Fingerprint,
        unattended: bool,
        now: datetime,
        result: SyncResult,
    ) -> None:
        ctx = self._ctx
        for person in team.people:
            if person.fingerprint == me:
                continue

            with bound_contextvars(person=person.email):
                if unattended and not ctx.db.is_older_than(
                    FETCH, person.fingerprint, ctx.fetch_interval, now,
                ):
                    log.debug("sync.key_recently_fetched")
                    continue

                try:
                    key = await self._public_key(person.fingerprint)
                except FluidkeysError as exc:
                    log.warning("sync.key_fetch_failed", error=str(exc))
                    self._failed(result, person.email, exc)
                    continue

                key = self._certify(key, person.email, me, now, result)

                try:
                    ctx.keyring.import_armored_key(key.armored)
                    ctx.db.record_fingerprint_imported_into_gnupg(person.fingerprint)
                    ctx.db.record_last(FETCH, person.fingerprint, now)
                except FluidkeysError as exc:
                    log.warning("sync.key_import_failed", error=str(exc))
                    self._failed(result, person.email, exc)
                    continue
                ctx.metrics.inc("keys_imported_total")
                log.info("sync.key_imported", fingerprint=person.fingerprint.hex())

    def _certify(
        self,
        key: PublicKey,
        email: str,
        me: Fingerprint,
        now: datetime,
        result: SyncResult,
    ) -> PublicKey:
        """Certify ``email`` on ``key`` unless we've done it before.

        On failure the uncertified key is returned so it can still be imported.
        """
        ctx = self._ctx
        subject = CertificationSubject(email=email, key=key.fingerprint, certifier=me)
        if ctx.db.get_last(CERTIFY, subject) is not None:
            return key

        try:
            certifier = ctx.unlock(me)
            certified = ctx.engine.certify_email(key, email, certifier, now)
            ctx.db.record_last(CERTIFY, subject, now)
        except FluidkeysError as exc:
            log.warning("sync.certify_failed", error=str(exc))
            self._failed(result, email, exc)
            return key

        ctx.metrics.inc("keys_certified_total")
        log.info("sync.key_certified", fingerprint=key.fingerprint.hex())
        return certified

    # --- Requests to join teams ---

    async def _process_requests(
        self,
        stored_teams: list[StoredTeam],
        unattended: bool,
        now: datetime,
        result: SyncResult,
    ) -> None:
        try:
            requests = self._ctx.db.get_requests_to_join_teams()
        except FluidkeysError as exc:
            log.error("sync.requests_unreadable", error=str(exc))
            self._failed(result, "requests to join teams", exc)
            return

        for request in requests:
            with bound_contextvars(team=request.team_name, request_id=str(request.id)):
                try:
                    await self._process_request(request, stored_teams, unattended, now, result)
                except FluidkeysError as exc:
                    log.error("sync.request_failed", error=str(exc))
                    self._failed(result, f"request to join {request.team_name}", exc)

    async def _process_request(
        self,
        request: RequestToJoinTeam,
        stored_teams: list[StoredTeam],
        unattended: bool,
        now: datetime,
        result: SyncResult,
    ) -> None:
        ctx = self._ctx

        for stored in stored_teams:
            if stored.team.uuid == request.team_uuid and stored.team.contains(request.fingerprint):
                log.info("sync.request_already_member")
                ctx.db.delete_request_to_join_team(request.team_uuid, request.fingerprint)
                return

        if now - request.requested_at > ctx.request_expiry:
            log.warning("sync.request_expired", requested_at=request.requested_at.isoformat())
            ctx.db.delete_request_to_join_team(request.team_uuid, request.fingerprint)
            ctx.metrics.inc("requests_expired_total")
            result.expired.append(request)
            return

        try:
            roster, signature = await ctx.api.get_team_roster(
                request.team_uuid, request.fingerprint,
            )
        except Forbidden:
            log.info("sync.request_awaiting_approval")
            result.awaiting_approval.append(request)
            return

        team = load(roster)
        if team.uuid != request.team_uuid:
            raise InvalidRoster(
                f"asked for team {request.team_uuid} but got roster for {team.uuid}"
            )
        if not team.contains(request.fingerprint):
            raise InvalidRoster(f"roster doesn't include requesting key {request.fingerprint}")

        anchor = next((s for s in stored_teams if s.team.uuid == request.team_uuid), None)
        if anchor is not None:
            # joining with another of our keys: the roster we hold still decides
            await self._verify_update(anchor.team, roster, signature)
            directory = anchor.directory
        else:
            # no earlier roster to anchor to: the admins named by this roster vouch for it
            log.warning(
                "sync.join_trust_on_first_use",
                admins=[p.fingerprint.hex() for p in team.admins()],
            )
            verify_roster(roster, signature, await self._admin_keys(team), ctx.engine)
            directory = team_directory(team, ctx.fluidkeys_dir)

        RosterSaver(directory).save(roster, signature)
        ctx.db.record_last(FETCH, team, now)
        ctx.db.delete_request_to_join_team(request.team_uuid, request.fingerprint)
        ctx.metrics.inc("requests_approved_total")
        result.joined.append(team.name)
        log.info("sync.request_approved")

        await self._certify_members(team, request.fingerprint, unattended, now, result)

    def _failed(self, result: SyncResult, item: str, exc: FluidkeysError) -> None:
        self._ctx.metrics.inc("errors_total")
        result.errors.append(ItemError(item=item, error=exc))


async def apply_to_join(
    ctx: SyncContext,
    team_uuid: UUID,
    fingerprint: Fingerprint,
    email: str | None = None,
    now: datetime | None = None,
) -> RequestToJoinTeam:
    """Ask to join a team and record the request so later syncs can follow it up.

    ``email`` defaults to the first email address on the key.
    """
    now = _utc_now(now)

    my_keys = ctx.keyring.list_secret_keys()
    if fingerprint not in my_keys:
        raise GpgError(f"no secret key for {fingerprint} in GnuPG")

    for stored in load_teams(ctx.fluidkeys_dir):
        if stored.team.uuid != team_uuid:
            continue
        for key in my_keys:
            if stored.team.contains(key):
                raise AlreadyMember(f"already a member of {stored.team.name} with key {key}")

    if not email:
        armored = ctx.keyring.export_public_key(fingerprint)
        if not armored:
            raise GpgError(f"couldn't export public key {fingerprint}")
        emails = ctx.engine.load_public_key(armored).emails
        if not emails:
            raise GpgError(f"key {fingerprint} has no email addresses")
        email = emails[0]

    team_name = await ctx.api.get_team_name(team_uuid)
    with bound_contextvars(team=team_name):
        await ctx.api.request_to_join_team(team_uuid, fingerprint, email)
        request = ctx.db.record_request_to_join_team(
            team_uuid, team_name, fingerprint, now, email=email,
        )
        log.info("sync.requested_to_join", email=email, requested_at=request.requested_at.isoformat())
    return request

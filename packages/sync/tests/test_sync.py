"""Tests for the team sync orchestrator, end to end against the mock API."""

from datetime import timedelta
from uuid import UUID

import pytest

from fk_sync.database import CertificationSubject
from fk_sync.errors import (
    AlreadyMember,
    Forbidden,
    InvalidRosterUpdate,
    PublicKeyNotFound,
    SignatureInvalid,
)
from fk_sync.keys import UnlockedKey
from fk_sync.roster import load, serialize, sign_roster
from fk_sync.rostersaver import RosterSaver
from fk_sync.sync import CERTIFY, FETCH, TeamSync, apply_to_join
from fk_sync.team import Person, Team, team_directory

from .fakes import ALICE, BOB, CAROL, DAVE, NOW, armor

TEAM_UUID = UUID("74bb40b4-3510-11e9-968e-53c38df634be")
OTHER_UUID = UUID("c0ffee00-3510-11e9-968e-53c38df634be")


def alice(is_admin=True):
    return Person(email="alice@example.com", fingerprint=ALICE, is_admin=is_admin)


def bob(is_admin=False):
    return Person(email="bob@example.com", fingerprint=BOB, is_admin=is_admin)


def carol():
    return Person(email="carol@example.com", fingerprint=CAROL)


def dave():
    return Person(email="dave@example.com", fingerprint=DAVE)


def make_team(*people, uuid=TEAM_UUID, name="Kiffix"):
    return Team(uuid=uuid, name=name, people=list(people))


def signed(team, gpg, signer=ALICE):
    return sign_roster(team, UnlockedKey(signer), gpg)


def store(team, gpg, fluidkeys_dir):
    roster, signature = signed(team, gpg)
    RosterSaver(team_directory(team, fluidkeys_dir)).save(roster, signature)
    return roster, signature


def stored_roster(team, fluidkeys_dir):
    return RosterSaver(team_directory(team, fluidkeys_dir)).read()


@pytest.fixture
def bobs_client(gpg):
    """Bob's machine: his own secret key, Alice's public key already in GnuPG."""
    gpg.add_key(BOB, "bob@example.com", secret=True)
    gpg.add_key(ALICE, "alice@example.com")
    return gpg


# --- Team roster updates ---


async def test_promotion_accepted_then_uuid_change_rejected(ctx, bobs_client, api_state, fluidkeys_dir):
    current = make_team(alice(), bob())
    store(current, bobs_client, fluidkeys_dir)

    promoted = make_team(alice(), bob(is_admin=True))
    api_state.publish(promoted, *signed(promoted, bobs_client))

    result = await TeamSync(ctx).run(now=NOW)

    assert result.ok, result.errors
    assert result.synced == ["Kiffix"]
    roster, _ = stored_roster(promoted, fluidkeys_dir)
    assert roster == serialize(promoted)
    assert load(roster).is_admin(BOB)
    assert ctx.db.get_last(FETCH, promoted) == NOW

    # same team, but the roster now claims a different UUID
    hijacked = make_team(alice(), bob(is_admin=True), uuid=OTHER_UUID)
    api_state.rosters[TEAM_UUID] = signed(hijacked, bobs_client)

    result = await TeamSync(ctx).run(now=NOW + timedelta(hours=1))

    assert not result.ok
    assert isinstance(result.errors[0].error, InvalidRosterUpdate)
    assert stored_roster(promoted, fluidkeys_dir)[0] == serialize(promoted)
    assert ctx.metrics.get("rosters_rejected_total") == 1


async def test_unchanged_roster_only_records_fetch(ctx, bobs_client, api_state, fluidkeys_dir):
    team = make_team(alice(), bob())
    roster, signature = store(team, bobs_client, fluidkeys_dir)
    api_state.publish(team, roster, signature)

    result = await TeamSync(ctx).run(now=NOW)

    assert result.ok
    assert ctx.metrics.get("rosters_unchanged_total") == 1
    assert ctx.metrics.get("rosters_updated_total") == 0
    assert ctx.metrics.get("teams") == 1
    assert ctx.db.get_last(FETCH, team) == NOW


async def test_roster_signed_by_outsider_rejected(ctx, bobs_client, api_state, fluidkeys_dir):
    current = make_team(alice(), bob())
    store(current, bobs_client, fluidkeys_dir)

    # Carol makes herself admin and signs it with her own key
    takeover = make_team(alice(), bob(), Person(email="carol@example.com", fingerprint=CAROL, is_admin=True))
    api_state.publish(takeover, *signed(takeover, bobs_client, signer=CAROL))
    api_state.members[TEAM_UUID].add(BOB.hex())

    result = await TeamSync(ctx).run(now=NOW)

    assert [type(e.error) for e in result.errors] == [SignatureInvalid]
    assert stored_roster(current, fluidkeys_dir)[0] == serialize(current)
    assert ctx.db.get_last(FETCH, current) is None


async def test_admin_key_fetched_from_api_when_not_in_gnupg(ctx, gpg, api_state, fluidkeys_dir):
    gpg.add_key(BOB, "bob@example.com", secret=True)
    api_state.keys[ALICE.hex()] = armor(ALICE, "alice@example.com")

    current = make_team(alice(), bob())
    store(current, gpg, fluidkeys_dir)
    updated = make_team(alice(), bob(), carol())
    api_state.publish(updated, *signed(updated, gpg))
    api_state.keys[CAROL.hex()] = armor(CAROL, "carol@example.com")

    result = await TeamSync(ctx).run(now=NOW)

    assert result.ok, result.errors
    assert load(stored_roster(updated, fluidkeys_dir)[0]).contains(CAROL)


async def test_forbidden_for_stored_team_is_an_error(ctx, bobs_client, api_state, fluidkeys_dir):
    current = make_team(alice(), bob())
    store(current, bobs_client, fluidkeys_dir)
    # Bob has been removed from the team on the server
    without_bob = make_team(alice(), carol())
    api_state.publish(without_bob, *signed(without_bob, bobs_client))

    result = await TeamSync(ctx).run(now=NOW)

    assert [type(e.error) for e in result.errors] == [Forbidden]
    assert stored_roster(current, fluidkeys_dir)[0] == serialize(current)


async def test_server_error_is_isolated_per_team(ctx, bobs_client, api_state, fluidkeys_dir):
    store(make_team(alice(), bob()), bobs_client, fluidkeys_dir)
    store(make_team(alice(), bob(), uuid=OTHER_UUID, name="Other"), bobs_client, fluidkeys_dir)
    api_state.fail_with = 500

    result = await TeamSync(ctx).run(now=NOW)

    assert len(result.errors) == 2
    assert "API error: 500" in str(result.errors[0])


async def test_teams_without_my_key_are_ignored(ctx, gpg, api_state, fluidkeys_dir):
    gpg.add_key(DAVE, "dave@example.com", secret=True)
    store(make_team(alice(), bob()), gpg, fluidkeys_dir)

    result = await TeamSync(ctx).run(now=NOW)

    assert result.ok
    assert result.synced == []
    assert api_state.roster_requests == []


async def test_unattended_skips_recently_fetched_team(ctx, bobs_client, api_state, fluidkeys_dir):
    team = make_team(alice(), bob())
    store(team, bobs_client, fluidkeys_dir)
    ctx.db.record_last(FETCH, team, NOW - timedelta(hours=23))

    result = await TeamSync(ctx).run(unattended=True, now=NOW)

    assert result.ok
    assert result.skipped == ["Kiffix"]
    assert api_state.roster_requests == []


async def test_unattended_fetches_stale_team(ctx, bobs_client, api_state, fluidkeys_dir):
    team = make_team(alice(), bob())
    roster, signature = store(team, bobs_client, fluidkeys_dir)
    api_state.publish(team, roster, signature)
    ctx.db.record_last(FETCH, team, NOW - timedelta(hours=25))

    result = await TeamSync(ctx).run(unattended=True, now=NOW)

    assert result.ok
    assert api_state.roster_requests == [(TEAM_UUID, BOB.hex())]


# --- Member keys ---


async def test_members_certified_once_and_imported(ctx, bobs_client, api_state, fluidkeys_dir):
    team = make_team(alice(), bob())
    roster, signature = store(team, bobs_client, fluidkeys_dir)
    api_state.publish(team, roster, signature)

    await TeamSync(ctx).run(now=NOW)
    await TeamSync(ctx).run(now=NOW + timedelta(days=2))

    assert bobs_client.certifications == [(ALICE, "alice@example.com", BOB)]
    assert bobs_client.imported == [ALICE, ALICE]
    assert ctx.db.get_last(CERTIFY, CertificationSubject("alice@example.com", ALICE, BOB)) == NOW
    assert ctx.db.get_fingerprints_imported_into_gnupg() == [ALICE]
    assert ctx.db.get_last(FETCH, ALICE) == NOW + timedelta(days=2)


async def test_key_unlocked_once_per_run(ctx, bobs_client, api_state, fluidkeys_dir):
    team = make_team(alice(), bob(), carol(), dave())
    roster, signature = store(team, bobs_client, fluidkeys_dir)
    api_state.publish(team, roster, signature)
    bobs_client.add_key(CAROL, "carol@example.com")
    bobs_client.add_key(DAVE, "dave@example.com")

    result = await TeamSync(ctx).run(now=NOW)

    assert result.ok
    assert len(bobs_client.certifications) == 3
    assert bobs_client.unlocked == [BOB]


async def test_member_failures_are_isolated(ctx, bobs_client, api_state, fluidkeys_dir):
    team = make_team(alice(), bob(), carol(), dave())
    roster, signature = store(team, bobs_client, fluidkeys_dir)
    api_state.publish(team, roster, signature)
    # Carol's key can't be found anywhere; Dave's only via the API
    api_state.keys[DAVE.hex()] = armor(DAVE, "dave@example.com")
    bobs_client.broken_certify.add(ALICE)

    result = await TeamSync(ctx).run(now=NOW)

    assert not result.ok
    failures = {e.item: type(e.error) for e in result.errors}
    assert failures["carol@example.com"] is PublicKeyNotFound
    assert "alice@example.com" in failures
    # Alice's key is still imported even though certifying it failed
    assert bobs_client.imported == [ALICE, DAVE]
    assert bobs_client.certifications == [(DAVE, "dave@example.com", BOB)]


async def test_unattended_skips_recently_fetched_keys(ctx, bobs_client, api_state, fluidkeys_dir):
    team = make_team(alice(), bob())
    roster, signature = store(team, bobs_client, fluidkeys_dir)
    api_state.publish(team, roster, signature)
    ctx.db.record_last(FETCH, ALICE, NOW - timedelta(hours=1))

    result = await TeamSync(ctx).run(unattended=True, now=NOW)

    assert result.ok
    assert bobs_client.imported == []


# --- Requests to join teams ---


async def test_request_expiry_and_awaiting_approval(ctx, gpg, api_state):
    gpg.add_key(BOB, "bob@example.com", secret=True)
    ctx.db.record_request_to_join_team(TEAM_UUID, "Kiffix", BOB, NOW - timedelta(days=8))
    ctx.db.record_request_to_join_team(OTHER_UUID, "Other", BOB, NOW - timedelta(days=1))
    other = make_team(alice(), carol(), uuid=OTHER_UUID, name="Other")
    api_state.publish(other, *signed(other, gpg))

    result = await TeamSync(ctx).run(now=NOW)

    assert result.ok, result.errors
    assert [r.team_uuid for r in result.expired] == [TEAM_UUID]
    assert [r.team_uuid for r in result.awaiting_approval] == [OTHER_UUID]
    assert [r.team_uuid for r in ctx.db.get_requests_to_join_teams()] == [OTHER_UUID]
    # the expired request never reached the API
    assert api_state.roster_requests == [(OTHER_UUID, BOB.hex())]


async def test_request_exactly_seven_days_old_is_kept(ctx, gpg, api_state):
    gpg.add_key(BOB, "bob@example.com", secret=True)
    ctx.db.record_request_to_join_team(TEAM_UUID, "Kiffix", BOB, NOW - timedelta(days=7))
    team = make_team(alice(), carol())
    api_state.publish(team, *signed(team, gpg))

    result = await TeamSync(ctx).run(now=NOW)

    assert result.expired == []
    assert len(result.awaiting_approval) == 1


async def test_approved_request_joins_team(ctx, gpg, api_state, fluidkeys_dir):
    gpg.add_key(BOB, "bob@example.com", secret=True)
    ctx.db.record_request_to_join_team(TEAM_UUID, "Kiffix", BOB, NOW - timedelta(days=1))
    team = make_team(alice(), bob())
    roster, signature = signed(team, gpg)
    api_state.publish(team, roster, signature)
    # Alice's key is only on the server: trust comes from the roster itself
    api_state.keys[ALICE.hex()] = armor(ALICE, "alice@example.com")

    result = await TeamSync(ctx).run(now=NOW)

    assert result.ok, result.errors
    assert result.joined == ["Kiffix"]
    assert stored_roster(team, fluidkeys_dir) == (roster, signature)
    assert ctx.db.get_requests_to_join_teams() == []
    assert ctx.db.get_last(FETCH, team) == NOW
    assert gpg.imported == [ALICE]
    assert gpg.certifications == [(ALICE, "alice@example.com", BOB)]


async def test_approved_roster_must_be_signed_by_its_admin(ctx, gpg, api_state, fluidkeys_dir):
    gpg.add_key(BOB, "bob@example.com", secret=True)
    gpg.add_key(CAROL, "carol@example.com")
    ctx.db.record_request_to_join_team(TEAM_UUID, "Kiffix", BOB, NOW - timedelta(days=1))
    team = make_team(alice(), bob(), carol())
    roster = serialize(team)
    api_state.publish(team, roster, gpg.sign_detached(roster, UnlockedKey(CAROL)))
    api_state.keys[ALICE.hex()] = armor(ALICE, "alice@example.com")

    result = await TeamSync(ctx).run(now=NOW)

    assert [type(e.error) for e in result.errors] == [SignatureInvalid]
    assert stored_roster(team, fluidkeys_dir) is None
    assert len(ctx.db.get_requests_to_join_teams()) == 1


async def test_request_for_team_already_joined_is_deleted(ctx, bobs_client, api_state, fluidkeys_dir):
    team = make_team(alice(), bob())
    roster, signature = store(team, bobs_client, fluidkeys_dir)
    api_state.publish(team, roster, signature)
    ctx.db.record_request_to_join_team(TEAM_UUID, "Kiffix", BOB, NOW - timedelta(days=1))

    result = await TeamSync(ctx).run(now=NOW)

    assert result.ok
    assert result.joined == []
    assert ctx.db.get_requests_to_join_teams() == []


async def test_request_with_second_key_cannot_replace_held_roster(ctx, bobs_client, api_state, fluidkeys_dir):
    bobs_client.add_key(DAVE, "dave@example.com", secret=True)
    bobs_client.add_key(CAROL, "carol@example.com")
    current = make_team(alice(), bob())
    roster, signature = store(current, bobs_client, fluidkeys_dir)
    ctx.db.record_request_to_join_team(TEAM_UUID, "Kiffix", DAVE, NOW - timedelta(days=1))

    # Carol names herself admin, lets Dave in and signs it herself
    takeover = make_team(Person(email="carol@example.com", fingerprint=CAROL, is_admin=True), bob(), dave())
    api_state.publish(takeover, *signed(takeover, bobs_client, signer=CAROL))

    result = await TeamSync(ctx).run(now=NOW)

    assert result.joined == []
    assert {e.item for e in result.errors} == {"Kiffix", "request to join Kiffix"}
    assert all(isinstance(e.error, SignatureInvalid) for e in result.errors)
    assert stored_roster(current, fluidkeys_dir) == (roster, signature)
    assert len(ctx.db.get_requests_to_join_teams()) == 1


async def test_request_with_second_key_approved_by_held_admin(ctx, bobs_client, api_state, fluidkeys_dir):
    bobs_client.add_key(DAVE, "dave@example.com", secret=True)
    current = make_team(alice(), bob())
    store(current, bobs_client, fluidkeys_dir)
    ctx.db.record_request_to_join_team(TEAM_UUID, "Kiffix", DAVE, NOW - timedelta(days=1))

    approved = make_team(alice(), bob(), dave())
    roster, signature = signed(approved, bobs_client)
    api_state.publish(approved, roster, signature)

    result = await TeamSync(ctx).run(now=NOW)

    assert result.ok, result.errors
    assert result.joined == ["Kiffix"]
    assert stored_roster(approved, fluidkeys_dir) == (roster, signature)
    assert ctx.db.get_requests_to_join_teams() == []


# --- Applying to join ---


async def test_apply_to_join(ctx, gpg, api_state):
    gpg.add_key(BOB, "bob@example.com", secret=True)
    api_state.names[TEAM_UUID] = "Kiffix"

    request = await apply_to_join(ctx, TEAM_UUID, BOB, now=NOW)

    assert api_state.join_requests == [
        {"team_uuid": TEAM_UUID, "fingerprint": BOB.hex(), "email": "bob@example.com"}
    ]
    assert request.team_name == "Kiffix"
    assert request.requested_at == NOW
    assert ctx.db.get_existing_request_to_join_team(TEAM_UUID, BOB) == request


async def test_apply_when_already_a_member(ctx, bobs_client, api_state, fluidkeys_dir):
    store(make_team(alice(), bob()), bobs_client, fluidkeys_dir)
    api_state.names[TEAM_UUID] = "Kiffix"

    with pytest.raises(AlreadyMember):
        await apply_to_join(ctx, TEAM_UUID, BOB, now=NOW)
    assert api_state.join_requests == []


async def test_apply_with_another_key_when_already_a_member(ctx, bobs_client, api_state, fluidkeys_dir):
    bobs_client.add_key(DAVE, "dave@example.com", secret=True)
    store(make_team(alice(), bob()), bobs_client, fluidkeys_dir)
    api_state.names[TEAM_UUID] = "Kiffix"

    with pytest.raises(AlreadyMember):
        await apply_to_join(ctx, TEAM_UUID, DAVE, now=NOW)
    assert api_state.join_requests == []
    assert ctx.db.get_requests_to_join_teams() == []

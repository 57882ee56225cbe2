"""
Exception hierarchy.

Every fallible operation raises a subclass of FluidkeysError so the sync
orchestrator can isolate failures per team and per person.
"""

from __future__ import annotations


class FluidkeysError(Exception):
    """Base class for all errors raised by fk_sync."""


# --- Structural ---

class InvalidRoster(FluidkeysError):
    """The roster is malformed or breaks a team invariant."""


class UnrecognisedFields(InvalidRoster):
    """The roster contains keys that don't map onto Team or Person."""

    def __init__(self, fields: list[str]):
        self.fields = sorted(fields)
        super().__init__(
            f"encountered unrecognised roster keys: {', '.join(self.fields)}"
        )


# --- Policy ---

class InvalidRosterUpdate(InvalidRoster):
    """A new roster may not replace the current one."""


# --- Trust ---

class SignatureInvalid(FluidkeysError):
    """The roster signature doesn't verify against any team admin's key."""


# --- Transient (API) ---

class ApiError(FluidkeysError):
    """The Fluidkeys API returned an error or couldn't be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class Forbidden(ApiError):
    """HTTP 403: the requesting key isn't allowed to see this resource (yet)."""


class TeamNotFound(ApiError):
    """HTTP 404 for a team."""


class PublicKeyNotFound(ApiError):
    """HTTP 404 for a public key."""


# --- Persistence ---

class RosterSaveError(FluidkeysError):
    """Writing the roster and signature to disk failed."""


class DatabaseError(FluidkeysError):
    """The local db.json couldn't be read or written."""


# --- Collaborators ---

class GpgError(FluidkeysError):
    """Running gpg failed."""


# --- Membership ---

class AlreadyMember(FluidkeysError):
    """The key is already a member of the team it's applying to join."""

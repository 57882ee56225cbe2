"""
Two-phase, crash-safe persistence of a team's roster and signature.

The roster is first written as a draft (two temporary files in the team
directory) and then committed by renaming the drafts over the canonical
files. Renames within one directory are the only operation assumed to be
atomic. If the signature can't be moved into place the roster rename is
rolled back, so roster.toml and roster.toml.asc always belong together.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

import structlog

from .errors import InvalidRoster, RosterSaveError
from .roster import load
from .team import Team, teams_directory

log = structlog.get_logger()

ROSTER_FILENAME = "roster.toml"
ROSTER_BACKUP_FILENAME = "roster.toml.BAK"
SIGNATURE_FILENAME = "roster.toml.asc"


class FileSystem:
    """The filesystem operations RosterSaver relies on."""

    def rename(self, src: Path, dst: Path) -> None:
        os.replace(src, dst)

    def remove(self, path: Path) -> None:
        os.remove(path)

    def exists(self, path: Path) -> bool:
        return path.is_file()


class RosterSaver:
    """Saves a roster and signature as a draft which is then committed or discarded.

    At most one draft can be in flight per instance.
    """

    def __init__(self, directory: str | Path, fs: FileSystem | None = None):
        self.directory = Path(directory)
        self._fs = fs or FileSystem()
        self._draft_roster: Path | None = None
        self._draft_signature: Path | None = None

    @property
    def roster_path(self) -> Path:
        return self.directory / ROSTER_FILENAME

    @property
    def backup_path(self) -> Path:
        return self.directory / ROSTER_BACKUP_FILENAME

    @property
    def signature_path(self) -> Path:
        return self.directory / SIGNATURE_FILENAME

    @property
    def has_draft(self) -> bool:
        return self._draft_roster is not None or self._draft_signature is not None

    def save(self, roster: str, signature: str) -> None:
        """Write the roster and signature straight to their canonical files."""
        self.save_draft(roster, signature)
        self.commit_draft()

    def save_draft(self, roster: str, signature: str) -> None:
        if self.has_draft:
            raise RosterSaveError("already have a draft in progress")

        try:
            self.directory.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as exc:
            raise RosterSaveError(f"failed to make directory {self.directory}: {exc}") from exc

        roster_tmp = self._write_temp(ROSTER_FILENAME, roster)
        try:
            signature_tmp = self._write_temp(SIGNATURE_FILENAME, signature)
        except RosterSaveError:
            self._remove_quietly(roster_tmp)
            raise

        self._draft_roster = roster_tmp
        self._draft_signature = signature_tmp
        log.debug("rostersaver.draft_saved", directory=str(self.directory))

    def commit_draft(self) -> None:
        """Move the draft roster and signature over the canonical files.

        On failure the draft is dropped and the canonical pair is left (or put
        back) the way it was.
        """
        if self._draft_roster is None or self._draft_signature is None:
            raise RosterSaveError("no draft in progress")

        is_update = self._fs.exists(self.roster_path)

        if is_update:
            try:
                self._fs.rename(self.roster_path, self.backup_path)
            except OSError as exc:
                self._drop_draft()
                raise RosterSaveError(
                    f"failed to back up {self.roster_path}: {exc}"
                ) from exc

        try:
            self._fs.rename(self._draft_roster, self.roster_path)
        except OSError as exc:
            self._drop_draft()
            if is_update:
                try:
                    self._fs.rename(self.backup_path, self.roster_path)
                except OSError as restore_exc:
                    raise RosterSaveError(
                        f"failed to write {self.roster_path} ({exc}) and failed to "
                        f"restore backup {self.backup_path} ({restore_exc})"
                    ) from exc
            raise RosterSaveError(f"failed to write {self.roster_path}: {exc}") from exc
        self._draft_roster = None

        try:
            self._fs.rename(self._draft_signature, self.signature_path)
        except OSError as exc:
            log.warning(
                "rostersaver.signature_rename_failed",
                path=str(self.signature_path),
                error=str(exc),
            )
            self._drop_draft()
            self._rollback_roster(is_update, exc)
            raise RosterSaveError(f"failed to write {self.signature_path}: {exc}") from exc
        self._draft_signature = None

        log.info("rostersaver.committed", directory=str(self.directory), update=is_update)

    def discard_draft(self) -> None:
        """Delete the draft files without touching the canonical ones."""
        if self._draft_roster is None or self._draft_signature is None:
            raise RosterSaveError("no draft in progress")
        self._drop_draft()

    def read(self) -> tuple[str, str] | None:
        """Return the canonical ``(roster, signature)``, or None if either is missing."""
        if not (self.roster_path.is_file() and self.signature_path.is_file()):
            return None
        return (
            self.roster_path.read_text(encoding="utf-8"),
            self.signature_path.read_text(encoding="utf-8"),
        )

    # --- Internals ---

    def _rollback_roster(self, is_update: bool, cause: OSError) -> None:
        """Put roster.toml back in step with roster.toml.asc."""
        if is_update:
            log.info("rostersaver.rollback", restore=str(self.backup_path))
            try:
                self._fs.rename(self.backup_path, self.roster_path)
            except OSError as restore_exc:
                raise RosterSaveError(
                    f"failed to write {self.signature_path} ({cause}) *and* then "
                    f"failed to roll back {self.backup_path} ({restore_exc})"
                ) from cause
        else:
            # brand new roster: delete it so there's no roster without a signature
            log.info("rostersaver.rollback", delete=str(self.roster_path))
            self._remove_quietly(self.roster_path)

    def _drop_draft(self) -> None:
        for path in (self._draft_roster, self._draft_signature):
            if path is not None:
                self._remove_quietly(path)
        self._draft_roster = None
        self._draft_signature = None

    def _write_temp(self, filename: str, content: str) -> Path:
        try:
            fd, name = tempfile.mkstemp(prefix=f".tmp.{filename}", dir=self.directory)
        except OSError as exc:
            raise RosterSaveError(f"failed to create draft {filename}: {exc}") from exc

        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(content)
        except OSError as exc:
            self._remove_quietly(Path(name))
            raise RosterSaveError(f"failed to write draft {filename}: {exc}") from exc
        return Path(name)

    def _remove_quietly(self, path: Path) -> None:
        try:
            self._fs.remove(path)
        except OSError as exc:
            log.warning("rostersaver.remove_failed", path=str(path), error=str(exc))


@dataclass
class StoredTeam:
    """A team loaded from its committed roster on disk."""
    team: Team
    roster: str
    signature: str
    directory: Path


def load_teams(fluidkeys_dir: str | Path) -> list[StoredTeam]:
    """Load every committed team roster under ``<fluidkeys_dir>/teams``."""
    directory = teams_directory(fluidkeys_dir)
    directory.mkdir(mode=0o700, parents=True, exist_ok=True)

    teams = []
    for subdir in sorted(p for p in directory.iterdir() if p.is_dir()):
        stored = RosterSaver(subdir).read()
        if stored is None:
            log.info(
                "rostersaver.ignoring_directory",
                directory=str(subdir),
                reason=f"missing one of {ROSTER_FILENAME} or {SIGNATURE_FILENAME}",
            )
            continue

        roster, signature = stored
        try:
            team = load(roster)
        except InvalidRoster as exc:
            raise InvalidRoster(f"failed to load team from {subdir}: {exc}") from exc
        teams.append(StoredTeam(team=team, roster=roster, signature=signature, directory=subdir))
    return teams

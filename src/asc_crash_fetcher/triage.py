"""Status workflow for crash and feedback triage.

Any command is accepted from any status. ``duplicate`` and ``fixed`` /
``wontfix`` never coexist: every command other than MarkDuplicate clears
the duplicate-of reference. Notes survive ``investigate`` and ``reopen``;
the full trail lives in the status_changes table.
"""

from __future__ import annotations

from dataclasses import dataclass

from asc_crash_fetcher.db.models import Submission, SubmissionStatus
from asc_crash_fetcher.db.repositories import SubmissionRepository
from asc_crash_fetcher.exceptions import RecordNotFoundError, ValidationError
from asc_crash_fetcher.logging import get_logger

logger = get_logger(__name__)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------
@dataclass(frozen=True)
class Investigate:
    """Start working on a record."""


@dataclass(frozen=True)
class Fix:
    """Mark a record fixed; notes are required."""

    notes: str


@dataclass(frozen=True)
class WontFix:
    """Close a record without a fix."""

    notes: str | None = None


@dataclass(frozen=True)
class MarkDuplicate:
    """Mark a record as a duplicate of another record of the same kind."""

    of: int


@dataclass(frozen=True)
class Reopen:
    """Move a record back to ``new``."""


Command = Investigate | Fix | WontFix | MarkDuplicate | Reopen


@dataclass(frozen=True)
class Transition:
    """Triage fields a command produces."""

    status: SubmissionStatus
    notes: str | None
    duplicate_of: int | None = None


def transition(record_id: int, current_notes: str | None, command: Command) -> Transition:
    """Compute the triage fields after applying a command.

    Args:
        record_id: Local id of the record being changed
        current_notes: Notes currently stored on the record
        command: Triage command

    Raises:
        ValidationError: If Fix has empty notes or a record duplicates itself.
    """
    match command:
        case Investigate():
            return Transition(SubmissionStatus.INVESTIGATING, current_notes)
        case Fix(notes=notes):
            if not notes or not notes.strip():
                raise ValidationError("fix requires notes")
            return Transition(SubmissionStatus.FIXED, notes)
        case WontFix(notes=notes):
            return Transition(SubmissionStatus.WONTFIX, notes)
        case MarkDuplicate(of=of):
            if of == record_id:
                raise ValidationError(f"#{record_id} cannot be a duplicate of itself")
            return Transition(SubmissionStatus.DUPLICATE, current_notes, duplicate_of=of)
        case Reopen():
            return Transition(SubmissionStatus.NEW, current_notes)
    raise ValidationError(f"unknown triage command: {command!r}")


class TriageService:
    """Applies triage commands to stored records of one kind.

    Usage:
        service = TriageService(SubmissionRepository(session, RecordKind.CRASH))
        crash = await service.apply(14, MarkDuplicate(of=3))
    """

    def __init__(self, repository: SubmissionRepository) -> None:
        """Initialize the service.

        Args:
            repository: Submission repository for one record kind (crash or feedback);
                writes go through it, so the caller owns the session and commits
        """
        self._repository = repository

    @property
    def repository(self) -> SubmissionRepository:
        """Repository for the record kind this service triages."""
        return self._repository

    async def apply(self, local_id: int, command: Command) -> Submission:
        """Validate and persist a triage command.

        Raises:
            RecordNotFoundError: If the record (or a duplicate target) is unknown.
            ValidationError: If the command is invalid for this record.
        """
        submission = await self._repository.get_or_raise(local_id)
        result = transition(local_id, submission.notes, command)

        if result.duplicate_of is not None:
            await self._check_duplicate_target(local_id, result.duplicate_of)

        updated = await self._repository.set_status(
            local_id,
            result.status,
            notes=result.notes,
            duplicate_of=result.duplicate_of,
        )
        logger.info(
            "{} #{} -> {}", self._repository.kind.label, local_id, result.status.value
        )
        return updated

    async def _check_duplicate_target(self, local_id: int, target_id: int) -> None:
        """The target must exist and its duplicate chain must not lead back here."""
        kind = self._repository.kind.value
        target = await self._repository.get(target_id)
        if target is None:
            raise RecordNotFoundError(kind, target_id)

        seen = {local_id}
        current: Submission | None = target
        while current is not None and current.duplicate_of is not None:
            if current.duplicate_of in seen:
                raise ValidationError(
                    f"marking {kind} #{local_id} as duplicate of #{target_id} would create a cycle"
                )
            seen.add(current.id)
            current = await self._repository.get(current.duplicate_of)

"""
Duplicate handling policy.

Given the object already at a file's destination key (if any), the incoming
file and the collection's duplicate handling mode, decide what the
orchestrator does with the incoming bytes. Identity is the destination key:
two files from different providers that land on the same key are duplicates.

    mode      identical    different / unknown
    -------   ----------   -------------------
    error     SKIP         REJECT
    skip      SKIP         SKIP
    replace   PROCEED      REPLACE
    version   SKIP         VERSION

Sameness is decided by checksums of the same algorithm. When they cannot be
compared the files are never assumed identical under ``error`` and
``replace``; for ``skip`` and ``version`` the ``unverifiable_match`` setting
decides whether equal sizes count as identical.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from granule_ingest.exceptions import DuplicateFileError
from granule_ingest.models import Checksum, DuplicateHandling, StoredObject


class DecisionAction(StrEnum):
    PROCEED = "proceed"
    REJECT = "reject"
    SKIP = "skip"
    REPLACE = "replace"
    VERSION = "version"

    @property
    def writes_incoming(self) -> bool:
        return self in (DecisionAction.PROCEED, DecisionAction.REPLACE, DecisionAction.VERSION)


class Sameness(StrEnum):
    SAME = "same"
    DIFFERENT = "different"
    UNKNOWN = "unknown"


class UnverifiableMatch(StrEnum):
    """How files whose checksums cannot be compared are treated."""

    DIFFERENT = "different"
    SIZE = "size"


@dataclass(frozen=True)
class Incoming:
    """What the evaluator needs to know about fetched bytes."""

    bucket: str
    key: str
    size: int | None = None
    checksum: Checksum | None = None


@dataclass(frozen=True)
class Decision:
    action: DecisionAction
    reason: str
    sameness: Sameness = Sameness.UNKNOWN
    error: DuplicateFileError | None = None

    @property
    def duplicate_found(self) -> bool:
        """A pre-existing object was encountered while deciding."""
        return self.action != DecisionAction.PROCEED or self.sameness == Sameness.SAME


def compare(
    existing: StoredObject,
    incoming: Incoming,
    *,
    unverifiable_match: UnverifiableMatch = UnverifiableMatch.DIFFERENT,
) -> Sameness:
    """Decide whether two objects hold the same bytes, as far as can be proven."""
    if existing.checksum is not None and incoming.checksum is not None:
        matched = existing.checksum.matches(incoming.checksum)
        if matched is not None:
            return Sameness.SAME if matched else Sameness.DIFFERENT

    if unverifiable_match == UnverifiableMatch.SIZE and existing.size is not None and incoming.size is not None:
        return Sameness.SAME if existing.size == incoming.size else Sameness.DIFFERENT

    # Known different sizes are proof of difference even without checksums
    if existing.size is not None and incoming.size is not None and existing.size != incoming.size:
        return Sameness.DIFFERENT
    return Sameness.UNKNOWN


def evaluate(
    existing: StoredObject | None,
    incoming: Incoming,
    mode: DuplicateHandling,
    *,
    unverifiable_match: UnverifiableMatch = UnverifiableMatch.DIFFERENT,
) -> Decision:
    """
    Decide how to stage ``incoming`` given the object at its destination key.

    ``existing`` is None when nothing is staged at the key yet.
    """
    if existing is None:
        return Decision(DecisionAction.PROCEED, "no existing object at destination")

    # error and replace never treat unverifiable files as identical
    strict = mode in (DuplicateHandling.ERROR, DuplicateHandling.REPLACE)
    sameness = compare(
        existing,
        incoming,
        unverifiable_match=UnverifiableMatch.DIFFERENT if strict else unverifiable_match,
    )
    location = f"s3://{incoming.bucket}/{incoming.key}"

    if mode == DuplicateHandling.ERROR:
        if sameness == Sameness.SAME:
            return Decision(DecisionAction.SKIP, f"{location} already staged with identical content", sameness)
        reason = (
            f"{location} already exists with different content"
            if sameness == Sameness.DIFFERENT
            else f"{location} already exists and content could not be compared"
        )
        error = DuplicateFileError(
            f"{incoming.key} already exists in {incoming.bucket} bucket",
            bucket=incoming.bucket,
            key=incoming.key,
            details={"reason": reason},
        )
        return Decision(DecisionAction.REJECT, reason, sameness, error)

    if mode == DuplicateHandling.SKIP:
        return Decision(DecisionAction.SKIP, f"{location} exists, keeping existing object ({sameness.value})", sameness)

    if mode == DuplicateHandling.REPLACE:
        if sameness == Sameness.SAME:
            return Decision(DecisionAction.PROCEED, f"{location} identical, rewriting in place", sameness)
        return Decision(DecisionAction.REPLACE, f"{location} exists, replacing ({sameness.value})", sameness)

    if mode == DuplicateHandling.VERSION:
        if sameness == Sameness.SAME:
            return Decision(DecisionAction.SKIP, f"{location} identical, no new version needed", sameness)
        return Decision(DecisionAction.VERSION, f"{location} exists, staging incoming as a new version", sameness)

    raise ValueError(f"Unknown duplicate handling mode: {mode}")


def version_key(key: str, now: datetime | None = None) -> str:
    """Disambiguated key for a new version: ``<key>.v<UTC timestamp>``."""
    now = now or datetime.now(UTC)
    return f"{key}.v{now.strftime('%Y%m%dT%H%M%S%f')}"

"""
Duplicate detection and resolution for business cards.

A candidate is an exact duplicate when its fingerprint equals a stored
record's fingerprint. Otherwise every stored record is scored field by field
and the best score at or above the similarity threshold is a near match.

Field scores:
- 1.0 when both canonical pairs are identical
- otherwise the mean sequence-match ratio of the primary and secondary sides

The total is a weighted average over the fields both sides actually supply;
a field missing on either side adds nothing to the numerator or the
denominator.
"""

import dataclasses
from collections import Counter
from dataclasses import dataclass
from typing import Any

from loguru import logger

from cardstore import bilingual
from cardstore.config import DedupSettings, settings
from cardstore.errors import ErrorKind, StorageError, ValidationError
from cardstore.fingerprint import display_name, fingerprint, record_fingerprint
from cardstore.store.base import RecordStore
from cardstore.types import (
    BILINGUAL_FIELDS,
    FIELD_ORDER,
    CardFields,
    CardRecord,
    DuplicateClassification,
    DuplicateResolution,
    DuplicateStats,
    MigrationStatus,
    ResolutionAction,
)
from cardstore.utils.text import clean_string, similarity_ratio


@dataclass
class ResolutionOutcome:
    """Result of applying a resolution action."""

    success: bool
    action: ResolutionAction
    record: CardRecord | None = None
    reason: ErrorKind | None = None
    message: str | None = None


def _pair(fields: CardFields, name: str) -> tuple[str, str]:
    value = getattr(fields, name)
    if name in BILINGUAL_FIELDS:
        return bilingual.canonical_pair(value)
    text = clean_string(value)
    return text, text


def merge_fields(existing: CardFields, candidate: CardFields) -> CardFields:
    """Field-level union; candidate wins wherever it supplies a value."""
    merged: dict[str, Any] = {}
    for name in FIELD_ORDER:
        source = candidate if candidate.supplies(name) else existing
        value = getattr(source, name)
        merged[name] = list(value) if name == "greetings" else value
    return CardFields(**merged)


class DuplicateDetector:
    """
    Classifies candidates against stored records and applies the chosen
    resolution to the store.
    """

    def __init__(self, store: RecordStore, dedup_settings: DedupSettings | None = None):
        self.store = store
        self.dedup_settings = dedup_settings or settings.dedup

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def field_similarity(self, name: str, first: CardFields, second: CardFields) -> float | None:
        """Similarity of one field, or None when either side lacks it."""
        if not (first.supplies(name) and second.supplies(name)):
            return None
        a = _pair(first, name)
        b = _pair(second, name)
        if a == b:
            return 1.0
        return (similarity_ratio(a[0], b[0]) + similarity_ratio(a[1], b[1])) / 2

    def score(self, candidate: CardFields, existing: CardFields) -> tuple[float, dict[str, float]]:
        """Weighted similarity in [0, 1] plus the per-field breakdown."""
        numerator = 0.0
        denominator = 0.0
        field_scores: dict[str, float] = {}

        for name, weight in self.dedup_settings.weights.items():
            sim = self.field_similarity(name, candidate, existing)
            if sim is None:
                continue
            field_scores[name] = round(sim, 4)
            numerator += weight * sim
            denominator += weight

        if denominator == 0:
            return 0.0, field_scores
        return numerator / denominator, field_scores

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def _action(self, action, default: str) -> ResolutionAction:
        return ResolutionAction(action) if action else ResolutionAction(default)

    def detect(self, fields, existing_records: list[CardRecord], action=None) -> DuplicateResolution:
        """Classify ``fields`` against ``existing_records``.

        An exact fingerprint match always wins over similarity scoring.
        """
        candidate = CardFields.from_dict(fields)
        token = fingerprint(candidate)

        for record in existing_records:
            if record_fingerprint(record) == token:
                return DuplicateResolution(
                    classification=DuplicateClassification.EXACT,
                    similarity=1.0,
                    action=self._action(action, self.dedup_settings.exact_action),
                    existing_id=record.id,
                    fingerprint=token,
                )

        best: CardRecord | None = None
        best_score = 0.0
        best_fields: dict[str, float] = {}
        for record in existing_records:
            value, field_scores = self.score(candidate, record.fields)
            if value > best_score:
                best, best_score, best_fields = record, value, field_scores

        if best is not None and best_score >= self.dedup_settings.similarity_threshold:
            return DuplicateResolution(
                classification=DuplicateClassification.SIMILAR,
                similarity=round(best_score, 4),
                action=self._action(action, self.dedup_settings.similar_action),
                existing_id=best.id,
                fingerprint=token,
                field_scores=best_fields,
            )

        return DuplicateResolution(
            classification=DuplicateClassification.NONE,
            similarity=round(best_score, 4),
            action=ResolutionAction.NONE,
            fingerprint=token,
        )

    async def detect_in_store(self, fields, action=None) -> DuplicateResolution:
        return self.detect(fields, await self.store.list_all(), action=action)

    def batch_detect(self, fields_list: list, existing_records: list[CardRecord] | None = None) -> list[DuplicateResolution]:
        """
        Classify many candidates in order.

        Each candidate that is not itself a duplicate joins the pool, so later
        candidates are also compared against earlier ones. Matches against an
        earlier candidate report ``existing_id`` as ``candidate:<index>``.
        """
        pool = list(existing_records or [])
        results = []
        for index, fields in enumerate(fields_list):
            candidate = CardFields.from_dict(fields)
            resolution = self.detect(candidate, pool)
            results.append(resolution)
            if not resolution.is_duplicate:
                pool.append(CardRecord(id=f"candidate:{index}", fields=candidate, fingerprint=resolution.fingerprint))
        return results

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self, action, existing: CardRecord, fields) -> ResolutionOutcome:
        """
        Apply ``action`` to ``existing`` using the candidate ``fields``.

        replace and merge commit atomically under the record's lock; a store
        failure leaves the stored record untouched and is reported on the
        outcome. skip never touches the store.
        """
        try:
            action = ResolutionAction(action)
        except ValueError:
            return ResolutionOutcome(
                success=False,
                action=ResolutionAction.NONE,
                record=existing,
                reason=ErrorKind.VALIDATION,
                message=f"Unknown resolution action: {action}",
            )

        if action == ResolutionAction.SKIP:
            return ResolutionOutcome(success=True, action=action, record=existing)
        if action == ResolutionAction.NONE:
            return ResolutionOutcome(
                success=False,
                action=action,
                record=existing,
                reason=ErrorKind.VALIDATION,
                message="No resolution action chosen",
            )

        try:
            candidate = CardFields.from_dict(fields)
        except ValidationError as e:
            return ResolutionOutcome(
                success=False,
                action=action,
                record=existing,
                reason=e.kind,
                message=e.message,
            )
        if action == ResolutionAction.REPLACE:
            new_fields = dataclasses.replace(candidate, greetings=list(candidate.greetings))
        else:
            new_fields = merge_fields(existing.fields, candidate)

        updated = dataclasses.replace(
            existing,
            fields=new_fields,
            fingerprint=fingerprint(new_fields),
            migration_status=MigrationStatus.COMPLETED,
        )

        try:
            async with self.store.record_lock(existing.id):
                async with self.store.transaction() as tx:
                    tx.put(updated)
        except StorageError as e:
            logger.error(f"Could not {action.value} {existing.id}: {e.message}")
            return ResolutionOutcome(
                success=False,
                action=action,
                record=existing,
                reason=ErrorKind.STORAGE,
                message=e.message,
            )

        logger.info(f"{action.value.capitalize()}d duplicate {existing.id} ({display_name(new_fields)})")
        return ResolutionOutcome(success=True, action=action, record=updated)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def duplicate_stats(self) -> DuplicateStats:
        records = await self.store.list_all()
        counts = Counter(record_fingerprint(r) for r in records)
        groups = [c for c in counts.values() if c > 1]
        total_duplicates = sum(c - 1 for c in groups)
        return DuplicateStats(
            total_cards=len(records),
            unique_fingerprints=len(counts),
            duplicate_groups=len(groups),
            total_duplicates=total_duplicates,
            duplicate_rate=round(total_duplicates / len(records) * 100) if records else 0,
        )

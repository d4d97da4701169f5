"""
Accounting Service
==================
Storage statistics derived from catalog entries.

Nothing here is persisted. ``compute_stats`` groups the entries it is given
by content id: every entry counts towards the original total, each
distinct content counts once towards the deduplicated total. All sums are
integer bytes; percentages and ratios are derived from the final integers
only, never accumulated per file.
"""

from dataclasses import dataclass

from django.utils import timezone

from .catalog import all_entries, owner_entries, public_entries, snapshot


@dataclass(frozen=True)
class AggregateStats:
    original_total: int = 0
    deduped_total: int = 0
    entry_count: int = 0
    unique_contents: int = 0

    @property
    def savings(self) -> int:
        return self.original_total - self.deduped_total

    @property
    def duplicate_count(self) -> int:
        return self.entry_count - self.unique_contents

    @property
    def savings_percent(self) -> float:
        if self.original_total == 0:
            return 0.0
        return round(self.savings * 100 / self.original_total, 2)

    @property
    def deduplication_ratio(self) -> float:
        if self.entry_count == 0:
            return 0.0
        return round(self.unique_contents / self.entry_count, 4)

    def as_dict(self) -> dict:
        return {
            'original_total': self.original_total,
            'deduped_total': self.deduped_total,
            'savings': self.savings,
            'entry_count': self.entry_count,
            'unique_contents': self.unique_contents,
            'duplicate_count': self.duplicate_count,
            'savings_percent': self.savings_percent,
            'deduplication_ratio': self.deduplication_ratio,
            'timestamp': timezone.now(),
        }


def compute_stats(entries) -> AggregateStats:
    """
    Aggregate original vs. deduplicated size over ``entries``.

    Entries sharing a content id have the same size by construction, so the
    first one seen stands in for the content. Total over any finite input;
    an empty input gives all zeros.

    Args:
        entries: iterable of objects with ``content_id`` and ``original_size``

    Returns:
        AggregateStats
    """
    original_total = 0
    entry_count = 0
    content_sizes = {}

    for entry in entries:
        original_total += entry.original_size
        entry_count += 1
        content_sizes.setdefault(entry.content_id, entry.original_size)

    return AggregateStats(
        original_total=original_total,
        deduped_total=sum(content_sizes.values()),
        entry_count=entry_count,
        unique_contents=len(content_sizes),
    )


def stats_for_owner(owner) -> AggregateStats:
    return compute_stats(snapshot(owner_entries(owner)))


def stats_for_public() -> AggregateStats:
    return compute_stats(snapshot(public_entries()))


def stats_for_catalog() -> AggregateStats:
    return compute_stats(snapshot(all_entries()))

"""
Snapshot merging.

Folds an incoming snapshot into an existing one, additively: records whose
dedup key already exists in the matching (API key, model) bucket are
counted as skipped, everything else is appended.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set, Tuple

from ..storage.dedup import dedup_key
from ..storage.models import RequestDetail, StatisticsSnapshot

# (api_key, model) -> dedup keys present in that bucket
KeyIndex = Dict[Tuple[str, str], Set[str]]


@dataclass(frozen=True)
class MergeResult:
    """Outcome of a merge."""
    added: int = 0
    skipped: int = 0


def index_keys(snapshot: StatisticsSnapshot) -> KeyIndex:
    """Build the dedup key index of a snapshot."""
    index: KeyIndex = {}
    for api_key, model, detail in snapshot.iter_details():
        index.setdefault((api_key, model), set()).add(dedup_key(api_key, model, detail))
    return index


def merge_snapshot(
    existing: StatisticsSnapshot,
    incoming: StatisticsSnapshot,
    index: Optional[KeyIndex] = None,
    on_added: Optional[Callable[[str, str, RequestDetail], None]] = None
) -> MergeResult:
    """Merge incoming into existing in place.

    Existing entries are never removed or rewritten, so merging the same
    or overlapping snapshots repeatedly leaves the same contents. Counts
    do not depend on iteration order: added is the number of distinct
    records not already present, skipped is everything else.

    Args:
        existing: Snapshot to fold into (mutated)
        incoming: Snapshot to read from (not mutated)
        index: Dedup key index of existing, kept in sync when given;
            built from existing when omitted
        on_added: Called for each detail appended to existing

    Returns:
        MergeResult with added and skipped counts
    """
    if index is None:
        index = index_keys(existing)

    added = 0
    skipped = 0
    for api_key, model, detail in list(incoming.iter_details()):
        known = index.setdefault((api_key, model), set())
        key = dedup_key(api_key, model, detail)
        if key in known:
            skipped += 1
            continue

        known.add(key)
        existing.add(api_key, model, detail)
        added += 1
        if on_added is not None:
            on_added(api_key, model, detail)

    return MergeResult(added=added, skipped=skipped)

"""
In-memory usage statistics.

RequestStatistics is the host-owned aggregate that live events are
recorded into and that persisted history is merged into at startup.
"""

import copy
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from ..config.loader import statistics_enabled
from ..storage.dedup import dedup_key
from ..storage.models import RequestDetail, StatisticsSnapshot
from .events import RequestContext, UsageEvent, build_request_detail
from .merge import KeyIndex, MergeResult, merge_snapshot


@dataclass
class UsageTotals:
    """Running counters for one (API key, model) bucket."""
    requests: int = 0
    failures: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    cached_tokens: int = 0
    total_tokens: int = 0

    def add(self, detail: RequestDetail) -> None:
        self.requests += 1
        if detail.failed:
            self.failures += 1
        self.input_tokens += detail.tokens.input_tokens
        self.output_tokens += detail.tokens.output_tokens
        self.reasoning_tokens += detail.tokens.reasoning_tokens
        self.cached_tokens += detail.tokens.cached_tokens
        self.total_tokens += detail.tokens.total_tokens


class RequestStatistics:
    """Thread-safe aggregate of request details and their totals.

    Details are deduplicated per (API key, model) bucket with the same key
    the store enforces, so a record seen live and again in persisted
    history is counted once.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshot = StatisticsSnapshot()
        self._index: KeyIndex = {}
        self._totals: Dict[str, Dict[str, UsageTotals]] = {}

    def _count(self, api_key: str, model: str, detail: RequestDetail) -> None:
        self._totals.setdefault(api_key, {}).setdefault(model, UsageTotals()).add(detail)

    def add_detail(self, api_key: str, model: str, detail: RequestDetail) -> bool:
        """Add a single detail; returns False if it was already present."""
        key = dedup_key(api_key, model, detail)
        with self._lock:
            known = self._index.setdefault((api_key, model), set())
            if key in known:
                return False
            known.add(key)
            self._snapshot.add(api_key, model, detail)
            self._count(api_key, model, detail)
            return True

    def record(self, ctx: Optional[RequestContext], event: UsageEvent) -> bool:
        """Normalise and add a live usage event."""
        api_key, model, detail = build_request_detail(ctx, event)
        return self.add_detail(api_key, model, detail)

    def merge_snapshot(self, snapshot: StatisticsSnapshot) -> MergeResult:
        """Fold a snapshot in, reporting how many records were new."""
        with self._lock:
            return merge_snapshot(
                self._snapshot,
                snapshot,
                index=self._index,
                on_added=self._count,
            )

    def snapshot(self) -> StatisticsSnapshot:
        """Return a copy of every detail held."""
        with self._lock:
            return copy.deepcopy(self._snapshot)

    def api_totals(self) -> Dict[str, Dict[str, UsageTotals]]:
        """Per API key, per model counters (copied)."""
        with self._lock:
            return copy.deepcopy(self._totals)

    def _sum(self, field_name: str) -> int:
        with self._lock:
            return sum(
                getattr(totals, field_name)
                for models in self._totals.values()
                for totals in models.values()
            )

    @property
    def total_requests(self) -> int:
        return self._sum("requests")

    @property
    def failure_count(self) -> int:
        return self._sum("failures")

    @property
    def success_count(self) -> int:
        with self._lock:
            return sum(
                totals.requests - totals.failures
                for models in self._totals.values()
                for totals in models.values()
            )

    @property
    def total_tokens(self) -> int:
        return self._sum("total_tokens")


class StatisticsPlugin:
    """Usage plugin recording live events into a RequestStatistics."""

    def __init__(self, stats: Optional[RequestStatistics]):
        self.stats = stats

    def handle_usage(self, ctx: Optional[RequestContext], event: UsageEvent) -> None:
        if self.stats is None or not statistics_enabled():
            return
        self.stats.record(ctx, event)

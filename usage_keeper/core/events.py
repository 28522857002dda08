"""
Usage events and the host-side handler capability.

The host emits one UsageEvent per completed request and hands it to every
registered UsagePlugin. Helpers here normalise an event (and the request
state it came from) into the storable RequestDetail.
"""

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Tuple

from ..storage.models import RequestDetail, TokenStats

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"

# Responses at or above this status count as failed requests.
_FAILURE_STATUS = 400


@dataclass(frozen=True)
class UsageEvent:
    """Usage telemetry for one request, as emitted by the host.

    Any field may be empty; normalisation fills in defaults. ``failed`` is
    None when the host did not decide, in which case the request context
    decides.
    """
    requested_at: Optional[datetime] = None
    api_key: str = ""
    model: str = ""
    source: str = ""
    auth_index: str = ""
    provider: str = ""
    failed: Optional[bool] = None
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    cached_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class RequestContext:
    """Request-scoped state of the call that produced an event."""
    method: str = ""
    path: str = ""
    status_code: Optional[int] = None

    def api_identifier(self) -> str:
        """Identify the API by route, e.g. ``"POST /v1/chat/completions"``."""
        if not self.path:
            return ""
        if self.method:
            return f"{self.method} {self.path}"
        return self.path

    def succeeded(self) -> bool:
        """True unless a failing response status was recorded."""
        if not self.status_code:
            return True
        return self.status_code < _FAILURE_STATUS


class UsagePlugin(Protocol):
    """Capability the host invokes once per usage event.

    Implementations must return promptly and must not raise; the host
    neither waits on nor inspects the outcome.
    """

    def handle_usage(self, ctx: Optional[RequestContext], event: UsageEvent) -> None:
        ...


class UsageManager:
    """Host-side registry that fans usage events out to plugins."""

    def __init__(self):
        self._plugins: List[UsagePlugin] = []
        self._lock = threading.Lock()

    def register(self, plugin: UsagePlugin) -> None:
        with self._lock:
            self._plugins.append(plugin)

    @property
    def plugins(self) -> List[UsagePlugin]:
        with self._lock:
            return list(self._plugins)

    def publish(self, event: UsageEvent, ctx: Optional[RequestContext] = None) -> None:
        """Deliver event to every registered plugin.

        An event without a timestamp is stamped once here so every plugin
        derives the same record from it. A failing plugin is logged and
        does not stop delivery to the rest.
        """
        if event.requested_at is None:
            event = replace(event, requested_at=datetime.now(timezone.utc))
        for plugin in self.plugins:
            try:
                plugin.handle_usage(ctx, event)
            except Exception:
                logger.exception(f"Usage plugin {type(plugin).__name__} failed")


def _count(value) -> int:
    return max(0, int(value or 0))


def normalise_tokens(event: UsageEvent) -> TokenStats:
    """Build token stats from an event, defaulting a missing total.

    A zero total falls back to input + output + reasoning, then to that
    plus cached tokens. A supplied non-zero total is kept unchanged.
    """
    input_tokens = _count(event.input_tokens)
    output_tokens = _count(event.output_tokens)
    reasoning_tokens = _count(event.reasoning_tokens)
    cached_tokens = _count(event.cached_tokens)
    total_tokens = _count(event.total_tokens)

    if total_tokens == 0:
        total_tokens = input_tokens + output_tokens + reasoning_tokens
    if total_tokens == 0:
        total_tokens = input_tokens + output_tokens + reasoning_tokens + cached_tokens

    return TokenStats(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        reasoning_tokens=reasoning_tokens,
        cached_tokens=cached_tokens,
        total_tokens=total_tokens,
    )


def resolve_api_key(ctx: Optional[RequestContext], event: UsageEvent) -> str:
    """Pick the API identifier: event key, then request route, then provider."""
    if event.api_key:
        return event.api_key
    if ctx is not None:
        identifier = ctx.api_identifier()
        if identifier:
            return identifier
    if event.provider:
        return event.provider
    return UNKNOWN


def resolve_failed(ctx: Optional[RequestContext], event: UsageEvent) -> bool:
    if event.failed is not None:
        return event.failed
    if ctx is None:
        return False
    return not ctx.succeeded()


def build_request_detail(
    ctx: Optional[RequestContext],
    event: UsageEvent,
    now: Optional[datetime] = None
) -> Tuple[str, str, RequestDetail]:
    """Normalise an event into (api_key, model, detail).

    Args:
        ctx: Request state, if the host supplied any
        event: The usage event
        now: Timestamp used when the event carries none

    Returns:
        Tuple of (api_key, model, detail)
    """
    timestamp = event.requested_at
    if timestamp is None:
        timestamp = now or datetime.now(timezone.utc)

    detail = RequestDetail(
        timestamp=timestamp,
        source=event.source or "",
        auth_index=event.auth_index or "",
        tokens=normalise_tokens(event),
        failed=resolve_failed(ctx, event),
    )
    return resolve_api_key(ctx, event), event.model or UNKNOWN, detail

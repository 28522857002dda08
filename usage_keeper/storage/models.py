"""
Data models for the storage layer.

Defines the storable usage record and the nested snapshot shape
(API key -> model -> ordered details) that the store reads into and
writes out of.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Tuple

from .timestamps import format_timestamp, parse_timestamp, to_utc


@dataclass(frozen=True)
class TokenStats:
    """Token counts for a single request.

    Counters are tracked independently; total is supplied by the producer,
    never recomputed here.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    cached_tokens: int = 0
    total_tokens: int = 0

    def __post_init__(self):
        """Validate that every counter is a non-negative integer."""
        for name in ("input_tokens", "output_tokens", "reasoning_tokens",
                     "cached_tokens", "total_tokens"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer")

    def to_dict(self) -> Dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "reasoning_tokens": self.reasoning_tokens,
            "cached_tokens": self.cached_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class RequestDetail:
    """Immutable, storable record of one usage-relevant request."""
    timestamp: datetime
    source: str = ""
    auth_index: str = ""
    tokens: TokenStats = field(default_factory=TokenStats)
    failed: bool = False
    # Digits of the timestamp below the microsecond, 0-999.
    nanosecond: int = 0

    def __post_init__(self):
        """Normalise the timestamp to aware UTC."""
        object.__setattr__(self, "timestamp", to_utc(self.timestamp))
        if (not isinstance(self.nanosecond, int) or isinstance(self.nanosecond, bool)
                or not 0 <= self.nanosecond < 1000):
            raise ValueError("nanosecond must be an integer in 0..999")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp, self.nanosecond),
            "source": self.source,
            "auth_index": self.auth_index,
            "tokens": self.tokens.to_dict(),
            "failed": self.failed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RequestDetail":
        """Build a detail from its interchange form.

        Raises:
            ValueError: If the entry is malformed
        """
        if not isinstance(data, dict):
            raise ValueError("request detail must be an object")
        if "timestamp" not in data:
            raise ValueError("request detail is missing 'timestamp'")

        tokens_data = data.get("tokens") or {}
        if not isinstance(tokens_data, dict):
            raise ValueError("'tokens' must be an object")

        timestamp, nanosecond = parse_timestamp(str(data["timestamp"]))
        return cls(
            timestamp=timestamp,
            source=str(data.get("source") or ""),
            auth_index=str(data.get("auth_index") or ""),
            tokens=TokenStats(**{
                name: int(tokens_data.get(name) or 0)
                for name in ("input_tokens", "output_tokens", "reasoning_tokens",
                             "cached_tokens", "total_tokens")
            }),
            failed=bool(data.get("failed", False)),
            nanosecond=nanosecond,
        )


@dataclass
class ModelSnapshot:
    """Ordered request details for one model."""
    details: List[RequestDetail] = field(default_factory=list)


@dataclass
class APISnapshot:
    """Per-model snapshots for one API key."""
    models: Dict[str, ModelSnapshot] = field(default_factory=dict)


@dataclass
class StatisticsSnapshot:
    """Point-in-time usage history keyed by API key, then model name."""
    apis: Dict[str, APISnapshot] = field(default_factory=dict)

    def add(self, api_key: str, model: str, detail: RequestDetail) -> None:
        """Append a detail to the bucket for (api_key, model)."""
        api = self.apis.setdefault(api_key, APISnapshot())
        bucket = api.models.setdefault(model, ModelSnapshot())
        bucket.details.append(detail)

    def iter_details(self) -> Iterator[Tuple[str, str, RequestDetail]]:
        """Yield every (api_key, model, detail) triple."""
        for api_key, api in self.apis.items():
            for model, bucket in api.models.items():
                for detail in bucket.details:
                    yield api_key, model, detail

    def __len__(self) -> int:
        return sum(
            len(bucket.details)
            for api in self.apis.values()
            for bucket in api.models.values()
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apis": {
                api_key: {
                    "models": {
                        model: {"details": [detail.to_dict() for detail in bucket.details]}
                        for model, bucket in api.models.items()
                    }
                }
                for api_key, api in self.apis.items()
            }
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatisticsSnapshot":
        """Build a snapshot from its interchange form.

        Raises:
            ValueError: If the structure or any detail is malformed
        """
        if not isinstance(data, dict):
            raise ValueError("snapshot must be an object")

        apis = data.get("apis") or {}
        if not isinstance(apis, dict):
            raise ValueError("'apis' must be an object")

        snapshot = cls()
        for api_key, api_data in apis.items():
            if not isinstance(api_data, dict):
                raise ValueError(f"API '{api_key}' must be an object")
            models = api_data.get("models") or {}
            if not isinstance(models, dict):
                raise ValueError(f"'models' for API '{api_key}' must be an object")
            for model, model_data in models.items():
                if not isinstance(model_data, dict):
                    raise ValueError(f"model '{model}' under API '{api_key}' must be an object")
                details = model_data.get("details") or []
                if not isinstance(details, list):
                    raise ValueError(f"'details' for model '{model}' must be a list")
                for entry in details:
                    snapshot.add(api_key, model, RequestDetail.from_dict(entry))
        return snapshot

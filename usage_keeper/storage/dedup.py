"""
Deduplication keys for usage records.

The key is a canonical pipe-delimited string over every semantic field of
a record, so re-delivering the same logical event always yields the same
key while events that differ in any field (including timestamp) do not.
"""

from typing import TYPE_CHECKING

from .timestamps import format_timestamp

if TYPE_CHECKING:
    from .models import RequestDetail


def dedup_key(api_key: str, model: str, detail: "RequestDetail") -> str:
    """Derive the stable identity of a usage record.

    Args:
        api_key: API key identifier the record is filed under
        model: Model name the record is filed under
        detail: The request detail

    Returns:
        Deterministic key, enforced unique by the storage layer
    """
    tokens = detail.tokens
    return "|".join((
        api_key,
        model,
        format_timestamp(detail.timestamp, detail.nanosecond),
        detail.source,
        detail.auth_index,
        "true" if detail.failed else "false",
        str(tokens.input_tokens),
        str(tokens.output_tokens),
        str(tokens.reasoning_tokens),
        str(tokens.cached_tokens),
        str(tokens.total_tokens),
    ))

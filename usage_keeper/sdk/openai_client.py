"""
Recording OpenAI client wrapper.

Publishes a usage event for every chat completion without modifying
behavior.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from openai import OpenAI, OpenAIError

from ..core.events import UsageEvent, UsageManager

PROVIDER = "openai"


def _detail_count(details: Any, name: str) -> int:
    value = getattr(details, name, None) if details is not None else None
    return value if isinstance(value, int) and value > 0 else 0


class RecordingOpenAI:
    """OpenAI client wrapper that publishes usage events.

    Successful calls publish their token usage; calls that raise an
    OpenAI error publish a failed event with zero tokens and re-raise.
    """

    def __init__(
        self,
        model: str,
        manager: UsageManager,
        api_key_label: str = "",
        source: str = PROVIDER,
        auth_index: str = "",
        client: Optional[OpenAI] = None
    ):
        """Initialize recording OpenAI client.

        Args:
            model: OpenAI model name (required)
            manager: Usage manager events are published to (required)
            api_key_label: Identifier the usage is filed under
            source: Source tag recorded with each event
            auth_index: Credential index recorded with each event
            client: Preconfigured OpenAI client (defaults to ``OpenAI()``)

        Raises:
            ValueError: If model or manager is missing
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if manager is None:
            raise ValueError("manager is required")

        self.model = model
        self.manager = manager
        self.api_key_label = api_key_label
        self.source = source
        self.auth_index = auth_index
        self.client = client if client is not None else OpenAI()

    def _event(self, requested_at: datetime, failed: bool, usage: Any = None) -> UsageEvent:
        if usage is None:
            return UsageEvent(
                requested_at=requested_at,
                api_key=self.api_key_label,
                model=self.model,
                source=self.source,
                auth_index=self.auth_index,
                provider=PROVIDER,
                failed=failed,
            )

        return UsageEvent(
            requested_at=requested_at,
            api_key=self.api_key_label,
            model=self.model,
            source=self.source,
            auth_index=self.auth_index,
            provider=PROVIDER,
            failed=failed,
            input_tokens=usage.prompt_tokens,
            output_tokens=usage.completion_tokens,
            reasoning_tokens=_detail_count(
                getattr(usage, "completion_tokens_details", None), "reasoning_tokens"
            ),
            cached_tokens=_detail_count(
                getattr(usage, "prompt_tokens_details", None), "cached_tokens"
            ),
            total_tokens=usage.total_tokens,
        )

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> Any:
        """Create chat completion and publish its usage.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response, unchanged

        Raises:
            ValueError: If messages is empty or the response has no usage
            OpenAIError: Propagated after a failed event is published
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        requested_at = datetime.now(timezone.utc)
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                **kwargs
            )
        except OpenAIError:
            self.manager.publish(self._event(requested_at, failed=True))
            raise

        usage = response.usage
        if not usage:
            raise ValueError("OpenAI response missing usage information")

        self.manager.publish(self._event(requested_at, failed=False, usage=usage))
        return response

"""
Unit tests for SDK layer.

Tests OpenAI client wrapper behavior and usage event publishing.
"""

import os
import shutil
import tempfile
from unittest.mock import Mock, patch

import pytest
from openai import OpenAIError

from usage_keeper.core.events import UsageManager
from usage_keeper.sdk import RecordingOpenAI, SQLitePlugin
from usage_keeper.storage.repository import SQLiteStore


class CollectingPlugin:
    """Usage plugin that keeps every event it receives."""

    def __init__(self):
        self.events = []

    def handle_usage(self, ctx, event):
        self.events.append(event)


def _response(prompt_tokens=100, completion_tokens=50, total_tokens=150):
    mock_response = Mock()
    mock_response.usage.prompt_tokens = prompt_tokens
    mock_response.usage.completion_tokens = completion_tokens
    mock_response.usage.total_tokens = total_tokens
    return mock_response


class TestRecordingOpenAI:
    """Test RecordingOpenAI client wrapper."""

    def setup_method(self):
        """Set up test environment."""
        self.manager = UsageManager()
        self.collector = CollectingPlugin()
        self.manager.register(self.collector)

    @patch('usage_keeper.sdk.openai_client.OpenAI')
    def test_init_success(self, mock_openai_class):
        """Test successful initialization."""
        mock_openai_class.return_value = Mock()

        client = RecordingOpenAI(model="gpt-4o", manager=self.manager, api_key_label="team-a")

        assert client.model == "gpt-4o"
        assert client.manager is self.manager
        assert client.api_key_label == "team-a"
        assert client.source == "openai"
        assert client.client is mock_openai_class.return_value

    def test_init_with_client(self):
        """A supplied client is used as is."""
        openai_client = Mock()
        client = RecordingOpenAI(model="gpt-4o", manager=self.manager, client=openai_client)
        assert client.client is openai_client

    def test_init_missing_model(self):
        """Test initialization fails with missing model."""
        with pytest.raises(ValueError, match="model is required"):
            RecordingOpenAI(model="", manager=self.manager, client=Mock())

        with pytest.raises(ValueError, match="model is required"):
            RecordingOpenAI(model=None, manager=self.manager, client=Mock())

    def test_init_missing_manager(self):
        """Test initialization fails with missing manager."""
        with pytest.raises(ValueError, match="manager is required"):
            RecordingOpenAI(model="gpt-4o", manager=None, client=Mock())

    def test_chat_success_publishes_event(self):
        """Test successful chat call publishes its usage."""
        mock_response = _response()
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = mock_response

        client = RecordingOpenAI(
            model="gpt-4o",
            manager=self.manager,
            api_key_label="team-a",
            auth_index="1",
            client=mock_client
        )
        messages = [{"role": "user", "content": "Hello"}]
        response = client.chat(messages=messages)

        mock_client.chat.completions.create.assert_called_once_with(
            model="gpt-4o",
            messages=messages,
            temperature=None,
            max_tokens=None
        )
        assert response == mock_response

        assert len(self.collector.events) == 1
        event = self.collector.events[0]
        assert event.api_key == "team-a"
        assert event.model == "gpt-4o"
        assert event.auth_index == "1"
        assert event.provider == "openai"
        assert event.failed is False
        assert event.input_tokens == 100
        assert event.output_tokens == 50
        assert event.total_tokens == 150
        assert event.reasoning_tokens == 0
        assert event.cached_tokens == 0
        assert event.requested_at is not None

    def test_chat_reads_token_details(self):
        """Reasoning and cached tokens are taken from the usage details."""
        mock_response = _response()
        mock_response.usage.completion_tokens_details.reasoning_tokens = 20
        mock_response.usage.prompt_tokens_details.cached_tokens = 30
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = mock_response

        RecordingOpenAI(model="o1", manager=self.manager, client=mock_client).chat(
            messages=[{"role": "user", "content": "Think"}]
        )

        event = self.collector.events[0]
        assert event.reasoning_tokens == 20
        assert event.cached_tokens == 30

    def test_chat_with_additional_kwargs(self):
        """Test chat call passes through optional parameters and kwargs."""
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = _response()

        client = RecordingOpenAI(model="gpt-4o", manager=self.manager, client=mock_client)
        messages = [{"role": "user", "content": "Hello"}]
        client.chat(messages=messages, temperature=0.5, max_tokens=100, stop=["\n"])

        mock_client.chat.completions.create.assert_called_once_with(
            model="gpt-4o",
            messages=messages,
            temperature=0.5,
            max_tokens=100,
            stop=["\n"]
        )
        assert len(self.collector.events) == 1

    def test_chat_openai_failure_publishes_failed_event(self):
        """Test OpenAI API failure publishes a failed event and re-raises."""
        mock_client = Mock()
        mock_client.chat.completions.create.side_effect = OpenAIError("API Error")

        client = RecordingOpenAI(model="gpt-4o", manager=self.manager, client=mock_client)

        with pytest.raises(OpenAIError, match="API Error"):
            client.chat(messages=[{"role": "user", "content": "Hello"}])

        assert len(self.collector.events) == 1
        event = self.collector.events[0]
        assert event.failed is True
        assert event.total_tokens == 0

    def test_chat_other_exception_not_published(self):
        """Non-OpenAI errors propagate without an event."""
        mock_client = Mock()
        mock_client.chat.completions.create.side_effect = RuntimeError("boom")

        client = RecordingOpenAI(model="gpt-4o", manager=self.manager, client=mock_client)

        with pytest.raises(RuntimeError):
            client.chat(messages=[{"role": "user", "content": "Hello"}])
        assert self.collector.events == []

    def test_chat_missing_usage_raises_error(self):
        """Test response without usage information raises error."""
        mock_response = Mock()
        mock_response.usage = None
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = mock_response

        client = RecordingOpenAI(model="gpt-4o", manager=self.manager, client=mock_client)

        with pytest.raises(ValueError, match="usage information"):
            client.chat(messages=[{"role": "user", "content": "Hello"}])
        assert self.collector.events == []

    def test_chat_empty_messages_raises_error(self):
        """Test empty messages raises error."""
        client = RecordingOpenAI(model="gpt-4o", manager=self.manager, client=Mock())

        with pytest.raises(ValueError, match="messages is required"):
            client.chat(messages=[])

        with pytest.raises(ValueError, match="messages is required"):
            client.chat(messages=None)


class TestRecordingToSQLite:
    """Test end-to-end recording into the usage database."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.store = SQLiteStore.open(os.path.join(self.temp_dir, "usage.db"))
        self.store.ensure_schema()

    def teardown_method(self):
        """Clean up test environment."""
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_exactly_one_record_per_call(self):
        """Test exactly one record is persisted per call."""
        manager = UsageManager()
        plugin = SQLitePlugin(self.store)
        manager.register(plugin)

        mock_client = Mock()
        mock_client.chat.completions.create.side_effect = [
            _response(10, 5, 15),
            _response(20, 5, 25),
            OpenAIError("rate limited"),
        ]
        client = RecordingOpenAI(
            model="gpt-4o",
            manager=manager,
            api_key_label="team-a",
            client=mock_client
        )

        messages = [{"role": "user", "content": "Hello"}]
        client.chat(messages=messages)
        client.chat(messages=messages)
        with pytest.raises(OpenAIError):
            client.chat(messages=messages)
        plugin.shutdown(wait=True)

        details = self.store.load_all().apis["team-a"].models["gpt-4o"].details
        assert len(details) == 3
        assert sorted(d.tokens.total_tokens for d in details) == [0, 15, 25]
        assert [d.failed for d in details].count(True) == 1

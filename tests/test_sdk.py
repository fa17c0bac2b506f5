"""
Unit tests for SDK layer.

Tests OpenAI client wrapper enforcement and usage recording.
"""

import asyncio
import os
import tempfile
from unittest.mock import AsyncMock, Mock, patch

import pytest

from spend_governor.config.loader import GovernorConfig
from spend_governor.core.status import BudgetExceeded
from spend_governor.governor import CostGovernor
from spend_governor.sdk.openai_client import GovernedOpenAI
from spend_governor.storage.models import ALL_SERVICES, OperationKind
from spend_governor.storage.repository import fetch_recent_usage_events


def chat_response(response_id="chat_123", prompt_tokens=100, completion_tokens=50, cached_tokens=None):
    response = Mock()
    response.id = response_id
    response.usage.prompt_tokens = prompt_tokens
    response.usage.completion_tokens = completion_tokens
    response.usage.total_tokens = prompt_tokens + completion_tokens
    response.usage.prompt_tokens_details.cached_tokens = cached_tokens
    return response


class TestGovernedOpenAI:
    """Test GovernedOpenAI client wrapper."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.governor = CostGovernor.from_config(GovernorConfig(db_path=self.db_path), channels=[])

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _client(self, mock_openai_class, model="gpt-4", response=None, error=None) -> GovernedOpenAI:
        mock_client = Mock()
        mock_client.chat.completions.create = AsyncMock(return_value=response, side_effect=error)
        mock_client.embeddings.create = AsyncMock(return_value=response, side_effect=error)
        mock_openai_class.return_value = mock_client
        return GovernedOpenAI(self.governor, principal="alice", model=model)

    @patch('spend_governor.sdk.openai_client.AsyncOpenAI')
    def test_init_success(self, mock_openai_class):
        """Test successful initialization."""
        client = self._client(mock_openai_class)

        assert client.model == "gpt-4"
        assert client.principal == "alice"
        assert client.client is mock_openai_class.return_value

    def test_init_with_existing_client(self):
        existing = Mock()
        client = GovernedOpenAI(self.governor, principal="alice", model="gpt-4", client=existing)
        assert client.client is existing

    def test_init_missing_model(self):
        """Test initialization fails with missing model."""
        with pytest.raises(ValueError, match="model is required"):
            GovernedOpenAI(self.governor, principal="alice", model="", client=Mock())

        with pytest.raises(ValueError, match="model is required"):
            GovernedOpenAI(self.governor, principal="alice", model=None, client=Mock())

    def test_init_missing_principal(self):
        """Test initialization fails with missing principal."""
        with pytest.raises(ValueError, match="principal is required"):
            GovernedOpenAI(self.governor, principal="  ", model="gpt-4", client=Mock())

    @patch('spend_governor.sdk.openai_client.AsyncOpenAI')
    def test_chat_success_records_event(self, mock_openai_class):
        """Test successful chat call records usage event."""
        response = chat_response()
        client = self._client(mock_openai_class, response=response)

        messages = [{"role": "user", "content": "Hello"}]
        result = asyncio.run(client.chat(messages=messages))

        client.client.chat.completions.create.assert_awaited_once_with(
            model="gpt-4", messages=messages
        )
        assert result is response

        events = fetch_recent_usage_events(db_path=self.db_path)
        assert len(events) == 1
        event = events[0]
        assert event.principal == "alice"
        assert event.provider == "openai"
        assert event.endpoint == "chat"
        assert event.input_units == 100
        assert event.output_units == 50
        assert event.metadata["request_id"] == "chat_123"
        # GPT-4: 100 * 30/1M + 50 * 60/1M
        assert event.cost == pytest.approx(0.006)

    @patch('spend_governor.sdk.openai_client.AsyncOpenAI')
    def test_chat_with_optional_parameters(self, mock_openai_class):
        """Test chat call passes parameters through."""
        client = self._client(mock_openai_class, model="gpt-4o", response=chat_response(cached_tokens=100))

        messages = [{"role": "user", "content": "Hello"}]
        asyncio.run(client.chat(messages=messages, temperature=0.7, max_tokens=1000, endpoint="summaries"))

        client.client.chat.completions.create.assert_awaited_once_with(
            model="gpt-4o", messages=messages, temperature=0.7, max_tokens=1000
        )
        event = fetch_recent_usage_events(db_path=self.db_path)[0]
        assert event.endpoint == "summaries"
        # all 100 input tokens cached at 1.25/1M, 50 output at 10/1M
        assert event.cost == pytest.approx(0.000625)

    @patch('spend_governor.sdk.openai_client.AsyncOpenAI')
    def test_chat_openai_failure_records_error_event(self, mock_openai_class):
        """Test OpenAI API failure is recorded and re-raised."""
        client = self._client(mock_openai_class, error=RuntimeError("API Error"))

        with pytest.raises(RuntimeError, match="API Error"):
            asyncio.run(client.chat(messages=[{"role": "user", "content": "Hello"}]))

        events = fetch_recent_usage_events(db_path=self.db_path)
        assert len(events) == 1
        assert events[0].error is True
        assert events[0].output_units == 0

    @patch('spend_governor.sdk.openai_client.AsyncOpenAI')
    def test_chat_missing_usage_records_estimate(self, mock_openai_class):
        """Test response without usage information falls back to the estimate."""
        response = Mock()
        response.usage = None
        client = self._client(mock_openai_class, response=response)

        result = asyncio.run(client.chat(messages=[{"role": "user", "content": "Hello"}], max_tokens=20))

        assert result is response
        event = fetch_recent_usage_events(db_path=self.db_path)[0]
        assert event.input_units == 2
        assert event.output_units == 20
        assert event.metadata["estimated"] is True

    @patch('spend_governor.sdk.openai_client.AsyncOpenAI')
    def test_chat_blocked_when_paused(self, mock_openai_class):
        """Test a paused principal never reaches OpenAI."""
        client = self._client(mock_openai_class, response=chat_response())
        asyncio.run(self.governor.pause_service("alice", ALL_SERVICES, "runaway loop"))

        with pytest.raises(BudgetExceeded, match="runaway loop"):
            asyncio.run(client.chat(messages=[{"role": "user", "content": "Hello"}]))

        client.client.chat.completions.create.assert_not_awaited()
        assert fetch_recent_usage_events(db_path=self.db_path) == []

    @patch('spend_governor.sdk.openai_client.AsyncOpenAI')
    def test_chat_empty_messages_raises_error(self, mock_openai_class):
        """Test empty messages raises error."""
        client = self._client(mock_openai_class)

        with pytest.raises(ValueError, match="messages is required"):
            asyncio.run(client.chat(messages=[]))

    @patch('spend_governor.sdk.openai_client.AsyncOpenAI')
    def test_embed_records_embedding_event(self, mock_openai_class):
        response = Mock()
        response.usage.prompt_tokens = 1000
        client = self._client(mock_openai_class, response=response)

        asyncio.run(client.embed(["first text", "second text"], model="text-embedding-3-small"))

        client.client.embeddings.create.assert_awaited_once_with(
            model="text-embedding-3-small", input=["first text", "second text"]
        )
        event = fetch_recent_usage_events(db_path=self.db_path)[0]
        assert event.operation_kind == OperationKind.EMBEDDING
        assert event.endpoint == "embeddings"
        assert event.input_units == 1000
        assert event.cost == pytest.approx(0.00002)

    @patch('spend_governor.sdk.openai_client.AsyncOpenAI')
    def test_embed_empty_input_raises_error(self, mock_openai_class):
        client = self._client(mock_openai_class)

        with pytest.raises(ValueError, match="input is required"):
            asyncio.run(client.embed([]))

    @patch('spend_governor.sdk.openai_client.AsyncOpenAI')
    def test_transcribe_bills_reported_duration(self, mock_openai_class):
        """Test transcription is priced by the duration OpenAI reports."""
        response = Mock()
        response.duration = 600.0
        response.text = "hello there"
        mock_client = Mock()
        mock_client.audio.transcriptions.create = AsyncMock(return_value=response)
        mock_openai_class.return_value = mock_client
        client = GovernedOpenAI(self.governor, principal="alice", model="gpt-4")

        audio = object()
        result = asyncio.run(client.transcribe(audio, language="en"))

        assert result is response
        mock_client.audio.transcriptions.create.assert_awaited_once_with(
            model="whisper-1", file=audio, language="en"
        )
        event = fetch_recent_usage_events(db_path=self.db_path)[0]
        assert event.operation_kind == OperationKind.TRANSCRIPTION
        assert event.endpoint == "audio"
        assert event.model == "whisper-1"
        assert event.metadata["audio_duration_seconds"] == 600.0
        assert event.metadata["transcript_length"] == 11
        # 10 minutes at $0.36/hour
        assert event.cost == pytest.approx(0.06)

    @patch('spend_governor.sdk.openai_client.AsyncOpenAI')
    def test_transcribe_without_duration_uses_estimate(self, mock_openai_class):
        response = Mock(spec=["text"])
        response.text = "hi"
        mock_client = Mock()
        mock_client.audio.transcriptions.create = AsyncMock(return_value=response)
        mock_openai_class.return_value = mock_client
        client = GovernedOpenAI(self.governor, principal="alice", model="gpt-4")

        asyncio.run(client.transcribe(object(), duration_seconds=3600))

        event = fetch_recent_usage_events(db_path=self.db_path)[0]
        assert event.metadata["audio_duration_seconds"] == 3600
        assert event.cost == pytest.approx(0.36)

    @patch('spend_governor.sdk.openai_client.AsyncOpenAI')
    def test_speech_bills_input_characters(self, mock_openai_class):
        """Test speech synthesis is priced per input character."""
        mock_client = Mock()
        mock_client.audio.speech.create = AsyncMock(return_value=b"audio-bytes")
        mock_openai_class.return_value = mock_client
        client = GovernedOpenAI(self.governor, principal="alice", model="gpt-4")

        text = "x" * 1000
        result = asyncio.run(client.speech(text, voice="nova"))

        assert result == b"audio-bytes"
        mock_client.audio.speech.create.assert_awaited_once_with(
            model="tts-1", voice="nova", input=text
        )
        event = fetch_recent_usage_events(db_path=self.db_path)[0]
        assert event.operation_kind == OperationKind.TTS
        assert event.endpoint == "speech"
        assert event.input_units == 1000
        assert event.metadata["input_characters"] == 1000
        # 1000 characters at $15 per million
        assert event.cost == pytest.approx(0.015)

    @patch('spend_governor.sdk.openai_client.AsyncOpenAI')
    def test_speech_empty_input_raises_error(self, mock_openai_class):
        client = self._client(mock_openai_class)

        with pytest.raises(ValueError, match="input is required"):
            asyncio.run(client.speech(""))

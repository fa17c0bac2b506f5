"""
Governed OpenAI client wrapper.

Runs OpenAI calls through the enforcement gateway: budget checks before the
call, one usage event after it, response returned unchanged.
"""

from typing import Any, Dict, List, Optional, Union

from openai import AsyncOpenAI

from ..core.gateway import MeasuredUsage, MeteredRequest
from ..core.pricing import UsageExtra
from ..core.token_counter import estimate_message_units, estimate_units
from ..storage.models import OperationKind

PROVIDER = "openai"

# Assumed length of an audio file whose duration the caller does not know
DEFAULT_AUDIO_SECONDS = 60.0


def _measure_chat(response: Any) -> MeasuredUsage:
    usage = response.usage
    if not usage:
        raise ValueError("OpenAI response missing usage information")

    details = getattr(usage, "prompt_tokens_details", None)
    cached = getattr(details, "cached_tokens", None)
    if not isinstance(cached, int):
        cached = 0

    return MeasuredUsage(
        input_units=usage.prompt_tokens,
        output_units=usage.completion_tokens,
        extra=UsageExtra(cached_units=cached) if cached else None,
        metadata={"request_id": response.id},
    )


def _measure_embedding(response: Any) -> MeasuredUsage:
    usage = response.usage
    if not usage:
        raise ValueError("OpenAI response missing usage information")
    return MeasuredUsage(input_units=usage.prompt_tokens, output_units=0)


def _transcription_measure(estimated_seconds: float):
    """Billing follows audio duration; verbose responses report it, others keep the estimate."""
    def measure(response: Any) -> MeasuredUsage:
        duration = getattr(response, "duration", None)
        if isinstance(duration, bool) or not isinstance(duration, (int, float)):
            duration = estimated_seconds
        metadata: Dict[str, Any] = {"audio_duration_seconds": duration}
        text = getattr(response, "text", None)
        if isinstance(text, str):
            metadata["transcript_length"] = len(text)
        return MeasuredUsage(
            input_units=0,
            output_units=0,
            extra=UsageExtra(duration_seconds=float(duration)),
            metadata=metadata,
        )
    return measure


class GovernedOpenAI:
    """OpenAI client wrapper enforcing budgets for one principal.

    Blocked calls raise BudgetExceeded (or a subclass) before anything is
    sent to OpenAI. API errors propagate unchanged after the attempt has
    been recorded.
    """

    def __init__(
        self,
        governor,
        principal: str,
        model: str,
        client: Optional[AsyncOpenAI] = None,
    ):
        """Initialize governed OpenAI client.

        Args:
            governor: CostGovernor the calls are metered through
            principal: Principal the spend is attributed to (required)
            model: OpenAI model name (required)
            client: Preconfigured AsyncOpenAI client (defaults to a new one)

        Raises:
            ValueError: If model or principal is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not principal or not principal.strip():
            raise ValueError("principal is required and cannot be empty")

        self.governor = governor
        self.principal = principal
        self.model = model
        self.client = client or AsyncOpenAI()

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        max_tokens: Optional[int] = None,
        endpoint: str = "chat",
        **kwargs: Any
    ) -> Any:
        """Create a chat completion under budget enforcement.

        Args:
            messages: List of message dictionaries (required)
            max_tokens: Maximum tokens to generate; also the output estimate
            endpoint: Endpoint tag for attribution and pause checks
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response

        Raises:
            ValueError: If messages is empty
            BudgetExceeded: If the call is blocked
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        request = MeteredRequest(
            principal=self.principal,
            provider=PROVIDER,
            model=self.model,
            operation_kind=OperationKind.COMPLETION,
            endpoint=endpoint,
            input_units=estimate_message_units(messages),
            expected_output_units=max_tokens or 0,
        )
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens

        async def dispatch():
            return await self.client.chat.completions.create(
                model=self.model, messages=messages, **kwargs
            )

        return await self.governor.call(request, dispatch, _measure_chat)

    async def embed(
        self,
        input: Union[str, List[str]],
        model: Optional[str] = None,
        endpoint: str = "embeddings",
        **kwargs: Any
    ) -> Any:
        """Create embeddings under budget enforcement."""
        texts = [input] if isinstance(input, str) else list(input)
        if not texts:
            raise ValueError("input is required and cannot be empty")

        model = model or self.model
        request = MeteredRequest(
            principal=self.principal,
            provider=PROVIDER,
            model=model,
            operation_kind=OperationKind.EMBEDDING,
            endpoint=endpoint,
            input_units=sum(estimate_units(text) for text in texts),
        )

        async def dispatch():
            return await self.client.embeddings.create(model=model, input=input, **kwargs)

        return await self.governor.call(request, dispatch, _measure_embedding)

    async def transcribe(
        self,
        file: Any,
        model: str = "whisper-1",
        duration_seconds: Optional[float] = None,
        endpoint: str = "audio",
        **kwargs: Any
    ) -> Any:
        """Transcribe audio under budget enforcement.

        Args:
            file: Audio file handed to OpenAI unchanged
            model: Transcription model
            duration_seconds: Known audio length, used for the pre-flight
                estimate (defaults to DEFAULT_AUDIO_SECONDS)
            endpoint: Endpoint tag for attribution and pause checks
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI transcription response
        """
        estimated_seconds = DEFAULT_AUDIO_SECONDS if duration_seconds is None else duration_seconds
        request = MeteredRequest(
            principal=self.principal,
            provider=PROVIDER,
            model=model,
            operation_kind=OperationKind.TRANSCRIPTION,
            endpoint=endpoint,
            input_units=0,
            extra=UsageExtra(duration_seconds=estimated_seconds),
        )

        async def dispatch():
            return await self.client.audio.transcriptions.create(model=model, file=file, **kwargs)

        return await self.governor.call(request, dispatch, _transcription_measure(estimated_seconds))

    async def speech(
        self,
        input: str,
        voice: str = "alloy",
        model: str = "tts-1",
        endpoint: str = "speech",
        **kwargs: Any
    ) -> Any:
        """Synthesize speech under budget enforcement; billed per input character."""
        if not input:
            raise ValueError("input is required and cannot be empty")

        characters = len(input)
        request = MeteredRequest(
            principal=self.principal,
            provider=PROVIDER,
            model=model,
            operation_kind=OperationKind.TTS,
            endpoint=endpoint,
            input_units=characters,
        )

        async def dispatch():
            return await self.client.audio.speech.create(model=model, voice=voice, input=input, **kwargs)

        def measure(response: Any) -> MeasuredUsage:
            return MeasuredUsage(
                input_units=characters,
                output_units=0,
                metadata={"input_characters": characters},
            )

        return await self.governor.call(request, dispatch, measure)

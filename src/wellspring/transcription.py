"""Speech-to-text stage for voice knowledge sources."""

from __future__ import annotations

import logging
from typing import Protocol

import openai
from openai import AsyncOpenAI

from .config import Settings
from .errors import TranscriptionError
from .models import AudioPayload

logger = logging.getLogger(__name__)


class Transcriber(Protocol):
    async def transcribe(self, audio: AudioPayload) -> str:  # pragma: no cover - protocol
        ...


class WhisperTranscriber:
    """Transcribe audio through an OpenAI-compatible ``audio/transcriptions`` endpoint."""

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str = "whisper-1",
        base_url: str | None = None,
        timeout: float = 120.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = model
        # Retries are owned by the ingestion manager, not the SDK.
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "WhisperTranscriber":
        api_key = settings.openai_api_key
        if not api_key and not settings.transcription_base_url:
            msg = "OPENAI_API_KEY or TRANSCRIPTION_BASE_URL must be set to transcribe voice sources."
            raise ValueError(msg)
        return cls(
            api_key=api_key or "EMPTY",
            model=settings.transcription_model,
            base_url=settings.transcription_base_url,
            timeout=settings.transcription_timeout,
        )

    async def transcribe(self, audio: AudioPayload) -> str:
        if not audio.data:
            raise TranscriptionError("Voice recording is empty", transient=False)
        upload = (audio.filename, audio.data, audio.content_type or "application/octet-stream")
        try:
            result = await self._client.audio.transcriptions.create(model=self._model, file=upload)
        except (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError) as exc:
            raise TranscriptionError(f"Transcription service unavailable: {exc}") from exc
        except openai.APIStatusError as exc:
            transient = exc.status_code >= 500
            raise TranscriptionError(
                f"Transcription failed (status {exc.status_code}): {exc.message}",
                transient=transient,
            ) from exc
        except openai.OpenAIError as exc:
            raise TranscriptionError(f"Transcription failed: {exc}") from exc

        text = result if isinstance(result, str) else getattr(result, "text", "")
        text = (text or "").strip()
        if not text:
            raise TranscriptionError("Transcription returned no speech", transient=False)
        logger.info("transcription.completed model=%s bytes=%s chars=%s", self._model, len(audio.data), len(text))
        return text

    async def aclose(self) -> None:
        await self._client.close()


class DisabledTranscriber:
    """Placeholder used when no speech-to-text backend is configured."""

    async def transcribe(self, audio: AudioPayload) -> str:
        raise TranscriptionError("Voice transcription is not configured", transient=False)


def build_transcriber(settings: Settings) -> Transcriber:
    try:
        return WhisperTranscriber.from_settings(settings)
    except ValueError as exc:
        logger.warning("transcription.disabled reason=%s", exc)
        return DisabledTranscriber()


__all__ = ["Transcriber", "WhisperTranscriber", "DisabledTranscriber", "build_transcriber"]

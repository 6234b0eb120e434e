"""Speech-to-text and intent analysis for customer recordings.

- transcribe(): download the recording, send it to OpenAI Whisper
- analyze(): ask the chat model for a JSON intent; fall back to the
  keyword grammar when the reply is not valid JSON

Results are tagged variants and are memoised in the result cache
(24 h for successes, 1 h for permanent errors). Transient failures are
not cached so a retried job reaches the provider again. Neither
operation raises.
"""

import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import ClassVar

import httpx

from app.core.config import settings
from app.core.errors import is_retryable_http_error
from app.schemas.intent import Intent
from app.services.cache import ResultCache, transcription_key, analysis_key, SUCCESS_TTL, ERROR_TTL
from app.services.intent_parser import parse_fallback_intent

logger = logging.getLogger(__name__)

AI_UNAVAILABLE = "AI service not available"

ANALYSIS_SYSTEM_PROMPT = (
    "You are an AI assistant that analyzes customer delivery instructions. "
    "Always respond with valid JSON."
)

ANALYSIS_PROMPT = """
Analyze this customer delivery instruction transcription and extract key information:

Transcription: "{transcription}"

Please provide:
1. Sentiment analysis (positive, negative, neutral)
2. Key instructions or requirements
3. Any time-sensitive requests (urgent, specific time windows)
4. Special delivery conditions (leave at door, signature required, etc.)
5. Priority level (low, medium, high, urgent)
6. Any concerns or issues mentioned

Format your response as JSON with these keys: sentiment, instructions, time_sensitive, conditions, priority, concerns
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Transcribed:
    success: ClassVar[bool] = True
    recording_id: str
    text: str
    model: str | None = None
    processed_at: str = field(default_factory=_now)


@dataclass
class TranscriptionFailed:
    success: ClassVar[bool] = False
    recording_id: str
    reason: str
    retryable: bool = False
    processed_at: str = field(default_factory=_now)

    @property
    def error(self) -> str:
        return self.reason


@dataclass
class Analyzed:
    success: ClassVar[bool] = True
    recording_id: str
    intent: Intent
    model: str | None = None
    processed_at: str = field(default_factory=_now)


@dataclass
class AnalyzedByFallback:
    success: ClassVar[bool] = True
    recording_id: str
    intent: Intent
    processed_at: str = field(default_factory=_now)


@dataclass
class AnalysisFailed:
    success: ClassVar[bool] = False
    recording_id: str
    reason: str
    retryable: bool = False
    processed_at: str = field(default_factory=_now)

    @property
    def error(self) -> str:
        return self.reason


TranscriptionResult = Transcribed | TranscriptionFailed
AnalysisResult = Analyzed | AnalyzedByFallback | AnalysisFailed

_VARIANTS = {cls.__name__: cls for cls in (Transcribed, TranscriptionFailed, Analyzed, AnalyzedByFallback, AnalysisFailed)}


def result_to_dict(result) -> dict:
    data = asdict(result)
    if "intent" in data:
        data["intent"] = result.intent.model_dump()
    data["kind"] = type(result).__name__
    data["success"] = result.success
    return data


def result_from_dict(data: dict):
    """Rebuild a cached result; returns None for unrecognised entries."""
    cls = _VARIANTS.get(data.get("kind", ""))
    if cls is None:
        return None
    values = {k: v for k, v in data.items() if k not in ("kind", "success")}
    if "intent" in values:
        values["intent"] = Intent.model_validate(values["intent"] or {})
    try:
        return cls(**values)
    except TypeError:
        return None


def _strip_code_fences(content: str) -> str:
    content = content.strip()
    if content.startswith("```"):
        content = content.strip("`")
        if content.lower().startswith("json"):
            content = content[4:]
    return content.strip()


class SpeechService:
    """OpenAI-backed transcription + analysis adapter.

    Without an API key the adapter is disabled and both operations
    return a failure variant immediately.
    """

    def __init__(
        self,
        api_key: str,
        cache: ResultCache,
        *,
        base_url: str = "https://api.openai.com/v1",
        transcription_model: str = "whisper-1",
        analysis_model: str = "gpt-3.5-turbo",
        language: str = "en",
        download_timeout: float = 30.0,
        transcription_timeout: float = 30.0,
        analysis_timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.transcription_model = transcription_model
        self.analysis_model = analysis_model
        self.language = language
        self.download_timeout = download_timeout
        self.transcription_timeout = transcription_timeout
        self.analysis_timeout = analysis_timeout
        self._client = http_client
        self._owns_client = http_client is None

        if not api_key:
            logger.warning("OpenAI API key not provided, AI features will be disabled")

    @classmethod
    def from_settings(cls, cache: ResultCache) -> "SpeechService":
        return cls(
            settings.OPENAI_API_KEY,
            cache,
            base_url=settings.OPENAI_BASE_URL,
            transcription_model=settings.TRANSCRIPTION_MODEL,
            analysis_model=settings.ANALYSIS_MODEL,
            language=settings.TRANSCRIPTION_LANGUAGE,
            download_timeout=settings.MEDIA_DOWNLOAD_TIMEOUT_SECONDS,
            transcription_timeout=settings.TRANSCRIPTION_TIMEOUT_SECONDS,
            analysis_timeout=settings.ANALYSIS_TIMEOUT_SECONDS,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def transcribe(self, audio_url: str, recording_id) -> TranscriptionResult:
        recording_id = str(recording_id)
        if not self.enabled:
            return TranscriptionFailed(recording_id, AI_UNAVAILABLE)

        key = transcription_key(recording_id)
        cached = await self.cache.get(key)
        if cached:
            result = result_from_dict(cached)
            if isinstance(result, (Transcribed, TranscriptionFailed)):
                logger.info("Using cached transcription for recording %s", recording_id)
                return result

        logger.info("Starting transcription for recording %s", recording_id)
        try:
            audio_bytes = await self._download(audio_url)
            text = await self._whisper(audio_bytes)
            if not text:
                raise ValueError("Transcription returned no text")
            result = Transcribed(recording_id, text, model=self.transcription_model)
            await self.cache.set(key, result_to_dict(result), SUCCESS_TTL)
            logger.info("Transcription completed for recording %s", recording_id)
        except Exception as e:
            logger.error("Transcription failed for recording %s: %s", recording_id, e)
            result = TranscriptionFailed(recording_id, str(e) or type(e).__name__, retryable=is_retryable_http_error(e))
            if not result.retryable:
                await self.cache.set(key, result_to_dict(result), ERROR_TTL)
        return result

    async def analyze(self, text: str | None, recording_id) -> AnalysisResult:
        recording_id = str(recording_id)
        if not self.enabled:
            return AnalysisFailed(recording_id, AI_UNAVAILABLE)
        if not text or not text.strip():
            return AnalysisFailed(recording_id, "No transcription provided")

        key = analysis_key(recording_id)
        cached = await self.cache.get(key)
        if cached:
            result = result_from_dict(cached)
            if isinstance(result, (Analyzed, AnalyzedByFallback, AnalysisFailed)):
                logger.info("Using cached analysis for recording %s", recording_id)
                return result

        logger.info("Starting analysis for recording %s", recording_id)
        try:
            content = await self._complete(text)
        except Exception as e:
            logger.error("Analysis failed for recording %s: %s", recording_id, e)
            result = AnalysisFailed(recording_id, str(e) or type(e).__name__, retryable=is_retryable_http_error(e))
            if not result.retryable:
                await self.cache.set(key, result_to_dict(result), ERROR_TTL)
            return result

        try:
            data = json.loads(_strip_code_fences(content))
            if not isinstance(data, dict):
                raise ValueError("analysis JSON is not an object")
            result = Analyzed(recording_id, Intent.model_validate(data), model=self.analysis_model)
        except ValueError as e:
            logger.warning("Failed to parse AI analysis JSON for recording %s: %s", recording_id, e)
            result = AnalyzedByFallback(recording_id, parse_fallback_intent(text))

        await self.cache.set(key, result_to_dict(result), SUCCESS_TTL)
        logger.info("Analysis completed for recording %s (%s)", recording_id, type(result).__name__)
        return result

    async def _download(self, audio_url: str) -> bytes:
        resp = await self.client.get(audio_url, timeout=self.download_timeout, follow_redirects=True)
        resp.raise_for_status()
        if not resp.content:
            raise ValueError("Downloaded audio is empty")
        return resp.content

    async def _whisper(self, audio_bytes: bytes) -> str:
        resp = await self.client.post(
            f"{self.base_url}/audio/transcriptions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            files={"file": ("recording.wav", audio_bytes, "audio/wav")},
            data={"model": self.transcription_model, "language": self.language, "response_format": "json"},
            timeout=self.transcription_timeout,
        )
        resp.raise_for_status()
        return (resp.json().get("text") or "").strip()

    async def _complete(self, text: str) -> str:
        resp = await self.client.post(
            f"{self.base_url}/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "model": self.analysis_model,
                "messages": [
                    {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
                    {"role": "user", "content": ANALYSIS_PROMPT.format(transcription=text)},
                ],
                "max_tokens": 500,
                "temperature": 0.3,
            },
            timeout=self.analysis_timeout,
        )
        resp.raise_for_status()
        return resp.json()["choices"][0]["message"]["content"] or ""

"""Summary, embedding and Q&A generation over the Gemini REST API."""

from __future__ import annotations

import logging
import re
import time
from typing import Callable, List, Optional

import httpx

from app.config import settings
from app.errors import TRANSIENT_STATUS_CODES, EnrichmentError, is_transient
from app.utils.retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

SUMMARY_PROMPT = """Create a comprehensive summary of the following video transcript in {language}.

TRANSCRIPT:
{transcript}

Please provide a structured summary that captures the main points.

SUMMARY in {language}:"""

QUESTION_PROMPT = """You are an assistant that answers questions about video content.
Based EXCLUSIVELY on the following video transcript, answer the user's question.

VIDEO TRANSCRIPT:
{transcript}

USER'S QUESTION: {question}

RULES:
1. Answer ONLY using information from the transcript above.
2. If the transcript does not contain the answer, say: "I cannot answer this question based on the video content."
3. If the user greets you, respond politely and offer to answer questions about the video.
4. Respond in {language}.

ANSWER:"""

GREETINGS = frozenset({"hi", "hello", "hey"})

_SENTENCE_END = re.compile(r"[.!?]+")


def fallback_summary(transcript: str) -> str:
    """Deterministic stand-in used whenever the generative backend is unavailable."""
    words = len(transcript.split())
    if not words:
        return "Video summary is currently unavailable because the transcript is empty."
    sentences = len([s for s in _SENTENCE_END.split(transcript) if s.strip()])
    return (
        f"This video transcript contains {words} words in {sentences} sentences. "
        "A detailed summary could not be generated at this time."
    )


def fallback_answer(transcript: str, question: str) -> str:
    tokens = set(re.findall(r"[a-z]+", question.lower()))
    if tokens & GREETINGS:
        return "Hello! I'm here to help answer questions about this video. What would you like to know?"
    if len(transcript.strip()) > 50:
        return (
            "The transcript for this video is available, but answers cannot be generated right now. "
            "Please try again later."
        )
    return "I cannot answer questions about this video because its transcript is not available."


class EnrichmentClient:
    """
    Generative enrichment of a finished transcript.

    ``summarize`` and ``answer_question`` never raise: on any backend problem
    they return a locally computed fallback. ``embed`` raises
    :class:`EnrichmentError` and leaves the decision to the caller.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        embedding_model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.GEMINI_API_KEY
        self.model = model or settings.GEMINI_MODEL
        self.embedding_model = embedding_model or settings.GEMINI_EMBEDDING_MODEL
        self.base_url = (base_url or settings.GEMINI_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.ENRICHMENT_TIMEOUT_SECONDS
        self.policy = policy or RetryPolicy(max_attempts=settings.ENRICHMENT_MAX_RETRIES, base_delay=1.0)
        self._sleep = sleep

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _post(self, method: str, payload: dict) -> dict:
        if not self.available:
            raise EnrichmentError("GEMINI_API_KEY is not configured")
        url = f"{self.base_url}/models/{method}"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(url, json=payload, headers={"x-goog-api-key": self.api_key})
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise EnrichmentError(
                f"Gemini returned HTTP {status}", transient=status in TRANSIENT_STATUS_CODES
            ) from exc
        except httpx.TimeoutException as exc:
            raise EnrichmentError(f"Gemini timed out after {self.timeout}s", transient=True) from exc
        except httpx.TransportError as exc:
            raise EnrichmentError(f"Gemini unreachable: {exc}", transient=True) from exc
        return response.json()

    def _call(self, method: str, payload: dict, description: str) -> dict:
        return retry_with_backoff(
            lambda: self._post(method, payload),
            self.policy,
            retry_on=is_transient,
            sleep=self._sleep,
            description=description,
        )

    def generate_text(self, prompt: str) -> str:
        data = self._call(
            f"{self.model}:generateContent",
            {"contents": [{"parts": [{"text": prompt}]}]},
            "Gemini generateContent",
        )
        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise EnrichmentError("Gemini response carried no text candidate") from exc
        if not isinstance(text, str) or not text.strip():
            raise EnrichmentError("Gemini returned an empty answer")
        return text.strip()

    def summarize(self, transcript: str, language: str = "english") -> str:
        excerpt = transcript[: settings.SUMMARY_MAX_INPUT_CHARS]
        if not excerpt.strip():
            return fallback_summary(transcript)
        try:
            return self.generate_text(SUMMARY_PROMPT.format(language=language, transcript=excerpt))
        except Exception as exc:
            logger.warning("Summary generation failed, using fallback summary: %s", exc)
            return fallback_summary(transcript)

    def embed(self, text: str) -> List[float]:
        excerpt = text[: settings.EMBEDDING_MAX_INPUT_CHARS]
        if not excerpt.strip():
            raise EnrichmentError("Cannot embed empty text", phase="embedding")
        data = self._call(
            f"{self.embedding_model}:embedContent",
            {
                "model": f"models/{self.embedding_model}",
                "content": {"parts": [{"text": excerpt}]},
            },
            "Gemini embedContent",
        )
        values = (data.get("embedding") or {}).get("values") if isinstance(data, dict) else None
        if not values or not all(isinstance(v, (int, float)) for v in values):
            raise EnrichmentError("Gemini returned a malformed embedding", phase="embedding")
        return [float(v) for v in values]

    def answer_question(self, transcript: str, question: str, language: str = "english") -> str:
        prompt = QUESTION_PROMPT.format(
            transcript=transcript[: settings.SUMMARY_MAX_INPUT_CHARS],
            question=question.strip(),
            language=language,
        )
        try:
            return self.generate_text(prompt)
        except Exception as exc:
            logger.warning("Question answering failed, using fallback answer: %s", exc)
            return fallback_answer(transcript, question)

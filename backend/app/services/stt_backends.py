"""Speech-to-text backends.

Each backend exposes ``transcribe(path, language_code) -> str`` and raises
:class:`app.errors.TranscriptionError` with ``transient`` set when the same
call may succeed if repeated.
"""

from __future__ import annotations

import base64
import logging
import threading
from pathlib import Path
from typing import Optional

import httpx
from faster_whisper import WhisperModel

from app.config import settings
from app.errors import TRANSIENT_STATUS_CODES, TranscriptionError

logger = logging.getLogger(__name__)


class HuggingFaceBackend:
    """Whisper served by the HuggingFace Inference API."""

    name = "huggingface"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.HUGGINGFACE_API_KEY
        self.model = model or settings.HUGGINGFACE_MODEL
        self.base_url = (base_url or settings.HUGGINGFACE_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.STT_TIMEOUT_SECONDS

    @property
    def url(self) -> str:
        return f"{self.base_url}/{self.model}"

    def transcribe(self, path: Path, language_code: str) -> str:
        if not self.api_key:
            raise TranscriptionError("HUGGINGFACE_API_KEY is not configured", phase="transcribing")

        payload = {
            "inputs": base64.b64encode(path.read_bytes()).decode("ascii"),
            "parameters": {"generate_kwargs": {"language": language_code, "task": "transcribe"}},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise TranscriptionError(
                f"Speech backend returned HTTP {status}: {exc.response.text[:200]}",
                transient=status in TRANSIENT_STATUS_CODES,
                phase="transcribing",
            ) from exc
        except httpx.TimeoutException as exc:
            raise TranscriptionError(
                f"Speech backend timed out after {self.timeout}s", transient=True, phase="transcribing"
            ) from exc
        except httpx.TransportError as exc:
            raise TranscriptionError(
                f"Speech backend unreachable: {exc}", transient=True, phase="transcribing"
            ) from exc

        data = response.json()
        if isinstance(data, list) and data:
            data = data[0]
        text = data.get("text") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise TranscriptionError("Speech backend returned no text field", phase="transcribing")
        return text.strip()


class LocalWhisperBackend:
    """In-process faster-whisper model, loaded on first use and cached on the instance."""

    name = "local"

    def __init__(
        self,
        model_size: Optional[str] = None,
        device: Optional[str] = None,
        compute_type: Optional[str] = None,
    ) -> None:
        self.model_size = model_size or settings.WHISPER_MODEL_SIZE
        self.device = device or settings.WHISPER_DEVICE
        self.compute_type = compute_type or settings.WHISPER_COMPUTE_TYPE
        self._model: Optional[WhisperModel] = None
        self._lock = threading.Lock()

    def get_model(self) -> WhisperModel:
        with self._lock:
            if self._model is None:
                logger.info(
                    "Initializing Whisper model: Size='%s', Device='%s', Compute='%s'",
                    self.model_size, self.device, self.compute_type,
                )
                try:
                    self._model = WhisperModel(
                        self.model_size, device=self.device, compute_type=self.compute_type
                    )
                except Exception as exc:
                    logger.error("Failed to initialize Whisper model: %s", exc, exc_info=True)
                    raise TranscriptionError(
                        f"Whisper model could not be loaded: {exc}", phase="transcribing"
                    ) from exc
                logger.info("Whisper model initialized successfully.")
            return self._model

    def transcribe(self, path: Path, language_code: str) -> str:
        model = self.get_model()
        try:
            segments, info = model.transcribe(str(path), language=language_code, beam_size=5)
            text = " ".join(segment.text.strip() for segment in segments)
        except Exception as exc:
            raise TranscriptionError(f"Whisper transcription failed: {exc}", phase="transcribing") from exc
        logger.debug("Whisper transcribed %s (%.2fs of audio)", path.name, info.duration)
        return text.strip()


def build_backend(name: Optional[str] = None):
    name = (name or settings.STT_BACKEND).lower()
    if name == "huggingface":
        return HuggingFaceBackend()
    if name == "local":
        return LocalWhisperBackend()
    raise ValueError(f"Unknown STT_BACKEND '{name}' (expected 'huggingface' or 'local')")

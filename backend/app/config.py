"""Application-wide configuration loader.

Every knob the pipeline recognises is read from the environment once, at
import time, and exposed through the module-level ``settings`` singleton.
Components receive their values from ``settings`` as constructor defaults so
tests can build them with explicit arguments instead.

Empty variables
---------------
When docker-compose injects an environment variable whose value is empty
(e.g. ``GEMINI_API_KEY=""``) ``os.getenv("KEY", default)`` returns an empty
string *not* ``None`` and that empty string would override the in-code
default. We therefore use the idiom

    os.getenv(KEY) or DEFAULT

so that *falsy* values are replaced by the specified DEFAULT.
"""

import os


def _int(key: str, default: int) -> int:
    return int(os.getenv(key) or default)


def _float(key: str, default: float) -> float:
    return float(os.getenv(key) or default)


def _clamp(value, low, high):
    return max(low, min(high, value))


# Human language name -> speech backend language code.
SUPPORTED_LANGUAGES = {
    "english": "en",
    "spanish": "es",
    "french": "fr",
    "german": "de",
    "italian": "it",
    "portuguese": "pt",
    "russian": "ru",
    "chinese": "zh",
    "japanese": "ja",
    "korean": "ko",
    "hindi": "hi",
    "arabic": "ar",
    "bengali": "bn",
    "urdu": "ur",
    "turkish": "tr",
}


class Settings:
    """Environment backed settings with sane defaults."""

    # Storage / infrastructure
    DATABASE_URL: str = os.getenv('DATABASE_URL') or 'postgresql://vidqa:vidqa@db:5432/vidqa'
    DB_ECHO: bool = (os.getenv('DB_ECHO') or '0').lower() in ('1', 'true', 'yes')
    CELERY_BROKER_URL: str = os.getenv('CELERY_BROKER_URL') or 'redis://broker:6379/0'
    CELERY_RESULT_BACKEND: str = os.getenv('CELERY_RESULT_BACKEND') or 'redis://broker:6379/0'
    REDIS_URL: str = os.getenv('REDIS_URL') or 'redis://broker:6379/1'
    FFMPEG_PATH: str = os.getenv('FFMPEG_PATH') or 'ffmpeg'
    FFPROBE_PATH: str = os.getenv('FFPROBE_PATH') or 'ffprobe'
    LOG_DIR: str = os.getenv('LOG_DIR') or 'logs'
    LOG_LEVEL: str = (os.getenv('LOG_LEVEL') or 'INFO').upper()

    # Media segmentation
    CHUNK_DURATION_SECONDS: int = _clamp(_int('CHUNK_DURATION_SECONDS', 30), 10, 300)
    CHUNK_PAUSE_SECONDS: float = _float('CHUNK_PAUSE_SECONDS', 0.1)
    TRANSCODE_TIMEOUT_SECONDS: float = _float('TRANSCODE_TIMEOUT_SECONDS', 300)
    SEGMENT_MAX_ATTEMPTS: int = _int('SEGMENT_MAX_ATTEMPTS', 3)
    SEGMENT_RETRY_DELAY_SECONDS: float = _float('SEGMENT_RETRY_DELAY_SECONDS', 2)
    MAX_CHUNK_SIZE_BYTES: int = _int('MAX_CHUNK_SIZE_BYTES', 25 * 1024 * 1024)
    MAX_SOURCE_SIZE_BYTES: int = _int('MAX_SOURCE_SIZE_BYTES', 500 * 1024 * 1024)

    # Job queue / worker
    JOB_MAX_ATTEMPTS: int = max(1, _int('JOB_MAX_ATTEMPTS', 5))
    JOB_BACKOFF_SECONDS: float = _float('JOB_BACKOFF_SECONDS', 5)
    JOB_BACKOFF_MAX_SECONDS: float = _float('JOB_BACKOFF_MAX_SECONDS', 600)
    JOB_START_DELAY_SECONDS: float = _float('JOB_START_DELAY_SECONDS', 1)
    ENQUEUE_POLICY: str = (os.getenv('ENQUEUE_POLICY') or 'ignore').lower()
    WORKER_CONCURRENCY: int = _clamp(_int('WORKER_CONCURRENCY', 1), 1, 5)
    TRANSCRIPTION_CONCURRENCY: int = max(1, _int('TRANSCRIPTION_CONCURRENCY', 1))
    WORKER_LOCK_DURATION_SECONDS: float = _float('WORKER_LOCK_DURATION_SECONDS', 1800)
    WORKER_STALLED_INTERVAL_SECONDS: float = _float('WORKER_STALLED_INTERVAL_SECONDS', 600)
    HEARTBEAT_INTERVAL_SECONDS: float = _float('HEARTBEAT_INTERVAL_SECONDS', 60)
    PROCESSING_STALE_AFTER_SECONDS: float = _float('PROCESSING_STALE_AFTER_SECONDS', 1800)

    # Source download
    DOWNLOAD_TOTAL_TIMEOUT_SECONDS: float = _float('DOWNLOAD_TOTAL_TIMEOUT_SECONDS', 1200)
    DOWNLOAD_INACTIVITY_TIMEOUT_SECONDS: float = _float('DOWNLOAD_INACTIVITY_TIMEOUT_SECONDS', 120)

    # Speech to text
    STT_BACKEND: str = (os.getenv('STT_BACKEND') or 'huggingface').lower()
    HUGGINGFACE_API_KEY: str = os.getenv('HUGGINGFACE_API_KEY') or ''
    HUGGINGFACE_BASE_URL: str = os.getenv('HUGGINGFACE_BASE_URL') or 'https://api-inference.huggingface.co/models'
    HUGGINGFACE_MODEL: str = os.getenv('HUGGINGFACE_MODEL') or 'openai/whisper-large-v3'
    STT_TIMEOUT_SECONDS: float = _float('STT_TIMEOUT_SECONDS', 60)
    STT_MAX_RETRIES: int = max(1, _int('STT_MAX_RETRIES', 3))
    STT_RETRY_BASE_DELAY_SECONDS: float = _float('STT_RETRY_BASE_DELAY_SECONDS', 2)
    STT_RETRY_MAX_DELAY_SECONDS: float = _float('STT_RETRY_MAX_DELAY_SECONDS', 30)
    WHISPER_MODEL_SIZE: str = os.getenv('WHISPER_MODEL_SIZE') or 'base'
    WHISPER_DEVICE: str = os.getenv('WHISPER_DEVICE') or 'cpu'
    WHISPER_COMPUTE_TYPE: str = os.getenv('WHISPER_COMPUTE_TYPE') or 'int8'
    DEFAULT_LANGUAGE_CODE: str = os.getenv('DEFAULT_LANGUAGE_CODE') or 'en'

    # Generative enrichment
    GEMINI_API_KEY: str = os.getenv('GEMINI_API_KEY') or ''
    GEMINI_BASE_URL: str = os.getenv('GEMINI_BASE_URL') or 'https://generativelanguage.googleapis.com/v1beta'
    GEMINI_MODEL: str = os.getenv('GEMINI_MODEL') or 'gemini-2.0-flash'
    GEMINI_EMBEDDING_MODEL: str = os.getenv('GEMINI_EMBEDDING_MODEL') or 'embedding-001'
    ENRICHMENT_TIMEOUT_SECONDS: float = _float('ENRICHMENT_TIMEOUT_SECONDS', 60)
    ENRICHMENT_MAX_RETRIES: int = max(1, _int('ENRICHMENT_MAX_RETRIES', 3))
    SUMMARY_MAX_INPUT_CHARS: int = _int('SUMMARY_MAX_INPUT_CHARS', 10000)
    EMBEDDING_MAX_INPUT_CHARS: int = _int('EMBEDDING_MAX_INPUT_CHARS', 10000)

    SUPPORTED_LANGUAGES: dict = SUPPORTED_LANGUAGES


settings = Settings()

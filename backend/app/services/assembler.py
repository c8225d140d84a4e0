"""Merge chunk transcriptions into a single timestamped transcript."""

from __future__ import annotations

from typing import Iterable

from app.schemas import ChunkTranscription, Transcript

SEGMENT_SEPARATOR = "\n\n"


def format_timestamp(seconds: float) -> str:
    """``[mm:ss]`` below one hour, ``[hh:mm:ss]`` from one hour on."""
    if seconds < 0:
        raise ValueError(f"Timestamp must be non-negative, got {seconds}")
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"[{hours:02d}:{minutes:02d}:{secs:02d}]"
    return f"[{minutes:02d}:{secs:02d}]"


def assemble(transcriptions: Iterable[ChunkTranscription]) -> Transcript:
    """Join transcriptions in ascending ``index`` order, whatever order they arrive in.

    Failed chunks are kept; their placeholder text marks the gap inline.
    """
    ordered = sorted(transcriptions, key=lambda t: t.index)
    lines = [f"{format_timestamp(t.start_time)} {t.text.strip()}".rstrip() for t in ordered]
    return Transcript(text=SEGMENT_SEPARATOR.join(lines), segment_count=len(lines))

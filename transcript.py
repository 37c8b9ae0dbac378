"""Normalisation of voice-session transcripts.

The voice pipeline frequently splits one spoken sentence into several small
utterances ("What is." / "Your." / "Name."). Before a transcript is handed to
the assessment engine, consecutive utterances from the same speaker that arrive
within a short window are merged back into one message so that quotations can
be matched against whole sentences.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from schemas import CleanTranscript, CleanTranscriptMessage, VoiceTranscript, VoiceUtterance

logger = logging.getLogger(__name__)

MERGE_WINDOW_MS = 2000
SENTENCE_TERMINATORS = (".", "!", "?")
SHORT_FRAGMENT_MAX_CHARS = 10

_SPEAKER_BY_ROLE = {
    "user": "student",
    "assistant": "ai_patient",
}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime, or ``None``."""

    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def is_within_window(first: str, second: str, window_ms: int = MERGE_WINDOW_MS) -> bool:
    """Return True when both timestamps parse and are at most ``window_ms`` apart."""

    t1 = parse_timestamp(first)
    t2 = parse_timestamp(second)
    if t1 is None or t2 is None:
        logger.warning(
            "Unparseable transcript timestamp; fragments not merged (first=%r, second=%r)",
            first,
            second,
        )
        return False
    gap_ms = abs((t2 - t1).total_seconds()) * 1000.0
    return gap_ms <= window_ms


def _is_short_fragment(text: str) -> bool:
    return len(text) < SHORT_FRAGMENT_MAX_CHARS and not any(ch.isspace() for ch in text)


def smart_merge_text(accumulated: str, fragment: str) -> str:
    """Join two fragments of the same utterance.

    >>> smart_merge_text("What is.", "your name?")
    'What is your name?'
    >>> smart_merge_text("What is.", "Your.")
    'What is your.'
    >>> smart_merge_text("I have pain.", "It started yesterday.")
    'I have pain. It started yesterday.'
    """

    accumulated = accumulated.strip()
    fragment = fragment.strip()

    if not accumulated:
        return fragment
    if not fragment:
        return accumulated

    if accumulated.endswith(SENTENCE_TERMINATORS):
        first = fragment[0]
        if first.islower():
            return accumulated[:-1] + " " + fragment
        if first.isupper() and _is_short_fragment(fragment):
            return accumulated[:-1] + " " + fragment.lower()

    return accumulated + " " + fragment


def merge_consecutive_messages(
    messages: Iterable[VoiceUtterance],
    window_ms: int = MERGE_WINDOW_MS,
) -> list[VoiceUtterance]:
    """Merge same-role utterances that arrive within ``window_ms`` of each other.

    The merged message carries the timestamp of its latest fragment, so a run
    of fragments keeps merging as long as each one lands inside the window of
    the previous.
    """

    merged: list[VoiceUtterance] = []
    current: Optional[VoiceUtterance] = None

    for message in messages:
        if (
            current is not None
            and current.role == message.role
            and is_within_window(current.timestamp, message.timestamp, window_ms)
        ):
            current = current.model_copy(
                update={
                    "content": smart_merge_text(current.content, message.content),
                    "timestamp": message.timestamp,
                }
            )
            continue
        if current is not None:
            merged.append(current)
        current = message.model_copy()

    if current is not None:
        merged.append(current)
    return merged


def _duration_seconds(messages: Sequence[CleanTranscriptMessage]) -> int:
    if len(messages) < 2:
        return 0
    first = parse_timestamp(messages[0].timestamp)
    last = parse_timestamp(messages[-1].timestamp)
    if first is None or last is None:
        logger.warning("Unable to compute transcript duration from unparseable timestamps")
        return 0
    return max(0, round((last - first).total_seconds()))


TranscriptInput = Union[VoiceTranscript, Mapping[str, Any], Sequence[Any], None]


def coerce_voice_transcript(raw: TranscriptInput) -> VoiceTranscript:
    """Accept the stored envelope, a bare list of utterances, or a model instance."""

    if raw is None:
        return VoiceTranscript()
    if isinstance(raw, VoiceTranscript):
        return raw
    if isinstance(raw, Mapping):
        return VoiceTranscript.model_validate(dict(raw))
    return VoiceTranscript(messages=[VoiceUtterance.model_validate(item) for item in raw])


def transform_to_clean_format(raw: TranscriptInput, window_ms: int = MERGE_WINDOW_MS) -> CleanTranscript:
    """Merge split utterances and rename speakers for assessment."""

    transcript = coerce_voice_transcript(raw)
    merged = merge_consecutive_messages(transcript.messages, window_ms)

    messages = [
        CleanTranscriptMessage(
            timestamp=utterance.timestamp,
            speaker=_SPEAKER_BY_ROLE[utterance.role],
            message=utterance.content,
        )
        for utterance in merged
    ]

    return CleanTranscript(
        messages=messages,
        duration=_duration_seconds(messages),
        total_messages=len(messages),
    )

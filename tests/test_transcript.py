import logging

import pytest

from schemas import VoiceTranscript, VoiceUtterance
from transcript import (
    is_within_window,
    merge_consecutive_messages,
    smart_merge_text,
    transform_to_clean_format,
)
from conftest import voice_transcript


def _utt(role, content, ts, seq=0):
    return VoiceUtterance(role=role, content=content, sequence=seq, timestamp=ts)


@pytest.mark.parametrize(
    "accumulated, fragment, expected",
    [
        ("What is.", "your name?", "What is your name?"),
        ("What is.", "Your.", "What is your."),
        ("I have pain.", "It started yesterday.", "I have pain. It started yesterday."),
        ("Hello", "there", "Hello there"),
        ("  Hi!  ", "  ", "Hi!"),
        ("", "Only fragment", "Only fragment"),
        ("Really?", "Yes", "Really yes"),
    ],
)
def test_smart_merge_text(accumulated, fragment, expected):
    assert smart_merge_text(accumulated, fragment) == expected


def test_long_capitalized_fragment_keeps_terminator():
    assert smart_merge_text("Okay.", "Absolutely") == "Okay. Absolutely"


def test_same_role_within_window_is_merged_with_latest_timestamp():
    raw = voice_transcript(
        ("user", "What is.", "2025-01-01T10:00:00.000Z"),
        ("user", "your name?", "2025-01-01T10:00:00.500Z"),
    )

    clean = transform_to_clean_format(raw)

    assert clean.total_messages == 1
    message = clean.messages[0]
    assert message.message == "What is your name?"
    assert message.speaker == "student"
    assert message.timestamp == "2025-01-01T10:00:00.500Z"
    assert clean.duration == 0


def test_fragment_chain_keeps_merging_inside_rolling_window():
    messages = [
        _utt("assistant", "I've had.", "2025-01-01T10:00:00Z"),
        _utt("assistant", "pain.", "2025-01-01T10:00:01.500Z"),
        _utt("assistant", "For weeks.", "2025-01-01T10:00:03Z"),
    ]

    merged = merge_consecutive_messages(messages)

    assert len(merged) == 1
    assert merged[0].content == "I've had pain. For weeks."
    assert merged[0].timestamp == "2025-01-01T10:00:03Z"


def test_gap_over_window_or_role_change_prevents_merge():
    raw = voice_transcript(
        ("user", "Hello.", "2025-01-01T10:00:00Z"),
        ("user", "how are you?", "2025-01-01T10:00:02.001Z"),
        ("assistant", "Not great.", "2025-01-01T10:00:02.500Z"),
        ("user", "Sorry to hear.", "2025-01-01T10:00:03Z"),
    )

    clean = transform_to_clean_format(raw)

    assert clean.total_messages == 4
    assert [m.speaker for m in clean.messages] == ["student", "student", "ai_patient", "student"]
    assert clean.duration == 3


def test_exact_window_boundary_merges():
    assert is_within_window("2025-01-01T10:00:00Z", "2025-01-01T10:00:02Z", 2000)
    assert not is_within_window("2025-01-01T10:00:00Z", "2025-01-01T10:00:02.001Z", 2000)


def test_unparseable_timestamp_never_merges_and_logs(caplog):
    raw = voice_transcript(
        ("user", "What is.", "not-a-time"),
        ("user", "your name?", "2025-01-01T10:00:00Z"),
    )

    with caplog.at_level(logging.WARNING, logger="transcript"):
        clean = transform_to_clean_format(raw)

    assert clean.total_messages == 2
    assert clean.duration == 0
    assert any("Unparseable" in rec.getMessage() for rec in caplog.records)


@pytest.mark.parametrize("bad_timestamp", [None, 1735725600, ""])
def test_missing_or_non_string_timestamp_is_not_merged(caplog, bad_timestamp):
    raw = {
        "messages": [
            {"role": "user", "content": "Hello.", "timestamp": bad_timestamp},
            {"role": "user", "content": "I am Dr Lee.", "timestamp": "2025-01-01T10:00:00Z"},
        ]
    }

    with caplog.at_level(logging.WARNING, logger="transcript"):
        clean = transform_to_clean_format(raw)

    assert clean.total_messages == 2
    assert [m.message for m in clean.messages] == ["Hello.", "I am Dr Lee."]
    assert clean.duration == 0
    assert any("Unparseable" in rec.getMessage() for rec in caplog.records)


def test_empty_input_yields_empty_output():
    for raw in (None, [], {"messages": []}, VoiceTranscript()):
        clean = transform_to_clean_format(raw)
        assert clean.messages == []
        assert clean.duration == 0
        assert clean.total_messages == 0


def test_non_mergeable_sequence_is_stable():
    raw = voice_transcript(
        ("user", "Good morning, I'm Dr Lee.", "2025-01-01T10:00:00Z"),
        ("assistant", "Morning doctor.", "2025-01-01T10:00:05Z"),
        ("user", "What brings you in?", "2025-01-01T10:00:10Z"),
    )

    first = transform_to_clean_format(raw)
    again = transform_to_clean_format(
        [
            {"role": "user" if m.speaker == "student" else "assistant", "content": m.message, "timestamp": m.timestamp}
            for m in first.messages
        ]
    )

    assert again.messages == first.messages
    assert first.total_messages == 3
    assert first.duration == 10


def test_duration_rounds_to_whole_seconds():
    raw = voice_transcript(
        ("user", "Hi.", "2025-01-01T10:00:00Z"),
        ("assistant", "Hello.", "2025-01-01T10:01:05.600Z"),
    )

    assert transform_to_clean_format(raw).duration == 66

from __future__ import annotations

import sqlite3

import pytest

from streamvault.correlate import ChatCorrelator
from streamvault.store import ChatStore, VodStore


def _msg(ts: str, text: str = "hi", user: str = "viewer") -> dict:
    return {"username": user, "message": text, "abs_timestamp": ts}


def _rels(chat: ChatStore, vod_id: int):
    return [(m.rel_timestamp, m.flags) for m in chat.range(vod_id)]


def test_offset_from_broadcast_start(vods: VodStore, chat: ChatStore, vod_id: int):
    chat.insert_messages(vod_id, [_msg("2024-01-01T12:05:00Z")])
    result = ChatCorrelator(vods=vods, chat=chat).correlate(vod_id)
    assert result.updated == 1
    assert _rels(chat, vod_id) == [(300.0, "")]


def test_fractional_and_offset_timestamps(vods: VodStore, chat: ChatStore, vod_id: int):
    chat.insert_messages(
        vod_id,
        [_msg("2024-01-01T12:00:01.5Z"), _msg("2024-01-01T13:00:02+01:00")],
    )
    ChatCorrelator(vods=vods, chat=chat).correlate(vod_id)
    assert sorted(r for r, _ in _rels(chat, vod_id)) == [1.5, 2.0]


def test_negative_offsets_are_clamped_and_flagged(vods: VodStore, chat: ChatStore, vod_id: int):
    chat.insert_messages(vod_id, [_msg("2024-01-01T11:59:50Z"), _msg("2024-01-01T12:00:10Z")])
    result = ChatCorrelator(vods=vods, chat=chat).correlate(vod_id)
    assert result.clamped == 1
    assert _rels(chat, vod_id) == [(0.0, "clock_skew"), (10.0, "")]


def test_correlation_is_idempotent(vods: VodStore, chat: ChatStore, vod_id: int):
    chat.insert_messages(vod_id, [_msg("2024-01-01T12:01:00Z")])
    correlator = ChatCorrelator(vods=vods, chat=chat)
    correlator.correlate(vod_id)
    second = correlator.correlate(vod_id)
    assert second.updated == 0
    assert _rels(chat, vod_id) == [(60.0, "")]
    assert chat.pending_count(vod_id) == 0


def test_only_new_rows_are_correlated(vods: VodStore, chat: ChatStore, vod_id: int):
    correlator = ChatCorrelator(vods=vods, chat=chat)
    chat.insert_messages(vod_id, [_msg("2024-01-01T12:01:00Z")])
    correlator(vod_id)
    chat.insert_messages(vod_id, [_msg("2024-01-01T12:02:00Z")])
    assert correlator(vod_id).updated == 1
    assert [r for r, _ in _rels(chat, vod_id)] == [60.0, 120.0]


def test_bad_timestamp_reuses_previous_offset(vods: VodStore, chat: ChatStore, vod_id: int):
    chat.insert_messages(
        vod_id,
        [_msg("not a time"), _msg("2024-01-01T12:00:30Z"), _msg("")],
    )
    result = ChatCorrelator(vods=vods, chat=chat).correlate(vod_id)
    assert result.bad_timestamps == 2
    rows = sorted((m.id, m.rel_timestamp, m.flags) for m in chat.range(vod_id))
    assert [(rel, flags) for _, rel, flags in rows] == [
        (0.0, "bad_timestamp"),
        (30.0, ""),
        (30.0, "bad_timestamp"),
    ]


def test_missing_broadcast_start_uses_earliest_message(vods: VodStore, chat: ChatStore):
    vod_id = vods.insert_discovered("nostart")
    chat.insert_messages(vod_id, [_msg("2024-01-01T12:00:20Z"), _msg("2024-01-01T12:00:05Z")])
    result = ChatCorrelator(vods=vods, chat=chat).correlate(vod_id)
    assert result.origin_fallback
    assert _rels(chat, vod_id) == [(0.0, "no_broadcast_start"), (15.0, "no_broadcast_start")]


def test_missing_broadcast_start_origin_is_kept_across_batches(vods: VodStore, chat: ChatStore):
    vod_id = vods.insert_discovered("nostart-batches")
    correlator = ChatCorrelator(vods=vods, chat=chat)
    chat.insert_messages(vod_id, [_msg("2024-01-01T10:00:00Z"), _msg("2024-01-01T10:05:00Z")])
    correlator.correlate(vod_id)

    chat.insert_messages(vod_id, [_msg("2024-01-01T10:10:00Z", text="late")])
    correlator.correlate(vod_id)

    by_id = sorted((m.id, m.rel_timestamp) for m in chat.range(vod_id))
    assert [rel for _, rel in by_id] == [0.0, 300.0, 600.0]
    assert vods.get_kv(f"chat_origin:{vod_id}") == "2024-01-01T10:00:00.000000Z"


def test_missing_broadcast_start_origin_covers_prefilled_rows(vods: VodStore, chat: ChatStore):
    vod_id = vods.insert_discovered("nostart-prefilled")
    chat.insert_messages(
        vod_id,
        [
            {"abs_timestamp": "2024-01-01T10:00:00Z", "rel_timestamp": 0.0},
            _msg("2024-01-01T10:01:00Z"),
        ],
    )
    ChatCorrelator(vods=vods, chat=chat).correlate(vod_id)
    assert [rel for rel, _ in _rels(chat, vod_id)] == [0.0, 60.0]


def test_bad_timestamp_in_later_batch_reuses_stored_offset(vods: VodStore, chat: ChatStore, vod_id: int):
    correlator = ChatCorrelator(vods=vods, chat=chat)
    chat.insert_messages(vod_id, [_msg("2024-01-01T12:01:00Z")])
    correlator.correlate(vod_id)

    chat.insert_messages(vod_id, [_msg("garbled"), _msg("2024-01-01T12:02:00Z")])
    result = correlator.correlate(vod_id)

    assert result.bad_timestamps == 1
    assert _rels(chat, vod_id) == [(60.0, ""), (60.0, "bad_timestamp"), (120.0, "")]


def test_write_is_retried_on_lock(vods: VodStore, chat: ChatStore, vod_id: int, monkeypatch):
    chat.insert_messages(vod_id, [_msg("2024-01-01T12:00:01Z")])
    real = chat.set_rel_timestamps
    calls = []

    def flaky(updates):
        calls.append(1)
        if len(calls) == 1:
            raise sqlite3.OperationalError("database is locked")
        return real(updates)

    monkeypatch.setattr(chat, "set_rel_timestamps", flaky)
    sleeps = []
    result = ChatCorrelator(vods=vods, chat=chat, sleep=sleeps.append).correlate(vod_id)
    assert result.updated == 1
    assert len(sleeps) == 1


def test_write_gives_up_after_retries(vods: VodStore, chat: ChatStore, vod_id: int, monkeypatch):
    chat.insert_messages(vod_id, [_msg("2024-01-01T12:00:01Z")])

    def locked(updates):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(chat, "set_rel_timestamps", locked)
    with pytest.raises(sqlite3.OperationalError):
        ChatCorrelator(vods=vods, chat=chat, write_retries=2, sleep=lambda s: None).correlate(vod_id)
    assert chat.pending_count(vod_id) == 1

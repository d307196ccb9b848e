import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from songforge.db import Store
from songforge.errors import InsufficientCredits, InvalidTransition, NotFound, ValidationError
from songforge.models import can_transition


def new_song(store, user):
    return store.insert_song(user["id"], 50000, title="Test", prompt="A pop song, about tests")


def test_songs_start_pending(store, user):
    song = new_song(store, user)
    assert song["status"] == "pending"
    assert store.get_song(song["id"])["target_duration_ms"] == 50000


def test_forward_transitions_update_fields(store, user):
    song = new_song(store, user)

    store.transition_song(song["id"], "generating_music")
    store.transition_song(song["id"], "converting_voice")
    store.transition_song(song["id"], "merging")
    done = store.transition_song(song["id"], "completed", audio_url="/outputs/x.mp3", duration_seconds=49.8)

    assert done["status"] == "completed"
    assert done["audio_url"] == "/outputs/x.mp3"
    assert done["duration_seconds"] == 49.8


@pytest.mark.parametrize(
    "path",
    [
        ["completed"],
        ["generating_music", "merging"],
        ["generating_music", "pending"],
        ["failed", "generating_music"],
        ["generating_music", "completed", "failed"],
    ],
)
def test_illegal_transitions_rejected(store, user, path):
    song = new_song(store, user)
    *allowed, illegal = path
    for status in allowed:
        store.transition_song(song["id"], status)

    with pytest.raises(InvalidTransition):
        store.transition_song(song["id"], illegal)


def test_terminal_states_are_absorbing():
    for terminal in ("completed", "failed"):
        for target in ("pending", "generating_music", "converting_voice", "merging", "completed", "failed"):
            assert not can_transition(terminal, target)


def test_transition_unknown_song(store):
    with pytest.raises(NotFound):
        store.transition_song("missing", "generating_music")


def test_count_active_songs(store, user):
    running = new_song(store, user)
    store.transition_song(running["id"], "generating_music")
    new_song(store, user)
    done = new_song(store, user)
    store.transition_song(done["id"], "generating_music")
    store.transition_song(done["id"], "completed")
    store.fail_song(new_song(store, user)["id"], "boom")

    assert store.count_active_songs(user["id"]) == 2
    assert store.count_active_songs("someone-else") == 0


def test_fail_song_leaves_terminal_songs_alone(store, user):
    song = new_song(store, user)
    store.transition_song(song["id"], "generating_music")
    store.transition_song(song["id"], "completed", audio_url="/outputs/a.mp3")

    assert store.fail_song(song["id"], "late failure")["status"] == "completed"


def test_fail_stalled_songs(store, user):
    stale = new_song(store, user)
    fresh = new_song(store, user)
    finished = new_song(store, user)
    store.transition_song(stale["id"], "generating_music")
    store.transition_song(finished["id"], "failed", error_message="boom")

    old = (datetime.now(timezone.utc) - timedelta(hours=2)).isoformat()
    with store.connect() as conn:
        conn.execute("UPDATE songs SET updated_at=? WHERE id IN (?, ?)", (old, stale["id"], finished["id"]))

    assert store.fail_stalled_songs(30) == [stale["id"]]
    assert store.get_song(stale["id"])["status"] == "failed"
    assert store.get_song(stale["id"])["error_message"] == "stalled"
    assert store.get_song(fresh["id"])["status"] == "pending"
    assert store.get_song(finished["id"])["error_message"] == "boom"


def test_duplicate_email_rejected(store, user):
    with pytest.raises(ValidationError):
        store.create_user("Singer@Example.com ", "hash")


def test_debit_writes_balance_and_ledger_together(store, user):
    entry = store.debit_credit(user["id"], 1, "Song generation: Test", song_id="song-1")

    assert entry["type"] == "usage"
    assert entry["balance_after"] == 2
    assert store.get_user(user["id"])["credits_balance"] == 2
    assert [e["id"] for e in store.list_transactions(user["id"], song_id="song-1")] == [entry["id"]]


def test_debit_never_goes_negative(store, user):
    with pytest.raises(InsufficientCredits):
        store.debit_credit(user["id"], 5, "too much")

    assert store.get_user(user["id"])["credits_balance"] == 3
    assert store.list_transactions(user["id"]) == []


def test_debit_unknown_user(store):
    with pytest.raises(NotFound):
        store.debit_credit("nobody", 1, "Song generation")


def test_locked_database_gives_up_after_timeout(settings, user):
    impatient = Store(settings.database_path, timeout=0.1)
    blocker = sqlite3.connect(str(settings.database_path))
    blocker.execute("BEGIN EXCLUSIVE")
    try:
        with pytest.raises(sqlite3.OperationalError):
            impatient.debit_credit(user["id"], 1, "Song generation")
    finally:
        blocker.rollback()
        blocker.close()

    assert impatient.get_user(user["id"])["credits_balance"] == 3
    assert impatient.list_transactions(user["id"]) == []


def test_store_uses_configured_timeout(services, settings):
    assert services.store.timeout == settings.db_timeout_seconds == 5.0


def test_admin_adjustments(store, user):
    grant = store.adjust_credits(user["id"], 5, "Welcome back")
    take = store.adjust_credits(user["id"], -2, "Refunded elsewhere")

    assert (grant["type"], grant["description"], grant["balance_after"]) == ("bonus", "[Admin] Welcome back", 8)
    assert (take["type"], take["balance_after"]) == ("adjustment", 6)

    with pytest.raises(ValidationError):
        store.adjust_credits(user["id"], 0, "nothing")


def test_single_default_voice(store, user):
    first = store.insert_voice(user["id"], "First", "kits-1", "ready")
    second = store.insert_voice(user["id"], "Second", "kits-2", "ready")

    store.set_default_voice(user["id"], first["id"], True)
    store.set_default_voice(user["id"], second["id"], True)

    defaults = [v["name"] for v in store.list_voices(user["id"]) if v["is_default"]]
    assert defaults == ["Second"]


def test_set_default_voice_of_other_user(store, user):
    other = store.create_user("other@example.com", "hash")
    voice = store.insert_voice(other["id"], "Theirs", "kits-9", "ready")

    with pytest.raises(NotFound):
        store.set_default_voice(user["id"], voice["id"], True)


def test_one_active_prompt_per_type(store):
    first = store.create_prompt("song", "One", "{{genre}} one", activate=True)
    store.create_prompt("lyrics", "Lyrics", "Write well", activate=True)
    second = store.create_prompt("song", "Two", "{{genre}} two", activate=True)

    assert store.get_active_prompt("song") == "{{genre}} two"
    assert store.get_active_prompt("lyrics") == "Write well"
    active = {p["id"] for p in store.list_prompts("song") if p["is_active"]}
    assert active == {second["id"]}
    assert first["id"] not in active


def test_settings_upsert(store):
    assert store.get_setting("music_provider") is None
    store.set_setting("music_provider", "suno")
    store.set_setting("music_provider", "elevenlabs")
    assert store.get_setting("music_provider") == "elevenlabs"

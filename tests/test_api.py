import pytest

from songforge.errors import VendorError


def signup(client, email="listener@example.com", password="secret123"):
    response = client.post("/api/auth/signup", json={"email": email, "password": password, "name": "Listener"})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


@pytest.fixture
def headers(client):
    return signup(client)


@pytest.fixture
def admin_headers(client):
    return signup(client, email="admin@example.com")


SONG = {"topic": "sunset drive", "genre": "pop", "mood": "happy"}


def drain(client, services):
    client.portal.call(services.queue.join)


# ============================================================================
# Auth
# ============================================================================

def test_signup_grants_starting_credits(client):
    response = client.post("/api/auth/signup", json={"email": "New@Example.com", "password": "secret123"})
    body = response.json()

    assert response.status_code == 200
    assert body["token_type"] == "bearer"
    assert body["user"]["email"] == "new@example.com"
    assert body["user"]["credits_balance"] == 3


def test_signup_validation(client, headers):
    assert client.post("/api/auth/signup", json={"email": "nope", "password": "secret123"}).status_code == 400
    assert client.post("/api/auth/signup", json={"email": "a@b.co", "password": "123"}).status_code == 400
    duplicate = client.post("/api/auth/signup", json={"email": "listener@example.com", "password": "secret123"})
    assert duplicate.status_code == 400
    assert duplicate.json()["detail"] == "Email already registered"


def test_login_and_me(client, headers):
    bad = client.post("/api/auth/login", json={"email": "listener@example.com", "password": "wrong-pass"})
    assert bad.status_code == 401

    good = client.post("/api/auth/login", json={"email": "listener@example.com", "password": "secret123"})
    token = good.json()["access_token"]
    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["email"] == "listener@example.com"


def test_requires_authentication(client):
    assert client.post("/api/songs/generate", json=SONG).status_code == 401
    assert client.get("/api/auth/me", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_health(client):
    body = client.get("/api/health").json()
    assert body["status"] == "healthy"
    assert body["music_provider"] == "elevenlabs"
    assert body["kits_configured"] is True
    assert body["openai_configured"] is False


# ============================================================================
# Songs
# ============================================================================

def test_generate_is_queued_then_completes(client, services, headers, music):
    response = client.post("/api/songs/generate", json=SONG, headers=headers)

    assert response.status_code == 202
    assert response.json()["status"] == "pending"
    song_id = response.json()["songId"]

    drain(client, services)

    song = client.get(f"/api/songs/{song_id}", headers=headers).json()
    assert song["status"] == "completed"
    assert song["audio_url"] == f"/outputs/{song_id}.mp3"
    assert client.get(song["audio_url"]).content == music.audio

    credits = client.get("/api/credits", headers=headers).json()
    assert credits["balance"] == 2
    assert [t["type"] for t in credits["transactions"]] == ["usage"]


def test_generate_and_wait(client, headers):
    response = client.post("/api/songs/generate?wait=true", json=SONG, headers=headers)

    assert response.status_code == 200
    assert response.json()["status"] == "completed"


def test_vendor_failure_surfaces_and_costs_nothing(client, headers, music):
    music.error = VendorError("ElevenLabs", 500, "Internal Server Error")

    response = client.post("/api/songs/generate?wait=true", json=SONG, headers=headers)

    assert response.status_code == 502
    assert "ElevenLabs API error: 500" in response.json()["detail"]
    [song] = client.get("/api/songs", headers=headers).json()["songs"]
    assert song["status"] == "failed"
    assert song["audio_url"] is None
    credits = client.get("/api/credits", headers=headers).json()
    assert credits == {"balance": 3, "transactions": []}


def test_voice_not_ready_is_a_bad_request(client, services, headers, music):
    user = services.store.get_user_by_email("listener@example.com")
    voice = services.store.insert_voice(user["id"], "Training", "kits-42", "processing")

    response = client.post("/api/songs/generate", json=dict(SONG, voiceProfileId=voice["id"]), headers=headers)

    assert response.status_code == 400
    assert music.calls == []
    assert client.get("/api/songs", headers=headers).json()["songs"] == []


def test_out_of_credits_is_payment_required(client, services, headers, music):
    user = services.store.get_user_by_email("listener@example.com")
    services.store.adjust_credits(user["id"], -3, "Used elsewhere")

    response = client.post("/api/songs/generate", json=SONG, headers=headers)

    assert response.status_code == 402
    assert music.calls == []


def test_queued_songs_cannot_overspend(client, services, headers, music):
    user = services.store.get_user_by_email("listener@example.com")
    services.store.adjust_credits(user["id"], -2, "Used elsewhere")

    assert client.post("/api/songs/generate", json=SONG, headers=headers).status_code == 202
    assert client.post("/api/songs/generate", json=SONG, headers=headers).status_code == 402

    drain(client, services)
    assert client.get("/api/credits", headers=headers).json()["balance"] == 0


def test_invalid_song_request(client, headers):
    assert client.post("/api/songs/generate", json={"genre": "pop"}, headers=headers).status_code == 422
    response = client.post("/api/songs/generate", json={"topic": " ", "genre": "pop"}, headers=headers)
    assert response.status_code == 400


def test_songs_are_private(client, headers):
    song_id = client.post("/api/songs/generate?wait=true", json=SONG, headers=headers).json()["songId"]
    stranger = signup(client, email="stranger@example.com")

    assert client.get(f"/api/songs/{song_id}", headers=stranger).status_code == 404
    assert client.delete(f"/api/songs/{song_id}", headers=stranger).status_code == 404


def test_delete_song_removes_artifact(client, headers, settings):
    song_id = client.post("/api/songs/generate?wait=true", json=SONG, headers=headers).json()["songId"]
    assert (settings.output_dir / f"{song_id}.mp3").exists()

    assert client.delete(f"/api/songs/{song_id}", headers=headers).status_code == 200

    assert not (settings.output_dir / f"{song_id}.mp3").exists()
    assert client.get(f"/api/songs/{song_id}", headers=headers).status_code == 404


def test_template_lyrics_without_openai_key(client, headers):
    response = client.post("/api/lyrics/generate", json={"topic": "road trip", "mood": "happy"}, headers=headers)

    assert response.status_code == 200
    assert "[Chorus]" in response.json()["lyrics"]


# ============================================================================
# Voices
# ============================================================================

def test_voice_lifecycle(client, headers, voice, settings):
    created = client.post(
        "/api/voices",
        data={"name": "Shower Singer"},
        files={"audio_file": ("sample.mp3", b"ID3-sample", "audio/mpeg")},
        headers=headers,
    )
    assert created.status_code == 200, created.text
    profile = created.json()
    assert profile["status"] == "processing"
    assert profile["vendor_voice_id"] == "kits-42"
    assert len(list(settings.upload_dir.glob("voice_*.mp3"))) == 1

    status = client.get(f"/api/voices/{profile['id']}/status", headers=headers).json()
    assert status["status"] == "ready"

    updated = client.patch(f"/api/voices/{profile['id']}", json={"is_default": True}, headers=headers).json()
    assert updated["is_default"] is True

    voice.delete_error = VendorError("Kits.AI", 404, "Not found")
    assert client.delete(f"/api/voices/{profile['id']}", headers=headers).status_code == 200
    assert client.get("/api/voices", headers=headers).json()["voices"] == []
    assert list(settings.upload_dir.iterdir()) == []


def test_voice_sample_removed_when_registration_fails(client, headers, voice, settings):
    voice.register_error = VendorError("Kits.AI", 500, "Training queue full")

    response = client.post(
        "/api/voices",
        data={"name": "Shower Singer"},
        files={"audio_file": ("sample.mp3", b"ID3-sample", "audio/mpeg")},
        headers=headers,
    )

    assert response.status_code == 502
    assert list(settings.upload_dir.iterdir()) == []
    assert client.get("/api/voices", headers=headers).json()["voices"] == []


def test_voice_song_uses_cloned_voice(client, services, headers, voice):
    user = services.store.get_user_by_email("listener@example.com")
    profile = services.store.insert_voice(user["id"], "Ready", "kits-42", "ready")

    body = dict(SONG, voiceProfileId=profile["id"], lyrics="Open road", pitchShift=-2)
    response = client.post("/api/songs/generate?wait=true", json=body, headers=headers)

    assert response.json()["status"] == "completed"
    assert voice.calls == ["separate_vocals", "convert_vocals"]


# ============================================================================
# Admin
# ============================================================================

def test_admin_routes_require_admin(client, headers):
    assert client.get("/api/admin/prompts", headers=headers).status_code == 403


def test_admin_prompt_template_drives_generation(client, admin_headers, headers, music):
    created = client.post(
        "/api/admin/prompts",
        json={"type": "song", "name": "Radio", "content": "Radio-ready {{genre}} about {{topic}}", "activate": True},
        headers=admin_headers,
    )
    assert created.status_code == 200
    assert created.json()["is_active"] is True

    client.post("/api/songs/generate?wait=true", json=SONG, headers=headers)

    assert music.calls[-1]["prompt"] == "Radio-ready pop about sunset drive"


def test_admin_music_provider(client, admin_headers):
    assert client.get("/api/admin/settings/music-provider", headers=admin_headers).json()["provider"] == "elevenlabs"

    response = client.put("/api/admin/settings/music-provider", json={"provider": "suno"}, headers=admin_headers)
    assert response.status_code == 400

    response = client.put("/api/admin/settings/music-provider", json={"provider": "elevenlabs"}, headers=admin_headers)
    assert response.json() == {"provider": "elevenlabs"}


def test_admin_grants_credits(client, services, admin_headers, headers):
    user = services.store.get_user_by_email("listener@example.com")

    response = client.post(
        f"/api/admin/users/{user['id']}/credits",
        json={"amount": 5, "description": "Contest prize"},
        headers=admin_headers,
    )

    body = response.json()
    assert body["balance"] == 8
    assert body["transaction"]["type"] == "bonus"
    assert body["transaction"]["description"] == "[Admin] Contest prize"
    assert client.get("/api/credits", headers=headers).json()["balance"] == 8


def test_admin_sweep_stalled(client, admin_headers):
    response = client.post("/api/admin/songs/sweep-stalled", headers=admin_headers)
    assert response.json() == {"failed": [], "count": 0}

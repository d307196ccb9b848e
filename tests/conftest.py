"""
Shared fixtures. Vendor clients and media tools are replaced with in-process
fakes; the SQLite store and local artifact store are real, under tmp_path.
"""

from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from songforge.config import Settings
from songforge.main import build_services, create_app
from songforge.voice import Stems, VoiceRegistration


class FakeMusicClient:
    def __init__(self, audio: bytes = b"ID3-generated-song"):
        self.audio = audio
        self.error: Optional[Exception] = None
        self.calls: List[Dict] = []

    async def generate(self, prompt: str, target_duration_ms: int, force_instrumental: bool) -> bytes:
        self.calls.append({
            "prompt": prompt,
            "target_duration_ms": target_duration_ms,
            "force_instrumental": force_instrumental,
        })
        if self.error is not None:
            raise self.error
        return self.audio


class FakeVoiceClient:
    def __init__(self):
        self.status = "ready"
        self.register_error: Optional[Exception] = None
        self.convert_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None
        self.calls: List[str] = []

    async def register_voice(self, sample_audio: bytes, name: str) -> VoiceRegistration:
        self.calls.append("register_voice")
        if self.register_error is not None:
            raise self.register_error
        return VoiceRegistration(voice_id="kits-42", status="processing", name=name)

    async def poll_status(self, voice_id: str) -> str:
        self.calls.append("poll_status")
        return self.status

    async def delete_voice(self, voice_id: str) -> None:
        self.calls.append("delete_voice")
        if self.delete_error is not None:
            raise self.delete_error

    async def convert_vocals(self, audio: bytes, voice_id: str, pitch_shift: float = 0, voice_status=None) -> bytes:
        self.calls.append("convert_vocals")
        if self.convert_error is not None:
            raise self.convert_error
        return b"converted:" + audio

    async def separate_vocals(self, audio: bytes) -> Stems:
        self.calls.append("separate_vocals")
        return Stems(vocals=b"vocals", instrumental=b"instrumental")


class FakeMedia:
    available = True

    def __init__(self):
        self.duration = 42.0
        self.probe_error: Optional[Exception] = None

    def check_available(self):
        return ("ffmpeg", "ffprobe")

    async def mix(self, track_a, track_b, volume_a=1.0, volume_b=1.0, output_format="mp3"):
        return b"mixed:" + track_a + b"+" + track_b

    async def probe_duration(self, audio: bytes) -> float:
        if self.probe_error is not None:
            raise self.probe_error
        return self.duration


@pytest.fixture
def settings(tmp_path):
    return Settings(
        elevenlabs_api_key="test-elevenlabs-key",
        kits_api_key="test-kits-key",
        secret_key="test-secret",
        admin_emails=["admin@example.com"],
        database_path=tmp_path / "songforge.db",
        output_dir=tmp_path / "outputs",
        upload_dir=tmp_path / "uploads",
        generation_workers=1,
        poll_max_attempts=3,
        poll_interval_seconds=0.0,
    )


@pytest.fixture
def music():
    return FakeMusicClient()


@pytest.fixture
def voice():
    return FakeVoiceClient()


@pytest.fixture
def media():
    return FakeMedia()


@pytest.fixture
def services(settings, music, voice, media):
    services = build_services(
        settings,
        music_clients={"elevenlabs": music},
        voice_client=voice,
        media=media,
    )
    services.store.init_db()
    return services


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
def orchestrator(services):
    return services.orchestrator


@pytest.fixture
def user(store):
    return store.create_user("singer@example.com", "not-a-real-hash", name="Singer", credits=3)


@pytest.fixture
def ready_voice(store, user):
    return store.insert_voice(user["id"], "My Voice", "kits-42", "ready")


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as client:
        yield client

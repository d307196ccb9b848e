"""
SongForge Backend
FastAPI server for AI song generation: lyrics, vendor music, cloned voices
"""

import logging
import os
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

import aiofiles
import aiohttp
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from .auth import create_access_token, get_password_hash, require_admin, require_auth, verify_password
from .config import Settings
from .db import Store
from .errors import NotFound, SongForgeError, ToolUnavailable, ValidationError, VendorError
from .jobs import GenerationQueue
from .lyrics import LyricsClient
from .media import FFMPEG_INSTALL_HINT, MediaProcessor
from .models import (
    AuthResponse,
    CreditAdjustmentRequest,
    CreditsResponse,
    GenerateSongResponse,
    LedgerEntryResponse,
    LyricsRequest,
    MusicProviderRequest,
    PromptCreateRequest,
    SongGenerationRequest,
    SongResponse,
    UserLogin,
    UserResponse,
    UserSignup,
    VoiceProfileResponse,
    VoiceStatus,
    VoiceUpdateRequest,
)
from .music import PROVIDERS, MusicClient, available_providers, build_music_client, provider_configured
from .pipeline import SETTING_MUSIC_PROVIDER, Orchestrator
from .polling import PollPolicy
from .storage import ArtifactStore, build_artifact_store
from .voice import KitsAIClient

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ============================================================================
# Services
# ============================================================================

@dataclass
class Services:
    settings: Settings
    store: Store
    music_clients: Mapping[str, MusicClient]
    voice_client: Optional[KitsAIClient]
    media: MediaProcessor
    artifacts: ArtifactStore
    lyrics: LyricsClient
    orchestrator: Orchestrator
    queue: GenerationQueue


def build_services(
    settings: Settings,
    music_clients: Optional[Mapping[str, MusicClient]] = None,
    voice_client: Optional[KitsAIClient] = None,
    media: Optional[MediaProcessor] = None,
    artifacts: Optional[ArtifactStore] = None,
    lyrics: Optional[LyricsClient] = None,
) -> Services:
    """Construct every client once; anything passed in is used as-is"""
    store = Store(settings.database_path, settings.db_timeout_seconds)
    poll_policy = PollPolicy(settings.poll_max_attempts, settings.poll_interval_seconds)

    if music_clients is None:
        music_clients = {
            provider: build_music_client(provider, settings)
            for provider in PROVIDERS
            if provider_configured(provider, settings)
        }
    if voice_client is None and settings.kits_api_key:
        voice_client = KitsAIClient(settings.kits_api_key, settings.kits_base_url, poll_policy)
    if media is None:
        media = MediaProcessor(settings.ffmpeg_path, settings.ffprobe_path, settings.output_bitrate)
    if artifacts is None:
        artifacts = build_artifact_store(settings.artifact_store, settings.output_dir)
    if lyrics is None:
        lyrics = LyricsClient(settings.openai_api_key, settings.openai_base_url)

    orchestrator = Orchestrator(store, music_clients, voice_client, media, artifacts, settings)
    return Services(
        settings=settings,
        store=store,
        music_clients=music_clients,
        voice_client=voice_client,
        media=media,
        artifacts=artifacts,
        lyrics=lyrics,
        orchestrator=orchestrator,
        queue=GenerationQueue(orchestrator, settings.generation_workers),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


# ============================================================================
# Serialization helpers
# ============================================================================

def user_response(user: Dict) -> UserResponse:
    return UserResponse(
        id=user["id"],
        email=user["email"],
        name=user["name"],
        credits_balance=user["credits_balance"],
        created_at=user["created_at"],
    )


def owned_song(services: Services, song_id: str, user: Dict) -> Dict:
    song = services.store.get_song(song_id)
    if not song or song["user_id"] != user["id"]:
        raise NotFound("Song not found")
    return song


def owned_voice(services: Services, voice_id: str, user: Dict) -> Dict:
    voice = services.store.get_voice(voice_id)
    if not voice or voice["user_id"] != user["id"]:
        raise NotFound("Voice not found")
    return voice


def remove_sample(sample_path: Optional[str]) -> None:
    if not sample_path:
        return
    try:
        os.remove(sample_path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("[Voices] Could not remove voice sample %s: %s", sample_path, e)


def require_voice_client(services: Services) -> KitsAIClient:
    if services.voice_client is None:
        raise ToolUnavailable("Kits.AI API key not configured")
    return services.voice_client


api_router = APIRouter(prefix="/api")


# ============================================================================
# Auth Endpoints
# ============================================================================

@api_router.post("/auth/signup", response_model=AuthResponse)
async def signup(user_data: UserSignup, services: Services = Depends(get_services)):
    """Create a new user account"""
    email = user_data.email.lower().strip()

    if "@" not in email or "." not in email:
        raise HTTPException(status_code=400, detail="Invalid email format")
    if len(user_data.password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters")

    user = services.store.create_user(
        email,
        get_password_hash(user_data.password),
        name=user_data.name or email.split("@")[0],
        credits=services.settings.default_credits,
    )
    logger.info("[Auth] Created user %s", user["id"])

    access_token = create_access_token(services.settings, data={"sub": user["id"]})
    return AuthResponse(access_token=access_token, user=user_response(user))


@api_router.post("/auth/login", response_model=AuthResponse)
async def login(user_data: UserLogin, services: Services = Depends(get_services)):
    """Login with email and password"""
    user = services.store.get_user_by_email(user_data.email)
    if not user or not verify_password(user_data.password, user["password_hash"]):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    access_token = create_access_token(services.settings, data={"sub": user["id"]})
    return AuthResponse(access_token=access_token, user=user_response(user))


@api_router.get("/auth/me", response_model=UserResponse)
async def get_current_user_info(current_user: Dict = Depends(require_auth)):
    return user_response(current_user)


# ============================================================================
# API Endpoints
# ============================================================================

@api_router.get("/health")
async def health_check(services: Services = Depends(get_services)):
    """Health check endpoint"""
    settings = services.settings
    return {
        "status": "healthy",
        "music_provider": services.orchestrator.active_provider(),
        "providers": available_providers(settings),
        "kits_configured": services.voice_client is not None,
        "openai_configured": services.lyrics.configured,
        "ffmpeg_available": services.media.available,
    }


# ============================================================================
# Songs
# ============================================================================

@api_router.post("/songs/generate", response_model=GenerateSongResponse, status_code=202)
async def generate_song(
    request: SongGenerationRequest,
    response: Response,
    wait: bool = False,
    current_user: Dict = Depends(require_auth),
    services: Services = Depends(get_services),
):
    """
    Create a song.

    By default the song is queued and polled through GET /api/songs/{id}.
    With ``wait=true`` the whole pipeline runs before the response is sent.
    """
    if wait:
        song = await services.orchestrator.generate_song(request, current_user)
        response.status_code = 200
        return GenerateSongResponse(songId=song["id"], status=song["status"])

    song = await services.orchestrator.prepare(request, current_user)
    services.queue.submit(song["id"])
    return GenerateSongResponse(songId=song["id"], status=song["status"])


@api_router.get("/songs")
async def list_songs(current_user: Dict = Depends(require_auth), services: Services = Depends(get_services)):
    songs = services.store.list_songs(current_user["id"])
    return {"songs": [SongResponse(**song) for song in songs]}


@api_router.get("/songs/{song_id}", response_model=SongResponse)
async def get_song(
    song_id: str,
    current_user: Dict = Depends(require_auth),
    services: Services = Depends(get_services),
):
    """Song status polling"""
    return SongResponse(**owned_song(services, song_id, current_user))


@api_router.delete("/songs/{song_id}")
async def delete_song(
    song_id: str,
    current_user: Dict = Depends(require_auth),
    services: Services = Depends(get_services),
):
    song = owned_song(services, song_id, current_user)

    for url in (song["audio_url"], song["instrumental_url"], song["original_vocals_url"]):
        if not url:
            continue
        try:
            await services.artifacts.delete(url)
        except (OSError, ValidationError) as e:
            logger.warning("[Songs] Could not remove artifact %s: %s", url, e)

    services.store.delete_song(song_id)
    return {"message": "Song deleted", "song_id": song_id}


# ============================================================================
# Lyrics
# ============================================================================

@api_router.post("/lyrics/generate")
async def generate_lyrics(
    request: LyricsRequest,
    current_user: Dict = Depends(require_auth),
    services: Services = Depends(get_services),
):
    return await services.lyrics.generate(
        request.topic,
        language=request.language,
        purpose=request.purpose,
        notes=request.important_notes,
        genre=request.genre,
        mood=request.mood,
        system_prompt=services.store.get_active_prompt("lyrics"),
    )


# ============================================================================
# Voice Profiles
# ============================================================================

@api_router.get("/voices")
async def list_voices(current_user: Dict = Depends(require_auth), services: Services = Depends(get_services)):
    voices = services.store.list_voices(current_user["id"])
    return {"voices": [VoiceProfileResponse(**voice) for voice in voices]}


@api_router.post("/voices", response_model=VoiceProfileResponse)
async def create_voice(
    name: str = Form("My Voice"),
    audio_file: UploadFile = File(...),
    current_user: Dict = Depends(require_auth),
    services: Services = Depends(get_services),
):
    """Upload a voice sample and start training a voice model"""
    client = require_voice_client(services)
    settings = services.settings

    audio_data = await audio_file.read()
    if not audio_data:
        raise ValidationError("Voice sample is empty")
    if len(audio_data) > settings.max_voice_sample_bytes:
        raise ValidationError(f"Voice sample exceeds {settings.max_voice_sample_bytes // (1024 * 1024)}MB")

    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    suffix = Path(audio_file.filename or "sample.mp3").suffix or ".mp3"
    sample_path = settings.upload_dir / f"voice_{uuid.uuid4().hex}{suffix}"
    async with aiofiles.open(sample_path, "wb") as f:
        await f.write(audio_data)

    try:
        registration = await client.register_voice(audio_data, name)
    except Exception:
        remove_sample(str(sample_path))
        raise
    voice = services.store.insert_voice(
        current_user["id"],
        name,
        registration.voice_id,
        registration.status,
        sample_path=str(sample_path),
    )
    logger.info("[Voices] user=%s registered voice %s (%s)", current_user["id"], voice["id"], voice["status"])
    return VoiceProfileResponse(**voice)


@api_router.get("/voices/{voice_id}/status", response_model=VoiceProfileResponse)
async def voice_status(
    voice_id: str,
    current_user: Dict = Depends(require_auth),
    services: Services = Depends(get_services),
):
    """Check training progress with the vendor and record it"""
    voice = owned_voice(services, voice_id, current_user)
    settled = (VoiceStatus.READY.value, VoiceStatus.FAILED.value)
    if voice["vendor_voice_id"] and voice["status"] not in settled:
        status = await require_voice_client(services).poll_status(voice["vendor_voice_id"])
        if status != voice["status"]:
            services.store.update_voice_status(voice_id, status)
            voice = services.store.get_voice(voice_id)
    return VoiceProfileResponse(**voice)


@api_router.patch("/voices/{voice_id}", response_model=VoiceProfileResponse)
async def update_voice(
    voice_id: str,
    request: VoiceUpdateRequest,
    current_user: Dict = Depends(require_auth),
    services: Services = Depends(get_services),
):
    owned_voice(services, voice_id, current_user)
    voice = services.store.set_default_voice(current_user["id"], voice_id, request.is_default)
    return VoiceProfileResponse(**voice)


@api_router.delete("/voices/{voice_id}")
async def delete_voice(
    voice_id: str,
    current_user: Dict = Depends(require_auth),
    services: Services = Depends(get_services),
):
    voice = owned_voice(services, voice_id, current_user)

    if voice["vendor_voice_id"] and services.voice_client is not None:
        try:
            await services.voice_client.delete_voice(voice["vendor_voice_id"])
        except (VendorError, aiohttp.ClientError) as e:
            logger.warning("[Voices] Vendor delete failed for %s, removing locally: %s", voice["vendor_voice_id"], e)

    services.store.delete_voice(voice_id)
    remove_sample(voice.get("sample_path"))
    return {"message": "Voice deleted", "voice_id": voice_id}


# ============================================================================
# Credits
# ============================================================================

@api_router.get("/credits", response_model=CreditsResponse)
async def get_credits(current_user: Dict = Depends(require_auth), services: Services = Depends(get_services)):
    transactions = services.store.list_transactions(current_user["id"])
    return CreditsResponse(
        balance=current_user["credits_balance"],
        transactions=[LedgerEntryResponse(**entry) for entry in transactions],
    )


# ============================================================================
# Admin
# ============================================================================

@api_router.get("/admin/prompts")
async def list_prompts(
    type: Optional[str] = None,
    admin: Dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return {"prompts": services.store.list_prompts(type)}


@api_router.post("/admin/prompts")
async def create_prompt(
    request: PromptCreateRequest,
    admin: Dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    prompt = services.store.create_prompt(request.type, request.name, request.content, activate=request.activate)
    logger.info("[Admin] %s created %s prompt %s", admin["email"], request.type, prompt["id"])
    return prompt


@api_router.post("/admin/prompts/{prompt_id}/activate")
async def activate_prompt(
    prompt_id: str,
    admin: Dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return services.store.activate_prompt(prompt_id)


@api_router.get("/admin/settings/music-provider")
async def get_music_provider(admin: Dict = Depends(require_admin), services: Services = Depends(get_services)):
    return {
        "provider": services.orchestrator.active_provider(),
        "providers": available_providers(services.settings),
    }


@api_router.put("/admin/settings/music-provider")
async def set_music_provider(
    request: MusicProviderRequest,
    admin: Dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    provider = request.provider.lower().strip()
    if provider not in PROVIDERS:
        raise ValidationError(f"Unknown music provider: {request.provider}")
    if provider not in services.orchestrator.music_clients:
        raise ValidationError(f"Music provider '{provider}' is not configured")

    services.store.set_setting(SETTING_MUSIC_PROVIDER, provider)
    logger.info("[Admin] %s switched music provider to %s", admin["email"], provider)
    return {"provider": provider}


@api_router.post("/admin/users/{user_id}/credits")
async def adjust_user_credits(
    user_id: str,
    request: CreditAdjustmentRequest,
    admin: Dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    entry = services.store.adjust_credits(user_id, request.amount, request.description)
    logger.info("[Admin] %s adjusted credits for %s by %+d", admin["email"], user_id, request.amount)
    return {"balance": entry["balance_after"], "transaction": LedgerEntryResponse(**entry)}


@api_router.post("/admin/songs/sweep-stalled")
async def sweep_stalled_songs(admin: Dict = Depends(require_admin), services: Services = Depends(get_services)):
    failed = services.store.fail_stalled_songs(services.settings.stalled_after_minutes)
    return {"failed": failed, "count": len(failed)}


# ============================================================================
# FastAPI App Setup
# ============================================================================

async def handle_songforge_error(request: Request, exc: SongForgeError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.message})


def create_app(services: Optional[Services] = None) -> FastAPI:
    if services is None:
        services = build_services(Settings.from_env())
    settings = services.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.store.init_db()
        settings.output_dir.mkdir(parents=True, exist_ok=True)
        if not services.media.available:
            logger.warning("[Startup] %s", FFMPEG_INSTALL_HINT)
        if not services.music_clients:
            logger.warning("[Startup] No music provider configured; set ELEVENLABS_API_KEY or SUNO_API_KEY")
        services.store.fail_stalled_songs(settings.stalled_after_minutes)
        services.queue.start()
        yield
        await services.queue.stop()

    app = FastAPI(
        title="SongForge",
        description="Generate personalized songs with vendor music and cloned voices",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(SongForgeError, handle_songforge_error)
    app.include_router(api_router)

    settings.output_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/outputs", StaticFiles(directory=str(settings.output_dir)), name="outputs")
    return app


app = create_app()


# ============================================================================
# Main Entry Point
# ============================================================================

def run():
    uvicorn.run(
        "songforge.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        reload=os.environ.get("RELOAD", "").lower() in ("1", "true", "yes"),
    )


if __name__ == "__main__":
    run()

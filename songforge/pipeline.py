"""
Hybrid song generation pipeline.

One run takes a pending song through

    pending -> generating_music -> [converting_voice -> [merging]] -> completed

with ``failed`` reachable from every non-terminal step. Music generation
failures are fatal to the song; anything that goes wrong while applying the
user's cloned voice falls back to the unconverted track. Credits are only
spent after the song has been stored as completed.
"""

import logging
from typing import Dict, List, Mapping, Optional, Tuple

from .config import Settings
from .db import Store
from .errors import (
    InsufficientCredits,
    InvalidTransition,
    ProcessingError,
    ToolUnavailable,
    ValidationError,
    VoiceNotReady,
)
from .media import MediaProcessor
from .models import LyricsMode, SongGenerationRequest, SongStatus, VoiceStatus
from .music import MusicClient, default_provider
from .prompts import compose_prompt, default_title
from .storage import ArtifactStore
from .voice import KitsAIClient

logger = logging.getLogger(__name__)

SETTING_MUSIC_PROVIDER = "music_provider"
SONG_CREDIT_COST = 1


def should_force_instrumental(lyrics: Optional[str], lyrics_mode: Optional[str]) -> bool:
    """No lyrics and no request for AI-written lyrics means an instrumental"""
    if lyrics_mode == LyricsMode.INSTRUMENTAL.value:
        return True
    has_lyrics = bool(lyrics and lyrics.strip())
    return not has_lyrics and lyrics_mode != LyricsMode.AI.value


class Orchestrator:
    def __init__(
        self,
        store: Store,
        music_clients: Mapping[str, MusicClient],
        voice_client: Optional[KitsAIClient],
        media: Optional[MediaProcessor],
        artifacts: ArtifactStore,
        settings: Settings,
    ):
        self.store = store
        self.music_clients = dict(music_clients)
        self.voice_client = voice_client
        self.media = media
        self.artifacts = artifacts
        self.settings = settings

    # ------------------------------------------------------------------
    # Collaborator lookups
    # ------------------------------------------------------------------

    def active_provider(self) -> str:
        return self.store.get_setting(SETTING_MUSIC_PROVIDER) or default_provider(self.settings)

    def music_client(self) -> MusicClient:
        provider = self.active_provider()
        client = self.music_clients.get(provider)
        if client is None:
            raise ValidationError(f"Music provider '{provider}' is not configured")
        return client

    def ready_voice(self, voice_profile_id: str, user_id: str) -> Dict:
        """Load a voice profile and insist it can be used right now"""
        voice = self.store.get_voice(voice_profile_id)
        if not voice or voice["user_id"] != user_id:
            raise VoiceNotReady("Voice profile not found")
        if voice["status"] != VoiceStatus.READY.value:
            raise VoiceNotReady(f"Voice profile '{voice['name']}' is {voice['status']}, not ready")
        if not voice["vendor_voice_id"]:
            raise VoiceNotReady(f"Voice profile '{voice['name']}' has no trained model")
        if self.voice_client is None:
            raise VoiceNotReady("Voice conversion is not configured")
        return voice

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def prepare(self, request: SongGenerationRequest, user: Dict) -> Dict:
        """
        Validate a request and create its pending song.

        Everything that can be rejected without spending vendor credit is
        rejected here.
        """
        topic = (request.topic or "").strip()
        genre = (request.genre or "").strip()
        if not topic or not genre:
            raise ValidationError("Topic and genre are required")

        # Songs still in flight will each spend a credit when they complete
        current = self.store.get_user(user["id"]) or user
        available = current["credits_balance"] - self.store.count_active_songs(user["id"])
        if available <= 0:
            raise InsufficientCredits("No credits remaining")

        if request.voice_profile_id:
            self.ready_voice(request.voice_profile_id, user["id"])

        # Fail before creating the song if no vendor can serve it
        self.music_client()

        lyrics = request.lyrics.strip() if request.lyrics and request.lyrics.strip() else None
        prompt = compose_prompt(
            self.store.get_active_prompt("song"),
            topic=topic,
            genre=genre,
            mood=request.mood,
            language=request.language,
            tempo=request.tempo,
            notes=request.important_notes,
            lyrics=lyrics,
        )

        song = self.store.insert_song(
            user["id"],
            self.settings.target_duration_ms,
            title=request.title or default_title(genre, request.mood),
            lyrics=lyrics,
            prompt=prompt,
            genre=genre,
            mood=request.mood,
            language=request.language,
            tempo=request.tempo,
            lyrics_mode=request.lyrics_mode.value if request.lyrics_mode else None,
            voice_profile_id=request.voice_profile_id,
            pitch_shift=request.pitch_shift,
        )
        logger.info("[Pipeline] song=%s created for user=%s", song["id"], user["id"])
        return song

    async def generate_song(self, request: SongGenerationRequest, user: Dict) -> Dict:
        """Synchronous-from-the-caller generation: prepare and run to the end"""
        song = await self.prepare(request, user)
        return await self.run(song["id"])

    async def run(self, song_id: str) -> Dict:
        """Run one pending song through the pipeline and return its final row"""
        song = self.store.require_song(song_id)
        if song["status"] != SongStatus.PENDING.value:
            raise InvalidTransition(f"Song {song_id} is {song['status']}, not pending")

        saved_urls: List[str] = []
        try:
            voice = None
            if song["voice_profile_id"]:
                # Profiles can change between request and run
                voice = self.ready_voice(song["voice_profile_id"], song["user_id"])

            self.store.transition_song(song_id, SongStatus.GENERATING_MUSIC.value)
            audio = await self._generate_music(song)

            extra_fields: Dict = {}
            if voice is not None:
                audio, extra_fields = await self._apply_voice(song, voice, audio, saved_urls)

            duration = await self._duration(audio, song)
            audio_url = await self.artifacts.save(song_id, audio, "mp3")
            saved_urls.append(audio_url)

            song = self.store.transition_song(
                song_id,
                SongStatus.COMPLETED.value,
                audio_url=audio_url,
                duration_seconds=duration,
                error_message=None,
                **extra_fields,
            )
        except Exception as e:
            logger.error("[Pipeline] song=%s failed: %s", song_id, e)
            await self._discard(saved_urls)
            self.store.fail_song(song_id, str(e) or e.__class__.__name__)
            raise

        logger.info("[Pipeline] song=%s completed (%.1fs)", song_id, song["duration_seconds"] or 0)
        self._charge(song)
        return self.store.require_song(song_id)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _generate_music(self, song: Dict) -> bytes:
        client = self.music_client()
        force_instrumental = should_force_instrumental(song["lyrics"], song["lyrics_mode"])
        logger.info(
            "[Pipeline] song=%s generating music via %s (instrumental=%s)",
            song["id"], self.active_provider(), force_instrumental,
        )
        return await client.generate(song["prompt"], song["target_duration_ms"], force_instrumental)

    async def _apply_voice(
        self,
        song: Dict,
        voice: Dict,
        audio: bytes,
        saved_urls: List[str],
    ) -> Tuple[bytes, Dict]:
        """Convert the vocals to the user's voice; on any error keep the original track"""
        song_id = song["id"]
        self.store.transition_song(song_id, SongStatus.CONVERTING_VOICE.value)
        first_stem = len(saved_urls)

        try:
            if self.settings.separate_stems:
                return await self._convert_and_merge(song, voice, audio, saved_urls)

            converted = await self.voice_client.convert_vocals(
                audio,
                voice["vendor_voice_id"],
                song["pitch_shift"],
                voice_status=voice["status"],
            )
            return converted, {}
        except Exception as e:
            logger.warning(
                "[Pipeline] song=%s voice conversion failed, keeping unconverted track: %s",
                song_id, e, exc_info=True,
            )
            # Stems saved before the failure belong to no song
            await self._discard(saved_urls[first_stem:])
            del saved_urls[first_stem:]
            return audio, {}

    async def _convert_and_merge(
        self,
        song: Dict,
        voice: Dict,
        audio: bytes,
        saved_urls: List[str],
    ) -> Tuple[bytes, Dict]:
        song_id = song["id"]
        if self.media is None:
            raise ToolUnavailable("Media processing is not configured")
        self.media.check_available()

        stems = await self.voice_client.separate_vocals(audio)
        converted = await self.voice_client.convert_vocals(
            stems.vocals,
            voice["vendor_voice_id"],
            song["pitch_shift"],
            voice_status=voice["status"],
        )

        self.store.transition_song(song_id, SongStatus.MERGING.value)
        merged = await self.media.mix(
            converted,
            stems.instrumental,
            volume_a=self.settings.mix_vocals_volume,
            volume_b=self.settings.mix_instrumental_volume,
            output_format="mp3",
        )

        instrumental_url = await self.artifacts.save(f"{song_id}_instrumental", stems.instrumental, "mp3")
        saved_urls.append(instrumental_url)
        vocals_url = await self.artifacts.save(f"{song_id}_vocals", stems.vocals, "mp3")
        saved_urls.append(vocals_url)

        return merged, {"instrumental_url": instrumental_url, "original_vocals_url": vocals_url}

    async def _duration(self, audio: bytes, song: Dict) -> float:
        fallback = song["target_duration_ms"] / 1000.0
        if self.media is None:
            return fallback
        try:
            return await self.media.probe_duration(audio)
        except (ProcessingError, ToolUnavailable) as e:
            logger.info("[Pipeline] song=%s duration probe unavailable (%s), using %.1fs", song["id"], e, fallback)
            return fallback

    def _charge(self, song: Dict) -> None:
        """Debit the finished song; a failure here never un-completes the song"""
        try:
            entry = self.store.debit_credit(
                song["user_id"],
                SONG_CREDIT_COST,
                f"Song generation: {song['title']}",
                song_id=song["id"],
            )
        except Exception:
            logger.exception(
                "[Pipeline] song=%s completed but credit debit failed for user=%s",
                song["id"], song["user_id"],
            )
            return
        logger.info("[Credits] user=%s balance=%s after song=%s", song["user_id"], entry["balance_after"], song["id"])

    async def _discard(self, urls: List[str]) -> None:
        for url in urls:
            try:
                await self.artifacts.delete(url)
            except (OSError, ValidationError) as e:
                logger.warning("[Pipeline] Could not remove artifact %s: %s", url, e)

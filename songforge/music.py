"""
Music generation vendors.

Both vendors sit behind the same ``generate(prompt, target_duration_ms,
force_instrumental) -> bytes`` contract:

- ElevenLabs Eleven Music answers the request with the audio itself.
- Suno (via sunoapi.org) accepts a task, which is polled until it finishes.
"""

import logging
from typing import Dict, List, Optional, Protocol

import aiohttp

from .config import MAX_MUSIC_LENGTH_MS, MIN_MUSIC_LENGTH_MS, Settings
from .errors import GenerationFailed, ValidationError, VendorError
from .http import DEFAULT_TIMEOUT, download, ensure_ok
from .polling import PollPolicy

logger = logging.getLogger(__name__)

PROVIDER_ELEVENLABS = "elevenlabs"
PROVIDER_SUNO = "suno"
PROVIDERS = (PROVIDER_ELEVENLABS, PROVIDER_SUNO)


class MusicClient(Protocol):
    async def generate(self, prompt: str, target_duration_ms: int, force_instrumental: bool) -> bytes:
        ...


def clamp_duration(duration_ms: int) -> int:
    """Clamp a requested length to what the vendors accept"""
    clamped = max(MIN_MUSIC_LENGTH_MS, min(MAX_MUSIC_LENGTH_MS, int(duration_ms)))
    if clamped != duration_ms:
        logger.info("[Music] Clamped music length %sms -> %sms", duration_ms, clamped)
    return clamped


def _require_prompt(prompt: Optional[str]) -> str:
    if not prompt or not prompt.strip():
        raise ValidationError("Prompt must not be empty")
    return prompt.strip()


class ElevenLabsClient:
    """Async client for ElevenLabs Eleven Music API"""

    vendor = "ElevenLabs"

    def __init__(self, api_key: str, base_url: str, output_format: str = "mp3_44100_128"):
        if not api_key:
            raise ValidationError("ElevenLabs API key is required")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.output_format = output_format
        self.headers = {
            "xi-api-key": api_key,
            "Content-Type": "application/json",
        }

    async def generate(self, prompt: str, target_duration_ms: int, force_instrumental: bool) -> bytes:
        """Generate music from a text prompt"""
        prompt = _require_prompt(prompt)
        payload = {
            "model_id": "music_v1",
            "prompt": prompt,
            # ElevenLabs calls these music_length_ms / force_instrumental
            "music_length_ms": clamp_duration(target_duration_ms),
            "force_instrumental": force_instrumental,
        }

        logger.info(
            "[ElevenLabs] Composing music_length_ms=%s force_instrumental=%s",
            payload["music_length_ms"], force_instrumental,
        )

        async with aiohttp.ClientSession(timeout=DEFAULT_TIMEOUT) as session:
            async with session.post(
                f"{self.base_url}/music",
                headers=self.headers,
                params={"output_format": self.output_format},
                json=payload,
            ) as response:
                await ensure_ok(self.vendor, response)

                # Some deployments answer with a short-lived asset URL instead of bytes
                if "application/json" in response.headers.get("Content-Type", ""):
                    data = await response.json()
                    audio_url = data.get("audio_url")
                    if not audio_url:
                        raise VendorError(self.vendor, response.status, "Response carried no audio")
                    return await download(self.vendor, session, audio_url)

                audio = await response.read()

        logger.info("[ElevenLabs] Received %d bytes", len(audio))
        return audio


class SunoClient:
    """Async client for the Suno API (sunoapi.org), job-style"""

    vendor = "Suno"

    def __init__(
        self,
        api_key: str,
        base_url: str,
        poll_policy: PollPolicy,
        callback_url: str = "",
        model: str = "V4_5ALL",
    ):
        if not api_key:
            raise ValidationError("Suno API key is required")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.poll_policy = poll_policy
        self.callback_url = callback_url
        self.model = model
        self.headers = {"Authorization": f"Bearer {api_key}"}

    async def generate(
        self,
        prompt: str,
        target_duration_ms: int,
        force_instrumental: bool,
        title: Optional[str] = None,
        style: Optional[str] = None,
    ) -> bytes:
        """Submit a generation task and wait for its first clip"""
        prompt = _require_prompt(prompt)
        # Suno picks its own length; the clamp only keeps the logs honest
        clamp_duration(target_duration_ms)

        payload = {
            "customMode": True,
            "instrumental": force_instrumental,
            "prompt": prompt,
            "title": title or "Untitled Song",
            "model": self.model,
            # Required by the API even though we poll
            "callBackUrl": self.callback_url,
        }
        if style:
            payload["style"] = style

        async with aiohttp.ClientSession(timeout=DEFAULT_TIMEOUT) as session:
            async with session.post(
                f"{self.base_url}/api/v1/generate",
                headers=self.headers,
                json=payload,
            ) as response:
                await ensure_ok(self.vendor, response)
                data = await response.json()

            task_id = self._unwrap(data, response.status).get("taskId")
            if not task_id:
                raise VendorError(self.vendor, response.status, "No taskId in response")
            logger.info("[Suno] Created task %s", task_id)

            async def check(attempt: int) -> Optional[str]:
                return await self._check_task(session, task_id)

            audio_url = await self.poll_policy.poll(check, description=f"Suno task {task_id}")
            audio = await download(self.vendor, session, audio_url)

        logger.info("[Suno] Task %s completed, %d bytes", task_id, len(audio))
        return audio

    async def _check_task(self, session: aiohttp.ClientSession, task_id: str) -> Optional[str]:
        async with session.get(
            f"{self.base_url}/api/v1/generate/record-info",
            headers=self.headers,
            params={"taskId": task_id},
        ) as response:
            await ensure_ok(self.vendor, response)
            data = self._unwrap(await response.json(), response.status)

        status = str(data.get("status", "")).upper()
        if status in ("SUCCESS", "COMPLETED"):
            clips = (data.get("response") or {}).get("sunoData") or []
            if not clips:
                raise GenerationFailed("No audio URL in completed response")
            clip = clips[0]
            url = clip.get("audioUrl") or clip.get("streamAudioUrl")
            if not url:
                raise GenerationFailed("No audio URL in completed response")
            return url
        if status in ("FAILED", "CREATE_TASK_FAILED", "GENERATE_AUDIO_FAILED", "SENSITIVE_WORD_ERROR"):
            raise GenerationFailed(data.get("errorMessage"))
        return None

    def _unwrap(self, envelope: Dict, http_status: int) -> Dict:
        """sunoapi.org wraps every answer in {code, msg, data}"""
        if envelope.get("code") != 200:
            raise VendorError(self.vendor, envelope.get("code") or http_status, envelope.get("msg") or "Unknown error")
        return envelope.get("data") or {}


# ============================================================================
# Provider selection
# ============================================================================

def provider_configured(provider: str, settings: Settings) -> bool:
    if provider == PROVIDER_ELEVENLABS:
        return bool(settings.elevenlabs_api_key)
    if provider == PROVIDER_SUNO:
        return bool(settings.suno_api_key)
    return False


def available_providers(settings: Settings) -> List[Dict]:
    return [
        {"id": PROVIDER_ELEVENLABS, "name": "ElevenLabs", "configured": provider_configured(PROVIDER_ELEVENLABS, settings)},
        {"id": PROVIDER_SUNO, "name": "Suno", "configured": provider_configured(PROVIDER_SUNO, settings)},
    ]


def default_provider(settings: Settings) -> str:
    return PROVIDER_SUNO if settings.suno_api_key else PROVIDER_ELEVENLABS


def build_music_client(provider: str, settings: Settings, poll_policy: Optional[PollPolicy] = None) -> MusicClient:
    """Construct the client for ``provider`` from settings"""
    if provider == PROVIDER_SUNO:
        return SunoClient(
            settings.suno_api_key,
            settings.suno_base_url,
            poll_policy or PollPolicy(settings.poll_max_attempts, settings.poll_interval_seconds, initial_delay=True),
            callback_url=settings.suno_callback_url,
        )
    if provider == PROVIDER_ELEVENLABS:
        return ElevenLabsClient(settings.elevenlabs_api_key, settings.elevenlabs_base_url)
    raise ValidationError(f"Unknown music provider: {provider}")

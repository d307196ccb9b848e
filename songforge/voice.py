"""
Kits.AI voice cloning client.

Training a voice and converting vocals both finish asynchronously on the
vendor side. ``poll_status`` is a single check (callers re-poll on their own
schedule); ``convert_vocals`` and ``separate_vocals`` wait on their jobs under
a PollPolicy.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import aiohttp

from .errors import ConversionFailed, ValidationError, VendorError, VoiceNotReady
from .http import DEFAULT_TIMEOUT, download, ensure_ok
from .polling import PollPolicy

logger = logging.getLogger(__name__)

VOICE_PENDING = "pending"
VOICE_PROCESSING = "processing"
VOICE_READY = "ready"
VOICE_FAILED = "failed"


def map_voice_status(vendor_status: Optional[str]) -> str:
    """Kits.AI reports 'trained' once a model is usable"""
    if vendor_status == "trained":
        return VOICE_READY
    if vendor_status == "failed":
        return VOICE_FAILED
    return VOICE_PROCESSING


@dataclass
class VoiceRegistration:
    voice_id: str
    status: str
    name: Optional[str] = None


@dataclass
class Stems:
    vocals: bytes
    instrumental: bytes


class KitsAIClient:
    """Async client for Kits.AI API"""

    vendor = "Kits.AI"

    def __init__(self, api_key: str, base_url: str, poll_policy: Optional[PollPolicy] = None):
        if not api_key:
            raise ValidationError("Kits.AI API key is required")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.poll_policy = poll_policy or PollPolicy(max_attempts=60, interval=5.0)
        self.headers = {"Authorization": f"Bearer {api_key}"}

    async def register_voice(self, sample_audio: bytes, name: str) -> VoiceRegistration:
        """Upload a voice sample; training continues on the vendor side"""
        if not sample_audio:
            raise ValidationError("Voice sample is empty")
        if not name or not name.strip():
            raise ValidationError("Voice name is required")

        form_data = aiohttp.FormData()
        form_data.add_field("soundFile", sample_audio, filename="voice_sample.mp3", content_type="audio/mpeg")
        form_data.add_field("title", name.strip())

        async with aiohttp.ClientSession(timeout=DEFAULT_TIMEOUT) as session:
            async with session.post(
                f"{self.base_url}/voice-models",
                headers=self.headers,
                data=form_data,
            ) as response:
                await ensure_ok(self.vendor, response)
                data = await response.json()

        voice_id = data.get("id")
        if voice_id is None:
            raise VendorError(self.vendor, 200, "No voice model id in response")

        registration = VoiceRegistration(
            voice_id=str(voice_id),
            status=map_voice_status(data.get("status")),
            name=data.get("title"),
        )
        logger.info("[Kits.AI] Registered voice %s (%s)", registration.voice_id, registration.status)
        return registration

    async def poll_status(self, voice_id: str) -> str:
        """One status check for a voice model"""
        async with aiohttp.ClientSession(timeout=DEFAULT_TIMEOUT) as session:
            async with session.get(
                f"{self.base_url}/voice-models/{voice_id}",
                headers=self.headers,
            ) as response:
                await ensure_ok(self.vendor, response)
                data = await response.json()
        return map_voice_status(data.get("status"))

    async def list_voices(self, my_models_only: bool = True) -> List[Dict]:
        async with aiohttp.ClientSession(timeout=DEFAULT_TIMEOUT) as session:
            async with session.get(
                f"{self.base_url}/voice-models",
                headers=self.headers,
                params={"myModels": str(my_models_only).lower()},
            ) as response:
                await ensure_ok(self.vendor, response)
                data = await response.json()

        models = data.get("data", []) if isinstance(data, dict) else data
        return [
            {"voice_id": str(m.get("id")), "name": m.get("title"), "status": map_voice_status(m.get("status"))}
            for m in models
        ]

    async def delete_voice(self, voice_id: str) -> None:
        async with aiohttp.ClientSession(timeout=DEFAULT_TIMEOUT) as session:
            async with session.delete(
                f"{self.base_url}/voice-models/{voice_id}",
                headers=self.headers,
            ) as response:
                await ensure_ok(self.vendor, response)
        logger.info("[Kits.AI] Deleted voice %s", voice_id)

    async def convert_vocals(
        self,
        audio: bytes,
        voice_id: str,
        pitch_shift: float = 0,
        voice_status: Optional[str] = None,
    ) -> bytes:
        """Convert a vocal track into the cloned voice and return the result"""
        if voice_status is not None and voice_status != VOICE_READY:
            raise VoiceNotReady(f"Voice {voice_id} is {voice_status}, not ready")
        if not voice_id:
            raise VoiceNotReady("Voice has no vendor model id")
        if not audio:
            raise ValidationError("Nothing to convert")

        form_data = aiohttp.FormData()
        form_data.add_field("soundFile", audio, filename="vocals.mp3", content_type="audio/mpeg")
        form_data.add_field("voiceModelId", str(voice_id))
        if pitch_shift:
            form_data.add_field("pitchShift", str(pitch_shift))

        async with aiohttp.ClientSession(timeout=DEFAULT_TIMEOUT) as session:
            async with session.post(
                f"{self.base_url}/voice-conversions",
                headers=self.headers,
                data=form_data,
            ) as response:
                await ensure_ok(self.vendor, response)
                data = await response.json()

            job_id = data.get("id")
            if job_id is None:
                raise VendorError(self.vendor, 200, "No conversion job id in response")
            logger.info("[Kits.AI] Conversion %s started for voice %s", job_id, voice_id)

            result = await self._wait_for_job(session, f"/voice-conversions/{job_id}", "voice conversion")
            output_url = result.get("outputFileUrl") or result.get("outputUrl")
            if not output_url:
                raise ConversionFailed("Completed conversion has no output file")
            converted = await download(self.vendor, session, output_url)

        logger.info("[Kits.AI] Conversion %s completed, %d bytes", job_id, len(converted))
        return converted

    async def separate_vocals(self, audio: bytes) -> Stems:
        """Split a mixed track into vocals and instrumental"""
        if not audio:
            raise ValidationError("Nothing to separate")

        form_data = aiohttp.FormData()
        form_data.add_field("soundFile", audio, filename="song.mp3", content_type="audio/mpeg")

        async with aiohttp.ClientSession(timeout=DEFAULT_TIMEOUT) as session:
            async with session.post(
                f"{self.base_url}/vocal-separations",
                headers=self.headers,
                data=form_data,
            ) as response:
                await ensure_ok(self.vendor, response)
                data = await response.json()

            job_id = data.get("id")
            if job_id is None:
                raise VendorError(self.vendor, 200, "No separation job id in response")
            logger.info("[Kits.AI] Vocal separation %s started", job_id)

            result = await self._wait_for_job(session, f"/vocal-separations/{job_id}", "vocal separation")
            vocals_url = result.get("vocalsFileUrl")
            instrumental_url = result.get("instrumentalFileUrl")
            if not vocals_url or not instrumental_url:
                raise ConversionFailed("Separation finished without both stems")

            vocals = await download(self.vendor, session, vocals_url)
            instrumental = await download(self.vendor, session, instrumental_url)

        return Stems(vocals=vocals, instrumental=instrumental)

    async def _wait_for_job(self, session: aiohttp.ClientSession, endpoint: str, description: str) -> Dict:
        """Poll job endpoint until completion"""

        async def check(attempt: int) -> Optional[Dict]:
            async with session.get(f"{self.base_url}{endpoint}", headers=self.headers) as response:
                await ensure_ok(self.vendor, response)
                data = await response.json()

            status = data.get("status")
            if status in ("completed", "success"):
                return data
            if status in ("failed", "error", "cancelled"):
                raise ConversionFailed(data.get("error") or data.get("message"))
            return None

        return await self.poll_policy.poll(check, description=f"Kits.AI {description}")

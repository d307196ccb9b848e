"""
Lyrics writing.

Uses OpenAI chat completions when a key is configured, otherwise falls back
to simple template lyrics so the create flow still works offline.
"""

import json
import logging
from typing import Dict, Optional

import aiohttp

from .errors import ValidationError, VendorError
from .http import DEFAULT_TIMEOUT, ensure_ok

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a professional songwriter. Create song lyrics with proper structure "
    "(verses, chorus, bridge). Use [Verse 1], [Chorus], [Verse 2], [Bridge] markers. "
    "The lyrics should be creative, emotional, and fitting for the genre and mood."
)

LANGUAGE_INSTRUCTIONS = {
    "hebrew": "Write the lyrics in Hebrew.",
    "spanish": "Write the lyrics in Spanish.",
    "french": "Write the lyrics in French.",
}


def build_user_prompt(
    topic: str,
    language: Optional[str] = None,
    purpose: Optional[str] = None,
    notes: Optional[str] = None,
    genre: Optional[str] = None,
    mood: Optional[str] = None,
) -> str:
    lines = [
        f"Write song lyrics about: {topic}",
        "",
        LANGUAGE_INSTRUCTIONS.get((language or "").lower(), "Write the lyrics in English."),
    ]
    if purpose:
        lines.append(f"The song is for a {purpose} occasion.")
    if mood:
        lines.append(f"The mood should be {mood}.")
    if genre:
        lines.append(f"The genre is {genre}.")
    if notes:
        lines.append(f"Important details to include: {notes}")
    lines += [
        "",
        "Format the lyrics with section markers like [Verse 1], [Chorus], etc. Also suggest a title for the song.",
        "",
        "Respond in this exact JSON format:",
        '{"title": "Song Title Here", "lyrics": "full lyrics with section markers"}',
    ]
    return "\n".join(lines)


def template_lyrics(
    topic: str,
    mood: Optional[str] = None,
    purpose: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict[str, str]:
    """Offline fallback used when no LLM is configured"""
    feeling = {
        "happy": "Joy is in the air tonight",
        "sad": "Tears that tell a story true",
        "romantic": "Every heartbeat calls your name",
        "energetic": "Turn it up and feel the fire",
    }.get((mood or "").lower(), "Feelings running deep and wide")
    occasion = {
        "birthday": "Happy birthday, here's to you",
        "love": "A love that's real and true",
        "wedding": "Two hearts becoming one",
    }.get((purpose or "").lower(), "Dreams are coming true")

    chorus = f"[Chorus]\n{topic}\nThis is who we are\n{feeling}"
    lyrics = "\n\n".join([
        f"[Verse 1]\nA song about {topic}\nWords born from the heart\n{notes or 'Moments we will not forget'}",
        chorus,
        f"[Verse 2]\nEvery brand new day\nBrings another hope\n{occasion}",
        chorus,
        f"[Bridge]\nAnd when the night is over\nWe'll still be singing of {topic}",
        chorus,
    ])
    title = " ".join(topic.split()[:4]).title()
    return {"title": title, "lyrics": lyrics}


class LyricsClient:
    """Async client for OpenAI chat completions, used for lyrics"""

    vendor = "OpenAI"

    def __init__(self, api_key: str, base_url: str, model: str = "gpt-4o-mini"):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def generate(
        self,
        topic: str,
        language: Optional[str] = None,
        purpose: Optional[str] = None,
        notes: Optional[str] = None,
        genre: Optional[str] = None,
        mood: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ) -> Dict[str, str]:
        if not topic or not topic.strip():
            raise ValidationError("Topic is required")

        if not self.configured:
            logger.info("[Lyrics] No OpenAI key configured, using template lyrics")
            return template_lyrics(topic.strip(), mood=mood, purpose=purpose, notes=notes)

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt or DEFAULT_SYSTEM_PROMPT},
                {"role": "user", "content": build_user_prompt(topic.strip(), language, purpose, notes, genre, mood)},
            ],
            "temperature": 0.8,
            "response_format": {"type": "json_object"},
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        async with aiohttp.ClientSession(timeout=DEFAULT_TIMEOUT) as session:
            async with session.post(f"{self.base_url}/chat/completions", headers=headers, json=payload) as response:
                await ensure_ok(self.vendor, response)
                data = await response.json()

        try:
            content = data["choices"][0]["message"]["content"]
            parsed = json.loads(content)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise VendorError(self.vendor, 200, f"Unreadable lyrics response: {e}")

        if not parsed.get("lyrics"):
            raise VendorError(self.vendor, 200, "Response contained no lyrics")

        return {"title": parsed.get("title") or topic.strip(), "lyrics": parsed["lyrics"]}

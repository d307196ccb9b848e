"""Prompt composition for the music vendors."""

from typing import Dict, Optional


def context_strings(
    language: Optional[str] = None,
    tempo: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict[str, str]:
    lang = (language or "").strip()
    language_context = f"in {lang}" if lang and lang.lower() != "english" else ""

    tempo_context = ""
    if tempo == "slow":
        tempo_context = "at a slow tempo"
    elif tempo == "fast":
        tempo_context = "at a fast tempo"

    notes_context = f"incorporating: {notes.strip()}" if notes and notes.strip() else ""

    return {
        "languageContext": language_context,
        "tempoContext": tempo_context,
        "notesContext": notes_context,
    }


def fill_template(template: str, values: Dict[str, str]) -> str:
    """Replace {{name}} placeholders; unknown ones are left as they are"""
    result = template
    for key, value in values.items():
        result = result.replace("{{" + key + "}}", value or "")
    return result


def compose_prompt(
    template: Optional[str],
    topic: str,
    genre: str,
    mood: Optional[str] = None,
    language: Optional[str] = None,
    tempo: Optional[str] = None,
    notes: Optional[str] = None,
    lyrics: Optional[str] = None,
) -> str:
    """Build the full generation prompt from the active template or the fallback format"""
    contexts = context_strings(language, tempo, notes)

    if template:
        values = {"mood": mood or "", "genre": genre or "", "topic": topic or ""}
        values.update(contexts)
        prompt = fill_template(template, values)
    else:
        parts = [
            f"A {mood} {genre} song" if mood else f"A {genre} song",
            f"about {topic}",
            contexts["languageContext"],
            contexts["tempoContext"],
            contexts["notesContext"],
        ]
        prompt = ", ".join(part for part in parts if part)

    if lyrics and lyrics.strip():
        prompt += f"\n\nLyrics:\n{lyrics.strip()}"

    return prompt


def default_title(genre: str, mood: Optional[str] = None) -> str:
    return f"{genre} {mood} song" if mood else f"{genre} song"

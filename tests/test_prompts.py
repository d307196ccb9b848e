from songforge.lyrics import build_user_prompt, template_lyrics
from songforge.prompts import compose_prompt, context_strings, default_title, fill_template


def test_fallback_prompt():
    prompt = compose_prompt(None, topic="sunset drive", genre="pop", mood="happy", language="english")
    assert prompt == "A happy pop song, about sunset drive"


def test_fallback_prompt_with_all_context():
    prompt = compose_prompt(
        None,
        topic="my grandmother",
        genre="folk",
        mood="sad",
        language="hebrew",
        tempo="slow",
        notes="her garden",
    )
    assert prompt == "A sad folk song, about my grandmother, in hebrew, at a slow tempo, incorporating: her garden"


def test_template_prompt_leaves_unknown_placeholders():
    template = "{{mood}} {{genre}} on {{topic}} {{tempoContext}} {{instrument}}"
    prompt = compose_prompt(template, topic="rain", genre="jazz", mood="calm", tempo="fast")
    assert prompt == "calm jazz on rain at a fast tempo {{instrument}}"


def test_lyrics_appended():
    prompt = compose_prompt(None, topic="rain", genre="jazz", lyrics="  Drip drop  ")
    assert prompt == "A jazz song, about rain\n\nLyrics:\nDrip drop"


def test_context_strings_medium_tempo_and_english_are_empty():
    assert context_strings("English", "medium", "  ") == {
        "languageContext": "",
        "tempoContext": "",
        "notesContext": "",
    }


def test_fill_template_replaces_every_occurrence():
    assert fill_template("{{a}}-{{a}}-{{b}}", {"a": "x", "b": None}) == "x-x-"


def test_default_title():
    assert default_title("pop", "happy") == "pop happy song"
    assert default_title("pop") == "pop song"


def test_template_lyrics_sections():
    result = template_lyrics("road trip", mood="happy", purpose="birthday")
    lyrics = result["lyrics"]
    assert result["title"] == "Road Trip"
    for marker in ("[Verse 1]", "[Chorus]", "[Verse 2]", "[Bridge]"):
        assert marker in lyrics
    assert lyrics.count("[Chorus]") == 3
    assert "Joy is in the air tonight" in lyrics
    assert "Happy birthday, here's to you" in lyrics


def test_lyrics_user_prompt_mentions_language_and_notes():
    prompt = build_user_prompt("the sea", language="french", notes="mention the lighthouse", mood="calm")
    assert "Write the lyrics in French." in prompt
    assert "Important details to include: mention the lighthouse" in prompt
    assert "The mood should be calm." in prompt

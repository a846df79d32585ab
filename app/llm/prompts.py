"""
Prompts for project draft generation.
User text is passed as data in the user message, never spliced into the system prompt.
"""
from typing import Optional

SYSTEM_PROMPT = """You design small browser games built from a fixed project template.
Given a short description, propose the store listing and the runtime tuning for the game.

Output ONLY one JSON object, no markdown, no explanations, matching:
{
  "name": "short title, at most 60 characters",
  "description": "one paragraph, at most 400 characters",
  "type": "one word genre such as platformer, runner, shooter, puzzle",
  "tags": ["3 to 8 lowercase tags"],
  "mediaPrompts": {"cover": "...", "screenshots": ["...", "..."], "video": "..."},
  "config": {
    "timeScale": 0.5-2.0,
    "difficulty": 0-1,
    "theme": "max 40 chars",
    "speed": 0-20,
    "genre": "max 30 chars",
    "assetsType": "max 30 chars",
    "mechanics": ["up to 12 short items"],
    "primaryColor": "#RRGGBB",
    "secondaryColor": "#RRGGBB",
    "accentColor": "#RRGGBB",
    "notes": "max 200 chars"
  }
}"""

STRICT_JSON_SUFFIX = (
    "\n\nYour previous answer was not valid JSON. "
    "Reply with the JSON object only, starting with { and ending with }."
)


def build_user_prompt(description: str, notes: Optional[str] = None) -> str:
    """User message carrying the caller's description and notes."""
    parts = [f"Game description:\n{description.strip()}"]
    if notes and notes.strip():
        parts.append(f"Extra notes:\n{notes.strip()}")
    return "\n\n".join(parts)

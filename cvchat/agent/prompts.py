"""System prompt for the free-tier CV assistant."""

from typing import Any

from cvchat.personality.loader import load_personality


def build_system_prompt(
    language: str = "en", personality: dict[str, Any] | None = None
) -> str:
    """Build the system prompt from the personality config.

    Args:
        language: Target language code used to pick the greeting.
        personality: Pre-loaded personality dict. Loads default if None.
    """
    if personality is None:
        personality = load_personality()

    persona_block = personality.get("system_prompt", "").strip()
    name = personality.get("name", "CVLetterAI")

    greeting_config = personality.get("greeting", "")
    if isinstance(greeting_config, dict):
        greeting = greeting_config.get(language, greeting_config.get("en", "Hello!"))
    else:
        greeting = greeting_config

    return f"""You are {name}.

{persona_block}

## Greeting
When starting a new conversation, greet the user with: "{greeting}"

## Free Plan
- The user is on the free plan with a small daily message allowance
- Keep answers short and complete: under 3 paragraphs unless more detail is requested
- Never split an answer across several replies
"""

"""Prompt validation for image generation.

Validates text prompts before a job is created and sent to the provider.
"""

MAX_PROMPT_LENGTH = 2000


def validate_prompt(prompt: str) -> str:
    """Validate prompt text for image generation.

    Args:
        prompt: Text prompt from the user

    Returns:
        Prompt with surrounding whitespace removed

    Raises:
        ValueError: If prompt is empty, None, or exceeds 2000 characters
    """
    if not isinstance(prompt, str):
        raise ValueError(f"Prompt must be a string, got {type(prompt).__name__}")

    prompt = prompt.strip()
    if not prompt:
        raise ValueError("Prompt cannot be empty")

    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValueError(
            f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH} characters (got {len(prompt)})"
        )

    return prompt

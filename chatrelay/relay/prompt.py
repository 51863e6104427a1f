USER_ROLE_MARKER = "User:"


def build_prompt(message: str, system_prompt: str | None) -> str:
    """Compose the single-turn prompt sent to the generation backend.

    Without a tenant prompt the message goes out verbatim. With one, the tenant prompt
    comes first and the message follows a blank line and the ``User:`` marker.
    """
    if not system_prompt or not system_prompt.strip():
        return message
    return f"{system_prompt.strip()}\n\n{USER_ROLE_MARKER} {message}"

import json

from chatrelay.providers.base import ProviderError

TROLL_MARKERS = ("idiot", "stupid", "noob", "trash")


class StubProvider:
    """Offline provider used in development.

    Replies echo the last line of the prompt. A prompt containing ``error-502`` raises
    a provider error so failure paths can be exercised without a network.
    """

    name = "stub"

    async def generate(self, prompt: str, *, json_output: bool = False) -> str:
        if "error-502" in prompt:
            raise ProviderError(
                status_code=502,
                code="provider_upstream_error",
                message="Stub provider simulated upstream failure",
            )
        if json_output:
            lowered = prompt.lower()
            return json.dumps(
                {
                    "topic": "general",
                    "sentiment": "neutral",
                    "is_troll": any(marker in lowered for marker in TROLL_MARKERS),
                }
            )
        last_line = prompt.strip().splitlines()[-1] if prompt.strip() else ""
        return f"Stub response: {last_line[:120]}"

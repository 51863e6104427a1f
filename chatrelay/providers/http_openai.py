"""HTTP provider for OpenAI-compatible endpoints."""

from chatrelay.providers.base import empty_output_error, post_json


class HTTPOpenAIProvider:
    """Provider that calls any OpenAI-compatible chat completions endpoint."""

    name = "openai_compatible"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        timeout_s: float = 30.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._timeout = timeout_s

    async def generate(self, prompt: str, *, json_output: bool = False) -> str:
        body: dict[str, object] = {
            "model": self._model,
            "messages": [{"role": "user", "content": prompt}],
        }
        if json_output:
            body["response_format"] = {"type": "json_object"}

        result = await post_json(
            f"{self._base_url}/v1/chat/completions",
            body,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            timeout_s=self._timeout,
        )
        text = self.extract_text(result)
        if not text:
            raise empty_output_error(self.name)
        return text

    @staticmethod
    def extract_text(result: dict[str, object]) -> str:
        choices = result.get("choices")
        if not isinstance(choices, list) or not choices:
            return ""
        first = choices[0]
        if not isinstance(first, dict):
            return ""
        message = first.get("message")
        if not isinstance(message, dict):
            return ""
        content = message.get("content")
        return content.strip() if isinstance(content, str) else ""

"""Gemini ``generateContent`` adapter."""

from chatrelay.providers.base import empty_output_error, post_json


class GeminiProvider:
    """Single-turn text generation against the Generative Language REST API."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://generativelanguage.googleapis.com",
        timeout_s: float = 30.0,
    ):
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_s

    async def generate(self, prompt: str, *, json_output: bool = False) -> str:
        body: dict[str, object] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        }
        if json_output:
            body["generationConfig"] = {"responseMimeType": "application/json"}

        result = await post_json(
            f"{self._base_url}/v1beta/models/{self._model}:generateContent",
            body,
            headers={"Content-Type": "application/json"},
            timeout_s=self._timeout,
            params={"key": self._api_key},
        )
        text = self.extract_text(result)
        if not text:
            raise empty_output_error(self.name)
        return text

    @staticmethod
    def extract_text(result: dict[str, object]) -> str:
        candidates = result.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return ""
        first = candidates[0]
        if not isinstance(first, dict):
            return ""
        content = first.get("content")
        if not isinstance(content, dict):
            return ""
        parts = content.get("parts")
        if not isinstance(parts, list):
            return ""
        texts = [
            part["text"]
            for part in parts
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        ]
        return "".join(texts).strip()

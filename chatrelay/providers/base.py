from typing import Protocol

import httpx


class ProviderError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        error_type: str = "provider",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.error_type = error_type


class GenerationProvider(Protocol):
    name: str

    async def generate(self, prompt: str, *, json_output: bool = False) -> str:
        """Return the generated text for a single-turn prompt."""


def raise_for_status(resp: httpx.Response) -> None:
    if resp.status_code == 429:
        raise ProviderError(
            status_code=429,
            code="provider_rate_limited",
            message="Provider rate limit exceeded",
            error_type="rate_limit",
        )
    if resp.status_code in {502, 503}:
        raise ProviderError(
            status_code=resp.status_code,
            code="provider_upstream_error",
            message=f"Provider returned {resp.status_code}",
        )
    if resp.status_code >= 400:
        raise ProviderError(
            status_code=resp.status_code,
            code="provider_error",
            message=f"Provider returned {resp.status_code}: {resp.text[:200]}",
        )


async def post_json(
    url: str,
    body: dict[str, object],
    headers: dict[str, str],
    timeout_s: float,
    params: dict[str, str] | None = None,
) -> dict[str, object]:
    try:
        async with httpx.AsyncClient(timeout=timeout_s) as client:
            resp = await client.post(url, json=body, headers=headers, params=params)
    except httpx.TimeoutException as exc:
        raise ProviderError(
            status_code=503,
            code="provider_timeout",
            message=f"Provider request timed out: {exc}",
        ) from exc
    except httpx.ConnectError as exc:
        raise ProviderError(
            status_code=502,
            code="provider_connection_error",
            message=f"Cannot connect to provider: {exc}",
        ) from exc
    except httpx.HTTPError as exc:
        raise ProviderError(
            status_code=502,
            code="provider_transport_error",
            message=f"Provider request failed: {exc}",
        ) from exc

    raise_for_status(resp)

    try:
        result = resp.json()
    except ValueError as exc:
        raise ProviderError(
            status_code=502,
            code="provider_invalid_response",
            message="Provider returned a non-JSON body",
        ) from exc
    if not isinstance(result, dict):
        raise ProviderError(
            status_code=502,
            code="provider_invalid_response",
            message="Provider returned an unexpected payload shape",
        )
    return result


def empty_output_error(provider: str) -> ProviderError:
    return ProviderError(
        status_code=502,
        code="provider_empty_output",
        message=f"{provider} response did not contain any text",
    )

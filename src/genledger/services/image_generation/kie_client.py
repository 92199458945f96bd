"""KIE API client for image generation with error classification."""

from typing import Any, Optional

import httpx
import structlog

from genledger.models.generation_job import GenerationRequest
from genledger.services.exceptions import (
    InvalidRequestError,
    ProviderUnavailableError,
    RateLimitedError,
)
from genledger.services.image_generation.provider import NormalizedStatus, normalize_kie_record

logger = structlog.get_logger()


def classify_status(code: int, message: str) -> None:
    """Raise the error matching a KIE HTTP status or body `code`.

    KIE reports some failures with HTTP 200 and an error `code` in the body,
    so the same rules apply to both.

    Classification rules:
        - 2xx → no error
        - 429 (rate limit) → RateLimitedError (transient)
        - 402 (provider account out of credits) → ProviderUnavailableError (transient)
        - 5xx → ProviderUnavailableError (transient)
        - Other 4xx → InvalidRequestError (permanent)
    """
    if 200 <= code < 300:
        return
    if code == 429:
        raise RateLimitedError(f"Rate limit exceeded: {message}")
    if code == 402:
        raise ProviderUnavailableError(f"Provider account has insufficient credits: {message}")
    if code >= 500:
        raise ProviderUnavailableError(f"Service unavailable ({code}): {message}")
    if 400 <= code < 500:
        raise InvalidRequestError(f"Request rejected ({code}): {message}")
    raise ProviderUnavailableError(f"Unexpected response ({code}): {message}")


class KieClient:
    """Provider gateway for the KIE jobs API (createTask / recordInfo)."""

    name = "kie"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.kie.ai/api/v1/jobs",
        model: str = "nano-banana-pro",
        callback_url: str = "",
        prompt_instruction: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize KIE client.

        Args:
            api_key: KIE API key (from KIE_API_KEY env var)
            base_url: Jobs API base URL
            model: Model identifier sent with every task
            callback_url: Public URL KIE posts task updates to (optional)
            prompt_instruction: Text appended to every prompt
            timeout: Per-request network timeout in seconds
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.callback_url = callback_url
        self.prompt_instruction = prompt_instruction
        self.timeout = timeout
        self.transport = transport
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def build_prompt(self, prompt: str) -> str:
        prompt = prompt.strip()
        if not self.prompt_instruction:
            return prompt
        return f"{prompt}. {self.prompt_instruction}"

    async def submit(self, request: GenerationRequest) -> str:
        """Create a KIE task.

        Returns:
            KIE task id

        Raises:
            TransientError: Network timeout, rate limit (429), 402, 5xx
            PermanentError: Invalid request or credentials (other 4xx)
        """
        payload: dict[str, Any] = {
            "model": self.model,
            "input": {
                "prompt": self.build_prompt(request.prompt),
                "image_input": list(request.image_inputs),
                "aspect_ratio": request.aspect_ratio,
                "resolution": request.resolution,
                "output_format": request.output_format,
            },
        }
        if self.callback_url:
            payload["callBackUrl"] = self.callback_url

        body = await self._request("POST", "/createTask", json=payload)
        task_id = (body.get("data") or {}).get("taskId")
        if not task_id:
            raise ProviderUnavailableError(f"createTask response has no taskId: {body}")

        logger.info("kie.task_created", task_id=task_id, model=self.model)
        return str(task_id)

    async def fetch_status(self, task_id: str) -> NormalizedStatus:
        """Fetch a task record and normalize it.

        Raises:
            TransientError: Network timeout, rate limit (429), 402, 5xx
            PermanentError: Unknown task or invalid credentials (other 4xx)
        """
        body = await self._request("GET", "/recordInfo", params={"taskId": task_id})
        record = body.get("data")
        if not isinstance(record, dict):
            # No record yet; keep polling
            return normalize_kie_record({})
        return normalize_kie_record(record)

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(
                    method, f"{self.base_url}{path}", headers=self.headers, **kwargs
                )
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(
                f"Request timeout after {self.timeout}s: {str(e)}"
            ) from e
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(f"Network error: {str(e)}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        message = body.get("msg", "") if isinstance(body, dict) else response.text[:200]
        classify_status(response.status_code, message)

        if not isinstance(body, dict):
            raise ProviderUnavailableError(f"Malformed response from KIE: {response.text[:200]}")

        code = body.get("code")
        if isinstance(code, int):
            classify_status(code, message)

        return body

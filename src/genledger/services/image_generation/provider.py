"""Provider-agnostic view of image generation tasks.

Each provider reports task progress in its own vocabulary. Adapters turn the
provider's raw record into a NormalizedStatus so the reconciler only ever
deals with four states.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol

from genledger.models.generation_job import GenerationRequest


class ProviderState(str, Enum):
    """Normalized provider task state."""

    WAITING = "waiting"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class NormalizedStatus:
    """Task status as seen by the reconciler.

    result_ref is only set for SUCCESS; error_detail only for FAILED and is
    kept internal (never returned to users).
    """

    state: ProviderState
    result_ref: Optional[str] = None
    error_detail: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (ProviderState.SUCCESS, ProviderState.FAILED)


class ProviderGateway(Protocol):
    """Outbound port to an image generation provider.

    Implementations raise TransientError subclasses for retryable failures
    and PermanentError subclasses for rejected requests. They never touch
    the database.
    """

    name: str

    async def submit(self, request: GenerationRequest) -> str:
        """Create a provider task and return its task id."""
        ...

    async def fetch_status(self, task_id: str) -> NormalizedStatus:
        """Fetch and normalize the current status of a provider task."""
        ...


# KIE raw state -> normalized state. Anything not listed is treated as still running.
_KIE_STATES: dict[str, ProviderState] = {
    "waiting": ProviderState.WAITING,
    "queuing": ProviderState.WAITING,
    "generating": ProviderState.PROCESSING,
    "processing": ProviderState.PROCESSING,
    "success": ProviderState.SUCCESS,
    "fail": ProviderState.FAILED,
    "failed": ProviderState.FAILED,
}


def normalize_kie_record(record: dict[str, Any]) -> NormalizedStatus:
    """Map a KIE task record (recordInfo `data` or callback `data`) to NormalizedStatus.

    Rules:
        - Unknown states -> PROCESSING
        - success with a result URL -> SUCCESS
        - success without a parseable result URL -> PROCESSING (result still pending)
        - fail/failed -> FAILED with failMsg/failCode as error detail

    Args:
        record: The `data` object of a KIE response

    Returns:
        Normalized status
    """
    raw_state = str(record.get("state") or "").strip().lower()
    state = _KIE_STATES.get(raw_state, ProviderState.PROCESSING)

    if state == ProviderState.SUCCESS:
        result_url = extract_result_url(record.get("resultJson"))
        if result_url is None:
            return NormalizedStatus(state=ProviderState.PROCESSING)
        return NormalizedStatus(state=ProviderState.SUCCESS, result_ref=result_url)

    if state == ProviderState.FAILED:
        detail = record.get("failMsg") or record.get("failCode") or "Generation failed"
        return NormalizedStatus(state=ProviderState.FAILED, error_detail=str(detail))

    return NormalizedStatus(state=state)


def extract_result_url(result_json: Any) -> Optional[str]:
    """Return the first entry of `resultUrls` from a KIE resultJson value.

    resultJson is usually a JSON string, and some responses wrap it in a
    second layer of string encoding, so parsing is attempted up to twice.
    Malformed content yields None.
    """
    parsed = result_json
    for _ in range(2):
        if not isinstance(parsed, str):
            break
        try:
            parsed = json.loads(parsed)
        except ValueError:
            return None

    if not isinstance(parsed, dict):
        return None

    urls = parsed.get("resultUrls")
    if isinstance(urls, list) and urls and isinstance(urls[0], str) and urls[0]:
        return urls[0]
    return None

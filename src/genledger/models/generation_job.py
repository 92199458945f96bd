"""GenerationJob entity - Image generation request with lifecycle state tracking."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, field_validator
from sqlalchemy import JSON, CheckConstraint, Column
from sqlmodel import Field, SQLModel

from genledger.core.timezone import DateTimeUTC, utcnow
from genledger.services.image_generation.prompt_validator import validate_prompt


class JobState(str, Enum):
    """Generation job lifecycle state."""

    CREATED = "created"
    SUBMITTING = "submitting"
    WAITING = "waiting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.EXPIRED})
PENDING_STATES = frozenset({JobState.WAITING, JobState.PROCESSING})

ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.CREATED: frozenset({JobState.SUBMITTING, JobState.FAILED, JobState.EXPIRED}),
    # SUBMITTING -> CREATED puts the job back in the queue after a transient provider error
    JobState.SUBMITTING: frozenset(
        {JobState.CREATED, JobState.WAITING, JobState.FAILED, JobState.EXPIRED}
    ),
    JobState.WAITING: frozenset(
        {JobState.PROCESSING, JobState.SUCCEEDED, JobState.FAILED, JobState.EXPIRED}
    ),
    JobState.PROCESSING: frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.EXPIRED}),
    JobState.SUCCEEDED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.EXPIRED: frozenset(),
}


class InvalidStateTransition(Exception):
    """Raised when attempting a job state transition outside the lifecycle."""

    pass


def ensure_transition(from_state: JobState, to_state: JobState) -> None:
    """Validate a lifecycle edge.

    Raises:
        InvalidStateTransition: If the edge is not part of the job state machine
    """
    if to_state not in ALLOWED_TRANSITIONS[from_state]:
        if from_state in TERMINAL_STATES:
            raise InvalidStateTransition(
                f"Cannot transition from terminal state {from_state.value}."
            )
        raise InvalidStateTransition(
            f"Cannot transition from {from_state.value} to {to_state.value}."
        )


class GenerationRequest(BaseModel):
    """Prompt and generation parameters, immutable once the job is created."""

    prompt: str
    image_inputs: list[str] = []
    aspect_ratio: str = "1:1"
    resolution: str = "1K"
    output_format: str = "png"

    @field_validator("prompt")
    @classmethod
    def validate_prompt_text(cls, v: str) -> str:
        return validate_prompt(v)

    @field_validator("aspect_ratio")
    @classmethod
    def validate_aspect_ratio(cls, v: str) -> str:
        valid = {"1:1", "2:3", "3:2", "3:4", "4:3", "4:5", "5:4", "9:16", "16:9", "21:9", "auto"}
        if v not in valid:
            raise ValueError(f"Unsupported aspect ratio: {v}")
        return v

    @field_validator("resolution")
    @classmethod
    def validate_resolution(cls, v: str) -> str:
        if v not in {"1K", "2K", "4K"}:
            raise ValueError(f"Unsupported resolution: {v}")
        return v

    @field_validator("output_format")
    @classmethod
    def validate_output_format(cls, v: str) -> str:
        if v not in {"png", "jpg"}:
            raise ValueError(f"Unsupported output format: {v}")
        return v

    @field_validator("image_inputs")
    @classmethod
    def validate_image_inputs(cls, v: list[str]) -> list[str]:
        if len(v) > 8:
            raise ValueError(f"At most 8 input images are supported (got {len(v)})")
        for url in v:
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"Input image must be an http(s) URL: {url}")
        return v


class GenerationJob(SQLModel, table=True):
    """GenerationJob tracks one provider task and the credits reserved for it."""

    __tablename__ = "generation_jobs"  # type: ignore[assignment]
    __table_args__ = (CheckConstraint("cost_estimate > 0", name="ck_generation_jobs_cost"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(max_length=255, index=True)
    provider: str = Field(max_length=50)  # "kie"
    provider_task_id: Optional[str] = Field(default=None, max_length=255, unique=True)
    cost_estimate: int
    request: dict = Field(sa_column=Column(JSON, nullable=False))
    state: JobState = Field(default=JobState.CREATED, index=True)
    result_ref: Optional[str] = Field(default=None)
    failure_reason: Optional[str] = Field(default=None, max_length=1000)
    attempts: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTimeUTC)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTimeUTC)
    terminal_at: Optional[datetime] = Field(default=None, sa_type=DateTimeUTC)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def generation_request(self) -> GenerationRequest:
        return GenerationRequest.model_validate(self.request)

"""
Typed job payloads.

Each job type carries exactly the fields its operation needs. Payloads
are validated when a job is enqueued and parsed again by the worker.
"""

from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from sellibra.errors import PayloadValidationError


class BasePayload(BaseModel):
    """Fields shared by every AI job."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    user_id: str = Field(..., min_length=1, description="Owner of the token allowance")
    token_amount: int = Field(..., gt=0, description="Tokens consumed on success")

    def artifact_paths(self) -> list[Path]:
        """Temporary files owned by this job."""
        return []


class RemoveBackgroundPayload(BasePayload):
    job_type: Literal["remove-background"] = "remove-background"
    image_path: str = Field(..., min_length=1)

    def artifact_paths(self) -> list[Path]:
        return [Path(self.image_path)]


class TextToImagePayload(BasePayload):
    job_type: Literal["text-to-image"] = "text-to-image"
    prompt: str = Field(..., min_length=1)
    size: str = "1024x1024"
    quality: str = "standard"
    style: str = "vivid"


class ImageToImagePayload(BasePayload):
    job_type: Literal["image-to-image"] = "image-to-image"
    image_path: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)
    size: str = "1024x1024"

    def artifact_paths(self) -> list[Path]:
        return [Path(self.image_path)]


class GenerateContentPayload(BasePayload):
    job_type: Literal["generate-content"] = "generate-content"
    content_type: Literal["tags", "title", "description"]
    product_info: dict[str, Any] = Field(default_factory=dict)


JobPayload = Annotated[
    Union[
        RemoveBackgroundPayload,
        TextToImagePayload,
        ImageToImagePayload,
        GenerateContentPayload,
    ],
    Field(discriminator="job_type"),
]

PAYLOAD_TYPES: dict[str, type[BasePayload]] = {
    "remove-background": RemoveBackgroundPayload,
    "text-to-image": TextToImagePayload,
    "image-to-image": ImageToImagePayload,
    "generate-content": GenerateContentPayload,
}

_payload_adapter: TypeAdapter = TypeAdapter(JobPayload)


def parse_payload(data: dict[str, Any]) -> BasePayload:
    """
    Parse a stored payload dict into its typed variant.

    Raises:
        PayloadValidationError: If the dict matches no variant
    """
    try:
        return _payload_adapter.validate_python(data)
    except ValidationError as e:
        raise PayloadValidationError(f"Invalid job payload: {e}") from e


def validate_payload(job_type: str, payload: BasePayload | dict[str, Any]) -> BasePayload:
    """
    Check that a payload belongs to ``job_type`` and is well formed.

    Args:
        job_type: Job type the target queue accepts
        payload: Typed payload or raw dict (``job_type`` may be omitted)

    Returns:
        The typed payload

    Raises:
        PayloadValidationError: On a type mismatch or invalid fields
    """
    if job_type not in PAYLOAD_TYPES:
        raise PayloadValidationError(f"Unknown job type: {job_type}")

    if isinstance(payload, BasePayload):
        actual = getattr(payload, "job_type", None)
        if actual != job_type:
            raise PayloadValidationError(
                f"Payload of type {actual} cannot be sent to a {job_type} queue"
            )
        return payload

    data = dict(payload)
    declared = data.setdefault("job_type", job_type)
    if declared != job_type:
        raise PayloadValidationError(
            f"Payload of type {declared} cannot be sent to a {job_type} queue"
        )
    return parse_payload(data)

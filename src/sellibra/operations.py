"""
AI business operations and the executor that charges for them.

The operations themselves are injected; ``OperationExecutor`` runs one,
consumes the user's tokens only after it succeeded, and owns cleanup of
the job's temporary files.
"""

from __future__ import annotations

import asyncio
import base64
import importlib
import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from sellibra.artifacts import TempArtifactStore
from sellibra.errors import PayloadValidationError, UnrecoverableJobError
from sellibra.jobs.models import Job
from sellibra.jobs.payloads import (
    BasePayload,
    GenerateContentPayload,
    ImageToImagePayload,
    RemoveBackgroundPayload,
    TextToImagePayload,
    parse_payload,
)
from sellibra.quota.manager import QuotaManager

logger = logging.getLogger(__name__)


@runtime_checkable
class AIOperations(Protocol):
    """Provider-backed AI calls."""

    async def remove_background(self, image_path: Path) -> bytes:
        """Return the PNG bytes of the image without its background."""
        ...

    async def text_to_image(
        self, prompt: str, size: str, quality: str, style: str
    ) -> dict[str, Any]:
        """Return ``{"url": ..., "revised_prompt": ...}`` for a generated image."""
        ...

    async def image_to_image(self, image_path: Path, prompt: str, size: str) -> dict[str, Any]:
        ...

    async def generate_content(self, content_type: str, product_info: dict[str, Any]) -> Any:
        """Return SEO tags (list), a title or a description (str)."""
        ...


class MockOperations:
    """
    Development stand-in used when no provider is configured.

    Returns deterministic results without network access.
    """

    async def remove_background(self, image_path: Path) -> bytes:
        logger.info(f"Mock background removal for {image_path}")
        return await asyncio.to_thread(Path(image_path).read_bytes)

    async def text_to_image(
        self, prompt: str, size: str, quality: str, style: str
    ) -> dict[str, Any]:
        logger.info(f"Mock text-to-image: {prompt}")
        return {"url": None, "revised_prompt": prompt, "size": size}

    async def image_to_image(self, image_path: Path, prompt: str, size: str) -> dict[str, Any]:
        logger.info(f"Mock image-to-image for {image_path}: {prompt}")
        return {"url": None, "revised_prompt": prompt, "size": size}

    async def generate_content(self, content_type: str, product_info: dict[str, Any]) -> Any:
        title = str(product_info.get("title") or product_info.get("name") or "Handmade item")
        if content_type == "tags":
            words = [w.strip(".,!?").lower() for w in title.split()]
            return [w for w in dict.fromkeys(words) if w][:13]
        if content_type == "title":
            return title[:140]
        return f"{title}. {product_info.get('description', '')}".strip()


def load_operations(path: str | None) -> AIOperations:
    """
    Instantiate the configured operations class.

    Args:
        path: "module:attribute" of a class or factory, or None for the stub
    """
    if not path:
        logger.warning("No AI operations configured, using mock operations")
        return MockOperations()

    module_name, _, attribute = path.partition(":")
    if not attribute:
        raise ValueError(f"AI operations must be given as 'module:attribute', got {path!r}")
    factory = getattr(importlib.import_module(module_name), attribute)
    return factory()


class OperationExecutor:
    """Runs one AI operation and charges the user for it."""

    def __init__(
        self,
        operations: AIOperations,
        quota: QuotaManager,
        artifacts: TempArtifactStore,
    ) -> None:
        self.operations = operations
        self.quota = quota
        self.artifacts = artifacts

    async def _dispatch(self, payload: BasePayload) -> dict[str, Any]:
        ops = self.operations
        if isinstance(payload, RemoveBackgroundPayload):
            image = await ops.remove_background(Path(payload.image_path))
            return {
                "image": base64.b64encode(image).decode("ascii"),
                "content_type": "image/png",
            }
        if isinstance(payload, TextToImagePayload):
            return dict(
                await ops.text_to_image(
                    payload.prompt,
                    size=payload.size,
                    quality=payload.quality,
                    style=payload.style,
                )
            )
        if isinstance(payload, ImageToImagePayload):
            return dict(
                await ops.image_to_image(
                    Path(payload.image_path), payload.prompt, size=payload.size
                )
            )
        if isinstance(payload, GenerateContentPayload):
            content = await ops.generate_content(payload.content_type, payload.product_info)
            return {"content_type": payload.content_type, "content": content}
        raise PayloadValidationError(f"No operation for payload {type(payload).__name__}")

    def check_artifacts(self, payload: BasePayload) -> None:
        """
        Reject payloads whose files were not staged in the temp directory.

        Raises:
            PayloadValidationError: A referenced file lies outside it
        """
        for path in payload.artifact_paths():
            if not self.artifacts.contains(path):
                raise PayloadValidationError(
                    f"Image {path} was not uploaded through this service"
                )

    async def run(self, payload: BasePayload, timeout: float | None = None) -> dict[str, Any]:
        """
        Run the operation, then consume tokens.

        Only the operation is bounded by ``timeout``. Once it has finished
        the consume always runs to completion, so an attempt is either
        charged and reported as done or not charged at all.

        A failed operation consumes nothing; if the consume itself is
        rejected the result is discarded and the quota error propagates.

        Returns:
            Operation result with ``remaining_tokens`` added

        Raises:
            asyncio.TimeoutError: The operation exceeded ``timeout``
        """
        self.check_artifacts(payload)
        data = await asyncio.wait_for(self._dispatch(payload), timeout=timeout)
        consumed = await self.quota.consume_tokens(payload.user_id, payload.token_amount)
        data["remaining_tokens"] = consumed.remaining_tokens
        return data

    async def process_job(self, job: Job) -> dict[str, Any]:
        """
        Worker entry point; bounds the operation by the job's timeout.

        The job's temporary files are removed once it can no longer be
        retried: after success, an unrecoverable error, or any failure of
        the final attempt.
        """
        payload = parse_payload(job.payload)
        terminal = job.is_final_attempt
        try:
            result = await self.run(payload, timeout=job.timeout_seconds)
            terminal = True
            return result
        except UnrecoverableJobError:
            terminal = True
            raise
        finally:
            if terminal:
                self.artifacts.cleanup(payload.artifact_paths())

"""API routes for token balances and AI jobs."""

import asyncio
import logging
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from pydantic import BaseModel, Field

from sellibra.errors import PayloadValidationError
from sellibra.main import Application

logger = logging.getLogger(__name__)
router = APIRouter()

ALLOWED_IMAGE_TYPES = {
    ".jpeg": "image/jpeg",
    ".jpg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


def get_application(request: Request) -> Application:
    return request.app.state.application


# --- Request/Response Models ---


class AIRequest(BaseModel):
    """Operation payload; ``token_amount`` defaults to the queue's cost."""

    payload: dict[str, Any] = Field(..., description="Fields of the operation payload")


class AIResponse(BaseModel):
    success: bool = True
    data: dict[str, Any]
    mode: str
    job_id: str | None = None


class TokenUpdate(BaseModel):
    tokens: int = Field(..., ge=0)


# --- Routes ---


@router.get("/users/{user_id}/tokens")
async def get_tokens(user_id: str, app: Application = Depends(get_application)):
    balance = await app.quota.get_balance(user_id)
    return {"success": True, "data": balance.to_dict()}


@router.put("/users/{user_id}/tokens")
async def set_tokens(
    user_id: str,
    update: TokenUpdate,
    app: Application = Depends(get_application),
):
    """Administrative overwrite of a user's balance."""
    balance = await app.quota.set_tokens(user_id, update.tokens)
    return {"success": True, "data": balance.to_dict()}


@router.post("/ai/{queue_name}", response_model=AIResponse)
async def run_operation(
    queue_name: str,
    request: AIRequest,
    app: Application = Depends(get_application),
) -> AIResponse:
    """Run an AI operation through the queue, or in-process as a fallback."""
    if "image_path" in request.payload:
        raise PayloadValidationError(
            f"Images must be uploaded to /v1/ai/{queue_name}/image"
        )
    result = await app.bridge.execute(queue_name, request.payload)
    return AIResponse(data=result.data, mode=result.mode.value, job_id=result.job_id)


@router.post("/ai/{queue_name}/image", response_model=AIResponse)
async def run_image_operation(
    queue_name: str,
    user_id: str = Form(...),
    image: UploadFile = File(...),
    prompt: str | None = Form(None),
    size: str | None = Form(None),
    app: Application = Depends(get_application),
) -> AIResponse:
    """
    Run an image operation on an uploaded file.

    The upload is staged in the temp directory and handed to the job,
    which removes it once it is done with it.
    """
    suffix = Path(image.filename or "").suffix.lower()
    if suffix not in ALLOWED_IMAGE_TYPES or (
        image.content_type and image.content_type not in ALLOWED_IMAGE_TYPES.values()
    ):
        raise HTTPException(
            status_code=400,
            detail="Only image uploads are accepted (jpeg, jpg, png, gif, webp)",
        )

    max_bytes = app.settings.max_upload_mb * 1024 * 1024
    data = await image.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"Image exceeds {app.settings.max_upload_mb}MB",
        )

    staged = await asyncio.to_thread(app.artifacts.stage, data, suffix)
    payload: dict[str, Any] = {"user_id": user_id, "image_path": str(staged)}
    if prompt is not None:
        payload["prompt"] = prompt
    if size is not None:
        payload["size"] = size

    result = await app.bridge.execute(queue_name, payload)
    return AIResponse(data=result.data, mode=result.mode.value, job_id=result.job_id)


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, app: Application = Depends(get_application)):
    job = await app.queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return {"success": True, "data": job.to_dict()}


@router.get("/queues")
async def queue_stats(app: Application = Depends(get_application)):
    return {
        "success": True,
        "available": app.queue.is_available(),
        "data": await app.queue.counts(),
    }

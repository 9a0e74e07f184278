"""GitHub push webhook: verifies the signature and hands the push to the post service."""

from __future__ import annotations

import hashlib
import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import ValidationError

from blog.config import settings
from blog.dependencies import get_post_service
from blog.schemas.webhooks import PushEvent
from mirror.service import PostService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhooks"])

SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"


def sign_payload(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check of GitHub's ``sha256=<hex>`` HMAC header."""
    if not signature or not signature.startswith("sha256="):
        return False
    return hmac.compare_digest(sign_payload(body, secret), signature)


@router.post("/git", status_code=204)
async def handle_git_webhook(
    request: Request,
    service: PostService = Depends(get_post_service),
):
    """Receive a push and dispatch sync work.

    A 204 means the work was dispatched, not that it finished.
    """
    secret = settings.webhook_secret
    if not secret:
        raise HTTPException(status_code=500, detail="BLOG_CORE_WEBHOOK_SECRET not configured")

    body = await request.body()
    if not verify_signature(body, request.headers.get(SIGNATURE_HEADER), secret):
        raise HTTPException(status_code=401, detail="Invalid payload signature")

    event_type = request.headers.get(EVENT_HEADER, "")
    if event_type != "push":
        logger.debug("Ignoring %s event", event_type or "unknown")
        return Response(status_code=204)

    try:
        event = PushEvent.model_validate_json(body)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid event")

    expected_repo = service.source.get_repo_full_name()
    if event.repository.full_name.lower() != expected_repo.lower():
        logger.warning(
            "Push for %s ignored, mirroring %s", event.repository.full_name, expected_repo
        )
        raise HTTPException(status_code=400, detail="Unexpected repository")

    if event.deleted:
        logger.info("Branch %s deleted, nothing to mirror", event.ref)
        return Response(status_code=204)

    try:
        await service.handle_push_event(event.before, event.after, event.ref)
    except Exception:
        logger.exception("Failed to handle push to %s (%s...%s)", event.ref, event.before, event.after)
        raise HTTPException(status_code=500, detail="Error handling event")

    return Response(status_code=204)

"""Identity routes: visitor ping and identify, claim, and recent-session attach."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tapidentity.api.deps import get_current_user_id, get_database
from tapidentity.errors import ClaimConflictError, ValidationError
from tapidentity.identity.attach import attach_recent
from tapidentity.identity.claim import identity_claim_service, validate_anon_visitor_id
from tapidentity.identity.visitors import (
    extract_client_ip,
    hash_ip,
    identify_visitor,
    ping_visitor,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/identity", tags=["identity"])


class ClaimRequest(BaseModel):
    """Request model for claiming a visitor."""
    anon_visitor_id: Optional[str] = Field(None, alias="anonVisitorId")
    method: str = "manual"

    class Config:
        populate_by_name = True


class PingRequest(BaseModel):
    """Request model for a visitor ping."""
    anon_visitor_id: Optional[str] = Field(None, alias="anonVisitorId")

    class Config:
        populate_by_name = True


class IdentifyRequest(BaseModel):
    """Request model for identifying a visitor after a tap."""
    anon_visitor_id: Optional[str] = Field(None, alias="anonVisitorId")
    src_batch: Optional[str] = Field(None, alias="srcBatch")
    src_tag: Optional[str] = Field(None, alias="srcTag")

    class Config:
        populate_by_name = True


class AttachRecentRequest(BaseModel):
    """Request model for attaching a tap session's recent events."""
    tap_session_id: Optional[str] = Field(None, alias="tapSessionId")
    anon_visitor_id: Optional[str] = Field(None, alias="anonVisitorId")

    class Config:
        populate_by_name = True


@router.post("/ping")
async def ping(
    body: PingRequest,
    request: Request,
    db: AsyncSession = Depends(get_database),
):
    """Ensure a visitor exists and refresh its last-seen fingerprint."""
    anon_visitor_id = validate_anon_visitor_id(body.anon_visitor_id)

    client_ip = extract_client_ip(request.headers)
    ip_hash = hash_ip(client_ip) if client_ip else None
    user_agent = request.headers.get("user-agent") or None

    visitor = await ping_visitor(db, anon_visitor_id, ip_hash=ip_hash, user_agent=user_agent)
    return {
        "success": True,
        "data": {
            "visitorId": visitor.id,
            "userId": visitor.user_id,  # None until claimed
        },
    }


@router.post("/identify")
async def identify(
    body: IdentifyRequest,
    request: Request,
    db: AsyncSession = Depends(get_database),
):
    """Register the visitor behind a tap and attribute its recent unowned taps."""
    anon_visitor_id = validate_anon_visitor_id(body.anon_visitor_id)

    client_ip = extract_client_ip(request.headers)
    ip_hash = hash_ip(client_ip) if client_ip else None

    visitor = await identify_visitor(
        db,
        anon_visitor_id,
        ip_hash=ip_hash,
        tag_uuid=body.src_tag,
        batch_id=body.src_batch,
    )
    return {
        "success": True,
        "data": {
            "visitorId": visitor.id,
            "tapCount": visitor.tap_count,
        },
    }


@router.post("/claim")
async def claim(
    body: ClaimRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_database),
):
    """Attach an anonymous visitor's history to the authenticated account."""
    outcome = await identity_claim_service.claim(
        db, user_id, body.anon_visitor_id, method=body.method
    )
    if outcome.conflict:
        raise ClaimConflictError()

    return {
        "success": True,
        "data": {
            "visitorId": outcome.visitor_id,
            "tapEventsLinked": outcome.tap_events_linked,
            "myListClaimed": outcome.my_list_claimed,
            "anonVisitorId": outcome.anon_visitor_id,
        },
    }


@router.post("/attach-recent")
async def attach_recent_events(
    body: AttachRecentRequest,
    db: AsyncSession = Depends(get_database),
):
    """Attach the last events of a tap session to a visitor."""
    if not body.tap_session_id:
        raise ValidationError("tapSessionId is required")
    anon_visitor_id = body.anon_visitor_id
    if anon_visitor_id:
        anon_visitor_id = validate_anon_visitor_id(anon_visitor_id)

    result = await attach_recent(db, body.tap_session_id, anon_visitor_id)

    if result.visitor_id is None:
        return {
            "success": True,
            "data": {
                "eventsFound": result.events_found,
                "message": "anonVisitorId required to link events",
            },
        }

    return {
        "success": True,
        "data": {
            "visitorId": result.visitor_id,
            "eventsLinked": result.events_found,
            "userId": result.user_id,
        },
    }

"""Admin routes: manual tap linking and the executive power-user view."""

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tapidentity.api.deps import (
    get_database,
    require_admin_api_key,
    require_executive_view_enabled,
)
from tapidentity.errors import ValidationError
from tapidentity.identity.manual_link import manual_link_taps
from tapidentity.reporting.power_users import power_user_report

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin_api_key)],
)


class ManualLinkRequest(BaseModel):
    """Request model for linking a tag's taps to a user."""
    tag_uuid: Optional[str] = Field(None, alias="tagUuid")
    user_email: Optional[str] = Field(None, alias="userEmail")

    class Config:
        populate_by_name = True


class PowerUserResponse(BaseModel):
    """Response model for one leaderboard entry."""
    visitor_id: str
    user_id: Optional[str]
    user_email: Optional[str]
    total_score: int
    taps: int
    active_days: int
    avg_daily_score: float
    is_power_user: bool

    class Config:
        from_attributes = True


class PowerUserReportResponse(BaseModel):
    """Response model for the power-user leaderboard."""
    since: date
    top_visitors: List[PowerUserResponse]
    power_users_count: int
    power_user_share: float

    class Config:
        from_attributes = True


@router.post("/manual-link-taps")
async def link_tag_taps(
    body: ManualLinkRequest,
    db: AsyncSession = Depends(get_database),
):
    """Link every unlinked tap on a tag to the user with the given email."""
    if not body.tag_uuid or not body.user_email:
        raise ValidationError("tagUuid and userEmail are required")

    result = await manual_link_taps(db, body.tag_uuid, body.user_email)

    if result.taps_linked == 0:
        message = "No unlinked taps found for this tag"
    else:
        message = f"Successfully linked {result.taps_linked} taps"

    return {
        "success": True,
        "data": {
            "message": message,
            "tagUuid": result.tag_uuid,
            "tagLabel": result.tag_label,
            "userEmail": result.user_email,
            "tapsLinked": result.taps_linked,
        },
    }


@router.get(
    "/executive/power-users",
    dependencies=[Depends(require_executive_view_enabled)],
)
async def get_power_users(
    days: Optional[int] = Query(None, ge=1, le=365),
    limit: Optional[int] = Query(None, ge=1, le=500),
    db: AsyncSession = Depends(get_database),
):
    """Top visitors by engagement score over the recent window."""
    report = await power_user_report(db, days=days, limit=limit)
    return {
        "success": True,
        "data": PowerUserReportResponse.model_validate(report).model_dump(mode="json"),
    }

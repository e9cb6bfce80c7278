"""Internal reporting job routes."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tapidentity.api.deps import (
    get_database,
    require_internal_secret,
    require_reporting_enabled,
)
from tapidentity.dates import parse_target_date
from tapidentity.errors import ValidationError
from tapidentity.reporting.aggregate import daily_aggregator

# Secret is checked before the feature flag
router = APIRouter(
    prefix="/api/internal/reporting",
    tags=["reporting"],
    dependencies=[Depends(require_internal_secret), Depends(require_reporting_enabled)],
)


class AggregateRequest(BaseModel):
    """Request model for a daily aggregation run."""
    date: Optional[str] = None  # YYYY-MM-DD, default yesterday (UTC)


@router.post("/aggregate-daily")
async def aggregate_daily(
    body: Optional[AggregateRequest] = None,
    db: AsyncSession = Depends(get_database),
):
    """Aggregate one UTC day of activity into the daily snapshot tables."""
    try:
        target_date = parse_target_date(body.date if body else None)
    except ValueError as e:
        raise ValidationError(str(e)) from e

    summary = await daily_aggregator.aggregate_day(db, target_date)
    return {"success": True, "data": summary.to_dict()}

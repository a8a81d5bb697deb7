"""
Timezone API
Zone detection and wall-clock conversion
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from calsync.api.dependencies import ServiceContainer, get_container

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/timezones", tags=["timezones"])


class DetectRequest(BaseModel):
    client_zone: Optional[str] = None
    utc_offset_minutes: Optional[int] = None
    country: Optional[str] = None
    region: Optional[str] = None
    user_preference: Optional[str] = None


class ConvertRequest(BaseModel):
    local: datetime
    from_zone: str
    to_zone: str


@router.post("/detect")
async def detect_timezone(
    request: DetectRequest,
    services: ServiceContainer = Depends(get_container),
):
    """
    Detect the caller's timezone from the available signals

    Preference beats client zone beats geolocation beats offset; with no
    signal the default zone is returned at low confidence.
    """
    detection = services.timezones.detect_zone(
        client_zone=request.client_zone,
        utc_offset_minutes=request.utc_offset_minutes,
        country=request.country,
        region=request.region,
        user_preference=request.user_preference,
    )
    return {"success": True, **detection.to_dict()}


@router.post("/convert")
async def convert_time(
    request: ConvertRequest,
    services: ServiceContainer = Depends(get_container),
):
    converted = services.timezones.convert(request.local.replace(tzinfo=None), request.from_zone, request.to_zone)
    return {
        "success": True,
        "local": converted.isoformat(),
        "timezone": services.timezones.normalize_zone(request.to_zone),
    }

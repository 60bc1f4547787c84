"""Admin API endpoints: feature flags, buffer cleanup and buffer health."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from turnbuffer.config import settings
from turnbuffer.database import get_db
from turnbuffer.logging_config import get_logger
from turnbuffer.services.buffer_manager import purge_completed_sessions
from turnbuffer.services.feature_flags import list_feature_flags, set_feature_flag
from turnbuffer.services.health_service import get_buffer_health

logger = get_logger("admin")

router = APIRouter(prefix="/admin", tags=["admin"])


# === SCHEMAS ===


class FeatureFlagUpdate(BaseModel):
    is_enabled: bool
    description: Optional[str] = None


class FeatureFlagResponse(BaseModel):
    flag_name: str
    is_enabled: bool
    description: Optional[str] = None


class CleanupResponse(BaseModel):
    deleted_sessions: int
    retention_days: int


def require_admin_token(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not x_admin_token or x_admin_token != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


# === FEATURE FLAGS ===


@router.get("/flags", response_model=list[FeatureFlagResponse], dependencies=[Depends(require_admin_token)])
def get_flags(db: Session = Depends(get_db)):
    return [
        FeatureFlagResponse(flag_name=flag.flag_name, is_enabled=flag.is_enabled, description=flag.description)
        for flag in list_feature_flags(db)
    ]


@router.put("/flags/{flag_name}", response_model=FeatureFlagResponse, dependencies=[Depends(require_admin_token)])
def update_flag(flag_name: str, data: FeatureFlagUpdate, db: Session = Depends(get_db)):
    flag_name = flag_name.strip()
    if not flag_name:
        raise HTTPException(status_code=400, detail="Flag name is empty")
    flag = set_feature_flag(db, flag_name, data.is_enabled, data.description)
    db.commit()
    logger.info(
        "Feature flag updated via admin API",
        extra={"context": {"flag_name": flag_name, "is_enabled": data.is_enabled}},
    )
    return FeatureFlagResponse(flag_name=flag.flag_name, is_enabled=flag.is_enabled, description=flag.description)


# === BUFFERS ===


@router.post("/buffers/cleanup", response_model=CleanupResponse, dependencies=[Depends(require_admin_token)])
def cleanup_buffers(retention_days: Optional[int] = None, db: Session = Depends(get_db)):
    effective_days = retention_days if retention_days is not None else settings.completed_retention_days
    effective_days = max(int(effective_days), 1)
    deleted = purge_completed_sessions(db, retention_days=effective_days)
    return CleanupResponse(deleted_sessions=deleted, retention_days=effective_days)


@router.get("/buffers/health", dependencies=[Depends(require_admin_token)])
def buffers_health(db: Session = Depends(get_db)):
    return get_buffer_health(db)

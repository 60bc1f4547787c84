from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from turnbuffer.config import settings
from turnbuffer.database import utcnow
from turnbuffer.logging_config import get_logger
from turnbuffer.models import FeatureFlag

logger = get_logger("feature_flags")


def is_feature_enabled(db: Session, flag_name: str, default: Optional[bool] = None) -> bool:
    """Read a flag from storage. Missing row or read error -> default (disabled unless configured)."""
    if default is None:
        default = settings.buffering_default_enabled
    try:
        flag = db.query(FeatureFlag).filter(FeatureFlag.flag_name == flag_name).first()
    except SQLAlchemyError as exc:
        logger.error(
            "Feature flag read failed",
            extra={"context": {"flag_name": flag_name, "error": str(exc)}},
        )
        db.rollback()
        return default
    if flag is None:
        return default
    return bool(flag.is_enabled)


def set_feature_flag(db: Session, flag_name: str, is_enabled: bool, description: Optional[str] = None) -> FeatureFlag:
    flag = db.query(FeatureFlag).filter(FeatureFlag.flag_name == flag_name).first()
    if flag is None:
        flag = FeatureFlag(flag_name=flag_name, is_enabled=is_enabled, description=description)
        db.add(flag)
    else:
        flag.is_enabled = is_enabled
        if description is not None:
            flag.description = description
        flag.updated_at = utcnow()
    db.flush()
    logger.info(f"Feature flag {flag_name} set to {is_enabled}")
    return flag


def list_feature_flags(db: Session) -> list[FeatureFlag]:
    return db.query(FeatureFlag).order_by(FeatureFlag.flag_name).all()

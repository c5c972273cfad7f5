import logging
import os
from typing import Literal, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class PointsSettings(BaseModel):
    store: Literal["memory", "sqlite"] = "memory"
    db_path: str = "points.db"
    max_earn_per_event: int = Field(default=1000, gt=0)
    max_retries: int = Field(default=5, ge=1)
    retry_base_delay: float = Field(default=0.01, ge=0)
    catalog_path: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "PointsSettings":
        values = {
            "store": os.getenv("POINTS_STORE"),
            "db_path": os.getenv("POINTS_DB_PATH"),
            "max_earn_per_event": os.getenv("POINTS_MAX_EARN_PER_EVENT"),
            "max_retries": os.getenv("POINTS_MAX_RETRIES"),
            "retry_base_delay": os.getenv("POINTS_RETRY_BASE_DELAY"),
            "catalog_path": os.getenv("POINTS_CATALOG_PATH"),
            "log_level": os.getenv("POINTS_LOG_LEVEL"),
        }
        return cls(**{k: v for k, v in values.items() if v not in (None, "")})


def configure_logging(settings: PointsSettings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.debug("Logging configured at %s", settings.log_level.upper())

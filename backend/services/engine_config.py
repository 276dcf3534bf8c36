"""Engine configuration persisted as key/value rows in ``engine_config``."""

from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import EngineConfigEntry
from services.config_validator import config_validator
from utils.errors import ConfigValidationError
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("engine_config")


class EngineConfig(BaseModel):
    """Tunables read by the ingestor, detector and price monitor on every cycle."""

    wallet_count: int = 5
    time_window_min: int = 10
    default_sl_percent: float = -2.5
    tps_percent: list[float] = Field(default_factory=lambda: [2.0, 3.5, 5.0])
    poll_interval_sec: int = 60
    price_poll_interval_sec: int = 30
    min_trade_size: float = 0.0
    required_leverage_min: int = 1
    monitored_pairs: list[str] = Field(default_factory=list)
    ignored_pairs: list[str] = Field(default_factory=list)

    @property
    def time_window_seconds(self) -> int:
        return self.time_window_min * 60

    def is_pair_allowed(self, pair: str) -> bool:
        """Denylist first, then the allowlist when one is configured."""
        if pair in self.ignored_pairs:
            return False
        if self.monitored_pairs and pair not in self.monitored_pairs:
            return False
        return True


DEFAULT_ENGINE_CONFIG = EngineConfig()


def _coerce_value(key: str, value: Any) -> Optional[Any]:
    """Validate a single stored value against the model field; None if unusable."""
    try:
        probe = EngineConfig.model_validate({key: value})
    except ValidationError:
        return None
    return getattr(probe, key)


async def load_engine_config(session: AsyncSession) -> EngineConfig:
    """Read all rows, ignoring unknown keys and falling back to defaults for bad values."""
    rows = (await session.execute(select(EngineConfigEntry))).scalars().all()
    values: dict[str, Any] = {}
    for row in rows:
        if row.key not in EngineConfig.model_fields:
            continue
        coerced = _coerce_value(row.key, row.value)
        if coerced is None:
            logger.warning("Malformed engine config value, using default", key=row.key, value=row.value)
            continue
        values[row.key] = coerced
    return EngineConfig(**values)


async def update_engine_config(
    session: AsyncSession,
    updates: dict[str, Any],
    updated_by: str = "system",
) -> EngineConfig:
    """Validate then persist ``updates`` in one transaction.

    Raises ConfigValidationError listing every problem; nothing is written
    in that case.
    """
    known = {k: v for k, v in updates.items() if k in EngineConfig.model_fields}
    result = config_validator.validate_updates(updates)
    if not result.valid:
        raise ConfigValidationError(result.errors)

    now = utcnow()
    existing = {
        row.key: row
        for row in (
            await session.execute(
                select(EngineConfigEntry).where(EngineConfigEntry.key.in_(list(known.keys())))
            )
        ).scalars().all()
    }
    for key, value in known.items():
        row = existing.get(key)
        if row is None:
            session.add(EngineConfigEntry(key=key, value=value, updated_at=now, updated_by=updated_by))
        else:
            row.value = value
            row.updated_at = now
            row.updated_by = updated_by
    await session.commit()

    logger.info("Engine config updated", keys=sorted(known.keys()), updated_by=updated_by)
    return await load_engine_config(session)

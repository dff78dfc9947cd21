"""Read-only strategy sources.

Strategies are owned by an external store; this service only reads the
active ones. Two sources are provided:
- StrategyRepository: the ``strategies`` Postgres table
- YamlStrategySource: a local ``strategies.yaml`` (development, backtests)

Both produce validated Strategy models; records that fail validation are
logged and skipped.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError
from sqlalchemy import select

from app.storage.database import StrategyTable, get_database
from core.models.strategy import Strategy

logger = logging.getLogger(__name__)


class StrategySource(Protocol):
    """Anything that can list the currently active strategies."""

    async def get_active_strategies(self) -> list[Strategy]: ...


def strategy_from_record(record: dict[str, Any]) -> Strategy | None:
    """Build a Strategy from a stored record; None (logged) if invalid."""
    try:
        return Strategy.model_validate(record)
    except ValidationError as e:
        logger.warning(f"Skipping invalid strategy {record.get('id', '?')}: {e}")
        return None


class StrategyRepository:
    """Strategies from the ``strategies`` table."""

    async def get_active_strategies(self) -> list[Strategy]:
        async with get_database().session() as session:
            stmt = select(StrategyTable).where(StrategyTable.is_active.is_(True))
            result = await session.execute(stmt)
            rows = result.scalars().all()

        strategies = [strategy_from_record(self._to_record(row)) for row in rows]
        return [s for s in strategies if s is not None]

    @staticmethod
    def _to_record(row: StrategyTable) -> dict[str, Any]:
        return {
            "id": str(row.id),
            "name": row.name,
            "asset": row.asset,
            "direction": row.direction,
            "timeframe": row.timeframe,
            "isActive": row.is_active,
            "indicators": row.indicators or [],
            "conditionLogic": row.condition_logic or "all",
            "conditions": row.conditions or [],
            "actions": row.actions or [],
            "market": row.market,
            "side": row.side,
            "fixedSharesAmount": row.fixed_shares_amount,
        }


class StrategyFile(BaseModel):
    """Top-level layout of a strategies YAML file."""

    strategies: list[dict[str, Any]] = []


def load_strategies_file(path: Path) -> list[Strategy]:
    """
    Load every strategy defined in a YAML file.

    A ``.env`` next to the file is loaded first so deployments can keep
    related settings together.

    Raises:
        FileNotFoundError: If the file does not exist
    """
    load_dotenv(path.parent / ".env", override=False)

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    if isinstance(raw, list):
        raw = {"strategies": raw}

    parsed = StrategyFile.model_validate(raw)
    strategies = [s for s in map(strategy_from_record, parsed.strategies) if s is not None]
    logger.info(f"Loaded {len(strategies)} strategies from {path}")
    return strategies


class YamlStrategySource:
    """Strategies from a YAML file, re-read on every call so edits apply live."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def get_active_strategies(self) -> list[Strategy]:
        if not self.path.exists():
            logger.warning(f"Strategies file not found: {self.path}")
            return []
        return [s for s in load_strategies_file(self.path) if s.is_active]

"""
fake_view.py - Test Helper for PerpView

Provides a minimal PerpView implementation for testing the pure pricing
functions without building a full PerpLedger.
"""

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from optionperp import EngineConfig, InvalidRequest, Pool, Position, Side


class FakeView:
    """
    Minimal PerpView implementation.

    Example:
        view = FakeView(
            mark=Decimal("1200"),
            positions={1: position},
            time=datetime(2024, 1, 1),
        )
        health = assess_position(view, 1)
    """

    def __init__(
        self,
        mark: Decimal,
        positions: Optional[Dict[int, Position]] = None,
        pools: Optional[Dict[Side, Pool]] = None,
        time: Optional[datetime] = None,
        config: Optional[EngineConfig] = None,
    ):
        self._mark = Decimal(str(mark))
        self._positions = positions or {}
        self._pools = {side: Pool(side=side) for side in Side}
        self._pools.update(pools or {})
        self._time = time or datetime.now()
        self._config = config or EngineConfig()

    @property
    def current_time(self) -> datetime:
        return self._time

    @property
    def config(self) -> EngineConfig:
        return self._config

    def mark_price(self) -> Decimal:
        return self._mark

    def get_pool(self, side: Side) -> Pool:
        return self._pools[side]

    def get_position(self, position_id: int) -> Position:
        if position_id not in self._positions:
            raise InvalidRequest(f"unknown position {position_id}")
        return self._positions[position_id]

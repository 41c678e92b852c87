"""Blue/green traffic split management."""

import asyncio
import math
from collections.abc import Callable
from typing import Any

from .audit import LogSink
from .exceptions import InvalidSplit, ValidationError
from .models import Environment, TrafficSplit


def validate_split(blue: Any, green: Any) -> None:
    """Raise unless both values are numbers in [0, 100] totalling 100."""
    for name, value in (("blue", blue), ("green", green)):
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise ValidationError(
                "Invalid traffic split values",
                details=[{"loc": [name], "msg": "must be a number"}],
            )
    if not (0 <= blue <= 100 and 0 <= green <= 100):
        raise InvalidSplit(blue, green)
    if not math.isclose(blue + green, 100, abs_tol=1e-9):
        raise InvalidSplit(blue, green)


class TrafficController:
    """
    Holds the single blue/green traffic split.

    Changes are immediate and atomic. ``lock`` is shared with the deployment
    registry so promote/rollback can switch traffic inside their own critical
    section through ``apply``.
    """

    def __init__(
        self,
        log_sink: LogSink,
        initial: TrafficSplit | None = None,
        lock: asyncio.Lock | None = None,
        on_change: Callable[[], None] | None = None,
    ):
        self.log_sink = log_sink
        self.lock = lock or asyncio.Lock()
        self.on_change = on_change
        self._split = TrafficSplit(**(initial or TrafficSplit()).to_dict())

    def get(self) -> TrafficSplit:
        return TrafficSplit(blue=self._split.blue, green=self._split.green)

    async def set(self, blue: float, green: float) -> TrafficSplit:
        """Validate and apply a new split; the prior split survives any failure."""
        validate_split(blue, green)
        async with self.lock:
            split = self.apply(TrafficSplit(blue=blue, green=green))
            if self.on_change is not None:
                self.on_change()
        return split

    async def route_to(self, environment: Environment) -> TrafficSplit:
        """Send all traffic to ``environment``."""
        target = TrafficSplit.toward(environment)
        return await self.set(target.blue, target.green)

    def apply(self, split: TrafficSplit) -> TrafficSplit:
        """Apply an already validated split. The caller must hold ``lock``."""
        self._split = TrafficSplit(blue=split.blue, green=split.green)
        self.log_sink.info(
            f"Traffic split updated: {split.blue}% blue, {split.green}% green",
            blue=split.blue,
            green=split.green,
        )
        return self.get()

    def restore(self, split: TrafficSplit) -> None:
        """Install a persisted split without logging (startup only)."""
        validate_split(split.blue, split.green)
        self._split = TrafficSplit(blue=split.blue, green=split.green)

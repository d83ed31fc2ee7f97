"""
Saga: ordered steps with compensating actions.

    with Saga("checkout") as saga:
        order_id = saga.step("insert order", insert_order, compensate=delete_order)
        saga.step("reserve stock", reserve, compensate=lambda _: release())

Each successful step records its compensator together with the value the
action returned. If the block raises, compensators run in reverse order and
the original exception propagates. A failing compensator is logged and does
not stop the remaining ones.
"""
import logging
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

Compensator = Callable[[Any], None]


class Saga:
    def __init__(self, name: str):
        self.name = name
        self._compensators: List[Tuple[str, Any, Compensator]] = []
        self.compensated: List[str] = []
        self.failed_compensations: List[str] = []

    def step(self, name: str, action: Callable[[], Any], compensate: Optional[Compensator] = None) -> Any:
        value = action()
        if compensate is not None:
            self._compensators.append((name, value, compensate))
        return value

    def rollback(self) -> Tuple[int, int]:
        """Run recorded compensators in reverse. Returns (run, failed)."""
        while self._compensators:
            name, value, compensate = self._compensators.pop()
            try:
                compensate(value)
                self.compensated.append(name)
            except Exception:
                logger.exception("[%s] compensation for %r failed", self.name, name)
                self.failed_compensations.append(name)
        return len(self.compensated), len(self.failed_compensations)

    def __enter__(self) -> "Saga":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            logger.warning("[%s] failed (%s), rolling back %d step(s)",
                           self.name, exc_type.__name__, len(self._compensators))
            run, failed = self.rollback()
            if failed:
                logger.error("[%s] rollback incomplete: %d ok, %d failed", self.name, run, failed)
        return False

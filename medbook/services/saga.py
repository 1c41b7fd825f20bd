"""
Compensating-action saga for steps that span the database and external services.
"""
import logging
from typing import Callable, List, Tuple

logger = logging.getLogger(__name__)


class Saga:
    """
    Collects one compensation per completed step and, if the block exits with
    an error, runs them newest first. A failing compensation is logged and the
    rest still run; the original error is re-raised unchanged.

        with Saga("book-appointment") as saga:
            hold = payments.authorize_hold(...)
            saga.on_rollback("cancel payment hold", lambda: payments.cancel_hold(hold.reference_id))
            ...
    """

    def __init__(self, name: str):
        self.name = name
        self._compensations: List[Tuple[str, Callable[[], None]]] = []
        self.failed_compensations: List[str] = []

    def on_rollback(self, description: str, action: Callable[[], None]) -> None:
        self._compensations.append((description, action))

    def compensate(self) -> None:
        while self._compensations:
            description, action = self._compensations.pop()
            try:
                action()
                logger.info(f"[{self.name}] compensated: {description}")
            except Exception as e:
                self.failed_compensations.append(description)
                logger.error(f"[{self.name}] compensation '{description}' failed: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            logger.warning(f"[{self.name}] rolling back after {exc_type.__name__}: {exc}")
            self.compensate()
        return False

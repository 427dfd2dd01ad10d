from __future__ import annotations
import logging
from .events import BaseEvent, PlanFailed, StepFailed


class LoggerObserver:
    """Mirrors events into the run log; failures at WARNING, the rest at DEBUG."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        etype = event.__class__.__name__
        msg = ", ".join(f"{k}={v}" for k, v in d.items() if k not in ("ts", "run_id"))
        level = logging.WARNING if isinstance(event, (StepFailed, PlanFailed)) else logging.DEBUG
        self.logger.log(level, "[EVENT] %s: %s", etype, msg)

"""Runs startup reconciliation off the request path.

The HTTP server comes up immediately; reconciliation runs on its own thread.
If it fails the process is in an unknown state, so it exits non-zero and
relies on the supervisor for a restart.
"""
from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Optional

from round_settlement.services.reconciliation_engine import ReconciliationDecision, ReconciliationEngine
from round_settlement.utils import get_logger, log_business_event

logger = get_logger(__name__)


def _hard_exit(code: int) -> None:
    logging.shutdown()
    os._exit(code)


class StartupReconciler:
    def __init__(self, engine: ReconciliationEngine, *, terminate: Callable[[int], None] = _hard_exit):
        self.engine = engine
        self.terminate = terminate
        self.decisions: list[ReconciliationDecision] = []
        self.done = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run, name="startup-reconciliation", daemon=True)
        self._thread.start()
        return self._thread

    def run(self) -> None:
        try:
            self.decisions = self.engine.reconcile_startup()
            log_business_event(
                event_type="startup_reconciliation_completed",
                details={"rounds": [d.to_dict() for d in self.decisions]},
            )
        except Exception as e:
            logger.error("Fatal error during startup reconciliation, terminating", error=str(e), exc_info=True)
            self.terminate(1)
        finally:
            self.done.set()


__all__ = ["StartupReconciler"]

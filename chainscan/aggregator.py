from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional

from .errors import DuplicateOutcomeError
from .models import PortOutcome, ScanConfig, ScanReport, ScanTarget

# (completed, total, latest outcome)
ProgressCallback = Callable[[int, int, PortOutcome], None]


class ReportAggregator:
    """
    Collects one PortOutcome per port and builds the final ScanReport.
    Safe to call record() from several threads.
    """

    def __init__(self, target: ScanTarget, config: ScanConfig, on_progress: Optional[ProgressCallback] = None):
        self.target = target
        self.config = config
        self.on_progress = on_progress
        self._outcomes: Dict[int, PortOutcome] = {}
        self._lock = threading.Lock()
        self._started = time.perf_counter()

    @property
    def total(self) -> int:
        return self.config.total_ports

    def has(self, port: int) -> bool:
        with self._lock:
            return port in self._outcomes

    @property
    def completed(self) -> int:
        with self._lock:
            return len(self._outcomes)

    def record(self, outcome: PortOutcome) -> int:
        if outcome.port not in self.config.ports:
            raise ValueError(f"Port {outcome.port} is outside {self.config.start_port}-{self.config.end_port}")

        with self._lock:
            if outcome.port in self._outcomes:
                raise DuplicateOutcomeError(outcome.port)
            self._outcomes[outcome.port] = outcome
            completed = len(self._outcomes)

        if self.on_progress is not None:
            self.on_progress(completed, self.total, outcome)
        return completed

    def finalize(self, cancelled: bool = False) -> ScanReport:
        elapsed = time.perf_counter() - self._started
        with self._lock:
            outcomes = [self._outcomes[p] for p in sorted(self._outcomes)]
        return ScanReport(
            target=self.target,
            config=self.config,
            outcomes=outcomes,
            elapsed_s=elapsed,
            cancelled=cancelled,
        )

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Iterator, Optional, Set

from .aggregator import ProgressCallback, ReportAggregator
from .banner import ServiceClassifier
from .log import log_event
from .models import PortOutcome, PortState, ScanConfig, ScanReport, ScanTarget
from .prober import ProbeResult, probe

logger = logging.getLogger(__name__)

Prober = Callable[[ScanTarget, int, float], ProbeResult]


class ScanRun:
    """
    One scan of target over config.ports. Iterate it to get PortOutcomes in
    completion order. Single use.

    At most config.concurrency units (probe, then classify if open) are
    submitted and unfinished at any time. cancel() stops new submissions;
    units already running finish and are still yielded.
    """

    def __init__(
        self,
        target: ScanTarget,
        config: ScanConfig,
        classifier: Optional[ServiceClassifier] = None,
        prober: Prober = probe,
    ):
        self.target = target
        self.config = config.validate()
        self.classifier = classifier if classifier is not None else ServiceClassifier()
        self.prober = prober
        self.interrupted = False
        self._cancel = threading.Event()
        self._started = False

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        self._cancel.set()

    def scan_port(self, port: int) -> PortOutcome:
        result = self.prober(self.target, port, self.config.timeout_s)
        try:
            if result.state is PortState.CLOSED:
                return PortOutcome.closed(port, result.elapsed_s)
            if result.state is PortState.TIMED_OUT:
                return PortOutcome.timed_out(port, result.elapsed_s)
            if result.state is PortState.ERROR:
                return PortOutcome.error(port, result.elapsed_s, result.reason or "connection error")

            service = None
            if self.config.classify:
                sock, result.sock = result.sock, None
                service = self.classifier.classify(sock, self.target.address, port)
            return PortOutcome.open_(port, result.elapsed_s, service)
        finally:
            result.close()

    def _run_unit(self, port: int) -> PortOutcome:
        start = time.perf_counter()
        try:
            return self.scan_port(port)
        except Exception as e:
            logger.debug("Unit for port %d failed", port, exc_info=True)
            return PortOutcome.error(port, round(time.perf_counter() - start, 4), f"{e.__class__.__name__}: {e}")

    def __iter__(self) -> Iterator[PortOutcome]:
        if self._started:
            raise RuntimeError("ScanRun is single use; start a new run to scan again")
        self._started = True
        return self._iter_outcomes()

    def _iter_outcomes(self) -> Iterator[PortOutcome]:
        ports = iter(self.config.ports)
        log_event(logger, "scan_start", {
            "target": self.target.host,
            "address": self.target.address,
            "start_port": self.config.start_port,
            "end_port": self.config.end_port,
            "concurrency": self.config.concurrency,
            "timeout_s": self.config.timeout_s,
        }, logging.DEBUG)

        with ThreadPoolExecutor(max_workers=self.config.concurrency, thread_name_prefix="chainscan") as pool:
            pending: Set[Future] = set()

            def submit_next() -> bool:
                if self._cancel.is_set():
                    return False
                try:
                    p = next(ports)
                except StopIteration:
                    return False
                pending.add(pool.submit(self._run_unit, p))
                return True

            # Never more submitted-but-unfinished units than workers
            while len(pending) < self.config.concurrency and submit_next():
                pass

            while pending:
                try:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    self.interrupted = True
                    self.cancel()
                    log_event(logger, "scan_cancelled", {"in_flight": len(pending), "reason": "interrupt"}, logging.WARNING)
                    continue

                for fut in done:
                    outcome = fut.result()
                    if outcome.is_open:
                        log_event(logger, "port_open", {
                            "port": outcome.port,
                            "service": outcome.service.label.value if outcome.service else None,
                            "version": outcome.service.version if outcome.service else None,
                        }, logging.DEBUG)
                    yield outcome

                # Refill
                while len(pending) < self.config.concurrency and submit_next():
                    pass


def scan(
    target: ScanTarget,
    config: ScanConfig,
    classifier: Optional[ServiceClassifier] = None,
    on_progress: Optional[ProgressCallback] = None,
    run: Optional[ScanRun] = None,
) -> ScanReport:
    """Run a scan to completion (or cancellation) and return the report."""
    if run is None:
        run = ScanRun(target, config, classifier)
    aggregator = ReportAggregator(run.target, run.config, on_progress)

    for outcome in run:
        try:
            aggregator.record(outcome)
        except KeyboardInterrupt:
            # Ctrl-C outside wait(): same handling as inside it
            run.interrupted = True
            run.cancel()
            log_event(logger, "scan_cancelled", {"reason": "interrupt"}, logging.WARNING)
            if not aggregator.has(outcome.port):
                aggregator.record(outcome)

    # a cancel that landed after the last port was submitted changed nothing
    report = aggregator.finalize(cancelled=run.cancelled and aggregator.completed < aggregator.total)
    log_event(logger, "scan_complete", {
        "target": report.target.host,
        "open": report.open_count,
        "closed": report.closed_count,
        "timed_out": report.timed_out_count,
        "error": report.error_count,
        "reported": len(report.outcomes),
        "total": run.config.total_ports,
        "cancelled": report.cancelled,
        "elapsed_s": round(report.elapsed_s, 4),
    }, logging.DEBUG)
    return report

from __future__ import annotations

import csv
import json
import os
import sys
import time
from datetime import datetime
from html import escape
from typing import List, Optional, TextIO

from .models import PortOutcome, ScanReport


def format_row(r: PortOutcome) -> str:
    svc = r.service.label.value if r.service else "null"
    version = (r.service.version if r.service else None) or "null"
    line = f"Port {r.port}: {r.state.value} ({r.elapsed_s:.4f}s) | Service: {svc} | Version: {version}"
    if r.service and r.service.headers:
        headers = ", ".join(f"{k}={v}" for k, v in r.service.headers.items())
        line += f" | Headers: {headers}"
    if r.reason:
        line += f" | Reason: {r.reason}"
    return line


def summary_line(report: ScanReport) -> str:
    return (
        f"Found {report.open_count} open ports on {report.target.host} ({report.target.address}) | "
        f"closed={report.closed_count} timed_out={report.timed_out_count} error={report.error_count} | "
        f"{report.elapsed_s:.2f}s"
    )


def _rows(report: ScanReport, open_only: bool) -> List[PortOutcome]:
    return [r for r in report.outcomes if (r.is_open or not open_only)]


def print_report(report: ScanReport, open_only: bool, out: Optional[TextIO] = None) -> None:
    out = out or sys.stdout
    print(summary_line(report), file=out)
    if report.cancelled:
        print(f"[!] Scan cancelled: {len(report.outcomes)}/{report.config.total_ports} ports reported", file=out)

    for r in _rows(report, open_only):
        print(format_row(r), file=out)


class ProgressPrinter:
    """on_progress callback that redraws one status line every `every` ports."""

    def __init__(self, every: int = 100, out: Optional[TextIO] = None):
        self.every = every
        self.out = out or sys.stderr
        self.open_count = 0
        self._start = time.perf_counter()

    def __call__(self, completed: int, total: int, outcome: PortOutcome) -> None:
        if outcome.is_open:
            self.open_count += 1
        if self.every <= 0:
            return
        if completed % self.every == 0 or completed == total:
            elapsed = time.perf_counter() - self._start
            rate = completed / elapsed if elapsed > 0 else 0.0
            print(
                f"\r[*] Scanned {completed}/{total} | open={self.open_count} | {rate:.0f} ports/s",
                end="",
                flush=True,
                file=self.out,
            )

    def finish(self) -> None:
        if self.every > 0:
            print(file=self.out)  # newline after progress


def save_report(
    report: ScanReport,
    fmt: str,
    out_dir: str = "SCANS",
    open_only: bool = False,
) -> str:
    os.makedirs(out_dir, exist_ok=True)
    ts = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    path = os.path.join(out_dir, f"{ts}_chainscan.{fmt}")

    filtered = _rows(report, open_only)

    if fmt == "txt":
        with open(path, "w", encoding="utf-8") as f:
            f.write(summary_line(report) + "\n")
            for r in filtered:
                f.write(format_row(r) + "\n")

    elif fmt == "csv":
        with open(path, "w", newline="", encoding="utf-8") as f:
            w = csv.writer(f)
            w.writerow(["target", "address", "port", "status", "elapsed_s", "service", "version", "reason"])
            for r in filtered:
                w.writerow([
                    report.target.host,
                    report.target.address,
                    r.port,
                    r.state.value,
                    r.elapsed_s,
                    r.service.label.value if r.service else "",
                    (r.service.version if r.service else None) or "",
                    r.reason or "",
                ])

    elif fmt == "json":
        payload = report.to_dict()
        payload["ports"] = [r.to_dict() for r in filtered]
        with open(path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)

    elif fmt == "html":
        with open(path, "w", encoding="utf-8") as f:
            f.write("<html><body>\n")
            f.write(f"<h1>Port Scan Results: {escape(report.target.host)}</h1>\n")
            f.write(f"<p>{escape(summary_line(report))}</p>\n")
            f.write("<ul>\n")
            for r in filtered:
                f.write(f"<li>{escape(format_row(r))}</li>\n")
            f.write("</ul>\n</body></html>\n")

    else:
        raise ValueError(f"Unsupported format: {fmt}")

    return path

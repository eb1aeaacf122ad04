from __future__ import annotations

import argparse
import sys

from . import __version__
from .banner import ClassifierConfig, ServiceClassifier
from .config import load_defaults
from .errors import ConfigError, ResolutionError
from .log import create_logger
from .models import ScanConfig
from .output import ProgressPrinter, print_report, save_report
from .ports import DEBUG_PORTS, ETH_RPC_PORTS, parse_ports
from .scanner import ScanRun, scan
from .targets import resolve_target, resolver_from_spec

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_RESOLUTION = 3
EXIT_INTERRUPTED = 130


def _ports_arg(ports) -> str:
    return ",".join(str(p) for p in ports)


def build_parser(defaults=None) -> argparse.ArgumentParser:
    d = defaults if defaults is not None else load_defaults()
    p = argparse.ArgumentParser(
        prog="chainscan",
        description="TCP port scanner with blockchain RPC / web / API service detection",
    )
    p.add_argument("--target", required=True, help="IP address or hostname")
    p.add_argument("--start-port", type=int, default=d["START_PORT"], help="First port (default: %(default)s)")
    p.add_argument("--end-port", type=int, default=d["END_PORT"], help="Last port, inclusive (default: %(default)s)")
    p.add_argument("--timeout", type=int, default=d["TIMEOUT_MS"], help="Connect timeout in ms (default: %(default)s)")
    p.add_argument(
        "--concurrent-limit", type=int, default=d["CONCURRENCY"],
        help="Max connection attempts in flight (default: %(default)s)",
    )
    p.add_argument("--dns", default=d["DNS"], help="Primary resolver: google, cloudflare, system or IPs (default: %(default)s)")
    p.add_argument("--fallback-dns", default=d["FALLBACK_DNS"], help="Fallback resolver (default: %(default)s)")
    p.add_argument("--rpc-ports", default=_ports_arg(ETH_RPC_PORTS), help="Ports probed for JSON-RPC first")
    p.add_argument("--debug-ports", default=_ports_arg(DEBUG_PORTS), help="Ports labelled as debug/remote")
    p.add_argument("--io-timeout", type=int, default=d["IO_TIMEOUT_MS"], help="Per-read/write timeout during detection in ms")
    p.add_argument("--no-detect", action="store_true", help="Skip service detection")
    p.add_argument("--no-api-refine", action="store_true", help="Report JSON/GraphQL HTTP services as HttpWeb")
    p.add_argument("--open-only", action="store_true", help="Only display/save open ports")
    p.add_argument("--format", choices=["txt", "csv", "json", "html"], help="Save results to file")
    p.add_argument("--out-dir", default="SCANS", help="Output directory for saved files")
    p.add_argument("--progress-every", type=int, default=100, help="Progress update interval, 0 disables (default: 100)")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    p.add_argument("--log-file", help="Also write JSON log events to this file")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


def _build(args):
    config = ScanConfig(
        start_port=args.start_port,
        end_port=args.end_port,
        timeout_s=args.timeout / 1000.0,
        concurrency=args.concurrent_limit,
        classify=not args.no_detect,
    ).validate()
    if args.io_timeout <= 0:
        raise ConfigError(f"--io-timeout must be positive, got {args.io_timeout}")
    classifier = ServiceClassifier(ClassifierConfig(
        rpc_ports=frozenset(parse_ports(args.rpc_ports)),
        debug_ports=frozenset(parse_ports(args.debug_ports)),
        io_timeout_s=args.io_timeout / 1000.0,
        api_refinement=not args.no_api_refine,
    ))
    return config, classifier, resolver_from_spec(args.dns), resolver_from_spec(args.fallback_dns)


def main(argv=None) -> int:
    try:
        parser = build_parser()
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    args = parser.parse_args(argv)
    create_logger(verbose=args.verbose, log_file=args.log_file)

    try:
        config, classifier, primary, fallback = _build(args)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    try:
        target = resolve_target(args.target, primary, fallback)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except ResolutionError as e:
        print(f"error: {e}", file=sys.stderr)
        print("Try using the IP address directly or another --dns resolver", file=sys.stderr)
        return EXIT_RESOLUTION

    print(f"[*] Target: {target.host} ({target.address}) | Ports: {config.start_port}-{config.end_port} "
          f"| Total: {config.total_ports}")

    run = ScanRun(target, config, classifier)
    progress = ProgressPrinter(every=args.progress_every)
    try:
        report = scan(target, config, on_progress=progress, run=run)
    except KeyboardInterrupt:
        progress.finish()
        print("[!] Scan interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED
    progress.finish()

    print_report(report, open_only=args.open_only)

    if args.format:
        path = save_report(report, fmt=args.format, out_dir=args.out_dir, open_only=args.open_only)
        print(f"Saved results to {path}")

    return EXIT_INTERRUPTED if run.interrupted else EXIT_OK

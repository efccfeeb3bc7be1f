#!/usr/bin/env python3
"""
MicroTempo command line.

Run a burst sync, print compensated time, inspect or edit the stored display
delay, and re-analyze raw calibration sample logs offline.
"""

import argparse
import sys

from .calibration.analyzer import analyze_samples
from .calibration.compensation import UNKNOWN_PRECISION_MS
from .calibration.params import CalibrationTier
from .config import load_config
from .errors import CalibrationError, ConfigError
from .logging import enable_debug, setup_logging
from .loggers.sample_logger import read_samples_csv
from .service import MicroTempo


def cmd_sync(service, args):
    """Burst sync against the selected server and print the result"""
    if args.server:
        matches = [s for s in service.servers if args.server in (s.name, s.host)]
        if not matches:
            print(f"Unknown server: {args.server}", file=sys.stderr)
            return 1
        service.select_server(matches[0])

    result = service.trigger_sync()
    if result is None:
        print(f"Sync failed: {service.current_server.name}", file=sys.stderr)
        return 1

    print(result.to_log_string(service.config.ntp.burst_samples))
    if args.verbose:
        stats = service.engine.get_burst_statistics()
        print(f"  successful attempts: {stats['successful']}/{stats['attempts']}")
    return 0


def cmd_now(service, args):
    """Sync, then print true and compensated time"""
    if service.trigger_sync() is None:
        print(f"Sync failed: {service.current_server.name}", file=sys.stderr)
        return 1

    true_time = service.now()
    compensated = service.compensated_now()
    print(f"True time:        {true_time.isoformat()}")
    print(f"Compensated time: {compensated.isoformat()}")
    print(f"Display delay:    {service.current_delay_ms():.3f}ms")
    return 0


def cmd_status(service, args):
    """Print the stored compensation state"""
    store = service.store
    print("MicroTempo Compensation Status")
    print("=" * 40)
    print(f"Delay:       {store.delay_ms:.3f}ms")
    if store.precision_ms == UNKNOWN_PRECISION_MS:
        print("Precision:   unknown (manual)")
    else:
        print(f"Precision:   ±{store.precision_ms:.3f}ms")
    print(f"Calibrated:  {'yes' if store.is_calibrated else 'no (heuristic)'}")
    print(f"Server:      {service.current_server.name} ({service.current_server.host})")
    return 0


def cmd_set_delay(service, args):
    state = service.store.set_manual(args.delay_ms)
    print(f"Delay set to {state.delay_nanos / 1e6:.3f}ms")
    return 0


def cmd_reset(service, args):
    state = service.store.reset()
    print(f"Reset to heuristic delay {state.delay_nanos / 1e6:.3f}ms")
    return 0


def cmd_analyze(args):
    """Analyze a raw sample CSV written by the calibration sample logger"""
    try:
        samples = read_samples_csv(args.csv)
    except OSError as e:
        print(f"Cannot read {args.csv}: {e}", file=sys.stderr)
        return 1
    except (ValueError, KeyError, TypeError) as e:
        # Malformed row or missing column
        print(f"Cannot parse {args.csv}: {e}", file=sys.stderr)
        return 1

    try:
        result = analyze_samples(samples, outlier_sigma=args.sigma)
    except CalibrationError as e:
        print(f"Analysis failed: {e}", file=sys.stderr)
        return 1

    print(f"Samples:    {result.sample_count} ({result.outlier_count} outliers rejected)")
    print(f"Median:     {result.median_delay_ms:.3f}ms")
    print(f"Mean:       {result.mean_delay_ms:.3f}ms")
    print(f"Std dev:    {result.std_dev_ms:.3f}ms")
    print(f"Precision:  ±{result.estimated_precision_ms:.4f}ms")
    return 0


def cmd_tiers(args):
    for tier in CalibrationTier:
        params = tier.params
        print(f"{tier.label:<22} >= {tier.min_fps:>3} fps  "
              f"flash {params.flash_duration_ms}/{params.flash_period_ms}ms  "
              f"run {params.run_duration_seconds}s  "
              f"target {params.target_sample_count}  "
              f"~{params.expected_precision_ms}ms")
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        prog="microtempo",
        description="MicroTempo: NTP-synced, display-latency compensated time",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Sync once and print the best sample
  microtempo sync

  # Print compensated time
  microtempo now

  # Re-analyze a raw sample log with a tighter outlier cut
  microtempo analyze logs/samples.csv --sigma 2.5
        """
    )
    parser.add_argument("--config", type=str, default=None,
                        help="Path to YAML configuration (default: packaged defaults)")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Debug logging and call tracing")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    sync_parser = subparsers.add_parser("sync", help="Run one burst sync")
    sync_parser.add_argument("--server", type=str, default=None,
                             help="Server name or host from the configuration")

    subparsers.add_parser("now", help="Sync and print compensated time")
    subparsers.add_parser("status", help="Show stored compensation")

    delay_parser = subparsers.add_parser("set-delay", help="Set a manual display delay")
    delay_parser.add_argument("delay_ms", type=float, help="Delay in milliseconds (clamped to 0-100)")

    subparsers.add_parser("reset", help="Forget calibration, use refresh-rate heuristic")

    analyze_parser = subparsers.add_parser("analyze", help="Analyze a raw calibration sample CSV")
    analyze_parser.add_argument("csv", type=str, help="CSV written by the sample logger")
    analyze_parser.add_argument("--sigma", type=float, default=3.0,
                                help="Outlier cut in MAD-sigmas (default: 3.0)")

    subparsers.add_parser("tiers", help="List calibration tiers")
    return parser


def main(argv=None):
    """CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    level = "DEBUG" if args.verbose else config.logging.level
    setup_logging(level, config.logging.format, config.logging.file)
    if args.verbose:
        enable_debug()

    if args.command == "analyze":
        return cmd_analyze(args)
    if args.command == "tiers":
        return cmd_tiers(args)

    commands = {
        "sync": cmd_sync,
        "now": cmd_now,
        "status": cmd_status,
        "set-delay": cmd_set_delay,
        "reset": cmd_reset,
    }

    try:
        with MicroTempo(config) as service:
            return commands[args.command](service, args)
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())

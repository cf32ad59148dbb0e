"""
Canary Release CLI.

Operator commands for deploying, validating, promoting and rolling back a
canary release.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from .config import ControllerConfig, load_config
from .controller import ReleaseController
from .errors import CanaryError, CancelledError
from .event_log import EventLog, JsonLinesSink, create_sink
from .models import ReleasePhase, ReleaseState, ValidationResult
from .prober import SplitObservation
from .state_store import StateStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130


def setup_logging(verbose: bool = False):
    """Configure logging for CLI."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stderr)
        ]
    )


def print_state(state: ReleaseState, as_json: bool = False):
    """Print the release state snapshot."""
    if as_json:
        print(json.dumps(state.to_dict(), indent=2))
        return

    phase_emoji = {
        ReleasePhase.IDLE: "✅",
        ReleasePhase.CANARY_ACTIVE: "🐤",
        ReleasePhase.FAILED: "❌",
    }
    emoji = phase_emoji.get(state.phase, "⏳")

    print("\n" + "=" * 60)
    print("Release State")
    print("=" * 60)
    print(f"\n  {emoji} Release: {state.namespace}/{state.release}")
    print(f"  Phase: {state.phase.value}")
    print(f"  Stable: {state.stable_version or '-'} "
          f"({state.stable_replicas.ready}/{state.stable_replicas.desired} ready, "
          f"{state.stable_weight}%)")
    print(f"  Canary: {state.canary_version or '-'} "
          f"({state.canary_replicas.ready}/{state.canary_replicas.desired} ready, "
          f"{state.canary_weight}%)")
    if state.last_validation:
        v = state.last_validation
        print(f"  Last validation: {'✓ PASS' if v.passed else '✗ FAIL'} "
              f"({v.successes}/{v.samples})")
    if state.last_applied:
        print(f"  Last applied: {state.last_applied}")
    print(f"  Updated: {state.updated_at.isoformat()}")
    print("\n" + "=" * 60 + "\n")


def print_error(error: CanaryError, as_json: bool = False):
    """Print a transition failure."""
    if as_json:
        print(json.dumps({"error": error.to_dict()}, indent=2))
        return
    print(f"\n❌ {error.kind}: {error}")
    print(f"   Phase: {error.phase or 'unchanged'}")
    print(f"   Last applied: {error.last_applied or 'nothing'}")
    if error.phase == ReleasePhase.FAILED.value:
        print("   Run 'rollback' to return to a known state.")


def print_validation(result: ValidationResult, as_json: bool = False):
    """Print a validation result."""
    if as_json:
        print(json.dumps({"validation": result.to_dict()}, indent=2))
        return
    status = "✓ PASS" if result.passed else "✗ FAIL"
    print(f"\n🔬 Validation: {status}")
    print(f"   Successes: {result.successes}/{result.samples} "
          f"({result.success_ratio:.0%}, required {result.min_success_ratio:.0%})")
    for version, count in result.versions_observed.items():
        print(f"   • {version}: {count}")
    for error in result.errors:
        print(f"   ⚠️  {error}")


def print_split(observation: SplitObservation, as_json: bool = False):
    """Print an observed traffic split."""
    if as_json:
        print(json.dumps({"split": observation.to_dict()}, indent=2))
        return
    status = "✓ PASS" if observation.within_tolerance else "✗ FAIL"
    print(f"\n🔀 Traffic split: {status}")
    print(f"   Canary share: {observation.canary_percent:.1f}% "
          f"(expected {observation.expected_canary_percent:.0f}% ±{observation.tolerance})")
    for version, count in observation.versions_observed.items():
        print(f"   • {version}: {count}")
    if observation.failures:
        print(f"   ⚠️  {observation.failures} failed probes")


def events_path(config: ControllerConfig) -> Path:
    """Default audit trail location next to the state file."""
    if config.events.path:
        return Path(config.events.path).expanduser()
    return config.state_path / config.namespace / f"{config.release}.events.jsonl"


def build_event_log(config: ControllerConfig) -> EventLog:
    """CLI runs are short-lived, so an in-memory log is kept on disk instead."""
    if config.events.backend == "memory":
        return EventLog(JsonLinesSink(events_path(config)))
    return EventLog(create_sink(
        config.events.backend,
        path=config.events.path,
        endpoint=config.events.endpoint,
        labels=config.events.labels,
        timeout_seconds=config.events.timeout_seconds,
        max_buffer=config.events.max_buffer,
    ))


def print_history(config: ControllerConfig, limit: Optional[int], as_json: bool = False) -> int:
    """Print recorded release events. Returns the exit code."""
    if config.events.backend == "http":
        print("Error: history is not available for the http event backend; "
              f"query {config.events.endpoint or 'the log endpoint'} instead")
        return EXIT_FAILURE
    path = events_path(config)
    try:
        records = JsonLinesSink(path).read()
    except ValueError as e:
        print(f"Error: corrupt event log {path}: {e}")
        return EXIT_FAILURE
    if limit is not None:
        records = records[-limit:] if limit > 0 else []
    if as_json:
        print(json.dumps(records, indent=2))
        return EXIT_OK
    if not records:
        print("No release events recorded.")
        return EXIT_OK
    print("\n📜 Release history:")
    for record in records:
        line = (f"   {record['timestamp']} {record['transition']:<14} "
                f"{record['from_phase']} -> {record['to_phase']} [{record['outcome']}]")
        if record.get("reason"):
            line += f" {record['reason']}"
        print(line)
        if record.get("error"):
            print(f"      ⚠️  {record['error']}")
    print()
    return EXIT_OK


def _install_cancel_handlers(controller: ReleaseController):
    """SIGINT/SIGTERM abort the in-flight transition instead of killing it."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, controller.cancel)
        except (NotImplementedError, RuntimeError):
            pass


async def run_command(args: argparse.Namespace, config: ControllerConfig) -> int:
    """Run one operator command and return the exit code."""
    store = StateStore(config.state_path)
    controller = await ReleaseController.create(
        config,
        events=build_event_log(config),
        store=store,
    )
    _install_cancel_handlers(controller)
    exit_code = EXIT_OK

    try:
        if args.command == "deploy-canary":
            await controller.start_canary(
                args.version,
                args.weight,
                timeout=args.timeout,
                image=args.image,
                replicas=args.replicas,
            )
        elif args.command == "validate":
            result = await controller.validate(args.samples, args.min_ratio)
            print_validation(result, args.json)
            if not result.passed:
                exit_code = EXIT_FAILURE
        elif args.command == "verify-split":
            observation = await controller.verify_traffic_split(args.samples, args.tolerance)
            print_split(observation, args.json)
            if not observation.within_tolerance:
                exit_code = EXIT_FAILURE
        elif args.command == "promote":
            await controller.promote(force=args.force, timeout=args.timeout)
        elif args.command == "rollback":
            await controller.rollback(args.reason)
    except CancelledError as e:
        print_error(e, args.json)
        exit_code = EXIT_CANCELLED
    except CanaryError as e:
        print_error(e, args.json)
        exit_code = EXIT_FAILURE

    print_state(controller.status(), args.json)
    return exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="canaryctl",
        description="Canary release controller for Kubernetes + Istio",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Deploy v2.0 as canary with 20% of traffic
  canaryctl deploy-canary v2.0 --weight 20 -n demo

  # Probe the canary through the override header
  canaryctl validate --samples 20 --min-ratio 0.95

  # Check the observed split matches the weights
  canaryctl verify-split --samples 100 --tolerance 10

  # Promote the validated canary
  canaryctl promote

  # Send all traffic back to stable
  canaryctl rollback --reason "latency regression"
        """
    )

    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("-c", "--config", type=str, help="YAML config file")
    parser.add_argument("-n", "--namespace", type=str, help="Kubernetes namespace")
    parser.add_argument("--release", type=str, help="Release name (overrides config)")
    parser.add_argument("--state-dir", type=str, help="Directory for persisted release state")
    parser.add_argument("--json", action="store_true", help="Print JSON instead of text")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    deploy_parser = subparsers.add_parser("deploy-canary", help="Deploy a canary version")
    deploy_parser.add_argument("version", type=str, help="Version to deploy")
    deploy_parser.add_argument("--weight", "-w", type=int, required=True,
                               help="Canary traffic percentage (1-99)")
    deploy_parser.add_argument("--timeout", type=float, help="Rollout timeout in seconds")
    deploy_parser.add_argument("--image", type=str, help="Image (default: <repository>:<version>)")
    deploy_parser.add_argument("--replicas", type=int, help="Canary replicas")

    validate_parser = subparsers.add_parser("validate", help="Probe the canary")
    validate_parser.add_argument("--samples", type=int, help="Number of probes")
    validate_parser.add_argument("--min-ratio", type=float, help="Required success ratio (0-1)")

    split_parser = subparsers.add_parser("verify-split", help="Check the observed traffic split")
    split_parser.add_argument("--samples", type=int, help="Number of probes")
    split_parser.add_argument("--tolerance", type=float, help="Allowed deviation in percentage points")

    promote_parser = subparsers.add_parser("promote", help="Promote the canary to stable")
    promote_parser.add_argument("--force", action="store_true",
                                help="Promote without a passing validation")
    promote_parser.add_argument("--timeout", type=float, help="Rollout timeout in seconds")

    rollback_parser = subparsers.add_parser("rollback", help="Route all traffic to stable")
    rollback_parser.add_argument("--reason", type=str, required=True, help="Why the release is rolled back")

    subparsers.add_parser("status", help="Show the release state")

    history_parser = subparsers.add_parser("history", help="Show recorded release events")
    history_parser.add_argument("--limit", type=int, help="Only the last N events")

    return parser


def main(argv: Optional[list] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_FAILURE

    setup_logging(args.verbose)

    try:
        config = load_config(
            args.config,
            release=args.release,
            namespace=args.namespace,
            state_dir=args.state_dir,
        )
    except (OSError, ValueError) as e:
        print(f"Error: could not load config: {e}")
        return EXIT_FAILURE
    if args.command == "history":
        return print_history(config, args.limit, args.json)

    try:
        return asyncio.run(run_command(args, config))
    except CanaryError as e:
        print_error(e, args.json)
        return EXIT_FAILURE
    except ValueError as e:
        print(f"Error: {e}")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())

"""
Command-line interface for FleetSync.

Usage (examples):
  - Show what would change (exit 0: nothing to do, 2: changes pending, 1: error):
      fleetsync plan --document ./fleet.yml --schema windows

  - Reconcile (exit 0: all applied/unchanged, 1: any failure, 3: cancelled):
      fleetsync apply --document ./fleet.xlsx --base-url https://gw.corp.local/api --token "$TOKEN"

  - Render the last stored report:
      fleetsync report --format json
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, Optional

from .core.config import DEFAULT_FILES, AppConfig, load_config
from .core.document import load_document
from .core.errors import ConfigError, FleetSyncError, ReportError, ValidationError
from .core.executor import CancelToken
from .core.logging_setup import build_logger
from .core.reconciler import Reconciler
from .core.report import EXIT_FAILED, EXIT_OK, EXIT_PENDING, format_report, load_last_report, render_plan, save_report
from .core.schema import AttributeSchema, SchemaLoader
from .providers.registry import ProviderRegistry

log = logging.getLogger("fs.cli")


# ---------- argument parser ----------

def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default="", help="Config file (default: ./fleetsync.yml, ~/.config/fleetsync/config.yml, /etc/fleetsync/config.yml)")
    p.add_argument("--format", choices=["table", "json"], default="table", help="Output format")
    p.add_argument("--state-dir", default=None, help="Directory holding stored reports")
    p.add_argument("--logs-dir", default=None, help="Logs base directory")
    p.add_argument("--console-level", default=None, help="Console log level (INFO..CRITICAL)")
    p.add_argument("--file-level", default=None, help="File log level (DEBUG..CRITICAL)")


def _add_run_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--document", required=True, help="Desired-state document (.yml, .yaml, .json, .xlsx)")
    p.add_argument("--target", default=None, help="Default target for resources without one")
    p.add_argument("--schema", default=None, help="Attribute schema name or path")
    p.add_argument("--run-id", default=None, help="Run identifier (default: random)")
    p.add_argument("--concurrency", type=int, default=None, help="Worker threads")
    # Gateway
    p.add_argument("--base-url", default=None, help="Management gateway base URL")
    p.add_argument("--token", default=None, help="Management gateway API token")
    p.add_argument("--verify-tls", default=None, choices=["true", "false"], help="Verify TLS (https)")
    # Registry hives
    p.add_argument("--registry-root", default=None, help="Directory of registry hive files")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fleetsync", description="FleetSync: declarative Windows fleet reconciliation")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("plan", help="Compute and print the plan without applying it")
    _add_common(p)
    _add_run_options(p)

    a = sub.add_parser("apply", help="Compute the plan and apply it")
    _add_common(a)
    _add_run_options(a)

    r = sub.add_parser("report", help="Render the last reconciliation report")
    _add_common(r)

    return parser


# ---------- wiring ----------

def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Only options given on the command line override lower layers."""
    mapping = {
        ("app", "run_id"): getattr(args, "run_id", None),
        ("app", "concurrency"): getattr(args, "concurrency", None),
        ("app", "state_dir"): args.state_dir,
        ("gateway", "base_url"): getattr(args, "base_url", None),
        ("gateway", "token"): getattr(args, "token", None),
        ("gateway", "verify_tls"): getattr(args, "verify_tls", None),
        ("registry", "root_dir"): getattr(args, "registry_root", None),
        ("schema", "path"): getattr(args, "schema", None),
        ("logging", "base_dir"): args.logs_dir,
        ("logging", "console_level"): args.console_level,
        ("logging", "file_level"): args.file_level,
    }
    out: Dict[str, Any] = {}
    for (section, key), value in mapping.items():
        if value is not None:
            out.setdefault(section, {})[key] = value
    return out


def _load_cfg(args: argparse.Namespace) -> AppConfig:
    files = DEFAULT_FILES
    if args.config:
        if not os.path.exists(args.config):
            raise ConfigError(f"Config file not found: {args.config}")
        files = (args.config,)
    return load_config(_cli_overrides(args), files=files)


def _load_schema(cfg: AppConfig) -> AttributeSchema:
    if not cfg.schema.path:
        return AttributeSchema()
    return SchemaLoader(search_paths=list(cfg.schema.search_paths)).load(cfg.schema.path)


@contextmanager
def _cancel_on_signals(token: CancelToken, logger: Any) -> Iterator[None]:
    """SIGINT/SIGTERM request a graceful stop: in-flight changes finish, nothing new starts."""

    def handler(signum, _frame) -> None:
        logger.warning("Received signal %s: cancelling run (in-flight changes will finish)", signum)
        token.cancel()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, handler)
        except ValueError:  # not in the main thread
            pass
    try:
        yield
    finally:
        for sig, prev in previous.items():
            signal.signal(sig, prev)


# ---------- commands ----------

def _run_cmd(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args)
    logger = build_logger(
        run_id=cfg.run_id,
        action=args.cmd,
        base_dir=cfg.logging.base_dir,
        console_level=cfg.logging.console_level,
        file_level=cfg.logging.file_level,
        extra={"document": args.document},
    )
    logger.info("Starting fleetsync %s", args.cmd)

    document = load_document(args.document, default_target=args.target)
    schema = _load_schema(cfg)
    registry = ProviderRegistry.from_config(cfg, kinds=document.kinds, logger=logger)
    reconciler = Reconciler(registry, schema, cfg, logger)

    token = CancelToken()
    with _cancel_on_signals(token, logger):
        if args.cmd == "plan":
            plan = reconciler.plan(document, token)
            print(render_plan(plan, args.format))
            if plan.has_unknown:
                logger.error("Observed state could not be fetched for some resources")
                return EXIT_FAILED
            return EXIT_PENDING if plan.has_changes else EXIT_OK

        report = reconciler.apply(document, token)

    path = save_report(report, cfg.app.state_dir)
    logger.info("Report written to %s", path)
    print(report.to_json() if args.format == "json" else report.render_table())
    return report.exit_code()


def _report_cmd(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args)
    data = load_last_report(cfg.app.state_dir)
    if args.format == "json":
        print(json.dumps(data, indent=2, ensure_ascii=False))
    else:
        print(format_report(data))
    return EXIT_OK


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        if args.cmd in ("plan", "apply"):
            return _run_cmd(args)
        if args.cmd == "report":
            return _report_cmd(args)
    except ConfigError as exc:
        log.error("Configuration error: %s", exc)
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FAILED
    except ValidationError as exc:
        log.error("Validation error (%s): %s", type(exc).__name__, exc)
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FAILED
    except ReportError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FAILED
    except FleetSyncError as exc:
        log.error("%s: %s", type(exc).__name__, exc)
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_FAILED

    parser.error("Unknown command")  # pragma: no cover
    return EXIT_FAILED  # pragma: no cover


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

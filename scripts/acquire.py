#!/usr/bin/env python3
"""
Audiobook acquisition pipeline command line.
- request: create a primary request and queue its search.
- sidecar: fetch (or retry) the companion e-book for a completed request.
- work: run the worker pool and the re-search sweep until stopped.
- drain: run queued jobs until nothing is ready, then exit.
- status: print a job or request as JSON.
- check-config: validate the config file and exit.
"""

import os
import sys

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import argparse
import dataclasses
import json
import logging
import signal
import threading

from acquisition.config import load_config, validate_config
from acquisition.errors import ConfigurationError
from acquisition.orchestrator import Orchestrator, build_context
from acquisition.path_mapper import validate_mapping
from acquisition.paths import LOG_DIR, build_pipeline_paths, ensure_dir, resolve_config_path
from acquisition.scheduler import ResearchScheduler


def _setup_logging(log_dir, verbose=False):
    ensure_dir(log_dir)
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        filename=os.path.join(log_dir, "acquisition.log"),
        level=level,
        format="%(asctime)s [%(levelname)s] %(threadName)s %(message)s",
    )
    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    console.setLevel(level)
    logging.getLogger("").addHandler(console)


def _print_json(value):
    print(json.dumps(value, indent=2, sort_keys=True, default=str))


def _cmd_check_config(config_path):
    with open(config_path, "r") as f:
        raw = json.load(f)
    errors = validate_config(raw)
    if not errors:
        errors = validate_mapping(raw.get("path_mapping") or {})
    _print_json({"config": config_path, "valid": not errors, "errors": errors})
    return 0 if not errors else 1


def _cmd_request(orchestrator, args):
    target = {"title": args.title, "author": args.author or ""}
    if args.external_id:
        target["external_id"] = args.external_id
    if args.duration_minutes:
        target["duration_seconds"] = int(args.duration_minutes * 60)
    _print_json(orchestrator.request_acquisition(target))
    return 0


def _cmd_sidecar(orchestrator, args):
    _print_json(orchestrator.fetch_sidecar(args.parent_request_id))
    return 0


def _cmd_status(orchestrator, args):
    ctx = orchestrator.ctx
    if args.job:
        job = ctx.jobs.get_job(args.job)
        if job is None:
            logging.error("Job not found: %s", args.job)
            return 1
        _print_json(dataclasses.asdict(job))
        return 0
    request = ctx.requests.get_request(args.request)
    if request is None:
        logging.error("Request not found: %s", args.request)
        return 1
    _print_json(
        {
            "request": dataclasses.asdict(request),
            "jobs": [dataclasses.asdict(job) for job in ctx.jobs.list_jobs(request.id)],
            "downloads": [dataclasses.asdict(item) for item in ctx.history.list_for_request(request.id)],
        }
    )
    return 0


def _cmd_drain(orchestrator, args):
    orchestrator.build_worker_pool(workers=args.workers).run_until_idle()
    return 0


def _cmd_work(orchestrator, args):
    stop_event = threading.Event()

    def _handle_signal(signum, _frame):
        stop_event.set()
        logging.warning("Signal %s received; stopping after current jobs", signum)

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    scheduler = ResearchScheduler(orchestrator)
    scheduler.start(run_now=True)
    logging.info("Next re-search sweep at %s", scheduler.next_run_iso())
    try:
        orchestrator.build_worker_pool(stop_event=stop_event, workers=args.workers).run_forever()
    finally:
        scheduler.shutdown()
    logging.warning("Stopped by signal")
    return 130


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", default=None)
    parser.add_argument("--verbose", action="store_true", help="Log debug output, including score breakdowns.")
    sub = parser.add_subparsers(dest="command", required=True)

    req = sub.add_parser("request", help="Create a primary acquisition request.")
    req.add_argument("--title", required=True)
    req.add_argument("--author")
    req.add_argument("--external-id", help="Catalogue id (e.g. ASIN) used by direct sources.")
    req.add_argument("--duration-minutes", type=float, help="Runtime, used to judge file size.")

    side = sub.add_parser("sidecar", help="Fetch the companion e-book for a completed request.")
    side.add_argument("parent_request_id")

    for name, help_text in (("work", "Run workers until SIGINT/SIGTERM."), ("drain", "Run ready jobs, then exit.")):
        runner = sub.add_parser(name, help=help_text)
        runner.add_argument("--workers", type=int, default=None)

    status = sub.add_parser("status", help="Print a job or request as JSON.")
    group = status.add_mutually_exclusive_group(required=True)
    group.add_argument("--job")
    group.add_argument("--request")

    sub.add_parser("check-config", help="Validate the config file.")
    args = parser.parse_args()

    _setup_logging(LOG_DIR, verbose=args.verbose)

    try:
        config_path = resolve_config_path(args.config)
    except ValueError as exc:
        logging.error("Invalid config path: %s", exc)
        sys.exit(2)
    if not os.path.exists(config_path):
        logging.error("Config file not found: %s", config_path)
        sys.exit(2)

    if args.command == "check-config":
        sys.exit(_cmd_check_config(config_path))

    try:
        config = load_config(config_path)
        orchestrator = Orchestrator(build_context(config, build_pipeline_paths()))
    except (ValueError, ConfigurationError) as exc:
        logging.error("Invalid configuration: %s", exc)
        sys.exit(2)

    commands = {
        "request": _cmd_request,
        "sidecar": _cmd_sidecar,
        "status": _cmd_status,
        "drain": _cmd_drain,
        "work": _cmd_work,
    }
    try:
        code = commands[args.command](orchestrator, args)
    except (ValueError, ConfigurationError) as exc:
        logging.error("%s failed: %s", args.command, exc)
        code = 1
    finally:
        orchestrator.close()
    logging.shutdown()
    sys.exit(code)


if __name__ == "__main__":
    main()

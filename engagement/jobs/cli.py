"""
Cron entry points. Each prints the JobResult as one JSON line and exits 0,
even when some users failed; only an unreachable state store exits 1.
"""
import argparse
import json
import signal
import sys
import threading
from typing import Callable, List, Optional

from engagement.core.errors import FatalError
from engagement.jobs.daily import run_daily_job
from engagement.jobs.weekly import run_weekly_job
from engagement.observability.logging import log
from engagement.utils.time import parse_timestamp_ms

EXIT_OK = 0
EXIT_FATAL = 1


def _parse_args(prog: str, argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog=prog)
    parser.add_argument("--now", default=None,
                        help="Evaluate as of this time (epoch ms or ISO-8601). Defaults to the current time.")
    return parser.parse_args(argv)


def _install_stop_handler(cancel_event: threading.Event) -> None:
    def _stop(signum, frame):
        log(event="job_stop_requested", level="warning", signal=signum)
        cancel_event.set()
    try:
        signal.signal(signal.SIGTERM, _stop)
    except ValueError:
        # Not the main thread (embedded use); cancellation stays manual.
        pass


def _run(prog: str, runner: Callable, argv: Optional[List[str]]) -> int:
    args = _parse_args(prog, argv)
    now = parse_timestamp_ms(args.now) if args.now else None
    cancel_event = threading.Event()
    _install_stop_handler(cancel_event)
    try:
        result = runner(now=now, cancel_event=cancel_event)
    except FatalError as e:
        log(event="job_fatal", level="error", job=prog, error=str(e))
        print(json.dumps({"job": prog, "fatal": True, "error": str(e)}))
        return EXIT_FATAL
    print(json.dumps(result.to_dict(), default=str))
    return EXIT_OK


def daily_main(argv: Optional[List[str]] = None) -> int:
    return _run("engagement-daily", run_daily_job, argv)


def weekly_main(argv: Optional[List[str]] = None) -> int:
    return _run("engagement-weekly", run_weekly_job, argv)


def _daily_entry() -> None:
    sys.exit(daily_main())


def _weekly_entry() -> None:
    sys.exit(weekly_main())

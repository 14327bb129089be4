"""
PhD Progress Tracker
Scheduler Service.

Registry and runner for the periodic reminder sweeps. Scheduling itself is
external (cron, a platform scheduler, or an operator); jobs are triggered
with ``flask run-job <name>`` or ``POST /api/v1/jobs/<name>/run``. Every job
is idempotent, so running it twice in a row is harmless.

Architecture:
    - register_job(name): decorator adding a job function to the registry
    - SchedulerService.run_job(name): executes inside a fresh app context
      and returns a run summary; failures are logged, never raised
    - The last summary per job is kept in process memory for ``GET /jobs``
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable

from flask import Flask

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a sweep.

    Usage:
        @register_job("stage_reminders")
        def send_stage_reminders(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        if name in _job_registry and _job_registry[name] is not fn:
            raise ValueError(f"Job {name!r} is already registered")
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return dict(_job_registry)


def _summary_line(fn: Callable) -> str:
    doc = (fn.__doc__ or "").strip()
    return doc.splitlines()[0] if doc else ""


class SchedulerService:
    """Runs registered sweeps inside the Flask app context."""

    _app: Flask | None = None
    _last_runs: dict[str, dict] = {}

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService ready with %d jobs: %s",
                    len(_job_registry), ", ".join(sorted(_job_registry)))

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Run one sweep by name.

        Returns:
            {job_name, status: success|failed|error, started_at, duration_ms,
             result, error}. ``error`` status means the job never started.
        """
        fn = _job_registry.get(job_name)
        if fn is None:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if cls._app is None:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        started_at = datetime.now(timezone.utc)
        t0 = time.monotonic()
        run = {"job_name": job_name, "status": "success", "result": None, "error": None}
        try:
            with cls._app.app_context():
                run["result"] = fn(cls._app)
        except Exception as exc:
            run["status"] = "failed"
            run["error"] = str(exc)
            logger.exception("Job %s failed", job_name, extra={"operation": job_name})

        run["started_at"] = started_at.isoformat()
        run["duration_ms"] = int((time.monotonic() - t0) * 1000)
        cls._last_runs[job_name] = run
        if run["status"] == "success":
            logger.info("Job %s finished in %dms: %s", job_name, run["duration_ms"], run["result"],
                        extra={"operation": job_name})
        return run

    @classmethod
    def last_run(cls, job_name: str) -> dict | None:
        return cls._last_runs.get(job_name)

    @classmethod
    def list_jobs(cls) -> list[dict]:
        return [
            {
                "job_name": name,
                "description": _summary_line(fn),
                "last_run": cls._last_runs.get(name),
            }
            for name, fn in sorted(_job_registry.items())
        ]

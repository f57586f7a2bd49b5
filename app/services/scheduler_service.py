"""
Approval Routing Engine
Scheduler Service.

Registry and runner for periodic jobs. The engine does not own a clock:
an external trigger (cron, platform scheduler, `flask sweep-approval-timeouts`)
calls run_job, which executes inside the app context and records the run
on the job's ScheduledJob row.
"""

from __future__ import annotations

import logging
import time
from contextlib import nullcontext
from typing import Callable

from flask import Flask, has_app_context

from app.models import db
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator registering ``fn(app) -> dict`` under ``name``."""
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return dict(_job_registry)


def _default_schedule(app: Flask, job_name: str) -> dict:
    if job_name == "approval_timeout_sweep":
        minutes = app.config.get("APPROVAL_TIMEOUT_SWEEP_MINUTES", 5)
        return {"minutes": minutes, "description": f"Every {minutes} minutes"}
    return {"hours": 24, "description": "Daily"}


class SchedulerService:
    """Job runner bound to a Flask app."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.debug("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def _context(cls):
        """Reuse the active app context (CLI, tests) or push a fresh one."""
        return nullcontext() if has_app_context() else cls._app.app_context()

    @classmethod
    def _job_record(cls, job_name: str) -> ScheduledJob:
        """Fetch the job's row, creating it with the default schedule on first use."""
        record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if record is None:
            fn = _job_registry[job_name]
            record = ScheduledJob(
                job_name=job_name,
                description=(fn.__doc__ or job_name).strip(),
                schedule_type="interval",
                schedule_config=_default_schedule(cls._app, job_name),
                status="active",
                is_enabled=True,
            )
            db.session.add(record)
            db.session.commit()
            logger.info("Scheduled job record created job_name=%s", job_name,
                        extra={"job_name": job_name})
        return record

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """Execute a registered job once and record the outcome.

        Returns:
            {"job_name", "status": success|failed|skipped|error, "duration_ms", "result", "error"}
        """
        fn = _job_registry.get(job_name)
        if fn is None:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if cls._app is None:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        with cls._context():
            record = cls._job_record(job_name)
            if not record.is_enabled:
                record.record_run(status="skipped", duration_ms=0, result={"reason": "disabled"})
                db.session.commit()
                return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                        "result": None, "error": None}

            start = time.monotonic()
            result, error, status = None, None, "success"
            try:
                result = fn(cls._app)
            except Exception as exc:
                db.session.rollback()
                status, error = "failed", str(exc)
                logger.exception("Job %s failed", job_name, extra={"job_name": job_name})
            duration_ms = int((time.monotonic() - start) * 1000)

            record = cls._job_record(job_name)
            record.record_run(
                status=status,
                duration_ms=duration_ms,
                result=result if isinstance(result, dict) else {"output": str(result)},
                error=error,
            )
            db.session.commit()

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def set_enabled(cls, job_name: str, enabled: bool) -> dict | None:
        """Pause or resume a registered job. Returns None for unknown names."""
        if job_name not in _job_registry:
            return None
        with cls._context():
            record = cls._job_record(job_name)
            record.is_enabled = enabled
            record.status = "active" if enabled else "paused"
            db.session.commit()
            return record.to_dict()

"""JSON file job store so scheduled hops survive a restart."""

from __future__ import annotations

import base64
import json
import pickle
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from apscheduler.job import Job
from apscheduler.jobstores.base import BaseJobStore, ConflictingIdError, JobLookupError
from loguru import logger


class JSONJobStore(BaseJobStore):
    """
    APScheduler job store persisted as one JSON document.

    Job state is pickled and base64-encoded; the file is rewritten through a temporary
    sibling so a crash never leaves half a document behind.
    """

    def __init__(self, file_path: str | Path):
        super().__init__()
        self.file_path = Path(file_path)
        self._lock = threading.RLock()
        self._jobs: dict[str, dict[str, Any]] = self._load()

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self.file_path.exists():
            return {}
        try:
            loaded = json.loads(self.file_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("jobstore.load_failed path={} error={}", self.file_path, exc)
            return {}
        if not isinstance(loaded, dict):
            return {}
        return loaded

    def _save(self) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        scratch = self.file_path.with_suffix(self.file_path.suffix + ".tmp")
        try:
            scratch.write_text(json.dumps(self._jobs, ensure_ascii=False, indent=2), encoding="utf-8")
            scratch.replace(self.file_path)
        except OSError as exc:
            logger.error("jobstore.save_failed path={} error={}", self.file_path, exc)

    @staticmethod
    def _serialize(job: Job) -> dict[str, Any]:
        return {
            "id": job.id,
            "state": base64.b64encode(pickle.dumps(job.__getstate__())).decode("ascii"),
            "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
        }

    def _restore(self, record: dict[str, Any]) -> Job | None:
        try:
            state = pickle.loads(base64.b64decode(record["state"]))  # noqa: S301
            job = Job.__new__(Job)
            job.__setstate__(state)
        except Exception as exc:
            logger.error("jobstore.restore_failed job={} error={}", record.get("id"), exc)
            return None
        job._scheduler = self._scheduler
        job._jobstore_alias = self._alias
        return job

    def _restore_all(self, records: list[dict[str, Any]]) -> list[Job]:
        jobs = [job for job in (self._restore(record) for record in records) if job is not None]
        return sorted(jobs, key=lambda job: job.next_run_time.timestamp() if job.next_run_time else float("inf"))

    def shutdown(self) -> None:
        with self._lock:
            self._save()

    def lookup_job(self, job_id: str) -> Job | None:
        with self._lock:
            record = self._jobs.get(job_id)
            return self._restore(record) if record else None

    def get_due_jobs(self, now: datetime) -> list[Job]:
        with self._lock:
            due = [
                record
                for record in self._jobs.values()
                if record.get("next_run_time") and datetime.fromisoformat(record["next_run_time"]) <= now
            ]
            return self._restore_all(due)

    def get_next_run_time(self) -> datetime | None:
        with self._lock:
            times = [datetime.fromisoformat(r["next_run_time"]) for r in self._jobs.values() if r.get("next_run_time")]
            return min(times) if times else None

    def get_all_jobs(self) -> list[Job]:
        with self._lock:
            return self._restore_all(list(self._jobs.values()))

    def add_job(self, job: Job) -> None:
        with self._lock:
            if job.id in self._jobs:
                raise ConflictingIdError(job.id)
            self._jobs[job.id] = self._serialize(job)
            self._save()

    def update_job(self, job: Job) -> None:
        with self._lock:
            if job.id not in self._jobs:
                raise JobLookupError(job.id)
            self._jobs[job.id] = self._serialize(job)
            self._save()

    def remove_job(self, job_id: str) -> None:
        with self._lock:
            if job_id not in self._jobs:
                raise JobLookupError(job_id)
            del self._jobs[job_id]
            self._save()

    def remove_all_jobs(self) -> None:
        with self._lock:
            self._jobs.clear()
            self._save()

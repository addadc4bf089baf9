from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from tripdesk.audit.lineage import AuditStore
from tripdesk.db.repositories import JobRunRepository, JobTaskRunRepository

logger = logging.getLogger(__name__)


@dataclass
class Task:
    name: str
    depends_on: list[str]
    fn: Callable[[], Any]


@dataclass
class Job:
    name: str
    tasks: list[Task]


@dataclass
class TaskResult:
    task_name: str
    status: str
    started_at: str | None = None
    completed_at: str | None = None
    error_message: str | None = None
    result: dict[str, Any] | None = None


@dataclass
class JobRunResult:
    run_id: str
    job_name: str
    status: str
    task_results: list[TaskResult]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobRunner:
    """Runs a job's tasks in dependency order; one active run per job at a time."""

    def __init__(
        self,
        job: Job,
        audit_store: AuditStore | None = None,
        run_repo: JobRunRepository | None = None,
        task_repo: JobTaskRunRepository | None = None,
    ) -> None:
        self.job = job
        self.audit_store = audit_store
        self.run_repo = run_repo or JobRunRepository()
        self.task_repo = task_repo or JobTaskRunRepository()
        self._task_lookup = {task.name: task for task in job.tasks}
        self._execution_order = self._validate_and_sort()
        self._active = threading.Lock()

    def _validate_and_sort(self) -> list[str]:
        for task in self.job.tasks:
            for dep in task.depends_on:
                if dep not in self._task_lookup:
                    raise ValueError(f"Task '{task.name}' depends on unknown task '{dep}'")

        visiting: set[str] = set()
        visited: set[str] = set()
        order: list[str] = []

        def dfs(task_name: str) -> None:
            if task_name in visiting:
                raise ValueError("Circular dependency detected in job")
            if task_name in visited:
                return
            visiting.add(task_name)
            for dep in self._task_lookup[task_name].depends_on:
                dfs(dep)
            visiting.remove(task_name)
            visited.add(task_name)
            order.append(task_name)

        for task in self.job.tasks:
            dfs(task.name)
        return order

    def get_execution_order(self) -> list[str]:
        return list(self._execution_order)

    def run(self) -> JobRunResult:
        if not self._active.acquire(blocking=False):
            now = _now()
            row = self.run_repo.insert(
                {
                    "id": str(uuid4()),
                    "job_name": self.job.name,
                    "status": "skipped",
                    "started_at": now,
                    "completed_at": now,
                    "created_at": now,
                }
            )
            logger.warning("Job %s is already running, skipping run %s", self.job.name, row["id"])
            return JobRunResult(run_id=row["id"], job_name=self.job.name, status="skipped", task_results=[])
        try:
            return self._run()
        finally:
            self._active.release()

    def _run(self) -> JobRunResult:
        now = _now()
        job_run = self.run_repo.insert(
            {
                "id": str(uuid4()),
                "job_name": self.job.name,
                "status": "running",
                "started_at": now,
                "completed_at": None,
                "created_at": now,
            }
        )
        run_id = job_run["id"]
        logger.info("Job %s started (run %s)", self.job.name, run_id)

        results: dict[str, TaskResult] = {}
        task_run_ids: dict[str, str] = {}
        for task_name in self._execution_order:
            row = self.task_repo.insert(
                {
                    "id": str(uuid4()),
                    "job_run_id": run_id,
                    "task_name": task_name,
                    "status": "pending",
                    "depends_on": list(self._task_lookup[task_name].depends_on),
                    "started_at": None,
                    "completed_at": None,
                    "error_message": None,
                    "result": None,
                }
            )
            task_run_ids[task_name] = row["id"]
            results[task_name] = TaskResult(task_name=task_name, status="pending")

        for task_name in self._execution_order:
            task = self._task_lookup[task_name]
            if any(results[dep].status in {"failed", "skipped"} for dep in task.depends_on):
                completed_at = _now()
                results[task_name] = TaskResult(task_name=task_name, status="skipped", completed_at=completed_at)
                self.task_repo.update(task_run_ids[task_name], {"status": "skipped", "completed_at": completed_at})
                continue

            started_at = _now()
            self.task_repo.update(task_run_ids[task_name], {"status": "running", "started_at": started_at})
            try:
                outcome = task.fn()
            except Exception as exc:
                completed_at = _now()
                logger.exception("Task %s of job %s failed", task_name, self.job.name)
                results[task_name] = TaskResult(
                    task_name=task_name,
                    status="failed",
                    started_at=started_at,
                    completed_at=completed_at,
                    error_message=str(exc),
                )
                self.task_repo.update(
                    task_run_ids[task_name],
                    {"status": "failed", "completed_at": completed_at, "error_message": str(exc)},
                )
                self._audit("task_failed", run_id, task_name, {"error": str(exc)})
                continue

            completed_at = _now()
            result_payload = outcome if isinstance(outcome, dict) else {"value": outcome}
            results[task_name] = TaskResult(
                task_name=task_name,
                status="succeeded",
                started_at=started_at,
                completed_at=completed_at,
                result=result_payload,
            )
            self.task_repo.update(
                task_run_ids[task_name],
                {"status": "succeeded", "completed_at": completed_at, "result": result_payload},
            )
            self._audit("task_succeeded", run_id, task_name, {"result": result_payload})

        final_status = "failed" if any(result.status == "failed" for result in results.values()) else "succeeded"
        self.run_repo.update(run_id, {"status": final_status, "completed_at": _now()})
        logger.info("Job %s finished with status %s (run %s)", self.job.name, final_status, run_id)
        return JobRunResult(
            run_id=run_id,
            job_name=self.job.name,
            status=final_status,
            task_results=[results[name] for name in self._execution_order],
        )

    def _audit(self, action: str, run_id: str, task_name: str, detail: dict[str, Any]) -> None:
        if not self.audit_store:
            return
        try:
            self.audit_store.log(
                action=action,
                component="job_runner",
                subject_reference=f"{run_id}:{task_name}",
                detail={"job_name": self.job.name, "task_name": task_name, **detail},
            )
        except Exception:
            logger.exception("Audit entry %s for %s:%s was not written", action, run_id, task_name)

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        run = self.run_repo.get(run_id)
        if not run:
            return None
        tasks = self.task_repo.get_by_run(run_id)
        tasks.sort(key=lambda row: row["task_name"])
        return {"run": run, "tasks": tasks}

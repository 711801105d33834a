"""
Dependency-ordered, multi-pass import of translated objects.

Jobs are attempted in input order, pass after pass. A job that fails because
something it references does not exist yet is retried next pass; any other
failure gets one assisted correction and is terminal after that. Each pass
produces a new immutable snapshot of every job, so nothing from one pass can
leak into the next by mutation.

The batch stops when every job succeeded, when nothing retryable is left,
when a whole pass produced no new success, or when the pass budget runs out.
All four are reported in BatchResult.stop_reason; none raises.
"""
from __future__ import annotations

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence

from access_to_pg.catalog import ControlBindings, SchemaCatalog
from access_to_pg.converter import TranslationUnit, translate
from access_to_pg.errors import (
    AssistantError,
    AssistantUnavailable,
    ConversionError,
    ErrorCategory,
    ErrorClassifier,
    missing_object_name,
)

log = logging.getLogger("access_to_pg.scheduler")

MAX_PASSES = 20

STOP_ALL_SUCCEEDED = "all-succeeded"
STOP_SETTLED = "settled"
STOP_NO_PROGRESS = "no-progress"
STOP_BUDGET = "pass-budget-exhausted"
STOP_EMPTY = "empty"


class JobStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED_DEPENDENCY = "failed-dependency"
    FAILED_CONVERSION = "failed-conversion"


RETRYABLE = (JobStatus.PENDING, JobStatus.FAILED_DEPENDENCY)


@dataclass(frozen=True)
class ImportJob:
    name: str
    statements: tuple[str, ...]
    object_kind: str = "view"
    source: str = ""
    schema: str = "public"
    status: JobStatus = JobStatus.PENDING
    pass_number: int = 0
    stage: str = "execute"                  # translate | execute
    error_code: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    error_message: str = ""
    fallback_used: bool = False
    assisted: bool = False
    assistant_skipped: bool = False
    warnings: tuple[str, ...] = ()

    def with_(self, **changes) -> "ImportJob":
        return replace(self, **changes)

    @property
    def missing_object(self) -> Optional[str]:
        if self.error_category is ErrorCategory.MISSING_DEPENDENCY:
            return missing_object_name(self.error_message)
        return None


def build_jobs(
    units: Iterable[TranslationUnit],
    catalog: Optional[SchemaCatalog] = None,
    bindings: Optional[ControlBindings] = None,
) -> list[ImportJob]:
    """Translate every unit; untranslatable units become terminal failed-conversion jobs."""
    jobs = []
    for unit in units:
        try:
            result = translate(unit, catalog, bindings)
        except ConversionError as e:
            log.warning("Translate failed: %s", e)
            jobs.append(ImportJob(
                name=unit.name,
                statements=(),
                source=unit.source,
                schema=unit.schema,
                status=JobStatus.FAILED_CONVERSION,
                stage="translate",
                error_category=e.category,
                error_message=str(e),
                warnings=tuple(e.warnings),
            ))
            continue
        jobs.append(ImportJob(
            name=unit.name,
            statements=tuple(result.statements),
            object_kind=result.object_kind,
            source=unit.source,
            schema=unit.schema,
            warnings=tuple(result.warnings),
        ))
    return jobs


# -----------------------------------------------------------------------------
# Batch result
# -----------------------------------------------------------------------------

@dataclass
class BatchResult:
    jobs: tuple[ImportJob, ...]
    passes: list[tuple[ImportJob, ...]] = field(default_factory=list)
    stop_reason: str = STOP_EMPTY
    elapsed: float = 0.0

    @property
    def passes_used(self) -> int:
        return len(self.passes)

    def _names(self, status: JobStatus) -> list[str]:
        return [j.name for j in self.jobs if j.status is status]

    @property
    def succeeded(self) -> list[str]:
        return self._names(JobStatus.SUCCEEDED)

    @property
    def failed_dependency(self) -> list[str]:
        return [j.name for j in self.jobs if j.status in RETRYABLE]

    @property
    def failed_conversion(self) -> list[str]:
        return self._names(JobStatus.FAILED_CONVERSION)

    @property
    def assisted(self) -> list[str]:
        return [j.name for j in self.jobs if j.assisted]

    @property
    def assistant_skipped(self) -> list[str]:
        return [j.name for j in self.jobs if j.assistant_skipped]

    def summary(self) -> dict:
        return {
            "succeeded": self.succeeded,
            "failed_dependency": self.failed_dependency,
            "failed_conversion": self.failed_conversion,
            "passes_used": self.passes_used,
            "stop_reason": self.stop_reason,
            "assisted": self.assisted,
            "assistant_skipped": self.assistant_skipped,
        }


# -----------------------------------------------------------------------------
# Scheduler
# -----------------------------------------------------------------------------

Fallback = Callable[[ImportJob, str], Sequence[str]]


def _attempt(
    job: ImportJob,
    pass_no: int,
    executor,
    fallback: Optional[Fallback],
    classifier: ErrorClassifier,
) -> ImportJob:
    """One attempt of one job -> the job's next state."""
    outcome = executor.apply(job.statements)
    if outcome.ok:
        return job.with_(status=JobStatus.SUCCEEDED, pass_number=pass_no,
                         error_code=None, error_category=None, error_message="")

    category = classifier.classify(outcome.sqlstate, outcome.message)
    log.debug("  %s: %s [%s]", job.name, outcome.first_line, category.value)
    failed = job.with_(pass_number=pass_no, error_code=outcome.sqlstate,
                       error_category=category, error_message=outcome.message)
    if category is ErrorCategory.MISSING_DEPENDENCY:
        return failed.with_(status=JobStatus.FAILED_DEPENDENCY)

    if job.fallback_used or fallback is None:
        return failed.with_(status=JobStatus.FAILED_CONVERSION)
    if not getattr(fallback, "available", True):
        return failed.with_(status=JobStatus.FAILED_CONVERSION, assistant_skipped=True,
                            warnings=job.warnings + ("assistant unavailable: correction skipped",))

    try:
        corrected = tuple(fallback(job, outcome.message))
    except AssistantUnavailable as e:
        log.warning("  %s: assistant unavailable (%s)", job.name, e)
        return failed.with_(status=JobStatus.FAILED_CONVERSION, assistant_skipped=True,
                            warnings=job.warnings + (f"assistant unavailable: {e}",))
    except AssistantError as e:
        log.error("  %s: assistant correction failed: %s", job.name, e)
        return failed.with_(status=JobStatus.FAILED_CONVERSION, fallback_used=True,
                            warnings=job.warnings + (f"assistant correction failed: {e}",))

    retry = executor.apply(corrected)
    assisted = failed.with_(statements=corrected, fallback_used=True, assisted=True)
    if retry.ok:
        log.info("  %s: assisted correction succeeded", job.name)
        return assisted.with_(status=JobStatus.SUCCEEDED, error_code=None,
                              error_category=None, error_message="")
    category = classifier.classify(retry.sqlstate, retry.message)
    assisted = assisted.with_(error_code=retry.sqlstate, error_category=category, error_message=retry.message)
    if category is ErrorCategory.MISSING_DEPENDENCY:
        # The correction is kept; later passes retry it without asking again.
        return assisted.with_(status=JobStatus.FAILED_DEPENDENCY)
    return assisted.with_(status=JobStatus.FAILED_CONVERSION)


def import_batch(
    jobs: Sequence[ImportJob],
    executor,
    fallback: Optional[Fallback] = None,
    classifier: Optional[ErrorClassifier] = None,
    max_passes: int = MAX_PASSES,
    workers: int = 1,
    on_pass: Optional[Callable[[int, tuple[ImportJob, ...]], None]] = None,
) -> BatchResult:
    """Run *jobs* to convergence. *executor* needs apply(statements) -> ExecutionOutcome.

    With workers > 1 the jobs of one pass run concurrently; *executor* must
    then be thread-safe (executor.PooledExecutor).
    """
    classifier = classifier or ErrorClassifier()
    arena: dict[int, ImportJob] = dict(enumerate(jobs))
    result = BatchResult(jobs=tuple(arena.values()))
    if not arena:
        return result
    t0 = time.time()

    for pass_no in range(1, max_passes + 1):
        todo = [i for i, j in arena.items() if j.status in RETRYABLE]
        log.info("Pass %d: attempting %d job(s)", pass_no, len(todo))
        attempted: dict[int, ImportJob] = {}
        if workers > 1 and len(todo) > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = {
                    pool.submit(_attempt, arena[i], pass_no, executor, fallback, classifier): i
                    for i in todo
                }
                for fut in as_completed(futures):
                    attempted[futures[fut]] = fut.result()
        else:
            for i in todo:
                attempted[i] = _attempt(arena[i], pass_no, executor, fallback, classifier)

        progress = 0
        for i in todo:
            job = attempted[i]
            if job.status is JobStatus.SUCCEEDED:
                progress += 1
            elif job.status is JobStatus.FAILED_CONVERSION:
                log.warning("  FAILED %s: %s", job.name, (job.error_message or "").splitlines()[0:1])
            arena[i] = job
        snapshot = tuple(arena[i] for i in sorted(arena))
        result.passes.append(snapshot)
        if on_pass is not None:
            on_pass(pass_no, snapshot)

        remaining = sum(1 for j in snapshot if j.status in RETRYABLE)
        log.info("Pass %d: %d succeeded, %d still waiting on dependencies", pass_no, progress, remaining)
        if all(j.status is JobStatus.SUCCEEDED for j in snapshot):
            result.stop_reason = STOP_ALL_SUCCEEDED
            break
        if remaining == 0:
            result.stop_reason = STOP_SETTLED
            break
        if progress == 0:
            result.stop_reason = STOP_NO_PROGRESS
            log.info("No progress in pass %d; stopping", pass_no)
            break
    else:
        result.stop_reason = STOP_BUDGET
        log.warning("Pass budget (%d) exhausted with %d job(s) pending", max_passes,
                    sum(1 for j in arena.values() if j.status in RETRYABLE))

    result.jobs = tuple(arena[i] for i in sorted(arena))
    result.elapsed = time.time() - t0
    return result


# -----------------------------------------------------------------------------
# Reports
# -----------------------------------------------------------------------------

def _ddl_text(job: ImportJob) -> str:
    return ";\n\n".join(job.statements) + ";\n" if job.statements else ""


def write_reports(result: BatchResult, out_dir: str) -> str:
    """resolved/*.sql, still_failed/*.sql and import_report.txt under *out_dir*."""
    resolved_dir = os.path.join(out_dir, "resolved")
    failed_dir = os.path.join(out_dir, "still_failed")
    os.makedirs(resolved_dir, exist_ok=True)
    os.makedirs(failed_dir, exist_ok=True)

    for job in result.jobs:
        fname = f"{job.name}.sql".replace(os.sep, "_")
        if job.status is JobStatus.SUCCEEDED:
            header = f"-- {job.name} ({job.object_kind}, pass {job.pass_number})"
            if job.assisted:
                header += " [llm-assisted]"
            with open(os.path.join(resolved_dir, fname), "w", encoding="utf-8") as f:
                f.write(header + "\n" + _ddl_text(job))
        else:
            err = (job.error_message or "").replace("\n", "\n-- ")
            with open(os.path.join(failed_dir, fname), "w", encoding="utf-8") as f:
                f.write(f"-- {job.name}: {job.status.value} at {job.stage}\n-- {err}\n")
                f.write(_ddl_text(job) or f"/* source */\n{job.source}\n")

    report_path = os.path.join(out_dir, "import_report.txt")
    with open(report_path, "w", encoding="utf-8") as f:
        f.write("IMPORT REPORT\n")
        f.write(f"Passes used: {result.passes_used}  Stop reason: {result.stop_reason}  "
                f"Elapsed: {result.elapsed:.1f}s\n")
        f.write(f"Succeeded: {len(result.succeeded)}  Failed (dependency): {len(result.failed_dependency)}  "
                f"Failed (conversion): {len(result.failed_conversion)}  Assisted: {len(result.assisted)}\n")
        f.write("=" * 80 + "\n")
        for job in result.jobs:
            if job.status is JobStatus.SUCCEEDED:
                continue
            f.write(f"{job.name}  [{job.status.value}]  stage={job.stage}")
            if job.error_code:
                f.write(f"  sqlstate={job.error_code}")
            missing = job.missing_object
            if missing:
                f.write(f"  missing={missing}")
            f.write("\n")
            first = (job.error_message or "").strip().splitlines()
            if first:
                f.write(f"    {first[0]}\n")
            for w in job.warnings:
                f.write(f"    warning: {w}\n")
    return report_path

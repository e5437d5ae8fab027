"""
Upload jobs — per-job state machine and the single-flight FIFO queue.

States:
    queued → reading → encrypting → depositing → uploading → registering → done
                 │          (skipped by plaintext jobs)
                 ▼
    any non-terminal step ──────────────────────────────────────────────→ error

Exactly one job is processed at a time: the storage network's transaction
nonces are not safe under concurrent submission from the same signer.
Persisted to JSON with atomic writes when a data directory is given.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
import os
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

from mediaseal.errors import JobStateError, describe
from mediaseal.seal.keys import AccessPolicy

logger = logging.getLogger(__name__)


class UploadStep(str, enum.Enum):
    QUEUED = "queued"
    READING = "reading"
    ENCRYPTING = "encrypting"
    DEPOSITING = "depositing"
    UPLOADING = "uploading"
    REGISTERING = "registering"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadStep.DONE, UploadStep.ERROR)


# Valid forward transitions (ERROR is added for every non-terminal step below)
_TRANSITIONS: dict[UploadStep, set[UploadStep]] = {
    UploadStep.QUEUED: {UploadStep.READING},
    UploadStep.READING: {UploadStep.ENCRYPTING, UploadStep.DEPOSITING},
    UploadStep.ENCRYPTING: {UploadStep.DEPOSITING},
    UploadStep.DEPOSITING: {UploadStep.UPLOADING},
    UploadStep.UPLOADING: {UploadStep.REGISTERING},
    UploadStep.REGISTERING: {UploadStep.DONE},
    UploadStep.DONE: set(),
    UploadStep.ERROR: set(),
}
for _step, _targets in _TRANSITIONS.items():
    if not _step.is_terminal:
        _targets.add(UploadStep.ERROR)

# Fields a patch may populate, and the step the job must be in to do so
_FIELD_STEPS: dict[str, set[UploadStep]] = {
    "content_identifier": {UploadStep.READING, UploadStep.ENCRYPTING},
    "piece_id": {UploadStep.UPLOADING},
    "tx_hash": {UploadStep.REGISTERING},
    "block_number": {UploadStep.REGISTERING},
    "upload_size": {UploadStep.DEPOSITING, UploadStep.UPLOADING},
    "provider_id": {UploadStep.UPLOADING},
    "dataset_owner": {UploadStep.UPLOADING},
}

# Attachment states
ATTACHMENT_PENDING = "pending"
ATTACHMENT_UPLOADED = "uploaded"
ATTACHMENT_FAILED = "failed"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Attachment:
    """Auxiliary asset (e.g. cover art) uploaded alongside a job.

    Best-effort: its failure never changes the owning job's terminal step.
    """

    def __init__(
        self,
        name: str,
        source_ref: str,
        content_type: str = "",
        status: str = ATTACHMENT_PENDING,
        piece_id: str | None = None,
        error: str | None = None,
        attempts: int = 0,
    ) -> None:
        self.name = name
        self.source_ref = source_ref
        self.content_type = content_type
        self.status = status
        self.piece_id = piece_id
        self.error = error
        self.attempts = attempts

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "source_ref": self.source_ref,
            "content_type": self.content_type,
            "status": self.status,
            "piece_id": self.piece_id,
            "error": self.error,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Attachment:
        return cls(
            name=data["name"],
            source_ref=data["source_ref"],
            content_type=data.get("content_type", ""),
            status=data.get("status", ATTACHMENT_PENDING),
            piece_id=data.get("piece_id"),
            error=data.get("error"),
            attempts=data.get("attempts", 0),
        )


class UploadJob:
    """One in-flight or completed upload.

    `encrypted`, `id`, `source_ref`, `track_identifier` and `owner` are fixed
    at creation. Everything else is populated by the pipeline worker as
    stages complete.
    """

    def __init__(
        self,
        job_id: str,
        source_ref: str,
        track_identifier: str,
        owner: str,
        encrypted: bool = True,
        policy: AccessPolicy | None = None,
        metadata: dict[str, Any] | None = None,
        dataset_id: str | None = None,
        attachments: list[Attachment] | None = None,
        step: UploadStep = UploadStep.QUEUED,
        content_identifier: str | None = None,
        piece_id: str | None = None,
        provider_id: str | None = None,
        dataset_owner: str | None = None,
        upload_size: int | None = None,
        tx_hash: str | None = None,
        block_number: int | None = None,
        error: str | None = None,
        created_at: str = "",
        updated_at: str = "",
    ) -> None:
        self.id = job_id
        self.source_ref = source_ref
        self.track_identifier = track_identifier
        self.owner = owner
        self.encrypted = encrypted
        self.policy = policy
        self.metadata = dict(metadata or {})
        self.dataset_id = dataset_id
        self.attachments = list(attachments or [])
        self.step = UploadStep(step)
        self.content_identifier = content_identifier
        self.piece_id = piece_id
        self.provider_id = provider_id
        self.dataset_owner = dataset_owner
        self.upload_size = upload_size
        self.tx_hash = tx_hash
        self.block_number = block_number
        self.error = error
        self.created_at = created_at or _now()
        self.updated_at = updated_at or self.created_at

    def __repr__(self) -> str:
        return f"UploadJob(id={self.id!r}, step={self.step.value!r})"

    @property
    def is_terminal(self) -> bool:
        return self.step.is_terminal

    def transition(self, new_step: UploadStep) -> None:
        """Advance the state machine. Raises JobStateError on invalid transition."""
        new_step = UploadStep(new_step)
        if new_step is UploadStep.ENCRYPTING and not self.encrypted:
            raise JobStateError(f"Job {self.id} is plaintext; it has no encrypting step")
        if new_step is UploadStep.DEPOSITING and self.step is UploadStep.READING and self.encrypted:
            raise JobStateError(f"Job {self.id} is encrypted; encrypting cannot be skipped")
        if new_step not in _TRANSITIONS[self.step]:
            raise JobStateError(
                f"Cannot transition job {self.id} from {self.step.value!r} to {new_step.value!r}"
            )
        self.step = new_step

    def apply(self, patch: dict[str, Any]) -> None:
        """Apply a partial update from the pipeline worker.

        A patch may carry `step`, `error` (only with step=error) and any
        stage-result field valid for the step the job is in before the
        transition (if any) is applied. Fields are set first, then the step
        advances, so a stage can record its result and leave in one patch.
        """
        patch = dict(patch)
        step = patch.pop("step", None)
        error = patch.pop("error", None)

        unknown = set(patch) - set(_FIELD_STEPS)
        if unknown:
            raise JobStateError(
                f"Fields not patchable on job {self.id}: {', '.join(sorted(unknown))}"
            )
        if error is not None and step is not UploadStep.ERROR:
            raise JobStateError("error may only be set together with step=error")

        # Stage results belong to the step that produced them
        for name, value in patch.items():
            if self.step not in _FIELD_STEPS[name]:
                raise JobStateError(
                    f"{name} cannot be recorded while job {self.id} is {self.step.value!r}"
                )
            setattr(self, name, value)

        if step is not None:
            self.transition(step)
            if self.step is UploadStep.ERROR:
                self.error = error or "unknown error"
        self.updated_at = _now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_ref": self.source_ref,
            "track_identifier": self.track_identifier,
            "owner": self.owner,
            "encrypted": self.encrypted,
            "policy": self.policy.to_dict() if self.policy else None,
            "metadata": self.metadata,
            "dataset_id": self.dataset_id,
            "attachments": [a.to_dict() for a in self.attachments],
            "step": self.step.value,
            "content_identifier": self.content_identifier,
            "piece_id": self.piece_id,
            "provider_id": self.provider_id,
            "dataset_owner": self.dataset_owner,
            "upload_size": self.upload_size,
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UploadJob:
        policy = data.get("policy")
        return cls(
            job_id=data["id"],
            source_ref=data["source_ref"],
            track_identifier=data["track_identifier"],
            owner=data["owner"],
            encrypted=data.get("encrypted", True),
            policy=AccessPolicy.from_dict(policy) if policy else None,
            metadata=data.get("metadata") or {},
            dataset_id=data.get("dataset_id"),
            attachments=[Attachment.from_dict(a) for a in data.get("attachments", [])],
            step=UploadStep(data.get("step", UploadStep.QUEUED.value)),
            content_identifier=data.get("content_identifier"),
            piece_id=data.get("piece_id"),
            provider_id=data.get("provider_id"),
            dataset_owner=data.get("dataset_owner"),
            upload_size=data.get("upload_size"),
            tx_hash=data.get("tx_hash"),
            block_number=data.get("block_number"),
            error=data.get("error"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


Worker = Callable[[UploadJob, "JobQueue"], Awaitable[None]]
Observer = Callable[[UploadJob], None]


class JobQueue:
    """Ordered, optionally durable set of upload jobs with one worker.

    The queue never errors on behalf of a job: failures live on the job.
    `enqueue` only appends and, when idle, schedules the drain loop on the
    running event loop. While a drain is active further enqueues just append.

    Usage:
        queue = JobQueue(worker=pipeline.run, data_dir=Path("~/.mediaseal"))
        job_id = queue.enqueue("song.mp3", track_identifier=tid, owner=addr)
        await queue.wait_idle()
    """

    def __init__(self, worker: Worker, data_dir: str | Path | None = None) -> None:
        self._worker = worker
        self._dir = Path(data_dir).expanduser() if data_dir else None
        self._path = self._dir / "jobs.json" if self._dir else None
        self._jobs: dict[str, UploadJob] = {}
        self._observers: list[Observer] = []
        self._processing = False
        self._drain_task: asyncio.Task | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        # Held for every worker call and every exclusive() block
        self._slot = asyncio.Lock()
        self._load()

    # -- persistence ----------------------------------------------------

    def _load(self) -> None:
        """Load jobs from disk. In-flight jobs cannot resume and are failed."""
        if self._path is None or not self._path.is_file():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            logger.warning("Job file %s unreadable, starting empty", self._path)
            return
        if not isinstance(data, list):
            return
        interrupted = 0
        for entry in data:
            try:
                job = UploadJob.from_dict(entry)
            except (KeyError, ValueError, TypeError):
                continue  # skip corrupt entries
            if not job.is_terminal and job.step is not UploadStep.QUEUED:
                job.step = UploadStep.ERROR
                job.error = "Interrupted before completion; enqueue a new job to retry"
                interrupted += 1
            self._jobs[job.id] = job
        if interrupted:
            logger.warning("Marked %d interrupted job(s) as failed", interrupted)
            self._persist()

    def _persist(self) -> None:
        """Atomically write jobs to disk (temp + os.replace)."""
        if self._dir is None or self._path is None:
            return
        self._dir.mkdir(parents=True, exist_ok=True)
        content = json.dumps([j.to_dict() for j in self._jobs.values()], indent=2)
        fd, tmp_path = tempfile.mkstemp(dir=str(self._dir), suffix=".tmp", prefix=".jobs_")
        try:
            os.write(fd, content.encode("utf-8"))
            os.fsync(fd)
            os.close(fd)
            os.replace(tmp_path, str(self._path))
        except Exception:
            try:
                os.close(fd)
            except OSError:
                pass
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    # -- observers ------------------------------------------------------

    def subscribe(self, callback: Observer) -> Callable[[], None]:
        """Register a change observer. Returns an unsubscribe function.

        Called with the job after every change, including removal by
        cancel() or acknowledge(); a removed job is no longer in get().
        """
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    def _notify(self, job: UploadJob) -> None:
        for callback in list(self._observers):
            try:
                callback(job)
            except Exception:
                logger.exception("Job observer failed for %s", job.id)

    def _changed(self, job: UploadJob) -> None:
        self._persist()
        self._notify(job)

    # -- queue operations -----------------------------------------------

    @property
    def processing(self) -> bool:
        return self._processing

    def enqueue(
        self,
        source_ref: str,
        *,
        track_identifier: str,
        owner: str,
        encrypted: bool = True,
        policy: AccessPolicy | None = None,
        metadata: dict[str, Any] | None = None,
        dataset_id: str | None = None,
        attachments: list[Attachment] | tuple = (),
    ) -> str:
        """Append a new job in `queued` state. Never blocks or runs stages."""
        job = UploadJob(
            job_id=uuid.uuid4().hex[:16],
            source_ref=source_ref,
            track_identifier=track_identifier,
            owner=owner,
            encrypted=encrypted,
            policy=policy,
            metadata=metadata,
            dataset_id=dataset_id,
            attachments=list(attachments),
        )
        self._jobs[job.id] = job
        logger.info(
            "Enqueued job %s (%s, %s)",
            job.id, source_ref, "encrypted" if encrypted else "plaintext",
        )
        self._changed(job)
        self._schedule()
        return job.id

    def _schedule(self) -> None:
        """Start a drain task on the running loop unless one is active."""
        if self._processing or (self._drain_task is not None and not self._drain_task.done()):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop; caller drives drain() explicitly
        self._drain_task = loop.create_task(self.drain())

    def next_queued(self) -> UploadJob | None:
        """Head-most job still in `queued`, or None."""
        for job in self._jobs.values():
            if job.step is UploadStep.QUEUED:
                return job
        return None

    def get(self, job_id: str) -> UploadJob | None:
        return self._jobs.get(job_id)

    def all(self) -> list[UploadJob]:
        return list(self._jobs.values())

    def update(self, job_id: str, **patch: Any) -> UploadJob:
        """Apply a partial update (pipeline worker only)."""
        job = self._jobs.get(job_id)
        if job is None:
            raise JobStateError(f"Job not found: {job_id!r}")
        job.apply(patch)
        self._changed(job)
        return job

    def touch(self, job_id: str) -> None:
        """Persist and notify after in-place changes (e.g. attachment status)."""
        job = self._jobs.get(job_id)
        if job is not None:
            job.updated_at = _now()
            self._changed(job)

    def cancel(self, job_id: str) -> bool:
        """Remove a job that is still `queued`. In-flight jobs cannot be cancelled."""
        job = self._jobs.get(job_id)
        if job is None or job.step is not UploadStep.QUEUED:
            return False
        del self._jobs[job_id]
        self._changed(job)
        logger.info("Cancelled queued job %s", job_id)
        return True

    def acknowledge(self, job_id: str) -> UploadJob | None:
        """Remove a terminal job once the caller has seen its outcome."""
        job = self._jobs.get(job_id)
        if job is None:
            return None
        if not job.is_terminal:
            raise JobStateError(f"Job {job_id} is not finished ({job.step.value})")
        del self._jobs[job_id]
        self._changed(job)
        return job

    # -- worker loop ----------------------------------------------------

    async def drain(self) -> None:
        """Process queued jobs one at a time, in FIFO order, until none remain."""
        if self._processing:
            return
        self._processing = True
        self._idle.clear()
        try:
            while True:
                job = self.next_queued()
                if job is None:
                    break
                try:
                    async with self._slot:
                        await self._worker(job, self)
                except Exception as e:
                    logger.exception("Worker crashed on job %s", job.id)
                    if not job.is_terminal:
                        self.update(job.id, step=UploadStep.ERROR, error=describe(e))
                if not job.is_terminal:
                    logger.error("Worker left job %s in %s", job.id, job.step.value)
                    self.update(
                        job.id, step=UploadStep.ERROR,
                        error="Worker returned before the job finished",
                    )
        finally:
            self._processing = False
            if self._drain_task is asyncio.current_task():
                self._drain_task = None
            self._idle.set()

    @contextlib.asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        """Run storage work outside a job without overlapping the worker.

        Waits for the job in flight (if any) to finish its worker call; the
        next queued job starts only after the block exits.

        Usage:
            async with queue.exclusive():
                await storage.create_upload_context()
        """
        async with self._slot:
            yield

    async def wait_idle(self) -> None:
        """Wait until no job is queued or processing."""
        while self._processing or self.next_queued() is not None:
            task = self._drain_task
            if task is not None and not task.done() and task is not asyncio.current_task():
                await task
            elif self._processing:
                await self._idle.wait()
            else:
                await self.drain()

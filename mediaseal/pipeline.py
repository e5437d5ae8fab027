"""
UploadPipeline — drives one upload job through its stages.

Stages:
    1. reading      load source bytes
    2. encrypting   seal the bytes under a policy-wrapped key (encrypted jobs only)
    3. depositing   make sure the storage account can pay; fund it once if not
    4. uploading    upload through a storage provider, excluding failed providers
    5. registering  anchor (contentId, pieceId) on-chain

Failures are recorded on the job (step=error) rather than raised: the queue
keeps draining and the caller decides whether to enqueue a fresh job.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable

from mediaseal import ALGO_AES_GCM_256, ALGO_PLAINTEXT
from mediaseal.config import MediaSealConfig
from mediaseal.errors import (
    InsufficientFunds,
    InvalidInput,
    JobStateError,
    MediaSealError,
    RegistrationError,
    SourceUnavailable,
    UploadFailed,
    describe,
)
from mediaseal.jobs import (
    ATTACHMENT_FAILED,
    ATTACHMENT_PENDING,
    ATTACHMENT_UPLOADED,
    Attachment,
    JobQueue,
    UploadJob,
    UploadStep,
)
from mediaseal.registry import Registrar, registration_metadata
from mediaseal.seal.addressing import compute_content_identifier
from mediaseal.seal.crypto import encrypt_content
from mediaseal.seal.keys import KeyService
from mediaseal.storage import (
    StorageClient,
    StorageClientCache,
    UploadContext,
    is_provider_error,
    provider_of,
)
from mediaseal.store import ContentIndex, ContentIndexError

logger = logging.getLogger(__name__)

SourceReader = Callable[[str], Awaitable[bytes]]


async def read_local_source(source_ref: str) -> bytes:
    """Default source reader: a local file path."""
    path = Path(source_ref).expanduser()
    try:
        return await asyncio.to_thread(path.read_bytes)
    except OSError as e:
        raise SourceUnavailable(f"Cannot read {source_ref}: {e.strerror or e}") from e


@contextlib.contextmanager
def _stage(job: UploadJob, name: str):
    """Log start/finish of a stage with its duration."""
    start = time.monotonic()
    logger.info("job=%s stage=%s start", job.id, name)
    try:
        yield
    except BaseException:
        logger.info(
            "job=%s stage=%s failed after %.2fs", job.id, name, time.monotonic() - start,
        )
        raise
    logger.info("job=%s stage=%s done in %.2fs", job.id, name, time.monotonic() - start)


class UploadPipeline:
    """Worker for JobQueue: one job at a time, start to terminal step.

    `storage` is either a single StorageClient or a StorageClientCache; with
    a cache every job is funded and uploaded by its own owner's client.

    Usage:
        pipeline = UploadPipeline(StorageClientCache(factory), registrar, key_service, config)
        queue = JobQueue(worker=pipeline.run, data_dir=config.data_path)
    """

    def __init__(
        self,
        storage: StorageClient | StorageClientCache,
        registrar: Registrar,
        key_service: KeyService,
        config: MediaSealConfig | None = None,
        source_reader: SourceReader | None = None,
        index: ContentIndex | None = None,
    ) -> None:
        self.storage = storage
        self.registrar = registrar
        self.key_service = key_service
        self.config = config or MediaSealConfig()
        self._read_source = source_reader or read_local_source
        self.index = index

    async def run(self, job: UploadJob, queue: JobQueue) -> None:
        """Process a queued job. Never raises for pipeline failures."""
        try:
            payload = await self._reading(job, queue)
            if job.encrypted:
                payload = await self._encrypting(job, queue, payload)
            await self._depositing(job, queue, payload)
            await self._uploading(job, queue, payload)
            await self._registering(job, queue)
        except MediaSealError as e:
            logger.warning("Job %s failed in %s: %s", job.id, job.step.value, e)
            self._fail(job, queue, e)
            return
        except Exception as e:
            logger.exception("Job %s crashed in %s", job.id, job.step.value)
            self._fail(job, queue, e)
            return

        self._record_index(job)
        if job.attachments:
            await self._upload_attachments(job, queue)

    def storage_for(self, job: UploadJob) -> StorageClient:
        """Storage client that signs for the job's owner."""
        if isinstance(self.storage, StorageClientCache):
            return self.storage.get(job.owner)
        return self.storage

    def _fail(self, job: UploadJob, queue: JobQueue, exc: BaseException) -> None:
        if not job.is_terminal:
            queue.update(job.id, step=UploadStep.ERROR, error=describe(exc))

    # -- stages ---------------------------------------------------------

    async def _load(self, source_ref: str) -> bytes:
        try:
            data = await self._read_source(source_ref)
        except SourceUnavailable:
            raise
        except Exception as e:
            raise SourceUnavailable(f"Cannot read {source_ref}: {e}") from e
        if not data:
            raise SourceUnavailable(f"Source is empty: {source_ref}")
        return bytes(data)

    async def _reading(self, job: UploadJob, queue: JobQueue) -> bytes:
        queue.update(job.id, step=UploadStep.READING)
        with _stage(job, "reading"):
            data = await self._load(job.source_ref)
            if not job.encrypted:
                queue.update(
                    job.id,
                    content_identifier=compute_content_identifier(job.track_identifier, job.owner),
                )
            logger.debug("Job %s read %d bytes", job.id, len(data))
        return data

    async def _encrypting(self, job: UploadJob, queue: JobQueue, plaintext: bytes) -> bytes:
        queue.update(job.id, step=UploadStep.ENCRYPTING)
        with _stage(job, "encrypting"):
            if job.policy is None:
                raise InvalidInput(f"Encrypted job {job.id} has no access policy")
            content_identifier = compute_content_identifier(job.track_identifier, job.owner)
            queue.update(job.id, content_identifier=content_identifier)
            sealed = await encrypt_content(plaintext, content_identifier, job.policy, self.key_service)
        return sealed.blob

    async def _depositing(self, job: UploadJob, queue: JobQueue, payload: bytes) -> None:
        queue.update(job.id, step=UploadStep.DEPOSITING)
        storage = self.storage_for(job)
        with _stage(job, "depositing"):
            size = len(payload)
            queue.update(job.id, upload_size=size)

            required = await storage.estimate_cost(size)
            balance = await storage.account_balance()
            if balance.available >= required and balance.operator_approved:
                return

            deficit = max(required - balance.available, 0)
            amount = max(deficit, self.config.min_deposit) if deficit else 0
            logger.info(
                "Job %s: funding storage account (available=%d required=%d deposit=%d)",
                job.id, balance.available, required, amount,
            )
            try:
                if amount:
                    await storage.deposit(amount)
                await storage.approve_operator()
            except InsufficientFunds:
                raise
            except Exception as e:
                raise InsufficientFunds(f"Funding transaction failed: {e}") from e

            balance = await storage.account_balance()
            if balance.available < required or not balance.operator_approved:
                raise InsufficientFunds(
                    f"Storage account has {balance.available}, upload needs {required}"
                    + ("" if balance.operator_approved else " (operator not approved)")
                )

    async def _uploading(self, job: UploadJob, queue: JobQueue, payload: bytes) -> None:
        queue.update(job.id, step=UploadStep.UPLOADING)
        storage = self.storage_for(job)
        with _stage(job, "uploading"):
            max_attempts = self.config.max_upload_attempts
            excluded: list[str] = []
            last_error: BaseException | None = None

            for attempt in range(1, max_attempts + 1):
                context: UploadContext | None = None
                try:
                    context = await storage.create_upload_context(
                        exclude_provider_ids=tuple(excluded), dataset_id=job.dataset_id,
                    )
                    result = await asyncio.wait_for(
                        context.upload(payload), timeout=self.config.upload_timeout,
                    )
                except asyncio.TimeoutError as e:
                    raise UploadFailed(
                        f"Upload timed out after {self.config.upload_timeout:g}s"
                    ) from e
                except Exception as e:
                    # A pinned dataset cannot move to another provider
                    pinned = job.dataset_id is not None or bool(context and context.reused)
                    if pinned or not is_provider_error(e):
                        raise UploadFailed(str(e) or e.__class__.__name__) from e
                    last_error = e
                    provider = provider_of(e) or (context.provider_id if context else None)
                    if provider and provider not in excluded:
                        excluded.append(provider)
                    logger.warning(
                        "Job %s: provider %s failed (attempt %d/%d): %s",
                        job.id, provider or "?", attempt, max_attempts, e,
                    )
                    continue

                if not result.piece_id:
                    raise UploadFailed("Storage provider returned no piece id")
                queue.update(
                    job.id,
                    piece_id=result.piece_id,
                    provider_id=context.provider_id or None,
                    dataset_owner=context.dataset_owner or None,
                    upload_size=result.size or len(payload),
                )
                logger.info(
                    "Job %s uploaded piece %s via provider %s",
                    job.id, result.piece_id, context.provider_id or "?",
                )
                return

            raise UploadFailed(f"Upload failed after {max_attempts} attempts: {last_error}")

    async def _registering(self, job: UploadJob, queue: JobQueue) -> None:
        queue.update(job.id, step=UploadStep.REGISTERING)
        with _stage(job, "registering"):
            metadata = registration_metadata(
                job.metadata,
                encrypted=job.encrypted,
                track_identifier=job.track_identifier,
                dataset_owner=job.dataset_owner,
            )
            try:
                receipt = await asyncio.wait_for(
                    self.registrar.register(job.content_identifier, job.piece_id, metadata),
                    timeout=self.config.register_timeout,
                )
            except asyncio.TimeoutError as e:
                raise RegistrationError(
                    f"Registration timed out after {self.config.register_timeout:g}s"
                ) from e
            except RegistrationError:
                raise
            except Exception as e:
                raise RegistrationError(str(e) or e.__class__.__name__) from e

            queue.update(
                job.id,
                tx_hash=receipt.tx_hash,
                block_number=receipt.block_number,
                step=UploadStep.DONE,
            )
            logger.info(
                "Job %s registered %s -> %s (tx %s)",
                job.id, job.content_identifier, job.piece_id, receipt.tx_hash,
            )

    def _record_index(self, job: UploadJob) -> None:
        if self.index is None:
            return
        try:
            self.index.record(
                job.content_identifier,
                job.piece_id,
                tx_hash=job.tx_hash or "",
                dataset_owner=job.dataset_owner or "",
                algorithm=ALGO_AES_GCM_256 if job.encrypted else ALGO_PLAINTEXT,
            )
        except (ContentIndexError, ValueError, OSError):
            logger.warning("Could not record job %s in content index", job.id, exc_info=True)

    # -- attachments ----------------------------------------------------

    async def _upload_attachment(self, job: UploadJob, attachment: Attachment) -> None:
        attachment.attempts += 1
        try:
            data = await self._load(attachment.source_ref)
            storage = self.storage_for(job)
            context = await storage.create_upload_context(dataset_id=job.dataset_id)
            result = await asyncio.wait_for(
                context.upload(data), timeout=self.config.upload_timeout,
            )
        except Exception as e:
            attachment.status = ATTACHMENT_FAILED
            attachment.error = describe(e)
            logger.warning("Job %s attachment %s failed: %s", job.id, attachment.name, e)
            return
        attachment.status = ATTACHMENT_UPLOADED
        attachment.piece_id = result.piece_id
        attachment.error = None
        logger.info("Job %s attachment %s uploaded as %s", job.id, attachment.name, result.piece_id)

    async def _upload_attachments(self, job: UploadJob, queue: JobQueue) -> None:
        for attachment in job.attachments:
            if attachment.status != ATTACHMENT_PENDING:
                continue
            await self._upload_attachment(job, attachment)
            queue.touch(job.id)

    async def retry_attachments(self, job: UploadJob, queue: JobQueue) -> int:
        """Retry failed attachments of a finished job. Returns how many were retried.

        Runs in the queue's worker slot, so it waits for the job in flight
        and never submits to the storage network alongside it. Must not be
        awaited from inside the worker itself.
        """
        if job.step is not UploadStep.DONE:
            raise JobStateError(f"Job {job.id} is not done ({job.step.value})")
        async with queue.exclusive():
            failed = [a for a in job.attachments if a.status == ATTACHMENT_FAILED]
            for attachment in failed:
                attachment.status = ATTACHMENT_PENDING
            await self._upload_attachments(job, queue)
        return len(failed)


def attachment_summary(job: UploadJob) -> dict[str, Any]:
    """Counts of attachments by status."""
    summary = {ATTACHMENT_PENDING: 0, ATTACHMENT_UPLOADED: 0, ATTACHMENT_FAILED: 0}
    for attachment in job.attachments:
        summary[attachment.status] = summary.get(attachment.status, 0) + 1
    return summary

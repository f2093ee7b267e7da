from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
import logging
from threading import Lock

import httpx

from .http_client import CrptApiError
from .models import Document


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SendJob:
    key: str
    document: Document
    signature: str


@dataclass(slots=True)
class DispatchOutcome:
    key: str
    status: str
    body: str | None = None
    error: str | None = None
    status_code: int | None = None


@dataclass(slots=True)
class DispatchProgress:
    processed: int = 0
    success: int = 0
    api_errors: int = 0
    transport_errors: int = 0
    outcomes: list[DispatchOutcome] = field(default_factory=list)

    def record(self, outcome: DispatchOutcome) -> None:
        self.processed += 1
        if outcome.status == "success":
            self.success += 1
        elif outcome.status == "api_error":
            self.api_errors += 1
        elif outcome.status == "transport_error":
            self.transport_errors += 1
        self.outcomes.append(outcome)


DispatchCallback = Callable[[DispatchProgress, int], None] | None


def _failure(job: SendJob, exc: Exception) -> DispatchOutcome:
    if isinstance(exc, CrptApiError):
        return DispatchOutcome(job.key, "api_error", body=exc.body, error=str(exc), status_code=exc.status_code)
    return DispatchOutcome(job.key, "transport_error", error=str(exc))


def send_documents(
    *,
    client,
    jobs: Sequence[SendJob],
    concurrency: int,
    callback: DispatchCallback = None,
) -> DispatchProgress:
    """Send every job from a thread pool; the client's limiter paces the workers."""
    progress = DispatchProgress()
    progress_lock = Lock()

    def worker(job: SendJob) -> DispatchOutcome:
        try:
            body = client.create_document(job.document, job.signature)
        except (CrptApiError, httpx.HTTPError) as exc:
            logger.info("document %s failed: %s", job.key, exc)
            return _failure(job, exc)
        return DispatchOutcome(job.key, "success", body=body)

    with ThreadPoolExecutor(max_workers=max(1, concurrency)) as pool:
        futures = [pool.submit(worker, job) for job in jobs]
        try:
            for future in as_completed(futures):
                outcome = future.result()
                with progress_lock:
                    progress.record(outcome)
                    if callback:
                        callback(progress, len(jobs))
        except BaseException:
            for future in futures:
                future.cancel()
            raise

    return progress


async def send_documents_async(
    *,
    client,
    jobs: Sequence[SendJob],
    concurrency: int,
    callback: DispatchCallback = None,
) -> DispatchProgress:
    progress = DispatchProgress()
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def worker(job: SendJob) -> None:
        async with semaphore:
            try:
                body = await client.create_document(job.document, job.signature)
                outcome = DispatchOutcome(job.key, "success", body=body)
            except (CrptApiError, httpx.HTTPError) as exc:
                logger.info("document %s failed: %s", job.key, exc)
                outcome = _failure(job, exc)
        progress.record(outcome)
        if callback:
            callback(progress, len(jobs))

    tasks = [asyncio.create_task(worker(job)) for job in jobs]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return progress

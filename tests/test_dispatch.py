from __future__ import annotations

import asyncio

import httpx
import pytest

from crpt_client.config import Settings
from crpt_client.dispatch import SendJob, send_documents, send_documents_async
from crpt_client.http_client import CrptClient
from crpt_client.models import Document, parse_document
from crpt_client.rate_limit import RateLimiter, RateLimiterShutdownError
from tests.fakes import FakeAsyncCrptClient, FakeClientConfig, FakeCrptClient, sample_document_payload


def _jobs(count: int) -> list[SendJob]:
    return [
        SendJob(key=f"doc-{i}", document=parse_document(sample_document_payload(f"doc-{i}")), signature="sig")
        for i in range(count)
    ]


def test_send_documents_records_every_outcome() -> None:
    client = FakeCrptClient(FakeClientConfig(rejected_docs={"doc-1"}, unreachable_docs={"doc-2"}))
    seen_totals: list[int] = []

    progress = send_documents(
        client=client,
        jobs=_jobs(6),
        concurrency=3,
        callback=lambda dispatch_progress, total: seen_totals.append(total),
    )

    assert progress.processed == 6
    assert progress.success == 4
    assert progress.api_errors == 1
    assert progress.transport_errors == 1
    assert seen_totals == [6] * 6
    rejected = next(outcome for outcome in progress.outcomes if outcome.key == "doc-1")
    assert rejected.status_code == 400
    assert len(client.sent) == 6


def test_send_documents_aborts_when_limiter_is_shut_down() -> None:
    limiter = RateLimiter(limit=1, window=10.0)
    limiter.shutdown()
    client = CrptClient(
        settings=Settings(base_url="https://crpt.test/api/v3"),
        transport=httpx.MockTransport(lambda request: httpx.Response(200)),
        limiter=limiter,
    )

    with pytest.raises(RateLimiterShutdownError):
        send_documents(client=client, jobs=_jobs(3), concurrency=2)
    client.close()


@pytest.mark.asyncio
async def test_send_documents_async_records_every_outcome() -> None:
    client = FakeAsyncCrptClient(FakeClientConfig(rejected_docs={"doc-0"}))

    progress = await send_documents_async(client=client, jobs=_jobs(4), concurrency=2)

    assert progress.processed == 4
    assert progress.success == 3
    assert progress.api_errors == 1
    assert {outcome.key for outcome in progress.outcomes} == {"doc-0", "doc-1", "doc-2", "doc-3"}


class _StoppingAsyncClient:
    def __init__(self) -> None:
        self.cancelled: list[str | None] = []

    async def create_document(self, document: Document, signature: str) -> str:
        if document.doc_id == "doc-0":
            raise RateLimiterShutdownError("limiter is shut down")
        try:
            await asyncio.sleep(10.0)
        except asyncio.CancelledError:
            self.cancelled.append(document.doc_id)
            raise
        return "late"


@pytest.mark.asyncio
async def test_send_documents_async_aborts_and_cancels_siblings() -> None:
    client = _StoppingAsyncClient()

    with pytest.raises(RateLimiterShutdownError):
        await asyncio.wait_for(send_documents_async(client=client, jobs=_jobs(4), concurrency=4), timeout=2.0)

    assert sorted(client.cancelled) == ["doc-1", "doc-2", "doc-3"]

from __future__ import annotations

import asyncio
import logging
import os
import random
import socket

from opentelemetry import trace

from sitefleet.core.config import WorkerSettings, get_worker_settings
from sitefleet.core.telemetry import configure_logging, setup_worker_telemetry, shutdown_worker_telemetry
from sitefleet.core.types import JobType
from sitefleet.jobs.executor import build_handlers
from sitefleet.services.collaborators import CollaboratorClient
from sitefleet.services.pipeline import PipelineDispatcher, PipelineOutcome
from sitefleet.services.queue import parse_job_types
from sitefleet.services.repository import get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def poll_once(
    dispatcher: PipelineDispatcher,
    *,
    worker_id: str,
    lease_seconds: int,
    job_types: list[JobType] | None,
) -> PipelineOutcome | None:
    """Claim at most one job and run it to completion; None when the queue is idle."""
    job = await dispatcher.store.claim_next_job(
        worker_id=worker_id,
        lease_seconds=lease_seconds,
        job_types=job_types,
    )
    if job is None:
        return None

    with tracer.start_as_current_span("worker.process_job") as job_span:
        job_span.set_attribute("job.id", job.id)
        job_span.set_attribute("job.type", job.job_type.value)
        job_span.set_attribute("job.attempt", job.attempts)
        outcome = await dispatcher.dispatch(job)
        job_span.set_attribute("job.outcome", outcome.status)
    logger.info(
        "job processed job_id=%s job_type=%s attempt=%s outcome=%s",
        job.id,
        job.job_type.value,
        job.attempts,
        outcome.status,
    )
    return outcome


async def run_poll_loop(
    dispatcher: PipelineDispatcher,
    settings: WorkerSettings,
    *,
    worker_id: str,
    job_types: list[JobType] | None,
    stop_event: asyncio.Event,
) -> None:
    backoff = settings.poll_interval_seconds
    while not stop_event.is_set():
        try:
            with tracer.start_as_current_span("worker.poll_cycle"):
                outcome = await poll_once(
                    dispatcher,
                    worker_id=worker_id,
                    lease_seconds=settings.claim_lease_seconds,
                    job_types=job_types,
                )
            backoff = settings.poll_interval_seconds
            if outcome is None:
                await _sleep_until_stopped(stop_event, settings.poll_interval_seconds)
        except Exception as exc:
            jitter = random.uniform(0.0, 0.5)
            sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
            logger.exception("worker iteration failed worker_id=%s: %s; retry in %.1fs", worker_id, exc, sleep_for)
            await _sleep_until_stopped(stop_event, sleep_for)
            backoff = sleep_for


async def run_maintenance_loop(store, settings: WorkerSettings, *, stop_event: asyncio.Event) -> None:
    while not stop_event.is_set():
        try:
            expired = await store.expire_exhausted_leases()
            if expired:
                logger.info("failed jobs with exhausted leases: %s", expired)
            purged = await store.purge_expired_idempotency_keys()
            if purged:
                logger.info("purged expired idempotency keys: %s", purged)
        except Exception as exc:
            logger.exception("worker maintenance failed: %s", exc)
        await _sleep_until_stopped(stop_event, settings.maintenance_interval_seconds)


async def run_worker(
    settings: WorkerSettings | None = None,
    *,
    store=None,
    client: CollaboratorClient | None = None,
    stop_event: asyncio.Event | None = None,
) -> None:
    settings = settings or get_worker_settings()
    configure_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    store = store if store is not None else get_repository()
    client = client or CollaboratorClient(
        base_url=settings.collaborator_base_url,
        api_key=settings.collaborator_api_key,
        timeout_seconds=settings.collaborator_timeout_seconds,
    )
    dispatcher = PipelineDispatcher(store, build_handlers(client))
    job_types = parse_job_types(settings.job_types)
    worker_id = settings.worker_id or f"{socket.gethostname()}-{os.getpid()}"
    stop_event = stop_event or asyncio.Event()

    logger.info(
        "worker started worker_id=%s concurrency=%s job_types=%s",
        worker_id,
        settings.concurrency,
        ",".join(job_type.value for job_type in job_types) if job_types else "all",
    )
    tasks = [
        asyncio.create_task(
            run_poll_loop(
                dispatcher,
                settings,
                worker_id=f"{worker_id}:{index}",
                job_types=job_types,
                stop_event=stop_event,
            )
        )
        for index in range(max(1, settings.concurrency))
    ]
    tasks.append(asyncio.create_task(run_maintenance_loop(store, settings, stop_event=stop_event)))

    try:
        await asyncio.gather(*tasks)
    finally:
        stop_event.set()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await store.close()
        shutdown_worker_telemetry(telemetry_runtime)


async def _sleep_until_stopped(stop_event: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()

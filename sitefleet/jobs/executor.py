from __future__ import annotations

from functools import partial

from sitefleet.core.types import ARTICLE_STAGE_CHAIN, JobType
from sitefleet.jobs.content import execute_article_stage
from sitefleet.jobs.maintenance import execute_site_task
from sitefleet.jobs.seeding import execute_bulk_seed, execute_content_refresh, execute_keyword_research
from sitefleet.services.collaborators import CollaboratorClient
from sitefleet.services.pipeline import JobHandler

SITE_TASK_JOB_TYPES = (
    JobType.DEPLOY,
    JobType.ANALYTICS_FETCH,
    JobType.EXTERNAL_SIGNAL_FETCH,
    JobType.BACKLINK_CHECK,
    JobType.RENEWAL_CHECK,
    JobType.DATASET_CHECK,
    JobType.EVALUATE,
)


def build_handlers(client: CollaboratorClient) -> dict[JobType, JobHandler]:
    handlers: dict[JobType, JobHandler] = {}
    for stage in ARTICLE_STAGE_CHAIN:
        handlers[stage] = partial(execute_article_stage, client=client)
    for job_type in SITE_TASK_JOB_TYPES:
        handlers[job_type] = partial(execute_site_task, client=client)
    handlers[JobType.KEYWORD_RESEARCH] = partial(execute_keyword_research, client=client)
    handlers[JobType.BULK_SEED] = execute_bulk_seed
    handlers[JobType.CONTENT_REFRESH] = execute_content_refresh
    return handlers

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import redis
from rq import Queue, Retry

from .config import Settings, get_settings
from .firebase import get_firestore_client, init_firebase
from .provisioning import ProvisioningJob, ProvisioningResult, run_provisioning

logger = logging.getLogger("billing.tasks")

_RETRY_INTERVALS = [10, 60, 300]


def run_provisioning_job(payload: Dict[str, Any]) -> Dict[str, Any]:
    """RQ worker task. Exceptions propagate so RQ can retry the job."""
    settings = get_settings()
    init_firebase(settings)
    job = ProvisioningJob.from_dict(payload)
    result = run_provisioning(get_firestore_client(), settings, job)
    logger.info(
        "Provisioning job for payment %s finished: %s",
        job.payment_id,
        result.status,
    )
    return {"status": result.status, "detail": result.detail, "highlight_id": result.highlight_id}


def enqueue_provisioning(settings: Settings, job: ProvisioningJob):
    conn = redis.from_url(settings.redis_url)
    queue = Queue(settings.provisioning_queue_name, connection=conn)
    max_retries = max(0, settings.provisioning_max_retries)
    retry = Retry(max=max_retries, interval=_RETRY_INTERVALS) if max_retries else None
    return queue.enqueue(
        "billing.tasks.run_provisioning_job",
        job.to_dict(),
        job_id=f"provision_{job.payment_id}",
        retry=retry,
    )


def _run_inline(db, settings: Settings, job: ProvisioningJob) -> Optional[ProvisioningResult]:
    try:
        return run_provisioning(db if db is not None else get_firestore_client(), settings, job)
    except Exception as exc:
        logger.exception(
            "Provisioning failed for payment %s (plan %s, user %s): %s",
            job.payment_id,
            job.plan_id,
            job.user_id,
            exc,
        )
        return None


def dispatch_provisioning(settings: Settings, job: ProvisioningJob, db=None) -> Optional[ProvisioningResult]:
    """Hand ``job`` to the queue, or run it in-process when no queue is configured.

    Never raises: provisioning failures must not fail the caller.
    """
    if settings.provisioning_queue == "rq":
        try:
            rq_job = enqueue_provisioning(settings, job)
            logger.info("Provisioning job %s queued for payment %s", rq_job.id, job.payment_id)
            return None
        except Exception as exc:
            # fail open to inline execution if redis is unavailable
            logger.warning("Could not queue provisioning for payment %s: %s", job.payment_id, exc)
    return _run_inline(db, settings, job)

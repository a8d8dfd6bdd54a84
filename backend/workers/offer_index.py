"""
Offer Index Workers — queued recompute jobs and the backstop sweep.

Flow:
  1. A source entity changes; the writer calls enqueue_offer_index_job()
  2. A Redis pending marker (SET NX EX) collapses repeat enqueues of the
     same job while it waits in the queue
  3. The worker releases the marker, then runs the matching recompute
  4. Failures retry with exponential backoff; every failed attempt is
     written to offer_index_rebuild_log
"""

import asyncio
import hashlib
from dataclasses import asdict, dataclass, fields
from typing import ClassVar, assert_never

import structlog
from kombu.exceptions import OperationalError as BrokerOperationalError
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models import OfferIndexRebuildLog
from eligibility.errors import UnknownOfferIndexJobError
from eligibility.recompute import (
    rebuild_cashback_index,
    rebuild_exclusive_index,
    rebuild_loyalty_index_by_merchant,
    rebuild_loyalty_indexes_for_all_merchants,
    rebuild_user_merchant_profiles_for_user,
)
from workers.celery_app import celery_app

logger = structlog.get_logger()

PROCESS_TASK_NAME = "workers.offer_index.process_offer_index_job"
PENDING_PREFIX = "offer-index:pending:"
BACKSTOP_REASON = "cron-backstop"

STATUS_RETRYING = "RETRYING"
STATUS_FAILED = "FAILED"


# ──────────────────────────────────────────────────────────────────────────
# Job variants
# ──────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CashbackChanged:
    cashback_configuration_id: str
    type: ClassVar[str] = "CASHBACK_CHANGED"


@dataclass(frozen=True)
class ExclusiveChanged:
    exclusive_offer_id: str
    type: ClassVar[str] = "EXCLUSIVE_CHANGED"


@dataclass(frozen=True)
class LoyaltyChanged:
    merchant_id: str
    type: ClassVar[str] = "LOYALTY_CHANGED"


@dataclass(frozen=True)
class UserCustomerTypesChanged:
    user_id: str
    type: ClassVar[str] = "USER_CUSTOMER_TYPES_CHANGED"


@dataclass(frozen=True)
class FullRebuild:
    reason: str
    type: ClassVar[str] = "FULL_REBUILD"


OfferIndexJob = CashbackChanged | ExclusiveChanged | LoyaltyChanged | UserCustomerTypesChanged | FullRebuild

JOB_TYPES: dict[str, type] = {
    cls.type: cls
    for cls in (CashbackChanged, ExclusiveChanged, LoyaltyChanged, UserCustomerTypesChanged, FullRebuild)
}


def parse_job(payload: object) -> OfferIndexJob:
    """Turn a wire payload ``{"type": ..., <field>: ...}`` back into a job."""
    if not isinstance(payload, dict):
        raise UnknownOfferIndexJobError(payload)
    job_type = payload.get("type")
    cls = JOB_TYPES.get(job_type) if isinstance(job_type, str) else None
    if cls is None:
        raise UnknownOfferIndexJobError(payload)
    (field_name,) = [f.name for f in fields(cls)]
    value = payload.get(field_name)
    if not isinstance(value, str) or not value:
        raise UnknownOfferIndexJobError(payload)
    return cls(value)


def to_payload(job: OfferIndexJob) -> dict:
    return {"type": job.type, **asdict(job)}


def idempotency_key(job: OfferIndexJob) -> str:
    match job:
        case CashbackChanged(cashback_configuration_id=config_id):
            return f"cashback:{config_id}"
        case ExclusiveChanged(exclusive_offer_id=offer_id):
            return f"exclusive:{offer_id}"
        case LoyaltyChanged(merchant_id=merchant_id):
            return f"loyalty:{merchant_id}"
        case UserCustomerTypesChanged(user_id=user_id):
            return f"userct:{user_id}"
        case FullRebuild(reason=reason):
            return f"full:{hashlib.sha1(reason.encode('utf-8')).hexdigest()[:8]}"
        case _:
            assert_never(job)


def rebuild_log_entity(job: OfferIndexJob) -> tuple[str, str]:
    """(entity_type, entity_id) recorded against failed attempts."""
    match job:
        case CashbackChanged(cashback_configuration_id=config_id):
            return "CashbackConfiguration", config_id
        case ExclusiveChanged(exclusive_offer_id=offer_id):
            return "ExclusiveOffer", offer_id
        case LoyaltyChanged(merchant_id=merchant_id):
            return "Merchant", merchant_id
        case UserCustomerTypesChanged(user_id=user_id):
            return "User", user_id
        case FullRebuild(reason=reason):
            return "All", reason
        case _:
            assert_never(job)


async def dispatch_job(db: AsyncSession, job: OfferIndexJob) -> dict:
    match job:
        case CashbackChanged(cashback_configuration_id=config_id):
            return await rebuild_cashback_index(db, config_id)
        case ExclusiveChanged(exclusive_offer_id=offer_id):
            return await rebuild_exclusive_index(db, offer_id)
        case LoyaltyChanged(merchant_id=merchant_id):
            return await rebuild_loyalty_index_by_merchant(db, merchant_id)
        case UserCustomerTypesChanged(user_id=user_id):
            return await rebuild_user_merchant_profiles_for_user(db, user_id)
        case FullRebuild():
            return await rebuild_loyalty_indexes_for_all_merchants(db)
        case _:
            assert_never(job)


def backoff_seconds(retries: int, base_seconds: int) -> int:
    return base_seconds * 2**retries


# ──────────────────────────────────────────────────────────────────────────
# Enqueue (producer side)
# ──────────────────────────────────────────────────────────────────────────


def pending_key(key: str) -> str:
    return f"{PENDING_PREFIX}{key}"


async def enqueue_offer_index_job(job: OfferIndexJob, redis=None, settings=None) -> bool:
    """
    Queue a recompute job unless an identical one is already pending.

    Returns True when a task was sent. Never raises for queue problems:
    the index is eventually repaired by the backstop sweep.
    """
    from core.config import get_settings
    from eligibility.cache import build_redis

    settings = settings or get_settings()
    if not settings.redis_url:
        logger.debug("offer_index.enqueue_disabled", job_type=job.type)
        return False

    key = idempotency_key(job)
    owns_client = redis is None
    client = build_redis(settings) if owns_client else redis
    try:
        claimed = await client.set(pending_key(key), "1", nx=True, ex=settings.offer_index_pending_ttl_seconds)
        if not claimed:
            logger.debug("offer_index.enqueue_deduplicated", key=key)
            return False

        try:
            celery_app.send_task(
                PROCESS_TASK_NAME,
                args=[to_payload(job)],
                task_id=key,
                queue=settings.offer_index_queue,
            )
        except (BrokerOperationalError, OSError) as exc:
            logger.warning("offer_index.enqueue_failed", key=key, error=str(exc))
            await client.delete(pending_key(key))
            return False
    except RedisError as exc:
        logger.warning("offer_index.enqueue_failed", key=key, error=str(exc))
        return False
    finally:
        if owns_client:
            await client.aclose()

    logger.info("offer_index.job_enqueued", key=key, job_type=job.type)
    return True


# ──────────────────────────────────────────────────────────────────────────
# Execution (worker side)
# ──────────────────────────────────────────────────────────────────────────


async def release_pending(redis, key: str) -> None:
    try:
        await redis.delete(pending_key(key))
    except RedisError as exc:
        logger.warning("offer_index.pending_release_failed", key=key, error=str(exc))


async def record_failed_attempt(
    session_factory: async_sessionmaker[AsyncSession],
    job: OfferIndexJob,
    status: str,
    attempts: int,
    error: BaseException,
) -> None:
    """Best-effort write to the rebuild log; a failure here is only logged."""
    entity_type, entity_id = rebuild_log_entity(job)
    try:
        async with session_factory() as db:
            db.add(
                OfferIndexRebuildLog(
                    job_type=job.type,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    status=status,
                    attempts=attempts,
                    error_message=str(error)[:2000],
                )
            )
            await db.commit()
    except Exception as log_exc:  # noqa: BLE001
        logger.error(
            "offer_index.rebuild_log_failed",
            job_type=job.type,
            entity_id=entity_id,
            error=str(log_exc),
        )


async def run_offer_index_job(
    session_factory: async_sessionmaker[AsyncSession],
    redis,
    job: OfferIndexJob,
    attempt: int,
    max_attempts: int,
) -> dict:
    """Release the pending marker, dispatch the job, log the attempt if it fails."""
    if redis is not None:
        await release_pending(redis, idempotency_key(job))

    try:
        async with session_factory() as db:
            return await dispatch_job(db, job)
    except Exception as exc:
        status = STATUS_FAILED if attempt >= max_attempts else STATUS_RETRYING
        await record_failed_attempt(session_factory, job, status, attempt, exc)
        raise


@celery_app.task(
    name=PROCESS_TASK_NAME,
    bind=True,
    max_retries=4,
    default_retry_delay=1,
    acks_late=True,
)
def process_offer_index_job(self, payload: dict):
    """
    Recompute the index rows affected by one change event.

    Retries with exponential backoff up to offer_index_max_attempts; an
    unknown job type is a deployment mismatch and fails without retry.
    """
    from core.config import get_settings
    from db.session import build_engine, build_session_factory
    from eligibility.cache import build_redis

    try:
        job = parse_job(payload)
    except UnknownOfferIndexJobError:
        logger.error("offer_index.unknown_job", payload=payload, task_id=self.request.id)
        raise

    settings = get_settings()
    key = idempotency_key(job)
    attempt = self.request.retries + 1
    max_attempts = settings.offer_index_max_attempts
    logger.info("offer_index.job_started", key=key, attempt=attempt)

    async def _run():
        engine = build_engine(settings)
        redis = build_redis(settings)
        try:
            session_factory = build_session_factory(engine)
            return await run_offer_index_job(session_factory, redis, job, attempt, max_attempts)
        finally:
            if redis is not None:
                await redis.aclose()
            await engine.dispose()

    try:
        summary = asyncio.run(_run())
    except Exception as exc:
        if attempt >= max_attempts:
            logger.error("offer_index.job_failed", key=key, attempts=attempt, error=str(exc))
            raise
        countdown = backoff_seconds(self.request.retries, settings.offer_index_backoff_base_seconds)
        logger.warning("offer_index.job_retrying", key=key, attempt=attempt, countdown=countdown, error=str(exc))
        raise self.retry(exc=exc, countdown=countdown, max_retries=max_attempts - 1)

    logger.info("offer_index.job_completed", key=key, attempts=attempt, summary=summary)
    return summary


@celery_app.task(
    name="workers.offer_index.enqueue_backstop_rebuild",
    bind=True,
    max_retries=0,
    acks_late=True,
)
def enqueue_backstop_rebuild(self):
    """Celery beat entry point: queue one deduplicated full loyalty sweep."""
    enqueued = asyncio.run(enqueue_offer_index_job(FullRebuild(reason=BACKSTOP_REASON)))
    logger.info("offer_index.backstop_triggered", enqueued=enqueued, run_id=self.request.id or "manual")
    return {"status": "success", "enqueued": enqueued}

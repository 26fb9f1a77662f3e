"""
ARQ Background Worker
Delivers outgoing webhooks and requeues deliveries whose jobs were lost
"""

import logging
import os

from arq.cron import cron

# Import all model files so SQLAlchemy can resolve relationships
from . import models  # noqa: F401 - Main models
from . import models_tradieconnect  # noqa: F401 - TradieConnect models
from . import models_webhooks  # noqa: F401 - Webhook models
from .config import DATABASE_URL
from .database import build_engine, build_session_factory
from .domain.webhooks.dispatcher import WebhookDispatcher
from .queue import ArqDeliveryQueue, get_redis_settings

logger = logging.getLogger(__name__)


async def startup(ctx):
    engine = build_engine(DATABASE_URL)
    ctx["engine"] = engine
    ctx["session_factory"] = build_session_factory(engine)
    # Retries are enqueued through the worker's own Redis connection
    ctx["webhook_queue"] = ArqDeliveryQueue(pool=ctx["redis"])
    logger.info("🚀 Webhook worker started")


async def shutdown(ctx):
    engine = ctx.get("engine")
    if engine is not None:
        engine.dispose()
    logger.info("👋 Webhook worker stopped")


async def deliver_webhook_task(ctx, record_id: int):
    """Run one delivery attempt for a webhook record"""
    db = ctx["session_factory"]()
    try:
        dispatcher = WebhookDispatcher(db, queue=ctx["webhook_queue"])
        record = await dispatcher.process_delivery(record_id)
        if record is None:
            return {"record_id": record_id, "status": "skipped"}
        return {"record_id": record_id, "status": record.status, "attempt": record.attempt_count}
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Webhook delivery task failed for record {record_id}: {str(e)}")
        raise
    finally:
        db.close()


async def requeue_stalled_webhooks_task(ctx):
    """
    Cron job to pick up deliveries whose queued job never ran:
    enqueue failures, lost deferred retries and workers that died mid-attempt.
    """
    db = ctx["session_factory"]()
    try:
        dispatcher = WebhookDispatcher(db, queue=ctx["webhook_queue"])
        requeued = await dispatcher.requeue_stalled()
        return {"requeued": requeued}
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Stalled webhook requeue failed: {str(e)}")
        raise
    finally:
        db.close()


class WorkerSettings:
    """ARQ Worker Settings"""

    functions = [
        deliver_webhook_task,
        requeue_stalled_webhooks_task,
    ]
    redis_settings = get_redis_settings()
    on_startup = startup
    on_shutdown = shutdown

    max_jobs = int(os.getenv("ARQ_MAX_JOBS", "20"))
    job_timeout = int(os.getenv("ARQ_JOB_TIMEOUT", "120"))
    keep_result = int(os.getenv("ARQ_KEEP_RESULT", "3600"))

    health_check_interval = 60

    # Webhook retries are scheduled by the dispatcher, not by ARQ
    max_tries = 1

    cron_jobs = [
        cron(requeue_stalled_webhooks_task, minute=set(range(0, 60, 5))),  # every 5 minutes
    ]

    logger.info(f"🔧 ARQ Worker configured: max_jobs={max_jobs}, timeout={job_timeout}s")

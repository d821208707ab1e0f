"""
Celery worker driving the voucher order pipeline (materialize, then dispatch).

CREATED / PROCESSING orders act as a durable work queue, so an interrupted run
is simply picked up again by the next scheduled pass.
"""
from celery import Celery
import logging
from .config import settings
from .database import SessionLocal
from .services.blob_store import get_blob_store
from .services.sms_gateway import get_sms_gateway
from .use_cases.voucher_orders import (
    dispatch_voucher_orders_use_case,
    materialize_voucher_orders_use_case,
)

logger = logging.getLogger(__name__)

celery_app = Celery(
    "immunopass",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
)


@celery_app.task(name="materialize_voucher_orders")
def materialize_voucher_orders():
    """Create ALLOTTED vouchers for every CREATED order."""
    db = SessionLocal()

    try:
        materialized = materialize_voucher_orders_use_case(db=db, blob_store=get_blob_store())
        if materialized:
            logger.info(f"✅ Materialized {materialized} voucher order(s)")
        return {"materialized": materialized}

    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error materializing voucher orders: {e}", exc_info=True)
        raise

    finally:
        db.close()


@celery_app.task(name="dispatch_voucher_orders")
def dispatch_voucher_orders():
    """Send voucher SMS for every PROCESSING order; failures are retried next run."""
    db = SessionLocal()

    try:
        summary = dispatch_voucher_orders_use_case(db=db, sms_gateway=get_sms_gateway())
        if summary.failed:
            logger.warning(f"🔄 {summary.failed} voucher SMS failed, will retry on next run")
        logger.info(
            f"📨 Dispatched {summary.delivered} voucher(s) across {summary.orders} order(s), "
            f"{summary.completed_orders} order(s) completed"
        )
        return {
            "orders": summary.orders,
            "delivered": summary.delivered,
            "failed": summary.failed,
            "completed_orders": summary.completed_orders,
        }

    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error dispatching voucher orders: {e}", exc_info=True)
        raise

    finally:
        db.close()


# Schedule periodic processing
celery_app.conf.beat_schedule = {
    'materialize-voucher-orders': {
        'task': 'materialize_voucher_orders',
        'schedule': settings.MATERIALIZE_INTERVAL_SECONDS,
    },
    'dispatch-voucher-orders': {
        'task': 'dispatch_voucher_orders',
        'schedule': settings.DISPATCH_INTERVAL_SECONDS,
    },
}

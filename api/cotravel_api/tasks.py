
# Transaction confirmation worker.
# Run with: celery -A cotravel_api.tasks worker -Q chain
# Periodic sweep of pending transactions: celery -A cotravel_api.tasks beat

import logging
from celery import Celery
from sqlmodel import Session

from . import db
from .config import CHAIN_POLL_INTERVAL, RECONCILE_INTERVAL_SECONDS, REDIS_URL, WORKER_QUEUE
from .errors import ChainTimeoutError
from .models import ChainTransaction

logger = logging.getLogger(__name__)

cel = Celery("cotravel", broker=REDIS_URL, backend=REDIS_URL)
cel.conf.beat_schedule = {
    "reconcile-pending": {
        "task": "reconcile_pending",
        "schedule": RECONCILE_INTERVAL_SECONDS,
        "options": {"queue": WORKER_QUEUE},
    },
}


@cel.task(name="confirm_transaction", queue=WORKER_QUEUE, bind=True, max_retries=10)
def confirm_transaction(self, tx_id: int):
    from .services.reconcile import reconcile_transaction

    with Session(db.engine) as session:
        tx = session.get(ChainTransaction, tx_id)
        if not tx:
            logger.warning("confirm_transaction: transaction %s not found", tx_id)
            return {"id": tx_id, "status": "missing"}
        try:
            tx = reconcile_transaction(session, tx)
        except ChainTimeoutError as exc:
            raise self.retry(exc=exc, countdown=max(CHAIN_POLL_INTERVAL, 1.0) * 5)
        return {"id": tx.id, "tx_hash": tx.tx_hash, "status": tx.status}


@cel.task(name="reconcile_pending", queue=WORKER_QUEUE)
def reconcile_pending():
    from .services.reconcile import pending_transaction_ids

    with Session(db.engine) as session:
        ids = pending_transaction_ids(session)
    for tx_id in ids:
        confirm_transaction.delay(tx_id)
    return {"queued": len(ids)}

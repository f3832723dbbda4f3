import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlmodel import Session, select

from .. import config
from ..chain import FAILED, PENDING, TxStatus, get_chain_client, wait_for_confirmation
from ..errors import ChainTimeoutError, NotFoundError
from ..models import ChainTransaction
from .events import append_event
from .invoices import apply_confirm_release, apply_link, finalize_release, get_invoice
from .ledger import apply_contribution, apply_withdrawal, finalize_cancellation, release_reservation

logger = logging.getLogger(__name__)


def _apply_confirmed(session: Session, tx: ChainTransaction, result: TxStatus) -> bool:
    actor = f"wallet:{tx.wallet_address}"
    if tx.type == "create":
        return apply_link(session, tx, result.return_value)
    if tx.type == "contribute":
        return apply_contribution(session, tx)
    if tx.type == "withdraw":
        return apply_withdrawal(session, tx)
    if tx.type == "confirm_release":
        return apply_confirm_release(session, tx)
    if tx.type == "release":
        return finalize_release(session, get_invoice(session, tx.invoice_id), tx.id, actor)
    if tx.type in ("cancel", "claim_deadline"):
        return finalize_cancellation(session, get_invoice(session, tx.invoice_id), tx.id, actor)
    logger.error("transaction %s has unknown type %s", tx.tx_hash, tx.type)
    return False


def mark_failed(session: Session, tx: ChainTransaction, error: Optional[str]):
    claimed = session.exec(
        update(ChainTransaction)
        .where(ChainTransaction.id == tx.id, ChainTransaction.status == PENDING)
        .values(status=FAILED, error=error or "transaction failed")
    )
    if not claimed.rowcount:
        session.rollback()
        return
    if tx.type == "contribute":
        release_reservation(session, tx.invoice_id, tx.amount)
    append_event(session, tx.invoice_id, "system", "transaction_failed",
                 {"tx_hash": tx.tx_hash, "type": tx.type, "error": error})
    session.commit()
    logger.error("invoice %s: %s transaction %s failed: %s", tx.invoice_id, tx.type, tx.tx_hash, error)


def reconcile_transaction(session: Session, tx: ChainTransaction, client=None,
                          attempts: Optional[int] = None, interval: Optional[float] = None) -> ChainTransaction:
    """Wait for the receipt of ``tx`` and apply its ledger effects exactly once.

    Raises ``ChainTimeoutError`` when the transaction is still pending after the
    allowed attempts; the transaction then stays pending for a later retry.
    """
    if tx.status != PENDING:
        return tx
    client = client or get_chain_client()
    result = wait_for_confirmation(
        client,
        tx.tx_hash,
        attempts=attempts if attempts is not None else config.CHAIN_CONFIRM_ATTEMPTS,
        interval=interval if interval is not None else config.CHAIN_POLL_INTERVAL,
    )
    if result.status == FAILED:
        mark_failed(session, tx, result.error)
        session.refresh(tx)
        return tx

    claimed = session.exec(
        update(ChainTransaction)
        .where(ChainTransaction.id == tx.id, ChainTransaction.status == PENDING)
        .values(status="confirmed", ledger=result.ledger, confirmed_at=datetime.utcnow())
    )
    if not claimed.rowcount:
        session.rollback()
        session.refresh(tx)
        return tx
    applied = _apply_confirmed(session, tx, result)
    session.commit()
    session.refresh(tx)
    logger.info("transaction %s (%s) confirmed in ledger %s, applied=%s", tx.tx_hash, tx.type, tx.ledger, applied)
    return tx


def settle(session: Session, tx: ChainTransaction) -> ChainTransaction:
    if config.CHAIN_CONFIRM_MODE == "worker":
        from ..tasks import confirm_transaction

        confirm_transaction.delay(tx.id)
        return tx
    try:
        return reconcile_transaction(session, tx)
    except ChainTimeoutError as exc:
        logger.warning("invoice %s: %s", tx.invoice_id, exc.message)
        session.refresh(tx)
        return tx


def get_transaction_by_hash(session: Session, tx_hash: str) -> ChainTransaction:
    tx = session.exec(select(ChainTransaction).where(ChainTransaction.tx_hash == tx_hash)).first()
    if not tx:
        raise NotFoundError("transaction not found")
    return tx


def pending_transaction_ids(session: Session):
    return session.exec(
        select(ChainTransaction.id).where(ChainTransaction.status == PENDING).order_by(ChainTransaction.id)
    ).all()

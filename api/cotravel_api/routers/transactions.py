from fastapi import APIRouter, Depends, Response, status
from sqlmodel import Session

from ..access import ensure_invoice_access
from ..auth import SessionContext, require_session
from ..chain import PENDING
from ..db import get_session
from ..errors import ChainTimeoutError
from ..models import ChainTransaction
from ..services.invoices import get_invoice, serialize_invoice
from ..services.reconcile import get_transaction_by_hash, reconcile_transaction
from ..services.transactions import serialize_transaction

router = APIRouter()


def _ensure_transaction_access(session: Session, tx: ChainTransaction, ctx: SessionContext):
    invoice = get_invoice(session, tx.invoice_id)
    if tx.user_id != ctx.user_id:
        ensure_invoice_access(session, invoice, ctx)
    return invoice


@router.get("/{tx_hash}")
def get_transaction(
    tx_hash: str,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    tx = get_transaction_by_hash(session, tx_hash)
    _ensure_transaction_access(session, tx, ctx)
    return serialize_transaction(tx)


@router.post("/{tx_hash}/refresh")
def refresh_transaction(
    tx_hash: str,
    response: Response,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    tx = get_transaction_by_hash(session, tx_hash)
    invoice = _ensure_transaction_access(session, tx, ctx)
    try:
        tx = reconcile_transaction(session, tx)
    except ChainTimeoutError:
        session.refresh(tx)
    if tx.status == PENDING:
        response.status_code = status.HTTP_202_ACCEPTED
    session.refresh(invoice)
    return {"transaction": serialize_transaction(tx), "invoice": serialize_invoice(invoice)}

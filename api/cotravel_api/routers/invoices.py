from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlmodel import Session, select

from ..access import ensure_invoice_access
from ..auth import SessionContext, require_session
from ..chain import FAILED, PENDING
from ..db import get_session
from ..errors import ChainError
from ..models import ChainTransaction, InvoiceParticipant
from ..schemas import (
    ConsentAccept,
    ContributionRequest,
    InvoiceCreate,
    InvoiceItemsUpdate,
    SignedTransaction,
    WithdrawalRequest,
)
from ..services import invoices as invoice_service
from ..services import ledger
from ..services.events import list_events
from ..services.reconcile import settle
from ..services.transactions import serialize_transaction
from ..utils import stroops_to_xlm

router = APIRouter()


def _chain_response(session: Session, tx: ChainTransaction, response: Response) -> dict:
    tx = settle(session, tx)
    if tx.status == FAILED:
        raise ChainError(tx.error or f"Transaction {tx.tx_hash} failed")
    if tx.status == PENDING:
        response.status_code = status.HTTP_202_ACCEPTED
    invoice = invoice_service.get_invoice(session, tx.invoice_id)
    session.refresh(invoice)
    return {"transaction": serialize_transaction(tx), "invoice": invoice_service.serialize_invoice(invoice)}


@router.post("", status_code=201)
def create_invoice(
    payload: InvoiceCreate,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    invoice = invoice_service.create_invoice(session, ctx, payload)
    return invoice_service.invoice_detail(session, invoice)


@router.get("/my")
def my_invoices(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    return invoice_service.list_invoices_for_user(session, ctx, page, limit)


@router.get("/{invoice_id}")
def get_invoice(
    invoice_id: int,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    invoice = invoice_service.get_invoice(session, invoice_id)
    ensure_invoice_access(session, invoice, ctx)
    return invoice_service.invoice_detail(session, invoice)


@router.get("/{invoice_id}/participants")
def list_participants(
    invoice_id: int,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    invoice = invoice_service.get_invoice(session, invoice_id)
    ensure_invoice_access(session, invoice, ctx)
    participants = session.exec(
        select(InvoiceParticipant).where(InvoiceParticipant.invoice_id == invoice_id).order_by(InvoiceParticipant.joined_at)
    ).all()
    return [
        {
            "id": p.id,
            "wallet_address": p.wallet_address,
            "status": p.status,
            "contributed": stroops_to_xlm(p.contributed),
            "penalty_amount": stroops_to_xlm(p.penalty_amount),
            "confirmed_release": p.confirmed_release,
            "joined_at": p.joined_at,
        }
        for p in participants
    ]


@router.get("/{invoice_id}/transactions")
def list_transactions(
    invoice_id: int,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    invoice = invoice_service.get_invoice(session, invoice_id)
    ensure_invoice_access(session, invoice, ctx)
    txs = session.exec(
        select(ChainTransaction).where(ChainTransaction.invoice_id == invoice_id).order_by(ChainTransaction.id.desc())
    ).all()
    return [serialize_transaction(tx) for tx in txs]


@router.get("/{invoice_id}/events")
def invoice_events(
    invoice_id: int,
    after: Optional[int] = None,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    invoice = invoice_service.get_invoice(session, invoice_id)
    ensure_invoice_access(session, invoice, ctx)
    return {"invoice": invoice_service.serialize_invoice(invoice), "events": list_events(session, invoice_id, after)}


@router.post("/{invoice_id}/link-contract")
def link_contract(
    invoice_id: int,
    payload: SignedTransaction,
    response: Response,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    invoice = invoice_service.get_invoice(session, invoice_id)
    tx = invoice_service.link_contract(session, ctx, invoice, payload.signed_xdr)
    return _chain_response(session, tx, response)


@router.put("/{invoice_id}/items")
def update_items(
    invoice_id: int,
    payload: InvoiceItemsUpdate,
    response: Response,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    invoice = invoice_service.get_invoice(session, invoice_id)
    result = invoice_service.update_items(session, ctx, invoice, payload)
    if not result["applied"]:
        response.status_code = status.HTTP_202_ACCEPTED
    return result


@router.post("/{invoice_id}/modifications/{modification_id}/consent")
def consent_modification(
    invoice_id: int,
    modification_id: int,
    payload: ConsentAccept,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    invoice = invoice_service.get_invoice(session, invoice_id)
    mod = invoice_service.consent_to_modification(session, ctx, invoice, modification_id, payload.accepted)
    session.refresh(invoice)
    return {
        "modification": invoice_service.serialize_modification(session, mod),
        "invoice": invoice_service.invoice_detail(session, invoice),
    }


@router.post("/{invoice_id}/join", status_code=201)
def join_invoice(
    invoice_id: int,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    invoice = invoice_service.get_invoice(session, invoice_id)
    participant = ledger.join(session, ctx, invoice)
    return {"id": participant.id, "wallet_address": participant.wallet_address, "status": participant.status}


@router.post("/{invoice_id}/contribute")
def contribute(
    invoice_id: int,
    payload: ContributionRequest,
    response: Response,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    invoice = invoice_service.get_invoice(session, invoice_id)
    tx = ledger.contribute(session, ctx, invoice, payload.amount, payload.signed_xdr)
    return _chain_response(session, tx, response)


@router.get("/{invoice_id}/withdrawal-quote")
def withdrawal_quote(
    invoice_id: int,
    amount: Optional[Decimal] = None,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    invoice = invoice_service.get_invoice(session, invoice_id)
    quote = ledger.withdrawal_quote(session, ctx, invoice, amount)
    return {
        "amount": stroops_to_xlm(quote.amount),
        "penalty": stroops_to_xlm(quote.penalty),
        "refund": stroops_to_xlm(quote.refund),
        "penalty_percent": quote.penalty_percent,
    }


@router.post("/{invoice_id}/withdraw")
def withdraw(
    invoice_id: int,
    payload: WithdrawalRequest,
    response: Response,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    invoice = invoice_service.get_invoice(session, invoice_id)
    tx = ledger.withdraw(session, ctx, invoice, payload.signed_xdr, payload.amount)
    body = _chain_response(session, tx, response)
    quote = ledger.quote_from_transaction(tx)
    body["penalty"] = stroops_to_xlm(quote["penalty"])
    body["refund"] = stroops_to_xlm(quote["refund"])
    return body


@router.post("/{invoice_id}/confirm")
def confirm_release(
    invoice_id: int,
    payload: SignedTransaction,
    response: Response,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    invoice = invoice_service.get_invoice(session, invoice_id)
    tx = invoice_service.confirm_release(session, ctx, invoice, payload.signed_xdr)
    return _chain_response(session, tx, response)


@router.post("/{invoice_id}/release")
def release_invoice(
    invoice_id: int,
    payload: SignedTransaction,
    response: Response,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    invoice = invoice_service.get_invoice(session, invoice_id)
    tx = invoice_service.release(session, ctx, invoice, payload.signed_xdr)
    return _chain_response(session, tx, response)


@router.post("/{invoice_id}/cancel")
def cancel_invoice(
    invoice_id: int,
    response: Response,
    payload: Optional[SignedTransaction] = None,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    invoice = invoice_service.get_invoice(session, invoice_id)
    tx = ledger.cancel(session, ctx, invoice, payload.signed_xdr if payload else None)
    if tx is None:
        return {"transaction": None, "invoice": invoice_service.serialize_invoice(invoice)}
    return _chain_response(session, tx, response)


@router.post("/{invoice_id}/claim-deadline")
def claim_deadline(
    invoice_id: int,
    payload: SignedTransaction,
    response: Response,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    invoice = invoice_service.get_invoice(session, invoice_id)
    tx = ledger.claim_deadline(session, ctx, invoice, payload.signed_xdr)
    return _chain_response(session, tx, response)

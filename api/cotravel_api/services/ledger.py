import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlmodel import Session, select

from ..access import ensure_invoice_organizer
from ..auth import SessionContext
from ..chain import get_chain_client
from ..config import NETWORK_FEE_STROOPS
from ..errors import ConflictError, CoTravelError, FundingError, NotFoundError, ValidationError
from ..models import (
    ChainTransaction,
    Contribution,
    Invoice,
    InvoiceModification,
    InvoiceParticipant,
    LedgerEntry,
)
from ..utils import xlm_to_stroops
from .events import append_event
from .invoices import (
    finalize_release,
    get_invoice,
    is_fully_funded,
    reevaluate_modification,
    serialize_invoice,
)
from .penalty import WithdrawalQuote, quote_withdrawal
from .transactions import pending_transactions, submit_transaction

logger = logging.getLogger(__name__)


def _find_participant(session: Session, invoice_id: int, wallet: str) -> Optional[InvoiceParticipant]:
    return session.exec(
        select(InvoiceParticipant).where(
            InvoiceParticipant.invoice_id == invoice_id,
            InvoiceParticipant.wallet_address == wallet,
        )
    ).first()


def join(session: Session, ctx: SessionContext, invoice: Invoice) -> InvoiceParticipant:
    if invoice.status not in ("draft", "funding"):
        raise ValidationError(f"invoice is {invoice.status}")
    participant = _find_participant(session, invoice.id, ctx.wallet_address)
    if participant and participant.status == "active":
        raise ConflictError("already joined this invoice")
    if participant:
        participant.status = "active"
    else:
        participant = InvoiceParticipant(invoice_id=invoice.id, user_id=ctx.user_id, wallet_address=ctx.wallet_address)
    session.add(participant)
    session.commit()
    session.refresh(participant)
    logger.info("invoice %s: wallet %s joined", invoice.id, ctx.wallet_address)
    return participant


# ---------- contributions ----------

def contribute(session: Session, ctx: SessionContext, invoice: Invoice, amount_xlm: Decimal,
               signed_xdr: str) -> ChainTransaction:
    amount = xlm_to_stroops(amount_xlm)
    if invoice.status != "funding":
        raise FundingError(f"invoice is not accepting contributions ({invoice.status})")
    if invoice.deadline <= datetime.utcnow():
        raise FundingError("deadline has passed")
    if amount <= 0:
        raise ValidationError("amount must be positive")
    if amount > invoice.total_required - invoice.total_collected - invoice.total_reserved:
        raise FundingError("amount exceeds remaining unpaid amount")
    balance = get_chain_client().get_balance(ctx.wallet_address)
    if balance < amount + NETWORK_FEE_STROOPS:
        raise FundingError("insufficient funds to cover contribution and fees")

    # compare-and-increment: concurrent contributors can never reserve past the total
    reserved = session.exec(
        update(Invoice)
        .where(
            Invoice.id == invoice.id,
            Invoice.status == "funding",
            Invoice.total_collected + Invoice.total_reserved + amount <= Invoice.total_required,
        )
        .values(total_reserved=Invoice.total_reserved + amount)
    )
    if not reserved.rowcount:
        session.rollback()
        raise FundingError("amount exceeds remaining unpaid amount")
    session.commit()

    try:
        return submit_transaction(session, invoice, ctx, "contribute", signed_xdr, amount=amount)
    except CoTravelError:
        session.rollback()
        release_reservation(session, invoice.id, amount)
        session.commit()
        raise


def release_reservation(session: Session, invoice_id: int, amount: int):
    session.exec(
        update(Invoice)
        .where(Invoice.id == invoice_id, Invoice.total_reserved >= amount)
        .values(total_reserved=Invoice.total_reserved - amount)
    )


def apply_contribution(session: Session, tx: ChainTransaction) -> bool:
    invoice = get_invoice(session, tx.invoice_id)
    moved = session.exec(
        update(Invoice)
        .where(
            Invoice.id == invoice.id,
            Invoice.status == "funding",
            Invoice.total_reserved >= tx.amount,
        )
        .values(
            total_reserved=Invoice.total_reserved - tx.amount,
            total_collected=Invoice.total_collected + tx.amount,
            updated_at=datetime.utcnow(),
        )
    )
    session.refresh(invoice)
    actor = f"wallet:{tx.wallet_address}"
    contribution = Contribution(invoice_id=invoice.id, participant_wallet=tx.wallet_address,
                                amount=tx.amount, tx_id=tx.id)
    session.add(contribution)
    session.add(LedgerEntry(invoice_id=invoice.id, wallet_address=tx.wallet_address,
                            kind="contribution", amount=tx.amount, tx_id=tx.id))

    if not moved.rowcount:
        # the invoice was finalized while this transaction was pending
        contribution.status = "withdrawn"
        session.add(LedgerEntry(invoice_id=invoice.id, wallet_address=tx.wallet_address,
                                kind="refund", amount=tx.amount, tx_id=tx.id))
        append_event(session, invoice.id, actor, "contribution_refunded",
                     {"amount": tx.amount, "reason": f"invoice {invoice.status}"})
        logger.warning("invoice %s: late contribution %s refunded (invoice %s)",
                       invoice.id, tx.tx_hash, invoice.status)
        return False

    participant = _find_participant(session, invoice.id, tx.wallet_address)
    if not participant:
        participant = InvoiceParticipant(invoice_id=invoice.id, user_id=tx.user_id, wallet_address=tx.wallet_address)
    participant.status = "active"
    participant.contributed += tx.amount
    session.add(participant)
    progress = serialize_invoice(invoice)
    append_event(session, invoice.id, actor, "funding_progress", {
        "amount": tx.amount,
        "total_collected": invoice.total_collected,
        "total_required": invoice.total_required,
        "progress_percent": progress["progress_percent"],
    })
    logger.info("invoice %s: contribution of %s stroops confirmed (%s/%s)",
                invoice.id, tx.amount, invoice.total_collected, invoice.total_required)
    if is_fully_funded(invoice) and invoice.auto_release:
        finalize_release(session, invoice, tx.id, "system")
    return True


# ---------- withdrawals ----------

def withdrawal_quote(session: Session, ctx: SessionContext, invoice: Invoice,
                     amount_xlm: Optional[Decimal] = None) -> WithdrawalQuote:
    amount = _withdrawable_amount(session, ctx, invoice, amount_xlm)
    return quote_withdrawal(invoice, amount)


def _withdrawable_amount(session: Session, ctx: SessionContext, invoice: Invoice,
                         amount_xlm: Optional[Decimal]) -> int:
    if invoice.status != "funding":
        raise FundingError(f"cannot withdraw from a {invoice.status} invoice")
    participant = _find_participant(session, invoice.id, ctx.wallet_address)
    if not participant or participant.status != "active" or participant.contributed <= 0:
        raise NotFoundError("not a contributor of this invoice")
    pending = sum(tx.amount for tx in pending_transactions(session, invoice.id, "withdraw", ctx.wallet_address))
    available = participant.contributed - pending
    amount = available if amount_xlm is None else xlm_to_stroops(amount_xlm)
    if amount <= 0:
        raise ValidationError("amount must be positive")
    if amount > available:
        raise FundingError("amount exceeds your active contribution")
    return amount


def withdraw(session: Session, ctx: SessionContext, invoice: Invoice, signed_xdr: str,
             amount_xlm: Optional[Decimal] = None) -> ChainTransaction:
    amount = _withdrawable_amount(session, ctx, invoice, amount_xlm)
    quote = quote_withdrawal(invoice, amount)
    return submit_transaction(session, invoice, ctx, "withdraw", signed_xdr, amount=amount,
                              meta={"penalty": quote.penalty, "refund": quote.refund})


def _mark_contributions_withdrawn(session: Session, invoice_id: int, wallet: str, amount: int):
    remaining = amount
    active = session.exec(
        select(Contribution)
        .where(
            Contribution.invoice_id == invoice_id,
            Contribution.participant_wallet == wallet,
            Contribution.status == "active",
        )
        .order_by(Contribution.id.desc())
    ).all()
    for contribution in active:
        if remaining <= 0:
            break
        if contribution.amount <= remaining:
            contribution.status = "withdrawn"
            remaining -= contribution.amount
        else:
            contribution.amount -= remaining
            session.add(Contribution(invoice_id=invoice_id, participant_wallet=wallet, amount=remaining,
                                     status="withdrawn", tx_id=contribution.tx_id,
                                     timestamp=contribution.timestamp))
            remaining = 0
        session.add(contribution)


def quote_from_transaction(tx: ChainTransaction) -> dict:
    meta = json.loads(tx.meta_json or "{}")
    penalty = int(meta.get("penalty", 0))
    return {"amount": tx.amount, "penalty": penalty, "refund": int(meta.get("refund", tx.amount - penalty))}


def apply_withdrawal(session: Session, tx: ChainTransaction) -> bool:
    quote = quote_from_transaction(tx)
    penalty, refund = quote["penalty"], quote["refund"]
    invoice = get_invoice(session, tx.invoice_id)
    participant = _find_participant(session, invoice.id, tx.wallet_address)
    if not participant or participant.contributed < tx.amount:
        logger.warning("invoice %s: withdrawal %s exceeds recorded contribution", invoice.id, tx.tx_hash)
        return False
    result = session.exec(
        update(Invoice)
        .where(Invoice.id == invoice.id, Invoice.status == "funding", Invoice.total_collected >= tx.amount)
        .values(total_collected=Invoice.total_collected - tx.amount, updated_at=datetime.utcnow())
    )
    if not result.rowcount:
        logger.warning("invoice %s: withdrawal %s confirmed after invoice left funding", invoice.id, tx.tx_hash)
        return False
    session.refresh(invoice)

    _mark_contributions_withdrawn(session, invoice.id, tx.wallet_address, tx.amount)
    participant.contributed -= tx.amount
    participant.penalty_amount += penalty
    if participant.confirmed_release:
        participant.confirmed_release = False
        invoice.confirmation_count = max(invoice.confirmation_count - 1, 0)
        session.add(invoice)
    if participant.contributed == 0:
        participant.status = "withdrawn"
    session.add(participant)

    if refund:
        session.add(LedgerEntry(invoice_id=invoice.id, wallet_address=tx.wallet_address,
                                kind="refund", amount=refund, tx_id=tx.id))
    if penalty:
        session.add(LedgerEntry(invoice_id=invoice.id, wallet_address=tx.wallet_address,
                                kind="penalty", amount=penalty, tx_id=tx.id))
    session.flush()
    append_event(session, invoice.id, f"wallet:{tx.wallet_address}", "withdrawal", {
        "amount": tx.amount,
        "penalty": penalty,
        "refund": refund,
        "total_collected": invoice.total_collected,
    })
    reevaluate_modification(session, invoice)
    logger.info("invoice %s: %s withdrew %s stroops (penalty %s)",
                invoice.id, tx.wallet_address, tx.amount, penalty)
    return True


# ---------- cancellation / refunds ----------

def cancel(session: Session, ctx: SessionContext, invoice: Invoice,
           signed_xdr: Optional[str] = None) -> Optional[ChainTransaction]:
    ensure_invoice_organizer(invoice, ctx)
    if invoice.status not in ("draft", "funding"):
        raise ValidationError("can only cancel invoices in draft or funding status")
    if invoice.status == "draft":
        if pending_transactions(session, invoice.id, "create"):
            raise ConflictError("a link transaction is already pending")
        finalize_cancellation(session, invoice, None, f"wallet:{ctx.wallet_address}")
        session.commit()
        session.refresh(invoice)
        return None
    if not signed_xdr:
        raise ValidationError("signed_xdr is required")
    return submit_transaction(session, invoice, ctx, "cancel", signed_xdr)


def claim_deadline(session: Session, ctx: SessionContext, invoice: Invoice, signed_xdr: str) -> ChainTransaction:
    if invoice.status != "funding":
        raise ValidationError(f"invoice is {invoice.status}")
    if invoice.deadline > datetime.utcnow():
        raise ValidationError("deadline has not passed")
    if is_fully_funded(invoice):
        raise ValidationError("invoice is fully funded")
    return submit_transaction(session, invoice, ctx, "claim_deadline", signed_xdr)


def finalize_cancellation(session: Session, invoice: Invoice, tx_id: Optional[int], actor: str) -> bool:
    """Move the invoice to cancelled and refund every active contribution in full."""
    result = session.exec(
        update(Invoice)
        .where(Invoice.id == invoice.id, Invoice.status.in_(("draft", "funding")))
        .values(status="cancelled", total_reserved=0, updated_at=datetime.utcnow())
    )
    if not result.rowcount:
        return False
    session.refresh(invoice)

    for contribution in session.exec(
        select(Contribution).where(Contribution.invoice_id == invoice.id, Contribution.status == "active")
    ).all():
        contribution.status = "withdrawn"
        session.add(contribution)

    refunded = 0
    for participant in session.exec(
        select(InvoiceParticipant).where(InvoiceParticipant.invoice_id == invoice.id)
    ).all():
        if participant.contributed > 0:
            session.add(LedgerEntry(invoice_id=invoice.id, wallet_address=participant.wallet_address,
                                    kind="refund", amount=participant.contributed, tx_id=tx_id))
            refunded += participant.contributed
            participant.contributed = 0
        participant.status = "withdrawn"
        participant.confirmed_release = False
        session.add(participant)

    for mod in session.exec(
        select(InvoiceModification).where(
            InvoiceModification.invoice_id == invoice.id,
            InvoiceModification.status == "pending",
        )
    ).all():
        mod.status = "rejected"
        mod.resolved_at = datetime.utcnow()
        session.add(mod)

    invoice.total_collected = 0
    session.add(invoice)
    session.flush()
    append_event(session, invoice.id, actor, "cancelled", {"refunded": refunded})
    logger.info("invoice %s cancelled, %s stroops refunded", invoice.id, refunded)
    return True


import json
import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, or_, update
from sqlmodel import Session, select

from ..access import ensure_invoice_organizer
from ..auth import SessionContext
from ..chain import is_valid_wallet
from ..config import PENALTY_PERCENT
from ..errors import (
    AuthorizationError,
    ConflictError,
    FundingError,
    NotFoundError,
    ValidationError,
)
from ..models import (
    ChainTransaction,
    Invoice,
    InvoiceItem,
    InvoiceModification,
    InvoiceParticipant,
    InvoiceRecipient,
    LedgerEntry,
    ModificationConsent,
    User,
)
from ..schemas import InvoiceCreate, InvoiceItemsUpdate, ItemCreate
from ..utils import MAX_STROOPS, stroops_to_xlm, xlm_to_stroops
from .events import append_event
from .transactions import pending_transactions, submit_transaction

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("released", "cancelled")


def _as_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _validate_lines(recipients: Optional[List[str]], items: List[ItemCreate]):
    declared = [r.strip() for r in (recipients or []) if r and r.strip()]
    declared += [i.recipient_wallet.strip() for i in items if i.recipient_wallet and i.recipient_wallet.strip()]
    declared = list(dict.fromkeys(declared))
    if not declared:
        raise ValidationError("at least one recipient required")
    for wallet in declared:
        if not is_valid_wallet(wallet):
            raise ValidationError("invalid recipient address")
    if not items:
        raise ValidationError("at least one line item required")
    lines = []
    for idx, item in enumerate(items):
        if not item.description or not item.description.strip():
            raise ValidationError("each item must have a description")
        amount = xlm_to_stroops(item.amount)
        if amount <= 0:
            raise ValidationError("item amount must be positive")
        lines.append(
            {
                "description": item.description.strip(),
                "amount": amount,
                "recipient_wallet": (item.recipient_wallet or declared[0]).strip(),
                "sort_order": item.sort_order if item.sort_order is not None else idx,
            }
        )
    if sum(line["amount"] for line in lines) > MAX_STROOPS:
        raise ValidationError("invalid amount")
    return declared, lines


def get_invoice(session: Session, invoice_id: int) -> Invoice:
    invoice = session.get(Invoice, invoice_id)
    if not invoice:
        raise NotFoundError("invoice not found")
    return invoice


def get_items(session: Session, invoice_id: int):
    return session.exec(
        select(InvoiceItem).where(InvoiceItem.invoice_id == invoice_id).order_by(InvoiceItem.sort_order, InvoiceItem.id)
    ).all()


def get_recipients(session: Session, invoice_id: int) -> List[str]:
    rows = session.exec(
        select(InvoiceRecipient).where(InvoiceRecipient.invoice_id == invoice_id).order_by(InvoiceRecipient.id)
    ).all()
    return [r.wallet_address for r in rows]


def active_contributors(session: Session, invoice_id: int):
    return session.exec(
        select(InvoiceParticipant).where(
            InvoiceParticipant.invoice_id == invoice_id,
            InvoiceParticipant.status == "active",
            InvoiceParticipant.contributed > 0,
        )
    ).all()


def is_fully_funded(invoice: Invoice) -> bool:
    return invoice.total_required > 0 and invoice.total_collected >= invoice.total_required


def serialize_invoice(invoice: Invoice) -> dict:
    remaining = invoice.total_required - invoice.total_collected - invoice.total_reserved
    progress = (invoice.total_collected * 100 / invoice.total_required) if invoice.total_required else 0
    return {
        "id": invoice.id,
        "organizer_id": invoice.organizer_id,
        "name": invoice.name,
        "description": invoice.description,
        "deadline": invoice.deadline,
        "status": invoice.status,
        "auto_release": invoice.auto_release,
        "total_required": stroops_to_xlm(invoice.total_required),
        "total_collected": stroops_to_xlm(invoice.total_collected),
        "total_pending": stroops_to_xlm(invoice.total_reserved),
        "remaining": stroops_to_xlm(max(remaining, 0)),
        "progress_percent": round(progress, 2),
        "penalty_percent": invoice.penalty_percent,
        "contract_invoice_id": invoice.contract_invoice_id,
        "version": invoice.version,
        "confirmation_count": invoice.confirmation_count,
        "created_at": invoice.created_at,
        "updated_at": invoice.updated_at,
    }


def _serialize_item(item) -> dict:
    return {
        "id": item.id,
        "description": item.description,
        "amount": stroops_to_xlm(item.amount),
        "recipient_wallet": item.recipient_wallet,
        "sort_order": item.sort_order,
    }


def serialize_modification(session: Session, mod: InvoiceModification) -> dict:
    consents = session.exec(
        select(ModificationConsent).where(ModificationConsent.modification_id == mod.id)
    ).all()
    return {
        "id": mod.id,
        "version": mod.version,
        "change_summary": mod.change_summary,
        "status": mod.status,
        "proposed_recipients": json.loads(mod.proposed_recipients_json),
        "proposed_items": [
            {**line, "amount": stroops_to_xlm(line["amount"])} for line in json.loads(mod.proposed_items_json)
        ],
        "consents": [{"wallet_address": c.wallet_address, "accepted": c.accepted, "at": c.at} for c in consents],
        "created_at": mod.created_at,
        "resolved_at": mod.resolved_at,
    }


def pending_modification(session: Session, invoice_id: int) -> Optional[InvoiceModification]:
    return session.exec(
        select(InvoiceModification).where(
            InvoiceModification.invoice_id == invoice_id,
            InvoiceModification.status == "pending",
        )
    ).first()


def invoice_detail(session: Session, invoice: Invoice) -> dict:
    organizer = session.get(User, invoice.organizer_id)
    mod = pending_modification(session, invoice.id)
    return {
        **serialize_invoice(invoice),
        "organizer_wallet": organizer.wallet_address if organizer else None,
        "recipients": get_recipients(session, invoice.id),
        "items": [_serialize_item(i) for i in get_items(session, invoice.id)],
        "pending_modification": serialize_modification(session, mod) if mod else None,
    }


def create_invoice(session: Session, ctx: SessionContext, data: InvoiceCreate) -> Invoice:
    if not data.name or not data.name.strip():
        raise ValidationError("name is required")
    deadline = _as_utc_naive(data.deadline)
    if deadline <= datetime.utcnow():
        raise ValidationError("deadline must be in the future")
    recipients, lines = _validate_lines(data.recipients, data.items)
    invoice = Invoice(
        organizer_id=ctx.user_id,
        name=data.name.strip(),
        description=data.description,
        deadline=deadline,
        auto_release=data.auto_release,
        total_required=sum(line["amount"] for line in lines),
        penalty_percent=PENALTY_PERCENT,
    )
    session.add(invoice)
    session.flush()
    _replace_lines(session, invoice.id, recipients, lines)
    append_event(session, invoice.id, f"wallet:{ctx.wallet_address}", "created",
                 {"total_required": invoice.total_required, "items": len(lines)})
    session.commit()
    session.refresh(invoice)
    logger.info("invoice %s created by user %s (total %s stroops, %s items)",
                invoice.id, ctx.user_id, invoice.total_required, len(lines))
    return invoice


def _replace_lines(session: Session, invoice_id: int, recipients: List[str], lines: List[dict]):
    for old in session.exec(select(InvoiceItem).where(InvoiceItem.invoice_id == invoice_id)).all():
        session.delete(old)
    for old in session.exec(select(InvoiceRecipient).where(InvoiceRecipient.invoice_id == invoice_id)).all():
        session.delete(old)
    for wallet in recipients:
        session.add(InvoiceRecipient(invoice_id=invoice_id, wallet_address=wallet))
    for line in lines:
        session.add(InvoiceItem(invoice_id=invoice_id, **line))
    session.flush()


def list_invoices_for_user(session: Session, ctx: SessionContext, page: int = 1, limit: int = 20):
    participant_ids = select(InvoiceParticipant.invoice_id).where(InvoiceParticipant.user_id == ctx.user_id)
    condition = or_(Invoice.organizer_id == ctx.user_id, Invoice.id.in_(participant_ids))
    total = session.exec(select(func.count()).select_from(Invoice).where(condition)).one()
    invoices = session.exec(
        select(Invoice).where(condition).order_by(Invoice.created_at.desc()).offset((page - 1) * limit).limit(limit)
    ).all()
    data = []
    for invoice in invoices:
        entry = serialize_invoice(invoice)
        entry["user_role"] = "organizer" if invoice.organizer_id == ctx.user_id else "participant"
        data.append(entry)
    return {"data": data, "total": total, "page": page, "limit": limit}


def update_items(session: Session, ctx: SessionContext, invoice: Invoice, data: InvoiceItemsUpdate) -> dict:
    ensure_invoice_organizer(invoice, ctx)
    if invoice.status in TERMINAL_STATUSES:
        raise ValidationError(f"invoice is {invoice.status}")
    recipients_in = data.recipients if data.recipients is not None else get_recipients(session, invoice.id)
    recipients, lines = _validate_lines(recipients_in, data.items)
    new_total = sum(line["amount"] for line in lines)
    if new_total < invoice.total_collected + invoice.total_reserved:
        raise ValidationError("new total is below the amount already contributed")
    summary = data.change_summary or "Items updated"
    actor = f"wallet:{ctx.wallet_address}"

    if invoice.status == "draft" or not active_contributors(session, invoice.id):
        previous = [_line_snapshot(i) for i in get_items(session, invoice.id)]
        mod = InvoiceModification(
            invoice_id=invoice.id,
            version=invoice.version + 1,
            change_summary=summary,
            proposed_items_json=json.dumps(lines),
            proposed_recipients_json=json.dumps(recipients),
            previous_items_json=json.dumps(previous),
        )
        session.add(mod)
        session.flush()
        _apply_modification(session, invoice, mod, actor)
        session.commit()
        session.refresh(invoice)
        return {"applied": True, "invoice": invoice_detail(session, invoice)}

    if pending_modification(session, invoice.id):
        raise ValidationError("a modification is already pending")
    mod = InvoiceModification(
        invoice_id=invoice.id,
        version=invoice.version + 1,
        change_summary=summary,
        proposed_items_json=json.dumps(lines),
        proposed_recipients_json=json.dumps(recipients),
        previous_items_json=json.dumps([_line_snapshot(i) for i in get_items(session, invoice.id)]),
    )
    session.add(mod)
    session.flush()
    append_event(session, invoice.id, actor, "modification_proposed",
                 {"modification_id": mod.id, "version": mod.version, "summary": summary})
    session.commit()
    session.refresh(mod)
    logger.info("invoice %s: modification %s awaiting contributor consent", invoice.id, mod.id)
    return {"applied": False, "modification": serialize_modification(session, mod)}


def _line_snapshot(item: InvoiceItem) -> dict:
    return {
        "description": item.description,
        "amount": item.amount,
        "recipient_wallet": item.recipient_wallet,
        "sort_order": item.sort_order,
    }


def _apply_modification(session: Session, invoice: Invoice, mod: InvoiceModification, actor: str):
    lines = json.loads(mod.proposed_items_json)
    recipients = json.loads(mod.proposed_recipients_json)
    _replace_lines(session, invoice.id, recipients, lines)
    invoice.total_required = sum(line["amount"] for line in lines)
    invoice.version = mod.version
    invoice.confirmation_count = 0
    invoice.updated_at = datetime.utcnow()
    session.add(invoice)
    for participant in session.exec(
        select(InvoiceParticipant).where(InvoiceParticipant.invoice_id == invoice.id)
    ).all():
        if participant.confirmed_release:
            participant.confirmed_release = False
            session.add(participant)
    mod.status = "applied"
    mod.resolved_at = datetime.utcnow()
    session.add(mod)
    append_event(session, invoice.id, actor, "modification_applied",
                 {"modification_id": mod.id, "version": mod.version, "total_required": invoice.total_required})
    logger.info("invoice %s: items updated to version %s (total %s stroops)",
                invoice.id, invoice.version, invoice.total_required)


def consent_to_modification(session: Session, ctx: SessionContext, invoice: Invoice,
                            modification_id: int, accepted: bool) -> InvoiceModification:
    mod = session.get(InvoiceModification, modification_id)
    if not mod or mod.invoice_id != invoice.id:
        raise NotFoundError("modification not found")
    if mod.status != "pending":
        raise ValidationError(f"modification is {mod.status}")
    wallets = {p.wallet_address for p in active_contributors(session, invoice.id)}
    if ctx.wallet_address not in wallets:
        raise AuthorizationError("only active contributors can consent to changes")

    consent = session.exec(
        select(ModificationConsent).where(
            ModificationConsent.modification_id == mod.id,
            ModificationConsent.wallet_address == ctx.wallet_address,
        )
    ).first()
    if consent:
        consent.accepted = accepted
        consent.at = datetime.utcnow()
    else:
        consent = ModificationConsent(modification_id=mod.id, wallet_address=ctx.wallet_address, accepted=accepted)
    session.add(consent)
    actor = f"wallet:{ctx.wallet_address}"

    if not accepted:
        mod.status = "rejected"
        mod.resolved_at = datetime.utcnow()
        session.add(mod)
        append_event(session, invoice.id, actor, "modification_rejected", {"modification_id": mod.id})
        logger.info("invoice %s: modification %s rejected by %s", invoice.id, mod.id, ctx.wallet_address)
    else:
        session.flush()
        append_event(session, invoice.id, actor, "modification_consent", {"modification_id": mod.id})
        reevaluate_modification(session, invoice)
    session.commit()
    session.refresh(mod)
    return mod


def reevaluate_modification(session: Session, invoice: Invoice):
    """Apply the pending modification once every active contributor has accepted it."""
    mod = pending_modification(session, invoice.id)
    if not mod:
        return
    required = {p.wallet_address for p in active_contributors(session, invoice.id)}
    accepted = {
        c.wallet_address
        for c in session.exec(
            select(ModificationConsent).where(
                ModificationConsent.modification_id == mod.id,
                ModificationConsent.accepted == True,  # noqa: E712
            )
        ).all()
    }
    if not required <= accepted:
        return
    new_total = sum(line["amount"] for line in json.loads(mod.proposed_items_json))
    if new_total < invoice.total_collected + invoice.total_reserved:
        mod.status = "rejected"
        mod.resolved_at = datetime.utcnow()
        session.add(mod)
        append_event(session, invoice.id, "system", "modification_rejected",
                     {"modification_id": mod.id, "reason": "total below collected amount"})
        return
    _apply_modification(session, invoice, mod, "system")


def link_contract(session: Session, ctx: SessionContext, invoice: Invoice, signed_xdr: str) -> ChainTransaction:
    ensure_invoice_organizer(invoice, ctx)
    if invoice.contract_invoice_id is not None:
        raise ConflictError("invoice already linked to contract")
    if invoice.status != "draft":
        raise ValidationError(f"invoice is {invoice.status}")
    if pending_transactions(session, invoice.id, "create"):
        raise ConflictError("a link transaction is already pending")
    return submit_transaction(session, invoice, ctx, "create", signed_xdr)


def apply_link(session: Session, tx: ChainTransaction, return_value) -> bool:
    contract_id = int(return_value) if isinstance(return_value, int) else None
    result = session.exec(
        update(Invoice)
        .where(Invoice.id == tx.invoice_id, Invoice.status == "draft")
        .values(status="funding", contract_invoice_id=contract_id, updated_at=datetime.utcnow())
    )
    if not result.rowcount:
        logger.warning("invoice %s: link confirmed but invoice no longer in draft", tx.invoice_id)
        return False
    append_event(session, tx.invoice_id, f"wallet:{tx.wallet_address}", "linked",
                 {"tx_hash": tx.tx_hash, "contract_invoice_id": contract_id})
    logger.info("invoice %s linked to contract (%s), tx %s", tx.invoice_id, contract_id, tx.tx_hash)
    return True


def release(session: Session, ctx: SessionContext, invoice: Invoice, signed_xdr: str) -> ChainTransaction:
    ensure_invoice_organizer(invoice, ctx)
    if invoice.status != "funding":
        raise ValidationError("can only release invoices in funding status")
    if not is_fully_funded(invoice):
        raise FundingError("invoice is not fully funded")
    return submit_transaction(session, invoice, ctx, "release", signed_xdr, amount=invoice.total_collected)


def finalize_release(session: Session, invoice: Invoice, tx_id: Optional[int], actor: str) -> bool:
    result = session.exec(
        update(Invoice)
        .where(
            Invoice.id == invoice.id,
            Invoice.status == "funding",
            Invoice.total_collected >= Invoice.total_required,
        )
        .values(status="released", updated_at=datetime.utcnow())
    )
    if not result.rowcount:
        return False
    session.refresh(invoice)
    for item in get_items(session, invoice.id):
        session.add(LedgerEntry(invoice_id=invoice.id, wallet_address=item.recipient_wallet,
                                kind="payout", amount=item.amount, tx_id=tx_id))
    append_event(session, invoice.id, actor, "released", {"amount": invoice.total_collected})
    logger.info("invoice %s released (%s stroops)", invoice.id, invoice.total_collected)
    return True


def confirm_release(session: Session, ctx: SessionContext, invoice: Invoice, signed_xdr: str) -> ChainTransaction:
    participant = session.exec(
        select(InvoiceParticipant).where(
            InvoiceParticipant.invoice_id == invoice.id,
            InvoiceParticipant.user_id == ctx.user_id,
        )
    ).first()
    if not participant or participant.status != "active" or participant.contributed <= 0:
        raise NotFoundError("not a contributor of this invoice")
    if participant.confirmed_release:
        raise ConflictError("already confirmed release")
    if invoice.status != "funding":
        raise ValidationError(f"invoice is {invoice.status}")
    return submit_transaction(session, invoice, ctx, "confirm_release", signed_xdr)


def apply_confirm_release(session: Session, tx: ChainTransaction) -> bool:
    invoice = get_invoice(session, tx.invoice_id)
    participant = session.exec(
        select(InvoiceParticipant).where(
            InvoiceParticipant.invoice_id == invoice.id,
            InvoiceParticipant.wallet_address == tx.wallet_address,
        )
    ).first()
    if not participant or participant.confirmed_release or invoice.status != "funding":
        return False
    participant.confirmed_release = True
    session.add(participant)
    invoice.confirmation_count += 1
    session.add(invoice)
    session.flush()
    append_event(session, invoice.id, f"wallet:{tx.wallet_address}", "release_confirmed",
                 {"confirmation_count": invoice.confirmation_count})
    contributors = active_contributors(session, invoice.id)
    if is_fully_funded(invoice) and contributors and all(p.confirmed_release for p in contributors):
        finalize_release(session, invoice, tx.id, "system")
    return True

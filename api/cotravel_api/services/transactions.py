import json
import logging
from datetime import timezone
from typing import Optional

from sqlmodel import Session, select

from ..auth import SessionContext
from ..chain import PENDING, ExpectedCall, get_chain_client
from ..errors import ConflictError
from ..models import ChainTransaction, Invoice
from ..utils import stroops_to_xlm

logger = logging.getLogger(__name__)


def expected_call(invoice: Invoice, ctx: SessionContext, type_: str, amount: int = 0) -> ExpectedCall:
    """Contract invocation a signed envelope of the given type has to carry."""
    if type_ == "create":
        deadline = int(invoice.deadline.replace(tzinfo=timezone.utc).timestamp())
        return ExpectedCall(
            function="create_invoice",
            arity=8,
            args={0: ctx.wallet_address, 2: invoice.total_required, 4: deadline,
                  5: invoice.penalty_percent, 7: invoice.auto_release},
        )
    contract_id = invoice.contract_invoice_id
    if type_ == "contribute":
        return ExpectedCall(function="contribute", arity=3,
                            args={0: contract_id, 1: ctx.wallet_address, 2: amount})
    if type_ in ("withdraw", "confirm_release"):
        return ExpectedCall(function=type_, arity=2, args={0: contract_id, 1: ctx.wallet_address})
    return ExpectedCall(function=type_, arity=1, args={0: contract_id})


def submit_transaction(
    session: Session,
    invoice: Invoice,
    ctx: SessionContext,
    type_: str,
    signed_xdr: str,
    amount: int = 0,
    meta: Optional[dict] = None,
) -> ChainTransaction:
    """Submit a wallet-signed transaction and persist it as pending.

    Nothing about the invoice changes here; effects are applied only once the
    receipt is confirmed (see ``reconcile``).
    """
    client = get_chain_client()
    client.parse_signed(
        signed_xdr,
        expected_source=ctx.wallet_address,
        call=expected_call(invoice, ctx, type_, amount),
    )
    submitted = client.submit(signed_xdr)
    if session.exec(select(ChainTransaction).where(ChainTransaction.tx_hash == submitted.hash)).first():
        raise ConflictError("transaction already submitted")
    tx = ChainTransaction(
        invoice_id=invoice.id,
        user_id=ctx.user_id,
        wallet_address=ctx.wallet_address,
        type=type_,
        tx_hash=submitted.hash,
        amount=amount,
        meta_json=json.dumps(meta or {}),
    )
    session.add(tx)
    session.commit()
    session.refresh(tx)
    logger.info("invoice %s: %s transaction %s pending", invoice.id, type_, tx.tx_hash)
    return tx


def pending_transactions(session: Session, invoice_id: int, type_: Optional[str] = None,
                         wallet: Optional[str] = None):
    stmt = select(ChainTransaction).where(
        ChainTransaction.invoice_id == invoice_id,
        ChainTransaction.status == PENDING,
    )
    if type_:
        stmt = stmt.where(ChainTransaction.type == type_)
    if wallet:
        stmt = stmt.where(ChainTransaction.wallet_address == wallet)
    return session.exec(stmt).all()


def serialize_transaction(tx: ChainTransaction) -> dict:
    return {
        "id": tx.id,
        "invoice_id": tx.invoice_id,
        "type": tx.type,
        "tx_hash": tx.tx_hash,
        "status": tx.status,
        "wallet_address": tx.wallet_address,
        "amount": stroops_to_xlm(tx.amount),
        "ledger": tx.ledger,
        "error": tx.error,
        "created_at": tx.created_at,
        "confirmed_at": tx.confirmed_at,
    }

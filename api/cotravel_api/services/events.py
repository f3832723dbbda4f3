import json
from typing import Optional

from sqlmodel import Session, select

from ..models import InvoiceEvent
from ..utils import canonical_json, sha256_bytes

GENESIS_HASH = "0" * 64


def append_event(session: Session, invoice_id: int, actor: str, type_: str, meta: dict) -> InvoiceEvent:
    last = session.exec(
        select(InvoiceEvent).where(InvoiceEvent.invoice_id == invoice_id).order_by(InvoiceEvent.id.desc())
    ).first()
    prev_hash = last.hash if last else GENESIS_HASH
    payload = {"actor": actor, "type": type_, "meta": meta}
    event = InvoiceEvent(
        invoice_id=invoice_id,
        actor=actor,
        type=type_,
        meta_json=canonical_json(payload),
        prev_hash=prev_hash,
    )
    event.hash = sha256_bytes((prev_hash + event.meta_json).encode())
    session.add(event)
    session.flush()
    return event


def list_events(session: Session, invoice_id: int, after: Optional[int] = None):
    stmt = select(InvoiceEvent).where(InvoiceEvent.invoice_id == invoice_id)
    if after is not None:
        stmt = stmt.where(InvoiceEvent.id > after)
    events = session.exec(stmt.order_by(InvoiceEvent.id)).all()
    return [
        {
            "id": e.id,
            "actor": e.actor,
            "type": e.type,
            "meta": json.loads(e.meta_json).get("meta", {}),
            "at": e.at,
            "hash": e.hash,
        }
        for e in events
    ]


def verify_chain(session: Session, invoice_id: int) -> bool:
    prev_hash = GENESIS_HASH
    events = session.exec(
        select(InvoiceEvent).where(InvoiceEvent.invoice_id == invoice_id).order_by(InvoiceEvent.id)
    ).all()
    for event in events:
        if event.prev_hash != prev_hash:
            return False
        if event.hash != sha256_bytes((prev_hash + event.meta_json).encode()):
            return False
        prev_hash = event.hash
    return True

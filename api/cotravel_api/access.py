from sqlmodel import Session, select

from .auth import SessionContext
from .errors import AuthorizationError
from .models import Business, Invoice, InvoiceParticipant


def is_participant(session: Session, invoice_id: int, user_id: int) -> bool:
    participant = session.exec(
        select(InvoiceParticipant).where(
            InvoiceParticipant.invoice_id == invoice_id,
            InvoiceParticipant.user_id == user_id,
        )
    ).first()
    return participant is not None


def ensure_invoice_organizer(invoice: Invoice, ctx: SessionContext):
    if ctx.is_admin or invoice.organizer_id == ctx.user_id:
        return
    raise AuthorizationError("only the invoice organizer can do this")


def ensure_invoice_access(session: Session, invoice: Invoice, ctx: SessionContext):
    if ctx.is_admin or invoice.organizer_id == ctx.user_id:
        return
    if is_participant(session, invoice.id, ctx.user_id):
        return
    raise AuthorizationError("access denied for this invoice")


def ensure_business_owner(business: Business, ctx: SessionContext):
    if ctx.is_admin or business.owner_id == ctx.user_id:
        return
    raise AuthorizationError("only the business owner can do this")

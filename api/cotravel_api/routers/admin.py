import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlmodel import Session, select

from ..auth import SessionContext, require_admin
from ..db import get_session
from ..errors import NotFoundError, ValidationError
from ..models import Business, ChainTransaction, Invoice, User
from ..schemas import RoleUpdate
from ..services.invoices import serialize_invoice
from ..utils import stroops_to_xlm

logger = logging.getLogger(__name__)

router = APIRouter()

ROLES = ("user", "admin")


def _count(session: Session, model, *where) -> int:
    stmt = select(func.count()).select_from(model)
    if where:
        stmt = stmt.where(*where)
    return session.exec(stmt).one()


@router.get("/stats")
def stats(session: Session = Depends(get_session), ctx: SessionContext = Depends(require_admin)):
    by_status = dict(session.exec(select(Invoice.status, func.count()).group_by(Invoice.status)).all())
    collected = session.exec(
        select(func.coalesce(func.sum(Invoice.total_collected), 0)).where(Invoice.status.in_(("funding", "released")))
    ).one()
    return {
        "users": _count(session, User),
        "businesses": _count(session, Business),
        "invoices": sum(by_status.values()),
        "invoices_by_status": by_status,
        "pending_transactions": _count(session, ChainTransaction, ChainTransaction.status == "pending"),
        "total_collected": stroops_to_xlm(collected),
    }


@router.get("/users")
def list_users(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_admin),
):
    users = session.exec(select(User).order_by(User.id).offset((page - 1) * limit).limit(limit)).all()
    return {"data": users, "total": _count(session, User), "page": page, "limit": limit}


@router.put("/users/{user_id}/role")
def set_role(
    user_id: int,
    payload: RoleUpdate,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_admin),
):
    role = payload.role
    if role not in ROLES:
        raise ValidationError(f"role must be one of {', '.join(ROLES)}")
    user = session.get(User, user_id)
    if not user:
        raise NotFoundError("user not found")
    if user.id == ctx.user_id and role != "admin":
        raise ValidationError("admins cannot demote themselves")
    previous = user.role
    user.role = role
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info("admin %s changed role of %s from %s to %s", ctx.wallet_address, user.wallet_address, previous, role)
    return user


@router.get("/invoices")
def list_invoices(
    status: str = "",
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_admin),
):
    stmt = select(Invoice)
    if status:
        stmt = stmt.where(Invoice.status == status)
    invoices = session.exec(stmt.order_by(Invoice.created_at.desc()).offset((page - 1) * limit).limit(limit)).all()
    return [serialize_invoice(invoice) for invoice in invoices]


@router.get("/businesses")
def list_all_businesses(
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_admin),
):
    return session.exec(select(Business).order_by(Business.created_at.desc())).all()

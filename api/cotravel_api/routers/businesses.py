from datetime import datetime

from fastapi import APIRouter, Depends, File, Query, Response, UploadFile, status
from minio.error import S3Error
from sqlalchemy import func
from sqlmodel import Session, select

from ..access import ensure_business_owner
from ..auth import SessionContext, require_session
from ..chain import is_valid_wallet
from ..db import get_session
from ..errors import NotFoundError, ValidationError
from ..models import Business
from ..schemas import BusinessCreate, BusinessUpdate
from ..storage import ALLOWED_IMAGE_TYPES, MAX_IMAGE_BYTES, delete_object, get_bytes, logo_key, put_bytes

router = APIRouter()


def _get_business(session: Session, business_id: int) -> Business:
    business = session.get(Business, business_id)
    if not business:
        raise NotFoundError("business not found")
    return business


def _check_fields(name, wallet_address):
    if name is not None and not name.strip():
        raise ValidationError("name is required")
    if wallet_address and not is_valid_wallet(wallet_address):
        raise ValidationError("invalid wallet address")


def _serialize_business(business: Business) -> dict:
    return {
        "id": business.id,
        "owner_id": business.owner_id,
        "name": business.name,
        "category": business.category,
        "description": business.description,
        "contact_email": business.contact_email,
        "wallet_address": business.wallet_address,
        "has_logo": business.logo_key is not None,
        "active": business.active,
        "created_at": business.created_at,
        "updated_at": business.updated_at,
    }


@router.get("")
def list_businesses(
    category: str = "",
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    session: Session = Depends(get_session),
):
    stmt = select(Business).where(Business.active == True)  # noqa: E712
    count = select(func.count()).select_from(Business).where(Business.active == True)  # noqa: E712
    if category:
        stmt = stmt.where(Business.category == category)
        count = count.where(Business.category == category)
    total = session.exec(count).one()
    rows = session.exec(stmt.order_by(Business.name).offset((page - 1) * limit).limit(limit)).all()
    return {"data": [_serialize_business(b) for b in rows], "total": total, "page": page, "limit": limit}


@router.get("/my/list")
def my_businesses(
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    rows = session.exec(
        select(Business).where(Business.owner_id == ctx.user_id).order_by(Business.created_at.desc())
    ).all()
    return [_serialize_business(b) for b in rows]


@router.get("/{business_id}")
def get_business(business_id: int, session: Session = Depends(get_session)):
    business = _get_business(session, business_id)
    if not business.active:
        raise NotFoundError("business not found")
    return _serialize_business(business)


@router.post("", status_code=201)
def create_business(
    payload: BusinessCreate,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    _check_fields(payload.name, payload.wallet_address)
    business = Business(owner_id=ctx.user_id, **payload.model_dump())
    business.name = business.name.strip()
    session.add(business)
    session.commit()
    session.refresh(business)
    return _serialize_business(business)


@router.put("/{business_id}")
def update_business(
    business_id: int,
    payload: BusinessUpdate,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    business = _get_business(session, business_id)
    ensure_business_owner(business, ctx)
    changes = payload.model_dump(exclude_unset=True)
    _check_fields(changes.get("name"), changes.get("wallet_address"))
    for key, value in changes.items():
        setattr(business, key, value)
    business.updated_at = datetime.utcnow()
    session.add(business)
    session.commit()
    session.refresh(business)
    return _serialize_business(business)


@router.delete("/{business_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_business(
    business_id: int,
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    business = _get_business(session, business_id)
    ensure_business_owner(business, ctx)
    if business.logo_key:
        delete_object(business.logo_key)
    session.delete(business)
    session.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{business_id}/logo")
async def upload_logo(
    business_id: int,
    file: UploadFile = File(...),
    session: Session = Depends(get_session),
    ctx: SessionContext = Depends(require_session),
):
    business = _get_business(session, business_id)
    ensure_business_owner(business, ctx)
    if file.content_type not in ALLOWED_IMAGE_TYPES:
        raise ValidationError("logo must be a png, jpeg or webp image")
    data = await file.read()
    if not data or len(data) > MAX_IMAGE_BYTES:
        raise ValidationError("logo must be between 1 byte and 5 MB")
    key = logo_key(business.id, file.content_type)
    if business.logo_key and business.logo_key != key:
        delete_object(business.logo_key)
    put_bytes(key, data, content_type=file.content_type)
    business.logo_key = key
    business.updated_at = datetime.utcnow()
    session.add(business)
    session.commit()
    session.refresh(business)
    return _serialize_business(business)


@router.get("/{business_id}/logo")
def download_logo(business_id: int, session: Session = Depends(get_session)):
    business = _get_business(session, business_id)
    if not business.logo_key:
        raise NotFoundError("business has no logo")
    try:
        data = get_bytes(business.logo_key)
    except S3Error:
        raise NotFoundError("stored logo missing for this business")
    extension = business.logo_key.rsplit(".", 1)[-1]
    media_type = next((ct for ct, ext in ALLOWED_IMAGE_TYPES.items() if ext == extension), "application/octet-stream")
    return Response(content=data, media_type=media_type)

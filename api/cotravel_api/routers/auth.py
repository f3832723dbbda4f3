from fastapi import APIRouter, Depends
from sqlmodel import Session

from ..auth import SessionContext, request_challenge, require_session, revoke_session, submit_signature
from ..db import get_session
from ..errors import NotFoundError, ValidationError
from ..models import User
from ..schemas import LoginRequest

router = APIRouter()


@router.get("/challenge")
def get_challenge(wallet: str = "", session: Session = Depends(get_session)):
    if not wallet:
        raise ValidationError("wallet query parameter required")
    return {"challenge": request_challenge(session, wallet)}


@router.post("/login")
def login(payload: LoginRequest, session: Session = Depends(get_session)):
    if not payload.wallet or not payload.signature:
        raise ValidationError("wallet and signature required")
    return submit_signature(session, payload.wallet, payload.signature)


@router.get("/me")
def me(ctx: SessionContext = Depends(require_session), session: Session = Depends(get_session)):
    user = session.get(User, ctx.user_id)
    if not user:
        raise NotFoundError("user not found")
    return user


@router.post("/logout")
def logout(ctx: SessionContext = Depends(require_session), session: Session = Depends(get_session)):
    revoke_session(session, ctx)
    return {"ok": True}

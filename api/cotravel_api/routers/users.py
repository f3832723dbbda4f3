from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from ..db import get_session
from ..errors import NotFoundError
from ..models import User

router = APIRouter()


@router.get("/{wallet}")
def get_user(wallet: str, session: Session = Depends(get_session)):
    user = session.exec(select(User).where(User.wallet_address == wallet)).first()
    if not user:
        raise NotFoundError("user not found")
    return {"id": user.id, "wallet_address": user.wallet_address, "username": user.username, "role": user.role}

import base64
import binascii
import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, Header
from itsdangerous import BadSignature
from pydantic import BaseModel
from sqlmodel import Session, select
from stellar_sdk import Keypair
from stellar_sdk.exceptions import BadSignatureError, Ed25519PublicKeyInvalidError

from .chain import is_valid_wallet
from .config import ADMIN_WALLETS, CHALLENGE_TTL_SECONDS, SESSION_TTL_SECONDS
from .db import get_session
from .errors import AuthError, AuthorizationError, ValidationError
from .models import AuthChallenge, AuthSession, User
from .utils import make_token, read_token, sha256_bytes

logger = logging.getLogger(__name__)

SEP53_PREFIX = b"Stellar Signed Message:\n"


class SessionContext(BaseModel):
    user_id: int
    wallet_address: str
    role: str = "user"
    session_id: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def verify_signed_message(wallet: str, message: str, signature_b64: str) -> bool:
    """SEP-0053: ed25519 signature over sha256(prefix + message)."""
    try:
        signature = base64.b64decode(signature_b64, validate=True)
    except (binascii.Error, ValueError):
        return False
    digest = hashlib.sha256(SEP53_PREFIX + message.encode("utf-8")).digest()
    try:
        Keypair.from_public_key(wallet).verify(digest, signature)
    except (BadSignatureError, Ed25519PublicKeyInvalidError, ValueError):
        return False
    return True


def request_challenge(session: Session, wallet: str) -> str:
    if not is_valid_wallet(wallet):
        raise ValidationError("invalid wallet address")
    message = f"CoTravel Login: {secrets.token_hex(32)}"
    existing = session.exec(select(AuthChallenge).where(AuthChallenge.wallet_address == wallet)).first()
    if existing:
        existing.message = message
        existing.created_at = datetime.utcnow()
        session.add(existing)
    else:
        session.add(AuthChallenge(wallet_address=wallet, message=message))
    _purge_expired_challenges(session)
    session.commit()
    return message


def _purge_expired_challenges(session: Session):
    cutoff = datetime.utcnow() - timedelta(seconds=CHALLENGE_TTL_SECONDS)
    for stale in session.exec(select(AuthChallenge).where(AuthChallenge.created_at < cutoff)).all():
        session.delete(stale)


def submit_signature(session: Session, wallet: str, signature: str) -> dict:
    stored = session.exec(select(AuthChallenge).where(AuthChallenge.wallet_address == wallet)).first()
    if not stored:
        raise AuthError("no challenge found, request one first")
    if datetime.utcnow() - stored.created_at > timedelta(seconds=CHALLENGE_TTL_SECONDS):
        session.delete(stored)
        session.commit()
        raise AuthError("challenge expired")
    if not verify_signed_message(wallet, stored.message, signature):
        logger.warning("rejected login for wallet %s: invalid signature", wallet)
        raise AuthError("invalid signature")

    session.delete(stored)
    user = session.exec(select(User).where(User.wallet_address == wallet)).first()
    if not user:
        user = User(wallet_address=wallet, role="admin" if wallet in ADMIN_WALLETS else "user")
        session.add(user)
        session.flush()
        logger.info("created user %s for wallet %s", user.id, wallet)

    issued_at = datetime.utcnow()
    expires_at = issued_at + timedelta(seconds=SESSION_TTL_SECONDS)
    token = make_token({"uid": user.id, "wallet": wallet, "nonce": secrets.token_hex(8)})
    auth_session = AuthSession(
        user_id=user.id,
        wallet_address=wallet,
        token_hash=sha256_bytes(token.encode()),
        issued_at=issued_at,
        expires_at=expires_at,
    )
    session.add(auth_session)
    session.commit()
    session.refresh(user)
    logger.info("session issued for wallet %s", wallet)
    return {
        "token": token,
        "wallet_address": wallet,
        "issued_at": issued_at,
        "expires_at": expires_at,
        "user": user,
    }


def resolve_session(session: Session, token: str) -> SessionContext:
    try:
        read_token(token, max_age=SESSION_TTL_SECONDS)
    except BadSignature:
        raise AuthError("invalid or expired session")
    record = session.exec(
        select(AuthSession).where(AuthSession.token_hash == sha256_bytes(token.encode()))
    ).first()
    if not record or record.revoked_at is not None or record.expires_at <= datetime.utcnow():
        raise AuthError("invalid or expired session")
    user = session.get(User, record.user_id)
    if not user:
        raise AuthError("invalid or expired session")
    return SessionContext(
        user_id=user.id,
        wallet_address=user.wallet_address,
        role=user.role,
        session_id=record.id,
    )


def revoke_session(session: Session, ctx: SessionContext):
    record = session.get(AuthSession, ctx.session_id)
    if record and record.revoked_at is None:
        record.revoked_at = datetime.utcnow()
        session.add(record)
        session.commit()
        logger.info("session %s revoked for wallet %s", record.id, ctx.wallet_address)


def require_session(
    authorization: Optional[str] = Header(default=None),
    session: Session = Depends(get_session),
) -> SessionContext:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthError("authorization token required")
    return resolve_session(session, authorization.split(" ", 1)[1].strip())


def require_admin(ctx: SessionContext = Depends(require_session)) -> SessionContext:
    if not ctx.is_admin:
        raise AuthorizationError("admin access required")
    return ctx

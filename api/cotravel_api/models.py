
from typing import Optional
from datetime import datetime
from sqlalchemy import BigInteger
from sqlmodel import SQLModel, Field as ORMField

# Amounts are integer stroops (1 XLM = 10_000_000 stroops).


class User(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    wallet_address: str = ORMField(index=True, unique=True)
    username: Optional[str] = None
    role: str = "user"  # user|admin
    created_at: datetime = ORMField(default_factory=datetime.utcnow)


class AuthChallenge(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    wallet_address: str = ORMField(index=True, unique=True)
    message: str
    created_at: datetime = ORMField(default_factory=datetime.utcnow)


class AuthSession(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    user_id: int = ORMField(index=True)
    wallet_address: str
    token_hash: str = ORMField(index=True, unique=True)
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None


class Invoice(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    organizer_id: int = ORMField(index=True)
    name: str
    description: Optional[str] = None
    deadline: datetime
    status: str = "draft"  # draft|funding|released|cancelled
    auto_release: bool = False
    total_required: int = ORMField(default=0, sa_type=BigInteger)
    total_collected: int = ORMField(default=0, sa_type=BigInteger)
    total_reserved: int = ORMField(default=0, sa_type=BigInteger)
    penalty_percent: int = 15
    contract_invoice_id: Optional[int] = ORMField(default=None, sa_type=BigInteger)
    version: int = 1
    confirmation_count: int = 0
    created_at: datetime = ORMField(default_factory=datetime.utcnow)
    updated_at: datetime = ORMField(default_factory=datetime.utcnow)


class InvoiceRecipient(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    invoice_id: int = ORMField(index=True)
    wallet_address: str


class InvoiceItem(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    invoice_id: int = ORMField(index=True)
    description: str
    amount: int = ORMField(sa_type=BigInteger)
    recipient_wallet: str
    sort_order: int = 0


class InvoiceParticipant(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    invoice_id: int = ORMField(index=True)
    user_id: int
    wallet_address: str
    contributed: int = ORMField(default=0, sa_type=BigInteger)
    penalty_amount: int = ORMField(default=0, sa_type=BigInteger)
    status: str = "active"  # active|withdrawn
    confirmed_release: bool = False
    joined_at: datetime = ORMField(default_factory=datetime.utcnow)


class Contribution(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    invoice_id: int = ORMField(index=True)
    participant_wallet: str
    amount: int = ORMField(sa_type=BigInteger)
    timestamp: datetime = ORMField(default_factory=datetime.utcnow)
    status: str = "active"  # active|withdrawn
    tx_id: Optional[int] = None


class InvoiceModification(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    invoice_id: int = ORMField(index=True)
    version: int
    change_summary: str = "Items updated"
    proposed_items_json: str = "[]"
    proposed_recipients_json: str = "[]"
    previous_items_json: str = "[]"
    status: str = "pending"  # pending|applied|rejected
    created_at: datetime = ORMField(default_factory=datetime.utcnow)
    resolved_at: Optional[datetime] = None


class ModificationConsent(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    modification_id: int = ORMField(index=True)
    wallet_address: str
    accepted: bool
    at: datetime = ORMField(default_factory=datetime.utcnow)


class ChainTransaction(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    invoice_id: int = ORMField(index=True)
    user_id: int
    wallet_address: str
    type: str  # create|contribute|withdraw|release|confirm_release|cancel|claim_deadline
    tx_hash: str = ORMField(index=True, unique=True)
    status: str = "pending"  # pending|confirmed|failed
    amount: int = ORMField(default=0, sa_type=BigInteger)
    meta_json: str = "{}"
    ledger: Optional[int] = None
    error: Optional[str] = None
    created_at: datetime = ORMField(default_factory=datetime.utcnow)
    confirmed_at: Optional[datetime] = None


class LedgerEntry(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    invoice_id: int = ORMField(index=True)
    wallet_address: str
    kind: str  # contribution|refund|penalty|payout
    amount: int = ORMField(sa_type=BigInteger)
    tx_id: Optional[int] = None
    at: datetime = ORMField(default_factory=datetime.utcnow)


class InvoiceEvent(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    invoice_id: int = ORMField(index=True)
    actor: str  # system|wallet:<address>
    type: str   # created|linked|funding_progress|withdrawal|modification_*|released|cancelled
    meta_json: str = "{}"
    at: datetime = ORMField(default_factory=datetime.utcnow)
    prev_hash: Optional[str] = None
    hash: Optional[str] = None


class Business(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    owner_id: int = ORMField(index=True)
    name: str
    category: Optional[str] = None
    description: Optional[str] = None
    contact_email: Optional[str] = None
    wallet_address: Optional[str] = None
    logo_key: Optional[str] = None
    active: bool = True
    created_at: datetime = ORMField(default_factory=datetime.utcnow)
    updated_at: datetime = ORMField(default_factory=datetime.utcnow)

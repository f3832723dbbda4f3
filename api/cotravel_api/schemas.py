
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel
from typing import List, Optional


class LoginRequest(BaseModel):
    wallet: str
    signature: str


class ItemCreate(BaseModel):
    description: str
    amount: Decimal
    recipient_wallet: Optional[str] = None
    sort_order: Optional[int] = None


class InvoiceCreate(BaseModel):
    name: str
    description: Optional[str] = None
    deadline: datetime
    recipients: List[str] = []
    items: List[ItemCreate] = []
    auto_release: bool = False


class InvoiceItemsUpdate(BaseModel):
    items: List[ItemCreate]
    recipients: Optional[List[str]] = None
    change_summary: Optional[str] = None


class SignedTransaction(BaseModel):
    signed_xdr: str


class ContributionRequest(BaseModel):
    amount: Decimal
    signed_xdr: str


class WithdrawalRequest(BaseModel):
    signed_xdr: str
    amount: Optional[Decimal] = None


class ConsentAccept(BaseModel):
    accepted: bool


class BusinessCreate(BaseModel):
    name: str
    category: Optional[str] = None
    description: Optional[str] = None
    contact_email: Optional[str] = None
    wallet_address: Optional[str] = None


class BusinessUpdate(BaseModel):
    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    contact_email: Optional[str] = None
    wallet_address: Optional[str] = None
    active: Optional[bool] = None


class RoleUpdate(BaseModel):
    role: str

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from ..models import Invoice


class WithdrawalQuote(BaseModel):
    amount: int
    penalty: int
    refund: int
    penalty_percent: int


def applicable_penalty_percent(invoice: Invoice, now: Optional[datetime] = None) -> int:
    # No penalty once the invoice is fully funded or its deadline has lapsed.
    now = now or datetime.utcnow()
    if invoice.total_required and invoice.total_collected >= invoice.total_required:
        return 0
    if invoice.deadline <= now:
        return 0
    return invoice.penalty_percent


def quote_withdrawal(invoice: Invoice, amount: int, now: Optional[datetime] = None) -> WithdrawalQuote:
    percent = applicable_penalty_percent(invoice, now)
    penalty = amount * percent // 100
    return WithdrawalQuote(amount=amount, penalty=penalty, refund=amount - penalty, penalty_percent=percent)


import hashlib, json
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from itsdangerous import URLSafeTimedSerializer
from .config import SECRET_KEY
from .errors import ValidationError

STROOPS_PER_XLM = 10_000_000
# Largest amount a signed 64-bit column holds.
MAX_STROOPS = 2**63 - 1
_STROOP = Decimal("0.0000001")


def xlm_to_stroops(value) -> int:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("invalid amount")
    if not amount.is_finite():
        raise ValidationError("invalid amount")
    if abs(amount) * STROOPS_PER_XLM > MAX_STROOPS:
        raise ValidationError("invalid amount")
    if amount != amount.quantize(_STROOP, rounding=ROUND_DOWN):
        raise ValidationError("amount has more than 7 decimal places")
    return int(amount * STROOPS_PER_XLM)


def stroops_to_xlm(stroops: int) -> float:
    return float(Decimal(stroops) / STROOPS_PER_XLM)


def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def canonical_json(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


def _session_serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(SECRET_KEY, salt="cotravel-session")


def make_token(payload: dict) -> str:
    return _session_serializer().dumps(payload)


def read_token(token: str, max_age: int) -> dict:
    return _session_serializer().loads(token, max_age=max_age)

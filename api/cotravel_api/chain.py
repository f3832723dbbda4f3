
"""Thin wrapper around stellar_sdk for submitting signed escrow transactions.

Submission and confirmation are separate steps: ``submit`` only hands the
envelope to Soroban RPC, and ``wait_for_confirmation`` polls for the receipt
with a bounded number of attempts.
"""

import logging
import time
from typing import Any, Dict, Optional

from pydantic import BaseModel
from stellar_sdk import Address, Server, SorobanServer, StrKey, TransactionEnvelope, scval
from stellar_sdk import xdr as stellar_xdr
from stellar_sdk.exceptions import NotFoundError as HorizonNotFoundError
from stellar_sdk.exceptions import SdkError
from stellar_sdk.operation import InvokeHostFunction

from .config import (
    CHAIN_CONFIRM_ATTEMPTS,
    CHAIN_POLL_INTERVAL,
    CONTRACT_ID,
    HORIZON_URL,
    NETWORK_PASSPHRASE,
    SOROBAN_RPC_URL,
)
from .errors import ChainError, ChainTimeoutError
from .utils import xlm_to_stroops

logger = logging.getLogger(__name__)

PENDING = "pending"
CONFIRMED = "confirmed"
FAILED = "failed"


class SubmittedTx(BaseModel):
    hash: str


class ExpectedCall(BaseModel):
    """Escrow contract invocation a signed envelope must contain."""

    function: str
    arity: int
    args: Dict[int, Any] = {}


class TxStatus(BaseModel):
    hash: str
    status: str
    ledger: Optional[int] = None
    return_value: Optional[Any] = None
    error: Optional[str] = None


def is_valid_wallet(address: Optional[str]) -> bool:
    if not address:
        return False
    return StrKey.is_valid_ed25519_public_key(address)


def _native_arg(sc_val):
    value = scval.to_native(sc_val)
    if isinstance(value, Address):
        return value.address
    return value


def _extract_return_value(result_meta_xdr: Optional[str]):
    if not result_meta_xdr:
        return None
    meta = stellar_xdr.TransactionMeta.from_xdr(result_meta_xdr)
    body = meta.v4 if getattr(meta, "v4", None) else meta.v3
    if not body or not body.soroban_meta or body.soroban_meta.return_value is None:
        return None
    return scval.to_native(body.soroban_meta.return_value)


class ChainClient:
    def __init__(self, rpc_url: str = SOROBAN_RPC_URL, horizon_url: str = HORIZON_URL,
                 network_passphrase: str = NETWORK_PASSPHRASE, contract_id: Optional[str] = CONTRACT_ID):
        self.network_passphrase = network_passphrase
        self.contract_id = contract_id
        self.rpc = SorobanServer(rpc_url)
        self.horizon = Server(horizon_url)

    def parse_signed(self, signed_xdr: str, expected_source: Optional[str] = None,
                     call: Optional[ExpectedCall] = None) -> TransactionEnvelope:
        try:
            envelope = TransactionEnvelope.from_xdr(signed_xdr, self.network_passphrase)
        except (SdkError, ValueError, TypeError) as exc:
            logger.warning("rejecting undecodable transaction: %s", exc)
            raise ChainError("could not decode transaction")
        if not envelope.signatures:
            raise ChainError("transaction is not signed")
        source = envelope.transaction.source.account_id
        if expected_source and source != expected_source:
            raise ChainError("transaction source does not match the signing wallet")
        if call is not None:
            self.check_call(envelope, call)
        return envelope

    def check_call(self, envelope: TransactionEnvelope, call: ExpectedCall):
        if not self.contract_id:
            raise ChainError("escrow contract is not configured")
        operations = envelope.transaction.operations
        if len(operations) != 1 or not isinstance(operations[0], InvokeHostFunction):
            raise ChainError("transaction does not match the requested operation")
        host_function = operations[0].host_function
        if host_function.type != stellar_xdr.HostFunctionType.HOST_FUNCTION_TYPE_INVOKE_CONTRACT:
            raise ChainError("transaction does not match the requested operation")
        invoke = host_function.invoke_contract
        contract = Address.from_xdr_sc_address(invoke.contract_address).address
        function = invoke.function_name.sc_symbol.decode()
        args = [_native_arg(arg) for arg in invoke.args]
        matches = len(args) == call.arity and all(
            args[position] == value for position, value in call.args.items() if position < len(args)
        )
        if contract != self.contract_id or function != call.function or not matches:
            logger.warning("rejecting %s call on %s, expected %s", function, contract, call.function)
            raise ChainError("transaction does not match the requested operation")

    def submit(self, signed_xdr: str) -> SubmittedTx:
        envelope = self.parse_signed(signed_xdr)
        try:
            response = self.rpc.send_transaction(envelope)
        except SdkError as exc:
            raise ChainError(f"sendTransaction failed: {exc}")
        status = getattr(response.status, "value", response.status)
        if status in ("ERROR", "TRY_AGAIN_LATER"):
            raise ChainError(f"sendTransaction failed: {response.error_result_xdr or status}")
        logger.info("submitted transaction %s (%s)", response.hash, status)
        return SubmittedTx(hash=response.hash)

    def get_status(self, tx_hash: str) -> TxStatus:
        try:
            response = self.rpc.get_transaction(tx_hash)
        except SdkError as exc:
            raise ChainError(f"getTransaction failed: {exc}")
        status = getattr(response.status, "value", response.status)
        if status == "NOT_FOUND":
            return TxStatus(hash=tx_hash, status=PENDING)
        if status == "FAILED":
            return TxStatus(hash=tx_hash, status=FAILED, ledger=response.ledger,
                            error=f"Transaction {tx_hash} failed")
        return TxStatus(
            hash=tx_hash,
            status=CONFIRMED,
            ledger=response.ledger,
            return_value=_extract_return_value(response.result_meta_xdr),
        )

    def get_balance(self, wallet: str) -> int:
        try:
            account = self.horizon.accounts().account_id(wallet).call()
        except HorizonNotFoundError:
            return 0
        except SdkError as exc:
            raise ChainError(f"balance lookup failed: {exc}")
        for balance in account.get("balances", []):
            if balance.get("asset_type") == "native":
                return xlm_to_stroops(balance["balance"])
        return 0


def wait_for_confirmation(client, tx_hash: str, attempts: int = CHAIN_CONFIRM_ATTEMPTS,
                          interval: float = CHAIN_POLL_INTERVAL, sleep=time.sleep) -> TxStatus:
    """Poll ``client.get_status`` until the transaction leaves the pending state."""
    for attempt in range(attempts):
        if attempt:
            sleep(interval)
        result = client.get_status(tx_hash)
        if result.status != PENDING:
            return result
    raise ChainTimeoutError(f"{tx_hash} not confirmed after {attempts} attempts")


_client: Optional[ChainClient] = None


def get_chain_client():
    global _client
    if _client is None:
        _client = ChainClient()
    return _client

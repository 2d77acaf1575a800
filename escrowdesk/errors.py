"""Error taxonomy and classification of raw provider/web3 failures.

Every failure that crosses the session or escrow client boundary is one of the
``EscrowError`` subclasses below. ``classify_error`` maps whatever the wallet
provider, web3.py or the transport raised onto that taxonomy so callers can tell
"I changed my mind" (``UserRejected``) apart from "the contract refused"
(``RemoteReverted``) and "the network is down" (``NetworkFailure``).
"""

import asyncio

import aiohttp
import httpx
from eth_abi import decode as abi_decode
from web3.exceptions import (
    ContractLogicError,
    ProviderConnectionError,
    RequestTimedOut,
    Web3RPCError,
)

# EIP-1193 provider error codes
USER_REJECTED_CODE = 4001
UNAUTHORIZED_CODE = 4100
UNSUPPORTED_METHOD_CODE = 4200
DISCONNECTED_CODE = 4900
CHAIN_DISCONNECTED_CODE = 4901

# Error(string) selector used by Solidity require/revert messages
REVERT_SELECTOR = "0x08c379a0"

_REJECTION_MARKERS = ("user rejected", "user denied", "action_rejected")
_REVERT_PREFIX = "execution reverted"


class EscrowError(Exception):
    """Base class. ``detail`` is safe to show to the human."""

    default_detail = "Escrow client error"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class NoProviderFound(EscrowError):
    default_detail = "No wallet provider found"


class UserRejected(EscrowError):
    default_detail = "Request rejected in wallet"


class ConnectionFailed(EscrowError):
    default_detail = "Wallet connection failed"


class NotReady(EscrowError):
    default_detail = "Wallet not connected or contract not bound"


class InvalidRequest(EscrowError):
    default_detail = "Invalid request"


class NetworkFailure(EscrowError):
    default_detail = "Network request failed"


class RemoteReverted(EscrowError):
    default_detail = "Transaction reverted on chain"

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason
        super().__init__(reason)


class ProviderRpcError(Exception):
    """Error raised by a wallet provider, shaped like an EIP-1193 ProviderRpcError."""

    def __init__(self, code: int, message: str, data: object = None) -> None:
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"[{code}] {message}")


def decode_revert_reason(raw: object) -> str | None:
    """Decode a Solidity ``Error(string)`` payload. Returns None when it is not one."""
    if isinstance(raw, bytes):
        raw = "0x" + raw.hex()
    if not isinstance(raw, str) or not raw.startswith(REVERT_SELECTOR):
        return None
    try:
        (reason,) = abi_decode(["string"], bytes.fromhex(raw[len(REVERT_SELECTOR):]))
    except Exception:
        return None
    return reason


def _clean_reason(message: str | None) -> str | None:
    if not message:
        return None
    text = str(message).strip()
    if text.lower().startswith(_REVERT_PREFIX):
        text = text[len(_REVERT_PREFIX):].lstrip(": ").strip()
    return text or None


def _is_rejection(code: object, message: object) -> bool:
    if code == USER_REJECTED_CODE:
        return True
    text = str(message or "").lower()
    return any(marker in text for marker in _REJECTION_MARKERS)


def _from_provider_code(code: object, message: object) -> EscrowError | None:
    """Provider-level EIP-1193 failures that are not about the contract at all."""
    detail = str(message) if message else None
    if _is_rejection(code, message):
        return UserRejected(detail)
    if code in (DISCONNECTED_CODE, CHAIN_DISCONNECTED_CODE):
        return NetworkFailure(detail)
    if code in (UNAUTHORIZED_CODE, UNSUPPORTED_METHOD_CODE):
        return ConnectionFailed(detail)
    return None


def _from_rpc_payload(payload: dict) -> EscrowError:
    """Classify a JSON-RPC error object: ``{"code": ..., "message": ..., "data": ...}``."""
    code = payload.get("code")
    message = payload.get("message") or payload.get("reason")
    classified = _from_provider_code(code, message)
    if classified is not None:
        return classified
    reason = decode_revert_reason(payload.get("data")) or _clean_reason(message)
    return RemoteReverted(reason)


def classify_error(exc: BaseException) -> BaseException:
    """Map a raw exception onto the escrow error taxonomy.

    Exceptions that are neither wallet, contract nor transport failures are
    returned unchanged so programming errors are never disguised.
    """
    if isinstance(exc, EscrowError):
        return exc

    if isinstance(exc, ProviderRpcError):
        classified = _from_provider_code(exc.code, exc.message)
        if classified is not None:
            return classified
        reason = decode_revert_reason(exc.data) or _clean_reason(exc.message)
        return RemoteReverted(reason)

    if isinstance(exc, ContractLogicError):
        reason = decode_revert_reason(exc.data) or _clean_reason(exc.message)
        return RemoteReverted(reason)

    if isinstance(
        exc,
        (
            ProviderConnectionError,
            RequestTimedOut,
            aiohttp.ClientError,
            httpx.TransportError,
            asyncio.TimeoutError,
            OSError,
        ),
    ):
        return NetworkFailure(str(exc) or None)

    if isinstance(exc, Web3RPCError):
        payload = (exc.rpc_response or {}).get("error")
        if isinstance(payload, dict):
            return _from_rpc_payload(payload)
        if _is_rejection(None, exc.message):
            return UserRejected(exc.message)
        return RemoteReverted(_clean_reason(exc.message))

    # Older web3 releases raise ValueError carrying the JSON-RPC error dict
    if isinstance(exc, ValueError) and exc.args and isinstance(exc.args[0], dict):
        return _from_rpc_payload(exc.args[0])

    return exc

"""Utilities for dealing with solders RPC response objects.

``solana-py`` surfaces ``solders`` response classes.  The helpers below turn
them into the package's own value types so that the cache, token pool and
assembler never touch wire-level objects.
"""

from __future__ import annotations

import json
import time
from typing import Any, Iterable, Optional

from solders.pubkey import Pubkey

from .models import AccountSnapshot, LogUpdate, SimulatedTransaction, ValidityToken


def _json_like(obj: Any) -> Any:
    """Best-effort conversion of *obj* into standard ``dict``/``list`` types."""

    if obj is None or isinstance(obj, (dict, list, str, int, float, bool)):
        return obj

    fn = getattr(obj, "to_json", None)
    if callable(fn):
        payload = fn()
        if isinstance(payload, str):
            return json.loads(payload)
        return payload
    return str(obj)


def _extract_path(obj: Any, path: Iterable[str]) -> Any:
    cur = obj
    for key in path:
        if isinstance(cur, dict):
            cur = cur.get(key)
        else:
            return None
    return cur


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text, 0)
        except ValueError:
            try:
                return int(float(text))
            except ValueError:
                return None
    return None


def response_slot(resp: Any) -> int:
    context = getattr(resp, "context", None)
    return _as_int(getattr(context, "slot", None)) or 0


def snapshot_from_account(
    key: Pubkey, account: Any, slot: int, endpoint: str
) -> AccountSnapshot:
    """Build a snapshot from a ``solders.account.Account`` (or ``None``)."""

    if account is None:
        return AccountSnapshot.absent(key, slot, endpoint)
    return AccountSnapshot(
        key=key,
        data=bytes(account.data),
        owner=account.owner,
        slot=slot,
        endpoint=endpoint,
        lamports=_as_int(account.lamports),
    )


def token_from_blockhash_response(resp: Any) -> Optional[ValidityToken]:
    value = getattr(resp, "value", None)
    if value is None:
        return None
    blockhash = getattr(value, "blockhash", None)
    if blockhash is None:
        return None
    return ValidityToken(
        blockhash=str(blockhash),
        slot=response_slot(resp),
        last_valid_block_height=_as_int(getattr(value, "last_valid_block_height", None)) or 0,
        retrieved_at=time.time(),
    )


def simulation_from_response(resp: Any) -> SimulatedTransaction:
    """Normalise a ``SimulateTransactionResp``.

    The error is taken from the JSON form so it keeps the RPC shape
    (``{"InstructionError": [idx, ...]}``); account buffers come straight from
    the parsed ``Account`` objects.
    """

    value = getattr(resp, "value", None)
    if value is None:
        return SimulatedTransaction(err={"RpcError": str(resp)})
    err = _extract_path(_json_like(resp), ("result", "value", "err"))
    accounts = [
        bytes(acc.data) if acc is not None else None
        for acc in (getattr(value, "accounts", None) or [])
    ]
    return SimulatedTransaction(
        err=err,
        logs=list(getattr(value, "logs", None) or []),
        accounts=accounts,
        units_consumed=_as_int(getattr(value, "units_consumed", None)),
    )


def log_update_from_notification(target: str, result: Any, endpoint: str) -> LogUpdate:
    """Build a :class:`LogUpdate` from a ``LogsNotificationResult``."""

    value = result.value
    err = None
    if getattr(value, "err", None) is not None:
        err = _extract_path(_json_like(result), ("value", "err")) or str(value.err)
    return LogUpdate(
        target=target,
        signature=str(value.signature),
        logs=list(value.logs or []),
        slot=_as_int(getattr(result.context, "slot", None)) or 0,
        err=err,
        endpoint=endpoint,
    )

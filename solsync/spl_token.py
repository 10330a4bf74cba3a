"""Decoding of SPL token accounts.

Token accounts use a fixed 165 byte little-endian layout::

    0   mint              32
    32  owner             32
    64  amount            u64
    72  delegate          COption<Pubkey>   (u32 tag + 32)
    108 state             u8
    109 is_native         COption<u64>      (u32 tag + 8)
    121 delegated_amount  u64
    129 close_authority   COption<Pubkey>   (u32 tag + 32)
"""

from __future__ import annotations

import struct
from typing import Iterable, Mapping, Optional

from solders.pubkey import Pubkey

from .constants import SPL_TOKEN_ACCOUNT_LENGTH
from .models import AccountSnapshot, Decoded, DecodeResult, Skipped, TokenAccount

_LAYOUT = struct.Struct("<32s32sQI32sBIQQI32s")
assert _LAYOUT.size == SPL_TOKEN_ACCOUNT_LENGTH

STATE_UNINITIALIZED = 0
STATE_INITIALIZED = 1
STATE_FROZEN = 2


def _coption_key(tag: int, raw: bytes) -> Optional[Pubkey]:
    return Pubkey.from_bytes(raw) if tag == 1 else None


def decode_token_account(account: str, data: Optional[bytes]) -> DecodeResult[TokenAccount]:
    """Decode ``data`` as a token account owned by key ``account``.

    Returns :class:`Skipped` rather than raising when the buffer is missing,
    has the wrong length or describes an uninitialized account.
    """

    if data is None:
        return Skipped(account, "no data")
    if len(data) != SPL_TOKEN_ACCOUNT_LENGTH:
        return Skipped(account, f"unexpected length {len(data)}")
    (
        mint,
        owner,
        amount,
        delegate_tag,
        delegate,
        state,
        native_tag,
        native_amount,
        delegated_amount,
        close_tag,
        close_authority,
    ) = _LAYOUT.unpack(data)
    if state not in (STATE_INITIALIZED, STATE_FROZEN):
        return Skipped(account, f"invalid state {state}")
    return Decoded(
        account,
        TokenAccount(
            account=account,
            mint=Pubkey.from_bytes(mint),
            owner=Pubkey.from_bytes(owner),
            amount=amount,
            delegate=_coption_key(delegate_tag, delegate),
            state=state,
            is_native=native_amount if native_tag == 1 else None,
            delegated_amount=delegated_amount,
            close_authority=_coption_key(close_tag, close_authority),
        ),
    )


def decode_token_accounts(
    keys: Iterable[str], snapshots: Mapping[str, AccountSnapshot]
) -> dict[str, DecodeResult[TokenAccount]]:
    """Decode every key in ``keys`` from ``snapshots``, recording skips."""

    results: dict[str, DecodeResult[TokenAccount]] = {}
    for key in keys:
        snap = snapshots.get(key)
        if snap is None or not snap.exists:
            results[key] = Skipped(key, "account not found")
            continue
        results[key] = decode_token_account(key, snap.data)
    return results

from solders.pubkey import Pubkey

from solsync.models import AccountSnapshot, Decoded, Skipped
from solsync.spl_token import (
    STATE_FROZEN,
    decode_token_account,
    decode_token_accounts,
)

from conftest import token_account_bytes


def test_decode_initialized_account():
    mint, owner, delegate = Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique()
    result = decode_token_account("acc", token_account_bytes(mint, owner, 12345, delegate=delegate))
    assert isinstance(result, Decoded)
    value = result.value
    assert value.account == "acc"
    assert value.mint == mint
    assert value.owner == owner
    assert value.amount == 12345
    assert value.delegate == delegate
    assert value.is_native is None
    assert value.close_authority is None


def test_frozen_account_decodes():
    data = token_account_bytes(Pubkey.new_unique(), Pubkey.new_unique(), 1, state=STATE_FROZEN)
    assert isinstance(decode_token_account("acc", data), Decoded)


def test_skips_are_explicit():
    mint, owner = Pubkey.new_unique(), Pubkey.new_unique()
    assert decode_token_account("a", None) == Skipped("a", "no data")
    assert decode_token_account("a", b"\x00" * 82) == Skipped("a", "unexpected length 82")
    uninitialized = token_account_bytes(mint, owner, 1, state=0)
    assert decode_token_account("a", uninitialized) == Skipped("a", "invalid state 0")


def test_decode_many_reports_missing_accounts():
    key, absent, unknown = Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique()
    data = token_account_bytes(Pubkey.new_unique(), Pubkey.new_unique(), 9)
    snapshots = {
        str(key): AccountSnapshot(key, data, Pubkey.default(), 5),
        str(absent): AccountSnapshot.absent(absent, 5),
    }
    results = decode_token_accounts([str(key), str(absent), str(unknown)], snapshots)
    assert results[str(key)].value.amount == 9
    assert results[str(absent)] == Skipped(str(absent), "account not found")
    assert results[str(unknown)] == Skipped(str(unknown), "account not found")

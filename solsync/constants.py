"""Protocol constants shared across the package."""

from __future__ import annotations

from solders.pubkey import Pubkey

TOKEN_PROGRAM_ID: Pubkey = Pubkey.from_string(
    "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
)
MEMO_PROGRAM_ID: Pubkey = Pubkey.from_string(
    "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr"
)

PUBKEY_LENGTH = 32

# Maximum size of a serialized transaction (IPv6 MTU minus headers).
MAX_TX_LENGTH = 1232
# Headroom kept below MAX_TX_LENGTH when packing instructions.
TX_SIZE_MARGIN = 32

# SPL token accounts have a fixed 165 byte layout.
SPL_TOKEN_ACCOUNT_LENGTH = 165

# ``getMultipleAccounts`` accepts at most 100 keys; stay one below.
MULTIPLE_ACCOUNTS_CHUNK = 99

# Target name of the unfiltered ``logsSubscribe`` feed.
LOGS_ALL = "all"

# Placeholder blockhash used when only the serialized size matters.
DUMMY_BLOCKHASH = "FnLUYsGmNt5LUJTjeryn7TcmsD4585k3zBb1ETwbqfoJ"

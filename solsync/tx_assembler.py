"""Build, pack, simulate and send v0 transactions.

Packing is greedy and order preserving: instruction groups are appended to a
candidate message until its serialized size would exceed
``max_tx_size - size_margin``, then the batch is closed and the overflowing
group opens the next one.  Groups are never split.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from .blockhash_pool import ValidityTokenPool
from .client import LedgerClient
from .config import Settings
from .constants import DUMMY_BLOCKHASH, MAX_TX_LENGTH, TX_SIZE_MARGIN
from .errors import PackError, TokenUnavailableError
from .keys import to_key
from .logging_utils import serialize_for_log
from .models import BalanceDelta, Decoded, SimulationResult, Skipped, ValidityToken
from .spl_token import decode_token_account, decode_token_accounts

logger = logging.getLogger(__name__)

TokenLike = Union[ValidityToken, str, Hash]
LookupTables = Optional[Sequence[AddressLookupTableAccount]]


def extract_error_code(err: Any) -> Union[str, int, None]:
    """Reduce a JSON-RPC transaction error to a short code.

    ``{"InstructionError": [0, {"Custom": 6001}]}`` gives ``6001`` and
    ``{"InstructionError": [1, "InvalidAccountData"]}`` gives
    ``"InvalidAccountData"``.  Other errors give their variant name.
    """

    if err is None:
        return None
    if isinstance(err, str):
        return err
    if isinstance(err, dict):
        ix_error = err.get("InstructionError")
        if isinstance(ix_error, (list, tuple)) and len(ix_error) >= 2:
            fault = ix_error[1]
            if isinstance(fault, str):
                return fault
            if isinstance(fault, dict):
                if "Custom" in fault:
                    return int(fault["Custom"])
                return next(iter(fault), None)
        return next(iter(err), None)
    return str(err)


def _blockhash(token: TokenLike) -> Hash:
    if isinstance(token, Hash):
        return token
    if isinstance(token, ValidityToken):
        return Hash.from_string(token.blockhash)
    return Hash.from_string(str(token))


class TransactionAssembler:
    def __init__(
        self,
        client: LedgerClient,
        pool: Optional[ValidityTokenPool] = None,
        *,
        max_tx_size: int = MAX_TX_LENGTH,
        size_margin: int = TX_SIZE_MARGIN,
        skip_preflight: bool = True,
        send_max_retries: int = 3,
    ) -> None:
        self.client = client
        self.pool = pool
        self.max_tx_size = max_tx_size
        self.size_margin = size_margin
        self.skip_preflight = skip_preflight
        self.send_max_retries = send_max_retries

    @classmethod
    def from_settings(
        cls, client: LedgerClient, pool: Optional[ValidityTokenPool], settings: Settings
    ) -> "TransactionAssembler":
        return cls(
            client,
            pool,
            skip_preflight=settings.skip_preflight,
            send_max_retries=settings.send_max_retries,
        )

    @property
    def size_limit(self) -> int:
        return self.max_tx_size - self.size_margin

    def fits(self, size: Optional[int]) -> bool:
        return size is not None and size <= self.size_limit

    # ------------------------------------------------------------------
    # compilation
    # ------------------------------------------------------------------
    async def _resolve_token(self, token: Optional[TokenLike], peek: bool) -> Hash:
        if token is not None:
            return _blockhash(token)
        if self.pool is None:
            raise TokenUnavailableError("no blockhash supplied and no token pool configured")
        fresh = await (self.pool.peek() if peek else self.pool.pop())
        if fresh is None:
            raise TokenUnavailableError("token pool could not provide a blockhash")
        return _blockhash(fresh)

    @staticmethod
    def _populate(message: MessageV0) -> VersionedTransaction:
        signatures = [Signature.default()] * message.header.num_required_signatures
        return VersionedTransaction.populate(message, signatures)

    def _compile(
        self,
        payer: Pubkey,
        instructions: Sequence[Instruction],
        blockhash: Hash,
        lookup_tables: LookupTables,
    ) -> Tuple[Optional[MessageV0], Optional[int]]:
        try:
            message = MessageV0.try_compile(payer, list(instructions), list(lookup_tables or []), blockhash)
            size = len(bytes(self._populate(message)))
        except Exception as exc:
            logger.debug("Cannot serialize %d ixs: %s", len(instructions), exc)
            return None, None
        return message, size

    def serialized_size(
        self,
        fee_payer: Any,
        instructions: Sequence[Instruction],
        lookup_tables: LookupTables = None,
        blockhash: TokenLike = DUMMY_BLOCKHASH,
    ) -> Optional[int]:
        """Signed wire size of a transaction holding ``instructions``, or ``None``."""

        _, size = self._compile(to_key(fee_payer), instructions, _blockhash(blockhash), lookup_tables)
        return size

    async def assemble(
        self,
        fee_payer: Any,
        instructions: Sequence[Instruction],
        token: Optional[TokenLike] = None,
        lookup_tables: LookupTables = None,
        peek: bool = True,
    ) -> VersionedTransaction:
        """Compile exactly one transaction; the caller is responsible for its size."""

        payer = to_key(fee_payer)
        blockhash = await self._resolve_token(token, peek)
        message = MessageV0.try_compile(payer, list(instructions), list(lookup_tables or []), blockhash)
        return self._populate(message)

    async def pack(
        self,
        fee_payer: Any,
        groups: Iterable[Sequence[Instruction]],
        token: Optional[TokenLike] = None,
        lookup_tables: LookupTables = None,
        peek: bool = True,
    ) -> List[VersionedTransaction]:
        """Pack instruction groups into as few transactions as possible.

        Raises :class:`PackError` when a group does not fit into an otherwise
        empty transaction.
        """

        payer = to_key(fee_payer)
        groups = [list(group) for group in groups]
        if not any(groups):
            return []
        blockhash = await self._resolve_token(token, peek)

        results: List[VersionedTransaction] = []
        batch: List[Instruction] = []
        batch_message: Optional[MessageV0] = None

        for index, group in enumerate(groups):
            if not group:
                continue
            candidate = batch + group
            message, size = self._compile(payer, candidate, blockhash, lookup_tables)
            if message is not None and self.fits(size):
                batch, batch_message = candidate, message
                logger.debug("Serialization to %d bytes ok, trying to pack more than %d ixs", size, len(batch))
                continue

            if batch_message is not None:
                logger.debug("Closing transaction with %d ixs", len(batch))
                results.append(self._populate(batch_message))
                message, size = self._compile(payer, group, blockhash, lookup_tables)
            if message is None or not self.fits(size):
                raise PackError(
                    f"instruction group {index} ({len(group)} ixs) does not fit into a single transaction",
                    group_index=index,
                    size=size,
                )
            batch, batch_message = group, message

        if batch_message is not None:
            results.append(self._populate(batch_message))
        logger.info("Done packing %d groups into %d txs", len(groups), len(results))
        return results

    # ------------------------------------------------------------------
    # simulation
    # ------------------------------------------------------------------
    def writable_accounts(self, tx: Any, lookup_tables: LookupTables = None) -> List[Pubkey]:
        """Accounts ``tx`` may write, including lookup-table expansions."""

        message = getattr(tx, "message", tx)
        header = message.header
        keys = list(message.account_keys)
        signed = header.num_required_signatures
        writable_signed = signed - header.num_readonly_signed_accounts
        writable_unsigned_end = len(keys) - header.num_readonly_unsigned_accounts

        writable = [
            key
            for index, key in enumerate(keys)
            if index < writable_signed or signed <= index < writable_unsigned_end
        ]

        tables = {str(table.key): table for table in lookup_tables or []}
        for lookup in getattr(message, "address_table_lookups", None) or []:
            table = tables.get(str(lookup.account_key))
            if table is None:
                logger.warning("Lookup table %s not provided, writable accounts incomplete", lookup.account_key)
                continue
            addresses = list(table.addresses)
            for index in lookup.writable_indexes:
                if index < len(addresses):
                    writable.append(addresses[index])

        seen: Dict[str, Pubkey] = {}
        for key in writable:
            seen.setdefault(str(key), key)
        return list(seen.values())

    async def simulate(
        self,
        tx: VersionedTransaction,
        include_balances: bool = True,
        lookup_tables: LookupTables = None,
    ) -> SimulationResult:
        """Simulate ``tx`` and diff token balances of its writable accounts.

        Pre balances are read straight from the client.  A delta is produced
        only where both the pre and post state decode as token accounts;
        every other writable account is reported in ``skipped``.
        """

        writable = self.writable_accounts(tx, lookup_tables) if include_balances else []
        keys = [str(key) for key in writable]

        pre: Dict[str, Any] = {}
        if writable:
            try:
                snapshots = await self.client.get_multiple_accounts(writable)
            except Exception as exc:
                logger.warning("Pre-simulation balance fetch failed: %s", exc)
                snapshots = {}
            pre = decode_token_accounts(keys, snapshots)

        simulated = await self.client.simulate_transaction(tx, writable)
        result = SimulationResult(
            err=simulated.err,
            logs=list(simulated.logs),
            units_consumed=simulated.units_consumed,
        )

        for index, ks in enumerate(keys):
            data = simulated.accounts[index] if index < len(simulated.accounts) else None
            post = decode_token_account(ks, data)
            if isinstance(post, Skipped):
                result.skipped.append(post)
                continue
            before = pre.get(ks)
            if not isinstance(before, Decoded):
                reason = before.reason if isinstance(before, Skipped) else "missing"
                result.skipped.append(Skipped(ks, f"pre-balance {reason}"))
                continue
            result.changes[ks] = BalanceDelta(
                account=ks,
                mint=str(post.value.mint),
                owner=str(post.value.owner),
                pre=before.value.amount,
                post=post.value.amount,
            )

        if result.err is not None:
            result.error_code = extract_error_code(result.err)
            logger.info("Simulation failed with %s: %s", result.error_code, serialize_for_log(result.err))
        else:
            logger.debug(
                "Simulation ok: %d changes, %d skipped, %s units",
                len(result.changes),
                len(result.skipped),
                result.units_consumed,
            )
        return result

    # ------------------------------------------------------------------
    # submission
    # ------------------------------------------------------------------
    @staticmethod
    def sign(tx: VersionedTransaction, signers: Sequence[Keypair]) -> VersionedTransaction:
        """Re-sign the message of ``tx`` with real keypairs."""

        return VersionedTransaction(tx.message, list(signers))

    async def send(self, tx: VersionedTransaction, skip_preflight: Optional[bool] = None) -> str:
        raw = bytes(tx)
        signature = await self.client.send_raw_transaction(
            raw,
            skip_preflight=self.skip_preflight if skip_preflight is None else skip_preflight,
            max_retries=self.send_max_retries,
        )
        logger.info("Sent transaction %s (%d bytes)", signature, len(raw))
        return signature

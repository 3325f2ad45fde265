"""
Remote ledger gateway.

The treasury contract and the USDC token are reached through `LedgerGateway`.
Issuing a call returns a handle straight away; `await_finality` resolves the
handle to a `Receipt` or a `Failure` once the outcome is final.

`InMemoryLedgerGateway` implements the same contract against an `InMemoryChain`
so the whole client can run without a node.
"""

import asyncio
import hashlib
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Union

from .models import Failure, OperationKind, Receipt
from .units import Identity, MinorUnits, canonical_identity, is_bytes32_hex

log = logging.getLogger("poolparty.gateway")

DEFAULT_TREASURY_ADDRESS = "0x" + "7e" * 20
DEFAULT_USDC_ADDRESS = "0x" + "0c" * 20

FinalityResult = Union[Receipt, Failure]


class GatewayError(Exception):
    """A call could not be submitted (rejected signature, transport error)."""


class SignatureRejected(GatewayError):
    pass


class LedgerGateway(Protocol):
    async def read_balance(self) -> MinorUnits: ...

    async def approve_spend(self, spender: Identity, amount: MinorUnits) -> str: ...

    async def deposit(self, amount: MinorUnits) -> str: ...

    async def check_in(self, event_id: int, code: str, salt: str) -> str: ...

    async def await_finality(self, handle: str) -> FinalityResult: ...


async def await_finality_with_timeout(
    gateway: LedgerGateway, handle: str, timeout_s: Optional[float]
) -> FinalityResult:
    try:
        return await asyncio.wait_for(gateway.await_finality(handle), timeout=timeout_s)
    except asyncio.TimeoutError:
        log.error("finality timeout for %s after %ss", handle, timeout_s)
        return Failure(message="timeout")
    except GatewayError as e:
        return Failure(message=str(e))
    except Exception as e:
        log.exception("finality for %s raised", handle)
        return Failure(message=str(e))


def attendance_commitment(code: str, salt: str) -> str:
    if not is_bytes32_hex(salt):
        raise ValueError(f"salt must be a 0x-prefixed 32-byte hex string, got {salt!r}")
    digest = hashlib.sha3_256(code.encode("utf-8") + bytes.fromhex(salt[2:])).hexdigest()
    return "0x" + digest


def _default_signer(identity: Identity) -> Callable[[bytes], bytes]:
    def sign(payload: bytes) -> bytes:
        return hashlib.sha3_256(identity.encode("utf-8") + payload).digest()
    return sign


@dataclass
class Wallet:
    identity: Identity
    sign: Optional[Callable[[bytes], bytes]] = None

    def __post_init__(self):
        self.identity = canonical_identity(self.identity)
        if self.sign is None:
            self.sign = _default_signer(self.identity)

    @property
    def is_connected(self) -> bool:
        return bool(self.identity)


@dataclass
class ChainEvent:
    id: int
    commitment: str
    attendees: set = field(default_factory=set)


@dataclass
class PendingTx:
    handle: str
    kind: OperationKind
    sender: Identity
    args: tuple
    forced_failure: Optional[str] = None


class InMemoryChain:
    """Token balances, allowances and treasury events kept in process."""

    def __init__(
        self,
        treasury_address: Identity = DEFAULT_TREASURY_ADDRESS,
        token_address: Identity = DEFAULT_USDC_ADDRESS,
    ):
        self.treasury_address = canonical_identity(treasury_address)
        self.token_address = canonical_identity(token_address)
        self.token_balances: dict[Identity, MinorUnits] = {}
        self.allowances: dict[tuple[Identity, Identity], MinorUnits] = {}
        self.members: set[Identity] = set()
        self.events: dict[int, ChainEvent] = {}
        self.block_number = 0
        self._nonce = 0

    def mint(self, owner: Identity, amount: MinorUnits) -> None:
        owner = canonical_identity(owner)
        self.token_balances[owner] = self.token_balances.get(owner, 0) + amount

    def add_member(self, identity: Identity) -> None:
        self.members.add(canonical_identity(identity))

    def create_event(self, event_id: int, code: str, salt: str) -> ChainEvent:
        event = ChainEvent(id=event_id, commitment=attendance_commitment(code, salt))
        self.events[event_id] = event
        return event

    def balance_of(self, owner: Identity) -> MinorUnits:
        return self.token_balances.get(canonical_identity(owner), 0)

    @property
    def treasury_balance(self) -> MinorUnits:
        return self.balance_of(self.treasury_address)

    def next_handle(self, kind: OperationKind, sender: Identity) -> str:
        self._nonce += 1
        seed = f"{self._nonce}:{kind.value}:{sender}".encode("utf-8")
        return "0x" + hashlib.sha3_256(seed).hexdigest()

    def apply(self, tx: PendingTx) -> FinalityResult:
        if tx.forced_failure is not None:
            return Failure(message=tx.forced_failure)
        try:
            if tx.kind == OperationKind.APPROVE:
                spender, amount = tx.args
                self.allowances[(tx.sender, spender)] = amount
                log.debug("%s approved %s to spend %s of %s", tx.sender, spender, amount, self.token_address)
            elif tx.kind == OperationKind.DEPOSIT:
                self._deposit(tx.sender, tx.args[0])
            elif tx.kind == OperationKind.CHECK_IN:
                self._check_in(tx.sender, *tx.args)
        except ValueError as e:
            return Failure(message=str(e))
        self.block_number += 1
        return Receipt(handle=tx.handle, block_number=self.block_number)

    def _deposit(self, sender: Identity, amount: MinorUnits) -> None:
        key = (sender, self.treasury_address)
        allowance = self.allowances.get(key, 0)
        if allowance < amount:
            raise ValueError("insufficient allowance")
        if self.balance_of(sender) < amount:
            raise ValueError("transfer amount exceeds balance")
        self.allowances[key] = allowance - amount
        self.token_balances[sender] -= amount
        self.mint(self.treasury_address, amount)

    def _check_in(self, sender: Identity, event_id: int, code: str, salt: str) -> None:
        event = self.events.get(event_id)
        if event is None:
            raise ValueError("unknown event")
        if sender not in self.members:
            raise ValueError("not a member")
        if attendance_commitment(code, salt) != event.commitment:
            raise ValueError("invalid attendance code")
        if sender in event.attendees:
            raise ValueError("already checked in")
        event.attendees.add(sender)


class InMemoryLedgerGateway:
    """Gateway bound to one wallet, backed by an `InMemoryChain`."""

    def __init__(
        self,
        chain: InMemoryChain,
        wallet: Wallet,
        finality_delay_s: float = 0.0,
    ):
        self.chain = chain
        self.wallet = wallet
        self.finality_delay_s = finality_delay_s
        self.calls: Counter = Counter()
        self._pending: dict[str, PendingTx] = {}
        self._failures: dict[OperationKind, str] = {}

    @property
    def caller(self) -> Identity:
        return self.wallet.identity

    def fail_next(self, kind: OperationKind, message: str = "") -> None:
        """Make the next operation of `kind` resolve as a failure with `message`."""
        self._failures[kind] = message

    async def read_balance(self) -> MinorUnits:
        self.calls["read_balance"] += 1
        return self.chain.treasury_balance

    async def approve_spend(self, spender: Identity, amount: MinorUnits) -> str:
        self.calls["approve_spend"] += 1
        return self._submit(OperationKind.APPROVE, (canonical_identity(spender), amount))

    async def deposit(self, amount: MinorUnits) -> str:
        self.calls["deposit"] += 1
        return self._submit(OperationKind.DEPOSIT, (amount,))

    async def check_in(self, event_id: int, code: str, salt: str) -> str:
        self.calls["check_in"] += 1
        return self._submit(OperationKind.CHECK_IN, (event_id, code, salt))

    async def await_finality(self, handle: str) -> FinalityResult:
        self.calls["await_finality"] += 1
        tx = self._pending.pop(handle, None)
        if tx is None:
            raise GatewayError(f"unknown operation handle {handle}")
        if self.finality_delay_s:
            await asyncio.sleep(self.finality_delay_s)
        result = self.chain.apply(tx)
        if isinstance(result, Failure):
            log.info("%s %s failed: %s", tx.kind.value, handle, result.message or "<no message>")
        return result

    def _submit(self, kind: OperationKind, args: tuple) -> str:
        payload = repr((kind.value, args)).encode("utf-8")
        try:
            self.wallet.sign(payload)
        except SignatureRejected:
            raise
        except Exception as e:
            raise GatewayError(str(e)) from e
        handle = self.chain.next_handle(kind, self.caller)
        self._pending[handle] = PendingTx(
            handle=handle, kind=kind, sender=self.caller, args=args,
            forced_failure=self._failures.pop(kind, None),
        )
        log.debug("submitted %s as %s", kind.value, handle)
        return handle

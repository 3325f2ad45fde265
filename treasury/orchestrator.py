"""
Deposit orchestration.

A deposit is two dependent ledger operations: approve the treasury to spend
USDC, then call the treasury deposit. `DepositOrchestrator` runs them strictly
in order and exposes the progress as a `DepositState` that callers poll via
`snapshot()`:

    idle -> approving -> depositing -> success
                 \\            \\
                  +-> error    +-> error

The balance shown after a successful deposit is always re-read from the
ledger; it is never incremented locally. Between deposits the balance is
re-read at most once per `balance_refresh_interval_s` via `refresh_if_stale()`.
"""

import logging
import time
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Union

from .gateway import GatewayError, LedgerGateway, await_finality_with_timeout
from .models import (
    DepositOutcome,
    DepositState,
    DepositStatus,
    ErrorKind,
    Failure,
    Operation,
    OperationKind,
    Receipt,
)
from .service import ClubServiceError, InputRejectedError, parse_amount, require_connected
from .units import Identity, canonical_identity, explorer_url, format_display, short_hash

log = logging.getLogger("poolparty.deposit")

DEPOSIT_FALLBACK_MESSAGE = "Transaction failed or was rejected."
CANCELLED_MESSAGE = "Deposit was cancelled before it completed."
APPROVING_MESSAGE = "1/2: Approving USDC spend…"
DEPOSITING_MESSAGE = "2/2: Depositing into PoolParty treasury…"
SUCCESS_MESSAGE = "Deposit completed! Refreshing balance…"


class DepositOrchestrator:
    def __init__(
        self,
        gateway: LedgerGateway,
        treasury_address: Identity,
        finality_timeout_s: Optional[float] = 60.0,
        explorer_tx_url: Optional[str] = None,
        balance_refresh_interval_s: float = 15.0,
    ):
        self.gateway = gateway
        self.treasury_address = canonical_identity(treasury_address)
        self.finality_timeout_s = finality_timeout_s
        self.explorer_tx_url = explorer_tx_url
        self.balance_refresh_interval_s = balance_refresh_interval_s

        self.state = DepositState.IDLE
        self.status_message: Optional[str] = None
        self.last_receipt: Optional[Receipt] = None
        self.last_error: Optional[str] = None
        self.balance: Optional[int] = None
        self.balance_error: Optional[str] = None
        # monotonic time of the last balance read attempt
        self.balance_read_at: Optional[float] = None
        self.operations: list[Operation] = []

    @property
    def is_busy(self) -> bool:
        return self.state in (DepositState.APPROVING, DepositState.DEPOSITING)

    async def deposit(self, amount: Union[str, Decimal], actor: Optional[Identity]) -> DepositOutcome:
        if self.is_busy:
            log.warning("deposit rejected: sequence already %s", self.state.value)
            return DepositOutcome(
                ok=False, state=self.state, error_kind=ErrorKind.BUSY,
                message="A deposit is already in progress",
            )

        try:
            minor = self._validate(amount, actor)
        except ClubServiceError as e:
            log.warning("deposit rejected: %s", e)
            return DepositOutcome(ok=False, state=self.state, error_kind=e.kind, message=str(e))

        self.last_receipt = None
        self.last_error = None

        try:
            return await self._run_sequence(minor)
        except Exception as e:
            if not self.is_busy:
                raise
            log.exception("deposit sequence raised during %s", self.state.value)
            return self._fail(Failure(message=str(e)), minor)
        except BaseException:
            # cancellation must not leave the sequence stuck in a busy state
            if self.is_busy:
                self._fail(Failure(message=CANCELLED_MESSAGE), minor)
            raise

    async def refresh_balance(self) -> Optional[int]:
        self.balance_read_at = time.monotonic()
        try:
            self.balance = await self.gateway.read_balance()
            self.balance_error = None
        except Exception as e:
            log.error("Error reading treasury balance: %s", e)
            self.balance_error = str(e) or "Error reading on-chain contract balance."
        return self.balance

    async def refresh_if_stale(self, max_age_s: Optional[float] = None) -> Optional[int]:
        """Re-read the balance if it was never read or is older than `max_age_s`."""
        if max_age_s is None:
            max_age_s = self.balance_refresh_interval_s
        if self.balance_read_at is None or time.monotonic() - self.balance_read_at >= max_age_s:
            await self.refresh_balance()
        return self.balance

    def snapshot(self) -> DepositStatus:
        receipt_url = None
        if self.last_receipt and self.explorer_tx_url:
            receipt_url = explorer_url(self.explorer_tx_url, self.last_receipt.handle)
        return DepositStatus(
            state=self.state,
            status_message=self.status_message,
            balance=self.balance,
            balance_display=format_display(self.balance) if self.balance is not None else None,
            balance_error=self.balance_error,
            last_receipt=self.last_receipt,
            last_receipt_short=short_hash(self.last_receipt.handle) if self.last_receipt else None,
            explorer_url=receipt_url,
            last_error=self.last_error,
        )

    def _validate(self, amount: Union[str, Decimal], actor: Optional[Identity]) -> int:
        identity = require_connected(actor)
        caller = canonical_identity(getattr(self.gateway, "caller", None))
        if caller and caller != identity:
            raise InputRejectedError(f"{identity} is not the connected wallet")
        if amount is None or (isinstance(amount, str) and not amount.strip()):
            raise InputRejectedError("Enter an amount to deposit")
        minor = parse_amount(amount)
        if minor <= 0:
            raise InputRejectedError("Deposit amount must be positive")
        return minor

    async def _run_sequence(self, minor: int) -> DepositOutcome:
        self._transition(DepositState.APPROVING, APPROVING_MESSAGE)
        result = await self._run_step(
            OperationKind.APPROVE, self.gateway.approve_spend, self.treasury_address, minor
        )
        if isinstance(result, Failure):
            return self._fail(result, minor)

        self._transition(DepositState.DEPOSITING, DEPOSITING_MESSAGE)
        result = await self._run_step(OperationKind.DEPOSIT, self.gateway.deposit, minor)
        if isinstance(result, Failure):
            return self._fail(result, minor)

        self.last_receipt = result
        self._transition(DepositState.SUCCESS, SUCCESS_MESSAGE)
        await self.refresh_balance()
        return DepositOutcome(
            ok=True, state=self.state, amount=minor, receipt=result,
            balance=self.balance, message=SUCCESS_MESSAGE,
        )

    async def _run_step(
        self,
        kind: OperationKind,
        issue: Callable[..., Awaitable[str]],
        *args,
    ) -> Union[Receipt, Failure]:
        try:
            handle = await issue(*args)
        except GatewayError as e:
            return Failure(message=str(e))
        except Exception as e:
            log.exception("%s could not be submitted", kind.value)
            return Failure(message=str(e))

        operation = Operation(handle=handle, kind=kind)
        self.operations.append(operation)
        result = await await_finality_with_timeout(self.gateway, handle, self.finality_timeout_s)
        operation.resolve(result)
        log.info("%s %s %s", kind.value, handle, operation.state.value)
        return result

    def _transition(self, state: DepositState, message: Optional[str]) -> None:
        log.info("deposit %s -> %s", self.state.value, state.value)
        self.state = state
        self.status_message = message

    def _fail(self, failure: Failure, minor: int) -> DepositOutcome:
        message = failure.message or DEPOSIT_FALLBACK_MESSAGE
        log.error("Deposit error during %s: %s", self.state.value, message)
        self.last_error = message
        self._transition(DepositState.ERROR, message)
        return DepositOutcome(
            ok=False, state=self.state, amount=minor,
            error_kind=ErrorKind.REMOTE_OPERATION_FAILED, message=message,
        )

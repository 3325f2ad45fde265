"""
PoolParty Club Treasury Client

This package provides:
- USDC unit conversion (6-decimal minor units) and display helpers
- A two-step approve-then-deposit orchestrator with an explicit state machine
- Attendance check-ins against a local roster or the on-chain treasury
- A local proposal ledger with one vote per member per proposal
- A pluggable ledger gateway with an in-memory implementation
"""

from .models import (
    DepositState,
    ErrorKind,
    OperationKind,
    OperationState,
    Operation,
    Receipt,
    Failure,
    Proposal,
    AttendanceSession,
    DepositOutcome,
    CheckInOutcome,
    ProposalOutcome,
    VoteOutcome,
)
from .gateway import (
    LedgerGateway,
    GatewayError,
    SignatureRejected,
    Wallet,
    InMemoryChain,
    InMemoryLedgerGateway,
)
from .orchestrator import DepositOrchestrator
from .service import ClubStorage, ProposalLedger, AttendanceVerifier
from .units import to_minor_units, from_minor_units, format_display

__all__ = [
    "DepositState",
    "ErrorKind",
    "OperationKind",
    "OperationState",
    "Operation",
    "Receipt",
    "Failure",
    "Proposal",
    "AttendanceSession",
    "DepositOutcome",
    "CheckInOutcome",
    "ProposalOutcome",
    "VoteOutcome",
    "LedgerGateway",
    "GatewayError",
    "SignatureRejected",
    "Wallet",
    "InMemoryChain",
    "InMemoryLedgerGateway",
    "DepositOrchestrator",
    "ClubStorage",
    "ProposalLedger",
    "AttendanceVerifier",
    "to_minor_units",
    "from_minor_units",
    "format_display",
]

from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, computed_field

from .units import short_identity


class DepositState(str, Enum):
    IDLE = "idle"
    APPROVING = "approving"
    DEPOSITING = "depositing"
    SUCCESS = "success"
    ERROR = "error"


class OperationKind(str, Enum):
    APPROVE = "Approve"
    DEPOSIT = "Deposit"
    CHECK_IN = "CheckIn"


class OperationState(str, Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    FAILED = "Failed"


class ErrorKind(str, Enum):
    INPUT_REJECTED = "InputRejected"
    INVALID_CODE = "InvalidCode"
    ALREADY_CHECKED_IN = "AlreadyCheckedIn"
    ALREADY_VOTED = "AlreadyVoted"
    NOT_FOUND = "NotFound"
    PROPOSAL_CLOSED = "ProposalClosed"
    BUSY = "Busy"
    REMOTE_UNAVAILABLE = "RemoteUnavailable"
    REMOTE_OPERATION_FAILED = "RemoteOperationFailed"


class Receipt(BaseModel):
    handle: str
    block_number: int = 0

    model_config = ConfigDict(frozen=True)


class Failure(BaseModel):
    message: str = ""

    model_config = ConfigDict(frozen=True)


class Operation(BaseModel):
    handle: str
    kind: OperationKind
    state: OperationState = OperationState.PENDING
    error: Optional[str] = None
    receipt: Optional[Receipt] = None

    def resolve(self, result: "Receipt | Failure") -> None:
        if self.state != OperationState.PENDING:
            raise ValueError(f"Operation {self.handle} already resolved as {self.state.value}")
        if isinstance(result, Receipt):
            self.state = OperationState.CONFIRMED
            self.receipt = result
        else:
            self.state = OperationState.FAILED
            self.error = result.message


class Proposal(BaseModel):
    id: int = Field(..., gt=0)
    title: str = Field(..., min_length=1)
    description: str = ""
    amount: int = Field(..., ge=0, description="USDC minor units")
    yes_count: int = Field(default=0, ge=0)
    no_count: int = Field(default=0, ge=0)
    deadline: str = ""
    executed: bool = False

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def total_votes(self) -> int:
        return self.yes_count + self.no_count

    @computed_field
    @property
    def support_percentage(self) -> int:
        if self.total_votes == 0:
            return 0
        ratio = Decimal(100 * self.yes_count) / Decimal(self.total_votes)
        return int(ratio.quantize(Decimal(1), rounding=ROUND_HALF_UP))

    @computed_field
    @property
    def status(self) -> str:
        return "Executed" if self.executed else "Open"

    def can_vote(self) -> bool:
        return not self.executed


class AttendanceSession(BaseModel):
    id: int = Field(..., gt=0)
    label: str
    credential: str = Field(..., repr=False)
    attendees: list[str] = Field(default_factory=list)

    def has_attendee(self, identity: str) -> bool:
        return identity in self.attendees


class SessionSnapshot(BaseModel):
    id: int
    label: str
    attendees: list[str]
    attendee_count: int

    @computed_field
    @property
    def attendees_short(self) -> list[str]:
        return [short_identity(a) for a in self.attendees]

    @classmethod
    def from_session(cls, session: AttendanceSession) -> "SessionSnapshot":
        return cls(
            id=session.id, label=session.label,
            attendees=list(session.attendees), attendee_count=len(session.attendees),
        )


class Outcome(BaseModel):
    ok: bool
    error_kind: Optional[ErrorKind] = None
    message: str = ""


class DepositOutcome(Outcome):
    state: DepositState
    amount: Optional[int] = None
    receipt: Optional[Receipt] = None
    balance: Optional[int] = None


class CheckInOutcome(Outcome):
    session_id: Optional[int] = None
    attendee: Optional[str] = None
    receipt: Optional[Receipt] = None


class ProposalOutcome(Outcome):
    proposal: Optional[Proposal] = None


class VoteOutcome(Outcome):
    proposal: Optional[Proposal] = None


class DepositStatus(BaseModel):
    state: DepositState
    status_message: Optional[str] = None
    balance: Optional[int] = None
    balance_display: Optional[str] = None
    balance_error: Optional[str] = None
    last_receipt: Optional[Receipt] = None
    last_receipt_short: Optional[str] = None
    explorer_url: Optional[str] = None
    last_error: Optional[str] = None


class DepositRequest(BaseModel):
    amount: str = Field(..., description="Decimal USDC amount, at most 6 fractional digits")

    model_config = ConfigDict(json_schema_extra={"example": {"amount": "25.50"}})


class CreateProposalRequest(BaseModel):
    title: str
    description: str = ""
    amount: str
    deadline: str = ""

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "title": "Snacks for demo day",
            "description": "Pizza and drinks for the spring showcase.",
            "amount": "120.00",
            "deadline": "2025-12-20 23:59",
        }
    })


class VoteRequest(BaseModel):
    support: bool


class CheckInRequest(BaseModel):
    code: str


class RemoteCheckInRequest(BaseModel):
    event_id: str
    code: str
    salt: str

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "event_id": "1",
            "code": "MBC-1234",
            "salt": "0x0000000000000000000000000000000000000000000000000000000000000001",
        }
    })

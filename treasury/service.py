import logging
import threading
from decimal import Decimal
from typing import Optional, Union

from .gateway import GatewayError, LedgerGateway, await_finality_with_timeout
from .models import (
    ErrorKind,
    Failure,
    Proposal,
    AttendanceSession,
    SessionSnapshot,
    CheckInOutcome,
    ProposalOutcome,
    VoteOutcome,
)
from .units import (
    Identity,
    InvalidAmountError,
    canonical_identity,
    is_bytes32_hex,
    to_minor_units,
)

log = logging.getLogger("poolparty.proposals")
attendance_log = logging.getLogger("poolparty.attendance")

DEFAULT_SESSION_CREDENTIAL = "MBC-1234"
CHECK_IN_FALLBACK_MESSAGE = "checkIn failed (are you a member, and is the code/salt correct?)."
MISSING_CHECK_IN_FIELDS_MESSAGE = "Please fill in event ID, code, and salt."


class ClubServiceError(Exception):
    kind = ErrorKind.INPUT_REJECTED


class InputRejectedError(ClubServiceError):
    kind = ErrorKind.INPUT_REJECTED


class StateConflictError(ClubServiceError):
    def __init__(self, message: str, kind: ErrorKind):
        super().__init__(message)
        self.kind = kind


class ProposalNotFoundError(StateConflictError):
    def __init__(self, proposal_id: int):
        super().__init__(f"Proposal {proposal_id} not found", ErrorKind.NOT_FOUND)


class SessionNotFoundError(StateConflictError):
    def __init__(self, session_id: int):
        super().__init__(f"Session {session_id} not found", ErrorKind.NOT_FOUND)


def require_connected(actor: Optional[Identity]) -> Identity:
    identity = canonical_identity(actor)
    if not identity:
        raise InputRejectedError("Connect a wallet first")
    return identity


def parse_amount(amount: Union[str, Decimal, int]) -> int:
    try:
        return to_minor_units(amount)
    except InvalidAmountError as e:
        raise InputRejectedError(str(e)) from e


class ClubStorage:
    def __init__(self, seed: bool = True, session_credential: str = DEFAULT_SESSION_CREDENTIAL):
        self.proposals: dict[int, dict] = {}
        self.voters: dict[int, set[Identity]] = {}
        self.sessions: dict[int, dict] = {}
        self.lock = threading.RLock()
        if seed:
            self._seed_data(session_credential)

    def _seed_data(self, session_credential: str):
        self.add_proposal({
            "id": 1, "title": "T-shirts for new members",
            "description": "Buy club t-shirts for active members this semester.",
            "amount": to_minor_units("600"), "yes_count": 8, "no_count": 2,
            "deadline": "2025-12-10 23:59", "executed": False,
        })
        self.add_proposal({
            "id": 2, "title": "Conference Travel Subsidy",
            "description": "Subsidize travel for 3 members to attend ETHGlobal NYC.",
            "amount": to_minor_units("900"), "yes_count": 12, "no_count": 1,
            "deadline": "2025-12-15 23:59", "executed": True,
        })
        self.add_session("Event #1 (on-chain check-in)", session_credential)

    def add_proposal(self, data: Union[dict, Proposal]) -> Proposal:
        proposal = data if isinstance(data, Proposal) else Proposal(**data)
        with self.lock:
            if proposal.id in self.proposals:
                raise ValueError(f"Proposal {proposal.id} already exists")
            self.proposals[proposal.id] = proposal.model_dump(
                exclude={"total_votes", "support_percentage", "status"}
            )
            self.voters[proposal.id] = set()
        return proposal

    def add_session(self, label: str, credential: str) -> AttendanceSession:
        with self.lock:
            session_id = max(self.sessions, default=0) + 1
            session = AttendanceSession(id=session_id, label=label, credential=credential)
            self.sessions[session_id] = session.model_dump()
        return session

    def next_proposal_id(self) -> int:
        return max(self.proposals, default=0) + 1


class ProposalLedger:
    def __init__(self, storage: Optional[ClubStorage] = None):
        self.storage = storage or ClubStorage()

    def create_proposal(
        self,
        title: str,
        description: str,
        amount: Union[str, Decimal, int],
        deadline: str = "",
    ) -> ProposalOutcome:
        title = (title or "").strip()
        try:
            if not title:
                raise InputRejectedError("Proposal title is required")
            minor = parse_amount(amount)
        except InputRejectedError as e:
            log.warning("proposal rejected: %s", e)
            return ProposalOutcome(ok=False, error_kind=e.kind, message=str(e))

        with self.storage.lock:
            proposal_id = self.storage.next_proposal_id()
            proposal = self.storage.add_proposal({
                "id": proposal_id,
                "title": title,
                "description": description or "",
                "amount": minor,
                "deadline": deadline or "",
            })
        log.info("proposal %s created: %r", proposal_id, title)
        return ProposalOutcome(ok=True, proposal=proposal, message="Proposal created successfully")

    def vote(self, proposal_id: int, support: bool, voter: Optional[Identity]) -> VoteOutcome:
        try:
            identity = require_connected(voter)
            with self.storage.lock:
                data = self.storage.proposals.get(proposal_id)
                if data is None:
                    raise ProposalNotFoundError(proposal_id)
                if not Proposal(**data).can_vote():
                    raise StateConflictError(
                        f"Proposal {proposal_id} is executed and closed to voting",
                        ErrorKind.PROPOSAL_CLOSED,
                    )
                voters = self.storage.voters[proposal_id]
                if identity in voters:
                    raise StateConflictError(
                        f"{identity} already voted on proposal {proposal_id}",
                        ErrorKind.ALREADY_VOTED,
                    )
                if support:
                    data["yes_count"] += 1
                else:
                    data["no_count"] += 1
                voters.add(identity)
                proposal = Proposal(**data)
        except ClubServiceError as e:
            log.warning("vote on %s rejected: %s", proposal_id, e)
            return VoteOutcome(ok=False, error_kind=e.kind, message=str(e))

        log.info("vote %s on proposal %s", "yes" if support else "no", proposal_id)
        return VoteOutcome(ok=True, proposal=proposal, message="Vote recorded")

    def get_proposal(self, proposal_id: int) -> Proposal:
        with self.storage.lock:
            data = self.storage.proposals.get(proposal_id)
            if not data:
                raise ProposalNotFoundError(proposal_id)
            return Proposal(**data)

    def list_proposals(self) -> list[Proposal]:
        with self.storage.lock:
            return [Proposal(**self.storage.proposals[pid]) for pid in sorted(self.storage.proposals)]

    def has_voted(self, proposal_id: int, voter: Identity) -> bool:
        with self.storage.lock:
            return canonical_identity(voter) in self.storage.voters.get(proposal_id, set())

    @staticmethod
    def support_percentage(proposal: Proposal) -> int:
        return proposal.support_percentage


class AttendanceVerifier:
    def __init__(
        self,
        storage: Optional[ClubStorage] = None,
        gateway: Optional[LedgerGateway] = None,
        finality_timeout_s: Optional[float] = 60.0,
    ):
        self.storage = storage or ClubStorage()
        self.gateway = gateway
        self.finality_timeout_s = finality_timeout_s

    def check_in(self, session_id: int, submitted_code: str, actor: Optional[Identity]) -> CheckInOutcome:
        try:
            identity = require_connected(actor)
            with self.storage.lock:
                data = self.storage.sessions.get(session_id)
                if data is None:
                    raise SessionNotFoundError(session_id)
                if (submitted_code or "").strip() != data["credential"]:
                    raise StateConflictError("Invalid attendance code", ErrorKind.INVALID_CODE)
                if identity in data["attendees"]:
                    raise StateConflictError(
                        f"{identity} already checked in to session {session_id}",
                        ErrorKind.ALREADY_CHECKED_IN,
                    )
                data["attendees"].append(identity)
        except ClubServiceError as e:
            attendance_log.warning("check-in to session %s rejected: %s", session_id, e)
            return CheckInOutcome(ok=False, error_kind=e.kind, message=str(e), session_id=session_id)

        attendance_log.info("%s checked in to session %s", identity, session_id)
        return CheckInOutcome(
            ok=True, session_id=session_id, attendee=identity, message="Attendance recorded",
        )

    async def check_in_remote(
        self,
        event_id: Union[int, str],
        code: str,
        salt: str,
        actor: Optional[Identity],
    ) -> CheckInOutcome:
        try:
            identity = require_connected(actor)
            parsed_event_id = self._validate_remote_input(event_id, code, salt)
            if self.gateway is None:
                raise StateConflictError(
                    "No remote ledger is configured for check-ins", ErrorKind.REMOTE_UNAVAILABLE
                )
            caller = canonical_identity(getattr(self.gateway, "caller", None))
            if caller and caller != identity:
                raise InputRejectedError(f"{identity} is not the connected wallet")
        except ClubServiceError as e:
            attendance_log.warning("remote check-in rejected: %s", e)
            return CheckInOutcome(ok=False, error_kind=e.kind, message=str(e))

        attendance_log.info("submitting on-chain attendance for event %s", parsed_event_id)
        try:
            handle = await self.gateway.check_in(parsed_event_id, code, salt)
        except GatewayError as e:
            result = Failure(message=str(e))
        except Exception as e:
            attendance_log.exception("checkIn for event %s could not be submitted", parsed_event_id)
            result = Failure(message=str(e))
        else:
            result = await await_finality_with_timeout(self.gateway, handle, self.finality_timeout_s)

        if isinstance(result, Failure):
            message = result.message or CHECK_IN_FALLBACK_MESSAGE
            attendance_log.error("checkIn error for event %s: %s", parsed_event_id, message)
            return CheckInOutcome(
                ok=False, error_kind=ErrorKind.REMOTE_OPERATION_FAILED,
                message=message, session_id=parsed_event_id,
            )

        return CheckInOutcome(
            ok=True, session_id=parsed_event_id, attendee=identity,
            receipt=result, message="Attendance recorded on-chain!",
        )

    def get_session(self, session_id: int) -> SessionSnapshot:
        with self.storage.lock:
            data = self.storage.sessions.get(session_id)
            if not data:
                raise SessionNotFoundError(session_id)
            return SessionSnapshot.from_session(AttendanceSession(**data))

    def list_sessions(self) -> list[SessionSnapshot]:
        with self.storage.lock:
            return [
                SessionSnapshot.from_session(AttendanceSession(**self.storage.sessions[sid]))
                for sid in sorted(self.storage.sessions)
            ]

    def active_session(self) -> Optional[SessionSnapshot]:
        sessions = self.list_sessions()
        return sessions[-1] if sessions else None

    def _validate_remote_input(self, event_id: Union[int, str], code: str, salt: str) -> int:
        if event_id in (None, "") or not code or not salt:
            raise InputRejectedError(MISSING_CHECK_IN_FIELDS_MESSAGE)
        if isinstance(event_id, bool):
            raise InputRejectedError(f"Event ID must be a positive integer, got {event_id!r}")
        if isinstance(event_id, int):
            parsed = event_id
        else:
            text = str(event_id).strip()
            if not (text.isascii() and text.isdigit()):
                raise InputRejectedError(f"Event ID must be a positive integer, got {event_id!r}")
            parsed = int(text)
        if parsed <= 0:
            raise InputRejectedError(f"Event ID must be a positive integer, got {event_id!r}")
        if not is_bytes32_hex(salt):
            raise InputRejectedError("Salt must be a 0x-prefixed 32-byte hex string")
        return parsed

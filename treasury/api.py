import logging
import threading
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, configure_logging, get_settings
from .gateway import InMemoryChain, InMemoryLedgerGateway, LedgerGateway, Wallet
from .models import (
    CheckInOutcome, CheckInRequest, CreateProposalRequest, DepositOutcome,
    DepositRequest, DepositStatus, ErrorKind, Outcome, Proposal,
    ProposalOutcome, RemoteCheckInRequest, SessionSnapshot, VoteOutcome, VoteRequest,
)
from .orchestrator import DepositOrchestrator
from .service import (
    AttendanceVerifier, ClubStorage, ProposalLedger, ProposalNotFoundError, SessionNotFoundError,
)
from .units import Identity, canonical_identity, to_minor_units

log = logging.getLogger("poolparty.api")

ERROR_STATUS = {
    ErrorKind.INPUT_REJECTED: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INVALID_CODE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.ALREADY_CHECKED_IN: status.HTTP_409_CONFLICT,
    ErrorKind.ALREADY_VOTED: status.HTTP_409_CONFLICT,
    ErrorKind.PROPOSAL_CLOSED: status.HTTP_409_CONFLICT,
    ErrorKind.BUSY: status.HTTP_409_CONFLICT,
    ErrorKind.REMOTE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.REMOTE_OPERATION_FAILED: status.HTTP_502_BAD_GATEWAY,
}

GatewayFactory = Callable[[Wallet], LedgerGateway]


class ClubContext:
    """Process-wide wiring: one store, one gateway and orchestrator per wallet.

    Without an explicit `gateway_factory` the context runs against an
    in-memory ledger seeded from settings: the default on-chain event is
    created up front and each wallet is registered as a member, with an
    initial USDC balance, the first time it connects.
    """

    def __init__(
        self,
        settings: Settings,
        storage: Optional[ClubStorage] = None,
        chain: Optional[InMemoryChain] = None,
        gateway_factory: Optional[GatewayFactory] = None,
    ):
        self.settings = settings
        self.storage = storage or ClubStorage(session_credential=settings.default_session_credential)
        self.chain = chain or self._seeded_chain(settings)
        self.gateway_factory = gateway_factory or self._in_memory_gateway
        self.proposals = ProposalLedger(self.storage)
        self.attendance = AttendanceVerifier(self.storage, finality_timeout_s=settings.finality_timeout_s)
        self._gateways: dict[Identity, LedgerGateway] = {}
        self._orchestrators: dict[Identity, DepositOrchestrator] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _seeded_chain(settings: Settings) -> InMemoryChain:
        chain = InMemoryChain(settings.treasury_address, token_address=settings.usdc_address)
        chain.create_event(
            settings.default_event_id, settings.default_session_credential, settings.default_event_salt,
        )
        return chain

    def _in_memory_gateway(self, wallet: Wallet) -> LedgerGateway:
        if self.settings.auto_register_members and wallet.identity not in self.chain.members:
            self.chain.add_member(wallet.identity)
            self.chain.mint(wallet.identity, to_minor_units(self.settings.initial_member_balance))
            log.info("registered %s as a club member", wallet.identity)
        return InMemoryLedgerGateway(self.chain, wallet)

    def gateway_for(self, identity: Identity) -> LedgerGateway:
        with self._lock:
            if identity not in self._gateways:
                self._gateways[identity] = self.gateway_factory(Wallet(identity))
            return self._gateways[identity]

    def orchestrator_for(self, identity: Identity) -> DepositOrchestrator:
        with self._lock:
            if identity not in self._orchestrators:
                self._orchestrators[identity] = DepositOrchestrator(
                    self.gateway_for(identity),
                    self.settings.treasury_address,
                    finality_timeout_s=self.settings.finality_timeout_s,
                    explorer_tx_url=self.settings.explorer_tx_url,
                    balance_refresh_interval_s=self.settings.balance_refresh_interval_s,
                )
            return self._orchestrators[identity]

    def remote_verifier_for(self, identity: Identity) -> AttendanceVerifier:
        return AttendanceVerifier(
            self.storage, self.gateway_for(identity), finality_timeout_s=self.settings.finality_timeout_s,
        )


def get_club(request: Request) -> ClubContext:
    return request.app.state.club


def wallet_address(x_wallet_address: Optional[str] = Header(default=None)) -> Identity:
    identity = canonical_identity(x_wallet_address)
    if not identity:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Connect a wallet first")
    return identity


def raise_for_outcome(outcome: Outcome) -> None:
    if outcome.ok:
        return
    code = ERROR_STATUS.get(outcome.error_kind, status.HTTP_400_BAD_REQUEST)
    raise HTTPException(status_code=code, detail=outcome.message)


def create_app(context: Optional[ClubContext] = None) -> FastAPI:
    settings = context.settings if context else get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="PoolParty Treasury API",
        description="Club treasury deposits, proposal voting and attendance check-ins",
        version="1.0.0",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.club = context or ClubContext(settings)
    log.info("treasury %s on %s", settings.treasury_address, settings.chain_name)

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "poolparty-treasury"}

    @app.get("/network", tags=["System"])
    def network(club: ClubContext = Depends(get_club)):
        return {
            "chain": club.settings.chain_name,
            "treasury_address": club.settings.treasury_address,
            "usdc_address": club.settings.usdc_address,
            "explorer_tx_url": club.settings.explorer_tx_url,
        }

    @app.get("/treasury", response_model=DepositStatus, tags=["Treasury"])
    async def treasury_status(
        identity: Identity = Depends(wallet_address), club: ClubContext = Depends(get_club),
    ) -> DepositStatus:
        orchestrator = club.orchestrator_for(identity)
        await orchestrator.refresh_if_stale()
        return orchestrator.snapshot()

    @app.post("/treasury/balance/refresh", response_model=DepositStatus, tags=["Treasury"])
    async def refresh_balance(
        identity: Identity = Depends(wallet_address), club: ClubContext = Depends(get_club),
    ) -> DepositStatus:
        orchestrator = club.orchestrator_for(identity)
        await orchestrator.refresh_balance()
        return orchestrator.snapshot()

    @app.post("/treasury/deposit", response_model=DepositOutcome, tags=["Treasury"])
    async def deposit(
        request: DepositRequest,
        identity: Identity = Depends(wallet_address),
        club: ClubContext = Depends(get_club),
    ) -> DepositOutcome:
        outcome = await club.orchestrator_for(identity).deposit(request.amount, identity)
        raise_for_outcome(outcome)
        return outcome

    @app.get("/proposals", response_model=list[Proposal], tags=["Proposals"])
    def list_proposals(club: ClubContext = Depends(get_club)) -> list[Proposal]:
        return club.proposals.list_proposals()

    @app.get("/proposals/{proposal_id}", response_model=Proposal, tags=["Proposals"])
    def get_proposal(proposal_id: int, club: ClubContext = Depends(get_club)) -> Proposal:
        try:
            return club.proposals.get_proposal(proposal_id)
        except ProposalNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @app.post(
        "/proposals", response_model=ProposalOutcome,
        status_code=status.HTTP_201_CREATED, tags=["Proposals"],
    )
    def create_proposal(request: CreateProposalRequest, club: ClubContext = Depends(get_club)) -> ProposalOutcome:
        outcome = club.proposals.create_proposal(
            request.title, request.description, request.amount, request.deadline,
        )
        raise_for_outcome(outcome)
        return outcome

    @app.post("/proposals/{proposal_id}/vote", response_model=VoteOutcome, tags=["Proposals"])
    def vote(
        proposal_id: int,
        request: VoteRequest,
        identity: Identity = Depends(wallet_address),
        club: ClubContext = Depends(get_club),
    ) -> VoteOutcome:
        outcome = club.proposals.vote(proposal_id, request.support, identity)
        raise_for_outcome(outcome)
        return outcome

    @app.get("/attendance/sessions", response_model=list[SessionSnapshot], tags=["Attendance"])
    def list_sessions(club: ClubContext = Depends(get_club)) -> list[SessionSnapshot]:
        return club.attendance.list_sessions()

    @app.get("/attendance/sessions/{session_id}", response_model=SessionSnapshot, tags=["Attendance"])
    def get_session(session_id: int, club: ClubContext = Depends(get_club)) -> SessionSnapshot:
        try:
            return club.attendance.get_session(session_id)
        except SessionNotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    @app.post(
        "/attendance/sessions/{session_id}/check-in",
        response_model=CheckInOutcome, tags=["Attendance"],
    )
    def check_in(
        session_id: int,
        request: CheckInRequest,
        identity: Identity = Depends(wallet_address),
        club: ClubContext = Depends(get_club),
    ) -> CheckInOutcome:
        outcome = club.attendance.check_in(session_id, request.code, identity)
        raise_for_outcome(outcome)
        return outcome

    @app.post("/attendance/check-in", response_model=CheckInOutcome, tags=["Attendance"])
    async def check_in_remote(
        request: RemoteCheckInRequest,
        identity: Identity = Depends(wallet_address),
        club: ClubContext = Depends(get_club),
    ) -> CheckInOutcome:
        verifier = club.remote_verifier_for(identity)
        outcome = await verifier.check_in_remote(request.event_id, request.code, request.salt, identity)
        raise_for_outcome(outcome)
        return outcome

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)

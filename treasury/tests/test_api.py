"""
HTTP tests for the treasury API
"""

import threading
import time

import pytest
from fastapi.testclient import TestClient

from treasury.api import ClubContext, create_app
from treasury.config import Settings
from treasury.gateway import InMemoryChain, InMemoryLedgerGateway
from treasury.models import OperationKind


MEMBER = "0x" + "a1" * 20
OTHER = "0x" + "b2" * 20
TREASURY = "0x" + "7e" * 20
SALT = "0x" + "00" * 31 + "01"


@pytest.fixture
def club():
    settings = Settings(treasury_address=TREASURY, default_session_credential="MBC-1234")
    context = ClubContext(settings)
    context.chain.mint(MEMBER, 50_000_000)
    context.chain.add_member(MEMBER)
    context.chain.create_event(1, "spring-social", SALT)
    return context


@pytest.fixture
def client(club):
    return TestClient(create_app(club))


def as_member(address=MEMBER):
    return {"X-Wallet-Address": address}


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy", "service": "poolparty-treasury"}


def test_network(client):
    network = client.get("/network").json()
    assert network["chain"] == "Base Sepolia"
    assert network["treasury_address"] == TREASURY
    assert network["usdc_address"] == "0x" + "0c" * 20


class TestTreasuryEndpoints:
    def test_wallet_header_required(self, client):
        resp = client.get("/treasury")
        assert resp.status_code == 401

    def test_deposit_and_status(self, client):
        resp = client.post("/treasury/deposit", json={"amount": "12.5"}, headers=as_member())
        assert resp.status_code == 200
        body = resp.json()
        assert body["state"] == "success"
        assert body["balance"] == 12_500_000

        status = client.get("/treasury", headers=as_member()).json()
        assert status["balance_display"] == "12.50"
        assert status["explorer_url"].startswith("https://sepolia.basescan.org/tx/0x")

    def test_deposit_bad_amount(self, client):
        resp = client.post("/treasury/deposit", json={"amount": "lots"}, headers=as_member())
        assert resp.status_code == 400

    def test_deposit_remote_failure(self, client, club):
        club.gateway_for(MEMBER).fail_next(OperationKind.APPROVE, "insufficient allowance")
        resp = client.post("/treasury/deposit", json={"amount": "1"}, headers=as_member())
        assert resp.status_code == 502
        assert resp.json()["detail"] == "insufficient allowance"
        assert client.get("/treasury", headers=as_member()).json()["state"] == "error"

    def test_refresh_balance(self, client, club):
        club.chain.mint(TREASURY, 3_000_000)
        resp = client.post("/treasury/balance/refresh", headers=as_member())
        assert resp.json()["balance"] == 3_000_000

    def test_orchestrators_are_per_wallet(self, client):
        client.post("/treasury/deposit", json={"amount": "1"}, headers=as_member())
        assert client.get("/treasury", headers=as_member(OTHER)).json()["state"] == "idle"

    def test_status_refreshes_stale_balance(self, client, club):
        club.chain.mint(TREASURY, 2_000_000)
        assert client.get("/treasury", headers=as_member()).json()["balance"] == 2_000_000

        club.chain.mint(TREASURY, 1_000_000)
        assert client.get("/treasury", headers=as_member()).json()["balance"] == 2_000_000

        orchestrator = club.orchestrator_for(MEMBER)
        orchestrator.balance_read_at -= club.settings.balance_refresh_interval_s + 1
        assert client.get("/treasury", headers=as_member()).json()["balance"] == 3_000_000

    def test_status_short_receipt(self, client):
        client.post("/treasury/deposit", json={"amount": "1"}, headers=as_member())
        status = client.get("/treasury", headers=as_member()).json()
        handle = status["last_receipt"]["handle"]
        assert status["last_receipt_short"] == f"{handle[:10]}…{handle[-6:]}"

    def test_one_orchestrator_per_wallet_across_threads(self, club):
        created = []

        def slow_factory(wallet):
            created.append(wallet.identity)
            time.sleep(0.01)
            return InMemoryLedgerGateway(club.chain, wallet)

        club.gateway_factory = slow_factory
        results = []
        threads = [
            threading.Thread(target=lambda: results.append(club.orchestrator_for(OTHER)))
            for _ in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert created == [OTHER]
        assert len({id(o) for o in results}) == 1


class TestProposalEndpoints:
    def test_list_seeded(self, client):
        proposals = client.get("/proposals").json()
        assert [p["id"] for p in proposals] == [1, 2]
        assert proposals[0]["support_percentage"] == 80
        assert proposals[1]["status"] == "Executed"

    def test_create_and_vote(self, client):
        resp = client.post("/proposals", json={"title": "Snacks", "amount": "40"})
        assert resp.status_code == 201
        proposal_id = resp.json()["proposal"]["id"]
        assert proposal_id == 3

        resp = client.post(f"/proposals/{proposal_id}/vote", json={"support": True}, headers=as_member())
        assert resp.status_code == 200
        assert resp.json()["proposal"]["yes_count"] == 1

        resp = client.post(f"/proposals/{proposal_id}/vote", json={"support": False}, headers=as_member())
        assert resp.status_code == 409

    def test_create_rejects_empty_title(self, client):
        resp = client.post("/proposals", json={"title": "", "amount": "40"})
        assert resp.status_code == 400

    def test_vote_on_executed(self, client):
        resp = client.post("/proposals/2/vote", json={"support": True}, headers=as_member())
        assert resp.status_code == 409

    def test_missing_proposal(self, client):
        assert client.get("/proposals/99").status_code == 404
        resp = client.post("/proposals/99/vote", json={"support": True}, headers=as_member())
        assert resp.status_code == 404


class TestAttendanceEndpoints:
    def test_local_check_in(self, client):
        resp = client.post(
            "/attendance/sessions/1/check-in", json={"code": " MBC-1234 "}, headers=as_member(),
        )
        assert resp.status_code == 200
        session = client.get("/attendance/sessions/1").json()
        assert session["attendees"] == [MEMBER]
        assert "credential" not in session

        resp = client.post(
            "/attendance/sessions/1/check-in", json={"code": "MBC-1234"}, headers=as_member(),
        )
        assert resp.status_code == 409

    def test_local_check_in_wrong_code(self, client):
        resp = client.post(
            "/attendance/sessions/1/check-in", json={"code": "mbc-1234"}, headers=as_member(),
        )
        assert resp.status_code == 400

    def test_unknown_session(self, client):
        assert client.get("/attendance/sessions/9").status_code == 404

    def test_remote_check_in(self, client):
        payload = {"event_id": "1", "code": "spring-social", "salt": SALT}
        resp = client.post("/attendance/check-in", json=payload, headers=as_member())
        assert resp.status_code == 200
        assert resp.json()["receipt"]["handle"].startswith("0x")

        resp = client.post("/attendance/check-in", json=payload, headers=as_member())
        assert resp.status_code == 502
        assert resp.json()["detail"] == "already checked in"

    def test_remote_check_in_missing_fields(self, client):
        payload = {"event_id": "1", "code": "", "salt": SALT}
        resp = client.post("/attendance/check-in", json=payload, headers=as_member())
        assert resp.status_code == 400

    def test_remote_transport_exception_is_bad_gateway(self):
        class DroppedConnectionGateway(InMemoryLedgerGateway):
            async def check_in(self, event_id, code, salt):
                raise RuntimeError("connection reset by peer")

        chain = InMemoryChain(TREASURY)
        context = ClubContext(
            Settings(treasury_address=TREASURY), chain=chain,
            gateway_factory=lambda wallet: DroppedConnectionGateway(chain, wallet),
        )
        client = TestClient(create_app(context))

        payload = {"event_id": "1", "code": "MBC-1234", "salt": SALT}
        resp = client.post("/attendance/check-in", json=payload, headers=as_member())
        assert resp.status_code == 502
        assert resp.json()["detail"] == "connection reset by peer"


class TestDefaultApp:
    """The app wired from settings alone, as served by `api/index.py`."""

    def test_deposit_and_check_in_work_out_of_the_box(self):
        client = TestClient(create_app(ClubContext(Settings())))

        resp = client.post("/treasury/deposit", json={"amount": "25"}, headers=as_member())
        assert resp.status_code == 200
        assert resp.json()["balance"] == 25_000_000

        payload = {"event_id": "1", "code": "MBC-1234", "salt": SALT}
        resp = client.post("/attendance/check-in", json=payload, headers=as_member())
        assert resp.status_code == 200

    def test_new_wallets_are_registered_once(self):
        context = ClubContext(Settings(initial_member_balance="40"))
        client = TestClient(create_app(context))

        client.get("/treasury", headers=as_member())
        client.get("/treasury", headers=as_member())

        assert MEMBER in context.chain.members
        assert context.chain.balance_of(MEMBER) == 40_000_000
        resp = client.post("/treasury/deposit", json={"amount": "41"}, headers=as_member())
        assert resp.status_code == 502
        assert resp.json()["detail"] == "transfer amount exceeds balance"

    def test_registration_can_be_disabled(self):
        context = ClubContext(Settings(auto_register_members=False))
        client = TestClient(create_app(context))

        payload = {"event_id": "1", "code": "MBC-1234", "salt": SALT}
        resp = client.post("/attendance/check-in", json=payload, headers=as_member())
        assert resp.status_code == 502
        assert resp.json()["detail"] == "not a member"

    def test_seeded_event_uses_configured_salt(self):
        other_salt = "0x" + "ab" * 32
        client = TestClient(create_app(ClubContext(Settings(default_event_salt=other_salt))))

        payload = {"event_id": "1", "code": "MBC-1234", "salt": SALT}
        assert client.post("/attendance/check-in", json=payload, headers=as_member()).status_code == 502
        payload["salt"] = other_salt
        assert client.post("/attendance/check-in", json=payload, headers=as_member()).status_code == 200

    def test_invalid_seed_settings_rejected(self):
        with pytest.raises(ValueError):
            Settings(default_event_salt="0x01")
        with pytest.raises(ValueError):
            Settings(initial_member_balance="lots")

"""
Tests for the Operator API.

Validates:
- Actor headers
- Queue views and counts
- Error-to-status mapping
- End-to-end submit, claim, validate
- Recharge and commission transfer endpoints
"""

from __future__ import annotations

from decimal import Decimal

from fastapi.testclient import TestClient

from agency_desk.api.app import app, state
from agency_desk.bootstrap import build_desk
from agency_desk.config import DeskSettings
from agency_desk.domain.schema import OperationType, OperationTypeStatus
from agency_desk.ledger.client import InMemoryLedger, LedgerError
from agency_desk.store.service import SqlItemStore

AGENT = {"X-Actor-Id": "agent-1", "X-Actor-Role": "agent"}
CHEF = {"X-Actor-Id": "chef-1", "X-Actor-Role": "chef_agence"}
SOUS = {"X-Actor-Id": "sous-1", "X-Actor-Role": "sous_admin"}
ADMIN = {"X-Actor-Id": "admin-1", "X-Actor-Role": "admin_general"}
DEV = {"X-Actor-Id": "dev-1", "X-Actor-Role": "developpeur"}

TIERS = {
    "type": "tiers",
    "tiers": [
        {"from": 0, "to": 50000, "commission": "500"},
        {"from": 50000, "to": None, "commission": "1%"},
    ],
}


class DownLedger:
    """Refuses every settlement."""

    def settle(self, instruction):
        raise LedgerError("ledger unreachable")


class _ApiCase:
    ledger_factory = InMemoryLedger

    def setup_method(self):
        self.store = SqlItemStore.in_memory()
        self.ledger = self.ledger_factory()
        state.desk = build_desk(DeskSettings(), store=self.store, ledger=self.ledger, sinks=[])
        self.client = TestClient(app)

        self.store.save_operation_type(
            OperationType(id="retrait", name="Retrait", impacts_balance=True, commission_config=TIERS)
        )
        self.store.save_operation_type(
            OperationType(id="ancien", name="Ancien service", status=OperationTypeStatus.ARCHIVED)
        )

    def teardown_method(self):
        state.desk = None
        self.store.dispose()

    def submit(self, principal: int = 80000) -> dict:
        response = self.client.post(
            "/api/transactions",
            json={"op_type_id": "retrait", "principal_amount": principal},
            headers=AGENT,
        )
        assert response.status_code == 201, response.text
        return response.json()


class TestHeadersAndHealth(_ApiCase):
    """Identity headers and the health endpoint."""

    def test_health(self):
        """The health endpoint reports the wired ledger."""
        body = self.client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["ledger"] == "InMemoryLedger"

    def test_missing_actor_headers(self):
        """Requests without actor headers are refused with 401."""
        assert self.client.get("/api/queue/transactions").status_code == 401

    def test_unknown_role(self):
        """An unknown role is refused with 403."""
        response = self.client.get(
            "/api/queue/transactions", headers={"X-Actor-Id": "x", "X-Actor-Role": "boss"}
        )
        assert response.status_code == 403


class TestQueueFlow(_ApiCase):
    """Submit, claim and decide through the API."""

    def test_submit_computes_commission(self):
        """Submission returns the resolved commission."""
        txn = self.submit(80000)
        assert Decimal(txn["commission_generated"]) == Decimal("800")
        assert txn["status"] == "unassigned"

    def test_queue_views(self):
        """Queue views and counts depend on the calling operator."""
        first = self.submit()
        self.submit()
        self.client.post(f"/api/items/transactions/{first['id']}/claim", headers=CHEF)

        body = self.client.get("/api/queue/transactions", headers=CHEF).json()
        assert body["counts"] == {"unassigned": 1, "assigned_to_me": 1, "all": 2}
        assert len(body["items"]) == 1

        mine = self.client.get(
            "/api/queue/transactions", params={"view": "assigned_to_me"}, headers=CHEF
        ).json()
        assert [item["id"] for item in mine["items"]] == [first["id"]]

        other = self.client.get(
            "/api/queue/transactions", params={"view": "assigned_to_me"}, headers=SOUS
        ).json()
        assert other["items"] == []

    def test_unknown_view(self):
        """An unknown view name is a validation error."""
        response = self.client.get("/api/queue/transactions", params={"view": "mine"}, headers=CHEF)
        assert response.status_code == 422

    def test_claim_validate(self):
        """A claimed transaction validates and shows up in commission totals."""
        txn = self.submit()
        claim = self.client.post(f"/api/items/transactions/{txn['id']}/claim", headers=CHEF)
        assert claim.status_code == 200
        assert claim.json()["assigned_to"] == "chef-1"

        outcome = self.client.post(f"/api/transactions/{txn['id']}/validate", headers=CHEF).json()
        assert outcome["status"] == "validated"
        assert outcome["changed"] is True
        assert outcome["settlement"]["idempotency_key"] == f"{txn['id']}:commit"

        totals = self.client.get(
            "/api/commissions/totals", params={"agent_id": "agent-1"}
        ).json()
        assert Decimal(totals["totals"]["agent-1"]) == Decimal("800")

        summary = self.client.get("/api/commissions/agent-1").json()
        assert len(summary["history"]) == 1

    def test_repeated_validate_is_ok(self):
        """Validating twice succeeds without a second change."""
        txn = self.submit()
        self.client.post(f"/api/items/transactions/{txn['id']}/claim", headers=CHEF)
        self.client.post(f"/api/transactions/{txn['id']}/validate", headers=CHEF)
        again = self.client.post(f"/api/transactions/{txn['id']}/validate", headers=CHEF)
        assert again.status_code == 200
        assert again.json()["changed"] is False

    def test_release(self):
        """Releasing a claim clears the assignee."""
        txn = self.submit()
        self.client.post(f"/api/items/transactions/{txn['id']}/claim", headers=CHEF)
        response = self.client.post(f"/api/items/transactions/{txn['id']}/release", headers=CHEF)
        assert response.json()["assigned_to"] is None

    def test_reassign(self):
        """The admin general hands an item to another operator."""
        txn = self.submit()
        self.client.post(f"/api/items/transactions/{txn['id']}/claim", headers=CHEF)
        response = self.client.post(
            f"/api/items/transactions/{txn['id']}/reassign",
            json={"target_id": "sous-1", "target_role": "sous_admin"},
            headers=ADMIN,
        )
        assert response.status_code == 200
        assert response.json()["assigned_to"] == "sous-1"

    def test_request_resolve(self):
        """A support request is claimed and resolved without settlement."""
        created = self.client.post(
            "/api/requests", json={"type": "account", "subject": "Forgot PIN"}, headers=AGENT
        )
        assert created.status_code == 201
        request_id = created.json()["id"]
        self.client.post(f"/api/items/requests/{request_id}/claim", headers=SOUS)
        outcome = self.client.post(
            f"/api/requests/{request_id}/resolve", json={"response": "PIN reset"}, headers=SOUS
        ).json()
        assert outcome["status"] == "resolved"
        assert outcome["settlement"] is None


class TestErrorMapping(_ApiCase):
    """Desk errors map to HTTP statuses."""

    def test_stale_claim_is_409_and_recoverable(self):
        """A lost claim race is a recoverable 409."""
        txn = self.submit()
        self.client.post(f"/api/items/transactions/{txn['id']}/claim", headers=CHEF)
        response = self.client.post(f"/api/items/transactions/{txn['id']}/claim", headers=SOUS)
        assert response.status_code == 409
        assert response.json() == {
            "error": "StaleOwnership",
            "detail": response.json()["detail"],
            "recoverable": True,
        }

    def test_not_owner_is_403(self):
        """Deciding someone else's item is a 403."""
        txn = self.submit()
        self.client.post(f"/api/items/transactions/{txn['id']}/claim", headers=CHEF)
        response = self.client.post(f"/api/transactions/{txn['id']}/validate", headers=SOUS)
        assert response.status_code == 403
        assert response.json()["error"] == "NotOwner"
        assert response.json()["recoverable"] is False

    def test_agent_claim_is_403(self):
        """Agents cannot claim items."""
        txn = self.submit()
        response = self.client.post(f"/api/items/transactions/{txn['id']}/claim", headers=AGENT)
        assert response.status_code == 403
        assert response.json()["error"] == "Unauthorized"

    def test_invalid_transition_is_409(self):
        """Rejecting a validated item is a 409."""
        txn = self.submit()
        self.client.post(f"/api/items/transactions/{txn['id']}/claim", headers=CHEF)
        self.client.post(f"/api/transactions/{txn['id']}/validate", headers=CHEF)
        response = self.client.post(
            f"/api/transactions/{txn['id']}/reject", json={"reason": "late"}, headers=CHEF
        )
        assert response.status_code == 409
        assert response.json()["error"] == "InvalidTransition"

    def test_missing_reason_is_422(self):
        """A rejection without reason is a 422."""
        txn = self.submit()
        self.client.post(f"/api/items/transactions/{txn['id']}/claim", headers=CHEF)
        response = self.client.post(
            f"/api/transactions/{txn['id']}/reject", json={"reason": ""}, headers=CHEF
        )
        assert response.status_code == 422
        assert response.json()["error"] == "MissingReason"

    def test_unknown_item_is_404(self):
        """Unknown items are a 404."""
        response = self.client.post("/api/items/transactions/nope/claim", headers=CHEF)
        assert response.status_code == 404
        assert response.json()["error"] == "ItemNotFound"

    def test_negative_amount_is_422(self):
        """Negative amounts are a 422."""
        response = self.client.post(
            "/api/transactions",
            json={"op_type_id": "retrait", "principal_amount": -5},
            headers=AGENT,
        )
        assert response.status_code == 422
        assert response.json()["error"] == "InvalidAmount"

    def test_archived_type_is_409(self):
        """Submitting on an archived type is a 409."""
        response = self.client.post(
            "/api/transactions",
            json={"op_type_id": "ancien", "principal_amount": 100},
            headers=AGENT,
        )
        assert response.status_code == 409
        assert response.json()["error"] == "OperationTypeUnavailable"


class TestLedgerDown(_ApiCase):
    """Behaviour when the ledger is unreachable."""

    ledger_factory = DownLedger

    def test_ledger_failure_is_502(self):
        """A ledger failure is a 502 and nothing is stored."""
        response = self.client.post(
            "/api/transactions",
            json={"op_type_id": "retrait", "principal_amount": 1000},
            headers=AGENT,
        )
        assert response.status_code == 502
        assert response.json()["error"] == "LedgerError"
        assert self.store.list_items("transactions") == []


class TestCommissionEndpoints(_ApiCase):
    """Commission quotes and operation type configuration."""

    def test_quote(self):
        """A quote returns the commission and a config summary."""
        response = self.client.post(
            "/api/commissions/quote",
            json={"commission_config": TIERS, "principal_amount": 30000},
        )
        assert response.status_code == 200
        assert response.json()["commission"] == "500"
        assert response.json()["summary"] == "Tiers (2)"

    def test_quote_invalid_config(self):
        """An invalid configuration cannot be quoted."""
        response = self.client.post(
            "/api/commissions/quote",
            json={"commission_config": {"type": "tiers", "tiers": []}, "principal_amount": 1},
        )
        assert response.status_code == 422
        assert response.json()["error"] == "InvalidConfiguration"

    def test_operation_types_listing(self):
        """Operation types can be filtered by status."""
        listing = self.client.get("/api/operation-types", params={"status": "active"}).json()
        assert [op["id"] for op in listing] == ["retrait"]
        assert listing[0]["commission_summary"] == "Tiers (2)"

    def test_admin_saves_operation_type(self):
        """The admin general may save an operation type."""
        response = self.client.put(
            "/api/operation-types/transfert",
            json={"name": "Transfert", "commission_config": {"type": "percentage", "rate": 1}},
            headers=ADMIN,
        )
        assert response.status_code == 200
        assert self.store.get_operation_type("transfert") is not None

    def test_developer_saves_operation_type(self):
        """A developer may save an operation type."""
        response = self.client.put(
            "/api/operation-types/transfert",
            json={"name": "Transfert", "commission_config": {"type": "fixed", "amount": 100}},
            headers=DEV,
        )
        assert response.status_code == 200, response.text
        assert self.store.get_operation_type("transfert").name == "Transfert"

    def test_chef_cannot_save_operation_type(self):
        """Operators outside the configuration roles are refused."""
        response = self.client.put(
            "/api/operation-types/transfert", json={"name": "Transfert"}, headers=CHEF
        )
        assert response.status_code == 403

    def test_invalid_tiers_rejected_on_save(self):
        """Tiers with a gap are refused on save."""
        response = self.client.put(
            "/api/operation-types/transfert",
            json={
                "name": "Transfert",
                "commission_config": {
                    "type": "tiers",
                    "tiers": [{"from": 0, "to": 1000, "commission": 10}],
                },
            },
            headers=ADMIN,
        )
        assert response.status_code == 422
        assert self.store.get_operation_type("transfert") is None


class TestFundsEndpoints(_ApiCase):
    """Recharge requests and commission transfers through the API."""

    def request_recharge(self, amount: int = 50000) -> dict:
        response = self.client.post(
            "/api/recharges",
            json={"chef_id": "chef-1", "amount": amount, "motive": "Stock low"},
            headers=AGENT,
        )
        assert response.status_code == 201, response.text
        return response.json()

    def test_request_and_approve(self):
        """An approved recharge moves balance from the chef to the agent."""
        self.ledger.credit("chef-1", Decimal("80000"))
        recharge = self.request_recharge()

        pending = self.client.get("/api/recharges/pending", headers=CHEF).json()
        assert [r["id"] for r in pending] == [recharge["id"]]

        outcome = self.client.post(f"/api/recharges/{recharge['id']}/approve", headers=CHEF)
        assert outcome.status_code == 200
        assert outcome.json()["recharge"]["status"] == "approved"
        assert self.ledger.balance_of("agent-1") == Decimal("50000")
        assert self.client.get("/api/recharges/pending", headers=CHEF).json() == []

    def test_short_balance_is_502(self):
        """A chef without enough balance gets a ledger error and the request stays pending."""
        recharge = self.request_recharge()
        response = self.client.post(f"/api/recharges/{recharge['id']}/approve", headers=CHEF)
        assert response.status_code == 502
        history = self.client.get("/api/recharges/history", headers=AGENT).json()
        assert history[0]["status"] == "pending"

    def test_reject_needs_reason(self):
        """A rejection without reason is a 422, with one it is stored."""
        recharge = self.request_recharge()
        url = f"/api/recharges/{recharge['id']}/reject"
        assert self.client.post(url, json={"reason": " "}, headers=CHEF).status_code == 422

        response = self.client.post(url, json={"reason": "Not justified"}, headers=CHEF)
        assert response.status_code == 200
        assert response.json()["recharge"]["rejection_reason"] == "Not justified"

    def test_other_chef_is_403(self):
        """Only the addressed chef may decide."""
        recharge = self.request_recharge()
        other = {"X-Actor-Id": "chef-2", "X-Actor-Role": "chef_agence"}
        response = self.client.post(f"/api/recharges/{recharge['id']}/approve", headers=other)
        assert response.status_code == 403
        assert response.json()["error"] == "NotOwner"

    def test_chef_cannot_request(self):
        """Recharge requests come from agents only."""
        response = self.client.post(
            "/api/recharges", json={"chef_id": "chef-2", "amount": 100}, headers=CHEF
        )
        assert response.status_code == 403

    def test_transfer_capped_by_commissions_due(self):
        """A chef transfers validated commissions and no more."""
        submitted = self.client.post(
            "/api/transactions",
            json={"op_type_id": "retrait", "principal_amount": 80000},
            headers=CHEF,
        ).json()
        self.client.post(f"/api/items/transactions/{submitted['id']}/claim", headers=SOUS)
        self.client.post(f"/api/transactions/{submitted['id']}/validate", headers=SOUS)

        due = self.client.get("/api/commissions/chef-1/due").json()
        assert Decimal(due["commissions_due"]) == Decimal("800")

        moved = self.client.post(
            "/api/commissions/transfers", json={"amount": 500, "transfer_id": "t-1"}, headers=CHEF
        )
        assert moved.status_code == 200, moved.text
        assert Decimal(moved.json()["commissions_due"]) == Decimal("300")
        assert self.ledger.balance_of("chef-1") == Decimal("500")

        response = self.client.post(
            "/api/commissions/transfers", json={"amount": 400}, headers=CHEF
        )
        assert response.status_code == 409
        assert response.json()["error"] == "InsufficientCommissions"

    def test_agent_cannot_transfer(self):
        """Agents do not transfer commissions."""
        response = self.client.post(
            "/api/commissions/transfers", json={"amount": 100}, headers=AGENT
        )
        assert response.status_code == 403

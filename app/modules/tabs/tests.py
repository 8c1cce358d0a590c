"""
Tests para el módulo de Cuentas (Tabs)

Cubren:
- Creación con cargos y cálculo de subtotal/impuesto/total
- Listado paginado y filtros
- Actualización y estados bloqueados
- Anulación con validación previa, historial, restauración y anulación masiva
- Aislamiento entre organizaciones y autenticación por API key
- Consulta de cuentas desde la organización corporativa
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from app.common.errors import ForbiddenError
from app.modules.api_keys.models import ApiKeyScope
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.tabs.models import Tab, TabStatus
from app.modules.tabs.totals import calculate_tax, derive_status

API = "/api/v1"


# ===== TOTALS =====

class TestTotals:
    """Cálculo de impuestos y estado derivado"""

    def test_calculate_tax_rounds_half_up(self):
        assert calculate_tax(Decimal("100.00")) == Decimal("8.00")
        assert calculate_tax(Decimal("10.06")) == Decimal("0.80")
        assert calculate_tax(Decimal("10.07"), Decimal("0.05")) == Decimal("0.50")

    def test_derive_status(self):
        tab = Tab(status=TabStatus.OPEN, total_amount=Decimal("108.00"), paid_amount=Decimal("0"))
        assert derive_status(tab) == TabStatus.OPEN
        tab.paid_amount = Decimal("50.00")
        assert derive_status(tab) == TabStatus.PARTIAL
        tab.paid_amount = Decimal("108.00")
        assert derive_status(tab) == TabStatus.PAID

    def test_derive_status_keeps_void_and_closed(self):
        tab = Tab(status=TabStatus.VOID, total_amount=Decimal("10.00"), paid_amount=Decimal("10.00"))
        assert derive_status(tab) == TabStatus.VOID
        tab.status = TabStatus.CLOSED
        assert derive_status(tab) == TabStatus.CLOSED


# ===== CRUD =====

class TestTabCRUD:
    """Creación, consulta, listado y actualización"""

    def test_create_tab_calculates_totals(self, create_tab):
        tab = create_tab(line_items=[
            {"description": "Room night", "quantity": 2, "unit_price": "100.00"},
            {"description": "Breakfast", "quantity": 1, "unit_price": "25.50"},
        ])
        assert tab["status"] == "open"
        assert Decimal(tab["subtotal"]) == Decimal("225.50")
        assert Decimal(tab["tax_amount"]) == Decimal("18.04")
        assert Decimal(tab["total_amount"]) == Decimal("243.54")
        assert Decimal(tab["balance"]) == Decimal("243.54")
        assert len(tab["line_items"]) == 2
        assert {Decimal(i["total"]) for i in tab["line_items"]} == {Decimal("200.00"), Decimal("25.50")}

    def test_create_tab_normalizes_email_and_currency(self, create_tab):
        tab = create_tab(customer_email="Guest@Example.COM", currency="eur")
        assert tab["customer_email"] == "guest@example.com"
        assert tab["currency"] == "EUR"

    def test_create_tab_requires_line_items(self, client, auth_headers):
        response = client.post(f"{API}/tabs/", json={"customer_email": "a@example.com", "line_items": []},
                               headers=auth_headers)
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "VALIDATION_ERROR"
        assert any("line_items" in d["path"] for d in body["error"]["details"])

    def test_create_tab_requires_customer(self, client, auth_headers):
        response = client.post(f"{API}/tabs/", json={
            "line_items": [{"description": "Coffee", "unit_price": "3.00"}]
        }, headers=auth_headers)
        assert response.status_code == 400

    def test_create_tab_rejects_negative_price(self, client, auth_headers):
        response = client.post(f"{API}/tabs/", json={
            "customer_email": "a@example.com",
            "line_items": [{"description": "Coffee", "unit_price": "-3.00"}]
        }, headers=auth_headers)
        assert response.status_code == 400

    def test_get_tab_with_details(self, client, auth_headers, create_tab):
        tab = create_tab()
        response = client.get(f"{API}/tabs/{tab['id']}", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == tab["id"]
        assert len(data["line_items"]) == 1
        assert data["payments"] == []

    def test_get_unknown_tab_returns_404(self, client, auth_headers):
        response = client.get(f"{API}/tabs/{uuid4()}", headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["error"] == {"code": "NOT_FOUND", "message": "Tab not found"}

    def test_list_tabs_paginated(self, client, auth_headers, create_tab):
        for n in range(3):
            create_tab(customer_name=f"Guest {n}")
        response = client.get(f"{API}/tabs/?page=1&page_size=2", headers=auth_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert len(body["data"]) == 2
        assert body["meta"] == {"page": 1, "pageSize": 2, "totalItems": 3, "totalPages": 2}

    def test_list_tabs_clamps_pagination(self, client, auth_headers, create_tab):
        create_tab()
        response = client.get(f"{API}/tabs/?page=0&page_size=1000", headers=auth_headers)
        assert response.status_code == 200
        meta = response.json()["meta"]
        assert meta["page"] == 1
        assert meta["pageSize"] == 100

    def test_list_tabs_filters(self, client, auth_headers, create_tab):
        create_tab(customer_email="alice@example.com", customer_name="Alice")
        create_tab(customer_email="bob@example.com", customer_name="Bob", external_reference="ROOM-12")

        response = client.get(f"{API}/tabs/?customer_email=alice@example.com", headers=auth_headers)
        assert [t["customer_name"] for t in response.json()["data"]] == ["Alice"]

        response = client.get(f"{API}/tabs/?search=room-12", headers=auth_headers)
        assert [t["customer_name"] for t in response.json()["data"]] == ["Bob"]

        response = client.get(f"{API}/tabs/?status=paid", headers=auth_headers)
        assert response.json()["meta"]["totalItems"] == 0

    def test_update_tab(self, client, auth_headers, create_tab):
        tab = create_tab()
        response = client.patch(f"{API}/tabs/{tab['id']}", json={
            "customer_name": "Jane Guest",
            "metadata": {"room": "204"}
        }, headers=auth_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["customer_name"] == "Jane Guest"
        assert data["metadata"] == {"room": "204"}

    def test_update_only_allows_closing_status(self, client, auth_headers, create_tab):
        tab = create_tab()
        response = client.patch(f"{API}/tabs/{tab['id']}", json={"status": "paid"}, headers=auth_headers)
        assert response.status_code == 400

        response = client.patch(f"{API}/tabs/{tab['id']}", json={"status": "closed"}, headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "closed"

    def test_update_closed_tab_is_rejected(self, client, auth_headers, create_tab):
        tab = create_tab()
        client.patch(f"{API}/tabs/{tab['id']}", json={"status": "closed"}, headers=auth_headers)
        response = client.patch(f"{API}/tabs/{tab['id']}", json={"customer_name": "Late"}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Cannot update a closed tab"

    def test_delete_tab_voids_it(self, client, auth_headers, create_tab):
        tab = create_tab()
        response = client.delete(f"{API}/tabs/{tab['id']}", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "void"
        assert data["void_reason"] == "Deleted"
        assert data["voided_by"].startswith("user:")

    def test_delete_tab_with_payments_is_rejected(self, client, auth_headers, create_tab, add_payment):
        tab = create_tab()
        add_payment(tab, "50.00")
        response = client.delete(f"{API}/tabs/{tab['id']}", headers=auth_headers)
        assert response.status_code == 400
        assert "existing payments" in response.json()["error"]["message"]


# ===== AUTH AND TENANCY =====

class TestTabAccess:
    """Autenticación y aislamiento multi-tenant"""

    def test_requires_authentication(self, client):
        response = client.get(f"{API}/tabs/")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_session_requires_organization_header(self, client, auth_headers):
        headers = {"Authorization": auth_headers["Authorization"]}
        response = client.get(f"{API}/tabs/", headers=headers)
        assert response.status_code == 400

    def test_api_key_authentication(self, client, api_key_headers, create_tab):
        create_tab()
        response = client.get(f"{API}/tabs/", headers=api_key_headers)
        assert response.status_code == 200
        assert response.json()["meta"]["totalItems"] == 1

    def test_invalid_api_key(self, client):
        response = client.get(f"{API}/tabs/", headers={"x-api-key": "tab_test_" + "0" * 32})
        assert response.status_code == 401

    def test_other_organization_cannot_see_tab(self, client, create_tab, other_org_headers):
        tab = create_tab()
        response = client.get(f"{API}/tabs/{tab['id']}", headers=other_org_headers)
        assert response.status_code == 404

        response = client.get(f"{API}/tabs/", headers=other_org_headers)
        assert response.json()["meta"]["totalItems"] == 0

    def test_non_merchant_organization_is_forbidden(self, client, db_session, organization, auth_headers):
        organization.is_merchant = False
        db_session.commit()
        response = client.get(f"{API}/tabs/", headers=auth_headers)
        assert response.status_code == 403


# ===== CORPORATE ACCOUNTS =====

class TestCorporateTabs:
    """Cuentas visibles para la organización corporativa que las paga"""

    def test_lists_tabs_opened_for_corporate_customer(self, client, create_tab, corporate_organization, corporate_headers):
        billed = create_tab(customer_organization_id=str(corporate_organization.id))
        create_tab(customer_email="walkin@example.com")

        response = client.get(f"{API}/corporate/tabs/", headers=corporate_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["meta"]["totalItems"] == 1
        assert body["data"][0]["id"] == billed["id"]
        assert body["data"][0]["customer_organization_id"] == str(corporate_organization.id)

    def test_filters_by_merchant_and_status(self, client, create_tab, organization, corporate_organization, corporate_headers):
        create_tab(customer_organization_id=str(corporate_organization.id))

        response = client.get(
            f"{API}/corporate/tabs/",
            params={"merchant_id": str(organization.id), "status": "open"},
            headers=corporate_headers
        )
        assert response.json()["meta"]["totalItems"] == 1

        response = client.get(f"{API}/corporate/tabs/", params={"merchant_id": str(uuid4())}, headers=corporate_headers)
        assert response.json()["meta"]["totalItems"] == 0

        response = client.get(f"{API}/corporate/tabs/", params={"status": "paid"}, headers=corporate_headers)
        assert response.json()["meta"]["totalItems"] == 0

    def test_non_corporate_organization_is_forbidden(self, client, auth_headers):
        response = client.get(f"{API}/corporate/tabs/", headers=auth_headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"
        assert response.json()["error"]["message"] == "Organization is not a corporate account"

    def test_merchant_scoped_key_is_forbidden(self, client, corporate_api_key_headers):
        headers = corporate_api_key_headers(ApiKeyScope.MERCHANT)
        response = client.get(f"{API}/corporate/tabs/", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "API key scope does not allow corporate operations"

    def test_corporate_and_full_scoped_keys_are_allowed(self, client, corporate_api_key_headers):
        for scope in (ApiKeyScope.CORPORATE, ApiKeyScope.FULL):
            response = client.get(f"{API}/corporate/tabs/", headers=corporate_api_key_headers(scope))
            assert response.status_code == 200

    def test_corporate_guard_without_http(self):
        checker = AuthDependencies.require_corporate()
        merchant_context = AuthContext(organization_id=uuid4(), auth_type="session", is_merchant=True)
        with pytest.raises(ForbiddenError):
            checker(auth_context=merchant_context)

        key_context = AuthContext(
            organization_id=uuid4(), auth_type="api_key", scope="merchant", is_corporate=True
        )
        with pytest.raises(ForbiddenError):
            checker(auth_context=key_context)

        corporate_context = AuthContext(organization_id=uuid4(), auth_type="session", is_corporate=True)
        assert checker(auth_context=corporate_context) is corporate_context


# ===== VOIDING =====

class TestTabVoiding:
    """Anulación, historial y restauración"""

    def test_check_voiding_reports_warnings(self, client, auth_headers, create_tab):
        tab = create_tab()
        response = client.get(f"{API}/tabs/{tab['id']}/void", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["can_void"] is True
        assert data["blockers"] == []
        assert "1 line item(s) totaling $100.00 will become uncollectible when voided." in data["warnings"]

    def test_void_blocked_by_successful_payment(self, client, auth_headers, create_tab, add_payment):
        tab = create_tab()
        payment = add_payment(tab, "40.00")

        check = client.get(f"{API}/tabs/{tab['id']}/void", headers=auth_headers).json()["data"]
        assert check["can_void"] is False
        blocker = check["blockers"][0]
        assert blocker["type"] == "payment"
        assert blocker["count"] == 1
        assert blocker["message"] == (
            "Cannot void tab with 1 successful payment(s) totaling $40.00. Payments must be refunded first."
        )
        assert blocker["details"][0]["id"] == str(payment.id)
        assert blocker["details"][0]["amount"] == "40.00"
        assert blocker["details"][0]["processor"] == "stripe"

        response = client.post(f"{API}/tabs/{tab['id']}/void", json={"reason": "Guest left"}, headers=auth_headers)
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["message"].startswith("Cannot void tab: Cannot void tab with 1 successful payment(s)")
        assert error["details"]["blockers"][0]["type"] == "payment"

    def test_void_blocked_by_paid_invoice(self, client, auth_headers, create_tab):
        tab = create_tab()
        invoice = client.post(f"{API}/invoices/", json={"tab_id": tab["id"]}, headers=auth_headers).json()["data"]
        client.post(f"{API}/invoices/{invoice['id']}/mark-paid", json={"amount": "8.00"}, headers=auth_headers)

        check = client.get(f"{API}/tabs/{tab['id']}/void", headers=auth_headers).json()["data"]
        assert check["can_void"] is False
        assert check["blockers"] == [{
            "type": "invoice",
            "count": 1,
            "message": "Cannot void tab with 1 paid invoice(s) totaling $8.00. Invoice payments must be handled first.",
            "details": [{
                "invoice_id": invoice["id"],
                "invoice_number": invoice["invoice_number"],
                "paid_amount": "8.00",
                "billing_group_id": None,
            }],
        }]

    def test_void_with_skip_validation(self, client, auth_headers, create_tab, add_payment):
        tab = create_tab()
        add_payment(tab, "40.00")
        response = client.post(f"{API}/tabs/{tab['id']}/void", json={
            "reason": "Manager override", "skip_validation": True
        }, headers=auth_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["tab"]["status"] == "void"
        assert data["tab"]["previous_status"] == "partial"
        assert data["audit_entry"]["validation_skipped"] is True

    def test_void_closes_groups_and_drafts(self, client, auth_headers, create_tab):
        tab = create_tab()
        client.post(f"{API}/tabs/{tab['id']}/enable-billing-groups", json={"template": "restaurant"},
                     headers=auth_headers)
        invoice = client.post(f"{API}/invoices/", json={"tab_id": tab["id"]}, headers=auth_headers).json()["data"]

        response = client.post(f"{API}/tabs/{tab['id']}/void", json={"reason": "Duplicate"}, headers=auth_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert len(data["audit_entry"]["closed_billing_group_ids"]) == 3
        assert data["audit_entry"]["voided_invoice_ids"] == [invoice["id"]]
        assert "3 active billing group(s) will be closed when tab is voided." in data["warnings"]

        groups = client.get(f"{API}/billing-groups/?tab_id={tab['id']}", headers=auth_headers).json()["data"]
        assert {g["status"] for g in groups} == {"closed"}
        invoice = client.get(f"{API}/invoices/{invoice['id']}", headers=auth_headers).json()["data"]
        assert invoice["status"] == "void"

    def test_void_twice_is_rejected(self, client, auth_headers, create_tab):
        tab = create_tab()
        client.post(f"{API}/tabs/{tab['id']}/void", json={"reason": "Duplicate"}, headers=auth_headers)
        response = client.post(f"{API}/tabs/{tab['id']}/void", json={"reason": "Again"}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Tab is already void"

    def test_void_history_and_restore(self, client, auth_headers, create_tab):
        tab = create_tab()
        client.post(f"{API}/tabs/{tab['id']}/enable-billing-groups", json={}, headers=auth_headers)
        client.post(f"{API}/tabs/{tab['id']}/void", json={"reason": "Mistake"}, headers=auth_headers)

        response = client.post(f"{API}/tabs/{tab['id']}/restore", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["tab"]["status"] == "open"
        assert data["tab"]["voided_at"] is None
        assert data["audit_entry"]["action"] == "restored"

        groups = client.get(f"{API}/billing-groups/?tab_id={tab['id']}", headers=auth_headers).json()["data"]
        assert {g["status"] for g in groups} == {"active"}

        history = client.get(f"{API}/tabs/{tab['id']}/void-history", headers=auth_headers).json()["data"]
        assert [entry["action"] for entry in history] == ["voided", "restored"]
        assert history[0]["reason"] == "Mistake"

    def test_restore_requires_void_tab(self, client, auth_headers, create_tab):
        tab = create_tab()
        response = client.post(f"{API}/tabs/{tab['id']}/restore", headers=auth_headers)
        assert response.status_code == 400

    def test_list_voided_tabs(self, client, auth_headers, create_tab):
        kept = create_tab()
        voided = create_tab()
        client.post(f"{API}/tabs/{voided['id']}/void", json={"reason": "Test"}, headers=auth_headers)
        response = client.get(f"{API}/tabs/voided", headers=auth_headers)
        ids = [t["id"] for t in response.json()["data"]]
        assert ids == [voided["id"]]
        assert kept["id"] not in ids

    def test_bulk_void_reports_each_tab(self, client, auth_headers, create_tab, add_payment):
        first = create_tab()
        paid = create_tab()
        add_payment(paid, "10.00")
        missing = str(uuid4())

        response = client.post(f"{API}/tabs/bulk-void", json={
            "tab_ids": [first["id"], paid["id"], missing],
            "reason": "End of day"
        }, headers=auth_headers)
        assert response.status_code == 200
        body = response.json()
        results = {r["tab_id"]: r for r in body["data"]}
        assert results[first["id"]]["success"] is True
        assert results[paid["id"]]["success"] is False
        assert results[missing]["error"] == "Tab not found"
        assert body["meta"] == {"succeeded": 1, "failed": 2}

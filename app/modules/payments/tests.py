"""
Tests para el módulo de Pagos

- Payment intents y checkout alojado (Stripe simulado)
- Webhooks: confirmación idempotente, fallos, reembolsos, disputas
- Reembolsos desde la API
- Configuración de procesadores por organización
"""

import pytest
from decimal import Decimal

from app.common.errors import AppError
from app.modules.payments.encryption import encrypt_credentials, decrypt_credentials
from app.modules.payments.models import ProcessorType
from app.modules.payments.processors import ProcessorFactory, ProcessorNotFoundError
from app.modules.payments.processors.stripe_processor import StripeProcessor

API = "/api/v1"


def create_intent(client, headers, tab_id, **fields):
    payload = {"tab_id": tab_id}
    payload.update(fields)
    response = client.post(f"{API}/payments/intent", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def get_tab(client, headers, tab_id):
    return client.get(f"{API}/tabs/{tab_id}", headers=headers).json()["data"]


# ===== PAYMENT INTENTS =====

class TestPaymentIntents:
    """Creación de intents con la llave de la plataforma o del comercio"""

    def test_intent_for_full_balance(self, client, auth_headers, create_tab, stripe_mock):
        tab = create_tab()
        data = create_intent(client, auth_headers, tab["id"])

        assert data["client_secret"] == "pi_test_1_secret"
        assert data["processor_payment_id"] == "pi_test_1"
        assert data["payment"]["status"] == "pending"
        assert Decimal(data["payment"]["amount"]) == Decimal("108.00")

        call = stripe_mock["intents"][0]
        assert call["amount"] == 10800
        assert call["currency"] == "usd"
        assert call["api_key"] == "sk_test_platform"
        assert call["metadata"]["tab_id"] == tab["id"]
        assert call["metadata"]["payment_id"] == data["payment"]["id"]

    def test_intent_does_not_change_tab_until_confirmed(self, client, auth_headers, create_tab, stripe_mock):
        tab = create_tab()
        create_intent(client, auth_headers, tab["id"], amount="50.00")
        tab = get_tab(client, auth_headers, tab["id"])
        assert Decimal(tab["paid_amount"]) == Decimal("0.00")
        assert tab["status"] == "open"

    def test_amount_exceeding_balance(self, client, auth_headers, create_tab, stripe_mock):
        tab = create_tab()
        response = client.post(f"{API}/payments/intent", json={"tab_id": tab["id"], "amount": "200.00"},
                               headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"amount": "200.00", "balance": "108.00"}
        assert stripe_mock["intents"] == []

    def test_void_tab_rejects_payments(self, client, auth_headers, create_tab, stripe_mock):
        tab = create_tab()
        client.post(f"{API}/tabs/{tab['id']}/void", json={"reason": "Test"}, headers=auth_headers)
        response = client.post(f"{API}/payments/intent", json={"tab_id": tab["id"]}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Cannot accept payments for a void tab"

    def test_paid_tab_rejects_payments(self, client, auth_headers, create_tab, stripe_mock, add_payment):
        tab = create_tab()
        add_payment(tab, "108.00")
        response = client.post(f"{API}/payments/intent", json={"tab_id": tab["id"]}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Tab is already paid"

    def test_intent_limited_to_invoice_balance(self, client, auth_headers, create_tab, stripe_mock):
        tab = create_tab()
        invoice = client.post(f"{API}/invoices/", json={"tab_id": tab["id"], "amount": "40.00"},
                              headers=auth_headers).json()["data"]
        data = create_intent(client, auth_headers, tab["id"], invoice_id=invoice["id"])
        assert Decimal(data["payment"]["amount"]) == Decimal("40.00")
        assert stripe_mock["intents"][0]["metadata"]["invoice_id"] == invoice["id"]

    def test_merchant_processor_is_preferred(self, client, auth_headers, create_tab, stripe_mock):
        client.post(f"{API}/merchant/processors/", json={
            "processor_type": "stripe",
            "credentials": {"secret_key": "sk_test_merchant"},
            "is_test_mode": True
        }, headers=auth_headers)
        tab = create_tab()
        create_intent(client, auth_headers, tab["id"])
        assert stripe_mock["intents"][0]["api_key"] == "sk_test_merchant"

    def test_list_payments(self, client, auth_headers, create_tab, stripe_mock):
        tab = create_tab()
        other = create_tab()
        create_intent(client, auth_headers, tab["id"], amount="10.00")
        create_intent(client, auth_headers, other["id"], amount="10.00")

        body = client.get(f"{API}/payments/?tab_id={tab['id']}", headers=auth_headers).json()
        assert body["meta"]["totalItems"] == 1
        assert body["data"][0]["tab_id"] == tab["id"]


# ===== CHECKOUT =====

class TestCheckoutSessions:

    def test_checkout_session(self, client, auth_headers, create_tab, stripe_mock):
        tab = create_tab(external_reference="ROOM-204")
        response = client.post(f"{API}/payments/checkout", json={
            "tab_id": tab["id"],
            "success_url": "https://merchant.example.com/success",
            "cancel_url": "https://merchant.example.com/cancel"
        }, headers=auth_headers)
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["session_id"] == "cs_test_1"
        assert data["url"] == "https://checkout.stripe.com/c/pay/cs_test_1"
        assert data["payment"]["processor_payment_id"] == "pi_checkout_1"
        assert data["payment"]["metadata"]["checkout_session_id"] == "cs_test_1"

        call = stripe_mock["sessions"][0]
        assert call["line_items"][0]["price_data"]["unit_amount"] == 10800
        assert call["line_items"][0]["price_data"]["product_data"]["name"] == "Tab ROOM-204"
        assert call["success_url"] == "https://merchant.example.com/success"

    def test_checkout_completed_webhook(self, client, auth_headers, create_tab, send_stripe_event):
        tab = create_tab()
        payment = client.post(f"{API}/payments/checkout", json={
            "tab_id": tab["id"],
            "success_url": "https://merchant.example.com/success",
            "cancel_url": "https://merchant.example.com/cancel"
        }, headers=auth_headers).json()["data"]["payment"]

        response = send_stripe_event("checkout.session.completed", {
            "id": "cs_test_1",
            "payment_intent": "pi_checkout_1",
            "payment_status": "paid",
            "metadata": {"payment_id": payment["id"]}
        })
        assert response.status_code == 200
        assert get_tab(client, auth_headers, tab["id"])["status"] == "paid"


# ===== WEBHOOKS =====

class TestStripeWebhooks:
    """Eventos firmados de Stripe"""

    def test_payment_succeeded_is_idempotent(self, client, auth_headers, create_tab, send_stripe_event):
        tab = create_tab()
        data = create_intent(client, auth_headers, tab["id"], amount="50.00")
        event = {"id": "pi_test_1", "metadata": {"payment_id": data["payment"]["id"]}}

        response = send_stripe_event("payment_intent.succeeded", event)
        assert response.status_code == 200
        assert response.json()["data"] == {
            "received": True, "handled": True, "event_type": "payment_intent.succeeded"
        }
        send_stripe_event("payment_intent.succeeded", event)

        tab = get_tab(client, auth_headers, tab["id"])
        assert Decimal(tab["paid_amount"]) == Decimal("50.00")
        assert tab["status"] == "partial"
        payment = client.get(f"{API}/payments/{data['payment']['id']}", headers=auth_headers).json()["data"]
        assert payment["status"] == "succeeded"

    def test_payment_found_by_processor_id(self, client, auth_headers, create_tab, send_stripe_event):
        tab = create_tab()
        create_intent(client, auth_headers, tab["id"])
        send_stripe_event("payment_intent.succeeded", {"id": "pi_test_1"})
        assert get_tab(client, auth_headers, tab["id"])["status"] == "paid"

    def test_invoice_payment_updates_invoice(self, client, auth_headers, create_tab, send_stripe_event):
        tab = create_tab()
        invoice = client.post(f"{API}/invoices/", json={"tab_id": tab["id"]}, headers=auth_headers).json()["data"]
        create_intent(client, auth_headers, tab["id"], invoice_id=invoice["id"])
        send_stripe_event("payment_intent.succeeded", {"id": "pi_test_1"})

        invoice = client.get(f"{API}/invoices/{invoice['id']}", headers=auth_headers).json()["data"]
        assert invoice["status"] == "paid"
        assert Decimal(invoice["balance_due"]) == Decimal("0.00")

    def test_group_invoice_payment_settles_group(self, client, auth_headers, create_tab, stripe_mock,
                                                 send_stripe_event):
        tab = create_tab()
        business, personal = client.post(f"{API}/tabs/{tab['id']}/enable-billing-groups",
                                         json={"template": "corporate"}, headers=auth_headers).json()["data"]
        client.post(f"{API}/line-items/", json={
            "tab_id": tab["id"], "description": "Minibar", "unit_price": "10.00"
        }, headers=auth_headers)
        invoice = client.post(f"{API}/billing-groups/{business['id']}/invoice", json={},
                              headers=auth_headers).json()["data"]

        data = create_intent(client, auth_headers, tab["id"], invoice_id=invoice["id"])
        assert data["payment"]["billing_group_id"] == business["id"]
        assert stripe_mock["intents"][0]["metadata"]["billing_group_id"] == business["id"]
        send_stripe_event("payment_intent.succeeded", {"id": "pi_test_1"})
        assert get_tab(client, auth_headers, tab["id"])["status"] == "partial"

        response = client.post(f"{API}/payments/intent", json={
            "tab_id": tab["id"], "billing_group_id": business["id"]
        }, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Payment amount must be greater than zero"

        data = create_intent(client, auth_headers, tab["id"], billing_group_id=personal["id"])
        assert Decimal(data["payment"]["amount"]) == Decimal("10.80")

    def test_payment_failed(self, client, auth_headers, create_tab, send_stripe_event):
        tab = create_tab()
        data = create_intent(client, auth_headers, tab["id"])
        send_stripe_event("payment_intent.payment_failed", {
            "id": "pi_test_1",
            "last_payment_error": {"message": "Your card was declined."}
        })
        payment = client.get(f"{API}/payments/{data['payment']['id']}", headers=auth_headers).json()["data"]
        assert payment["status"] == "failed"
        assert payment["failure_reason"] == "Your card was declined."
        assert get_tab(client, auth_headers, tab["id"])["status"] == "open"

    def test_charge_refunded(self, client, auth_headers, create_tab, send_stripe_event):
        tab = create_tab()
        data = create_intent(client, auth_headers, tab["id"])
        send_stripe_event("payment_intent.succeeded", {"id": "pi_test_1"}, event_id="evt_1")
        send_stripe_event("charge.refunded", {"payment_intent": "pi_test_1", "amount_refunded": 5000},
                          event_id="evt_2")

        payment = client.get(f"{API}/payments/{data['payment']['id']}", headers=auth_headers).json()["data"]
        assert Decimal(payment["refunded_amount"]) == Decimal("50.00")
        assert payment["status"] == "succeeded"
        tab = get_tab(client, auth_headers, tab["id"])
        assert Decimal(tab["paid_amount"]) == Decimal("58.00")
        assert tab["status"] == "partial"

    def test_dispute_is_recorded(self, client, auth_headers, create_tab, send_stripe_event):
        tab = create_tab()
        data = create_intent(client, auth_headers, tab["id"])
        send_stripe_event("charge.dispute.created", {
            "id": "dp_123", "payment_intent": "pi_test_1", "reason": "fraudulent"
        })
        payment = client.get(f"{API}/payments/{data['payment']['id']}", headers=auth_headers).json()["data"]
        assert payment["metadata"]["disputed"] is True
        assert payment["metadata"]["dispute_id"] == "dp_123"

    def test_unhandled_event(self, send_stripe_event):
        response = send_stripe_event("customer.created", {"id": "cus_123"})
        assert response.status_code == 200
        assert response.json()["data"]["handled"] is False

    def test_invalid_signature(self, send_stripe_event):
        response = send_stripe_event("payment_intent.succeeded", {"id": "pi_x"}, signature="forged")
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid webhook signature"

    def test_missing_signature_header(self, client, stripe_mock):
        response = client.post(f"{API}/webhooks/stripe", content=b"{}")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


# ===== REFUNDS =====

class TestRefunds:

    def test_partial_refund(self, client, auth_headers, create_tab, add_payment, stripe_mock):
        tab = create_tab()
        payment = add_payment(tab, "50.00")
        response = client.post(f"{API}/payments/{payment.id}/refund", json={
            "amount": "30.00", "reason": "Overcharged"
        }, headers=auth_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert Decimal(data["refunded_amount"]) == Decimal("30.00")
        assert data["status"] == "succeeded"
        assert data["metadata"]["refund_reason"] == "Overcharged"

        call = stripe_mock["refunds"][0]
        assert call["payment_intent"] == payment.processor_payment_id
        assert call["amount"] == 3000
        assert Decimal(get_tab(client, auth_headers, tab["id"])["paid_amount"]) == Decimal("20.00")

    def test_full_refund(self, client, auth_headers, create_tab, add_payment, stripe_mock):
        tab = create_tab()
        payment = add_payment(tab, "108.00")
        response = client.post(f"{API}/payments/{payment.id}/refund", json={}, headers=auth_headers)
        assert response.json()["data"]["status"] == "refunded"
        tab = get_tab(client, auth_headers, tab["id"])
        assert tab["status"] == "open"
        assert Decimal(tab["balance"]) == Decimal("108.00")

    def test_refund_exceeding_payment(self, client, auth_headers, create_tab, add_payment, stripe_mock):
        tab = create_tab()
        payment = add_payment(tab, "50.00")
        response = client.post(f"{API}/payments/{payment.id}/refund", json={"amount": "60.00"},
                               headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"refundable": "50.00"}
        assert stripe_mock["refunds"] == []

    def test_pending_payment_cannot_be_refunded(self, client, auth_headers, create_tab, stripe_mock):
        tab = create_tab()
        data = create_intent(client, auth_headers, tab["id"])
        response = client.post(f"{API}/payments/{data['payment']['id']}/refund", json={}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "PAYMENT_ERROR"


# ===== PUBLIC INVOICE PAYMENTS =====

class TestPublicInvoicePayments:
    """El cliente paga desde el enlace público, sin autenticación"""

    @pytest.fixture
    def invoice(self, client, auth_headers, create_tab):
        tab = create_tab()
        return client.post(f"{API}/invoices/", json={"tab_id": tab["id"], "amount": "40.00"},
                           headers=auth_headers).json()["data"]

    def test_pay_public_invoice(self, client, auth_headers, invoice, stripe_mock):
        response = client.post(f"{API}/public/invoices/{invoice['public_url']}/pay", json={
            "customer_email": "guest@example.com", "customer_name": "Guest"
        })
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["invoice_number"] == invoice["invoice_number"]
        assert Decimal(data["amount"]) == Decimal("40.00")
        assert data["status"] == "pending"
        assert data["client_secret"] == "pi_test_1_secret"
        assert stripe_mock["intents"][0]["amount"] == 4000
        assert stripe_mock["intents"][0]["api_key"] == "sk_test_platform"

        payment = client.get(f"{API}/payments/{data['payment_id']}", headers=auth_headers).json()["data"]
        assert payment["invoice_id"] == invoice["id"]
        assert payment["metadata"]["public_payment"] is True
        assert payment["metadata"]["customer_email"] == "guest@example.com"

    def test_public_payment_confirmed_by_webhook(self, client, auth_headers, invoice, send_stripe_event):
        client.post(f"{API}/public/invoices/{invoice['public_url']}/pay", json={"customer_email": "guest@example.com"})
        send_stripe_event("payment_intent.succeeded", {"id": "pi_test_1"})

        invoice = client.get(f"{API}/invoices/{invoice['id']}", headers=auth_headers).json()["data"]
        assert invoice["status"] == "paid"
        response = client.post(f"{API}/public/invoices/{invoice['public_url']}/pay",
                               json={"customer_email": "guest@example.com"})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invoice is already paid"

    def test_amount_capped_at_balance_due(self, client, invoice, stripe_mock):
        response = client.post(f"{API}/public/invoices/{invoice['public_url']}/pay", json={
            "customer_email": "guest@example.com", "amount": "50.00"
        })
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"amount": "50.00", "balance": "40.00"}
        assert stripe_mock["intents"] == []

    def test_void_invoice_is_not_payable(self, client, auth_headers, invoice, stripe_mock):
        client.post(f"{API}/invoices/{invoice['id']}/void", headers=auth_headers)
        response = client.post(f"{API}/public/invoices/{invoice['public_url']}/pay",
                               json={"customer_email": "guest@example.com"})
        assert response.status_code == 404

        response = client.post(f"{API}/public/invoices/inv_{'0' * 24}/pay", json={"customer_email": "guest@example.com"})
        assert response.status_code == 404

    def test_public_checkout(self, client, invoice, stripe_mock):
        response = client.post(f"{API}/public/invoices/{invoice['public_url']}/checkout", json={
            "customer_email": "guest@example.com",
            "success_url": "https://merchant.example.com/paid",
            "cancel_url": "https://merchant.example.com/cancel"
        })
        assert response.status_code == 201
        assert response.json()["data"]["checkout_url"] == "https://checkout.stripe.com/c/pay/cs_test_1"
        name = stripe_mock["sessions"][0]["line_items"][0]["price_data"]["product_data"]["name"]
        assert name == f"Invoice {invoice['invoice_number']}"


# ===== MERCHANT PROCESSORS =====

class TestMerchantProcessors:
    """Credenciales por organización, cifradas y nunca expuestas"""

    def test_add_processor(self, client, auth_headers, stripe_mock):
        response = client.post(f"{API}/merchant/processors/", json={
            "processor_type": "stripe",
            "credentials": {"secret_key": "sk_test_merchant"}
        }, headers=auth_headers)
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["processor_type"] == "stripe"
        assert data["is_test_mode"] is True
        assert "credentials" not in data
        assert "encrypted_credentials" not in data
        assert stripe_mock["accounts"] == [{"api_key": "sk_test_merchant"}]

        listed = client.get(f"{API}/merchant/processors/", headers=auth_headers).json()["data"]
        assert [p["id"] for p in listed] == [data["id"]]
        assert "sk_test_merchant" not in str(listed)

    def test_invalid_credentials(self, client, auth_headers, stripe_mock):
        response = client.post(f"{API}/merchant/processors/", json={
            "processor_type": "stripe",
            "credentials": {"secret_key": "sk_test_invalid"}
        }, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid processor credentials"

    def test_duplicate_processor(self, client, auth_headers, stripe_mock):
        payload = {"processor_type": "stripe", "credentials": {"secret_key": "sk_test_merchant"}}
        client.post(f"{API}/merchant/processors/", json=payload, headers=auth_headers)
        response = client.post(f"{API}/merchant/processors/", json=payload, headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    def test_planned_processor_not_implemented(self, client, auth_headers, stripe_mock):
        response = client.post(f"{API}/merchant/processors/", json={
            "processor_type": "square", "credentials": {"access_token": "sq0"}
        }, headers=auth_headers)
        assert response.status_code == 400
        assert "not yet implemented" in response.json()["error"]["message"]

    def test_deactivate_and_delete(self, client, auth_headers, stripe_mock):
        created = client.post(f"{API}/merchant/processors/", json={
            "processor_type": "stripe", "credentials": {"secret_key": "sk_test_merchant"}
        }, headers=auth_headers).json()["data"]

        response = client.patch(f"{API}/merchant/processors/{created['id']}", json={"is_active": False},
                                headers=auth_headers)
        assert response.json()["data"]["is_active"] is False

        response = client.delete(f"{API}/merchant/processors/{created['id']}", headers=auth_headers)
        assert response.json()["data"] == {"id": created["id"], "deleted": True}
        assert client.get(f"{API}/merchant/processors/", headers=auth_headers).json()["data"] == []


class TestProcessorFactory:

    def test_creates_stripe(self):
        processor = ProcessorFactory.create("stripe", {"secret_key": "sk_test_x"})
        assert isinstance(processor, StripeProcessor)
        assert processor.is_test_mode is True
        assert ProcessorFactory.supported_processors() == ["stripe"]

    def test_unknown_processor(self):
        with pytest.raises(ProcessorNotFoundError, match="Unsupported payment processor"):
            ProcessorFactory.create("venmo", {})

    def test_planned_processor(self):
        with pytest.raises(ProcessorNotFoundError, match="not yet implemented"):
            ProcessorFactory.create(ProcessorType.PAYPAL, {})

    def test_credentials_encryption(self):
        token = encrypt_credentials({"secret_key": "sk_live_abc"})
        assert "sk_live_abc" not in token
        assert decrypt_credentials(token) == {"secret_key": "sk_live_abc"}

        with pytest.raises(AppError):
            decrypt_credentials("not-a-token")

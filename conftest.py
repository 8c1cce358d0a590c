"""
Fixtures compartidas para los tests de la API.

La base de datos es sqlite en memoria (una sola conexión compartida) y se
recrea en cada test. Stripe y la cola de correos se reemplazan con
monkeypatch para no salir a la red.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"
os.environ["CACHE_ENABLED"] = "false"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_platform"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"

import json
from decimal import Decimal
from types import SimpleNamespace
from uuid import UUID, uuid4

import pytest
import stripe
from fastapi.testclient import TestClient

from app.main import app
from app.database.database import Base, engine, SessionLocal
from app.modules.auth.models import User
from app.modules.auth.utils import hash_password, create_access_token, generate_api_key, hash_api_key
from app.modules.organizations.models import Organization, OrganizationUser, OrganizationRole
from app.modules.api_keys.models import ApiKey, ApiKeyScope, ApiKeyEnvironment
from app.modules.tabs.models import Tab
from app.modules.tabs.totals import apply_paid_amount
from app.modules.payments.models import Payment, PaymentStatus, ProcessorType
import app.modules.email.tasks as email_tasks
import app.core.cache as cache
from app.core.config import settings

API = "/api/v1"


# ===== DATABASE =====

@pytest.fixture(autouse=True)
def setup_database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(app)


# ===== USERS AND ORGANIZATIONS =====

def make_member(db_session, email, organization, role=OrganizationRole.OWNER):
    user = User(email=email, password=hash_password("Password123!"), full_name=email.split("@")[0], is_active=True)
    db_session.add(user)
    db_session.flush()
    db_session.add(OrganizationUser(organization_id=organization.id, user_id=user.id, role=role, is_active=True))
    db_session.commit()
    db_session.refresh(user)
    return user


def make_organization(db_session, name, slug, is_merchant=True):
    organization = Organization(name=name, slug=slug, is_merchant=is_merchant)
    db_session.add(organization)
    db_session.commit()
    db_session.refresh(organization)
    return organization


def session_headers(user, organization):
    token = create_access_token(data={"sub": str(user.id)})
    return {"Authorization": f"Bearer {token}", "x-organization-id": str(organization.id)}


@pytest.fixture
def organization(db_session):
    return make_organization(db_session, "Test Merchant", "test-merchant")


@pytest.fixture
def owner(db_session, organization):
    return make_member(db_session, "owner@example.com", organization)


@pytest.fixture
def auth_headers(owner, organization):
    return session_headers(owner, organization)


@pytest.fixture
def other_org_headers(db_session):
    """Sesión de otra organización, para verificar el aislamiento entre tenants."""
    other = make_organization(db_session, "Other Merchant", "other-merchant")
    user = make_member(db_session, "other@example.com", other)
    return session_headers(user, other)


def make_api_key_headers(db_session, organization, user, scope=ApiKeyScope.MERCHANT):
    raw_key = generate_api_key("test")
    db_session.add(ApiKey(
        organization_id=organization.id,
        name="Integration",
        key_hash=hash_api_key(raw_key),
        key_prefix=raw_key[:13],
        scope=scope,
        environment=ApiKeyEnvironment.TEST,
        is_active=True,
        created_by=user.id
    ))
    db_session.commit()
    return {"x-api-key": raw_key}


@pytest.fixture
def api_key_headers(db_session, organization, owner):
    return make_api_key_headers(db_session, organization, owner)


@pytest.fixture
def add_member(db_session, organization):
    """Agrega un usuario al equipo con el rol indicado y retorna (usuario, headers)."""
    def _add(email, role=OrganizationRole.MEMBER):
        user = make_member(db_session, email, organization, role=role)
        return user, session_headers(user, organization)
    return _add


@pytest.fixture
def corporate_organization(db_session):
    """Organización cliente corporativa (no comercio)."""
    organization = make_organization(db_session, "Acme Corp", "acme-corp", is_merchant=False)
    organization.is_corporate = True
    db_session.commit()
    return organization


@pytest.fixture
def corporate_member(db_session, corporate_organization):
    return make_member(db_session, "travel@acme.example.com", corporate_organization)


@pytest.fixture
def corporate_headers(corporate_member, corporate_organization):
    return session_headers(corporate_member, corporate_organization)


@pytest.fixture
def corporate_api_key_headers(db_session, corporate_organization, corporate_member):
    """Emite una API key para la organización corporativa con el scope indicado."""
    def _issue(scope):
        return make_api_key_headers(db_session, corporate_organization, corporate_member, scope=scope)
    return _issue


# ===== FACTORIES =====

@pytest.fixture
def create_tab(client, auth_headers):
    def _create(line_items=None, **overrides):
        payload = {
            "customer_email": "guest@example.com",
            "customer_name": "Guest",
            "line_items": line_items or [{"description": "Room night", "quantity": 1, "unit_price": "100.00"}],
        }
        payload.update(overrides)
        response = client.post(f"{API}/tabs/", json=payload, headers=auth_headers)
        assert response.status_code == 201, response.text
        return response.json()["data"]
    return _create


# ===== EXTERNAL SERVICES =====

class FakeEmailTask:
    def __init__(self):
        self.calls = []

    def delay(self, **kwargs):
        self.calls.append(kwargs)
        return SimpleNamespace(id=f"task-{len(self.calls)}")


@pytest.fixture
def email_queue(monkeypatch):
    fake = FakeEmailTask()
    monkeypatch.setattr(email_tasks, "send_invoice_email_task", fake)
    return fake


@pytest.fixture(autouse=True)
def template_email_queue(monkeypatch):
    """Los correos con plantilla nunca salen hacia el broker durante los tests."""
    fake = FakeEmailTask()
    monkeypatch.setattr(email_tasks, "send_template_email_task", fake)
    return fake


class FakeRedis:
    """Subconjunto de redis.Redis usado por app.core.cache."""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.pings = 0

    def ping(self):
        self.pings += 1
        return True

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl

    def delete(self, key):
        self.store.pop(key, None)
        self.ttls.pop(key, None)

    def incr(self, key):
        self.store[key] = int(self.store.get(key, 0)) + 1
        return self.store[key]

    def expire(self, key, seconds):
        self.ttls[key] = seconds

    def ttl(self, key):
        return self.ttls.get(key, -1)


@pytest.fixture
def fake_redis(monkeypatch):
    """Activa la caché contra un Redis en memoria."""
    fake = FakeRedis()
    monkeypatch.setattr(settings, "CACHE_ENABLED", True)
    monkeypatch.setattr(cache, "_redis_client", fake)
    monkeypatch.setattr(cache, "_last_failure", None)
    return fake


@pytest.fixture
def stripe_mock(monkeypatch):
    """Reemplaza las llamadas del SDK de Stripe y registra los parámetros."""
    calls = {"intents": [], "sessions": [], "refunds": [], "accounts": []}

    def create_intent(**kwargs):
        calls["intents"].append(kwargs)
        return {
            "id": f"pi_test_{len(calls['intents'])}",
            "status": "requires_payment_method",
            "amount": kwargs["amount"],
            "currency": kwargs["currency"],
            "client_secret": f"pi_test_{len(calls['intents'])}_secret",
        }

    def create_session(**kwargs):
        calls["sessions"].append(kwargs)
        number = len(calls["sessions"])
        return {
            "id": f"cs_test_{number}",
            "url": f"https://checkout.stripe.com/c/pay/cs_test_{number}",
            "payment_intent": f"pi_checkout_{number}",
        }

    def create_refund(**kwargs):
        calls["refunds"].append(kwargs)
        return {"id": f"re_test_{len(calls['refunds'])}", "status": "succeeded", "amount": kwargs.get("amount")}

    def construct_event(payload, sig_header, secret, *args, **kwargs):
        if sig_header != "valid-signature" or secret != "whsec_test":
            raise stripe.SignatureVerificationError("No signatures found matching the expected signature", sig_header)
        return json.loads(payload)

    def retrieve_account(*args, **kwargs):
        calls["accounts"].append(kwargs)
        if kwargs.get("api_key") == "sk_test_invalid":
            raise stripe.AuthenticationError("Invalid API Key provided")
        return {"id": "acct_test"}

    monkeypatch.setattr(stripe.PaymentIntent, "create", create_intent)
    monkeypatch.setattr(stripe.checkout.Session, "create", create_session)
    monkeypatch.setattr(stripe.Refund, "create", create_refund)
    monkeypatch.setattr(stripe.Webhook, "construct_event", construct_event)
    monkeypatch.setattr(stripe.Account, "retrieve", retrieve_account)
    return calls


@pytest.fixture
def send_stripe_event(client, stripe_mock):
    """Envía un evento de webhook firmado (según el mock de Stripe)."""
    def _send(event_type, obj, event_id="evt_test", signature="valid-signature"):
        body = json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}})
        return client.post(
            f"{API}/webhooks/stripe",
            content=body,
            headers={"stripe-signature": signature, "content-type": "application/json"}
        )
    return _send


@pytest.fixture
def add_payment(db_session):
    """Registra un pago exitoso directamente en la base de datos (sin procesador)."""
    def _add(tab_data, amount, invoice_id=None, billing_group_id=None):
        tab = db_session.get(Tab, UUID(tab_data["id"]))
        payment = Payment(
            organization_id=tab.organization_id,
            tab_id=tab.id,
            invoice_id=UUID(invoice_id) if invoice_id else None,
            billing_group_id=UUID(billing_group_id) if billing_group_id else None,
            amount=Decimal(amount),
            refunded_amount=0,
            currency=tab.currency,
            status=PaymentStatus.SUCCEEDED,
            processor=ProcessorType.STRIPE,
            processor_payment_id=f"pi_{uuid4().hex[:12]}"
        )
        db_session.add(payment)
        apply_paid_amount(tab, Decimal(amount))
        db_session.commit()
        db_session.refresh(payment)
        return payment
    return _add

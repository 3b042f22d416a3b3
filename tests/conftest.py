import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from app.api.deps import require_user
from app.clients.supabase_auth import AuthenticatedUser
from app.main import app
from app.services.billing.checkout import CheckoutService, get_checkout_service
from app.services.billing.factory import ProviderFactory
from app.services.billing.providers import AsaasProvider, StripeProvider
from app.services.billing.reconciler import SubscriptionReconciler, get_subscription_reconciler
from app.services.billing.repositories import (
    InMemorySubscriptionRepository,
    get_subscription_repository,
)
from app.services.billing.webhooks import (
    AsaasWebhookProcessor,
    StripeWebhookProcessor,
    get_asaas_webhook_processor,
    get_stripe_webhook_processor,
)
from tests.helpers.fake_asaas import FakeAsaasApi
from tests.helpers.fake_stripe import FakeStripe

ASAAS_WEBHOOK_TOKEN = "asaas-webhook-token"  # noqa: S105 - test fixture value


class _SyncASGIClient:
    """Minimal synchronous wrapper around httpx.AsyncClient for ASGI apps."""

    def __init__(self, app):
        transport = httpx.ASGITransport(app=app)
        self._client = httpx.AsyncClient(transport=transport, base_url="http://testserver")

    def request(self, method: str, url: str, **kwargs):
        return asyncio.run(self._client.request(method, url, **kwargs))

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs):
        return self.request("PUT", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)

    def close(self) -> None:
        asyncio.run(self._client.aclose())


@pytest.fixture
def client():
    """Create test client compatible with older/newer httpx releases."""
    try:
        test_client = TestClient(app)
        yield test_client
    except TypeError:
        fallback_client = _SyncASGIClient(app)
        try:
            yield fallback_client
        finally:
            fallback_client.close()


@pytest.fixture
def repository():
    return InMemorySubscriptionRepository()


@pytest.fixture
def fake_stripe():
    return FakeStripe()


@pytest.fixture
def asaas_api():
    return FakeAsaasApi()


@pytest.fixture
def provider_factory(fake_stripe, asaas_api):
    """Factory wired to the fake Stripe SDK and the mocked ASAAS transport."""

    def build(default_gateway: str = "stripe") -> ProviderFactory:
        return ProviderFactory(
            {
                "stripe": lambda: StripeProvider("sk_test_stub", sdk=fake_stripe),
                "asaas": lambda: AsaasProvider(asaas_api.build_client()),
            },
            default_gateway=default_gateway,
        )

    return build


@pytest.fixture
def current_user():
    return AuthenticatedUser(id="user-1", email="ana@example.com", full_name="Ana Souza")


@pytest.fixture
def billing_app(repository, provider_factory, current_user):
    """Point every billing dependency at in-memory fakes; returns a gateway switcher."""
    state = {"factory": provider_factory("stripe")}

    app.dependency_overrides[require_user] = lambda: current_user
    app.dependency_overrides[get_subscription_repository] = lambda: repository
    app.dependency_overrides[get_checkout_service] = lambda: CheckoutService(
        repository, state["factory"]
    )
    app.dependency_overrides[get_subscription_reconciler] = lambda: SubscriptionReconciler(
        repository, state["factory"]
    )
    app.dependency_overrides[get_stripe_webhook_processor] = lambda: StripeWebhookProcessor(
        repository
    )
    app.dependency_overrides[get_asaas_webhook_processor] = lambda: AsaasWebhookProcessor(
        repository, webhook_token=ASAAS_WEBHOOK_TOKEN
    )

    def use_gateway(name: str) -> None:
        state["factory"] = provider_factory(name)

    yield use_gateway
    app.dependency_overrides.clear()

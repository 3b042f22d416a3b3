from __future__ import annotations

import pytest

from app.config import Settings
from app.services.billing.errors import ConfigError, UnsupportedGatewayError
from app.services.billing.factory import ProviderFactory, build_provider_factory


@pytest.mark.parametrize("name", ["stripe", "asaas", "STRIPE", " Asaas "])
def test_supported_names_return_matching_adapter(provider_factory, name: str) -> None:
    factory = provider_factory()

    provider = factory.get_provider(name)

    assert provider.name == name.strip().lower()


@pytest.mark.parametrize("name", ["paypal", "mercadopago", "pix"])
def test_unsupported_name_raises(provider_factory, name: str) -> None:
    factory = provider_factory()

    with pytest.raises(UnsupportedGatewayError) as excinfo:
        factory.get_provider(name)
    assert excinfo.value.code == "UNSUPPORTED_GATEWAY"
    assert name in str(excinfo.value)


def test_precedence_argument_then_default_then_stripe(provider_factory) -> None:
    assert provider_factory("asaas").get_provider().name == "asaas"
    assert provider_factory("asaas").get_provider("stripe").name == "stripe"

    built = {"count": 0}

    def build_stripe():
        built["count"] += 1
        return provider_factory().get_provider("stripe")

    factory = ProviderFactory({"stripe": build_stripe}, default_gateway=None)
    assert factory.resolve_name() == "stripe"
    assert factory.get_provider() is factory.get_provider("stripe")
    assert built["count"] == 1


def test_instances_are_cached(provider_factory) -> None:
    factory = provider_factory()

    assert factory.get_provider("asaas") is factory.get_provider("ASAAS")


def test_build_from_settings_is_lazy_about_secrets() -> None:
    factory = build_provider_factory(
        Settings(active_gateway="asaas", asaas_api_key=None, stripe_secret_key="sk_test")
    )

    assert factory.default_gateway == "asaas"
    assert factory.get_provider("stripe").name == "stripe"
    with pytest.raises(ConfigError):
        factory.get_provider()

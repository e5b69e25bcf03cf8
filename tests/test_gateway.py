"""Tests for catalog and dry-run gateway adapters."""

import httpx
import pytest

from purser.demo import DEMO_TOOLS, demo_actions, demo_gateway
from purser.errors import ProviderError
from purser.gateway import (
    CallbackSink,
    CatalogAction,
    DryRunGateway,
    Event,
    HTTPCatalog,
    PaymentGateway,
    StaticCatalog,
    estimate_cost,
    index_catalog,
)
from purser.signals import TTLCache


def _catalog_client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestCatalogAction:
    def test_from_dict_accepts_merchant_shape(self):
        action = CatalogAction.from_dict(DEMO_TOOLS[2])
        assert action.id == "route-optimizer"
        assert action.cost_usd == 0.02
        assert action.category == "routing"
        assert action.parameters == ("tokenIn", "tokenOut", "amountIn", "chain")
        assert action.endpoint == "/api/v1/route"

    def test_from_dict_requires_price(self):
        with pytest.raises(ValueError, match="no price"):
            CatalogAction.from_dict({"id": "free-lunch"})

    def test_from_dict_requires_id_and_parameter_names(self):
        with pytest.raises(ValueError, match="no id"):
            CatalogAction.from_dict({"priceUSD": 0.01})
        with pytest.raises(ValueError, match="parameter with no name"):
            CatalogAction.from_dict({"id": "x", "priceUSD": 0.01, "parameters": [{}]})

    def test_estimate_cost_ignores_unknown_ids(self):
        catalog = index_catalog(demo_actions())
        assert estimate_cost(catalog, ["market-data", "sentiment", "nope"]) == pytest.approx(0.06)


class TestHTTPCatalog:
    def test_lists_tools(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json={"tools": DEMO_TOOLS[:2]})

        catalog = HTTPCatalog("https://merchant.test/", client=_catalog_client(handler))
        actions = catalog.list_actions()
        assert [a.id for a in actions] == ["market-data", "sentiment"]
        assert seen == ["https://merchant.test/api/v1/tools"]

    def test_cache_avoids_refetch(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(200, json=DEMO_TOOLS)

        catalog = HTTPCatalog("https://merchant.test", cache=TTLCache(60), client=_catalog_client(handler))
        catalog.list_actions()
        assert len(catalog.list_actions()) == len(DEMO_TOOLS)
        assert len(calls) == 1

    def test_http_error_is_provider_error(self):
        catalog = HTTPCatalog(
            "https://merchant.test",
            client=_catalog_client(lambda request: httpx.Response(503, text="down")),
        )
        with pytest.raises(ProviderError, match="Catalog request failed"):
            catalog.list_actions()

    def test_malformed_entries_skipped(self, caplog):
        tools = [
            DEMO_TOOLS[0],
            {"name": "No id", "priceUSD": 0.01},
            {"id": "bad-params", "priceUSD": 0.01, "parameters": [{"type": "string"}]},
            "not-a-tool",
            DEMO_TOOLS[1],
        ]
        catalog = HTTPCatalog(
            "https://merchant.test",
            client=_catalog_client(lambda request: httpx.Response(200, json={"tools": tools})),
        )
        with caplog.at_level("WARNING", logger="purser.gateway"):
            actions = catalog.list_actions()
        assert [a.id for a in actions] == ["market-data", "sentiment"]
        assert caplog.text.count("Skipping malformed catalog entry") == 3

    def test_non_json_is_provider_error(self):
        catalog = HTTPCatalog(
            "https://merchant.test",
            client=_catalog_client(lambda request: httpx.Response(200, text="<html>")),
        )
        with pytest.raises(ProviderError, match="not JSON"):
            catalog.list_actions()


class TestDryRunGateway:
    def test_canned_payload_and_settlement(self):
        gateway = demo_gateway()
        action = index_catalog(demo_actions())["market-data"]
        result = gateway.execute(action, {"pair": "ETH/USDC"})
        assert result.success
        assert result.data["pair"] == "ETH/USDC"
        assert result.settlement.amount_usd == 0.01
        assert result.settlement.tx_ref.startswith("dryrun-")
        assert gateway.calls == [("market-data", {"pair": "ETH/USDC"})]

    def test_configured_failure(self):
        gateway = DryRunGateway(failures={"sentiment": "Server unavailable (503)"})
        result = gateway.execute(index_catalog(demo_actions())["sentiment"], {})
        assert not result.success
        assert result.error == "Server unavailable (503)"
        assert result.settlement is None

    def test_satisfies_protocol(self):
        assert isinstance(demo_gateway(), PaymentGateway)


def test_static_catalog_returns_copy():
    catalog = StaticCatalog(demo_actions())
    catalog.list_actions().clear()
    assert len(catalog.list_actions()) == 6


def test_callback_sink_forwards_events():
    events = []
    CallbackSink(events.append).emit(Event(type="run:started", data={"run_id": "r"}))
    assert events[0].type == "run:started"

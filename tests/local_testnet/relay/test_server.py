"""Tests for the mock builder relay."""

from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import AsyncGenerator

import httpx
import pytest

from local_testnet.relay import RelayConfig, RelayServer
from local_testnet.relay.__main__ import serve
from local_testnet.relay.metrics import REGISTRY
from local_testnet.types import NodeRole

PUBKEY = "0x" + "ab" * 48


def _registration(
    pubkey: str = PUBKEY, fee_recipient: str = "0x" + "11" * 20
) -> dict[str, object]:
    return {
        "message": {
            "fee_recipient": fee_recipient,
            "gas_limit": "30000000",
            "timestamp": "1700000000",
            "pubkey": pubkey,
        },
        "signature": "0x" + "00" * 96,
    }


def _sample(name: str) -> float:
    return REGISTRY.get_sample_value(name) or 0.0


@pytest.fixture
def config(port_bases: dict[NodeRole, int]) -> RelayConfig:
    """Relay on this test's builder relay ports."""
    base = port_bases[NodeRole.BUILDER_RELAY]
    return RelayConfig(port=base + 1, metrics_port=base + 2, genesis_time=1_700_000_123)


@pytest.fixture
async def relay(config: RelayConfig) -> AsyncGenerator[RelayServer, None]:
    """Running relay, stopped after the test."""
    server = RelayServer(config)
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
async def client(config: RelayConfig) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client pointed at the relay's builder port."""
    async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{config.port}") as http:
        yield http


class TestStatus:
    """Builder status endpoint."""

    async def test_ok(self, relay: RelayServer, client: httpx.AsyncClient) -> None:
        """The relay reports itself up."""
        before = _sample("relay_status_requests_total")

        response = await client.get("/eth/v1/builder/status")

        assert response.status_code == 200
        assert _sample("relay_status_requests_total") == before + 1


class TestRegistrations:
    """Validator registrations."""

    async def test_accepted(self, relay: RelayServer, client: httpx.AsyncClient) -> None:
        """Registrations are stored by public key; re-registering replaces."""
        second = "0x" + "cd" * 48
        response = await client.post(
            "/eth/v1/builder/validators", json=[_registration(), _registration(second)]
        )
        assert response.status_code == 200

        updated = _registration(fee_recipient="0x" + "22" * 20)
        assert (await client.post("/eth/v1/builder/validators", json=[updated])).status_code == 200

        assert set(relay.registrations) == {PUBKEY, second}
        assert relay.registrations[PUBKEY].message.fee_recipient == "0x" + "22" * 20
        assert _sample("relay_registered_validators") == 2

    @pytest.mark.parametrize(
        "body",
        [
            [_registration(pubkey="0x1234")],
            [_registration(fee_recipient="not-an-address")],
            {"message": "not a list"},
        ],
    )
    async def test_rejected(
        self, relay: RelayServer, client: httpx.AsyncClient, body: object
    ) -> None:
        """Malformed batches are rejected whole."""
        response = await client.post("/eth/v1/builder/validators", json=body)

        assert response.status_code == 400
        assert response.json()["code"] == 400
        assert relay.registrations == {}

    async def test_not_json(self, relay: RelayServer, client: httpx.AsyncClient) -> None:
        """A body that is not JSON is a bad request."""
        response = await client.post("/eth/v1/builder/validators", content=b"{")
        assert response.status_code == 400


class TestBlocks:
    """Header and blinded block endpoints."""

    async def test_never_bids(self, relay: RelayServer, client: httpx.AsyncClient) -> None:
        """Every header request answers 204 so the proposer builds locally."""
        before = _sample("relay_header_requests_total")

        response = await client.get(f"/eth/v1/builder/header/12/0x{'00' * 32}/{PUBKEY}")

        assert response.status_code == 204
        assert _sample("relay_header_requests_total") == before + 1

    async def test_invalid_slot(self, relay: RelayServer, client: httpx.AsyncClient) -> None:
        """Non-numeric slots are rejected."""
        response = await client.get(f"/eth/v1/builder/header/abc/0x{'00' * 32}/{PUBKEY}")
        assert response.status_code == 400

    async def test_blinded_block_rejected(
        self, relay: RelayServer, client: httpx.AsyncClient
    ) -> None:
        """There is never a payload to reveal."""
        response = await client.post("/eth/v1/builder/blinded_blocks", json={})

        assert response.status_code == 400
        assert "never bids" in response.json()["message"]


class TestMetrics:
    """Prometheus endpoint."""

    async def test_on_both_ports(
        self, relay: RelayServer, client: httpx.AsyncClient, config: RelayConfig
    ) -> None:
        """Metrics are served on the builder port and the metrics port."""
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "relay_genesis_time " in response.text
        assert _sample("relay_genesis_time") == 1_700_000_123

        async with httpx.AsyncClient() as other:
            scraped = await other.get(f"http://127.0.0.1:{config.metrics_port}/metrics")
        assert "relay_status_requests_total" in scraped.text


class TestLifecycle:
    """Starting and stopping the server."""

    async def test_stop_is_idempotent(self, config: RelayConfig) -> None:
        """Stopping twice is harmless and releases the port."""
        server = RelayServer(config)
        await server.start()
        await server.stop()
        await server.stop()

        async with httpx.AsyncClient() as http:
            with pytest.raises(httpx.ConnectError):
                await http.get(f"http://127.0.0.1:{config.port}/eth/v1/builder/status")


class TestEntryPoint:
    """Running the relay as a process until it is signalled."""

    @pytest.mark.timeout(30)
    async def test_sigterm_shuts_down(self, config: RelayConfig) -> None:
        """SIGTERM stops the server, releases the port and lets serve return."""
        task = asyncio.create_task(serve(config))
        url = f"http://127.0.0.1:{config.port}/eth/v1/builder/status"

        async with httpx.AsyncClient() as http:
            while True:
                try:
                    await http.get(url)
                    break
                except httpx.ConnectError:
                    await asyncio.sleep(0.05)

            os.kill(os.getpid(), signal.SIGTERM)
            await asyncio.wait_for(task, timeout=5)

            with pytest.raises(httpx.ConnectError):
                await http.get(url)

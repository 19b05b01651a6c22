"""
Mock builder relay.

Speaks just enough of the builder API for a consensus node started with
``--builder`` to run in blinded-block mode:

- GET  /eth/v1/builder/status                                  -> 200
- POST /eth/v1/builder/validators                              -> 200, registrations stored
- GET  /eth/v1/builder/header/{slot}/{parent_hash}/{pubkey}    -> 204, never bids
- POST /eth/v1/builder/blinded_blocks                          -> 400, nothing to unblind
- GET  /metrics                                                -> Prometheus metrics

Since it never bids, every proposer falls back to building its block locally.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from aiohttp import web
from pydantic import Field, TypeAdapter, ValidationError

from local_testnet.types import FrozenModel

from . import metrics

logger = logging.getLogger(__name__)

STATUS_PATH = "/eth/v1/builder/status"
VALIDATORS_PATH = "/eth/v1/builder/validators"
HEADER_PATH = "/eth/v1/builder/header/{slot}/{parent_hash}/{pubkey}"
BLINDED_BLOCKS_PATH = "/eth/v1/builder/blinded_blocks"
METRICS_PATH = "/metrics"


class RegistrationMessage(FrozenModel):
    """Fee recipient preferences of one validator."""

    fee_recipient: str = Field(pattern=r"^0x[0-9a-fA-F]{40}$")
    gas_limit: str
    timestamp: str
    pubkey: str = Field(pattern=r"^0x[0-9a-fA-F]{96}$")


class SignedValidatorRegistration(FrozenModel):
    """A registration as posted by a validator client."""

    message: RegistrationMessage
    signature: str


_REGISTRATIONS = TypeAdapter(list[SignedValidatorRegistration])


def _error(status: int, message: str) -> web.Response:
    """Builder API error body."""
    return web.json_response({"code": status, "message": message}, status=status)


@dataclass(frozen=True, slots=True)
class RelayConfig:
    """Configuration for the relay server."""

    host: str = "127.0.0.1"
    """Host address to bind to."""

    port: int = 18550
    """Builder API port."""

    metrics_port: int | None = None
    """Separate port also serving ``/metrics``. None serves metrics on the builder port only."""

    network_id: int = 4242
    """Chain id of the served network, reported in logs."""

    genesis_time: int = 0
    """Genesis time of the served network."""


@dataclass(slots=True)
class RelayServer:
    """
    Builder relay that accepts registrations and never bids.

    Uses aiohttp; one application is bound to the builder port and, if
    configured, to the metrics port.
    """

    config: RelayConfig
    """Server configuration."""

    _registrations: dict[str, SignedValidatorRegistration] = field(
        default_factory=dict, init=False
    )
    """Latest registration per validator public key."""

    _runner: web.AppRunner | None = field(default=None, init=False)
    """The aiohttp application runner."""

    @property
    def registrations(self) -> dict[str, SignedValidatorRegistration]:
        """Latest registration per validator public key."""
        return dict(self._registrations)

    def application(self) -> web.Application:
        """Build the aiohttp application with every relay route."""
        app = web.Application()
        app.add_routes(
            [
                web.get(STATUS_PATH, self._handle_status),
                web.post(VALIDATORS_PATH, self._handle_register_validators),
                web.get(HEADER_PATH, self._handle_get_header),
                web.post(BLINDED_BLOCKS_PATH, self._handle_submit_blinded_block),
                web.get(METRICS_PATH, self._handle_metrics),
            ]
        )
        return app

    async def start(self) -> None:
        """Start serving in the background."""
        metrics.genesis_time.set(self.config.genesis_time)

        self._runner = web.AppRunner(self.application())
        await self._runner.setup()

        ports = [self.config.port]
        if self.config.metrics_port is not None:
            ports.append(self.config.metrics_port)
        for port in ports:
            await web.TCPSite(self._runner, self.config.host, port).start()

        logger.info(
            "Builder relay for network %d listening on %s:%d (metrics on %d)",
            self.config.network_id,
            self.config.host,
            self.config.port,
            ports[-1],
        )

    async def stop(self) -> None:
        """Gracefully stop the server."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Builder relay stopped")

    async def _handle_status(self, _request: web.Request) -> web.Response:
        """Handle builder status: the relay is up."""
        metrics.status_requests.inc()
        return web.json_response({})

    async def _handle_register_validators(self, request: web.Request) -> web.Response:
        """
        Handle validator registrations.

        Request: JSON array of signed registrations. The whole batch is rejected
        if any entry is malformed.

        Status Codes:
            200 OK: Every registration stored.
            400 Bad Request: Body is not a valid registration array.
        """
        try:
            registrations = _REGISTRATIONS.validate_json(await request.read())
        except ValidationError as e:
            return _error(400, f"invalid registrations: {e.error_count()} errors")

        for registration in registrations:
            self._registrations[registration.message.pubkey.lower()] = registration

        metrics.validator_registrations.inc(len(registrations))
        metrics.registered_validators.set(len(self._registrations))
        logger.debug("Accepted %d validator registrations", len(registrations))
        return web.json_response({})

    async def _handle_get_header(self, request: web.Request) -> web.Response:
        """
        Handle a header request.

        Status Codes:
            204 No Content: No bid for this slot; the proposer builds locally.
            400 Bad Request: Slot is not a number.
        """
        slot = request.match_info["slot"]
        if not slot.isdigit():
            return _error(400, f"invalid slot: {slot}")

        metrics.header_requests.inc()
        return web.Response(status=204)

    async def _handle_submit_blinded_block(self, _request: web.Request) -> web.Response:
        """Handle a blinded block: there is never a payload to reveal."""
        metrics.blinded_block_submissions.inc()
        return _error(400, "no payload: this relay never bids")

    async def _handle_metrics(self, _request: web.Request) -> web.Response:
        """Handle Prometheus metrics endpoint."""
        return web.Response(
            body=metrics.generate_metrics(),
            content_type="text/plain; version=0.0.4",
            charset="utf-8",
        )

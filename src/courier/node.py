# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import logging
from typing import Self

from courier.cache import CachedMessage, MessageCache
from courier.configuration import NodeConfiguration
from courier.directory import PeerDirectory
from courier.dispatcher import DispatchOutcome, Dispatcher
from courier.exceptions import ReceiveError, StorageError
from courier.identity import Identity
from courier.messages import Payload
from courier.receiver import Receiver, ReceiveState, Sink
from courier.transport import BundleTransport, DiscoveryService, RadioLink, RadioScanner, RadioTransport

__all__ = 'Node',  # noqa: COM818


logger = logging.getLogger(__name__)


def _log_delivery(sender: str, kind: Payload) -> None:
    logger.info('Received %r from %s', kind, sender)


class Node:
    """
    A store-and-forward node.

    The node owns the directory, the cache and the send and receive paths,
    and runs the loop that alternates a retry pass over the cached messages
    with receiving one inbound bundle.
    """

    _discovery: DiscoveryService | None

    def __init__(self, identity: Identity, directory: PeerDirectory, cache: MessageCache, bundle_transport: BundleTransport, radio_transport: RadioTransport | None = None, *, sink: Sink = _log_delivery, discovery_interval: float | None = None) -> None:
        self.identity = identity
        self.directory = directory
        self.cache = cache
        self.bundle_transport = bundle_transport
        self.radio_transport = radio_transport
        self.dispatcher = Dispatcher(identity, directory, cache, bundle_transport, radio_transport)
        self.receiver = Receiver(identity.private_key, directory, sink)
        self.discovery_interval = discovery_interval
        self._discovery = None

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}(identity={self.identity!r})'

    @classmethod
    def from_configuration(cls, configuration: NodeConfiguration, bundle_transport: BundleTransport, radio_link: RadioLink | None = None, *, sink: Sink = _log_delivery, password: str | None = None) -> Self:
        identity = Identity.from_file(configuration.eid, configuration.identity_key, password=password)
        directory = PeerDirectory()
        for peer in configuration.peers:
            directory.add(peer.eid, peer.address)
            if peer.public_key is not None:
                directory.register_key(peer.eid, peer.public_key)
        cache = MessageCache(configuration.cache_directory)
        radio_transport = RadioTransport(radio_link, chunk_size=configuration.radio.chunk_size, pacing=configuration.radio.pacing) if radio_link is not None else None
        return cls(identity, directory, cache, bundle_transport, radio_transport, sink=sink, discovery_interval=configuration.discovery_interval)

    # Operations

    async def send(self, destination: str, kind: Payload, *, encrypt: bool = False) -> DispatchOutcome:
        return await self.dispatcher.send(destination, kind, encrypt=encrypt)

    def add_peer(self, eid: str, address: str, *, public_key: bytes | None = None) -> None:
        if public_key is not None:
            self.directory.register_key(eid, public_key)
        self.directory.add(eid, address)

    def peers(self) -> list[tuple[str, str]]:
        return self.directory.all()

    def cached_messages(self) -> list[CachedMessage]:
        return self.cache.messages()

    # The dispatch/receive loop

    async def run_once(self) -> ReceiveState:
        try:
            delivered = await self.dispatcher.retry_pending()
        except StorageError as exc:
            logger.error('Failed to cache a message again during the retry pass: %s', exc)  # noqa: TRY400
        else:
            if delivered:
                logger.info('Delivered %d cached messages', delivered)
        bundle = await self.bundle_transport.receive()
        return await self.receiver.process(bundle)

    async def run(self) -> None:
        logger.info('Node %s is listening', self.identity.eid)
        while True:
            try:
                await self.run_once()
            except ReceiveError as exc:
                logger.warning('Failed to receive a bundle: %s', exc)

    listen = run

    # Discovery

    async def start_discovery(self, scanner: RadioScanner) -> DiscoveryService:
        if self._discovery is not None and self._discovery.running:
            return self._discovery
        kw = {} if self.discovery_interval is None else {'interval': self.discovery_interval}
        self._discovery = DiscoveryService(scanner, self.directory, local_eid=self.identity.eid, **kw)
        await self._discovery.start()
        return self._discovery

    async def stop(self) -> None:
        if self._discovery is not None:
            await self._discovery.stop()
            self._discovery = None

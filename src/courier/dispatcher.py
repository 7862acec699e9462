# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import logging
import time
from collections import deque
from enum import auto

from courier import crypto
from courier.cache import CachedMessage, MessageCache
from courier.directory import PeerDirectory, is_radio_address
from courier.exceptions import TransportError
from courier.identity import Identity
from courier.messages import Envelope, Payload
from courier.protocol import compose, seal_for_recipient
from courier.transport import BundleTransport, RadioTransport
from courier.types import MarkerEnum

__all__ = 'DispatchOutcome', 'Dispatcher'


logger = logging.getLogger(__name__)


class DispatchOutcome(MarkerEnum):
    Delivered = auto()
    Cached = auto()


class Dispatcher:
    """
    The send path: sign, optionally seal and deliver envelopes.

    Envelopes that cannot be delivered, because the destination is unknown
    or the transport failed, are stored in the cache and retried on the
    next retry pass.
    """

    def __init__(self, identity: Identity, directory: PeerDirectory, cache: MessageCache, bundle_transport: BundleTransport, radio_transport: RadioTransport | None = None) -> None:
        self.identity = identity
        self.directory = directory
        self.cache = cache
        self.bundle_transport = bundle_transport
        self.radio_transport = radio_transport

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}(identity={self.identity!r})'

    def envelope_for(self, destination: str, kind: Payload, *, encrypt: bool = False, timestamp: int | None = None) -> Envelope:
        if timestamp is None:
            timestamp = int(time.time())
        signed_envelope = compose(self.identity.eid, kind, timestamp, self.identity.private_key)
        if not encrypt:
            return Envelope.plain(signed_envelope)
        recipient_key = self.directory.get_key(destination)
        if recipient_key is None:
            logger.warning('No public key is known for %s, sending the message unencrypted', destination)
            return Envelope.plain(signed_envelope)
        return seal_for_recipient(signed_envelope.to_wire(), crypto.load_public_key(recipient_key))

    async def send(self, destination: str, kind: Payload, *, encrypt: bool = False) -> DispatchOutcome:
        envelope = self.envelope_for(destination, kind, encrypt=encrypt)
        return await self.deliver(destination, envelope.to_wire())

    async def deliver(self, destination: str, data: bytes) -> DispatchOutcome:
        """Deliver serialized envelope data to destination, caching it if that is not possible"""
        address = self.directory.get(destination)
        if address is None:
            logger.info('Destination %s is unknown, caching the message', destination)
            self.cache.put(CachedMessage(destination=destination, payload=data))
            return DispatchOutcome.Cached
        try:
            if is_radio_address(address):
                if self.radio_transport is None:
                    raise TransportError(f'No radio transport is available to reach {address}')
                await self.radio_transport.send(address, data)
            else:
                await self.bundle_transport.send(address, data)
        except (TransportError, OSError) as exc:
            logger.info('Failed to deliver the message to %s at %s, caching it: %s', destination, address, exc)
            self.cache.put(CachedMessage(destination=destination, payload=data))
            return DispatchOutcome.Cached
        logger.info('Delivered the message to %s at %s', destination, address)
        return DispatchOutcome.Delivered

    async def retry_pending(self) -> int:
        """
        Try to deliver all the cached messages once. Return how many were delivered.

        Messages that still cannot be delivered are cached again. A cached
        message keeps its record until it was either delivered or cached
        again, so when storing fails the messages not processed yet are put
        back into the cache and the StorageError propagates.
        """
        pending = deque(self.cache.drain())
        delivered = 0
        try:
            while pending:
                message = pending[0].message
                if await self.deliver(message.destination, message.payload) is DispatchOutcome.Delivered:
                    delivered += 1
                self.cache.release(pending.popleft())
        finally:
            if pending:
                logger.warning('Retry pass interrupted with %d messages left, keeping them in the cache', len(pending))
                self.cache.restore(pending)
        return delivered

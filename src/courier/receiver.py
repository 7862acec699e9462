# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import logging
from collections.abc import Awaitable, Callable
from enum import auto
from inspect import isawaitable

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from courier.directory import PeerDirectory
from courier.exceptions import DecryptionError, ParseError
from courier.messages import Envelope, Payload
from courier.protocol import open_envelope, verify_envelope
from courier.transport import InboundBundle
from courier.types import MarkerEnum

__all__ = 'ReceiveState', 'Receiver', 'Sink'


logger = logging.getLogger(__name__)


type Sink = Callable[[str, Payload], Awaitable[None] | None]


class ReceiveState(MarkerEnum):
    RawReceived = auto()
    OuterParsed = auto()
    Decrypted = auto()
    InnerParsed = auto()
    Verified = auto()
    VerificationFailed = auto()
    Delivered = auto()
    Dropped = auto()


class Receiver:
    """
    The receive path for inbound bundles.

    Each bundle goes through the following states:

        RawReceived -> OuterParsed -> [Decrypted] -> InnerParsed -> Verified -> Delivered
                                                                 -> VerificationFailed

    Bundles that cannot be parsed or decrypted end up Dropped, as do the
    verified envelopes that carry a payload kind that is not known. Only
    the exceptions raised by the sink are propagated to the caller.
    """

    def __init__(self, private_key: RSAPrivateKey, directory: PeerDirectory, sink: Sink) -> None:
        self.private_key = private_key
        self.directory = directory
        self.sink = sink

    async def process(self, bundle: InboundBundle) -> ReceiveState:
        state = ReceiveState.RawReceived
        logger.debug('Received %d bytes from %s (%s)', len(bundle.data), bundle.origin or 'unknown origin', state.name)

        try:
            envelope = Envelope.parse(bundle.data)
        except ParseError as exc:
            logger.warning('Dropped inbound bundle with a malformed envelope: %s', exc)
            return ReceiveState.Dropped
        state = ReceiveState.OuterParsed
        logger.debug('Parsed %s envelope (%s)', envelope.type.name, state.name)

        try:
            signed_envelope = open_envelope(envelope, self.private_key)
        except DecryptionError as exc:
            logger.warning('Dropped inbound envelope that cannot be decrypted: %s', exc)
            return ReceiveState.Dropped
        except ParseError as exc:
            logger.warning('Dropped inbound envelope with malformed encrypted content: %s', exc)
            return ReceiveState.Dropped
        if envelope.encrypted:
            logger.debug('Decrypted envelope from %s (%s)', signed_envelope.sender, ReceiveState.Decrypted.name)
        state = ReceiveState.InnerParsed
        logger.debug('Parsed signed envelope from %s (%s)', signed_envelope.sender, state.name)

        sender = signed_envelope.sender
        if not verify_envelope(signed_envelope):
            logger.warning('Dropped envelope from %s with an invalid signature', sender)
            return ReceiveState.VerificationFailed
        if not self.directory.remember_key(sender, signed_envelope.sender_key):
            logger.warning('Dropped envelope from %s signed with a key that does not match the pinned one', sender)
            return ReceiveState.VerificationFailed
        state = ReceiveState.Verified
        logger.debug('Verified envelope from %s (%s)', sender, state.name)

        self.directory.learn_address(sender, bundle.origin)

        kind = signed_envelope.kind
        if not isinstance(kind, Payload):
            logger.warning('Ignored envelope from %s with unknown payload kind %d', sender, signed_envelope.content.kind_type)
            return ReceiveState.Dropped

        result = self.sink(sender, kind)
        if isawaitable(result):
            await result
        logger.info('Delivered %s from %s', kind.__class__.__name__, sender)
        return ReceiveState.Delivered

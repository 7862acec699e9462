# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import asyncio
import tempfile
import unittest
from pathlib import Path
from typing import ClassVar
from unittest import mock

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from courier import crypto
from courier.cache import CachedMessage, MessageCache
from courier.configuration import NodeConfiguration
from courier.directory import PeerDirectory
from courier.dispatcher import DispatchOutcome, Dispatcher
from courier.exceptions import ReceiveError, SendError, StorageError
from courier.identity import Identity
from courier.messages import Alert, Envelope, Payload, SignedContent, SignedEnvelope
from courier.messages.datamodel import Opaque32, UInt16
from courier.node import Node
from courier.protocol import compose, seal_for_recipient, verify_envelope
from courier.receiver import Receiver, ReceiveState
from courier.transport import BundleTransport, InboundBundle, RadioTransport


class FakeBundleTransport:
    def __init__(self) -> None:
        self.sent: list[tuple[str, bytes]] = []
        self.inbound = asyncio.Queue[InboundBundle | Exception]()
        self.failing = False

    async def send(self, destination: str, data: bytes, /) -> None:
        if self.failing:
            raise SendError(f'no contact with {destination}')
        self.sent.append((destination, data))

    async def receive(self) -> InboundBundle:
        item = await self.inbound.get()
        if isinstance(item, Exception):
            raise item
        return item


class FakeRadioLink:
    def __init__(self) -> None:
        self.writes: list[tuple[str, bytes]] = []

    async def write(self, address: str, chunk: bytes, /) -> None:
        self.writes.append((address, chunk))


class Inbox:
    def __init__(self) -> None:
        self.messages: list[tuple[str, Payload]] = []

    def __call__(self, sender: str, kind: Payload) -> None:
        self.messages.append((sender, kind))


class StopNode(Exception):
    pass


class _NodeTestCase(unittest.IsolatedAsyncioTestCase):
    alice_key: ClassVar[RSAPrivateKey]
    bob_key: ClassVar[RSAPrivateKey]
    mallory_key: ClassVar[RSAPrivateKey]

    @classmethod
    def setUpClass(cls) -> None:
        cls.alice_key = crypto.generate_private_key()
        cls.bob_key = crypto.generate_private_key()
        cls.mallory_key = crypto.generate_private_key()

    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        self.path = Path(self._tempdir.name)
        self.alice = Identity('dtn://alice', self.alice_key)
        self.bob = Identity('dtn://bob', self.bob_key)
        self.directory = PeerDirectory()
        self.cache = MessageCache(self.path / 'cache')
        self.transport = FakeBundleTransport()
        self.radio_link = FakeRadioLink()
        self.dispatcher = Dispatcher(self.alice, self.directory, self.cache, self.transport, RadioTransport(self.radio_link, pacing=0))

    def tearDown(self) -> None:
        self._tempdir.cleanup()


class TestDispatcher(_NodeTestCase):

    def test_protocol(self) -> None:
        self.assertIsInstance(self.transport, BundleTransport)

    async def test_unknown_destination_is_cached(self) -> None:
        outcome = await self.dispatcher.send('dtn://bob', Alert(text='hello', urgency=1))
        self.assertIs(outcome, DispatchOutcome.Cached)
        self.assertEqual(self.transport.sent, [])
        [message] = self.cache.messages()
        self.assertEqual(message.destination, 'dtn://bob')
        self.assertEqual(Envelope.parse(message.payload).body.kind, Alert(text='hello', urgency=1))

    async def test_bundle_delivery(self) -> None:
        self.directory.add('dtn://bob', 'dtn://bob/inbox')
        outcome = await self.dispatcher.send('dtn://bob', Alert(text='hello', urgency=1))
        self.assertIs(outcome, DispatchOutcome.Delivered)
        [(address, data)] = self.transport.sent
        self.assertEqual(address, 'dtn://bob/inbox')
        envelope = Envelope.parse(data)
        self.assertFalse(envelope.encrypted)
        self.assertEqual(envelope.body.sender, 'dtn://alice')
        self.assertTrue(verify_envelope(envelope.body))
        self.assertEqual(len(self.cache), 0)

    async def test_radio_delivery(self) -> None:
        self.directory.discovered('dtn://bob')
        outcome = await self.dispatcher.send('dtn://bob', Alert(text='x' * 500, urgency=1))
        self.assertIs(outcome, DispatchOutcome.Delivered)
        self.assertEqual(self.transport.sent, [])
        self.assertGreater(len(self.radio_link.writes), 2)
        self.assertTrue(all(address == 'ble:dtn://bob' and len(chunk) <= 200 for address, chunk in self.radio_link.writes))
        envelope = Envelope.parse(b''.join(chunk for _, chunk in self.radio_link.writes))
        self.assertEqual(envelope.body.kind.text, 'x' * 500)

    async def test_radio_without_transport_is_cached(self) -> None:
        dispatcher = Dispatcher(self.alice, self.directory, self.cache, self.transport)
        self.directory.discovered('dtn://bob')
        self.assertIs(await dispatcher.send('dtn://bob', Alert(text='hello', urgency=1)), DispatchOutcome.Cached)
        self.assertEqual(len(self.cache), 1)

    async def test_transport_failure_is_cached(self) -> None:
        self.directory.add('dtn://bob', 'dtn://bob/inbox')
        self.transport.failing = True
        self.assertIs(await self.dispatcher.send('dtn://bob', Alert(text='hello', urgency=1)), DispatchOutcome.Cached)
        self.assertEqual([message.destination for message in self.cache.messages()], ['dtn://bob'])

    async def test_encryption(self) -> None:
        self.directory.add('dtn://bob', 'dtn://bob/inbox')
        self.directory.register_key('dtn://bob', crypto.public_key_der(self.bob_key))
        await self.dispatcher.send('dtn://bob', Alert(text='top secret', urgency=9), encrypt=True)
        [(_, data)] = self.transport.sent
        envelope = Envelope.parse(data)
        self.assertTrue(envelope.encrypted)
        self.assertNotIn(b'top secret', data)
        self.assertNotIn(b'dtn://alice', data)

    async def test_encryption_without_recipient_key(self) -> None:
        self.directory.add('dtn://bob', 'dtn://bob/inbox')
        with self.assertLogs('courier.dispatcher', level='WARNING') as logs:
            await self.dispatcher.send('dtn://bob', Alert(text='hello', urgency=1), encrypt=True)
        self.assertIn('sending the message unencrypted', logs.output[0])
        [(_, data)] = self.transport.sent
        self.assertFalse(Envelope.parse(data).encrypted)

    async def test_retry_pending(self) -> None:
        await self.dispatcher.send('dtn://bob', Alert(text='one', urgency=1))
        await self.dispatcher.send('dtn://bob', Alert(text='two', urgency=1))
        await self.dispatcher.send('dtn://carol', Alert(text='three', urgency=1))
        self.assertEqual(len(self.cache), 3)

        self.assertEqual(await self.dispatcher.retry_pending(), 0)
        self.assertEqual(len(self.cache), 3)

        self.directory.add('dtn://bob', 'dtn://bob/inbox')
        self.assertEqual(await self.dispatcher.retry_pending(), 2)
        self.assertEqual([Envelope.parse(data).body.kind.text for _, data in self.transport.sent], ['one', 'two'])
        self.assertEqual([message.destination for message in self.cache.messages()], ['dtn://carol'])

    async def test_retry_failures_are_cached_again(self) -> None:
        self.directory.add('dtn://bob', 'dtn://bob/inbox')
        self.cache.put(CachedMessage(destination='dtn://bob', payload=b'opaque'))
        self.transport.failing = True
        self.assertEqual(await self.dispatcher.retry_pending(), 0)
        self.assertEqual(self.cache.messages(), [CachedMessage(destination='dtn://bob', payload=b'opaque')])
        self.transport.failing = False
        self.assertEqual(await self.dispatcher.retry_pending(), 1)
        self.assertEqual(self.transport.sent, [('dtn://bob/inbox', b'opaque')])

    async def test_retry_keeps_pending_messages_when_storage_fails(self) -> None:
        self.directory.add('dtn://bob', 'dtn://bob/inbox')
        first = CachedMessage(destination='dtn://bob', payload=b'first')
        stuck = CachedMessage(destination='dtn://carol', payload=b'stuck')
        last = CachedMessage(destination='dtn://bob', payload=b'last')
        for message in (first, stuck, last):
            self.cache.put(message)

        with mock.patch.object(self.cache, '_write_record', side_effect=OSError(28, 'No space left on device')), self.assertRaises(StorageError):
            await self.dispatcher.retry_pending()

        self.assertEqual(self.transport.sent, [('dtn://bob/inbox', b'first')])
        self.assertEqual(self.cache.messages(), [stuck, last])
        self.assertEqual(MessageCache(self.path / 'cache').messages(), [stuck, last])

        self.directory.add('dtn://carol', 'dtn://carol/inbox')
        self.assertEqual(await self.dispatcher.retry_pending(), 2)
        self.assertEqual(MessageCache(self.path / 'cache').messages(), [])


class TestReceiver(_NodeTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.inbox = Inbox()
        self.bob_directory = PeerDirectory()
        self.receiver = Receiver(self.bob_key, self.bob_directory, self.inbox)

    def envelope_data(self, kind: Payload, *, private_key: RSAPrivateKey | None = None, sender: str = 'dtn://alice') -> bytes:
        signed_envelope = compose(sender, kind, 1700000000, private_key or self.alice_key)
        return Envelope.plain(signed_envelope).to_wire()

    async def test_plain_delivery(self) -> None:
        state = await self.receiver.process(InboundBundle(self.envelope_data(Alert(text='hello', urgency=2))))
        self.assertIs(state, ReceiveState.Delivered)
        self.assertEqual(self.inbox.messages, [('dtn://alice', Alert(text='hello', urgency=2))])
        self.assertEqual(self.bob_directory.get_key('dtn://alice'), crypto.public_key_der(self.alice_key))

    async def test_sealed_delivery(self) -> None:
        signed_envelope = compose('dtn://alice', Alert(text='secret', urgency=2), 1, self.alice_key)
        data = seal_for_recipient(signed_envelope.to_wire(), self.bob_key.public_key()).to_wire()
        self.assertIs(await self.receiver.process(InboundBundle(data)), ReceiveState.Delivered)
        self.assertEqual(self.inbox.messages, [('dtn://alice', Alert(text='secret', urgency=2))])

    async def test_sealed_for_someone_else(self) -> None:
        signed_envelope = compose('dtn://alice', Alert(text='secret', urgency=2), 1, self.alice_key)
        data = seal_for_recipient(signed_envelope.to_wire(), self.mallory_key.public_key()).to_wire()
        with self.assertLogs('courier.receiver', level='WARNING'):
            self.assertIs(await self.receiver.process(InboundBundle(data)), ReceiveState.Dropped)
        self.assertEqual(self.inbox.messages, [])

    async def test_malformed_bundles(self) -> None:
        data = self.envelope_data(Alert(text='hello', urgency=2))
        for malformed in (b'', b'garbage', data[:-3], data + b'\x00'):
            with self.assertLogs('courier.receiver', level='WARNING'):
                self.assertIs(await self.receiver.process(InboundBundle(malformed)), ReceiveState.Dropped)
        self.assertEqual(self.inbox.messages, [])

    async def test_tampered_envelope(self) -> None:
        data = bytearray(self.envelope_data(Alert(text='pay 10', urgency=2)))
        data[data.index(b'pay 10') + 4] = ord('9')
        with self.assertLogs('courier.receiver', level='WARNING') as logs:
            self.assertIs(await self.receiver.process(InboundBundle(bytes(data))), ReceiveState.VerificationFailed)
        self.assertIn('invalid signature', logs.output[0])
        self.assertEqual(self.inbox.messages, [])
        self.assertIsNone(self.bob_directory.get_key('dtn://alice'))

    async def test_impersonation_with_another_key(self) -> None:
        self.bob_directory.register_key('dtn://alice', crypto.public_key_der(self.alice_key))
        data = self.envelope_data(Alert(text='I am alice', urgency=2), private_key=self.mallory_key)
        with self.assertLogs('courier.receiver', level='WARNING'):
            self.assertIs(await self.receiver.process(InboundBundle(data)), ReceiveState.VerificationFailed)
        self.assertEqual(self.inbox.messages, [])

    async def test_unknown_kind(self) -> None:
        content = SignedContent(sender='dtn://alice', kind_type=UInt16(99), kind=Opaque32(b'future payload'), timestamp=1)
        signed_envelope = SignedEnvelope(content=content, sender_key=crypto.public_key_der(self.alice_key), signature=crypto.sign(content.to_wire(), self.alice_key))
        data = Envelope.plain(signed_envelope).to_wire()
        with self.assertLogs('courier.receiver', level='WARNING') as logs:
            self.assertIs(await self.receiver.process(InboundBundle(data)), ReceiveState.Dropped)
        self.assertIn('unknown payload kind 99', logs.output[0])
        self.assertEqual(self.inbox.messages, [])

    async def test_address_learning(self) -> None:
        self.bob_directory.discovered('dtn://alice')
        await self.receiver.process(InboundBundle(self.envelope_data(Alert(text='hi', urgency=0))))
        self.assertEqual(self.bob_directory.get('dtn://alice'), 'ble:dtn://alice')
        await self.receiver.process(InboundBundle(self.envelope_data(Alert(text='hi', urgency=0)), origin='dtn://alice/inbox'))
        self.assertEqual(self.bob_directory.get('dtn://alice'), 'dtn://alice/inbox')

    async def test_no_address_learning_from_forgeries(self) -> None:
        self.bob_directory.discovered('dtn://alice')
        data = bytearray(self.envelope_data(Alert(text='hi', urgency=0)))
        data[-1] ^= 1  # corrupt the signature
        await self.receiver.process(InboundBundle(bytes(data), origin='dtn://mallory/inbox'))
        self.assertEqual(self.bob_directory.get('dtn://alice'), 'ble:dtn://alice')

    async def test_async_sink(self) -> None:
        received = asyncio.Event()

        async def sink(sender: str, kind: Payload) -> None:
            received.set()

        receiver = Receiver(self.bob_key, self.bob_directory, sink)
        self.assertIs(await receiver.process(InboundBundle(self.envelope_data(Alert(text='hi', urgency=0)))), ReceiveState.Delivered)
        self.assertTrue(received.is_set())

    async def test_sink_errors_propagate(self) -> None:
        def sink(sender: str, kind: Payload) -> None:
            raise StopNode

        receiver = Receiver(self.bob_key, self.bob_directory, sink)
        with self.assertRaises(StopNode):
            await receiver.process(InboundBundle(self.envelope_data(Alert(text='hi', urgency=0))))


class TestNode(_NodeTestCase):

    async def test_end_to_end(self) -> None:
        alice_transport = FakeBundleTransport()
        bob_transport = FakeBundleTransport()
        bob_inbox = Inbox()
        alice = Node(self.alice, PeerDirectory(), MessageCache(self.path / 'alice'), alice_transport)
        bob = Node(self.bob, PeerDirectory(), MessageCache(self.path / 'bob'), bob_transport, sink=bob_inbox)

        alice.add_peer('dtn://bob', 'dtn://bob/inbox', public_key=crypto.public_key_der(self.bob_key))
        self.assertEqual(alice.peers(), [('dtn://bob', 'dtn://bob/inbox')])

        self.assertIs(await alice.send('dtn://bob', Alert(text='sealed hello', urgency=5), encrypt=True), DispatchOutcome.Delivered)
        [(_, data)] = alice_transport.sent
        bob_transport.inbound.put_nowait(InboundBundle(data, origin='dtn://alice/inbox'))

        self.assertIs(await bob.run_once(), ReceiveState.Delivered)
        self.assertEqual(bob_inbox.messages, [('dtn://alice', Alert(text='sealed hello', urgency=5))])

    async def test_run_once_retries_before_receiving(self) -> None:
        node = Node(self.alice, self.directory, self.cache, self.transport)
        await node.send('dtn://bob', Alert(text='queued', urgency=1))
        self.assertEqual(len(node.cached_messages()), 1)
        node.add_peer('dtn://bob', 'dtn://bob/inbox')
        self.transport.inbound.put_nowait(InboundBundle(b'noise'))
        self.assertIs(await node.run_once(), ReceiveState.Dropped)
        self.assertEqual(node.cached_messages(), [])
        self.assertEqual(len(self.transport.sent), 1)

    async def test_run_once_survives_storage_errors(self) -> None:
        node = Node(self.alice, self.directory, self.cache, self.transport)
        await node.send('dtn://bob', Alert(text='queued', urgency=1))
        [queued] = node.cached_messages()
        self.transport.inbound.put_nowait(InboundBundle(b'noise'))
        with mock.patch.object(self.cache, '_write_record', side_effect=OSError(28, 'No space left on device')), self.assertLogs('courier.node', level='ERROR') as logs:
            self.assertIs(await node.run_once(), ReceiveState.Dropped)
        self.assertIn('No space left on device', logs.output[0])
        self.assertEqual(node.cached_messages(), [queued])

    async def test_add_peer_rejects_invalid_keys(self) -> None:
        node = Node(self.alice, self.directory, self.cache, self.transport)
        with self.assertRaises(ValueError):
            node.add_peer('dtn://bob', 'dtn://bob/inbox', public_key=b'not a key')
        self.assertEqual(node.peers(), [])
        self.assertIsNone(self.directory.get_key('dtn://bob'))

    async def test_run_survives_receive_errors(self) -> None:
        def sink(sender: str, kind: Payload) -> None:
            raise StopNode

        node = Node(self.bob, PeerDirectory(), MessageCache(self.path / 'bob'), self.transport, sink=sink)
        self.transport.inbound.put_nowait(ReceiveError('link reset'))
        self.transport.inbound.put_nowait(InboundBundle(b'garbage'))
        self.transport.inbound.put_nowait(InboundBundle(Envelope.plain(compose('dtn://alice', Alert(text='stop', urgency=0), 1, self.alice_key)).to_wire()))
        with self.assertLogs('courier.node', level='WARNING') as logs, self.assertRaises(StopNode):
            await asyncio.wait_for(node.run(), timeout=5)
        self.assertIn('link reset', logs.output[0])

    async def test_from_configuration(self) -> None:
        (self.path / 'bob.pem').write_bytes(self.bob_key.public_key().public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo))
        (self.path / 'node.xml').write_text(
            '<node xmlns="urn:courier:config" eid="dtn://alice">'
            '  <discovery-interval>1</discovery-interval>'
            '  <radio chunk-size="50" pacing="0"/>'
            '  <peer eid="dtn://bob" address="dtn://bob/inbox" public-key="bob.pem"/>'
            '</node>',
        )
        configuration = NodeConfiguration.from_file(self.path / 'node.xml')
        node = Node.from_configuration(configuration, self.transport, FakeRadioLink())
        self.assertEqual(node.identity.eid, 'dtn://alice')
        self.assertTrue((self.path / 'id.pem').exists())
        self.assertTrue((self.path / 'cache').is_dir())
        self.assertEqual(node.peers(), [('dtn://bob', 'dtn://bob/inbox')])
        self.assertEqual(node.directory.get_key('dtn://bob'), crypto.public_key_der(self.bob_key))
        self.assertEqual(node.radio_transport.chunk_size, 50)
        self.assertEqual(node.discovery_interval, 1.0)

        again = Node.from_configuration(configuration, self.transport)
        self.assertEqual(again.identity.public_key_der, node.identity.public_key_der)
        self.assertIsNone(again.radio_transport)

    async def test_discovery(self) -> None:
        class Scanner:
            async def scan(self) -> list[str]:
                return ['DTN:dtn://bob', 'DTN:dtn://alice']

        node = Node(self.alice, self.directory, self.cache, self.transport, discovery_interval=0.01)
        service = await node.start_discovery(Scanner())
        self.assertIs(await node.start_discovery(Scanner()), service)
        for _ in range(100):
            if 'dtn://bob' in self.directory:
                break
            await asyncio.sleep(0.01)
        await node.stop()
        self.assertFalse(service.running)
        self.assertEqual(self.directory.all(), [('dtn://bob', 'ble:dtn://bob')])

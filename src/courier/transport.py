# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from courier import aio
from courier.directory import PeerDirectory
from courier.exceptions import SendError

__all__ = (  # noqa: RUF022
    'BundleTransport',
    'RadioLink',
    'RadioScanner',
    'InboundBundle',

    'RadioTransport',
    'DiscoveryService',

    'DEFAULT_CHUNK_SIZE',
    'DEFAULT_PACING',
    'DEFAULT_DISCOVERY_INTERVAL',
    'ADVERTISEMENT_PREFIX',
)


logger = logging.getLogger(__name__)


DEFAULT_CHUNK_SIZE = 200  # bytes
DEFAULT_PACING = 0.02  # seconds
DEFAULT_DISCOVERY_INTERVAL = 5.0  # seconds

ADVERTISEMENT_PREFIX = 'DTN:'


@dataclass(frozen=True, slots=True)
class InboundBundle:
    data: bytes
    origin: str | None = None  # the transport level address the bundle came from, if known


# Collaborators

@runtime_checkable
class BundleTransport(Protocol):
    async def send(self, destination: str, data: bytes, /) -> None: ...

    async def receive(self) -> InboundBundle: ...


@runtime_checkable
class RadioLink(Protocol):
    async def write(self, address: str, chunk: bytes, /) -> None:
        """Write a chunk to the peer and wait for it to be acknowledged"""


@runtime_checkable
class RadioScanner(Protocol):
    async def scan(self) -> Iterable[str]:
        """Return the local names advertised by the peers in range"""


# Radio transport

class RadioTransport:
    """Send data over a radio link in paced chunks that are each acknowledged by the peer"""

    def __init__(self, link: RadioLink, *, chunk_size: int = DEFAULT_CHUNK_SIZE, pacing: float = DEFAULT_PACING) -> None:
        if chunk_size <= 0:
            raise ValueError('chunk_size must be a positive integer')
        if pacing < 0:
            raise ValueError('pacing must be a non-negative number')
        self.link = link
        self.chunk_size = chunk_size
        self.pacing = pacing

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({self.link!r}, chunk_size={self.chunk_size!r}, pacing={self.pacing!r})'

    def chunks(self, data: bytes) -> list[bytes]:
        return [data[offset:offset + self.chunk_size] for offset in range(0, len(data), self.chunk_size)]

    async def send(self, address: str, data: bytes) -> None:
        chunks = self.chunks(data)
        for index, chunk in enumerate(chunks, start=1):
            try:
                await self.link.write(address, chunk)
            except (OSError, TimeoutError) as exc:
                raise SendError(f'Failed to write chunk {index}/{len(chunks)} to {address}: {exc}') from exc
            logger.debug('Wrote chunk %d/%d (%d bytes) to %s', index, len(chunks), len(chunk), address)
            if index < len(chunks) and self.pacing:
                await asyncio.sleep(self.pacing)


# Discovery

class DiscoveryService:
    """
    Periodically scan for peers that advertise themselves over the radio.

    The scanning task only reports the newly seen endpoints on a channel,
    while a separate task consumes the channel and updates the directory.
    """

    _scan_task: asyncio.Task[None]
    _update_task: asyncio.Task[None]

    def __init__(self, scanner: RadioScanner, directory: PeerDirectory, *, local_eid: str, interval: float = DEFAULT_DISCOVERY_INTERVAL) -> None:
        self.scanner = scanner
        self.directory = directory
        self.local_eid = local_eid
        self.interval = interval
        self.events = aio.Channel[str]()
        self._seen: set[str] = set()
        self._started = False
        self._stopped = False
        self._scan_task = NotImplemented    # will be set upon start
        self._update_task = NotImplemented  # will be set upon start

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({self.scanner!r}, local_eid={self.local_eid!r}, interval={self.interval!r})'

    @property
    def running(self) -> bool:
        return self._started and not self._stopped and not self._scan_task.done()

    @staticmethod
    def parse_advertisement(name: str) -> str | None:
        if name.startswith(ADVERTISEMENT_PREFIX) and len(name) > len(ADVERTISEMENT_PREFIX):
            return name.removeprefix(ADVERTISEMENT_PREFIX)
        return None

    async def scan_once(self) -> list[str]:
        """Run one scan and report the endpoints that were not seen before"""
        found = []
        for name in await self.scanner.scan():
            eid = self.parse_advertisement(name)
            if eid is None or eid == self.local_eid or eid in self._seen:
                continue
            self._seen.add(eid)
            self.events.send_nowait(eid)
            found.append(eid)
        return found

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._scan_task = asyncio.create_task(self._scan_loop(), name='discovery scanner')
        self._update_task = asyncio.create_task(self._update_loop(), name='discovery directory updater')

    async def stop(self) -> None:
        if not self._started or self._stopped:
            return
        self._stopped = True
        self._scan_task.cancel()
        self.events.close()
        await asyncio.gather(self._scan_task, self._update_task, return_exceptions=True)

    async def _scan_loop(self) -> None:
        while True:
            try:
                found = await self.scan_once()
            except Exception as exc:  # noqa: BLE001
                logger.warning('Peer discovery scan failed: %s', exc)
            else:
                if found:
                    logger.debug('Discovery scan found %d new peers', len(found))
            await asyncio.sleep(self.interval)

    async def _update_loop(self) -> None:
        async for eid in self.events:
            self.directory.discovered(eid)

# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from asyncio import AbstractEventLoop, CancelledError, Future, get_running_loop
from collections import deque
from typing import Self

__all__ = 'Channel', 'WouldBlock', 'ClosedResourceError', 'EndOfChannel'


class WouldBlock(Exception):
    """Raised by ``X_nowait`` functions if ``X`` would block."""


class ClosedResourceError(Exception):
    """
    Raised when attempting to use a resource after it has been closed.

    Note that "closed" here means that the resource was explicitly closed,
    generally by calling a method with a name like ``close``, or by exiting
    a context manager that calls it on exit.

    """


class EndOfChannel(Exception):
    """
    Raised when trying to receive from a :class:`Channel` that was closed
    and has no more data to receive.

    This is similar to the "end-of-file" condition, but for channels.

    """


class Channel[T]:
    """
    An unbounded single loop channel.

    Senders never block, which makes it possible to send from code that
    cannot await, while receivers wait until a value is available or the
    channel is closed. Values sent before closing can still be received
    after the channel was closed.
    """

    def __init__(self) -> None:
        self._queue = deque[T]()
        self._readers = deque[Future[T]]()
        self._closed = False

    @property
    def _loop(self) -> AbstractEventLoop:
        loop = get_running_loop()
        if self.__dict__.setdefault('_bound_loop', loop) is not loop:
            raise RuntimeError(f'{self!r} is bound to a different event loop')
        return loop

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._queue)

    def send_nowait(self, value: T) -> None:
        if self._closed:
            raise ClosedResourceError
        while self._readers:
            future = self._readers.popleft()
            if not future.cancelled():
                future.set_result(value)
                return
        self._queue.append(value)

    def receive_nowait(self) -> T:
        if self._queue:
            return self._queue.popleft()
        if self._closed:
            raise EndOfChannel
        raise WouldBlock

    async def receive(self) -> T:
        try:
            return self.receive_nowait()
        except WouldBlock:
            future = self._loop.create_future()
            self._readers.append(future)
            try:
                return await future
            except CancelledError:
                if future in self._readers:
                    self._readers.remove(future)
                raise

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while self._readers:
            # terminate pending readers as they would otherwise wait forever.
            future = self._readers.popleft()
            if not future.cancelled():
                future.set_exception(EndOfChannel)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        self.close()

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> T:
        try:
            return await self.receive()
        except EndOfChannel as exc:
            raise StopAsyncIteration from exc

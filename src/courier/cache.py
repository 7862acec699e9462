# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from operator import attrgetter
from os import PathLike
from pathlib import Path
from tempfile import NamedTemporaryFile
from threading import Lock

from courier.exceptions import StorageError
from courier.messages import CachedRecord

__all__ = 'CachedMessage', 'CacheEntry', 'MessageCache'


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CachedMessage:
    destination: str
    payload: bytes


@dataclass(frozen=True, slots=True)
class CacheEntry:
    sequence: int
    message: CachedMessage


class MessageCache:
    """
    Durable store for messages that could not be delivered yet.

    Every message is persisted in its own record file, named after a
    sequence number that increases with every put, so messages for the
    same destination never overwrite each other. The records found in
    the directory are loaded back when the cache is created.
    """

    suffix = '.msg'

    def __init__(self, directory: str | PathLike[str]) -> None:
        self.directory = Path(directory).expanduser()
        self._lock = Lock()
        self._entries: list[CacheEntry] = []
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f'Cannot create the cache directory {self.directory}: {exc}') from exc
        self._load()
        self._sequence = max((entry.sequence for entry in self._entries), default=0)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _record_path(self, sequence: int) -> Path:
        return self.directory / f'{sequence:020d}{self.suffix}'

    def _load(self) -> None:
        for path in sorted(self.directory.glob(f'*{self.suffix}')):
            try:
                sequence = int(path.stem)
                record = CachedRecord.parse(path.read_bytes())
            except (ValueError, OSError) as exc:  # ParseError is a ValueError
                logger.warning('Ignoring unreadable cache record %s: %s', path, exc)
                continue
            self._entries.append(CacheEntry(sequence, CachedMessage(destination=record.destination, payload=record.payload)))
        if self._entries:
            logger.info('Loaded %d cached messages from %s', len(self._entries), self.directory)

    def _write_record(self, path: Path, message: CachedMessage) -> None:
        data = CachedRecord(destination=message.destination, payload=message.payload).to_wire()
        with NamedTemporaryFile(dir=self.directory, prefix='.', suffix='.tmp', delete=False) as tempfile:
            tempfile.write(data)
        Path(tempfile.name).replace(path)

    def put(self, message: CachedMessage) -> None:
        with self._lock:
            sequence = self._sequence + 1
            try:
                self._write_record(self._record_path(sequence), message)
            except OSError as exc:
                raise StorageError(f'Cannot persist the message for {message.destination}: {exc}') from exc
            self._sequence = sequence
            self._entries.append(CacheEntry(sequence, message))
        logger.debug('Cached a message for %s (%d bytes)', message.destination, len(message.payload))

    def take_all(self) -> list[CachedMessage]:
        """Remove and return all the cached messages"""
        entries = self.drain()
        for entry in entries:
            self.release(entry)
        return [entry.message for entry in entries]

    def drain(self) -> list[CacheEntry]:
        """
        Remove all the entries from memory and return them, leaving their
        records on disk.

        Every drained entry must be given back to either release() or
        restore(), otherwise it only reappears after a restart.
        """
        with self._lock:
            entries, self._entries = self._entries, []
        return entries

    def release(self, entry: CacheEntry) -> None:
        """Delete the record of a drained entry"""
        try:
            self._record_path(entry.sequence).unlink(missing_ok=True)
        except OSError as exc:
            logger.error('Cannot delete the cache record for a message to %s: %s', entry.message.destination, exc)  # noqa: TRY400

    def restore(self, entries: Iterable[CacheEntry]) -> None:
        """Put drained entries back, in sequence order, without writing them again"""
        with self._lock:
            self._entries = sorted([*self._entries, *entries], key=attrgetter('sequence'))

    def messages(self) -> list[CachedMessage]:
        """Return a snapshot of the cached messages without removing them"""
        with self._lock:
            return [entry.message for entry in self._entries]

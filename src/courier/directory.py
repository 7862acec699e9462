# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import logging
from threading import Lock

from courier import crypto

__all__ = 'RADIO_SCHEME', 'PeerDirectory', 'is_radio_address'


logger = logging.getLogger(__name__)


RADIO_SCHEME = 'ble:'


def is_radio_address(address: str) -> bool:
    return address.startswith(RADIO_SCHEME)


class PeerDirectory:
    """
    Map endpoint identifiers to the addresses they can be reached at.

    The address scheme selects the transport: addresses that start with
    'ble:' go over the radio link, anything else over the bundle transport.
    The directory also keeps the public keys known for each endpoint. Keys
    learned from inbound envelopes are trusted on first use, after which a
    different key for the same endpoint is rejected.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._addresses: dict[str, str] = {}
        self._keys: dict[str, bytes] = {}

    def __contains__(self, eid: str) -> bool:
        with self._lock:
            return eid in self._addresses

    def __len__(self) -> int:
        with self._lock:
            return len(self._addresses)

    def add(self, eid: str, address: str) -> None:
        with self._lock:
            self._addresses[eid] = address
        logger.debug('Added peer %s at %s', eid, address)

    def get(self, eid: str) -> str | None:
        with self._lock:
            return self._addresses.get(eid)

    def all(self) -> list[tuple[str, str]]:
        with self._lock:
            return list(self._addresses.items())

    def discovered(self, eid: str) -> bool:
        """Add a radio address for a newly discovered peer, unless the peer is already known"""
        with self._lock:
            if eid in self._addresses:
                return False
            self._addresses[eid] = f'{RADIO_SCHEME}{eid}'
        logger.info('Discovered peer %s', eid)
        return True

    def learn_address(self, eid: str, origin: str | None) -> bool:
        """Replace the radio address of a peer with the address a message from it actually arrived from"""
        if origin is None:
            return False
        with self._lock:
            current = self._addresses.get(eid)
            if current is None or not is_radio_address(current) or current == origin:
                return False
            self._addresses[eid] = origin
        logger.info('Learned address %s for peer %s (was %s)', origin, eid, current)
        return True

    # Key ring

    def register_key(self, eid: str, key: bytes) -> None:
        """
        Set the public key for the endpoint, replacing any key known for it.

        The key must be a DER encoded RSA public key, otherwise ValueError
        is raised and the key ring is left unchanged.
        """
        crypto.load_public_key(key)
        with self._lock:
            self._keys[eid] = bytes(key)

    def remember_key(self, eid: str, key: bytes) -> bool:
        """Pin the key on first use. Return False if a different key is already pinned for the endpoint."""
        with self._lock:
            pinned = self._keys.setdefault(eid, bytes(key))
        if pinned != key:
            logger.warning('Rejected a new public key for %s that does not match the pinned one', eid)
            return False
        return True

    def get_key(self, eid: str) -> bytes | None:
        with self._lock:
            return self._keys.get(eid)

# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later


__all__ = (  # noqa: RUF022
    'CourierError',
    'ParseError',
    'CryptoError',
    'SignError',
    'EncryptionError',
    'DecryptionError',
    'TransportError',
    'SendError',
    'ReceiveError',
    'StorageError',
    'ConfigurationError',
)


class CourierError(Exception):
    """Base class for all the errors raised by courier."""


class ParseError(CourierError, ValueError):
    """Raised when envelope bytes cannot be decoded."""


class CryptoError(CourierError):
    """
    Base class for failures of the cryptographic operations.

    Note that a signature that does not verify is not an error, verification
    simply returns False in that case.

    """


class SignError(CryptoError):
    """Raised when data cannot be signed with the identity key."""


class EncryptionError(CryptoError):
    """Raised when a payload cannot be encrypted for a recipient."""


class DecryptionError(CryptoError):
    """
    Raised when an encrypted payload cannot be decrypted.

    This covers a symmetric key that cannot be unwrapped with the local
    identity key, as well as a ciphertext that fails the integrity check
    (which happens if it was tampered with or was meant for another key).
    No plaintext is ever returned in these cases.

    """


class TransportError(CourierError):
    """Base class for errors reported by the transports."""


class SendError(TransportError):
    """Raised when a transport fails to hand over a message."""


class ReceiveError(TransportError):
    """Raised when a transport fails while waiting for inbound data."""


class StorageError(CourierError, OSError):
    """Raised when the durable cache cannot write a record."""


class ConfigurationError(CourierError, ValueError):
    """Raised when the node configuration is invalid."""

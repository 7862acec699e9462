# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import logging
from dataclasses import dataclass
from functools import cached_property
from os import PathLike
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Self

from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, Encoding, NoEncryption, PrivateFormat, load_pem_private_key

from courier.crypto import generate_private_key, public_key_der

__all__ = 'Identity', 'load_private_key', 'save_private_key', 'load_or_generate_private_key'


logger = logging.getLogger(__name__)


def load_private_key(path: str | PathLike[str], *, password: str | None = None) -> RSAPrivateKey:
    key_data = Path(path).expanduser().read_bytes()
    key = load_pem_private_key(key_data, password=password.encode() if password is not None else None)
    match key:
        case RSAPrivateKey():
            return key
        case _:
            raise TypeError(f'Unsupported key type: {key.__class__.__qualname__!r} (expected an RSA private key)')


def save_private_key(key: RSAPrivateKey, path: str | PathLike[str], *, password: str | None = None) -> None:
    key_encryption = BestAvailableEncryption(password.encode()) if password is not None else NoEncryption()
    key_data = key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, key_encryption)
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    with NamedTemporaryFile(dir=path.parent, delete=False) as tempfile:  # NamedTemporaryFile creates the file with mode 0600
        tempfile.write(key_data)
    Path(tempfile.name).replace(path)


def load_or_generate_private_key(path: str | PathLike[str], *, password: str | None = None) -> RSAPrivateKey:
    """Load the identity key from path, generating and saving a new one if it doesn't exist"""
    path = Path(path).expanduser()
    if path.exists():
        return load_private_key(path, password=password)
    logger.info('Generating a new identity key in %s', path)
    key = generate_private_key()
    save_private_key(key, path, password=password)
    return key


@dataclass(frozen=True)
class Identity:
    eid: str
    private_key: RSAPrivateKey

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}(eid={self.eid!r})'

    @classmethod
    def from_file(cls, eid: str, path: str | PathLike[str], *, password: str | None = None) -> Self:
        return cls(eid=eid, private_key=load_or_generate_private_key(path, password=password))

    @property
    def public_key(self) -> RSAPublicKey:
        return self.private_key.public_key()

    @cached_property
    def public_key_der(self) -> bytes:
        return public_key_der(self.private_key)

# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Node configuration

The configuration is an XML document in the urn:courier:config namespace,
validated against the courier.rng RelaxNG schema:

    <node xmlns="urn:courier:config" eid="dtn://alpha/inbox">
      <identity-key>~/.courier/id.pem</identity-key>
      <cache-directory>~/.courier/cache</cache-directory>
      <discovery-interval>5</discovery-interval>
      <radio chunk-size="200" pacing="0.02"/>
      <peer eid="dtn://beta/inbox" address="dtn://beta/inbox" public-key="beta.pem"/>
    </node>

Relative paths are resolved against the directory of the configuration file.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from functools import cache
from os import PathLike
from pathlib import Path
from typing import Self

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from cryptography.hazmat.primitives.serialization import load_pem_public_key
from lxml import etree

from courier.crypto import public_key_der
from courier.exceptions import ConfigurationError
from courier.transport import DEFAULT_CHUNK_SIZE, DEFAULT_DISCOVERY_INTERVAL, DEFAULT_PACING

from .schema import ETreeElement, RelaxNGValidator

__all__ = 'NAMESPACE', 'NodeConfiguration', 'PeerConfiguration', 'RadioConfiguration'  # noqa: RUF022


NAMESPACE = 'urn:courier:config'


@cache
def validator() -> RelaxNGValidator:
    return RelaxNGValidator('courier.rng')


def _tag(name: str) -> str:
    return f'{{{NAMESPACE}}}{name}'


def _decimal(value: str, *, what: str) -> float:
    try:
        return float(Decimal(value.strip()))
    except InvalidOperation as exc:
        raise ConfigurationError(f'Invalid value for {what}: {value!r}') from exc


def _load_public_key(path: Path) -> bytes:
    try:
        key = load_pem_public_key(path.read_bytes())
    except OSError as exc:
        raise ConfigurationError(f'Cannot read public key file {path}: {exc.strerror or exc}') from exc
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise ConfigurationError(f'Invalid public key in {path}: {exc}') from exc
    if not isinstance(key, RSAPublicKey):
        raise ConfigurationError(f'The public key in {path} is not an RSA key')
    return public_key_der(key)


@dataclass(frozen=True, slots=True)
class RadioConfiguration:
    chunk_size: int = DEFAULT_CHUNK_SIZE
    pacing: float = DEFAULT_PACING

    @classmethod
    def from_xml(cls, element: ETreeElement | None) -> Self:
        if element is None:
            return cls()
        chunk_size = element.get('chunk-size')
        pacing = element.get('pacing')
        return cls(
            chunk_size=int(chunk_size) if chunk_size is not None else DEFAULT_CHUNK_SIZE,
            pacing=_decimal(pacing, what='radio pacing') if pacing is not None else DEFAULT_PACING,
        )


@dataclass(frozen=True, slots=True)
class PeerConfiguration:
    eid: str
    address: str
    public_key: bytes | None = field(default=None, repr=False)  # DER encoded SubjectPublicKeyInfo

    @classmethod
    def from_xml(cls, element: ETreeElement, *, base_path: Path) -> Self:
        key_file = element.get('public-key')
        public_key = _load_public_key(base_path / Path(key_file).expanduser()) if key_file is not None else None
        return cls(eid=element.get('eid'), address=element.get('address'), public_key=public_key)


@dataclass(frozen=True, slots=True)
class NodeConfiguration:
    eid: str
    identity_key: Path = Path('id.pem')
    cache_directory: Path = Path('cache')
    discovery_interval: float = DEFAULT_DISCOVERY_INTERVAL
    radio: RadioConfiguration = RadioConfiguration()
    peers: tuple[PeerConfiguration, ...] = ()

    @classmethod
    def from_xml(cls, element: ETreeElement, *, base_path: Path) -> Self:
        if not validator().validate(element):
            raise ConfigurationError(f'Invalid configuration: {validator().last_error}')

        def path_value(name: str, default: str) -> Path:
            text = element.findtext(_tag(name))
            return base_path / Path(text.strip() if text is not None else default).expanduser()

        interval = element.findtext(_tag('discovery-interval'))
        return cls(
            eid=element.get('eid'),
            identity_key=path_value('identity-key', 'id.pem'),
            cache_directory=path_value('cache-directory', 'cache'),
            discovery_interval=_decimal(interval, what='discovery-interval') if interval is not None else DEFAULT_DISCOVERY_INTERVAL,
            radio=RadioConfiguration.from_xml(element.find(_tag('radio'))),
            peers=tuple(PeerConfiguration.from_xml(peer, base_path=base_path) for peer in element.iterfind(_tag('peer'))),
        )

    @classmethod
    def from_string(cls, document: str | bytes, *, base_path: str | PathLike[str] = '.') -> Self:
        if isinstance(document, str):
            document = document.encode()
        try:
            element = etree.fromstring(document, parser=etree.XMLParser(resolve_entities=False, no_network=True))
        except etree.XMLSyntaxError as exc:
            raise ConfigurationError(f'Cannot parse configuration: {exc}') from exc
        return cls.from_xml(element, base_path=Path(base_path).expanduser())

    @classmethod
    def from_file(cls, path: str | PathLike[str]) -> Self:
        path = Path(path).expanduser()
        try:
            document = path.read_bytes()
        except OSError as exc:
            raise ConfigurationError(f'Cannot read configuration file {path}: {exc.strerror or exc}') from exc
        return cls.from_string(document, base_path=path.parent)

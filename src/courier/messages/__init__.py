# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Envelope structure

   Envelopes are encoded using binary fields. All integers are represented
   in network byte order. Every envelope starts with the same framing:

     +-------------------------+
     |    token "\\xc4DTN"      |
     +-------------------------+
     |    version (uint8)      |
     +-------------------------+
     |    type (uint8)         |
     +-------------------------+
     |    length (uint32)      |
     +-------------------------+
     |    body                 |
     +-------------------------+

   A plain envelope carries a SignedEnvelope as its body, while a sealed
   envelope carries an EncryptedBlob, which decrypts to the wire encoding
   of a SignedEnvelope. The signature always covers the wire encoding of
   the SignedContent, which is also the canonical signing encoding:

     uint16 len(sender) | sender | uint16 kind code | uint32 len(body) | body | uint64 timestamp

"""

from collections.abc import MutableMapping
from io import BytesIO
from typing import ClassVar, Self

from courier.exceptions import ParseError

from .datamodel import (
    EnvelopeToken,
    EnvelopeType,
    Nonce,
    Opaque16Adapter,
    Opaque32,
    Opaque32Adapter,
    PayloadKind,
    String16Adapter,
    UInt8Adapter,
    UInt16,
    UInt32,
    UInt64Adapter,
    WireData,
)
from .elements import AnnotatedStructure, DependentElementSpec, Element, FieldDependentElement, Structure

__all__ = (  # noqa: RUF022
    # Payloads
    'Payload',
    'Alert',

    # Signed and encrypted elements
    'SignedContent',
    'SignedEnvelope',
    'EncryptedBlob',

    # Toplevel structures
    'Envelope',
    'CachedRecord',

    'ENVELOPE_VERSION',
)


ENVELOPE_VERSION = 1


# Helpers

def strict_parse[S: Structure](cls: type[S], data: WireData) -> S:
    """Parse a structure from data that must contain exactly one instance of it"""
    buffer = data if isinstance(data, BytesIO) else BytesIO(data)
    try:
        instance = cls.from_wire(buffer)
    except ValueError as exc:
        raise ParseError(f'Malformed {cls.__qualname__}: {exc}') from exc
    trailing = len(buffer.getbuffer()) - buffer.tell()
    if trailing:
        raise ParseError(f'Malformed {cls.__qualname__}: {trailing} trailing bytes after the structure')
    return instance


class PayloadKindAdapter:
    """Read kind codes as PayloadKind members when known and as UInt16 otherwise"""

    _abstract_: ClassVar[bool] = False

    @staticmethod
    def from_wire(buffer: WireData) -> PayloadKind | UInt16:
        value = UInt16.from_wire(buffer)
        try:
            return PayloadKind(value)
        except ValueError:
            return value

    @staticmethod
    def to_wire(value: PayloadKind | UInt16, /) -> bytes:
        return value.to_wire()

    @staticmethod
    def wire_length(value: PayloadKind | UInt16, /) -> int:
        return value.wire_length()

    @staticmethod
    def validate(value: int, /) -> PayloadKind | UInt16:
        if isinstance(value, PayloadKind | UInt16):
            return value
        if not isinstance(value, int):
            raise TypeError(f'Kind codes must be integers, not {value.__class__.__qualname__!r}')
        try:
            return PayloadKind(value)
        except ValueError:
            return UInt16(value)


# Payloads

type PayloadType = type[Payload]


class Payload(AnnotatedStructure):
    # kind 0 is invalid and is only used by the abstract base
    # the kind should be overridden by subclasses

    _kind_: ClassVar[PayloadKind] = PayloadKind.invalid
    _registry_: ClassVar[MutableMapping[PayloadKind, PayloadType]] = {}

    def __init_subclass__(cls, *, kind: PayloadKind = PayloadKind.invalid, **kw: object) -> None:
        super().__init_subclass__(**kw)
        cls._kind_ = kind
        if kind is not PayloadKind.invalid and cls._registry_.setdefault(kind, cls) is not cls:
            raise TypeError(f'Payload kind {kind.name!r} is already used by {cls._registry_[kind].__qualname__!r}')


class Alert(Payload, kind=PayloadKind.alert):
    text: Element[str] = Element(str, adapter=String16Adapter)
    urgency: Element[int] = Element(int, adapter=UInt8Adapter)


# Signed and encrypted elements

class SignedContent(AnnotatedStructure):
    _kind_specification: ClassVar = DependentElementSpec[Payload | Opaque32, PayloadKind | UInt16](
        type_map=Payload._registry_,
        fallback_type=Opaque32,
        length_type=UInt32,
    )

    sender: Element[str] = Element(str, adapter=String16Adapter)
    kind_type: Element[PayloadKind | UInt16] = Element(PayloadKind | UInt16, adapter=PayloadKindAdapter)
    kind: FieldDependentElement[Payload | Opaque32, PayloadKind | UInt16] = FieldDependentElement(control_field=kind_type, specification=_kind_specification)
    timestamp: Element[int] = Element(int, adapter=UInt64Adapter)

    @classmethod
    def new(cls, *, sender: str, kind: Payload, timestamp: int) -> Self:
        if kind._kind_ is PayloadKind.invalid:
            raise TypeError(f'Cannot use abstract payload type {kind.__class__.__qualname__!r}')
        return cls(sender=sender, kind_type=kind._kind_, kind=kind, timestamp=timestamp)

    @property
    def known_kind(self) -> bool:
        return isinstance(self.kind, Payload)


class SignedEnvelope(AnnotatedStructure):
    content: Element[SignedContent] = Element(SignedContent)
    sender_key: Element[bytes] = Element(bytes, adapter=Opaque16Adapter)
    signature: Element[bytes] = Element(bytes, adapter=Opaque16Adapter)

    @classmethod
    def parse(cls, data: WireData) -> Self:
        return strict_parse(cls, data)

    @property
    def sender(self) -> str:
        return self.content.sender

    @property
    def kind(self) -> Payload | Opaque32:
        return self.content.kind

    @property
    def timestamp(self) -> int:
        return self.content.timestamp


class EncryptedBlob(AnnotatedStructure):
    wrapped_key: Element[bytes] = Element(bytes, adapter=Opaque16Adapter)
    nonce: Element[Nonce] = Element(Nonce)
    ciphertext: Element[bytes] = Element(bytes, adapter=Opaque32Adapter)


# Toplevel structures

class Envelope(AnnotatedStructure):
    _body_specification: ClassVar = DependentElementSpec[SignedEnvelope | EncryptedBlob, EnvelopeType](
        type_map={
            EnvelopeType.plain: SignedEnvelope,
            EnvelopeType.sealed: EncryptedBlob,
        },
        length_type=UInt32,
    )

    token: Element[EnvelopeToken] = Element(EnvelopeToken, default=EnvelopeToken())
    version: Element[int] = Element(int, adapter=UInt8Adapter, default=ENVELOPE_VERSION)
    type: Element[EnvelopeType] = Element(EnvelopeType)
    body: FieldDependentElement[SignedEnvelope | EncryptedBlob, EnvelopeType] = FieldDependentElement(control_field=type, specification=_body_specification)

    @classmethod
    def plain(cls, signed_envelope: SignedEnvelope) -> Self:
        return cls(type=EnvelopeType.plain, body=signed_envelope)

    @classmethod
    def sealed(cls, blob: EncryptedBlob) -> Self:
        return cls(type=EnvelopeType.sealed, body=blob)

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        if not isinstance(buffer, BytesIO):
            buffer = BytesIO(buffer)
        instance = super(Structure, cls).__new__(cls)
        for field in cls._fields_.values():
            field.from_wire(instance, buffer)
            if field is cls.version and instance.version != ENVELOPE_VERSION:
                raise ValueError(f'Unsupported envelope version: {instance.version}')
        return instance

    @classmethod
    def parse(cls, data: WireData) -> Self:
        return strict_parse(cls, data)

    @property
    def encrypted(self) -> bool:
        return self.type is EnvelopeType.sealed


class CachedRecord(AnnotatedStructure):
    destination: Element[str] = Element(str, adapter=String16Adapter)
    payload: Element[bytes] = Element(bytes, adapter=Opaque32Adapter)

    @classmethod
    def parse(cls, data: WireData) -> Self:
        return strict_parse(cls, data)

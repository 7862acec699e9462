# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import enum
from collections.abc import Buffer, Iterable
from io import BytesIO
from typing import ClassVar, Protocol, Self, SupportsBytes, SupportsIndex, runtime_checkable

__all__ = (  # noqa: RUF022
    # Protocols and types

    'WireData',
    'DataWireProtocol',
    'DataWireAdapter',

    # Adapters

    'UnsignedIntegerAdapter',
    'UInt8Adapter',
    'UInt64Adapter',

    'OpaqueAdapter',
    'Opaque16Adapter',
    'Opaque32Adapter',

    'StringAdapter',
    'String16Adapter',

    # Abstract types

    'UnsignedInteger',
    'Enum',
    'LiteralBytes',
    'FixedSize',
    'Opaque',

    # Concrete types

    'UInt16',
    'UInt32',

    'EnvelopeType',
    'PayloadKind',

    'Opaque32',

    'EnvelopeToken',
    'Nonce',
)


type WireData = bytes | bytearray | memoryview | BytesIO


# Protocols

@runtime_checkable
class DataWireProtocol(Protocol):
    """The wire protocol for envelope data elements"""

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self: ...

    def to_wire(self) -> bytes: ...

    def wire_length(self) -> int: ...


@runtime_checkable
class DataWireAdapter[T](Protocol):
    """Wire protocol adapter for an envelope data element of type T"""

    _abstract_: ClassVar[bool] = True

    @staticmethod
    def from_wire(buffer: WireData) -> T: ...

    @staticmethod
    def to_wire(value: T, /) -> bytes: ...

    @staticmethod
    def wire_length(value: T, /) -> int: ...

    @staticmethod
    def validate(value: T, /) -> T: ...


# Helpers

def byte_length(number: int) -> int:
    """Return the number of bytes needed to represent the number"""
    return (number.bit_length() + 7) // 8


def read_bytes(buffer: WireData, size: int, *, what: str) -> bytes:
    """Read exactly size bytes from the buffer or raise ValueError"""
    if isinstance(buffer, BytesIO):
        data = buffer.read(size)
    else:
        data = bytes(buffer[:size])
    if len(data) < size:
        raise ValueError(f'Insufficient data in buffer to extract {what}')
    return data


def read_length_prefixed(buffer: WireData, sizelen: int, maxsize: int, *, what: str) -> bytes:
    """Read a big endian length of sizelen bytes followed by that many bytes of data"""
    if not isinstance(buffer, BytesIO):
        buffer = BytesIO(buffer)
    data_length = int.from_bytes(read_bytes(buffer, sizelen, what=f'the length of {what}'), byteorder='big')
    if data_length > maxsize:
        raise ValueError(f'Data length is too big for {what} ({data_length} > {maxsize})')
    return read_bytes(buffer, data_length, what=what)


# Adapters

class UnsignedIntegerAdapter:
    _abstract_: ClassVar[bool] = True
    _bits_: ClassVar[int] = NotImplemented
    _size_: ClassVar[int] = NotImplemented

    def __init_subclass__(cls, *, bits: int = NotImplemented, **kw: object) -> None:
        if bits is not NotImplemented:
            cls._bits_ = bits
            cls._size_ = bits // 8
            cls._abstract_ = False
        super().__init_subclass__(**kw)

    @classmethod
    def from_wire(cls, buffer: WireData) -> int:
        return int.from_bytes(read_bytes(buffer, cls._size_, what=f'an unsigned {cls._bits_}-bit integer'), byteorder='big')

    @classmethod
    def to_wire(cls, value: int, /) -> bytes:
        return value.to_bytes(cls._size_, byteorder='big')

    @classmethod
    def wire_length(cls, _: int, /) -> int:
        return cls._size_

    @classmethod
    def validate(cls, value: int, /) -> int:
        if value < 0 or value.bit_length() > cls._bits_:
            raise ValueError(f'Value is out of range for unsigned {cls._bits_}-bits integer: {value!r}')
        return value


class UInt8Adapter(UnsignedIntegerAdapter, bits=8):
    pass


class UInt64Adapter(UnsignedIntegerAdapter, bits=64):
    pass


class OpaqueAdapter:
    """Adapter for a bytes buffer of up to maxsize bytes, prefixed with its length"""

    _abstract_: ClassVar[bool] = True
    _maxsize_: ClassVar[int] = NotImplemented
    _sizelen_: ClassVar[int] = NotImplemented

    def __init_subclass__(cls, *, maxsize: int = NotImplemented, **kw: object) -> None:
        if maxsize is not NotImplemented:
            cls._maxsize_ = maxsize
            cls._sizelen_ = byte_length(maxsize)
            cls._abstract_ = False
        super().__init_subclass__(**kw)

    @classmethod
    def from_wire(cls, buffer: WireData) -> bytes:
        return read_length_prefixed(buffer, cls._sizelen_, cls._maxsize_, what='opaque bytes')

    @classmethod
    def to_wire(cls, value: bytes, /) -> bytes:
        return len(value).to_bytes(cls._sizelen_, byteorder='big') + value

    @classmethod
    def wire_length(cls, value: bytes, /) -> int:
        return cls._sizelen_ + len(value)

    @classmethod
    def validate(cls, value: bytes, /) -> bytes:
        if not isinstance(value, bytes | bytearray):
            raise TypeError(f'Opaque values must be bytes, not {value.__class__.__qualname__!r}')
        if len(value) > cls._maxsize_:
            raise ValueError(f'Value is too long for opaque bytes (max length is {cls._maxsize_}, value has {len(value)} bytes)')
        return bytes(value)


class StringAdapter:
    """Represent strings as UTF-8 encoded length prefixed bytes limited to maxsize"""

    _abstract_: ClassVar[bool] = True
    _maxsize_: ClassVar[int] = NotImplemented
    _sizelen_: ClassVar[int] = NotImplemented

    def __init_subclass__(cls, *, maxsize: int = NotImplemented, **kw: object) -> None:
        if maxsize is not NotImplemented:
            cls._maxsize_ = maxsize
            cls._sizelen_ = byte_length(maxsize)
            cls._abstract_ = False
        super().__init_subclass__(**kw)

    @classmethod
    def from_wire(cls, buffer: WireData) -> str:
        data = read_length_prefixed(buffer, cls._sizelen_, cls._maxsize_, what='the string')
        try:
            return data.decode()
        except UnicodeDecodeError as exc:
            raise ValueError(f'Cannot decode bytes to string: {exc}') from exc

    @classmethod
    def to_wire(cls, value: str, /) -> bytes:
        data = value.encode()
        return len(data).to_bytes(cls._sizelen_, byteorder='big') + data

    @classmethod
    def wire_length(cls, value: str, /) -> int:
        return cls._sizelen_ + len(value.encode())

    @classmethod
    def validate(cls, value: str, /) -> str:
        if not isinstance(value, str):
            raise TypeError(f'String values must be str, not {value.__class__.__qualname__!r}')
        data_length = len(value.encode())
        if data_length > cls._maxsize_:
            raise ValueError(f'Value is too long for string (max length is {cls._maxsize_}, value has {data_length} bytes)')
        return value


class String16Adapter(StringAdapter, maxsize=2**16 - 1):
    pass


class Opaque16Adapter(OpaqueAdapter, maxsize=2**16 - 1):
    pass


class Opaque32Adapter(OpaqueAdapter, maxsize=2**32 - 1):
    pass


# Data types

class UnsignedInteger(int):
    _bits_: ClassVar[int] = NotImplemented
    _size_: ClassVar[int] = NotImplemented

    def __init_subclass__(cls, *, bits: int = NotImplemented, **kw: object) -> None:
        if bits is not NotImplemented:
            cls._bits_ = bits
            cls._size_ = bits // 8
        super().__init_subclass__(**kw)

    def __new__(cls, value: SupportsIndex = 0, /) -> Self:
        if cls._bits_ is NotImplemented:
            raise TypeError(f'Cannot instantiate abstract unsigned integer type {cls.__qualname__!r} that does not define its bit length')
        instance = super().__new__(cls, value)
        if instance < 0 or instance.bit_length() > cls._bits_:
            raise ValueError(f'Value is out of range for unsigned {cls._bits_}-bits integer: {value!r}')
        return instance

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({super().__repr__()})'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        return cls(int.from_bytes(read_bytes(buffer, cls._size_, what=repr(cls.__qualname__)), byteorder='big'))

    def to_wire(self) -> bytes:
        return self.to_bytes(self._size_, byteorder='big')

    def wire_length(self) -> int:
        return self._size_


class UInt16(UnsignedInteger, bits=16):
    pass


class UInt32(UnsignedInteger, bits=32):
    pass


class Enum(enum.IntEnum):
    _size_: ClassVar[int]

    def __init_subclass__(cls, *, size: int = 1, **kw: object) -> None:
        cls._size_ = size
        super().__init_subclass__(**kw)

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}.{self.name}'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        value = int.from_bytes(read_bytes(buffer, cls._size_, what=repr(cls.__qualname__)), byteorder='big')
        try:
            return cls(value)
        except ValueError as exc:
            raise ValueError(f'Invalid value for {cls.__qualname__!r}: {value}') from exc

    def to_wire(self) -> bytes:
        return self.to_bytes(self._size_, byteorder='big')

    def wire_length(self) -> int:
        return self._size_


class EnvelopeType(Enum):
    invalid = 0
    plain = 1
    sealed = 2


class PayloadKind(Enum, size=2):
    # The codes are part of the signed content and must never be reused
    invalid = 0
    alert = 1


class LiteralBytes(bytes):
    _instance_: ClassVar[Self] = NotImplemented

    def __init_subclass__(cls, *, value: bytes = NotImplemented, **kw: object) -> None:
        if value is not NotImplemented:
            cls._instance_ = super().__new__(cls, value)
        super().__init_subclass__(**kw)

    def __new__(cls) -> Self:
        if cls._instance_ is NotImplemented:
            raise TypeError(f'Cannot instantiate abstract literal bytes type {cls.__qualname__!r} that does not define its value')
        return cls._instance_

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}()'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        if cls._instance_ is NotImplemented:
            raise TypeError(f'Cannot instantiate abstract literal bytes type {cls.__qualname__!r} that does not define its value')
        if read_bytes(buffer, len(cls._instance_), what=repr(cls.__qualname__)) != cls._instance_:
            raise ValueError(f'Value on wire does not match {cls.__qualname__!r}')
        return cls._instance_

    def to_wire(self) -> bytes:
        return bytes(self)

    def wire_length(self) -> int:
        return len(self)


class FixedSize(bytes):
    """A fixed size bytes buffer"""

    _size_: ClassVar[int] = NotImplemented

    def __init_subclass__(cls, *, size: int = NotImplemented, **kw: object) -> None:
        if size is not NotImplemented:
            cls._size_ = size
        super().__init_subclass__(**kw)

    def __new__(cls, value: Iterable[SupportsIndex] | SupportsBytes | Buffer = b'', /) -> Self:
        if cls._size_ is NotImplemented:
            raise TypeError(f'Cannot instantiate fixed size bytes type {cls.__qualname__!r} that does not define its size')
        instance = super().__new__(cls, value)
        if len(instance) != cls._size_:
            raise ValueError(f'{cls.__qualname__!r} objects must have {cls._size_} bytes')
        return instance

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({super().__repr__()})'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        return cls(read_bytes(buffer, cls._size_, what=repr(cls.__qualname__)))

    def to_wire(self) -> bytes:
        return bytes(self)

    def wire_length(self) -> int:
        return self._size_


class Opaque(bytes):
    """A bytes buffer of up to maxsize bytes, prefixed with its length"""

    _maxsize_: ClassVar[int] = NotImplemented
    _sizelen_: ClassVar[int] = NotImplemented

    def __init_subclass__(cls, *, maxsize: int = NotImplemented, **kw: object) -> None:
        if maxsize is not NotImplemented:
            cls._maxsize_ = maxsize
            cls._sizelen_ = byte_length(maxsize)
        super().__init_subclass__(**kw)

    def __new__(cls, value: Iterable[SupportsIndex] | SupportsBytes | Buffer = b'', /) -> Self:
        if cls._maxsize_ is NotImplemented:
            raise TypeError(f'Cannot instantiate abstract variable length bytes type {cls.__qualname__!r} that does not define its max size')
        instance = super().__new__(cls, value)
        if len(instance) > cls._maxsize_:
            raise ValueError(f'{cls.__qualname__!r} objects can have at most {cls._maxsize_} bytes')
        return instance

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({super().__repr__() if self else ''})'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        return cls(read_length_prefixed(buffer, cls._sizelen_, cls._maxsize_, what=repr(cls.__qualname__)))

    def to_wire(self) -> bytes:
        return len(self).to_bytes(self._sizelen_, byteorder='big') + self

    def wire_length(self) -> int:
        return self._sizelen_ + len(self)


class Opaque32(Opaque, maxsize=2**32 - 1):
    pass


# Special values

class EnvelopeToken(LiteralBytes, value=b'\xc4DTN'):
    pass


class Nonce(FixedSize, size=12):
    pass

# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import operator
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from functools import reduce
from inspect import Parameter, Signature
from io import BytesIO
from types import NoneType, UnionType, new_class
from typing import ClassVar, Self, cast, dataclass_transform, overload

from .datamodel import DataWireAdapter, DataWireProtocol, Opaque, UnsignedInteger, WireData

__all__ = (  # noqa: RUF022
    'Structure',
    'AnnotatedStructure',

    'DependentElementSpec',

    'Element',
    'FieldDependentElement',
)


class Structure:  # noqa: PLW1641
    __signature__: ClassVar[Signature] = Signature()

    _fields_: ClassVar[dict[str, 'FieldDescriptor']] = {}

    _all_arguments: ClassVar[frozenset[str]]
    _mandatory_arguments: ClassVar[frozenset[str]]
    _default_arguments: ClassVar[dict[str, object]]

    def __new__(cls, **kw: object) -> Self:
        if not cls._all_arguments.issuperset(kw):
            raise TypeError(f'Got an unexpected keyword argument {next(iter(set(kw) - cls._all_arguments))!r}')
        if not cls._mandatory_arguments.issubset(kw):
            raise TypeError(f'Missing a required keyword argument {next(iter(cls._mandatory_arguments - set(kw)))!r}')
        return super().__new__(cls)

    def __init__(self, **kw: object) -> None:
        # Fields are set in definition order, as dependent elements need
        # their control field to be set first.
        kw = self._default_arguments | kw
        for name in self._fields_:
            setattr(self, name, kw[name])

    def __init_subclass__(cls, **kw: object) -> None:
        super().__init_subclass__(**kw)

        # all the fields on this structure (both inherited and locally defined)
        fields = cls._fields_ | {name: value for name, value in cls.__dict__.items() if isinstance(value, FieldDescriptor)}

        cls._fields_ = fields

        cls.__signature__ = Signature(parameters=[descriptor.signature_parameter for descriptor in fields.values()])
        cls._all_arguments = frozenset(cls.__signature__.parameters)
        cls._mandatory_arguments = frozenset(p.name for p in cls.__signature__.parameters.values() if p.default is Parameter.empty)
        cls._default_arguments = {p.name: p.default for p in cls.__signature__.parameters.values() if p.default is not Parameter.empty}

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({', '.join(f'{name}={_reprproxy(getattr(self, name))!r}' for name in self._fields_)})'

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Structure):
            return self.__class__ is other.__class__ and all(getattr(self, name) == getattr(other, name) for name in self._fields_)
        return NotImplemented

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        if not isinstance(buffer, BytesIO):
            buffer = BytesIO(buffer)
        instance = super().__new__(cls)
        for field in cls._fields_.values():
            field.from_wire(instance, buffer)
        return instance

    def to_wire(self) -> bytes:
        return b''.join(field.to_wire(self) for field in self._fields_.values())

    def wire_length(self) -> int:
        return sum(field.wire_length(self) for field in self._fields_.values())


# Helpers

class _reprproxy:  # noqa: N801
    # Provide better representation for certain types which can be evaluated to recreate the object.

    def __init__(self, value: object) -> None:
        self.value = value

    def __repr__(self) -> str:
        match self.value:
            case Enum() as value:
                return f'{value.__class__.__qualname__}.{value.name}'
            case UnionType() as value:
                return ' | '.join('None' if _type is NoneType else _type.__qualname__ for _type in value.__args__)
            case type() as value:
                return value.__qualname__
            case value:
                return repr(value)

    __str__ = __repr__


def _protocol2adapter[T: DataWireProtocol](proto: type[T]) -> type[DataWireAdapter[T]]:
    # Create a stand-in adapter for a type that implements DataWireProtocol, so
    # that field descriptors can always work with adapters. The stand-in adds a
    # validate method that only checks the value type.

    def type_validate(value: T, /) -> T:
        if not isinstance(value, proto):
            raise TypeError(f'Expected a value of type {proto.__qualname__!r}, got {value.__class__.__qualname__!r}')
        return value

    def prepare(ns: dict) -> None:
        ns['_abstract_'] = False
        ns['from_wire'] = staticmethod(proto.from_wire)
        ns['to_wire'] = staticmethod(proto.to_wire)
        ns['wire_length'] = staticmethod(proto.wire_length)
        ns['validate'] = staticmethod(type_validate)

    adapter = new_class(f'{proto.__name__}AdapterStandIn', (DataWireAdapter[T],), exec_body=prepare)
    adapter.__module__ = __name__
    adapter.__qualname__ = f'_protocol2adapter.<generated>.{adapter.__name__}'

    return adapter


type DataWireAdapterType[T] = type[DataWireAdapter[T]]


# Field descriptors

class FieldDescriptor(ABC):
    name: str | None
    default: object

    @property
    @abstractmethod
    def annotation(self) -> object: ...

    @property
    def signature_parameter(self) -> Parameter:
        assert self.name is not None  # noqa: S101 (used by type checkers)
        kwds = {} if self.default is NotImplemented else {'default': self.default}
        return Parameter(name=self.name, kind=Parameter.KEYWORD_ONLY, annotation=self.annotation, **kwds)

    def __set_name__(self, owner: type[Structure], name: str) -> None:
        if self.name is None:
            self.name = name
        elif name != self.name:
            raise TypeError(f'Cannot assign the same {self.__class__.__qualname__!r} to two different names: {self.name!r} and {name!r}')

    def __delete__(self, instance: Structure) -> None:
        raise AttributeError(f'Attribute {self.name!r} of {instance.__class__.__qualname__!r} object cannot be deleted')

    def _check_name(self) -> str:
        if self.name is None:
            raise TypeError(f'Cannot use {self.__class__.__qualname__!r} instance without calling __set_name__ on it.')
        return self.name

    @abstractmethod
    def from_wire(self, instance: Structure, buffer: WireData) -> None: ...

    @abstractmethod
    def to_wire(self, instance: Structure) -> bytes: ...

    @abstractmethod
    def wire_length(self, instance: Structure) -> int: ...


class Element[T](FieldDescriptor):
    type: type[T] | UnionType
    default: T
    adapter: DataWireAdapterType[T]

    @overload
    def __init__(self, element_type: type[T], /, *, default: T = ..., adapter: DataWireAdapterType[T] | None = ...) -> None: ...

    @overload
    def __init__(self, element_type: UnionType, /, *, default: T = ..., adapter: DataWireAdapterType[T]) -> None: ...

    def __init__(self, element_type: type[T] | UnionType, /, *, default: T = NotImplemented, adapter: DataWireAdapterType[T] | None = None) -> None:
        self.name = None
        self.type = element_type
        self.default = default
        self.provided_adapter = adapter
        if adapter is None:
            if isinstance(element_type, UnionType):
                raise TypeError('When the element type is a union of types an adapter for the same types must be provided')
            if not issubclass(element_type, DataWireProtocol):
                raise TypeError('Either the element type must implement the DataWireProtocol or an adapter must be provided')
            adapter = cast(DataWireAdapterType[T], _protocol2adapter(element_type))
        if adapter._abstract_:
            raise TypeError(f'Cannot use abstract adapter {adapter.__qualname__!r} (need to select a concrete implementation of it, usually one that defines its size)')
        self.adapter = adapter

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({_reprproxy(self.type)!r}, default={self.default!r}, adapter={_reprproxy(self.provided_adapter)!r})'

    @property
    def annotation(self) -> object:
        return self.type

    @overload
    def __get__(self, instance: None, owner: type[Structure]) -> Self: ...

    @overload
    def __get__(self, instance: Structure, owner: type[Structure] | None = None) -> T: ...

    def __get__(self, instance: Structure | None, owner: type[Structure] | None = None) -> Self | T:
        if instance is None:
            return self
        name = self._check_name()
        try:
            return instance.__dict__[name]
        except KeyError as exc:
            raise AttributeError(f'Attribute {name!r} of object {instance.__class__.__qualname__!r} is not set') from exc

    def __set__(self, instance: Structure, value: T) -> None:
        instance.__dict__[self._check_name()] = self.adapter.validate(value)

    def from_wire(self, instance: Structure, buffer: WireData) -> None:
        name = self._check_name()
        try:
            instance.__dict__[name] = self.adapter.from_wire(buffer)
        except ValueError as exc:
            raise ValueError(f'Failed to read the {instance.__class__.__qualname__}.{name} element from wire: {exc}') from exc

    def to_wire(self, instance: Structure) -> bytes:
        return self.adapter.to_wire(self.__get__(instance))

    def wire_length(self, instance: Structure) -> int:
        return self.adapter.wire_length(self.__get__(instance))


@dataclass(kw_only=True, slots=True)
class DependentElementSpec[T: DataWireProtocol, U]:
    """
    Describe an element whose type is selected by the value of another field.

    The element is always written with a length prefix of length_type, which
    lets a reader skip over values it does not know. Control values that are
    missing from type_map are read as fallback_type if one is provided (it
    must be an Opaque type that reads the same length prefix), otherwise they
    are rejected.
    """

    type_map: Mapping[U, type[T]]
    fallback_type: type[Opaque] | None = None
    length_type: type[UnsignedInteger]

    def __post_init__(self) -> None:
        if self.length_type._size_ is NotImplemented:
            raise TypeError('The length type cannot be an abstract UnsignedInteger type that does not define its size')
        if not self.type_map and self.fallback_type is None:
            raise TypeError(f'A {self.__class__.__qualname__!r} with an empty type_map must specify a fallback type')
        if self.fallback_type is not None:
            if self.fallback_type._sizelen_ is NotImplemented:
                raise TypeError('The fallback type should be an Opaque type which defines its size')
            if self.fallback_type._sizelen_ != self.length_type._size_:
                raise TypeError(f'The fallback type size length does not match the length type size ({self.fallback_type._sizelen_} != {self.length_type._size_})')

    def __repr__(self) -> str:
        type_map = {_reprproxy(name): _reprproxy(value) for name, value in self.type_map.items()}
        fallback_type = _reprproxy(self.fallback_type)
        length_type = _reprproxy(self.length_type)
        return f'{self.__class__.__qualname__}({type_map=}, {fallback_type=}, {length_type=})'

    def type_for(self, control_value: U) -> type[T] | type[Opaque] | None:
        return self.type_map.get(control_value, self.fallback_type)


class FieldDependentElement[T: DataWireProtocol, U](FieldDescriptor):
    control_field: Element[U]

    def __init__(self, *, control_field: Element[U], specification: DependentElementSpec[T, U], default: T = NotImplemented) -> None:
        self.name = None
        self.control_field = control_field
        self.specification = specification
        self.default = default

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(control_field={self.control_field.name!s}, specification={self.specification!r}, default={self.default!r})'

    @property
    def annotation(self) -> object:
        types = [*self.specification.type_map.values()]
        if self.specification.fallback_type is not None:
            types.append(self.specification.fallback_type)
        return reduce(operator.or_, types)

    def _get_control_value(self, instance: Structure, /) -> U:
        if self.control_field.name is None:
            raise TypeError(f'Cannot use {self.__class__.__qualname__!r} instance without calling __set_name__ on its control field.')
        try:
            return instance.__dict__[self.control_field.name]
        except KeyError as exc:
            raise ValueError(f'Control element {instance.__class__.__qualname__}.{self.control_field.name} is not set') from exc

    @overload
    def __get__(self, instance: None, owner: type[Structure]) -> Self: ...

    @overload
    def __get__(self, instance: Structure, owner: type[Structure] | None = None) -> T: ...

    def __get__(self, instance: Structure | None, owner: type[Structure] | None = None) -> Self | T:
        if instance is None:
            return self
        name = self._check_name()
        try:
            return instance.__dict__[name]
        except KeyError as exc:
            raise AttributeError(f'Attribute {name!r} of object {instance.__class__.__qualname__!r} is not set') from exc

    def __set__(self, instance: Structure, value: T) -> None:
        name = self._check_name()
        control_value = self._get_control_value(instance)
        element_type = self.specification.type_for(control_value)
        if element_type is None:
            raise ValueError(f'Cannot find associated type for dependent element {instance.__class__.__qualname__}.{name} with control value {control_value!r}')
        if not isinstance(value, element_type):
            raise TypeError(f'The value for the {name!r} field should be of type {element_type.__qualname__!r}')
        instance.__dict__[name] = value

    def from_wire(self, instance: Structure, buffer: WireData) -> None:
        name = self._check_name()
        if not isinstance(buffer, BytesIO):
            buffer = BytesIO(buffer)

        control_value = self._get_control_value(instance)
        element_type = self.specification.type_map.get(control_value, None)

        try:
            if element_type is not None:
                length = self.specification.length_type.from_wire(buffer)
                element_data = BytesIO(buffer.read(length))
                if len(element_data.getbuffer()) < length:
                    raise ValueError('insufficient data in buffer')
                value = element_type.from_wire(element_data)
                if element_data.tell() != length:
                    raise ValueError(f'{length - element_data.tell()} unused bytes at the end of the element')
            elif self.specification.fallback_type is not None:
                value = self.specification.fallback_type.from_wire(buffer)  # The fallback type handles the length prefix itself
            else:
                raise ValueError(f'no associated type for control value {control_value!r}')
        except ValueError as exc:
            raise ValueError(f'Failed to read the {instance.__class__.__qualname__}.{name} element from wire: {exc}') from exc
        instance.__dict__[name] = value

    def to_wire(self, instance: Structure) -> bytes:
        value = self.__get__(instance)
        if isinstance(value, Opaque) and type(value) is self.specification.fallback_type:
            return value.to_wire()
        return self.specification.length_type(value.wire_length()).to_wire() + value.to_wire()

    def wire_length(self, instance: Structure) -> int:
        value = self.__get__(instance)
        if isinstance(value, Opaque) and type(value) is self.specification.fallback_type:
            return value.wire_length()
        return self.specification.length_type._size_ + value.wire_length()


@dataclass_transform(kw_only_default=True, field_specifiers=(Element, FieldDependentElement))
class AnnotatedStructure(Structure):
    pass

"""Resource schema declaration.

Raw schemas are written as plain python dicts, e.g.

    {
        "name": str,
        "email": str,
        "soulmate": {"ref": "person", "inverse": "soulmate", "type": str},
        "pets": [{"ref": "pet", "inverse": "owner"}],
        "nested": {"field1": str, "field2": int},
        "address": "address",  # custom type or resource name
    }

``normalize_schema`` converts them in a single pass into tagged field specs
(:class:`Primitive`, :class:`Reference`, :class:`CustomType`) so no code has to
inspect raw declarations at runtime.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from bson import ObjectId
import mofrs
from .errors import SchemaError, SchemaFrozenError

PRIMITIVE_TYPES = ("string", "number", "boolean", "date", "binary", "object", "objectid")

PYTHON_TYPES = {
    str: "string",
    int: "number",
    float: "number",
    bool: "boolean",
    datetime.datetime: "date",
    datetime.date: "date",
    bytes: "binary",
    dict: "object",
    list: "object",
    ObjectId: "objectid",
}

# Keys the route layer and the query grammar use themselves
RESERVED_KEYS = ("id", "href", "links", "in", "or", "and", "then", "__isNew", "deletedAt", "_links")

TENANT_FIELD = "_tenantId"


@dataclass(frozen=True)
class Primitive:
    """A value stored as is: string, number, boolean, date, binary, object or objectid"""

    type: str
    many: bool = False
    fields: Optional[Mapping[str, "FieldSpec"]] = None
    validation: Tuple[str, ...] = ()
    options: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Reference:
    """A pointer to documents of another (or the same) resource"""

    target: str
    many: bool = False
    inverse: Optional[str] = None
    external: bool = False
    # primitive type of the target key, None means "the target's pk type"
    key_type: Optional[str] = None
    validation: Tuple[str, ...] = ()

    @property
    def singular(self) -> bool:
        return not self.many


@dataclass(frozen=True)
class CustomType:
    """A reusable embedded structure registered with Registry.custom_type"""

    name: str
    fields: Mapping[str, "FieldSpec"]
    many: bool = False
    validation: Tuple[str, ...] = ()


FieldSpec = Union[Primitive, Reference, CustomType]


@dataclass(frozen=True)
class ReferenceDescriptor:
    """A reference field as seen by the relationship maintainer"""

    path: str
    target: str
    singular: bool
    inverse: Optional[str]
    external: bool


def type_name(declared: Any) -> Optional[str]:
    """
    :param declared: a python type or a primitive type name
    :return: the primitive type name or None
    """
    if isinstance(declared, str):
        lowered = declared.lower()
        if lowered in PRIMITIVE_TYPES:
            return lowered
        if lowered == "array":
            return "object"
        return None
    return PYTHON_TYPES.get(declared)


def normalize_field(path: str, declared: Any, custom_types: Mapping[str, CustomType] = None) -> FieldSpec:
    """
    Convert one raw field declaration into a FieldSpec
    :param path: field name, used in error messages
    :param declared: raw declaration
    :param custom_types: registered custom types by name
    """
    custom_types = custom_types or {}
    if isinstance(declared, (Primitive, Reference, CustomType)):
        return declared

    if isinstance(declared, (list, tuple)):
        if len(declared) == 0:
            return Primitive("object", many=True)
        if len(declared) > 1:
            raise SchemaError(f'Field "{path}": a list declaration takes exactly one element')
        inner = normalize_field(path, declared[0], custom_types)
        return replace(inner, many=True)

    if isinstance(declared, dict):
        if "ref" in declared:
            key_type = None
            if declared.get("type") is not None:
                key_type = type_name(declared["type"])
                if key_type is None:
                    raise SchemaError(f'Field "{path}": unknown key type {declared["type"]!r}')
            return Reference(
                target=declared["ref"],
                inverse=declared.get("inverse"),
                external=bool(declared.get("external", False)),
                key_type=key_type,
                validation=tuple(declared.get("validation", ())),
            )
        if "type" in declared:
            inner = normalize_field(path, declared["type"], custom_types)
            options = {k: v for k, v in declared.items() if k not in ("type", "validation")}
            validation = tuple(declared.get("validation", ()))
            if isinstance(inner, Primitive):
                return replace(inner, validation=validation, options=options)
            return replace(inner, validation=validation)
        return Primitive("object", fields=MappingProxyType(normalize_fields(declared, custom_types, prefix=f"{path}.")))

    if isinstance(declared, str):
        if declared in custom_types:
            return custom_types[declared]
        primitive = type_name(declared)
        if primitive:
            return Primitive(primitive)
        return Reference(target=declared)

    primitive = type_name(declared)
    if primitive is None:
        raise SchemaError(f'Field "{path}": invalid declaration {declared!r}')
    return Primitive(primitive)


def normalize_fields(raw: Mapping[str, Any], custom_types: Mapping[str, CustomType] = None, prefix: str = "") -> Dict[str, FieldSpec]:
    return {name: normalize_field(prefix + name, declared, custom_types) for name, declared in raw.items()}


def spec_to_json(spec: FieldSpec) -> Dict[str, Any]:
    """
    :return: a json friendly description of a field spec
    """
    if isinstance(spec, Reference):
        result = {"ref": spec.target, "many": spec.many}
        if spec.inverse:
            result["inverse"] = spec.inverse
        if spec.external:
            result["external"] = True
        return result
    if isinstance(spec, CustomType):
        return {"type": spec.name, "many": spec.many, "fields": {k: spec_to_json(v) for k, v in spec.fields.items()}}
    result = {"type": spec.type, "many": spec.many}
    if spec.fields:
        result["fields"] = {k: spec_to_json(v) for k, v in spec.fields.items()}
    return result


class ResourceSchema:
    """
    The normalized schema of a resource.

    The schema can be modified until it's frozen, which happens when a resource
    handle is built for it. Late-bound system fields can still be added with
    ``add_system_field``.
    """

    def __init__(self, name: str, fields: Mapping[str, FieldSpec], pk: Optional[str] = None, upsert_keys: Iterable[str] = ()):
        self.name = name
        self.pk = pk
        self.upsert_keys = tuple(upsert_keys)
        self._fields: Dict[str, FieldSpec] = dict(fields)
        self._references: Optional[List[ReferenceDescriptor]] = None
        self.frozen = False
        if pk is not None:
            pk_spec = self._fields.get(pk)
            if not isinstance(pk_spec, Primitive) or pk_spec.many:
                raise SchemaError(f'Resource "{name}": primary key "{pk}" must be a single primitive field')

    def __repr__(self):
        return f"<ResourceSchema {self.name}>"

    def __contains__(self, name):
        return name in self._fields

    def __getitem__(self, name) -> FieldSpec:
        return self._fields[name]

    def __iter__(self):
        return iter(self._fields)

    def get(self, name, default=None) -> Optional[FieldSpec]:
        return self._fields.get(name, default)

    @property
    def fields(self) -> Mapping[str, FieldSpec]:
        return MappingProxyType(self._fields)

    @property
    def pk_field(self) -> str:
        """the document key used as identifier"""
        return self.pk or "_id"

    @property
    def pk_type(self) -> str:
        if self.pk is None:
            return "objectid"
        return self._fields[self.pk].type

    @property
    def has_tenant(self) -> bool:
        return TENANT_FIELD in self._fields

    def add_field(self, name: str, spec: Any) -> None:
        if self.frozen:
            raise SchemaFrozenError(f'Resource "{self.name}" is in use, "{name}" can not be added')
        self._fields[name] = normalize_field(name, spec)
        self._references = None

    def add_system_field(self, name: str, spec: Any) -> None:
        """
        Add a field after the schema has been frozen (plugins)
        """
        if name in self._fields:
            mofrs.log.debug("System field %s.%s already defined", self.name, name)
            return
        self._fields[name] = normalize_field(name, spec)
        self._references = None

    def freeze(self) -> None:
        self.frozen = True

    @property
    def paths(self) -> set:
        """
        :return: field names and dotted paths of nested object fields
        """
        result = set()
        for name, spec in self._fields.items():
            result.add(name)
            nested = getattr(spec, "fields", None)
            if nested and not spec.many:
                result.update(f"{name}.{sub}" for sub in nested)
        return result

    def references(self, modified: Optional[Iterable[str]] = None) -> List[ReferenceDescriptor]:
        """
        :param modified: only return references whose path is in modified
        :return: the reference fields of this schema
        """
        if self._references is None:
            self._references = [
                ReferenceDescriptor(path=name, target=spec.target, singular=spec.singular, inverse=spec.inverse, external=spec.external)
                for name, spec in self._fields.items()
                if isinstance(spec, Reference)
            ]
        if modified is None:
            return list(self._references)
        modified = set(modified)
        return [ref for ref in self._references if ref.path in modified]

    def inverse_references(self, modified: Optional[Iterable[str]] = None) -> List[ReferenceDescriptor]:
        """
        :return: the internal references that declare an inverse field
        """
        return [ref for ref in self.references(modified) if ref.inverse and not ref.external]

    def to_json(self) -> Dict[str, Any]:
        return {name: spec_to_json(spec) for name, spec in self._fields.items()}


def build_schema(name: str, raw: Mapping[str, Any], custom_types: Mapping[str, CustomType] = None, pk: Optional[str] = None, upsert_keys: Iterable[str] = ()) -> ResourceSchema:
    """
    Normalize a raw schema declaration:
    reserved keys are dropped, system fields are injected
    """
    raw = dict(raw)
    for key in RESERVED_KEYS:
        if key in raw:
            mofrs.log.warning('Reserved key "%s" is not allowed in the schema of "%s", ignoring it', key, name)
            del raw[key]
    fields = normalize_fields(raw, custom_types)
    fields["deletedAt"] = Primitive("date")
    fields["_links"] = Primitive("object")
    return ResourceSchema(name, fields, pk=pk, upsert_keys=upsert_keys)

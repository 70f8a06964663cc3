"""
Schema registry

A Registry owns the resource schemas, custom types, validators, hooks and
resource handles of one server instance:

    registry = Registry(MongoClient()["zoo"])
    registry.resource("person", {"name": str, "pets": [{"ref": "pet", "inverse": "owner"}]})
    registry.resource("pet", {"name": str, "owner": {"ref": "person", "inverse": "pets"}})
    person = registry.handle("person")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple, Union
import inflect
import pymongo
from pymongo.collection import Collection
from pymongo.database import Database
import mofrs
from .errors import SchemaError, ValidationError
from .hooks import Hook, HookRegistry
from .schema import CustomType, Primitive, Reference, ResourceSchema, TENANT_FIELD, build_schema, normalize_fields

_inflect = inflect.engine()


@dataclass(frozen=True)
class ResourceOptions:
    """Per-resource configuration, given as keyword arguments to Registry.resource"""

    pk: Optional[str] = None
    upsert_keys: Tuple[str, ...] = ()
    # hook options by hook name, {"disable": True} removes the hook
    hooks: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    default_sort: Any = None
    default_limit: Optional[int] = None
    route: Optional[str] = None
    soft_delete_links: Optional[str] = None
    read_only: bool = False
    no_index: bool = False


@dataclass(frozen=True)
class ResourceHandle:
    """A resolved resource: name, frozen schema, options and collection"""

    name: str
    schema: ResourceSchema
    options: ResourceOptions
    collection: Collection

    @property
    def pk(self) -> str:
        return self.schema.pk_field

    @property
    def route(self) -> str:
        return self.options.route or _inflect.plural(self.name)

    def __repr__(self):
        return f"<ResourceHandle {self.name}>"


ResourceRef = Union[ResourceHandle, str]


def presence(value, field_name, document):
    """built-in validator: the field must be set"""
    if value is None or value == "" or value == []:
        return f'"{field_name}" is required'
    return None


class Registry:
    """
    Resource registry for one server instance
    :param db: pymongo database (or a compatible mock)
    :param hook_options: options passed to every hook init function
    """

    def __init__(self, db: Database, hook_options: Optional[Mapping[str, Any]] = None) -> None:
        self.db = db
        self._schemas: Dict[str, ResourceSchema] = {}
        self._options: Dict[str, ResourceOptions] = {}
        self._handles: Dict[str, ResourceHandle] = {}
        self._custom_types: Dict[str, CustomType] = {}
        self._custom_hooks: Dict[str, Mapping[str, Any]] = {}
        self.validators: Dict[str, Callable] = {"presence": presence}
        self.hooks = HookRegistry(self, hook_options)

    def __contains__(self, name) -> bool:
        return name in self._schemas

    def __iter__(self):
        return iter(self._schemas)

    @property
    def names(self):
        return list(self._schemas)

    def resource(self, name: str, schema: Mapping[str, Any], **options) -> ResourceSchema:
        """
        Declare a resource
        :param name: resource name (singular)
        :param schema: raw schema declaration, see mofrs.schema
        :param options: ResourceOptions fields
        :return: the normalized schema
        """
        if name in self._schemas:
            mofrs.log.warning('Resource "%s" is already defined', name)
            return self._schemas[name]

        unknown = set(options) - set(ResourceOptions.__dataclass_fields__)
        if unknown:
            raise SchemaError(f'Resource "{name}": unknown options {sorted(unknown)}')
        if "upsert_keys" in options:
            options["upsert_keys"] = tuple(options["upsert_keys"] or ())
        resource_options = ResourceOptions(**options)
        normalized = build_schema(name, schema, self._custom_types, pk=resource_options.pk, upsert_keys=resource_options.upsert_keys)
        self._schemas[name] = normalized
        self._options[name] = resource_options

        for path, spec in normalized.fields.items():
            if isinstance(spec, CustomType) and self._custom_hooks.get(spec.name):
                self.hooks.register_custom(name, path, self._custom_hooks[spec.name], many=spec.many)

        self.hooks.before_write(name, Hook("validation", self._validation_hook(name)))
        mofrs.log.debug("Registered resource %s", name)
        return normalized

    def custom_type(self, name: str, schema: Mapping[str, Any], hooks: Optional[Mapping[str, Any]] = None) -> CustomType:
        """
        Register a reusable embedded structure
        :param hooks: {"before_write": [hooks], "after_read": [hooks], ...}
        """
        if name in self._custom_types:
            mofrs.log.warning('Custom type "%s" is already defined', name)
            return self._custom_types[name]
        custom = CustomType(name, normalize_fields(schema, self._custom_types, prefix=f"{name}."))
        self._custom_types[name] = custom
        self._custom_hooks[name] = dict(hooks or {})
        return custom

    def add_validator(self, name: str, fn: Callable) -> None:
        """
        :param fn: fn(value, field_name, document) -> error message or None
        """
        self.validators[name] = fn

    def schema(self, name: str) -> ResourceSchema:
        try:
            return self._schemas[name]
        except KeyError:
            raise SchemaError(f'Unknown resource "{name}"')

    def options(self, name: str) -> ResourceOptions:
        return self._options.get(name, ResourceOptions())

    def handle(self, resource: ResourceRef) -> ResourceHandle:
        """
        Resolve a resource name into a handle, the schema is frozen and
        the indexes are created on first resolution
        """
        if isinstance(resource, ResourceHandle):
            return resource
        handle = self._handles.get(resource)
        if handle is not None:
            return handle

        schema = self.schema(resource)
        for ref in schema.references():
            if not ref.external and ref.target not in self._schemas:
                raise SchemaError(f'Resource "{resource}": field "{ref.path}" references unknown resource "{ref.target}"')
        schema.freeze()
        handle = ResourceHandle(resource, schema, self._options[resource], self.db[resource])
        self.ensure_indexes(handle)
        self._handles[resource] = handle
        return handle

    def key_type(self, resource: str) -> str:
        """
        :return: the primitive type of the key of resource
        """
        return self.schema(resource).pk_type

    def reference_key_type(self, spec: Reference) -> str:
        if spec.key_type:
            return spec.key_type
        if spec.external or spec.target not in self._schemas:
            return "string"
        return self.key_type(spec.target)

    @staticmethod
    def ensure_indexes(handle: ResourceHandle) -> None:
        schema = handle.schema
        collection = handle.collection
        if schema.pk:
            if schema.has_tenant:
                keys = [(schema.pk, pymongo.ASCENDING), (TENANT_FIELD, pymongo.ASCENDING)]
            else:
                keys = [(schema.pk, pymongo.ASCENDING)]
            collection.create_index(keys, unique=True)
        for ref in schema.references():
            collection.create_index([(ref.path, pymongo.ASCENDING)])
        collection.create_index([("deletedAt", pymongo.ASCENDING)])
        for name, spec in schema.fields.items():
            if isinstance(spec, Primitive) and spec.options.get("index"):
                collection.create_index([(name, pymongo.ASCENDING)], unique=bool(spec.options.get("unique")))

    def describe(self) -> Dict[str, Any]:
        """
        :return: json friendly resource definitions
        """
        result = {}
        for name, schema in self._schemas.items():
            options = self.options(name)
            result[name] = {
                "name": name,
                "route": options.route or _inflect.plural(name),
                "pk": schema.pk_field,
                "schema": schema.to_json(),
                "hooks": self.hooks.names(name),
            }
        return result

    #
    # Validation
    #
    def validate(self, name: str, document: Mapping[str, Any], partial: bool = False) -> list:
        """
        :param partial: only validate the fields present in the document (PATCH)
        :return: list of error messages
        """
        schema = self.schema(name)
        errors = []
        for field_name, spec in schema.fields.items():
            if partial and field_name not in document:
                continue
            for validator_name in spec.validation:
                validator = self.validators.get(validator_name)
                if validator is None:
                    raise SchemaError(f'Unknown validator "{validator_name}" for {name}.{field_name}')
                message = validator(document.get(field_name), field_name, document)
                if message:
                    errors.append(message)
        return errors

    def _validation_hook(self, name: str) -> Callable:
        def init(config, options):
            def validate(document, request, response):
                if not isinstance(document, dict):
                    return document
                method = getattr(request, "method", "POST")
                if method == "DELETE":
                    return document
                partial = method == "PATCH"
                values = dict(document.get("$set", {}))
                values.update({key: value for key, value in document.items() if not key.startswith("$")})
                errors = self.validate(name, values, partial=partial)
                if errors:
                    raise ValidationError("; ".join(errors))
                return document

            return validate

        return init

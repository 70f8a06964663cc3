import datetime

import pytest
from bson import ObjectId

from mofrs import CustomType, Primitive, Reference, Registry, SchemaError, SchemaFrozenError
from mofrs.schema import build_schema, normalize_field


def test_python_types_become_primitives() -> None:
    assert normalize_field("a", str) == Primitive("string")
    assert normalize_field("a", int) == Primitive("number")
    assert normalize_field("a", float) == Primitive("number")
    assert normalize_field("a", bool) == Primitive("boolean")
    assert normalize_field("a", datetime.datetime) == Primitive("date")
    assert normalize_field("a", bytes) == Primitive("binary")
    assert normalize_field("a", ObjectId) == Primitive("objectid")
    assert normalize_field("a", "Number") == Primitive("number")
    assert normalize_field("a", [str]) == Primitive("string", many=True)


def test_reference_declarations() -> None:
    single = normalize_field("soulmate", {"ref": "person", "inverse": "soulmate", "type": str})
    assert single == Reference("person", inverse="soulmate", key_type="string")
    assert single.singular

    plural = normalize_field("pets", [{"ref": "pet", "inverse": "owner"}])
    assert plural.many and plural.target == "pet" and plural.inverse == "owner"

    # a string that is neither a primitive nor a custom type names a resource
    assert normalize_field("owner", "person") == Reference("person")


def test_nested_objects_and_validation() -> None:
    nested = normalize_field("nested", {"field1": str, "field2": int})
    assert nested.type == "object"
    assert nested.fields["field2"] == Primitive("number")

    validated = normalize_field("name", {"type": str, "validation": ["presence"], "index": True})
    assert validated.validation == ("presence",)
    assert validated.options == {"index": True}


def test_invalid_declarations() -> None:
    with pytest.raises(SchemaError):
        normalize_field("a", [str, int])
    with pytest.raises(SchemaError):
        normalize_field("a", object())
    with pytest.raises(SchemaError):
        normalize_field("a", {"ref": "person", "type": "nonsense"})


def test_reserved_keys_are_dropped_and_system_fields_added() -> None:
    schema = build_schema("thing", {"name": str, "id": str, "links": dict, "in": str})
    assert "id" not in schema and "links" not in schema and "in" not in schema
    assert schema["deletedAt"] == Primitive("date")
    assert schema["_links"] == Primitive("object")


def test_schema_paths_and_references(registry: Registry) -> None:
    schema = registry.schema("person")
    assert "nested.field1" in schema.paths
    assert {ref.path for ref in schema.references()} == {"soulmate", "lovers", "pets", "houses", "externalResources"}
    # external references are never repaired
    assert "externalResources" not in {ref.path for ref in schema.inverse_references()}
    assert [ref.path for ref in schema.inverse_references(["name", "pets"])] == ["pets"]


def test_pk_must_be_a_primitive(db) -> None:
    registry = Registry(db)
    with pytest.raises(SchemaError):
        registry.resource("broken", {"owner": "person"}, pk="owner")


def test_schema_freezes_on_first_use(registry: Registry) -> None:
    schema = registry.schema("pet")
    schema.add_field("color", str)
    registry.handle("pet")
    with pytest.raises(SchemaFrozenError):
        schema.add_field("size", int)
    # plugins may still add system fields
    schema.add_system_field("_version", int)
    assert schema["_version"] == Primitive("number")


def test_unknown_reference_target(db) -> None:
    registry = Registry(db)
    registry.resource("orphan", {"parent": {"ref": "nothing", "inverse": "children"}})
    with pytest.raises(SchemaError):
        registry.handle("orphan")


def test_custom_types(db) -> None:
    registry = Registry(db)
    address = registry.custom_type("address", {"street": str, "number": int})
    assert isinstance(address, CustomType)
    registry.resource("company", {"name": str, "addresses": ["address"], "hq": "address"})
    schema = registry.schema("company")
    assert schema["hq"] == address
    assert schema["addresses"].many


def test_indexes(registry: Registry) -> None:
    person = registry.handle("person")
    indexes = person.collection.index_information()
    unique = [index for index in indexes.values() if index.get("unique")]
    assert [key for key, _ in unique[0]["key"]] == ["email", "_tenantId"]
    assert any(index["key"][0][0] == "deletedAt" for index in indexes.values())


def test_describe(registry: Registry) -> None:
    description = registry.describe()
    assert description["person"]["route"] == "people"
    assert description["person"]["pk"] == "email"
    assert description["pet"]["schema"]["owner"] == {"ref": "person", "many": False, "inverse": "pets"}
    assert "validation" in description["pet"]["hooks"]["before_write"]

import pytest

import mofrs
from mofrs import RelationshipRepairError, StorageAdapter
from mofrs.relationships import get_modified_paths


def _raw(adapter: StorageAdapter, resource: str, **match):
    return adapter.handle(resource).collection.find_one(match)


def test_get_modified_paths() -> None:
    update = {"$set": {"pets": [], "nested.field1": "x"}, "$unset": {"soulmate": ""}, "name": "A", "links": {"houses": []}}
    assert get_modified_paths(update) == ["pets", "nested", "soulmate", "name", "houses"]


def test_one_to_one(adapter: StorageAdapter) -> None:
    for email in ("p1@x.com", "p2@x.com", "p3@x.com"):
        adapter.create("person", {"email": email})

    adapter.update("person", "p3@x.com", {"soulmate": "p2@x.com"})
    assert _raw(adapter, "person", email="p2@x.com")["soulmate"] == "p3@x.com"

    # p1 takes p2: p2 points back at p1 and p3 no longer holds p2
    adapter.update("person", "p1@x.com", {"soulmate": "p2@x.com"})
    assert _raw(adapter, "person", email="p2@x.com")["soulmate"] == "p1@x.com"
    assert "soulmate" not in _raw(adapter, "person", email="p3@x.com")

    # clearing the reference clears the inverse
    adapter.update("person", "p1@x.com", {"$unset": {"soulmate": ""}})
    assert "soulmate" not in _raw(adapter, "person", email="p2@x.com")


def test_one_to_many(adapter: StorageAdapter) -> None:
    adapter.create("person", {"email": "a@x.com"})
    adapter.create("person", {"email": "b@x.com"})
    pet = adapter.create("pet", {"name": "Rex", "owner": "a@x.com"})
    assert _raw(adapter, "person", email="a@x.com")["pets"] == [pet["id"]]

    adapter.update("pet", pet["id"], {"owner": "b@x.com"})
    assert _raw(adapter, "person", email="a@x.com")["pets"] == []
    assert _raw(adapter, "person", email="b@x.com")["pets"] == [pet["id"]]


def test_many_to_one_unbinds_previous_owners(adapter: StorageAdapter) -> None:
    rex = adapter.create("pet", {"name": "Rex"})
    fido = adapter.create("pet", {"name": "Fido"})
    adapter.create("person", {"email": "a@x.com", "pets": [rex["id"], fido["id"]]})
    assert _raw(adapter, "pet", name="Rex")["owner"] == "a@x.com"
    assert _raw(adapter, "pet", name="Fido")["owner"] == "a@x.com"

    # Rex changes owner: it is pulled out of the pets of a@x.com
    adapter.create("person", {"email": "b@x.com", "pets": [rex["id"]]})
    assert _raw(adapter, "pet", name="Rex")["owner"] == "b@x.com"
    assert _raw(adapter, "person", email="a@x.com")["pets"] == [fido["id"]]

    # Fido is dropped by its owner
    adapter.update("person", "a@x.com", {"pets": []})
    assert "owner" not in _raw(adapter, "pet", name="Fido")


def test_many_to_many(adapter: StorageAdapter) -> None:
    adapter.create("person", {"email": "a@x.com"})
    adapter.create("person", {"email": "b@x.com"})
    house = adapter.create("house", {"address": "Main street", "owners": ["a@x.com", "b@x.com"]})
    assert _raw(adapter, "person", email="a@x.com")["houses"] == [house["id"]]
    assert _raw(adapter, "person", email="b@x.com")["houses"] == [house["id"]]

    adapter.update("house", house["id"], {"owners": ["b@x.com"]})
    assert _raw(adapter, "person", email="a@x.com")["houses"] == []
    assert _raw(adapter, "person", email="b@x.com")["houses"] == [house["id"]]

    # self referencing many-to-many
    adapter.update("person", "a@x.com", {"lovers": ["b@x.com"]})
    assert _raw(adapter, "person", email="b@x.com")["lovers"] == ["a@x.com"]


def test_repair_is_scoped_to_the_tenant(adapter: StorageAdapter) -> None:
    for tenant in ("t1", "t2"):
        adapter.create("person", {"email": "a@x.com", "_tenantId": tenant})
        adapter.create("person", {"email": "b@x.com", "_tenantId": tenant})

    adapter.update("person", {"email": "a@x.com", "_tenantId": "t1"}, {"soulmate": "b@x.com"})
    assert _raw(adapter, "person", email="b@x.com", _tenantId="t1")["soulmate"] == "a@x.com"
    assert "soulmate" not in _raw(adapter, "person", email="b@x.com", _tenantId="t2")


def test_soft_delete_clears_links(adapter: StorageAdapter) -> None:
    rex = adapter.create("pet", {"name": "Rex"})
    adapter.create("person", {"email": "a@x.com", "pets": [rex["id"]]})
    adapter.mark_deleted("person", "a@x.com")
    assert "owner" not in _raw(adapter, "pet", name="Rex")
    assert _raw(adapter, "person", email="a@x.com")["_links"] == {"pets": [rex["id"]]}


def test_soft_delete_preserves_to_many_links(adapter: StorageAdapter) -> None:
    mofrs.MOFRS.SOFT_DELETE_LINKS = "preserve"
    mofrs.config.get_config.cache_clear()
    rex = adapter.create("pet", {"name": "Rex"})
    adapter.create("person", {"email": "b@x.com"})
    adapter.create("person", {"email": "a@x.com", "pets": [rex["id"]], "soulmate": "b@x.com"})

    adapter.mark_deleted("person", "a@x.com")
    # singular references are always released
    assert "soulmate" not in _raw(adapter, "person", email="b@x.com")
    assert _raw(adapter, "pet", name="Rex")["owner"] == "a@x.com"
    assert _raw(adapter, "person", email="a@x.com")["pets"] == [rex["id"]]

    # the deferred repair happens on hard delete
    adapter.delete("person", "a@x.com")
    assert "owner" not in _raw(adapter, "pet", name="Rex")


def test_repair_errors_are_collected(adapter: StorageAdapter, monkeypatch: pytest.MonkeyPatch) -> None:
    adapter.create("person", {"email": "b@x.com"})
    rex = adapter.create("pet", {"name": "Rex"})

    def broken(*args):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(adapter.relationships, "one_to_one", broken)
    monkeypatch.setattr(adapter.relationships, "many_to_one", broken)
    with pytest.raises(RelationshipRepairError) as exc_info:
        adapter.create("person", {"email": "a@x.com", "soulmate": "b@x.com", "pets": [rex["id"]]})
    assert len(exc_info.value.errors) == 2
    # the primary write happened
    assert _raw(adapter, "person", email="a@x.com") is not None


def test_many_to_one_unbinds_every_stale_owner(adapter: StorageAdapter) -> None:
    rex = adapter.create("pet", {"name": "Rex"})
    people = adapter.handle("person").collection
    # stale lists written behind the back of the maintainer
    people.insert_one({"email": "a@x.com", "pets": [rex["id"]]})
    people.insert_one({"email": "b@x.com", "pets": [rex["id"]]})

    adapter.create("person", {"email": "c@x.com", "pets": [rex["id"]]})
    assert _raw(adapter, "person", email="a@x.com")["pets"] == []
    assert _raw(adapter, "person", email="b@x.com")["pets"] == []
    assert _raw(adapter, "person", email="c@x.com")["pets"] == [rex["id"]]
    assert _raw(adapter, "pet", name="Rex")["owner"] == "c@x.com"


def test_soft_deleted_links_keep_the_singular_snapshot(adapter: StorageAdapter) -> None:
    mofrs.MOFRS.SOFT_DELETE_LINKS = "preserve"
    mofrs.config.get_config.cache_clear()
    rex = adapter.create("pet", {"name": "Rex"})
    adapter.create("person", {"email": "b@x.com"})
    adapter.create("person", {"email": "a@x.com", "pets": [rex["id"]], "soulmate": "b@x.com"})

    marked = adapter.mark_deleted("person", "a@x.com")
    assert marked[0]["links"] == {"soulmate": "b@x.com", "pets": [rex["id"]]}
    found = adapter.find("person", "a@x.com", {"includeDeleted": True})
    assert found["links"] == {"soulmate": "b@x.com", "pets": [rex["id"]]}

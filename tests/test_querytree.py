from types import SimpleNamespace

import pytest

import mofrs
from mofrs import QueryTreeResolver, Registry, ResourceService, ValidationError


@pytest.fixture
def fetched():
    return []


@pytest.fixture
def resolver(registry: Registry, fetched: list) -> QueryTreeResolver:
    def fetch_ids(request, handle, query):
        fetched.append((handle.name, query))
        return ["X"]

    return QueryTreeResolver(registry, fetch_ids)


def test_nested_reference_filter_becomes_an_id_predicate(resolver: QueryTreeResolver, fetched: list) -> None:
    request = SimpleNamespace(method="GET")
    assert resolver.resolve(request, "person", {"soulmate": {"name": "Wally"}}) == {"soulmate": {"$in": ["X"]}}
    assert fetched == [("person", {"name": "Wally"})]


def test_operator_values_are_left_alone(resolver: QueryTreeResolver, fetched: list) -> None:
    query = {"$or": [{"soulmate": {"$exists": True}}, {"pets": {"$in": ["a"]}}], "name": "Wally"}
    assert resolver.resolve(None, "person", query) == query
    assert fetched == []


def test_to_one_in_and_nin(resolver: QueryTreeResolver) -> None:
    assert resolver.resolve(None, "pet", {"owner": {"in": "a@x.com,b@x.com"}}) == {"owner": {"$in": ["a@x.com", "b@x.com"]}}
    assert resolver.resolve(None, "pet", {"owner": {"nin": ["a@x.com"]}}) == {"owner": {"$nin": ["a@x.com"]}}


def test_nested_levels_and_logical_branches(resolver: QueryTreeResolver, fetched: list) -> None:
    query = {"or": {"0": {"owner": {"soulmate": {"name": "Wally"}}}, "1": {"name": "Rex"}}}
    resolved = resolver.resolve(None, "pet", query)
    assert resolved == {"or": [{"owner": {"$in": ["X"]}}, {"name": "Rex"}]}
    # the innermost filter is resolved first
    assert fetched == [("person", {"name": "Wally"}), ("person", {"soulmate": {"$in": ["X"]}})]


def test_external_references_are_not_resolved(resolver: QueryTreeResolver, fetched: list) -> None:
    query = {"externalResources": {"name": "x"}}
    assert resolver.resolve(None, "person", query) == query
    assert fetched == []


def test_subrequests_skip_soft_deleted_documents(service: ResourceService) -> None:
    mofrs.MOFRS.SOFT_DELETE_LINKS = "preserve"
    mofrs.config.get_config.cache_clear()
    service.create("person", [{"email": "w@x.com", "name": "Wally"}, {"email": "a@x.com", "name": "Alice", "lovers": ["w@x.com"]}])
    result = service.get_all("person", {"filter": {"lovers": {"name": "Wally"}}})
    assert [person["id"] for person in result.resources] == ["a@x.com"]

    service.destroy("person", "w@x.com")
    # a@x.com still lists the soft deleted person, the sub-request doesn't match it
    result = service.get_all("person", {"filter": {"lovers": {"name": "Wally"}}})
    assert result.resources == []


def test_unsupported_operators_are_rejected(resolver: QueryTreeResolver, fetched: list) -> None:
    with pytest.raises(ValidationError):
        resolver.resolve(None, "person", {"$where": "sleep(100)"})
    with pytest.raises(ValidationError):
        resolver.resolve(None, "person", {"or": [{"$where": "sleep(100)"}]})
    assert fetched == []

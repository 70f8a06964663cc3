import datetime

import mongomock
import pytest
from flask import Flask

import mofrs
from mofrs import MOFRSAPI, Registry, ResourceService, StorageAdapter


def define_resources(registry: Registry) -> None:
    registry.resource(
        "person",
        {
            "name": str,
            "email": str,
            "appearances": int,
            "birthday": datetime.datetime,
            "soulmate": {"ref": "person", "inverse": "soulmate", "type": str},
            "lovers": [{"ref": "person", "inverse": "lovers", "type": str}],
            "pets": [{"ref": "pet", "inverse": "owner"}],
            "houses": [{"ref": "house", "inverse": "owners"}],
            "externalResources": [{"ref": "externalResourceReference", "inverse": "person", "type": str, "external": True}],
            "nested": {"field1": str, "field2": int},
            "_tenantId": str,
        },
        pk="email",
    )
    registry.resource(
        "pet",
        {
            "name": str,
            "appearances": int,
            "owner": {"ref": "person", "inverse": "pets"},
        },
    )
    registry.resource(
        "house",
        {
            "address": str,
            "owners": [{"ref": "person", "inverse": "houses"}],
        },
    )
    registry.resource(
        "gadget",
        {
            "code": str,
            "name": str,
            "spec": {"color": str, "size": int},
        },
        upsert_keys=["code"],
    )


@pytest.fixture
def db():
    return mongomock.MongoClient()["mofrs_test"]


@pytest.fixture
def registry(db) -> Registry:
    registry = Registry(db)
    define_resources(registry)
    return registry


@pytest.fixture
def adapter(registry: Registry) -> StorageAdapter:
    return StorageAdapter(registry)


@pytest.fixture
def service(registry: Registry, adapter: StorageAdapter) -> ResourceService:
    return ResourceService(registry, adapter)


@pytest.fixture
def app(registry: Registry, service: ResourceService) -> Flask:
    app = Flask("mofrs_test")
    app.config["TESTING"] = True
    api = MOFRSAPI(app, registry, service=service)
    api.expose("person", "pet", "house")
    return app


@pytest.fixture
def client(app: Flask):
    return app.test_client()


@pytest.fixture(autouse=True)
def _reset_config():
    yield
    mofrs.MOFRS.SOFT_DELETE_LINKS = "clear"
    mofrs.MOFRS.UPSERT_MAX_RETRIES = 5
    mofrs.config.get_config.cache_clear()

from types import SimpleNamespace

import pytest

from mofrs import Abort, Continue, GenericError, Hook, HookAbort, Registry, ResourceService, ValidationError
from mofrs.hooks import as_hook

REQUEST = SimpleNamespace(method="GET")


def _tagging_hook(name: str, priority: int = 0, config=None) -> Hook:
    def init(config, options):
        def fn(value, request, response):
            value.setdefault("trail", []).append((name, config.get("tag")))
            return value

        return fn

    return Hook(name, init, priority=priority, config=config or {})


def test_chain_order(registry: Registry) -> None:
    hooks = registry.hooks
    hooks.after_read("pet", [_tagging_hook("low", 1), _tagging_hook("high", 10)])
    hooks.after_all_read(_tagging_hook("global"))
    result = hooks.run("pet", "after", "read", {}, REQUEST)
    assert [name for name, _ in result["trail"]] == ["global", "high", "low"]


def test_hooks_attach_to_several_resources(registry: Registry) -> None:
    registry.hooks.after_read("pet house unknown", _tagging_hook("both"))
    assert registry.hooks.run("pet", "after", "read", {}, REQUEST)["trail"] == [("both", None)]
    assert registry.hooks.run("house", "after", "read", {}, REQUEST)["trail"] == [("both", None)]
    assert registry.hooks.run("person", "after", "read", {}, REQUEST) == {}


def test_hook_config_merge(db) -> None:
    registry = Registry(db)
    registry.resource("pet", {"name": str}, hooks={"tagger": {"tag": "resource"}, "silenced": {"disable": True}})
    registry.resource("house", {"address": str})
    registry.hooks.after_all_read([_tagging_hook("tagger", config={"tag": "default"}), _tagging_hook("silenced")])

    assert registry.hooks.run("pet", "after", "read", {}, REQUEST)["trail"] == [("tagger", "resource")]
    assert registry.hooks.run("house", "after", "read", {}, REQUEST)["trail"] == [("tagger", "default"), ("silenced", None)]

    registry.hooks.after_read("house", _tagging_hook("inline"), config={"tag": "inline"})
    assert registry.hooks.run("house", "after", "read", {}, REQUEST)["trail"][-1] == ("inline", "inline")


def test_chains_are_cached_until_registration(registry: Registry) -> None:
    chain = registry.hooks.chain("pet", "after", "read")
    assert registry.hooks.chain("pet", "after", "read") is chain
    registry.hooks.after_read("pet", lambda value, request, response: value)
    assert len(registry.hooks.chain("pet", "after", "read")) == len(chain) + 1


@pytest.mark.parametrize("result", [Abort, None, False])
def test_cancellation(registry: Registry, result) -> None:
    registry.hooks.before_read("pet", lambda value, request, response: result)
    with pytest.raises(HookAbort) as exc_info:
        registry.hooks.run("pet", "before", "read", {}, REQUEST)
    assert exc_info.value.status_code == 321
    assert exc_info.value.message == ""


def test_empty_values_continue(registry: Registry) -> None:
    registry.hooks.before_read("pet", lambda value, request, response: {})
    registry.hooks.after_read("pet", lambda value, request, response: Continue(0))
    assert registry.hooks.run("pet", "before", "read", {"a": 1}, REQUEST) == {}
    assert registry.hooks.run("pet", "after", "read", {}, REQUEST) == 0


def test_hook_exceptions(registry: Registry) -> None:
    class Invalid(Exception):
        is_validation_error = True

    def invalid(value, request, response):
        raise Invalid("name is too short")

    def crash(value, request, response):
        raise KeyError("boom")

    registry.hooks.after_read("pet", invalid)
    with pytest.raises(ValidationError):
        registry.hooks.run("pet", "after", "read", {}, REQUEST)

    registry.hooks.after_read("house", crash)
    with pytest.raises(GenericError):
        registry.hooks.run("house", "after", "read", {}, REQUEST)


def test_plain_callables_get_a_stable_name() -> None:
    def fn(value, request, response):
        return value

    assert as_hook(fn).name == as_hook(fn).name
    assert len(as_hook(fn).name) == 32


def test_custom_type_hooks(db) -> None:
    def upper(value, request, response):
        value["street"] = value["street"].upper()
        return value

    registry = Registry(db)
    registry.custom_type("address", {"street": str}, hooks={"before_write": [upper]})
    registry.resource("company", {"name": str, "hq": "address", "branches": ["address"]})
    service = ResourceService(registry)
    created = service.create("company", [{"name": "acme", "hq": {"street": "main"}, "branches": [{"street": "side"}]}]).values[0]
    assert created["hq"] == {"street": "MAIN"}
    assert created["branches"] == [{"street": "SIDE"}]


def test_before_read_hook_extends_the_filter(registry: Registry, service: ResourceService) -> None:
    service.create("pet", [{"name": "Rex"}, {"name": "Fido"}])
    registry.hooks.before_read("pet", lambda value, request, response: {"name": "Rex"})
    assert [pet["name"] for pet in service.get_all("pet").resources] == ["Rex"]


def test_validation_hook(db) -> None:
    registry = Registry(db)
    registry.add_validator("short", lambda value, field, document: None if value is None or len(value) < 5 else f"{field} is too long")
    registry.resource("pet", {"name": {"type": str, "validation": ["presence", "short"]}, "color": str})
    service = ResourceService(registry)

    result = service.create("pet", [{"color": "red"}, {"name": "Rex"}, {"name": "Rexxxxx"}])
    assert len(result.values) == 1
    assert all(isinstance(error, ValidationError) for error in result.errors)

    pet = result.values[0]
    # PATCH only validates the fields it sets
    assert service.update("pet", pet["id"], {"color": "blue"})["color"] == "blue"
    with pytest.raises(ValidationError):
        service.update("pet", pet["id"], {"$set": {"name": ""}})

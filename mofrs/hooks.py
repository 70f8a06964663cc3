"""
Hook pipeline

Hooks transform the documents flowing through the read and write paths:

    def init(config, options):
        def fn(value, request, response):
            value["touched"] = True
            return value
        return fn

    registry.hooks.before_write("person pet", Hook("touch", init, priority=10))

A hook returns the (possibly new) value to continue the chain. Returning
``Abort``, ``None`` or ``False`` cancels the chain, ``Continue(value)`` can be
used to continue with a falsy value such as an empty dict.
"""

from __future__ import annotations

import hashlib
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union
import mofrs
from .errors import GenericError, HookAbort, MofrsError, ValidationError

STAGES = ("before", "after")
KINDS = ("read", "write", "response", "errorResponse")


class Continue:
    """Continue the chain with ``value``"""

    __slots__ = ("value",)

    def __init__(self, value: Any) -> None:
        self.value = value

    def __repr__(self):
        return f"Continue({self.value!r})"


class _Abort:
    """Cancel the chain"""

    def __repr__(self):
        return "Abort"

    def __bool__(self):
        return False


Abort = _Abort()


@dataclass(frozen=True)
class Hook:
    """
    :param name: the hook name, used to configure or disable the hook per resource
    :param init: init(config, options) -> fn(value, request, response)
    :param priority: higher priorities run first
    :param config: default hook configuration
    """

    name: str
    init: Callable[[Mapping, Mapping], Callable]
    priority: int = 0
    config: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BoundHook:
    """An initialized hook, part of a resource chain"""

    name: str
    fn: Callable
    priority: int = 0


@dataclass
class Outcome:
    """The result of running a chain (or a write) for one document of a batch"""

    value: Any = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def aborted(self) -> bool:
        return isinstance(self.error, HookAbort)


def as_hook(hook: Union[Hook, Callable], priority: int = 0) -> Hook:
    """
    Wrap a plain callable fn(value, request, response) in a Hook,
    the generated name is derived from the function source
    """
    if isinstance(hook, Hook):
        return hook
    if not callable(hook):
        raise TypeError(f"Invalid hook: {hook!r}")
    try:
        source = inspect.getsource(hook)
    except (OSError, TypeError):
        source = getattr(hook, "__qualname__", repr(hook))
    name = hashlib.md5(source.encode()).hexdigest()
    return Hook(name, lambda config, options: hook, priority=priority)


def _split_names(names: Union[str, Iterable[str]]) -> List[str]:
    if isinstance(names, str):
        return [name for name in names.split() if name]
    return list(names)


def _as_list(hooks) -> list:
    if isinstance(hooks, (list, tuple)):
        return list(hooks)
    return [hooks]


class HookRegistry:
    """
    Per-registry hook storage: global hooks (all resources), custom type hooks
    and resource hooks, composed into one cached chain per (resource, stage, kind)
    """

    def __init__(self, registry, options: Optional[Mapping[str, Any]] = None) -> None:
        self.registry = registry
        self.options = dict(options or {})
        self._global: Dict[Tuple[str, str], List[Tuple[Hook, Mapping]]] = {}
        self._local: Dict[Tuple[str, str, str], List[Tuple[Hook, Mapping]]] = {}
        self._custom: Dict[Tuple[str, str, str], List[BoundHook]] = {}
        self._chains: Dict[Tuple[str, str, str], Tuple[BoundHook, ...]] = {}

    #
    # Registration
    #
    def register(self, names, stage: str, kind: str, hooks, inline_config: Optional[Mapping] = None) -> None:
        """
        Attach hooks to one or more resources
        :param names: resource name or space separated names
        :param stage: "before" or "after"
        :param kind: one of KINDS
        :param hooks: a Hook, a callable or a list of them
        :param inline_config: configuration merged over hook.config
        """
        self._check(stage, kind)
        for name in _split_names(names):
            if name not in self.registry:
                mofrs.log.warning('Unknown resource "%s", hooks not attached', name)
                continue
            entries = self._local.setdefault((name, stage, kind), [])
            entries.extend((as_hook(hook), dict(inline_config or {})) for hook in _as_list(hooks))
        self._chains.clear()

    def register_global(self, stage: str, kind: str, hooks, inline_config: Optional[Mapping] = None) -> None:
        """
        Attach hooks to every resource, they run before the resource hooks
        """
        self._check(stage, kind)
        entries = self._global.setdefault((stage, kind), [])
        entries.extend((as_hook(hook), dict(inline_config or {})) for hook in _as_list(hooks))
        self._chains.clear()

    def register_custom(self, resource: str, path: str, custom_hooks: Mapping[str, Any], many: bool = False) -> None:
        """
        Run the hooks of a custom type against the embedded value at ``path``
        :param custom_hooks: {"before_write": [hooks], "after_read": [hooks], ...}
        """
        for hook_kind, hooks in (custom_hooks or {}).items():
            stage, kind = hook_kind.split("_", 1)
            self._check(stage, kind)
            entries = self._custom.setdefault((resource, stage, kind), [])
            for hook in _as_list(hooks):
                hook = as_hook(hook)
                fn = hook.init(dict(hook.config), self.options)
                entries.append(BoundHook(f"{path}.{hook.name}", _embedded(path, fn, many), hook.priority))
        self._chains.clear()

    @staticmethod
    def _check(stage, kind):
        if stage not in STAGES or kind not in KINDS:
            raise ValueError(f"Invalid hook type: {stage} {kind}")

    def before_read(self, names, hooks, config=None):
        self.register(names, "before", "read", hooks, config)

    def before_write(self, names, hooks, config=None):
        self.register(names, "before", "write", hooks, config)

    def after_read(self, names, hooks, config=None):
        self.register(names, "after", "read", hooks, config)

    def after_write(self, names, hooks, config=None):
        self.register(names, "after", "write", hooks, config)

    def before_rw(self, names, hooks, config=None):
        self.before_read(names, hooks, config)
        self.before_write(names, hooks, config)

    def after_rw(self, names, hooks, config=None):
        self.after_read(names, hooks, config)
        self.after_write(names, hooks, config)

    def before_response(self, names, hooks, config=None):
        self.register(names, "before", "response", hooks, config)

    def before_error_response(self, names, hooks, config=None):
        self.register(names, "before", "errorResponse", hooks, config)

    def before_all_read(self, hooks, config=None):
        self.register_global("before", "read", hooks, config)

    def before_all_write(self, hooks, config=None):
        self.register_global("before", "write", hooks, config)

    def after_all_read(self, hooks, config=None):
        self.register_global("after", "read", hooks, config)

    def after_all_write(self, hooks, config=None):
        self.register_global("after", "write", hooks, config)

    def before_all_rw(self, hooks, config=None):
        self.before_all_read(hooks, config)
        self.before_all_write(hooks, config)

    def after_all_rw(self, hooks, config=None):
        self.after_all_read(hooks, config)
        self.after_all_write(hooks, config)

    #
    # Composition
    #
    def hook_config(self, hook: Hook, resource: str, inline_config: Optional[Mapping] = None) -> Dict[str, Any]:
        """
        :return: hook.config, updated by the inline config and by the resource hooks option
        """
        config = dict(hook.config)
        config.update(inline_config or {})
        resource_hooks = self.registry.options(resource).hooks or {}
        config.update(resource_hooks.get(hook.name) or {})
        return config

    def _bind(self, resource: str, entries) -> List[BoundHook]:
        result = []
        for hook, inline_config in sorted(entries, key=lambda entry: -entry[0].priority):
            config = self.hook_config(hook, resource, inline_config)
            if config.get("disable"):
                mofrs.log.debug("Hook %s is disabled for %s", hook.name, resource)
                continue
            result.append(BoundHook(hook.name, hook.init(config, self.options), hook.priority))
        return result

    def chain(self, resource: str, stage: str, kind: str) -> Tuple[BoundHook, ...]:
        """
        :return: the cached chain for the resource: global hooks, custom type hooks, resource hooks
        """
        key = (resource, stage, kind)
        cached = self._chains.get(key)
        if cached is None:
            chain = self._bind(resource, self._global.get((stage, kind), []))
            chain += self._custom.get(key, [])
            chain += self._bind(resource, self._local.get(key, []))
            cached = self._chains[key] = tuple(chain)
        return cached

    def names(self, resource: str) -> Dict[str, List[str]]:
        return {f"{stage}_{kind}": [hook.name for hook in self.chain(resource, stage, kind)] for stage in STAGES for kind in KINDS}

    #
    # Execution
    #
    def run(self, resource: str, stage: str, kind: str, value: Any, request=None, response=None) -> Any:
        """
        Run the chain on value
        :return: the transformed value
        :raises HookAbort: when a hook cancels the chain
        """
        for hook in self.chain(resource, stage, kind):
            try:
                result = hook.fn(value, request, response)
            except MofrsError:
                raise
            except Exception as exc:
                if getattr(exc, "is_validation_error", False):
                    raise ValidationError(str(exc)) from exc
                mofrs.log.exception(exc)
                raise GenericError(f"Hook {hook.name} failed: {exc}") from exc
            if result is Abort or result is None or result is False:
                raise HookAbort(resource, hook.name)
            if isinstance(result, Continue):
                result = result.value
            value = result
        return value

    def run_many(self, resource: str, stage: str, kind: str, values: Iterable[Any], request=None, response=None) -> List[Outcome]:
        """
        Run the chain on every value, a failure doesn't stop the siblings
        """
        outcomes = []
        for value in values:
            try:
                outcomes.append(Outcome(self.run(resource, stage, kind, value, request, response)))
            except MofrsError as exc:
                outcomes.append(Outcome(value, exc))
        return outcomes


def _embedded(path: str, fn: Callable, many: bool) -> Callable:
    """
    Apply a custom type hook to the embedded value(s) at path
    """

    def run_embedded(value, request, response):
        if not isinstance(value, dict) or value.get(path) is None:
            return value
        embedded = value[path] if many else [value[path]]
        results = []
        for item in embedded:
            result = fn(item, request, response)
            if result is Abort or result is None or result is False:
                return result
            results.append(result.value if isinstance(result, Continue) else result)
        value[path] = results if many else results[0]
        return value

    return run_embedded

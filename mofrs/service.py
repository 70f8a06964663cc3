"""
Resource service: the read and write paths shared by the http layer,
the query tree resolver and programmatic callers.

Every path runs the hook chains of the resource around the storage adapter:

    before read  -> query tree -> find_many -> after read (per document)
    before write (per document) -> create/update/delete -> after write (per document)
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple
import mofrs
from .adapter import StorageAdapter
from .errors import MofrsError, NotFoundError
from .filters import ensure_query_array
from .hooks import Outcome
from .querytree import QueryTreeResolver
from .registry import Registry, ResourceRef


@dataclass
class ServiceRequest:
    """Request stand-in passed to the hooks for programmatic calls"""

    method: str
    query: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReadResult:
    resources: List[Dict[str, Any]]
    count: Optional[int] = None


@dataclass
class BatchResult:
    """Per-document outcomes of a batch write"""

    outcomes: List[Outcome]

    @property
    def values(self) -> List[Any]:
        return [outcome.value for outcome in self.outcomes if outcome.ok]

    @property
    def errors(self) -> List[Exception]:
        return [outcome.error for outcome in self.outcomes if not outcome.ok]

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        for error in self.errors:
            raise error


def _settle(outcomes: List[Outcome]) -> List[Any]:
    for outcome in outcomes:
        if outcome.error is not None:
            raise outcome.error
    return [outcome.value for outcome in outcomes]


class ResourceService:
    """
    :param registry: schema registry, its hooks are used
    :param adapter: storage adapter, created when omitted
    """

    def __init__(self, registry: Registry, adapter: Optional[StorageAdapter] = None) -> None:
        self.registry = registry
        self.adapter = adapter or StorageAdapter(registry)
        self.hooks = registry.hooks
        self.querytree = QueryTreeResolver(registry, self.fetch_ids)

    def projection(self, handle, query: Mapping[str, Any]) -> Dict[str, Any]:
        """
        :return: the adapter projection for the query arguments
        """
        projection: Dict[str, Any] = {}
        if query.get("fields"):
            projection["select"] = ensure_query_array(query["fields"])
        limit = query.get("limit", handle.options.default_limit)
        if limit is not None:
            projection["limit"] = int(limit)
        for arg in ("page", "pageSize"):
            if query.get(arg):
                projection[arg] = int(query[arg])
        sort = query.get("sort") or handle.options.default_sort
        if sort:
            projection["sort"] = sort
        if query.get("includeDeleted"):
            projection["includeDeleted"] = True
        return projection

    #
    # Reads
    #
    def get_all(self, resource: ResourceRef, query: Optional[Mapping[str, Any]] = None, request=None, response=None) -> ReadResult:
        handle = self.registry.handle(resource)
        query = dict(query or {})
        request = request or ServiceRequest("GET", query)

        extensions = self.hooks.run(handle.name, "before", "read", {}, request, response)
        predicate = dict(query.get("filter") or {})
        if query.get("ids"):
            ids = {"id": {"$in": ensure_query_array(query["ids"])}}
            predicate = {"$and": [predicate, ids]} if "id" in predicate else {**predicate, **ids}
        if isinstance(extensions, dict) and extensions:
            predicate = {"$and": [predicate, extensions]}

        resolved = self.querytree.resolve(request, handle, predicate)
        projection = self.projection(handle, query)
        documents = self.adapter.find_many(handle, resolved, projection)
        resources = _settle(self.hooks.run_many(handle.name, "after", "read", documents, request, response))

        count = None
        if "count" in ensure_query_array(query.get("includeMeta")):
            count = self.adapter.count(handle, resolved, projection)
        return ReadResult(resources, count)

    def get(self, resource: ResourceRef, ids: Any, request=None, response=None, query: Optional[Mapping[str, Any]] = None) -> ReadResult:
        """
        :raises NotFoundError: when none of the ids exist
        """
        handle = self.registry.handle(resource)
        query = dict(query or {})
        query["ids"] = ensure_query_array(ids)
        result = self.get_all(handle, query, request, response)
        if not result.resources:
            raise NotFoundError(f"{handle.name} {ids}")
        return result

    def fetch_ids(self, request, handle, query: Mapping[str, Any]) -> List[Any]:
        """
        Sub-request of the query tree resolver: the ids of the documents matching query
        """
        result = self.get_all(handle, {"filter": query, "fields": ["id"], "limit": 0}, request)
        return [resource["id"] for resource in result.resources if isinstance(resource, dict)]

    #
    # Writes
    #
    def create(self, resource: ResourceRef, documents, request=None, response=None) -> BatchResult:
        """
        Create documents, the request is cancelled when a before-write hook aborts
        for any of them. Other failures are reported per document.
        """
        handle = self.registry.handle(resource)
        request = request or ServiceRequest("POST")
        if isinstance(documents, dict):
            documents = [documents]
        before = self.hooks.run_many(handle.name, "before", "write", [dict(document) for document in documents], request, response)
        for outcome in before:
            if outcome.aborted:
                raise outcome.error

        outcomes = []
        for outcome in before:
            if not outcome.ok:
                outcomes.append(outcome)
                continue
            try:
                created = self.adapter.create(handle, outcome.value)
            except MofrsError as exc:
                outcomes.append(Outcome(outcome.value, exc))
                continue
            try:
                outcomes.append(Outcome(self.hooks.run(handle.name, "after", "write", created, request, response)))
            except MofrsError as exc:
                outcomes.append(Outcome(created, exc))
        mofrs.log.debug("Created %s of %s %s documents", len([o for o in outcomes if o.ok]), len(outcomes), handle.name)
        return BatchResult(outcomes)

    def update(self, resource: ResourceRef, id: Any, update: Mapping[str, Any], request=None, response=None, include_deleted: bool = False) -> Dict[str, Any]:
        """
        :raises NotFoundError: when no (live) document has this id
        """
        handle = self.registry.handle(resource)
        request = request or ServiceRequest("PATCH")
        update = self.hooks.run(handle.name, "before", "write", dict(update), request, response)
        match = {"id": id} if include_deleted else {"id": id, "deletedAt": None}
        document = self.adapter.update(handle, match, update)
        if document is None:
            raise NotFoundError(f"{handle.name} {id}")
        return self.hooks.run(handle.name, "after", "write", document, request, response)

    def replace(self, resource: ResourceRef, id: Any, document: Mapping[str, Any], request=None, response=None) -> Tuple[Dict[str, Any], bool]:
        """
        Update the document with this id, create it when it doesn't exist
        :return: (document, created)
        """
        handle = self.registry.handle(resource)
        request = request or ServiceRequest("PUT")
        document = dict(document)
        document.pop("id", None)
        if self.adapter.find_many(handle, {"id": id}, {"limit": 1}):
            return self.update(handle, id, document, request, response), False
        document["id"] = id
        result = self.create(handle, [document], request, response)
        result.raise_for_errors()
        return result.values[0], True

    def destroy(self, resource: ResourceRef, ids: Any, request=None, response=None, destroy: bool = False) -> List[Dict[str, Any]]:
        """
        Soft delete (or remove, when destroy is set) the documents with these ids
        :raises NotFoundError: when none of the ids exist
        """
        handle = self.registry.handle(resource)
        request = request or ServiceRequest("DELETE")
        ids = ensure_query_array(ids)
        projection = {"includeDeleted": True} if destroy else {}
        existing = self.adapter.find_many(handle, {"id": {"$in": ids}}, projection)
        if not existing:
            raise NotFoundError(f"{handle.name} {ids}")
        return self._remove(handle, [document["id"] for document in existing], existing, request, response, destroy)

    def destroy_all(self, resource: ResourceRef, query: Optional[Mapping[str, Any]] = None, request=None, response=None, destroy: bool = False) -> List[Dict[str, Any]]:
        handle = self.registry.handle(resource)
        request = request or ServiceRequest("DELETE")
        query = dict(query or {})
        projection = {"includeDeleted": True} if destroy else {}
        resolved = self.querytree.resolve(request, handle, query.get("filter") or {})
        existing = self.adapter.find_many(handle, resolved, projection)
        if not existing:
            return []
        return self._remove(handle, [document["id"] for document in existing], existing, request, response, destroy)

    def _remove(self, handle, ids, existing, request, response, destroy):
        _settle(self.hooks.run_many(handle.name, "before", "write", existing, request, response))
        if destroy:
            removed = self.adapter.delete(handle, ids)
        else:
            removed = self.adapter.mark_deleted(handle, ids)
        return _settle(self.hooks.run_many(handle.name, "after", "write", removed, request, response))

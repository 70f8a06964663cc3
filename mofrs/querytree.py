"""
Query tree resolution

Filters may traverse references: ``{"soulmate": {"name": "Wally"}}`` selects the
persons whose soulmate is named Wally. The nested filter is resolved with a
sub-request on the referenced resource (through the same hooks and soft-delete
defaults as a client read) and replaced by the matching ids:

    {"soulmate": {"$in": [<ids of the persons named Wally>]}}

Operator-only values ({"$in": [...]}, {"exists": true}, ...) are left as they are.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping
import mofrs
from .errors import ValidationError
from .filters import LOGICAL, as_branches, ensure_query_array, is_special
from .schema import Reference


@dataclass
class QueryNode:
    """One level of the query tree: a filter on a resource"""

    resource: Any
    query: Mapping[str, Any]


class QueryTreeResolver:
    """
    :param registry: the schema registry
    :param fetch_ids: fetch_ids(request, handle, query) -> list of ids matching query
    """

    def __init__(self, registry, fetch_ids: Callable[[Any, Any, Mapping[str, Any]], List[Any]]) -> None:
        self.registry = registry
        self.fetch_ids = fetch_ids

    def resolve(self, request, resource, query: Mapping[str, Any]) -> Dict[str, Any]:
        """
        :return: query with every nested reference filter replaced by an id predicate
        """
        node = QueryNode(self.registry.handle(resource), query or {})
        return self._parse(request, node)

    def _parse(self, request, node: QueryNode) -> Dict[str, Any]:
        resolved = {}
        for key, value in node.query.items():
            spec = node.resource.schema.get(key)
            if key in ("or", "and", "$or", "$and"):
                resolved[key] = [self._parse(request, QueryNode(node.resource, branch)) for branch in as_branches(value) if isinstance(branch, dict)]
            elif key.startswith("$") and key not in LOGICAL:
                raise ValidationError(f'Unsupported filter operator "{key}"')
            elif isinstance(spec, Reference) and not spec.external and isinstance(value, dict):
                resolved[key] = self._resolve_reference(request, spec, value)
            else:
                resolved[key] = value
        return resolved

    def _resolve_reference(self, request, spec: Reference, value: Mapping[str, Any]) -> Any:
        if spec.many:
            if is_special(value):
                return value
            return self._subrequest(request, spec.target, value)
        if "in" in value or "$in" in value:
            return {"$in": ensure_query_array(value.get("in", value.get("$in")))}
        if "nin" in value:
            return {"$nin": ensure_query_array(value["nin"])}
        if is_special(value):
            return value
        return self._subrequest(request, spec.target, value)

    def _subrequest(self, request, target: str, query: Mapping[str, Any]) -> Dict[str, Any]:
        node = QueryNode(self.registry.handle(target), query)
        ids = self.fetch_ids(request, node.resource, self._parse(request, node))
        mofrs.log.debug("Resolved %s filter %s to %s ids", target, query, len(ids))
        return {"$in": ids}

"""
flask-restful resources exposing the registered resources over http

    GET    /<collection>         list, filter[...], fields, limit, page, pageSize, sort, include, includeMeta
    POST   /<collection>         create
    DELETE /<collection>         (soft) delete every matching document
    GET    /<collection>/<ids>   comma separated ids
    PATCH  /<collection>/<id>    partial update (dict or json-patch list)
    PUT    /<collection>/<id>    replace, create when missing
    DELETE /<collection>/<ids>   (soft) delete, destroy=true removes
    GET    /resources            resource definitions
"""

from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Dict, List
from flask import Response, request
from flask_restful import Resource as FRSResource
import mofrs
from .errors import ValidationError
from .schema import Reference


@dataclass
class HookResponse:
    """Handed to the hooks as ``response``, hooks may add response headers"""

    headers: Dict[str, str] = field(default_factory=dict)


def split_ids(ids: str) -> List[str]:
    return [item for item in str(ids).split(",") if item]


def json_patch_to_update(operations: List[Dict[str, Any]], collection: str) -> Dict[str, Any]:
    """
    Convert json-patch operations into an update document
    paths look like /<collection>/0/<field> or /<collection>/0/links/<field>[/-]

    :param operations: [{"op": "replace", "path": "/people/0/name", "value": "x"}, ...]
    :return: update document with $set, $addToSet, $pull and $unset
    """
    update: Dict[str, Dict[str, Any]] = {}
    for operation in operations:
        if not isinstance(operation, dict):
            raise ValidationError(f"Invalid patch operation {operation}")
        path = [part for part in str(operation.get("path", "")).split("/") if part]
        if path and path[0] == collection:
            path = path[1:]
        if path and path[0].isdigit():
            path = path[1:]
        if path and path[0] == "links":
            path = path[1:]
        append = bool(path) and path[-1] == "-"
        if append:
            path = path[:-1]
        if not path:
            raise ValidationError(f'Invalid patch path "{operation.get("path")}"')
        key = ".".join(path)
        kind = operation.get("op")
        value = operation.get("value")
        if kind == "replace" or (kind == "add" and not append):
            update.setdefault("$set", {})[key] = value
        elif kind == "add":
            values = update.setdefault("$addToSet", {}).setdefault(key, {"$each": []})["$each"]
            values.extend(value if isinstance(value, list) else [value])
        elif kind == "remove":
            if "value" in operation:
                update.setdefault("$pull", {})[key] = value
            else:
                update.setdefault("$unset", {})[key] = ""
        else:
            raise ValidationError(f'Unsupported patch operation "{kind}"')
    return update


class Resource(FRSResource):
    """
    Superclass for the exposed endpoints
    """

    # resource: name of the exposed resource, set by MOFRSAPI.expose_resource
    resource = None
    service = None

    @property
    def handle(self):
        return self.service.registry.handle(self.resource)

    @property
    def collection(self) -> str:
        return self.handle.route

    def respond(self, body, status_code=HTTPStatus.OK.value, hook_response=None):
        """
        Run the before-response hooks, they may return {"statusCode": .., "body": ..}
        to replace the response
        """
        hook_response = hook_response or HookResponse()
        if self.resource is not None:
            body = self.service.hooks.run(self.resource, "before", "response", body, request, hook_response)
            if isinstance(body, dict) and set(body) == {"statusCode", "body"}:
                status_code = int(body["statusCode"])
                body = body["body"]
        if status_code == HTTPStatus.NO_CONTENT.value:
            return Response(status=status_code, headers=hook_response.headers)
        return body, status_code, hook_response.headers

    def error_response(self, body, status_code):
        """
        Run the before-error-response hooks, a failing hook doesn't replace the original error
        """
        if self.resource is None:
            return body, status_code
        try:
            result = self.service.hooks.run(self.resource, "before", "errorResponse", body, request, HookResponse())
        except Exception as exc:  # pylint: disable=broad-except
            mofrs.log.warning("Error response hook failed: %s", exc)
            return body, status_code
        if isinstance(result, dict) and set(result) == {"statusCode", "body"}:
            return result["body"], int(result["statusCode"])
        return result, status_code


class ResourceAPI(Resource):
    """
    Collection and instance endpoints of a resource
    """

    def get(self, **kwargs):
        """
        Retrieve a collection or the documents with the given (comma separated) ids
        """
        id = kwargs.get("id")
        query = request.query
        hook_response = HookResponse()
        if id is None:
            result = self.service.get_all(self.resource, query, request, hook_response)
        else:
            result = self.service.get(self.resource, split_ids(id), request, hook_response, query=query)

        body = {self.collection: result.resources}
        if result.count is not None:
            body["meta"] = {"count": result.count}
        links = self._links()
        if links:
            body["links"] = links
        if query.get("include"):
            body["linked"] = self._linked(result.resources, query["include"])
        return self.respond(body, HTTPStatus.OK.value, hook_response)

    def post(self, **kwargs):
        """
        Create the documents in the body: {<collection>: [documents]}
        """
        payload = request.get_payload()
        documents = payload.get(self.collection, payload) if isinstance(payload, dict) else payload
        if isinstance(documents, dict):
            documents = [documents]
        if not isinstance(documents, list) or not all(isinstance(document, dict) for document in documents):
            raise ValidationError("Invalid payload: expected a list of documents")
        hook_response = HookResponse()
        result = self.service.create(self.resource, documents, request, hook_response)
        result.raise_for_errors()
        return self.respond({self.collection: result.values}, HTTPStatus.CREATED.value, hook_response)

    def patch(self, **kwargs):
        """
        Update a document, the body is a partial document (operators allowed)
        or a list of json-patch operations
        """
        payload = request.get_payload()
        if isinstance(payload, list):
            update = json_patch_to_update(payload, self.collection)
        elif isinstance(payload, dict):
            update = payload.get(self.collection, payload)
            if isinstance(update, list):
                update = update[0] if update else {}
        else:
            raise ValidationError("Invalid payload")
        if not isinstance(update, dict) or not update:
            raise ValidationError("Empty update")
        hook_response = HookResponse()
        include_deleted = bool(request.query.get("includeDeleted"))
        document = self.service.update(self.resource, kwargs["id"], update, request, hook_response, include_deleted=include_deleted)
        return self.respond({self.collection: [document]}, HTTPStatus.OK.value, hook_response)

    def put(self, **kwargs):
        """
        Replace a document, it is created when it doesn't exist
        """
        payload = request.get_payload()
        document = payload.get(self.collection, payload) if isinstance(payload, dict) else payload
        if isinstance(document, list):
            document = document[0] if document else None
        if not isinstance(document, dict):
            raise ValidationError("Invalid payload: expected a document")
        hook_response = HookResponse()
        document, created = self.service.replace(self.resource, kwargs["id"], document, request, hook_response)
        status_code = HTTPStatus.CREATED.value if created else HTTPStatus.OK.value
        return self.respond({self.collection: [document]}, status_code, hook_response)

    def delete(self, **kwargs):
        """
        Soft delete, or remove the documents when destroy=true
        """
        id = kwargs.get("id")
        query = request.query
        destroy = bool(query.get("destroy"))
        hook_response = HookResponse()
        if id is None:
            self.service.destroy_all(self.resource, query, request, hook_response, destroy=destroy)
        else:
            self.service.destroy(self.resource, split_ids(id), request, hook_response, destroy=destroy)
        return self.respond({}, HTTPStatus.NO_CONTENT.value, hook_response)

    def _links(self) -> Dict[str, Any]:
        registry = self.service.registry
        links = {}
        for name, spec in self.handle.schema.fields.items():
            if isinstance(spec, Reference) and not spec.external and spec.target in registry:
                links[f"{self.collection}.{name}"] = {"type": registry.handle(spec.target).route}
        return links

    def _linked(self, resources: List[Dict[str, Any]], include: List[str]) -> Dict[str, List[Dict[str, Any]]]:
        """
        Fetch the documents referenced by the "include" fields (one level)
        """
        registry = self.service.registry
        linked: Dict[str, List[Dict[str, Any]]] = {}
        for path in include:
            spec = self.handle.schema.get(path)
            if not isinstance(spec, Reference) or spec.external:
                mofrs.log.warning('Can not include "%s" of %s', path, self.resource)
                continue
            ids = []
            for resource in resources:
                value = (resource.get("links") or {}).get(path)
                for item in value if isinstance(value, list) else [value]:
                    if item is not None and item not in ids:
                        ids.append(item)
            if not ids:
                continue
            target = registry.handle(spec.target)
            documents = self.service.get_all(target, {"ids": ids}, request).resources
            bucket = linked.setdefault(target.route, [])
            known = {str(document.get("id")) for document in bucket}
            bucket.extend(document for document in documents if str(document.get("id")) not in known)
        return linked


class DefinitionsAPI(Resource):
    """
    GET /resources: the definitions of the registered resources
    """

    def get(self, **kwargs):
        registry = self.service.registry
        return self.respond({"resources": list(registry.describe().values())})

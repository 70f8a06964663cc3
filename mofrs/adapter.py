#
# Storage adapter: translates the resource level operations into document store calls
#
# Documents are returned in their external representation:
#  - "id" holds the primary key value
#  - reference fields are moved into "links"
#  - "_id", "__v" and "_links" are not exposed
#
import datetime
import hashlib
from typing import Any, Dict, Iterable, List, Mapping, Optional
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
import mofrs
from .config import get_config
from .errors import CastError, GenericError, NotFoundError, RelationshipRepairError, StorageConflictError
from .filters import cast_primitive, parse_query, parse_sort, remove_useless_projection_select
from .registry import Registry, ResourceHandle, ResourceRef
from .relationships import RelationshipMaintainer, get_modified_paths
from .schema import Primitive, Reference

HIDDEN_KEYS = ("_id", "__v", "_links")


def utcnow() -> datetime.datetime:
    # bson datetimes are naive UTC with millisecond precision
    now = datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def object_id_from(value: Any) -> ObjectId:
    """
    :return: a deterministic ObjectId for an id that isn't a valid ObjectId
    """
    return ObjectId(hashlib.md5(str(value).encode()).digest()[:12])


def get_full_keys(update: Mapping[str, Any], existing: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """
    Flatten nested objects one level for $set, so an upsert merges sub documents
    instead of replacing them. Objects whose current value is null are set as a whole.
    """
    result = {}
    for key, value in update.items():
        if isinstance(value, dict) and value:
            if existing is not None and key in existing and existing[key] is None:
                result[key] = value
                continue
            for sub_key, sub_value in value.items():
                result[f"{key}.{sub_key}"] = sub_value
        else:
            result[key] = value
    return result


class StorageAdapter:
    """
    Resource level CRUD on top of a pymongo database
    :param registry: the schema registry
    :param maintainer: relationship maintainer, created when omitted
    """

    def __init__(self, registry: Registry, maintainer: Optional[RelationshipMaintainer] = None) -> None:
        self.registry = registry
        self.relationships = maintainer or RelationshipMaintainer(self)

    def handle(self, resource: ResourceRef) -> ResourceHandle:
        return self.registry.handle(resource)

    #
    # Casting
    #
    def cast_key(self, value: Any, key_type: str, path: str, resource: str) -> Any:
        """
        Cast an id or reference value to the type of the referenced key
        :raises CastError:
        """
        if value is None:
            return None
        if key_type == "objectid":
            if isinstance(value, ObjectId):
                return value
            if isinstance(value, str) and ObjectId.is_valid(value):
                return ObjectId(value)
            raise CastError(value, path, resource, "ObjectId")
        if key_type == "string":
            if isinstance(value, (dict, list)):
                raise CastError(value, path, resource, "string")
            return str(value)
        if key_type in ("number", "date", "boolean"):
            return cast_primitive(Primitive(key_type), value, path, resource)
        return value

    def _key_type(self, handle: ResourceHandle, path: str) -> Optional[str]:
        if path == handle.pk:
            return handle.schema.pk_type
        spec = handle.schema.get(path)
        if isinstance(spec, Reference):
            return self.registry.reference_key_type(spec)
        return None

    def _cast_value(self, handle: ResourceHandle, path: str, value: Any) -> Any:
        """
        cast a document value (or the elements of a list value) for the field at path
        """
        if value is None:
            return None
        key_type = self._key_type(handle, path)
        if key_type is not None:
            if isinstance(value, list):
                return [self.cast_key(item, key_type, path, handle.name) for item in value]
            return self.cast_key(value, key_type, path, handle.name)
        spec = handle.schema.get(path)
        if isinstance(spec, Primitive) and spec.fields is None and spec.type in ("date", "number", "boolean"):
            if isinstance(value, list):
                return [cast_primitive(spec, item, path, handle.name) for item in value]
            return cast_primitive(spec, value, path, handle.name)
        return value

    def _cast_predicate(self, handle: ResourceHandle, path: str, value: Any) -> Any:
        key_type = self._key_type(handle, path)
        if key_type is None or value is None:
            return value
        if isinstance(value, dict):
            result = {}
            for op, operand in value.items():
                if op in ("$in", "$nin", "$all"):
                    result[op] = [self.cast_key(item, key_type, path, handle.name) for item in operand]
                elif op in ("$ne", "$eq", "$gt", "$gte", "$lt", "$lte"):
                    result[op] = self._cast_predicate(handle, path, operand)
                else:
                    result[op] = operand
            return result
        if isinstance(value, list):
            return [self.cast_key(item, key_type, path, handle.name) for item in value]
        return self.cast_key(value, key_type, path, handle.name)

    def _cast_ids(self, handle: ResourceHandle, query: Dict[str, Any]) -> Dict[str, Any]:
        result = {}
        for key, value in query.items():
            if key in ("$and", "$or", "$nor"):
                result[key] = [self._cast_ids(handle, branch) for branch in value]
            else:
                result[key] = self._cast_predicate(handle, key, value)
        return result

    def parse_query(self, resource: ResourceRef, query: Any) -> Dict[str, Any]:
        """
        Convert a client filter or a list of ids into a predicate with cast values
        """
        handle = self.handle(resource)
        return self._cast_ids(handle, parse_query(handle.schema, query))

    #
    # Representation
    #
    def serialize(self, resource: ResourceRef, document: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Convert an external document into its stored form
        """
        handle = self.handle(resource)
        result = dict(document)
        pk = handle.pk
        if "id" in result:
            id_value = result.pop("id")
            if handle.schema.pk:
                result.setdefault(pk, id_value)
            else:
                if isinstance(id_value, ObjectId) or ObjectId.is_valid(str(id_value)):
                    result["_id"] = ObjectId(str(id_value))
                else:
                    result["_id"] = object_id_from(id_value)
        links = result.pop("links", None)
        if isinstance(links, dict):
            for key, value in links.items():
                result[key] = value
        for key in list(result):
            if key in handle.schema and not key.startswith("$"):
                result[key] = self._cast_value(handle, key, result[key])
        return result

    def deserialize(self, resource: ResourceRef, document: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
        """
        Convert a stored document into its external representation
        """
        if document is None:
            return None
        handle = self.handle(resource)
        result = {"id": document.get(handle.pk)}
        result.update({key: value for key, value in document.items() if key not in HIDDEN_KEYS})
        # the snapshot taken at soft delete, merged with the references still set
        links = dict(document.get("_links") or {})
        for ref in handle.schema.references():
            value = result.pop(ref.path, None)
            if value is not None and value != []:
                links[ref.path] = value
        if links:
            result["links"] = links
        return result

    #
    # Writes
    #
    def create(self, resource: ResourceRef, document: Mapping[str, Any], id: Any = None) -> Dict[str, Any]:
        """
        Insert (or upsert, when the resource declares upsert keys) a document
        :return: the stored document in its external representation
        """
        handle = self.handle(resource)
        document = dict(document)
        if id is not None:
            document[handle.schema.pk or "id"] = id
        document = self.serialize(handle, document)
        match = self._upsert_match(handle, document)
        if match is not None:
            stored = self._upsert(handle, match, document)
        else:
            try:
                handle.collection.insert_one(document)
            except DuplicateKeyError as exc:
                raise GenericError(f"Duplicate key while creating {handle.name}: {exc}")
            except PyMongoError as exc:
                raise GenericError(exc)
            stored = document
        return self._handle_write(handle, stored, list(document))

    def _upsert_match(self, handle: ResourceHandle, document: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        keys = handle.schema.upsert_keys
        if not keys:
            return None
        paths = handle.schema.paths
        if not all(key in paths for key in keys):
            mofrs.log.debug("Upsert keys %s not in the schema of %s", keys, handle.name)
            return None
        match_key = keys[0]
        if "." in match_key:
            first, second = match_key.split(".")[:2]
            nested = document.get(first)
            value = nested.get(second) if isinstance(nested, dict) else None
        else:
            value = document.get(match_key)
        if not value:
            return None
        return {match_key: value}

    def _upsert(self, handle: ResourceHandle, match: Dict[str, Any], document: Dict[str, Any]) -> Dict[str, Any]:
        """
        find_one_and_update with upsert, retried when a concurrent upsert inserted
        the same document first (duplicate key)
        """
        max_retries = int(get_config("UPSERT_MAX_RETRIES"))
        fields = {key: value for key, value in document.items() if key != "_id"}
        attempt = 0
        while True:
            attempt += 1
            try:
                existing = handle.collection.find_one(match)
                update = {"$set": get_full_keys(fields, existing)}
                if existing is None and "_id" in document:
                    update["$setOnInsert"] = {"_id": document["_id"]}
                return handle.collection.find_one_and_update(match, update, upsert=True, return_document=ReturnDocument.AFTER)
            except DuplicateKeyError as exc:
                if attempt > max_retries:
                    raise StorageConflictError(exc, attempt)
                mofrs.log.warning("Duplicate key while upserting %s (attempt %s): retrying", handle.name, attempt)
            except PyMongoError as exc:
                raise GenericError(exc)

    def _cast_update(self, handle: ResourceHandle, update: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Move plain keys under $set and cast the operator payloads,
        a key present in $set takes precedence over the same plain key
        """
        result: Dict[str, Dict[str, Any]] = {}
        plain = {key: value for key, value in update.items() if not key.startswith("$") and key != "id"}
        serialized = self.serialize(handle, plain)
        if serialized:
            result["$set"] = serialized
        for op, payload in update.items():
            if op.startswith("$"):
                result.setdefault(op, {}).update(payload)
        for op in ("$set", "$setOnInsert"):
            for key, value in result.get(op, {}).items():
                result[op][key] = self._cast_value(handle, key, value)
        for op in ("$push", "$addToSet", "$pull"):
            for key, value in result.get(op, {}).items():
                result[op][key] = self._cast_element(handle, key, value)
        for key, value in result.get("$pullAll", {}).items():
            result["$pullAll"][key] = self._cast_value(handle, key, value)
        return result

    def _cast_element(self, handle, key, value):
        if isinstance(value, dict):
            return {op: (self._cast_value(handle, key, operand) if op in ("$each", "$in") else operand) for op, operand in value.items()}
        return self._cast_value(handle, key, value)

    def update(self, resource: ResourceRef, match: Any, update: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Apply an update to the first document matching match
        :param match: filter dict or id
        :param update: plain keys are set, $-operators are applied as is
        :return: the updated document or None when nothing matched
        """
        handle = self.handle(resource)
        if not isinstance(match, dict):
            match = {"id": match}
        command = self._cast_update(handle, update)
        modified = get_modified_paths(command)
        if not command:
            raise GenericError(f"Empty update for {handle.name}")
        query = self.parse_query(handle, match)
        try:
            current = handle.collection.find_one(query, {"_id": 1})
            if current is None:
                return None
            stored = handle.collection.find_one_and_update({"_id": current["_id"]}, command, return_document=ReturnDocument.AFTER)
        except PyMongoError as exc:
            raise GenericError(exc)
        if stored is None:
            return None
        return self._handle_write(handle, stored, modified)

    def _id_match(self, handle: ResourceHandle, ids: Any) -> Dict[str, Any]:
        if ids is None:
            return {}
        if isinstance(ids, (list, tuple, set)):
            return self.parse_query(handle, {"id": {"$in": list(ids)}})
        return self.parse_query(handle, {"id": ids})

    def mark_deleted(self, resource: ResourceRef, ids: Any = None, policy: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Soft delete: set deletedAt, keep a snapshot of the references in _links
        and unset them. Documents that are deleted already are left untouched.
        :param ids: id or list of ids, None marks every live document
        :param policy: "clear" unsets every reference, "preserve" keeps the to-many references
        """
        handle = self.handle(resource)
        match = self._id_match(handle, ids)
        match["deletedAt"] = None
        return self._release(handle, match, self._policy(handle, policy), mark=True)

    def _policy(self, handle: ResourceHandle, policy: Optional[str]) -> str:
        policy = policy or handle.options.soft_delete_links or get_config("SOFT_DELETE_LINKS") or "clear"
        if policy not in ("clear", "preserve"):
            raise GenericError(f"Invalid soft delete policy {policy!r}")
        return policy

    def _release(self, handle: ResourceHandle, match: Dict[str, Any], policy: str, mark: bool) -> List[Dict[str, Any]]:
        references = handle.schema.references()
        try:
            documents = list(handle.collection.find(match))
        except PyMongoError as exc:
            raise GenericError(exc)
        written = []
        for document in documents:
            cleared = [ref.path for ref in references if (ref.singular or policy == "clear") and document.get(ref.path) not in (None, [])]
            update: Dict[str, Any] = {}
            if mark:
                snapshot = {ref.path: document[ref.path] for ref in references if document.get(ref.path) not in (None, [])}
                update["$set"] = {"_links": snapshot, "deletedAt": utcnow()}
            if cleared:
                update["$unset"] = {path: "" for path in cleared}
            if update:
                stored = handle.collection.find_one_and_update({"_id": document["_id"]}, update, return_document=ReturnDocument.AFTER)
            else:
                stored = document
            written.append((stored, cleared))

        errors = []
        results = []
        for stored, cleared in written:
            try:
                results.append(self._handle_write(handle, stored, cleared))
            except RelationshipRepairError as exc:
                errors.extend(exc.errors)
                results.append(self.deserialize(handle, stored))
        if errors:
            raise RelationshipRepairError(handle.name, errors)
        return results

    def delete(self, resource: ResourceRef, ids: Any = None) -> List[Dict[str, Any]]:
        """
        Hard delete: release every reference (as a soft delete would, with the "clear" policy)
        and remove the documents, whether they were soft deleted before or not
        :return: the documents as they were right before their removal
        """
        handle = self.handle(resource)
        self.mark_deleted(handle, ids, policy="clear")
        # documents soft deleted earlier may still hold to-many references
        match = self._id_match(handle, ids)
        self._release(handle, dict(match), "clear", mark=False)
        try:
            documents = list(handle.collection.find(match))
            if documents:
                handle.collection.delete_many({"_id": {"$in": [document["_id"] for document in documents]}})
        except PyMongoError as exc:
            raise GenericError(exc)
        return [self.deserialize(handle, document) for document in documents]

    def _handle_write(self, handle: ResourceHandle, stored: Dict[str, Any], modified: Optional[Iterable[str]]) -> Dict[str, Any]:
        """
        Repair the inverse side of the references touched by the write
        """
        references = handle.schema.inverse_references(modified)
        if references:
            self.relationships.update_relationships(handle, stored, references)
        return self.deserialize(handle, stored)

    #
    # Reads
    #
    def find(self, resource: ResourceRef, query: Any, projection: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """
        :param query: filter dict or id
        :return: the first matching document
        :raises NotFoundError:
        """
        handle = self.handle(resource)
        if not isinstance(query, dict):
            query = {"id": query}
        projection = dict(projection or {})
        projection["limit"] = 1
        result = self.find_many(handle, query, projection)
        if not result:
            raise NotFoundError(f"{handle.name} {query}")
        return result[0]

    def find_many(self, resource: ResourceRef, query: Any = None, projection: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        :param query: filter dict, list of ids or a limit
        :param projection: select, limit, page, pageSize, sort, includeDeleted
        """
        return self._find_many(resource, query, projection, count=False)

    def count(self, resource: ResourceRef, query: Any = None, projection: Optional[Mapping[str, Any]] = None) -> int:
        return self._find_many(resource, query, projection, count=True)

    def _find_many(self, resource, query, projection, count):
        handle = self.handle(resource)
        projection = dict(projection or {})
        if isinstance(query, int) and not isinstance(query, bool):
            projection["limit"] = query
            query = {}
        predicate = self.parse_query(handle, query)
        if not projection.get("includeDeleted"):
            predicate["deletedAt"] = None

        if count:
            try:
                return handle.collection.count_documents(predicate)
            except PyMongoError as exc:
                raise GenericError(exc)

        fields = None
        strip_pk = False
        select = remove_useless_projection_select(projection.get("select"), handle.name)
        if select:
            requested = [handle.pk if key == "id" else key for key in select]
            strip_pk = handle.pk not in requested and handle.pk != "_id"
            fields = dict.fromkeys(requested + [handle.pk], 1)

        skip = int(projection.get("skip") or 0)
        limit = int(projection.get("limit") or 0)
        page = int(projection.get("page") or 0)
        if page > 0:
            page_size = int(projection.get("pageSize") or get_config("DEFAULT_PAGE_SIZE"))
            skip = (page - 1) * page_size
            limit = page_size

        try:
            cursor = handle.collection.find(predicate, fields)
            sort = parse_sort(projection.get("sort"), handle.pk)
            if sort:
                cursor = cursor.sort(sort)
            if skip:
                cursor = cursor.skip(skip)
            if limit:
                cursor = cursor.limit(limit)
            documents = list(cursor)
        except PyMongoError as exc:
            raise GenericError(exc)

        results = [self.deserialize(handle, document) for document in documents]
        if strip_pk:
            for result in results:
                result.pop(handle.pk, None)
        return results

    def aggregate(self, resource: ResourceRef, pipeline: List[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        handle = self.handle(resource)
        try:
            return list(handle.collection.aggregate(list(pipeline)))
        except PyMongoError as exc:
            raise GenericError(exc)

    #
    # Relationship primitives, used by the RelationshipMaintainer
    #
    def find_related(self, resource: ResourceRef, match: Mapping[str, Any]) -> List[Dict[str, Any]]:
        handle = self.handle(resource)
        return list(handle.collection.find(dict(match)))

    def update_related(self, resource: ResourceRef, match: Mapping[str, Any], update: Mapping[str, Any]) -> int:
        handle = self.handle(resource)
        return handle.collection.update_many(dict(match), dict(update)).modified_count

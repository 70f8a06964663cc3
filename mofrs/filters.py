"""
Filter grammar

Client filters arrive as nested dicts (see request.parse_nested_args) with
bare operator names: ``{"age": {"gte": "18"}, "or": [{"name": "a"}, {"name": "b"}]}``.
``parse_query`` converts them into document store predicates:

- "null" values match missing/null fields, "undefined" values are dropped
- exists/in/nin/regex/gt/gte/lt/lte/ne become the $-prefixed operators
- date fields given as an exact value match the whole day
- number fields are cast
- or/and (and $or/$and) are translated recursively
- "id" is renamed to the primary key field at every level
"""

import datetime
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple
import mofrs
from .errors import CastError, ValidationError
from .schema import Primitive, ResourceSchema

OPERATORS = ("gt", "gte", "lt", "lte", "ne", "in", "nin", "exists", "regex", "options", "all", "eq", "size", "elemMatch")
LOGICAL = {"or": "$or", "and": "$and", "$or": "$or", "$and": "$and", "nor": "$nor", "$nor": "$nor"}
SORT_SPLIT = re.compile(r"[,\s]+")


def ensure_query_array(value: Any) -> List[Any]:
    """
    Convert an index-keyed dict ({"0": a, "1": b}), a comma separated string,
    a list or a single value into a list
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, dict):
        return [value[key] for key in sorted(value, key=_index_key)]
    if isinstance(value, str):
        return [item for item in value.split(",")] if value else []
    return [value]


def _index_key(key):
    try:
        return (0, int(key))
    except (TypeError, ValueError):
        return (1, str(key))


def as_branches(value: Any) -> List[Any]:
    if isinstance(value, dict) and value and not all(_index_key(key)[0] == 0 for key in value):
        # a single branch given as a dict
        return [value]
    return ensure_query_array(value)


def is_special(query: Any) -> bool:
    """
    :return: True when the query on a reference only holds operators
    """
    if not isinstance(query, dict):
        return False
    return all(key.startswith("$") or key in ("in", "nin", "exists") for key in query)


def check_operators(query: Any, path: str = "") -> None:
    """
    :raises ValidationError: when query holds a $ key outside of the supported operators
    """
    if isinstance(query, list):
        for item in query:
            check_operators(item, path)
        return
    if not isinstance(query, dict):
        return
    for key, value in query.items():
        if key.startswith("$") and key not in LOGICAL and key[1:] not in OPERATORS:
            raise ValidationError(f'Unsupported filter operator "{key}" for "{path or key}"')
        check_operators(value, f"{path}.{key}" if path else key)


def deep_replace_falsies(query: Any) -> Any:
    """
    "null" becomes None, "undefined" predicates are removed
    """
    if isinstance(query, dict):
        result = {}
        for key, value in query.items():
            if value == "undefined":
                continue
            result[key] = deep_replace_falsies(value)
        return result
    if isinstance(query, list):
        return [deep_replace_falsies(item) for item in query if item != "undefined"]
    if query == "null":
        return None
    return query


def deep_replace_ids(query: Any, pk: str) -> Any:
    """
    Rename the "id" key to the primary key field, inside logical operators too
    """
    if isinstance(query, list):
        return [deep_replace_ids(item, pk) for item in query]
    if not isinstance(query, dict):
        return query
    result = {}
    for key, value in query.items():
        if key == "id":
            result[pk] = value
        elif key in ("$and", "$or", "$nor"):
            result[key] = deep_replace_ids(value, pk)
        else:
            result[key] = value
    return result


def parse_date(value: Any, path: str, resource: str) -> datetime.datetime:
    """
    :return: a naive UTC datetime
    """
    if isinstance(value, datetime.datetime):
        parsed = value
    elif isinstance(value, datetime.date):
        parsed = datetime.datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.datetime.fromtimestamp(value / 1000, datetime.timezone.utc)
    elif isinstance(value, str):
        try:
            parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise CastError(value, path, resource, "date")
    else:
        raise CastError(value, path, resource, "date")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return parsed


def parse_number(value: Any, path: str, resource: str):
    if isinstance(value, bool):
        raise CastError(value, path, resource, "number")
    if isinstance(value, (int, float)):
        return value
    try:
        text = str(value)
        return int(text) if re.fullmatch(r"[-+]?\d+", text) else float(text)
    except (TypeError, ValueError):
        raise CastError(value, path, resource, "number")


def parse_boolean(value: Any, path: str, resource: str) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).lower()
    if lowered in ("true", "1"):
        return True
    if lowered in ("false", "0"):
        return False
    raise CastError(value, path, resource, "boolean")


def cast_primitive(spec: Primitive, value: Any, path: str, resource: str) -> Any:
    """
    Cast a scalar filter or document value to the type of a primitive field
    """
    if value is None:
        return None
    if spec.type == "date":
        return parse_date(value, path, resource)
    if spec.type == "number":
        return parse_number(value, path, resource)
    if spec.type == "boolean":
        return parse_boolean(value, path, resource)
    return value


def _cast_values(spec, value, path, resource):
    if isinstance(value, list):
        return [cast_primitive(spec, item, path, resource) for item in value]
    return cast_primitive(spec, value, path, resource)


def _day_range(value, path, resource):
    start = parse_date(value, path, resource).replace(hour=0, minute=0, second=0, microsecond=0)
    return {"$gte": start, "$lt": start + datetime.timedelta(days=1)}


def _parse_operators(spec: Optional[Primitive], value: Dict[str, Any], path: str, resource: str) -> Dict[str, Any]:
    result = {}
    for op, operand in value.items():
        name = op[1:] if op.startswith("$") else op
        if name not in OPERATORS:
            if op.startswith("$"):
                raise ValidationError(f'Unsupported filter operator "{op}" for "{path}"')
            # sub document match, e.g. {"nested": {"field1": "x"}}
            check_operators(operand, f"{path}.{op}")
            result[op] = operand
            continue
        if name == "exists":
            result["$exists"] = str(operand).lower() == "true"
        elif name in ("in", "nin", "all"):
            items = ensure_query_array(operand)
            result[f"${name}"] = _cast_values(spec, items, path, resource) if spec is not None else items
        elif name == "regex":
            result["$regex"] = operand
            result.setdefault("$options", value.get("options", value.get("$options", "")))
        elif name == "options":
            result["$options"] = operand
        elif name in ("gt", "gte", "lt", "lte", "ne", "eq"):
            result[f"${name}"] = _cast_values(spec, operand, path, resource) if spec is not None and operand is not None else operand
        else:
            check_operators(operand, path)
            result[f"${name}"] = operand
    return result


def parse_query(schema: ResourceSchema, query: Any) -> Dict[str, Any]:
    """
    Convert a client filter into a document store predicate
    :param schema: schema of the queried resource
    :param query: a filter dict, or a list of ids
    :return: predicate dict
    """
    if isinstance(query, (list, tuple)):
        ids = list(query)
        return {schema.pk_field: ids[0] if len(ids) == 1 else {"$in": ids}}
    if query is None:
        return {}

    query = deep_replace_falsies(query)
    result = {}
    for key, value in query.items():
        if key in LOGICAL:
            branches = [parse_query(schema, branch) for branch in as_branches(value)]
            if branches:
                result[LOGICAL[key]] = branches
            continue
        if key.startswith("$"):
            raise ValidationError(f'Unsupported filter operator "{key}"')

        spec = schema.get(key)
        primitive = spec if isinstance(spec, Primitive) and spec.fields is None else None
        if value is None:
            if not key.startswith("$"):
                result[key] = None
        elif isinstance(value, dict):
            result[key] = _parse_operators(primitive, value, key, schema.name)
        elif primitive is not None and primitive.type == "date" and not primitive.many:
            # an exact date matches the whole day
            result[key] = _day_range(value, key, schema.name)
        elif primitive is not None:
            result[key] = _cast_values(primitive, value, key, schema.name)
        else:
            result[key] = value

    return deep_replace_ids(result, schema.pk_field)


def parse_sort(sort: Any, pk: str = "_id") -> List[Tuple[str, int]]:
    """
    :param sort: "-name,age", {"name": -1}, [("name", -1)]
    :return: list of (field, direction) pairs
    """
    if not sort:
        return []
    pairs = []
    if isinstance(sort, str):
        for item in SORT_SPLIT.split(sort.strip()):
            if not item:
                continue
            if item.startswith("-"):
                pairs.append((item[1:], -1))
            else:
                pairs.append((item.lstrip("+"), 1))
    elif isinstance(sort, dict):
        pairs = [(key, _direction(value)) for key, value in sort.items()]
    else:
        for item in sort:
            if isinstance(item, str):
                pairs.extend(parse_sort(item, pk))
            else:
                pairs.append((item[0], _direction(item[1])))
    return [(pk if key == "id" else key, direction) for key, direction in pairs]


def _direction(value):
    if isinstance(value, str):
        return -1 if value.lower() in ("-1", "desc", "descending") else 1
    return -1 if int(value) < 0 else 1


def remove_useless_projection_select(select: Optional[Iterable[str]], resource: str = "") -> Optional[List[str]]:
    """
    Selecting "a" and "a.b" at once is rejected by the document store,
    the shorter key is dropped
    """
    if not select:
        return select
    if isinstance(select, str):
        select = [item for item in SORT_SPLIT.split(select) if item]
    select = list(select)
    result = []
    for key in select:
        if any(other != key and other.startswith(key + ".") for other in select):
            mofrs.log.warning('"%s" was removed from the select of %s, "%s.*" is selected as well', key, resource, key)
            continue
        if key not in result:
            result.append(key)
    return result

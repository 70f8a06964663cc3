"""
Request argument parsing

Query strings use the bracket syntax to express nested filters, for example
``filter[soulmate][name]=Wally&filter[age][gte]=18&filter[or][0][name]=a``
is parsed into

    {"filter": {"soulmate": {"name": "Wally"}, "age": {"gte": "18"}, "or": {"0": {"name": "a"}}}}

Index-keyed dicts ("0", "1", ...) are converted to lists by the filter parser.
"""

import re
from flask import Request
import mofrs
from .errors import ValidationError

ARG_RE = re.compile(r"^([^\[\]]+)((?:\[[^\[\]]*\])*)$")
BRACKET_RE = re.compile(r"\[([^\[\]]*)\]")
TRUE_VALUES = ("true", "1", "yes")


def parse_nested_args(args):
    """
    Convert a flat MultiDict of query arguments into a nested dict
    :param args: werkzeug MultiDict (or a plain dict)
    :return: nested dict
    """
    result = {}
    for key in args.keys():
        values = args.getlist(key) if hasattr(args, "getlist") else [args[key]]
        value = values if len(values) > 1 else values[0]
        match = ARG_RE.match(key)
        if not match:
            result[key] = value
            continue
        parts = [match.group(1)] + BRACKET_RE.findall(match.group(2))
        if parts[-1] == "":
            # a[]=x&a[]=y
            parts.pop()
            value = list(values)
        node = result
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[parts[-1]] = value
    return result


class MOFRSRequest(Request):
    """
    Parse the mofrs-related request arguments:
    - filter[...] (nested)
    - fields, include: comma separated lists
    - limit, page, pageSize: integers
    - sort, ids, includeDeleted, includeMeta, destroy
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._query = None

    @property
    def query(self):
        """
        :return: the parsed query arguments as a nested dict
        """
        if self._query is None:
            self._query = self.parse_query_args()
        return self._query

    def parse_query_args(self):
        query = parse_nested_args(self.args)
        for arg in ("limit", "page", "pageSize"):
            if arg in query:
                try:
                    query[arg] = int(query[arg])
                except (TypeError, ValueError):
                    raise ValidationError(f'Invalid value for "{arg}": {query[arg]}')
        for arg in ("includeDeleted", "destroy"):
            if arg in query:
                query[arg] = str(query[arg]).lower() in TRUE_VALUES
        for arg in ("fields", "include", "ids"):
            if isinstance(query.get(arg), str):
                query[arg] = [item for item in query[arg].split(",") if item]
        if not isinstance(query.get("filter", {}), dict):
            mofrs.log.warning("Ignoring invalid filter argument: %s", query["filter"])
            del query["filter"]
        return query

    def get_payload(self):
        """
        :return: json request payload
        """
        result = self.get_json(silent=True)
        if result is None:
            raise ValidationError("Invalid JSON Payload")
        return result

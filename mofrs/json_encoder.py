# mofrs to json encoding

import datetime
import decimal
import json
from uuid import UUID
from bson import ObjectId
from flask.json.provider import DefaultJSONProvider
import mofrs
from .config import is_debug


class _MOFRSJSONEncoder:
    """
    JSON encoding for the values stored in the document store
    """

    # pylint: disable=too-many-return-statements,arguments-differ,method-hidden
    def default(self, obj, **kwargs):
        """
        override the default json encoding
        :param obj: object to be encoded
        :return: encoded/serialized object
        """
        if obj is None:
            return None
        if isinstance(obj, ObjectId):
            return str(obj)
        if isinstance(obj, datetime.datetime):
            return obj.isoformat()
        if isinstance(obj, (datetime.date, datetime.time)):
            return obj.isoformat()
        if isinstance(obj, datetime.timedelta):
            return str(obj)
        if isinstance(obj, set):
            return list(obj)
        if isinstance(obj, UUID):  # pragma: no cover
            return str(obj)
        if isinstance(obj, decimal.Decimal):  # pragma: no cover
            return float(obj)
        if isinstance(obj, bytes):
            if obj == b"":
                return ""
            mofrs.log.debug("MOFRSJSONEncoder: serializing bytes obj")
            return obj.hex()

        if not is_debug():  # pragma: no cover
            mofrs.log.warning(f'JSON Encoding Error: Unknown object type "{type(obj)}" for {obj}')
            return {"error": "MOFRSJSONEncoder invalid object"}

        return str(obj)


class MOFRSJSONProvider(_MOFRSJSONEncoder, DefaultJSONProvider):
    """
    Flask JSON encoding
    """


class MOFRSJSONEncoder(_MOFRSJSONEncoder, json.JSONEncoder):
    """
    Common JSON encoding, used by flask-restful (RESTFUL_JSON setting)
    """

    pass

# flake8: noqa: F401
#
# mofrs: expose document store resources with flask-restful
#
from .mofrs_init import log, MOFRS, MOFRSRequest
from .errors import (
    MofrsError,
    ValidationError,
    CastError,
    GenericError,
    NotFoundError,
    StorageConflictError,
    RelationshipRepairError,
    HookAbort,
    SchemaError,
    SchemaFrozenError,
)
from .json_encoder import MOFRSJSONProvider, MOFRSJSONEncoder
from .schema import Primitive, Reference, CustomType, ResourceSchema, ReferenceDescriptor
from .hooks import Hook, Continue, Abort, HookRegistry
from .registry import Registry, ResourceHandle, ResourceOptions
from .relationships import RelationshipMaintainer
from .adapter import StorageAdapter
from .querytree import QueryTreeResolver
from .service import ResourceService, BatchResult, ReadResult
from .mofrs_api import MOFRSAPI
from .__about__ import __version__, __description__

__all__ = (
    "__version__",
    "__description__",
    #
    "MOFRS",
    "MOFRSAPI",
    "MOFRSRequest",
    "MOFRSJSONProvider",
    "MOFRSJSONEncoder",
    # schema:
    "Registry",
    "ResourceHandle",
    "ResourceOptions",
    "ResourceSchema",
    "Primitive",
    "Reference",
    "CustomType",
    "ReferenceDescriptor",
    # storage:
    "StorageAdapter",
    "RelationshipMaintainer",
    "QueryTreeResolver",
    "ResourceService",
    "BatchResult",
    "ReadResult",
    # hooks:
    "Hook",
    "Continue",
    "Abort",
    "HookRegistry",
    # Errors:
    "MofrsError",
    "ValidationError",
    "CastError",
    "GenericError",
    "NotFoundError",
    "StorageConflictError",
    "RelationshipRepairError",
    "HookAbort",
    "SchemaError",
    "SchemaFrozenError",
)

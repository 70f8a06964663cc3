# Exception Handlers
#
# The application loglevel determines the level of detail shown to the user.
# If set to debug, too much sensitive info might be shown !
#
# The exceptions will be caught in http_method_decorator and formatted, for example:
# {
#      "error": "Not Found",
#      "detail": "NotFoundError: person abc"
# }
#
from http import HTTPStatus
import mofrs
from .config import is_debug, get_config

HIDDEN_LOG = "(debug logging disabled)"


class MofrsError(Exception):
    """
    Base class for the errors raised by mofrs, the status_code is used as http status
    """

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR.value
    message = ""
    api_code = None

    def __str__(self):
        return self.message


class NotFoundError(MofrsError):
    """
    This exception is raised when an item was not found
    """

    status_code = HTTPStatus.NOT_FOUND.value
    message = "NotFoundError "

    def __init__(self, message="", status_code=HTTPStatus.NOT_FOUND.value, api_code=None):
        """
        :param message: Message to be returned in the (json) body
        :param status_code: HTTP Status code
        :param api_code: API code
        """
        Exception.__init__(self)
        self.status_code = status_code
        self.api_code = api_code
        mofrs.log.info("Not found: %s", message)
        if is_debug():
            self.message += message
        else:
            self.message += HIDDEN_LOG


class GenericError(MofrsError):
    """
    This exception is raised when an error has been detected
    """

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR.value
    message = "Generic Error: "

    def __init__(self, message, status_code=HTTPStatus.INTERNAL_SERVER_ERROR.value, api_code=None):
        Exception.__init__(self)
        self.status_code = status_code
        self.api_code = api_code
        mofrs.log.error("Generic Error: %s", message)
        if is_debug():
            self.message += str(message)
        else:
            self.message += HIDDEN_LOG


class ValidationError(MofrsError):
    """
    This exception is raised when invalid input has been detected (client side input)
    Always send back the message to the client in the response
    """

    status_code = HTTPStatus.BAD_REQUEST.value
    message = "Validation Error: "
    # hook exceptions carrying this marker are reported as client errors
    is_validation_error = True

    def __init__(self, message="", status_code=HTTPStatus.BAD_REQUEST.value, api_code=None):
        Exception.__init__(self)
        self.status_code = status_code
        self.api_code = api_code
        mofrs.log.warning("ValidationError: %s", message)
        self.message += message


class CastError(ValidationError):
    """
    A filter or id value could not be converted to the type of the field
    """

    message = "Cast Error: "

    def __init__(self, value, path, resource, kind="value"):
        self.value = value
        self.path = path
        self.resource = resource
        super().__init__(f'Cast to {kind} failed for value "{value}" at path "{path}" for resource "{resource}"')


class StorageConflictError(MofrsError):
    """
    Unique index conflicts kept occurring while upserting
    """

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR.value
    message = "Storage Conflict: "

    def __init__(self, message, attempts=0):
        Exception.__init__(self)
        self.attempts = attempts
        mofrs.log.error("StorageConflictError after %s attempts: %s", attempts, message)
        self.message += str(message)


class RelationshipRepairError(MofrsError):
    """
    One or more inverse-side updates failed.
    The primary document has been written already, ``errors`` holds every failure.
    """

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR.value
    message = "Relationship Repair Error: "

    def __init__(self, resource, errors):
        Exception.__init__(self)
        self.resource = resource
        self.errors = list(errors)
        for error in self.errors:
            mofrs.log.error("Failed to update relationships of %s: %s", resource, error)
        if is_debug():
            self.message += "; ".join(str(error) for error in self.errors)
        else:
            self.message += HIDDEN_LOG


class HookAbort(MofrsError):
    """
    A hook cancelled the chain, this is not an error: no detail is sent to the client
    """

    message = ""

    def __init__(self, resource=None, hook=None):
        Exception.__init__(self)
        self.resource = resource
        self.hook = hook
        self.status_code = int(get_config("HOOK_ABORT_STATUS"))
        mofrs.log.info("Hook %s aborted the chain for %s", hook, resource)


class SchemaError(Exception):
    """
    Invalid resource schema declaration
    """


class SchemaFrozenError(SchemaError):
    """
    Raised when a schema is modified after it has been used
    """

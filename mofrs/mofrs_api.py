# flask_restful API subclass
from functools import wraps
from http import HTTPStatus
import logging
from werkzeug.exceptions import HTTPException
from flask import request
from flask.app import Flask
from flask_restful import Api
import mofrs
from .config import get_config
from .errors import HookAbort, MofrsError
from .json_encoder import MOFRSJSONEncoder
from .registry import Registry
from .routes import DefinitionsAPI, ResourceAPI
from .service import ResourceService


class MOFRSAPI(Api):
    """
    Subclass of the flask_restful Api class where we add the expose_resource method,
    this method creates the collection and instance endpoints for a registered resource
    """

    def __init__(self, app: Flask, registry: Registry, prefix: str = "", service: ResourceService = None, **kwargs) -> None:
        """
        :param app: Flask application
        :param registry: the resource registry
        :param prefix: url prefix, defaults to the URL_PREFIX option
        :param service: resource service, created when omitted
        :param kwargs: MOFRS configuration options
        """
        mofrs.MOFRS(app, **kwargs)
        # flask-restful serializes the responses with its own json settings
        app.config.setdefault("RESTFUL_JSON", {"cls": MOFRSJSONEncoder})
        super().__init__(app, prefix=prefix or get_config("URL_PREFIX") or "", default_mediatype="application/json")
        self.registry = registry
        self.service = service or ResourceService(registry)
        definitions = api_decorator(type("Definitions_API", (DefinitionsAPI,), {"service": self.service}))
        self.add_resource(definitions, "/resources", endpoint="mofrs_resources", methods=["GET"])

    def expose_resource(self, name: str, **properties) -> None:
        """
        creates classes of the form

        @api_decorator
        class person_API(ResourceAPI):
            resource = "person"
            service = <ResourceService>

        and adds them as api resources to /people and /people/<id>
        """
        handle = self.registry.handle(name)
        properties["resource"] = handle.name
        properties["service"] = self.service
        url = f"/{handle.route}"
        api_class_name = f"{handle.name}_API"

        collection_methods = ["POST", "DELETE"] if not handle.options.read_only else []
        if not handle.options.no_index:
            collection_methods.insert(0, "GET")
        instance_methods = ["GET"] if handle.options.read_only else ["GET", "PATCH", "PUT", "DELETE"]

        if collection_methods:
            api_class = api_decorator(type(api_class_name, (ResourceAPI,), dict(properties)))
            mofrs.log.info(f"Exposing {handle.name} on {url}, methods: {collection_methods}")
            self.add_resource(api_class, url, endpoint=f"{handle.route}", methods=collection_methods)

        api_class = api_decorator(type(api_class_name + "_i", (ResourceAPI,), dict(properties)))
        instance_url = f"{url}/<string:id>"
        mofrs.log.info(f"Exposing {handle.name} instances on {instance_url}")
        self.add_resource(api_class, instance_url, endpoint=f"{handle.route}_instance", methods=instance_methods)

    def expose(self, *names, **properties) -> None:
        """
        Expose multiple resources at once, all registered resources when no names are given
        """
        for name in names or self.registry.names:
            self.expose_resource(name, **properties)


def api_decorator(cls):
    """Decorator for the API views: add generic exception handling

    :param cls: The class that will be decorated
    :return: decorated class
    """
    for method_name in ["patch", "post", "delete", "get", "put"]:  # HTTP methods
        method = getattr(cls, method_name, None)
        if not method:
            continue
        setattr(cls, method_name, http_method_decorator(method))
    return cls


def http_method_decorator(fun):
    """Decorator for the supported HTTP methods (get, post, patch, put, delete)
    - convert all exceptions to a JSON serializable error body
    - a hook abort is answered with the HOOK_ABORT_STATUS and an empty body

    :param fun: the method to wrap
    :return: wrapped fun
    """

    @wraps(fun)
    def method_wrapper(self, *args, **kwargs):
        try:
            return fun(self, *args, **kwargs)

        except HookAbort as exc:
            mofrs.log.info(f"{request.method} {request.path}: aborted by hook {exc.hook}")
            return {}, exc.status_code

        except MofrsError as exc:
            mofrs.log.exception(exc)
            status_code = exc.status_code
            message = exc.message

        except HTTPException as exc:
            status_code = exc.code
            message = exc.description

        except Exception as exc:
            status_code = getattr(exc, "status_code", HTTPStatus.INTERNAL_SERVER_ERROR.value)
            mofrs.log.exception(exc)
            if mofrs.log.getEffectiveLevel() > logging.DEBUG:
                message = "Logging Disabled"
            else:
                message = str(exc)

        mofrs.log.error(message)
        try:
            error = HTTPStatus(status_code).phrase
        except ValueError:
            error = "Error"
        return self.error_response({"error": error, "detail": message}, status_code)

    return method_wrapper

import logging
import os
import sys
from flask import Flask
from .request import MOFRSRequest
from .json_encoder import MOFRSJSONProvider
from .config import get_config
import flask.app


class MOFRS:
    """This class configures the Flask application to serve mofrs resources
    :param app: a Flask application.
    :param LOGLEVEL: loglevel configuration variable, values from logging module (0: trace, .. 50: critical)
    """

    # Configuration settings are stored as class variables
    HOOK_ABORT_STATUS = 321
    UPSERT_MAX_RETRIES = 5
    DEFAULT_PAGE_SIZE = 10
    SOFT_DELETE_LINKS = "clear"  # "clear" or "preserve", see RelationshipMaintainer
    LOGLEVEL = logging.WARNING
    URL_PREFIX = ""
    #
    config = {}

    def __init__(self, app: flask.app.Flask, *args, **kwargs) -> None:
        """
        Constructor
        """
        self.app = app
        if app is not None:
            self.init_app(app, *args, **kwargs)

    def init_app(self, app: flask.app.Flask, **kwargs) -> None:
        """
        Application initialization: request/response classes, json encoding and configuration
        """
        if not isinstance(app, Flask):  # pragma: no cover
            raise TypeError("'app' should be Flask.")

        app.request_class = MOFRSRequest
        app.json = MOFRSJSONProvider(app)
        app.url_map.strict_slashes = False

        if app.config.get("DEBUG", False):
            log.setLevel(logging.DEBUG)

        for conf_name, conf_val in kwargs.items():
            setattr(MOFRS, conf_name, conf_val)
        if "LOGLEVEL" in kwargs:
            log.setLevel(kwargs["LOGLEVEL"])

        # options may have changed, don't serve stale values
        get_config.cache_clear()

    @staticmethod
    def init_logging(loglevel: int = logging.WARNING) -> logging.Logger:
        """
        Specify the log format used in the webserver logs
        The webserver will catch stdout so we redirect eveything to sys.stderr
        """
        log = logging.getLogger(__name__)
        if log.level == logging.NOTSET:
            handler = logging.StreamHandler(sys.stderr)
            formatter = logging.Formatter("[%(asctime)s] %(levelname)s: %(message)s")
            handler.setFormatter(formatter)
            log.setLevel(loglevel)
            log.addHandler(handler)
        return log


#
# logging initialization
#
try:
    DEBUG = os.getenv("DEBUG", logging.WARNING)
    LOGLEVEL = int(DEBUG)
except ValueError:  # pragma: no cover
    print(f'Invalid LogLevel in DEBUG Environment Variable! "{DEBUG}"')
    LOGLEVEL = logging.INFO

log = MOFRS.init_logging(LOGLEVEL)

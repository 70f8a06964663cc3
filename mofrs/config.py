# Configuration settings should be set in app.config
# The get_config function looks up the option in the app config first,
# then in the MOFRS class variables and finally in the environment
import os
import logging
from flask import current_app
from functools import lru_cache
import mofrs
from typing import Optional, Union


@lru_cache(maxsize=128)
def get_config(option: str) -> Optional[Union[bool, int, str]]:
    """Retrieve a configuration parameter from the app
    :param option: configuration parameter
    :return: configuration value
    """
    try:
        result = current_app.config[option]
    except (KeyError, RuntimeError):
        result = getattr(mofrs.MOFRS, option, os.environ.get(option, None))
    return result


def is_debug() -> bool:
    """
    We use the loglevel to check whether we're running in debug mode
    :return: whether the app is in debug mode
    :rtype: Boolean
    """
    return mofrs.log.getEffectiveLevel() < logging.INFO

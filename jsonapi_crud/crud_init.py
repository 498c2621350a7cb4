import logging
import os
import sys
from typing import Any, Dict, Union


class CRUD:
    """Process-level settings for the generated JSON:API endpoints.

    Configuration settings are stored as class variables, they can be
    overridden by environment variables (see :func:`jsonapi_crud.config.get_config`)
    or by the keyword arguments passed to :class:`jsonapi_crud.JsonapiCrud`.
    """

    MAX_PAGE_SIZE = 1000
    JSONAPI_VERSION = "1.0"
    JSONAPI_MEDIA_TYPE = "application/vnd.api+json"
    ENV = "development"
    ERROR_DETAIL_MAX_LENGTH = 200
    # raise 422 instead of logging a warning when a connected record doesn't exist
    STRICT_RELATIONSHIPS = False
    # look up connect targets before issuing a mutation
    VERIFY_RELATIONSHIPS = True
    INCLUDE_DELETED_PARAM = "include_deleted"
    LOGLEVEL = logging.WARNING

    @classmethod
    def configure(cls, **kwargs: Any) -> None:
        for conf_name, conf_val in kwargs.items():
            if not hasattr(cls, conf_name):
                raise TypeError(f"Unknown configuration option '{conf_name}'")
            setattr(cls, conf_name, conf_val)

    @staticmethod
    def init_logging(loglevel: int = logging.WARNING) -> logging.Logger:
        """
        Specify the log format used in the webserver logs
        The webserver will catch stdout so we redirect eveything to sys.stderr
        """
        log = logging.getLogger("jsonapi_crud")
        if log.level == logging.NOTSET:
            handler = logging.StreamHandler(sys.stderr)
            formatter = logging.Formatter("[%(asctime)s] %(levelname)s: %(message)s")
            handler.setFormatter(formatter)
            log.setLevel(loglevel)
            log.addHandler(handler)
        return log


def dict_merge(dct: Dict[str, Any], merge_dct: Union[Dict[str, Any], Dict[int, Any]]) -> None:
    """Recursive dict merge, used to combine include trees and openapi extras.
    Inspired by :meth:``dict.update()``, instead of updating only
    top-level keys, dict_merge recurses down into dicts nested
    to an arbitrary depth, updating keys. The ``merge_dct`` is merged into ``dct``.
    :param dct: dict onto which the merge is executed
    :param merge_dct: dct merged into dct
    :return: None
    """
    for k in merge_dct:
        if k in dct and isinstance(dct[k], dict) and isinstance(merge_dct[k], dict):
            dict_merge(dct[k], merge_dct[k])
        else:
            dct[str(k)] = merge_dct[k]


#
# logging initialization
#
try:
    DEBUG = os.getenv("DEBUG", logging.WARNING)
    LOGLEVEL = int(DEBUG)
except ValueError:  # pragma: no cover
    print(f'Invalid LogLevel in DEBUG Environment Variable! "{DEBUG}"')
    LOGLEVEL = logging.INFO

log = CRUD.init_logging(LOGLEVEL)

# Configuration settings are class attributes of jsonapi_crud.CRUD
# Environment variables with the same name take precedence, so a deployment can
# switch e.g. ENV=production without touching code
import os
import logging
from typing import Any, Optional
import jsonapi_crud

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _cast(raw: str, default: Any) -> Any:
    """Cast an environment value to the type of the default setting"""
    if isinstance(default, bool):
        return raw.strip().lower() in _TRUE_VALUES
    if isinstance(default, int):
        try:
            return int(raw)
        except ValueError:
            jsonapi_crud.log.warning(f"Invalid integer configuration value '{raw}', using {default}")
            return default
    return raw


def get_config(option: str) -> Optional[Any]:
    """Retrieve a configuration parameter
    :param option: configuration parameter
    :return: configuration value
    """
    default = getattr(jsonapi_crud.CRUD, option, None)
    raw = os.environ.get(option, None)
    if raw is None:
        return default
    return _cast(raw, default)


def is_debug() -> bool:
    """
    We use the loglevel to check whether we're running in debug mode
    :return: whether the app is in debug mode
    """
    return jsonapi_crud.log.getEffectiveLevel() < logging.INFO


def is_production() -> bool:
    """
    Production responses hide internal error details
    """
    return str(get_config("ENV")).lower() in ("production", "prod")

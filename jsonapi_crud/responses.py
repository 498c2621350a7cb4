# -*- coding: utf-8 -*-

from fastapi.responses import JSONResponse

from .crud_init import CRUD


class JSONAPIResponse(JSONResponse):
    """
    JSON:API requires 'application/vnd.api+json'
    """

    media_type = CRUD.JSONAPI_MEDIA_TYPE

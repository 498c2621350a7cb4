__version__ = "0.4.0"
__description__ = "jsonapi_crud : JSON:API CRUD endpoints for SQLAlchemy models on FastAPI"

# -*- coding: utf-8 -*-
"""
Named database connections

The DatabaseManager is constructed by the application and passed to
JsonapiCrud, so several independent managers can coexist in one process
(eg. in tests). A name that was never added, or that has been disposed,
raises DatabaseNotConnected.
"""

from typing import Any, Dict, List, Optional, Union

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

import jsonapi_crud
from .errors import DatabaseNotConnected

DEFAULT_DATABASE = "default"


class DatabaseManager:
    def __init__(self) -> None:
        self._engines: Dict[str, AsyncEngine] = {}
        self._sessionmakers: Dict[str, async_sessionmaker] = {}

    @property
    def names(self) -> List[str]:
        return list(self._engines.keys())

    def add(self, name: str, url_or_engine: Union[str, AsyncEngine], **engine_kwargs: Any) -> AsyncEngine:
        """
        Register a database

        :param name: database name used when exposing models
        :param url_or_engine: async database url (eg. "sqlite+aiosqlite:///app.db") or an AsyncEngine
        :param engine_kwargs: passed to create_async_engine
        :return: the AsyncEngine
        """
        if isinstance(url_or_engine, AsyncEngine):
            engine = url_or_engine
        else:
            engine = create_async_engine(url_or_engine, **engine_kwargs)
        self._engines[name] = engine
        self._sessionmakers[name] = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        jsonapi_crud.log.debug(f"Database '{name}' added ({engine.url.render_as_string(hide_password=True)})")
        return engine

    def get(self, name: str = DEFAULT_DATABASE) -> async_sessionmaker:
        """
        :return: the session factory of database `name`
        :raises DatabaseNotConnected:
        """
        try:
            return self._sessionmakers[name]
        except KeyError:
            raise DatabaseNotConnected(name)

    def engine(self, name: str = DEFAULT_DATABASE) -> AsyncEngine:
        try:
            return self._engines[name]
        except KeyError:
            raise DatabaseNotConnected(name)

    async def create_all(self, metadata: Any, name: str = DEFAULT_DATABASE) -> None:
        """
        Create the tables of `metadata` (for demos and tests, schema migration is out of scope)
        """
        async with self.engine(name).begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self, name: Optional[str] = None) -> None:
        """
        Close the connections of one database, or of all databases when `name` is None
        """
        names = [name] if name is not None else self.names
        for db_name in names:
            engine = self.engine(db_name)
            await engine.dispose()
            del self._engines[db_name]
            del self._sessionmakers[db_name]
            jsonapi_crud.log.debug(f"Database '{db_name}' disposed")

    async def health_check(self) -> Dict[str, bool]:
        """
        :return: {database name: reachable}
        """
        result: Dict[str, bool] = {}
        for name, engine in self._engines.items():
            try:
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
                result[name] = True
            except (OSError, SQLAlchemyError) as exc:
                jsonapi_crud.log.warning(f"Database '{name}' health check failed: {exc}")
                result[name] = False
        return result

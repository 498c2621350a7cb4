# -*- coding: utf-8 -*-
"""
The data engine: typed model clients over a SQLAlchemy AsyncSession

    engine = DataEngine(databases.get("default"))
    users = engine.model(User)
    await users.find_many(QueryOptions(where={"name": {"contains": "jo"}}, take=10))
    await users.create({"name": "bob", "posts": {"create": [{"title": "hi"}]}})

    async with engine.transaction() as tx:
        await tx.model(User).update({"id": 1}, {"name": "alice"})
        await tx.model(Post).delete({"id": 3})

Records are returned as plain dicts: the mapped columns of the row, plus the
eager loaded relations (nested dicts/lists) requested with `include`.

Relation mutations in `data` use the verbs connect, create, disconnect and set:
    {"tags": {"set": [{"id": 1}, {"id": 2}]}}
    {"author": {"connect": {"id": 4}}}
    {"author": {"disconnect": True}}
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Type

from sqlalchemy import and_, false, func, not_, or_, select, true
from sqlalchemy import inspect as sqla_inspect
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Session, aliased, selectinload

import jsonapi_crud
from .builder import IncludeTree, Predicate, QueryOptions
from .errors import RecordNotFound, RelatedRecordNotFound
from .query import DESC

Record = Dict[str, Any]


#
# Predicate compilation
#
def _field_clause(column: Any, condition: Any) -> Any:
    if not isinstance(condition, dict):
        return column.is_(None) if condition is None else column == condition

    clauses = []
    for op, value in condition.items():
        if op == "eq":
            clauses.append(column.is_(None) if value is None else column == value)
        elif op == "ne":
            clauses.append(column.is_not(None) if value is None else column != value)
        elif op == "gt":
            clauses.append(column > value)
        elif op == "gte":
            clauses.append(column >= value)
        elif op == "lt":
            clauses.append(column < value)
        elif op == "lte":
            clauses.append(column <= value)
        elif op == "in":
            clauses.append(column.in_(list(value)))
        elif op == "not_in":
            clauses.append(column.not_in(list(value)))
        elif op == "contains":
            clauses.append(column.contains(value, autoescape=True))
        elif op == "icontains":
            clauses.append(column.icontains(value, autoescape=True))
        elif op == "startswith":
            clauses.append(column.startswith(value, autoescape=True))
        elif op == "endswith":
            clauses.append(column.endswith(value, autoescape=True))
        else:
            raise ValueError(f"Unknown field operator '{op}'")
    return and_(true(), *clauses)


def _relation_clause(Model: Type[Any], rel: Any, condition: Any) -> Any:
    attr = getattr(Model, rel.key)
    target = rel.mapper.class_
    if condition is None:
        # to-one relation without a target
        return ~attr.has() if not rel.uselist else ~attr.any()
    if not isinstance(condition, dict):
        raise ValueError(f"Invalid condition for relationship '{rel.key}'")

    clauses = []
    for op, sub_where in condition.items():
        if op == "is":
            clauses.append(attr.has(compile_where(target, sub_where)) if sub_where is not None else ~attr.has())
        elif op == "is_not":
            clauses.append(~attr.has(compile_where(target, sub_where)) if sub_where is not None else attr.has())
        elif op == "some":
            clauses.append(attr.any(compile_where(target, sub_where)))
        elif op == "none":
            clauses.append(~attr.any(compile_where(target, sub_where)))
        elif op == "every":
            clauses.append(~attr.any(not_(compile_where(target, sub_where))))
        else:
            raise ValueError(f"Unknown relationship operator '{op}'")
    return and_(true(), *clauses)


def compile_where(Model: Type[Any], where: Optional[Predicate]) -> Any:
    """
    Compile a predicate tree to a SQLAlchemy boolean clause

    :param Model: declarative class the predicate applies to
    :param where: predicate tree, see jsonapi_crud.builder
    :return: clause
    """
    if not where:
        return true()
    mapper = sqla_inspect(Model)
    clauses = []
    for key, value in where.items():
        if key == "AND":
            clauses.append(and_(true(), *(compile_where(Model, sub) for sub in _as_list(value))))
        elif key == "OR":
            clauses.append(or_(false(), *(compile_where(Model, sub) for sub in _as_list(value))))
        elif key == "NOT":
            clauses.append(not_(and_(true(), *(compile_where(Model, sub) for sub in _as_list(value)))))
        elif key in mapper.relationships:
            clauses.append(_relation_clause(Model, mapper.relationships[key], value))
        elif key in mapper.column_attrs:
            clauses.append(_field_clause(getattr(Model, key), value))
        else:
            raise ValueError(f"Unknown field '{key}' for {Model.__name__}")
    return and_(true(), *clauses)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def loader_options(Model: Type[Any], include: Optional[IncludeTree], parent: Any = None) -> List[Any]:
    """
    {"posts": {"comments": {}}} => [selectinload(User.posts).selectinload(Post.comments)]
    """
    options: List[Any] = []
    if not include:
        return options
    relationships = sqla_inspect(Model).relationships
    for rel_name, sub_include in include.items():
        rel = relationships.get(rel_name)
        if rel is None:
            continue
        attr = getattr(Model, rel_name)
        loader = selectinload(attr) if parent is None else parent.selectinload(attr)
        nested = loader_options(rel.mapper.class_, sub_include, loader)
        options.extend(nested or [loader])
    return options


def to_record(obj: Any, include: Optional[IncludeTree] = None) -> Record:
    """
    Convert an instance to a plain dict, included relations become nested records
    """
    mapper = sqla_inspect(obj.__class__)
    record: Record = {attr.key: getattr(obj, attr.key) for attr in mapper.column_attrs}
    for rel_name, sub_include in (include or {}).items():
        rel = mapper.relationships.get(rel_name)
        if rel is None:
            continue
        value = getattr(obj, rel_name)
        if rel.uselist:
            record[rel_name] = [to_record(item, sub_include) for item in (value or [])]
        else:
            record[rel_name] = to_record(value, sub_include) if value is not None else None
    return record


class ModelClient:
    """
    Data engine client of one model
    """

    def __init__(self, engine: "DataEngine", Model: Type[Any]) -> None:
        self.engine = engine
        self.Model = Model
        self.mapper = sqla_inspect(Model)

    @property
    def pk_name(self) -> str:
        return self.mapper.get_property_by_column(self.mapper.primary_key[0]).key

    def _order_clauses(self, order_by: Sequence[Any]) -> List[Any]:
        """
        NULL sorts lowest: first in ascending, last in descending order
        """
        clauses = []
        for name, direction in order_by:
            column = getattr(self.Model, name)
            clauses.append(column.desc().nulls_last() if direction == DESC else column.asc().nulls_first())
        return clauses

    def _after_cursor(self, order_by: Sequence[Any], cursor: Dict[str, Any]) -> Any:
        """
        Keyset predicate: the rows that follow the cursor row in the requested ordering
        """
        cursor_row = aliased(self.Model)
        ((pk_name, pk_value),) = cursor.items()

        def cursor_value(name: str) -> Any:
            return select(getattr(cursor_row, name)).where(getattr(cursor_row, pk_name) == pk_value).scalar_subquery()

        def same(name: str) -> Any:
            column, value = getattr(self.Model, name), cursor_value(name)
            return or_(column == value, and_(column.is_(None), value.is_(None)))

        def follows(name: str, direction: str) -> Any:
            column, value = getattr(self.Model, name), cursor_value(name)
            if direction == DESC:
                return or_(column < value, and_(column.is_(None), value.is_not(None)))
            return or_(column > value, and_(column.is_not(None), value.is_(None)))

        clauses = []
        for index, (name, direction) in enumerate(order_by):
            equal = [same(prev) for prev, _ in order_by[:index]]
            clauses.append(and_(*equal, follows(name, direction)))
        # a cursor row that no longer exists matches nothing
        cursor_exists = select(getattr(cursor_row, pk_name)).where(getattr(cursor_row, pk_name) == pk_value).exists()
        return and_(cursor_exists, or_(*clauses))

    async def find_many(self, options: Optional[QueryOptions] = None) -> List[Record]:
        options = options or QueryOptions()
        stmt = select(self.Model).where(compile_where(self.Model, options.where))
        order_by = list(options.order_by) or [(self.pk_name, "asc")]
        if options.cursor:
            stmt = stmt.where(self._after_cursor(order_by, options.cursor))
        stmt = stmt.order_by(*self._order_clauses(order_by))
        if options.skip:
            stmt = stmt.offset(options.skip)
        if options.take is not None:
            stmt = stmt.limit(options.take)
        stmt = stmt.options(*loader_options(self.Model, options.include))
        jsonapi_crud.log.debug(f"{self.Model.__name__}.find_many where={options.where} order_by={order_by}")
        async with self.engine.session_scope() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [to_record(obj, options.include) for obj in rows]

    async def count(self, where: Optional[Predicate] = None) -> int:
        stmt = select(func.count()).select_from(self.Model).where(compile_where(self.Model, where))
        async with self.engine.session_scope() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def find_first(self, where: Optional[Predicate] = None, include: Optional[IncludeTree] = None) -> Optional[Record]:
        stmt = (
            select(self.Model)
            .where(compile_where(self.Model, where))
            .order_by(getattr(self.Model, self.pk_name))
            .limit(1)
            .options(*loader_options(self.Model, include))
        )
        jsonapi_crud.log.debug(f"{self.Model.__name__}.find_first where={where}")
        async with self.engine.session_scope() as session:
            obj = (await session.execute(stmt)).scalars().first()
            return to_record(obj, include) if obj is not None else None

    async def find_unique(self, where: Dict[str, Any], include: Optional[IncludeTree] = None) -> Optional[Record]:
        """
        :param where: {primary key name: value}
        """
        if set(where.keys()) != {self.pk_name}:
            raise ValueError(f"find_unique of {self.Model.__name__} requires exactly the primary key '{self.pk_name}'")
        return await self.find_first(where, include)

    async def create(self, data: Dict[str, Any], include: Optional[IncludeTree] = None) -> Record:
        jsonapi_crud.log.debug(f"{self.Model.__name__}.create {data}")
        async with self.engine.session_scope() as session:
            pk_value = await session.run_sync(self._create, data)
            return await self._reload(session, pk_value, include)

    async def update(self, where: Predicate, data: Dict[str, Any], include: Optional[IncludeTree] = None) -> Record:
        """
        :raises RecordNotFound: when nothing matches `where`
        """
        jsonapi_crud.log.debug(f"{self.Model.__name__}.update where={where} {data}")
        async with self.engine.session_scope() as session:
            pk_value = await session.run_sync(self._update, where, data)
            return await self._reload(session, pk_value, include)

    async def delete(self, where: Predicate) -> Record:
        """
        :return: the deleted record
        :raises RecordNotFound: when nothing matches `where`
        """
        jsonapi_crud.log.debug(f"{self.Model.__name__}.delete where={where}")
        async with self.engine.session_scope() as session:
            return await session.run_sync(self._delete, where)

    async def _reload(self, session: AsyncSession, pk_value: Any, include: Optional[IncludeTree]) -> Record:
        stmt = (
            select(self.Model)
            .where(getattr(self.Model, self.pk_name) == pk_value)
            .options(*loader_options(self.Model, include))
            .execution_options(populate_existing=True)
        )
        obj = (await session.execute(stmt)).scalars().one()
        return to_record(obj, include)

    #
    # synchronous parts, executed with AsyncSession.run_sync() so relationship
    # collections can be loaded while they're mutated
    #
    def _first(self, session: Session, Model: Type[Any], where: Predicate) -> Any:
        return session.execute(select(Model).where(compile_where(Model, where)).limit(1)).scalars().first()

    def _create(self, session: Session, data: Dict[str, Any]) -> Any:
        # relation targets are looked up while the new object is still incomplete
        with session.no_autoflush:
            obj = self._build(session, self.Model, data)
        session.add(obj)
        session.flush()
        return getattr(obj, self.pk_name)

    def _update(self, session: Session, where: Predicate, data: Dict[str, Any]) -> Any:
        obj = self._first(session, self.Model, where)
        if obj is None:
            raise RecordNotFound(self.Model.__name__, where)
        with session.no_autoflush:
            self._assign(session, obj, data)
        session.flush()
        return getattr(obj, self.pk_name)

    def _delete(self, session: Session, where: Predicate) -> Record:
        obj = self._first(session, self.Model, where)
        if obj is None:
            raise RecordNotFound(self.Model.__name__, where)
        record = to_record(obj)
        session.delete(obj)
        session.flush()
        return record

    def _build(self, session: Session, Model: Type[Any], data: Dict[str, Any]) -> Any:
        obj = Model()
        self._assign(session, obj, data)
        return obj

    def _assign(self, session: Session, obj: Any, data: Dict[str, Any]) -> None:
        mapper = sqla_inspect(obj.__class__)
        for key, value in data.items():
            if key in mapper.relationships:
                self._mutate_relation(session, obj, mapper.relationships[key], value)
            elif key in mapper.column_attrs:
                setattr(obj, key, value)
            else:
                raise ValueError(f"Unknown field '{key}' for {obj.__class__.__name__}")

    def _lookup(self, session: Session, rel: Any, where: Any) -> Any:
        target = rel.mapper.class_
        if not isinstance(where, dict) or not where:
            raise ValueError(f"Invalid connect target for relationship '{rel.key}': {where}")
        related = self._first(session, target, where)
        if related is None:
            raise RelatedRecordNotFound(target.__name__, rel.key, where)
        return related

    def _mutate_relation(self, session: Session, obj: Any, rel: Any, operations: Dict[str, Any]) -> None:
        if not isinstance(operations, dict):
            raise ValueError(f"Invalid mutation for relationship '{rel.key}'")
        target = rel.mapper.class_

        if not rel.uselist:
            if "set" in operations:
                value = operations["set"]
                setattr(obj, rel.key, self._lookup(session, rel, value) if value is not None else None)
            if operations.get("disconnect"):
                setattr(obj, rel.key, None)
            if operations.get("connect") is not None:
                setattr(obj, rel.key, self._lookup(session, rel, operations["connect"]))
            if operations.get("create") is not None:
                setattr(obj, rel.key, self._build(session, target, operations["create"]))
            return

        collection = getattr(obj, rel.key)
        if "set" in operations:
            related = [self._lookup(session, rel, where) for where in _as_list(operations["set"])]
            setattr(obj, rel.key, related)
            collection = getattr(obj, rel.key)
        for where in _as_list(operations.get("disconnect")):
            related = self._lookup(session, rel, where)
            if related in collection:
                collection.remove(related)
        for where in _as_list(operations.get("connect")):
            related = self._lookup(session, rel, where)
            if related not in collection:
                collection.append(related)
        for item in _as_list(operations.get("create")):
            collection.append(self._build(session, target, item))


class DataEngine:
    """
    Entry point of the data engine, bound to one database (session factory)

    Each call of a client opens its own session and commits it, unless the engine
    was obtained from transaction(): then all calls share one session and
    are committed (or rolled back) together.
    """

    def __init__(self, sessionmaker: Optional[async_sessionmaker] = None, session: Optional[AsyncSession] = None) -> None:
        if sessionmaker is None and session is None:
            raise ValueError("DataEngine requires a sessionmaker or a session")
        self.sessionmaker = sessionmaker
        self.session = session

    @property
    def in_transaction(self) -> bool:
        return self.session is not None

    def model(self, Model: Type[Any]) -> ModelClient:
        return ModelClient(self, Model)

    @asynccontextmanager
    async def session_scope(self) -> AsyncIterator[AsyncSession]:
        if self.session is not None:
            yield self.session
            return
        async with self.sessionmaker() as session:
            async with session.begin():
                yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["DataEngine"]:
        """
        All-or-nothing unit of work, the transaction is rolled back when the block raises
        """
        if self.session is not None:
            yield self
            return
        async with self.sessionmaker() as session:
            async with session.begin():
                jsonapi_crud.log.debug("transaction started")
                yield DataEngine(session=session)
            jsonapi_crud.log.debug("transaction committed")

    async def batch(self, operations: Sequence[Callable[["DataEngine"], Awaitable[Any]]]) -> List[Any]:
        """
        Execute `operations` one after the other inside one transaction

        :param operations: callables taking the transactional engine
        :return: the results of the operations
        """
        results = []
        async with self.transaction() as tx:
            for operation in operations:
                results.append(await operation(tx))
        return results

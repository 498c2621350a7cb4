#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Run:
  pip install -e ".[demo]"
  python examples/demo_crud.py [HOST] [PORT]

Then open:
  http://HOST:PORT/docs
  http://HOST:PORT/api/people?page[number]=1&page[size]=10&include=books_written
"""

from __future__ import annotations

import datetime
import sys
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Table, Text, func, select
from sqlalchemy.orm import declarative_base, relationship

from jsonapi_crud import DatabaseManager, JsonapiCrud

Base = declarative_base()
API_PREFIX = "/api"
DB_URL = "sqlite+aiosqlite:///./demo_crud.db"


book_tags = Table(
    "book_tags",
    Base.metadata,
    Column("book_id", Integer, ForeignKey("books.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class Person(Base):
    __tablename__ = "people"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True)
    books_written = relationship("Book", back_populates="author")


class Book(Base):
    __tablename__ = "books"
    id = Column(Integer, primary_key=True)
    title = Column(String, default="")
    summary = Column(Text, default="")
    author_id = Column(Integer, ForeignKey("people.id"))
    deleted_at = Column(DateTime)
    author = relationship("Person", back_populates="books_written")
    tags = relationship("Tag", secondary=book_tags, back_populates="books")


class Tag(Base):
    __tablename__ = "tags"
    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    books = relationship("Book", secondary=book_tags, back_populates="tags")


class PersonCreate(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    email: str = Field(pattern=r"^[^@]+@[^@]+$")


def stamp_title(attributes: dict[str, Any], request: Any) -> dict[str, Any]:
    attributes.setdefault("title", f"untitled {datetime.date.today()}")
    return attributes


async def _seed_data(databases: DatabaseManager, nr_instances: int = 20) -> None:
    async with databases.get()() as session:
        if await session.scalar(select(func.count()).select_from(Person)):
            return
        tags = [Tag(name=f"tag{i}") for i in range(5)]
        for i in range(nr_instances):
            author = Person(name=f"Author {i}", email=f"author@email{i}")
            book = Book(title=f"book_title{i}", author=author, tags=[tags[i % len(tags)]])
            session.add_all([author, book])
        await session.commit()


def create_app(host: str = "127.0.0.1", port: int = 5000) -> FastAPI:
    databases = DatabaseManager()
    databases.add("default", DB_URL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await databases.create_all(Base.metadata)
        await _seed_data(databases)
        yield
        await databases.dispose()

    app = FastAPI(title="jsonapi-crud demo", lifespan=lifespan, docs_url="/docs", redoc_url=None)

    api = JsonapiCrud(app, databases, prefix=API_PREFIX, MAX_PAGE_SIZE=100)
    app.state.crud_api = api

    api.expose(Person, validation={"create": PersonCreate})
    api.expose(Book, soft_delete="deleted_at", hooks={"before_create": stamp_title})
    api.expose(Tag, actions=["index", "show", "create", "relationships"])

    @app.get("/", include_in_schema=False)
    def root() -> Any:
        return RedirectResponse(url="/docs")

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, Any]:
        return {"databases": await databases.health_check(), "api_prefix": API_PREFIX}

    return app


def main() -> None:
    host = "127.0.0.1"
    port = 5000
    if len(sys.argv) > 1:
        host = sys.argv[1]
    if len(sys.argv) > 2:
        port = int(sys.argv[2])
    uvicorn.run(create_app(host=host, port=port), host=host, port=port)


if __name__ == "__main__":
    main()

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from jsonapi_crud import CRUD, DatabaseManager, JsonapiCrud

from models import Base, Document, Post, Tag, User

_SETTINGS = {name: value for name, value in vars(CRUD).items() if name.isupper()}


@pytest.fixture(autouse=True)
def _restore_settings(monkeypatch: pytest.MonkeyPatch):
    """JsonapiCrud(**kwargs) changes the process-level settings"""
    monkeypatch.delenv("ENV", raising=False)
    monkeypatch.delenv("MAX_PAGE_SIZE", raising=False)
    yield
    for name, value in _SETTINGS.items():
        setattr(CRUD, name, value)


@pytest_asyncio.fixture
async def databases(tmp_path):
    manager = DatabaseManager()
    manager.add("default", f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await manager.create_all(Base.metadata)
    yield manager
    await manager.dispose()


@pytest.fixture
def crud(databases: DatabaseManager) -> JsonapiCrud:
    app = FastAPI()
    crud = JsonapiCrud(app, databases)
    crud.expose(User)
    crud.expose(Post, soft_delete="deleted_at")
    crud.expose(Tag)
    crud.expose(Document, resource_type="documents")
    return crud


@pytest_asyncio.fixture
async def client(crud: JsonapiCrud):
    transport = httpx.ASGITransport(app=crud.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


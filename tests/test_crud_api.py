import asyncio

import httpx
import pytest
from fastapi import FastAPI
from pydantic import BaseModel, Field

from jsonapi_crud import DatabaseManager, JsonapiCrud
from jsonapi_crud.engine import ModelClient
from jsonapi_crud.errors import ConflictError

from helpers import JSONAPI_HEADERS, PAGE, create
from models import Document, Post, User

pytestmark = pytest.mark.asyncio


async def test_index_requires_pagination(client: httpx.AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
    reads = []

    async def record_read(self, *args, **kwargs):
        reads.append(self.Model.__name__)
        return []

    monkeypatch.setattr(ModelClient, "find_many", record_read)
    monkeypatch.setattr(ModelClient, "count", record_read)

    response = await client.get("/users")
    assert response.status_code == 400
    assert response.headers["content-type"].startswith("application/vnd.api+json")
    error = response.json()["errors"][0]
    assert error["code"] == "PAGINATION_REQUIRED"
    assert error["source"] == {"parameter": "page[size]"}

    response = await client.get("/users?page[size]=10&page[number]=0")
    assert response.status_code == 400
    assert response.json()["errors"][0]["source"] == {"parameter": "page[number]"}
    assert (await client.get("/users?page[number]=1")).status_code == 400
    assert (await client.get("/users?page[size]=10")).status_code == 400
    assert reads == []


async def test_index_failure_cancels_the_page_query(client: httpx.AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
    cancelled = asyncio.Event()

    async def failing_count(self, where=None):
        raise RuntimeError("count failed")

    async def slow_find_many(self, options=None):
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise
        return []

    monkeypatch.setattr(ModelClient, "count", failing_count)
    monkeypatch.setattr(ModelClient, "find_many", slow_find_many)

    response = await client.get(f"/users?{PAGE}")
    assert response.status_code == 500
    assert response.json()["errors"][0]["code"] == "INTERNAL_ERROR"
    assert cancelled.is_set()


async def test_index_total_ignores_pagination(client: httpx.AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("alice", "bob", "carol"):
        await create(client, "users", {"name": name})
    count_calls = []
    count = ModelClient.count

    async def recording_count(self, **kwargs):
        count_calls.append(kwargs)
        return await count(self, **kwargs)

    monkeypatch.setattr(ModelClient, "count", recording_count)
    response = await client.get("/users?filter[name_ne]=bob&page[number]=2&page[size]=1")
    assert response.json()["meta"]["total"] == 2
    assert count_calls == [{"where": {"name": {"ne": "bob"}}}]


async def test_create_and_show(client: httpx.AsyncClient) -> None:
    user = await create(client, "users", {"name": "bob", "email": "bob@example.com", "age": "42", "password": "x"})
    assert user["type"] == "users"
    assert user["attributes"]["age"] == 42
    assert "password" not in user["attributes"]

    response = await client.get(f"/users/{user['id']}")
    assert response.status_code == 200
    document = response.json()
    assert document["jsonapi"] == {"version": "1.0"}
    assert document["data"]["attributes"]["name"] == "bob"
    assert document["links"]["self"] == f"/users/{user['id']}"


async def test_create_response(client: httpx.AsyncClient) -> None:
    payload = {"data": {"type": "users", "attributes": {"name": "al"}}}
    response = await client.post("/users", json=payload, headers=JSONAPI_HEADERS)
    assert response.status_code == 201
    document = response.json()
    assert response.headers["location"] == f"/users/{document['data']['id']}"
    assert document["meta"]["operation"] == "create"
    assert document["meta"]["affectedCount"] == 1


@pytest.mark.parametrize(
    "payload, pointer",
    [
        ({}, "/data"),
        ({"data": [{"type": "users"}]}, "/data"),
        ({"data": {"attributes": {"name": "x"}}}, "/data/type"),
        ({"data": {"type": "posts", "attributes": {"name": "x"}}}, "/data/type"),
        ({"data": {"type": "users", "attributes": {"name": "x", "age": "old"}}}, "/data/attributes/age"),
    ],
)
async def test_create_invalid_payload(client: httpx.AsyncClient, payload: dict, pointer: str) -> None:
    response = await client.post("/users", json=payload, headers=JSONAPI_HEADERS)
    assert response.status_code == 400
    assert response.json()["errors"][0]["source"] == {"pointer": pointer}


async def test_client_generated_id(client: httpx.AsyncClient) -> None:
    uuid = "550e8400-e29b-41d4-a716-446655440000"
    payload = {"data": {"type": "documents", "id": uuid, "attributes": {"title": "design notes"}}}
    response = await client.post("/documents", json=payload, headers=JSONAPI_HEADERS)
    assert response.status_code == 201
    assert response.json()["data"]["id"] == uuid
    assert (await client.get(f"/documents/{uuid}")).status_code == 200
    assert (await client.get("/documents/42")).status_code == 400


async def test_unique_constraint_conflict(client: httpx.AsyncClient) -> None:
    await create(client, "users", {"name": "bob", "email": "bob@example.com"})
    payload = {"data": {"type": "users", "attributes": {"name": "bob2", "email": "bob@example.com"}}}
    response = await client.post("/users", json=payload, headers=JSONAPI_HEADERS)
    assert response.status_code == 409
    assert response.json()["errors"][0]["code"] == "UNIQUE_CONSTRAINT"


async def test_show_errors(client: httpx.AsyncClient) -> None:
    response = await client.get("/users/999")
    assert response.status_code == 404
    assert response.json()["errors"][0]["code"] == "NOT_FOUND"
    response = await client.get("/users/a%20b")
    assert response.status_code == 400
    assert response.json()["errors"][0]["code"] == "INVALID_ID"


async def test_index(client: httpx.AsyncClient) -> None:
    for name, age in (("alice", 30), ("bob", 42), ("carol", 25), ("dave", 42), ("erin", 19)):
        await create(client, "users", {"name": name, "age": age})

    response = await client.get("/users?filter[age_gte]=25&sort=-age,name&page[number]=1&page[size]=2")
    assert response.status_code == 200
    document = response.json()
    assert [r["attributes"]["name"] for r in document["data"]] == ["bob", "dave"]
    assert document["meta"]["total"] == 4
    assert document["meta"]["count"] == 2
    assert document["meta"]["page"] == {"current": 1, "size": 2, "total": 2}
    assert document["links"]["prev"] is None
    assert "page[number]=2" in document["links"]["next"]
    assert "filter[age_gte]=25" in document["links"]["next"]

    response = await client.get(document["links"]["next"])
    assert [r["attributes"]["name"] for r in response.json()["data"]] == ["alice", "carol"]
    assert response.json()["links"]["next"] is None

    response = await client.get("/users?filter[name]=%25r%25&page[number]=1&page[size]=10")
    assert sorted(r["attributes"]["name"] for r in response.json()["data"]) == ["carol", "erin"]

    # unknown filters and sort fields are ignored
    response = await client.get("/users?filter[password_eq]=x&sort=password&page[number]=1&page[size]=10")
    assert response.json()["meta"]["total"] == 5

    response = await client.get("/users?filter[age_eq]=old&page[number]=1&page[size]=10")
    assert response.status_code == 400


async def test_cursor_pagination(client: httpx.AsyncClient) -> None:
    for index in range(5):
        await create(client, "users", {"name": f"user{index}"})

    names = []
    url = "/users?page[cursor]=&page[size]=2"
    while url:
        response = await client.get(url)
        assert response.status_code == 200
        document = response.json()
        names.extend(r["attributes"]["name"] for r in document["data"])
        url = document["links"]["next"]
    assert names == [f"user{index}" for index in range(5)]

    response = await client.get("/users?page[cursor]=not-a-cursor&page[size]=2")
    assert response.status_code == 400
    assert response.json()["errors"][0]["source"] == {"parameter": "page[cursor]"}


async def _follow_cursor(client: httpx.AsyncClient, url: str) -> list:
    names = []
    while url:
        document = (await client.get(url)).json()
        names.extend(r["attributes"]["name"] for r in document["data"])
        url = document["links"]["next"]
    return names


async def test_cursor_pagination_nullable_sort(client: httpx.AsyncClient) -> None:
    for name, age in (("a", None), ("b", 30), ("c", None), ("d", 20)):
        await create(client, "users", {"name": name, "age": age})

    # NULL sorts lowest, ties are ordered by id
    assert await _follow_cursor(client, "/users?sort=age&page[cursor]=&page[size]=1") == ["a", "c", "d", "b"]
    assert await _follow_cursor(client, "/users?sort=-age&page[cursor]=&page[size]=1") == ["b", "d", "a", "c"]
    assert await _follow_cursor(client, "/users?sort=age&page[cursor]=&page[size]=3") == ["a", "c", "d", "b"]


async def test_sparse_fieldsets_and_includes(client: httpx.AsyncClient) -> None:
    bob = await create(client, "users", {"name": "bob", "email": "bob@example.com"})
    tag = await create(client, "tags", {"name": "python"})
    post = await create(
        client,
        "posts",
        {"title": "hello"},
        {"author": {"data": {"type": "users", "id": bob["id"]}}, "tags": {"data": [{"type": "tags", "id": tag["id"]}]}},
    )
    assert post["relationships"]["author"]["data"] == {"type": "users", "id": bob["id"]}

    response = await client.get(f"/posts/{post['id']}?include=author,tags&fields[users]=name")
    document = response.json()
    included = {(r["type"], r["id"]): r for r in document["included"]}
    assert set(included) == {("users", bob["id"]), ("tags", tag["id"])}
    assert included[("users", bob["id"])]["attributes"] == {"name": "bob"}

    response = await client.get(f"/users?{PAGE}&include=posts.tags&fields[users]=email")
    document = response.json()
    assert document["data"][0]["attributes"] == {"email": "bob@example.com"}
    assert {r["type"] for r in document["included"]} == {"posts", "tags"}

    response = await client.get(f"/posts?{PAGE}&filter[author.name]=bob")
    assert response.json()["meta"]["total"] == 1
    response = await client.get(f"/users?{PAGE}&filter[posts.title_start]=hel")
    assert response.json()["meta"]["total"] == 1


async def test_update(client: httpx.AsyncClient) -> None:
    user = await create(client, "users", {"name": "bob", "age": 3, "settings": {"theme": "dark"}})
    url = f"/users/{user['id']}"

    payload = {"data": {"type": "users", "id": user["id"], "attributes": {"age": 4, "settings": {}}}}
    response = await client.patch(url, json=payload, headers=JSONAPI_HEADERS)
    assert response.status_code == 200
    attributes = response.json()["data"]["attributes"]
    assert attributes["age"] == 4
    # empty values are omitted by default
    assert attributes["settings"] == {"theme": "dark"}
    assert response.json()["meta"]["operation"] == "update"

    payload = {"data": {"type": "users", "attributes": {"email": None}}}
    assert (await client.put(url, json=payload, headers=JSONAPI_HEADERS)).status_code == 200

    payload = {"data": {"type": "users", "id": "999", "attributes": {"age": 5}}}
    response = await client.patch(url, json=payload, headers=JSONAPI_HEADERS)
    assert response.status_code == 400
    assert response.json()["errors"][0]["code"] == "ID_MISMATCH"

    response = await client.patch("/users/999", json={"data": {"type": "users", "attributes": {}}}, headers=JSONAPI_HEADERS)
    assert response.status_code == 404


async def test_update_relationships(client: httpx.AsyncClient) -> None:
    post = await create(client, "posts", {"title": "t"})
    first = await create(client, "tags", {"name": "a"})
    second = await create(client, "tags", {"name": "b"})
    url = f"/posts/{post['id']}"

    relationships = {"tags": {"data": [{"type": "tags", "id": first["id"]}, {"type": "tags", "id": second["id"]}]}}
    payload = {"data": {"type": "posts", "id": post["id"], "relationships": relationships}}
    response = await client.patch(f"{url}?include=tags", json=payload, headers=JSONAPI_HEADERS)
    assert response.status_code == 200
    assert len(response.json()["data"]["relationships"]["tags"]["data"]) == 2

    payload = {"data": {"type": "posts", "relationships": {"tags": {"data": []}}}}
    response = await client.patch(f"{url}?include=tags", json=payload, headers=JSONAPI_HEADERS)
    assert response.json()["data"]["relationships"]["tags"]["data"] == []

    payload = {"data": {"type": "posts", "relationships": {"author": {"data": {"type": "users", "id": "999"}}}}}
    response = await client.patch(url, json=payload, headers=JSONAPI_HEADERS)
    assert response.status_code == 422
    assert response.json()["errors"][0]["code"] == "RELATED_NOT_FOUND"


async def test_hard_delete(client: httpx.AsyncClient) -> None:
    user = await create(client, "users", {"name": "bob"})
    response = await client.delete(f"/users/{user['id']}")
    assert response.status_code == 204
    assert response.content == b""
    assert (await client.get(f"/users/{user['id']}")).status_code == 404
    assert (await client.delete(f"/users/{user['id']}")).status_code == 404
    # recover is only exposed for soft-deleted models
    assert (await client.post(f"/users/{user['id']}/recover")).status_code in (404, 405)


async def test_soft_delete_and_recover(client: httpx.AsyncClient) -> None:
    post = await create(client, "posts", {"title": "t"})
    url = f"/posts/{post['id']}"

    response = await client.delete(url)
    assert response.status_code == 200
    document = response.json()
    assert document["data"]["attributes"]["deleted_at"] is not None
    assert document["meta"]["softDelete"] is True

    assert (await client.get(url)).status_code == 410
    assert (await client.get(f"{url}?include_deleted=true")).status_code == 200
    assert (await client.delete(url)).status_code == 410
    response = await client.patch(url, json={"data": {"type": "posts", "attributes": {"title": "x"}}}, headers=JSONAPI_HEADERS)
    assert response.status_code == 410
    assert (await client.get(f"/posts?{PAGE}")).json()["meta"]["total"] == 0
    assert (await client.get(f"/posts?{PAGE}&include_deleted=true")).json()["meta"]["total"] == 1

    response = await client.post(f"{url}/recover")
    assert response.status_code == 200
    assert response.json()["data"]["attributes"]["deleted_at"] is None
    assert response.json()["meta"]["operation"] == "recover"

    response = await client.post(f"{url}/recover")
    assert response.status_code == 409
    assert response.json()["errors"][0]["code"] == "ALREADY_ACTIVE"
    assert (await client.post("/posts/999/recover")).status_code == 404
    assert (await client.get(url)).status_code == 200


async def test_unknown_route(client: httpx.AsyncClient) -> None:
    response = await client.get("/nothing")
    assert response.status_code == 404
    assert response.json()["errors"][0]["status"] == "404"


async def _client(databases: DatabaseManager, **expose_kwargs) -> httpx.AsyncClient:
    app = FastAPI()
    crud = JsonapiCrud(app, databases, prefix="/api")
    crud.expose(User, **expose_kwargs)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


async def test_hooks(databases: DatabaseManager) -> None:
    calls = []

    def before_create(data, request):
        calls.append(("before_create", request.url.path))
        return dict(data, name=data["name"].title())

    async def after_create(record, request):
        calls.append(("after_create", record["name"]))

    def before_destroy(where, request):
        raise ConflictError("users can't be deleted")

    def before_index(options, request):
        options.where = {"age": {"gte": 18}}

    hooks = {
        "before_create": before_create,
        "after_create": after_create,
        "before_destroy": before_destroy,
        "before_index": before_index,
    }
    async with await _client(databases, hooks=hooks) as client:
        response = await client.post("/api/users", json={"data": {"type": "users", "attributes": {"name": "bob", "age": 20}}})
        assert response.status_code == 201
        assert response.json()["data"]["attributes"]["name"] == "Bob"
        assert response.json()["data"]["links"]["self"] == f"/api/users/{response.json()['data']['id']}"
        assert calls == [("before_create", "/api/users"), ("after_create", "Bob")]
        await client.post("/api/users", json={"data": {"type": "users", "attributes": {"name": "kid", "age": 8}}})

        response = await client.get(f"/api/users?{PAGE}")
        assert [r["attributes"]["name"] for r in response.json()["data"]] == ["Bob"]

        response = await client.delete("/api/users/1")
        assert response.status_code == 409


async def test_failing_hook(databases: DatabaseManager) -> None:
    def before_create(data, request):
        raise RuntimeError("password=hunter2")

    async with await _client(databases, hooks={"before_create": before_create}) as client:
        response = await client.post("/api/users", json={"data": {"type": "users", "attributes": {"name": "bob"}}})
        assert response.status_code == 500
        assert response.json()["errors"][0]["code"] == "HOOK_ERROR"


async def test_production_hides_server_errors(databases: DatabaseManager) -> None:
    def before_create(data, request):
        raise RuntimeError("password=hunter2")

    app = FastAPI()
    crud = JsonapiCrud(app, databases, ENV="production")
    crud.expose(User, hooks={"before_create": before_create})
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/users", json={"data": {"type": "users", "attributes": {"name": "bob"}}})
        assert response.status_code == 500
        assert "hunter2" not in response.text


async def test_validation_and_actions(databases: DatabaseManager) -> None:
    class CreateUser(BaseModel):
        name: str = Field(min_length=3)

    async with await _client(databases, validation={"create": CreateUser}, actions=["index", "create"]) as client:
        response = await client.post("/api/users", json={"data": {"type": "users", "attributes": {"name": "bo"}}})
        assert response.status_code == 400
        assert response.json()["errors"][0]["source"] == {"pointer": "/data/attributes/name"}
        response = await client.post("/api/users", json={"data": {"type": "users", "attributes": {"name": "bob"}}})
        assert response.status_code == 201
        assert (await client.get("/api/users/1")).status_code in (404, 405)
        assert (await client.delete("/api/users/1")).status_code in (404, 405)


async def test_dependencies(databases: DatabaseManager) -> None:
    from fastapi import HTTPException, Request

    def require_token(request: Request) -> None:
        if request.headers.get("x-token") != "secret":
            raise HTTPException(status_code=401, detail="missing token")

    async with await _client(databases, dependencies=[require_token]) as client:
        response = await client.get(f"/api/users?{PAGE}")
        assert response.status_code == 401
        assert response.json()["errors"][0]["detail"] == "missing token"
        response = await client.get(f"/api/users?{PAGE}", headers={"x-token": "secret"})
        assert response.status_code == 200


async def test_include_merge(databases: DatabaseManager) -> None:
    app = FastAPI()
    crud = JsonapiCrud(app, databases)
    crud.expose(User)
    crud.expose(Post, include_merge=True)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        bob = await create(client, "users", {"name": "bob"})
        post = await create(client, "posts", {"title": "t"}, {"author": {"data": {"type": "users", "id": bob["id"]}}})
        document = (await client.get(f"/posts/{post['id']}?include=author")).json()
        assert "included" not in document
        assert document["data"]["attributes"]["author"]["name"] == "bob"


async def test_unknown_database(databases: DatabaseManager) -> None:
    app = FastAPI()
    crud = JsonapiCrud(app, databases)
    crud.expose(Document, database="reporting")
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get(f"/documents?{PAGE}")
        assert response.status_code == 500
        assert response.json()["errors"][0]["code"] == "DATABASE_NOT_CONNECTED"

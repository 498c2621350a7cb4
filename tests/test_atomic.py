import httpx
import pytest
from pydantic import ValidationError as PydanticValidationError

from jsonapi_crud.jsonapi_types import AtomicRequest

from helpers import JSONAPI_HEADERS, PAGE, create


async def _atomic(client: httpx.AsyncClient, operations: list, key: str = "atomic:operations") -> httpx.Response:
    return await client.post("/users/atomic", json={key: operations}, headers=JSONAPI_HEADERS)


async def _total(client: httpx.AsyncClient, resource_type: str) -> int:
    return (await client.get(f"/{resource_type}?{PAGE}")).json()["meta"]["total"]


@pytest.mark.asyncio
async def test_operations_are_applied(client: httpx.AsyncClient) -> None:
    post = await create(client, "posts", {"title": "old"})
    doomed = await create(client, "posts", {"title": "doomed"})
    operations = [
        {"op": "add", "data": {"type": "users", "attributes": {"name": "bob"}}},
        {"op": "add", "data": {"type": "tags", "attributes": {"name": "python"}}},
        {"op": "update", "ref": {"type": "posts", "id": post["id"]}, "data": {"attributes": {"title": "new"}}},
        {"op": "remove", "ref": {"type": "posts", "id": doomed["id"]}},
    ]
    response = await _atomic(client, operations)
    assert response.status_code == 200
    results = response.json()["atomic:results"]
    assert results[0]["data"]["type"] == "users"
    assert results[1]["data"]["attributes"] == {"name": "python"}
    assert results[2]["data"]["attributes"]["title"] == "new"
    assert results[3] is None

    assert await _total(client, "users") == 1
    assert await _total(client, "tags") == 1
    # posts is soft-deleted
    assert (await client.get(f"/posts/{doomed['id']}")).status_code == 410


@pytest.mark.asyncio
async def test_operations_alias(client: httpx.AsyncClient) -> None:
    response = await _atomic(client, [{"op": "add", "data": {"type": "tags", "attributes": {"name": "x"}}}], key="operations")
    assert response.status_code == 200
    assert await _total(client, "tags") == 1


@pytest.mark.asyncio
async def test_all_or_nothing(client: httpx.AsyncClient) -> None:
    operations = [
        {"op": "add", "data": {"type": "users", "attributes": {"name": "bob"}}},
        {"op": "add", "data": {"type": "tags", "attributes": {"name": "python"}}},
        {"op": "update", "ref": {"type": "posts", "id": "999"}, "data": {"attributes": {"title": "x"}}},
    ]
    response = await _atomic(client, operations)
    assert response.status_code == 404
    assert response.json()["errors"][0]["source"] == {"pointer": "/atomic:operations/2"}
    assert await _total(client, "users") == 0
    assert await _total(client, "tags") == 0


@pytest.mark.asyncio
async def test_failure_pointer_includes_the_attribute(client: httpx.AsyncClient) -> None:
    operations = [
        {"op": "add", "data": {"type": "users", "attributes": {"name": "bob"}}},
        {"op": "add", "data": {"type": "users", "attributes": {"name": "al", "age": "old"}}},
    ]
    response = await _atomic(client, operations)
    assert response.status_code == 400
    assert response.json()["errors"][0]["source"] == {"pointer": "/atomic:operations/1/data/attributes/age"}
    assert await _total(client, "users") == 0


@pytest.mark.asyncio
async def test_unique_violation_rolls_back(client: httpx.AsyncClient) -> None:
    operations = [
        {"op": "add", "data": {"type": "tags", "attributes": {"name": "python"}}},
        {"op": "add", "data": {"type": "tags", "attributes": {"name": "python"}}},
    ]
    response = await _atomic(client, operations)
    assert response.status_code == 409
    assert await _total(client, "tags") == 0


@pytest.mark.asyncio
async def test_relationship_operations(client: httpx.AsyncClient) -> None:
    post = await create(client, "posts", {"title": "t"})
    tag = await create(client, "tags", {"name": "python"})
    ref = {"type": "posts", "id": post["id"], "relationship": "tags"}
    response = await _atomic(client, [{"op": "add", "ref": ref, "data": [{"type": "tags", "id": tag["id"]}]}])
    assert response.status_code == 200
    linkage = (await client.get(f"/posts/{post['id']}/relationships/tags")).json()["data"]
    assert linkage == [{"type": "tags", "id": tag["id"]}]

    response = await _atomic(client, [{"op": "remove", "ref": ref, "data": [{"type": "tags", "id": tag["id"]}]}])
    assert response.status_code == 200
    assert (await client.get(f"/posts/{post['id']}/relationships/tags")).json()["data"] == []


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"atomic:operations": []},
        {"atomic:operations": [{"op": "upsert", "data": {}}]},
        {"atomic:operations": [{"op": "remove"}]},
        {"atomic:operations": [{"op": "add", "data": {"type": "widgets", "attributes": {}}}]},
        {"atomic:operations": [{"op": "add", "data": {"attributes": {}}}]},
    ],
)
@pytest.mark.asyncio
async def test_invalid_requests(client: httpx.AsyncClient, payload: dict) -> None:
    response = await client.post("/users/atomic", json=payload, headers=JSONAPI_HEADERS)
    assert response.status_code == 400


def test_atomic_request_model() -> None:
    request = AtomicRequest.model_validate({"atomic:operations": [{"op": "remove", "ref": {"type": "users", "id": 1}}]})
    assert request.operations[0].ref.type == "users"
    with pytest.raises(PydanticValidationError):
        AtomicRequest.model_validate({"atomic:operations": [{"op": "add"}]})

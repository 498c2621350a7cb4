from typing import Optional

import httpx

JSONAPI_HEADERS = {"Content-Type": "application/vnd.api+json"}
PAGE = "page[number]=1&page[size]=10"


async def create(client: httpx.AsyncClient, resource_type: str, attributes: dict, relationships: Optional[dict] = None) -> dict:
    data = {"type": resource_type, "attributes": attributes}
    if relationships:
        data["relationships"] = relationships
    response = await client.post(f"/{resource_type}", json={"data": data}, headers=JSONAPI_HEADERS)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def linkage(resource_type: str, *ids: object) -> dict:
    return {"data": [{"type": resource_type, "id": str(i)} for i in ids]}

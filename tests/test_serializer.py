import datetime
from urllib.parse import parse_qs, urlsplit

from jsonapi_crud.builder import decode_cursor
from jsonapi_crud.jsonapi_types import Document, ResourceObject
from jsonapi_crud.model import describe_model
from jsonapi_crud.query import Pagination, PaginationMode
from jsonapi_crud.serializer import (
    ResponseTransformer,
    TransformOptions,
    index_meta,
    next_cursor,
    operation_meta,
    pagination_links,
)

from models import Post, Tag, User

USERS = describe_model(User)
POSTS = describe_model(Post)

BOB = {
    "id": 1,
    "name": "bob",
    "email": "bob@example.com",
    "age": 42,
    "active": True,
    "settings": {"theme": "dark", "tags": ["a"]},
    "created": datetime.datetime(2024, 1, 1, 12),
}


def _post(post_id: int, author: dict = None, tags: list = None) -> dict:
    record = {"id": post_id, "title": f"post {post_id}", "body": "", "author_id": 1, "deleted_at": None}
    if author is not None:
        record["author"] = author
    if tags is not None:
        record["tags"] = tags
    return record


def test_resource() -> None:
    resource = ResponseTransformer().resource(BOB, USERS, TransformOptions(base_url="/api/users"))
    assert resource["type"] == "users"
    assert resource["id"] == "1"
    assert "id" not in resource["attributes"]
    # a dict valued attribute isn't a relationship
    assert resource["attributes"]["settings"] == {"theme": "dark", "tags": ["a"]}
    assert resource["attributes"]["created"] == "2024-01-01T12:00:00"
    assert resource["links"] == {"self": "/api/users/1"}
    posts = resource["relationships"]["posts"]
    assert "data" not in posts
    assert posts["links"] == {"self": "/api/users/1/relationships/posts", "related": "/api/users/1/posts"}


def test_document_members() -> None:
    transformer = ResponseTransformer()
    options = TransformOptions(include={"posts": {}}, links={"self": "/users"}, meta={"total": 1})
    doc = transformer.document([{**BOB, "posts": [_post(3)]}], USERS, options)
    assert set(doc) <= Document.__optional_keys__
    for resource in doc["data"] + doc["included"]:
        assert ResourceObject.__required_keys__ <= set(resource) <= ResourceObject.__required_keys__ | ResourceObject.__optional_keys__


def test_sparse_fieldsets() -> None:
    options = TransformOptions(fields={"users": ["name", "unknown"]})
    resource = ResponseTransformer().resource(BOB, USERS, options)
    assert resource["attributes"] == {"name": "bob"}


def test_included_is_deduplicated() -> None:
    tags = [{"id": 1, "name": "py"}, {"id": 2, "name": "db"}]
    posts = [_post(1, author=BOB, tags=tags), _post(2, author=BOB, tags=tags[:1])]
    options = TransformOptions(include={"author": {}, "tags": {}})
    document = ResponseTransformer().document(posts, POSTS, options)
    assert [(r["type"], r["id"]) for r in document["data"]] == [("posts", "1"), ("posts", "2")]
    assert sorted((r["type"], r["id"]) for r in document["included"]) == [("tags", "1"), ("tags", "2"), ("users", "1")]
    assert document["data"][0]["relationships"]["author"]["data"] == {"type": "users", "id": "1"}
    assert document["data"][1]["relationships"]["tags"]["data"] == [{"type": "tags", "id": "1"}]


def test_primary_data_is_not_included() -> None:
    # users -> posts -> author (the same user)
    user = dict(BOB, posts=[_post(1, author=dict(BOB))])
    document = ResponseTransformer().document(user, USERS, TransformOptions(include={"posts": {"author": {}}}))
    assert [(r["type"], r["id"]) for r in document["included"]] == [("posts", "1")]


def test_include_merge() -> None:
    options = TransformOptions(include={"author": {}}, include_merge=True)
    document = ResponseTransformer().document(_post(1, author=BOB), POSTS, options)
    assert "included" not in document
    assert document["data"]["attributes"]["author"]["id"] == "1"
    assert document["data"]["attributes"]["author"]["name"] == "bob"


def test_empty_documents() -> None:
    transformer = ResponseTransformer()
    assert transformer.document([], USERS, many=True)["data"] == []
    assert transformer.document(None, USERS)["data"] is None
    to_one = transformer.relationship_document(None, USERS, to_many=False)
    assert to_one["data"] is None
    to_many = transformer.relationship_document([{"id": 3, "name": "x"}], describe_model(Tag), to_many=True)
    assert to_many["data"] == [{"type": "tags", "id": "3"}]


def test_meta() -> None:
    meta = operation_meta("create", 1)
    assert meta["operation"] == "create"
    assert meta["affectedCount"] == 1
    assert datetime.datetime.fromisoformat(meta["timestamp"])

    offset = index_meta(21, 10, Pagination(PaginationMode.OFFSET, 10, number=1))
    assert offset["total"] == 21
    assert offset["count"] == 10
    assert offset["page"] == {"current": 1, "size": 10, "total": 3}
    assert offset["operation"] == "index"


def test_next_cursor() -> None:
    records = [{"id": 3}, {"id": 9}]
    cursor_page = Pagination(PaginationMode.CURSOR, 2, cursor="")
    assert decode_cursor(next_cursor(records, USERS, cursor_page), USERS) == 9
    assert next_cursor(records[:1], USERS, cursor_page) is None
    assert next_cursor(records, USERS, Pagination(PaginationMode.OFFSET, 2, number=1)) is None


def _params(url: str) -> dict:
    return {key: values[0] for key, values in parse_qs(urlsplit(url).query, keep_blank_values=True).items()}


def test_offset_links_keep_the_query() -> None:
    items = [("filter[name_like]", "%o%"), ("page[number]", "2"), ("page[size]", "10"), ("sort", "-age")]
    links = pagination_links("/users", items, Pagination(PaginationMode.OFFSET, 10, number=2), total=35)
    assert _params(links["self"]) == {"filter[name_like]": "%o%", "sort": "-age", "page[number]": "2", "page[size]": "10"}
    assert _params(links["first"])["page[number]"] == "1"
    assert _params(links["last"])["page[number]"] == "4"
    assert _params(links["prev"])["page[number]"] == "1"
    assert _params(links["next"])["page[number]"] == "3"
    assert links["self"].startswith("/users?")

    last_page = pagination_links("/users", items, Pagination(PaginationMode.OFFSET, 10, number=4), total=35)
    assert last_page["next"] is None


def test_cursor_links() -> None:
    links = pagination_links("/users", [], Pagination(PaginationMode.CURSOR, 10, cursor=""), total=35, cursor="OQ")
    assert _params(links["next"]) == {"page[cursor]": "OQ", "page[size]": "10"}
    assert links["prev"] is None
    assert links["last"] is None
    assert pagination_links("/users", [], Pagination(PaginationMode.CURSOR, 10, cursor=""), 35)["next"] is None

import pytest

from jsonapi_crud.naming import normalize_type, pascal_case, singularize, type_to_model_name


@pytest.mark.parametrize(
    "resource_type, model_name",
    [
        ("users", "User"),
        ("blog-posts", "BlogPost"),
        ("blog_categories", "BlogCategory"),
        ("address", "Address"),
        ("User", "User"),
    ],
)
def test_type_to_model_name(resource_type: str, model_name: str) -> None:
    assert type_to_model_name(resource_type) == model_name


def test_helpers() -> None:
    assert singularize("categories") == "category"
    assert singularize("class") == "class"
    assert pascal_case("user profile") == "UserProfile"


def test_normalize_type_is_lenient() -> None:
    assert normalize_type("users") == normalize_type("User") == normalize_type("user")
    assert normalize_type("blog-posts") == normalize_type("BlogPost")
    assert normalize_type("users") != normalize_type("posts")

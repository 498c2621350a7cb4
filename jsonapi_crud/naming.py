# -*- coding: utf-8 -*-
"""
Resource type <-> model name transforms

The registry keeps an explicit table of registered types, these functions are
only used as a fallback when a type isn't registered (eg. a relationship
payload referring to a model that isn't exposed).
They're lossy for irregular plurals ("people" -> "People").
"""

import re

_SEPARATORS = re.compile(r"[-_\s]+")


def singularize(word: str) -> str:
    if word.endswith("ies") and len(word) > 3:
        return word[:-3] + "y"
    if word.endswith("s") and not word.endswith("ss") and len(word) > 1:
        return word[:-1]
    return word


def pascal_case(name: str) -> str:
    """
    "blog-posts" => "BlogPosts", "user_profile" => "UserProfile"
    """
    parts = [part for part in _SEPARATORS.split(name) if part]
    return "".join(part[:1].upper() + part[1:] for part in parts)


def type_to_model_name(resource_type: str) -> str:
    """
    :param resource_type: JSON:API resource type, eg. "blog-categories"
    :return: model name, eg. "BlogCategory"
    """
    return singularize(pascal_case(resource_type))


def normalize_type(name: str) -> str:
    """
    Key used for lenient type comparison: "Users", "user" and "users" are equal
    """
    return type_to_model_name(name).lower()

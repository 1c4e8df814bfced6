"""Content-authoring backends."""

from planact.authors.base import Author, AuthoredContent
from planact.authors.stamp import StampAuthor

__all__ = ["Author", "AuthoredContent", "StampAuthor", "build_author"]


def build_author(name: str, **kwargs) -> Author:
    """Instantiate an author backend by config name."""
    if name == "stamp":
        return StampAuthor()
    if name == "anthropic_api":
        from planact.authors.anthropic_api import AnthropicAuthor

        return AnthropicAuthor(**kwargs)
    raise ValueError(f"Unknown author: {name}")

"""Topic tags derived from a room title and the creator's role."""

from __future__ import annotations

_KEYWORD_TAGS: tuple[tuple[str, str], ...] = (
    ("prayer", "prayer"),
    ("worship", "worship"),
    ("bible", "bible"),
    ("healing", "healing"),
    ("host", "leadership"),
    ("guest", "guest"),
)


def generate_tags(title: str, role: str) -> list[str]:
    """Return tags for rooms whose title or role mentions a known keyword.

    Matching is a case-insensitive substring test, so "Prayers at dawn" is
    tagged ``prayer``. Tags keep the order of the keyword table.
    """

    keywords = f"{title} {role}".lower()
    tags: list[str] = []
    for keyword, tag in _KEYWORD_TAGS:
        if keyword in keywords and tag not in tags:
            tags.append(tag)
    return tags

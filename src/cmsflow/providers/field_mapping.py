"""Best-effort field mapping for schema-flexible collections.

Fields are scored by type first and name similarity second. The result is a
suggestion: callers may override any entry before saving it on the
connection.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, List, Mapping, Optional

from loguru import logger

from cmsflow.providers.base import FieldMapping

TITLE_TYPES = ("PlainText", "Name")
TEXT_TYPES = ("PlainText", "TextArea")
IMAGE_TYPES = ("ImageRef", "Image")

TITLE_RE = re.compile(r"title|name|headline", re.I)
BODY_RE = re.compile(r"body|content|post|article|main|rich", re.I)
SUMMARY_RE = re.compile(r"summary|excerpt|intro|blurb", re.I)
META_TITLE_RE = re.compile(r"seo.?title|meta.?title|og.?title|page.?title", re.I)
META_DESC_RE = re.compile(r"seo.?description|meta.?description|og.?description|search.?description", re.I)
IMAGE_RE = re.compile(r"hero|featured|main|cover|thumbnail|og.?image", re.I)


def _fields(schema: Mapping[str, Any]) -> List[dict]:
    fields = []
    for raw in schema.get("fields") or []:
        fields.append({
            "slug": raw.get("slug"),
            "name": raw.get("displayName") or raw.get("slug") or "",
            "type": raw.get("type"),
            "required": bool(raw.get("isRequired")),
        })
    return [f for f in fields if f["slug"]]


def _matches(field: dict, pattern: re.Pattern) -> bool:
    return bool(pattern.search(field["name"]) or pattern.search(field["slug"]))


def _first(fields: Iterable[dict]) -> Optional[str]:
    for f in fields:
        return f["slug"]
    return None


def find_title_field(fields: List[dict]) -> Optional[str]:
    found = _first(
        f for f in fields
        if f["type"] in TITLE_TYPES and _matches(f, TITLE_RE) and not _matches(f, META_TITLE_RE)
    )
    if found:
        return found
    found = _first(f for f in fields if f["type"] == "PlainText" and f["required"])
    if found:
        return found
    return _first(f for f in fields if f["type"] == "Name" or f["slug"] == "name")


def find_slug_field(fields: List[dict], exclude: Iterable[Optional[str]] = ()) -> Optional[str]:
    found = _first(f for f in fields if f["type"] == "Slug")
    if found:
        return found
    taken = set(exclude)
    fallback = _first(f for f in fields if f["type"] == "PlainText" and f["slug"] not in taken)
    if fallback:
        logger.warning(
            "[FIELD MAPPING] No Slug-typed field; falling back to plain-text field '{}'. Verify it before publishing.",
            fallback,
        )
    return fallback


def find_body_field(fields: List[dict]) -> Optional[str]:
    rich = [f for f in fields if f["type"] == "RichText"]
    found = _first(f for f in rich if _matches(f, BODY_RE))
    if found:
        return found
    found = _first(f for f in rich if not _matches(f, SUMMARY_RE))
    return found or _first(rich)


def find_meta_title_field(fields: List[dict]) -> Optional[str]:
    return _first(f for f in fields if f["type"] == "PlainText" and _matches(f, META_TITLE_RE))


def find_meta_description_field(fields: List[dict]) -> Optional[str]:
    found = _first(f for f in fields if f["type"] in TEXT_TYPES and _matches(f, META_DESC_RE))
    if found:
        return found
    # Prefer an explicit description, settle for a summary
    return _first(f for f in fields if f["type"] in TEXT_TYPES and _matches(f, re.compile(r"summary", re.I)))


def find_featured_image_field(fields: List[dict]) -> Optional[str]:
    images = [f for f in fields if f["type"] in IMAGE_TYPES]
    return _first(f for f in images if _matches(f, IMAGE_RE)) or _first(images)


def infer_field_mapping(schema: Mapping[str, Any]) -> FieldMapping:
    fields = _fields(schema)
    title = find_title_field(fields)
    meta_title = find_meta_title_field(fields)
    meta_description = find_meta_description_field(fields)
    return FieldMapping(
        title=title,
        slug=find_slug_field(fields, exclude=(title, meta_title, meta_description)),
        body=find_body_field(fields),
        meta_title=meta_title,
        meta_description=meta_description,
        featured_image=find_featured_image_field(fields),
    )

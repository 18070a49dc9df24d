from cmsflow.providers.base import FieldMapping
from cmsflow.providers.field_mapping import infer_field_mapping


def _field(slug, name, type_, required=False):
    return {"slug": slug, "displayName": name, "type": type_, "isRequired": required}


def test_infers_full_mapping():
    schema = {"fields": [
        _field("name", "Name", "PlainText", required=True),
        _field("slug", "Slug", "Slug", required=True),
        _field("summary", "Summary", "RichText"),
        _field("post-body", "Post Body", "RichText"),
        _field("seo-title", "SEO Title", "PlainText"),
        _field("meta-description", "Meta Description", "PlainText"),
        _field("thumbnail", "Thumbnail", "ImageRef"),
    ]}
    mapping = infer_field_mapping(schema)

    assert mapping.title == "name"
    assert mapping.slug == "slug"
    assert mapping.body == "post-body"
    assert mapping.meta_title == "seo-title"
    assert mapping.meta_description == "meta-description"
    assert mapping.featured_image == "thumbnail"
    assert mapping.missing_required() == []


def test_meta_title_is_never_taken_as_title():
    schema = {"fields": [
        _field("meta-title", "Meta Title", "PlainText"),
        _field("headline", "Headline", "PlainText"),
        _field("slug", "Slug", "Slug"),
        _field("content", "Content", "RichText"),
    ]}
    assert infer_field_mapping(schema).title == "headline"


def test_slug_falls_back_to_unused_plain_text():
    schema = {"fields": [
        _field("name", "Name", "PlainText", required=True),
        _field("url-path", "URL Path", "PlainText"),
        _field("content", "Content", "RichText"),
    ]}
    mapping = infer_field_mapping(schema)
    assert mapping.title == "name"
    assert mapping.slug == "url-path"


def test_missing_body_is_reported():
    schema = {"fields": [_field("name", "Name", "PlainText"), _field("slug", "Slug", "Slug")]}
    mapping = infer_field_mapping(schema)
    assert mapping.body is None
    assert mapping.missing_required() == ["body"]


def test_overrides_replace_inferred_fields():
    mapping = FieldMapping(title="name", slug="slug", body="post-body")
    updated = mapping.with_overrides({"body": "article-html", "unknown": "ignored"})
    assert updated.body == "article-html"
    assert updated.title == "name"
    assert FieldMapping.from_dict(updated.to_dict()) == updated
    assert FieldMapping.from_dict(None) is None

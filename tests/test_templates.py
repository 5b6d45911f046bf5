import json

import pytest

from scraper_worker.errors import TemplateError
from scraper_worker.ingestion.templates import TemplateConfig, list_templates, load_template


def test_bundled_templates_are_listed() -> None:
    names = list_templates()
    assert "wp-manga" in names
    assert "generic-html" in names
    assert "opensubtitles" in names


def test_load_bundled_wp_manga() -> None:
    template = load_template("wp-manga")
    assert template.extractor == "wp-manga"
    assert template.selector("chapters") == ".wp-manga-chapter a"
    assert template.pattern("chapterNumberRegex").search("Chapter 12.5").group(1) == "12.5"


def test_unknown_template() -> None:
    with pytest.raises(TemplateError, match="not found"):
        load_template("does-not-exist")


@pytest.mark.parametrize("name", ["", "../wp-manga", "a/b"])
def test_invalid_template_name(name) -> None:
    with pytest.raises(TemplateError):
        load_template(name)


def test_templates_dir_override(tmp_path) -> None:
    (tmp_path / "custom.json").write_text(
        json.dumps({"name": "custom", "selectors": {"image": "div.page img"}}), encoding="utf-8"
    )
    template = load_template("custom", tmp_path)

    assert template.extractor == "generic-html"
    assert template.selector("image") == "div.page img"
    assert template.selector("chapters") is None
    assert list_templates(tmp_path) == ["custom"]


def test_malformed_json(tmp_path) -> None:
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(TemplateError, match="Failed to load"):
        load_template("broken", tmp_path)


@pytest.mark.parametrize(
    "data, message",
    [
        ([], "JSON object"),
        ({"selectors": {}}, "name"),
        ({"name": "x"}, "selectors"),
        ({"name": "x", "selectors": {"cover": "img"}}, "unknown selectors"),
        ({"name": "x", "selectors": {"image": 3}}, "must be a string"),
        ({"name": "x", "selectors": {}, "patterns": {"chapterNumberRegex": "("}}, "invalid regex"),
        ({"name": "x", "selectors": {}, "patterns": {"other": "a"}}, "unknown pattern"),
        ({"name": "x", "selectors": {}, "extractor": "playwright"}, "unknown extractor"),
    ],
)
def test_template_validation(data, message) -> None:
    with pytest.raises(TemplateError, match=message):
        TemplateConfig.from_dict(data)

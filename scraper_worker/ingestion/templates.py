"""
Extraction templates.

A template is a JSON file naming the CSS selectors and regex patterns used to
read a provider's work page (the segment list) and segment page (images,
subtitles, text). Templates ship with the package under
``scraper_worker/templates/`` and can be overridden with TEMPLATES_DIR.

Example (scraper_worker/templates/wp-manga.json):
    {
        "name": "wp-manga",
        "extractor": "wp-manga",
        "selectors": {"chapters": ".wp-manga-chapter a", "image": "img.wp-manga-chapter-img"}
    }
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from scraper_worker.errors import TemplateError


logger = logging.getLogger("scraper_worker.templates")

BUNDLED_TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"

EXTRACTORS = ("generic-html", "wp-manga", "opensubtitles")

SELECTOR_FIELDS = (
    "chapters",
    "chapterNumber",
    "chapterTitle",
    "image",
    "subtitle",
    "text",
    "textContainer",
)
PATTERN_FIELDS = ("chapterNumberRegex", "imageUrlPattern")


@dataclass(frozen=True)
class TemplateConfig:
    """Validated extraction template."""

    name: str
    extractor: str = "generic-html"
    description: Optional[str] = None
    selectors: Dict[str, str] = field(default_factory=dict)
    patterns: Dict[str, str] = field(default_factory=dict)

    def selector(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.selectors.get(name) or default

    def pattern(self, name: str) -> Optional["re.Pattern"]:
        raw = self.patterns.get(name)
        return re.compile(raw, re.IGNORECASE) if raw else None

    @classmethod
    def from_dict(cls, data: dict, source: str = "<dict>") -> "TemplateConfig":
        """
        Validate a parsed template document.

        Raises:
            TemplateError: If a required field is missing or has the wrong type
        """
        if not isinstance(data, dict):
            raise TemplateError(f"Template {source} must be a JSON object")

        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise TemplateError(f"Template {source} is missing a 'name'")

        selectors = data.get("selectors")
        if not isinstance(selectors, dict):
            raise TemplateError(f"Template {name!r} is missing a 'selectors' object")
        unknown = sorted(set(selectors) - set(SELECTOR_FIELDS))
        if unknown:
            raise TemplateError(f"Template {name!r} has unknown selectors: {', '.join(unknown)}")
        for key, value in selectors.items():
            if not isinstance(value, str):
                raise TemplateError(f"Template {name!r}: selector {key!r} must be a string")

        patterns = data.get("patterns") or {}
        if not isinstance(patterns, dict):
            raise TemplateError(f"Template {name!r}: 'patterns' must be an object")
        for key, value in patterns.items():
            if key not in PATTERN_FIELDS:
                raise TemplateError(f"Template {name!r} has unknown pattern {key!r}")
            if not isinstance(value, str):
                raise TemplateError(f"Template {name!r}: pattern {key!r} must be a string")
            try:
                re.compile(value)
            except re.error as e:
                raise TemplateError(f"Template {name!r}: invalid regex for {key!r}: {e}") from e

        # Templates without an explicit extractor pick one from their name
        extractor = data.get("extractor") or (name if name in EXTRACTORS else "generic-html")
        if extractor not in EXTRACTORS:
            raise TemplateError(
                f"Template {name!r}: unknown extractor {extractor!r} "
                f"(expected one of {', '.join(EXTRACTORS)})"
            )

        return cls(
            name=name,
            extractor=extractor,
            description=data.get("description"),
            selectors=dict(selectors),
            patterns=dict(patterns),
        )


def _templates_dir(templates_dir: Optional[Union[str, Path]]) -> Path:
    return Path(templates_dir) if templates_dir else BUNDLED_TEMPLATES_DIR


def load_template(name: str, templates_dir: Optional[Union[str, Path]] = None) -> TemplateConfig:
    """
    Load and validate the template ``<name>.json``.

    Args:
        name: Template name (file name without extension)
        templates_dir: Directory to read from (defaults to the bundled templates)

    Returns:
        TemplateConfig

    Raises:
        TemplateError: If the template does not exist or is malformed
    """
    if not name or "/" in name or "\\" in name:
        raise TemplateError(f"Invalid template name: {name!r}")

    path = _templates_dir(templates_dir) / f"{name}.json"
    if not path.is_file():
        logger.error(f"Template {name!r} not found at {path}")
        raise TemplateError(f"Template {name!r} not found at {path}")

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Failed to load template {name!r}: {e}")
        raise TemplateError(f"Failed to load template {name!r}: {e}") from e

    template = TemplateConfig.from_dict(data, source=str(path))
    logger.debug(f"Template {name!r} loaded ({template.extractor})")
    return template


def list_templates(templates_dir: Optional[Union[str, Path]] = None) -> List[str]:
    """Names of the available templates, sorted."""
    directory = _templates_dir(templates_dir)
    if not directory.is_dir():
        return []
    return sorted(path.stem for path in directory.glob("*.json"))

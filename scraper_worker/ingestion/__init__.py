"""Remote-source access (templates, Unit Fetcher, OpenSubtitles client) and store/ledger reconciliation."""

from .templates import TemplateConfig, load_template, list_templates
from .fetcher import BaseUnitFetcher, HtmlUnitFetcher, UnitList, UnitPayloads, UnitRef
from .opensubtitles import OpenSubtitlesClient, SubtitleDownload, SubtitleFile
from .reconcile import reconcile_storage, backfill_content_types

__all__ = [
    "TemplateConfig",
    "load_template",
    "list_templates",
    "BaseUnitFetcher",
    "HtmlUnitFetcher",
    "UnitList",
    "UnitPayloads",
    "UnitRef",
    "OpenSubtitlesClient",
    "SubtitleDownload",
    "SubtitleFile",
    "reconcile_storage",
    "backfill_content_types",
]

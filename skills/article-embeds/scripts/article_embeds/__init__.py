"""article_embeds package."""

from .canonicalize import batch_canonicalize, canonicalize, render_article_body
from .dom_repair import EmbedRepairer, repair_html
from .markers import build_embed_marker, parse_marker
from .models import (
    BatchResult,
    CorruptionReport,
    EmbedMarker,
    RepairConfig,
    RepairStats,
    WidgetLoadState,
)
from .security import detect_embed_corruption
from .widgets import ScriptLoadError, StaticWidgetHost, WidgetHost, WidgetRegistry

__all__ = [
    "BatchResult",
    "CorruptionReport",
    "EmbedMarker",
    "EmbedRepairer",
    "RepairConfig",
    "RepairStats",
    "ScriptLoadError",
    "StaticWidgetHost",
    "WidgetHost",
    "WidgetLoadState",
    "WidgetRegistry",
    "batch_canonicalize",
    "build_embed_marker",
    "canonicalize",
    "detect_embed_corruption",
    "parse_marker",
    "render_article_body",
    "repair_html",
]

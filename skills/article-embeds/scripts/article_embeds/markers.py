"""EmbedMarker：编辑器 Embed 节点写入正文的占位容器。

插入路径（编辑器弹窗）用 :func:`build_embed_marker` 把粘贴的 URL 或整段
provider embed 代码整理成干净的 marker；渲染路径用 :func:`iter_markers`
找出正文中的 marker 交给规范化阶段展开。
"""

from __future__ import annotations

import html as htmllib
import re
from typing import Dict, Iterator, Optional, Tuple
from urllib.parse import unquote

from .models import EMBED_KINDS, KIND_ALIASES, EmbedMarker
from .providers import (
    FACEBOOK_PLUGIN_RE,
    FACEBOOK_URL_RE,
    INSTAGRAM_URL_RE,
    TWITTER_ANY_RE,
    TWITTER_STATUS_RE,
    YOUTUBE_EMBED_URL,
    instagram_permalink,
    truth_embed_url,
    youtube_video_id,
)

# marker 容器：允许内部再嵌套一层 <div>（编辑器预览节点）
MARKER_RE = re.compile(
    r"<div\b(?P<attrs>[^>]*\bdata-embed\s*=\s*[\"']true[\"'][^>]*)>"
    r"(?P<body>(?:[^<]|<(?!/?div\b)|<div\b[^>]*>(?:[^<]|<(?!/?div\b))*</div>)*)"
    r"</div>",
    re.IGNORECASE,
)

_ATTR_RE = re.compile(r"""([\w:-]+)\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s"'>]+))""")
_IFRAME_SRC_RE = re.compile(r"""<iframe\b[^>]*\bsrc\s*=\s*["']([^"']+)["']""", re.IGNORECASE)

_TWITTER_HOST_RE = re.compile(r"(?:^|[/.@\s])(?:twitter|x)\.com\b", re.IGNORECASE)


def parse_attrs(attrs_str: str) -> Dict[str, str]:
    """解析开始标签里的属性（顺序无关，值做实体解码）。"""
    attrs: Dict[str, str] = {}
    for m in _ATTR_RE.finditer(attrs_str or ""):
        name = m.group(1).lower()
        value = next((g for g in m.groups()[1:] if g is not None), "")
        attrs.setdefault(name, htmllib.unescape(value))
    return attrs


def normalize_kind(kind: str) -> str:
    k = (kind or "").strip().lower()
    return KIND_ALIASES.get(k, k)


def parse_marker(attrs_str: str) -> Optional[EmbedMarker]:
    attrs = parse_attrs(attrs_str)
    if attrs.get("data-embed", "").lower() != "true":
        return None
    src = (attrs.get("data-embed-src") or "").strip()
    if not src:
        return None
    return EmbedMarker(kind=normalize_kind(attrs.get("data-embed-type", "")), source_url=src)


def iter_markers(html: str) -> Iterator[Tuple[re.Match, Optional[EmbedMarker]]]:
    for m in MARKER_RE.finditer(html or ""):
        yield m, parse_marker(m.group("attrs"))


# ---------------------------------------------------------------------------
# 插入路径：识别粘贴内容
# ---------------------------------------------------------------------------
def detect_embed_type(raw: str) -> str:
    text = raw or ""
    low = text.lower()
    if _TWITTER_HOST_RE.search(text):
        return "twitter"
    if "facebook.com" in low:
        return "facebook"
    if "instagram.com" in low:
        return "instagram"
    if "youtube.com" in low or "youtu.be" in low:
        return "youtube"
    return "generic"


def extract_twitter_url(raw: str) -> str:
    m = TWITTER_STATUS_RE.search(raw)
    if m:
        return m.group(0)
    # hashtag 等非推文链接原样保留（去掉 query），由渲染端给出可见警告
    m = TWITTER_ANY_RE.search(raw)
    if m:
        return m.group(0).split("?")[0]
    return raw


def extract_facebook_url(raw: str) -> str:
    plugin = FACEBOOK_PLUGIN_RE.search(raw)
    if plugin:
        return unquote(htmllib.unescape(plugin.group(1)))
    m = FACEBOOK_URL_RE.search(raw)
    return htmllib.unescape(m.group(0)) if m else raw


def extract_youtube_url(raw: str) -> str:
    video_id = youtube_video_id(raw)
    if video_id:
        return YOUTUBE_EMBED_URL.format(video_id=video_id)
    return raw


def extract_instagram_url(raw: str) -> str:
    if INSTAGRAM_URL_RE.search(raw):
        return instagram_permalink(raw) or raw
    return raw


def extract_generic_url(raw: str) -> str:
    m = _IFRAME_SRC_RE.search(raw)
    src = htmllib.unescape(m.group(1)) if m else raw
    # Truth Social 没有 widget 脚本，直接指向其 /embed 页面
    return truth_embed_url(src) or src


_EXTRACTORS = {
    "twitter": extract_twitter_url,
    "facebook": extract_facebook_url,
    "youtube": extract_youtube_url,
    "instagram": extract_instagram_url,
    "generic": extract_generic_url,
}


def build_embed_marker(raw: str, kind: Optional[str] = None) -> EmbedMarker:
    """
    把编辑粘贴的 URL 或 embed 代码整理为 EmbedMarker。

    kind 未指定时按内容自动识别；未知类型按 generic 处理。
    """
    text = (raw or "").strip()
    k = normalize_kind(kind) if kind else detect_embed_type(text)
    if k not in EMBED_KINDS:
        k = "generic"
    return EmbedMarker(kind=k, source_url=_EXTRACTORS[k](text).strip())

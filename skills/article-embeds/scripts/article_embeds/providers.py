"""第三方 Embed provider 常量与规范形态（CanonicalEmbed）构造器。

规范化阶段（canonicalize）与页面 DOM 修复阶段（dom_repair）都只通过本模块
生成 embed 标记，保证每个 provider 只有一种结构形态。各常量（URL 形态、
iframe 尺寸、endpoint 模板、脚本地址）必须与 provider 客户端脚本的预期一致，
否则 widget 脚本无法识别或渲染。
"""

from __future__ import annotations

import html as htmllib
import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from urllib.parse import quote, urlparse

from .output import direction_for_locale


# ═══════════════════════════════════════════════════════════════════════════
# URL 形态
# ═══════════════════════════════════════════════════════════════════════════
TWITTER_STATUS_RE = re.compile(
    r"https?://(?:www\.|mobile\.)?(?:twitter|x)\.com/([A-Za-z0-9_]{1,15})/status(?:es)?/(\d+)",
    re.IGNORECASE,
)
TWITTER_ANY_RE = re.compile(r"https?://(?:www\.|mobile\.)?(?:twitter|x)\.com/[^\s\"'<>]+", re.IGNORECASE)

YOUTUBE_ID_RE = re.compile(
    r"(?:youtube(?:-nocookie)?\.com/(?:watch\?(?:[^#\s\"'<>]*?&(?:amp;)?)?v=|embed/|shorts/|live/)|youtu\.be/)"
    r"([A-Za-z0-9_-]{6,})",
    re.IGNORECASE,
)

FACEBOOK_URL_RE = re.compile(r"https?://(?:www\.|m\.|web\.)?facebook\.com/[^\s\"'<>]+", re.IGNORECASE)
FACEBOOK_PLUGIN_RE = re.compile(
    r"https?://(?:www\.)?facebook\.com/plugins/(?:post|video)\.php\?(?:[^\s\"'<>]*?&(?:amp;)?)?href=([^&\s\"'<>]+)",
    re.IGNORECASE,
)
_FACEBOOK_VIDEO_PATH_RE = re.compile(r"/videos?/|/watch/?\?|/reel/", re.IGNORECASE)

INSTAGRAM_URL_RE = re.compile(
    r"https?://(?:www\.)?instagram\.com/(?:[A-Za-z0-9_.]+/)?(?:p|reel|tv)/[A-Za-z0-9_-]+/?",
    re.IGNORECASE,
)

TRUTH_URL_RE = re.compile(
    r"https?://(?:www\.)?truthsocial\.com/@([A-Za-z0-9_]+)/(?:posts/)?(\d+)",
    re.IGNORECASE,
)

# widget loader 脚本地址（任一 provider）
LOADER_SCRIPT_RE = re.compile(
    r"(?:https?:)?//(?:platform\.twitter\.com/widgets\.js"
    r"|www\.instagram\.com/embed\.js"
    r"|connect\.facebook\.net/[A-Za-z_]+/sdk\.js"
    r"|truthsocial\.com/embed\.js)",
    re.IGNORECASE,
)


# ═══════════════════════════════════════════════════════════════════════════
# 固定尺寸与 endpoint 模板
# ═══════════════════════════════════════════════════════════════════════════
YOUTUBE_EMBED_URL = "https://www.youtube.com/embed/{video_id}"
YOUTUBE_SIZE = (560, 315)

FACEBOOK_PLUGIN_URL = "https://www.facebook.com/plugins/{endpoint}?href={href}&show_text=true&width={width}"
FACEBOOK_POST_SIZE = (500, 680)
FACEBOOK_VIDEO_SIZE = (560, 314)

INSTAGRAM_EMBED_VERSION = "14"

TRUTH_EMBED_URL = "https://truthsocial.com/@{user}/{post_id}/embed"
TRUTH_WIDTH = 600

GENERIC_IFRAME_HEIGHT = 400


@dataclass(frozen=True)
class WidgetProvider:
    """需要 JS hydration 的 provider"""

    name: str
    label: str  # 兜底链接中显示的名称
    script_url: str
    render_api: str  # 全局渲染入口（点分路径）
    embed_selector: str
    rendered_classes: Tuple[str, ...]
    url_attrs: Tuple[str, ...] = ()  # 可直接读取原始 URL 的属性
    link_pattern: Optional["re.Pattern[str]"] = None  # 从内部 <a href> 识别原始 URL


WIDGET_PROVIDERS: Dict[str, WidgetProvider] = {
    "twitter": WidgetProvider(
        name="twitter",
        label="Twitter",
        script_url="https://platform.twitter.com/widgets.js",
        render_api="twttr.widgets.load",
        embed_selector="blockquote.twitter-tweet",
        rendered_classes=("twitter-tweet-rendered",),
        link_pattern=TWITTER_STATUS_RE,
    ),
    "instagram": WidgetProvider(
        name="instagram",
        label="Instagram",
        script_url="https://www.instagram.com/embed.js",
        render_api="instgrm.Embeds.process",
        embed_selector="blockquote.instagram-media",
        rendered_classes=("instagram-media-rendered",),
        url_attrs=("data-instgrm-permalink",),
        link_pattern=INSTAGRAM_URL_RE,
    ),
    "facebook": WidgetProvider(
        name="facebook",
        label="Facebook",
        script_url="https://connect.facebook.net/en_US/sdk.js#xfbml=1&version=v19.0",
        render_api="FB.XFBML.parse",
        embed_selector="div.fb-post, div.fb-video",
        rendered_classes=("fb_iframe_widget",),
        url_attrs=("data-href",),
        link_pattern=FACEBOOK_URL_RE,
    ),
}

# 需要内部 <p> 的 provider（结构补全阶段使用）
PARAGRAPH_PROVIDERS = ("twitter", "instagram")


def is_safe_embed_url(url: str) -> bool:
    """仅允许 http/https 且带 host 的 URL 进入 src/href。"""
    try:
        p = urlparse((url or "").strip())
    except ValueError:
        return False
    return p.scheme in ("http", "https") and bool(p.netloc)


def _attr(value: str) -> str:
    return htmllib.escape(value, quote=True)


# ═══════════════════════════════════════════════════════════════════════════
# URL 解析
# ═══════════════════════════════════════════════════════════════════════════
def twitter_status_url(url: str) -> Optional[str]:
    """返回去掉 query/fragment 的推文 URL；不是 status 形态时返回 None。"""
    url = (url or "").strip()
    m = TWITTER_STATUS_RE.match(url)
    if not m:
        return None
    rest = url[m.end():]
    if rest and rest[0] not in "/?#":
        return None
    return m.group(0)


def youtube_video_id(url: str) -> Optional[str]:
    m = YOUTUBE_ID_RE.search(url or "")
    return m.group(1) if m else None


def instagram_permalink(url: str) -> Optional[str]:
    m = INSTAGRAM_URL_RE.search(url or "")
    if not m:
        return None
    link = m.group(0)
    return link if link.endswith("/") else link + "/"


def truth_embed_url(url: str) -> Optional[str]:
    m = TRUTH_URL_RE.search(url or "")
    if not m:
        return None
    return TRUTH_EMBED_URL.format(user=m.group(1), post_id=m.group(2))


# ═══════════════════════════════════════════════════════════════════════════
# CanonicalEmbed 构造器
# ═══════════════════════════════════════════════════════════════════════════
def twitter_blockquote(status_url: str, lang: str = "en") -> str:
    lang = (lang or "en").strip() or "en"
    direction = direction_for_locale(lang)
    u = _attr(status_url)
    return (
        f'<blockquote class="twitter-tweet" data-lang="{_attr(lang)}">'
        f'<p lang="{_attr(lang)}" dir="{direction}"><a href="{u}">{u}</a></p>'
        "</blockquote>"
    )


def youtube_iframe(video_id: str) -> str:
    width, height = YOUTUBE_SIZE
    src = YOUTUBE_EMBED_URL.format(video_id=video_id)
    return (
        f'<iframe width="{width}" height="{height}" src="{_attr(src)}" '
        'frameborder="0" allowfullscreen></iframe>'
    )


def facebook_iframe(url: str) -> str:
    if _FACEBOOK_VIDEO_PATH_RE.search(url):
        endpoint = "video.php"
        width, height = FACEBOOK_VIDEO_SIZE
    else:
        endpoint = "post.php"
        width, height = FACEBOOK_POST_SIZE
    src = FACEBOOK_PLUGIN_URL.format(endpoint=endpoint, href=quote(url, safe=""), width=width)
    return (
        f'<iframe src="{_attr(src)}" width="{width}" height="{height}" '
        'style="border:none;overflow:hidden" scrolling="no" frameborder="0" allowfullscreen="true" '
        'allow="autoplay; clipboard-write; encrypted-media; picture-in-picture; web-share"></iframe>'
    )


def instagram_blockquote(permalink: str) -> str:
    u = _attr(permalink)
    return (
        f'<blockquote class="instagram-media" data-instgrm-permalink="{u}" '
        f'data-instgrm-version="{INSTAGRAM_EMBED_VERSION}">'
        f'<p><a href="{u}" target="_blank" rel="noopener noreferrer">{u}</a></p>'
        "</blockquote>"
    )


def truth_iframe(embed_url: str) -> str:
    return (
        f'<iframe src="{_attr(embed_url)}" class="truthsocial-embed" '
        f'style="max-width: 100%; border: 0" width="{TRUTH_WIDTH}" '
        'allowfullscreen="allowfullscreen"></iframe>'
    )


def generic_iframe(url: str) -> str:
    return (
        f'<iframe src="{_attr(url)}" width="100%" height="{GENERIC_IFRAME_HEIGHT}" '
        'frameborder="0" allowfullscreen></iframe>'
    )


def warning_block(kind: str, url: str, reason: str) -> str:
    """可见的警告片段：让编辑看到失败原因，而不是静默丢弃内容。"""
    if is_safe_embed_url(url):
        u = _attr(url)
        target = f'<a href="{u}" target="_blank" rel="noopener noreferrer">{u}</a>'
    else:
        target = f"<code>{htmllib.escape(url or '', quote=False)}</code>"
    return (
        f'<div class="embed-warning" data-embed-warning="{_attr(kind)}" role="note">'
        f"<strong>Embed could not be displayed.</strong> {htmllib.escape(reason, quote=False)} {target}"
        "</div>"
    )

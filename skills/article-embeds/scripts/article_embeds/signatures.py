"""Embed 损坏特征表。

每条 :class:`RepairRule` 是一对 ``{特征正则, 修复函数}``，按固定顺序分组为
若干阶段（见 :data:`REPAIR_STAGES`）。新增一种编辑器/provider 产生的损坏形态
只需要在表中加一条规则。

规则只在自身匹配范围内做实体解码，绝不对整篇正文调用 ``html.unescape``，
否则会破坏正文中无关的转义文本（例如代码示例里的 ``&lt;div&gt;``）。

同一张表同时被 :func:`canonicalize.canonicalize`（字符串阶段）与
:class:`dom_repair.EmbedRepairer`（页面 DOM 阶段）使用。
"""

from __future__ import annotations

import html as htmllib
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .markers import parse_attrs
from .providers import (
    FACEBOOK_PLUGIN_RE,
    FACEBOOK_URL_RE,
    INSTAGRAM_URL_RE,
    LOADER_SCRIPT_RE,
    TRUTH_URL_RE,
    TWITTER_STATUS_RE,
    facebook_iframe,
    instagram_blockquote,
    instagram_permalink,
    truth_embed_url,
    truth_iframe,
    twitter_blockquote,
    youtube_iframe,
    youtube_video_id,
)
from .output import direction_for_locale

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepairRule:
    name: str
    description: str
    pattern: "re.Pattern[str]"
    repair: Callable[["re.Match[str]"], str]

    def apply(self, html: str) -> str:
        try:
            return self.pattern.sub(self.repair, html)
        except Exception as e:  # 规则失败时原样放行，规范化必须是全函数
            logger.warning("repair rule %s failed: %s", self.name, e)
            return html

    def matches(self, html: str) -> bool:
        """存在至少一处匹配且修复后内容会变化。"""
        for m in self.pattern.finditer(html or ""):
            try:
                if self.repair(m) != m.group(0):
                    return True
            except Exception:
                logger.debug("repair rule %s raised during match test", self.name, exc_info=True)
        return False


# ═══════════════════════════════════════════════════════════════════════════
# 转义形态的构件
# ═══════════════════════════════════════════════════════════════════════════
# 一次/两次实体转义、数字实体、JSON 的 \u003c 形式
LT = r"(?:&(?:amp;)?lt;|&#0*60;|&#x0*3c;|\\u003c)"
GT = r"(?:&(?:amp;)?gt;|&#0*62;|&#x0*3e;|\\u003e)"
SLASH = r"\\?/"

# 转义标签内部（不跨越转义的 >）
_ESC_TAG_BODY = rf"(?:(?!{GT})[^<>])"
# 自动链接产生的装饰标签
_DECORATION_TAG = r"<(?:/?(?:span|a|strong|em|b|i|u|font|br|wbr)\b[^>]*)>"
# 允许夹杂装饰标签的文本
_NOISY = rf"(?:[^<]|{_DECORATION_TAG})"
_NOISY_TAG_BODY = rf"(?:(?!{GT})[^<>]|{_DECORATION_TAG})"

_DECORATION_NAME_RE = re.compile(r"<(/?)(span|a|strong|em|b|i|u|font)\b[^>]*>", re.IGNORECASE)

_UNICODE_ESCAPES = (
    ("\\u003c", "<"),
    ("\\u003C", "<"),
    ("\\u003e", ">"),
    ("\\u003E", ">"),
    ("\\u0022", '"'),
    ('\\"', '"'),
    ("\\/", "/"),
)


def decode_block(text: str, max_depth: int = 3) -> str:
    """只对匹配到的片段做实体解码（最多解 max_depth 层）。"""
    out = text
    for old, new in _UNICODE_ESCAPES:
        out = out.replace(old, new)
    for _ in range(max_depth):
        decoded = htmllib.unescape(out)
        if decoded == out:
            break
        out = decoded
    return out


def _first(pattern: "re.Pattern[str]", text: str) -> Optional["re.Match[str]"]:
    return pattern.search(text)


_LANG_RE = re.compile(r"""\b(?:data-)?lang\s*=\s*["']([A-Za-z]{2,3}(?:[-_][A-Za-z0-9]+)?)["']""", re.IGNORECASE)


def _tweet_lang(decoded: str) -> str:
    m = _LANG_RE.search(decoded)
    return m.group(1) if m else "en"


def _rebalance(fragment: str) -> Tuple[str, str]:
    """
    计算被整体替换掉的片段里未配对的装饰标签。

    返回 (closers, openers)：替换结果后面依次补上 closers / openers，
    使外层的 <span>/<a> 等结构与替换前保持一致。
    """
    stack: List[str] = []
    closers: List[str] = []
    for m in _DECORATION_NAME_RE.finditer(fragment):
        name = m.group(2).lower()
        if m.group(1):
            if name in stack:
                # 弹出最近一个同名开标签
                idx = len(stack) - 1 - stack[::-1].index(name)
                del stack[idx]
            else:
                closers.append(f"</{name}>")
        else:
            stack.append(name)
    openers = "".join(f"<{name}>" for name in stack)
    return "".join(closers), openers


# ═══════════════════════════════════════════════════════════════════════════
# 各 provider 的修复函数（输入为匹配到的片段，输出 CanonicalEmbed 或原样）
# ═══════════════════════════════════════════════════════════════════════════
def _twitter_from_block(block: str) -> Optional[str]:
    decoded = decode_block(block)
    m = _first(TWITTER_STATUS_RE, decoded)
    if not m:
        return None
    return twitter_blockquote(m.group(0), _tweet_lang(decoded))


def _instagram_from_block(block: str) -> Optional[str]:
    decoded = decode_block(block)
    attrs = parse_attrs(decoded[:2000])
    link = instagram_permalink(attrs.get("data-instgrm-permalink", "")) or instagram_permalink(decoded)
    return instagram_blockquote(link) if link else None


def _facebook_from_block(block: str) -> Optional[str]:
    from urllib.parse import unquote

    decoded = decode_block(block)
    plugin = FACEBOOK_PLUGIN_RE.search(decoded)
    if plugin:
        return facebook_iframe(unquote(plugin.group(1)))
    attrs = parse_attrs(decoded[:2000])
    href = attrs.get("data-href") or ""
    if FACEBOOK_URL_RE.match(href):
        return facebook_iframe(href)
    m = _first(FACEBOOK_URL_RE, decoded)
    return facebook_iframe(m.group(0)) if m else None


def _youtube_from_block(block: str) -> Optional[str]:
    video_id = youtube_video_id(decode_block(block))
    return youtube_iframe(video_id) if video_id else None


def _truth_from_block(block: str) -> Optional[str]:
    embed_url = truth_embed_url(decode_block(block))
    return truth_iframe(embed_url) if embed_url else None


def _escaped_repair(build: Callable[[str], Optional[str]]) -> Callable[["re.Match[str]"], str]:
    def repair(m: "re.Match[str]") -> str:
        out = build(m.group(0))
        return out if out is not None else m.group(0)

    return repair


def _decorated_repair(build: Callable[[str], Optional[str]]) -> Callable[["re.Match[str]"], str]:
    def repair(m: "re.Match[str]") -> str:
        block = m.group(0)
        out = build(block)
        if out is None:
            return block
        closers, openers = _rebalance(block)
        return out + closers + openers

    return repair


def _drop(m: "re.Match[str]") -> str:
    return ""


def _drop_if_loader(m: "re.Match[str]") -> str:
    block = m.group(0)
    if LOADER_SCRIPT_RE.search(decode_block(block)):
        closers, openers = _rebalance(block)
        return closers + openers
    return block


# ═══════════════════════════════════════════════════════════════════════════
# 阶段 3：widget loader 脚本引用上的装饰污染
# ═══════════════════════════════════════════════════════════════════════════
_LOADER_HREF = r"(?:https?:)?//(?:platform\.twitter\.com/widgets\.js|www\.instagram\.com/embed\.js|connect\.facebook\.net/[A-Za-z_]+/sdk\.js|truthsocial\.com/embed\.js)[^\"'<>\s]*"

DECORATION_RULES: List[RepairRule] = [
    RepairRule(
        name="escaped-loader-script",
        description="转义（含 \\u003c 形式）的 widget loader <script>，src 可能被自动链接装饰包裹",
        pattern=re.compile(
            rf"{LT}script\b{_NOISY}{{0,1200}}?{LT}{SLASH}script\s*{GT}",
            re.IGNORECASE,
        ),
        repair=_drop_if_loader,
    ),
    RepairRule(
        name="span-wrapped-loader-link",
        description="<span style=…><a href=loader>loader</a></span> 形式的装饰",
        pattern=re.compile(
            rf"<span\b[^>]*>\s*<a\b[^>]*\bhref\s*=\s*[\"']{_LOADER_HREF}[\"'][^>]*>"
            rf"(?:<span\b[^>]*>)?[^<]*(?:</span>)?</a>\s*</span>",
            re.IGNORECASE,
        ),
        repair=_drop,
    ),
    RepairRule(
        name="loader-link",
        description="<a href=loader><span>loader</span></a> 形式的装饰",
        pattern=re.compile(
            rf"<a\b[^>]*\bhref\s*=\s*[\"']{_LOADER_HREF}[\"'][^>]*>"
            rf"(?:<span\b[^>]*>)?[^<]*(?:</span>)?</a>",
            re.IGNORECASE,
        ),
        repair=_drop,
    ),
]


# ═══════════════════════════════════════════════════════════════════════════
# 阶段 4：被 <pre>/<code> 包裹的 embed 代码
# ═══════════════════════════════════════════════════════════════════════════
_EMBED_OPEN_RE = re.compile(rf"^(?:<|{LT})(?:blockquote|iframe|div)\b", re.IGNORECASE)
_EMBED_CLOSE_RE = re.compile(rf"(?:</|{LT}{SLASH})(?:blockquote|iframe|div)\s*(?:>|{GT})$", re.IGNORECASE)
_EMBED_PROVIDER_RE = re.compile(
    r"twitter-tweet|instagram-media|fb-post|fb-video|facebook\.com/plugins/|youtube(?:-nocookie)?\.com/embed/|truthsocial\.com/",
    re.IGNORECASE,
)


def _rebuilds_embed(inner: str) -> bool:
    """转义代码能被阶段 5/6 重建为 embed 时才算 embed 代码。"""
    return any(rule.matches(inner) for rule in ESCAPED_EMBED_RULES + DECORATED_EMBED_RULES)


def _unwrap_if_embed(m: "re.Match[str]") -> str:
    inner = m.group("inner").strip()
    if not (_EMBED_OPEN_RE.match(inner) and _EMBED_CLOSE_RE.search(inner) and _EMBED_PROVIDER_RE.search(inner)):
        return m.group(0)
    # 文章里展示 embed 写法的代码示例保持原样
    if inner.startswith("<") or _rebuilds_embed(inner):
        return inner
    return m.group(0)


PRE_UNWRAP_RULES: List[RepairRule] = [
    RepairRule(
        name="pre-wrapped-embed",
        description="整块 <pre>（可含 <code>）内只有一段 embed 代码",
        pattern=re.compile(
            r"<pre\b[^>]*>\s*(?:<code\b[^>]*>)?(?P<inner>(?:(?!</?pre\b)[\s\S])*?)(?:</code>)?\s*</pre>",
            re.IGNORECASE,
        ),
        repair=_unwrap_if_embed,
    ),
    RepairRule(
        name="code-wrapped-embed",
        description="整块 <code> 内只有一段 embed 代码",
        pattern=re.compile(r"<code\b[^>]*>(?P<inner>(?:(?!</?code\b)[\s\S])*?)</code>", re.IGNORECASE),
        repair=_unwrap_if_embed,
    ),
]


# ═══════════════════════════════════════════════════════════════════════════
# 阶段 5：纯转义的 embed 块（块内没有真实标签）
# ═══════════════════════════════════════════════════════════════════════════
def _escaped_block(open_tag: str, signature: str, close_tag: str, body_limit: int) -> "re.Pattern[str]":
    return re.compile(
        rf"{LT}{open_tag}\b{_ESC_TAG_BODY}{{0,2000}}?(?:{signature}){_ESC_TAG_BODY}*{GT}"
        rf"[^<]{{0,{body_limit}}}?{LT}{SLASH}{close_tag}\s*{GT}",
        re.IGNORECASE,
    )


ESCAPED_EMBED_RULES: List[RepairRule] = [
    RepairRule(
        name="escaped-twitter-blockquote",
        description='转义的 <blockquote class="twitter-tweet">',
        pattern=_escaped_block("blockquote", r"twitter-tweet", "blockquote", 8000),
        repair=_escaped_repair(_twitter_from_block),
    ),
    RepairRule(
        name="escaped-instagram-blockquote",
        description='转义的 <blockquote class="instagram-media">',
        pattern=_escaped_block("blockquote", r"instagram-media", "blockquote", 20000),
        repair=_escaped_repair(_instagram_from_block),
    ),
    RepairRule(
        name="escaped-facebook-plugin",
        description="转义的 Facebook 插件 iframe",
        pattern=_escaped_block("iframe", r"facebook\.com/plugins/", "iframe", 2000),
        repair=_escaped_repair(_facebook_from_block),
    ),
    RepairRule(
        name="escaped-facebook-xfbml",
        description='转义的 <div class="fb-post"> / fb-video',
        pattern=_escaped_block("div", r"fb-(?:post|video)\b", "div", 8000),
        repair=_escaped_repair(_facebook_from_block),
    ),
    RepairRule(
        name="escaped-youtube-iframe",
        description="转义的 YouTube iframe",
        pattern=_escaped_block("iframe", r"youtube(?:-nocookie)?\.com/embed/", "iframe", 2000),
        repair=_escaped_repair(_youtube_from_block),
    ),
    RepairRule(
        name="escaped-truthsocial-iframe",
        description="转义的 Truth Social iframe",
        pattern=_escaped_block("iframe", r"truthsocial\.com/", "iframe", 2000),
        repair=_escaped_repair(_truth_from_block),
    ),
]


# ═══════════════════════════════════════════════════════════════════════════
# 阶段 6：夹杂装饰标签的转义 embed 块
# ═══════════════════════════════════════════════════════════════════════════
def _decorated_block(open_tag: str, signature: str, close_tag: str, body_limit: int) -> "re.Pattern[str]":
    return re.compile(
        rf"{LT}{open_tag}\b{_NOISY_TAG_BODY}{{0,2000}}?(?:{signature}){_NOISY_TAG_BODY}{{0,2000}}?{GT}"
        rf"{_NOISY}{{0,{body_limit}}}?{LT}{SLASH}{close_tag}\s*{GT}",
        re.IGNORECASE,
    )


DECORATED_EMBED_RULES: List[RepairRule] = [
    RepairRule(
        name="decorated-twitter-blockquote",
        description="夹杂 <span style=font-size>/<a> 装饰的转义推文块",
        pattern=_decorated_block("blockquote", r"twitter-tweet", "blockquote", 12000),
        repair=_decorated_repair(_twitter_from_block),
    ),
    RepairRule(
        name="decorated-facebook-plugin",
        description="夹杂装饰的转义 Facebook 插件 iframe",
        pattern=_decorated_block("iframe", r"facebook\.com/plugins/", "iframe", 4000),
        repair=_decorated_repair(_facebook_from_block),
    ),
    RepairRule(
        name="decorated-facebook-xfbml",
        description="夹杂装饰的转义 fb-post / fb-video",
        pattern=_decorated_block("div", r"fb-(?:post|video)\b", "div", 12000),
        repair=_decorated_repair(_facebook_from_block),
    ),
    RepairRule(
        name="decorated-truthsocial-iframe",
        description="夹杂装饰的转义 Truth Social iframe",
        pattern=_decorated_block("iframe", r"truthsocial\.com/", "iframe", 4000),
        repair=_decorated_repair(_truth_from_block),
    ),
]


# ═══════════════════════════════════════════════════════════════════════════
# 阶段 7：结构补全（需要内部 <p> 的 provider）
# ═══════════════════════════════════════════════════════════════════════════
_ANCHOR_ONLY_RE = re.compile(r"^\s*(?:<a\b[^>]*>[\s\S]*?</a>\s*)+$", re.IGNORECASE)
_HAS_P_RE = re.compile(r"<p\b", re.IGNORECASE)
_HAS_A_RE = re.compile(r"<a\b", re.IGNORECASE)


def _complete_twitter(m: "re.Match[str]") -> str:
    body = m.group("body")
    if _HAS_P_RE.search(body):
        return m.group(0)
    attrs = parse_attrs(m.group("attrs"))
    lang = attrs.get("data-lang") or "en"
    if _ANCHOR_ONLY_RE.match(body):
        status = TWITTER_STATUS_RE.search(htmllib.unescape(body))
        if status:
            return twitter_blockquote(status.group(0), lang)
    return (
        f"<blockquote{m.group('attrs')}>"
        f'<p lang="{htmllib.escape(lang, quote=True)}" dir="{direction_for_locale(lang)}">{body}</p>'
        "</blockquote>"
    )


def _complete_instagram(m: "re.Match[str]") -> str:
    body = m.group("body")
    if _HAS_P_RE.search(body):
        return m.group(0)
    if not _HAS_A_RE.search(body):
        attrs = parse_attrs(m.group("attrs"))
        link = instagram_permalink(attrs.get("data-instgrm-permalink", ""))
        if link:
            u = htmllib.escape(link, quote=True)
            body = body + f'<p><a href="{u}" target="_blank" rel="noopener noreferrer">{u}</a></p>'
            return f"<blockquote{m.group('attrs')}>{body}</blockquote>"
        return m.group(0)
    return f"<blockquote{m.group('attrs')}><p>{body}</p></blockquote>"


def _clean_blockquote(css_class: str) -> "re.Pattern[str]":
    return re.compile(
        rf"<blockquote(?P<attrs>\s[^>]*\bclass\s*=\s*[\"'][^\"']*\b{css_class}\b[^\"']*[\"'][^>]*)>"
        r"(?P<body>(?:(?!</?blockquote\b)[\s\S])*)</blockquote>",
        re.IGNORECASE,
    )


STRUCTURE_RULES: List[RepairRule] = [
    RepairRule(
        name="twitter-missing-paragraph",
        description="推文 blockquote 缺少内部 <p>",
        pattern=_clean_blockquote("twitter-tweet"),
        repair=_complete_twitter,
    ),
    RepairRule(
        name="instagram-missing-paragraph",
        description="Instagram blockquote 缺少内部 <p>",
        pattern=_clean_blockquote("instagram-media"),
        repair=_complete_instagram,
    ),
]


REPAIR_STAGES: List[Tuple[str, List[RepairRule]]] = [
    ("decoration", DECORATION_RULES),
    ("pre-unwrap", PRE_UNWRAP_RULES),
    ("escaped-embed", ESCAPED_EMBED_RULES),
    ("decorated-embed", DECORATED_EMBED_RULES),
    ("structure", STRUCTURE_RULES),
]


def repair_fragment(html: str) -> str:
    """按阶段顺序应用整张特征表（规范化阶段 3 到 7）。"""
    out = html or ""
    for _stage, rules in REPAIR_STAGES:
        for rule in rules:
            out = rule.apply(out)
    return out


def find_signatures(html: str) -> List[str]:
    """返回在 html 中命中（且会产生修改）的规则名。"""
    return [rule.name for _stage, rules in REPAIR_STAGES for rule in rules if rule.matches(html)]

"""正文 HTML 的 embed 规范化（渲染前的纯字符串阶段）。

阶段顺序固定：

1. 展开编辑器 marker（data-embed="true"）
2. 去除内联 <script>（iframe 原样保留）
3. 修复 widget loader 脚本引用上的装饰污染
4. 解开被 <pre>/<code> 包裹的 embed
5. 局部解码纯转义的 embed
6. 修复夹杂装饰标签的转义 embed
7. 结构补全（推文/Instagram 的内部 <p>）

阶段 3 到 7 之后再执行一次阶段 2，特征表的删除不会留下可执行的 <script>。

``canonicalize`` 是纯函数、全函数且幂等：任何输入都返回字符串，
对输出再调用一次结果不变。
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional, Sequence

from .markers import MARKER_RE, parse_marker
from .models import BatchResult
from .output import wrap_article_body
from .providers import (
    FACEBOOK_PLUGIN_RE,
    FACEBOOK_URL_RE,
    facebook_iframe,
    generic_iframe,
    instagram_blockquote,
    instagram_permalink,
    is_safe_embed_url,
    truth_embed_url,
    truth_iframe,
    twitter_blockquote,
    twitter_status_url,
    warning_block,
    youtube_iframe,
    youtube_video_id,
)
from .signatures import find_signatures, repair_fragment

logger = logging.getLogger(__name__)

# 匹配完整的 <script>…</script>，允许 src 属性中夹带被自动链接插入的标签
SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script\s*>", re.IGNORECASE)
# 没有对应闭合标签的 <script> 开标签（完整元素已先被 SCRIPT_RE 删除）
SCRIPT_OPEN_RE = re.compile(r"<script\b[^>]*>", re.IGNORECASE)


# ═══════════════════════════════════════════════════════════════════════════
# 阶段 1：marker 展开
# ═══════════════════════════════════════════════════════════════════════════
def _expand_twitter(url: str) -> Optional[str]:
    status = twitter_status_url(url)
    if status is None:
        return warning_block(
            "twitter",
            url,
            "This link is not a tweet. Use a status URL such as https://twitter.com/<user>/status/<id>.",
        )
    return twitter_blockquote(status)


def _expand_youtube(url: str) -> Optional[str]:
    video_id = youtube_video_id(url)
    # 无法识别视频 ID 时保留 marker，等编辑修正
    return youtube_iframe(video_id) if video_id else None


def _expand_facebook(url: str) -> Optional[str]:
    from urllib.parse import unquote

    plugin = FACEBOOK_PLUGIN_RE.search(url)
    if plugin:
        url = unquote(plugin.group(1))
    if is_safe_embed_url(url) and FACEBOOK_URL_RE.match(url):
        return facebook_iframe(url)
    return warning_block("facebook", url, "This link is not a Facebook post or video URL.")


def _expand_instagram(url: str) -> Optional[str]:
    link = instagram_permalink(url)
    if link:
        return instagram_blockquote(link)
    return warning_block("instagram", url, "This link is not an Instagram post URL.")


def _expand_generic(url: str) -> Optional[str]:
    if not is_safe_embed_url(url):
        return warning_block("generic", url, "Only http and https links can be embedded.")
    embed_url = truth_embed_url(url)
    if embed_url:
        return truth_iframe(embed_url)
    return generic_iframe(url)


_EXPANDERS: dict = {
    "twitter": _expand_twitter,
    "youtube": _expand_youtube,
    "facebook": _expand_facebook,
    "instagram": _expand_instagram,
    "generic": _expand_generic,
}


def _expand_marker(m: "re.Match[str]") -> str:
    marker = parse_marker(m.group("attrs"))
    if marker is None:
        return m.group(0)
    expander: Optional[Callable[[str], Optional[str]]] = _EXPANDERS.get(marker.kind)
    if expander is None:
        logger.debug("unknown embed kind %r left unexpanded", marker.kind)
        return m.group(0)
    try:
        out = expander(marker.source_url)
    except Exception as e:
        logger.warning("expanding %s marker failed: %s", marker.kind, e)
        return m.group(0)
    return m.group(0) if out is None else out


def expand_markers(html: str) -> str:
    return MARKER_RE.sub(_expand_marker, html)


# ═══════════════════════════════════════════════════════════════════════════
# 阶段 2：脚本剥离
# ═══════════════════════════════════════════════════════════════════════════
def strip_scripts(html: str) -> str:
    """删除内联 <script> 元素；provider 脚本由页面端按需注入。

    删除一段脚本可能让两侧文本拼出新的 <script>，因此重复到结果不再变化。
    没有闭合标签的开标签（浏览器会把其后全部当作脚本）只删除开标签本身。
    """
    out = html
    while True:
        stripped = SCRIPT_OPEN_RE.sub("", SCRIPT_RE.sub("", out))
        if stripped == out:
            return out
        out = stripped


def _run_stage(stage: Callable[[str], str], html: str) -> str:
    try:
        return stage(html)
    except Exception as e:
        logger.warning("canonicalize stage %s failed: %s", stage.__name__, e)
        return html


def canonicalize(html: Optional[str]) -> str:
    """把存储的正文 HTML 规范化为唯一的 embed 形态。"""
    if not html:
        return ""
    out = _run_stage(expand_markers, html)
    out = _run_stage(strip_scripts, out)
    # 阶段 3 到 7：特征表
    out = repair_fragment(out)
    # 特征表删除转义片段后，两侧的原始标签可能重新拼成 <script>
    return _run_stage(strip_scripts, out)


def render_article_body(html: Optional[str], locale: Optional[str] = None, direction: Optional[str] = None) -> str:
    """规范化正文并包上带 dir/lang 的容器。"""
    return wrap_article_body(canonicalize(html), locale=locale, direction=direction)


# ═══════════════════════════════════════════════════════════════════════════
# 批量处理
# ═══════════════════════════════════════════════════════════════════════════
def read_paths_file(filepath: str) -> List[str]:
    """读取文件列表（每行一个路径，# 开头为注释）。"""
    paths: List[str] = []
    with open(filepath, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            paths.append(line)
    return paths


def canonicalize_file(path: str, order: int = 0) -> BatchResult:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
        signals = find_signatures(raw)
        return BatchResult(path=path, html=canonicalize(raw), success=True, order=order, signals=signals)
    except Exception as e:
        return BatchResult(path=path, html="", success=False, error=str(e), order=order)


def batch_canonicalize(
    paths: Sequence[str],
    max_workers: int = 4,
    progress_callback: Optional[Callable[[int, int, str], None]] = None,
) -> List[BatchResult]:
    """
    并发规范化多个正文文件

    Args:
        paths: 文件路径列表
        max_workers: 线程数（canonicalize 无共享状态）
        progress_callback: 进度回调函数 (current, total, path)

    Returns:
        按输入顺序排列的结果列表；单个文件失败不影响其他文件
    """
    results: List[BatchResult] = []
    total = len(paths)

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        futures = {executor.submit(canonicalize_file, path, idx): idx for idx, path in enumerate(paths)}

        for done, future in enumerate(as_completed(futures), 1):
            result = future.result()
            results.append(result)
            if progress_callback:
                progress_callback(done, total, result.path)

    # 按原始顺序排序
    results.sort(key=lambda r: r.order)
    return results

from __future__ import annotations

import sys
from typing import List
from urllib.parse import urlparse

from .canonicalize import SCRIPT_RE
from .markers import iter_markers
from .models import CorruptionReport
from .providers import LOADER_SCRIPT_RE, is_safe_embed_url
from .signatures import REPAIR_STAGES

__all__ = [
    "detect_embed_corruption",
    "is_safe_embed_url",
    "print_corruption_report",
    "redact_url",
    "strip_query",
]

# 这些阶段命中说明正文里确实存在会被显示为源码的 embed
_HIGH_CONFIDENCE_STAGES = ("decoration", "escaped-embed", "decorated-embed")


def strip_query(url: str) -> str:
    """去掉 query/fragment（推文 URL 上的 ?s=20&t=… 等跟踪参数）。"""
    try:
        p = urlparse(url)
    except ValueError:
        return url
    if p.scheme in ("http", "https") and p.netloc:
        return p._replace(query="", fragment="").geturl()
    return url


def redact_url(url: str) -> str:
    """
    URL 脱敏：默认仅保留 scheme://host/path，移除 query/fragment。

    - 仅对 http/https 且含 netloc 的 URL 生效
    - 其他形式（相对路径、空字符串等）原样返回
    """
    return strip_query(url)


def detect_embed_corruption(html: str) -> CorruptionReport:
    """
    检测正文中残留的 embed 损坏（不修改输入）。

    返回 CorruptionReport，包含是否损坏、置信度和检测到的信号。
    """
    html = html or ""
    signals: List[str] = []
    high = False

    # ------------------------------------------------------------------
    # 特征表命中
    # ------------------------------------------------------------------
    for stage, rules in REPAIR_STAGES:
        for rule in rules:
            if rule.matches(html):
                signals.append(f"{rule.description}（{rule.name}）")
                if stage in _HIGH_CONFIDENCE_STAGES:
                    high = True

    # ------------------------------------------------------------------
    # 未展开的 marker 与内联脚本
    # ------------------------------------------------------------------
    marker_count = 0
    invalid_count = 0
    for _m, marker in iter_markers(html):
        marker_count += 1
        if marker is None:
            invalid_count += 1
    if marker_count:
        signals.append(f"发现 {marker_count} 个未展开的编辑器 marker（其中 {invalid_count} 个缺少 data-embed-src）")

    scripts = SCRIPT_RE.findall(html)
    if scripts:
        loaders = [s for s in scripts if LOADER_SCRIPT_RE.search(s)]
        if loaders:
            signals.append(f"发现 {len(loaders)} 个内联 widget loader <script>（应由页面端按需注入）")
        others = len(scripts) - len(loaders)
        if others:
            signals.append(f"发现 {others} 个其他内联 <script>")

    # ------------------------------------------------------------------
    # 判定结果
    # ------------------------------------------------------------------
    if not signals:
        return CorruptionReport(is_corrupted=False, confidence="none", signals=[])

    if high or len(signals) >= 2:
        confidence = "high"
    else:
        confidence = "medium" if marker_count == 0 else "low"

    return CorruptionReport(is_corrupted=True, confidence=confidence, signals=signals)


def print_corruption_report(report: CorruptionReport, source: str) -> None:
    """打印 embed 损坏检测报告"""
    confidence_map = {"high": "高", "medium": "中", "low": "低", "none": "无"}

    print(file=sys.stderr)
    print("=" * 70, file=sys.stderr)
    if not report.is_corrupted:
        print(f"✓ 未发现 embed 损坏：{source}", file=sys.stderr)
        print("=" * 70, file=sys.stderr)
        return
    print(
        f"⚠️  检测到 embed 损坏（置信度：{confidence_map.get(report.confidence, report.confidence)}）：{source}",
        file=sys.stderr,
    )
    print("=" * 70, file=sys.stderr)
    print(file=sys.stderr)
    print("检测到的信号：", file=sys.stderr)
    for sig in report.signals:
        print(f"  • {sig}", file=sys.stderr)
    print(file=sys.stderr)
    print("建议操作：", file=sys.stderr)
    for suggestion in report.get_suggestions():
        print(f"  {suggestion}", file=sys.stderr)
    print("=" * 70, file=sys.stderr)
    print(file=sys.stderr)

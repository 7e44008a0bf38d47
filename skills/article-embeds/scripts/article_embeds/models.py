from __future__ import annotations

import html as htmllib
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


# 编辑器 Embed 节点支持的类型；"iframe" 是旧版弹窗写入的别名
EMBED_KINDS = ("twitter", "youtube", "facebook", "instagram", "generic")
KIND_ALIASES = {"iframe": "generic", "x": "twitter"}


@dataclass
class EmbedMarker:
    """编辑器写入的占位容器（data-embed="true"），在规范化阶段被展开。"""

    kind: str  # twitter / youtube / facebook / instagram / generic
    source_url: str

    def to_html(self) -> str:
        src = htmllib.escape(self.source_url, quote=True)
        kind = htmllib.escape(self.kind, quote=True)
        return f'<div data-embed="true" data-embed-src="{src}" data-embed-type="{kind}"></div>'


class WidgetLoadState(str, Enum):
    """单个 provider 的脚本加载状态（整页共享）。"""

    NOT_REQUESTED = "not-requested"
    SCRIPT_LOADING = "script-loading"
    SCRIPT_LOADED = "script-loaded"
    RENDER_ATTEMPTED = "render-attempted"
    RENDERED = "rendered"
    FALLBACK_INSTALLED = "fallback-installed"

    @property
    def is_terminal(self) -> bool:
        return self in (WidgetLoadState.RENDERED, WidgetLoadState.FALLBACK_INSTALLED)


@dataclass
class CorruptionReport:
    """Embed 损坏检测结果"""

    is_corrupted: bool
    confidence: str  # "none", "low", "medium", "high"
    signals: List[str]  # 检测到的信号

    def get_suggestions(self) -> List[str]:
        return [
            "1. 运行 fix_article_embeds.py 规范化正文并检查输出",
            "2. 如需为无 JS 环境生成兜底链接，添加 --static-fallback",
            "3. 在编辑器中用「Insert Embed」重新插入无法修复的内容",
        ]


@dataclass
class RepairStats:
    """一次 DOM 扫描/修复的计数"""

    inspected: int = 0
    repaired: int = 0
    skipped_oversize: int = 0
    loader_links_removed: int = 0
    fallbacks_installed: int = 0


@dataclass
class RepairConfig:
    """DOM 修复与 widget 加载的时间参数（秒）"""

    initial_delay: float = 0.1
    poll_interval: float = 0.1
    max_poll_attempts: int = 10
    script_timeout: float = 5.0
    render_settle_delay: float = 0.5
    fallback_timeout: float = 2.0
    max_scan_chars: int = 20000  # 超过该长度的块元素不做扫描，避免误伤大段正文
    reload_stale_script: bool = True
    fallback_excerpt_chars: int = 100


@dataclass
class BatchResult:
    """批量规范化中单个文件的结果"""

    path: str
    html: str
    success: bool
    error: Optional[str] = None
    order: int = 0  # 用于保持原始顺序
    signals: List[str] = field(default_factory=list)

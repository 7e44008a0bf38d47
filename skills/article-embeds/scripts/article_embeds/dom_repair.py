"""页面挂载后的 embed 修复（DOM 阶段）。

规范化之后仍可能出现残留损坏：未经规范化的旧路径、翻译后的正文、
在客户端插入的内容等。:class:`EmbedRepairer` 在一份 BeautifulSoup 文档上：

1. 扫描块级元素，用与规范化阶段相同的特征表修复残留损坏；
2. 去掉指向 widget loader 脚本的可见链接；
3. 为页面中出现的 provider 加载脚本并调用渲染入口；
4. 超时后对仍未渲染的 embed 追加兜底链接（原 embed 保留，每个 embed 仅一次）。

每个扫描过的元素带上 ``data-embed-processed="true"``，重复扫描不会再修改文档。
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Callable, List, Optional

from bs4 import BeautifulSoup, Tag

from .models import RepairConfig, RepairStats, WidgetLoadState
from .providers import LOADER_SCRIPT_RE, WIDGET_PROVIDERS, WidgetProvider, is_safe_embed_url
from .signatures import repair_fragment
from .widgets import StaticWidgetHost, WidgetHost, WidgetRegistry

logger = logging.getLogger(__name__)

PROCESSED_ATTR = "data-embed-processed"
FALLBACK_ATTR = "data-embed-fallback"
FALLBACK_CLASS = "embed-fallback"

# 会被扫描的块级/行内容器
SCAN_TAGS = ["p", "div", "span", "section", "article", "li", "pre", "code", "blockquote", "td", "figure"]

_WS_RE = re.compile(r"\s+")


class EmbedRepairer:
    def __init__(
        self,
        soup: BeautifulSoup,
        host: Optional[WidgetHost] = None,
        config: Optional[RepairConfig] = None,
        registry: Optional[WidgetRegistry] = None,
    ) -> None:
        self.soup = soup
        self.host = host or StaticWidgetHost()
        self.config = config or RepairConfig()
        self.registry = registry or WidgetRegistry(soup, self.host, self.config)
        self.stats = RepairStats()
        self._scanning = False

    @classmethod
    def from_html(cls, html: str, **kwargs: Any) -> "EmbedRepairer":
        return cls(BeautifulSoup(html or "", "html.parser"), **kwargs)

    def html(self) -> str:
        return str(self.soup)

    # ═══════════════════════════════════════════════════════════════════
    # 残留损坏扫描
    # ═══════════════════════════════════════════════════════════════════
    def _mark(self, el: Tag) -> None:
        el[PROCESSED_ATTR] = "true"

    def _mark_tree(self, el: Tag) -> None:
        self._mark(el)
        for child in el.find_all(SCAN_TAGS):
            self._mark(child)

    def _attached(self, el: Tag) -> bool:
        return any(parent is self.soup for parent in el.parents)

    def _replace_children(self, el: Tag, new_html: str) -> None:
        fragment = BeautifulSoup(new_html, "html.parser")
        el.clear()
        for child in list(fragment.contents):
            el.append(child.extract())

    def scan(self) -> int:
        """扫描一遍文档，返回被修复的元素数量；正在扫描时直接返回 0。"""
        if self._scanning:
            logger.debug("scan already in progress, skipped")
            return 0
        self._scanning = True
        repaired = 0
        try:
            for el in self.soup.find_all(SCAN_TAGS):
                # 祖先已被整体重建时，旧节点已脱离文档
                if not self._attached(el):
                    continue
                if el.get(PROCESSED_ATTR) == "true":
                    continue
                self.stats.inspected += 1
                try:
                    inner = el.decode_contents()
                    if len(inner) > self.config.max_scan_chars:
                        self.stats.skipped_oversize += 1
                        continue
                    fixed = repair_fragment(inner)
                    if fixed != inner:
                        self._replace_children(el, fixed)
                        self._mark_tree(el)
                        repaired += 1
                    else:
                        self._mark(el)
                except Exception as e:
                    logger.warning("repairing <%s> failed: %s", el.name, e)
        finally:
            self._scanning = False
        self.stats.repaired += repaired
        return repaired

    def strip_loader_links(self) -> int:
        """删除 href 指向 widget loader 脚本的可见链接（含外层装饰 <span>）。"""
        removed = 0
        for a in self.soup.find_all("a", href=LOADER_SCRIPT_RE):
            if not self._attached(a):
                continue
            target = a
            parent = a.parent
            if parent is not None and parent.name == "span" and parent.get_text(strip=True) == a.get_text(strip=True):
                target = parent
            target.decompose()
            removed += 1
        self.stats.loader_links_removed += removed
        return removed

    # ═══════════════════════════════════════════════════════════════════
    # provider 与兜底链接
    # ═══════════════════════════════════════════════════════════════════
    def providers_present(self) -> List[str]:
        return [name for name, p in WIDGET_PROVIDERS.items() if self.soup.select_one(p.embed_selector) is not None]

    @staticmethod
    def is_rendered(el: Tag, provider: WidgetProvider) -> bool:
        classes = el.get("class") or []
        if any(c in classes for c in provider.rendered_classes):
            return True
        return el.find("iframe") is not None

    @staticmethod
    def source_url(el: Tag, provider: WidgetProvider) -> Optional[str]:
        for attr in provider.url_attrs:
            value = (el.get(attr) or "").strip()
            if is_safe_embed_url(value):
                return value
        if provider.link_pattern is not None:
            for a in el.find_all("a", href=True):
                m = provider.link_pattern.search(a["href"])
                if m:
                    return m.group(0)
        return None

    def _fallback_block(self, el: Tag, provider: WidgetProvider, url: Optional[str]) -> Tag:
        block = self.soup.new_tag(
            "div",
            attrs={
                "class": f"{FALLBACK_CLASS} {FALLBACK_CLASS}--{provider.name}",
                PROCESSED_ATTR: "true",
                "role": "note",
            },
        )
        label = self.soup.new_tag("strong")
        label.string = provider.label
        block.append(label)

        excerpt = _WS_RE.sub(" ", el.get_text(" ", strip=True)).strip()
        limit = self.config.fallback_excerpt_chars
        if excerpt:
            if len(excerpt) > limit:
                excerpt = excerpt[:limit].rstrip() + "..."
            p = self.soup.new_tag("p", attrs={PROCESSED_ATTR: "true"})
            p.string = excerpt
            block.append(p)

        if url:
            a = self.soup.new_tag("a", attrs={"href": url, "target": "_blank", "rel": "noopener noreferrer"})
            a.string = f"View on {provider.label} →"
            block.append(a)
        return block

    def install_fallbacks(self, names: Optional[List[str]] = None) -> int:
        """为未渲染的 embed 追加兜底链接；已安装过的 embed 不会重复安装。"""
        installed = 0
        for name in names if names is not None else self.providers_present():
            provider = WIDGET_PROVIDERS.get(name)
            if provider is None:
                continue
            for el in self.soup.select(provider.embed_selector):
                if el.get(FALLBACK_ATTR) == "installed" or self.is_rendered(el, provider):
                    continue
                try:
                    el.insert_after(self._fallback_block(el, provider, self.source_url(el, provider)))
                    el[FALLBACK_ATTR] = "installed"
                    installed += 1
                except Exception as e:
                    logger.warning("%s: installing fallback failed: %s", name, e)
        self.stats.fallbacks_installed += installed
        return installed

    def _settle_states(self, names: List[str]) -> None:
        for name in names:
            loader = self.registry.loader_for(name)
            provider = WIDGET_PROVIDERS[name]
            if loader is None:
                continue
            embeds = self.soup.select(provider.embed_selector)
            if embeds and all(self.is_rendered(el, provider) for el in embeds):
                loader.transition(WidgetLoadState.RENDERED)
            elif any(el.get(FALLBACK_ATTR) == "installed" for el in embeds):
                loader.transition(WidgetLoadState.FALLBACK_INSTALLED)

    # ═══════════════════════════════════════════════════════════════════
    # 页面挂载
    # ═══════════════════════════════════════════════════════════════════
    def _safe(self, step: Callable[[], Any], what: str) -> Any:
        try:
            return step()
        except Exception as e:
            logger.warning("embed repair step %s failed: %s", what, e)
            return None

    async def _load_and_render(self, name: str) -> None:
        loader = self.registry.loader_for(name)
        if loader is not None:
            await loader.run()

    async def run(self) -> RepairStats:
        """页面挂载时的完整流程；任何失败都只记录日志。"""
        tasks: List["asyncio.Future[None]"] = []
        try:
            await asyncio.sleep(self.config.initial_delay)
            self._safe(self.scan, "scan")
            self._safe(self.strip_loader_links, "strip_loader_links")

            names = self._safe(self.providers_present, "providers_present") or []
            tasks = [asyncio.ensure_future(self._load_and_render(name)) for name in names]

            await asyncio.sleep(self.config.fallback_timeout)
            # 渲染期间可能插入了新的损坏内容
            self._safe(self.scan, "rescan")
            self._safe(lambda: self.install_fallbacks(names), "install_fallbacks")
            self._safe(lambda: self._settle_states(names), "settle_states")

            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            for t in tasks:
                t.cancel()
            raise
        except Exception as e:
            logger.warning("embed repair failed: %s", e)
        return self.stats

    def teardown(self) -> None:
        """页面导航离开时调用。"""
        self.registry.teardown()


def repair_html(html: str, host: Optional[WidgetHost] = None, config: Optional[RepairConfig] = None) -> str:
    """同步入口：对一段 HTML 执行完整的 DOM 修复并返回结果。"""
    repairer = EmbedRepairer.from_html(html, host=host, config=config)
    asyncio.run(repairer.run())
    return repairer.html()

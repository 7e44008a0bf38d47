"""Provider widget 脚本的按需加载。

页面运行时被抽象为 :class:`WidgetHost`：浏览器里它负责真正插入 <script> 并在
``onload`` 时返回，离线环境（CLI 的 ``--static-fallback``、测试）用
:class:`StaticWidgetHost` 或自定义假实现。

每个 provider 一个 :class:`ProviderLoader`，状态机::

    not-requested → script-loading → script-loaded → render-attempted
                                                      → rendered | fallback-installed

注册表 :class:`WidgetRegistry` 属于单个页面：按需创建 loader，导航离开时
``teardown()``。这里的所有失败都只记录日志，不向调用方抛出。
"""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

from .models import RepairConfig, WidgetLoadState
from .providers import WIDGET_PROVIDERS, WidgetProvider

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS = {
    WidgetLoadState.NOT_REQUESTED: {
        WidgetLoadState.SCRIPT_LOADING,
        WidgetLoadState.SCRIPT_LOADED,
        WidgetLoadState.FALLBACK_INSTALLED,
    },
    WidgetLoadState.SCRIPT_LOADING: {WidgetLoadState.SCRIPT_LOADED, WidgetLoadState.FALLBACK_INSTALLED},
    WidgetLoadState.SCRIPT_LOADED: {WidgetLoadState.RENDER_ATTEMPTED, WidgetLoadState.FALLBACK_INSTALLED},
    WidgetLoadState.RENDER_ATTEMPTED: {WidgetLoadState.RENDERED, WidgetLoadState.FALLBACK_INSTALLED},
    WidgetLoadState.RENDERED: set(),
    WidgetLoadState.FALLBACK_INSTALLED: set(),
}


class ScriptLoadError(RuntimeError):
    """widget 脚本加载失败（onerror）"""


class WidgetHost(abc.ABC):
    """页面运行时接口"""

    @abc.abstractmethod
    async def load_script(self, src: str) -> None:
        """插入并等待脚本 onload；失败时抛出 ScriptLoadError。"""

    def get_render_api(self, path: str) -> Optional[Callable[..., Any]]:
        """按点分路径（如 ``twttr.widgets.load``）返回全局渲染入口，不存在时返回 None。"""
        return None


class StaticWidgetHost(WidgetHost):
    """没有脚本运行时的环境：任何脚本都加载失败，所有 embed 走兜底链接。"""

    async def load_script(self, src: str) -> None:
        raise ScriptLoadError(f"no script runtime available for {src}")


class ProviderLoader:
    def __init__(self, provider: WidgetProvider, soup: Any, host: WidgetHost, config: RepairConfig) -> None:
        self.provider = provider
        self.soup = soup
        self.host = host
        self.config = config
        self.state = WidgetLoadState.NOT_REQUESTED
        self.render_calls = 0
        self.stale_script_replaced = False
        self._load_task: Optional["asyncio.Future[bool]"] = None

    def __repr__(self) -> str:
        return f"ProviderLoader({self.provider.name!r}, state={self.state.value!r})"

    def transition(self, new_state: WidgetLoadState) -> bool:
        if new_state == self.state:
            return True
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            logger.debug("%s: ignored transition %s -> %s", self.provider.name, self.state.value, new_state.value)
            return False
        logger.debug("%s: %s -> %s", self.provider.name, self.state.value, new_state.value)
        self.state = new_state
        return True

    def render_api(self) -> Optional[Callable[..., Any]]:
        try:
            return self.host.get_render_api(self.provider.render_api)
        except Exception as e:
            logger.warning("%s: looking up %s failed: %s", self.provider.name, self.provider.render_api, e)
            return None

    # ------------------------------------------------------------------
    # 脚本
    # ------------------------------------------------------------------
    def _is_provider_script(self, src: str) -> bool:
        ref = urlparse(self.provider.script_url)
        filename = ref.path.rsplit("/", 1)[-1]
        return ref.netloc in src and filename in src

    def find_script_tag(self) -> Any:
        return self.soup.find("script", src=lambda s: bool(s) and self._is_provider_script(s))

    def _inject_script_tag(self) -> Any:
        tag = self.soup.new_tag("script", src=self.provider.script_url, charset="utf-8")
        tag["async"] = ""
        parent = self.soup.head or self.soup.body or self.soup
        parent.append(tag)
        return tag

    async def ensure_loaded(self) -> bool:
        """脚本就绪（渲染 API 可用）时返回 True；多次调用共享同一次加载。"""
        if self._load_task is None:
            self._load_task = asyncio.ensure_future(self._load())
        return await self._load_task

    async def _load(self) -> bool:
        if self.render_api() is not None:
            self.transition(WidgetLoadState.SCRIPT_LOADED)
            return True

        existing = self.find_script_tag()
        if existing is not None:
            # 页面里已有脚本（其他 embed 或模板插入），轮询等待 API 出现
            self.transition(WidgetLoadState.SCRIPT_LOADING)
            for _ in range(self.config.max_poll_attempts):
                await asyncio.sleep(self.config.poll_interval)
                if self.render_api() is not None:
                    self.transition(WidgetLoadState.SCRIPT_LOADED)
                    return True
            if not self.config.reload_stale_script or self.stale_script_replaced:
                logger.warning("%s: render API never appeared after polling", self.provider.name)
                return False
            logger.info("%s: replacing stale loader script", self.provider.name)
            existing.decompose()
            self.stale_script_replaced = True

        return await self._inject()

    async def _inject(self) -> bool:
        tag = self._inject_script_tag()
        self.transition(WidgetLoadState.SCRIPT_LOADING)
        try:
            await asyncio.wait_for(self.host.load_script(self.provider.script_url), timeout=self.config.script_timeout)
        except asyncio.TimeoutError:
            logger.warning("%s: script did not load within %.1fs", self.provider.name, self.config.script_timeout)
            tag.decompose()
            return False
        except Exception as e:
            logger.warning("%s: script load failed: %s", self.provider.name, e)
            tag.decompose()
            return False

        self.transition(WidgetLoadState.SCRIPT_LOADED)
        # onload 之后 provider 还需要一点时间挂上全局对象
        await asyncio.sleep(self.config.render_settle_delay)
        if self.render_api() is None:
            logger.warning("%s: script loaded but %s is missing", self.provider.name, self.provider.render_api)
            return False
        return True

    # ------------------------------------------------------------------
    # 渲染
    # ------------------------------------------------------------------
    def render(self) -> bool:
        api = self.render_api()
        if api is None:
            return False
        if self.state == WidgetLoadState.SCRIPT_LOADED:
            self.transition(WidgetLoadState.RENDER_ATTEMPTED)
        self.render_calls += 1
        try:
            api()
        except Exception as e:
            logger.warning("%s: %s raised: %s", self.provider.name, self.provider.render_api, e)
            return False
        return True

    async def run(self) -> bool:
        try:
            if await self.ensure_loaded():
                return self.render()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("%s: widget loader failed: %s", self.provider.name, e)
        return False

    def cancel(self) -> None:
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()


class WidgetRegistry:
    """单个页面的 provider loader 集合（按需创建）"""

    def __init__(self, soup: Any, host: WidgetHost, config: Optional[RepairConfig] = None) -> None:
        self.soup = soup
        self.host = host
        self.config = config or RepairConfig()
        self._loaders: Dict[str, ProviderLoader] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._loaders

    def loader_for(self, name: str) -> Optional[ProviderLoader]:
        provider = WIDGET_PROVIDERS.get(name)
        if provider is None:
            return None
        loader = self._loaders.get(name)
        if loader is None:
            loader = ProviderLoader(provider, self.soup, self.host, self.config)
            self._loaders[name] = loader
        return loader

    def states(self) -> Dict[str, WidgetLoadState]:
        return {name: loader.state for name, loader in self._loaders.items()}

    def teardown(self) -> None:
        """页面导航离开：取消未完成的加载并清空状态。"""
        for loader in self._loaders.values():
            loader.cancel()
        self._loaders.clear()

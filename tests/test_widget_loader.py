import asyncio
import pathlib
import sys
import unittest

_SCRIPTS = pathlib.Path(__file__).resolve().parents[1] / "skills" / "article-embeds" / "scripts"
if str(_SCRIPTS) not in sys.path:
    sys.path.insert(0, str(_SCRIPTS))

from article_embeds.dom_repair import FALLBACK_ATTR, PROCESSED_ATTR, EmbedRepairer, repair_html  # noqa: E402
from article_embeds.models import RepairConfig, WidgetLoadState  # noqa: E402
from article_embeds.providers import WIDGET_PROVIDERS, instagram_blockquote, twitter_blockquote  # noqa: E402
from article_embeds.widgets import ScriptLoadError, StaticWidgetHost, WidgetHost, WidgetRegistry  # noqa: E402

TWEET = "https://twitter.com/jack/status/20"
TWITTER_JS = WIDGET_PROVIDERS["twitter"].script_url

FAST = RepairConfig(
    initial_delay=0,
    poll_interval=0.01,
    max_poll_attempts=2,
    script_timeout=0.05,
    render_settle_delay=0,
    fallback_timeout=0.1,
)


class _FakeHost(WidgetHost):
    """可控的页面运行时：记录脚本加载，按需暴露渲染入口。"""

    def __init__(self, *, never_loads=False, fail=False, expose_on_load=True, render_raises=False):
        self.never_loads = never_loads
        self.fail = fail
        self.expose_on_load = expose_on_load
        self.render_raises = render_raises
        self.loaded = []
        self.apis = {}
        self.soup = None

    def expose(self, name):
        provider = WIDGET_PROVIDERS[name]

        def render():
            if self.render_raises:
                raise RuntimeError("widget crashed")
            for el in self.soup.select(provider.embed_selector):
                el["class"] = list(el.get("class") or []) + [provider.rendered_classes[0]]

        self.apis[provider.render_api] = render

    async def load_script(self, src):
        self.loaded.append(src)
        if self.never_loads:
            await asyncio.Event().wait()
        if self.fail:
            raise ScriptLoadError(f"failed: {src}")
        if self.expose_on_load:
            for name, provider in WIDGET_PROVIDERS.items():
                if provider.script_url == src:
                    self.expose(name)

    def get_render_api(self, path):
        return self.apis.get(path)


def _repairer(html, host, config=FAST):
    repairer = EmbedRepairer.from_html(html, host=host, config=config)
    host.soup = repairer.soup
    return repairer


class TestWidgetLoading(unittest.IsolatedAsyncioTestCase):
    async def test_script_injected_and_rendered(self):
        host = _FakeHost()
        repairer = _repairer(twitter_blockquote(TWEET), host)
        stats = await repairer.run()

        self.assertEqual(host.loaded, [TWITTER_JS])
        self.assertEqual(stats.fallbacks_installed, 0)
        self.assertEqual(repairer.soup.select("div.embed-fallback"), [])
        self.assertIsNotNone(repairer.soup.find("script", src=TWITTER_JS))
        self.assertIn("twitter-tweet-rendered", repairer.soup.blockquote["class"])
        self.assertEqual(repairer.registry.states()["twitter"], WidgetLoadState.RENDERED)

    async def test_render_api_already_present(self):
        host = _FakeHost()
        repairer = _repairer(twitter_blockquote(TWEET), host)
        host.expose("twitter")
        await repairer.run()

        self.assertEqual(host.loaded, [])
        self.assertIsNone(repairer.soup.find("script"))
        self.assertEqual(repairer.registry.loader_for("twitter").render_calls, 1)
        self.assertEqual(repairer.registry.states()["twitter"], WidgetLoadState.RENDERED)

    async def test_fallback_installed_exactly_once_when_onload_never_fires(self):
        host = _FakeHost(never_loads=True)
        repairer = _repairer(twitter_blockquote(TWEET), host)
        stats = await repairer.run()

        self.assertEqual(stats.fallbacks_installed, 1)
        blocks = repairer.soup.select("div.embed-fallback")
        self.assertEqual(len(blocks), 1)
        # 原 embed 保留
        self.assertIsNotNone(repairer.soup.select_one("blockquote.twitter-tweet"))
        self.assertEqual(repairer.soup.blockquote[FALLBACK_ATTR], "installed")
        link = blocks[0].a
        self.assertEqual(link["href"], TWEET)
        self.assertEqual(link["target"], "_blank")
        self.assertEqual(" ".join(link.get_attribute_list("rel")), "noopener noreferrer")
        self.assertEqual(link.get_text(), "View on Twitter →")
        # 超时的脚本不留在文档里
        self.assertIsNone(repairer.soup.find("script"))
        self.assertEqual(repairer.registry.states()["twitter"], WidgetLoadState.FALLBACK_INSTALLED)

        self.assertEqual(repairer.install_fallbacks(), 0)
        self.assertEqual(len(repairer.soup.select("div.embed-fallback")), 1)

    async def test_script_error_installs_fallback(self):
        repairer = _repairer(twitter_blockquote(TWEET), _FakeHost(fail=True))
        with self.assertLogs("article_embeds.widgets", level="WARNING"):
            stats = await repairer.run()
        self.assertEqual(stats.fallbacks_installed, 1)

    async def test_render_api_exception_is_contained(self):
        host = _FakeHost(render_raises=True)
        repairer = _repairer(twitter_blockquote(TWEET), host)
        stats = await repairer.run()
        self.assertEqual(stats.fallbacks_installed, 1)
        self.assertEqual(repairer.registry.states()["twitter"], WidgetLoadState.FALLBACK_INSTALLED)

    async def test_stale_script_replaced_once(self):
        host = _FakeHost()
        html = f'<script src="{TWITTER_JS}" async></script>' + twitter_blockquote(TWEET)
        repairer = _repairer(html, host)
        await repairer.run()

        loader = repairer.registry.loader_for("twitter")
        self.assertTrue(loader.stale_script_replaced)
        self.assertEqual(host.loaded, [TWITTER_JS])
        self.assertEqual(len(repairer.soup.find_all("script")), 1)
        self.assertEqual(repairer.registry.states()["twitter"], WidgetLoadState.RENDERED)

    async def test_existing_script_polled_until_api_appears(self):
        host = _FakeHost()
        html = f'<script src="{TWITTER_JS}" async></script>' + twitter_blockquote(TWEET)
        repairer = _repairer(html, host)
        loader = repairer.registry.loader_for("twitter")

        async def expose_later():
            await asyncio.sleep(0.005)
            host.expose("twitter")

        ready, _ = await asyncio.gather(loader.ensure_loaded(), expose_later())
        self.assertTrue(ready)
        self.assertFalse(loader.stale_script_replaced)
        self.assertEqual(host.loaded, [])
        self.assertEqual(loader.state, WidgetLoadState.SCRIPT_LOADED)

    async def test_static_host_and_multiple_providers(self):
        html = twitter_blockquote(TWEET) + instagram_blockquote("https://www.instagram.com/p/ABC123/")
        repairer = EmbedRepairer.from_html(html, host=StaticWidgetHost(), config=FAST)
        stats = await repairer.run()

        self.assertEqual(stats.fallbacks_installed, 2)
        hrefs = [b.a["href"] for b in repairer.soup.select("div.embed-fallback")]
        self.assertEqual(hrefs, [TWEET, "https://www.instagram.com/p/ABC123/"])
        self.assertIn("embed-fallback--instagram", repairer.soup.select("div.embed-fallback")[1]["class"])

    async def test_facebook_xfbml_fallback_uses_data_href(self):
        html = '<div class="fb-post" data-href="https://www.facebook.com/page/posts/1" data-width="500"></div>'
        repairer = EmbedRepairer.from_html(html, host=StaticWidgetHost(), config=FAST)
        await repairer.run()
        block = repairer.soup.select_one("div.embed-fallback")
        self.assertEqual(block.a["href"], "https://www.facebook.com/page/posts/1")
        self.assertEqual(block.a.get_text(), "View on Facebook →")


class TestRegistry(unittest.IsolatedAsyncioTestCase):
    def test_host_must_implement_load_script(self):
        class _NoLoader(WidgetHost):
            pass

        with self.assertRaises(TypeError):
            WidgetHost()
        with self.assertRaises(TypeError):
            _NoLoader()
        self.assertIsNone(StaticWidgetHost().get_render_api("twttr.widgets.load"))

    async def test_lazy_loaders_and_teardown(self):
        repairer = EmbedRepairer.from_html("<p>x</p>", host=_FakeHost(), config=FAST)
        registry = repairer.registry
        self.assertNotIn("twitter", registry)
        loader = registry.loader_for("twitter")
        self.assertIs(registry.loader_for("twitter"), loader)
        self.assertIsNone(registry.loader_for("youtube"))
        self.assertEqual(registry.states(), {"twitter": WidgetLoadState.NOT_REQUESTED})

        repairer.teardown()
        self.assertNotIn("twitter", registry)
        self.assertEqual(registry.states(), {})

    async def test_teardown_cancels_pending_load(self):
        host = _FakeHost(never_loads=True)
        repairer = _repairer(twitter_blockquote(TWEET), host, config=RepairConfig(script_timeout=30))
        loader = repairer.registry.loader_for("twitter")
        pending = asyncio.ensure_future(loader.ensure_loaded())
        await asyncio.sleep(0.01)
        self.assertEqual(loader.state, WidgetLoadState.SCRIPT_LOADING)

        repairer.teardown()
        with self.assertRaises(asyncio.CancelledError):
            await pending

    async def test_invalid_transition_ignored(self):
        registry = WidgetRegistry(soup=None, host=StaticWidgetHost())
        loader = registry.loader_for("instagram")
        self.assertFalse(loader.transition(WidgetLoadState.RENDERED))
        self.assertEqual(loader.state, WidgetLoadState.NOT_REQUESTED)
        self.assertTrue(loader.transition(WidgetLoadState.SCRIPT_LOADING))
        self.assertFalse(WidgetLoadState.SCRIPT_LOADING.is_terminal)
        self.assertTrue(WidgetLoadState.FALLBACK_INSTALLED.is_terminal)


class TestResidualScan(unittest.TestCase):
    ESCAPED = (
        '<div class="article"><p>intro</p><p>&lt;blockquote class="twitter-tweet"&gt;'
        f'&lt;a href="{TWEET}"&gt;x&lt;/a&gt;&lt;/blockquote&gt;</p></div>'
    )

    def test_scan_repairs_and_second_scan_is_noop(self):
        repairer = EmbedRepairer.from_html(self.ESCAPED, config=FAST)
        self.assertEqual(repairer.scan(), 1)
        html = repairer.html()
        self.assertNotIn("&lt;blockquote", html)
        bq = repairer.soup.select_one("blockquote.twitter-tweet")
        self.assertIsNotNone(bq)
        self.assertEqual(bq.a["href"], TWEET)
        self.assertEqual(bq[PROCESSED_ATTR], "true")

        self.assertEqual(repairer.scan(), 0)
        self.assertEqual(repairer.html(), html)

    def test_clean_document_only_marked(self):
        repairer = EmbedRepairer.from_html("<div><p>hello</p></div>", config=FAST)
        self.assertEqual(repairer.scan(), 0)
        self.assertEqual(repairer.soup.p[PROCESSED_ATTR], "true")
        self.assertEqual(repairer.stats.inspected, 2)
        before = repairer.html()
        repairer.scan()
        self.assertEqual(repairer.html(), before)
        self.assertEqual(repairer.stats.inspected, 2)

    def test_oversize_elements_skipped(self):
        config = RepairConfig(max_scan_chars=10)
        repairer = EmbedRepairer.from_html(self.ESCAPED, config=config)
        self.assertEqual(repairer.scan(), 0)
        self.assertGreaterEqual(repairer.stats.skipped_oversize, 1)
        self.assertIn("&lt;blockquote", repairer.html())

    def test_oversize_parent_repaired_through_child(self):
        config = RepairConfig(max_scan_chars=200)
        html = '<div class="article">' + "<p>filler paragraph</p>" * 20 + self.ESCAPED + "</div>"
        repairer = EmbedRepairer.from_html(html, config=config)
        self.assertEqual(repairer.scan(), 1)
        self.assertIsNotNone(repairer.soup.select_one("blockquote.twitter-tweet"))

    def test_overlapping_scan_returns_immediately(self):
        repairer = EmbedRepairer.from_html(self.ESCAPED, config=FAST)
        repairer._scanning = True
        self.assertEqual(repairer.scan(), 0)
        self.assertIn("&lt;blockquote", repairer.html())

    def test_strip_loader_links(self):
        html = (
            '<p>See <span style="font-size: 11px;"><a href="https://platform.twitter.com/widgets.js">'
            'https://platform.twitter.com/widgets.js</a></span> and <a href="https://example.com">this</a></p>'
        )
        repairer = EmbedRepairer.from_html(html)
        self.assertEqual(repairer.strip_loader_links(), 1)
        self.assertNotIn("widgets.js", repairer.html())
        self.assertNotIn("<span", repairer.html())
        self.assertIn('href="https://example.com"', repairer.html())

    def test_fallback_excerpt_truncated(self):
        html = f'<blockquote class="twitter-tweet"><p>{"a" * 150}</p><a href="{TWEET}">link</a></blockquote>'
        repairer = EmbedRepairer.from_html(html)
        self.assertEqual(repairer.install_fallbacks(), 1)
        excerpt = repairer.soup.select_one("div.embed-fallback p").get_text()
        self.assertEqual(excerpt, "a" * 100 + "...")
        self.assertEqual(repairer.soup.select_one("div.embed-fallback strong").get_text(), "Twitter")

    def test_rendered_embed_gets_no_fallback(self):
        html = '<blockquote class="twitter-tweet twitter-tweet-rendered"><iframe src="https://platform.twitter.com/embed"></iframe></blockquote>'
        repairer = EmbedRepairer.from_html(html)
        self.assertEqual(repairer.install_fallbacks(), 0)

    def test_providers_present(self):
        html = twitter_blockquote(TWEET) + '<div class="fb-video" data-href="https://www.facebook.com/watch/?v=1"></div>'
        repairer = EmbedRepairer.from_html(html)
        self.assertEqual(repairer.providers_present(), ["twitter", "facebook"])


class TestRepairHtml(unittest.TestCase):
    def test_static_host_leaves_fallback_and_no_script(self):
        html = repair_html(f"<div>{twitter_blockquote(TWEET)}</div>", host=StaticWidgetHost(), config=FAST)
        self.assertEqual(html.count("embed-fallback--twitter"), 1)
        self.assertIn(f'href="{TWEET}"', html)
        self.assertNotIn("<script", html)

    def test_empty_document(self):
        self.assertEqual(repair_html("", config=FAST), "")


if __name__ == "__main__":
    unittest.main()

#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
规范化文章正文中的第三方 embed（Twitter/X、YouTube、Facebook、Instagram、Truth Social），
修复富文本编辑器造成的损坏，输出可直接渲染的 HTML。

依赖说明：
- 必需依赖：requests（获取远程存储的正文）、beautifulsoup4（--static-fallback 的 DOM 修复）
- 不依赖：浏览器、lxml

处理的损坏形态（来自编辑器的实际产出）：
- 编辑器 marker（data-embed="true"）未展开
- embed 代码被当成文本转义（&lt;blockquote …&gt;），或被包进 <pre>/<code>
- 自动链接把 widgets.js 等 loader 地址包成 <a>/<span style=font-size>
- 推文 blockquote 缺少内部 <p>，widget 脚本不识别
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional, Sequence, Tuple

import requests

# 支持通过 importlib 直接加载本脚本时导入同级 package
_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
if _SCRIPT_DIR not in sys.path:
    sys.path.insert(0, _SCRIPT_DIR)

from article_embeds.canonicalize import batch_canonicalize, canonicalize, read_paths_file
from article_embeds.dom_repair import repair_html
from article_embeds.http_client import (
    UA_PRESETS,
    _DEFAULT_MAX_HTML_BYTES,
    _create_session,
    fetch_article_body,
)
from article_embeds.models import BatchResult, RepairConfig
from article_embeds.output import _safe_path_length, batch_save_individual, wrap_article_body
from article_embeds.security import detect_embed_corruption, print_corruption_report, redact_url
from article_embeds.widgets import StaticWidgetHost

EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_FILE_EXISTS = 2
EXIT_CORRUPTION_FOUND = 3  # --check 模式下发现损坏

# 离线生成兜底链接时不需要等待
STATIC_REPAIR_CONFIG = RepairConfig(
    initial_delay=0.0,
    poll_interval=0.0,
    max_poll_attempts=0,
    script_timeout=0.1,
    render_settle_delay=0.0,
    fallback_timeout=0.0,
    reload_stale_script=False,
)


def process_body(
    html: str,
    *,
    static_fallback: bool = False,
    wrap: bool = False,
    locale: Optional[str] = None,
    direction: Optional[str] = None,
) -> str:
    out = canonicalize(html)
    if static_fallback:
        out = repair_html(out, host=StaticWidgetHost(), config=STATIC_REPAIR_CONFIG)
    if wrap:
        out = wrap_article_body(out, locale=locale, direction=direction)
    return out


def _fetch_body(url: str, args: argparse.Namespace) -> Tuple[Optional[str], Optional[int]]:
    """获取远程正文。

    Returns:
        (body_html, exit_code)：exit_code 为 None 表示成功
    """
    session = _create_session(args)
    print(f"下载正文：{redact_url(url)}", file=sys.stderr)
    try:
        body = fetch_article_body(
            session=session,
            url=url,
            timeout_s=args.timeout,
            retries=args.retries,
            max_html_bytes=args.max_html_bytes,
            json_field=args.json_field,
        )
    except requests.exceptions.HTTPError as exc:
        status = exc.response.status_code if exc.response is not None else "unknown"
        print(f"错误：请求失败（HTTP {status}）：{redact_url(url)}", file=sys.stderr)
        if status in (401, 403):
            print("建议：通过 --header 'Authorization: Bearer …' 提供访问凭据，", file=sys.stderr)
            print("      或导出正文后使用 --local-html 离线处理。", file=sys.stderr)
        return None, EXIT_ERROR
    except requests.exceptions.RequestException as exc:
        print(f"错误：下载失败：{redact_url(url)}", file=sys.stderr)
        print(f"详情：{exc}", file=sys.stderr)
        return None, EXIT_ERROR
    except (KeyError, ValueError) as exc:
        print(f"错误：无法从响应中取出正文字段：{exc}", file=sys.stderr)
        return None, EXIT_ERROR
    except RuntimeError as exc:
        print(f"错误：{exc}", file=sys.stderr)
        return None, EXIT_ERROR
    return body, None


def _read_local(path: str, max_bytes: int) -> Tuple[Optional[str], Optional[int]]:
    if not os.path.isfile(path):
        print(f"错误：本地 HTML 文件不存在：{path}", file=sys.stderr)
        return None, EXIT_ERROR
    try:
        size = os.path.getsize(path)
        if max_bytes and max_bytes > 0 and size > max_bytes:
            print(f"错误：本地 HTML 文件过大（{size} > {max_bytes} bytes）：{path}", file=sys.stderr)
            return None, EXIT_ERROR
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return f.read(), None
    except OSError as e:
        print(f"错误：无法读取本地 HTML 文件：{path}（{e}）", file=sys.stderr)
        return None, EXIT_ERROR


def _batch_main(args: argparse.Namespace) -> int:
    """批量处理模式的主函数"""
    if not os.path.isfile(args.files_from):
        print(f"错误：文件列表不存在：{args.files_from}", file=sys.stderr)
        return EXIT_ERROR
    paths = read_paths_file(args.files_from)
    if not paths:
        print("错误：没有要处理的文件", file=sys.stderr)
        return EXIT_ERROR
    print(f"从文件加载了 {len(paths)} 个路径", file=sys.stderr)

    def progress_callback(current: int, total: int, path: str) -> None:
        short = path if len(path) <= 50 else "..." + path[-47:]
        print(f"[{current}/{total}] 已处理：{short}", file=sys.stderr)

    print(f"开始批量处理（并发数：{args.max_workers}）...\n", file=sys.stderr)
    results: List[BatchResult] = batch_canonicalize(paths, max_workers=args.max_workers, progress_callback=progress_callback)

    success_count = len([r for r in results if r.success])
    fail_count = len(results) - success_count
    corrupted = [r for r in results if r.success and r.signals]
    print(f"\n处理完成：成功 {success_count}，失败 {fail_count}，含损坏 {len(corrupted)}", file=sys.stderr)

    if args.check:
        for r in corrupted:
            print(f"  - {r.path}：{', '.join(r.signals)}", file=sys.stderr)
        return EXIT_CORRUPTION_FOUND if corrupted else EXIT_SUCCESS

    if args.static_fallback or args.wrap:
        for r in results:
            if r.success:
                r.html = process_body(
                    r.html,
                    static_fallback=args.static_fallback,
                    wrap=args.wrap,
                    locale=args.locale,
                    direction=args.dir,
                )

    output_dir = args.output_dir or "."
    saved = batch_save_individual(results, output_dir)
    print(f"已保存 {len(saved)} 个文件到：{output_dir}", file=sys.stderr)

    if fail_count > 0:
        print("\n失败的文件：", file=sys.stderr)
        for result in results:
            if not result.success:
                print(f"  - {result.path}", file=sys.stderr)
                print(f"    错误：{result.error}", file=sys.stderr)

    return EXIT_SUCCESS


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(
        description="规范化并修复文章正文中的第三方 embed，输出可直接渲染的 HTML。",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例：
  # 处理本地保存的正文，输出到文件
  python fix_article_embeds.py --local-html body.html --out body.fixed.html

  # 从标准输入读取，输出到标准输出
  cat body.html | python fix_article_embeds.py -

  # 从 CMS 接口获取 JSON 中的正文字段，只做损坏检查
  python fix_article_embeds.py https://cms.example.com/api/articles/42 --json-field data.body --check

  # 批量处理，并为无 JS 环境生成兜底链接
  python fix_article_embeds.py --files-from bodies.txt --output-dir ./fixed --static-fallback

bodies.txt 文件格式：
  # 这是注释
  articles/2024/001.html
  articles/2024/002.html
""",
    )
    ap.add_argument("url", nargs="?", help="正文来源：URL，或 - 表示从标准输入读取")
    ap.add_argument("--local-html", metavar="FILE", help="从本地 HTML 文件读取正文")
    ap.add_argument("--json-field", metavar="PATH", help="响应为 JSON 时正文所在字段（点分路径，如 data.body）")
    ap.add_argument("--out", help="输出文件（默认写到标准输出）")
    ap.add_argument("--overwrite", action="store_true", help="允许覆盖已存在的输出文件")
    ap.add_argument("--check", action="store_true", help="只检查损坏并打印报告；发现损坏时退出码为 3")
    ap.add_argument(
        "--static-fallback",
        action="store_true",
        help="在输出中直接追加兜底链接（适用于 RSS 等无法执行 JS 的场景）",
    )
    ap.add_argument("--wrap", action="store_true", help="用带 dir/lang 的容器包裹输出")
    ap.add_argument("--locale", help="正文语言（如 ar、en-US），用于推断文字方向")
    ap.add_argument("--dir", choices=["ltr", "rtl"], help="显式指定文字方向（优先于 --locale）")
    ap.add_argument("-v", "--verbose", action="store_true", help="输出调试日志")

    net_group = ap.add_argument_group("网络参数")
    net_group.add_argument("--timeout", type=int, default=30, help="请求超时（秒），默认 30")
    net_group.add_argument("--retries", type=int, default=3, help="网络重试次数，默认 3")
    net_group.add_argument(
        "--max-html-bytes",
        type=int,
        default=_DEFAULT_MAX_HTML_BYTES,
        help="单篇正文最大允许字节数（默认 10MB；设为 0 表示不限制）",
    )
    net_group.add_argument(
        "--ua-preset",
        choices=sorted(UA_PRESETS.keys()),
        default="tool",
        help="User-Agent 预设（默认 tool）",
    )
    net_group.add_argument("--user-agent", help="自定义 User-Agent（优先于 --ua-preset）")
    net_group.add_argument("--header", action="append", default=[], help="追加请求头，格式 'Key: Value'（可重复）")

    batch_group = ap.add_argument_group("批量处理参数")
    batch_group.add_argument("--files-from", metavar="FILE", help="从文件读取正文路径列表（每行一个）")
    batch_group.add_argument("--output-dir", help="批量模式输出目录（默认当前目录）")
    batch_group.add_argument("--max-workers", type=int, default=4, help="并发线程数，默认 4")

    args = ap.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    # ========== 批量处理模式 ==========
    if args.files_from:
        return _batch_main(args)

    # ========== 单篇处理模式 ==========
    source: str
    if args.local_html:
        body, exit_code = _read_local(args.local_html, args.max_html_bytes)
        source = args.local_html
    elif args.url == "-":
        body, exit_code = sys.stdin.read(), None
        source = "<stdin>"
    elif args.url:
        body, exit_code = _fetch_body(args.url, args)
        source = redact_url(args.url)
    else:
        ap.error("必须提供 URL、- （标准输入）或 --local-html，或使用 --files-from 进入批量模式")
    if exit_code is not None:
        return exit_code
    if body is None:
        print(f"错误：未能读取正文：{source}", file=sys.stderr)
        return EXIT_ERROR

    if args.check:
        report = detect_embed_corruption(body)
        print_corruption_report(report, source)
        return EXIT_CORRUPTION_FOUND if report.is_corrupted else EXIT_SUCCESS

    out_html = process_body(
        body,
        static_fallback=args.static_fallback,
        wrap=args.wrap,
        locale=args.locale,
        direction=args.dir,
    )

    if not args.out:
        sys.stdout.write(out_html)
        return EXIT_SUCCESS

    out_path = args.out
    out_dir = os.path.dirname(out_path) or "."
    out_path = os.path.join(out_dir, _safe_path_length(out_dir, os.path.basename(out_path))) if out_dir != "." else out_path
    if os.path.exists(out_path) and not args.overwrite:
        print(f"文件已存在：{out_path}（如需覆盖请加 --overwrite）", file=sys.stderr)
        return EXIT_FILE_EXISTS
    if out_dir != ".":
        os.makedirs(out_dir, exist_ok=True)
    with open(out_path, "w", encoding="utf-8") as f:
        f.write(out_html)
    print(f"已保存：{out_path}", file=sys.stderr)
    return EXIT_SUCCESS


if __name__ == "__main__":
    raise SystemExit(main())

"""从 CMS / 存储服务获取文章正文。

正文通常是一段 HTML 片段（不含 <html>/<head>），或 JSON API 响应中的一个字符串字段。
"""

from __future__ import annotations

import argparse
import codecs
import json
import re
import sys
import time
from typing import Any, Dict, Optional, Sequence

import requests

# 正文片段一般只有几十 KB，超过此值多半是整页 HTML 或错误的接口
_DEFAULT_MAX_HTML_BYTES = 2 * 1024 * 1024  # 设为 0 表示不限制

# 这些状态码重试也不会变化
_NO_RETRY_STATUS = frozenset({400, 401, 403, 404, 410})

UA_PRESETS: Dict[str, str] = {
    "tool": "Mozilla/5.0 (compatible; fix_article_embeds/1.0)",
    "chrome-win": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    ),
    "firefox-win": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:122.0) "
        "Gecko/20100101 Firefox/122.0"
    ),
    "safari-mac": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/605.1.15 (KHTML, like Gecko) "
        "Version/17.3 Safari/605.1.15"
    ),
}


class BodyTooLargeError(RuntimeError):
    """正文超过 max_html_bytes"""


# ---------------------------------------------------------------------------
# 正文编码
# ---------------------------------------------------------------------------
# 片段里的 <meta charset> 不一定在开头（编辑器可能把它粘进正文中间）
_META_CHARSET_RE = re.compile(
    rb'<meta[^>]+charset=["\']?\s*([A-Za-z0-9_.:-]+)',
    re.IGNORECASE,
)

_BOMS = (
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
)


def _lookup(charset: Optional[str]) -> Optional[str]:
    if not charset:
        return None
    try:
        return codecs.lookup(charset.strip()).name
    except LookupError:
        return None


def _declared_charset(raw: bytes, limit: int = 64 * 1024) -> Optional[str]:
    m = _META_CHARSET_RE.search(raw[:limit])
    return _lookup(m.group(1).decode("ascii", errors="ignore")) if m else None


def _is_default_http_encoding(encoding: Optional[str]) -> bool:
    # requests 在 Content-Type 未声明 charset 时给出 ISO-8859-1
    return encoding is None or encoding.lower().replace("-", "") in ("iso88591", "latin1")


def decode_body(raw: bytes, content_type: str = "", http_encoding: Optional[str] = None) -> str:
    """把正文字节解码为文本。

    依次采用：BOM、JSON 响应（一律 UTF-8）、HTTP 头的 charset、片段中的 <meta>。
    都没有时先按 UTF-8 严格解码，失败再按 cp1252 解读（从 Windows 编辑器粘贴的旧正文）。
    """
    for bom, name in _BOMS:
        if raw.startswith(bom):
            return raw.decode(name, errors="replace")
    if "json" in (content_type or "").lower():
        return raw.decode("utf-8", errors="replace")
    if not _is_default_http_encoding(http_encoding):
        encoding = _lookup(http_encoding)
        if encoding:
            return raw.decode(encoding, errors="replace")
    declared = _declared_charset(raw)
    if declared:
        return raw.decode(declared, errors="replace")
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("cp1252", errors="replace")


def _resolve_user_agent(user_agent: Optional[str], ua_preset: str) -> str:
    if user_agent and user_agent.strip():
        return user_agent.strip()
    return UA_PRESETS.get(ua_preset, UA_PRESETS["tool"])


def _read_limited(r: requests.Response, max_bytes: Optional[int], url: str) -> bytes:
    if max_bytes is not None:
        cl = r.headers.get("Content-Length")
        if cl and cl.isdigit() and int(cl) > max_bytes:
            raise BodyTooLargeError(f"正文响应过大（Content-Length={cl} > {max_bytes} bytes）：{url}")
    buf = bytearray()
    for chunk in r.iter_content(chunk_size=64 * 1024):
        if not chunk:
            continue
        buf.extend(chunk)
        if max_bytes is not None and len(buf) > max_bytes:
            raise BodyTooLargeError(f"正文响应过大（>{max_bytes} bytes）：{url}")
    return bytes(buf)


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, BodyTooLargeError):
        return False
    if isinstance(exc, requests.exceptions.HTTPError) and exc.response is not None:
        return exc.response.status_code not in _NO_RETRY_STATUS
    return True


def fetch_html(
    session: requests.Session,
    url: str,
    timeout_s: int,
    retries: int,
    *,
    max_html_bytes: int = _DEFAULT_MAX_HTML_BYTES,
) -> str:
    """下载正文文本；网络错误与 5xx 会重试，客户端错误和超限直接抛出。"""
    max_bytes: Optional[int] = max_html_bytes if (max_html_bytes and max_html_bytes > 0) else None
    attempts = max(1, retries)
    for attempt in range(1, attempts + 1):
        r: Optional[requests.Response] = None
        try:
            r = session.get(url, timeout=timeout_s, stream=True, headers={"Accept-Encoding": "identity"})
            r.raise_for_status()
            raw = _read_limited(r, max_bytes, url)
            return decode_body(raw, r.headers.get("Content-Type", ""), r.encoding)
        except Exception as e:
            if attempt >= attempts or not _retryable(e):
                raise
            time.sleep(min(3.0, 0.6 * attempt))
        finally:
            if r is not None:
                r.close()
    raise RuntimeError("fetch failed")


def extract_json_field(payload: str, field_path: str) -> str:
    """
    从 JSON 响应中取出正文字段，支持点分路径（如 ``data.article.body``）。

    列表下标用数字表示（如 ``items.0.content``）。
    """
    node: Any = json.loads(payload)
    for part in field_path.split("."):
        if isinstance(node, list):
            try:
                node = node[int(part)]
            except (ValueError, IndexError):
                raise KeyError(f"JSON 路径无效：{field_path}（在 {part!r} 处）")
        elif isinstance(node, dict):
            if part not in node:
                raise KeyError(f"JSON 字段不存在：{field_path}（缺少 {part!r}）")
            node = node[part]
        else:
            raise KeyError(f"JSON 路径无效：{field_path}（{part!r} 的上级不是对象）")
    if not isinstance(node, str):
        raise ValueError(f"JSON 字段 {field_path} 不是字符串（实际为 {type(node).__name__}）")
    return node


def fetch_article_body(
    session: requests.Session,
    url: str,
    timeout_s: int,
    retries: int,
    *,
    max_html_bytes: int = _DEFAULT_MAX_HTML_BYTES,
    json_field: Optional[str] = None,
) -> str:
    """获取存储的正文；json_field 给出时把响应当作 JSON 并取出该字段。"""
    text = fetch_html(session, url, timeout_s, retries, max_html_bytes=max_html_bytes)
    if json_field:
        return extract_json_field(text, json_field)
    return text


def _apply_header_lines(headers: Dict[str, str], header_lines: Sequence[str]) -> None:
    for h in header_lines:
        if not h:
            continue
        if ":" not in h:
            raise ValueError(f"--header 格式应为 'Key: Value'，收到：{h!r}")
        k, v = h.split(":", 1)
        k = k.strip()
        v = v.strip()
        if not k:
            raise ValueError(f"--header Key 不能为空：{h!r}")
        headers[k] = v


def _create_session(args: argparse.Namespace) -> requests.Session:
    """创建并配置 requests.Session"""
    session = requests.Session()
    accept = "application/json, text/html;q=0.9, */*;q=0.8" if getattr(args, "json_field", None) else (
        "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
    )
    session.headers.update(
        {
            "User-Agent": _resolve_user_agent(args.user_agent, args.ua_preset),
            "Accept": accept,
        }
    )

    if getattr(args, "header", None):
        try:
            _apply_header_lines(session.headers, args.header)
            print(f"已加载追加 Header（{len(args.header)} 个）", file=sys.stderr)
        except Exception as e:
            print(f"警告：无法解析 --header：{e}", file=sys.stderr)

    return session

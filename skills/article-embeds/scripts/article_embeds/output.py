from __future__ import annotations

import hashlib
import html as htmllib
import os
import re
from typing import List, Optional

from .models import BatchResult

RTL_LOCALES = {"ar", "he", "fa", "ur"}


def direction_for_locale(locale: Optional[str]) -> str:
    """"ar" / "ar-SA" / "ar_SA" → "rtl"，其余一律 "ltr"。"""
    if not locale:
        return "ltr"
    primary = re.split(r"[-_]", locale.strip().lower(), maxsplit=1)[0]
    return "rtl" if primary in RTL_LOCALES else "ltr"


def wrap_article_body(
    body_html: str,
    locale: Optional[str] = None,
    direction: Optional[str] = None,
    css_class: str = "max-w-none",
) -> str:
    """
    为正文加上承载方向信息的容器。

    direction 显式给出时优先（文章翻译自带的 dir 字段），否则按 locale 推断。
    """
    d = (direction or "").strip().lower()
    if d not in ("ltr", "rtl"):
        d = direction_for_locale(locale)
    attrs = [f'class="{htmllib.escape(css_class, quote=True)}"', f'dir="{d}"']
    if locale:
        attrs.append(f'lang="{htmllib.escape(locale.strip(), quote=True)}"')
    return f"<div {' '.join(attrs)}>{body_html}</div>"


def _sanitize_filename_part(text: str) -> str:
    text = text.strip()
    text = re.sub(r"[^\w.\-]+", "-", text, flags=re.UNICODE)
    text = re.sub(r"-{2,}", "-", text)
    return text.strip("-") or "untitled"


def _safe_path_length(base_dir: str, filename: str, max_total: int = 250) -> str:
    abs_path = os.path.abspath(os.path.join(base_dir, filename))
    if len(abs_path) <= max_total:
        return filename

    name, ext = os.path.splitext(filename)
    overflow = len(abs_path) - max_total
    truncated_len = max(10, len(name) - overflow - 8)
    truncated = name[:truncated_len]
    suffix = hashlib.sha1(filename.encode("utf-8")).hexdigest()[:6]
    return f"{truncated}-{suffix}{ext}"


def batch_save_individual(results: List[BatchResult], output_dir: str) -> List[str]:
    os.makedirs(output_dir, exist_ok=True)
    saved_files: List[str] = []

    for result in results:
        if not result.success:
            continue

        name, ext = os.path.splitext(os.path.basename(result.path))
        filename = _sanitize_filename_part(name)[:80] + (ext or ".html")
        filename = _safe_path_length(output_dir, filename)
        filepath = os.path.join(output_dir, filename)

        base, ext = os.path.splitext(filepath)
        counter = 1
        while os.path.exists(filepath):
            filepath = f"{base}_{counter}{ext}"
            counter += 1

        with open(filepath, "w", encoding="utf-8") as f:
            f.write(result.html)

        saved_files.append(filepath)

    return saved_files

"""MIME 协商：判断服务声明的输出格式是否满足请求的格式模式。"""

from __future__ import annotations


def _split_mime(value: str) -> tuple[str, str]:
    # 参数部分（如 `;q=0.9`）不参与匹配。
    base = value.split(";", 1)[0].strip().lower()
    if "/" not in base:
        return base, "*" if base == "*" else ""
    major, minor = base.split("/", 1)
    return major.strip(), minor.strip()


def is_mime_type_accepted(candidate: str, pattern: str) -> bool:
    """判断 candidate 是否被 pattern 接受，两侧都允许 `*` 通配。"""
    if not candidate or not pattern:
        return False
    cand_major, cand_minor = _split_mime(candidate)
    pat_major, pat_minor = _split_mime(pattern)
    if pat_major != "*" and cand_major != "*" and pat_major != cand_major:
        return False
    if pat_minor == "*" or cand_minor == "*":
        return True
    return pat_minor == cand_minor

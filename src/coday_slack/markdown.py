from __future__ import annotations

import re

_CODE_RE = re.compile(r"(```.*?```|`[^`\n]+`)", re.DOTALL)
_FENCE_LANG_RE = re.compile(r"^```[\w+#.-]+[ \t]*\n")
_BOLD_RE = re.compile(r"\*\*(?=\S)(.+?)(?<=\S)\*\*")
_UNDERSCORE_BOLD_RE = re.compile(r"(?<!\w)__(?=\S)(.+?)(?<=\S)__(?!\w)")
_STRIKE_RE = re.compile(r"~~(?=\S)(.+?)(?<=\S)~~")
_LINK_RE = re.compile(r"!?\[([^\]\n]+)\]\(([^)\s]+)\)")
_HEADER_RE = re.compile(r"^[ \t]*#{1,6}[ \t]+(.+?)[ \t]*#*[ \t]*$", re.MULTILINE)


def _split_code(text: str) -> list[tuple[bool, str]]:
    segments: list[tuple[bool, str]] = []
    for index, chunk in enumerate(_CODE_RE.split(text)):
        if chunk:
            segments.append((index % 2 == 1, chunk))
    return segments


def _header(match: re.Match[str]) -> str:
    title = match.group(1).strip().strip("*").strip()
    return f"*{title}*" if title else ""


def _convert_prose(text: str) -> str:
    text = _BOLD_RE.sub(r"*\1*", text)
    text = _UNDERSCORE_BOLD_RE.sub(r"*\1*", text)
    text = _STRIKE_RE.sub(r"~\1~", text)
    text = _LINK_RE.sub(r"<\2|\1>", text)
    return _HEADER_RE.sub(_header, text)


def markdown_to_slack(text: str) -> str:
    """Convert common Markdown to Slack mrkdwn, leaving code untouched."""
    if not text:
        return text
    out: list[str] = []
    for is_code, chunk in _split_code(text):
        if not is_code:
            out.append(_convert_prose(chunk))
        elif chunk.startswith("```"):
            out.append(_FENCE_LANG_RE.sub("```\n", chunk, count=1))
        else:
            out.append(chunk)
    return "".join(out)


def validate_slack_format(text: str) -> list[str]:
    prose = "".join(chunk for is_code, chunk in _split_code(text) if not is_code)
    issues: list[str] = []
    if re.search(r"\*\*[^*\n]+\*\*", prose):
        issues.append("Found **bold** syntax (use *bold* for Slack)")
    if re.search(r"\[[^\]\n]+\]\([^)\s]+\)", prose):
        issues.append("Found [text](url) links (use <url|text> for Slack)")
    if re.search(r"^[ \t]*#{1,6}[ \t]", prose, re.MULTILINE):
        issues.append(
            "Found # headers (Slack doesn't support headers, use *text* instead)"
        )
    return issues

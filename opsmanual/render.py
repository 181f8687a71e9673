"""
Rendering of manual item bodies.

A stored body is either written in a tiny plain-text dialect
(``**heading**``, ``- bullet``, ``1. numbered``, paragraphs) or it is
HTML coming out of the editor.  ``is_markup`` decides which one we are
looking at, plain text is turned into blocks by ``normalize`` and HTML is
pushed through the ``sanitize`` allow-list.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from html import escape

import nh3
from markupsafe import Markup

# `<` + optional `/` + tag name + optional attributes + `>`
_TAG_RE = re.compile(r"</?[A-Za-z][\w:.-]*(?:\s[^<>]*)?/?>")
_NUMBERED_RE = re.compile(r"^\d+\.\s*")
BOLD_MARK = "**"

ALLOWED_TAGS = frozenset(
    {
        "p",
        "br",
        "strong",
        "b",
        "em",
        "i",
        "u",
        "s",
        "h1",
        "h2",
        "h3",
        "h4",
        "h5",
        "h6",
        "ul",
        "ol",
        "li",
        "blockquote",
        "pre",
        "code",
        "a",
        "img",
        "table",
        "thead",
        "tbody",
        "tr",
        "th",
        "td",
        "hr",
    }
)
# applies to every retained tag
ALLOWED_ATTRIBUTES = {"*": {"href", "src", "alt", "title", "target", "rel"}}
# a fixed point is normally reached after one or two passes
SANITIZE_MAX_PASSES = 4


################################################################################
# Blocks
################################################################################
@dataclass(frozen=True)
class Heading:
    text: str


@dataclass(frozen=True)
class Paragraph:
    text: str


@dataclass(frozen=True)
class BulletList:
    items: tuple[str, ...]


ContentBlock = Heading | Paragraph | BulletList


################################################################################
# Classifier + normalizer
################################################################################
def is_markup(content: str | None) -> bool:
    """True when *content* holds anything that looks like an HTML tag."""
    if not content:
        return False
    return _TAG_RE.search(content) is not None


def _is_heading(line: str) -> bool:
    n = len(BOLD_MARK)
    return (
        len(line) > 2 * n and line.startswith(BOLD_MARK) and line.endswith(BOLD_MARK)
    )


def normalize(content: str | None) -> list[ContentBlock]:
    """
    Turn the plain-text dialect into an ordered list of blocks.

    Consecutive ``-`` lines collect into one list, and so do consecutive
    numbered lines.  A numbered line never joins a list that was started
    by dashes: the dash list is closed first.  The numbers themselves are
    dropped.
    """
    blocks: list[ContentBlock] = []
    pending: list[str] = []  # bullet items not yet emitted
    numbered = False  # which marker opened *pending*

    def flush() -> None:
        nonlocal numbered
        if pending:
            blocks.append(BulletList(tuple(pending)))
            pending.clear()
        numbered = False

    for raw in (content or "").split("\n"):
        line = raw.strip()

        if not line:
            flush()
        elif _is_heading(line):
            flush()
            blocks.append(Heading(line[len(BOLD_MARK) : -len(BOLD_MARK)]))
        elif line.startswith("-"):
            pending.append(line[1:].strip())
        elif m := _NUMBERED_RE.match(line):
            if not numbered:
                flush()
            pending.append(line[m.end() :])
            numbered = True
        else:
            flush()
            blocks.append(Paragraph(line))

    flush()
    return blocks


################################################################################
# Sanitizer
################################################################################
def sanitize(content: str | None) -> str:
    """
    Keep only allow-listed tags and attributes.

    Disallowed tags are unwrapped (their text stays, except inside
    ``<script>`` / ``<style>``), disallowed attributes are dropped and broken
    markup is repaired by the HTML5 parser instead of being rejected.
    Repairing can move nodes around (nested anchors, content misplaced in a
    table), so cleaning is repeated until the output no longer changes.
    """
    if not content:
        return ""
    out = content
    for _ in range(SANITIZE_MAX_PASSES):
        cleaned = nh3.clean(
            out,
            tags=set(ALLOWED_TAGS),
            attributes=ALLOWED_ATTRIBUTES,
            link_rel=None,
            strip_comments=True,
        )
        if cleaned == out:
            break
        out = cleaned
    return out


################################################################################
# Entry points
################################################################################
def render(content: str | None) -> list[ContentBlock] | str:
    """Blocks for plain text, a sanitized string for markup."""
    if is_markup(content):
        return sanitize(content)
    return normalize(content)


def blocks_to_html(blocks: list[ContentBlock]) -> str:
    out = []
    for blk in blocks:
        if isinstance(blk, Heading):
            out.append(f"<h3>{escape(blk.text)}</h3>")
        elif isinstance(blk, Paragraph):
            out.append(f"<p>{escape(blk.text)}</p>")
        elif isinstance(blk, BulletList):
            lis = "".join(f"<li>{escape(it)}</li>" for it in blk.items)
            out.append(f"<ul>{lis}</ul>")
        else:
            raise TypeError(f"unknown content block: {blk!r}")
    return "\n".join(out)


def render_html(content: str | None) -> Markup:
    """Render either path to HTML that is safe to drop into a template."""
    rendered = render(content)
    if isinstance(rendered, str):
        return Markup(rendered)
    return Markup(blocks_to_html(rendered))


def block_json(blk: ContentBlock) -> dict:
    if isinstance(blk, Heading):
        return {"type": "heading", "text": blk.text}
    if isinstance(blk, Paragraph):
        return {"type": "paragraph", "text": blk.text}
    if isinstance(blk, BulletList):
        return {"type": "bullet_list", "items": list(blk.items)}
    raise TypeError(f"unknown content block: {blk!r}")

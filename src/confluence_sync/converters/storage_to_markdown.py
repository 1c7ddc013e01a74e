"""Confluence storage format to Markdown conversion using lxml.

Storage format is XHTML with Confluence-specific ``ac:`` and ``ri:``
elements.  It is parsed with the lenient ``lxml.html`` parser, which
keeps prefixed tag and attribute names verbatim (``ac:structured-macro``,
``ri:content-title``), and the resulting tree is rendered to Markdown by
a recursive walk.
"""

import html
import logging
import re
from typing import Any

import lxml.html
from lxml import etree

from ..errors import ConversionError
from .common import ConversionResult, confluence_to_markdown_lang

logger = logging.getLogger(__name__)

EMPTY_PAGE_PLACEHOLDER = "*No content available*"

# The HTML parser drops CDATA sections (code macro bodies live in them)
_CDATA_RE = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)
# ...and does not honour self-closing syntax on unknown elements
_SELF_CLOSING_RE = re.compile(r"<((?:ac|ri):[\w-]+)([^<>]*?)\s*/>")

_BLOCK_SEP = "\n\n"
_BLOCK_TAGS = frozenset(
    {"p", "div", "section", "ac:layout", "ac:layout-section", "ac:layout-cell"}
)


def _escape_cdata(match: re.Match) -> str:
    return html.escape(match.group(1), quote=False)


def _expand_self_closing(match: re.Match) -> str:
    return f"<{match.group(1)}{match.group(2)}></{match.group(1)}>"


def _tag(el: Any) -> str | None:
    """Lowercase tag name, or None for comments and processing instructions."""
    return el.tag.lower() if isinstance(el.tag, str) else None


def _find(el: Any, tag: str) -> Any | None:
    """First descendant with the given (possibly prefixed) tag name."""
    for child in el.iterdescendants():
        if _tag(child) == tag:
            return child
    return None


def _one_line(text: str) -> str:
    return " ".join(line.strip() for line in text.splitlines() if line.strip())


class StorageParser:
    """Render a parsed storage-format tree to Markdown."""

    def __init__(self):
        """Initialize parser with empty warnings list."""
        self.warnings: list[str] = []

    def parse(self, raw: str) -> ConversionResult:
        """
        Convert storage-format markup to Markdown.

        Args:
            raw: Storage-format XHTML as returned by the REST API

        Returns:
            ConversionResult with Markdown text and warnings about lossy conversions

        Raises:
            ConversionError: If the input is not a string or cannot be parsed
        """
        self.warnings = []
        if not isinstance(raw, str):
            raise ConversionError(
                f"Expected storage markup as str, got {type(raw).__name__}"
            )
        if not raw.strip():
            return ConversionResult(text="", converted=False)

        prepared = _CDATA_RE.sub(_escape_cdata, raw)
        prepared = _SELF_CLOSING_RE.sub(_expand_self_closing, prepared)
        try:
            root = lxml.html.fragment_fromstring(
                prepared, create_parent="div"
            )
        except (etree.ParserError, etree.XMLSyntaxError, ValueError) as e:
            raise ConversionError(f"Cannot parse storage markup: {e}") from e

        text = self._children(root)
        text = re.sub(r"\n{3,}", "\n\n", text).strip()

        return ConversionResult(
            text=text,
            converted=True,
            warnings=self.warnings,
        )

    def _warn(self, message: str) -> None:
        if message not in self.warnings:
            self.warnings.append(message)

    # ------------------------------------------------------------------
    # Tree walk
    # ------------------------------------------------------------------

    def _children(self, el: Any) -> str:
        parts: list[str] = []
        if el.text:
            parts.append(self._text(el.text))
        for child in el:
            if _tag(child) is not None:
                parts.append(self._node(child))
            if child.tail:
                parts.append(self._text(child.tail))
        return "".join(parts)

    @staticmethod
    def _text(text: str) -> str:
        return re.sub(r"\s+", " ", text)

    def _node(self, el: Any) -> str:
        tag = _tag(el)

        if tag in ("h1", "h2", "h3", "h4", "h5", "h6"):
            level = int(tag[1])
            title = _one_line(self._children(el))
            if not title:
                return ""
            return f"{_BLOCK_SEP}{'#' * level} {title}{_BLOCK_SEP}"
        if tag in _BLOCK_TAGS:
            return f"{_BLOCK_SEP}{self._children(el).strip()}{_BLOCK_SEP}"
        if tag == "br":
            return "\n"
        if tag == "hr":
            return f"{_BLOCK_SEP}---{_BLOCK_SEP}"
        if tag in ("strong", "b"):
            return self._wrap(el, "**")
        if tag in ("em", "i"):
            return self._wrap(el, "*")
        if tag in ("s", "del", "strike"):
            return self._wrap(el, "~~")
        if tag == "code":
            code = el.text_content()
            return f"`{code}`" if code else ""
        if tag == "pre":
            return self._fence(el.text_content(), "")
        if tag == "a":
            return self._link(el)
        if tag == "img":
            return self._image(el)
        if tag in ("ul", "ol"):
            return f"{_BLOCK_SEP}{self._list(el, tag == 'ol', 0)}{_BLOCK_SEP}"
        if tag == "table":
            return self._table(el)
        if tag == "blockquote":
            inner = re.sub(r"\n{3,}", "\n\n", self._children(el)).strip()
            quoted = "\n".join(
                f"> {line}" if line else ">" for line in inner.splitlines()
            )
            return f"{_BLOCK_SEP}{quoted}{_BLOCK_SEP}"
        if tag in ("script", "style", "ac:parameter"):
            return ""

        # Confluence elements
        if tag in ("ac:structured-macro", "ac:macro"):
            return self._macro(el)
        if tag == "ac:emoticon":
            return el.get("ac:name", "")
        if tag == "ac:link":
            return self._ac_link(el)
        if tag == "ac:image":
            return self._ac_image(el)
        if tag == "ac:task-list":
            return f"{_BLOCK_SEP}{self._task_list(el)}{_BLOCK_SEP}"

        return self._children(el)

    # ------------------------------------------------------------------
    # Inline elements
    # ------------------------------------------------------------------

    def _wrap(self, el: Any, marker: str) -> str:
        inner = self._children(el)
        stripped = inner.strip()
        if not stripped:
            return inner
        # Keep surrounding spaces outside the markers
        lead = " " if inner[:1].isspace() else ""
        trail = " " if inner[-1:].isspace() else ""
        return f"{lead}{marker}{stripped}{marker}{trail}"

    def _link(self, el: Any) -> str:
        href = el.get("href")
        text = _one_line(self._children(el))
        if not href:
            return text
        return f"[{text or href}]({href})"

    def _image(self, el: Any) -> str:
        alt = el.get("alt", "")
        if "emoticon" in (el.get("class") or "").split():
            return alt
        src = el.get("src")
        return f"![{alt}]({src})" if src else alt

    def _ac_link(self, el: Any) -> str:
        body = None
        for name in ("ac:plain-text-link-body", "ac:link-body"):
            node = _find(el, name)
            if node is not None:
                body = _one_line(node.text_content())
                break

        user = _find(el, "ri:user")
        if user is not None:
            handle = (
                body
                or user.get("ri:username")
                or user.get("ri:userkey")
                or user.get("ri:account-id")
                or "user"
            )
            return f"@{handle}"

        page = _find(el, "ri:page")
        if page is not None:
            return body or page.get("ri:content-title", "")

        attachment = _find(el, "ri:attachment")
        if attachment is not None:
            return body or attachment.get("ri:filename", "")

        url = _find(el, "ri:url")
        if url is not None and url.get("ri:value"):
            value = url.get("ri:value")
            return f"[{body or value}]({value})"

        return body or ""

    def _ac_image(self, el: Any) -> str:
        alt = el.get("ac:alt", "")
        attachment = _find(el, "ri:attachment")
        if attachment is not None:
            filename = attachment.get("ri:filename", "")
            return f"![{alt or filename}]({filename})"
        url = _find(el, "ri:url")
        if url is not None:
            return f"![{alt}]({url.get('ri:value', '')})"
        return alt

    # ------------------------------------------------------------------
    # Block elements
    # ------------------------------------------------------------------

    def _fence(self, code: str, language: str) -> str:
        code = code.strip("\n")
        fence = "````" if "```" in code else "```"
        return f"{_BLOCK_SEP}{fence}{language}\n{code}\n{fence}{_BLOCK_SEP}"

    def _macro(self, el: Any) -> str:
        name = el.get("ac:name", "").lower()
        params = {
            p.get("ac:name", ""): p.text_content().strip()
            for p in el
            if _tag(p) == "ac:parameter"
        }

        if name in ("code", "noformat"):
            body = _find(el, "ac:plain-text-body")
            code = body.text_content() if body is not None else ""
            language = confluence_to_markdown_lang(
                params.get("language", "")
            )
            return self._fence(code, language)

        self._warn(
            f"Confluence macro '{name or 'unknown'}' replaced by a placeholder"
        )
        placeholder = f"[Confluence Macro: {name or 'unknown'}]"
        rich_body = _find(el, "ac:rich-text-body")
        if rich_body is None:
            return f"{_BLOCK_SEP}{placeholder}{_BLOCK_SEP}"
        inner = self._children(rich_body).strip()
        return f"{_BLOCK_SEP}{placeholder}{_BLOCK_SEP}{inner}{_BLOCK_SEP}"

    def _list(self, el: Any, ordered: bool, depth: int) -> str:
        lines: list[str] = []
        number = 1
        for li in el:
            if _tag(li) != "li":
                continue
            marker = f"{number}." if ordered else "-"
            number += 1

            inline: list[str] = []
            nested: list[str] = []
            if li.text:
                inline.append(self._text(li.text))
            for child in li:
                child_tag = _tag(child)
                if child_tag in ("ul", "ol"):
                    nested.append(
                        self._list(child, child_tag == "ol", depth + 1)
                    )
                elif child_tag is not None:
                    inline.append(self._node(child))
                if child.tail:
                    inline.append(self._text(child.tail))

            indent = "  " * depth
            lines.append(f"{indent}{marker} {_one_line(''.join(inline))}")
            lines.extend(n for n in nested if n)
        return "\n".join(lines)

    def _task_list(self, el: Any) -> str:
        lines = []
        for task in el:
            if _tag(task) != "ac:task":
                continue
            status = _find(task, "ac:task-status")
            done = (
                status is not None
                and status.text_content().strip() == "complete"
            )
            body = _find(task, "ac:task-body")
            text = _one_line(self._children(body)) if body is not None else ""
            lines.append(f"- [{'x' if done else ' '}] {text}")
        return "\n".join(lines)

    def _table(self, el: Any) -> str:
        rows: list[list[str]] = []
        for row in el.iterdescendants():
            if _tag(row) != "tr":
                continue
            # Skip rows of nested tables
            if next(
                (a for a in row.iterancestors() if _tag(a) == "table"), None
            ) is not el:
                continue
            cells = [
                _one_line(self._children(cell)).replace("|", "\\|")
                for cell in row
                if _tag(cell) in ("th", "td")
            ]
            if cells:
                rows.append(cells)

        if not rows:
            return ""

        width = max(len(r) for r in rows)
        rows = [r + [""] * (width - len(r)) for r in rows]
        lines = [
            "| " + " | ".join(rows[0]) + " |",
            "| " + " | ".join(["---"] * width) + " |",
        ]
        lines.extend("| " + " | ".join(r) + " |" for r in rows[1:])
        return f"{_BLOCK_SEP}" + "\n".join(lines) + f"{_BLOCK_SEP}"


def storage_to_markdown(raw: str) -> ConversionResult:
    """
    Convert Confluence storage-format markup to Markdown.

    Args:
        raw: Storage-format XHTML

    Returns:
        ConversionResult with Markdown text and warnings

    Raises:
        ConversionError: If the markup cannot be parsed
    """
    parser = StorageParser()
    return parser.parse(raw)


def clean_markdown(markdown: str) -> str:
    """Collapse blank-line runs, strip trailing spaces, end with one newline."""
    markdown = re.sub(r"\n{3,}", "\n\n", markdown)
    markdown = re.sub(r"[ \t]+$", "", markdown, flags=re.MULTILINE)
    return markdown.strip() + "\n"


def build_metadata_header(metadata: Any) -> str:
    """
    Build the Markdown header placed above every converted page.

    Args:
        metadata: Object with ``id``, ``title``, ``collection_key``,
            ``collection_name``, ``lineage``, ``version_number``,
            ``last_updated`` and ``source_url`` (a ``RemoteItem``)

    Returns:
        Header text ending with a horizontal rule
    """
    space = metadata.collection_key
    if metadata.collection_name:
        space = f"{metadata.collection_name} ({metadata.collection_key})"
    breadcrumb = " > ".join([*metadata.lineage, metadata.title])

    lines = [
        f"# {metadata.title}",
        "",
        "---",
        "",
        f"**Space:** {space}",
        f"**Path:** {breadcrumb}",
        f"**Page ID:** {metadata.id}",
        f"**Version:** {metadata.version_number}",
    ]
    if metadata.last_updated:
        lines.append(f"**Last Updated:** {metadata.last_updated}")
    if metadata.source_url:
        lines.append(f"**URL:** {metadata.source_url}")
    lines.extend(["", "---"])
    return "\n".join(lines)


class ConfluenceConverter:
    """Produce the Markdown artifact for one page."""

    def convert(self, raw_content: str, metadata: Any) -> str:
        """
        Convert a page body and prefix it with the metadata header.

        Args:
            raw_content: Storage-format body of the page
            metadata: The page's ``RemoteItem``

        Returns:
            Cleaned Markdown document

        Raises:
            ConversionError: If the body cannot be converted
        """
        result = storage_to_markdown(raw_content)
        for warning in result.warnings:
            logger.debug("Page %s: %s", metadata.id, warning)

        body = result.text or EMPTY_PAGE_PLACEHOLDER
        header = build_metadata_header(metadata)
        return clean_markdown(f"{header}\n\n{body}")

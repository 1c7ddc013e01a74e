"""Common types and utilities for format conversion."""

from dataclasses import dataclass, field

# =============================================================================
# Code Block Language Mapping
# =============================================================================
#
# Confluence code macro language names -> Markdown code fence identifiers.
#
# Confluence: <ac:parameter ac:name="language">js</ac:parameter>
# Markdown:   ```javascript
#
# Unknown languages pass through lowercased.
# =============================================================================

_CONFLUENCE_TO_MARKDOWN_MAP: dict[str, str] = {
    # Shell scripting
    "sh": "bash",
    "shell": "bash",
    # JavaScript / TypeScript variants
    "js": "javascript",
    "jscript": "javascript",
    "ts": "typescript",
    # .NET
    "c#": "csharp",
    "csharp": "csharp",
    "vb": "vbnet",
    # C++ variants
    "c++": "cpp",
    # Markup
    "html/xml": "xml",
    "xhtml": "html",
    # Legacy Confluence names
    "actionscript3": "actionscript",
    "py": "python",
    # Text normalization ("none" means no highlighting)
    "none": "",
    "plain": "text",
    "plaintext": "text",
}


def confluence_to_markdown_lang(lang: str) -> str:
    """
    Convert a Confluence code macro language to a code fence identifier.

    Args:
        lang: Confluence language name (e.g., 'js', 'c#', 'none')

    Returns:
        Markdown language identifier. Returns the lowercased input if no
        mapping exists, and an empty string for 'none'.

    Examples:
        >>> confluence_to_markdown_lang("js")
        'javascript'
        >>> confluence_to_markdown_lang("python")
        'python'
        >>> confluence_to_markdown_lang("none")
        ''
    """
    lang = lang.strip()
    lang_lower = lang.lower()

    if lang_lower in _CONFLUENCE_TO_MARKDOWN_MAP:
        return _CONFLUENCE_TO_MARKDOWN_MAP[lang_lower]

    return lang_lower


@dataclass
class ConversionResult:
    """Result of format conversion with metadata and warnings.

    Attributes:
        text: Converted text output
        source_format: Format of input text
        target_format: Format of output text
        converted: True if conversion performed, False for empty input
        warnings: List of warnings about lossy conversions or unsupported features
    """

    text: str
    source_format: str = "storage"
    target_format: str = "markdown"
    converted: bool = False
    warnings: list[str] = field(default_factory=list)

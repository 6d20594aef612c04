"""
Notification text formatting.

Builds Telegram MarkdownV2 messages from matched release items. Release
notes are converted from HTML to Markdown and shown as a bounded excerpt.
"""

import html2text

from release_watcher.filters import ChangeType, FeedItem

# Maximum excerpt length before a "More" link is appended
MAX_EXCERPT_LENGTH = 250

# Characters reserved by MarkdownV2 outside of code entities
MARKDOWN_SPECIAL_CHARS = "\\_*[]()~`>#+-=|{}.!"

CODE_FENCE = "```"


def escape_markdown(text: str) -> str:
    """
    Escape every MarkdownV2 reserved character with a backslash.

    Parameters
    ----------
    text : str
        Text to escape.

    Returns
    -------
    str
        Escaped text; no character is removed.
    """
    return "".join(f"\\{c}" if c in MARKDOWN_SPECIAL_CHARS else c for c in text)


def escape_code(text: str) -> str:
    """Escape text placed inside a MarkdownV2 pre/code block."""
    return "".join(f"\\{c}" if c in "\\`" else c for c in text)


def escape_link_url(url: str) -> str:
    """Escape the URL part of a MarkdownV2 inline link."""
    return "".join(f"\\{c}" if c in "\\)" else c for c in url)


def html_to_markdown(content: str) -> str:
    """
    Convert an HTML release body to Markdown text.

    Parameters
    ----------
    content : str
        HTML content from the feed.

    Returns
    -------
    str
        Markdown rendering without line wrapping.
    """
    converter = html2text.HTML2Text()
    converter.body_width = 0
    converter.ignore_images = True
    return converter.handle(content).strip()


def build_excerpt(content: str, limit: int = MAX_EXCERPT_LENGTH) -> tuple[str, bool]:
    """
    Build the release notes excerpt.

    Parameters
    ----------
    content : str
        HTML content from the feed.
    limit : int
        Maximum number of characters kept.

    Returns
    -------
    tuple[str, bool]
        Escaped excerpt and whether it was truncated.
    """
    text = html_to_markdown(content) if content else ""
    # A fence inside the notes would close the surrounding code block
    text = text.replace(CODE_FENCE, "")

    truncated = len(text) > limit
    if truncated:
        text = text[:limit]

    text = escape_code(text)
    if truncated:
        # Dots are literal inside a code block
        text += "..."
    return text, truncated


def format_notification(repo: str, item: FeedItem, change_type: ChangeType) -> str:
    """
    Format a matched item as a notification.

    Parameters
    ----------
    repo : str
        Repository the item belongs to.
    item : FeedItem
        The matched item.
    change_type : ChangeType
        Whether this is a new release or an edited one.

    Returns
    -------
    str
        MarkdownV2 message text.
    """
    excerpt, truncated = build_excerpt(item.content)

    parts = [
        f"{escape_markdown(repo)} {escape_markdown(change_type.phrase)}: {escape_markdown(item.title)}",
        f"\nLink: {escape_markdown(item.link)}",
        f"\nRelease notes:\n{CODE_FENCE}\n{excerpt}\n{CODE_FENCE}",
    ]
    if truncated and item.link:
        parts.append(f"\n[More]({escape_link_url(item.link)})")

    return "".join(parts)

"""
Content normalization for deduplication and summarization.

Identical newsletters sent to different recipients differ in tracking
pixels, unsubscribe links, greetings and per-recipient tokens. Those are
stripped before hashing so the copies collapse onto one content hash.
"""

import hashlib
import html
import re
from typing import Optional, Tuple

# Hex runs at least as long as an MD5 digest are treated as tracking ids
MIN_TRACKING_HEX_LENGTH = 32

_TRACKING_PATH_IMG = re.compile(
    r"""<img[^>]*src=["'][^"']*/(track|pixel|beacon|open|click)/[^"']*["'][^>]*>""",
    re.IGNORECASE,
)
_TRACKING_HOST_IMG = re.compile(
    r"""<img[^>]*src=["']https?://(track|pixel|beacon|open)\.[^"']+["'][^>]*>""",
    re.IGNORECASE,
)
_PIXEL_WH_IMG = re.compile(r"""<img[^>]*width=["']?1["']?[^>]*height=["']?1["']?[^>]*>""", re.IGNORECASE)
_PIXEL_HW_IMG = re.compile(r"""<img[^>]*height=["']?1["']?[^>]*width=["']?1["']?[^>]*>""", re.IGNORECASE)
_UNSUBSCRIBE_HREF = re.compile(r"""href=["'][^"']*unsubscribe[^"']*["']""", re.IGNORECASE)
_GREETING = re.compile(r"\b(Hi|Hello|Dear|Hey)\s+[A-Za-z][A-Za-z-]*\s*,", re.IGNORECASE)
_TRACKING_HEX = re.compile(rf"[a-f0-9]{{{MIN_TRACKING_HEX_LENGTH},}}", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")

_SCRIPT = re.compile(r"<script[^>]*>[\s\S]*?</script>", re.IGNORECASE)
_STYLE = re.compile(r"<style[^>]*>[\s\S]*?</style>", re.IGNORECASE)
_BLOCK_CLOSE = re.compile(r"</(p|div|h[1-6]|li|tr|br)>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")


def normalize_for_hash(content: str) -> str:
    """Strip recipient-specific noise so identical newsletters hash equally."""
    text = _TRACKING_PATH_IMG.sub("", content)
    text = _TRACKING_HOST_IMG.sub("", text)
    text = _PIXEL_WH_IMG.sub("", text)
    text = _PIXEL_HW_IMG.sub("", text)
    text = _UNSUBSCRIBE_HREF.sub('href="UNSUBSCRIBE"', text)
    text = _GREETING.sub(lambda m: f"{m.group(1)} USER,", text)
    text = _TRACKING_HEX.sub("HASH", text)
    return _WHITESPACE.sub(" ", text).strip()


def compute_content_hash(content: str) -> str:
    """SHA-256 of the content as a 64-char lowercase hex string."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def effective_content(html_content: Optional[str], text_content: Optional[str], subject: str) -> Tuple[str, bool]:
    """
    Pick the body to store.

    Returns (content, is_html). Empty bodies fall back to the subject so
    that every empty mail does not collapse onto the same hash.
    """
    body = html_content or text_content or ""
    is_html = bool(html_content)
    if not body.strip():
        return f"<p>{html.escape(subject)}</p>", True
    return body, is_html


def strip_html_to_text(content: str) -> str:
    """Reduce newsletter HTML to plain text for the completion provider."""
    text = _SCRIPT.sub("", content)
    text = _STYLE.sub("", text)
    text = _BLOCK_CLOSE.sub("\n", text)
    text = _TAG.sub("", text)
    text = html.unescape(text)
    return _WHITESPACE.sub(" ", text).strip()

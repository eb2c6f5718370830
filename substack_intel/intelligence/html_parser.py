"""
Content normalization for newsletter emails.

Converts raw HTML or plain-text bodies into clean paragraph text with
newsletter boilerplate removed, and works out which newsletter sent it.
"""

from __future__ import annotations

import re
from email.utils import parseaddr
from typing import Iterable, List, Optional

import structlog
from bs4 import BeautifulSoup, Comment

from substack_intel.core.models import NormalizedContent, RawMessage

logger = structlog.get_logger(__name__)

UNKNOWN_NEWSLETTER = "Unknown"
MAX_INPUT_CHARS = 200_000
MAX_NAME_CHARS = 100

STRIP_TAGS = ["script", "style", "head", "nav", "footer", "title", "meta", "link", "noscript", "svg", "iframe", "form"]

BLOCK_TAGS = [
    "p", "div", "section", "article", "header", "footer", "blockquote", "pre",
    "h1", "h2", "h3", "h4", "h5", "h6", "ul", "ol", "li", "table", "tr", "hr",
]

BOILERPLATE_SELECTORS = [
    ".unsubscribe",
    ".footer",
    ".social-links",
    ".sharing-buttons",
    ".subscription-links",
    ".newsletter-footer",
    ".advertisement",
    ".ads",
    ".preheader",
    "[data-testid='unsubscribe']",
]

TRACKING_HOST_RE = re.compile(r"(/open\b|/o/|pixel|track(ing)?|beacon|eotrx\.|list-manage\.com/track)", re.I)

UNSUBSCRIBE_LINK_RE = re.compile(
    r"unsubscribe|manage\s+(your\s+)?(email\s+)?(preferences|subscription)|email\s+preferences"
    r"|opt[\s-]?out",
    re.I,
)

# Whole lines matching these are dropped when they are short
BOILERPLATE_LINE_PATTERNS = [
    re.compile(p, re.I)
    for p in (
        r"unsubscribe",
        r"manage\s+(your\s+)?(email\s+)?(preferences|subscription)",
        r"^view\s+(this\s+(post|email)\s+)?(in|on)\s+(your\s+|the\s+)?(browser|web)",
        r"^read\s+in\s+(the\s+)?app",
        r"^(share|like|comment|restack|subscribe|upgrade to paid|get the app|start writing)\b.{0,20}$",
        r"you('re| are) (receiving|getting) this",
        r"you('re| are) (currently )?a (free|paid) subscriber",
        r"forwarded this email\?",
        r"^©\s*\d{4}",
        r"substack,? inc",
        r"\d+\s+market\s+st",
    )
]

FORWARD_BANNER_RE = re.compile(r"^-{2,}\s*forwarded message\s*-{2,}$|^begin forwarded message:?$", re.I)
FORWARD_HEADER_RE = re.compile(r"^(from|date|sent|subject|to|cc):\s", re.I)

INVISIBLE_CHARS_RE = re.compile("[\u00ad\u034f\u200b\u200c\u200d\u2060\ufeff]")
INLINE_WS_RE = re.compile(r"[ \t\u00a0\u2007\u202f]+")
BRACKET_URL_RE = re.compile(r"\[\s*https?://[^\]\s]+\s*\]")
BARE_TRACKING_URL_RE = re.compile(r"https?://\S*(substack\.com/redirect|/open\?|utm_)\S*", re.I)

GENERIC_SENDER_NAMES = {"substack", "substack.com", "no-reply", "noreply", "newsletter", "the newsletter"}
GENERIC_LOCAL_PARTS = {"no-reply", "noreply", "hello", "support", "info", "newsletter", "notifications"}
GENERIC_SUBDOMAINS = {"mail", "email", "www", "news"}
SUBJECT_SPLIT_RE = re.compile(r"\s*(?:[:|]|\s[-–—]\s)\s*")
SUBJECT_BRACKET_RE = re.compile(r"^\[([^\]]{2,})\]")


def _is_tracking_pixel(img) -> bool:
    width = str(img.get("width", "")).strip().rstrip("px")
    height = str(img.get("height", "")).strip().rstrip("px")
    if width in ("0", "1") or height in ("0", "1"):
        return True
    style = (img.get("style") or "").replace(" ", "").lower()
    if "display:none" in style or "width:1px" in style or "height:1px" in style:
        return True
    return bool(TRACKING_HOST_RE.search(img.get("src") or ""))


def _strip_unsubscribe_links(soup: BeautifulSoup) -> None:
    for link in soup.find_all("a"):
        if link.decomposed:
            continue
        label = f"{link.get_text(' ', strip=True)} {link.get('href') or ''}"
        if not UNSUBSCRIBE_LINK_RE.search(label):
            continue
        # Drop the surrounding footer block when it is only a short blurb
        container = link.find_parent(["p", "td", "div", "li"])
        if container is not None and len(container.get_text(" ", strip=True)) < 300:
            container.decompose()
        else:
            link.decompose()


def _is_boilerplate_line(line: str) -> bool:
    if len(line) > 200:
        return False
    return any(pattern.search(line) for pattern in BOILERPLATE_LINE_PATTERNS)


def _drop_forward_banners(lines: List[str]) -> List[str]:
    cleaned: List[str] = []
    in_forward_header = False
    for line in lines:
        if FORWARD_BANNER_RE.match(line):
            in_forward_header = True
            continue
        if in_forward_header:
            if not line or FORWARD_HEADER_RE.match(line):
                continue
            in_forward_header = False
        cleaned.append(line)
    return cleaned


def _collapse_lines(lines: Iterable[str]) -> str:
    """Collapse runs of blank lines to a single paragraph break."""
    out: List[str] = []
    blank = False
    for line in lines:
        if not line:
            blank = bool(out)
            continue
        if blank:
            out.append("")
            blank = False
        out.append(line)
    return "\n".join(out).strip()


def clean_text_lines(text: str) -> str:
    """Whitespace, invisible-character and boilerplate-line cleanup."""
    text = INVISIBLE_CHARS_RE.sub("", text)
    text = BRACKET_URL_RE.sub("", text)
    text = BARE_TRACKING_URL_RE.sub("", text)
    lines = [INLINE_WS_RE.sub(" ", line).strip() for line in text.replace("\r\n", "\n").split("\n")]
    lines = _drop_forward_banners(lines)
    lines = ["" if line and _is_boilerplate_line(line) else line for line in lines]
    return _collapse_lines(lines)


def html_to_text(html: str) -> str:
    """Convert newsletter HTML to plain text keeping paragraph breaks."""
    soup = BeautifulSoup(html, "html.parser")

    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()
    for tag in soup(STRIP_TAGS):
        tag.decompose()
    for img in soup.find_all("img"):
        if _is_tracking_pixel(img):
            img.decompose()
    for selector in BOILERPLATE_SELECTORS:
        for tag in soup.select(selector):
            tag.decompose()
    _strip_unsubscribe_links(soup)

    for br in soup.find_all("br"):
        br.replace_with("\n")
    for tag in soup.find_all(BLOCK_TAGS):
        tag.insert_before("\n\n")
        tag.insert_after("\n\n")

    return clean_text_lines(soup.get_text())


def _plausible_name(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    name = INLINE_WS_RE.sub(" ", value.strip().strip("\"'")).strip()
    if not name or len(name) >= MAX_NAME_CHARS or not re.search(r"[A-Za-z0-9]", name):
        return None
    if name.lower() in GENERIC_SENDER_NAMES:
        return None
    return name


def _name_from_display(display: str) -> Optional[str]:
    name = _plausible_name(display)
    if name and " from " in name:
        # "Jane Doe from The Daily Brief"
        name = _plausible_name(name.split(" from ", 1)[1])
    return name


def _name_from_address(address: str) -> Optional[str]:
    if "@" not in address:
        return None
    local, domain = address.lower().rsplit("@", 1)
    labels = domain.split(".")
    if domain.endswith("substack.com") and len(labels) > 2 and labels[0] not in GENERIC_SUBDOMAINS:
        return _plausible_name(labels[0].replace("-", " ").title())
    if domain == "substack.com" and local not in GENERIC_LOCAL_PARTS:
        return _plausible_name(re.sub(r"[-_.]+", " ", local).title())
    return None


def _name_from_subject(subject: str) -> Optional[str]:
    subject = (subject or "").strip()
    bracket = SUBJECT_BRACKET_RE.match(subject)
    if bracket:
        return _plausible_name(bracket.group(1))
    parts = [p for p in SUBJECT_SPLIT_RE.split(subject) if p.strip()]
    if len(parts) >= 2 and len(parts[0]) <= 60:
        return _plausible_name(parts[0])
    return None


def derive_newsletter_name(sender: str, subject: str = "") -> str:
    """
    Work out the newsletter name from the sender or the subject line.

    Tries the sender display name, then a ``<name>.substack.com`` style
    address, then a ``"Name: headline"`` subject. Falls back to
    ``"Unknown"``.
    """
    display, address = parseaddr(sender or "")
    if "@" not in address:
        # A bare display name parses as the address
        display, address = display or address, ""
    return (
        _name_from_display(display)
        or _name_from_address(address)
        or _name_from_subject(subject)
        or UNKNOWN_NEWSLETTER
    )


def looks_like_html(body: str) -> bool:
    return bool(re.search(r"<(html|body|div|p|table|br|span|a)\b", body[:5000], re.I))


class ContentNormalizer:
    """Pure transformation from ``RawMessage`` to ``NormalizedContent``."""

    def __init__(self, max_input_chars: int = MAX_INPUT_CHARS):
        self.max_input_chars = max_input_chars

    def normalize(self, message: RawMessage) -> NormalizedContent:
        body = (message.body or "")[: self.max_input_chars]
        if message.is_html or looks_like_html(body):
            text = html_to_text(body)
        else:
            text = clean_text_lines(body)

        newsletter = derive_newsletter_name(message.sender, message.subject)
        logger.debug(
            "Message normalized",
            message_id=message.message_id,
            newsletter=newsletter,
            chars=len(text),
        )
        return NormalizedContent(clean_text=text, newsletter_name=newsletter)

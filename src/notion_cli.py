"""Notion CLI on top of the hosted Notion MCP server.

Talks to Notion through MCP tool calls (notion-search, notion-fetch, ...)
instead of the REST API, and renders Notion's XML-flavored page markup as
Markdown:
- page / db / search / comment commands
- frontmatter sync: local Markdown files remember their page via `notion-id`

Auth: OAuth against mcp.notion.com (`notion-cli auth login`), or a static
token via --token, --token-file or NOTION_TOKEN.
"""

import asyncio
import json
import logging
import os
import random
import re
import socket
import textwrap
import time
import unicodedata
import webbrowser
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, auto
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import httpx
from mcp import ClientSession, types
from mcp.client.auth import OAuthClientProvider
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.auth import OAuthClientInformationFull, OAuthClientMetadata, OAuthToken
from mcp.shared.exceptions import McpError
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse
from starlette.routing import Route

__version__ = "0.1.0"

logger = logging.getLogger("notion-cli")


# =============================================================================
# Errors
# =============================================================================


class UserError(Exception):
    """Error whose message is shown to the user as-is, without a traceback."""


class NotFoundError(UserError):
    """A name matched nothing in the search index."""


class AmbiguousNameError(UserError):
    """A name matched more than one page (or only partially matched)."""

    def __init__(self, name: str, matches: list["SearchMatch"], category: str = "page"):
        super().__init__(_format_ambiguous(name, matches, category))
        self.name = name
        self.matches = list(matches)
        self.category = category


class MalformedReferenceError(UserError):
    """A URL that carries no Notion ID."""


class AuthRequiredError(UserError):
    """No usable credentials, or the server rejected them."""


class ToolError(UserError):
    """An MCP tool call came back with isError set."""


NOT_AUTHENTICATED = "Not authenticated. Run 'notion-cli auth login' to authenticate."


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_ENDPOINT = "https://mcp.notion.com/mcp"
DEFAULT_CONFIG_DIR = Path("~/.config/notion-cli")
TOKEN_FILE_NAME = "token.json"


@dataclass(slots=True)
class NotionConfig:
    """Everything a command needs to reach Notion.

    Built once in main() and handed to the client, the token store and the
    OAuth helpers.
    """
    endpoint: str = DEFAULT_ENDPOINT
    access_token: Optional[str] = None
    config_dir: Path | None = None
    login_timeout: float = 300.0
    client_name: str = "notion-cli"
    version: str = __version__

    def __post_init__(self) -> None:
        if self.config_dir is None:
            self.config_dir = DEFAULT_CONFIG_DIR.expanduser()

    @property
    def token_path(self) -> Path:
        return Path(self.config_dir) / TOKEN_FILE_NAME

    @classmethod
    def from_env(
        cls,
        token: Optional[str] = None,
        token_file: Optional[str] = None,
    ) -> "NotionConfig":
        """Build config from CLI flags, falling back to environment variables.

        Precedence for the static token: --token-file, --token, NOTION_TOKEN.
        Without a static token the OAuth token file is used.

        Raises:
            UserError: If --token-file points at a missing or empty file.
        """
        if token_file:
            token_path = Path(token_file).expanduser()
            if not token_path.exists():
                raise UserError(f"Token file not found: {token_path}")
            token = token_path.read_text().strip()
            if not token:
                raise UserError(f"Token file is empty: {token_path}")

        token = token or os.environ.get("NOTION_TOKEN") or None
        config_dir = os.environ.get("NOTION_CLI_CONFIG_DIR")
        return cls(
            endpoint=os.environ.get("NOTION_MCP_URL") or DEFAULT_ENDPOINT,
            access_token=token,
            config_dir=Path(config_dir).expanduser() if config_dir else None,
        )


# =============================================================================
# ID System
# =============================================================================

HEX_DIGITS = set("0123456789abcdefABCDEF")

# 32 hex chars not followed by more hex, so "Decade<uuid>" yields the uuid
HEX_RUN_PATTERN = re.compile(r'[0-9a-f]{32}(?![0-9a-f])', re.IGNORECASE)
HYPHENATED_UUID_PATTERN = re.compile(
    r'[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}',
    re.IGNORECASE
)
# Hex digits with single hyphens anywhere between them
HYPHENATED_HEX_RUN_PATTERN = re.compile(r'[0-9a-f]+(?:-[0-9a-f]+)*', re.IGNORECASE)


def normalize_uuid(uuid_str: str) -> str:
    """Normalize a UUID to standard format with dashes.

    Args:
        uuid_str: UUID with or without dashes.

    Returns:
        UUID in format xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx

    Raises:
        ValueError: If input is not a valid UUID (wrong length or invalid chars).
    """
    clean = uuid_str.replace('-', '').lower()
    if len(clean) != 32:
        raise ValueError(f"Invalid UUID length: {uuid_str}")
    if not all(c in '0123456789abcdef' for c in clean):
        raise ValueError(f"Invalid UUID characters: {uuid_str}")
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


def looks_like_id(s: str) -> bool:
    """True if the whole string is a Notion ID (32 hex digits, hyphens ignored)."""
    cleaned = s.replace('-', '')
    return len(cleaned) == 32 and all(c in HEX_DIGITS for c in cleaned)


def extract_notion_uuid(s: str) -> Optional[str]:
    """Find a Notion ID in a bare ID or anywhere inside a URL.

    Handles:
    - 12345678abcdef1234567890abcdef12
    - 12345678-abcd-ef12-3456-7890abcdef12
    - https://www.notion.so/workspace/Page-Title-12345678abcdef...?v=...
    - https://www.notion.so/1234-5678abcdef... (hyphens in odd places)

    Returns:
        Normalized UUID or None if no ID is present.
    """
    if looks_like_id(s):
        return normalize_uuid(s)

    match = HEX_RUN_PATTERN.search(s) or HYPHENATED_UUID_PATTERN.search(s)
    if match:
        return normalize_uuid(match.group(0))

    # Slug words made of hex letters ("Cafe-...") can precede the ID in the
    # same run, so the ID is the last 32 digits
    for run in HYPHENATED_HEX_RUN_PATTERN.findall(s):
        digits = run.replace('-', '')
        if len(digits) >= 32:
            return normalize_uuid(digits[-32:])
    return None


class RefKind(Enum):
    """What a user-supplied page reference turned out to be."""
    ID = auto()
    URL = auto()
    NAME = auto()


@dataclass(frozen=True)
class PageRef:
    """A classified page reference.

    `id` is the canonical UUID for ID refs and None otherwise. URL refs are
    URLs from which no ID could be extracted.
    """
    kind: RefKind
    raw: str
    id: Optional[str] = None


def parse_page_ref(s: str) -> PageRef:
    """Classify an input string as an ID, a URL or a free-text name."""
    text = s.strip()
    if text.startswith(("http://", "https://")):
        uuid = extract_notion_uuid(text)
        if uuid:
            return PageRef(RefKind.ID, s, uuid)
        return PageRef(RefKind.URL, s)

    if looks_like_id(text):
        return PageRef(RefKind.ID, s, normalize_uuid(text))

    return PageRef(RefKind.NAME, s)


# =============================================================================
# Frontmatter
# =============================================================================
# Line scanner, not YAML: only unindented `key: value` lines
# are read, everything else in the block is carried along untouched.

import parsy as P

FRONTMATTER_DELIMITER = "---"
NOTION_ID_KEY = "notion-id"

# Closing delimiter: a line that is exactly ---
_CLOSING_DELIMITER_PATTERN = re.compile(r'^---[ \t]*\r?$', re.MULTILINE)

# Top-level entry: key starts in column 0 and is not a comment
_frontmatter_entry = P.seq(
    P.regex(r'[^\s#:][^:]*').map(str.strip),
    P.string(':') >> P.regex(r'.*').map(str.strip),
)


@dataclass
class Frontmatter:
    """Metadata managed by notion-cli; other keys stay in the raw block."""
    notion_id: Optional[str] = None


def _parse_frontmatter_entry(line: str) -> Optional[tuple[str, str]]:
    """Parse a top-level `key: value` line; None for anything else."""
    try:
        key, value = _frontmatter_entry.parse(line.rstrip(" \t\r"))
    except P.ParseError:
        return None
    return key, value


def _split_frontmatter(content: str) -> Optional[tuple[str, str]]:
    """Split content into (block, body), or None if there is no frontmatter.

    The block excludes both delimiter lines; the body has its leading line
    breaks removed.
    """
    trimmed = content.lstrip(" \t")
    if not trimmed.startswith(FRONTMATTER_DELIMITER):
        return None

    rest = trimmed[len(FRONTMATTER_DELIMITER):]
    if rest.startswith("\r\n"):
        rest = rest[2:]
    elif rest.startswith("\n"):
        rest = rest[1:]
    else:
        return None

    match = _CLOSING_DELIMITER_PATTERN.search(rest)
    if match is None:
        return None

    block = rest[:match.start()].removesuffix("\n").removesuffix("\r")
    body = rest[match.end():].lstrip("\r\n")
    return block, body


def parse_frontmatter(content: str) -> tuple[Frontmatter, str]:
    """Extract frontmatter and body from a Markdown document.

    Returns:
        (Frontmatter, body). Without a complete frontmatter block the
        content is returned unchanged as the body.
    """
    split = _split_frontmatter(content)
    if split is None:
        return Frontmatter(), content

    block, body = split
    fm = Frontmatter()
    for line in block.split("\n"):
        entry = _parse_frontmatter_entry(line)
        if entry and entry[0] == NOTION_ID_KEY:
            fm.notion_id = entry[1] or None
            break
    return fm, body


def _match_trailing_newline(text: str, want: bool) -> str:
    stripped = text.rstrip("\n")
    return stripped + "\n" if want else stripped


def set_frontmatter_id(content: str, notion_id: str) -> str:
    """Return content with `notion-id` set in its frontmatter.

    Updates the first top-level notion-id line in place, appends one to an
    existing block, or prepends a new block. Indented lines (nested keys) are
    never touched. The result ends with a newline iff the input did.
    """
    had_trailing_newline = content.endswith("\n")
    managed_line = f"{NOTION_ID_KEY}: {notion_id}"

    split = _split_frontmatter(content)
    if split is None:
        result = f"{FRONTMATTER_DELIMITER}\n{managed_line}\n{FRONTMATTER_DELIMITER}\n\n{content}"
        return _match_trailing_newline(result, had_trailing_newline)

    block, body = split
    lines = block.split("\n") if block else []
    for i, line in enumerate(lines):
        entry = _parse_frontmatter_entry(line)
        if entry and entry[0] == NOTION_ID_KEY:
            lines[i] = managed_line
            break
    else:
        lines.append(managed_line)

    block_text = "\n".join(lines)
    result = f"{FRONTMATTER_DELIMITER}\n{block_text}\n{FRONTMATTER_DELIMITER}\n\n{body}"
    return _match_trailing_newline(result, had_trailing_newline)


# =============================================================================
# Search Results & Name Resolution
# =============================================================================

MAX_AMBIGUOUS_LISTED = 5

# Object types accepted per category (search reports databases as data sources)
CATEGORY_TYPES = {
    "page": {"page"},
    "database": {"database", "data_source"},
}


@dataclass(frozen=True)
class SearchMatch:
    """One entry of a notion-search result."""
    id: str
    title: str
    url: str = ""
    object_type: str = ""

    @classmethod
    def from_dict(cls, item: dict) -> "SearchMatch":
        return cls(
            id=str(item.get("id") or ""),
            title=str(item.get("title") or ""),
            url=str(item.get("url") or ""),
            object_type=str(
                item.get("object_type") or item.get("type") or item.get("object") or ""
            ),
        )


SearchFn = Callable[[str], list[SearchMatch]]


def filter_matches(matches: list[SearchMatch], category: str) -> list[SearchMatch]:
    """Keep matches of the given category, preserving search order."""
    allowed = CATEGORY_TYPES.get(category, {category})
    return [m for m in matches if m.object_type in allowed]


def _format_ambiguous(name: str, matches: list[SearchMatch], category: str) -> str:
    lines = [f'ambiguous {category} name "{name}", matching {category}s:']
    for m in matches[:MAX_AMBIGUOUS_LISTED]:
        lines.append(f"  {m.title} ({m.url or m.id})")
    if len(matches) > MAX_AMBIGUOUS_LISTED:
        lines.append(f"  ... and {len(matches) - MAX_AMBIGUOUS_LISTED} more")
    lines.append(f"Use a {category} URL or ID to be specific.")
    return "\n".join(lines)


def resolve_by_name(name: str, search: SearchFn, category: str = "page") -> str:
    """Resolve a free-text name to an ID via search.

    Only a single case-insensitive exact title match resolves. Partial
    (substring) matches are reported, never picked.

    Args:
        name: Title to look for.
        search: Search collaborator, called once with `name`.
        category: "page" or "database".

    Returns:
        The ID of the single exact match.

    Raises:
        AmbiguousNameError: Several exact matches, or only partial matches.
        NotFoundError: Nothing matched at all.
    """
    candidates = filter_matches(search(name), category)
    wanted = name.casefold()

    exact = [m for m in candidates if m.title.casefold() == wanted]
    if len(exact) == 1:
        return exact[0].id
    if exact:
        raise AmbiguousNameError(name, exact, category)

    partial = [m for m in candidates if wanted in m.title.casefold()]
    if not partial:
        raise NotFoundError(f"{category} not found: {name}")
    raise AmbiguousNameError(name, partial, category)


def _resolve_ref(ref_input: str, search: SearchFn, category: str) -> str:
    ref = parse_page_ref(ref_input)
    if ref.kind is RefKind.ID:
        return ref.id
    if ref.kind is RefKind.URL:
        raise MalformedReferenceError(
            f"could not extract {category} ID from URL: {ref_input}\n"
            f"Use the {category} ID directly instead."
        )
    return resolve_by_name(ref.raw.strip(), search, category)


def resolve_page_id(ref_input: str, search: SearchFn) -> str:
    """Resolve a page URL, ID or name to a page ID."""
    return _resolve_ref(ref_input, search, "page")


def resolve_database_id(ref_input: str, search: SearchFn) -> str:
    """Resolve a database URL, ID or name to a database ID."""
    return _resolve_ref(ref_input, search, "database")


# =============================================================================
# Notion Markup → Markdown
# =============================================================================

from bs4 import BeautifulSoup
from bs4.element import NavigableString, PreformattedString, Tag

CALLOUT_DEFAULT_ICON = "💡"
SLACK_CHANNEL_SCHEME = "slackChannel://"
QUOTE_BLOCK_STARTS = (">", "- ", "# ", "## ", "### ")

# 3+ newlines (whitespace-only lines count as blank) → one blank line
_EXCESS_BLANK_LINES = re.compile(r'\n(?:[ \t]*\n){2,}')


def _make_text_cleaner():
    """Build the parser that strips Notion annotations from text nodes.

    - `{color="gray"}` annotations (and the whitespace before them) go away
    - `[#chan]({{slackChannel://...}})` becomes `#chan`
    - `{{https://...}}` wrappers are unwrapped
    """
    color_annotation = P.regex(r'\s*\{color="[^"]+"\}').result('')

    @P.generate
    def slack_link():
        yield P.string('[')
        label = yield P.regex(r'[^\]]+')
        yield P.string('](' + '{{' + SLACK_CHANNEL_SCHEME)
        yield P.regex(r'[^}]+')
        yield P.string('}})')
        return label

    url_wrapper = P.string('{{') >> P.regex(r'[^}]+') << P.string('}}')

    # color_annotation already failed at the start of this run, so no
    # annotation follows it; consume the whole run in one step
    whitespace_run = P.regex(r'\s+')

    # Everything that cannot start an annotation, batched
    literal_run = P.regex(r'[^\s{\[]+')

    return (
        color_annotation |
        whitespace_run |
        slack_link |
        url_wrapper |
        literal_run |
        P.any_char
    ).many().concat()


_text_cleaner = _make_text_cleaner()


def clean_notion_text(text: str) -> str:
    """Remove Notion's inline annotations from a text node."""
    if not text:
        return text
    try:
        return _text_cleaner.parse(text)
    except P.ParseError as e:
        logger.warning(f"Text annotation parse error: {e}")
        return text


def clean_notion_url(url: str) -> str:
    """Strip the {{ }} wrapper Notion puts around URLs."""
    return url.removeprefix("{{").removesuffix("}}")


class NodeKind(Enum):
    """The closed set of parse-tree node kinds the renderer knows about."""
    TEXT = auto()
    ELEMENT = auto()
    OTHER = auto()  # comments, doctypes, CDATA: no output


def node_kind(node) -> NodeKind:
    if isinstance(node, Tag):
        return NodeKind.ELEMENT
    if isinstance(node, PreformattedString):
        return NodeKind.OTHER
    if isinstance(node, NavigableString):
        return NodeKind.TEXT
    return NodeKind.OTHER


def _attr(node: Tag, name: str) -> str:
    value = node.get(name, "")
    if isinstance(value, list):
        return " ".join(value)
    return value or ""


def _text_content(node: Tag) -> str:
    return clean_notion_text(node.get_text()).strip()


class _RenderContext:
    """Output buffer plus the one bit of traversal state: inside a callout."""

    def __init__(self, in_quote: bool = False):
        self.parts: list[str] = []
        self.in_quote = in_quote

    def write(self, text: str) -> None:
        self.parts.append(text)

    def getvalue(self) -> str:
        return "".join(self.parts)

    def render_node(self, node) -> None:
        kind = node_kind(node)
        if kind is NodeKind.TEXT:
            self.write(clean_notion_text(str(node)))
        elif kind is NodeKind.ELEMENT:
            handler = _TAG_HANDLERS.get(node.name, _render_children)
            handler(self, node)

    def render_children(self, node: Tag) -> None:
        for child in node.children:
            self.render_node(child)


def _render_children(ctx: _RenderContext, node: Tag) -> None:
    ctx.render_children(node)


def _skip(ctx: _RenderContext, node: Tag) -> None:
    pass


def _quote_lines(first_prefix: str, text: str) -> str:
    """Prefix every line with `> `; the first line also gets `first_prefix`."""
    lines: list[str] = []
    for line in text.strip().split("\n"):
        line = line.strip()
        if not line and lines and not lines[-1]:
            continue
        lines.append(line)

    # A leading block (nested quote, list, heading) starts below the icon
    if lines[0].startswith(QUOTE_BLOCK_STARTS):
        quoted = [f"> {first_prefix}"]
        quoted.extend(f"> {line}".rstrip() for line in lines)
    else:
        quoted = [f"> {first_prefix} {lines[0]}".rstrip()]
        quoted.extend(f"> {line}".rstrip() for line in lines[1:])
    return "\n".join(quoted)


def _render_callout(ctx: _RenderContext, node: Tag) -> None:
    icon = _attr(node, "icon")
    # Custom emoji (notion://custom_emoji/...) can't be shown in a terminal
    if not icon or icon.startswith("notion://"):
        icon = CALLOUT_DEFAULT_ICON

    inner = _RenderContext(in_quote=True)
    inner.render_children(node)
    ctx.write(f"\n\n{_quote_lines(icon, inner.getvalue())}\n\n")


def _render_column(ctx: _RenderContext, node: Tag) -> None:
    inner = _RenderContext()
    inner.render_children(node)
    content = textwrap.dedent(inner.getvalue()).strip()
    ctx.write(f"\n\n{content}\n\n")


def _render_page_link(ctx: _RenderContext, node: Tag) -> None:
    url = clean_notion_url(_attr(node, "url"))
    title = _text_content(node) or "page"
    if ctx.in_quote:
        ctx.write(f"**[{title}]({url})**")
    else:
        ctx.write(f"\n- [📄 {title}]({url})")


def _render_database_link(ctx: _RenderContext, node: Tag) -> None:
    url = clean_notion_url(_attr(node, "url"))
    title = _text_content(node) or "database"
    ctx.write(f"\n\n**[📊 {title}]({url})**\n\n")


def _render_mention_page(ctx: _RenderContext, node: Tag) -> None:
    url = clean_notion_url(_attr(node, "url"))
    label = _text_content(node) or "→ page"
    if ctx.in_quote:
        ctx.write(f"[{label}]({url})")
    else:
        ctx.write(f"\n- [{label}]({url})")


def _render_link(ctx: _RenderContext, node: Tag) -> None:
    href = clean_notion_url(_attr(node, "href"))
    text = _text_content(node)
    if href.startswith(SLACK_CHANNEL_SCHEME):
        ctx.write(text)
    else:
        ctx.write(f"[{text}]({href})")


def _render_block(ctx: _RenderContext, node: Tag) -> None:
    ctx.render_children(node)
    ctx.write("\n")


def _render_line_break(ctx: _RenderContext, node: Tag) -> None:
    ctx.write("\n")
    ctx.render_children(node)


def _render_list(ctx: _RenderContext, node: Tag) -> None:
    ctx.write("\n\n")
    ctx.render_children(node)


def _render_list_item(ctx: _RenderContext, node: Tag) -> None:
    ctx.write("- ")
    ctx.render_children(node)
    ctx.write("\n")


def _wrapped(marker: str):
    def handler(ctx: _RenderContext, node: Tag) -> None:
        ctx.write(marker)
        ctx.render_children(node)
        ctx.write(marker)
    return handler


def _heading(level: int):
    prefix = "#" * level

    def handler(ctx: _RenderContext, node: Tag) -> None:
        ctx.write(f"\n\n{prefix} ")
        ctx.render_children(node)
        ctx.write("\n")
    return handler


_TAG_HANDLERS: dict[str, Callable[[_RenderContext, Tag], None]] = {
    "callout": _render_callout,
    "columns": _render_children,
    "column": _render_column,
    "page": _render_page_link,
    "database": _render_database_link,
    "mention-page": _render_mention_page,
    "span": _render_children,
    "empty-block": _skip,
    "unknown": _skip,
    "omitted": _skip,
    "p": _render_block,
    "div": _render_block,
    "br": _render_line_break,
    "a": _render_link,
    "strong": _wrapped("**"),
    "b": _wrapped("**"),
    "em": _wrapped("*"),
    "i": _wrapped("*"),
    "code": _wrapped("`"),
    "h1": _heading(1),
    "h2": _heading(2),
    "h3": _heading(3),
    "ul": _render_list,
    "ol": _render_list,
    "li": _render_list_item,
}


def notion_to_markdown(content: str) -> str:
    """Convert Notion's XML-flavored page markup to Markdown.

    Uses BeautifulSoup's html.parser builder, which tolerates unclosed and
    self-closing custom tags. Never raises: if parsing or rendering fails the
    input is returned unchanged.

    Args:
        content: The inside of a <content> block from notion-fetch.

    Returns:
        Markdown text with excess blank lines collapsed and ends trimmed.
    """
    try:
        soup = BeautifulSoup(content, "html.parser")
        ctx = _RenderContext()
        ctx.render_children(soup)
    except Exception as e:
        logger.warning(f"Could not render Notion markup, showing it raw: {type(e).__name__}: {e}")
        return content

    result = _EXCESS_BLANK_LINES.sub("\n\n", ctx.getvalue())
    return result.strip()


# =============================================================================
# Fetch Response Parsing
# =============================================================================

PAGE_URL_PATTERN = re.compile(r'<page url="\{\{([^}]+)\}\}"')
ANCESTOR_PATH_PATTERN = re.compile(r'<ancestor-path>(.*?)</ancestor-path>', re.DOTALL)
# parent-page is depth 1, ancestor-N-page is depth N
ANCESTOR_TAG_PATTERN = re.compile(r'^(?:parent|ancestor-(\d+))-page$')
CONTENT_PATTERN = re.compile(r'<content>\s*(.*?)\s*</content>', re.DOTALL)
VIEW_TAG_PATTERN = re.compile(r'<view url="[^"]*">')
DATA_SOURCE_URL_PATTERN = re.compile(
    r'collection://([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})',
    re.IGNORECASE
)
DATABASE_TITLE_PREFIX = "The title of this Database is:"


@dataclass(frozen=True)
class Ancestor:
    title: str
    url: str


@dataclass(frozen=True)
class ResponseEnvelope:
    """Metadata and rendered body of a notion-fetch response.

    `ancestors` run from the workspace root down to the direct parent.
    """
    title: str = ""
    url: str = ""
    ancestors: tuple[Ancestor, ...] = ()
    object_type: str = ""
    created: str = ""
    body: str = ""

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "url": self.url,
            "ancestors": [asdict(a) for a in self.ancestors],
            "type": self.object_type,
            "created": self.created,
            "content": self.body,
        }


def _extract_tag_block(content: str, tag: str) -> Optional[str]:
    """Return the stripped text between <tag> and </tag>, if both exist."""
    open_tag = f"<{tag}>"
    start = content.find(open_tag)
    if start == -1:
        return None
    start += len(open_tag)
    end = content.find(f"</{tag}>", start)
    if end == -1:
        return None
    return content[start:end].strip()


def _parse_ancestors(content: str) -> tuple[Ancestor, ...]:
    match = ANCESTOR_PATH_PATTERN.search(content)
    if not match:
        return ()

    soup = BeautifulSoup(match.group(1), "html.parser")
    ranked: list[tuple[int, Ancestor]] = []
    for tag in soup.find_all(ANCESTOR_TAG_PATTERN):
        depth = ANCESTOR_TAG_PATTERN.match(tag.name).group(1)
        ranked.append((
            int(depth) if depth else 1,
            Ancestor(title=_attr(tag, "title"), url=clean_notion_url(_attr(tag, "url"))),
        ))

    # Notion lists the nearest ancestor first; show the root first
    ranked.sort(key=lambda item: item[0], reverse=True)
    return tuple(ancestor for _, ancestor in ranked)


def _load_json_block(content: str, tag: str) -> Any:
    raw = _extract_tag_block(content, tag)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        logger.debug(f"Ignoring malformed <{tag}> JSON: {e}")
        return None


def format_database_content(content: str) -> str:
    """Summarize a database fetch response as Markdown.

    Produces a `## Schema` table from <data-source-state> and a `## Views`
    list from the <view> blocks.
    """
    out: list[str] = []

    state = _load_json_block(content, "data-source-state")
    if isinstance(state, dict):
        out.append("## Schema\n\n")
        out.append("| Column | Type |\n")
        out.append("|--------|------|\n")
        schema = state.get("schema") or {}
        props = schema.values() if isinstance(schema, dict) else schema
        for prop in props:
            if not isinstance(prop, dict):
                continue
            type_str = prop.get("type", "")
            options = [
                opt.get("name", "") for opt in prop.get("options") or []
                if isinstance(opt, dict)
            ]
            if options:
                type_str = f"{type_str} ({', '.join(options)})"
            out.append(f"| {prop.get('name', '')} | {type_str} |\n")
        out.append("\n")

    if "<views>" in content:
        out.append("## Views\n\n")
        for match in VIEW_TAG_PATTERN.finditer(content):
            end = content.find("</view>", match.end())
            if end == -1:
                continue
            try:
                view = json.loads(content[match.end():end].strip())
            except json.JSONDecodeError:
                continue
            if isinstance(view, dict):
                out.append(f"- **{view.get('name', '')}** ({view.get('type', '')})\n")
        out.append("\n")

    return "".join(out)


def parse_notion_response(content: str) -> ResponseEnvelope:
    """Split a notion-fetch response into metadata and a Markdown body.

    Pages: URL from <page url=...>, breadcrumbs from <ancestor-path>, title
    from <properties> JSON, body from <content> rendered to Markdown.
    Databases (no <content>, but a <database> tag): title line plus a
    schema/views summary. Anything else comes back raw with no metadata.
    """
    url = ""
    title = ""
    created = ""

    match = PAGE_URL_PATTERN.search(content)
    if match:
        url = match.group(1)

    ancestors = _parse_ancestors(content)

    props = _load_json_block(content, "properties")
    if isinstance(props, dict):
        if isinstance(props.get("Name"), str):
            title = props["Name"]
        if not title and isinstance(props.get("title"), str):
            title = props["title"]
        if isinstance(props.get("url"), str):
            url = clean_notion_url(props["url"])
        if isinstance(props.get("Created"), str):
            created = props["Created"]

    content_match = CONTENT_PATTERN.search(content)
    if content_match:
        return ResponseEnvelope(
            title=title,
            url=url,
            ancestors=ancestors,
            created=created,
            body=notion_to_markdown(content_match.group(1)),
        )

    if "<database" in content:
        for line in content.splitlines():
            if line.startswith(DATABASE_TITLE_PREFIX):
                title = line[len(DATABASE_TITLE_PREFIX):].strip()
                break
        return ResponseEnvelope(
            title=title,
            url=url,
            ancestors=ancestors,
            object_type="database",
            created=created,
            body=format_database_content(content),
        )

    return ResponseEnvelope(body=content)


def extract_data_source_id(content: str) -> str:
    """Return the first collection:// data source ID in a fetch response, or ""."""
    match = DATA_SOURCE_URL_PATTERN.search(content)
    return match.group(1).lower() if match else ""


# =============================================================================
# Token Storage
# =============================================================================

TOKEN_REFRESH_MARGIN = timedelta(minutes=5)


@dataclass
class StoredToken:
    access_token: str
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    saved_at: Optional[datetime] = None
    client_id: Optional[str] = None

    def expires_within(self, margin: timedelta, now: Optional[datetime] = None) -> bool:
        """True if the token is expired or expires within `margin`."""
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expires_at <= now + margin

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_within(timedelta(0), now)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class FileTokenStore:
    """OAuth tokens and client registration in one JSON file (mode 0600).

    Implements the MCP SDK's TokenStorage protocol (async get/set methods)
    plus synchronous helpers for the auth commands.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _load(self) -> dict:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            raise UserError(f"Corrupt token file {self.path}: {e}") from e
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict) -> None:
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2))
        os.chmod(self.path, 0o600)

    def has_token(self) -> bool:
        return bool(self._load().get("access_token"))

    def read_token(self) -> StoredToken:
        """Load the stored token.

        Raises:
            AuthRequiredError: If no token has been saved.
        """
        data = self._load()
        if not data.get("access_token"):
            raise AuthRequiredError(NOT_AUTHENTICATED)
        client_info = data.get("client_info") or {}
        return StoredToken(
            access_token=data["access_token"],
            token_type=data.get("token_type") or "Bearer",
            refresh_token=data.get("refresh_token"),
            expires_at=_parse_timestamp(data.get("expires_at")),
            saved_at=_parse_timestamp(data.get("saved_at")),
            client_id=client_info.get("client_id"),
        )

    def read_client_info(self) -> dict:
        return self._load().get("client_info") or {}

    def save_oauth_token(self, token: OAuthToken) -> None:
        data = self._load()
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=token.expires_in) if token.expires_in else None
        data.update({
            "access_token": token.access_token,
            "token_type": token.token_type,
            # Token endpoints may omit the refresh token on refresh
            "refresh_token": token.refresh_token or data.get("refresh_token"),
            "scope": token.scope,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "saved_at": now.isoformat(),
        })
        self._save(data)

    def clear(self) -> bool:
        """Delete the token file. Returns False if there was nothing to delete."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True

    def clear_client_info(self) -> None:
        data = self._load()
        if data.pop("client_info", None) is not None:
            self._save(data)

    # --- TokenStorage protocol ---

    async def get_tokens(self) -> Optional[OAuthToken]:
        data = self._load()
        if not data.get("access_token"):
            return None
        expires_in = None
        expires_at = _parse_timestamp(data.get("expires_at"))
        if expires_at is not None:
            expires_in = max(0, int((expires_at - datetime.now(timezone.utc)).total_seconds()))
        return OAuthToken(
            access_token=data["access_token"],
            token_type="Bearer",
            expires_in=expires_in,
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope"),
        )

    async def set_tokens(self, tokens: OAuthToken) -> None:
        self.save_oauth_token(tokens)

    async def get_client_info(self) -> Optional[OAuthClientInformationFull]:
        info = self.read_client_info()
        if not info:
            return None
        return OAuthClientInformationFull.model_validate(info)

    async def set_client_info(self, client_info: OAuthClientInformationFull) -> None:
        data = self._load()
        data["client_info"] = client_info.model_dump(mode="json", exclude_none=True)
        self._save(data)


# =============================================================================
# MCP Client
# =============================================================================

MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_JITTER_MAX = 0.5  # seconds
READ_TIMEOUT = timedelta(seconds=60)

NOTION_URL_PATTERN = re.compile(r'https://www\.notion\.so/[^\s"\'<>)\]]+')


def _compute_retry_delay(attempt: int, retry_after: float | None = None) -> float:
    """Compute delay before retry with exponential backoff + jitter.

    Args:
        attempt: Zero-based retry attempt number.
        retry_after: Retry-After header value from server, if present.

    Returns:
        Delay in seconds.
    """
    if retry_after is not None:
        base = retry_after
    else:
        base = RETRY_BASE_DELAY * (2 ** attempt)
    jitter = random.uniform(0, RETRY_JITTER_MAX)
    return base + jitter


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _http_error_detail(e: httpx.HTTPStatusError, max_len: int = 300) -> str:
    """Extract error detail from an httpx HTTPStatusError, with truncation."""
    try:
        body = e.response.text
    except Exception:
        body = str(e)
    return body[:max_len] if len(body) > max_len else body


def _find_exception(exc: BaseException, kinds) -> Optional[BaseException]:
    """Depth-first search of exception groups and causes for `kinds`.

    anyio task groups inside the MCP transports wrap the interesting error
    in one or more ExceptionGroups.
    """
    if isinstance(exc, kinds):
        return exc
    if isinstance(exc, BaseExceptionGroup):
        for inner in exc.exceptions:
            found = _find_exception(inner, kinds)
            if found is not None:
                return found
    if exc.__cause__ is not None:
        return _find_exception(exc.__cause__, kinds)
    return None


def _translate_transport_error(exc: BaseException) -> Optional[UserError]:
    """Map an error escaping an MCP session to a user-facing error, if known."""
    user_error = _find_exception(exc, UserError)
    if user_error is not None:
        return user_error

    status_error = _find_exception(exc, httpx.HTTPStatusError)
    if status_error is not None:
        status = status_error.response.status_code
        if status == 401:
            return AuthRequiredError(NOT_AUTHENTICATED)
        return UserError(f"HTTP {status}: {_http_error_detail(status_error, 100)}")

    mcp_error = _find_exception(exc, McpError)
    if mcp_error is not None:
        return UserError(f"MCP error: {mcp_error}")

    connect_error = _find_exception(exc, httpx.TransportError)
    if connect_error is not None:
        return UserError(f"Cannot reach Notion MCP server: {connect_error}")
    return None


def _is_rate_limited(exc: BaseException) -> Optional[httpx.HTTPStatusError]:
    status_error = _find_exception(exc, httpx.HTTPStatusError)
    if status_error is not None and status_error.response.status_code == 429:
        return status_error
    return None


def _tool_text(result: types.CallToolResult) -> str:
    """First text block of a tool result ("" if there is none)."""
    for block in result.content:
        if isinstance(block, types.TextContent):
            return block.text
    return ""


def _client_metadata(config: NotionConfig, redirect_uri: str) -> OAuthClientMetadata:
    return OAuthClientMetadata(
        client_name=config.client_name,
        redirect_uris=[redirect_uri],
        grant_types=["authorization_code", "refresh_token"],
        response_types=["code"],
        token_endpoint_auth_method="none",
    )


async def _refuse_interactive_login(authorization_url: str) -> None:
    raise AuthRequiredError(NOT_AUTHENTICATED)


async def _no_callback() -> tuple[str, Optional[str]]:
    raise AuthRequiredError(NOT_AUTHENTICATED)


@dataclass
class FetchResult:
    content: str
    title: str = ""
    url: str = ""
    object_type: str = ""


@dataclass
class CreatedPage:
    id: str
    url: str = ""


@dataclass
class Comment:
    id: str
    text: str
    author: str = ""
    created_time: str = ""
    discussion_id: str = ""

    @classmethod
    def from_dict(cls, item: dict) -> "Comment":
        text = item.get("text") or item.get("content") or ""
        if not text and isinstance(item.get("rich_text"), list):
            text = "".join(
                str(part.get("plain_text") or "")
                for part in item["rich_text"] if isinstance(part, dict)
            )
        author = item.get("author") or item.get("created_by") or ""
        if isinstance(author, dict):
            author = author.get("name") or author.get("id") or ""
        return cls(
            id=str(item.get("id") or ""),
            text=str(text),
            author=str(author),
            created_time=str(item.get("created_time") or ""),
            discussion_id=str(item.get("discussion_id") or ""),
        )


class NotionClient:
    """Blocking facade over the Notion MCP server.

    Every call opens a streamable-HTTP MCP session, initializes it, runs
    one request and closes it again.
    """

    def __init__(self, config: NotionConfig, token_store: Optional[FileTokenStore] = None):
        self.config = config
        self.token_store = token_store or FileTokenStore(config.token_path)

    def _headers(self) -> dict[str, str]:
        if self.config.access_token:
            return {"Authorization": f"Bearer {self.config.access_token}"}
        return {}

    def _auth(self) -> Optional[httpx.Auth]:
        if self.config.access_token:
            return None
        if not self.token_store.has_token():
            raise AuthRequiredError(NOT_AUTHENTICATED)
        # Stored tokens only; a full browser login belongs to `auth login`
        return OAuthClientProvider(
            server_url=self.config.endpoint,
            client_metadata=_client_metadata(self.config, "http://localhost/callback"),
            storage=self.token_store,
            redirect_handler=_refuse_interactive_login,
            callback_handler=_no_callback,
        )

    async def _with_session(self, action: Callable[[ClientSession], Awaitable[Any]]) -> Any:
        async with streamablehttp_client(
            self.config.endpoint,
            headers=self._headers(),
            auth=self._auth(),
        ) as (read, write, _):
            async with ClientSession(
                read,
                write,
                read_timeout_seconds=READ_TIMEOUT,
                client_info=types.Implementation(
                    name=self.config.client_name, version=self.config.version
                ),
            ) as session:
                await session.initialize()
                return await action(session)

    def _run(self, action: Callable[[ClientSession], Awaitable[Any]]) -> Any:
        """Run one session action, retrying on 429 with backoff."""
        for attempt in range(MAX_RETRIES):
            try:
                return asyncio.run(self._with_session(action))
            except Exception as e:
                rate_limited = _is_rate_limited(e)
                if rate_limited is not None and attempt < MAX_RETRIES - 1:
                    delay = _compute_retry_delay(attempt, _retry_after(rate_limited.response))
                    logger.warning(f"Rate limited, waiting {delay:.1f}s (attempt {attempt + 1})")
                    time.sleep(delay)
                    continue
                translated = _translate_transport_error(e)
                if translated is None:
                    raise
                raise translated from None

        raise UserError(f"Max retries ({MAX_RETRIES}) exceeded")

    def call_tool(self, name: str, arguments: dict) -> str:
        """Call an MCP tool and return its text output.

        Raises:
            ToolError: If the tool reports an error.
        """
        logger.debug(f"Calling {name} with {json.dumps(arguments)[:200]}")
        result = self._run(lambda session: session.call_tool(name, arguments))
        text = _tool_text(result)
        if result.isError:
            raise ToolError(f"{name} failed: {text or 'unknown error'}")
        return text

    def list_tools(self) -> list[types.Tool]:
        result = self._run(lambda session: session.list_tools())
        return list(result.tools)

    def search(self, query: str, content_search_mode: str = "workspace_search") -> list[SearchMatch]:
        arguments = {"query": query}
        if content_search_mode:
            arguments["content_search_mode"] = content_search_mode
        text = self.call_tool("notion-search", arguments)
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise UserError(f"Unexpected search response: {e}") from e

        results = data.get("results", []) if isinstance(data, dict) else data
        if not isinstance(results, list):
            return []
        return [SearchMatch.from_dict(item) for item in results if isinstance(item, dict)]

    def fetch(self, id: str) -> FetchResult:
        """Fetch a page or database. Content is Notion's markup, unrendered."""
        text = self.call_tool("notion-fetch", {"id": id})
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return FetchResult(content=text)

        if isinstance(data, dict) and isinstance(data.get("text"), str):
            metadata = data.get("metadata") or {}
            return FetchResult(
                content=data["text"],
                title=str(data.get("title") or ""),
                url=str(data.get("url") or ""),
                object_type=str(metadata.get("type") or "") if isinstance(metadata, dict) else "",
            )
        return FetchResult(content=text)

    def create_page(
        self,
        title: str,
        content: str = "",
        parent_page_id: Optional[str] = None,
        parent_data_source_id: Optional[str] = None,
        properties: Optional[dict[str, str]] = None,
    ) -> CreatedPage:
        page: dict[str, Any] = {"properties": {"title": title, **(properties or {})}}
        if content:
            page["content"] = content

        arguments: dict[str, Any] = {"pages": [page]}
        if parent_page_id:
            arguments["parent"] = {"page_id": parent_page_id}
        elif parent_data_source_id:
            arguments["parent"] = {"data_source_id": parent_data_source_id}

        return _parse_created_page(self.call_tool("notion-create-pages", arguments))

    def update_page(
        self,
        page_id: str,
        command: str,
        new_content: Optional[str] = None,
        selection: Optional[str] = None,
        new_str: Optional[str] = None,
        properties: Optional[dict[str, str]] = None,
    ) -> str:
        """Run a notion-update-page command.

        Args:
            page_id: Target page.
            command: replace_content, replace_content_range,
                insert_content_after or update_properties.
            new_content: Replacement for replace_content.
            selection: "start...end" selection for the range commands.
            new_str: Text inserted by the range commands.
            properties: Property values for update_properties.
        """
        data: dict[str, Any] = {"page_id": page_id, "command": command}
        if new_content is not None:
            data["new_str"] = new_content
        if selection is not None:
            data["selection_with_ellipsis"] = selection
        if new_str is not None:
            data["new_str"] = new_str
        if properties:
            data["properties"] = properties
        return self.call_tool("notion-update-page", {"data": data})

    def get_comments(self, page_id: str) -> list[Comment]:
        text = self.call_tool("notion-get-comments", {"page_id": page_id})
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise UserError(f"Unexpected comments response: {e}") from e

        if isinstance(data, dict):
            data = data.get("comments") or data.get("results") or []
        if not isinstance(data, list):
            return []
        return [Comment.from_dict(item) for item in data if isinstance(item, dict)]

    def create_comment(self, page_id: str, text: str) -> str:
        return self.call_tool("notion-create-comment", {"page_id": page_id, "text": text})

    def resolve_data_source_id(self, database_id: str) -> str:
        """Find the data source (collection) behind a database.

        Raises:
            UserError: If the fetch response names no collection:// source.
        """
        fetched = self.fetch(database_id)
        data_source_id = extract_data_source_id(fetched.content)
        if not data_source_id:
            raise UserError(f"could not find data source ID for database: {database_id}")
        return data_source_id


def _parse_created_page(text: str) -> CreatedPage:
    """Pull id/url out of a notion-create-pages response.

    The response is usually JSON ({"id", "url"} or {"pages": [...]}); when it
    isn't, fall back to the first notion.so URL in the text.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, dict) and isinstance(data.get("pages"), list) and data["pages"]:
        data = data["pages"][0]
    if isinstance(data, list) and data:
        data = data[0]

    if isinstance(data, dict) and (data.get("id") or data.get("url")):
        url = str(data.get("url") or "")
        page_id = str(data.get("id") or "") or extract_notion_uuid(url) or ""
        return CreatedPage(id=page_id, url=url)

    match = NOTION_URL_PATTERN.search(text)
    if match:
        url = match.group(0)
        return CreatedPage(id=extract_notion_uuid(url) or "", url=url)
    return CreatedPage(id="", url="")


# =============================================================================
# OAuth
# =============================================================================

CALLBACK_PATH = "/callback"

CALLBACK_PAGE = """<!DOCTYPE html>
<html><body style="font-family: sans-serif; text-align: center; margin-top: 4em">
<h2>{heading}</h2><p>{message}</p>
</body></html>"""


class _CallbackServer:
    """Loopback HTTP server that receives the OAuth redirect."""

    def __init__(self):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.bind(("127.0.0.1", 0))
        self.port = self.sock.getsockname()[1]
        self.result: Optional[asyncio.Future] = None
        self.server = None
        self._task: Optional[asyncio.Task] = None

    @property
    def redirect_uri(self) -> str:
        return f"http://localhost:{self.port}{CALLBACK_PATH}"

    async def start(self) -> None:
        import uvicorn

        self.result = asyncio.get_running_loop().create_future()
        app = Starlette(routes=[Route(CALLBACK_PATH, self._handle_callback)])
        self.server = uvicorn.Server(uvicorn.Config(app, log_level="warning"))
        self._task = asyncio.create_task(self.server.serve(sockets=[self.sock]))

    async def _handle_callback(self, request: Request) -> HTMLResponse:
        params = request.query_params
        if self.result.done():
            return HTMLResponse(CALLBACK_PAGE.format(
                heading="Already handled", message="You can close this window."))

        if "error" in params:
            detail = params.get("error_description") or params["error"]
            self.result.set_exception(UserError(f"Authorization failed: {detail}"))
            return HTMLResponse(CALLBACK_PAGE.format(
                heading="Authorization failed", message=detail), status_code=400)

        code = params.get("code")
        if not code:
            self.result.set_exception(UserError("Authorization failed: no code in callback"))
            return HTMLResponse(CALLBACK_PAGE.format(
                heading="Authorization failed", message="Missing code."), status_code=400)

        self.result.set_result((code, params.get("state")))
        return HTMLResponse(CALLBACK_PAGE.format(
            heading="Authenticated", message="You can close this window and return to the terminal."))

    async def wait(self, timeout: float) -> tuple[str, Optional[str]]:
        try:
            return await asyncio.wait_for(asyncio.shield(self.result), timeout)
        except asyncio.TimeoutError:
            raise UserError(f"Timed out after {timeout:.0f}s waiting for authorization") from None

    async def stop(self) -> None:
        if self.server is not None:
            self.server.should_exit = True
        if self._task is not None:
            await self._task
        self.sock.close()


async def _run_oauth_flow(config: NotionConfig, store: FileTokenStore) -> None:
    callback = _CallbackServer()

    async def redirect_handler(authorization_url: str) -> None:
        print_info("Opening browser for authorization...")
        print_info(f"If it does not open, visit:\n{authorization_url}")
        webbrowser.open(authorization_url)

    async def callback_handler() -> tuple[str, Optional[str]]:
        return await callback.wait(config.login_timeout)

    provider = OAuthClientProvider(
        server_url=config.endpoint,
        client_metadata=_client_metadata(config, callback.redirect_uri),
        storage=store,
        redirect_handler=redirect_handler,
        callback_handler=callback_handler,
        timeout=config.login_timeout,
    )

    try:
        await callback.start()
        async with streamablehttp_client(config.endpoint, auth=provider) as (read, write, _):
            async with ClientSession(
                read,
                write,
                client_info=types.Implementation(name=config.client_name, version=config.version),
            ) as session:
                await session.initialize()
    finally:
        await callback.stop()


def run_oauth_flow(config: NotionConfig, store: FileTokenStore) -> None:
    """Interactive browser login; tokens land in `store`.

    Registers a fresh OAuth client every time, since the loopback redirect
    port changes between runs.

    Raises:
        UserError: On timeout, denial or transport failure.
    """
    store.clear_client_info()
    try:
        asyncio.run(_run_oauth_flow(config, store))
    except Exception as e:
        translated = _translate_transport_error(e)
        if translated is None:
            raise
        raise translated from None

    if not store.has_token():
        raise UserError("Login finished without receiving a token")


def _authorization_metadata_url(endpoint: str) -> str:
    return str(httpx.URL(endpoint).join("/.well-known/oauth-authorization-server"))


def refresh_token(config: NotionConfig, store: FileTokenStore) -> StoredToken:
    """Exchange the stored refresh token for a new access token.

    Returns:
        The newly saved token.

    Raises:
        AuthRequiredError: If there is no stored token or client registration.
        UserError: If the token endpoint rejects the refresh.
    """
    current = store.read_token()
    if not current.refresh_token:
        raise AuthRequiredError(
            "No refresh token available. Run 'notion-cli auth login' to re-authenticate."
        )
    client_info = store.read_client_info()
    if not client_info.get("client_id"):
        raise AuthRequiredError(
            "No OAuth client registration found. Run 'notion-cli auth login' to re-authenticate."
        )

    form = {
        "grant_type": "refresh_token",
        "refresh_token": current.refresh_token,
        "client_id": client_info["client_id"],
    }
    if client_info.get("client_secret"):
        form["client_secret"] = client_info["client_secret"]

    try:
        with httpx.Client(timeout=30.0) as http:
            meta = http.get(_authorization_metadata_url(config.endpoint))
            meta.raise_for_status()
            token_endpoint = meta.json()["token_endpoint"]
            logger.debug(f"Refreshing token at {token_endpoint}")
            response = http.post(token_endpoint, data=form)
            response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise UserError(
            f"Token refresh failed: HTTP {e.response.status_code}: {_http_error_detail(e, 100)}"
        ) from e
    except httpx.RequestError as e:
        raise UserError(f"Token refresh failed: {e}") from e
    except (KeyError, ValueError) as e:
        raise UserError(f"Token refresh failed: bad authorization server metadata ({e})") from e

    try:
        token = OAuthToken.model_validate(response.json())
    except (ValueError, ValidationError) as e:
        raise UserError(f"Token refresh failed: unexpected token response ({e})") from e

    store.save_oauth_token(token)
    return store.read_token()


def auto_refresh_if_needed(config: NotionConfig, store: FileTokenStore) -> None:
    """Refresh the stored token if it expires within five minutes.

    Never raises: a failed refresh is logged and the command goes ahead with
    the current token.
    """
    if config.access_token:
        return
    try:
        token = store.read_token()
        if not token.expires_within(TOKEN_REFRESH_MARGIN):
            return
        if not token.refresh_token:
            logger.warning("Token expires soon and has no refresh token")
            return
        refresh_token(config, store)
        logger.info("Access token refreshed")
    except UserError as e:
        logger.warning(f"Token auto-refresh failed: {e}")


# =============================================================================
# Presentation
# =============================================================================

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.table import Table

console = Console()
err_console = Console(stderr=True)

TYPE_LABELS = {
    "page": "📄 page",
    "database": "🗃️  db",
    "data_source": "🗃️  db",
}


def print_error(err: Any) -> None:
    err_console.print(f"[bold red]Error:[/bold red] {escape(str(err))}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {escape(message)}")


def print_warning(message: str) -> None:
    console.print(f"[yellow]⚠[/yellow] {escape(message)}")


def print_info(message: str) -> None:
    console.print(escape(message), style="dim")


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def format_type(object_type: str) -> str:
    return TYPE_LABELS.get(object_type, object_type)


def _matches_table(matches: list[SearchMatch], with_type: bool = False) -> Table:
    table = Table(show_edge=False, header_style="bold")
    if with_type:
        table.add_column("TYPE", no_wrap=True)
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("TITLE", overflow="ellipsis", max_width=50)
    table.add_column("URL", style="cyan", overflow="fold")
    for m in matches:
        row = [m.id, m.title or "Untitled", m.url]
        if with_type:
            row.insert(0, format_type(m.object_type))
        table.add_row(*row)
    return table


def print_matches(matches: list[SearchMatch], as_json: bool, empty_message: str,
                  with_type: bool = False) -> None:
    if as_json:
        print_json([asdict(m) for m in matches])
        return
    if not matches:
        print_info(empty_message)
        return
    console.print(_matches_table(matches, with_type=with_type))


def print_comments(comments: list[Comment], as_json: bool) -> None:
    if as_json:
        print_json([asdict(c) for c in comments])
        return
    if not comments:
        print_info("No comments found.")
        return
    for c in comments:
        header = " · ".join(part for part in (c.author, c.created_time) if part)
        if header:
            console.print(escape(header), style="bold")
        console.print(escape(c.text))
        console.print()


def print_page_header(envelope: ResponseEnvelope) -> None:
    breadcrumb = " › ".join(a.title for a in envelope.ancestors if a.title)
    if console.is_terminal:
        if envelope.title:
            console.print(escape(envelope.title), style="bold")
        if breadcrumb:
            console.print(escape(breadcrumb), style="dim")
        if envelope.url:
            console.print(escape(envelope.url), style="dim")
        if envelope.object_type:
            console.print(f"Type: {escape(envelope.object_type)}")
        console.print("─" * 40, style="dim")
    else:
        if envelope.title:
            print(f"Title: {envelope.title}")
        if breadcrumb:
            print(f"Path: {breadcrumb}")
        if envelope.url:
            print(f"URL: {envelope.url}")
        if envelope.object_type:
            print(f"Type: {envelope.object_type}")
        print()


def render_markdown(content: str) -> None:
    # Pipes get the Markdown source, terminals get it rendered
    if console.is_terminal:
        console.print(Markdown(content))
    else:
        print(content)


# =============================================================================
# Commands
# =============================================================================

DEFAULT_LIST_LIMIT = 20
MARKDOWN_TITLE_PATTERN = re.compile(r'^#\s+(.+?)\s*#*\s*$', re.MULTILINE)


def _category_list(client, query: str, limit: int, category: str) -> list[SearchMatch]:
    matches = filter_matches(client.search(query or "*"), category)
    return matches[:limit] if limit > 0 else matches


def run_page_list(client, query: str = "", limit: int = DEFAULT_LIST_LIMIT, as_json: bool = False) -> None:
    pages = _category_list(client, query, limit, "page")
    print_matches(pages, as_json, "No pages found.")


def run_page_view(client, page: str, raw: bool = False, as_json: bool = False) -> None:
    page_id = resolve_page_id(page, client.search)
    fetched = client.fetch(page_id)
    if not fetched.content:
        print_info("No content found")
        return
    if raw:
        print(fetched.content)
        return

    envelope = parse_notion_response(fetched.content)
    if as_json:
        print_json(envelope.to_dict())
        return
    print_page_header(envelope)
    if envelope.body:
        render_markdown(envelope.body)


def _created_output(page: CreatedPage, as_json: bool, message: str) -> None:
    if as_json:
        print_json(asdict(page))
    elif page.url:
        print_success(f"{message}: {page.url}")
    else:
        print_success(message)


def run_page_create(client, title: str, parent: Optional[str] = None,
                    content: str = "", as_json: bool = False) -> CreatedPage:
    parent_id = resolve_page_id(parent, client.search) if parent else None
    page = client.create_page(title, content=content, parent_page_id=parent_id)
    _created_output(page, as_json, "Page created")
    return page


def extract_title_from_markdown(body: str) -> str:
    """First level-1 ATX heading of a Markdown body, or ""."""
    match = MARKDOWN_TITLE_PATTERN.search(body)
    return match.group(1).strip() if match else ""


def _is_emoji(ch: str) -> bool:
    # Not a letter, digit, space or punctuation, and outside ASCII
    return ord(ch) > 127 and unicodedata.category(ch)[0] not in "LNZP"


def extract_emoji_from_title(title: str) -> tuple[str, str]:
    """Split a leading emoji off a title: "🚀 Launch" → ("🚀", "Launch")."""
    if not title or not _is_emoji(title[0]):
        return "", title
    icon_end = 1
    while icon_end < len(title) and title[icon_end] in "\ufe0f\u200d":
        icon_end += 1
    return title[:icon_end], title[icon_end:].strip()


def run_page_upload(client, path: str, title: Optional[str] = None, parent: Optional[str] = None,
                    icon: Optional[str] = None, as_json: bool = False) -> CreatedPage:
    """Upload a Markdown file as a page, keeping the link in its frontmatter.

    With a `notion-id` in the frontmatter the existing page's content is
    replaced. Otherwise a new page is created and its ID is written back
    into the file.
    """
    file_path = Path(path)
    try:
        markdown = file_path.read_text(encoding="utf-8")
    except OSError as e:
        raise UserError(f"Cannot read {file_path}: {e}") from e

    frontmatter, body = parse_frontmatter(markdown)

    title = title or extract_title_from_markdown(body) or file_path.stem
    if not icon:
        icon, title = extract_emoji_from_title(title)
    display_title = f"{icon} {title}" if icon else title

    if frontmatter.notion_id:
        if parent:
            logger.info(f"Ignoring --parent: {file_path.name} is already linked to {frontmatter.notion_id}")
        client.update_page(frontmatter.notion_id, "replace_content", new_content=body)
        page = CreatedPage(id=frontmatter.notion_id)
        _created_output(page, as_json, f"Updated: {display_title}")
        return page

    parent_id = resolve_page_id(parent, client.search) if parent else None
    page = client.create_page(title, content=body, parent_page_id=parent_id)
    if page.id:
        file_path.write_text(set_frontmatter_id(markdown, page.id), encoding="utf-8")
    else:
        print_warning(f"Could not determine the new page ID; {file_path.name} was not linked")
    _created_output(page, as_json, f"Uploaded: {display_title}")
    return page


def run_page_edit(client, page: str, replace: Optional[str] = None, find: Optional[str] = None,
                  replace_with: Optional[str] = None, append: Optional[str] = None) -> None:
    if replace is not None and find is None:
        command = {"command": "replace_content", "new_content": replace}
    elif replace is None and find is not None and replace_with is not None and append is None:
        command = {"command": "replace_content_range", "selection": find, "new_str": replace_with}
    elif replace is None and find is not None and append is not None and replace_with is None:
        command = {"command": "insert_content_after", "selection": find, "new_str": append}
    else:
        raise UserError("Specify --replace, or --find with one of --replace-with / --append")

    page_id = resolve_page_id(page, client.search)
    client.update_page(page_id, **command)
    print_success("Page updated")


def run_search(client, query: str, limit: int = DEFAULT_LIST_LIMIT, mode: str = "workspace",
               as_json: bool = False) -> None:
    search_mode = "workspace_search" if mode == "workspace" else "ai_search"
    results = client.search(query, content_search_mode=search_mode)
    if limit > 0:
        results = results[:limit]
    print_matches(results, as_json, "No results found.", with_type=True)


def run_db_list(client, query: str = "", limit: int = DEFAULT_LIST_LIMIT, as_json: bool = False) -> None:
    databases = _category_list(client, query, limit, "database")
    print_matches(databases, as_json, "No databases found.")


def run_db_query(client, database: str, as_json: bool = False) -> None:
    database_id = resolve_database_id(database, client.search)
    fetched = client.fetch(database_id)
    if as_json:
        print_json(asdict(fetched))
        return
    if not fetched.content:
        print_info("No content found")
        return
    envelope = parse_notion_response(fetched.content)
    print_page_header(envelope)
    if envelope.body:
        render_markdown(envelope.body)


def parse_property_args(props: list[str]) -> dict[str, str]:
    """Turn ["Status=Done", ...] into {"Status": "Done", ...}."""
    parsed = {}
    for prop in props or []:
        key, sep, value = prop.partition("=")
        if not sep or not key:
            raise UserError(f"Invalid property format (expected key=value): {prop}")
        parsed[key] = value
    return parsed


def run_db_create(client, database: str, title: str, props: Optional[list[str]] = None,
                  content: str = "", file: Optional[str] = None, as_json: bool = False) -> CreatedPage:
    properties = parse_property_args(props or [])
    if file:
        try:
            content = Path(file).read_text(encoding="utf-8")
        except OSError as e:
            raise UserError(f"Cannot read {file}: {e}") from e

    database_id = resolve_database_id(database, client.search)
    data_source_id = client.resolve_data_source_id(database_id)
    page = client.create_page(
        title, content=content, parent_data_source_id=data_source_id, properties=properties
    )
    _created_output(page, as_json, "Entry created")
    return page


def run_comment_list(client, page: str, as_json: bool = False) -> None:
    page_id = resolve_page_id(page, client.search)
    print_comments(client.get_comments(page_id), as_json)


def run_comment_add(client, page: str, text: str) -> None:
    page_id = resolve_page_id(page, client.search)
    client.create_comment(page_id, text)
    print_success("Comment added")


def run_tools(client) -> None:
    tools = client.list_tools()
    for tool in tools:
        console.print(escape(tool.name), style="bold")
        if tool.description:
            first_line = tool.description.strip().splitlines()[0]
            console.print(f"  {escape(first_line)}", style="dim")
    print_info(f"{len(tools)} tools available")


def run_auth_login(config: NotionConfig, store: FileTokenStore) -> None:
    if config.access_token:
        print_warning("Using a static access token; OAuth login is not needed")
        return
    if store.has_token() and not store.read_token().is_expired():
        print_success("Already authenticated!")
        return
    run_oauth_flow(config, store)
    print_success("Authenticated")


def run_auth_refresh(config: NotionConfig, store: FileTokenStore) -> None:
    refresh_token(config, store)
    print_success("Token refreshed")


def run_auth_status(config: NotionConfig, store: FileTokenStore, as_json: bool = False) -> None:
    status: dict[str, Any] = {"config_path": str(store.path)}
    if config.access_token:
        status.update(authenticated=True, source="static token")
    elif store.has_token():
        token = store.read_token()
        status.update(
            authenticated=not token.is_expired(),
            source="oauth",
            token_type=token.token_type,
            has_refresh_token=bool(token.refresh_token),
            expires_at=token.expires_at.isoformat() if token.expires_at else None,
        )
    else:
        status.update(authenticated=False, source=None)

    if as_json:
        print_json(status)
        return

    if status["authenticated"]:
        print_success("Authenticated")
    else:
        print_warning("Token expired or not set")
    console.print(f"  Source:  {status['source'] or 'none'}")
    if status.get("expires_at"):
        console.print(f"  Expires: {status['expires_at']}")
    console.print(f"  Config:  {escape(status['config_path'])}")


def run_auth_logout(store: FileTokenStore) -> None:
    if store.clear():
        print_success("Logged out")
    else:
        print_info("Not logged in")


# =============================================================================
# Entry Point
# =============================================================================

import argparse


def _require_client(config: NotionConfig) -> NotionClient:
    store = FileTokenStore(config.token_path)
    if not config.access_token and not store.has_token():
        raise AuthRequiredError(NOT_AUTHENTICATED)
    auto_refresh_if_needed(config, store)
    return NotionClient(config, store)


def _add_list_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-q", "--query", default="", help="Filter by title")
    parser.add_argument("-l", "--limit", type=int, default=DEFAULT_LIST_LIMIT,
                        help="Maximum number of results (0 for all)")
    parser.add_argument("-j", "--json", action="store_true", help="Output as JSON")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="notion-cli", description="Work with Notion from the terminal")
    parser.add_argument("--token", help="Static access token (or NOTION_TOKEN)")
    parser.add_argument("--token-file", help="Read the access token from a file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    # page
    page = commands.add_parser("page", help="Work with pages")
    page_commands = page.add_subparsers(dest="page_command", required=True)

    p = page_commands.add_parser("list", help="List pages")
    _add_list_flags(p)
    p.set_defaults(handler=lambda a, c: run_page_list(_require_client(c), a.query, a.limit, a.json))

    p = page_commands.add_parser("view", help="View a page as Markdown")
    p.add_argument("page", help="Page URL, ID or name")
    p.add_argument("-j", "--json", action="store_true", help="Output as JSON")
    p.add_argument("-r", "--raw", action="store_true", help="Print the raw Notion markup")
    p.set_defaults(handler=lambda a, c: run_page_view(_require_client(c), a.page, a.raw, a.json))

    p = page_commands.add_parser("create", help="Create a page")
    p.add_argument("-t", "--title", required=True)
    p.add_argument("-p", "--parent", help="Parent page URL, ID or name")
    p.add_argument("-c", "--content", default="", help="Markdown content")
    p.add_argument("-j", "--json", action="store_true", help="Output as JSON")
    p.set_defaults(handler=lambda a, c: run_page_create(
        _require_client(c), a.title, a.parent, a.content, a.json))

    p = page_commands.add_parser("upload", help="Upload a Markdown file (re-upload updates it)")
    p.add_argument("file")
    p.add_argument("-t", "--title", help="Page title (default: first heading or file name)")
    p.add_argument("-p", "--parent", help="Parent page URL, ID or name")
    p.add_argument("-i", "--icon", help="Emoji icon")
    p.add_argument("-j", "--json", action="store_true", help="Output as JSON")
    p.set_defaults(handler=lambda a, c: run_page_upload(
        _require_client(c), a.file, a.title, a.parent, a.icon, a.json))

    p = page_commands.add_parser("edit", help="Edit page content")
    p.add_argument("page", help="Page URL, ID or name")
    p.add_argument("--replace", help="Replace the whole page content")
    p.add_argument("--find", help="Selection to edit, as 'start...end'")
    p.add_argument("--replace-with", help="Replace the --find selection")
    p.add_argument("--append", help="Insert after the --find selection")
    p.set_defaults(handler=lambda a, c: run_page_edit(
        _require_client(c), a.page, a.replace, a.find, a.replace_with, a.append))

    # search
    p = commands.add_parser("search", help="Search the workspace")
    p.add_argument("query")
    p.add_argument("-l", "--limit", type=int, default=DEFAULT_LIST_LIMIT)
    p.add_argument("-j", "--json", action="store_true", help="Output as JSON")
    p.add_argument("-m", "--mode", choices=["workspace", "ai"], default="workspace",
                   help="workspace: titles and content; ai: include connected sources")
    p.set_defaults(handler=lambda a, c: run_search(_require_client(c), a.query, a.limit, a.mode, a.json))

    # db
    db = commands.add_parser("db", help="Work with databases")
    db_commands = db.add_subparsers(dest="db_command", required=True)

    p = db_commands.add_parser("list", help="List databases")
    _add_list_flags(p)
    p.set_defaults(handler=lambda a, c: run_db_list(_require_client(c), a.query, a.limit, a.json))

    p = db_commands.add_parser("query", help="Show a database's schema and views")
    p.add_argument("database", help="Database URL, ID or name")
    p.add_argument("-j", "--json", action="store_true", help="Output as JSON")
    p.set_defaults(handler=lambda a, c: run_db_query(_require_client(c), a.database, a.json))

    p = db_commands.add_parser("create", help="Add an entry to a database")
    p.add_argument("database", help="Database URL, ID or name")
    p.add_argument("-t", "--title", required=True)
    p.add_argument("-P", "--prop", action="append", default=[], help="Property as key=value (repeatable)")
    content = p.add_mutually_exclusive_group()
    content.add_argument("-c", "--content", default="")
    content.add_argument("-f", "--file", help="Read content from a Markdown file")
    p.add_argument("-j", "--json", action="store_true", help="Output as JSON")
    p.set_defaults(handler=lambda a, c: run_db_create(
        _require_client(c), a.database, a.title, a.prop, a.content, a.file, a.json))

    # comment
    comment = commands.add_parser("comment", help="Work with comments")
    comment_commands = comment.add_subparsers(dest="comment_command", required=True)

    p = comment_commands.add_parser("list", help="List comments on a page")
    p.add_argument("page")
    p.add_argument("-j", "--json", action="store_true", help="Output as JSON")
    p.set_defaults(handler=lambda a, c: run_comment_list(_require_client(c), a.page, a.json))

    p = comment_commands.add_parser("add", help="Comment on a page")
    p.add_argument("page")
    p.add_argument("text")
    p.set_defaults(handler=lambda a, c: run_comment_add(_require_client(c), a.page, a.text))

    # auth
    auth = commands.add_parser("auth", help="Manage authentication")
    auth_commands = auth.add_subparsers(dest="auth_command", required=True)

    p = auth_commands.add_parser("login", help="Log in through the browser")
    p.set_defaults(handler=lambda a, c: run_auth_login(c, FileTokenStore(c.token_path)))
    p = auth_commands.add_parser("refresh", help="Refresh the access token")
    p.set_defaults(handler=lambda a, c: run_auth_refresh(c, FileTokenStore(c.token_path)))
    p = auth_commands.add_parser("status", help="Show authentication status")
    p.add_argument("--json", action="store_true", help="Output as JSON")
    p.set_defaults(handler=lambda a, c: run_auth_status(c, FileTokenStore(c.token_path), a.json))
    p = auth_commands.add_parser("logout", help="Delete stored credentials")
    p.set_defaults(handler=lambda a, c: run_auth_logout(FileTokenStore(c.token_path)))

    p = commands.add_parser("tools", help="List the MCP server's tools")
    p.set_defaults(handler=lambda a, c: run_tools(_require_client(c)))

    p = commands.add_parser("version", help="Print the version")
    p.set_defaults(handler=lambda a, c: print(f"notion-cli version {__version__}"))

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for notion-cli."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        config = NotionConfig.from_env(token=args.token, token_file=args.token_file)
        args.handler(args, config)
    except UserError as e:
        print_error(e)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

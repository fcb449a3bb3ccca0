"""Notion MCP server with Markdown content.

Exposes pages, blocks, databases, comments and users as MCP tools. Page
content is read and written as Markdown through the notion_markdown codec.

Token: passed via --token-file <path>, or the NOTION_API_TOKEN environment
variable.
"""

import asyncio
import json
import logging
import os
import random
import time
from pathlib import Path
from typing import Callable, Optional

import httpx
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from notion_markdown import (
    Block,
    RichTextSpan,
    blocks_to_markdown_async,
    blocks_to_notion,
    escape_table_cell,
    markdown_to_blocks,
    parse_inline_markdown,
    rich_text_to_markdown,
    spans_from_notion,
)

logger = logging.getLogger("notion-mcp")

# =============================================================================
# Configuration
# =============================================================================

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2025-09-03"

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 2052

# Notion allows an average of 3 requests/sec per integration
TOKENS_PER_SEC = 3
MAX_TOKENS = 3

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_JITTER_MAX = 0.5  # max random jitter to add (seconds)

PAGE_SIZE = 100  # Max page size for block listings
CREATE_CHILDREN_LIMIT = 100  # Max children in a single create/append call
INSERT_BATCH_SIZE = 50
DELETE_BATCH_SIZE = 10

_async_client: Optional[httpx.AsyncClient] = None
_rate_limiter: Optional["TokenBucket"] = None


# =============================================================================
# Rate Limiting
# =============================================================================

class TokenBucket:
    """Token-bucket admission limiter for outbound Notion requests.

    Tokens refill continuously at `rate` per second up to `capacity`. Each
    request takes one token; callers wait in arrival order when the bucket
    is empty.
    """

    def __init__(
        self,
        rate: float = TOKENS_PER_SEC,
        capacity: float = MAX_TOKENS,
        clock: Callable[[], float] = time.monotonic
    ):
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock: Optional[asyncio.Lock] = None

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._last_refill = now

    @property
    def tokens(self) -> float:
        """Tokens currently available."""
        self._refill()
        return self._tokens

    def try_acquire(self) -> bool:
        """Take a token if one is available, without waiting."""
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    def wait_time(self) -> float:
        """Seconds until the next token is available."""
        return max(0.0, (1 - self._tokens) / self.rate)

    async def acquire(self) -> None:
        """Wait for a token and take it."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            while not self.try_acquire():
                await asyncio.sleep(self.wait_time())


def _get_rate_limiter() -> TokenBucket:
    """Get or create the shared rate limiter."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = TokenBucket()
    return _rate_limiter


def _compute_retry_delay(attempt: int, retry_after: float | None = None) -> float:
    """Compute exponential backoff delay with jitter for rate limiting.

    Args:
        attempt: Current retry attempt number (0-indexed).
        retry_after: Optional Retry-After header value from server.

    Returns:
        Delay in seconds, including random jitter to prevent thundering herd.
    """
    base_delay = RETRY_BASE_DELAY * (2 ** attempt)
    if retry_after is not None:
        base_delay = max(retry_after, base_delay)
    return base_delay + random.uniform(0, RETRY_JITTER_MAX)


def _http_error_detail(e: httpx.HTTPStatusError, max_len: int = 300) -> str:
    """Extract truncated error detail from an HTTP status error."""
    if e.response is not None:
        return e.response.text[:max_len]
    return str(e)


async def _get_async_client() -> httpx.AsyncClient:
    """Get or create the async HTTP client."""
    global _async_client
    if _async_client is None or _async_client.is_closed:
        _async_client = httpx.AsyncClient(timeout=30.0)
    return _async_client


# =============================================================================
# Credential Management
# =============================================================================

_notion_token: Optional[str] = None


class MissingTokenError(RuntimeError):
    """No Notion token was configured at startup."""


def _get_token() -> str:
    """Get the Notion token (set at startup)."""
    if _notion_token is None:
        raise MissingTokenError(
            "No Notion token. Pass --token-file <path> or set NOTION_API_TOKEN."
        )
    return _notion_token


def load_token(token_file: Optional[str] = None) -> str:
    """Read the Notion token from a file, falling back to NOTION_API_TOKEN.

    Raises:
        MissingTokenError: If no non-empty token can be found.
    """
    if token_file:
        token_path = Path(token_file).expanduser()
        if not token_path.exists():
            raise MissingTokenError(f"Token file not found: {token_path}")
        token = token_path.read_text().strip()
        if not token:
            raise MissingTokenError(f"Token file is empty: {token_path}")
        return token

    token = os.environ.get("NOTION_API_TOKEN", "").strip()
    if not token:
        raise MissingTokenError(
            "NOTION_API_TOKEN environment variable is required (or pass --token-file)"
        )
    return token


# =============================================================================
# Notion API Client
# =============================================================================

async def _notion_request_async(
    method: str,
    endpoint: str,
    json_body: Optional[dict] = None,
    params: Optional[dict] = None
) -> dict:
    """Make an authenticated Notion API request with rate limiting and retry.

    Every attempt takes a token from the shared bucket. Rate limit
    responses (429) are retried with exponential backoff.
    """
    token = _get_token()
    bucket = _get_rate_limiter()
    client = await _get_async_client()

    headers = {
        "Authorization": f"Bearer {token}",
        "Notion-Version": NOTION_VERSION,
        "Content-Type": "application/json",
    }

    url = f"{NOTION_API_BASE}{endpoint}"

    attempt = 0
    while True:
        await bucket.acquire()
        response = await client.request(
            method, url, headers=headers, json=json_body, params=params
        )

        # The final 429 falls through to raise_for_status
        if response.status_code == 429 and attempt < MAX_RETRIES - 1:
            retry_after = float(response.headers.get("Retry-After", RETRY_BASE_DELAY))
            delay = _compute_retry_delay(attempt, retry_after)
            logger.warning(f"Rate limited, waiting {delay:.1f}s (attempt {attempt + 1})")
            await asyncio.sleep(delay)
            attempt += 1
            continue

        response.raise_for_status()
        return response.json()


# =============================================================================
# Block Fetching
# =============================================================================

async def collect_all_blocks(block_id: str) -> list[dict]:
    """Fetch every immediate child of a block, following pagination.

    Errors propagate; a partial listing is never returned.
    """
    blocks: list[dict] = []
    start_cursor = None

    while True:
        params: dict = {"page_size": PAGE_SIZE}
        if start_cursor:
            params["start_cursor"] = start_cursor

        result = await _notion_request_async(
            "GET", f"/blocks/{block_id}/children", params=params
        )
        # Partial objects carry no type
        blocks.extend(b for b in result.get("results", []) if "type" in b)

        start_cursor = result.get("next_cursor")
        if not result.get("has_more") or not start_cursor:
            break

    return blocks


async def fetch_children(block_id: str) -> list[Block]:
    """Children provider for the Markdown encoder."""
    return [Block.from_notion(b) for b in await collect_all_blocks(block_id)]


async def fetch_page_async(page_id: str) -> dict:
    """Fetch page metadata."""
    return await _notion_request_async("GET", f"/pages/{page_id}")


async def append_blocks_async(
    parent_id: str,
    blocks: list[dict],
    after_id: Optional[str] = None
) -> list[dict]:
    """Append blocks to a parent in batches, preserving order.

    Args:
        parent_id: UUID of parent block or page.
        blocks: List of Notion API block objects.
        after_id: Optional block UUID to insert after.

    Returns:
        List of created block objects with IDs.
    """
    created: list[dict] = []

    for start in range(0, len(blocks), INSERT_BATCH_SIZE):
        body: dict = {"children": blocks[start:start + INSERT_BATCH_SIZE]}
        if after_id:
            body["after"] = after_id

        result = await _notion_request_async(
            "PATCH", f"/blocks/{parent_id}/children", json_body=body
        )
        results = result.get("results", [])
        created.extend(results)

        # Next batch goes after the last block of this one
        if after_id and results:
            after_id = results[-1].get("id", after_id)

    return created


async def delete_block_async(block_id: str) -> dict:
    """Delete (archive) a block."""
    return await _notion_request_async("DELETE", f"/blocks/{block_id}")


async def _delete_blocks(block_ids: list[str]) -> list[tuple[str, Optional[str]]]:
    """Delete blocks in parallel batches.

    Returns:
        (block_id, error) per block, in input order; error is None on success.
    """
    outcomes: list[tuple[str, Optional[str]]] = []

    for start in range(0, len(block_ids), DELETE_BATCH_SIZE):
        batch = block_ids[start:start + DELETE_BATCH_SIZE]
        results = await asyncio.gather(
            *(delete_block_async(block_id) for block_id in batch),
            return_exceptions=True
        )
        for block_id, result in zip(batch, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to delete block {block_id}: {result}")
                outcomes.append((block_id, str(result)))
            else:
                outcomes.append((block_id, None))

    return outcomes


# =============================================================================
# Page and Property Helpers
# =============================================================================

def _join_plain_text(items: Optional[list[dict]]) -> str:
    return "".join(t.get("plain_text", "") for t in items or [])


def get_page_title(page: dict) -> str:
    """Extract title from page properties."""
    for prop in page.get("properties", {}).values():
        if prop.get("type") == "title":
            return _join_plain_text(prop.get("title"))
    return "Untitled"


def get_database_title(database: dict) -> str:
    """Extract title from database metadata."""
    return _join_plain_text(database.get("title")) or "Untitled"


def _file_link(f: dict) -> str:
    file_type = f.get("type")
    url = (f.get(file_type) or {}).get("url", "")
    return f"[{f.get('name', '')}]({url})"


def format_property(prop: dict) -> str:
    """Render a page property value as display text.

    Args:
        prop: Property object from page.properties.

    Returns:
        String representation of the value ("" when empty).
    """
    prop_type = prop.get("type", "")

    if prop_type in ("title", "rich_text"):
        return _join_plain_text(prop.get(prop_type))

    elif prop_type == "number":
        num = prop.get("number")
        return str(num) if num is not None else ""

    elif prop_type in ("select", "status"):
        option = prop.get(prop_type)
        return option.get("name", "") if option else ""

    elif prop_type == "multi_select":
        return ", ".join(opt.get("name", "") for opt in prop.get("multi_select", []))

    elif prop_type == "date":
        date_obj = prop.get("date")
        if not date_obj:
            return ""
        start = date_obj.get("start", "")
        end = date_obj.get("end")
        return f"{start} → {end}" if end else start

    elif prop_type == "checkbox":
        return "Yes" if prop.get("checkbox") else "No"

    elif prop_type in ("url", "email", "phone_number"):
        return prop.get(prop_type) or ""

    elif prop_type == "people":
        return ", ".join(p.get("name") or p.get("id", "") for p in prop.get("people", []))

    elif prop_type == "relation":
        return ", ".join(r.get("id", "") for r in prop.get("relation", []))

    elif prop_type in ("formula", "rollup"):
        value = prop.get(prop_type) or {}
        inner = value.get(value.get("type", ""))
        return "" if inner is None else str(inner)

    elif prop_type in ("created_time", "last_edited_time"):
        return prop.get(prop_type) or ""

    elif prop_type in ("created_by", "last_edited_by"):
        user = prop.get(prop_type) or {}
        return user.get("name") or user.get("id", "")

    elif prop_type == "files":
        return ", ".join(_file_link(f) for f in prop.get("files", []))

    elif prop_type == "unique_id":
        uid = prop.get("unique_id", {})
        prefix = uid.get("prefix")
        number = uid.get("number", "")
        return f"{prefix}-{number}" if prefix else str(number)

    return f"({prop_type})"


def _truncate(text: str, max_len: int) -> str:
    return text if len(text) <= max_len else text[:max_len - 3] + "..."


# Blocks previewed by their rich text
PREVIEW_TEXT_BLOCK_TYPES = {
    'paragraph', 'heading_1', 'heading_2', 'heading_3',
    'bulleted_list_item', 'numbered_list_item', 'to_do',
    'toggle', 'quote', 'callout',
}

PREVIEW_LABELS = {
    'image': '(image)',
    'video': '(video)',
    'file': '(file)',
    'pdf': '(pdf)',
    'divider': '---',
    'table': '(table)',
    'column_list': '(columns)',
    'table_of_contents': '(table of contents)',
}


def get_block_preview(block: Block) -> str:
    """Short one-line preview of a block's content."""
    block_type = block.block_type

    if block_type in PREVIEW_TEXT_BLOCK_TYPES:
        return _truncate(rich_text_to_markdown(block.rich_text), 80)

    if block_type == "code":
        return f"```{block.language or ''}: {_truncate(block.plain_text, 60)}"

    if block_type in PREVIEW_LABELS:
        return PREVIEW_LABELS[block_type]

    if block_type in ("bookmark", "embed"):
        return block.url or ""

    if block_type == "child_page":
        return f"Child page: {block.title}"

    if block_type == "child_database":
        return f"Child DB: {block.title}"

    if block_type == "equation":
        return block.expression or ""

    return f"({block_type})"


# =============================================================================
# Error Messages
# =============================================================================

def _error(code: str, message: str, hint: str | None = None, ref: str | None = None) -> str:
    """Format error with optional self-healing hint.

    Args:
        code: Error code (e.g., NOT_FOUND, RATE_LIMITED)
        message: Human-readable description
        hint: Suggestion on how to fix the issue
        ref: The reference that failed (for context)

    Returns:
        Formatted error string with hint if provided.
    """
    parts = [f"error: {code} - {message}"]
    if ref:
        parts.append(f"ref: {ref}")
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


# Common error hints
HINTS = {
    "ref_gone": "The object may be deleted, in trash, or not shared with this integration. Use search to find it by title.",
    "missing_capability": "Share the page/database with the integration: open in Notion → Share → invite the integration.",
    "no_data_sources": "Unusual database state. Try opening in Notion UI first, or use the database's page URL.",
    "rate_limited": "Too many requests. Wait a moment and try again.",
    "invalid_token": "Token is invalid or expired. Check the token file or NOTION_API_TOKEN.",
    "list_children": "Use list_children_blocks to find block IDs.",
}


def _exception_to_error(e: Exception, ref: str | None = None) -> str:
    """Map an exception from a Notion call to an error string."""
    if isinstance(e, MissingTokenError):
        return _error("NO_TOKEN", str(e), hint=HINTS["invalid_token"])

    if not isinstance(e, httpx.HTTPStatusError):
        return _error("UNEXPECTED", f"{type(e).__name__}: {e}", ref=ref)

    status = e.response.status_code if e.response is not None else None
    if status == 401:
        return _error("INVALID_TOKEN", "Token is invalid or expired", hint=HINTS["invalid_token"])
    if status == 403:
        return _error(
            "MISSING_CAPABILITY",
            "Integration lacks access to this object",
            hint=HINTS["missing_capability"],
            ref=ref
        )
    if status == 404:
        return _error("NOT_FOUND", "Object not found", hint=HINTS["ref_gone"], ref=ref)
    if status == 429:
        return _error("RATE_LIMITED", "Too many requests", hint=HINTS["rate_limited"])
    return _error("HTTP_ERROR", f"HTTP {status}: {_http_error_detail(e, 100)}", ref=ref)


# =============================================================================
# MCP Server
# =============================================================================

mcp = FastMCP("notion-markdown-mcp", host=DEFAULT_HOST, port=DEFAULT_PORT)


# -- Pages --------------------------------------------------------------------

@mcp.tool()
async def search(query: str, filter: Optional[str] = None, limit: int = 10) -> str:
    """Search the Notion workspace by title. Returns matching pages and databases.

    Args:
        query: Search query text.
        filter: Optional "page" or "database" to restrict results.
        limit: Max results to return (default 10, max 100).
    """
    body: dict = {
        "query": query,
        "page_size": max(1, min(limit, 100)),
        "sort": {"direction": "descending", "timestamp": "last_edited_time"},
    }

    # API 2025-09-03: databases are searched as data sources
    if filter == "page":
        body["filter"] = {"property": "object", "value": "page"}
    elif filter == "database":
        body["filter"] = {"property": "object", "value": "data_source"}
    elif filter is not None:
        return _error("INVALID_FILTER", f"Unknown filter '{filter}'", hint="Use 'page' or 'database'.")

    try:
        result = await _notion_request_async("POST", "/search", json_body=body)
    except Exception as e:
        return _exception_to_error(e)

    lines = []
    for item in result.get("results", []):
        obj_type = item.get("object")
        edited = (item.get("last_edited_time") or "")[:10]

        if obj_type == "page":
            title = get_page_title(item)
            lines.append(f"- **{title}** (page, id: {item.get('id')}, edited: {edited})")
        elif obj_type in ("database", "data_source"):
            title = _join_plain_text(item.get("title")) or "Untitled DB"
            db_id = item.get("parent", {}).get("database_id", item.get("id"))
            lines.append(f"- **{title}** (database, id: {db_id}, edited: {edited})")

    if not lines:
        return f'No results found for "{query}"'

    return f'## Search: "{query}"\n\n' + "\n".join(lines)


@mcp.tool()
async def get_page(page_id: str, include_properties: bool = True) -> str:
    """Get a Notion page's content as Markdown. Fetches all blocks recursively.

    Args:
        page_id: The Notion page ID.
        include_properties: Include page properties in output (default true).
    """
    try:
        page, blocks = await asyncio.gather(
            fetch_page_async(page_id),
            fetch_children(page_id)
        )
        markdown = await blocks_to_markdown_async(blocks, fetch_children)
    except Exception as e:
        return _exception_to_error(e, ref=page_id)

    parts = [
        f"# {get_page_title(page)}\n",
        f"> Page ID: {page.get('id', page_id)}",
        f"> Last edited: {page.get('last_edited_time', '')}",
    ]

    if include_properties:
        prop_lines = []
        for name, prop in page.get("properties", {}).items():
            if prop.get("type") == "title":
                continue
            value = format_property(prop)
            if value:
                prop_lines.append(f"- **{name}**: {value}")
        if prop_lines:
            parts.append("\n**Properties:**\n" + "\n".join(prop_lines))

    parts.append("")
    parts.append(markdown)
    return "\n".join(parts)


@mcp.tool()
async def create_page(
    parent_id: str,
    parent_type: str,
    title: str,
    content: Optional[str] = None,
    icon: Optional[str] = None
) -> str:
    """Create a new Notion page with Markdown content under a page or database.

    Args:
        parent_id: Parent page ID or database ID.
        parent_type: "page" or "database".
        title: Page title.
        content: Page content in Markdown format.
        icon: Emoji icon for the page.
    """
    if parent_type not in ("page", "database"):
        return _error("INVALID_PARENT_TYPE", f"Unknown parent type '{parent_type}'",
                      hint="Use 'page' or 'database'.")

    children = blocks_to_notion(markdown_to_blocks(content)) if content else []
    parent_key = "database_id" if parent_type == "database" else "page_id"

    body: dict = {
        "parent": {parent_key: parent_id},
        "properties": {
            "title": {"title": [RichTextSpan(text=title).to_notion()]},
        },
        "children": children[:CREATE_CHILDREN_LIMIT],
    }
    if icon:
        body["icon"] = {"type": "emoji", "emoji": icon}

    try:
        page = await _notion_request_async("POST", "/pages", json_body=body)
        # Notion caps children per request; append the rest
        if len(children) > CREATE_CHILDREN_LIMIT:
            await append_blocks_async(page["id"], children[CREATE_CHILDREN_LIMIT:])
    except Exception as e:
        return _exception_to_error(e, ref=parent_id)

    return (
        f"Page created: **{title}**\n"
        f"- ID: {page.get('id')}\n"
        f"- URL: {page.get('url', 'N/A')}"
    )


@mcp.tool()
async def update_page(
    page_id: str,
    title: Optional[str] = None,
    icon: Optional[str] = None,
    cover_url: Optional[str] = None
) -> str:
    """Update a Notion page's properties (title, icon, cover).

    Args:
        page_id: The Notion page ID to update.
        title: New page title.
        icon: New emoji icon.
        cover_url: New cover image URL.
    """
    body: dict = {}
    updates = []

    if title:
        body["properties"] = {"title": {"title": [RichTextSpan(text=title).to_notion()]}}
        updates.append(f'title → "{title}"')
    if icon:
        body["icon"] = {"type": "emoji", "emoji": icon}
        updates.append(f"icon → {icon}")
    if cover_url:
        body["cover"] = {"type": "external", "external": {"url": cover_url}}
        updates.append(f"cover → {cover_url}")

    if not body:
        return _error("NOTHING_TO_UPDATE", "Provide at least one of title, icon, cover_url")

    try:
        await _notion_request_async("PATCH", f"/pages/{page_id}", json_body=body)
    except Exception as e:
        return _exception_to_error(e, ref=page_id)

    return f"Page updated ({page_id}):\n" + "\n".join(f"- {u}" for u in updates)


@mcp.tool()
async def archive_page(page_id: str, archived: bool) -> str:
    """Archive or restore a Notion page.

    Args:
        page_id: The Notion page ID.
        archived: true to archive, false to restore.
    """
    try:
        await _notion_request_async("PATCH", f"/pages/{page_id}", json_body={"archived": archived})
    except Exception as e:
        return _exception_to_error(e, ref=page_id)

    action = "archived" if archived else "restored"
    return f"Page {action} ({page_id})"


# -- Blocks -------------------------------------------------------------------

@mcp.tool()
async def append_blocks(block_id: str, content: str) -> str:
    """Append Markdown content to a Notion page or block.

    Args:
        block_id: The page ID or block ID to append content to.
        content: Markdown content to append.
    """
    blocks = blocks_to_notion(markdown_to_blocks(content))
    if not blocks:
        return _error("EMPTY_CONTENT", "Content has no blocks to append")

    try:
        created = await append_blocks_async(block_id, blocks)
    except Exception as e:
        return _exception_to_error(e, ref=block_id)

    return f"Appended {len(created)} block(s) to {block_id}"


@mcp.tool()
async def insert_after_block(block_id: str, after: str, content: str) -> str:
    """Insert Markdown content after a specific block within a page.

    Use list_children_blocks first to find the target block ID.

    Args:
        block_id: The parent page or block ID containing the target block.
        after: Block ID to insert content after.
        content: Markdown content to insert.
    """
    blocks = blocks_to_notion(markdown_to_blocks(content))
    if not blocks:
        return _error("EMPTY_CONTENT", "Content has no blocks to insert")

    try:
        created = await append_blocks_async(block_id, blocks, after_id=after)
    except Exception as e:
        return _exception_to_error(e, ref=after)

    return f"Inserted {len(created)} block(s) after {after} in {block_id}"


# Block types whose text can be replaced in place
TEXT_UPDATABLE_BLOCK_TYPES = PREVIEW_TEXT_BLOCK_TYPES | {'code'}


@mcp.tool()
async def update_block(block_id: str, content: str) -> str:
    """Update a block's text content. The block type is preserved.

    Args:
        block_id: The block ID to update.
        content: New text (inline Markdown supported: **bold**, *italic*,
            `code`, [links](url)). Code blocks take the content literally.
    """
    try:
        existing = await _notion_request_async("GET", f"/blocks/{block_id}")
    except Exception as e:
        return _exception_to_error(e, ref=block_id)

    block_type = existing.get("type", "")
    if block_type not in TEXT_UPDATABLE_BLOCK_TYPES:
        return _error(
            "UNSUPPORTED_UPDATE",
            f'Block type "{block_type}" does not support text updates',
            ref=block_id
        )

    data = existing.get(block_type, {})

    if block_type == "code":
        payload: dict = {
            "rich_text": [RichTextSpan(text=content).to_notion()],
            "language": data.get("language", "plain text"),
        }
    else:
        payload = {"rich_text": [s.to_notion() for s in parse_inline_markdown(content)]}

    if block_type == "to_do":
        payload["checked"] = bool(data.get("checked"))
    elif block_type == "callout" and data.get("icon"):
        payload["icon"] = data["icon"]

    try:
        await _notion_request_async("PATCH", f"/blocks/{block_id}", json_body={block_type: payload})
    except Exception as e:
        return _exception_to_error(e, ref=block_id)

    return f"Block updated ({block_id}, type: {block_type})"


@mcp.tool()
async def delete_block(block_id: str) -> str:
    """Delete a Notion block by its ID.

    Args:
        block_id: The block ID to delete.
    """
    try:
        await delete_block_async(block_id)
    except Exception as e:
        return _exception_to_error(e, ref=block_id)
    return f"Block deleted ({block_id})"


@mcp.tool()
async def list_children_blocks(block_id: str) -> str:
    """List child blocks of a page or block with IDs, types and previews.

    Args:
        block_id: The page ID or block ID to list children of.
    """
    try:
        blocks = await fetch_children(block_id)
    except Exception as e:
        return _exception_to_error(e, ref=block_id)

    if not blocks:
        return "No child blocks found."

    lines = [
        f"## Child Blocks ({len(blocks)})\n",
        "| # | Block ID | Type | Has Children | Preview |",
        "| --- | --- | --- | --- | --- |",
    ]
    for i, block in enumerate(blocks, 1):
        children = "yes" if block.has_children else "no"
        preview = escape_table_cell(get_block_preview(block))
        lines.append(f"| {i} | {block.id} | {block.block_type} | {children} | {preview} |")

    return "\n".join(lines)


@mcp.tool()
async def replace_page_content(page_id: str, content: str) -> str:
    """Replace all content on a page with new Markdown content.

    Deletes every existing top-level block, then appends the new content.

    Args:
        page_id: The page ID to rewrite.
        content: New Markdown content for the page.
    """
    try:
        existing = await collect_all_blocks(page_id)
    except Exception as e:
        return _exception_to_error(e, ref=page_id)

    outcomes = await _delete_blocks([b["id"] for b in existing])
    failed = [block_id for block_id, err in outcomes if err is not None]
    deleted = len(outcomes) - len(failed)

    try:
        created = await append_blocks_async(page_id, blocks_to_notion(markdown_to_blocks(content)))
    except Exception as e:
        return _exception_to_error(e, ref=page_id)

    lines = [
        f"Page content replaced ({page_id})",
        f"- Blocks deleted: {deleted}/{len(existing)}",
    ]
    if failed:
        lines.append(f"- Failed to delete: {len(failed)} block(s)")
    lines.append(f"- Blocks created: {len(created)}")
    return "\n".join(lines)


@mcp.tool()
async def batch_delete_blocks(block_ids: list[str]) -> str:
    """Delete multiple Notion blocks in one call.

    Args:
        block_ids: Block IDs to delete.
    """
    outcomes = await _delete_blocks(block_ids)
    failed = [(block_id, err) for block_id, err in outcomes if err is not None]

    lines = [f"Deleted {len(outcomes) - len(failed)} of {len(block_ids)} block(s)"]
    if failed:
        lines.append(f"\nFailed ({len(failed)}):")
        lines.extend(f"- {block_id}: {err}" for block_id, err in failed)
    return "\n".join(lines)


# -- Databases ----------------------------------------------------------------

async def _fetch_data_source(database_id: str) -> tuple[dict, Optional[dict]]:
    """Fetch a database container and its first data source.

    In API 2025-09-03 the schema and rows live on data sources, not on the
    database. Returns (database, None) if it has no data source.
    """
    database = await _notion_request_async("GET", f"/databases/{database_id}")
    data_sources = database.get("data_sources", [])
    if not data_sources or not data_sources[0].get("id"):
        return database, None

    data_source = await _notion_request_async("GET", f"/data_sources/{data_sources[0]['id']}")
    return database, data_source


@mcp.tool()
async def list_databases(limit: int = 20) -> str:
    """List the databases the integration can access.

    Args:
        limit: Max results (default 20, max 100).
    """
    body = {
        "filter": {"property": "object", "value": "data_source"},
        "page_size": max(1, min(limit, 100)),
        "sort": {"direction": "descending", "timestamp": "last_edited_time"},
    }

    try:
        result = await _notion_request_async("POST", "/search", json_body=body)
    except Exception as e:
        return _exception_to_error(e)

    lines = []
    for item in result.get("results", []):
        title = get_database_title(item)
        db_id = item.get("parent", {}).get("database_id", item.get("id"))
        prop_count = len(item.get("properties", {}))
        edited = (item.get("last_edited_time") or "")[:10]
        lines.append(f"- **{title}** (id: {db_id}, {prop_count} properties, edited: {edited})")

    if not lines:
        return "No databases found. Make sure you've shared databases with the integration."

    return "## Databases\n\n" + "\n".join(lines)


# Property types that list their options in the schema
OPTION_PROPERTY_TYPES = ('select', 'multi_select', 'status')


@mcp.tool()
async def get_database(database_id: str) -> str:
    """Get a database's schema: property names, types, and options.

    Args:
        database_id: The database ID.
    """
    try:
        database, data_source = await _fetch_data_source(database_id)
    except Exception as e:
        return _exception_to_error(e, ref=database_id)

    if data_source is None:
        return _error("NO_DATA_SOURCES", "Database has no data sources",
                      hint=HINTS["no_data_sources"], ref=database_id)

    lines = [
        f"## Database: {get_database_title(database)}\n",
        f"ID: {database.get('id', database_id)}\n",
        "### Properties\n",
    ]
    for name, prop in data_source.get("properties", {}).items():
        prop_type = prop.get("type", "unknown")
        detail = f"**{name}** ({prop_type})"
        if prop_type in OPTION_PROPERTY_TYPES:
            options = (prop.get(prop_type) or {}).get("options", [])
            if options:
                detail += ": " + ", ".join(o.get("name", "") for o in options)
        lines.append(f"- {detail}")

    return "\n".join(lines)


@mcp.tool()
async def query_database(
    database_id: str,
    filter: Optional[str] = None,
    sort_property: Optional[str] = None,
    sort_direction: str = "descending",
    limit: int = 20
) -> str:
    """Query a database with optional filter and sort. Returns a Markdown table.

    Args:
        database_id: The database ID to query.
        filter: JSON filter object (Notion API format). Example:
            {"property": "Status", "select": {"equals": "Done"}}
        sort_property: Property name to sort by.
        sort_direction: "ascending" or "descending" (default).
        limit: Max results (default 20, max 100).
    """
    body: dict = {"page_size": max(1, min(limit, 100))}

    if filter:
        try:
            body["filter"] = json.loads(filter)
        except json.JSONDecodeError:
            return _error("INVALID_FILTER", "Invalid JSON filter",
                          hint="Provide a valid Notion API filter object.")

    if sort_property:
        if sort_direction not in ("ascending", "descending"):
            return _error("INVALID_SORT", f"Unknown sort direction '{sort_direction}'")
        body["sorts"] = [{"property": sort_property, "direction": sort_direction}]

    try:
        database, data_source = await _fetch_data_source(database_id)
        if data_source is None:
            return _error("NO_DATA_SOURCES", "Database has no data sources",
                          hint=HINTS["no_data_sources"], ref=database_id)
        result = await _notion_request_async(
            "POST", f"/data_sources/{data_source['id']}/query", json_body=body
        )
    except Exception as e:
        return _exception_to_error(e, ref=database_id)

    rows = [r for r in result.get("results", []) if "properties" in r]
    if not rows:
        return "No results found."

    prop_names = list(rows[0]["properties"].keys())
    lines = [
        f"| {' | '.join(prop_names)} |",
        f"| {' | '.join('---' for _ in prop_names)} |",
    ]
    for row in rows:
        props = row["properties"]
        cells = [
            escape_table_cell(format_property(props[name])) if name in props else ""
            for name in prop_names
        ]
        lines.append(f"| {' | '.join(cells)} |")

    summary = f"{len(rows)} result(s)"
    if result.get("has_more"):
        summary += " (more available)"
    return f"## Query Results ({summary})\n\n" + "\n".join(lines)


# -- Comments and users -------------------------------------------------------

@mcp.tool()
async def get_comments(block_id: str) -> str:
    """List comments on a Notion page or block.

    Args:
        block_id: The page ID or block ID to get comments for.
    """
    try:
        result = await _notion_request_async("GET", "/comments", params={"block_id": block_id})
    except Exception as e:
        return _exception_to_error(e, ref=block_id)

    comments = result.get("results", [])
    if not comments:
        return "No comments on this page/block."

    lines = [f"## Comments ({len(comments)})\n"]
    for comment in comments:
        text = rich_text_to_markdown(spans_from_notion(comment.get("rich_text")))
        date = (comment.get("created_time") or "")[:10]
        author = (comment.get("created_by") or {}).get("id", "unknown")
        lines.append(f"- **{date}** (by {author}): {text}")

    return "\n".join(lines)


@mcp.tool()
async def add_comment(page_id: str, text: str, discussion_id: Optional[str] = None) -> str:
    """Add a comment to a Notion page, or reply to a discussion thread.

    Args:
        page_id: The page ID to comment on.
        text: The comment text.
        discussion_id: Discussion thread ID to reply to (optional).
    """
    body: dict = {"rich_text": [RichTextSpan(text=text).to_notion()]}
    if discussion_id:
        body["discussion_id"] = discussion_id
    else:
        body["parent"] = {"page_id": page_id}

    try:
        await _notion_request_async("POST", "/comments", json_body=body)
    except Exception as e:
        return _exception_to_error(e, ref=discussion_id or page_id)

    if discussion_id:
        return f"Reply added to discussion {discussion_id}"
    return f"Comment added to page {page_id}"


@mcp.tool()
async def get_users() -> str:
    """List all users in the Notion workspace."""
    try:
        result = await _notion_request_async("GET", "/users")
    except Exception as e:
        return _exception_to_error(e)

    users = [u for u in result.get("results", []) if "type" in u]
    if not users:
        return "No users found."

    lines = [f"## Workspace Users ({len(users)})\n"]
    for user in users:
        user_type = "person" if user.get("type") == "person" else "bot"
        email = (user.get("person") or {}).get("email")
        suffix = f" ({email})" if email else ""
        lines.append(f"- **{user.get('name') or 'Unknown'}** ({user_type}, id: {user.get('id')}){suffix}")

    return "\n".join(lines)


@mcp.tool()
async def check_auth() -> str:
    """Verify Notion authentication and return workspace info."""
    try:
        result = await _notion_request_async("GET", "/users/me")
    except Exception as e:
        return _exception_to_error(e)

    bot_name = result.get("name", "Unknown")
    workspace_name = (result.get("bot") or {}).get("workspace_name", "Unknown workspace")
    return f"authenticated as '{bot_name}' in workspace '{workspace_name}'"


# =============================================================================
# HTTP Endpoints
# =============================================================================

async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint for easy testing."""
    token_loaded = _notion_token is not None

    # If token loaded, try a quick auth check
    auth_status = None
    if token_loaded:
        try:
            result = await _notion_request_async("GET", "/users/me")
            auth_status = (result.get("bot") or {}).get("workspace_name", "connected")
        except Exception as e:
            auth_status = f"error: {type(e).__name__}"

    return JSONResponse({
        "status": "ok",
        "token_loaded": token_loaded,
        "workspace": auth_status,
    })


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    """Run the Notion MCP server.

    Supports two transport modes:
    - stdio (default): launched directly by an MCP client
    - http: standalone server on localhost

    Usage:
        notion-markdown-mcp --token-file ~/.notion_token
        NOTION_API_TOKEN=... notion-markdown-mcp --http --port 2052
    """
    import argparse

    parser = argparse.ArgumentParser(description="Notion Markdown MCP Server")
    parser.add_argument(
        "--token-file",
        help="Path to file containing Notion API token (default: $NOTION_API_TOKEN)"
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help="Run as HTTP server instead of stdio"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help=f"Port for HTTP mode (default {DEFAULT_PORT})"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    global _notion_token
    try:
        _notion_token = load_token(args.token_file)
    except MissingTokenError as e:
        logger.error(str(e))
        raise SystemExit(1)
    logger.info("Notion token loaded from " + (args.token_file or "NOTION_API_TOKEN"))

    if args.http:
        import uvicorn

        app = mcp.streamable_http_app()
        app.add_route("/health", health_endpoint, methods=["GET"])

        logger.info(f"Starting Notion MCP server on http://{DEFAULT_HOST}:{args.port}")
        uvicorn.run(app, host=DEFAULT_HOST, port=args.port, log_level="warning")
    else:
        mcp.run()


if __name__ == "__main__":
    main()

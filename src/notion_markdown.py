"""Markdown codec for Notion blocks.

Translates between Notion's block tree and a compact Markdown dialect:
- blocks_to_markdown / blocks_to_markdown_async: block tree -> Markdown text
- markdown_to_blocks: Markdown text -> flat list of blocks ready to append

Blocks never carry their children. The encoder asks a children provider for
them while it walks the tree, so the walk itself performs no I/O.
"""

import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Generator, Iterable, NamedTuple, Optional

import parsy as P

logger = logging.getLogger("notion-mcp.markdown")


# =============================================================================
# Block Model
# =============================================================================

SPAN_TEXT = "text"
SPAN_MENTION_PAGE = "mention_page"
SPAN_MENTION_DATABASE = "mention_database"

# Annotation markers, innermost first
ANNOTATION_MARKERS = (
    ("code", "`"),
    ("bold", "**"),
    ("italic", "*"),
    ("strikethrough", "~~"),
)


@dataclass(frozen=True)
class RichTextSpan:
    """A span of rich text: a literal run or a page/database mention."""
    text: str = ""
    bold: bool = False
    italic: bool = False
    strikethrough: bool = False
    code: bool = False
    link: Optional[str] = None
    span_type: str = SPAN_TEXT  # text, mention_page, mention_database
    mention_id: Optional[str] = None

    @property
    def is_plain(self) -> bool:
        """True for a literal run with no link and no annotations."""
        return (
            self.span_type == SPAN_TEXT
            and self.link is None
            and not (self.bold or self.italic or self.strikethrough or self.code)
        )

    @classmethod
    def from_notion(cls, item: dict) -> "RichTextSpan":
        """Build a span from a Notion rich_text item.

        Page and database mentions keep their identity. User and date
        mentions, equations and anything else fall back to their plain_text.
        """
        item_type = item.get("type", "text")

        if item_type == "mention":
            mention = item.get("mention", {})
            mention_type = mention.get("type")
            for kind in ("page", "database"):
                if mention_type == kind or (mention_type is None and kind in mention):
                    return cls(
                        span_type=f"mention_{kind}",
                        mention_id=mention.get(kind, {}).get("id", ""),
                    )

        text_obj = item.get("text") or {}
        text = item.get("plain_text")
        if text is None:
            text = text_obj.get("content", "")

        link = None
        if item_type == "text" and text_obj.get("link"):
            link = text_obj["link"].get("url")

        annotations = item.get("annotations") or {}
        return cls(
            text=text,
            bold=bool(annotations.get("bold")),
            italic=bool(annotations.get("italic")),
            strikethrough=bool(annotations.get("strikethrough")),
            code=bool(annotations.get("code")),
            link=link,
        )

    def to_notion(self) -> dict:
        """Convert to a Notion rich_text item for writing."""
        if self.span_type == SPAN_MENTION_PAGE:
            return {
                "type": "mention",
                "mention": {"type": "page", "page": {"id": self.mention_id}},
            }
        if self.span_type == SPAN_MENTION_DATABASE:
            return {
                "type": "mention",
                "mention": {"type": "database", "database": {"id": self.mention_id}},
            }

        obj: dict = {"type": "text", "text": {"content": self.text}}
        if self.link:
            obj["text"]["link"] = {"url": self.link}

        annotations = {
            name: True for name, _ in ANNOTATION_MARKERS if getattr(self, name)
        }
        if annotations:
            obj["annotations"] = annotations
        return obj


def spans_from_notion(rich_text: Optional[list[dict]]) -> tuple[RichTextSpan, ...]:
    """Convert a Notion rich_text array to spans."""
    return tuple(RichTextSpan.from_notion(item) for item in rich_text or [])


def plain_text(spans: Iterable[RichTextSpan]) -> str:
    """Concatenate span text, ignoring formatting."""
    return "".join(span.text for span in spans)


# Block types whose payload is just rich_text (plus children)
RICH_TEXT_BLOCK_TYPES = {
    'paragraph', 'bulleted_list_item', 'numbered_list_item', 'quote', 'toggle',
}

HEADING_BLOCK_TYPES = {'heading_1', 'heading_2', 'heading_3'}

# File-backed media blocks (external or Notion-hosted URL)
MEDIA_BLOCK_TYPES = {'image', 'video', 'file', 'pdf'}


def _file_url(data: dict) -> Optional[str]:
    """Extract the URL of an external or Notion-hosted file object."""
    file_type = data.get("type")
    if file_type in ("external", "file"):
        return (data.get(file_type) or {}).get("url")
    return data.get("url")


@dataclass(frozen=True)
class Block:
    """A Notion content block.

    `id` is None for blocks decoded from Markdown that don't exist yet.
    Children are not stored here; they're fetched through a provider.
    """
    block_type: str
    rich_text: tuple[RichTextSpan, ...] = ()
    id: Optional[str] = None
    has_children: bool = False
    # Block-specific attributes
    checked: Optional[bool] = None  # to_do
    language: Optional[str] = None  # code
    is_toggleable: bool = False  # headings
    icon: Optional[str] = None  # callout emoji
    url: Optional[str] = None  # media, bookmark, embed
    caption: tuple[RichTextSpan, ...] = ()
    title: Optional[str] = None  # child_page, child_database
    expression: Optional[str] = None  # equation
    cells: tuple[tuple[RichTextSpan, ...], ...] = ()  # table_row

    @property
    def plain_text(self) -> str:
        return plain_text(self.rich_text)

    @classmethod
    def from_notion(cls, obj: dict) -> "Block":
        """Build a block from a Notion API block object."""
        block_type = obj.get("type", "unsupported")
        data = obj.get(block_type) or {}
        attrs: dict[str, Any] = {}

        if "rich_text" in data:
            attrs["rich_text"] = spans_from_notion(data["rich_text"])
        if "caption" in data:
            attrs["caption"] = spans_from_notion(data["caption"])

        if block_type == "to_do":
            attrs["checked"] = bool(data.get("checked"))
        elif block_type == "code":
            attrs["language"] = data.get("language")
        elif block_type in HEADING_BLOCK_TYPES:
            attrs["is_toggleable"] = bool(data.get("is_toggleable"))
        elif block_type == "callout":
            icon = data.get("icon") or {}
            if icon.get("type") == "emoji":
                attrs["icon"] = icon.get("emoji")
        elif block_type in MEDIA_BLOCK_TYPES:
            attrs["url"] = _file_url(data)
        elif block_type in ("bookmark", "embed"):
            attrs["url"] = data.get("url")
        elif block_type in ("child_page", "child_database"):
            attrs["title"] = data.get("title", "")
        elif block_type == "equation":
            attrs["expression"] = data.get("expression", "")
        elif block_type == "table_row":
            attrs["cells"] = tuple(spans_from_notion(cell) for cell in data.get("cells", []))

        return cls(
            block_type=block_type,
            id=obj.get("id"),
            has_children=bool(obj.get("has_children")),
            **attrs,
        )

    def to_notion(self) -> dict:
        """Convert to a Notion API block object ready for append.

        Raises:
            ValueError: If the block type can't be written through the API.
        """
        block_type = self.block_type
        rich_text = [span.to_notion() for span in self.rich_text]
        caption = [span.to_notion() for span in self.caption]

        if block_type in RICH_TEXT_BLOCK_TYPES:
            data: dict = {"rich_text": rich_text}

        elif block_type in HEADING_BLOCK_TYPES:
            data = {"rich_text": rich_text, "is_toggleable": self.is_toggleable}

        elif block_type == "to_do":
            data = {"rich_text": rich_text, "checked": bool(self.checked)}

        elif block_type == "callout":
            data = {"rich_text": rich_text}
            if self.icon:
                data["icon"] = {"type": "emoji", "emoji": self.icon}

        elif block_type == "code":
            data = {"rich_text": rich_text, "language": self.language or "plain text"}

        elif block_type == "divider":
            data = {}

        elif block_type == "bookmark":
            data = {"url": self.url}
            # No caption means no caption field at all
            if caption:
                data["caption"] = caption

        elif block_type == "embed":
            data = {"url": self.url}

        elif block_type in MEDIA_BLOCK_TYPES:
            data = {"type": "external", "external": {"url": self.url}}
            if caption:
                data["caption"] = caption

        elif block_type == "equation":
            data = {"expression": self.expression or ""}

        else:
            raise ValueError(f"Block type '{block_type}' cannot be written")

        return {"type": block_type, block_type: data}


def blocks_to_notion(blocks: Iterable[Block]) -> list[dict]:
    """Convert decoded blocks to Notion API block objects."""
    return [block.to_notion() for block in blocks]


# =============================================================================
# Inline Markdown (Rich Text <-> Markdown)
# =============================================================================

def rich_text_to_markdown(spans: Iterable[RichTextSpan]) -> str:
    """Render rich text spans as inline Markdown.

    Annotations nest code -> bold -> italic -> strikethrough, then the
    result is wrapped in a link if the span has one. Mentions become
    {{page:ID}} / {{database:ID}} placeholders.
    """
    parts = []
    for span in spans:
        if span.span_type == SPAN_MENTION_PAGE:
            parts.append(f"{{{{page:{span.mention_id}}}}}")
            continue
        if span.span_type == SPAN_MENTION_DATABASE:
            parts.append(f"{{{{database:{span.mention_id}}}}}")
            continue

        text = span.text
        if not text:
            continue

        for name, marker in ANNOTATION_MARKERS:
            if getattr(span, name):
                text = f"{marker}{text}{marker}"

        if span.link:
            text = f"[{text}]({span.link})"

        parts.append(text)

    return "".join(parts)


def _delimited(marker: str, **annotations: bool) -> P.Parser:
    """Parser for marker-delimited text, e.g. **bold**.

    Inner text is taken literally: a match carries exactly one annotation.
    """
    return (
        P.string(marker) >>
        P.regex(rf".+?(?={re.escape(marker)})") <<
        P.string(marker)
    ).map(lambda text: RichTextSpan(text=text, **annotations))


# {{page:ID}} / {{database:ID}}
_mention = P.seq(
    P.string("{{") >> P.regex(r"page|database"),
    P.string(":") >> P.regex(r"[^}]+") << P.string("}}"),
).combine(
    lambda kind, mention_id: RichTextSpan(
        span_type=f"mention_{kind}", mention_id=mention_id.strip()
    )
)

# [text](url)
_link = P.seq(
    P.string("[") >> P.regex(r"[^\]]+"),
    P.string("](") >> P.regex(r"[^)]+") << P.string(")"),
).combine(lambda text, url: RichTextSpan(text=text, link=url))

# Characters that can open inline syntax
_RESERVED_CHARS = r"\[{*`~"

_plain = P.regex(rf"[^{_RESERVED_CHARS}]+").map(lambda text: RichTextSpan(text=text))

# Reserved characters that didn't open any syntax are literal text
_reserved = P.regex(rf"[{_RESERVED_CHARS}]+").map(lambda text: RichTextSpan(text=text))

# Tried in order at each scan position; the first match wins.
# Bold precedes italic so '**' is never read as two italic markers, and
# mentions/links precede plain text so '{' and '[' only open their syntax.
INLINE_RULES: list[tuple[str, P.Parser]] = [
    ("mention", _mention),
    ("link", _link),
    ("bold", _delimited("**", bold=True)),
    ("italic", _delimited("*", italic=True)),
    ("code", _delimited("`", code=True)),
    ("strikethrough", _delimited("~~", strikethrough=True)),
    ("plain", _plain),
    ("reserved", _reserved),
]

_inline_parser = P.alt(*(parser for _, parser in INLINE_RULES)).many()


def _merge_plain_spans(spans: list[RichTextSpan]) -> list[RichTextSpan]:
    """Merge adjacent unformatted literal spans."""
    merged: list[RichTextSpan] = []
    for span in spans:
        if merged and span.is_plain and merged[-1].is_plain:
            merged[-1] = replace(merged[-1], text=merged[-1].text + span.text)
        else:
            merged.append(span)
    return merged


def parse_inline_markdown(text: str) -> list[RichTextSpan]:
    """Parse inline Markdown into rich text spans.

    Never fails: if nothing can be tokenized, the whole input comes back
    as a single literal span.

    Args:
        text: Inline Markdown (one line of block content).

    Returns:
        List of RichTextSpan objects in input order.
    """
    if not text:
        return []

    try:
        spans = _merge_plain_spans(_inline_parser.parse(text))
    except P.ParseError as e:
        logger.warning(f"Inline markdown parse error: {e}")
        spans = []

    if not spans:
        return [RichTextSpan(text=text)]
    return spans


# =============================================================================
# Line Classifier
# =============================================================================

# Short code-fence tags mapped to Notion language names
LANGUAGE_ALIASES = {
    "": "plain text",
    "text": "plain text",
    "txt": "plain text",
    "plaintext": "plain text",
    "js": "javascript",
    "ts": "typescript",
    "py": "python",
    "rb": "ruby",
    "sh": "bash",
    "zsh": "bash",
    "yml": "yaml",
    "md": "markdown",
    "rs": "rust",
    "golang": "go",
    "kt": "kotlin",
    "cpp": "c++",
    "cs": "c#",
    "objc": "objective-c",
    "ps1": "powershell",
}

FENCE_PATTERN = re.compile(r"^```\s*([^\s`]*)")

HEADING_PATTERN = re.compile(r"^(#{1,3})(?:\s+(.*))?$")
TODO_PATTERN = re.compile(r"^[-*]\s+\[([ xX])\](?:\s+(.*))?$")
BULLET_PATTERN = re.compile(r"^[-*](?:\s+(.*))?$")
NUMBERED_PATTERN = re.compile(r"^\d+\.(?:\s+(.*))?$")
QUOTE_PATTERN = re.compile(r"^>\s*(.*)$")
DIVIDER_PATTERN = re.compile(r"^[-*_]{3,}$")
BOOKMARK_PATTERN = re.compile(r"^\{\{bookmark:([^|}]+)(?:\|([^}]+))?\}\}$")
EMBED_PATTERN = re.compile(r"^\{\{embed:([^}]+)\}\}$")
IMAGE_PATTERN = re.compile(r"^!\[([^\]]*)\]\(([^)]+)\)$")


def normalize_language(tag: str) -> str:
    """Map a code-fence tag to a Notion language name.

    Unknown tags pass through lower-cased; an empty tag is plain text.
    """
    lowered = tag.strip().lower()
    return LANGUAGE_ALIASES.get(lowered, lowered)


def _literal_caption(text: Optional[str]) -> tuple[RichTextSpan, ...]:
    text = (text or "").strip()
    return (RichTextSpan(text=text),) if text else ()


def _heading(match: re.Match) -> Block:
    level = len(match.group(1))
    return Block(f"heading_{level}", rich_text=tuple(parse_inline_markdown(match.group(2) or "")))


def _todo(match: re.Match) -> Block:
    return Block(
        "to_do",
        rich_text=tuple(parse_inline_markdown(match.group(2) or "")),
        checked=match.group(1).lower() == "x",
    )


def _text_block(block_type: str) -> Callable[[re.Match], Block]:
    def build(match: re.Match) -> Block:
        return Block(block_type, rich_text=tuple(parse_inline_markdown(match.group(1) or "")))
    return build


def _bookmark(match: re.Match) -> Block:
    return Block("bookmark", url=match.group(1).strip(), caption=_literal_caption(match.group(2)))


def _embed(match: re.Match) -> Block:
    return Block("embed", url=match.group(1).strip())


def _image(match: re.Match) -> Block:
    return Block("image", url=match.group(2), caption=_literal_caption(match.group(1)))


# Single-line rules in precedence order (first match wins). Checklist items
# come before bullets, and the divider only matches a whole line. Item text
# is optional since an empty item loses its trailing space to strip().
LINE_RULES: list[tuple[re.Pattern, Callable[[re.Match], Block]]] = [
    (HEADING_PATTERN, _heading),
    (TODO_PATTERN, _todo),
    (BULLET_PATTERN, _text_block("bulleted_list_item")),
    (NUMBERED_PATTERN, _text_block("numbered_list_item")),
    (QUOTE_PATTERN, _text_block("quote")),
    (DIVIDER_PATTERN, lambda match: Block("divider")),
    (BOOKMARK_PATTERN, _bookmark),
    (EMBED_PATTERN, _embed),
    (IMAGE_PATTERN, _image),
]


def _consume_fence(lines: list[str], pos: int) -> tuple[Block, int]:
    """Consume a fenced code block starting at lines[pos].

    An unterminated fence takes every remaining line.
    """
    match = FENCE_PATTERN.match(lines[pos].strip())
    language = normalize_language(match.group(1) if match else "")

    body = []
    pos += 1
    while pos < len(lines) and not lines[pos].strip().startswith("```"):
        body.append(lines[pos])
        pos += 1

    block = Block("code", rich_text=(RichTextSpan(text="\n".join(body)),), language=language)
    # Skip the closing fence
    return block, pos + 1


def classify_line(lines: list[str], pos: int) -> tuple[Optional[Block], int]:
    """Classify the line at `pos` and build its block.

    Leading indentation is ignored: nesting is not reconstructed.

    Args:
        lines: All input lines.
        pos: Index of the line to classify.

    Returns:
        Tuple of (block, next_pos). Block is None for blank lines.
    """
    stripped = lines[pos].strip()
    if not stripped:
        return None, pos + 1

    if stripped.startswith("```"):
        return _consume_fence(lines, pos)

    for pattern, build in LINE_RULES:
        match = pattern.match(stripped)
        if match:
            return build(match), pos + 1

    return Block("paragraph", rich_text=tuple(parse_inline_markdown(stripped))), pos + 1


# =============================================================================
# Markdown -> Blocks
# =============================================================================

def markdown_to_blocks(markdown: str) -> list[Block]:
    """Decode Markdown into a flat list of blocks.

    Every block is a top-level sibling, in input order. Decoding never
    rejects input; unrecognized lines become paragraphs.
    """
    lines = markdown.replace("\r\n", "\n").split("\n")
    blocks: list[Block] = []
    pos = 0

    while pos < len(lines):
        block, pos = classify_line(lines, pos)
        if block is not None:
            blocks.append(block)

    return blocks


# =============================================================================
# Blocks -> Markdown
# =============================================================================

INDENT = "  "

# Mapping from block type to line marker
BLOCK_TYPE_TO_MARKER = {
    'paragraph': '',
    'heading_1': '# ',
    'heading_2': '## ',
    'heading_3': '### ',
    'bulleted_list_item': '- ',
    'numbered_list_item': '1. ',
    'quote': '> ',
}

# Structural blocks whose content is always fetched
CONTAINER_BLOCK_TYPES = {'table', 'column_list', 'column', 'toggle'}

# References to other pages/databases; their content is never inlined
REFERENCE_BLOCK_TYPES = {'child_page', 'child_database'}

PLACEHOLDER_BLOCK_TYPES = {'table_of_contents', 'breadcrumb'}


class ChildrenRequest(NamedTuple):
    """Request from the encoder for the ordered children of a block."""
    block_id: str


ChildrenProvider = Callable[[str], list[Block]]
AsyncChildrenProvider = Callable[[str], Awaitable[list[Block]]]

# Generator yielding ChildrenRequest, receiving children, returning lines
RenderWalk = Generator[ChildrenRequest, list[Block], list[str]]


def escape_table_cell(text: str) -> str:
    """Make text safe inside a Markdown table cell."""
    return text.replace("|", "\\|").replace("\n", " ")


def _code_fence(block: Block) -> str:
    language = block.language or ""
    if language == "plain text":
        language = ""
    return f"```{language}\n{block.plain_text}\n```"


def render_block_markdown(block: Block) -> str:
    """Render a block's own content (without children or indentation).

    May return several lines, e.g. for code blocks.
    """
    block_type = block.block_type
    text = rich_text_to_markdown(block.rich_text)

    if block_type in BLOCK_TYPE_TO_MARKER:
        return f"{BLOCK_TYPE_TO_MARKER[block_type]}{text}"

    if block_type == "to_do":
        check = "x" if block.checked else " "
        return f"- [{check}] {text}"

    if block_type == "toggle":
        return f"<details><summary>{text}</summary>"

    if block_type == "callout":
        icon = f"{block.icon} " if block.icon else ""
        return f"> {icon}{text}"

    if block_type == "code":
        return _code_fence(block)

    if block_type == "divider":
        return "---"

    caption = rich_text_to_markdown(block.caption)

    if block_type == "image":
        return f"![{caption}]({block.url or ''})"

    if block_type == "bookmark":
        if caption:
            return f"{{{{bookmark:{block.url}|{caption}}}}}"
        return f"{{{{bookmark:{block.url}}}}}"

    if block_type == "embed":
        return f"{{{{embed:{block.url}}}}}"

    if block_type == "video":
        return f"[Video]({block.url or ''})"

    if block_type == "file":
        return f"[{caption or 'File'}]({block.url or ''})"

    if block_type == "pdf":
        return f"[PDF]({block.url or ''})"

    if block_type == "equation":
        return f"$${block.expression or ''}$$"

    if block_type == "child_page":
        return f"**[Child Page: {block.title}]** (id: {block.id})"

    if block_type == "child_database":
        return f"**[Child Database: {block.title}]** (id: {block.id})"

    if block_type == "table_row":
        cells = [escape_table_cell(rich_text_to_markdown(cell)) for cell in block.cells]
        return f"| {' | '.join(cells)} |"

    if block_type in PLACEHOLDER_BLOCK_TYPES:
        return f"<!-- {block_type} -->"

    return f"<!-- unsupported block type: {block_type} -->"


def _needs_children(block: Block) -> bool:
    if block.block_type in REFERENCE_BLOCK_TYPES:
        return False
    return block.has_children or block.block_type in CONTAINER_BLOCK_TYPES


def _fetch_children(block: Block) -> Generator[ChildrenRequest, list[Block], list[Block]]:
    """Suspend the walk until the provider returns the block's children."""
    if block.id is None:
        # Not in the store yet, so nothing to fetch
        return []
    children = yield ChildrenRequest(block.id)
    return list(children)


def _render_table(rows: list[Block]) -> list[str]:
    """Render table rows: first row as header, then a separator."""
    lines: list[str] = []
    for row in rows:
        if row.block_type != "table_row":
            continue
        lines.append(render_block_markdown(row))
        if len(lines) == 1:
            lines.append(f"| {' | '.join('---' for _ in row.cells)} |")
    return lines


def _walk_column(column: Block, indent: int) -> RenderWalk:
    children = yield from _fetch_children(column)
    return (yield from _walk_blocks(children, indent))


def _walk_column_list(block: Block, indent: int) -> RenderWalk:
    """Render columns one after another, separated by a blank line."""
    columns = yield from _fetch_children(block)
    lines: list[str] = []
    for i, column in enumerate(c for c in columns if c.block_type == "column"):
        column_lines = yield from _walk_column(column, indent)
        if i > 0:
            lines.append("")
        lines.extend(column_lines)
    return lines


def _walk_block(block: Block, indent: int) -> RenderWalk:
    """Render one block and, if it has any, its children."""
    prefix = INDENT * indent
    block_type = block.block_type

    if block_type == "table":
        rows = yield from _fetch_children(block)
        return [prefix + line for line in _render_table(rows)]

    if block_type == "column_list":
        return (yield from _walk_column_list(block, indent))

    if block_type == "column":
        return (yield from _walk_column(block, indent))

    lines = [prefix + line for line in render_block_markdown(block).split("\n")]
    if not _needs_children(block):
        return lines

    children = yield from _fetch_children(block)
    lines.extend((yield from _walk_blocks(children, indent + 1)))

    if block_type == "toggle" and children:
        lines.append(f"{prefix}</details>")

    return lines


def _walk_blocks(blocks: list[Block], indent: int) -> RenderWalk:
    lines: list[str] = []
    for block in blocks:
        lines.extend((yield from _walk_block(block, indent)))
    return lines


def blocks_to_markdown(blocks: Iterable[Block], fetch_children: ChildrenProvider) -> str:
    """Encode a block tree as Markdown using a synchronous children provider.

    Args:
        blocks: Top-level blocks in order.
        fetch_children: Returns the ordered children of a block ID. Errors
            it raises propagate to the caller; nothing is retried.

    Returns:
        Markdown text.
    """
    walk = _walk_blocks(list(blocks), 0)
    try:
        request = next(walk)
        while True:
            request = walk.send(fetch_children(request.block_id))
    except StopIteration as done:
        return "\n".join(done.value)


async def blocks_to_markdown_async(
    blocks: Iterable[Block],
    fetch_children: AsyncChildrenProvider
) -> str:
    """Encode a block tree as Markdown, awaiting the children provider.

    Same output as blocks_to_markdown. Children of a block are requested
    only after the block's own lines have been rendered.
    """
    walk = _walk_blocks(list(blocks), 0)
    try:
        request = next(walk)
        while True:
            children = await fetch_children(request.block_id)
            request = walk.send(children)
    except StopIteration as done:
        return "\n".join(done.value)

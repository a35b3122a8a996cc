"""Pure functions for fitting a message list into a token budget.

Message content is made of blocks.  Text wrapped with :func:`wrap_content`
is a truncatable block carrying a placement hint (``preserve``), a relative
``flex`` weight and a ``min_tokens`` floor; any other text is fixed and never
shrunk.  When the total exceeds the limit, truncatable blocks are shrunk in
proportion to their flex, never below their floor, keeping their preserved
edge.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Literal, Sequence, TypeVar

from .errors import ContextSizeExceededError

CHARS_PER_TOKEN = 4

Preserve = Literal["top", "bottom", "both"]

_OPEN = "\u2063<<truncate preserve={preserve} flex={flex} min={min_tokens}>>"
_CLOSE = "<</truncate>>\u2063"
_BLOCK_RE = re.compile(
    r"\u2063<<truncate preserve=(top|bottom|both) flex=([0-9.]+) min=(\d+)>>"
    r"(.*?)<</truncate>>\u2063",
    re.DOTALL,
)

M = TypeVar("M")


def estimate_tokens(text: str) -> int:
    """Approximate token count (~4 characters per token)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def wrap_content(
    text: str,
    *,
    preserve: Preserve = "top",
    flex: float = 1,
    min_tokens: int = 0,
) -> str:
    """Mark *text* as truncatable.

    Args:
        text: The content to wrap.
        preserve: Edge kept when cutting: ``"top"`` keeps the head,
            ``"bottom"`` keeps the tail, ``"both"`` cuts the middle.
        flex: Relative share of the excess this block absorbs.
        min_tokens: Floor below which the block is never shrunk.
    """
    if preserve not in ("top", "bottom", "both"):
        raise ValueError(f"Invalid preserve value: {preserve!r}")
    if flex < 0 or min_tokens < 0:
        raise ValueError("flex and min_tokens must be non-negative")
    opening = _OPEN.format(preserve=preserve, flex=float(flex), min_tokens=int(min_tokens))
    return f"{opening}{text}{_CLOSE}"


def unwrap_content(text: str) -> str:
    """Remove truncation markers, keeping the wrapped text."""
    return _BLOCK_RE.sub(lambda m: m.group(4), text)


# ---------------------------------------------------------------------------
# Blocks
# ---------------------------------------------------------------------------


@dataclass
class _Block:
    text: str
    truncatable: bool = False
    preserve: Preserve = "top"
    flex: float = 0.0
    min_tokens: int = 0

    def __post_init__(self) -> None:
        self.tokens = estimate_tokens(self.text)
        self.target = self.tokens

    @property
    def room(self) -> int:
        """Tokens this block can still give up."""
        if not self.truncatable or self.flex <= 0:
            return 0
        return max(0, self.target - max(self.min_tokens, 0))

    def render(self) -> str:
        if self.target >= self.tokens:
            return self.text
        return _cut(self.text, self.target, self.tokens - self.target, self.preserve)


def _split_blocks(content: str) -> list[_Block]:
    blocks: list[_Block] = []
    pos = 0
    for match in _BLOCK_RE.finditer(content):
        if match.start() > pos:
            blocks.append(_Block(content[pos : match.start()]))
        blocks.append(
            _Block(
                match.group(4),
                truncatable=True,
                preserve=match.group(1),  # type: ignore[arg-type]
                flex=float(match.group(2)),
                min_tokens=int(match.group(3)),
            )
        )
        pos = match.end()
    if pos < len(content):
        blocks.append(_Block(content[pos:]))
    return blocks


def _cut(text: str, target_tokens: int, removed_tokens: int, preserve: Preserve) -> str:
    if target_tokens <= 0:
        return ""
    budget = target_tokens * CHARS_PER_TOKEN
    marker = f"\n[... truncated {removed_tokens} tokens ...]\n"
    if len(marker) > budget:
        # No room for the marker; keep the preserved edge only.
        marker = ""
    keep = budget - len(marker)
    if preserve == "top":
        return text[:keep] + marker
    if preserve == "bottom":
        return marker + (text[len(text) - keep :] if keep else "")
    head = keep // 2
    tail = keep - head
    return text[:head] + marker + (text[len(text) - tail :] if tail else "")


def _shrink(blocks: list[_Block], excess: int) -> int:
    """Lower block targets until *excess* is absorbed; return what is left."""
    while excess > 0:
        shrinkable = [b for b in blocks if b.room > 0]
        if not shrinkable:
            break
        flex_total = sum(b.flex for b in shrinkable)
        absorbed = 0
        for block in shrinkable:
            share = max(1, math.ceil(excess * block.flex / flex_total))
            cut = min(share, block.room, excess - absorbed)
            block.target -= cut
            absorbed += cut
            if absorbed >= excess:
                break
        excess -= absorbed
    return excess


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


def _content_of(message: Any) -> str:
    if isinstance(message, dict):
        return message.get("content") or ""
    return getattr(message, "content", "") or ""


def _with_content(message: M, content: str) -> M:
    if isinstance(message, dict):
        return {**message, "content": content}  # type: ignore[return-value]
    return message.model_copy(update={"content": content})  # type: ignore[attr-defined]


def truncate_wrapped_content(
    messages: Sequence[M],
    token_limit: int,
    *,
    throw_on_failure: bool = True,
) -> list[M]:
    """Fit *messages* into *token_limit* tokens.

    Returns the same messages with wrapped blocks unwrapped (and shrunk when
    needed).  Messages left empty are dropped.  Raises
    ``ContextSizeExceededError`` when the limit cannot be met and
    *throw_on_failure* is set; otherwise returns the best effort.
    """
    parsed = [_split_blocks(_content_of(m)) for m in messages]
    all_blocks = [b for blocks in parsed for b in blocks]
    total = sum(b.tokens for b in all_blocks)

    if total > token_limit:
        remaining = _shrink(all_blocks, total - token_limit)
        if remaining > 0 and throw_on_failure:
            raise ContextSizeExceededError(token_limit + remaining, token_limit)

    rendered = ["".join(b.render() for b in blocks) for blocks in parsed]
    final = sum(estimate_tokens(content) for content in rendered)
    if final > token_limit and throw_on_failure:
        raise ContextSizeExceededError(final, token_limit)

    result: list[M] = []
    for message, content in zip(messages, rendered):
        if not content:
            continue
        if content == _content_of(message):
            result.append(message)
        else:
            result.append(_with_content(message, content))
    return result

"""Line- and block-level diffs between two document revisions.

Both granularities align the two sides with difflib's longest-common-
subsequence matcher, so an inserted line is reported as one addition instead
of shifting every following line into a "modified" entry. Within a replaced
region, lines are paired in order and reported as modified; the surplus on
either side becomes added or removed.

Line numbers are 1-based and refer to the new revision for added/modified
entries and to the previous revision for removed ones.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
import difflib
import json
import logging
import time
from typing import Callable, List, Sequence, TypeVar

from core.errors import DiffTimeoutError
from core.models import BlockDiff, DiffResult, DiffSummary, LineDiff

LOGGER = logging.getLogger(__name__)

ADDED = "added"
REMOVED = "removed"
MODIFIED = "modified"
UNCHANGED = "unchanged"

BLOCK_PARAGRAPH = "paragraph"
BLOCK_HEADING = "heading"
BLOCK_LIST = "list"
BLOCK_CODE = "code"
BLOCK_TABLE = "table"

CARD_PREVIEW_CHARS = 50
CARD_MAX_BLOCKS = 5

T = TypeVar("T")


@dataclass(frozen=True)
class Block:
    type: str
    content: str


def _classify_line(line: str) -> str:
    if line.startswith("#"):
        return BLOCK_HEADING
    if line.startswith("-") or line.startswith("*"):
        return BLOCK_LIST
    if line.startswith("```"):
        return BLOCK_CODE
    if "|" in line:
        return BLOCK_TABLE
    return BLOCK_PARAGRAPH


def parse_blocks(content: str) -> List[Block]:
    """Split content into blocks, merging consecutive lines of the same type."""

    blocks: List[Block] = []
    current_type = None
    current_lines: List[str] = []

    for line in content.split("\n"):
        block_type = _classify_line(line)
        if current_type is not None and block_type != current_type:
            blocks.append(Block(current_type, "\n".join(current_lines).strip()))
            current_lines = []
        current_type = block_type
        current_lines.append(line)

    if current_type is not None:
        blocks.append(Block(current_type, "\n".join(current_lines).strip()))

    return [block for block in blocks if block.content]


def _neighbor(items: Sequence[T], index: int, default: T) -> T:
    if 0 <= index < len(items):
        return items[index]
    return default


def _aligned_opcodes(prev: Sequence[str], new: Sequence[str]):
    matcher = difflib.SequenceMatcher(None, prev, new, autojunk=False)
    return matcher.get_opcodes()


def line_diff(prev_content: str, new_content: str) -> List[LineDiff]:
    prev_lines = prev_content.split("\n")
    new_lines = new_content.split("\n")
    diffs: List[LineDiff] = []

    def added(j: int) -> LineDiff:
        return LineDiff(
            line_number=j + 1,
            change_type=ADDED,
            content=new_lines[j],
            context_before=_neighbor(new_lines, j - 1, ""),
            context_after=_neighbor(new_lines, j + 1, ""),
        )

    def removed(i: int) -> LineDiff:
        return LineDiff(
            line_number=i + 1,
            change_type=REMOVED,
            content=prev_lines[i],
            context_before=_neighbor(prev_lines, i - 1, ""),
            context_after=_neighbor(prev_lines, i + 1, ""),
        )

    for tag, i1, i2, j1, j2 in _aligned_opcodes(prev_lines, new_lines):
        if tag == "equal":
            continue
        if tag == "delete":
            diffs.extend(removed(i) for i in range(i1, i2))
        elif tag == "insert":
            diffs.extend(added(j) for j in range(j1, j2))
        else:
            paired = min(i2 - i1, j2 - j1)
            for k in range(paired):
                j = j1 + k
                diffs.append(
                    LineDiff(
                        line_number=j + 1,
                        change_type=MODIFIED,
                        content=new_lines[j],
                        previous_content=prev_lines[i1 + k],
                        context_before=_neighbor(new_lines, j - 1, ""),
                        context_after=_neighbor(new_lines, j + 1, ""),
                    )
                )
            diffs.extend(removed(i) for i in range(i1 + paired, i2))
            diffs.extend(added(j) for j in range(j1 + paired, j2))

    return diffs


def block_diff(prev_content: str, new_content: str) -> List[BlockDiff]:
    prev_blocks = parse_blocks(prev_content)
    new_blocks = parse_blocks(new_content)
    empty = Block(BLOCK_PARAGRAPH, "")
    diffs: List[BlockDiff] = []

    def added(j: int) -> BlockDiff:
        return BlockDiff(
            block_id=f"block_{j}",
            block_type=new_blocks[j].type,
            change_type=ADDED,
            content=new_blocks[j].content,
            context_before=_neighbor(new_blocks, j - 1, empty).content,
            context_after=_neighbor(new_blocks, j + 1, empty).content,
        )

    def removed(i: int) -> BlockDiff:
        return BlockDiff(
            block_id=f"block_{i}",
            block_type=prev_blocks[i].type,
            change_type=REMOVED,
            content=prev_blocks[i].content,
            context_before=_neighbor(prev_blocks, i - 1, empty).content,
            context_after=_neighbor(prev_blocks, i + 1, empty).content,
        )

    prev_keys = [block.content for block in prev_blocks]
    new_keys = [block.content for block in new_blocks]
    for tag, i1, i2, j1, j2 in _aligned_opcodes(prev_keys, new_keys):
        if tag == "equal":
            continue
        if tag == "delete":
            diffs.extend(removed(i) for i in range(i1, i2))
        elif tag == "insert":
            diffs.extend(added(j) for j in range(j1, j2))
        else:
            paired = min(i2 - i1, j2 - j1)
            for k in range(paired):
                j = j1 + k
                diffs.append(
                    BlockDiff(
                        block_id=f"block_{j}",
                        block_type=new_blocks[j].type,
                        change_type=MODIFIED,
                        content=new_blocks[j].content,
                        previous_content=prev_blocks[i1 + k].content,
                        context_before=_neighbor(new_blocks, j - 1, empty).content,
                        context_after=_neighbor(new_blocks, j + 1, empty).content,
                    )
                )
            diffs.extend(removed(i) for i in range(i1 + paired, i2))
            diffs.extend(added(j) for j in range(j1 + paired, j2))

    return diffs


def _count(diffs, change_type: str) -> int:
    return sum(1 for d in diffs if d.change_type == change_type)


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


def generate_summary(
    line_diffs: List[LineDiff], block_diffs: List[BlockDiff], prev_content: str, new_content: str
) -> DiffSummary:
    added_lines = _count(line_diffs, ADDED)
    removed_lines = _count(line_diffs, REMOVED)
    modified_lines = _count(line_diffs, MODIFIED)

    prev_length = len(prev_content)
    if prev_length > 0:
        ratio = (abs(len(new_content) - prev_length) + added_lines + removed_lines) / prev_length
        # Half-up rounding, matching the percentage shown in notifications.
        percent_changed = int(ratio * 100 + 0.5)
    else:
        percent_changed = 0

    parts = []
    if added_lines:
        parts.append(f"+{_plural(added_lines, 'line')}")
    if removed_lines:
        parts.append(f"-{_plural(removed_lines, 'line')}")
    if modified_lines:
        parts.append(f"~{_plural(modified_lines, 'line')}")
    summary = f"{', '.join(parts)} ({percent_changed}% changed)" if parts else "No changes detected"

    return DiffSummary(
        total_changes=added_lines + removed_lines + modified_lines,
        added_lines=added_lines,
        removed_lines=removed_lines,
        modified_lines=modified_lines,
        added_blocks=_count(block_diffs, ADDED),
        removed_blocks=_count(block_diffs, REMOVED),
        modified_blocks=_count(block_diffs, MODIFIED),
        percent_changed=percent_changed,
        summary=summary,
    )


def compute_diff(
    prev_content: str,
    new_content: str,
    prev_revision: int,
    new_revision: int,
    clock: Callable[[], float] = time.time,
) -> DiffResult:
    """Compute line diffs, block diffs and a summary. Pure and deterministic."""

    started = time.perf_counter()
    lines = line_diff(prev_content, new_content)
    blocks = block_diff(prev_content, new_content)
    summary = generate_summary(lines, blocks, prev_content, new_content)
    return DiffResult(
        previous_revision=prev_revision,
        new_revision=new_revision,
        timestamp=clock(),
        line_diffs=lines,
        block_diffs=blocks,
        summary=summary,
        compute_time_ms=round((time.perf_counter() - started) * 1000),
    )


async def compute_diff_with_timeout(
    prev_content: str,
    new_content: str,
    prev_revision: int,
    new_revision: int,
    timeout_ms: int,
) -> DiffResult:
    """Run compute_diff off the event loop and give up after timeout_ms.

    The worker thread cannot be interrupted; on timeout its result is simply
    discarded.
    """

    try:
        return await asyncio.wait_for(
            asyncio.to_thread(compute_diff, prev_content, new_content, prev_revision, new_revision),
            timeout=timeout_ms / 1000,
        )
    except asyncio.TimeoutError as exc:
        raise DiffTimeoutError(
            f"Diff of revisions {prev_revision} -> {new_revision} exceeded {timeout_ms}ms"
        ) from exc


_CARD_MARKERS = {ADDED: "+", REMOVED: "-", MODIFIED: "~"}


def format_diff_for_card(diff: DiffResult) -> str:
    """Render a diff as plain text for a chat message."""

    lines = [f"Changes: revision {diff.previous_revision} -> {diff.new_revision}", ""]
    lines.append(f"Summary: {diff.summary.summary}")
    lines.append("")

    if diff.block_diffs:
        lines.append("Block-level changes:")
        for block in diff.block_diffs[:CARD_MAX_BLOCKS]:
            marker = _CARD_MARKERS.get(block.change_type, " ")
            preview = block.content[:CARD_PREVIEW_CHARS].replace("\n", " ")
            ellipsis = "..." if len(block.content) > CARD_PREVIEW_CHARS else ""
            lines.append(f"  {marker} [{block.block_type}] {preview}{ellipsis}")
        if len(diff.block_diffs) > CARD_MAX_BLOCKS:
            lines.append(f"  ... and {len(diff.block_diffs) - CARD_MAX_BLOCKS} more changes")
        lines.append("")

    if diff.summary.total_changes > 0:
        lines.append("Line stats:")
        lines.append(f"  Added: {diff.summary.added_lines}")
        lines.append(f"  Removed: {diff.summary.removed_lines}")
        lines.append(f"  Modified: {diff.summary.modified_lines}")
        lines.append("")

    lines.append(f"Computed in {diff.compute_time_ms}ms")
    return "\n".join(lines)


def format_diff_as_json(diff: DiffResult) -> str:
    return json.dumps(asdict(diff), indent=2, ensure_ascii=False)

"""
Unified Diff Applier - applies multi-file unified diffs to a VirtualOverlay

No git, no patch command - pure Python implementation.

Supported:
- `diff --git` preambles (index, mode, new/deleted file, rename lines)
- `---` / `+++` headers with a/ b/ prefixes, `/dev/null` for create and delete
- `@@ -l,s +l,s @@` hunks, `\\ No newline at end of file`

Application is all-or-nothing: every file is patched on a staged copy and the
overlay only sees the result when all hunks applied. On failure the overlay is
discarded and DiffApplicationError is raised.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from shipyard.core.exceptions import DiffApplicationError
from shipyard.core.logging_config import logger
from shipyard.modules.overlay.virtual_fs import OverlayFile, VirtualOverlay, normalize_path


EMPTY_DIFF_SENTINEL = "# Note: This is a valid empty diff (means no changes from template)"
DEV_NULL = "/dev/null"


class LineOperation(Enum):
    """Type of operation for a line"""
    ADD = "add"
    DELETE = "delete"
    CONTEXT = "context"


@dataclass
class DiffLine:
    """A single line in a diff hunk"""
    operation: LineOperation
    content: str


@dataclass
class DiffHunk:
    """A hunk in a diff (one @@ section)"""
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: List[DiffLine] = field(default_factory=list)
    old_missing_newline: bool = False
    new_missing_newline: bool = False

    @property
    def old_lines(self) -> List[str]:
        return [l.content for l in self.lines if l.operation != LineOperation.ADD]

    @property
    def new_lines(self) -> List[str]:
        return [l.content for l in self.lines if l.operation != LineOperation.DELETE]


@dataclass
class FilePatch:
    """All hunks touching one file"""
    old_path: Optional[str] = None
    new_path: Optional[str] = None
    hunks: List[DiffHunk] = field(default_factory=list)
    is_new_file: bool = False
    is_deleted_file: bool = False

    @property
    def creates(self) -> bool:
        return self.is_new_file or self.old_path == DEV_NULL

    @property
    def deletes(self) -> bool:
        return self.is_deleted_file or self.new_path == DEV_NULL

    @property
    def path(self) -> str:
        """Path the patch writes to (or deletes)"""
        if self.deletes:
            return self.old_path
        return self.new_path or self.old_path

    @property
    def is_rename(self) -> bool:
        return (
            not self.creates and not self.deletes
            and self.old_path is not None and self.new_path is not None
            and self.old_path != self.new_path
        )


def is_noop_diff(diff_text: Optional[str]) -> bool:
    """True for a missing/blank diff or the "no changes from template" sentinel"""
    if diff_text is None:
        return True
    stripped = diff_text.strip()
    return not stripped or stripped == EMPTY_DIFF_SENTINEL


class UnifiedDiffApplier:
    """
    Parses and applies unified diffs against an overlay.

    A hunk is first tried at its stated line; if the old-side lines do not
    match exactly there, positions up to OFFSET_WINDOW lines away are tried
    (the same offset tolerance `patch` has). Anything else is a failure.
    """

    GIT_HEADER_PATTERN = re.compile(r'^diff --git a/(.+?) b/(.+)$')
    OLD_FILE_PATTERN = re.compile(r'^---\s+(.+?)(?:\t.*)?$')
    NEW_FILE_PATTERN = re.compile(r'^\+\+\+\s+(.+?)(?:\t.*)?$')
    HUNK_PATTERN = re.compile(r'^@@\s+-(\d+)(?:,(\d+))?\s+\+(\d+)(?:,(\d+))?\s+@@')
    RENAME_FROM_PATTERN = re.compile(r'^rename from (.+)$')
    RENAME_TO_PATTERN = re.compile(r'^rename to (.+)$')

    OFFSET_WINDOW = 10

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    @classmethod
    def _strip_prefix(cls, raw: str, prefix: str) -> str:
        path = raw.strip()
        if path == DEV_NULL:
            return path
        if path.startswith('"') and path.endswith('"'):
            path = path[1:-1]
        if path.startswith(prefix):
            path = path[len(prefix):]
        return path

    @classmethod
    def parse(cls, diff_text: str) -> List[FilePatch]:
        """Parse a multi-file unified diff"""
        lines = diff_text.replace("\r\n", "\n").split("\n")

        patches: List[FilePatch] = []
        current: Optional[FilePatch] = None
        hunk: Optional[DiffHunk] = None
        old_remaining = new_remaining = 0
        last_op: Optional[LineOperation] = None

        def start_patch() -> FilePatch:
            patch = FilePatch()
            patches.append(patch)
            return patch

        for line_no, line in enumerate(lines, start=1):
            # Hunk body, driven by the counts in the hunk header
            if hunk is not None and (old_remaining > 0 or new_remaining > 0):
                if line.startswith('\\'):
                    cls._mark_missing_newline(hunk, last_op)
                    continue
                if line.startswith('+'):
                    op = LineOperation.ADD
                    new_remaining -= 1
                elif line.startswith('-'):
                    op = LineOperation.DELETE
                    old_remaining -= 1
                elif line.startswith(' ') or line == '':
                    op = LineOperation.CONTEXT
                    old_remaining -= 1
                    new_remaining -= 1
                else:
                    raise DiffApplicationError(
                        f"Unexpected line {line_no} inside hunk: {line[:80]!r}",
                        path=current.path if current else None,
                    )
                if old_remaining < 0 or new_remaining < 0:
                    raise DiffApplicationError(
                        f"Hunk at line {line_no} is longer than its header declares",
                        path=current.path if current else None,
                    )
                hunk.lines.append(DiffLine(op, line[1:] if line else ''))
                last_op = op
                continue

            if line.startswith('\\') and hunk is not None:
                # Marker following the final line of a hunk
                cls._mark_missing_newline(hunk, last_op)
                continue

            git_match = cls.GIT_HEADER_PATTERN.match(line)
            if git_match:
                current = start_patch()
                current.old_path = git_match.group(1)
                current.new_path = git_match.group(2)
                hunk = None
                continue

            if line.startswith('new file mode') and current is not None:
                current.is_new_file = True
                continue
            if line.startswith('deleted file mode') and current is not None:
                current.is_deleted_file = True
                continue

            rename_from = cls.RENAME_FROM_PATTERN.match(line)
            if rename_from and current is not None:
                current.old_path = rename_from.group(1).strip()
                continue
            rename_to = cls.RENAME_TO_PATTERN.match(line)
            if rename_to and current is not None:
                current.new_path = rename_to.group(1).strip()
                continue

            if line.startswith('Binary files') or line.startswith('GIT binary patch'):
                raise DiffApplicationError(
                    "Binary patches are not supported",
                    path=current.path if current else None,
                )

            old_match = cls.OLD_FILE_PATTERN.match(line)
            if old_match:
                # A `---` header opens a new file section unless a git preamble
                # already did and no hunk has been read for it yet
                if current is None or current.hunks or hunk is not None:
                    current = start_patch()
                current.old_path = cls._strip_prefix(old_match.group(1), "a/")
                hunk = None
                continue

            new_match = cls.NEW_FILE_PATTERN.match(line)
            if new_match and current is not None:
                current.new_path = cls._strip_prefix(new_match.group(1), "b/")
                continue

            hunk_match = cls.HUNK_PATTERN.match(line)
            if hunk_match:
                if current is None or current.path is None:
                    raise DiffApplicationError(f"Hunk without file header at line {line_no}")
                hunk = DiffHunk(
                    old_start=int(hunk_match.group(1)),
                    old_count=int(hunk_match.group(2)) if hunk_match.group(2) is not None else 1,
                    new_start=int(hunk_match.group(3)),
                    new_count=int(hunk_match.group(4)) if hunk_match.group(4) is not None else 1,
                )
                current.hunks.append(hunk)
                old_remaining, new_remaining = hunk.old_count, hunk.new_count
                last_op = None
                continue

            # index lines, mode lines, similarity, free text: ignored

        if hunk is not None and (old_remaining > 0 or new_remaining > 0):
            raise DiffApplicationError(
                "Diff ends in the middle of a hunk",
                path=current.path if current else None,
            )

        patches = [p for p in patches if p.path]
        if not patches:
            raise DiffApplicationError("No file changes found in diff")
        return patches

    @staticmethod
    def _mark_missing_newline(hunk: DiffHunk, last_op: Optional[LineOperation]) -> None:
        if last_op == LineOperation.ADD:
            hunk.new_missing_newline = True
        elif last_op == LineOperation.DELETE:
            hunk.old_missing_newline = True
        elif last_op == LineOperation.CONTEXT:
            hunk.old_missing_newline = True
            hunk.new_missing_newline = True

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    @classmethod
    def apply(cls, diff_text: str, overlay: VirtualOverlay, root: str = "") -> List[OverlayFile]:
        """
        Apply every file patch in diff_text to overlay.

        Returns the full listing of files under root after application.
        """
        try:
            patches = cls.parse(diff_text)
            staged = overlay.snapshot()
            for patch in patches:
                cls._apply_file_patch(patch, staged, root)
        except DiffApplicationError as e:
            logger.warning(f"[DiffApplier] {e.message}", extra={"event_type": "diff_failed", **e.details})
            overlay.discard()
            raise
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(f"[DiffApplier] Invalid diff: {e}", extra={"event_type": "diff_failed"})
            overlay.discard()
            raise DiffApplicationError(f"Invalid diff: {e}")

        overlay.restore(staged)
        listing = overlay.list_all()
        if root:
            prefix = normalize_path(root) + "/"
            listing = [f for f in listing if f.path.startswith(prefix)]

        logger.info(
            f"[DiffApplier] Applied {len(patches)} file patch(es), {len(listing)} files in tree",
            extra={"event_type": "diff_applied", "files_patched": len(patches)}
        )
        return listing

    @classmethod
    def _resolve(cls, root: str, path: str) -> str:
        return normalize_path(f"{root}/{path}" if root else path)

    @classmethod
    def _apply_file_patch(cls, patch: FilePatch, staged: Dict[str, bytes], root: str) -> None:
        if patch.deletes:
            key = cls._resolve(root, patch.old_path)
            if key not in staged:
                raise DiffApplicationError("Cannot delete missing file", path=key)
            del staged[key]
            return

        target = cls._resolve(root, patch.path)

        if patch.creates:
            if target in staged:
                logger.warning(f"[DiffApplier] New file {target} already exists, overwriting")
            lines: List[str] = []
            has_newline = True
        else:
            source = cls._resolve(root, patch.old_path)
            if source not in staged:
                raise DiffApplicationError("Cannot patch missing file", path=source)
            lines, has_newline = cls._split(staged[source].decode("utf-8"))
            if patch.is_rename:
                del staged[source]

        if patch.hunks:
            lines, has_newline = cls._apply_hunks(target, lines, has_newline, patch.hunks)

        text = "\n".join(lines)
        if lines and has_newline:
            text += "\n"
        staged[target] = text.encode("utf-8")

    @staticmethod
    def _split(text: str) -> Tuple[List[str], bool]:
        if not text:
            return [], True
        if text.endswith("\n"):
            return text[:-1].split("\n"), True
        return text.split("\n"), False

    @classmethod
    def _apply_hunks(
        cls,
        path: str,
        lines: List[str],
        has_newline: bool,
        hunks: List[DiffHunk],
    ) -> Tuple[List[str], bool]:
        result = list(lines)
        delta = 0
        floor = 0  # hunks may not overlap earlier ones

        for index, hunk in enumerate(hunks, start=1):
            old_lines = hunk.old_lines
            new_lines = hunk.new_lines

            # For a pure insertion old_start is the line *after which* to insert
            expected = (hunk.old_start if hunk.old_count == 0 else hunk.old_start - 1) + delta
            position = cls._find_position(result, old_lines, expected, floor)
            if position < 0:
                raise DiffApplicationError(
                    f"Hunk #{index} does not apply at line {hunk.old_start}",
                    path=path,
                    hunk=index,
                )
            if position != expected:
                logger.info(f"[DiffApplier] Hunk #{index} of {path} applied with offset {position - expected}")

            result[position:position + len(old_lines)] = new_lines
            delta += len(new_lines) - len(old_lines)
            floor = position + len(new_lines)

            if hunk.new_missing_newline:
                has_newline = False
            elif hunk.old_missing_newline:
                has_newline = True

        return result, has_newline

    @classmethod
    def _find_position(cls, lines: List[str], old_lines: List[str], expected: int, floor: int) -> int:
        size = len(old_lines)
        for offset in range(cls.OFFSET_WINDOW + 1):
            for candidate in ((expected,) if offset == 0 else (expected - offset, expected + offset)):
                if candidate < floor or candidate + size > len(lines):
                    continue
                if lines[candidate:candidate + size] == old_lines:
                    return candidate
        return -1


def apply_unified_diff(diff_text: str, overlay: VirtualOverlay, root: str = "") -> List[OverlayFile]:
    """Parse and apply a unified diff, returning the complete post-diff listing."""
    return UnifiedDiffApplier.apply(diff_text, overlay, root)

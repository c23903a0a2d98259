"""Persisted rule tables.

Rule files use iptables-restore format, one file per table:

    *nat
    :PREROUTING ACCEPT [0:0]
    ...
    -A PREROUTING -d 203.0.113.7/32 -p tcp -m tcp --dport 23456 -m comment --comment proxy:23456 -j DNAT --to-destination 10.0.0.5:8080
    COMMIT

Every proxy rule carries a ``proxy:<port>`` comment tag. New rules are
inserted immediately before the ``COMMIT`` marker, which is never removed.

Files are only ever changed through AtomicFileEditor, so a reader sees
either the old or the new content, never a partial write.
"""

import difflib
import os
import re
import shutil
from pathlib import Path
from typing import Callable, Iterable, Optional

from proxyctl.core.context import ExecutionContext
from proxyctl.core.exceptions import PersistError


COMMIT_MARKER = "COMMIT"
TAG_PREFIX = "proxy:"

EDITING_SUFFIX = ".editing"
BACKUP_SUFFIX = ".bak"

FILTER_TABLE = "filter"
NAT_TABLE = "nat"

TABLE_CHAINS: dict[str, list[str]] = {
    FILTER_TABLE: ["INPUT", "FORWARD", "OUTPUT"],
    NAT_TABLE: ["PREROUTING", "INPUT", "OUTPUT", "POSTROUTING"],
}

TAG_PATTERN = re.compile(r'--comment\s+"?' + re.escape(TAG_PREFIX) + r'([0-9]+)"?(?=\s|$)')
ADDRESS_PATTERN = re.compile(r"(?<!\S)-d\s+([0-9]{1,3}(?:\.[0-9]{1,3}){3})/32(?=\s|$)")
DESTINATION_PATTERN = re.compile(r"--to-destination\s+(\S+)")


def tag_for(port: int) -> str:
    """Comment tag identifying rules that belong to a proxy port."""
    return f"{TAG_PREFIX}{port}"


def line_port(line: str) -> Optional[int]:
    """Proxy port a rule line is tagged with, if any."""
    match = TAG_PATTERN.search(line)
    return int(match.group(1)) if match else None


def line_destination(line: str) -> Optional[str]:
    """DNAT destination (``ip:port``) of a rule line, if any."""
    match = DESTINATION_PATTERN.search(line)
    return match.group(1) if match else None


class RuleTable:
    """In-memory working copy of one persisted rule table.

    Built fresh from file text for every operation and rendered back to
    text for the atomic rewrite. Rendering an unmodified table returns
    the original text byte for byte.
    """

    def __init__(self, lines: list[str], trailing_newline: bool = True) -> None:
        self.lines = lines
        self.trailing_newline = trailing_newline

    @classmethod
    def parse(cls, text: str) -> "RuleTable":
        return cls(text.splitlines(), trailing_newline=text.endswith("\n"))

    @classmethod
    def skeleton(cls, table: str) -> "RuleTable":
        """Empty table with default chain policies and the commit marker."""
        lines = [f"*{table}"]
        lines.extend(f":{chain} ACCEPT [0:0]" for chain in TABLE_CHAINS[table])
        lines.append(COMMIT_MARKER)
        return cls(lines)

    def render(self) -> str:
        text = "\n".join(self.lines)
        if self.trailing_newline and self.lines:
            text += "\n"
        return text

    # Queries

    def tagged_lines(self, port: int) -> list[str]:
        """All rule lines tagged with ``port``, in table order."""
        return [line for line in self.lines if line_port(line) == port]

    def has_tag(self, port: int) -> bool:
        return any(line_port(line) == port for line in self.lines)

    def ports(self) -> list[int]:
        """Distinct tagged proxy ports, in table order."""
        seen: list[int] = []
        for line in self.lines:
            port = line_port(line)
            if port is not None and port not in seen:
                seen.append(port)
        return seen

    def addresses(self) -> list[str]:
        """Distinct ``-d ADDR/32`` address tokens, in table order."""
        seen: list[str] = []
        for line in self.lines:
            for match in ADDRESS_PATTERN.finditer(line):
                if match.group(1) not in seen:
                    seen.append(match.group(1))
        return seen

    def destination(self, port: int) -> Optional[str]:
        """Destination of the first DNAT rule tagged with ``port``."""
        for line in self.tagged_lines(port):
            dest = line_destination(line)
            if dest:
                return dest
        return None

    # Mutations

    def _marker_index(self) -> int:
        for idx in range(len(self.lines) - 1, -1, -1):
            if self.lines[idx].strip() == COMMIT_MARKER:
                return idx
        raise PersistError(
            f"Rule table has no {COMMIT_MARKER} marker",
            hint="Restore the file from its .bak copy or recreate it with: proxyctl init",
        )

    def insert_before_marker(self, lines: Iterable[str]) -> None:
        idx = self._marker_index()
        self.lines[idx:idx] = list(lines)

    def delete_tagged(self, port: int) -> int:
        """Remove all lines tagged with ``port``. Returns the number removed."""
        kept = [line for line in self.lines if line_port(line) != port]
        removed = len(self.lines) - len(kept)
        self.lines = kept
        return removed

    def rewrite_address(self, old: str, new: str) -> int:
        """Replace every ``-d old/32`` token with ``-d new/32``.

        Returns the number of lines changed.
        """
        def _swap(match: re.Match) -> str:
            if match.group(1) != old:
                return match.group(0)
            return f"-d {new}/32"

        changed = 0
        for idx, line in enumerate(self.lines):
            updated = ADDRESS_PATTERN.sub(_swap, line)
            if updated != line:
                self.lines[idx] = updated
                changed += 1
        return changed


class AtomicFileEditor:
    """Copy-edit-rename editor with a one-generation backup.

    For ``apply(path, transform)``:

    1. ``path`` is copied to ``path.editing`` (a stale copy is discarded)
    2. ``transform`` runs against the copy only
    3. ``path.bak`` is replaced by a hard link to the current ``path``,
       made at ``path.bak.tmp`` first so a backup always exists
    4. ``path.editing`` is renamed over ``path``

    If the transform fails, ``path`` is untouched and ``path.editing`` is
    left in place for diagnosis.
    """

    def __init__(self, ctx: ExecutionContext) -> None:
        self.ctx = ctx

    @staticmethod
    def editing_path(path: Path) -> Path:
        return path.with_name(path.name + EDITING_SUFFIX)

    @staticmethod
    def backup_path(path: Path) -> Path:
        return path.with_name(path.name + BACKUP_SUFFIX)

    def apply(
        self,
        path: Path,
        transform: Callable[[str], str],
        *,
        description: Optional[str] = None,
    ) -> str:
        """Atomically replace the content of ``path`` with ``transform(content)``.

        Returns:
            The new content

        Raises:
            PersistError: If any step fails
        """
        path = Path(path)
        if description:
            self.ctx.console.step(description)

        if self.ctx.dry_run:
            return self._preview(path, transform)

        editing = self.editing_path(path)
        backup = self.backup_path(path)
        backup_tmp = backup.with_name(backup.name + ".tmp")

        try:
            if editing.exists() or editing.is_symlink():
                editing.unlink()
            shutil.copy2(path, editing)
        except OSError as e:
            raise PersistError(
                f"Cannot copy {path} for editing",
                details=[str(e)],
            ) from e

        try:
            new_content = transform(editing.read_text())
            with open(editing, "w") as f:
                f.write(new_content)
                f.flush()
                os.fsync(f.fileno())
        except PersistError:
            raise
        except Exception as e:
            raise PersistError(
                f"Failed to edit {path}",
                hint=f"{path} is unchanged; the partial edit is in {editing}",
                details=[str(e)],
            ) from e

        try:
            if backup_tmp.exists() or backup_tmp.is_symlink():
                backup_tmp.unlink()
            os.link(path, backup_tmp)
            os.replace(backup_tmp, backup)
            # rename between links to one inode leaves the source in place
            if backup_tmp.exists():
                backup_tmp.unlink()
            os.rename(editing, path)
        except OSError as e:
            raise PersistError(
                f"Cannot replace {path}",
                details=[str(e)],
            ) from e

        self.ctx.console.debug(f"Rewrote {path} (backup: {backup})")
        return new_content

    def create(self, path: Path, content: str) -> None:
        """Create ``path`` atomically; the file must not exist yet."""
        path = Path(path)
        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Create {path}")
            return

        editing = self.editing_path(path)
        try:
            path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
            with open(editing, "w") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(editing, 0o644)
            os.rename(editing, path)
        except OSError as e:
            raise PersistError(
                f"Cannot create {path}",
                details=[str(e)],
            ) from e

    def _preview(self, path: Path, transform: Callable[[str], str]) -> str:
        try:
            old_content = path.read_text()
        except OSError as e:
            raise PersistError(f"Cannot read {path}", details=[str(e)]) from e

        new_content = transform(old_content)
        self.ctx.console.dry_run_msg(f"Rewrite {path}")
        diff = difflib.unified_diff(
            old_content.splitlines(),
            new_content.splitlines(),
            lineterm="",
            n=0,
        )
        for line in diff:
            if line.startswith(("+", "-")) and not line.startswith(("+++", "---")):
                self.ctx.console.plain(f"  {line}")
        return new_content


class RuleTableFile:
    """A rule table persisted at ``path``.

    Reads build a fresh RuleTable every time; writes go through the
    AtomicFileEditor.
    """

    def __init__(self, path: Path, table: str, editor: AtomicFileEditor) -> None:
        if table not in TABLE_CHAINS:
            raise ValueError(f"unknown table: {table}")
        self.path = Path(path)
        self.table = table
        self.editor = editor

    def __repr__(self) -> str:
        return f"RuleTableFile({self.table}, {self.path})"

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> RuleTable:
        try:
            return RuleTable.parse(self.path.read_text())
        except FileNotFoundError as e:
            raise PersistError(
                f"Rule file not found: {self.path}",
                hint="Create the rule files with: proxyctl init",
            ) from e
        except OSError as e:
            raise PersistError(
                f"Cannot read rule file: {self.path}",
                hint="Check file permissions or run with sudo",
                details=[str(e)],
            ) from e

    def initialize(self) -> bool:
        """Write an empty table if the file is missing. Returns True if created."""
        if self.exists():
            return False
        self.editor.create(self.path, RuleTable.skeleton(self.table).render())
        return True

    def _edit(self, mutate: Callable[[RuleTable], None], description: str) -> None:
        def transform(text: str) -> str:
            table = RuleTable.parse(text)
            mutate(table)
            return table.render()

        self.editor.apply(self.path, transform, description=description)

    def insert(self, lines: list[str]) -> None:
        """Persist ``lines`` before the commit marker."""
        self._edit(
            lambda t: t.insert_before_marker(lines),
            f"Persist {len(lines)} {self.table} rule(s) to {self.path}",
        )

    def delete(self, port: int) -> None:
        """Persist removal of every line tagged with ``port``."""
        self._edit(
            lambda t: t.delete_tagged(port),
            f"Remove {self.table} rules for port {port} from {self.path}",
        )

    def rewrite_addresses(self, stale: list[str], new: str) -> None:
        """Persist ``-d new/32`` in place of every stale address, in one edit."""
        def mutate(table: RuleTable) -> None:
            for old in stale:
                table.rewrite_address(old, new)

        self._edit(mutate, f"Rewrite {', '.join(stale)} -> {new} in {self.path}")

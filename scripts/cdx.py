#!/usr/bin/env python3
"""
Label and resume Codex sessions per directory (cdx).

Session ids are kept in a `.cdx` file, one `<id>\\t<label>` line per session.
The nearest `.cdx` in the current directory or any parent is used, so a file
at a project root covers every subdirectory.

Usage:
  cdx                 pick "new" or a labelled session to resume
  cdx here            same, but only look at ./.cdx (no parent search)
  cdx new [LABEL]     start a new Codex session and record its id
  cdx resume ID       resume a session by id
  cdx rm [ID]         remove a session from .cdx (picker if ID omitted)
  cdx add ID LABEL    record an existing session id
  cdx list            print labelled sessions
  cdx init            create an empty .cdx in the current directory

Notes:
- Codex does not report the id of the session it just created. After `codex`
  exits, the newest rollout under ~/.codex/sessions is compared with the one
  seen before launch; if that is inconclusive, ~/.codex/history.jsonl is used.
  If neither identifies a new session, .cdx is left untouched.
- The selected .cdx path is shown before anything else happens.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import os
import re
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Iterable, Iterator, List, Literal, Optional, Sequence, TextIO

REGISTRY_FILENAME = ".cdx"
REGISTRY_DELIM = "\t"

DEFAULT_CODEX_BIN = "codex"

_LABEL_BREAK_RE = re.compile(r"[\t\n\r]+")
_ID_FORBIDDEN_RE = re.compile(r"[\t\n\r]")
_ROLLOUT_ID_RE = re.compile(
    r"([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\.jsonl$",
    re.IGNORECASE,
)


class CdxError(RuntimeError):
    exit_code = 2


class RegistryNotFound(CdxError):
    # Nothing to act on; reported, but not a failure.
    exit_code = 0


class ValidationError(CdxError, ValueError):
    exit_code = 2


class ExternalToolMissing(CdxError):
    exit_code = 127


class ExternalToolFailure(CdxError):
    def __init__(self, returncode: int) -> None:
        super().__init__(f"codex exited with status {returncode}")
        self.returncode = returncode
        self.exit_code = returncode


class DiscoveryFailure(CdxError):
    exit_code = 1


@dataclasses.dataclass(frozen=True)
class RegistryEntry:
    session_id: str
    label: str

    def display(self) -> str:
        return f"{self.label} ({self.session_id})"


@dataclasses.dataclass(frozen=True)
class RegistryHandle:
    directory: Path  # codex runs here
    path: Path
    found: bool


@dataclasses.dataclass(frozen=True)
class SessionSnapshot:
    session_id: Optional[str]
    path: Path
    mtime: float


@dataclasses.dataclass(frozen=True)
class DiscoveryState:
    snapshot: Optional[SessionSnapshot]
    history_session_id: Optional[str]


def get_codex_home() -> Path:
    env = os.environ.get("CODEX_HOME")
    return Path(env).expanduser() if env else Path.home() / ".codex"


def get_codex_bin() -> str:
    return os.environ.get("CDX_CODEX_BIN") or DEFAULT_CODEX_BIN


@dataclasses.dataclass(frozen=True)
class CodexPaths:
    home: Path

    @classmethod
    def from_env(cls) -> "CodexPaths":
        return cls(home=get_codex_home())

    @property
    def sessions_dir(self) -> Path:
        return self.home / "sessions"

    @property
    def history_path(self) -> Path:
        return self.home / "history.jsonl"


# Registry file format


def sanitize_label(label: str) -> str:
    return _LABEL_BREAK_RE.sub(" ", label).strip()


def format_entry_line(entry: RegistryEntry) -> str:
    return f"{entry.session_id}{REGISTRY_DELIM}{entry.label}\n"


def parse_entries(text: str) -> List[RegistryEntry]:
    entries: List[RegistryEntry] = []
    for raw in text.split("\n"):
        line = raw.strip()
        if not line:
            continue
        session_id, sep, label = line.partition(REGISTRY_DELIM)
        if not sep:
            continue
        session_id = session_id.strip()
        label = label.strip()
        if not session_id or not label:
            continue
        entries.append(RegistryEntry(session_id=session_id, label=label))
    return entries


def serialize_entries(entries: Sequence[RegistryEntry]) -> Optional[str]:
    """
    Render entries as registry file text.

    Returns None for an empty sequence: an empty registry is represented by
    the absence of the file, never by an empty file written on removal.
    """
    if not entries:
        return None
    return "".join(format_entry_line(entry) for entry in entries)


# Locating the registry


def find_registry(start_dir: Path) -> Optional[RegistryHandle]:
    current = Path(start_dir).expanduser().resolve()
    while True:
        candidate = current / REGISTRY_FILENAME
        if candidate.is_file():
            return RegistryHandle(directory=current, path=candidate, found=True)
        parent = current.parent
        if parent == current:
            return None
        current = parent


def resolve_registry(start_dir: Path, *, local_only: bool = False) -> RegistryHandle:
    start = Path(start_dir).expanduser().resolve()
    if not local_only:
        found = find_registry(start)
        if found is not None:
            return found
    candidate = start / REGISTRY_FILENAME
    return RegistryHandle(directory=start, path=candidate, found=candidate.is_file())


def list_entries(handle: RegistryHandle) -> List[RegistryEntry]:
    try:
        text = handle.path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    return parse_entries(text)


def _append_entry(path: Path, entry: RegistryEntry) -> None:
    prefix = ""
    try:
        with path.open("rb") as f:
            f.seek(0, os.SEEK_END)
            if f.tell() > 0:
                f.seek(-1, os.SEEK_END)
                if f.read(1) != b"\n":
                    # Hand-edited file without a trailing newline.
                    prefix = "\n"
    except FileNotFoundError:
        pass
    with path.open("a", encoding="utf-8") as f:
        f.write(prefix + format_entry_line(entry))


def _write_entries(path: Path, entries: Sequence[RegistryEntry]) -> None:
    text = serialize_entries(entries)
    if text is None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        return
    path.write_text(text, encoding="utf-8")


# Session discovery


def _iter_jsonl_reversed(path: Path) -> Iterator[dict]:
    for line in _iter_lines_reversed(path):
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            yield obj


def _iter_lines_reversed(path: Path, block_size: int = 64 * 1024) -> Iterator[str]:
    try:
        with path.open("rb") as f:
            f.seek(0, os.SEEK_END)
            position = f.tell()
            buffer = b""
            while position > 0:
                read_size = block_size if position >= block_size else position
                position -= read_size
                f.seek(position)
                chunk = f.read(read_size)
                buffer = chunk + buffer
                lines = buffer.split(b"\n")
                buffer = lines[0]
                for raw in reversed(lines[1:]):
                    yield raw.decode("utf-8", errors="replace")
            if buffer:
                yield buffer.decode("utf-8", errors="replace")
    except FileNotFoundError:
        return


def _iter_session_files(sessions_dir: Path) -> Iterator[tuple[float, Path]]:
    if not sessions_dir.is_dir():
        return
    for path in sessions_dir.rglob("*.jsonl"):
        try:
            if not path.is_file():
                continue
            yield path.stat().st_mtime, path
        except FileNotFoundError:
            # RATIONALE: Codex may rotate or archive rollouts while we scan.
            continue


def session_id_from_filename(path: Path) -> Optional[str]:
    match = _ROLLOUT_ID_RE.search(path.name)
    return match.group(1) if match else None


def read_session_id(rollout_path: Path) -> Optional[str]:
    """
    Return the session id recorded in a rollout file.

    The first line is expected to be a `session_meta` record carrying
    `payload.id`. Anything else (unreadable file, bad JSON, another record
    type) falls back to the UUID embedded in the file name.
    """
    first_line = ""
    try:
        with rollout_path.open("r", encoding="utf-8", errors="replace") as f:
            first_line = f.readline()
    except OSError:
        first_line = ""

    try:
        record = json.loads(first_line)
    except json.JSONDecodeError:
        record = None
    if isinstance(record, dict) and record.get("type") == "session_meta":
        payload = record.get("payload")
        if isinstance(payload, dict):
            session_id = payload.get("id")
            if isinstance(session_id, str) and session_id:
                return session_id
    return session_id_from_filename(rollout_path)


def latest_session_snapshot(
    paths: Optional[CodexPaths] = None,
) -> Optional[SessionSnapshot]:
    paths = paths or CodexPaths.from_env()
    latest: Optional[tuple[float, Path]] = None
    for mtime, path in _iter_session_files(paths.sessions_dir):
        if latest is None or mtime >= latest[0]:
            latest = (mtime, path)
    if latest is None:
        return None
    mtime, path = latest
    return SessionSnapshot(session_id=read_session_id(path), path=path, mtime=mtime)


def _history_session_ids(paths: CodexPaths) -> Iterator[str]:
    for record in _iter_jsonl_reversed(paths.history_path):
        session_id = record.get("session_id")
        if isinstance(session_id, str) and session_id:
            yield session_id


def last_history_session_id(paths: Optional[CodexPaths] = None) -> Optional[str]:
    paths = paths or CodexPaths.from_env()
    for session_id in _history_session_ids(paths):
        return session_id
    return None


def newest_history_session_id_since(
    previous_id: str, paths: Optional[CodexPaths] = None
) -> Optional[str]:
    paths = paths or CodexPaths.from_env()
    for session_id in _history_session_ids(paths):
        if session_id != previous_id:
            return session_id
    return None


def capture_discovery_state(paths: Optional[CodexPaths] = None) -> DiscoveryState:
    paths = paths or CodexPaths.from_env()
    return DiscoveryState(
        snapshot=latest_session_snapshot(paths),
        history_session_id=last_history_session_id(paths),
    )


def _session_id_from_snapshots(
    before: Optional[SessionSnapshot], after: Optional[SessionSnapshot]
) -> Optional[str]:
    if after is None or not after.session_id:
        return None
    if before is None:
        return after.session_id
    # A tie on the same path is not evidence of a new session.
    if after.path != before.path or after.mtime > before.mtime:
        return after.session_id
    return None


def reconcile_new_session_id(
    before: DiscoveryState,
    after: Optional[SessionSnapshot],
    paths: Optional[CodexPaths] = None,
) -> str:
    """
    Decide which session id the codex run that just finished created.

    The rollout snapshot is consulted first; the history log only when the
    snapshot did not change. Raises DiscoveryFailure rather than guessing.
    """
    session_id = _session_id_from_snapshots(before.snapshot, after)
    if session_id:
        return session_id

    if before.history_session_id:
        session_id = newest_history_session_id_since(
            before.history_session_id, paths or CodexPaths.from_env()
        )
        if session_id:
            return session_id

    raise DiscoveryFailure(
        f"Could not determine new session id; not updating {REGISTRY_FILENAME}."
    )


# Running codex


def run_codex(
    args: Sequence[str], *, cwd: Path, executable: str = DEFAULT_CODEX_BIN
) -> None:
    if shutil.which(executable) is None:
        raise ExternalToolMissing(
            f"Unable to find `{executable}` on PATH. Install the Codex CLI and "
            "make sure it is on your PATH."
        )
    try:
        # stdio is inherited; codex owns the terminal until it exits.
        proc = subprocess.run([executable, *args], cwd=str(cwd), check=False)
    except FileNotFoundError as exc:
        raise ExternalToolMissing(f"Unable to run `{executable}`: {exc}") from exc
    if proc.returncode != 0:
        raise ExternalToolFailure(proc.returncode)


# Registry operations


def add_session(handle: RegistryHandle, session_id: str, label: str) -> RegistryEntry:
    session_id = session_id.strip()
    if not session_id:
        raise ValidationError("Session id is required.")
    if _ID_FORBIDDEN_RE.search(session_id):
        raise ValidationError("Session id must not contain tabs or newlines.")
    label = sanitize_label(label)
    if not label:
        raise ValidationError("Label is required.")

    entry = RegistryEntry(session_id=session_id, label=label)
    _append_entry(handle.path, entry)
    return entry


def create_new_session(
    handle: RegistryHandle,
    label: str,
    *,
    paths: Optional[CodexPaths] = None,
    executable: str = DEFAULT_CODEX_BIN,
) -> RegistryEntry:
    label = sanitize_label(label)
    if not label:
        raise ValidationError("Label is required.")
    paths = paths or CodexPaths.from_env()

    before = capture_discovery_state(paths)
    run_codex([], cwd=handle.directory, executable=executable)
    after = latest_session_snapshot(paths)
    session_id = reconcile_new_session_id(before, after, paths)
    if _ID_FORBIDDEN_RE.search(session_id):
        raise DiscoveryFailure(
            f"Discovered session id {session_id!r} contains tabs or newlines; "
            f"not updating {REGISTRY_FILENAME}."
        )

    entry = RegistryEntry(session_id=session_id, label=label)
    _append_entry(handle.path, entry)
    return entry


def resume_session(
    handle: RegistryHandle, session_id: str, *, executable: str = DEFAULT_CODEX_BIN
) -> None:
    session_id = session_id.strip()
    if not session_id:
        raise ValidationError("Session id is required.")
    run_codex(["resume", session_id], cwd=handle.directory, executable=executable)


def remove_session(handle: RegistryHandle, session_id: str) -> int:
    if not handle.path.is_file():
        raise RegistryNotFound(f"No {REGISTRY_FILENAME} file found.")
    entries = list_entries(handle)
    remaining = [e for e in entries if e.session_id != session_id]
    removed = len(entries) - len(remaining)
    if removed == 0:
        raise RegistryNotFound(
            f"No session {session_id} in {handle.path}; nothing removed."
        )
    _write_entries(handle.path, remaining)
    return removed


def init_registry(directory: Path) -> bool:
    path = Path(directory).expanduser().resolve() / REGISTRY_FILENAME
    try:
        with path.open("x", encoding="utf-8"):
            pass
    except FileExistsError:
        return False
    return True


# CLI


def _open_tty(mode: Literal["r", "w"]) -> TextIO:
    return open("/dev/tty", mode, encoding="utf-8", errors="replace")


def _read_from_tty(prompt: str) -> str:
    with _open_tty("r") as tty_in, _open_tty("w") as tty_out:
        tty_out.write(prompt)
        tty_out.flush()
        line = tty_in.readline()
        if not line:
            raise EOFError
        return line.rstrip("\n")


def _choose(title: str, options: Sequence[str]) -> Optional[int]:
    """
    Show a numbered menu on stderr and return the chosen index.

    Returns None when the user cancels (blank answer or EOF).
    """
    print(title, file=sys.stderr)
    for index, option in enumerate(options):
        print(f"  {index}) {option}", file=sys.stderr)
    while True:
        try:
            answer = _read_from_tty("> ").strip()
        except EOFError:
            return None
        if not answer:
            return None
        if answer.isdecimal() and int(answer) < len(options):
            return int(answer)
        print(f"Enter a number from 0 to {len(options) - 1}.", file=sys.stderr)


def _prompt_label() -> Optional[str]:
    while True:
        try:
            raw = _read_from_tty("Label for new session: ")
        except EOFError:
            return None
        label = sanitize_label(raw)
        if label:
            return label
        if not raw:
            return None
        print("Label is required.", file=sys.stderr)


def _print_registry_path(handle: RegistryHandle) -> None:
    print(f"{REGISTRY_FILENAME}: {handle.path}", file=sys.stderr)


def _cmd_new(handle: RegistryHandle, label: Optional[str]) -> int:
    if label is None:
        label = _prompt_label()
        if label is None:
            return 0
    entry = create_new_session(handle, label, executable=get_codex_bin())
    print(f"Saved {entry.display()} to {handle.path}", file=sys.stderr)
    return 0


def _cmd_pick(handle: RegistryHandle) -> int:
    entries = list_entries(handle)
    options = ["new"] + [entry.display() for entry in entries]
    choice = _choose("Select a session", options)
    if choice is None:
        return 0
    if choice == 0:
        return _cmd_new(handle, None)
    resume_session(handle, entries[choice - 1].session_id, executable=get_codex_bin())
    return 0


def _cmd_remove(handle: RegistryHandle, session_id: Optional[str]) -> int:
    if not handle.path.is_file():
        raise RegistryNotFound(f"No {REGISTRY_FILENAME} file found.")
    if session_id is None:
        entries = list_entries(handle)
        if not entries:
            print("No sessions to remove.", file=sys.stderr)
            return 0
        choice = _choose(
            "Select a session to remove", [entry.display() for entry in entries]
        )
        if choice is None:
            return 0
        session_id = entries[choice].session_id
    remove_session(handle, session_id)
    if handle.path.exists():
        print(f"Removed {session_id}.", file=sys.stderr)
    else:
        print(f"Removed {session_id}; deleted empty {handle.path}.", file=sys.stderr)
    return 0


def _cmd_list(handle: RegistryHandle) -> int:
    for entry in list_entries(handle):
        print(entry.display())
    return 0


def _extract_here(argv: Iterable[str]) -> tuple[List[str], bool]:
    # `here` is the mode word only before the command (`cdx here rm`) or as
    # the sole argument of `rm` (`cdx rm here`); labels and ids keep it.
    rest = list(argv)
    here = False
    while rest and rest[0] == "here":
        here = True
        rest.pop(0)
    if rest[-2:] == ["rm", "here"] and len(rest) == 2:
        here = True
        rest.pop()
    return rest, here



def _parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="cdx",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--here",
        action="store_true",
        help="Use .cdx in the current directory only (skip parent directory search).",
    )
    sub = parser.add_subparsers(dest="cmd")

    new = sub.add_parser("new", help="Start a new codex session and record its id.")
    new.add_argument("label", nargs="*", help="Session label (prompted if omitted).")

    resume = sub.add_parser("resume", help="Resume a session by id.")
    resume.add_argument("session_id")

    rm = sub.add_parser("rm", help="Remove a session from .cdx.")
    rm.add_argument("session_id", nargs="?")

    add = sub.add_parser("add", help="Record an existing session id.")
    add.add_argument("session_id")
    add.add_argument("label", nargs="+")

    sub.add_parser("list", help="List labelled sessions.")
    sub.add_parser("init", help="Create an empty .cdx in the current directory.")
    sub.add_parser("help", help="Show this help.")

    args = parser.parse_args(argv)
    if args.cmd == "help":
        parser.print_help()
        raise SystemExit(0)
    return args


def main(argv: Optional[Sequence[str]] = None) -> int:
    argv_list, here = _extract_here(sys.argv[1:] if argv is None else argv)
    args = _parse_args(argv_list)
    local_only = here or bool(args.here)
    cwd = Path.cwd()

    try:
        if args.cmd == "init":
            target = cwd.resolve() / REGISTRY_FILENAME
            if init_registry(cwd):
                print(f"Created {target}", file=sys.stderr)
            else:
                print(f"{target} already exists.", file=sys.stderr)
            return 0

        handle = resolve_registry(cwd, local_only=local_only)
        _print_registry_path(handle)

        if args.cmd == "list":
            return _cmd_list(handle)
        if args.cmd == "rm":
            return _cmd_remove(handle, args.session_id)
        if args.cmd == "add":
            entry = add_session(handle, args.session_id, " ".join(args.label))
            print(f"Saved {entry.display()} to {handle.path}", file=sys.stderr)
            return 0
        if args.cmd == "resume":
            resume_session(handle, args.session_id, executable=get_codex_bin())
            return 0
        if args.cmd == "new":
            label = " ".join(args.label) if args.label else None
            return _cmd_new(handle, label)
        return _cmd_pick(handle)
    except ExternalToolFailure as exc:
        return exc.returncode
    except CdxError as exc:
        print(str(exc), file=sys.stderr)
        return exc.exit_code
    except OSError as exc:
        print(str(exc) or exc.__class__.__name__, file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

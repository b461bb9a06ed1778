#!/usr/bin/env python3
"""
agent_history.py — Undo journal for CodeAgent.

Before every mutating tool runs, the executor asks the run's ActionSession to
snapshot the pre-state of its target. The session can later reverse those
actions one at a time (undo_last) or all at once (undo_all).

Sessions are explicit handles: HistoryJournal.start_session() returns one,
the orchestrator passes it to the executor, and end_session() seals it and
persists it as <history_dir>/<id>.json when it recorded anything.

File content is read and written with newline="" and surrogateescape so a
restore is byte-identical to what was snapshotted.
"""
import json
import random
import shutil
import string
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from agent_core import Config, Log, _atomic_write, now_ms


def generate_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"{now_ms()}-{suffix}"


def _read_text(path: Path) -> str:
    with open(path, "r", encoding="utf-8", errors="surrogateescape", newline="") as f:
        return f.read()


def _write_text(path: Path, content: str):
    with open(path, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
        f.write(content)


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class ActionRecord:
    type:             str
    id:               str            = field(default_factory=generate_id)
    timestamp:        int            = field(default_factory=now_ms)
    path:             Optional[str]  = None
    previous_content: Optional[str]  = None
    previous_existed: Optional[bool] = None
    was_directory:    Optional[bool] = None
    deleted_content:  Optional[str]  = None
    command:          Optional[str]  = None
    args:             Optional[List[str]] = None
    undone:           bool           = False

    _FIELDS = (
        ("id", "id"), ("timestamp", "timestamp"), ("type", "type"), ("path", "path"),
        ("previous_content", "previousContent"), ("previous_existed", "previousExisted"),
        ("was_directory", "wasDirectory"), ("deleted_content", "deletedContent"),
        ("command", "command"), ("args", "args"), ("undone", "undone"),
    )

    def to_dict(self) -> Dict[str, Any]:
        out = {}
        for attr, key in self._FIELDS:
            val = getattr(self, attr)
            if val is not None:
                out[key] = val
        return out

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ActionRecord":
        kwargs = {attr: d[key] for attr, key in cls._FIELDS if key in d}
        kwargs["undone"] = bool(kwargs.get("undone", False))
        return cls(**kwargs)

    def target(self) -> str:
        if self.path:
            return self.path
        return f"{self.command} {' '.join(self.args or [])}".strip()


def undo_action(action: ActionRecord) -> Dict[str, Any]:
    """Reverse one record. Returns {"success", "message"}; never raises."""
    if action.undone:
        return {"success": False, "message": f"Already undone: {action.target()}"}
    try:
        path = Path(action.path) if action.path else None

        if action.type == "write":
            if action.previous_existed and action.previous_content is not None:
                _write_text(path, action.previous_content)
                action.undone = True
                return {"success": True, "message": f"Restored: {action.path}"}
            if not action.previous_existed:
                if path.is_file():
                    path.unlink()
                action.undone = True
                return {"success": True, "message": f"Deleted new file: {action.path}"}

        elif action.type == "edit":
            if action.previous_content is not None:
                _write_text(path, action.previous_content)
                action.undone = True
                return {"success": True, "message": f"Restored: {action.path}"}

        elif action.type == "delete":
            if action.deleted_content is not None:
                path.parent.mkdir(parents=True, exist_ok=True)
                _write_text(path, action.deleted_content)
                action.undone = True
                return {"success": True, "message": f"Restored deleted file: {action.path}"}
            if action.was_directory:
                return {"success": False,
                        "message": f"Cannot restore directory: {action.path}. Use git checkout."}

        elif action.type == "mkdir":
            if not action.previous_existed and path.is_dir():
                try:
                    path.rmdir()
                except OSError:
                    return {"success": False,
                            "message": f"Cannot remove non-empty directory: {action.path}"}
                action.undone = True
                return {"success": True, "message": f"Removed directory: {action.path}"}

        elif action.type == "command":
            return {"success": False,
                    "message": f"Cannot undo command: {action.command} {' '.join(action.args or [])}"}

        return {"success": False, "message": "Cannot undo this action"}
    except OSError as e:
        return {"success": False, "message": f"Undo failed: {e}"}


# =============================================================================
# SESSION
# =============================================================================

@dataclass
class ActionSession:
    prompt:       str
    project_root: str
    id:           str           = field(default_factory=generate_id)
    start_time:   int           = field(default_factory=now_ms)
    end_time:     Optional[int] = None
    actions:      List[ActionRecord] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.end_time is None

    def _push(self, record: ActionRecord) -> Optional[ActionRecord]:
        if not self.active:
            return None
        self.actions.append(record)
        return record

    # ── recorders (call BEFORE the mutation) ─────────────────────────────────

    def record_write(self, path: Path) -> Optional[ActionRecord]:
        if not self.active:
            return None
        path    = Path(path)
        existed = path.exists()
        record  = ActionRecord("write", path=str(path), previous_existed=existed)
        if existed and path.is_file():
            try:
                record.previous_content = _read_text(path)
            except OSError as e:
                Log.debug(f"Could not snapshot {path}: {e}")
        return self._push(record)

    def record_edit(self, path: Path) -> Optional[ActionRecord]:
        if not self.active:
            return None
        path   = Path(path)
        record = ActionRecord("edit", path=str(path), previous_existed=True)
        try:
            record.previous_content = _read_text(path)
        except OSError as e:
            Log.debug(f"Could not snapshot {path}: {e}")
        return self._push(record)

    def record_delete(self, path: Path) -> Optional[ActionRecord]:
        if not self.active:
            return None
        path   = Path(path)
        record = ActionRecord("delete", path=str(path), previous_existed=True)
        try:
            record.was_directory = path.is_dir()
            if not record.was_directory:
                record.deleted_content = _read_text(path)
        except OSError as e:
            Log.debug(f"Could not snapshot {path}: {e}")
        return self._push(record)

    def record_mkdir(self, path: Path) -> Optional[ActionRecord]:
        if not self.active:
            return None
        path = Path(path)
        return self._push(ActionRecord("mkdir", path=str(path), previous_existed=path.exists()))

    def record_command(self, command: str, args: List[str]) -> Optional[ActionRecord]:
        return self._push(ActionRecord("command", command=command, args=list(args)))

    # ── undo ─────────────────────────────────────────────────────────────────

    def undo_last(self) -> Dict[str, Any]:
        if not self.actions:
            return {"success": False, "message": "No actions to undo"}
        for action in reversed(self.actions):
            if not action.undone:
                return undo_action(action)
        return {"success": False, "message": "All actions already undone"}

    def undo_all(self) -> Dict[str, Any]:
        if not self.actions:
            return {"success": False, "results": ["No actions to undo"]}
        results: List[str] = []
        ok = True
        for action in reversed(self.actions):
            if action.undone:
                continue
            res = undo_action(action)
            results.append(res["message"])
            ok = ok and res["success"]
        return {"success": ok, "results": results}

    # ── serialisation ────────────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "id":          self.id,
            "startTime":   self.start_time,
            "prompt":      self.prompt,
            "actions":     [a.to_dict() for a in self.actions],
            "projectRoot": self.project_root,
        }
        if self.end_time is not None:
            d["endTime"] = self.end_time
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ActionSession":
        return cls(
            prompt       = d.get("prompt", ""),
            project_root = d.get("projectRoot", ""),
            id           = d["id"],
            start_time   = int(d.get("startTime", 0)),
            end_time     = d.get("endTime"),
            actions      = [ActionRecord.from_dict(a) for a in d.get("actions", [])],
        )


# =============================================================================
# JOURNAL
# =============================================================================

class HistoryJournal:
    """Creates sessions and stores sealed ones under history_dir."""

    def __init__(self, history_dir: Optional[Path] = None):
        self._dir = Path(history_dir) if history_dir else Config.history_dir()

    def _path(self, session_id: str) -> Path:
        return self._dir / f"{session_id}.json"

    def start_session(self, prompt: str, project_root) -> ActionSession:
        return ActionSession(prompt=prompt, project_root=str(project_root))

    def end_session(self, session: Optional[ActionSession]):
        """Seal *session*; persist it only when it recorded at least one action."""
        if session is None or not session.active:
            return
        session.end_time = now_ms()
        if session.actions:
            self.save(session)

    def save(self, session: ActionSession):
        try:
            _atomic_write(self._path(session.id), session.to_dict())
        except OSError as e:
            Log.error(f"Failed to save history session: {e}")

    def get_session(self, session_id: str) -> Optional[ActionSession]:
        p = self._path(session_id)
        if not p.exists():
            return None
        try:
            return ActionSession.from_dict(json.loads(p.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError) as e:
            Log.error(f"Failed to load session {session_id}: {e}")
            return None

    def recent_sessions(self, limit: int = 10) -> List[ActionSession]:
        if not self._dir.is_dir():
            return []
        sessions = []
        for f in sorted(self._dir.glob("*.json"), reverse=True)[:limit]:
            try:
                sessions.append(ActionSession.from_dict(json.loads(f.read_text(encoding="utf-8"))))
            except (OSError, ValueError, KeyError):
                continue
        return sessions

    def clear_history(self) -> int:
        if not self._dir.is_dir():
            return 0
        removed = 0
        for f in self._dir.iterdir():
            try:
                if f.is_dir():
                    shutil.rmtree(f)
                else:
                    f.unlink()
                removed += 1
            except OSError as e:
                Log.warning(f"Could not remove {f}: {e}")
        return removed


def format_session(session: ActionSession) -> str:
    date     = datetime.fromtimestamp(session.start_time / 1000).strftime("%Y-%m-%d %H:%M:%S")
    duration = (f"{round((session.end_time - session.start_time) / 1000)}s"
                if session.end_time else "ongoing")
    prompt   = session.prompt[:50] + ("..." if len(session.prompt) > 50 else "")
    lines = [
        f"Session: {session.id}",
        f"Date: {date}",
        f"Duration: {duration}",
        f"Prompt: {prompt}",
        f"Actions ({len(session.actions)}):",
    ]
    for a in session.actions:
        lines.append(f"  {'↩️' if a.undone else '✓'} {a.type}: {a.target()}")
    return "\n".join(lines)

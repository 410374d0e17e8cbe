#!/usr/bin/env python3
# task_time_tracker: Terminal per-day task timer with notes and markdown export
#
# Hotkeys
#   n        start a task (prompt; Enter confirms, Esc cancels)
#   space    start the selected task, or stop the running one
#   s        stop the running task and commit its time
#   N        edit the draft note of the running task (saved with the next stop)
#   e        rename the selected task (merges into an existing name)
#   a        adjust the selected task's time (HH:MM:SS)
#   E        edit notes of the selected task
#   h/l      previous / next day (next stops at today)
#   T        jump to today
#   g        go to a date (YYYY-MM-DD)
#   j/k      move selection
#   m        export the day as tasks_<day>.md
#   t        cycle theme
#   ?        help
#   q        quit (press twice while a task is running)
#
# Config (YAML, every key optional)
#   db: ~/.task_time_tracker.db
#   export_dir: .
#   note_time_format: "%H:%M:%S"
#   log_level: ERROR
#   log_file: ~/.task_time_tracker.log
#
# Storage keys
#   tasks_<YYYY-MM-DD>   one ledger per day: {task: {time: ms, notes: [...]}}
#   timetracker-running  the running task; offered for resume on the same day only
#   timetracker-theme    theme preference

from __future__ import annotations

import argparse
import asyncio
import copy
import datetime as dt
import json
import logging
import os
import re
import sqlite3
import sys
import threading
from dataclasses import dataclass, field, replace
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

import yaml
from prompt_toolkit import Application
from prompt_toolkit.filters import Condition
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.containers import Float, FloatContainer
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.dimension import Dimension
from prompt_toolkit.styles import Style
from prompt_toolkit.widgets import Frame

LOGGER_NAME = 'task_time_tracker'
logger = logging.getLogger(LOGGER_NAME)

DEFAULT_DB_PATH = os.path.expanduser("~/.task_time_tracker.db")
DEFAULT_LOG_PATH = os.path.expanduser("~/.task_time_tracker.log")

TASKS_KEY_PREFIX = "tasks_"
RUNNING_KEY = "timetracker-running"
THEME_KEY = "timetracker-theme"


# -----------------------------
# Config models
# -----------------------------
@dataclass
class Config:
    db: str = DEFAULT_DB_PATH
    export_dir: str = "."
    note_time_format: str = "%H:%M:%S"
    log_level: str = "ERROR"
    log_file: str = DEFAULT_LOG_PATH


_CONFIG_KEYS = ("db", "export_dir", "note_time_format", "log_level", "log_file")
_CONFIG_PATH_KEYS = ("db", "export_dir", "log_file")


def load_config(path: Optional[str]) -> Config:
    """Read a YAML config. No path means defaults; unknown keys are ignored."""
    cfg = Config()
    if not path:
        return cfg
    if not os.path.isfile(path):
        raise ValueError(f"Config: file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config: top level must be a mapping.")
    for key in _CONFIG_KEYS:
        value = raw.get(key)
        if value is None:
            continue
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"Config: '{key}' must be a non-empty string.")
        if key in _CONFIG_PATH_KEYS:
            value = os.path.expanduser(value.strip())
        setattr(cfg, key, value)
    return cfg


# -----------------------------
# Themes
# -----------------------------


@dataclass
class ThemePreset:
    name: str
    style: Dict[str, str]
    description: Optional[str] = None


BASE_THEME_STYLE: Dict[str, str] = {
    'header': 'bold #ffd75f',
    'header.day': 'bold #87d7ff',
    'header.total': 'bold #87ff5f',
    'header.hint': '#8a8a8a',
    'running.task': 'bold #ffd75f',
    'running.timer': 'bold #87ff5f',
    'running.idle': '#8a8a8a',
    'running.note': 'italic #d7d7d7',
    'table.name': '#f0f0f0',
    'table.time': '#87d7ff',
    'table.cursor': 'reverse',
    'table.running': 'bold #5fd7af',
    'table.note': '#a8a8a8',
    'table.empty': 'italic #8a8a8a',
    'status': 'bg:#303030 #f0f0f0',
    'status.prompt': 'bg:#303030 bold #ffd787',
    'status.warning': 'bg:#303030 bold #ff8787',
    'editor.body': 'bg:#1c1c1c #f0f0f0',
    'editor.header': 'bold #ffd75f',
    'editor.meta': '#87d7ff',
    'editor.text': '#f0f0f0',
    'editor.cursor': 'bold #ffffff bg:#444444',
    'editor.instructions': '#5fd7af',
    'frame.border': '#5f5f5f',
    'frame.label': 'bold #ffd75f',
}

LIGHT_THEME_STYLE: Dict[str, str] = {
    **BASE_THEME_STYLE,
    'header': 'bold #875f00',
    'header.day': 'bold #005f87',
    'header.total': 'bold #005f00',
    'header.hint': '#6c6c6c',
    'running.task': 'bold #875f00',
    'running.timer': 'bold #005f00',
    'running.idle': '#6c6c6c',
    'running.note': 'italic #3a3a3a',
    'table.name': '#1c1c1c',
    'table.time': '#005f87',
    'table.running': 'bold #008787',
    'table.note': '#585858',
    'table.empty': 'italic #6c6c6c',
    'status': 'bg:#d0d0d0 #1c1c1c',
    'status.prompt': 'bg:#d0d0d0 bold #875f00',
    'status.warning': 'bg:#d0d0d0 bold #af0000',
    'editor.body': 'bg:#eeeeee #1c1c1c',
    'editor.header': 'bold #875f00',
    'editor.meta': '#005f87',
    'editor.text': '#1c1c1c',
    'editor.cursor': 'bold #000000 bg:#bcbcbc',
    'editor.instructions': '#008787',
    'frame.border': '#8a8a8a',
    'frame.label': 'bold #875f00',
}

DEFAULT_THEME_NAME = "dark"


def _load_theme_presets(theme_dir: Path) -> List[ThemePreset]:
    presets: List[ThemePreset] = [
        ThemePreset(name="Dark", style=dict(BASE_THEME_STYLE)),
        ThemePreset(name="Light", style=dict(LIGHT_THEME_STYLE)),
    ]
    if not theme_dir.is_dir():
        return presets
    candidates = sorted(theme_dir.glob("*.yml")) + sorted(theme_dir.glob("*.yaml"))
    for path in candidates:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError):
            logger.warning("Failed to load theme file %s", path, exc_info=True)
            continue
        if not isinstance(data, dict):
            continue
        name = str(data.get("name") or path.stem).strip() or path.stem
        overrides = data.get("style") if isinstance(data.get("style"), dict) else {}
        base_name = str(data.get("base") or "dark").strip().lower()
        style_dict = dict(LIGHT_THEME_STYLE if base_name == "light" else BASE_THEME_STYLE)
        for key, value in overrides.items():
            if isinstance(key, str) and isinstance(value, str):
                style_dict[key] = value
        preset = ThemePreset(name=name, style=style_dict, description=data.get("description"))
        existing = next((i for i, p in enumerate(presets) if p.name.lower() == name.lower()), None)
        if existing is None:
            presets.append(preset)
        else:
            presets[existing] = preset
    return presets


def _theme_index(presets: List[ThemePreset], name: Optional[str]) -> int:
    wanted = (name or "").strip().lower()
    for idx, preset in enumerate(presets):
        if preset.name.lower() == wanted:
            return idx
    return 0


# -----------------------------
# Time formatting
# -----------------------------
_DURATION_RE = re.compile(r"([0-9]+):([0-9]+):([0-9]+)")


def format_duration(milliseconds: int) -> str:
    seconds = max(0, int(milliseconds)) // 1000
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"


def parse_duration(value: str) -> Optional[int]:
    """Parse HH:MM:SS into milliseconds. Return None if invalid."""
    match = _DURATION_RE.fullmatch((value or "").strip())
    if not match:
        return None
    h, m, s = (int(part) for part in match.groups())
    if m > 59 or s > 59:
        return None
    return ((h * 3600) + (m * 60) + s) * 1000


# -----------------------------
# Date keys
# -----------------------------
_YMD_RE = re.compile(r"([0-9]{4})-([0-9]{2})-([0-9]{2})")


def format_ymd(value: dt.date) -> str:
    # local calendar fields only; aware datetimes must already be in local time
    return f"{value.year:04d}-{value.month:02d}-{value.day:02d}"


def parse_ymd(value: str) -> dt.date:
    match = _YMD_RE.fullmatch(value or "")
    if not match:
        raise ValueError(f"Bad date '{value}' (use YYYY-MM-DD)")
    y, m, d = (int(part) for part in match.groups())
    return dt.date(y, m, d)


def shift_day(day: str, days: int) -> str:
    return format_ymd(parse_ymd(day) + dt.timedelta(days=days))


# -----------------------------
# Clock
# -----------------------------
_EPOCH = dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc)


class SystemClock:
    def now(self) -> dt.datetime:
        return dt.datetime.now(dt.timezone.utc).astimezone()

    def today(self) -> str:
        return format_ymd(self.now())


def to_epoch_ms(moment: dt.datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    return (moment - _EPOCH) // dt.timedelta(milliseconds=1)


def from_epoch_ms(value: int) -> dt.datetime:
    return (_EPOCH + dt.timedelta(milliseconds=int(value))).astimezone()


# -----------------------------
# Errors
# -----------------------------
class TrackerError(Exception):
    pass


class StorageError(TrackerError):
    """The persistence backend is missing or failed."""


class EmptyTaskNameError(TrackerError, ValueError):
    pass


class InvalidDurationError(TrackerError, ValueError):
    pass


# -----------------------------
# Storage
# -----------------------------
def ledger_key(day: str) -> str:
    return f"{TASKS_KEY_PREFIX}{day}"


class MemoryStorage:
    """In-process key/value storage. Values are copied in and out."""

    def __init__(self, data: Optional[Dict[str, object]] = None, available: bool = True):
        self.data: Dict[str, object] = copy.deepcopy(dict(data or {}))
        self.available = available

    def _check(self) -> None:
        if not self.available:
            raise StorageError("storage unavailable")

    async def get(self, key: str) -> object:
        self._check()
        return copy.deepcopy(self.data.get(key))

    async def set(self, key: str, value: object) -> None:
        self._check()
        self.data[key] = copy.deepcopy(value)

    async def remove(self, key: str) -> None:
        self._check()
        self.data.pop(key, None)

    async def keys(self) -> List[str]:
        self._check()
        return list(self.data.keys())


class SqliteStorage:
    CREATE_TABLE_SQL = """
      CREATE TABLE IF NOT EXISTS kv (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
      )
    """

    def __init__(self, path: str):
        directory = os.path.dirname(path)
        if directory and not os.path.isdir(directory):
            os.makedirs(directory, exist_ok=True)
        # calls arrive from executor threads; the lock serializes them
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._lock = threading.Lock()
        self.conn.execute(self.CREATE_TABLE_SQL)
        self.conn.commit()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def get_sync(self, key: str) -> object:
        with self._lock:
            row = self.conn.execute("SELECT value FROM kv WHERE key=?", (key,)).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except ValueError as exc:
            raise StorageError(f"Corrupt value stored under {key}") from exc

    def set_sync(self, key: str, value: object) -> None:
        raw = json.dumps(value, ensure_ascii=False)
        now = dt.datetime.now(dt.timezone.utc).astimezone().isoformat(timespec="seconds")
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO kv(key, value, updated_at) VALUES (?,?,?)",
                (key, raw, now),
            )
            self.conn.commit()

    def remove_sync(self, key: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM kv WHERE key=?", (key,))
            self.conn.commit()

    def keys_sync(self) -> List[str]:
        with self._lock:
            return [r[0] for r in self.conn.execute("SELECT key FROM kv ORDER BY key")]

    async def _run(self, fn: Callable, *args: object) -> object:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn, *args)
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc

    async def get(self, key: str) -> object:
        return await self._run(self.get_sync, key)

    async def set(self, key: str, value: object) -> None:
        await self._run(self.set_sync, key, value)

    async def remove(self, key: str) -> None:
        await self._run(self.remove_sync, key)

    async def keys(self) -> List[str]:
        return await self._run(self.keys_sync)


# -----------------------------
# Data model
# -----------------------------
@dataclass(frozen=True)
class Note:
    text: str
    timestamp: str = ""
    duration: Optional[str] = None  # None for notes added while editing

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {"text": self.text, "timestamp": self.timestamp}
        if self.duration:
            data["duration"] = self.duration
        return data

    @classmethod
    def from_raw(cls, raw: object) -> Optional["Note"]:
        if isinstance(raw, str):
            return cls(text=raw) if raw.strip() else None
        if not isinstance(raw, dict):
            return None
        text = raw.get("text")
        if not isinstance(text, str) or not text.strip():
            return None
        timestamp = raw.get("timestamp")
        duration = raw.get("duration")
        return cls(
            text=text,
            timestamp=str(timestamp) if timestamp else "",
            duration=str(duration) if duration else None,
        )


@dataclass
class TaskEntry:
    time: int = 0
    notes: List[Note] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {"time": int(self.time), "notes": [n.to_dict() for n in self.notes]}


Ledger = Dict[str, TaskEntry]


def _coerce_ms(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    try:
        return max(0, int(value))
    except (ValueError, OverflowError):
        return 0


def normalize_entry(raw: object) -> TaskEntry:
    """Upgrade legacy shapes (a bare duration number) to a TaskEntry."""
    if not isinstance(raw, dict):
        return TaskEntry(time=_coerce_ms(raw))
    notes_raw = raw.get("notes")
    notes: List[Note] = []
    if isinstance(notes_raw, list):
        for item in notes_raw:
            note = Note.from_raw(item)
            if note is not None:
                notes.append(note)
    return TaskEntry(time=_coerce_ms(raw.get("time")), notes=notes)


def ledger_from_raw(raw: object) -> Ledger:
    if not isinstance(raw, dict):
        return {}
    return {str(name): normalize_entry(value) for name, value in raw.items() if str(name)}


def ledger_to_raw(ledger: Ledger) -> Dict[str, object]:
    return {name: entry.to_dict() for name, entry in ledger.items()}


def copy_ledger(ledger: Ledger) -> Ledger:
    return {name: TaskEntry(time=entry.time, notes=list(entry.notes)) for name, entry in ledger.items()}


def merge_rename(ledger: Ledger, old_name: str, new_name: str, notes: Optional[List[Note]] = None) -> Ledger:
    """Return a new ledger with old_name renamed to (or merged into) new_name.

    A merge sums both times and lists the target's notes before the source's
    (or before ``notes`` when an edited list replaces the source notes).
    Renaming a task onto itself only replaces its notes.
    """
    result = copy_ledger(ledger)
    source = result.get(old_name)
    if source is None:
        return result
    override = None if notes is None else [n for n in notes if n.text.strip()]
    if new_name == old_name:
        if override is not None:
            result[old_name] = TaskEntry(time=source.time, notes=override)
        return result
    moved_notes = source.notes if override is None else override
    target = result.get(new_name)
    # delete first: a plain rename goes to the end, a merge target keeps its slot
    del result[old_name]
    if target is None:
        result[new_name] = TaskEntry(time=source.time, notes=list(moved_notes))
    else:
        result[new_name] = TaskEntry(time=target.time + source.time, notes=target.notes + list(moved_notes))
    return result


def ledger_total(ledger: Ledger) -> int:
    return sum(entry.time for entry in ledger.values())


def sorted_entries(ledger: Ledger) -> List[Tuple[str, TaskEntry]]:
    # sorted() is stable with reverse=True: ties keep insertion order
    return sorted(ledger.items(), key=lambda kv: kv[1].time, reverse=True)


def _note_meta(note: Note) -> str:
    meta = " ".join(part for part in (note.timestamp, note.duration or "") if part).strip()
    return f"({meta}) " if meta else ""


# -----------------------------
# Day ledger store
# -----------------------------
class LedgerStore:
    def __init__(self, storage: Optional[object]):
        self.storage = storage

    async def read(self, day: str) -> Optional[Ledger]:
        """Return the day's ledger, or None when storage could not be read."""
        if self.storage is None:
            logger.warning("No storage available; ledger for %s not loaded", day)
            return None
        try:
            raw = await self.storage.get(ledger_key(day))
        except StorageError as exc:
            logger.warning("Unable to load ledger for %s: %s", day, exc)
            return None
        return ledger_from_raw(raw)

    async def load(self, day: str) -> Ledger:
        ledger = await self.read(day)
        return ledger if ledger is not None else {}

    async def save(self, day: str, ledger: Ledger) -> bool:
        if self.storage is None:
            logger.warning("No storage available; ledger for %s not saved", day)
            return False
        try:
            await self.storage.set(ledger_key(day), ledger_to_raw(ledger))
        except StorageError as exc:
            logger.warning("Unable to save ledger for %s: %s", day, exc)
            return False
        return True

    async def adjust_time(self, day: str, task_name: str, new_ms: int) -> bool:
        ledger = await self.read(day)
        if ledger is None or task_name not in ledger:
            return False
        ledger[task_name] = TaskEntry(time=max(0, int(new_ms)), notes=ledger[task_name].notes)
        return await self.save(day, ledger)

    async def rename(self, day: str, old_name: str, new_name: str, notes: Optional[List[Note]] = None) -> bool:
        ledger = await self.read(day)
        if ledger is None or old_name not in ledger:
            return False
        return await self.save(day, merge_rename(ledger, old_name, new_name, notes))


# -----------------------------
# Running-task session
# -----------------------------
@dataclass(frozen=True)
class RunningSession:
    task_name: str
    start_ms: int
    owner_day: str
    draft_notes: str = ""

    def elapsed_ms(self, now: dt.datetime) -> int:
        return max(0, to_epoch_ms(now) - self.start_ms)

    def to_dict(self) -> Dict[str, object]:
        return {"task": self.task_name, "startTime": self.start_ms, "notes": self.draft_notes, "date": self.owner_day}

    @classmethod
    def from_raw(cls, raw: object) -> Optional["RunningSession"]:
        if not isinstance(raw, dict):
            return None
        task = raw.get("task")
        start = raw.get("startTime")
        day = raw.get("date")
        if not isinstance(task, str) or not task.strip():
            return None
        if isinstance(start, bool) or not isinstance(start, (int, float)) or start <= 0:
            return None
        if not isinstance(day, str):
            return None
        try:
            parse_ymd(day)
        except ValueError:
            return None
        notes = raw.get("notes")
        return cls(task_name=task, start_ms=int(start), owner_day=day,
                   draft_notes=notes if isinstance(notes, str) else "")


@dataclass(frozen=True)
class StopResult:
    task_name: str
    elapsed_ms: int
    notes: str
    owner_day: str
    committed: bool = False


class _Ticker:
    """Repeating callback living exactly as long as a running session."""

    def __init__(self, interval: float = 1.0):
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, callback: Callable[[], None]) -> None:
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(self._run(callback))

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self, callback: Callable[[], None]) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                callback()
            except Exception:
                logger.warning("Timer tick callback failed", exc_info=True)


class RunningTaskSession:
    def __init__(self, storage: Optional[object], clock: SystemClock, tick_interval: float = 1.0):
        self.storage = storage
        self.clock = clock
        self.current: Optional[RunningSession] = None
        self._ticker = _Ticker(tick_interval)
        self._on_tick: Optional[Callable[[int], None]] = None

    def set_on_tick(self, fn: Optional[Callable[[int], None]]) -> None:
        self._on_tick = fn

    @property
    def ticking(self) -> bool:
        return self._ticker.active

    async def start(self, task_name: str, day: str) -> RunningSession:
        name = (task_name or "").strip()
        if not name:
            raise EmptyTaskNameError("Task name is required.")
        if self.current is not None:
            raise TrackerError(f"'{self.current.task_name}' is still running; stop it first.")
        self.current = RunningSession(task_name=name, start_ms=to_epoch_ms(self.clock.now()), owner_day=day)
        await self._persist()
        self._ticker.start(self._tick)
        return self.current

    async def stop(self) -> Optional[StopResult]:
        session = self.current
        if session is None:
            return None
        elapsed = session.elapsed_ms(self.clock.now())
        self.current = None
        self._ticker.cancel()
        await self._forget()
        return StopResult(task_name=session.task_name, elapsed_ms=elapsed,
                          notes=session.draft_notes, owner_day=session.owner_day)

    async def record_draft_note(self, text: str) -> None:
        if self.current is None:
            return
        self.current = replace(self.current, draft_notes=text or "")
        await self._persist()

    async def rename(self, new_name: str) -> None:
        if self.current is None:
            return
        self.current = replace(self.current, task_name=new_name)
        await self._persist()

    async def load_persisted(self) -> Optional[RunningSession]:
        if self.storage is None:
            return None
        try:
            raw = await self.storage.get(RUNNING_KEY)
        except StorageError as exc:
            logger.warning("Unable to load running task: %s", exc)
            return None
        if raw is None:
            return None
        session = RunningSession.from_raw(raw)
        if session is None:
            logger.warning("Ignoring malformed running task state: %r", raw)
        return session

    async def try_resume(self, current_day: str) -> Optional[RunningSession]:
        session = await self.load_persisted()
        if session is None:
            return None
        if session.owner_day != current_day:
            logger.info("Not offering '%s' from %s for resume on %s", session.task_name, session.owner_day, current_day)
            return None
        return session

    async def resume(self, session: RunningSession) -> None:
        if self.current is not None:
            raise TrackerError(f"'{self.current.task_name}' is already running.")
        self.current = session
        await self._persist()
        self._ticker.start(self._tick)

    async def discard(self) -> None:
        self.current = None
        self._ticker.cancel()
        await self._forget()

    def _tick(self) -> None:
        session = self.current
        if session is None or self._on_tick is None:
            return
        self._on_tick(session.elapsed_ms(self.clock.now()))

    async def _persist(self) -> None:
        if self.storage is None or self.current is None:
            return
        try:
            await self.storage.set(RUNNING_KEY, self.current.to_dict())
        except StorageError as exc:
            logger.warning("Unable to persist running task: %s", exc)

    async def _forget(self) -> None:
        if self.storage is None:
            return
        try:
            await self.storage.remove(RUNNING_KEY)
        except StorageError as exc:
            logger.warning("Unable to clear running task: %s", exc)


# -----------------------------
# Reconciliation engine
# -----------------------------
class TimeTracker:
    """Applies start/stop/rename/adjust intents to the day ledgers.

    One lock serializes intents so a rename reads, merges and writes the
    ledger before the next intent can observe the day.
    """

    def __init__(self, storage: Optional[object], clock: Optional[SystemClock] = None,
                 note_time_format: str = "%H:%M:%S", day: Optional[str] = None,
                 tick_interval: float = 1.0):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.note_time_format = note_time_format
        self.ledgers = LedgerStore(storage)
        self.session = RunningTaskSession(storage, self.clock, tick_interval=tick_interval)
        self.selected_day = day or self.clock.today()
        self.theme = DEFAULT_THEME_NAME
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    def set_on_tick(self, fn: Optional[Callable[[int], None]]) -> None:
        self.session.set_on_tick(fn)

    def _intent_lock(self) -> asyncio.Lock:
        # one lock per event loop; created lazily inside the running loop
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    # ----- Startup / resume -----
    async def startup(self) -> Optional[RunningSession]:
        await self.load_theme()
        return await self.session.try_resume(self.selected_day)

    async def resume(self, offer: RunningSession) -> None:
        async with self._intent_lock():
            await self.session.resume(offer)
        logger.info("Resumed '%s'", offer.task_name)

    async def decline_resume(self) -> None:
        async with self._intent_lock():
            await self.session.discard()

    # ----- Reads -----
    async def get_ledger(self, day: Optional[str] = None) -> Ledger:
        return await self.ledgers.load(day or self.selected_day)

    async def get_total(self, day: Optional[str] = None) -> int:
        return ledger_total(await self.get_ledger(day))

    async def sorted_tasks(self, day: Optional[str] = None) -> List[Tuple[str, TaskEntry]]:
        return sorted_entries(await self.get_ledger(day))

    def get_running_session(self) -> Optional[RunningSession]:
        return self.session.current

    def elapsed_ms(self) -> int:
        current = self.session.current
        return current.elapsed_ms(self.clock.now()) if current else 0

    # ----- Intents -----
    async def start(self, task_name: str) -> RunningSession:
        name = (task_name or "").strip()
        if not name:
            raise EmptyTaskNameError("Task name is required.")
        async with self._intent_lock():
            if self.session.current is not None:
                await self._stop_locked()
            started = await self.session.start(name, self.selected_day)
        logger.info("Started '%s' on %s", started.task_name, started.owner_day)
        return started

    async def stop(self) -> Optional[StopResult]:
        async with self._intent_lock():
            return await self._stop_locked()

    async def _stop_locked(self) -> Optional[StopResult]:
        result = await self.session.stop()
        if result is None:
            return None
        committed = await self._commit_locked(result.owner_day, result.task_name, result.elapsed_ms, result.notes)
        logger.info("Stopped '%s' after %s", result.task_name, format_duration(result.elapsed_ms))
        return replace(result, committed=committed)

    async def commit(self, day: str, task_name: str, elapsed_ms: int, draft_notes: str = "") -> bool:
        async with self._intent_lock():
            return await self._commit_locked(day, task_name, elapsed_ms, draft_notes)

    async def _commit_locked(self, day: str, task_name: str, elapsed_ms: int, draft_notes: str) -> bool:
        ledger = await self.ledgers.read(day)
        if ledger is None:
            return False
        entry = ledger.get(task_name) or TaskEntry()
        elapsed_ms = max(0, int(elapsed_ms))
        notes = list(entry.notes)
        text = (draft_notes or "").strip()
        if text:
            notes.append(Note(
                text=text,
                timestamp=self.clock.now().strftime(self.note_time_format),
                duration=format_duration(elapsed_ms),
            ))
        ledger[task_name] = TaskEntry(time=entry.time + elapsed_ms, notes=notes)
        return await self.ledgers.save(day, ledger)

    async def rename(self, old_name: str, new_name: str, notes: Optional[List[Note]] = None,
                     day: Optional[str] = None) -> bool:
        """Rename or merge a task. False when old_name is not in the ledger."""
        target = (new_name or "").strip()
        if not target:
            raise EmptyTaskNameError("Task name is required.")
        day = day or self.selected_day
        async with self._intent_lock():
            if not await self.ledgers.rename(day, old_name, target, notes):
                logger.info("Rename skipped: '%s' not found on %s", old_name, day)
                return False
            running = self.session.current
            if running is not None and running.task_name == old_name and running.owner_day == day and target != old_name:
                await self.session.rename(target)
        if target != old_name:
            logger.info("Renamed '%s' to '%s' on %s", old_name, target, day)
        return True

    async def edit_notes(self, task_name: str, notes: List[Note], day: Optional[str] = None) -> bool:
        return await self.rename(task_name, task_name, notes, day)

    async def adjust_time(self, task_name: str, duration_text: str, day: Optional[str] = None) -> bool:
        new_ms = parse_duration(duration_text)
        if new_ms is None:
            raise InvalidDurationError("Invalid time format. Use HH:MM:SS")
        day = day or self.selected_day
        async with self._intent_lock():
            applied = await self.ledgers.adjust_time(day, task_name, new_ms)
        if applied:
            logger.info("Adjusted '%s' on %s to %s", task_name, day, format_duration(new_ms))
        return applied

    async def record_draft_note(self, text: str) -> None:
        async with self._intent_lock():
            await self.session.record_draft_note(text)

    # ----- Export -----
    async def to_markdown(self, day: Optional[str] = None) -> str:
        day = day or self.selected_day
        return render_markdown(day, await self.ledgers.load(day))

    async def export_markdown(self, directory: str, day: Optional[str] = None) -> Path:
        day = day or self.selected_day
        text = await self.to_markdown(day)
        out_dir = Path(directory).expanduser()
        out_dir.mkdir(parents=True, exist_ok=True)
        out_path = out_dir / f"tasks_{day}.md"
        with open(out_path, "w", encoding="utf-8") as f:
            f.write(text)
        return out_path

    # ----- Day selection -----
    def select_day(self, day: str) -> None:
        parse_ymd(day)
        self.selected_day = day

    def can_go_forward(self) -> bool:
        return parse_ymd(self.selected_day) < parse_ymd(self.clock.today())

    def shift_selected_day(self, days: int) -> bool:
        if days > 0 and not self.can_go_forward():
            return False
        self.selected_day = shift_day(self.selected_day, days)
        return True

    def go_today(self) -> bool:
        today = self.clock.today()
        if self.selected_day == today:
            return False
        self.selected_day = today
        return True

    # ----- Theme preference -----
    async def load_theme(self) -> str:
        if self.storage is not None:
            try:
                saved = await self.storage.get(THEME_KEY)
            except StorageError as exc:
                logger.warning("Unable to load theme: %s", exc)
                saved = None
            if isinstance(saved, str) and saved.strip():
                self.theme = saved.strip().lower()
        return self.theme

    async def save_theme(self, name: str) -> None:
        self.theme = (name or DEFAULT_THEME_NAME).strip().lower()
        if self.storage is None:
            return
        try:
            await self.storage.set(THEME_KEY, self.theme)
        except StorageError as exc:
            logger.warning("Unable to save theme: %s", exc)


# -----------------------------
# Markdown export
# -----------------------------
def render_markdown(day: str, ledger: Ledger) -> str:
    lines = [f"# Tasks for {day}", ""]
    if not ledger:
        lines.append("- No tasks tracked for this date.")
        return "\n".join(lines)
    for name, entry in sorted_entries(ledger):
        lines.append(f"- **{name}** — {format_duration(entry.time)}")
        for note in entry.notes:
            lines.append(f"  - {_note_meta(note)}{note.text}")
        lines.append("")
    return "\n".join(lines)


# -----------------------------
# Legacy import
# -----------------------------
async def import_legacy_json(storage: object, path: str) -> int:
    """Copy ledgers and the running task from a browser storage dump.

    Keys already present in storage are left alone, so importing twice is safe.
    Values may be structured or JSON strings (as localStorage keeps them).
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as exc:
        raise ValueError(f"Unable to read legacy export {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("Legacy export must be a JSON object.")
    imported = 0
    for key, value in data.items():
        if not (key.startswith(TASKS_KEY_PREFIX) or key == RUNNING_KEY):
            continue
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                logger.warning("Skipping %s: value is not JSON", key)
                continue
        if not value:
            continue
        if key.startswith(TASKS_KEY_PREFIX):
            try:
                parse_ymd(key[len(TASKS_KEY_PREFIX):])
            except ValueError:
                logger.warning("Skipping %s: not a day key", key)
                continue
            if not isinstance(value, dict):
                logger.warning("Skipping %s: ledger is not an object", key)
                continue
        if await storage.get(key):
            continue
        await storage.set(key, value)
        imported += 1
    logger.info("Imported %d keys from %s", imported, path)
    return imported


# -----------------------------
# Logging
# -----------------------------
def setup_logging(log_level: str, log_path: str) -> logging.Logger:
    # Always reset handlers so the CLI --log-level reliably controls file output.
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    directory = os.path.dirname(log_path)
    if directory and not os.path.isdir(directory):
        os.makedirs(directory, exist_ok=True)
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    lvl = getattr(logging, str(log_level).upper(), None)
    fh.setLevel(lvl if isinstance(lvl, int) else logging.ERROR)
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)
    return logger


# -----------------------------
# Terminal UI
# -----------------------------
HELP_LINES = [
    "⏱ Timer",
    "  n                   Start a task (prompt)",
    "  space               Start selected task / stop running task",
    "  s                   Stop and commit",
    "  N                   Edit draft note of the running task",
    "",
    "🛠 Task Actions",
    "  e                   Rename (merges into an existing name)",
    "  a                   Adjust time (HH:MM:SS)",
    "  E                   Edit notes (j/k move, Enter edit, A add, d delete, s save)",
    "",
    "📅 Days",
    "  h / l • arrows      Previous / next day",
    "  T                   Today",
    "  g                   Go to date (YYYY-MM-DD)",
    "",
    "📤 Export & Look",
    "  m                   Write tasks_<day>.md",
    "  t                   Cycle theme",
    "",
    "❓ General",
    "  j/k • arrows        Move selection",
    "  ?                   Toggle help",
    "  q / Esc             Quit / Close",
]

PROMPT_LABELS = {
    'start': "Start task",
    'draft': "Draft note",
    'rename': "Rename to",
    'adjust': "Time (HH:MM:SS)",
    'date': "Go to date (YYYY-MM-DD)",
    'note-edit': "Note",
    'note-add': "New note",
}


@dataclass
class UIHandle:
    app: Application
    kb: KeyBindings
    state: Dict[str, object]
    refresh: Callable[[], Awaitable[None]]
    drain: Callable[[], Awaitable[None]]


def build_ui(tracker: TimeTracker, cfg: Config, offer: Optional[RunningSession] = None,
             theme_dir: Optional[Path] = None, input=None, output=None) -> UIHandle:
    """Full-screen view of one day's ledger with the running task on top.

    Key handlers never touch storage directly: they schedule one intent at a
    time as a background task and re-render from the reloaded ledger.
    """
    if theme_dir is None:
        theme_dir = Path(__file__).resolve().parent / "themes"
    theme_presets = _load_theme_presets(theme_dir)
    state: Dict[str, object] = {
        'rows': [],
        'total': 0,
        'cursor': 0,
        'mode': 'normal',   # normal | prompt | confirm | notes | help
        'prompt': None,
        'confirm': None,
        'notes': None,
        'status': '',
        'warning': False,
        'busy': False,
        'quit_armed': False,
        'theme_index': _theme_index(theme_presets, tracker.theme),
    }
    pending: Set[asyncio.Task] = set()
    floats: List[Float] = []
    app: Optional[Application] = None

    def invalidate() -> None:
        if app is not None:
            app.invalidate()

    def set_status(message: str, warning: bool = False) -> None:
        state['status'] = message
        state['warning'] = warning
        invalidate()

    def selected_row() -> Optional[Tuple[str, TaskEntry]]:
        rows = state['rows']
        if not rows:
            return None
        idx = max(0, min(int(state['cursor']), len(rows) - 1))
        return rows[idx]

    def running_here() -> Optional[RunningSession]:
        running = tracker.get_running_session()
        if running is not None and running.owner_day == tracker.selected_day:
            return running
        return None

    async def reload(select_name: Optional[str] = None) -> None:
        rows = await tracker.sorted_tasks()
        state['rows'] = rows
        state['total'] = sum(entry.time for _, entry in rows)
        if select_name is not None:
            for idx, (name, _) in enumerate(rows):
                if name == select_name:
                    state['cursor'] = idx
                    break
        state['cursor'] = max(0, min(int(state['cursor']), len(rows) - 1)) if rows else 0
        invalidate()

    def spawn(coro: Awaitable[None]) -> Optional[asyncio.Task]:
        if state['busy']:
            coro.close()
            set_status("Busy, try again in a moment", warning=True)
            return None
        state['busy'] = True
        state['quit_armed'] = False

        async def runner() -> None:
            try:
                await coro
            except Exception:
                logger.exception("UI action failed")
                set_status("Action failed (see log)", warning=True)
            finally:
                state['busy'] = False
                invalidate()

        task = asyncio.create_task(runner())
        pending.add(task)
        task.add_done_callback(pending.discard)
        return task

    async def drain() -> None:
        while pending:
            await asyncio.gather(*list(pending))

    # ----- Intents -----
    async def do_start(name: str) -> None:
        try:
            session = await tracker.start(name)
        except EmptyTaskNameError as exc:
            set_status(str(exc), warning=True)
            return
        await reload(select_name=session.task_name)
        set_status(f"Started '{session.task_name}'")

    async def do_stop() -> None:
        result = await tracker.stop()
        await reload()
        if result is None:
            set_status("No task running")
        else:
            elapsed = format_duration(result.elapsed_ms)
            if result.committed:
                set_status(f"Stopped '{result.task_name}' (+{elapsed})")
            else:
                set_status(f"Stopped '{result.task_name}' but {elapsed} was not saved (see log)", warning=True)

    async def do_draft(text: str) -> None:
        await tracker.record_draft_note(text)
        set_status("Draft note saved" if text.strip() else "Draft note cleared")

    async def do_rename(old_name: str, new_name: str) -> None:
        applied = await tracker.rename(old_name, new_name)
        await reload(select_name=new_name.strip() if applied else None)
        if applied:
            set_status(f"Renamed '{old_name}' to '{new_name.strip()}'")
        else:
            set_status(f"'{old_name}' no longer exists; reloaded", warning=True)

    async def do_adjust(task_name: str, text: str) -> None:
        try:
            applied = await tracker.adjust_time(task_name, text)
        except InvalidDurationError as exc:
            open_prompt('adjust', text, task=task_name)
            set_status(str(exc), warning=True)
            return
        await reload(select_name=task_name)
        if applied:
            set_status("Task time adjusted")
        else:
            set_status(f"'{task_name}' no longer exists; reloaded", warning=True)

    async def do_save_notes(task_name: str, notes: List[Note]) -> None:
        applied = await tracker.edit_notes(task_name, notes)
        await reload(select_name=task_name)
        set_status("Notes saved" if applied else f"'{task_name}' no longer exists; reloaded", warning=not applied)

    async def do_change_day(action: Callable[[], bool]) -> None:
        if not action():
            set_status("Already at today" if tracker.selected_day == tracker.clock.today() else "Cannot move past today")
            return
        state['cursor'] = 0
        await reload()
        set_status("")

    async def do_export() -> None:
        try:
            out_path = await tracker.export_markdown(cfg.export_dir)
        except OSError as exc:
            set_status(f"Export failed: {exc}", warning=True)
            return
        set_status(f"Exported {out_path}")

    async def do_theme(index: int) -> None:
        preset = theme_presets[index]
        await tracker.save_theme(preset.name)
        set_status(f"Theme: {preset.name}")

    async def do_resume(session: RunningSession) -> None:
        await tracker.resume(session)
        await reload(select_name=session.task_name)
        set_status(f"Resumed '{session.task_name}'")

    async def do_decline() -> None:
        await tracker.decline_resume()
        set_status("Running task discarded")

    # ----- Modes -----
    def open_prompt(kind: str, initial: str = "", task: Optional[str] = None, return_mode: str = 'normal') -> None:
        state['prompt'] = {'kind': kind, 'input': initial, 'task': task, 'return_mode': return_mode}
        state['mode'] = 'prompt'
        state['warning'] = False
        invalidate()

    def close_prompt() -> None:
        prompt = state['prompt'] or {}
        state['mode'] = prompt.get('return_mode', 'normal')
        state['prompt'] = None
        sync_floats()

    def ask_confirm(message: str, on_yes: Callable[[], None], on_no: Optional[Callable[[], None]] = None) -> None:
        state['confirm'] = {'message': message, 'on_yes': on_yes, 'on_no': on_no}
        state['mode'] = 'confirm'
        invalidate()

    def answer_confirm(yes: bool) -> None:
        confirm = state['confirm'] or {}
        state['confirm'] = None
        state['mode'] = 'normal'
        callback = confirm.get('on_yes') if yes else confirm.get('on_no')
        if callback is not None:
            callback()
        invalidate()

    def open_note_editor() -> None:
        row = selected_row()
        if row is None:
            set_status("No task selected")
            return
        name, entry = row
        state['notes'] = {'task': name, 'notes': list(entry.notes), 'cursor': 0}
        state['mode'] = 'notes'
        sync_floats()

    def close_note_editor(message: Optional[str] = None) -> None:
        state['notes'] = None
        state['mode'] = 'normal'
        sync_floats()
        if message:
            set_status(message)

    def move_note_cursor(delta: int) -> None:
        editor = state['notes']
        notes = editor['notes']
        if notes:
            editor['cursor'] = (int(editor['cursor']) + delta) % len(notes)
        invalidate()

    def finalize_prompt() -> None:
        prompt = state['prompt']
        kind = prompt['kind']
        value = prompt['input']
        if kind == 'start':
            if not value.strip():
                set_status("Task name is required.", warning=True)
                return
            close_prompt()
            spawn(do_start(value))
        elif kind == 'draft':
            close_prompt()
            spawn(do_draft(value))
        elif kind == 'rename':
            if not value.strip():
                set_status("Task name is required.", warning=True)
                return
            close_prompt()
            spawn(do_rename(prompt['task'], value))
        elif kind == 'adjust':
            if parse_duration(value) is None:
                set_status("Invalid time format. Use HH:MM:SS", warning=True)
                return
            close_prompt()
            spawn(do_adjust(prompt['task'], value))
        elif kind == 'date':
            try:
                day = format_ymd(parse_ymd(value.strip()))
            except ValueError as exc:
                set_status(str(exc), warning=True)
                return
            close_prompt()
            if day == tracker.selected_day:
                set_status(f"Already on {day}")
                return
            spawn(do_change_day(lambda: _select(day)))
        elif kind == 'note-edit':
            editor = state['notes']
            idx = int(editor['cursor'])
            if value.strip():
                editor['notes'][idx] = replace(editor['notes'][idx], text=value)
            else:
                del editor['notes'][idx]
                editor['cursor'] = max(0, min(idx, len(editor['notes']) - 1))
            close_prompt()
        elif kind == 'note-add':
            close_prompt()
            if value.strip():
                editor = state['notes']
                editor['notes'].append(Note(text=value.strip(),
                                            timestamp=tracker.clock.now().strftime(tracker.note_time_format)))
                editor['cursor'] = len(editor['notes']) - 1
        invalidate()

    def _select(day: str) -> bool:
        if day == tracker.selected_day:
            return False
        tracker.select_day(day)
        return True

    def toggle_timer() -> None:
        running = tracker.get_running_session()
        row = selected_row()
        if running is None:
            if row is None:
                open_prompt('start')
            else:
                spawn(do_start(row[0]))
            return
        if row is None or (row[0] == running.task_name and running is running_here()):
            spawn(do_stop())
            return
        name = row[0]
        ask_confirm(f"Stop '{running.task_name}' and switch to '{name}'?", lambda: spawn(do_start(name)))

    # ----- Rendering -----
    def build_header() -> List[Tuple[str, str]]:
        day = tracker.selected_day
        label = "today" if day == tracker.clock.today() else parse_ymd(day).strftime("%A")
        frags = [
            ('class:header', ' ⏱ Task Time Tracker '),
            ('class:header.day', f" {day} ({label}) "),
            ('class:header.total', f" Total {format_duration(state['total'])} "),
        ]
        if not tracker.can_go_forward():
            frags.append(('class:header.hint', ' (latest day)'))
        return frags

    def build_running() -> List[Tuple[str, str]]:
        running = tracker.get_running_session()
        if running is None:
            return [('class:running.idle', ' Idle. Press n to start a task.')]
        frags = [
            ('class:running.task', f" ▶ {running.task_name} "),
            ('class:running.timer', format_duration(tracker.elapsed_ms())),
        ]
        if running.owner_day != tracker.selected_day:
            frags.append(('class:running.idle', f"  (started on {running.owner_day})"))
        draft = running.draft_notes.strip()
        if draft:
            frags.append(('', '\n'))
            frags.append(('class:running.note', f"   ✎ {draft.splitlines()[0]}"))
        return frags

    def build_table() -> List[Tuple[str, str]]:
        rows = state['rows']
        if not rows:
            return [('class:table.empty', ' No tasks tracked for this date.')]
        running = running_here()
        frags: List[Tuple[str, str]] = []
        for idx, (name, entry) in enumerate(rows):
            is_running = running is not None and running.task_name == name
            if idx == state['cursor']:
                frags.append(('[SetCursorPosition]', ''))
                name_style = 'class:table.cursor'
            else:
                name_style = 'class:table.running' if is_running else 'class:table.name'
            marker = '⏱ ' if is_running else '  '
            frags.append((name_style, f"{marker}{name}"))
            frags.append(('class:table.time', f"  {format_duration(entry.time)}\n"))
            for note in entry.notes:
                frags.append(('class:table.note', f"      {_note_meta(note)}{note.text}\n"))
        return frags

    def build_status() -> List[Tuple[str, str]]:
        mode = state['mode']
        if mode == 'prompt' and state['prompt']:
            prompt = state['prompt']
            frags = [('class:status.prompt', f" {PROMPT_LABELS[prompt['kind']]}: {prompt['input']}▏")]
            if state['status'] and state['warning']:
                frags.append(('class:status.warning', f"  {state['status']}"))
            return frags
        if mode == 'confirm' and state['confirm']:
            return [('class:status.prompt', f" {state['confirm']['message']} [y/n]")]
        style_name = 'class:status.warning' if state['warning'] else 'class:status'
        return [(style_name, f" {state['status'] or 'Press ? for help'}")]

    def build_note_editor() -> List[Tuple[str, str]]:
        editor = state['notes'] or {}
        frags: List[Tuple[str, str]] = [('class:editor.header', f"Notes for {editor.get('task', '')}\n\n")]
        notes = editor.get('notes') or []
        if not notes:
            frags.append(('class:editor.meta', "  (no notes)\n"))
        for idx, note in enumerate(notes):
            style_name = 'class:editor.cursor' if idx == editor.get('cursor') else 'class:editor.text'
            frags.append(('class:editor.meta', f"  {_note_meta(note)}"))
            frags.append((style_name, f"{note.text}\n"))
        frags.append(('class:editor.instructions', "\nEnter edit • A add • d delete • s save • Esc cancel"))
        return frags

    help_window = Window(content=FormattedTextControl(text="\n".join(HELP_LINES)),
                         width=Dimension.exact(64), height=Dimension.exact(len(HELP_LINES)),
                         always_hide_cursor=True)
    note_window = Window(content=FormattedTextControl(text=build_note_editor), width=Dimension.exact(72),
                         height=Dimension(min=6, max=20), style='class:editor.body', always_hide_cursor=True)

    def sync_floats() -> None:
        floats.clear()
        if state['mode'] == 'help':
            floats.append(Float(content=Frame(body=help_window, title="Help"), top=1, left=2))
        elif state['notes'] is not None:
            floats.append(Float(content=Frame(body=note_window, title="Edit notes"), top=2, left=4))
        invalidate()

    root = HSplit([
        Window(content=FormattedTextControl(text=build_header), height=1),
        Window(content=FormattedTextControl(text=build_running), height=Dimension(min=1, max=2)),
        Window(height=1, char='─'),
        Window(content=FormattedTextControl(text=build_table), wrap_lines=False, always_hide_cursor=True),
        Window(content=FormattedTextControl(text=build_status), height=1, style='class:status'),
    ])
    container = FloatContainer(content=root, floats=floats)

    kb = KeyBindings()
    is_normal = Condition(lambda: state['mode'] == 'normal')
    is_prompt = Condition(lambda: state['mode'] == 'prompt')
    is_confirm = Condition(lambda: state['mode'] == 'confirm')
    is_notes = Condition(lambda: state['mode'] == 'notes')
    is_help = Condition(lambda: state['mode'] == 'help')

    @kb.add('n', filter=is_normal)
    def _(event):
        row = selected_row()
        open_prompt('start', row[0] if row and tracker.get_running_session() is None else "")

    @kb.add('space', filter=is_normal)
    def _(event):
        toggle_timer()

    @kb.add('s', filter=is_normal)
    def _(event):
        if tracker.get_running_session() is None:
            set_status("No task running")
            return
        spawn(do_stop())

    @kb.add('N', filter=is_normal)
    def _(event):
        running = tracker.get_running_session()
        if running is None:
            set_status("Start a task before adding a note")
            return
        open_prompt('draft', running.draft_notes)

    @kb.add('e', filter=is_normal)
    def _(event):
        row = selected_row()
        if row is None:
            set_status("No task selected")
            return
        open_prompt('rename', row[0], task=row[0])

    @kb.add('a', filter=is_normal)
    def _(event):
        row = selected_row()
        if row is None:
            set_status("No task selected")
            return
        open_prompt('adjust', format_duration(row[1].time), task=row[0])

    @kb.add('E', filter=is_normal)
    def _(event):
        open_note_editor()

    @kb.add('h', filter=is_normal)
    @kb.add('left', filter=is_normal)
    def _(event):
        spawn(do_change_day(lambda: tracker.shift_selected_day(-1)))

    @kb.add('l', filter=is_normal)
    @kb.add('right', filter=is_normal)
    def _(event):
        spawn(do_change_day(lambda: tracker.shift_selected_day(1)))

    @kb.add('T', filter=is_normal)
    def _(event):
        spawn(do_change_day(tracker.go_today))

    @kb.add('g', filter=is_normal)
    def _(event):
        open_prompt('date', tracker.selected_day)

    @kb.add('j', filter=is_normal)
    @kb.add('down', filter=is_normal)
    def _(event):
        if state['rows']:
            state['cursor'] = min(int(state['cursor']) + 1, len(state['rows']) - 1)
        invalidate()

    @kb.add('k', filter=is_normal)
    @kb.add('up', filter=is_normal)
    def _(event):
        state['cursor'] = max(int(state['cursor']) - 1, 0)
        invalidate()

    @kb.add('m', filter=is_normal)
    def _(event):
        spawn(do_export())

    @kb.add('t', filter=is_normal)
    def _(event):
        index = (int(state['theme_index']) + 1) % len(theme_presets)
        state['theme_index'] = index
        if app is not None:
            app.style = Style.from_dict(theme_presets[index].style)
        spawn(do_theme(index))

    @kb.add('?', filter=is_normal)
    def _(event):
        state['mode'] = 'help'
        sync_floats()

    @kb.add('?', filter=is_help)
    @kb.add('escape', filter=is_help)
    @kb.add('q', filter=is_help)
    def _(event):
        state['mode'] = 'normal'
        sync_floats()

    @kb.add('q', filter=is_normal)
    @kb.add('escape', filter=is_normal)
    def _(event):
        if tracker.get_running_session() is not None and not state['quit_armed']:
            state['quit_armed'] = True
            set_status("A task is running (it stays saved for resume). Press q again to quit.", warning=True)
            return
        event.app.exit()

    @kb.add('c-c')
    def _(event):
        event.app.exit()

    # prompt input
    @kb.add('enter', filter=is_prompt)
    def _(event):
        finalize_prompt()

    @kb.add('escape', filter=is_prompt)
    def _(event):
        close_prompt()
        set_status("")

    @kb.add('backspace', filter=is_prompt)
    def _(event):
        prompt = state['prompt']
        if prompt['input']:
            prompt['input'] = prompt['input'][:-1]
            invalidate()

    @kb.add(Keys.Any, filter=is_prompt)
    def _(event):
        ch = event.data or ""
        if ch and ch.isprintable():
            state['prompt']['input'] += ch
            invalidate()

    # confirmations
    @kb.add('y', filter=is_confirm)
    def _(event):
        answer_confirm(True)

    @kb.add('n', filter=is_confirm)
    @kb.add('escape', filter=is_confirm)
    def _(event):
        answer_confirm(False)

    # note editor
    @kb.add('j', filter=is_notes)
    @kb.add('down', filter=is_notes)
    def _(event):
        move_note_cursor(1)

    @kb.add('k', filter=is_notes)
    @kb.add('up', filter=is_notes)
    def _(event):
        move_note_cursor(-1)

    @kb.add('enter', filter=is_notes)
    def _(event):
        editor = state['notes']
        if not editor['notes']:
            return
        open_prompt('note-edit', editor['notes'][int(editor['cursor'])].text, return_mode='notes')

    @kb.add('A', filter=is_notes)
    def _(event):
        open_prompt('note-add', return_mode='notes')

    @kb.add('d', filter=is_notes)
    def _(event):
        editor = state['notes']
        notes = editor['notes']
        if not notes:
            return
        idx = int(editor['cursor'])
        del notes[idx]
        editor['cursor'] = max(0, min(idx, len(notes) - 1))
        invalidate()

    @kb.add('s', filter=is_notes)
    def _(event):
        editor = state['notes']
        task_name, notes = editor['task'], list(editor['notes'])
        close_note_editor()
        spawn(do_save_notes(task_name, notes))

    @kb.add('escape', filter=is_notes)
    def _(event):
        close_note_editor("Note edit cancelled")

    style = Style.from_dict(theme_presets[int(state['theme_index'])].style)
    app = Application(layout=Layout(container), key_bindings=kb, full_screen=True, style=style,
                      input=input, output=output)
    tracker.set_on_tick(lambda _elapsed: invalidate())

    if offer is not None:
        started = from_epoch_ms(offer.start_ms).strftime("%H:%M:%S")
        ask_confirm(f"Resume tracking for \"{offer.task_name}\" started at {started}?",
                    lambda: spawn(do_resume(offer)), lambda: spawn(do_decline()))

    return UIHandle(app=app, kb=kb, state=state, refresh=reload, drain=drain)


def run_ui(tracker: TimeTracker, cfg: Config) -> None:
    async def _main() -> None:
        offer = await tracker.startup()
        ui = build_ui(tracker, cfg, offer=offer)
        await ui.refresh()
        await ui.app.run_async()
        await ui.drain()

    asyncio.run(_main())


# -----------------------------
# CLI
# -----------------------------
def _print_summary(day: str, rows: List[Tuple[str, TaskEntry]], running: Optional[RunningSession],
                   elapsed_ms: int) -> None:
    total = sum(entry.time for _, entry in rows)
    print(f"Tasks for {day} (total {format_duration(total)})")
    if not rows:
        print("  No tasks tracked for this date.")
    for name, entry in rows:
        print(f"  {format_duration(entry.time)}  {name}")
        for note in entry.notes:
            print(f"      {_note_meta(note)}{note.text}")
    if running is not None:
        since = from_epoch_ms(running.start_ms).strftime("%H:%M:%S")
        print(f"Running: {running.task_name} since {since} on {running.owner_day} ({format_duration(elapsed_ms)})")


async def _run_headless(tracker: TimeTracker, storage: object, args: argparse.Namespace) -> int:
    if args.import_json:
        if storage is None:
            print("No storage available; nothing imported", file=sys.stderr)
            return 2
        try:
            count = await import_legacy_json(storage, args.import_json)
        except (ValueError, StorageError) as exc:
            print(str(exc), file=sys.stderr)
            return 2
        print(f"Imported {count} keys from {args.import_json}")

    # a CLI call continues whatever task an earlier call started
    persisted = await tracker.session.load_persisted()
    if persisted is not None:
        await tracker.resume(persisted)

    try:
        if args.rename:
            old_name, new_name = args.rename
            if not await tracker.rename(old_name, new_name):
                print(f"Task '{old_name}' not found on {tracker.selected_day}", file=sys.stderr)
                return 1
        if args.adjust:
            task_name, duration_text = args.adjust
            if not await tracker.adjust_time(task_name, duration_text):
                print(f"Task '{task_name}' not found on {tracker.selected_day}", file=sys.stderr)
                return 1
        if args.stop:
            result = await tracker.stop()
            if result is None:
                print("No task running")
            else:
                print(f"Stopped {result.task_name} (+{format_duration(result.elapsed_ms)})")
                if not result.committed:
                    print(f"Time for {result.task_name} was not saved (see log)", file=sys.stderr)
                    return 1
        if args.start:
            session = await tracker.start(args.start)
            print(f"Started {session.task_name} on {session.owner_day}")
        if args.note is not None:
            if tracker.get_running_session() is None:
                print("No task running", file=sys.stderr)
                return 1
            await tracker.record_draft_note(args.note)
    except (EmptyTaskNameError, InvalidDurationError) as exc:
        print(str(exc), file=sys.stderr)
        return 2

    if args.export_md:
        text = await tracker.to_markdown()
        if args.export_md == "-":
            print(text)
        else:
            try:
                with open(args.export_md, "w", encoding="utf-8") as f:
                    f.write(text)
            except OSError as exc:
                print(f"Failed to write export: {exc}", file=sys.stderr)
                return 2
            print(f"Wrote markdown to {args.export_md}")

    if args.no_ui:
        _print_summary(tracker.selected_day, await tracker.sorted_tasks(),
                       tracker.get_running_session(), tracker.elapsed_ms())
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Per-day task time tracker")
    ap.add_argument("--config", help="Path to YAML config")
    ap.add_argument("--db", help="Path to sqlite DB (overrides config)")
    ap.add_argument("--date", help="Day to show or act on (YYYY-MM-DD, default today)")
    ap.add_argument("--log-level", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--no-ui", action="store_true", help="Print the day summary and exit")
    ap.add_argument("--export-md", metavar="PATH", help="Write the day's markdown export to PATH ('-' for stdout)")
    ap.add_argument("--import-json", metavar="PATH", help="Import a JSON dump of the old browser storage")
    ap.add_argument("--start", metavar="TASK", help="Start TASK (stops and commits a running task first)")
    ap.add_argument("--stop", action="store_true", help="Stop the running task and commit its time")
    ap.add_argument("--note", metavar="TEXT", help="Set the draft note of the running task")
    ap.add_argument("--rename", nargs=2, metavar=("OLD", "NEW"), help="Rename or merge a task")
    ap.add_argument("--adjust", nargs=2, metavar=("TASK", "HH:MM:SS"), help="Set a task's time")
    args = ap.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        sys.exit(2)
    if args.db:
        cfg.db = os.path.expanduser(args.db)
    if args.log_level:
        cfg.log_level = args.log_level
    setup_logging(cfg.log_level, cfg.log_file)

    day = None
    if args.date:
        try:
            day = format_ymd(parse_ymd(args.date))
        except ValueError as e:
            print(str(e), file=sys.stderr)
            sys.exit(2)

    storage: Optional[SqliteStorage] = None
    try:
        storage = SqliteStorage(cfg.db)
    except (OSError, sqlite3.Error) as e:
        logger.warning("Unable to open database %s: %s", cfg.db, e)
        print(f"Unable to open database {cfg.db} ({e}); nothing will be saved", file=sys.stderr)
    tracker = TimeTracker(storage, note_time_format=cfg.note_time_format, day=day)
    headless = any([args.no_ui, args.export_md, args.import_json, args.start, args.stop,
                    args.note is not None, args.rename, args.adjust])
    try:
        if headless:
            code = asyncio.run(_run_headless(tracker, storage, args))
            if code:
                sys.exit(code)
            return
        run_ui(tracker, cfg)
    finally:
        if storage is not None:
            storage.close()


if __name__ == "__main__":
    main()

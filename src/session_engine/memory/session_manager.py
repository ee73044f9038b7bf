from __future__ import annotations

import json
import re
import time
from dataclasses import asdict, replace
from datetime import UTC, datetime
from typing import Iterable

from loguru import logger

from session_engine import identifier
from session_engine.errors import NotFoundError
from session_engine.memory.events import EventBus
from session_engine.memory.store import MemoryStore
from session_engine.message import (
    AssistantMessage,
    Message,
    MessageWithParts,
    Part,
    RevertPointer,
    SessionInfo,
    TextPart,
    UserMessage,
    bind_part,
    message_from_dict,
    message_to_dict,
    part_from_dict,
    part_to_dict,
)

_PARENT_TITLE_PREFIX = "New session - "
_CHILD_TITLE_PREFIX = "Child session - "
_DEFAULT_TITLE_RE = re.compile(
    rf"^({re.escape(_PARENT_TITLE_PREFIX)}|{re.escape(_CHILD_TITLE_PREFIX)})"
    r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$"
)
_FORK_TITLE_RE = re.compile(r"^(.+) \(fork #(\d+)\)$")


def now_ms() -> int:
    return int(time.time() * 1000)


def default_title(*, is_child: bool = False) -> str:
    stamp = datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return (_CHILD_TITLE_PREFIX if is_child else _PARENT_TITLE_PREFIX) + stamp


def is_default_title(title: str) -> bool:
    return bool(_DEFAULT_TITLE_RE.match(title))


def forked_title(title: str) -> str:
    match = _FORK_TITLE_RE.match(title)
    if match:
        return f"{match.group(1)} (fork #{int(match.group(2)) + 1})"
    return f"{title} (fork #1)"


class SessionManager:
    """Sessions, messages and parts over a :class:`MemoryStore`.

    Every externally visible mutation publishes a domain event on the bus after
    the write commits.
    """

    def __init__(self, store: MemoryStore, events: EventBus):
        self._store = store
        self._events = events

    # -- sessions ---------------------------------------------------------

    def create_session(
        self,
        directory: str,
        *,
        parent_id: str | None = None,
        title: str | None = None,
        session_id: str | None = None,
    ) -> SessionInfo:
        now = now_ms()
        info = SessionInfo(
            id=identifier.ascending("session", session_id),
            directory=directory,
            title=title or default_title(is_child=parent_id is not None),
            created=now,
            updated=now,
            parent_id=parent_id,
        )
        self._store.execute(
            """
            INSERT INTO sessions (id, parent_id, directory, title, created, updated)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (info.id, info.parent_id, info.directory, info.title, info.created, info.updated),
        )
        self._store.commit()
        logger.info(f"Session created: {info.id}")
        self._events.publish("session.created", info.id, info=asdict(info))
        return info

    def get_session(self, session_id: str) -> SessionInfo | None:
        row = self._store.execute("SELECT * FROM sessions WHERE id = ? LIMIT 1", (session_id,)).fetchone()
        return _session_from_row(row) if row is not None else None

    def require_session(self, session_id: str) -> SessionInfo:
        info = self.get_session(session_id)
        if info is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return info

    def list_sessions(
        self,
        *,
        directory: str | None = None,
        roots: bool = False,
        start: int | None = None,
        search: str | None = None,
        limit: int | None = 50,
    ) -> list[SessionInfo]:
        """Newest-updated first. ``start`` is a lower bound on the updated time in ms."""
        clauses: list[str] = []
        params: list[object] = []
        if directory is not None:
            clauses.append("directory = ?")
            params.append(directory)
        if roots:
            clauses.append("parent_id IS NULL")
        if start is not None:
            clauses.append("updated >= ?")
            params.append(start)
        if search:
            clauses.append("title LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(search)}%")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"SELECT * FROM sessions {where} ORDER BY updated DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(1, limit))
        rows = self._store.execute(query, tuple(params)).fetchall()
        return [_session_from_row(row) for row in rows]

    def children(self, session_id: str) -> list[SessionInfo]:
        rows = self._store.execute(
            "SELECT * FROM sessions WHERE parent_id = ? ORDER BY id ASC",
            (session_id,),
        ).fetchall()
        return [_session_from_row(row) for row in rows]

    def set_title(self, session_id: str, title: str) -> SessionInfo:
        return self._update_session(session_id, "title = ?", (title.strip(),))

    def set_archived(self, session_id: str, archived: int | None) -> SessionInfo:
        return self._update_session(session_id, "archived = ?", (archived,))

    def share(self, session_id: str, url: str) -> SessionInfo:
        return self._update_session(session_id, "share_url = ?", (url,))

    def unshare(self, session_id: str) -> SessionInfo:
        return self._update_session(session_id, "share_url = NULL", ())

    def set_revert(self, session_id: str, pointer: RevertPointer) -> SessionInfo:
        return self._update_session(session_id, "revert_json = ?", (pointer.to_json(),))

    def clear_revert(self, session_id: str) -> SessionInfo:
        return self._update_session(session_id, "revert_json = NULL", ())

    def touch(self, session_id: str) -> SessionInfo:
        return self._update_session(session_id, None, ())

    def fork(self, session_id: str, message_id: str | None = None) -> SessionInfo:
        """Copy a session's messages (those strictly before ``message_id``, if given) into a new session."""
        original = self.require_session(session_id)
        with self._store.transaction():
            forked = self.create_session(original.directory, title=forked_title(original.title))
            id_map: dict[str, str] = {}
            for item in self.get_messages(session_id):
                if message_id is not None and item.info.id >= message_id:
                    break
                new_id = identifier.ascending("message")
                id_map[item.info.id] = new_id
                info = replace(item.info, id=new_id, session_id=forked.id)
                if isinstance(info, AssistantMessage) and info.parent_id in id_map:
                    info = replace(info, parent_id=id_map[info.parent_id])
                parts = [replace(part, id="") for part in item.parts]
                self.create_message(info, parts)
        logger.info(f"Session forked: {session_id} -> {forked.id}")
        return forked

    def remove(self, session_id: str) -> None:
        info = self.require_session(session_id)
        for child in self.children(session_id):
            self.remove(child.id)
        self._store.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        self._store.commit()
        logger.info(f"Session removed: {session_id}")
        self._events.publish("session.deleted", session_id, info=asdict(info))

    # -- messages ---------------------------------------------------------

    def create_message(self, message: Message, parts: Iterable[Part] = ()) -> MessageWithParts:
        """Persist a message and its parts in one transaction, keeping part order."""
        bound = [bind_part(part, session_id=message.session_id, message_id=message.id) for part in parts]
        with self._store.transaction():
            self._store.execute(
                "INSERT INTO messages (id, session_id, role, data_json, created) VALUES (?, ?, ?, ?, ?)",
                (
                    message.id,
                    message.session_id,
                    message.role,
                    json.dumps(message_to_dict(message), ensure_ascii=True),
                    message.created,
                ),
            )
            self._store.executemany(
                "INSERT INTO parts (id, message_id, session_id, seq, type, data_json) VALUES (?, ?, ?, ?, ?, ?)",
                [
                    (
                        part.id,
                        message.id,
                        message.session_id,
                        seq,
                        part.type,
                        json.dumps(part_to_dict(part), ensure_ascii=True),
                    )
                    for seq, part in enumerate(bound)
                ],
            )
            self._store.execute("UPDATE sessions SET updated = ? WHERE id = ?", (now_ms(), message.session_id))
        self._events.publish(
            "message.updated",
            message.session_id,
            message_id=message.id,
            info=message_to_dict(message),
        )
        for part in bound:
            self._events.publish(
                "message.part.updated",
                message.session_id,
                message_id=message.id,
                part=part_to_dict(part),
            )
        return MessageWithParts(info=message, parts=bound)

    def attach_part(self, session_id: str, message_id: str, part: Part) -> Part:
        """Append a part to the end of a message that is still open.

        User messages are closed once written; assistant messages close when
        :meth:`finalize_message` stamps their completion time.
        """
        message = self._require_message_info(session_id, message_id)
        if isinstance(message, UserMessage) or message.completed is not None:
            raise ValueError(f"Message {message_id} is finalized; parts are immutable")
        bound = bind_part(part, session_id=session_id, message_id=message_id)
        with self._store.transaction():
            row = self._store.execute(
                "SELECT COALESCE(MAX(seq), -1) AS max_seq FROM parts WHERE message_id = ?",
                (message_id,),
            ).fetchone()
            self._store.execute(
                "INSERT INTO parts (id, message_id, session_id, seq, type, data_json) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    bound.id,
                    message_id,
                    session_id,
                    int(row["max_seq"]) + 1,
                    bound.type,
                    json.dumps(part_to_dict(bound), ensure_ascii=True),
                ),
            )
        self._events.publish("message.part.updated", session_id, message_id=message_id, part=part_to_dict(bound))
        return bound

    def finalize_message(self, message: AssistantMessage) -> AssistantMessage:
        if message.completed is None:
            message = replace(message, completed=now_ms())
        current = self._require_message_info(message.session_id, message.id)
        if isinstance(current, AssistantMessage) and current.completed is not None:
            raise ValueError(f"Message {message.id} is already finalized")
        with self._store.transaction():
            self._store.execute(
                "UPDATE messages SET data_json = ? WHERE id = ?",
                (json.dumps(message_to_dict(message), ensure_ascii=True), message.id),
            )
            self._store.execute("UPDATE sessions SET updated = ? WHERE id = ?", (now_ms(), message.session_id))
        self._events.publish(
            "message.updated",
            message.session_id,
            message_id=message.id,
            info=message_to_dict(message),
        )
        return message

    def get_message(self, session_id: str, message_id: str) -> MessageWithParts:
        info = self._require_message_info(session_id, message_id)
        return MessageWithParts(info=info, parts=self._load_parts(message_id))

    def get_messages(
        self,
        session_id: str,
        limit: int | None = None,
        search: str | None = None,
        start: str | None = None,
    ) -> list[MessageWithParts]:
        """Messages in ascending id order.

        ``start`` keeps messages whose id is at or after it, ``search`` keeps
        messages with a text part containing the phrase, and ``limit`` keeps
        the most recent N of what remains.
        """
        clauses = ["m.session_id = ?"]
        params: list[object] = [session_id]
        if start is not None:
            clauses.append("m.id >= ?")
            params.append(start)
        if search:
            clauses.append(
                "EXISTS (SELECT 1 FROM parts p WHERE p.message_id = m.id AND p.type = 'text' "
                "AND json_extract(p.data_json, '$.text') LIKE ? ESCAPE '\\')"
            )
            params.append(f"%{_escape_like(search)}%")
        query = f"SELECT m.* FROM messages m WHERE {' AND '.join(clauses)} ORDER BY m.id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(0, limit))
        rows = self._store.execute(query, tuple(params)).fetchall()
        rows.reverse()
        return [
            MessageWithParts(info=message_from_dict(json.loads(row["data_json"])), parts=self._load_parts(row["id"]))
            for row in rows
        ]

    def remove_message(self, session_id: str, message_id: str) -> None:
        self._store.execute("DELETE FROM messages WHERE id = ? AND session_id = ?", (message_id, session_id))
        self._store.commit()
        self._events.publish("message.removed", session_id, message_id=message_id)

    def remove_part(self, session_id: str, message_id: str, part_id: str) -> None:
        self._store.execute(
            "DELETE FROM parts WHERE id = ? AND message_id = ? AND session_id = ?",
            (part_id, message_id, session_id),
        )
        self._store.commit()
        self._events.publish("message.part.removed", session_id, message_id=message_id, part_id=part_id)

    def last_finished_assistant(self, session_id: str) -> AssistantMessage | None:
        for item in reversed(self.get_messages(session_id, limit=20)):
            if isinstance(item.info, AssistantMessage) and item.info.completed is not None:
                return item.info
        return None

    def preview(self, session_id: str, max_chars: int = 140) -> str:
        """Short text of the latest user message, for listings."""
        for item in reversed(self.get_messages(session_id, limit=20)):
            if item.info.role != "user":
                continue
            text = " ".join(p.text for p in item.parts if isinstance(p, TextPart) and not p.synthetic)
            text = " ".join(text.split())
            return text if len(text) <= max_chars else text[: max_chars - 3] + "..."
        return ""

    # -- internals --------------------------------------------------------

    def _update_session(self, session_id: str, assignment: str | None, params: tuple) -> SessionInfo:
        self.require_session(session_id)
        sets = "updated = ?" if assignment is None else f"{assignment}, updated = ?"
        self._store.execute(f"UPDATE sessions SET {sets} WHERE id = ?", (*params, now_ms(), session_id))
        self._store.commit()
        info = self.require_session(session_id)
        self._events.publish("session.updated", session_id, info=asdict(info))
        return info

    def _require_message_info(self, session_id: str, message_id: str) -> Message:
        row = self._store.execute(
            "SELECT data_json FROM messages WHERE id = ? AND session_id = ? LIMIT 1",
            (message_id, session_id),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Message not found: {message_id}")
        return message_from_dict(json.loads(row["data_json"]))

    def _load_parts(self, message_id: str) -> list[Part]:
        rows = self._store.execute(
            "SELECT data_json FROM parts WHERE message_id = ? ORDER BY seq ASC",
            (message_id,),
        ).fetchall()
        return [part_from_dict(json.loads(row["data_json"])) for row in rows]


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _session_from_row(row) -> SessionInfo:
    return SessionInfo(
        id=row["id"],
        directory=row["directory"],
        title=row["title"],
        created=int(row["created"]),
        updated=int(row["updated"]),
        parent_id=row["parent_id"],
        archived=row["archived"],
        revert=RevertPointer.from_json(row["revert_json"]),
        share_url=row["share_url"],
    )

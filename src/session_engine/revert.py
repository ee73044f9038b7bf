from __future__ import annotations

from loguru import logger

from session_engine.locks import SessionLocks
from session_engine.memory.session_manager import SessionManager
from session_engine.message import RevertPointer, SessionInfo, TextPart, ToolPart, UserMessage


class SessionRevert:
    """Moves a session's single revert pointer and collapses history behind it."""

    def __init__(self, sessions: SessionManager, locks: SessionLocks):
        self._sessions = sessions
        self._locks = locks

    def revert(
        self,
        session_id: str,
        message_id: str,
        part_id: str | None = None,
        snapshot: str | None = None,
    ) -> SessionInfo:
        self._locks.assert_not_busy(session_id)
        session = self._sessions.require_session(session_id)
        pointer: RevertPointer | None = None
        last_user_id: str | None = None
        for item in self._sessions.get_messages(session_id):
            if isinstance(item.info, UserMessage):
                last_user_id = item.info.id
            remaining: list = []
            for part in item.parts:
                if (item.info.id == message_id and part_id is None) or part.id == part_id:
                    # Reverting at a part with nothing useful before it reverts the whole message.
                    kept_part = part_id if any(isinstance(p, (TextPart, ToolPart)) for p in remaining) else None
                    target = item.info.id if kept_part else (last_user_id or item.info.id)
                    pointer = RevertPointer(message_id=target, part_id=kept_part)
                    break
                remaining.append(part)
            if pointer is not None:
                break
            if item.info.id == message_id and part_id is None:
                # Message with no parts.
                pointer = RevertPointer(message_id=last_user_id or item.info.id)
                break

        if pointer is None:
            return session

        existing = session.revert.snapshot if session.revert else None
        pointer = RevertPointer(
            message_id=pointer.message_id,
            part_id=pointer.part_id,
            snapshot=existing or snapshot,
        )
        logger.info(f"Reverting session {session_id} to {pointer.message_id} (part={pointer.part_id})")
        return self._sessions.set_revert(session_id, pointer)

    def unrevert(self, session_id: str) -> SessionInfo:
        self._locks.assert_not_busy(session_id)
        session = self._sessions.require_session(session_id)
        if session.revert is None:
            return session
        logger.info(f"Clearing revert for session {session_id}")
        return self._sessions.clear_revert(session_id)

    def undo(self, session_id: str, candidate_user_message_ids: list[str]) -> SessionInfo:
        """Revert to the nearest user message before the current pointer (or the latest one)."""
        session = self._sessions.require_session(session_id)
        bound = session.revert.message_id if session.revert else None
        earlier = [mid for mid in sorted(candidate_user_message_ids) if bound is None or mid < bound]
        if not earlier:
            return session
        return self.revert(session_id, earlier[-1])

    def redo(self, session_id: str, candidate_user_message_ids: list[str]) -> SessionInfo:
        """Advance the pointer to the next user message, or clear it when none is left."""
        session = self._sessions.require_session(session_id)
        if session.revert is None:
            return session
        later = [mid for mid in sorted(candidate_user_message_ids) if mid > session.revert.message_id]
        if not later:
            return self.unrevert(session_id)
        return self.revert(session_id, later[0])

    def cleanup(self, session_id: str, *, check_busy: bool = True) -> SessionInfo:
        """Permanently drop whatever the revert pointer hides, then clear it.

        A turn that already holds the session lock passes ``check_busy=False``.
        """
        if check_busy:
            self._locks.assert_not_busy(session_id)
        session = self._sessions.require_session(session_id)
        pointer = session.revert
        if pointer is None:
            return session

        target = None
        for item in self._sessions.get_messages(session_id):
            if item.info.id < pointer.message_id:
                continue
            if item.info.id == pointer.message_id and pointer.part_id:
                target = item
                continue
            self._sessions.remove_message(session_id, item.info.id)

        if target is not None:
            ids = [part.id for part in target.parts]
            if pointer.part_id in ids:
                for part in target.parts[ids.index(pointer.part_id):]:
                    self._sessions.remove_part(session_id, target.info.id, part.id)

        logger.info(f"Cleaned up reverted history for session {session_id}")
        return self._sessions.clear_revert(session_id)

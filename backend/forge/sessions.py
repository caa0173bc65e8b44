"""
In-memory session tracking.

One GenerationSession per request, keyed by an integer chat id from a
per-store counter. Running servers are tracked separately by project id,
so a new session that reuses a project id replaces (and tears down) the
previous server.

Closing a session archives it and drops its stage outputs from memory.
Only the most recent ``max_closed`` closed sessions stay in memory at all;
older ones are served from the archive.
"""

import asyncio
import itertools
import json
import logging
import os
from collections import deque
from dataclasses import asdict, dataclass, field

from forge.orchestrator import ServerHandle
from forge.sse_utils import utc_timestamp

logger = logging.getLogger(__name__)

STATUS_RUNNING = "running"
STATUS_COMPLETE = "complete"
STATUS_ERROR = "error"


@dataclass
class GenerationSession:
    chat_id: int
    prompt: str
    subdomain: str | None = None
    stage_outputs: dict[str, str] = field(default_factory=dict)
    step: int = 0
    total_steps: int = 0
    status: str = STATUS_RUNNING
    project_id: str | None = None
    project_dir: str | None = None
    error: str | None = None
    created_at: str = field(default_factory=utc_timestamp)
    closed_at: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["chatId"] = data.pop("chat_id")
        return data


class SessionStore:
    def __init__(self, logs_dir: str | None = None, teardown=None, max_closed: int = 100):
        """
        logs_dir: where closed sessions are archived (None disables it).
        teardown: async callable(ServerHandle) used to stop servers.
        max_closed: closed sessions kept in memory before eviction.
        """
        self.logs_dir = logs_dir
        self._teardown = teardown
        self._ids = itertools.count(1)
        self._sessions: dict[int, GenerationSession] = {}
        self._closed: deque[int] = deque()
        self.max_closed = max_closed
        self._servers: dict[str, ServerHandle] = {}
        self._lock = asyncio.Lock()

    # ---- sessions ----

    def open(self, prompt: str, subdomain: str | None = None) -> GenerationSession:
        session = GenerationSession(chat_id=next(self._ids), prompt=prompt, subdomain=subdomain)
        self._sessions[session.chat_id] = session
        logger.info("[sessions] Opened chat %d", session.chat_id)
        return session

    def get(self, chat_id: int) -> GenerationSession | None:
        return self._sessions.get(chat_id)

    def list(self) -> list[GenerationSession]:
        return list(self._sessions.values())

    def record_stage(self, chat_id: int, stage: str, output: str):
        session = self._sessions[chat_id]
        session.stage_outputs[stage] = output

    def close(self, chat_id: int, status: str = STATUS_COMPLETE, error: str | None = None) -> GenerationSession | None:
        session = self._sessions.get(chat_id)
        if session is None:
            return None
        if session.closed_at is not None:
            return session
        session.status = status
        session.error = error
        session.closed_at = utc_timestamp()
        self._archive(session)
        session.stage_outputs = {}
        self._closed.append(chat_id)
        while len(self._closed) > self.max_closed:
            self._sessions.pop(self._closed.popleft(), None)
        logger.info("[sessions] Closed chat %d (%s)", chat_id, status)
        return session

    def describe(self, chat_id: int) -> dict | None:
        """Full record of a session: the archive for closed ones, memory otherwise."""
        session = self._sessions.get(chat_id)
        if session is not None and session.closed_at is None:
            return session.to_dict()
        archived = self._load_archive(chat_id)
        if archived is not None:
            return archived
        return session.to_dict() if session is not None else None

    def _archive_path(self, chat_id: int) -> str:
        return os.path.join(self.logs_dir, f"chat-{chat_id}.json")

    def _archive(self, session: GenerationSession):
        if not self.logs_dir:
            return
        try:
            os.makedirs(self.logs_dir, exist_ok=True)
            with open(self._archive_path(session.chat_id), "w", encoding="utf-8") as f:
                json.dump(session.to_dict(), f, indent=2)
        except OSError as e:
            logger.error("[sessions] Could not archive chat %d: %s", session.chat_id, e)

    def _load_archive(self, chat_id: int) -> dict | None:
        if not self.logs_dir:
            return None
        try:
            with open(self._archive_path(chat_id), "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.error("[sessions] Could not read archive of chat %d: %s", chat_id, e)
            return None

    # ---- servers ----

    def server(self, project_id: str) -> ServerHandle | None:
        return self._servers.get(project_id)

    def servers(self) -> dict[str, ServerHandle]:
        return dict(self._servers)

    async def release_project(self, project_id: str) -> bool:
        """Tear down whatever server currently holds project_id."""
        async with self._lock:
            handle = self._servers.pop(project_id, None)
        if handle is None:
            return False
        if self._teardown is not None:
            await self._teardown(handle)
        logger.info("[sessions] Released project %s", project_id)
        return True

    async def attach_server(self, project_id: str, handle: ServerHandle):
        async with self._lock:
            previous = self._servers.get(project_id)
            self._servers[project_id] = handle
        if previous is not None and previous is not handle and self._teardown is not None:
            await self._teardown(previous)

    async def shutdown(self):
        """Tear down every tracked server."""
        async with self._lock:
            handles = list(self._servers.values())
            self._servers.clear()
        for handle in handles:
            if self._teardown is None:
                continue
            try:
                await self._teardown(handle)
            except Exception as e:
                logger.error("[sessions] Teardown of %s failed: %s", handle.project_id, e)
        logger.info("[sessions] Shut down %d server(s)", len(handles))

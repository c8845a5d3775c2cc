from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Any, Dict, List, Optional, Set

from .config import ProxySettings
from .logs import log_event
from .mapping import MappingTable, log_mapping
from .session import ProxySession


def utc_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class TranslatorService:
    """
    Listener: accepts client connections and runs one ProxySession per socket.
    The MappingTable is built by the caller and handed to every session as is.
    """

    def __init__(self, settings: ProxySettings, table: MappingTable, log: logging.Logger) -> None:
        self.settings = settings
        self.table = table
        self.log = log

        self._server: Optional[asyncio.base_events.Server] = None
        self._sessions: Dict[int, ProxySession] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._ids = itertools.count(1)
        self._stats_task: Optional[asyncio.Task] = None

        self._sessions_total = 0
        self._connect_failures = 0
        self._transport_errors = 0
        self._bytes_client_to_upstream = 0
        self._bytes_upstream_to_client = 0
        self._chunks_translated = 0
        self._chunks_passthrough = 0

    @property
    def sockets(self) -> List[Any]:
        return list(self._server.sockets) if self._server else []

    @property
    def port(self) -> int:
        """Bound port; differs from settings.listen_port when that is 0."""
        for sock in self.sockets:
            return int(sock.getsockname()[1])
        return self.settings.listen_port

    def stats_snapshot(self) -> Dict[str, Any]:
        return {
            "ts": utc_iso(),
            "sessions_active": len(self._sessions),
            "sessions_total": self._sessions_total,
            "upstream_connect_failures": self._connect_failures,
            "transport_errors": self._transport_errors,
            "bytes_client_to_upstream": self._bytes_client_to_upstream,
            "bytes_upstream_to_client": self._bytes_upstream_to_client,
            "chunks_translated": self._chunks_translated,
            "chunks_passthrough": self._chunks_passthrough,
        }

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [
            {"session_id": sid, "peer": s.peer, "phase": s.phase.value, **s.stats.to_dict()}
            for sid, s in self._sessions.items()
        ]

    async def start(self) -> None:
        log_mapping(self.table, self.log)
        self._server = await asyncio.start_server(
            self._on_connect, host=self.settings.listen_host, port=self.settings.listen_port
        )
        log_event(self.log, "info", "control", "service_started", {
            "listen": [str(s.getsockname()) for s in self.sockets],
            "upstream": f"{self.settings.upstream_host}:{self.settings.upstream_port}",
            "mappings": len(self.table),
        })
        if self.settings.stats_interval_sec > 0:
            self._stats_task = asyncio.create_task(self._periodic_stats_local())

    async def stop(self) -> None:
        log_event(self.log, "info", "control", "service_stopping", {"sessions_active": len(self._sessions)})

        if self._server:
            self._server.close()

        for s in list(self._sessions.values()):
            s.abort("service_stop")
        pending = list(self._tasks)
        if self._stats_task:
            pending.append(self._stats_task)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._stats_task = None

        if self._server:
            try:
                await asyncio.wait_for(self._server.wait_closed(), timeout=0.5)
            except asyncio.TimeoutError:
                pass

    async def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        sid = next(self._ids)
        session = ProxySession(
            sid=sid,
            client_reader=reader,
            client_writer=writer,
            upstream_host=self.settings.upstream_host,
            upstream_port=self.settings.upstream_port,
            table=self.table,
            log=self.log,
            chunk_size=self.settings.chunk_size,
        )
        self._sessions[sid] = session
        self._sessions_total += 1

        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
        try:
            await session.run()
        finally:
            self._sessions.pop(sid, None)
            if task is not None:
                self._tasks.discard(task)
            self._account(session)

    def _account(self, session: ProxySession) -> None:
        st = session.stats
        if st.close_reason == "upstream_connect_failed":
            self._connect_failures += 1
        elif st.close_reason and st.close_reason.startswith("transport_error:"):
            self._transport_errors += 1
        self._bytes_client_to_upstream += st.bytes_client_to_upstream
        self._bytes_upstream_to_client += st.bytes_client_out
        self._chunks_translated += st.chunks_translated
        self._chunks_passthrough += st.chunks_passthrough

    async def _periodic_stats_local(self) -> None:
        while True:
            await asyncio.sleep(self.settings.stats_interval_sec)
            log_event(self.log, "info", "stats", "stats", self.stats_snapshot())

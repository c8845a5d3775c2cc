"""
session.py

One ProxySession per accepted client connection.

    CONNECTING -> RELAYING -> CLOSING -> CLOSED

- client -> upstream: bytes forwarded as received, no framing awareness.
- upstream -> client: each received chunk goes through rewrite_chunk(); a chunk
  that does not decode as whole frames is forwarded unmodified.
- Clean EOF on one side becomes write_eof() on the peer (half-close).
- A transport error on either side aborts both transports.

The two directions are separate tasks, so a stalled reader on one side never
holds up the other.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional

from .logs import log_event
from .mapping import MappingTable
from .translate import rewrite_chunk

C2U = "client_to_upstream"
U2C = "upstream_to_client"


class SessionPhase(Enum):
    CONNECTING = "connecting"
    RELAYING = "relaying"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class SessionStats:
    bytes_client_to_upstream: int = 0
    bytes_upstream_in: int = 0
    bytes_client_out: int = 0
    chunks_translated: int = 0
    chunks_passthrough: int = 0
    close_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def abort_writer(writer: asyncio.StreamWriter) -> None:
    tr = writer.transport
    if tr is not None and not tr.is_closing():
        tr.abort()


async def close_writer(writer: asyncio.StreamWriter, timeout: float = 0.25) -> None:
    writer.close()
    try:
        await asyncio.wait_for(writer.wait_closed(), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        pass


class ProxySession:
    def __init__(
        self,
        *,
        sid: int,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
        upstream_host: str,
        upstream_port: int,
        table: MappingTable,
        log: logging.Logger,
        chunk_size: int = 65536,
    ) -> None:
        self.sid = sid
        self.client_reader = client_reader
        self.client_writer = client_writer
        self.upstream_host = upstream_host
        self.upstream_port = upstream_port
        self.table = table
        self.log = log
        self.chunk_size = chunk_size

        self.phase = SessionPhase.CONNECTING
        self.stats = SessionStats()
        self.peer = str(client_writer.get_extra_info("peername"))

        self._upstream_writer: Optional[asyncio.StreamWriter] = None

    def _info(self) -> Dict[str, Any]:
        return {"session_id": self.sid, "peer": self.peer}

    def _set_reason(self, reason: str) -> None:
        if self.stats.close_reason is None:
            self.stats.close_reason = reason

    def abort(self, reason: str) -> None:
        """Hard-close both sides. Safe to call from any phase, more than once."""
        self._set_reason(reason)
        abort_writer(self.client_writer)
        if self._upstream_writer is not None:
            abort_writer(self._upstream_writer)

    async def run(self) -> SessionStats:
        log_event(self.log, "info", "session", "open",
                  {**self._info(), "upstream": f"{self.upstream_host}:{self.upstream_port}"})

        try:
            up_reader, up_writer = await asyncio.open_connection(host=self.upstream_host, port=self.upstream_port)
        except asyncio.CancelledError:
            self.abort("cancelled")
            self.phase = SessionPhase.CLOSED
            raise
        except OSError as e:
            log_event(self.log, "warning", "session", "upstream_connect_failed",
                      {**self._info(), "upstream": f"{self.upstream_host}:{self.upstream_port}", "error": repr(e)})
            self.phase = SessionPhase.CLOSING
            self.abort("upstream_connect_failed")
            await close_writer(self.client_writer)
            self.phase = SessionPhase.CLOSED
            return self.stats

        self._upstream_writer = up_writer
        self.phase = SessionPhase.RELAYING

        c2u = asyncio.create_task(self._pipe(C2U, self.client_reader, up_writer))
        u2c = asyncio.create_task(self._pipe(U2C, up_reader, self.client_writer))
        try:
            await asyncio.gather(c2u, u2c)
            self._set_reason("eof")
        except asyncio.CancelledError:
            self.abort("cancelled")
            raise
        finally:
            self.phase = SessionPhase.CLOSING
            await close_writer(up_writer)
            await close_writer(self.client_writer)
            self.phase = SessionPhase.CLOSED
            log_event(self.log, "info", "session", "close", {**self._info(), **self.stats.to_dict()})

        return self.stats

    def _transform(self, data: bytes) -> bytes:
        self.stats.bytes_upstream_in += len(data)
        out, decoded = rewrite_chunk(data, self.table)
        if decoded:
            self.stats.chunks_translated += 1
        else:
            self.stats.chunks_passthrough += 1
            log_event(self.log, "debug", "session", "decode_fallback", {**self._info(), "bytes": len(data)})
        self.stats.bytes_client_out += len(out)
        return out

    async def _pipe(self, direction: str, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                data = await reader.read(self.chunk_size)
                if not data:
                    break
                if direction == U2C:
                    data = self._transform(data)
                else:
                    self.stats.bytes_client_to_upstream += len(data)
                writer.write(data)
                await writer.drain()

            # half-close propagates as half-close
            if writer.can_write_eof() and not writer.transport.is_closing():
                writer.write_eof()
        except asyncio.CancelledError:
            raise
        except OSError as e:
            log_event(self.log, "warning", "session", "transport_error",
                      {**self._info(), "direction": direction, "error": repr(e)})
            self.abort(f"transport_error:{direction}")

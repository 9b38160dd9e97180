"""TCP transports.

A relay listens with :class:`TcpRelayEndpoint`; clients dial it with
:class:`TcpDirectedChannel`. Frames are length-prefixed JSON
(:mod:`secbridge.framing`). The origin the relay records for a client is
``tcp://<peer host>`` as reported by the socket, which is the only identity
plain TCP can vouch for.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Set

from loguru import logger

from .errors import ChannelClosed, TransportError
from .framing import FrameError, read_frame, write_frame
from .transport import Delivery, Destination, DirectedChannel, Message, RelayEndpoint


def tcp_origin(host: str) -> str:
    return f"tcp://{host}"


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass


class StreamDestination(Destination):
    """Reply handle wrapping one accepted connection."""

    def __init__(self, writer: asyncio.StreamWriter) -> None:
        self.writer = writer

    @property
    def closed(self) -> bool:
        return self.writer.is_closing()

    async def post(self, message: Message) -> None:
        if self.writer.is_closing():
            raise ChannelClosed("connection is closed")
        await write_frame(self.writer, message)


class TcpRelayEndpoint(RelayEndpoint):
    """Accepts client connections and emits one Delivery per frame."""

    def __init__(self, host: str, port: int) -> None:
        super().__init__()
        self.host = host
        self.port = port
        self.origin = tcp_origin(host)
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: Set[asyncio.StreamWriter] = set()

    async def start(self) -> None:
        try:
            self._server = await asyncio.start_server(self.handle_conn, self.host, self.port)
        except OSError as exc:
            raise TransportError(f"cannot listen on {self.host}:{self.port}: {exc}") from exc
        sockets = self._server.sockets or []
        if sockets:
            # Port 0 means "pick one"; report what we actually got.
            self.port = sockets[0].getsockname()[1]
        logger.info(f"Relay endpoint listening on {self.host}:{self.port}")

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        await self._server.serve_forever()

    async def handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Per-connection loop: read frames, tag with peer origin, emit."""
        peer = writer.get_extra_info("peername")
        origin = tcp_origin(peer[0] if peer else "unknown")
        destination = StreamDestination(writer)
        self._writers.add(writer)
        try:
            while True:
                frame = await read_frame(reader)
                self._emit(Delivery(frame, origin, destination))
        except asyncio.IncompleteReadError:
            pass
        except FrameError as exc:
            logger.debug(f"Relay endpoint: dropping {origin} after bad frame: {exc}")
        except (ConnectionError, OSError) as exc:
            logger.debug(f"Relay endpoint: connection error from {origin}: {exc}")
        finally:
            self._writers.discard(writer)
            await _close_writer(writer)

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        for writer in list(self._writers):
            await _close_writer(writer)
        self._writers.clear()


class TcpDirectedChannel(DirectedChannel):
    """Client link to a TcpRelayEndpoint."""

    def __init__(self, host: str, port: int) -> None:
        super().__init__()
        self.host = host
        self.port = port
        self.origin = tcp_origin(host)
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def open(self) -> None:
        if self.is_open:
            return
        try:
            self._reader, self._writer = await asyncio.open_connection(self.host, self.port)
        except OSError as exc:
            raise TransportError(f"cannot reach relay at {self.host}:{self.port}: {exc}") from exc
        self._reader_task = asyncio.create_task(self.reader_loop())

    async def reader_loop(self) -> None:
        """Background task: every frame from the relay becomes a Delivery."""
        try:
            while True:
                frame = await read_frame(self._reader)
                self._emit(Delivery(frame, self.origin))
        except asyncio.IncompleteReadError:
            logger.debug(f"Relay {self.host}:{self.port} closed the connection")
        except (FrameError, ConnectionError, OSError) as exc:
            logger.debug(f"Relay link {self.host}:{self.port} failed: {exc}")

    async def send(self, message: Message) -> None:
        if not self.is_open:
            raise ChannelClosed("channel is not open")
        await write_frame(self._writer, message)

    async def close(self) -> None:
        task, self._reader_task = self._reader_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        writer, self._writer = self._writer, None
        if writer is not None:
            await _close_writer(writer)

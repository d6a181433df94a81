"""
Byte-stream transport used by an IEC 104 session.

The session only needs an ordered, reliable byte stream: read a chunk, write
bytes, wait until they are flushed, close. StreamTransport adapts asyncio
streams (TCP); memory_pipe() connects two sessions in-process.
"""

import asyncio
import logging
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


class Transport:
    """Reliable ordered byte stream. read() returns b'' at end of stream."""

    name: str = 'transport'

    async def read(self) -> bytes:
        raise NotImplementedError

    def write(self, data: bytes):
        raise NotImplementedError

    async def drain(self):
        raise NotImplementedError

    def close(self):
        raise NotImplementedError

    async def wait_closed(self):
        pass


class StreamTransport(Transport):
    """Transport over an asyncio StreamReader/StreamWriter pair"""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        peer = writer.get_extra_info('peername')
        self.name = f"{peer[0]}:{peer[1]}" if peer else 'stream'

    @classmethod
    async def connect(cls, host: str, port: int, timeout_s: float) -> 'StreamTransport':
        """Open a TCP connection, bounded by timeout_s (T0)"""
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=timeout_s
        )
        return cls(reader, writer)

    async def read(self) -> bytes:
        return await self.reader.read(READ_CHUNK_SIZE)

    def write(self, data: bytes):
        self.writer.write(data)

    async def drain(self):
        await self.writer.drain()

    def close(self):
        if not self.writer.is_closing():
            self.writer.close()

    async def wait_closed(self):
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"{self.name}: error while closing: {e}")


class MemoryTransport(Transport):
    """One end of an in-process pipe"""

    def __init__(self, name: str):
        self.name = name
        self.peer: Optional['MemoryTransport'] = None
        self._incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def read(self) -> bytes:
        if self.closed and self._incoming.empty():
            return b''
        return await self._incoming.get()

    def write(self, data: bytes):
        if self.closed:
            raise ConnectionResetError(f"{self.name} is closed")
        if data and self.peer is not None and not self.peer.closed:
            self.peer._incoming.put_nowait(bytes(data))

    async def drain(self):
        if self.closed:
            raise ConnectionResetError(f"{self.name} is closed")

    def close(self):
        if self.closed:
            return
        self.closed = True
        self._incoming.put_nowait(b'')
        if self.peer is not None and not self.peer.closed:
            self.peer._incoming.put_nowait(b'')


def memory_pipe(name_a: str = 'master', name_b: str = 'slave') -> Tuple[MemoryTransport, MemoryTransport]:
    """Two connected in-memory transports"""
    a = MemoryTransport(name_a)
    b = MemoryTransport(name_b)
    a.peer = b
    b.peer = a
    return a, b

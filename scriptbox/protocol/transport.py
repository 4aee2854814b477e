from __future__ import annotations

import asyncio
import json
import struct
from typing import Optional

import msgpack
import structlog

from .messages import Message, parse_message

logger = structlog.get_logger()

# 10MB max frame size
MAX_FRAME_SIZE = 10 * 1024 * 1024


class ProtocolError(Exception):
    """Protocol-level error."""

    pass


class FrameReader:
    """Async frame reader with proper synchronization using asyncio.Condition."""

    def __init__(self, reader: asyncio.StreamReader, max_frame_size: int = MAX_FRAME_SIZE) -> None:
        self._reader = reader
        self._max_frame_size = max_frame_size
        self._buffer = bytearray()
        self._condition = asyncio.Condition()
        self._closed = False
        self._read_task: Optional[asyncio.Task[None]] = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Start the background reader task."""
        if not self._read_task:
            self._read_task = asyncio.create_task(self._read_loop())

    async def stop(self) -> None:
        """Stop the background reader task."""
        self._closed = True
        if self._read_task:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass

    async def _read_loop(self) -> None:
        """Background task that continuously reads from the stream into buffer."""
        try:
            while not self._closed:
                try:
                    data = await self._reader.read(8192)
                except Exception as e:
                    logger.error("Read loop error", error=str(e))
                    break

                if not data:
                    logger.debug("FrameReader: EOF received")
                    break

                async with self._condition:
                    self._buffer.extend(data)
                    self._condition.notify_all()
        finally:
            async with self._condition:
                self._closed = True
                self._condition.notify_all()

    async def read_frame(self, timeout: Optional[float] = None) -> bytes:
        """Read a complete frame from the buffer.

        Frame format: [4 bytes big-endian length][data]

        Args:
            timeout: Optional timeout in seconds

        Returns:
            Frame data bytes

        Raises:
            ProtocolError: If connection is closed or frame is invalid
            asyncio.TimeoutError: If timeout is exceeded
        """
        async with self._condition:
            await asyncio.wait_for(
                self._condition.wait_for(lambda: len(self._buffer) >= 4 or self._closed),
                timeout=timeout,
            )

            if len(self._buffer) < 4:
                raise ProtocolError("Connection closed while reading frame length")

            length = struct.unpack(">I", self._buffer[:4])[0]
            if length > self._max_frame_size:
                raise ProtocolError(f"Frame too large: {length} bytes")

            total_needed = 4 + length
            await asyncio.wait_for(
                self._condition.wait_for(
                    lambda: len(self._buffer) >= total_needed or self._closed
                ),
                timeout=timeout,
            )

            if len(self._buffer) < total_needed:
                raise ProtocolError("Connection closed while reading frame data")

            frame = bytes(self._buffer[4:total_needed])
            del self._buffer[:total_needed]
            return frame


class FrameWriter:
    """Async frame writer with proper backpressure handling."""

    def __init__(self, writer: asyncio.StreamWriter, max_frame_size: int = MAX_FRAME_SIZE) -> None:
        self._writer = writer
        self._max_frame_size = max_frame_size
        self._write_lock = asyncio.Lock()
        self._closed = False

    async def write_frame(self, data: bytes) -> None:
        """Write a frame to the stream.

        Args:
            data: Frame data to write

        Raises:
            ProtocolError: If connection is closed or the frame is too large
        """
        if self._closed:
            raise ProtocolError("Connection closed")
        if len(data) > self._max_frame_size:
            raise ProtocolError(f"Frame too large: {len(data)} bytes")

        async with self._write_lock:
            self._writer.write(struct.pack(">I", len(data)) + data)
            try:
                await self._writer.drain()
            except (ConnectionError, BrokenPipeError) as e:
                self._closed = True
                raise ProtocolError(f"Connection lost: {e}") from e

    async def close(self) -> None:
        """Close the writer."""
        if not self._closed:
            self._closed = True
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, BrokenPipeError):
                pass


class MessageTransport:
    """High-level message transport using framed protocol."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        use_msgpack: bool = True,
    ) -> None:
        self._frame_reader = FrameReader(reader)
        self._frame_writer = FrameWriter(writer)
        self._use_msgpack = use_msgpack
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or self._frame_reader.closed

    async def start(self) -> None:
        """Start the transport."""
        await self._frame_reader.start()

    def encode(self, message: Message) -> bytes:
        data_dict = message.model_dump(mode="json")
        if self._use_msgpack:
            return msgpack.packb(data_dict, use_bin_type=True)
        return json.dumps(data_dict).encode("utf-8")

    def decode(self, frame: bytes) -> Message:
        try:
            if self._use_msgpack:
                data_dict = msgpack.unpackb(frame, raw=False, strict_map_key=False)
            else:
                data_dict = json.loads(frame.decode("utf-8"))
        except (ValueError, msgpack.UnpackException) as e:
            raise ProtocolError(f"Undecodable frame: {e}") from e

        if not isinstance(data_dict, dict):
            raise ProtocolError(f"Frame is not a message mapping: {type(data_dict).__name__}")

        try:
            return parse_message(data_dict)
        except ValueError as e:
            raise ProtocolError(f"Invalid message: {e}") from e

    async def send_message(self, message: Message) -> None:
        """Send a message.

        Raises:
            ProtocolError: If transport is closed
        """
        if self._closed:
            raise ProtocolError("Transport closed")

        await self._frame_writer.write_frame(self.encode(message))
        logger.debug("Sent message", type=message.type, id=message.id)

    async def receive_message(self, timeout: Optional[float] = None) -> Message:
        """Receive a message.

        Raises:
            ProtocolError: If transport is closed or message is invalid
            asyncio.TimeoutError: If timeout is exceeded
        """
        if self._closed:
            raise ProtocolError("Transport closed")

        frame = await self._frame_reader.read_frame(timeout=timeout)
        message = self.decode(frame)
        logger.debug("Received message", type=message.type, id=message.id)
        return message

    async def close(self) -> None:
        """Close the transport."""
        if not self._closed:
            self._closed = True
            await self._frame_reader.stop()
            await self._frame_writer.close()


class PipeTransport:
    """Transport for subprocess communication via pipes.

    Closing the transport only closes the pipes; process teardown belongs
    to the owning session.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        use_msgpack: bool = True,
    ) -> None:
        if not process.stdout or not process.stdin:
            raise ValueError("Process must have stdout and stdin pipes")

        self._process = process
        self._transport = MessageTransport(
            reader=process.stdout,
            writer=process.stdin,
            use_msgpack=use_msgpack,
        )

    @property
    def closed(self) -> bool:
        return self._transport.closed

    async def start(self) -> None:
        await self._transport.start()

    async def send_message(self, message: Message) -> None:
        """Send a message to the subprocess."""
        await self._transport.send_message(message)

    async def receive_message(self, timeout: Optional[float] = None) -> Message:
        """Receive a message from the subprocess."""
        return await self._transport.receive_message(timeout=timeout)

    async def close(self) -> None:
        await self._transport.close()

    def is_alive(self) -> bool:
        """Check if the subprocess is still alive."""
        return self._process.returncode is None

#!/usr/bin/env python3
"""
Transfer Module for GROVE

Streams served files to clients and persists uploaded files into the
uploads directory.
"""

import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import AsyncIterator, Callable, Optional

import aiofiles

from errors import FileIOError, InvalidFilenameError, UploadsDisabledError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S.%fZ"


async def stream_file(
    path: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    size: Optional[int] = None
) -> AsyncIterator[bytes]:
    """
    Yield the content of a file unmodified, chunk by chunk.

    When size is given, at most that many bytes are yielded, so a file that
    grows while being sent never exceeds the announced Content-Length.

    A read error after the first chunk cannot be reported to the client
    anymore: it is logged and the stream simply ends early.
    """
    sent = 0
    try:
        async with aiofiles.open(path, 'rb') as f:
            while size is None or sent < size:
                to_read = chunk_size if size is None else min(chunk_size, size - sent)
                chunk = await f.read(to_read)
                if not chunk:
                    if size is not None:
                        logger.warning(f"{path} shrank while streaming: sent {sent} of {size} bytes")
                    break
                sent += len(chunk)
                yield chunk
    except OSError as e:
        logger.error(f"Error streaming {path} after {sent} bytes: {e}")


@dataclass
class UploadRecord:
    """Outcome of one stored upload"""
    original_name: str
    stored_name: str
    directory: str
    size: int
    timestamp: Optional[str] = None

    @property
    def path(self) -> str:
        return os.path.join(self.directory, self.stored_name)


def safe_filename(filename: str) -> str:
    """Reduce a client supplied file name to its base name"""
    name = PurePosixPath(filename.replace("\\", "/")).name
    if name in ("", ".", ".."):
        raise InvalidFilenameError(f"invalid upload file name: {filename!r}")
    return name


class UploadStore:
    """
    Writes named blobs into the uploads directory.

    Content goes to a hidden temporary file next to its destination and is
    renamed into place once fully written, so a failed upload never leaves
    a partial file behind. Uploads that share a stored name replace each
    other; the last one to finish wins.
    """

    def __init__(
        self,
        directory: str,
        enabled: bool = True,
        timestamp: bool = False,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.directory = os.path.abspath(directory)
        self.enabled = enabled
        self.timestamp = timestamp
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def ensure_directory(self):
        """Create the uploads directory (and parents) if missing"""
        try:
            Path(self.directory).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileIOError(f"cannot create uploads directory {self.directory}: {e.strerror}") from e

    def stored_name(self, filename: str) -> UploadRecord:
        """Work out where an upload named filename will be stored"""
        name = safe_filename(filename)
        stamp = None
        if self.timestamp:
            stamp = self._clock().strftime(TIMESTAMP_FORMAT)
            name = f"{stamp}_{name}"
        return UploadRecord(
            original_name=filename,
            stored_name=name,
            directory=self.directory,
            size=0,
            timestamp=stamp,
        )

    async def receive(
        self,
        filename: str,
        chunks: AsyncIterator[bytes],
        expected_size: Optional[int] = None
    ) -> UploadRecord:
        """
        Persist an incoming byte stream as a new file.

        Args:
            filename: Name supplied by the client
            chunks: Upload content
            expected_size: Announced content length, if known

        Returns:
            UploadRecord describing the stored file

        Raises:
            UploadsDisabledError: If uploads are turned off
            InvalidFilenameError: If filename has no usable base name
            FileIOError: If the file cannot be written completely
        """
        if not self.enabled:
            raise UploadsDisabledError()

        record = self.stored_name(filename)
        self.ensure_directory()

        part_path = os.path.join(self.directory, f".{record.stored_name}.{uuid.uuid4().hex}.part")
        try:
            async with aiofiles.open(part_path, 'wb') as f:
                async for chunk in chunks:
                    await f.write(chunk)
                    record.size += len(chunk)

            if expected_size is not None and record.size != expected_size:
                raise FileIOError(
                    f"short upload for {record.stored_name}: "
                    f"received {record.size} of {expected_size} bytes"
                )

            os.replace(part_path, record.path)
        except OSError as e:
            self._discard(part_path)
            raise FileIOError(f"cannot write {record.stored_name}: {e}") from e
        except BaseException:
            self._discard(part_path)
            raise

        logger.info(f"Stored upload {record.stored_name} ({record.size} bytes)")
        return record

    @staticmethod
    def _discard(path: str):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial upload {path}: {e}")

"""
Materializes one remote repository file at a local path over HTTP, writing to
a temporary sibling file and renaming it into place once complete.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Callable, Optional

import aiofiles
import aiofiles.os
import aiohttp

from modelscope_cli.api.client import build_session
from modelscope_cli.exceptions import FilesystemError, NetworkError
from modelscope_cli.models.config import DEFAULT_ENDPOINT
from modelscope_cli.models.repository import RepositoryEntry

log = logging.getLogger(__name__)

DEFAULT_REVISION = "master"
PARTIAL_SUFFIX = ".part"


class FileTransfer:
    """A file fetcher with retry logic and atomic replacement of the destination."""

    CHUNK_SIZE = 262144  # 256 KB

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        api_token: Optional[str] = None,
        max_attempts: int = 3,
        base_delay: float = 1.5,
        max_workers: int = 4,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.api_token = api_token or None
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_workers = max_workers
        self._session = session
        self._owns_session = session is None
        self._session_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self._session is None or self._session.closed:
                self._session = build_session(
                    self.max_workers,
                    self.api_token,
                    timeout=aiohttp.ClientTimeout(
                        total=None, sock_connect=15, sock_read=90
                    ),
                )
                self._owns_session = True
                log.debug(f"Created transfer pool with limit_per_host={self.max_workers}")
            return self._session

    async def close(self) -> None:
        """Closes the transfer session if this instance created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            log.debug("Transfer connection pool closed.")

    async def __aenter__(self) -> "FileTransfer":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def file_url(self, repository_id: str) -> str:
        return f"{self.endpoint}/api/v1/models/{repository_id.strip('/')}/repo"

    async def fetch(
        self,
        repository_id: str,
        entry: RepositoryEntry,
        destination: Path,
        on_bytes: Optional[Callable[[int], None]] = None,
    ) -> int:
        """
        Downloads ``entry`` to ``destination``, replacing any previous file.

        Intermediate directories are created. The body is streamed into a
        temporary file next to the destination and renamed over it only after
        the last byte is flushed, so a failure never clobbers a good file.
        A body whose length differs from a non-zero ``entry.size`` counts as a
        failed attempt and is never moved into place.

        Args:
            on_bytes: Optional callback receiving the size of each written chunk.

        Returns:
            The number of bytes written.

        Raises:
            NetworkError: If every attempt failed at the transport level.
            FilesystemError: If the local file could not be written.
        """
        destination = Path(destination)
        try:
            await aiofiles.os.makedirs(destination.parent, exist_ok=True)
        except OSError as e:
            raise FilesystemError(
                f"Cannot create directory '{destination.parent}': {e}"
            ) from e

        url = self.file_url(repository_id)
        params = {
            "Revision": entry.revision or DEFAULT_REVISION,
            "FilePath": entry.path,
        }
        tmp_path = destination.with_name(destination.name + PARTIAL_SUFFIX)

        last_exception: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                written = await self._stream_to(url, params, tmp_path, on_bytes)
                if entry.size > 0 and written != entry.size:
                    raise aiohttp.ClientPayloadError(
                        f"received {written} bytes, listing says {entry.size}"
                    )
                await aiofiles.os.replace(tmp_path, destination)
                return written
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_exception = e
                log.debug(
                    f"Transfer attempt {attempt}/{self.max_attempts} for "
                    f"'{entry.path}' failed: {e!r}"
                )
                await self._discard(tmp_path)
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.base_delay * (2 ** (attempt - 1)))
            except OSError as e:
                await self._discard(tmp_path)
                raise FilesystemError(f"Cannot write '{destination}': {e}") from e
            except BaseException:
                await self._discard(tmp_path)
                raise

        reason = str(last_exception) or type(last_exception).__name__
        raise NetworkError(
            f"Failed to download '{entry.path}' after {self.max_attempts} attempts: "
            f"{reason}"
        ) from last_exception

    async def _stream_to(
        self,
        url: str,
        params: dict,
        tmp_path: Path,
        on_bytes: Optional[Callable[[int], None]],
    ) -> int:
        session = await self._get_session()
        async with session.get(url, params=params, allow_redirects=True) as response:
            response.raise_for_status()
            written = 0
            async with aiofiles.open(tmp_path, "wb") as f:
                async for chunk in response.content.iter_chunked(self.CHUNK_SIZE):
                    await f.write(chunk)
                    written += len(chunk)
                    if on_bytes:
                        on_bytes(len(chunk))
                await f.flush()
                await asyncio.to_thread(os.fsync, f.fileno())
            return written

    @staticmethod
    async def _discard(tmp_path: Path) -> None:
        try:
            await aiofiles.os.remove(tmp_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.debug(f"Could not remove partial file '{tmp_path}': {e}")

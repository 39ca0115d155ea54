import ftplib
from contextlib import contextmanager
from datetime import datetime, timezone
from io import BytesIO
from typing import AsyncIterator, Dict, Iterator, List, Optional

from fastapi.concurrency import run_in_threadpool

import config
from app.errors import BackendError, NotFoundError
from app.models import StorageEntry, StorageMetadata
from app.services.storage_backend import StorageBackend, guess_content_type, join_path, parent_and_name
from logger_config import setup_logger

logger = setup_logger()

MLSD_FACTS = ["type", "size", "modify"]


def _parse_modify(value: Optional[str]) -> Optional[datetime]:
    """Parse an MLSD ``modify`` fact (YYYYMMDDHHMMSS[.sss], always UTC)."""
    if not value:
        return None
    try:
        return datetime.strptime(value[:14], "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _metadata_from_facts(name: str, facts: Dict[str, str]) -> StorageMetadata:
    if facts.get("type", "").lower() in ("dir", "cdir", "pdir"):
        return StorageMetadata(is_dir=True, last_modified=_parse_modify(facts.get("modify")))
    try:
        size = int(facts.get("size", 0))
    except ValueError:
        size = 0
    return StorageMetadata(
        is_dir=False,
        size=size,
        content_type=guess_content_type(name),
        last_modified=_parse_modify(facts.get("modify")),
    )


class FtpStorage(StorageBackend):
    """Serve files from an FTP server.

    ftplib connections are not safe to share, so every operation opens its
    own connection in the threadpool.
    """

    def __init__(self, host: str, port: int = 21, root: str = "/", user: str = "", password: Optional[str] = None,
                 timeout: float = 30.0):
        self.host = host
        self.port = port
        self.root = "/" + root.strip("/")
        self.user = user
        self.password = password
        self.timeout = timeout
        self.chunk_size = config.STREAM_CHUNK_SIZE
        logger.info(f"Using FTP storage ftp://{host}:{port}{self.root}")

    def _remote(self, path: str) -> str:
        path = path.strip("/")
        if not path:
            return self.root
        return f"{self.root.rstrip('/')}/{path}"

    def _connect(self) -> ftplib.FTP:
        ftp = ftplib.FTP(timeout=self.timeout)
        try:
            ftp.connect(self.host, self.port)
            if self.user:
                ftp.login(self.user, self.password or "")
            else:
                ftp.login()
        except BaseException:
            ftp.close()
            raise
        return ftp

    @contextmanager
    def _session(self) -> Iterator[ftplib.FTP]:
        ftp = self._connect()
        try:
            yield ftp
        finally:
            try:
                ftp.quit()
            except ftplib.all_errors:
                ftp.close()

    def _translate(self, error: Exception, path: str) -> Exception:
        if isinstance(error, ftplib.error_perm) and str(error).startswith("550"):
            return NotFoundError(path)
        return BackendError(f"FTP error for {path}: {error}")

    def _stat_sync(self, path: str) -> StorageMetadata:
        if not path.strip("/"):
            return StorageMetadata(is_dir=True)
        parent, name = parent_and_name(path)
        with self._session() as ftp:
            for entry_name, facts in ftp.mlsd(self._remote(parent), facts=MLSD_FACTS):
                if entry_name == name:
                    return _metadata_from_facts(entry_name, facts)
        raise NotFoundError(path)

    def _list_sync(self, path: str) -> List[StorageEntry]:
        entries = []
        with self._session() as ftp:
            for name, facts in ftp.mlsd(self._remote(path), facts=MLSD_FACTS):
                if facts.get("type", "").lower() in ("cdir", "pdir"):
                    continue
                entries.append(StorageEntry(
                    name=name,
                    path=join_path(path, name),
                    metadata=_metadata_from_facts(name, facts),
                ))
        return entries

    def _read_sync(self, path: str) -> bytes:
        buffer = BytesIO()
        with self._session() as ftp:
            ftp.retrbinary(f"RETR {self._remote(path)}", buffer.write, blocksize=self.chunk_size)
        return buffer.getvalue()

    async def stat(self, path: str) -> StorageMetadata:
        try:
            return await run_in_threadpool(self._stat_sync, path)
        except ftplib.all_errors as e:
            raise self._translate(e, path) from e

    async def list(self, path: str) -> List[StorageEntry]:
        try:
            return await run_in_threadpool(self._list_sync, path)
        except ftplib.all_errors as e:
            raise self._translate(e, path) from e

    async def read(self, path: str) -> bytes:
        try:
            return await run_in_threadpool(self._read_sync, path)
        except ftplib.all_errors as e:
            raise self._translate(e, path) from e

    async def open_stream(self, path: str) -> AsyncIterator[bytes]:
        def open_transfer():
            ftp = self._connect()
            try:
                ftp.voidcmd("TYPE I")
                return ftp, ftp.transfercmd(f"RETR {self._remote(path)}")
            except BaseException:
                ftp.close()
                raise

        try:
            ftp, conn = await run_in_threadpool(open_transfer)
        except ftplib.all_errors as e:
            raise self._translate(e, path) from e

        completed = False
        try:
            while True:
                chunk = await run_in_threadpool(conn.recv, self.chunk_size)
                if not chunk:
                    break
                yield chunk
            completed = True
        except ftplib.all_errors as e:
            raise self._translate(e, path) from e
        finally:
            conn.close()
            if completed:
                try:
                    await run_in_threadpool(ftp.voidresp)
                    await run_in_threadpool(ftp.quit)
                except ftplib.all_errors:
                    ftp.close()
            else:
                ftp.close()

"""
Durable blob storage for produced media and subtitle files.

Objects are keyed `<job_id>/<original_filename>`. Two backends are provided:
a local directory tree, and an HTTP object-storage service speaking the
`/storage/v1/object` API.
"""

import asyncio
import shutil
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, Optional
from urllib.parse import quote

import aiofiles
import aiohttp

from .constants import CONTENT_TYPES, DEFAULT_CONTENT_TYPE
from .exceptions import StorageError

CHUNK_SIZE = 1024 * 1024


@dataclass
class StoredArtifact:
    """An object written to the artifact store."""
    key: str
    size: int
    content_type: str


def artifact_key(job_id: str, filename: str) -> str:
    return f"{job_id}/{filename}"


def content_type_for(filename: str) -> str:
    return CONTENT_TYPES.get(Path(filename).suffix.lower(), DEFAULT_CONTENT_TYPE)


async def read_chunks(path: Path) -> AsyncIterator[bytes]:
    """Streams a local file in fixed-size chunks."""
    async with aiofiles.open(path, 'rb') as f:
        while chunk := await f.read(CHUNK_SIZE):
            yield chunk


class ArtifactStore(ABC):
    """The operations every artifact store provides."""

    @abstractmethod
    async def upload(self, job_id: str, path: Path) -> StoredArtifact:
        """Stores a local file under `<job_id>/<path.name>`. Raises StorageError."""

    @abstractmethod
    async def delete_prefix(self, job_id: str) -> int:
        """Deletes every object of a job and returns how many were removed."""

    @abstractmethod
    def public_url(self, key: str) -> str: ...


class LocalArtifactStore(ArtifactStore):
    """Stores artifacts in a directory tree, one sub-directory per job."""

    def __init__(self, root: Path, public_base_url: str = ''):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip('/')
        self.logger = logging.getLogger(__name__)
        self.root.mkdir(parents=True, exist_ok=True)

    def resolve(self, key: str) -> Path:
        return self.root / key

    async def upload(self, job_id: str, path: Path) -> StoredArtifact:
        key = artifact_key(job_id, path.name)
        target = self.resolve(key)
        size = 0
        try:
            await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
            async with aiofiles.open(target, 'wb') as dst:
                async for chunk in read_chunks(path):
                    await dst.write(chunk)
                    size += len(chunk)
        except OSError as e:
            raise StorageError(f"Could not store {key}: {e}")
        self.logger.debug(f"Stored {key} ({size} bytes)")
        return StoredArtifact(key=key, size=size, content_type=content_type_for(path.name))

    async def delete_prefix(self, job_id: str) -> int:
        job_dir = self.root / job_id
        if not await asyncio.to_thread(job_dir.is_dir):
            return 0
        try:
            count = len(await asyncio.to_thread(lambda: [p for p in job_dir.iterdir() if p.is_file()]))
            await asyncio.to_thread(shutil.rmtree, job_dir)
        except OSError as e:
            raise StorageError(f"Could not delete artifacts of job {job_id}: {e}")
        return count

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{quote(key)}"
        return self.resolve(key).resolve().as_uri()


class HttpArtifactStore(ArtifactStore):
    """Stores artifacts in a bucket of an HTTP object-storage service."""

    def __init__(self, base_url: str, bucket: str, api_key: str, timeout: int = 600):
        """
        Initializes the HttpArtifactStore.

        Args:
            base_url: Service root, e.g. "https://project.example.co".
            bucket: The bucket holding all artifacts.
            api_key: Service key sent as bearer token and `apikey` header.
            timeout: Total seconds allowed per request.
        """
        if not base_url:
            raise StorageError("storage_url is required for the http storage backend.")
        self.base_url = base_url.rstrip('/')
        self.bucket = bucket
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.logger = logging.getLogger(__name__)

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {'Authorization': f'Bearer {self.api_key}', 'apikey': self.api_key}
        if extra:
            headers.update(extra)
        return headers

    def _object_url(self, key: str) -> str:
        return f"{self.base_url}/storage/v1/object/{self.bucket}/{quote(key)}"

    async def _raise_for_status(self, response: aiohttp.ClientResponse, action: str):
        if response.status >= 400:
            body = await response.text()
            raise StorageError(f"{action} failed with HTTP {response.status}: {body[:200]}")

    async def upload(self, job_id: str, path: Path) -> StoredArtifact:
        key = artifact_key(job_id, path.name)
        content_type = content_type_for(path.name)
        try:
            size = (await asyncio.to_thread(path.stat)).st_size
            headers = self._headers({'Content-Type': content_type, 'Content-Length': str(size), 'x-upsert': 'true'})
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self._object_url(key), data=read_chunks(path), headers=headers) as response:
                    await self._raise_for_status(response, f"Upload of {key}")
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise StorageError(f"Upload of {key} failed: {e}")
        self.logger.debug(f"Uploaded {key} ({size} bytes)")
        return StoredArtifact(key=key, size=size, content_type=content_type)

    async def delete_prefix(self, job_id: str) -> int:
        list_url = f"{self.base_url}/storage/v1/object/list/{self.bucket}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(list_url, json={'prefix': job_id, 'limit': 1000}, headers=self._headers()) as response:
                    await self._raise_for_status(response, f"Listing artifacts of {job_id}")
                    entries = await response.json()
                keys = [artifact_key(job_id, entry['name']) for entry in entries if entry.get('name')]
                if not keys:
                    return 0
                delete_url = f"{self.base_url}/storage/v1/object/{self.bucket}"
                async with session.delete(delete_url, json={'prefixes': keys}, headers=self._headers()) as response:
                    await self._raise_for_status(response, f"Deleting artifacts of {job_id}")
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise StorageError(f"Deleting artifacts of {job_id} failed: {e}")
        return len(keys)

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{quote(key)}"

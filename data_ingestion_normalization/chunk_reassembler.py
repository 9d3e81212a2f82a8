"""
Chunk Reassembler
=================

Buffers the pieces of a chunked upload in the ephemeral cache store and hands
back the whole file once every index 0..n-1 has arrived (in any order).

Per chunk key the cache holds a manifest ({"total", "sizes"}) plus one entry
per index with the base64 chunk body; everything carries the buffer TTL, so an
abandoned upload simply expires. Access to one chunk key is serialized.
"""

import base64
import binascii
import structlog
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from core_infrastructure.centralized_cache import CentralizedCache
from core_infrastructure.config_manager import ChunkConfig, get_chunk_config
from core_infrastructure.errors import ChunkRejected
from core_infrastructure.transaction_manager import KeyedAsyncLock
from core_infrastructure.utils.helpers import content_digest

logger = structlog.get_logger(__name__)


@dataclass
class ChunkProgress:
    chunk_key: str
    received: int
    total: int
    missing: List[int] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return False


@dataclass
class AssembledFile:
    chunk_key: str
    data: bytes
    total_chunks: int
    digest: str

    @property
    def complete(self) -> bool:
        return True


class ChunkReassembler:
    def __init__(self, cache: CentralizedCache, config: Optional[ChunkConfig] = None,
                 locks: Optional[KeyedAsyncLock] = None):
        self.cache = cache
        self.config = config or get_chunk_config()
        self.locks = locks or KeyedAsyncLock()

    @staticmethod
    def _manifest_key(chunk_key: str) -> str:
        return f"chunks:{chunk_key}:manifest"

    @staticmethod
    def _part_key(chunk_key: str, index: int) -> str:
        return f"chunks:{chunk_key}:{index}"

    def _validate(self, chunk_key: str, index: int, total_chunks: int, data: bytes) -> None:
        if total_chunks < 1:
            raise ChunkRejected("total_chunks must be at least 1", chunk_key=chunk_key, chunk_index=index)
        if not 0 <= index < total_chunks:
            raise ChunkRejected("Chunk index out of range", chunk_key=chunk_key,
                                chunk_index=index, total_chunks=total_chunks)
        if len(data) > self.config.max_chunk_bytes:
            raise ChunkRejected("Chunk exceeds the per-chunk limit", status_code=413,
                                chunk_key=chunk_key, chunk_index=index,
                                size_bytes=len(data), max_bytes=self.config.max_chunk_bytes)

    async def put(self, chunk_key: str, index: int, total_chunks: int,
                  data: bytes) -> Union[ChunkProgress, AssembledFile]:
        self._validate(chunk_key, index, total_chunks, data)

        async with self.locks.hold(chunk_key):
            manifest = await self.cache.get(self._manifest_key(chunk_key)) or {"total": total_chunks, "sizes": {}}
            if manifest["total"] != total_chunks:
                raise ChunkRejected("total_chunks disagrees with earlier chunks", chunk_key=chunk_key,
                                    chunk_index=index, total_chunks=total_chunks,
                                    expected_total=manifest["total"])

            sizes: Dict[str, int] = dict(manifest["sizes"])
            sizes[str(index)] = len(data)
            buffered = sum(sizes.values())
            if buffered > self.config.max_file_bytes:
                await self._discard(chunk_key, total_chunks)
                raise ChunkRejected("Assembled file exceeds the file size limit", status_code=413,
                                    chunk_key=chunk_key, chunk_index=index,
                                    size_bytes=buffered, max_bytes=self.config.max_file_bytes)

            ttl = self.config.buffer_ttl_seconds
            stored = await self.cache.set(self._part_key(chunk_key, index),
                                          base64.b64encode(data).decode("ascii"), ttl=ttl)
            stored = stored and await self.cache.set(self._manifest_key(chunk_key),
                                                     {"total": total_chunks, "sizes": sizes}, ttl=ttl)
            if not stored:
                raise ChunkRejected("Chunk buffer unavailable", status_code=503,
                                    chunk_key=chunk_key, chunk_index=index)

            logger.info("chunk_received", chunk_key=chunk_key, chunk_index=index,
                        total_chunks=total_chunks, size_bytes=len(data), digest=content_digest(data))

            if len(sizes) < total_chunks:
                missing = [i for i in range(total_chunks) if str(i) not in sizes]
                return ChunkProgress(chunk_key, len(sizes), total_chunks, missing)

            return await self._assemble(chunk_key, total_chunks)

    async def _assemble(self, chunk_key: str, total_chunks: int) -> AssembledFile:
        parts: List[bytes] = []
        for i in range(total_chunks):
            encoded = await self.cache.get(self._part_key(chunk_key, i))
            try:
                if encoded is None:
                    raise ValueError("missing")
                parts.append(base64.b64decode(encoded, validate=True))
            except (ValueError, binascii.Error) as e:
                await self._discard(chunk_key, total_chunks)
                raise ChunkRejected("Chunk buffer expired or damaged; restart the upload", status_code=410,
                                    chunk_key=chunk_key, chunk_index=i) from e

        await self._discard(chunk_key, total_chunks)
        data = b"".join(parts)
        if len(data) > self.config.max_file_bytes:
            raise ChunkRejected("Assembled file exceeds the file size limit", status_code=413,
                                chunk_key=chunk_key, size_bytes=len(data),
                                max_bytes=self.config.max_file_bytes)

        digest = content_digest(data)
        logger.info("chunks_assembled", chunk_key=chunk_key, total_chunks=total_chunks,
                    size_bytes=len(data), digest=digest)
        return AssembledFile(chunk_key, data, total_chunks, digest)

    async def _discard(self, chunk_key: str, total_chunks: int) -> None:
        for i in range(total_chunks):
            await self.cache.delete(self._part_key(chunk_key, i))
        await self.cache.delete(self._manifest_key(chunk_key))

    async def discard(self, chunk_key: str) -> None:
        """Drop whatever is buffered for chunk_key."""
        async with self.locks.hold(chunk_key):
            manifest = await self.cache.get(self._manifest_key(chunk_key))
            if manifest is None:
                return
            await self._discard(chunk_key, manifest["total"])
            logger.info("chunk_buffer_discarded", chunk_key=chunk_key)

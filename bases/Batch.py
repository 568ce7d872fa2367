#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# Filesh - Zero-knowledge chunked file transfer
# Copyright (C) 2025 Filesh contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Server-side batch and chunk bookkeeping.

The server keeps no database: a batch exists once it has chunks in storage, and its
times are derived from the chunk mtimes (created = earliest, last activity = latest).
"""

import uuid

from collections import defaultdict
from datetime import datetime, timezone
from typing import BinaryIO, Dict, List, Tuple

from bases.Kernel import getLogger
from bases.Settings import RETENTION, MAX_CHUNK_SIZE, FileshError
from bases.Storage import ObjectStorage, ObjectInfo, validateKey

logger = getLogger(__name__)


class ObjectNotFoundError(FileshError):
    """The batch or chunk is not in storage"""
    pass


class ChunkTooLargeError(FileshError):
    """The uploaded chunk exceeds the configured limit"""
    pass


def formatTime(timestamp: float) -> str:
    """RFC 3339 UTC timestamp"""
    return datetime.fromtimestamp(timestamp, timezone.utc).isoformat().replace('+00:00', 'Z')


def checkBatchId(batchId: str) -> str:
    if len(validateKey(batchId)) != 1:
        raise ValueError(f'Invalid batch id: {batchId!r}')
    return batchId


class BatchService:

    def __init__(self, storage: ObjectStorage, retention=RETENTION):
        self.storage = storage
        self.retention = retention

    def createBatch(self) -> dict:
        now = datetime.now(timezone.utc).timestamp()
        batchId = str(uuid.uuid4())
        expiresAt = now + self.retention.total_seconds()

        logger.info(f'[BATCH] Created batch {batchId}, expires {formatTime(expiresAt)}')
        return {'id': batchId, 'createdAt': formatTime(now), 'expiresAt': formatTime(expiresAt)}

    def _chunks(self, batchId) -> List[Tuple[int, ObjectInfo]]:
        prefix = f'{checkBatchId(batchId)}/'
        chunks = []
        for info in self.storage.list(prefix):
            name = info.key[len(prefix):]
            if name.isdigit():
                chunks.append((int(name), info))
        return sorted(chunks, key=lambda c: c[0])

    def _times(self, chunks):
        createdAt = min(info.mtime for _, info in chunks)
        lastActivity = max(info.mtime for _, info in chunks)
        return createdAt, createdAt + self.retention.total_seconds(), lastActivity

    def getBatchInfo(self, batchId) -> dict:
        """
        Raises:
            ObjectNotFoundError: No chunk of the batch is stored
        """
        chunks = self._chunks(batchId)
        if not chunks:
            raise ObjectNotFoundError(f'Batch {batchId} not found')

        createdAt, expiresAt, lastActivity = self._times(chunks)
        return {
            'id': batchId,
            'createdAt': formatTime(createdAt),
            'expiresAt': formatTime(expiresAt),
            'totalSize': sum(info.size for _, info in chunks),
            'chunksCount': len(chunks),
            'lastActivity': formatTime(lastActivity),
        }

    def listChunks(self, batchId) -> dict:
        chunks = self._chunks(batchId)
        result = {
            'id': batchId,
            'chunks': [
                {'index': index, 'size': info.size, 'uploaded': formatTime(info.mtime)} for index, info in chunks
            ],
            'totalSize': sum(info.size for _, info in chunks),
        }
        if chunks:
            createdAt, expiresAt, _ = self._times(chunks)
            result.update(createdAt=formatTime(createdAt), expiresAt=formatTime(expiresAt))
        return result

    def purgeExpired(self, now: float = None) -> List[str]:
        """Delete every batch whose earliest chunk is older than the retention window."""
        now = datetime.now(timezone.utc).timestamp() if now is None else now
        cutoff = now - self.retention.total_seconds()

        batches: Dict[str, List[ObjectInfo]] = defaultdict(list)
        for info in self.storage.list():
            batchId, _, _ = info.key.partition('/')
            batches[batchId].append(info)

        expired = []
        for batchId, objects in sorted(batches.items()):
            if min(o.mtime for o in objects) < cutoff:
                for o in objects:
                    self.storage.delete(o.key)
                expired.append(batchId)

        if expired:
            logger.info(f'[BATCH] Purged {len(expired)} expired batches')
        return expired


class ChunkService:

    def __init__(self, storage: ObjectStorage, maxChunkSize: int = MAX_CHUNK_SIZE):
        self.storage = storage
        self.maxChunkSize = maxChunkSize

    @staticmethod
    def parseChunkIndex(text: str) -> int:
        if not text.isdigit():
            raise ValueError(f"Invalid chunk index '{text}'")
        return int(text)

    @staticmethod
    def objectName(batchId, chunkIndex) -> str:
        return f'{checkBatchId(batchId)}/{chunkIndex}'

    def uploadChunk(self, batchId, chunkIndex: int, reader: BinaryIO, size: int) -> dict:
        """
        Raises:
            ValueError: Empty chunk
            ChunkTooLargeError: Chunk above maxChunkSize
            StorageError: Storage failed after its retries
        """
        if size <= 0:
            raise ValueError('Chunk is empty')
        if size > self.maxChunkSize:
            raise ChunkTooLargeError(f'Chunk of {size} bytes exceeds the limit of {self.maxChunkSize} bytes')

        key = self.objectName(batchId, chunkIndex)
        info = self.storage.put(key, reader, size)
        if info.size != size:
            logger.warning(f'[CHUNK] Size mismatch for {key}: expected {size}, stored {info.size}')

        logger.debug(f'[CHUNK] Stored {key}, {info.size} bytes')
        return {
            'success': True,
            'batchId': batchId,
            'chunkIndex': chunkIndex,
            'size': info.size,
            'etag': info.etag,
            'uploaded': formatTime(info.mtime),
        }

    def checkChunk(self, batchId, chunkIndex: int):
        return self.storage.stat(self.objectName(batchId, chunkIndex))

    def downloadChunk(self, batchId, chunkIndex: int) -> Tuple[BinaryIO, ObjectInfo]:
        key = self.objectName(batchId, chunkIndex)
        info = self.storage.stat(key)
        if info is None:
            raise ObjectNotFoundError(f'Chunk {chunkIndex} not found for batch {batchId}')
        return self.storage.get(key), info

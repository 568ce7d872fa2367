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
Transport chunking of ciphertext streams.

Chunk boundaries are a transport artifact only: concatenating the chunks of a
file in index order always reproduces its ciphertext stream byte for byte.
"""

from dataclasses import dataclass
from typing import List, Tuple


@dataclass(frozen=True)
class TransportChunk:
    batchId: str
    fileId: str
    chunkIndex: int # Batch-wide index, used in the storage key
    start: int # Offset into the file's ciphertext stream
    end: int

    @property
    def byteRange(self) -> Tuple[int, int]:
        return (self.start, self.end)

    @property
    def sizeBytes(self) -> int:
        return self.end - self.start

    @property
    def key(self) -> str:
        return f'{self.batchId}/{self.chunkIndex}'


def _checkChunkSize(chunkSize):
    if not isinstance(chunkSize, int) or isinstance(chunkSize, bool) or chunkSize <= 0:
        raise ValueError(f'Chunk size must be a positive integer, got {chunkSize!r}')


def chunkCount(totalSize: int, chunkSize: int) -> int:
    """ceil(totalSize / chunkSize); a size that divides evenly never yields an empty tail chunk."""
    _checkChunkSize(chunkSize)
    if totalSize < 0:
        raise ValueError(f'Total size must not be negative, got {totalSize}')
    return -(-totalSize // chunkSize)


def chunkRanges(totalSize: int, chunkSize: int) -> List[Tuple[int, int]]:
    count = chunkCount(totalSize, chunkSize)
    return [(i * chunkSize, min((i + 1) * chunkSize, totalSize)) for i in range(count)]


def split(blob: bytes, chunkSize: int) -> List[bytes]:
    """
    Partition blob into chunks of chunkSize bytes, the last one possibly shorter.

    Args:
        blob: Bytes to split
        chunkSize: Size of every chunk but the last

    Returns:
        list: Chunks whose concatenation equals blob
    """
    return [bytes(blob[start:end]) for start, end in chunkRanges(len(blob), chunkSize)]


def planChunks(batchId: str, fileId: str, totalSize: int, chunkSize: int, chunkStart: int = 0) -> List[TransportChunk]:
    """Describe the transport chunks of one file whose indices start at chunkStart within the batch."""
    return [
        TransportChunk(batchId, fileId, chunkStart + i, start, end)
        for i, (start, end) in enumerate(chunkRanges(totalSize, chunkSize))
    ]


def readChunk(path: str, chunk: TransportChunk) -> bytes:
    """Read the bytes of one transport chunk from a spooled ciphertext stream."""
    with open(path, 'rb') as f:
        f.seek(chunk.start)
        data = f.read(chunk.sizeBytes)

    if len(data) != chunk.sizeBytes:
        raise IOError(
            f'Spool {path} is truncated: chunk {chunk.chunkIndex} needs {chunk.sizeBytes} bytes, read {len(data)}'
        )
    return data

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
Object storage used by the server to keep ciphertext chunks.

Keys look like "{batchId}/{chunkIndex}". Storage never sees plaintext or keys.
"""

import hashlib
import io
import os
import tempfile
import threading
import time

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import BinaryIO, Dict, List, Optional, Tuple

from bases.Kernel import getLogger
from bases.Settings import STORAGE_RETRIES, STORAGE_RETRY_DELAY, StorageError

logger = getLogger(__name__)

COPY_BUFFER_SIZE = 1024 * 1024 # 1 MB


@dataclass
class ObjectInfo:
    """Stored object metadata"""
    key: str
    size: int
    mtime: float
    etag: str


def validateKey(key: str) -> Tuple[str, ...]:
    """Split a key into path segments, rejecting anything that could escape the storage root."""
    parts = tuple(key.split('/'))
    if not key or any(p in ('', '.', '..') or '\\' in p or p.startswith('.') for p in parts):
        raise ValueError(f'Invalid object key: {key!r}')
    return parts


def isRewindable(reader) -> bool:
    try:
        return reader.seekable()
    except (AttributeError, ValueError):
        return False


class ObjectStorage(ABC):
    """Put/get/exists/stat/list/delete over flat keys, with retried puts."""

    def __init__(self, retries: int = STORAGE_RETRIES, retryDelay: float = STORAGE_RETRY_DELAY):
        self.retries = retries
        self.retryDelay = retryDelay

    def put(self, key: str, reader: BinaryIO, size: int) -> ObjectInfo:
        """
        Store exactly size bytes read from reader under key.

        Transient failures are retried with exponential backoff (retryDelay, x2, x4, ...)
        when the reader can be rewound; otherwise the first failure is final.

        Raises:
            StorageError: The object could not be stored
        """
        validateKey(key)
        rewindable = isRewindable(reader)
        start = reader.tell() if rewindable else None

        attempt = 0
        while True:
            try:
                return self._put(key, reader, size)
            except OSError as e:
                attempt += 1
                if not rewindable or attempt > self.retries:
                    raise StorageError(f'Unable to store {key} after {attempt} attempts: {e}') from e

                delay = self.retryDelay * (2 ** (attempt - 1))
                logger.warning(f'[STORAGE] Storing {key} failed ({e}), retry {attempt}/{self.retries} in {delay}s')
                time.sleep(delay)
                reader.seek(start)

    @abstractmethod
    def _put(self, key: str, reader: BinaryIO, size: int) -> ObjectInfo:
        pass

    @abstractmethod
    def get(self, key: str) -> BinaryIO:
        """Open the object for reading, raises FileNotFoundError when absent"""
        pass

    @abstractmethod
    def stat(self, key: str) -> Optional[ObjectInfo]:
        pass

    def exists(self, key: str) -> bool:
        return self.stat(key) is not None

    @abstractmethod
    def list(self, prefix: str = '') -> List[ObjectInfo]:
        """Objects whose key starts with prefix, sorted by key"""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        pass


class FileSystemStorage(ObjectStorage):
    """Objects as files below a root directory, one sub-directory per batch."""

    def __init__(self, root: str, **kwargs):
        super().__init__(**kwargs)
        self.root = os.path.abspath(root)
        os.makedirs(self.root, exist_ok=True)

        logger.debug(f'[STORAGE] FileSystemStorage at {self.root}')

    def _path(self, key):
        return os.path.join(self.root, *validateKey(key))

    @staticmethod
    def _etag(st):
        return f'{st.st_mtime_ns:x}-{st.st_size:x}'

    def _put(self, key, reader, size):
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)

        fd, tempPath = tempfile.mkstemp(prefix='.', suffix='.part', dir=os.path.dirname(path))
        try:
            remaining = size
            with os.fdopen(fd, 'wb') as f:
                while remaining > 0:
                    block = reader.read(min(COPY_BUFFER_SIZE, remaining))
                    if not block:
                        break
                    f.write(block)
                    remaining -= len(block)

            if remaining:
                raise StorageError(f'Short read for {key}: {size - remaining} of {size} bytes')
            os.replace(tempPath, path)
        except BaseException:
            if os.path.exists(tempPath):
                os.remove(tempPath)
            raise

        return self.stat(key)

    def get(self, key):
        return open(self._path(key), 'rb')

    def stat(self, key):
        try:
            st = os.stat(self._path(key))
        except FileNotFoundError:
            return None
        return ObjectInfo(key=key, size=st.st_size, mtime=st.st_mtime, etag=self._etag(st))

    def list(self, prefix=''):
        objects = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = [d for d in dirnames if not d.startswith('.')]
            rel = os.path.relpath(dirpath, self.root)
            for name in filenames:
                if name.startswith('.'):
                    continue

                key = name if rel == '.' else '/'.join(rel.split(os.sep) + [name])
                if not key.startswith(prefix):
                    continue

                info = self.stat(key)
                if info is not None:
                    objects.append(info)
        return sorted(objects, key=lambda o: o.key)

    def delete(self, key):
        path = self._path(key)
        try:
            os.remove(path)
        except FileNotFoundError:
            return False

        parent = os.path.dirname(path)
        if parent != self.root and not os.listdir(parent):
            os.rmdir(parent)
        return True


class MemoryStorage(ObjectStorage):
    """Process-local storage for tests and throw-away servers."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._objects: Dict[str, Tuple[bytes, float]] = {}
        self._lock = threading.Lock()

    def _put(self, key, reader, size):
        data = reader.read(size)
        if len(data) != size:
            raise StorageError(f'Short read for {key}: {len(data)} of {size} bytes')

        with self._lock:
            self._objects[key] = (data, time.time())
        return self.stat(key)

    def get(self, key):
        with self._lock:
            if key not in self._objects:
                raise FileNotFoundError(key)
            return io.BytesIO(self._objects[key][0])

    def stat(self, key):
        with self._lock:
            if key not in self._objects:
                return None
            data, mtime = self._objects[key]
        return ObjectInfo(key=key, size=len(data), mtime=mtime, etag=hashlib.md5(data).hexdigest())

    def list(self, prefix=''):
        with self._lock:
            keys = sorted(k for k in self._objects if k.startswith(prefix))
        return [info for info in (self.stat(k) for k in keys) if info is not None]

    def delete(self, key):
        with self._lock:
            return self._objects.pop(key, None) is not None

    def touch(self, key, mtime: float):
        """Backdate an object, used to exercise expiry."""
        with self._lock:
            data, _ = self._objects[key]
            self._objects[key] = (data, mtime)

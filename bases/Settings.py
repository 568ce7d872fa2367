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

import os

from datetime import timedelta

from bases.Kernel import Singleton, StorageLocator, getLogger

# Backend the client talks to, and the base URL share links point at.
DEFAULT_SERVER = os.getenv('FILESH_SERVER', 'http://127.0.0.1:8080')
SHARE_BASE_URL = os.getenv('FILESH_SHARE_BASE', DEFAULT_SERVER)

# Transport chunk size (5 MiB), independent of the encryption read segment
CHUNK_SIZE = int(os.getenv('FILESH_CHUNK_SIZE', 5 * 1024 * 1024))
READ_SEGMENT_SIZE = int(os.getenv('FILESH_READ_SEGMENT_SIZE', 16 * 1024 * 1024))

MAX_PARALLEL_UPLOADS = int(os.getenv('FILESH_MAX_PARALLEL_UPLOADS', 3))
MAX_PARALLEL_DOWNLOADS = int(os.getenv('FILESH_MAX_PARALLEL_DOWNLOADS', 3))
MAX_RETRY_ATTEMPTS = int(os.getenv('FILESH_MAX_RETRY_ATTEMPTS', 3))

# A batch is failed once permanently failed chunks exceed min(FAILURE_LIMIT, floor(n * FAILURE_RATIO))
FAILURE_LIMIT = 5
FAILURE_RATIO = 0.1

# Seconds
CONNECT_TIMEOUT = float(os.getenv('FILESH_CONNECT_TIMEOUT', 10))
UPLOAD_TIMEOUT = float(os.getenv('FILESH_UPLOAD_TIMEOUT', 120))
DOWNLOAD_TIMEOUT = float(os.getenv('FILESH_DOWNLOAD_TIMEOUT', 60))
PROBE_TIMEOUT = float(os.getenv('FILESH_PROBE_TIMEOUT', 10))

# Number of HEAD probes issued together while discovering a chunk count
PROBE_WINDOW = int(os.getenv('FILESH_PROBE_WINDOW', 16))

RETENTION = timedelta(days=int(os.getenv('FILESH_RETENTION_DAYS', 7)))

# Server side
MAX_CHUNK_SIZE = int(os.getenv('FILESH_MAX_CHUNK_MB', 100)) * 1024 * 1024
STORAGE_RETRIES = int(os.getenv('FILESH_STORAGE_RETRIES', 3))
STORAGE_RETRY_DELAY = float(os.getenv('FILESH_STORAGE_RETRY_DELAY', 2.0))
EXPIRY_SWEEP_INTERVAL = float(os.getenv('FILESH_EXPIRY_SWEEP_INTERVAL', 3600))

# AES-256-GCM framing
KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16

STORE_FILENAME = 'transfers.db'
SPOOL_DIRNAME = 'spool'
OBJECTS_DIRNAME = 'objects'

logger = getLogger(__name__)

# =============================================================================
# Exception Classes
# =============================================================================


class FileshError(Exception):
    """Base exception for every Filesh failure"""
    pass


class EncryptionError(FileshError):
    """The AEAD primitive rejected the input or no crypto backend is usable"""
    pass


class DecryptionError(FileshError):
    """Authentication or integrity failure on a reassembled ciphertext stream"""

    def __init__(self, message, expectedSize=None, actualSize=None, chunkCount=None):
        details = []
        if expectedSize is not None:
            details.append(f'expected {expectedSize} bytes')
        if actualSize is not None:
            details.append(f'got {actualSize} bytes')
        if chunkCount is not None:
            details.append(f'{chunkCount} chunks')
        if details:
            message = f"{message} ({', '.join(details)})"

        super().__init__(message)
        self.expectedSize = expectedSize
        self.actualSize = actualSize
        self.chunkCount = chunkCount


class TransferError(FileshError):
    """Network, timeout or server error while moving one chunk"""

    def __init__(self, message, chunkIndex=None, statusCode=None):
        super().__init__(message)
        self.chunkIndex = chunkIndex
        self.statusCode = statusCode


class TransferAbortedError(TransferError):
    """The transfer handle was cancelled (pause) while bytes were in flight"""
    pass


class BatchExhaustedError(FileshError):
    """Too many chunks failed permanently, the batch cannot complete"""

    def __init__(self, message, batchId=None, failedChunks=None):
        super().__init__(message)
        self.batchId = batchId
        self.failedChunks = sorted(failedChunks or [])


class ShareLinkError(FileshError):
    """The share link cannot be parsed"""
    pass


class APIError(FileshError):
    """Base exception for API-related errors"""

    def __init__(self, message, statusCode=None, response=None):
        super().__init__(message)
        self.statusCode = statusCode
        self.response = response


class NotFoundError(APIError):
    """Raised when the batch or chunk does not exist (404)"""
    pass


class StorageError(FileshError):
    """The object storage could not store or serve an object"""
    pass


# Singleton
class SettingsGetter(Singleton):

    @classmethod
    def getInstance(cls):
        if cls not in cls._instances:
            raise RuntimeError('Get SettingsGetter before initialized it.')
        return cls._instances[cls]

    def initialize(self, baseDir=None, platform=None, storageDir=None):
        """Initialize the SettingsGetter with base directory, platform and optional storage directory."""
        self._baseDir = baseDir
        self._platform = platform
        self._storageDir = storageDir

    @property
    def baseDir(self):
        return self._baseDir

    def isLinux(self):
        return self._platform == "Linux"

    def getStorageDir(self):
        """Directory holding the transfer store and spool files, created on first use."""
        if self._storageDir is None:
            self._storageDir = StorageLocator.getInstance().ensureStorageDir()
        else:
            os.makedirs(self._storageDir, exist_ok=True)
        return self._storageDir

    def getStorePath(self):
        return os.path.join(self.getStorageDir(), STORE_FILENAME)

    def getSpoolDir(self):
        spoolDir = os.path.join(self.getStorageDir(), SPOOL_DIRNAME)
        os.makedirs(spoolDir, exist_ok=True)
        return spoolDir

    def getObjectsDir(self):
        return os.getenv('FILESH_STORAGE_DIR') or os.path.join(self.getStorageDir(), OBJECTS_DIRNAME)

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

import threading
import time

from typing import Optional

import requests

from urllib3 import encode_multipart_formdata

from bases.Kernel import getLogger
from bases.Settings import (
    DEFAULT_SERVER, CHUNK_SIZE, CONNECT_TIMEOUT, UPLOAD_TIMEOUT, DOWNLOAD_TIMEOUT, PROBE_TIMEOUT, APIError,
    NotFoundError, TransferError, TransferAbortedError
)
from bases.Utils import StallResilientAdapter

logger = getLogger(__name__)

BODY_BLOCK_SIZE = 64 * 1024


class CancellableBody:
    """
    Request body that streams a prepared payload in blocks and stops as soon as
    cancelEvent is set or the deadline passes. __len__ lets requests send a
    Content-Length instead of chunked encoding.
    """

    def __init__(self, payload: bytes, cancelEvent: Optional[threading.Event] = None, deadline=None,
                 blockSize=BODY_BLOCK_SIZE, chunkIndex=None):
        self.payload = memoryview(payload)
        self.cancelEvent = cancelEvent
        self.deadline = deadline
        self.blockSize = blockSize
        self.chunkIndex = chunkIndex

    def __len__(self):
        return len(self.payload)

    def __iter__(self):
        for offset in range(0, len(self.payload), self.blockSize):
            if self.cancelEvent is not None and self.cancelEvent.is_set():
                raise TransferAbortedError(f'Upload of chunk {self.chunkIndex} aborted', chunkIndex=self.chunkIndex)
            if self.deadline is not None and time.monotonic() > self.deadline:
                raise TransferError(f'Upload of chunk {self.chunkIndex} timed out', chunkIndex=self.chunkIndex)
            yield bytes(self.payload[offset:offset + self.blockSize])


class FileshAPI:
    """Client of the batch/chunk HTTP API."""

    def __init__(self, serverURL=DEFAULT_SERVER, chunkSize=CHUNK_SIZE, session: requests.Session = None):
        self.serverURL = serverURL.rstrip('/')
        self.session = session or requests.Session()

        adapter = StallResilientAdapter(chunkSize=chunkSize)
        self.session.mount('http://', adapter)
        self.session.mount('https://', adapter)

    def _url(self, *parts):
        return '/'.join([self.serverURL, 'api', *(str(p) for p in parts)])

    @staticmethod
    def _errorMessage(response):
        try:
            return response.json().get('error') or response.reason
        except (ValueError, AttributeError):
            return response.reason or f'HTTP {response.status_code}'

    def _json(self, response, action):
        if response.status_code == 404:
            raise NotFoundError(f'{action}: {self._errorMessage(response)}', 404, response)
        if not response.ok:
            raise APIError(
                f'{action} failed with HTTP {response.status_code}: {self._errorMessage(response)}',
                response.status_code, response
            )
        try:
            result = response.json()
        except ValueError as e:
            raise APIError(f'{action} returned invalid JSON: {e}', response.status_code, response) from e

        if not isinstance(result, dict):
            raise APIError(
                f'{action} returned {type(result).__name__} instead of an object', response.status_code, response
            )
        return result

    def createBatch(self) -> dict:
        """POST /api/batch -> {id, createdAt, expiresAt}"""
        try:
            response = self.session.post(self._url('batch'), timeout=(CONNECT_TIMEOUT, PROBE_TIMEOUT))
        except requests.RequestException as e:
            raise APIError(f'Unable to create batch on {self.serverURL}: {e}') from e

        batch = self._json(response, 'Create batch')
        logger.debug(f"[API] Created batch {batch.get('id')}, expires {batch.get('expiresAt')}")
        return batch

    def getBatchInfo(self, batchId) -> dict:
        """GET /api/batch/{batchId} -> {id, createdAt, expiresAt, totalSize, chunksCount, lastActivity}"""
        try:
            response = self.session.get(self._url('batch', batchId), timeout=(CONNECT_TIMEOUT, PROBE_TIMEOUT))
        except requests.RequestException as e:
            raise APIError(f'Unable to get batch {batchId}: {e}') from e
        return self._json(response, f'Get batch {batchId}')

    def listChunks(self, batchId) -> dict:
        """GET /api/batch/{batchId}/chunks -> {chunks: [{index, size, uploaded}], totalSize}"""
        try:
            response = self.session.get(
                self._url('batch', batchId, 'chunks'), timeout=(CONNECT_TIMEOUT, PROBE_TIMEOUT)
            )
        except requests.RequestException as e:
            raise APIError(f'Unable to list chunks of batch {batchId}: {e}') from e
        return self._json(response, f'List chunks of {batchId}')

    def chunkExists(self, batchId, chunkIndex, route='download', timeout=PROBE_TIMEOUT) -> bool:
        """HEAD /api/{route}/{batchId}/{chunkIndex}; route is 'upload' or 'download'."""
        try:
            response = self.session.head(self._url(route, batchId, chunkIndex), timeout=(CONNECT_TIMEOUT, timeout))
        except requests.RequestException as e:
            raise TransferError(f'Probe of chunk {chunkIndex} failed: {e}', chunkIndex=chunkIndex) from e

        if response.status_code == 200:
            return True
        if response.status_code == 404:
            return False
        raise TransferError(
            f'Probe of chunk {chunkIndex} returned HTTP {response.status_code}', chunkIndex, response.status_code
        )

    def uploadChunk(self, batchId, chunkIndex, data: bytes, cancelEvent=None, timeout=UPLOAD_TIMEOUT) -> dict:
        """
        POST one ciphertext chunk as multipart field 'chunk'.

        Returns:
            dict: {success, size, etag, uploaded}

        Raises:
            TransferAbortedError: cancelEvent was set while sending
            TransferError: Network failure, timeout or non-2xx answer
        """
        body, contentType = encode_multipart_formdata(
            {'chunk': (f'chunk-{batchId}-{chunkIndex}', data, 'application/octet-stream')}
        )
        deadline = time.monotonic() + timeout

        try:
            response = self.session.post(
                self._url('upload', batchId, chunkIndex),
                data=CancellableBody(body, cancelEvent, deadline, chunkIndex=chunkIndex),
                headers={'Content-Type': contentType},
                timeout=(CONNECT_TIMEOUT, timeout),
            )
        except requests.RequestException as e:
            if cancelEvent is not None and cancelEvent.is_set():
                raise TransferAbortedError(f'Upload of chunk {chunkIndex} aborted', chunkIndex=chunkIndex) from e
            raise TransferError(f'Upload of chunk {chunkIndex} failed: {e}', chunkIndex=chunkIndex) from e

        if not response.ok:
            raise TransferError(
                f'Upload of chunk {chunkIndex} returned HTTP {response.status_code}: {self._errorMessage(response)}',
                chunkIndex, response.status_code
            )

        try:
            result = response.json()
        except ValueError as e:
            raise TransferError(f'Upload of chunk {chunkIndex} returned invalid JSON', chunkIndex) from e

        if not isinstance(result, dict) or not result.get('success') or result.get('size') != len(data):
            raise TransferError(
                f'Server did not acknowledge chunk {chunkIndex}: {result}', chunkIndex, response.status_code
            )
        return result

    def downloadChunk(self, batchId, chunkIndex, cancelEvent=None, timeout=DOWNLOAD_TIMEOUT, sink=None):
        """
        GET one chunk. With a sink file object the bytes are written there and the
        byte count is returned, otherwise the bytes are returned.

        Raises:
            TransferAbortedError: cancelEvent was set while receiving
            TransferError: Network failure, timeout, 404 or other non-200 answer
        """
        deadline = time.monotonic() + timeout
        received = 0
        buffer = bytearray() if sink is None else None

        try:
            with self.session.get(
                self._url('download', batchId, chunkIndex), stream=True, timeout=(CONNECT_TIMEOUT, timeout)
            ) as response:
                if response.status_code != 200:
                    raise TransferError(
                        f'Download of chunk {chunkIndex} returned HTTP {response.status_code}', chunkIndex,
                        response.status_code
                    )

                for block in response.iter_content(BODY_BLOCK_SIZE):
                    if cancelEvent is not None and cancelEvent.is_set():
                        raise TransferAbortedError(f'Download of chunk {chunkIndex} aborted', chunkIndex=chunkIndex)
                    if time.monotonic() > deadline:
                        raise TransferError(f'Download of chunk {chunkIndex} timed out', chunkIndex=chunkIndex)

                    if sink is None:
                        buffer += block
                    else:
                        sink.write(block)
                    received += len(block)

                expected = response.headers.get('Content-Length')
                if expected is not None and int(expected) != received:
                    raise TransferError(
                        f'Chunk {chunkIndex} truncated: {received} of {expected} bytes', chunkIndex=chunkIndex
                    )
        except requests.RequestException as e:
            raise TransferError(f'Download of chunk {chunkIndex} failed: {e}', chunkIndex=chunkIndex) from e

        return bytes(buffer) if sink is None else received

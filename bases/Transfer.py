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
Resumable, concurrency-limited chunk transfer.

Uploads: every chunk moves pending -> uploading -> completed, or back to pending
after a failed attempt until its attempt budget is spent (error). A fixed pool
of workers drains a shared queue; per-chunk results are persisted through the
TransferStore, which serializes the batch counter updates. Pausing aborts the
in-flight requests through the TransferRegistry and leaves the batch paused;
resuming requeues only the chunks that are not completed.

Downloads: chunk existence is probed first, then chunks are fetched in
parallel into a work directory, ordered by index and decrypted exactly once.
"""

import math
import mimetypes
import os
import queue
import shutil
import tempfile
import threading
import uuid

from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

from bases.API import FileshAPI
from bases.Chunker import TransportChunk, chunkCount, planChunks, readChunk
from bases.E2EE import KeyManager, StreamEncryptor, ChunkedDecryptor, cipherStreamSize
from bases.Kernel import getLogger, FileshEvent
from bases.Settings import (
    CHUNK_SIZE, MAX_PARALLEL_UPLOADS, MAX_PARALLEL_DOWNLOADS, MAX_RETRY_ATTEMPTS, UPLOAD_TIMEOUT,
    DOWNLOAD_TIMEOUT, PROBE_TIMEOUT, PROBE_WINDOW, FAILURE_LIMIT, FAILURE_RATIO, SHARE_BASE_URL, APIError,
    NotFoundError, EncryptionError, TransferError, TransferAbortedError, BatchExhaustedError
)
from bases.ShareLink import encodeShareLink
from bases.Store import (
    TransferStore, UploadState, ChunkState, FileMetadata, SourceFile, TransferStatus, ChunkStatus,
    DEFAULT_FILE_TYPE
)

logger = getLogger(__name__)

QUEUE_POLL_INTERVAL = 0.1 # Seconds


def failureThreshold(totalChunks: int) -> int:
    """Permanently failed chunks a batch tolerates before it is declared failed."""
    return min(FAILURE_LIMIT, math.floor(totalChunks * FAILURE_RATIO))


class TransferRegistry:
    """
    Active transfer handles keyed by (batchId, chunkIndex).

    A handle is the cancel event handed to the request in flight; entries are removed
    when the transfer finishes or is aborted.
    """

    def __init__(self):
        self._handles: Dict[tuple, threading.Event] = {}
        self._lock = threading.Lock()

    def open(self, batchId, chunkIndex) -> threading.Event:
        cancelEvent = threading.Event()
        with self._lock:
            self._handles[(batchId, chunkIndex)] = cancelEvent
        return cancelEvent

    def close(self, batchId, chunkIndex):
        with self._lock:
            self._handles.pop((batchId, chunkIndex), None)

    def abort(self, batchId=None) -> int:
        """Signal every active transfer (of one batch, or all) to stop, returns how many were signalled."""
        with self._lock:
            handles = [(k, e) for k, e in self._handles.items() if batchId is None or k[0] == batchId]
            for key, cancelEvent in handles:
                cancelEvent.set()
                del self._handles[key]
        return len(handles)

    def activeKeys(self, batchId=None):
        with self._lock:
            return sorted(k for k in self._handles if batchId is None or k[0] == batchId)

    def __len__(self):
        with self._lock:
            return len(self._handles)


class _WorkQueue:
    """Shared queue of chunks plus the bookkeeping the workers need to stop."""

    def __init__(self, items, totalChunks):
        self.items = queue.Queue()
        for item in items:
            self.items.put(item)

        self.remaining = len(items)
        self.failed = set()
        self.threshold = failureThreshold(totalChunks)
        self.stopEvent = threading.Event()
        self.paused = False
        self.exhausted = False
        self.lock = threading.Lock()

    def finish(self, chunkIndex=None, failed=False):
        with self.lock:
            self.remaining -= 1
            if failed:
                self.failed.add(chunkIndex)
                if len(self.failed) > self.threshold:
                    self.exhausted = True
                    self.stopEvent.set()

    def next(self):
        """Next chunk to work on, or None once everything is finished or the run is stopping."""
        while not self.stopEvent.is_set():
            try:
                return self.items.get(timeout=QUEUE_POLL_INTERVAL)
            except queue.Empty:
                with self.lock:
                    if self.remaining <= 0:
                        return None
        return None


class UploadManager:
    """Encrypts files into a batch and uploads its chunks, resumably."""

    def __init__(
        self,
        store: TransferStore,
        api: FileshAPI,
        spoolDir: str,
        chunkSize: int = CHUNK_SIZE,
        maxConcurrency: int = MAX_PARALLEL_UPLOADS,
        maxAttempts: int = MAX_RETRY_ATTEMPTS,
        timeout: float = UPLOAD_TIMEOUT,
        retryDelay: float = 1.0,
        shareBaseURL: str = None,
    ):
        if maxConcurrency < 1:
            raise ValueError(f'maxConcurrency must be at least 1, got {maxConcurrency}')

        self.store = store
        self.api = api
        self.spoolDir = spoolDir
        self.chunkSize = chunkSize
        self.maxConcurrency = maxConcurrency
        self.maxAttempts = maxAttempts
        self.timeout = timeout
        self.retryDelay = retryDelay
        self.shareBaseURL = shareBaseURL or SHARE_BASE_URL

        self.registry = TransferRegistry()
        self._runs: Dict[str, _WorkQueue] = {}
        self._runsLock = threading.Lock()

    # batch creation

    def createBatch(self, paths: List[str]) -> UploadState:
        """
        Encrypt each file into its spool and persist the batch with all chunks pending.

        Raises:
            EncryptionError: A file could not be encrypted, nothing is persisted
            APIError: The server refused to create the batch
        """
        if not paths:
            raise ValueError('Nothing to upload')

        for path in paths:
            if not os.path.isfile(path):
                raise FileNotFoundError(f'No such file: {path}')

        key = KeyManager.generateKey()
        batch = self.api.createBatch()
        batchId = batch['id']

        batchSpoolDir = os.path.join(self.spoolDir, batchId)
        os.makedirs(batchSpoolDir, exist_ok=True)

        encryptor = StreamEncryptor(key)
        sources, metadata, chunks = [], [], []
        chunkStart = 0

        try:
            for path in paths:
                fileId = uuid.uuid4().hex
                spoolPath = os.path.join(batchSpoolDir, f'{fileId}.enc')
                cipherSize = encryptor.encryptFile(path, spoolPath)
                count = chunkCount(cipherSize, self.chunkSize)

                sources.append(SourceFile(fileId, os.path.abspath(path), spoolPath, cipherSize, chunkStart, count))
                metadata.append(
                    FileMetadata(
                        id=fileId,
                        name=os.path.basename(path),
                        type=mimetypes.guess_type(path)[0] or DEFAULT_FILE_TYPE,
                        size=os.path.getsize(path),
                        chunkStart=chunkStart,
                        chunkCount=count,
                    )
                )
                for transportChunk in planChunks(batchId, fileId, cipherSize, self.chunkSize, chunkStart):
                    chunks.append(ChunkState(batchId, fileId, transportChunk.chunkIndex, size=transportChunk.sizeBytes))

                chunkStart += count
        except EncryptionError:
            shutil.rmtree(batchSpoolDir, ignore_errors=True)
            raise

        state = UploadState(
            batchId=batchId,
            fileIds=[s.fileId for s in sources],
            encryptionKeyB64=KeyManager.exportKey(key),
            totalSize=sum(s.cipherSize for s in sources),
            metadata=metadata,
            chunkSize=self.chunkSize,
            serverURL=self.api.serverURL,
            sources=sources,
        )

        self.store.saveUploadState(state)
        self.store.saveChunkStates(chunks)
        self.store.saveMetadata(batchId, metadata)

        logger.info(f'[UPLOAD] Batch {batchId}: {len(sources)} files, {len(chunks)} chunks, {state.totalSize} bytes')
        return state

    def getShareLink(self, batchId) -> str:
        state = self._getState(batchId)
        key = KeyManager.importKey(state.encryptionKeyB64)
        return encodeShareLink(batchId, key, state.metadata, self.shareBaseURL)

    def _getState(self, batchId) -> UploadState:
        state = self.store.getUploadState(batchId)
        if state is None:
            raise KeyError(f'Unknown batch {batchId}')
        return state

    # running

    def upload(self, paths: List[str]) -> UploadState:
        state = self.createBatch(paths)
        return self.run(state.batchId)

    def resume(self, batchId) -> UploadState:
        """Continue a paused, interrupted or failed batch; completed chunks are never sent again."""
        logger.info(f'[UPLOAD] Resuming batch {batchId}')
        return self.run(batchId)

    def run(self, batchId) -> UploadState:
        """
        Upload every chunk of the batch that is not completed yet.

        Returns:
            UploadState: Final state, status completed or paused

        Raises:
            BatchExhaustedError: Chunks failed permanently, the batch is left in error
        """
        state = self._getState(batchId)
        if state.status == TransferStatus.COMPLETED:
            logger.debug(f'[UPLOAD] Batch {batchId} already completed')
            return state

        pending = self.store.prepareResume(batchId)
        totalChunks = sum(s.chunkCount for s in state.sources)
        work = _WorkQueue(pending, totalChunks)

        with self._runsLock:
            if batchId in self._runs:
                raise RuntimeError(f'Batch {batchId} is already uploading')
            self._runs[batchId] = work

        try:
            state = self.store.updateUploadState(batchId, status=TransferStatus.UPLOADING, error=None)
            FileshEvent.batchUpdate.trigger(state=state)

            sources = {s.fileId: s for s in state.sources}
            workers = min(self.maxConcurrency, len(pending))
            if workers:
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='filesh-upload') as pool:
                    futures = [pool.submit(self._work, state, sources, work) for _ in range(workers)]
                    self._waitWorkers(batchId, futures, work)
        except Exception as e:
            self._failRun(batchId, e)
            raise
        finally:
            with self._runsLock:
                self._runs.pop(batchId, None)

        return self._finishRun(batchId, work)

    def _waitWorkers(self, batchId, futures, work: _WorkQueue):
        try:
            for future in futures:
                future.result()
        except BaseException:
            # The pool only shuts down once every worker has returned
            work.stopEvent.set()
            self.registry.abort(batchId)
            raise

    def _failRun(self, batchId, error: Exception):
        logger.error(f'[UPLOAD] Batch {batchId} stopped by {type(error).__name__}: {error}')
        try:
            state = self.store.updateUploadState(batchId, status=TransferStatus.ERROR, error=str(error))
        except Exception:
            logger.exception(f'[UPLOAD] Unable to mark batch {batchId} as failed')
            return
        FileshEvent.batchUpdate.trigger(state=state)

    def _finishRun(self, batchId, work: _WorkQueue) -> UploadState:
        if work.exhausted or (not work.paused and work.failed):
            message = f'{len(work.failed)} chunks of batch {batchId} failed after {self.maxAttempts} attempts'
            state = self.store.updateUploadState(batchId, status=TransferStatus.ERROR, error=message)
            FileshEvent.batchUpdate.trigger(state=state)
            logger.error(f'[UPLOAD] {message}: {sorted(work.failed)}')
            raise BatchExhaustedError(message, batchId, work.failed)

        if work.paused:
            state = self.store.updateUploadState(batchId, status=TransferStatus.PAUSED)
            FileshEvent.batchUpdate.trigger(state=state)
            logger.info(f'[UPLOAD] Batch {batchId} paused at {state.uploadedSize}/{state.totalSize} bytes')
            return state

        incomplete = [c.chunkIndex for c in self.store.getChunkStates(batchId) if c.status != ChunkStatus.COMPLETED]
        if incomplete:
            raise RuntimeError(f'Batch {batchId} finished with unfinished chunks {incomplete}')

        state = self.store.updateUploadState(batchId, status=TransferStatus.COMPLETED)
        self._releaseSpool(state)
        FileshEvent.batchUpdate.trigger(state=state)
        logger.info(f'[UPLOAD] Batch {batchId} completed, {state.totalSize} bytes')
        return state

    def _work(self, state: UploadState, sources: Dict[str, SourceFile], work: _WorkQueue):
        batchId = state.batchId

        while True:
            chunk = work.next()
            if chunk is None:
                return

            try:
                self._sendChunk(state, sources[chunk.fileId], chunk, work)
            except BaseException:
                # Stop the other workers, otherwise they wait forever for this chunk to finish
                work.stopEvent.set()
                self.registry.abort(batchId)
                self._releaseAfterCrash(batchId, chunk)
                raise

    def _releaseAfterCrash(self, batchId, chunk: ChunkState):
        try:
            self.store.releaseChunk(batchId, chunk.fileId, chunk.chunkIndex)
        except Exception:
            logger.exception(f'[UPLOAD] Unable to release chunk {chunk.chunkIndex} of batch {batchId}')

    def _sendChunk(self, state: UploadState, source: SourceFile, chunk: ChunkState, work: _WorkQueue):
        batchId = state.batchId
        offset = (chunk.chunkIndex - source.chunkStart) * state.chunkSize
        transportChunk = TransportChunk(
            batchId, chunk.fileId, chunk.chunkIndex, offset, min(offset + state.chunkSize, source.cipherSize)
        )

        try:
            data = readChunk(source.spoolPath, transportChunk)
        except OSError as e:
            # Without the spool the chunk can never be sent again
            logger.error(f'[UPLOAD] Chunk {chunk.chunkIndex}: {e}')
            self.store.failChunk(batchId, chunk.fileId, chunk.chunkIndex, e, maxAttempts=1)
            work.finish(chunk.chunkIndex, failed=True)
            return

        self._uploadOne(batchId, chunk, data, work)

    def _uploadOne(self, batchId, chunk: ChunkState, data: bytes, work: _WorkQueue):
        chunkState = self.store.markChunkUploading(batchId, chunk.fileId, chunk.chunkIndex)
        FileshEvent.chunkUpdate.trigger(chunk=chunkState)

        cancelEvent = self.registry.open(batchId, chunk.chunkIndex)
        try:
            self.api.uploadChunk(batchId, chunk.chunkIndex, data, cancelEvent=cancelEvent, timeout=self.timeout)

        except TransferAbortedError:
            chunkState = self.store.releaseChunk(batchId, chunk.fileId, chunk.chunkIndex)
            FileshEvent.chunkUpdate.trigger(chunk=chunkState)
            logger.debug(f'[UPLOAD] Chunk {chunk.chunkIndex} aborted')
            return

        except TransferError as e:
            if work.stopEvent.is_set():
                self.store.releaseChunk(batchId, chunk.fileId, chunk.chunkIndex)
                return

            chunkState = self.store.failChunk(batchId, chunk.fileId, chunk.chunkIndex, e, self.maxAttempts)
            FileshEvent.chunkUpdate.trigger(chunk=chunkState)

            if chunkState.status == ChunkStatus.PENDING:
                logger.warning(
                    f'[UPLOAD] Chunk {chunk.chunkIndex} attempt {chunkState.attempts}/{self.maxAttempts} failed: {e}'
                )
                work.stopEvent.wait(self.retryDelay * chunkState.attempts)
                work.items.put(chunkState)
            else:
                logger.error(f'[UPLOAD] Chunk {chunk.chunkIndex} failed permanently: {e}')
                work.finish(chunk.chunkIndex, failed=True)
                if work.exhausted:
                    self.registry.abort(batchId)
            return

        finally:
            self.registry.close(batchId, chunk.chunkIndex)

        uploadedSize = self.store.completeChunk(batchId, chunk.fileId, chunk.chunkIndex, len(data))
        work.finish()

        chunkState = self.store.getChunkState(batchId, chunk.fileId, chunk.chunkIndex)
        FileshEvent.chunkUpdate.trigger(chunk=chunkState, uploadedSize=uploadedSize)
        logger.debug(f'[UPLOAD] Chunk {chunk.chunkIndex} stored, {uploadedSize} bytes uploaded')

    # control

    def pause(self, batchId) -> bool:
        """
        Abort every in-flight transfer of the batch and stop its workers.
        A batch that is not running here is just marked paused.

        Returns:
            bool: True if a running upload was interrupted
        """
        with self._runsLock:
            work = self._runs.get(batchId)
            if work is not None:
                work.paused = True
                work.stopEvent.set()

        aborted = self.registry.abort(batchId)
        logger.info(f'[UPLOAD] Pausing batch {batchId}, {aborted} transfers aborted')

        if work is None:
            state = self.store.getUploadState(batchId)
            if state is not None and state.status not in (TransferStatus.COMPLETED, TransferStatus.PAUSED):
                self.store.updateUploadState(batchId, status=TransferStatus.PAUSED)
            return False
        return True

    def pauseAll(self):
        with self._runsLock:
            batchIds = list(self._runs)
        for batchId in batchIds:
            self.pause(batchId)

    def cancel(self, batchId) -> Optional[UploadState]:
        """Stop the batch and forget it: state, chunk records and spool files are deleted."""
        self.pause(batchId)
        state = self.store.deleteUploadState(batchId)
        if state is not None:
            self._releaseSpool(state)
        return state

    def cleanup(self, retention=None) -> List[UploadState]:
        """Remove batches past the retention window together with their spool files."""
        removed = self.store.cleanupOldUploads(retention) if retention else self.store.cleanupOldUploads()
        for state in removed:
            self._releaseSpool(state)
        return removed

    def _releaseSpool(self, state: UploadState):
        shutil.rmtree(os.path.join(self.spoolDir, state.batchId), ignore_errors=True)


class DownloadManager:
    """Fetches the chunks of a batch and decrypts each file once its chunks are all present."""

    def __init__(
        self,
        api: FileshAPI,
        maxConcurrency: int = MAX_PARALLEL_DOWNLOADS,
        maxAttempts: int = MAX_RETRY_ATTEMPTS,
        timeout: float = DOWNLOAD_TIMEOUT,
        probeTimeout: float = PROBE_TIMEOUT,
        probeWindow: int = PROBE_WINDOW,
        retryDelay: float = 1.0,
        allowRecovery: bool = False,
    ):
        if maxConcurrency < 1:
            raise ValueError(f'maxConcurrency must be at least 1, got {maxConcurrency}')

        self.api = api
        self.maxConcurrency = maxConcurrency
        self.maxAttempts = maxAttempts
        self.timeout = timeout
        self.probeTimeout = probeTimeout
        self.probeWindow = probeWindow
        self.retryDelay = retryDelay
        self.allowRecovery = allowRecovery

        self.registry = TransferRegistry()
        self._stopEvent = threading.Event()
        self._activeWork: Optional[_WorkQueue] = None

    # chunk discovery

    def probeChunkCount(self, batchId) -> int:
        """Count contiguous chunks from index 0 with windows of parallel HEAD requests."""
        start = 0
        with ThreadPoolExecutor(max_workers=self.maxConcurrency, thread_name_prefix='filesh-probe') as pool:
            while True:
                indices = range(start, start + self.probeWindow)
                found = list(pool.map(lambda i: self.api.chunkExists(batchId, i, timeout=self.probeTimeout), indices))
                if not all(found):
                    return start + found.index(False)
                start += self.probeWindow

    def discoverChunkCount(self, batchId) -> int:
        """
        Number of chunks in the batch, from the server listing or, failing that, by probing.

        Raises:
            TransferError: The batch is unknown or its chunk indices have gaps
        """
        try:
            listing = self.api.listChunks(batchId)
        except NotFoundError as e:
            raise TransferError(f'Batch {batchId} not found', statusCode=404) from e
        except APIError as e:
            logger.warning(f'[DOWNLOAD] Chunk listing unavailable ({e}), probing instead')
            count = self.probeChunkCount(batchId)
        else:
            indices = sorted(c['index'] for c in listing.get('chunks', []))
            count = len(indices)
            if indices != list(range(count)):
                missing = sorted(set(range(indices[-1] + 1)) - set(indices))
                raise TransferError(f'Batch {batchId} is missing chunks {missing}')

        if count == 0:
            raise TransferError(f'Batch {batchId} has no chunks', statusCode=404)
        return count

    def planFiles(self, batchId, metadata: Optional[List[FileMetadata]]) -> List[tuple]:
        """
        Pair each file with the chunk indices of its ciphertext stream.

        Returns:
            list: (FileMetadata, [chunkIndex, ...]) tuples
        """
        if metadata and all(m.chunkStart is not None and m.chunkCount is not None for m in metadata):
            return [(m, list(range(m.chunkStart, m.chunkStart + m.chunkCount))) for m in metadata]

        if metadata and len(metadata) > 1:
            raise TransferError(f'Batch {batchId} holds several files but the link does not say where they start')

        count = self.discoverChunkCount(batchId)
        fileMeta = metadata[0] if metadata else FileMetadata(id=batchId, name=f'{batchId}.bin', size=-1)
        return [(fileMeta, list(range(count)))]

    # fetching

    def checkChunks(self, batchId, indices: List[int]):
        """HEAD every chunk before fetching; raises TransferError naming the missing ones."""
        with ThreadPoolExecutor(max_workers=self.maxConcurrency, thread_name_prefix='filesh-probe') as pool:
            found = list(pool.map(lambda i: self.api.chunkExists(batchId, i, timeout=self.probeTimeout), indices))

        missing = [i for i, exists in zip(indices, found) if not exists]
        if missing:
            raise TransferError(f'Batch {batchId} is missing chunks {missing}', statusCode=404)

    def fetchChunks(self, batchId, indices: List[int], workDir: str) -> List[str]:
        """
        Download the given chunks into workDir with bounded retries.

        Returns:
            list: Chunk file paths sorted by chunk index

        Raises:
            BatchExhaustedError: A chunk could not be fetched within its attempt budget
            TransferAbortedError: The download was paused
        """
        work = _WorkQueue([(i, 0) for i in indices], len(indices))
        self._activeWork = work
        completed: Dict[int, str] = {}
        total = len(indices)

        def fetch():
            while not self._stopEvent.is_set():
                item = work.next()
                if item is None:
                    return
                try:
                    fetchOne(*item)
                except BaseException:
                    # Stop the other workers, otherwise they wait forever for this chunk to finish
                    work.stopEvent.set()
                    self.registry.abort(batchId)
                    raise

        def fetchOne(index, attempts):
            partPath = os.path.join(workDir, f'{index}.part')
            cancelEvent = self.registry.open(batchId, index)
            try:
                with open(partPath, 'wb') as sink:
                    self.api.downloadChunk(batchId, index, cancelEvent=cancelEvent, timeout=self.timeout, sink=sink)
            except TransferAbortedError:
                return
            except TransferError as e:
                attempts += 1
                if attempts < self.maxAttempts:
                    logger.warning(f'[DOWNLOAD] Chunk {index} attempt {attempts}/{self.maxAttempts} failed: {e}')
                    work.stopEvent.wait(self.retryDelay * attempts)
                    work.items.put((index, attempts))
                else:
                    logger.error(f'[DOWNLOAD] Chunk {index} failed permanently: {e}')
                    work.failed.add(index)
                    work.exhausted = True
                    work.stopEvent.set()
                    self.registry.abort(batchId)
                return
            finally:
                self.registry.close(batchId, index)

            chunkPath = os.path.join(workDir, f'{index}.chunk')
            os.replace(partPath, chunkPath)
            with work.lock:
                completed[index] = chunkPath
                done = len(completed)
            work.finish()
            FileshEvent.downloadProgress.trigger(batchId=batchId, chunkIndex=index, completed=done, total=total)

        workers = min(self.maxConcurrency, total)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='filesh-download') as pool:
            futures = [pool.submit(fetch) for _ in range(workers)]
            try:
                for future in futures:
                    future.result()
            except BaseException:
                work.stopEvent.set()
                self.registry.abort(batchId)
                raise

        if work.exhausted:
            raise BatchExhaustedError(
                f'Chunks {sorted(work.failed)} of batch {batchId} could not be downloaded after '
                f'{self.maxAttempts} attempts', batchId, work.failed
            )

        if self._stopEvent.is_set() or len(completed) != total:
            raise TransferAbortedError(f'Download of batch {batchId} was interrupted')

        return [completed[i] for i in sorted(indices)]

    def downloadFile(self, batchId, key: bytes, fileMeta: FileMetadata, indices: List[int], outputDir: str) -> str:
        """Fetch one file's chunks, then decrypt them into outputDir. Returns the output path."""
        self.checkChunks(batchId, indices)

        os.makedirs(outputDir, exist_ok=True)
        outputPath = uniquePath(outputDir, safeFilename(fileMeta.name, fileMeta.id))
        expectedSize = cipherStreamSize(fileMeta.size) if fileMeta.size >= 0 else None

        with tempfile.TemporaryDirectory(prefix='filesh-', dir=outputDir) as workDir:
            chunkPaths = self.fetchChunks(batchId, indices, workDir)
            decryptor = ChunkedDecryptor(key, expectedSize=expectedSize, allowRecovery=self.allowRecovery)
            size = decryptor.decryptToFile(chunkPaths, outputPath)

        logger.info(f'[DOWNLOAD] {fileMeta.name}: {size} bytes written to {outputPath}')
        return outputPath

    def download(self, batchId, key: bytes, metadata: Optional[List[FileMetadata]], outputDir: str) -> List[str]:
        """Download and decrypt every file of the batch, returns the written paths."""
        self._stopEvent.clear()
        outputs = []
        for fileMeta, indices in self.planFiles(batchId, metadata):
            outputs.append(self.downloadFile(batchId, key, fileMeta, indices, outputDir))
        return outputs

    def pause(self):
        """Abort in-flight chunk downloads; fetched chunks of the current file are discarded."""
        self._stopEvent.set()
        work = self._activeWork
        if work is not None:
            work.stopEvent.set()
        return self.registry.abort()


def safeFilename(name: str, fallback: str) -> str:
    name = os.path.basename((name or '').replace('\\', '/')).strip()
    if name in ('', '.', '..'):
        return fallback
    return name


def uniquePath(directory: str, name: str) -> str:
    path = os.path.join(directory, name)
    stem, ext = os.path.splitext(name)
    counter = 1
    while os.path.exists(path):
        path = os.path.join(directory, f'{stem} ({counter}){ext}')
        counter += 1
    return path

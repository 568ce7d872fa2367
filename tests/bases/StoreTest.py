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
import tempfile
import threading
import time
import unittest

from datetime import timedelta
from unittest.mock import patch

from bases.Store import (
    TransferStore, UploadState, ChunkState, FileMetadata, SourceFile, TransferStatus, ChunkStatus
)


def makeState(batchId='batch-1', chunkCount=4, chunkSize=10):
    source = SourceFile(
        'file-1', '/tmp/plain.bin', '/tmp/spool/batch-1/file-1.enc', chunkCount * chunkSize, 0, chunkCount
    )
    metadata = [FileMetadata('file-1', 'plain.bin', 'text/plain', chunkCount * chunkSize - 28, 0, chunkCount)]
    state = UploadState(
        batchId=batchId,
        fileIds=['file-1'],
        encryptionKeyB64='a2V5',
        totalSize=chunkCount * chunkSize,
        metadata=metadata,
        chunkSize=chunkSize,
        serverURL='http://127.0.0.1:8080',
        sources=[source],
    )
    chunks = [ChunkState(batchId, 'file-1', i, size=chunkSize) for i in range(chunkCount)]
    return state, chunks


class TransferStoreTest(unittest.TestCase):

    def setUp(self):
        self.store = TransferStore()
        self.addCleanup(self.store.close)

        self.state, self.chunks = makeState()
        self.store.saveUploadState(self.state)
        self.store.saveChunkStates(self.chunks)

    def testUploadStateRoundTrip(self):
        loaded = self.store.getUploadState('batch-1')
        self.assertEqual(loaded.batchId, 'batch-1')
        self.assertEqual(loaded.status, TransferStatus.PENDING)
        self.assertEqual(loaded.metadata, self.state.metadata)
        self.assertEqual(loaded.sources, self.state.sources)
        self.assertIsNone(self.store.getUploadState('missing'))

    def testUpdateUploadState(self):
        updated = self.store.updateUploadState('batch-1', status=TransferStatus.PAUSED, error='boom')
        self.assertEqual(updated.status, TransferStatus.PAUSED)
        self.assertEqual(self.store.getUploadState('batch-1').error, 'boom')

        with self.assertRaises(KeyError):
            self.store.updateUploadState('missing', status=TransferStatus.PAUSED)
        with self.assertRaises(AttributeError):
            self.store.updateUploadState('batch-1', noSuchField=1)

    def testChunkStatesOrderedByIndex(self):
        self.assertEqual([c.chunkIndex for c in self.store.getChunkStates('batch-1')], [0, 1, 2, 3])
        self.assertEqual(self.store.getChunkStates('batch-1', fileId='other'), [])

    def testCompleteChunkCountsOnce(self):
        self.assertEqual(self.store.completeChunk('batch-1', 'file-1', 0, 10), 10)
        self.assertEqual(self.store.completeChunk('batch-1', 'file-1', 0, 10), 10)
        self.assertEqual(self.store.completeChunk('batch-1', 'file-1', 1, 10), 20)

        chunk = self.store.getChunkState('batch-1', 'file-1', 0)
        self.assertEqual(chunk.status, ChunkStatus.COMPLETED)
        self.assertTrue(chunk.uploaded)
        self.assertEqual(self.store.getUploadState('batch-1').uploadedSize, 20)

    def testConcurrentCompletionsDoNotLoseUpdates(self):
        """Workers completing chunks at the same time all land in uploadedSize."""
        state, chunks = makeState('batch-2', chunkCount=40, chunkSize=3)
        self.store.saveUploadState(state)
        self.store.saveChunkStates(chunks)

        def complete(indices):
            for i in indices:
                self.store.completeChunk('batch-2', 'file-1', i, 3)

        threads = [threading.Thread(target=complete, args=(range(n, 40, 4),)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(self.store.getUploadState('batch-2').uploadedSize, 120)

    def testFailChunkUntilAttemptsExhausted(self):
        first = self.store.failChunk('batch-1', 'file-1', 2, 'timeout', maxAttempts=3)
        self.assertEqual((first.status, first.attempts, first.error), (ChunkStatus.PENDING, 1, 'timeout'))

        self.store.failChunk('batch-1', 'file-1', 2, 'timeout', maxAttempts=3)
        last = self.store.failChunk('batch-1', 'file-1', 2, 'timeout', maxAttempts=3)
        self.assertEqual((last.status, last.attempts), (ChunkStatus.ERROR, 3))

    def testReleaseKeepsAttempts(self):
        self.store.failChunk('batch-1', 'file-1', 1, 'timeout', maxAttempts=3)
        self.store.markChunkUploading('batch-1', 'file-1', 1)
        released = self.store.releaseChunk('batch-1', 'file-1', 1)
        self.assertEqual((released.status, released.attempts), (ChunkStatus.PENDING, 1))

    def testPrepareResume(self):
        self.store.completeChunk('batch-1', 'file-1', 0, 10)
        self.store.markChunkUploading('batch-1', 'file-1', 1)
        self.store.failChunk('batch-1', 'file-1', 1, 'x', maxAttempts=3)
        self.store.markChunkUploading('batch-1', 'file-1', 1)
        for _ in range(3):
            self.store.failChunk('batch-1', 'file-1', 2, 'x', maxAttempts=3)

        pending = self.store.prepareResume('batch-1')

        self.assertEqual([c.chunkIndex for c in pending], [1, 2, 3])
        self.assertTrue(all(c.status == ChunkStatus.PENDING for c in pending))
        self.assertEqual([c.attempts for c in pending], [1, 0, 0])

    def testIncompleteUploadsIncludeFailedBatches(self):
        for batchId, status in (('done', TransferStatus.COMPLETED), ('failed', TransferStatus.ERROR)):
            state, _ = makeState(batchId)
            state.status = status
            self.store.saveUploadState(state)

        batchIds = {s.batchId for s in self.store.getIncompleteUploads()}
        self.assertEqual(batchIds, {'batch-1', 'failed'})

    def testDeleteUploadState(self):
        removed = self.store.deleteUploadState('batch-1')
        self.assertEqual(removed.batchId, 'batch-1')
        self.assertIsNone(self.store.getUploadState('batch-1'))
        self.assertEqual(self.store.getChunkStates('batch-1'), [])
        self.assertIsNone(self.store.deleteUploadState('batch-1'))

    def testDeleteUploadStateForgetsMetadata(self):
        self.store.saveMetadata('batch-1', self.state.metadata)
        self.store.deleteUploadState('batch-1')
        self.assertIsNone(self.store.getMetadata('batch-1'))

    def testMetadataCache(self):
        self.assertIsNone(self.store.getMetadata('batch-1'))
        self.store.saveMetadata('batch-1', self.state.metadata)
        self.assertEqual(self.store.getMetadata('batch-1'), self.state.metadata)

    def testCleanupOldUploads(self):
        old, oldChunks = makeState('old')
        self.store.saveUploadState(old)
        self.store.saveChunkStates(oldChunks)
        self.store.saveMetadata('old', old.metadata)

        later = time.time() + timedelta(days=8).total_seconds()
        removed = self.store.cleanupOldUploads(timedelta(days=7), now=later)

        self.assertEqual({s.batchId for s in removed}, {'batch-1', 'old'})
        self.assertEqual(self.store.listUploadStates(), [])
        self.assertEqual(self.store.getChunkStates('old'), [])
        self.assertIsNone(self.store.getMetadata('old'))

        self.assertEqual(self.store.cleanupOldUploads(timedelta(days=7)), [])

    def testCleanupJudgesMetadataByItsBatch(self):
        tenDaysAgo = time.time() - timedelta(days=10).total_seconds()
        with patch('bases.Store.time.time', return_value=tenDaysAgo):
            self.store.saveMetadata('batch-1', self.state.metadata)
            self.store.saveMetadata('orphan', self.state.metadata)

        self.assertEqual(self.store.cleanupOldUploads(timedelta(days=7)), [])
        self.assertEqual(self.store.getMetadata('batch-1'), self.state.metadata)
        self.assertIsNone(self.store.getMetadata('orphan'))

    def testPersistsAcrossConnections(self):
        with tempfile.TemporaryDirectory() as tempDir:
            path = os.path.join(tempDir, 'transfers.db')
            with TransferStore(path) as store:
                state, chunks = makeState()
                store.saveUploadState(state)
                store.saveChunkStates(chunks)
                store.completeChunk(state.batchId, 'file-1', 0, 10)

            with TransferStore(path) as store:
                self.assertEqual(store.getUploadState('batch-1').uploadedSize, 10)
                self.assertEqual(len(store.prepareResume('batch-1')), 3)


class FileMetadataTest(unittest.TestCase):

    def testOptionalChunkFields(self):
        plain = FileMetadata('id', 'a.txt', 'text/plain', 5)
        self.assertEqual(plain.toDict(), {'id': 'id', 'name': 'a.txt', 'type': 'text/plain', 'size': 5})
        self.assertEqual(FileMetadata.fromDict(plain.toDict()), plain)

        placed = FileMetadata('id', 'a.txt', 'text/plain', 5, chunkStart=2, chunkCount=1)
        self.assertEqual(FileMetadata.fromDict(placed.toDict()), placed)

    def testFromDictDefaults(self):
        meta = FileMetadata.fromDict({'id': 'x'})
        self.assertEqual((meta.name, meta.type, meta.size), ('x', 'application/octet-stream', 0))


if __name__ == '__main__':
    unittest.main()

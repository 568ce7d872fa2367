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

import http.client
import unittest

from datetime import timedelta

import requests

from urllib3 import encode_multipart_formdata

from bases.Kernel import PUBLIC_VERSION
from bases.Server import createServer, MULTIPART_OVERHEAD
from bases.Storage import MemoryStorage

MAX_CHUNK_SIZE = 1024


class ServerTest(unittest.TestCase):

    def setUp(self):
        self.storage = MemoryStorage(retryDelay=0)
        self.server = createServer(
            0, self.storage, maxChunkSize=MAX_CHUNK_SIZE, retention=timedelta(days=7), sweepInterval=0
        )
        self.server.startInThread()
        self.addCleanup(self.server.shutdown)

        self.baseURL = f'http://127.0.0.1:{self.server.port}/api'
        self.session = requests.Session()
        self.addCleanup(self.session.close)

    def upload(self, batchId, chunkIndex, data, field='chunk'):
        body, contentType = encode_multipart_formdata({field: ('blob', data, 'application/octet-stream')})
        return self.session.post(
            f'{self.baseURL}/upload/{batchId}/{chunkIndex}', data=body, headers={'Content-Type': contentType}
        )

    def testHealth(self):
        response = self.session.get(f'{self.baseURL}/health')
        self.assertEqual(response.json(), {'status': 'ok', 'version': PUBLIC_VERSION})

    def testCreateBatch(self):
        response = self.session.post(f'{self.baseURL}/batch')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(set(response.json()), {'id', 'createdAt', 'expiresAt'})

    def testUploadCheckDownload(self):
        data = bytes(range(256)) * 4

        response = self.upload('b1', 0, data)
        self.assertEqual(response.status_code, 200)
        result = response.json()
        self.assertTrue(result['success'])
        self.assertEqual((result['chunkIndex'], result['size']), (0, 1024))

        for route in ('upload', 'download'):
            with self.subTest(route=route):
                head = self.session.head(f'{self.baseURL}/{route}/b1/0')
                self.assertEqual(head.status_code, 200)
                self.assertEqual(head.headers['Content-Length'], '1024')
                self.assertEqual(head.headers['ETag'], f'"{result["etag"]}"')

        download = self.session.get(f'{self.baseURL}/download/b1/0')
        self.assertEqual(download.status_code, 200)
        self.assertEqual(download.content, data)

    def testBinaryPayloadSurvivesMultipart(self):
        data = b'\r\n--\r\n\x00\xff' * 50 + b'\r\n'
        self.assertEqual(self.upload('b1', 3, data).json()['size'], len(data))
        self.assertEqual(self.session.get(f'{self.baseURL}/download/b1/3').content, data)

    def testBatchInfoAndChunkListing(self):
        self.assertEqual(self.session.get(f'{self.baseURL}/batch/b1').status_code, 404)

        self.upload('b1', 1, b'y' * 10)
        self.upload('b1', 0, b'x' * 20)

        info = self.session.get(f'{self.baseURL}/batch/b1').json()
        self.assertEqual((info['id'], info['chunksCount'], info['totalSize']), ('b1', 2, 30))

        listing = self.session.get(f'{self.baseURL}/batch/b1/chunks').json()
        self.assertEqual([(c['index'], c['size']) for c in listing['chunks']], [(0, 20), (1, 10)])

    def testMissingChunk(self):
        self.assertEqual(self.session.head(f'{self.baseURL}/download/b1/7').status_code, 404)

        response = self.session.get(f'{self.baseURL}/download/b1/7')
        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.json()['success'])

    def testBadRequests(self):
        cases = (
            ('empty chunk', lambda: self.upload('b1', 0, b'')),
            ('bad index', lambda: self.upload('b1', 'x', b'abc')),
            ('negative index', lambda: self.session.get(f'{self.baseURL}/download/b1/-1')),
            ('wrong field', lambda: self.upload('b1', 0, b'abc', field='file')),
            ('not multipart', lambda: self.session.post(f'{self.baseURL}/upload/b1/0', data=b'abc')),
        )
        for name, send in cases:
            with self.subTest(name=name):
                response = send()
                self.assertEqual(response.status_code, 400)
                self.assertEqual(set(response.json()), {'success', 'error'})

    def testUnknownRoute(self):
        self.assertEqual(self.session.get(f'{self.baseURL}/nothing').status_code, 404)
        self.assertEqual(self.session.post(f'{self.baseURL}/batch/b1').status_code, 404)

    def testChunkTooLarge(self):
        response = self.upload('b1', 0, b'x' * (MAX_CHUNK_SIZE + 1))
        self.assertEqual(response.status_code, 413)
        self.assertFalse(self.storage.exists('b1/0'))

    def testOversizedBodyRejectedBeforeReading(self):
        connection = http.client.HTTPConnection('127.0.0.1', self.server.port, timeout=5)
        self.addCleanup(connection.close)

        connection.putrequest('POST', '/api/upload/b1/0')
        connection.putheader('Content-Type', 'multipart/form-data; boundary=x')
        connection.putheader('Content-Length', str(MAX_CHUNK_SIZE + MULTIPART_OVERHEAD + 1))
        connection.endheaders()

        response = connection.getresponse()
        self.assertEqual(response.status, 413)


if __name__ == '__main__':
    unittest.main()

#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: AGPL-3.0-or-later
#
# Filesh - Zero-knowledge chunked file transfer
# Copyright (C) 2025 Filesh contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

import email.parser
import email.policy
import io
import json
import re
import threading

from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlparse

from bases.Batch import BatchService, ChunkService, ObjectNotFoundError, ChunkTooLargeError
from bases.Kernel import getLogger, PUBLIC_VERSION
from bases.Settings import MAX_CHUNK_SIZE, RETENTION, EXPIRY_SWEEP_INTERVAL, StorageError
from bases.Storage import ObjectStorage, MemoryStorage

DOWNLOAD_CHUNK = 65535
MULTIPART_OVERHEAD = 64 * 1024 # Room for part headers and boundaries

logger = getLogger(__name__)

BATCH_ID = r'(?P<batchId>[^/]+)'
CHUNK_INDEX = r'(?P<chunkIndex>[^/]+)'


def _route(pattern):
    return re.compile(f'^/api/{pattern}/?$')


class ChunkHandler(BaseHTTPRequestHandler):

    protocol_version = 'HTTP/1.1'
    server_version = f'Filesh/{PUBLIC_VERSION}'

    headRoutes = [
        (_route(f'upload/{BATCH_ID}/{CHUNK_INDEX}'), '_handleCheckChunk'),
        (_route(f'download/{BATCH_ID}/{CHUNK_INDEX}'), '_handleCheckChunk'),
    ]
    getRoutes = [
        (_route('health'), '_handleHealth'),
        (_route(f'batch/{BATCH_ID}'), '_handleBatchInfo'),
        (_route(f'batch/{BATCH_ID}/chunks'), '_handleListChunks'),
        (_route(f'download/{BATCH_ID}/{CHUNK_INDEX}'), '_handleDownloadChunk'),
    ]
    postRoutes = [
        (_route('batch'), '_handleCreateBatch'),
        (_route(f'upload/{BATCH_ID}/{CHUNK_INDEX}'), '_handleUploadChunk'),
    ]

    def log_message(self, format, *args):
        logger.debug(f'[SERVER] {self.address_string()} {format % args}')

    # responses

    def _sendJSON(self, status, payload):
        body = json.dumps(payload).encode()
        self.send_response(status)
        self.send_header('Content-Type', 'application/json; charset=utf-8')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        if self.command != 'HEAD':
            self.wfile.write(body)

    def _sendError(self, status, message):
        self._sendJSON(status, {'success': False, 'error': message})

    def _dispatch(self, routes, *args):
        path = urlparse(self.path).path
        for pattern, name in routes:
            match = pattern.match(path)
            if match:
                break
        else:
            self._sendError(HTTPStatus.NOT_FOUND, 'Not Found')
            return

        try:
            getattr(self, name)(*args, **match.groupdict())
        except ValueError as e:
            self._sendError(HTTPStatus.BAD_REQUEST, str(e))
        except (ObjectNotFoundError, FileNotFoundError) as e:
            self._sendError(HTTPStatus.NOT_FOUND, str(e))
        except ChunkTooLargeError as e:
            self._sendError(HTTPStatus.REQUEST_ENTITY_TOO_LARGE, str(e))
        except StorageError as e:
            logger.error(f'[SERVER] {self.command} {path}: {e}')
            self._sendError(HTTPStatus.INTERNAL_SERVER_ERROR, str(e))
        except (BrokenPipeError, ConnectionResetError):
            logger.debug(f'[SERVER] Client went away during {self.command} {path}')
            self.close_connection = True

    def do_HEAD(self):
        self._dispatch(self.headRoutes)

    def do_GET(self):
        self._dispatch(self.getRoutes)

    def do_POST(self):
        try:
            length = int(self.headers.get('Content-Length', '0'))
        except ValueError:
            self.close_connection = True
            self._sendError(HTTPStatus.BAD_REQUEST, 'Invalid Content-Length')
            return

        if length > self.server.chunkService.maxChunkSize + MULTIPART_OVERHEAD:
            # The body stays unread, so the connection cannot be reused
            self.close_connection = True
            self._sendError(HTTPStatus.REQUEST_ENTITY_TOO_LARGE, f'Request body of {length} bytes is too large')
            return

        body = self.rfile.read(length) if length else b''
        self._dispatch(self.postRoutes, body)

    # batch

    def _handleHealth(self):
        self._sendJSON(HTTPStatus.OK, {'status': 'ok', 'version': PUBLIC_VERSION})

    def _handleCreateBatch(self, body):
        self._sendJSON(HTTPStatus.OK, self.server.batchService.createBatch())

    def _handleBatchInfo(self, batchId):
        self._sendJSON(HTTPStatus.OK, self.server.batchService.getBatchInfo(batchId))

    def _handleListChunks(self, batchId):
        self._sendJSON(HTTPStatus.OK, self.server.batchService.listChunks(batchId))

    # chunk

    def _readChunkField(self, body) -> bytes:
        contentType = self.headers.get('Content-Type', '')
        if not contentType.startswith('multipart/form-data'):
            raise ValueError('Expected a multipart/form-data body')

        message = email.parser.BytesParser(policy=email.policy.HTTP).parsebytes(
            b'Content-Type: ' + contentType.encode('latin-1') + b'\r\n\r\n' + body
        )
        if not message.is_multipart():
            raise ValueError('Malformed multipart body')

        for part in message.iter_parts():
            if part.get_param('name', header='content-disposition') == 'chunk':
                return part.get_payload(decode=True) or b''
        raise ValueError("No 'chunk' field in upload")

    def _handleUploadChunk(self, body, batchId, chunkIndex):
        chunkIndex = self.server.chunkService.parseChunkIndex(chunkIndex)
        data = self._readChunkField(body)

        result = self.server.chunkService.uploadChunk(batchId, chunkIndex, io.BytesIO(data), len(data))
        self._sendJSON(HTTPStatus.OK, result)

    def _handleCheckChunk(self, batchId, chunkIndex):
        chunkIndex = self.server.chunkService.parseChunkIndex(chunkIndex)
        info = self.server.chunkService.checkChunk(batchId, chunkIndex)

        if info is None:
            self.send_response(HTTPStatus.NOT_FOUND)
            self.send_header('Content-Length', '0')
            self.end_headers()
            return

        self.send_response(HTTPStatus.OK)
        self.send_header('Content-Type', 'application/octet-stream')
        self.send_header('Content-Length', str(info.size))
        self.send_header('ETag', f'"{info.etag}"')
        self.end_headers()

    def _handleDownloadChunk(self, batchId, chunkIndex):
        chunkIndex = self.server.chunkService.parseChunkIndex(chunkIndex)
        reader, info = self.server.chunkService.downloadChunk(batchId, chunkIndex)

        with reader:
            self.send_response(HTTPStatus.OK)
            self.send_header('Content-Type', 'application/octet-stream')
            self.send_header('Content-Length', str(info.size))
            self.send_header('ETag', f'"{info.etag}"')
            self.end_headers()

            while True:
                block = reader.read(DOWNLOAD_CHUNK)
                if not block:
                    break
                self.wfile.write(block)

        logger.debug(f'[SERVER] Served chunk {chunkIndex} of batch {batchId}, {info.size} bytes')


class Server(ThreadingHTTPServer):

    request_queue_size = 32
    allow_reuse_address = True
    daemon_threads = True

    def __init__(
        self,
        serverAddress,
        storage: ObjectStorage,
        requestHandlerClass=None,
        maxChunkSize=MAX_CHUNK_SIZE,
        retention=RETENTION,
        sweepInterval=EXPIRY_SWEEP_INTERVAL,
    ):
        self.storage = storage
        self.batchService = BatchService(storage, retention)
        self.chunkService = ChunkService(storage, maxChunkSize)
        self.sweepInterval = sweepInterval
        self.stopEvent = threading.Event()

        super().__init__(serverAddress, requestHandlerClass or ChunkHandler)

    @property
    def port(self):
        return self.server_address[1]

    def serve_forever(self, pollInterval=0.5):
        """Serve until shutdown, purging expired batches every sweepInterval seconds."""

        def expirySweeper():
            while not self.stopEvent.wait(self.sweepInterval):
                try:
                    self.batchService.purgeExpired()
                except (OSError, StorageError) as e:
                    logger.error(f'[SERVER] Expiry sweep failed: {e}')

        if self.sweepInterval > 0:
            threading.Thread(target=expirySweeper, name='filesh-expiry', daemon=True).start()

        super().serve_forever(pollInterval)

    def handle_error(self, request, client_address):
        logger.exception(f'[SERVER] Error while handling request from {client_address[0]}')

    def start(self):
        logger.info(f'[SERVER] Listening on {self.server_address[0]}:{self.port}')
        self.serve_forever()

    def startInThread(self) -> threading.Thread:
        thread = threading.Thread(target=self.serve_forever, name='filesh-server', daemon=True)
        thread.start()
        return thread

    def shutdown(self):
        self.stopEvent.set()
        super().shutdown()
        self.server_close()


def createServer(port, storage: ObjectStorage = None, host='127.0.0.1', handlerClass=None, **kwargs):
    # Factory function to create a Server bound to host:port, port 0 picks a free one
    if storage is None:
        storage = MemoryStorage()
    return Server((host, port), storage, handlerClass, **kwargs)

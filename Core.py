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

import json
import os
import platform
import sys
import threading

from datetime import datetime, timedelta
from urllib.parse import urlparse

import requests

from bases.API import FileshAPI
from bases.CLI import (
    configureCLIParser, configureLogging, loadEnvFile, showVersion, EXIT_OK, EXIT_FAILURE, EXIT_INTERRUPTED
)
from bases.Kernel import getLogger
from bases.Progress import UploadProgress, DownloadProgress
from bases.Server import createServer
from bases.Settings import (
    DEFAULT_SERVER, SHARE_BASE_URL, SettingsGetter, APIError, BatchExhaustedError, DecryptionError, EncryptionError,
    ShareLinkError, TransferError, TransferAbortedError
)
from bases.ShareLink import decodeShareLink
from bases.Storage import FileSystemStorage
from bases.Store import TransferStore, TransferStatus
from bases.Transfer import UploadManager, DownloadManager
from bases.Utils import flushPrint, formatSize, sendException

logger = getLogger(__name__)

JOIN_INTERVAL = 0.2 # Seconds


def setupSettings():
    # Load .env file before anything reads the environment
    loadEnvFile()
    return SettingsGetter(baseDir=os.path.dirname(os.path.abspath(__file__)), platform=platform.system())


def runInterruptible(target, onInterrupt):
    """
    Run target in a worker thread so Ctrl+C reaches the main thread; on Ctrl+C call
    onInterrupt and wait for target to wind down.

    Returns:
        tuple: (result of target, True if interrupted)
    """
    outcome = {}

    def runner():
        try:
            outcome['value'] = target()
        except BaseException as e:
            outcome['error'] = e

    thread = threading.Thread(target=runner, name='filesh-transfer', daemon=True)
    thread.start()

    interrupted = False
    while thread.is_alive():
        try:
            thread.join(JOIN_INTERVAL)
        except KeyboardInterrupt:
            if interrupted:
                raise
            interrupted = True
            flushPrint('\nPausing, press Ctrl+C again to quit immediately...')
            onInterrupt()

    if 'error' in outcome:
        raise outcome['error']
    return outcome.get('value'), interrupted


def writeJSON(path, payload):
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(payload, f, indent=2)


def shareBaseFor(serverURL):
    # Links point at the server the batch lives on unless FILESH_SHARE_BASE names a front end for the default one
    return SHARE_BASE_URL if serverURL.rstrip('/') == DEFAULT_SERVER.rstrip('/') else serverURL


def runUpload(manager: UploadManager, batchId, args):
    state = manager.store.getUploadState(batchId)
    progress = UploadProgress(
        batchId, state.totalSize, state.uploadedSize, useBar=args.progress, loggerCallback=flushPrint
    )

    try:
        with progress:
            state, interrupted = runInterruptible(lambda: manager.run(batchId), lambda: manager.pause(batchId))
    except BatchExhaustedError as e:
        sendException(
            logger, e, action=f'Check your connection, then retry the failed chunks with: filesh resume {batchId}'
        )
        return EXIT_FAILURE

    if interrupted or state.status == TransferStatus.PAUSED:
        flushPrint(f'Upload paused at {state.progress * 100:.1f}%. Resume with: filesh resume {batchId}')
        return EXIT_INTERRUPTED

    link = manager.getShareLink(batchId)
    flushPrint(f'Share link: {link}')
    if getattr(args, 'json', None):
        writeJSON(args.json, {'batchId': batchId, 'link': link, 'files': [m.toDict() for m in state.metadata]})
    return EXIT_OK


def processUpload(args, store, settingsGetter):
    serverURL = args.server or DEFAULT_SERVER
    manager = UploadManager(
        store,
        FileshAPI(serverURL, chunkSize=args.chunkSize),
        settingsGetter.getSpoolDir(),
        chunkSize=args.chunkSize,
        maxConcurrency=args.concurrency,
        shareBaseURL=shareBaseFor(serverURL),
    )

    try:
        state = manager.createBatch(args.files)
    except (FileNotFoundError, EncryptionError) as e:
        sendException(logger, e, action='Check that the files exist and are readable.')
        return EXIT_FAILURE
    except APIError as e:
        sendException(logger, e, action=f'Check that the server {serverURL} is reachable.')
        return EXIT_FAILURE

    flushPrint(f'Uploading {len(state.fileIds)} file(s), {formatSize(state.totalSize)} as batch {state.batchId}')
    return runUpload(manager, state.batchId, args)


def processResume(args, store, settingsGetter):
    state = store.getUploadState(args.batchId)
    if state is None:
        flushPrint(f'No upload with batch id {args.batchId}, see `filesh list`')
        return EXIT_FAILURE

    serverURL = args.server or state.serverURL or DEFAULT_SERVER
    manager = UploadManager(
        store,
        FileshAPI(serverURL, chunkSize=state.chunkSize),
        settingsGetter.getSpoolDir(),
        chunkSize=state.chunkSize,
        maxConcurrency=args.concurrency,
        shareBaseURL=shareBaseFor(serverURL),
    )
    return runUpload(manager, state.batchId, args)


def processList(args, store):
    states = store.getIncompleteUploads()
    if not states:
        flushPrint('No unfinished uploads.')
        return EXIT_OK

    for state in states:
        updated = datetime.fromtimestamp(state.updatedAt).strftime('%Y-%m-%d %H:%M')
        names = ', '.join(m.name for m in state.metadata)
        flushPrint(
            f'{state.batchId}  {state.status.value:<9} {state.progress * 100:5.1f}%  '
            f'{formatSize(state.totalSize):>8}  {updated}  {names}'
        )
        if state.error:
            flushPrint(f'    {state.error}')
    return EXIT_OK


def processCancel(args, store, settingsGetter):
    manager = UploadManager(store, FileshAPI(args.server or DEFAULT_SERVER), settingsGetter.getSpoolDir())
    if manager.cancel(args.batchId) is None:
        flushPrint(f'No upload with batch id {args.batchId}')
        return EXIT_FAILURE

    flushPrint(f'Cancelled {args.batchId}')
    return EXIT_OK


def processCleanup(args, store, settingsGetter):
    manager = UploadManager(store, FileshAPI(args.server or DEFAULT_SERVER), settingsGetter.getSpoolDir())
    removed = manager.cleanup(timedelta(days=args.days))
    flushPrint(f'Removed {len(removed)} stale upload(s)')
    return EXIT_OK


def processDownload(args, store):
    try:
        link = decodeShareLink(args.url, store)
    except ShareLinkError as e:
        sendException(logger, e, action='Check that the whole link was copied.')
        return EXIT_FAILURE

    if not link.hasKey:
        flushPrint('The link does not carry a decryption key, ask the sender for the full link.')
        return EXIT_FAILURE

    if args.server:
        serverURL = args.server
    else:
        parsed = urlparse(args.url)
        serverURL = f'{parsed.scheme}://{parsed.netloc}' if parsed.netloc else DEFAULT_SERVER

    manager = DownloadManager(
        FileshAPI(serverURL), maxConcurrency=args.concurrency, allowRecovery=args.allowRecovery
    )

    try:
        with DownloadProgress(link.batchId, useBar=args.progress, loggerCallback=flushPrint):
            outputs, interrupted = runInterruptible(
                lambda: manager.download(link.batchId, link.key, link.metadata, args.output), manager.pause
            )
    except DecryptionError as e:
        sendException(logger, e, action='The data is damaged or the link is wrong; download the file again.')
        return EXIT_FAILURE
    except TransferAbortedError:
        flushPrint('Download interrupted.')
        return EXIT_INTERRUPTED
    except (TransferError, BatchExhaustedError) as e:
        sendException(logger, e, action='The batch may have expired or the server is unreachable.')
        return EXIT_FAILURE

    for path in outputs:
        flushPrint(f'Downloaded: {path}')
    return EXIT_OK


def processServe(args, settingsGetter):
    storage = FileSystemStorage(args.storageDir or settingsGetter.getObjectsDir())
    server = createServer(args.port, storage, host=args.host, maxChunkSize=args.maxChunkSize)

    flushPrint(f'Serving {storage.root} on http://{args.host}:{server.port}')
    try:
        server.start()
    except KeyboardInterrupt:
        flushPrint('\nStopping server...')
    finally:
        server.stopEvent.set()
        server.server_close()
    return EXIT_OK


def main(argv=None):
    settingsGetter = setupSettings()

    parser = configureCLIParser()
    args = parser.parse_args(argv)
    configureLogging(getattr(args, 'logLevel', None))

    if args.version:
        showVersion()
        return EXIT_OK

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    if args.command == 'serve':
        return processServe(args, settingsGetter)

    with TransferStore(settingsGetter.getStorePath()) as store:
        if args.command == 'upload':
            return processUpload(args, store, settingsGetter)
        if args.command == 'resume':
            return processResume(args, store, settingsGetter)
        if args.command == 'list':
            return processList(args, store)
        if args.command == 'cancel':
            return processCancel(args, store, settingsGetter)
        if args.command == 'cleanup':
            return processCleanup(args, store, settingsGetter)
        if args.command == 'download':
            return processDownload(args, store)

    parser.print_help()
    return EXIT_FAILURE


def run():
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
        sys.exit(EXIT_INTERRUPTED)
    except (requests.exceptions.ConnectionError, ConnectionError):
        sendException(logger, 'Failed to connect server')
        sys.exit(EXIT_FAILURE)
    except Exception as e:
        sendException(logger, e)
        sys.exit(EXIT_FAILURE)


if __name__ == '__main__':
    run()

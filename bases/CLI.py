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

import argparse
import json
import os
import logging
import logging.config
import platform

from bases.Kernel import PUBLIC_VERSION, LOG_LEVEL_MAPPING, getLogger, configureGlobalLogLevel, StorageLocator
from bases.Settings import (
    DEFAULT_SERVER, CHUNK_SIZE, MAX_PARALLEL_UPLOADS, MAX_PARALLEL_DOWNLOADS, MAX_CHUNK_SIZE, RETENTION
)
from bases.Utils import flushPrint, formatSize, getEnv, SUPPORT_URL

logger = getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def loadEnvFile():
    """
    Load KEY=VALUE lines from the .env file found by StorageLocator into os.environ.
    Variables already present in the environment win.
    """
    envFilePath = StorageLocator.getInstance().findStorage('.env')
    if not os.path.exists(envFilePath):
        return 0

    loadedCount = 0
    try:
        with open(envFilePath, 'r', encoding='utf-8') as f:
            for lineNum, line in enumerate(f, 1):
                line = line.strip()
                if not line or line.startswith('#'):
                    continue

                key, sep, value = line.partition('=')
                key, value = key.strip(), value.strip()
                if not sep or not key:
                    logger.warning(f'.env line {lineNum}: expected KEY=VALUE, got {line!r}')
                    continue

                if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                    value = value[1:-1]

                if key in os.environ:
                    logger.debug(f'.env: Skipped {key} (already set in environment)')
                    continue

                os.environ[key] = value
                loadedCount += 1
    except OSError as e:
        logger.error(f'Unable to read .env file {envFilePath}: {e}')
        return 0

    logger.debug(f'Loaded {loadedCount} environment variables from {envFilePath}')
    return loadedCount


def configureLogging(logLevel):
    """
    Apply --log-level, falling back to FILESH_LOGGING_LEVEL.

    Either value may be a level name or the path of a logging.config JSON file.
    """

    def suppressNoisyLogger():
        logging.getLogger('urllib3').setLevel(logging.INFO)
        logging.getLogger('urllib3.connectionpool').setLevel(logging.INFO)
        logging.getLogger('sentry_sdk').setLevel(logging.INFO)

    if logLevel is None:
        logLevel = getEnv('FILESH_LOGGING_LEVEL', None)

    if logLevel is None:
        suppressNoisyLogger()
        return None

    if os.path.isfile(logLevel):
        try:
            with open(logLevel, 'r') as configFile:
                logging.config.dictConfig(json.load(configFile))
            logger.info(f'Logging configured from file: {logLevel}')
            suppressNoisyLogger()
            return logLevel
        except (json.JSONDecodeError, ValueError, KeyError) as e:
            flushPrint(f'Failed to load logging config from {logLevel}: {e}')

    level = LOG_LEVEL_MAPPING.get(logLevel.upper())
    if level is None:
        logger.warning(f"Invalid logging level '{logLevel}', using WARNING as default")
        level = logging.WARNING
    configureGlobalLogLevel(level)

    suppressNoisyLogger()
    return logLevel


def showVersion():
    flushPrint(f'Filesh v{PUBLIC_VERSION}')
    uname = platform.uname()
    flushPrint(f'Architecture: {uname.system} {uname.release} {uname.machine}')
    flushPrint(f'Support: {SUPPORT_URL}')


def configureCLIParser():
    """
    Build the command line parser.

    Returns:
        argparse.ArgumentParser: Parser whose subcommand lands in args.command
    """

    def validateLogLevel(logLevel):
        if os.path.exists(logLevel):
            return logLevel
        if logLevel.upper() not in LOG_LEVEL_MAPPING:
            raise argparse.ArgumentTypeError(
                f"Invalid log level '{logLevel}'. Valid levels are: {', '.join(LOG_LEVEL_MAPPING)}"
            )
        return logLevel.upper()

    def positiveInt(valueStr):
        try:
            value = int(valueStr)
        except ValueError:
            raise argparse.ArgumentTypeError(f"'{valueStr}' is not an integer")
        if value < 1:
            raise argparse.ArgumentTypeError(f'Value must be at least 1, got {value}')
        return value

    def megabytes(valueStr):
        return positiveInt(valueStr) * 1024 * 1024

    globalsParent = argparse.ArgumentParser(add_help=False)
    globalsParent.add_argument(
        '--log-level',
        type=validateLogLevel,
        help='Set logging level (DEBUG, INFO, WARNING, ERROR) or path to logging config JSON file',
        metavar='LEVEL_OR_FILE',
        dest='logLevel'
    )
    globalsParent.add_argument(
        '--server', metavar='URL',
        help=f'Filesh server (default: {DEFAULT_SERVER}, or the host of the share link when downloading)'
    )

    parser = argparse.ArgumentParser(
        prog='filesh', description='Filesh transfers files end-to-end encrypted, in resumable chunks.'
    )
    parser.add_argument('--version', action='store_true', help='Show version information')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    uploadParser = subparsers.add_parser('upload', help='Encrypt and upload files', parents=[globalsParent])
    uploadParser.add_argument('files', nargs='+', metavar='FILE', help='Files to upload as one batch')
    uploadParser.add_argument(
        '--chunk-size', type=megabytes, default=CHUNK_SIZE, dest='chunkSize', metavar='MB',
        help=f'Transport chunk size in MB (default: {formatSize(CHUNK_SIZE)})'
    )
    uploadParser.add_argument(
        '--concurrency', type=positiveInt, default=MAX_PARALLEL_UPLOADS, metavar='N',
        help=f'Chunks uploaded in parallel (default: {MAX_PARALLEL_UPLOADS})'
    )
    uploadParser.add_argument('--json', metavar='JSON_FILE', help='Also write the share link and batch to a JSON file')
    uploadParser.add_argument('--progress', action='store_true', help='Show a progress bar')

    resumeParser = subparsers.add_parser('resume', help='Resume an interrupted upload', parents=[globalsParent])
    resumeParser.add_argument('batchId', metavar='BATCH', help='Batch id shown by `filesh list`')
    resumeParser.add_argument(
        '--concurrency', type=positiveInt, default=MAX_PARALLEL_UPLOADS, metavar='N',
        help=f'Chunks uploaded in parallel (default: {MAX_PARALLEL_UPLOADS})'
    )
    resumeParser.add_argument('--progress', action='store_true', help='Show a progress bar')

    subparsers.add_parser('list', help='List uploads that have not completed', parents=[globalsParent])

    cancelParser = subparsers.add_parser('cancel', help='Forget an upload and its local files', parents=[globalsParent])
    cancelParser.add_argument('batchId', metavar='BATCH')

    downloadParser = subparsers.add_parser('download', help='Download files from a share link', parents=[globalsParent])
    downloadParser.add_argument('url', metavar='URL', help='Share link')
    downloadParser.add_argument('--output', '-o', metavar='DIR', default='.', help='Output directory (default: .)')
    downloadParser.add_argument(
        '--concurrency', type=positiveInt, default=MAX_PARALLEL_DOWNLOADS, metavar='N',
        help=f'Chunks downloaded in parallel (default: {MAX_PARALLEL_DOWNLOADS})'
    )
    downloadParser.add_argument(
        '--allow-recovery', action='store_true', dest='allowRecovery',
        help='Try known repairs of damaged ciphertext before giving up (logged as warnings)'
    )
    downloadParser.add_argument('--progress', action='store_true', help='Show a progress bar')

    cleanupParser = subparsers.add_parser('cleanup', help='Remove stale upload records', parents=[globalsParent])
    cleanupParser.add_argument(
        '--days', type=positiveInt, default=RETENTION.days, metavar='DAYS',
        help=f'Remove uploads untouched for this many days (default: {RETENTION.days})'
    )

    serveParser = subparsers.add_parser('serve', help='Run the chunk storage server', parents=[globalsParent])
    serveParser.add_argument('--host', default='127.0.0.1', help='Address to bind (default: 127.0.0.1)')
    serveParser.add_argument('--port', type=int, default=8080, help='Port to listen on (default: 8080)')
    serveParser.add_argument('--storage-dir', dest='storageDir', metavar='DIR', help='Directory for stored chunks')
    serveParser.add_argument(
        '--max-chunk-mb', type=megabytes, default=MAX_CHUNK_SIZE, dest='maxChunkSize', metavar='MB',
        help=f'Largest accepted chunk (default: {formatSize(MAX_CHUNK_SIZE)})'
    )

    return parser

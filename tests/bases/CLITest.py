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

import hashlib
import json
import os
import subprocess
import sys
import tempfile
import unittest

from unittest.mock import patch

import Core

from bases.CLI import configureCLIParser, EXIT_OK, EXIT_FAILURE
from bases.Kernel import PUBLIC_VERSION
from bases.Server import createServer
from bases.Settings import CHUNK_SIZE
from bases.Storage import MemoryStorage
from bases.Store import TransferStore, TransferStatus
from bases.Utils import getAvailablePort

from . import TEST_STORAGE_DIR


class CLIArgumentParsingTest(unittest.TestCase):
    """Argument parsing, in-process and through Core.py"""

    def setUp(self):
        self.parser = configureCLIParser()

    def _runCoreWithArgs(self, args):
        command = [sys.executable, os.path.join(os.path.dirname(__file__), '..', '..', 'Core.py'), *args]

        env = os.environ.copy()
        env['FILESH_STORAGE_LOCATION'] = TEST_STORAGE_DIR
        result = subprocess.run(command, capture_output=True, text=True, timeout=30, env=env)
        return result.stdout + result.stderr, result.returncode

    def testUploadDefaults(self):
        args = self.parser.parse_args(['upload', 'a.bin', 'b.bin'])
        self.assertEqual(args.command, 'upload')
        self.assertEqual(args.files, ['a.bin', 'b.bin'])
        self.assertEqual(args.chunkSize, CHUNK_SIZE)
        self.assertIsNone(args.server)
        self.assertFalse(args.progress)

    def testGlobalOptionsAfterCommand(self):
        args = self.parser.parse_args(
            ['download', 'https://h/?batch=b', '-o', 'out', '--server', 'http://s', '--log-level', 'debug']
        )
        self.assertEqual(args.url, 'https://h/?batch=b')
        self.assertEqual((args.output, args.server, args.logLevel), ('out', 'http://s', 'DEBUG'))
        self.assertFalse(args.allowRecovery)

    def testConversions(self):
        self.assertEqual(self.parser.parse_args(['upload', 'f', '--chunk-size', '8']).chunkSize, 8 * 1024 * 1024)
        self.assertEqual(self.parser.parse_args(['serve', '--max-chunk-mb', '2']).maxChunkSize, 2 * 1024 * 1024)
        self.assertEqual(self.parser.parse_args(['cleanup', '--days', '3']).days, 3)

    def testInvalidArguments(self):
        cases = [
            ['upload'],
            ['upload', 'f', '--chunk-size', '0'],
            ['upload', 'f', '--concurrency', 'many'],
            ['resume'],
            ['download', 'url', '--log-level', 'LOUD'],
            ['explode'],
        ]
        for argv in cases:
            with self.subTest(argv=argv):
                with patch('sys.stderr'), self.assertRaises(SystemExit) as ctx:
                    self.parser.parse_args(argv)
                self.assertEqual(ctx.exception.code, 2)

    def testVersion(self):
        output, returnCode = self._runCoreWithArgs(['--version'])
        self.assertEqual(returnCode, 0, output)
        self.assertIn(f'Filesh v{PUBLIC_VERSION}', output)

    def testHelp(self):
        output, returnCode = self._runCoreWithArgs([])
        self.assertEqual(returnCode, 0, output)
        self.assertIn('usage:', output.lower())
        for command in ('upload', 'resume', 'list', 'cancel', 'download', 'cleanup', 'serve'):
            self.assertIn(command, output)


class CoreCommandTest(unittest.TestCase):
    """Commands run through Core.main against an in-process server."""

    def setUp(self):
        self.server = createServer(getAvailablePort(), MemoryStorage(retryDelay=0), sweepInterval=0)
        self.server.startInThread()
        self.addCleanup(self.server.shutdown)
        self.serverURL = f'http://127.0.0.1:{self.server.port}'

        tempDir = tempfile.TemporaryDirectory(prefix='filesh-cli-')
        self.addCleanup(tempDir.cleanup)
        self.tempDir = tempDir.name

        self.printed = []
        printer = patch('Core.flushPrint', side_effect=self.printed.append)
        printer.start()
        self.addCleanup(printer.stop)

    def tearDown(self):
        with TransferStore(os.path.join(TEST_STORAGE_DIR, 'transfers.db')) as store:
            for state in store.listUploadStates():
                store.deleteUploadState(state.batchId)

    def writeFile(self, name, size):
        path = os.path.join(self.tempDir, name)
        with open(path, 'wb') as f:
            f.write(os.urandom(size))
        return path

    def shareLink(self):
        links = [line for line in self.printed if line.startswith('Share link: ')]
        self.assertEqual(len(links), 1, self.printed)
        return links[0][len('Share link: '):]

    def testUploadThenDownload(self):
        path = self.writeFile('report.bin', 3 * 1024 * 1024 + 5)
        jsonPath = os.path.join(self.tempDir, 'upload.json')

        code = Core.main(['upload', path, '--server', self.serverURL, '--chunk-size', '1', '--json', jsonPath])
        self.assertEqual(code, EXIT_OK, self.printed)

        link = self.shareLink()
        self.assertTrue(link.startswith(self.serverURL))
        with open(jsonPath) as f:
            self.assertEqual(json.load(f)['link'], link)

        outputDir = os.path.join(self.tempDir, 'out')
        self.assertEqual(Core.main(['download', link, '-o', outputDir]), EXIT_OK, self.printed)

        with open(path, 'rb') as original, open(os.path.join(outputDir, 'report.bin'), 'rb') as downloaded:
            self.assertEqual(hashlib.sha256(downloaded.read()).digest(), hashlib.sha256(original.read()).digest())

        self.printed.clear()
        self.assertEqual(Core.main(['list']), EXIT_OK)
        self.assertEqual(self.printed, ['No unfinished uploads.'])

    def testListResumeAndCancel(self):
        path = self.writeFile('paused.bin', 1000)

        with TransferStore(os.path.join(TEST_STORAGE_DIR, 'transfers.db')) as store:
            manager = Core.UploadManager(
                store, Core.FileshAPI(self.serverURL), os.path.join(TEST_STORAGE_DIR, 'spool'), chunkSize=1024
            )
            state = manager.createBatch([path])
            manager.pause(state.batchId)

        self.assertEqual(Core.main(['list']), EXIT_OK)
        self.assertEqual(len(self.printed), 1)
        self.assertTrue(self.printed[0].startswith(f'{state.batchId}  paused'))
        self.assertIn('paused.bin', self.printed[0])

        self.assertEqual(Core.main(['resume', state.batchId]), EXIT_OK, self.printed)
        self.assertTrue(self.shareLink().startswith(self.serverURL))

        with TransferStore(os.path.join(TEST_STORAGE_DIR, 'transfers.db')) as store:
            self.assertEqual(store.getUploadState(state.batchId).status, TransferStatus.COMPLETED)

        self.assertEqual(Core.main(['cancel', state.batchId]), EXIT_OK)
        self.assertEqual(Core.main(['cancel', state.batchId]), EXIT_FAILURE)
        self.assertEqual(Core.main(['resume', state.batchId]), EXIT_FAILURE)

    @patch('bases.Utils.flushPrint')
    def testFailures(self, utilsPrint):
        missing = os.path.join(self.tempDir, 'missing.bin')

        with self.assertLogs('Core', 'ERROR'):
            self.assertEqual(Core.main(['upload', missing, '--server', self.serverURL]), EXIT_FAILURE)

        with self.assertLogs('Core', 'ERROR'):
            self.assertEqual(Core.main(['download', f'{self.serverURL}/?key=abc']), EXIT_FAILURE)

        keyless = f'{self.serverURL}/?batch=unknown'
        self.assertEqual(Core.main(['download', keyless]), EXIT_FAILURE)
        self.assertIn('decryption key', self.printed[-1])


if __name__ == '__main__':
    unittest.main()

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
Unit tests for the stream cipher and the reassembly engine.
"""

import hashlib
import io
import os
import tempfile
import unittest

from bases.Chunker import split
from bases.crypto import AuthenticationFailure, CryptoInterface
from bases.E2EE import (
    KeyManager, StreamEncryptor, ChunkedDecryptor, encrypt, decrypt, cipherStreamSize, plainSize
)
from bases.Settings import DecryptionError, EncryptionError, NONCE_SIZE, TAG_SIZE


def sha256(data):
    return hashlib.sha256(data).hexdigest()


class KeyManagerTest(unittest.TestCase):

    def testGenerateKey(self):
        key = KeyManager.generateKey()
        self.assertEqual(len(key), 32)
        self.assertNotEqual(key, KeyManager.generateKey())

    def testExportImport(self):
        key = KeyManager.generateKey()
        exported = KeyManager.exportKey(key)
        self.assertIsInstance(exported, str)
        self.assertEqual(KeyManager.importKey(exported), key)

    def testImportRejectsBadKeys(self):
        for text in ('not base64!', 'AAAA', KeyManager.exportKey(os.urandom(32))[:-4]):
            with self.subTest(text=text):
                with self.assertRaises(ValueError):
                    KeyManager.importKey(text)


class StreamEncryptorTest(unittest.TestCase):

    def setUp(self):
        self.key = KeyManager.generateKey()

    def testStreamLayout(self):
        plaintext = os.urandom(100)
        stream = encrypt(plaintext, self.key)
        self.assertEqual(len(stream), cipherStreamSize(len(plaintext)))
        self.assertEqual(plainSize(len(stream)), len(plaintext))

    def testEmptyPlaintext(self):
        stream = encrypt(b'', self.key)
        self.assertEqual(len(stream), NONCE_SIZE + TAG_SIZE)
        self.assertEqual(decrypt([stream], self.key), b'')

    def testNonceIsFreshEveryTime(self):
        """Encrypting the same content twice under one key gives different streams."""
        plaintext = b'same content' * 100
        first, second = encrypt(plaintext, self.key), encrypt(plaintext, self.key)
        self.assertNotEqual(first[:NONCE_SIZE], second[:NONCE_SIZE])
        self.assertNotEqual(first, second)

    def testSegmentedStreamMatchesOneShotFormat(self):
        """Feeding the file in small segments still produces one decryptable AEAD stream."""
        plaintext = os.urandom(10000)
        encryptor = StreamEncryptor(self.key, readSegmentSize=333)

        sink = io.BytesIO()
        written = encryptor.encryptStream(io.BytesIO(plaintext), sink)
        stream = sink.getvalue()

        self.assertEqual(written, len(stream))
        self.assertEqual(len(stream), cipherStreamSize(len(plaintext)))
        self.assertEqual(decrypt([stream], self.key), plaintext)

    def testEncryptFile(self):
        plaintext = os.urandom(4096)
        with tempfile.TemporaryDirectory() as tempDir:
            sourcePath = os.path.join(tempDir, 'plain.bin')
            outputPath = os.path.join(tempDir, 'plain.enc')
            with open(sourcePath, 'wb') as f:
                f.write(plaintext)

            size = StreamEncryptor(self.key, readSegmentSize=1000).encryptFile(sourcePath, outputPath)
            with open(outputPath, 'rb') as f:
                stream = f.read()

        self.assertEqual(size, len(stream))
        self.assertEqual(decrypt(split(stream, 700), self.key), plaintext)

    def testInvalidKey(self):
        with self.assertRaises(EncryptionError):
            StreamEncryptor(b'short')


class ChunkedDecryptorTest(unittest.TestCase):

    def setUp(self):
        self.key = KeyManager.generateKey()

    def testRoundTripForChunkSizes(self):
        """decrypt(split(encrypt(F, K)), K) == F for any chunk size."""
        for size in (0, 1, 17, 1024, 65537):
            plaintext = os.urandom(size)
            stream = encrypt(plaintext, self.key)
            for chunkSize in (1, 13, 1024, len(stream), len(stream) + 5):
                with self.subTest(size=size, chunkSize=chunkSize):
                    self.assertEqual(sha256(decrypt(split(stream, chunkSize), self.key)), sha256(plaintext))

    def testTamperDetection(self):
        """Flipping any single bit of any chunk fails authentication."""
        plaintext = os.urandom(24)
        stream = encrypt(plaintext, self.key)

        for position in range(len(stream)):
            for bit in range(8):
                tampered = bytearray(stream)
                tampered[position] ^= 1 << bit
                with self.subTest(position=position, bit=bit):
                    with self.assertRaises(DecryptionError):
                        decrypt(split(bytes(tampered), 10), self.key)

    def testWrongKey(self):
        stream = encrypt(b'secret', self.key)
        with self.assertRaises(DecryptionError) as context:
            decrypt([stream], KeyManager.generateKey())
        self.assertEqual(context.exception.actualSize, len(stream))
        self.assertEqual(context.exception.chunkCount, 1)

    def testMissingChunk(self):
        stream = encrypt(os.urandom(100), self.key)
        chunks = split(stream, 30)
        with self.assertRaises(DecryptionError):
            decrypt(chunks[:1] + chunks[2:], self.key)

    def testOutOfOrderChunksFail(self):
        stream = encrypt(os.urandom(100), self.key)
        chunks = split(stream, 30)
        with self.assertRaises(DecryptionError):
            decrypt([chunks[1], chunks[0]] + chunks[2:], self.key)

    def testNoChunks(self):
        with self.assertRaises(DecryptionError):
            decrypt([], self.key)

    def testTooShortStream(self):
        with self.assertRaises(DecryptionError):
            decrypt([b'\x00' * (NONCE_SIZE + TAG_SIZE - 1)], self.key)


class RecoveryTest(unittest.TestCase):
    """The repairs only run when asked for, and only return authenticated plaintext."""

    def setUp(self):
        self.key = KeyManager.generateKey()
        self.plaintext = os.urandom(100)
        self.stream = encrypt(self.plaintext, self.key)
        self.chunks = split(self.stream, 40)

    def _assertRecovered(self, chunks, strategy, expectedSize=None):
        with self.assertRaises(DecryptionError):
            ChunkedDecryptor(self.key, expectedSize=expectedSize).decrypt(chunks)

        decryptor = ChunkedDecryptor(self.key, expectedSize=expectedSize, allowRecovery=True)
        with self.assertLogs('bases.E2EE', level='WARNING'):
            self.assertEqual(decryptor.decrypt(chunks), self.plaintext)
        self.assertEqual(decryptor.recoveredWith, strategy)

    def testStripRepeatedNonce(self):
        nonce = self.stream[:NONCE_SIZE]
        chunks = [self.chunks[0]] + [nonce + c for c in self.chunks[1:]]
        self._assertRecovered(chunks, 'stripRepeatedNonce')

    def testDropDuplicateChunks(self):
        chunks = self.chunks[:2] + [self.chunks[1]] + self.chunks[2:]
        self._assertRecovered(chunks, 'dropDuplicateChunks')

    def testTrimToExpectedSize(self):
        chunks = self.chunks + [b'trailing garbage']
        self._assertRecovered(chunks, 'trimToExpectedSize', expectedSize=cipherStreamSize(len(self.plaintext)))

    def testRecoveryNeverMasksTampering(self):
        tampered = bytearray(self.stream)
        tampered[NONCE_SIZE + 5] ^= 0x01
        chunks = split(bytes(tampered), 40)
        chunks = [chunks[0], chunks[0]] + chunks[1:]

        decryptor = ChunkedDecryptor(
            self.key, expectedSize=cipherStreamSize(len(self.plaintext)), allowRecovery=True
        )
        with self.assertRaises(DecryptionError):
            decryptor.decrypt(chunks)
        self.assertIsNone(decryptor.recoveredWith)


class DecryptToFileTest(unittest.TestCase):

    def setUp(self):
        self.key = KeyManager.generateKey()
        self.tempDir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tempDir.cleanup)

    def _writeChunks(self, chunks):
        paths = []
        for i, chunk in enumerate(chunks):
            path = os.path.join(self.tempDir.name, f'{i}.chunk')
            with open(path, 'wb') as f:
                f.write(chunk)
            paths.append(path)
        return paths

    def testDecryptToFile(self):
        plaintext = os.urandom(50000)
        paths = self._writeChunks(split(encrypt(plaintext, self.key), 7000))
        outputPath = os.path.join(self.tempDir.name, 'out.bin')

        size = ChunkedDecryptor(self.key).decryptToFile(paths, outputPath, readSegmentSize=4096)

        self.assertEqual(size, len(plaintext))
        with open(outputPath, 'rb') as f:
            self.assertEqual(f.read(), plaintext)

    def testFailureLeavesNoPlaintext(self):
        stream = bytearray(encrypt(os.urandom(5000), self.key))
        stream[-1] ^= 0xFF
        paths = self._writeChunks(split(bytes(stream), 1000))
        outputPath = os.path.join(self.tempDir.name, 'out.bin')

        with self.assertRaises(DecryptionError):
            ChunkedDecryptor(self.key).decryptToFile(paths, outputPath)

        self.assertFalse(os.path.exists(outputPath))
        self.assertEqual([n for n in os.listdir(self.tempDir.name) if n.endswith('.part')], [])

    def testRecoveryToFile(self):
        plaintext = os.urandom(3000)
        chunks = split(encrypt(plaintext, self.key), 1000)
        paths = self._writeChunks([chunks[0], chunks[0]] + chunks[1:])
        outputPath = os.path.join(self.tempDir.name, 'out.bin')

        decryptor = ChunkedDecryptor(self.key, allowRecovery=True)
        self.assertEqual(decryptor.decryptToFile(paths, outputPath), len(plaintext))
        self.assertEqual(decryptor.recoveredWith, 'dropDuplicateChunks')
        with open(outputPath, 'rb') as f:
            self.assertEqual(f.read(), plaintext)


class CryptoBackendTest(unittest.TestCase):

    def testCryptographyIsPreferred(self):
        self.assertEqual(CryptoInterface().getBackendName(), 'cryptography')

    def testRawKeyAESGCM(self):
        for backendName in CryptoInterface.BACKENDS:
            crypto = CryptoInterface(backendName)
            with self.subTest(backend=crypto.getBackendName()):
                key = crypto.generateKey()
                nonce = os.urandom(NONCE_SIZE)

                usedNonce, sealed = crypto.encryptAESGCM(key, b'chunk payload', nonce)
                self.assertEqual(usedNonce, nonce)
                self.assertEqual(len(sealed), len(b'chunk payload') + TAG_SIZE)
                self.assertEqual(crypto.decryptAESGCM(key, nonce, sealed), b'chunk payload')

                tampered = bytes([sealed[0] ^ 1]) + sealed[1:]
                with self.assertRaises(AuthenticationFailure):
                    crypto.decryptAESGCM(key, nonce, tampered)

    def testBackendsInteroperate(self):
        """A stream from one backend decrypts with the other."""
        mbedtlsCrypto = CryptoInterface('mbedTLS')
        if mbedtlsCrypto.getBackendName() != 'python-mbedtls':
            self.skipTest('python-mbedtls is not installed')

        key = KeyManager.generateKey()
        plaintext = os.urandom(2048)

        stream = StreamEncryptor(key, crypto=CryptoInterface('cryptography')).encrypt(plaintext)
        self.assertEqual(ChunkedDecryptor(key, crypto=mbedtlsCrypto).decrypt(split(stream, 500)), plaintext)

        sink = io.BytesIO()
        StreamEncryptor(key, readSegmentSize=100, crypto=mbedtlsCrypto).encryptStream(io.BytesIO(plaintext), sink)
        self.assertEqual(ChunkedDecryptor(key).decrypt([sink.getvalue()]), plaintext)


if __name__ == '__main__':
    unittest.main()

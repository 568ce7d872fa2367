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

import base64
import binascii
import os
import tempfile

from typing import Iterable, List, Optional

from bases.crypto import CryptoInterface, AuthenticationFailure
from bases.Kernel import getLogger
from bases.Settings import (
    KEY_SIZE, NONCE_SIZE, TAG_SIZE, READ_SEGMENT_SIZE, EncryptionError, DecryptionError
)

logger = getLogger(__name__)

# Largest reassembled stream the file path will load into memory for recovery attempts
MAX_RECOVERY_SIZE = 512 * 1024 * 1024


def _getCrypto(crypto=None):
    if crypto is not None:
        return crypto
    try:
        return CryptoInterface()
    except RuntimeError as e:
        raise EncryptionError(str(e)) from e


def _checkKey(key, errorClass):
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        size = len(key) if isinstance(key, (bytes, bytearray)) else type(key).__name__
        raise errorClass(f'AES-256-GCM needs a {KEY_SIZE}-byte key, got {size}')
    return bytes(key)


def cipherStreamSize(plainSize: int) -> int:
    """Size of nonce || ciphertext || tag for a plaintext of plainSize bytes."""
    return NONCE_SIZE + plainSize + TAG_SIZE


def plainSize(cipherSize: int) -> int:
    return cipherSize - NONCE_SIZE - TAG_SIZE


class KeyManager:
    """Generation and (de)serialization of the per-batch AES-256 key"""

    @staticmethod
    def generateKey(crypto=None) -> bytes:
        try:
            return _getCrypto(crypto).generateKey(KEY_SIZE)
        except ValueError as e:
            raise EncryptionError(f'Unable to generate key: {e}') from e

    @staticmethod
    def exportKey(key: bytes) -> str:
        """Raw key bytes as standard base64"""
        return base64.b64encode(_checkKey(key, ValueError)).decode('ascii')

    @staticmethod
    def importKey(keyB64: str) -> bytes:
        """
        Parse a base64 key exported by exportKey.

        Raises:
            ValueError: The text is not base64 or does not hold a 256-bit key
        """
        try:
            key = base64.b64decode(keyB64, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise ValueError(f'Key is not valid base64: {e}') from e
        return _checkKey(key, ValueError)


class StreamEncryptor:
    """Encrypts a whole file as one AES-GCM operation under a fresh nonce.

    The output stream is nonce(12) || ciphertext || tag(16). Large sources are read in
    segments of readSegmentSize bytes and fed to the same GCM context, so the result is
    identical to a single one-shot encryption of the full content.
    """

    def __init__(self, key: bytes, readSegmentSize: int = READ_SEGMENT_SIZE, crypto=None):
        self.key = _checkKey(key, EncryptionError)
        self.readSegmentSize = readSegmentSize
        self.crypto = _getCrypto(crypto)

    def _newNonce(self):
        return os.urandom(NONCE_SIZE)

    def encrypt(self, plaintext: bytes) -> bytes:
        """Encrypt an in-memory file, returns the full ciphertext stream"""
        try:
            nonce, ciphertextWithTag = self.crypto.encryptAESGCM(self.key, bytes(plaintext), self._newNonce())
        except (ValueError, OverflowError, TypeError) as e:
            raise EncryptionError(f'AES-GCM rejected input of {len(plaintext)} bytes: {e}') from e
        return nonce + ciphertextWithTag

    def encryptStream(self, source, sink) -> int:
        """
        Encrypt everything readable from source into sink.

        Args:
            source: Binary file object positioned at the start of the plaintext
            sink: Binary file object receiving the ciphertext stream

        Returns:
            int: Number of bytes written to sink
        """
        nonce = self._newNonce()

        try:
            encryptor = self.crypto.createGCMEncryptor(self.key, nonce)
            sink.write(nonce)
            written = NONCE_SIZE

            while True:
                segment = source.read(self.readSegmentSize)
                if not segment:
                    break
                data = encryptor.update(segment)
                sink.write(data)
                written += len(data)

            tail = encryptor.finalize()
            sink.write(tail)
            sink.write(encryptor.tag)
        except (ValueError, OverflowError, TypeError) as e:
            raise EncryptionError(f'AES-GCM rejected input: {e}') from e

        return written + len(tail) + TAG_SIZE

    def encryptFile(self, sourcePath: str, outputPath: str) -> int:
        """Encrypt sourcePath into outputPath, returns the ciphertext stream size"""
        try:
            with open(sourcePath, 'rb') as source, open(outputPath, 'wb') as sink:
                size = self.encryptStream(source, sink)
        except EncryptionError:
            if os.path.exists(outputPath):
                os.remove(outputPath)
            raise

        logger.debug(f'[CRYPTO] Encrypted {sourcePath} into {size} bytes at {outputPath}')
        return size


class ChunkedDecryptor:
    """Reassembles transport chunks of one ciphertext stream and decrypts them once.

    Chunks must already be sorted by chunk index. The canonical path concatenates
    them, splits off the nonce and runs a single AES-GCM decryption. When
    allowRecovery is set, a small fixed list of repairs for known transport
    faults is tried afterwards; each candidate must still pass tag
    verification, so a recovery can never yield unauthenticated plaintext.
    """

    RECOVERY_STRATEGIES = ('stripRepeatedNonce', 'dropDuplicateChunks', 'trimToExpectedSize')

    def __init__(self, key: bytes, expectedSize: Optional[int] = None, allowRecovery: bool = False, crypto=None):
        """
        Args:
            key: AES-256 key
            expectedSize: Expected ciphertext stream size, if known (plaintext size + 28)
            allowRecovery: Try the recovery strategies after the canonical path fails
            crypto: CryptoInterface to use (default: auto-selected backend)
        """
        self.key = _checkKey(key, DecryptionError)
        self.expectedSize = expectedSize
        self.allowRecovery = allowRecovery
        self.crypto = _getCrypto(crypto)
        self.recoveredWith = None

    def _decryptStream(self, stream: bytes) -> bytes:
        if len(stream) < NONCE_SIZE + TAG_SIZE:
            raise AuthenticationFailure(f'Stream of {len(stream)} bytes cannot hold nonce and tag')
        return self.crypto.decryptAESGCM(self.key, stream[:NONCE_SIZE], stream[NONCE_SIZE:])

    def _recoveryCandidates(self, chunks: List[bytes]):
        nonce = chunks[0][:NONCE_SIZE]

        # A sender that prefixed every chunk with the nonce
        if len(chunks) > 1 and all(c[:NONCE_SIZE] == nonce for c in chunks[1:]):
            yield 'stripRepeatedNonce', chunks[0] + b''.join(c[NONCE_SIZE:] for c in chunks[1:])

        # The same chunk delivered twice in a row
        deduplicated = [chunks[0]] + [c for prev, c in zip(chunks, chunks[1:]) if c != prev]
        if len(deduplicated) != len(chunks):
            yield 'dropDuplicateChunks', b''.join(deduplicated)

        # Trailing bytes beyond the announced stream size
        totalSize = sum(len(c) for c in chunks)
        if self.expectedSize is not None and NONCE_SIZE + TAG_SIZE <= self.expectedSize < totalSize:
            yield 'trimToExpectedSize', b''.join(chunks)[:self.expectedSize]

    def decrypt(self, chunks: Iterable[bytes]) -> bytes:
        """
        Decrypt the ordered transport chunks of one file.

        Returns:
            bytes: Plaintext

        Raises:
            DecryptionError: The stream does not authenticate under the key
        """
        chunks = [bytes(c) for c in chunks]
        totalSize = sum(len(c) for c in chunks)

        if not chunks:
            raise DecryptionError('No chunks to decrypt', self.expectedSize, 0, 0)

        try:
            plaintext = self._decryptStream(b''.join(chunks))
            logger.debug(f'[CRYPTO] Decrypted {totalSize} bytes from {len(chunks)} chunks')
            return plaintext
        except AuthenticationFailure as e:
            logger.error(f'[CRYPTO] Decryption of {totalSize} bytes from {len(chunks)} chunks failed: {e}')

        if self.allowRecovery:
            plaintext = self._recover(chunks)
            if plaintext is not None:
                return plaintext

        raise DecryptionError(
            'Ciphertext failed authentication, download the file again', self.expectedSize, totalSize, len(chunks)
        )

    def _recover(self, chunks):
        for strategy, candidate in self._recoveryCandidates(chunks):
            logger.warning(f'[CRYPTO] Trying recovery strategy {strategy} on {len(candidate)} bytes')
            try:
                plaintext = self._decryptStream(candidate)
            except AuthenticationFailure:
                logger.warning(f'[CRYPTO] Recovery strategy {strategy} failed')
                continue

            logger.warning(f'[CRYPTO] Recovered stream with strategy {strategy}')
            self.recoveredWith = strategy
            return plaintext

        return None

    def decryptToFile(self, chunkPaths: List[str], outputPath: str, readSegmentSize: int = READ_SEGMENT_SIZE) -> int:
        """
        Decrypt spooled chunk files into outputPath through one incremental GCM operation.

        Plaintext goes to a temporary file beside outputPath which only replaces it after
        the tag verifies; on failure the temporary file is removed.

        Returns:
            int: Plaintext size
        """
        sizes = [os.path.getsize(p) for p in chunkPaths]
        totalSize = sum(sizes)

        if not chunkPaths:
            raise DecryptionError('No chunks to decrypt', self.expectedSize, 0, 0)

        outputDir = os.path.dirname(os.path.abspath(outputPath))
        fd, tempPath = tempfile.mkstemp(prefix='.filesh-', suffix='.part', dir=outputDir)

        try:
            with os.fdopen(fd, 'wb') as sink:
                if totalSize < NONCE_SIZE + TAG_SIZE:
                    raise AuthenticationFailure(f'Stream of {totalSize} bytes cannot hold nonce and tag')

                nonce = _readRange(chunkPaths, sizes, 0, NONCE_SIZE)
                tag = _readRange(chunkPaths, sizes, totalSize - TAG_SIZE, totalSize)
                decryptor = self.crypto.createGCMDecryptor(self.key, nonce, tag)

                for segment in _iterRange(chunkPaths, sizes, NONCE_SIZE, totalSize - TAG_SIZE, readSegmentSize):
                    sink.write(decryptor.update(segment))
                sink.write(decryptor.finalize())

            os.replace(tempPath, outputPath)
            logger.debug(f'[CRYPTO] Decrypted {totalSize} bytes from {len(chunkPaths)} chunks into {outputPath}')
            return plainSize(totalSize)

        except AuthenticationFailure as e:
            os.remove(tempPath)
            logger.error(f'[CRYPTO] Decryption of {totalSize} bytes from {len(chunkPaths)} chunks failed: {e}')

        except BaseException:
            os.remove(tempPath)
            raise

        if self.allowRecovery and totalSize <= MAX_RECOVERY_SIZE:
            chunks = []
            for path in chunkPaths:
                with open(path, 'rb') as f:
                    chunks.append(f.read())

            plaintext = self._recover(chunks)
            if plaintext is not None:
                with open(outputPath, 'wb') as f:
                    f.write(plaintext)
                return len(plaintext)

        raise DecryptionError(
            'Ciphertext failed authentication, download the file again', self.expectedSize, totalSize,
            len(chunkPaths)
        )


def _iterRange(paths, sizes, start, end, segmentSize):
    """Yield the bytes [start, end) of the concatenation of paths in segments."""
    offset = 0
    for path, size in zip(paths, sizes):
        fileStart, fileEnd = max(start - offset, 0), min(end - offset, size)
        if fileStart < fileEnd:
            with open(path, 'rb') as f:
                f.seek(fileStart)
                remaining = fileEnd - fileStart
                while remaining > 0:
                    segment = f.read(min(segmentSize, remaining))
                    if not segment:
                        raise IOError(f'Unexpected end of chunk file {path}')
                    remaining -= len(segment)
                    yield segment
        offset += size


def _readRange(paths, sizes, start, end):
    return b''.join(_iterRange(paths, sizes, start, end, end - start))


def encrypt(plaintext: bytes, key: bytes) -> bytes:
    """Encrypt one file into its ciphertext stream (nonce || ciphertext || tag)."""
    return StreamEncryptor(key).encrypt(plaintext)


def decrypt(chunks: Iterable[bytes], key: bytes) -> bytes:
    """Decrypt the index-ordered transport chunks of one file."""
    return ChunkedDecryptor(key).decrypt(chunks)

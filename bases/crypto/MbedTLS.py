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

from mbedtls import cipher
from mbedtls.exceptions import TLSError

from bases.Kernel import getLogger
from bases.crypto import CryptoBackend, AuthenticationFailure

logger = getLogger(__name__)

GCM_TAG_SIZE = 16


class _BufferedGCMContext:
    """
    python-mbedtls only exposes one-shot AEAD calls, so the incremental context
    collects input and runs the single encrypt/decrypt at finalize().
    """

    def __init__(self, backend, key, nonce, tag=None):
        self._backend = backend
        self._key = key
        self._nonce = nonce
        self._buffer = bytearray()
        self.tag = tag

    def update(self, data):
        self._buffer += data
        return b''

    def finalize(self):
        data = bytes(self._buffer)
        self._buffer = bytearray()

        if self.tag is None:
            _, combined = self._backend.encryptAESGCM(self._key, data, nonce=self._nonce)
            self.tag = combined[-GCM_TAG_SIZE:]
            return combined[:-GCM_TAG_SIZE]

        return self._backend.decryptAESGCM(self._key, self._nonce, data + self.tag)


class MbedTLSBackend(CryptoBackend):
    """Python-mbedtls backend implementation"""

    def __init__(self):
        self.cipher = cipher

    def getName(self):
        return "python-mbedtls"

    def generateKey(self, length=32):
        return os.urandom(length)

    def encryptAESGCM(self, key, plaintext, nonce):
        """Encrypt with AES-GCM, returns (nonce, ciphertext+tag) tuple"""
        aesCipher = self.cipher.AES.new(bytes(key), self.cipher.MODE_GCM, nonce, b'')

        # mbedtls encrypt() returns (ciphertext, tag)
        ciphertext, tag = aesCipher.encrypt(plaintext)

        return (nonce, ciphertext + tag)

    def decryptAESGCM(self, key, nonce, ciphertextWithTag):
        if len(ciphertextWithTag) < GCM_TAG_SIZE:
            raise AuthenticationFailure("Ciphertext too short for GCM tag")

        tag = ciphertextWithTag[-GCM_TAG_SIZE:]
        aesCipher = self.cipher.AES.new(bytes(key), self.cipher.MODE_GCM, nonce, b'')

        try:
            return aesCipher.decrypt(ciphertextWithTag[:-GCM_TAG_SIZE], tag)
        except TLSError as e:
            raise AuthenticationFailure('AES-GCM tag mismatch') from e

    def createGCMEncryptor(self, key, nonce):
        return _BufferedGCMContext(self, key, nonce)

    def createGCMDecryptor(self, key, nonce, tag):
        return _BufferedGCMContext(self, key, nonce, tag=tag)

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

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

from bases.Kernel import getLogger
from bases.crypto import CryptoBackend, AuthenticationFailure

logger = getLogger(__name__)


class _GCMDecryptor:
    """Wraps a cryptography decryptor context so a bad tag surfaces as AuthenticationFailure."""

    def __init__(self, context):
        self._context = context

    def update(self, data):
        return self._context.update(data)

    def finalize(self):
        try:
            return self._context.finalize()
        except InvalidTag as e:
            raise AuthenticationFailure('AES-GCM tag mismatch') from e


class CryptographyBackend(CryptoBackend):
    """Cryptography library backend implementation"""

    def __init__(self):
        self.Cipher = Cipher
        self.algorithms = algorithms
        self.modes = modes
        self.AESGCM = AESGCM

    def getName(self):
        return "cryptography"

    def generateKey(self, length=32):
        return self.AESGCM.generate_key(bit_length=length * 8)

    def encryptAESGCM(self, key, plaintext, nonce):
        """Encrypt with AES-GCM, returns (nonce, ciphertext+tag) tuple"""
        return (nonce, self.AESGCM(key).encrypt(nonce, plaintext, None))

    def decryptAESGCM(self, key, nonce, ciphertextWithTag):
        try:
            return self.AESGCM(key).decrypt(nonce, ciphertextWithTag, None)
        except InvalidTag as e:
            raise AuthenticationFailure('AES-GCM tag mismatch') from e

    def createGCMEncryptor(self, key, nonce):
        return self.Cipher(self.algorithms.AES(key), self.modes.GCM(nonce)).encryptor()

    def createGCMDecryptor(self, key, nonce, tag):
        context = self.Cipher(self.algorithms.AES(key), self.modes.GCM(nonce, tag)).decryptor()
        return _GCMDecryptor(context)

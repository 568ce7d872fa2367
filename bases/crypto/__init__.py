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

from abc import ABC, abstractmethod

from bases.Kernel import classForName, getLogger

logger = getLogger(__name__)


class AuthenticationFailure(Exception):
    """Raised by backends when an AES-GCM tag does not verify"""
    pass


class CryptoBackend(ABC):
    """Abstract base class for cryptographic backends"""

    @abstractmethod
    def getName(self):
        """Get backend name"""
        pass

    @abstractmethod
    def generateKey(self, length=32):
        """Generate a random symmetric key of length bytes"""
        pass

    @abstractmethod
    def encryptAESGCM(self, key, plaintext, nonce):
        """Encrypt with AES-GCM, returns (nonce, ciphertext+tag) tuple"""
        pass

    @abstractmethod
    def decryptAESGCM(self, key, nonce, ciphertextWithTag):
        """Decrypt with AES-GCM, returns plaintext, raises AuthenticationFailure on a bad tag"""
        pass

    @abstractmethod
    def createGCMEncryptor(self, key, nonce):
        """
        Start one AES-GCM encryption that is fed incrementally.
        Returns an object with update(data) -> bytes, finalize() -> bytes and, after finalize, a 'tag' attribute.
        """
        pass

    @abstractmethod
    def createGCMDecryptor(self, key, nonce, tag):
        """
        Start one AES-GCM decryption that is fed incrementally.
        finalize() raises AuthenticationFailure when the tag does not verify.
        """
        pass


class CryptoInterface:
    """Main crypto interface with automatic backend selection"""

    BACKENDS = ['cryptography', 'mbedTLS']

    def __init__(self, preferredBackend=None):
        self.backend = self._initializeBackend(preferredBackend)

    def _initializeBackend(self, preferredBackend=None):
        """Initialize crypto backend with fallback priority"""
        backendList = list(self.BACKENDS)

        if preferredBackend in backendList:
            backendList.remove(preferredBackend)
            backendList.insert(0, preferredBackend)

        for backendName in backendList:
            try:
                backendModule = f'{backendName[0].upper()}{backendName[1:]}'
                backendClass = classForName(f'bases.crypto.{backendModule}.{backendModule}Backend')
                return backendClass()
            except ImportError as e:
                logger.debug(f"[CRYPTO] Failed to load crypto backend {backendName}: {e}")
                continue

        raise RuntimeError("No crypto backend available - please install 'cryptography' or 'python-mbedtls'")

    def getBackendName(self):
        return self.backend.getName()

    def __getattr__(self, name):
        # Delegate any undefined method to backend
        return getattr(self.backend, name)

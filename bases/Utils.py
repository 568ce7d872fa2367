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
import socket
import ssl
import sys

import bitmath

from urllib3 import PoolManager
from urllib3.connection import HTTPConnection
from urllib3.util.retry import Retry
from requests.adapters import HTTPAdapter

from bases.Kernel import getLogger
from bases.Settings import SettingsGetter

ONE_KB = bitmath.KiB(1).bytes
ONE_MB = bitmath.MiB(1).bytes
ONE_GB = bitmath.GiB(1).bytes
ONE_TB = bitmath.TiB(1).bytes

SUPPORT_URL = 'https://github.com/filesh/filesh/issues'

logger = getLogger(__name__)


def flushPrint(text):
    try:
        print(text, flush=True)
    except UnicodeEncodeError as e:
        # Terminals without full unicode support (e.g. cp950 consoles)
        logger.debug(f"UnicodeEncodeError during print, using fallback encoding: {e}, {sys.stdout.encoding=}")

        buf = getattr(sys.stdout, "buffer", None)
        if buf is not None:
            buf.write(text.encode("utf-8", errors="replace"))
            buf.write(b"\n")
            buf.flush()
        else:
            print(text.encode(sys.stdout.encoding, errors='replace').decode(sys.stdout.encoding), flush=True)


def formatSize(size, decimal=None, plural=None):
    if decimal is None:
        if size < ONE_GB:
            decimal = 0
        elif size < ONE_TB:
            decimal = 1
        else:
            decimal = 2

    if plural is None:
        plural = False if size > ONE_KB else True

    sizeStr = bitmath.Byte(size).best_prefix(system=bitmath.SI).format(
        "{value:.%df}{%s}" % (decimal, 'unit_plural' if plural else 'unit')
    )

    if not sizeStr.endswith('Byte') and not sizeStr.endswith('Bytes') and not sizeStr.endswith('Bits'):
        return sizeStr.replace('B', '').upper()
    else:
        return sizeStr.replace('Byte', ' Byte').replace('Bit', ' Byte')


def getAvailablePort(port=None):
    """
    Get an available port for the local server.

    Args:
        port: Specific port to check (None for auto-detect)

    Returns:
        int: Available port number

    Raises:
        OSError: If specified port is not available
    """
    if port is not None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind(('127.0.0.1', port))
            return port
        except OSError:
            raise OSError(f"Port {port} is already in use or not available")
        finally:
            sock.close()
    else:
        sock = socket.socket()
        sock.bind(('', 0))
        ip, port = sock.getsockname()
        sock.close()
        return port


def sendException(logger, e, action=None, errorPrefix="Oops, something went wrong"):
    if e and errorPrefix:
        flushPrint(f'{errorPrefix}: {e}')
    elif e:
        flushPrint(f'{e}')
    else:
        logger.error(f'Incorrect argument: {errorPrefix=} {e=}')

    if action:
        flushPrint(action)
    else:
        flushPrint('Please try again or try later.')

    flushPrint(f'\nIf you still get the same problem, please report it at {SUPPORT_URL}.\n')

    logger.exception(e)

    if os.getenv('RAISE_EXCEPTION', 'False') == 'True' and isinstance(e, BaseException):
        raise e


def getEnv(envVar, default):
    """Safely get value from environment variable with automatic type detection based on default"""
    try:
        value = os.getenv(envVar)
        if value is not None:
            if default is None:
                return value

            if isinstance(default, bool):
                return value == "True"
            elif isinstance(default, int):
                return int(value)
            elif isinstance(default, float):
                return float(value)
            elif isinstance(default, str):
                return str(value)
            else:
                return type(default)(value)
        return default
    except (ValueError, TypeError):
        return default


# HTTP connection stall handling
# https://github.com/urllib3/urllib3/issues/3100
# https://github.com/python/cpython/issues/115627

# Minimum stall timeout in seconds (for both upload and download)
DEFAULT_MIN_STALL_TIMEOUT_SECONDS = getEnv('HTTP_DEFAULT_MIN_STALL_TIMEOUT_SECONDS', 120)

# Minimum speed threshold in MBps for stall calculation
DEFAULT_STALL_SPEED_THRESHOLD_MBPS = getEnv('HTTP_DEFAULT_STALL_SPEED_THRESHOLD_MBPS', 1.0)

ENABLE_PY312_WORKAROUND = getEnv('HTTP_ENABLE_PY312_WORKAROUND', True)


class StallResilientAdapter(HTTPAdapter):
    """
    HTTP adapter that detects stalled chunk transfers through TCP socket options.

    - TCP keepalive for early dead connection detection
    - TCP_USER_TIMEOUT on Linux for write stall detection
    - Python 3.12 + OpenSSL 3.x workaround (TLS 1.2, limited idempotent retries)

    Chunk-level retries belong to the transfer managers, so urllib3 never retries
    a request whose body may already have been consumed.
    """

    DEFAULT_SOCKET_OPTIONS = HTTPConnection.default_socket_options

    @classmethod
    def calculateStallTimeoutMs(cls, chunkSize):
        """
        Stall timeout for a chunk: max(minimum, chunkSize / speedThreshold), in milliseconds.
        """
        speedThresholdBps = DEFAULT_STALL_SPEED_THRESHOLD_MBPS * ONE_MB
        calculatedTimeSeconds = chunkSize / speedThresholdBps
        stallTimeoutSeconds = max(DEFAULT_MIN_STALL_TIMEOUT_SECONDS, calculatedTimeSeconds)
        return int(stallTimeoutSeconds * 1000)

    def __init__(self, stallTimeoutMs: int = None, chunkSize: int = None, allowedMethods=None, *args, **kwargs):
        """
        Args:
            stallTimeoutMs: Explicit stall timeout in milliseconds (overrides calculation)
            chunkSize: Chunk size for dynamic timeout calculation
            allowedMethods: HTTP methods urllib3 may retry (default: GET, HEAD)
        """
        if stallTimeoutMs is None and chunkSize is not None:
            self.stallTimeoutMs = self.calculateStallTimeoutMs(chunkSize)
        elif stallTimeoutMs is not None:
            self.stallTimeoutMs = stallTimeoutMs
        else:
            self.stallTimeoutMs = DEFAULT_MIN_STALL_TIMEOUT_SECONDS * 1000

        try:
            self.isLinux = SettingsGetter.getInstance().isLinux()
        except RuntimeError:
            self.isLinux = sys.platform.startswith('linux')

        if allowedMethods is None:
            allowedMethods = {'GET', 'HEAD'}

        if sys.version_info >= (3, 12) and ENABLE_PY312_WORKAROUND:
            retryConfig = Retry(
                total=2,
                connect=1,
                read=1,
                status=0, # Status handling stays in the application layer
                backoff_factor=0.5,
                allowed_methods=allowedMethods,
                raise_on_status=False
            )
            logger.debug(f"Python 3.12+ workaround enabled: limited urllib3 retries (methods: {allowedMethods})")
        else:
            retryConfig = Retry(total=0)

        kwargs['max_retries'] = retryConfig

        super().__init__(*args, **kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **kwargs):
        socketOptions = list(self.DEFAULT_SOCKET_OPTIONS)

        socketOptions.append((socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1))

        if hasattr(socket, "TCP_KEEPIDLE"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, 30))
        if hasattr(socket, "TCP_KEEPINTVL"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, 10))
        if hasattr(socket, "TCP_KEEPCNT"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_KEEPCNT, 3))

        # Linux only: timeout for unacknowledged data
        if self.isLinux and hasattr(socket, "TCP_USER_TIMEOUT"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_USER_TIMEOUT, self.stallTimeoutMs))

        kwargs["socket_options"] = socketOptions

        # TLS 1.3 + OpenSSL 3.x raises spurious SSLEOFError on 3.12
        if sys.version_info >= (3, 12) and ENABLE_PY312_WORKAROUND:
            sslContext = ssl.create_default_context()
            sslContext.minimum_version = ssl.TLSVersion.TLSv1_2
            sslContext.maximum_version = ssl.TLSVersion.TLSv1_2
            kwargs["ssl_context"] = sslContext

        self.poolmanager = PoolManager(num_pools=connections, maxsize=maxsize, block=block, **kwargs)

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
import json
import zlib

from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qs

from bases.E2EE import KeyManager
from bases.Kernel import getLogger, FileshEvent
from bases.Settings import SHARE_BASE_URL, ShareLinkError
from bases.Store import FileMetadata

logger = getLogger(__name__)


@dataclass
class ShareLink:
    batchId: str
    key: Optional[bytes]
    metadata: Optional[List[FileMetadata]]

    @property
    def hasKey(self):
        return self.key is not None


def _compress(data: bytes) -> str:
    return base64.b64encode(zlib.compress(data, 9)).decode('ascii')


def _decompress(text: str) -> bytes:
    # A pasted link may carry a raw "+" that query parsing turned into a space
    return zlib.decompress(base64.b64decode(text.replace(' ', '+'), validate=True))


def encodeKey(key: bytes) -> str:
    """base64(zlib(base64(rawKey)))"""
    return _compress(KeyManager.exportKey(key).encode('ascii'))


def decodeKey(text: str) -> bytes:
    try:
        return KeyManager.importKey(_decompress(text).decode('ascii'))
    except (binascii.Error, zlib.error, UnicodeDecodeError, ValueError) as e:
        raise ShareLinkError(f'Invalid key parameter: {e}') from e


def encodeMetadata(metadata: List[FileMetadata]) -> str:
    """base64(zlib(JSON metadata array))"""
    payload = json.dumps([m.toDict() for m in metadata], separators=(',', ':'))
    return _compress(payload.encode('utf-8'))


def decodeMetadata(text: str) -> List[FileMetadata]:
    try:
        items = json.loads(_decompress(text).decode('utf-8'))
        if not isinstance(items, list):
            raise ValueError('metadata is not a list')
        return [FileMetadata.fromDict(item) for item in items]
    except (binascii.Error, zlib.error, UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
        raise ShareLinkError(f'Invalid meta parameter: {e}') from e


def encodeShareLink(batchId: str, key: bytes, metadata: List[FileMetadata], baseURL: str = None) -> str:
    """
    Build https://host/?batch={batchId}&key={compressedKey}&meta={compressedMetadata}.

    Args:
        batchId: Server batch id
        key: Raw AES-256 key
        metadata: Descriptions of the files in the batch
        baseURL: Link base (default: FILESH_SHARE_BASE)

    Returns:
        str: The share link
    """
    baseURL = baseURL or SHARE_BASE_URL
    scheme, netloc, path, _, _ = urlsplit(baseURL)

    query = {'batch': batchId, 'key': encodeKey(key)}
    if metadata:
        query['meta'] = encodeMetadata(metadata)

    link = urlunsplit((scheme, netloc, path or '/', urlencode(query), ''))
    FileshEvent.shareLinkCreate.trigger(batchId=batchId, link=link)
    return link


def decodeShareLink(url: str, store=None) -> ShareLink:
    """
    Parse a share link. Either key or meta may be missing; without meta the metadata
    cached in the local TransferStore under the batch id is used when a store is given.

    Raises:
        ShareLinkError: No batch id, or a parameter cannot be decoded
    """
    query = parse_qs(urlsplit(url).query)

    batchId = query.get('batch', [None])[0]
    if not batchId:
        raise ShareLinkError(f'Share link has no batch parameter: {url}')

    key = decodeKey(query['key'][0]) if query.get('key') else None

    metadata = None
    if query.get('meta'):
        metadata = decodeMetadata(query['meta'][0])
    elif store is not None:
        metadata = store.getMetadata(batchId)
        if metadata is not None:
            logger.debug(f'[LINK] Using cached metadata for batch {batchId}')

    return ShareLink(batchId, key, metadata)

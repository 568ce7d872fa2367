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

import threading
import time

from tqdm import tqdm

from bases.Kernel import getLogger, FileshEvent
from bases.Utils import formatSize

logger = getLogger(__name__)


class BitmathTqdm(tqdm):
    """tqdm bar whose sizes and speeds go through formatSize."""

    def __init__(self, *args, sizeFormatter=None, **kwargs):
        self.sizeFormatter = sizeFormatter or formatSize
        kwargs.setdefault(
            'bar_format', '{desc}: {percentage:3.0f}%|{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]'
        )
        super().__init__(*args, unit='B', unit_scale=False, **kwargs)

    @property
    def format_dict(self):
        d = super().format_dict
        rate = d.get('rate', 0) or 0
        d['rate_fmt'] = f'{self.sizeFormatter(int(rate))}/sec' if rate > 0 else '0/sec'
        d['n_fmt'] = self.sizeFormatter(d.get('n', 0))
        total = d.get('total')
        d['total_fmt'] = self.sizeFormatter(total) if total is not None else '?'
        return d

    def __bool__(self):
        return hasattr(self, 'n')


class Progress:
    """
    Transfer progress shown either as a tqdm bar or as periodic log lines.

    update() takes the absolute amount transferred, so it can be fed from
    counters kept elsewhere (the store's uploadedSize, completed chunks).
    """

    def __init__(self, totalSize, description='Progress', sizeFormatter=None, loggerCallback=print,
                 logInterval=2.0, useBar=False):
        self.totalSize = totalSize
        self.description = description
        self.sizeFormatter = sizeFormatter or formatSize
        self.loggerCallback = loggerCallback
        self.logInterval = logInterval
        self.useBar = useBar

        self.transferred = 0
        self.startTime = time.monotonic()
        self.lastLogTime = self.startTime
        self._lock = threading.Lock()

        self.pbar = None
        if self.useBar:
            self.pbar = BitmathTqdm(
                total=totalSize or None, desc=description, sizeFormatter=self.sizeFormatter, leave=True, ncols=100
            )

    def update(self, transferred, forceLog=False, extraText=''):
        with self._lock:
            if transferred < self.transferred:
                return

            increment = transferred - self.transferred
            self.transferred = transferred

            if self.pbar is not None:
                if increment:
                    self.pbar.update(increment)
                self.pbar.set_postfix_str(f' {extraText}' if extraText else '')
                return

            now = time.monotonic()
            if forceLog or now - self.lastLogTime >= self.logInterval or transferred >= self.totalSize:
                self.lastLogTime = now
                self.loggerCallback(self._message(extraText))

    def _message(self, extraText=''):
        message = (
            f'{self.description}: {self.sizeFormatter(self.transferred)}/{self.sizeFormatter(self.totalSize)} '
            f'({self.getPercentage():.2f}%), {self.getFormattedSpeed()}'
        )
        return f'{message}, {extraText}' if extraText else message

    def getPercentage(self):
        return (self.transferred * 100.0 / self.totalSize) if self.totalSize > 0 else 0

    def getSpeed(self):
        elapsed = time.monotonic() - self.startTime
        return self.transferred / elapsed if elapsed > 0 else 0

    def getFormattedSpeed(self):
        speed = self.getSpeed()
        return f'{self.sizeFormatter(int(speed))}/sec' if speed > 0 else '0/sec'

    def write(self, text):
        """Write text without breaking the progress bar."""
        if self.pbar is not None:
            self.pbar.write(text)
        else:
            self.loggerCallback(text)

    def finishBar(self):
        if self.pbar is None:
            return
        try:
            self.pbar.refresh()
            self.pbar.close()
        except (ValueError, AttributeError) as e:
            logger.debug(f'Exception during progress bar cleanup: {e}')
        finally:
            self.pbar = None

    def __enter__(self):
        return self

    def __exit__(self, excType, excVal, excTb):
        self.finishBar()


class UploadProgress(Progress):
    """Follows FileshEvent.chunkUpdate for one batch; use as a context manager."""

    def __init__(self, batchId, totalSize, uploadedSize=0, **kwargs):
        kwargs.setdefault('description', 'Uploading')
        super().__init__(totalSize, **kwargs)
        self.batchId = batchId
        self.update(uploadedSize)

    def onChunkUpdate(self, chunk=None, uploadedSize=None, **kwargs):
        if chunk is None or chunk.batchId != self.batchId or uploadedSize is None:
            return
        self.update(uploadedSize, extraText=f'chunk {chunk.chunkIndex}')

    def __enter__(self):
        FileshEvent.chunkUpdate.subscribe(self.onChunkUpdate)
        return self

    def __exit__(self, excType, excVal, excTb):
        FileshEvent.chunkUpdate.unsubscribe(self.onChunkUpdate)
        self.finishBar()


class DownloadProgress(Progress):
    """Follows FileshEvent.downloadProgress, counting fetched chunks."""

    def __init__(self, batchId, **kwargs):
        kwargs.setdefault('description', 'Downloading')
        kwargs.setdefault('sizeFormatter', lambda n: f'{n} chunks')
        super().__init__(0, **kwargs)
        self.batchId = batchId

    def onDownloadProgress(self, batchId=None, completed=0, total=0, **kwargs):
        if batchId != self.batchId:
            return
        if total != self.totalSize or completed < self.transferred:
            # A new file of the batch started
            self.totalSize = total
            self.transferred = 0
            if self.pbar is not None:
                self.pbar.reset(total=total)
        self.update(completed)

    def __enter__(self):
        FileshEvent.downloadProgress.subscribe(self.onDownloadProgress)
        return self

    def __exit__(self, excType, excVal, excTb):
        FileshEvent.downloadProgress.unsubscribe(self.onDownloadProgress)
        self.finishBar()

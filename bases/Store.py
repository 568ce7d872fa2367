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
Local persistent transfer state.

Two logical tables back the transfer state machine: upload_state (one row per
batch, indexed by last update time for retention cleanup) and chunk_state (one
row per batchId/fileId/chunkIndex). A third table caches the share-link
metadata of each batch. Every mutation runs inside an immediate SQLite
transaction under a process-wide lock, so concurrent chunk workers never lose
updates to batch counters such as uploadedSize.
"""

import threading
import time

from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Optional

from sqlalchemy import JSON, Boolean, Column, Float, Integer, String, Text, create_engine, delete, event, select, update
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from bases.Kernel import getLogger
from bases.Settings import RETENTION

logger = getLogger(__name__)

DEFAULT_FILE_TYPE = 'application/octet-stream'

Base = declarative_base()


class TransferStatus(str, Enum):
    PENDING = 'pending'
    UPLOADING = 'uploading'
    PAUSED = 'paused'
    COMPLETED = 'completed'
    ERROR = 'error'


class ChunkStatus(str, Enum):
    PENDING = 'pending'
    UPLOADING = 'uploading'
    COMPLETED = 'completed'
    ERROR = 'error'


@dataclass
class FileMetadata:
    """Plaintext description of one file, carried in the share link."""
    id: str
    name: str
    type: str = DEFAULT_FILE_TYPE
    size: int = 0
    chunkStart: Optional[int] = None
    chunkCount: Optional[int] = None

    def toDict(self):
        data = {'id': self.id, 'name': self.name, 'type': self.type, 'size': self.size}
        if self.chunkStart is not None:
            data['chunkStart'] = self.chunkStart
        if self.chunkCount is not None:
            data['chunkCount'] = self.chunkCount
        return data

    @classmethod
    def fromDict(cls, data):
        chunkStart = data.get('chunkStart')
        chunkCount = data.get('chunkCount')
        return cls(
            id=str(data['id']),
            name=str(data.get('name', data['id'])),
            type=data.get('type') or DEFAULT_FILE_TYPE,
            size=int(data.get('size', 0)),
            chunkStart=int(chunkStart) if chunkStart is not None else None,
            chunkCount=int(chunkCount) if chunkCount is not None else None,
        )


@dataclass
class SourceFile:
    """Local-only upload plan of one file: where its plaintext and spooled ciphertext live."""
    fileId: str
    sourcePath: str
    spoolPath: str
    cipherSize: int
    chunkStart: int
    chunkCount: int


@dataclass
class UploadState:
    batchId: str
    fileIds: List[str]
    encryptionKeyB64: str
    totalSize: int
    uploadedSize: int = 0
    status: TransferStatus = TransferStatus.PENDING
    metadata: List[FileMetadata] = field(default_factory=list)
    createdAt: float = field(default_factory=time.time)
    updatedAt: float = field(default_factory=time.time)
    chunkSize: int = 0
    serverURL: str = ''
    sources: List[SourceFile] = field(default_factory=list)
    error: Optional[str] = None

    def toDict(self):
        data = asdict(self)
        data['status'] = self.status.value
        data['metadata'] = [m.toDict() for m in self.metadata]
        return data

    @classmethod
    def fromDict(cls, data):
        data = dict(data)
        data['status'] = TransferStatus(data.get('status', TransferStatus.PENDING.value))
        data['metadata'] = [FileMetadata.fromDict(m) for m in data.get('metadata', [])]
        data['sources'] = [SourceFile(**s) for s in data.get('sources', [])]
        return cls(**data)

    @property
    def progress(self):
        return self.uploadedSize / self.totalSize if self.totalSize else 1.0


@dataclass
class ChunkState:
    batchId: str
    fileId: str
    chunkIndex: int
    uploaded: bool = False
    size: int = 0
    status: ChunkStatus = ChunkStatus.PENDING
    attempts: int = 0
    error: Optional[str] = None

    @property
    def key(self):
        return f'{self.batchId}-{self.fileId}-{self.chunkIndex}'


class UploadStateRecord(Base):
    """One upload batch; the full UploadState is kept as JSON."""

    __tablename__ = 'upload_state'

    batch_id = Column(String(64), primary_key=True)
    status = Column(String(20), nullable=False, index=True)
    updated_at = Column(Float, nullable=False, index=True)
    data = Column(JSON, nullable=False)


class ChunkStateRecord(Base):
    __tablename__ = 'chunk_state'

    batch_id = Column(String(64), primary_key=True)
    file_id = Column(String(64), primary_key=True)
    chunk_index = Column(Integer, primary_key=True)
    uploaded = Column(Boolean, nullable=False, default=False)
    size = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    updated_at = Column(Float, nullable=False)


class FileMetadataRecord(Base):
    """Share-link metadata of a batch, so links without a meta parameter still resolve names."""

    __tablename__ = 'file_metadata'

    batch_id = Column(String(64), primary_key=True)
    updated_at = Column(Float, nullable=False, index=True)
    data = Column(JSON, nullable=False)


def createEngine(path):
    """SQLite engine whose transactions start with BEGIN IMMEDIATE."""
    if path == ':memory:':
        engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)
    else:
        engine = create_engine(f'sqlite:///{path}', connect_args={'check_same_thread': False, 'timeout': 30})

    @event.listens_for(engine, 'connect')
    def onConnect(dbapiConnection, connectionRecord):
        # Let SQLAlchemy emit BEGIN itself instead of pysqlite's deferred one
        dbapiConnection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def onBegin(connection):
        connection.exec_driver_sql('BEGIN IMMEDIATE')

    return engine


class TransferStore:
    """SQLite-backed store for upload and chunk state."""

    def __init__(self, path=':memory:'):
        self.path = path
        self._lock = threading.RLock()
        self.engine = createEngine(path)
        self._sessionFactory = sessionmaker(bind=self.engine, expire_on_commit=False)

        Base.metadata.create_all(self.engine)

    def close(self):
        with self._lock:
            self.engine.dispose()

    def __enter__(self):
        return self

    def __exit__(self, excType, excValue, traceback):
        self.close()

    @contextmanager
    def _transaction(self):
        with self._lock:
            with self._sessionFactory.begin() as session:
                yield session

    # upload_state

    @staticmethod
    def _readUploadState(session, batchId) -> Optional[UploadState]:
        record = session.get(UploadStateRecord, batchId)
        return UploadState.fromDict(record.data) if record else None

    @staticmethod
    def _writeUploadState(session, state: UploadState):
        state.updatedAt = time.time()
        session.merge(
            UploadStateRecord(
                batch_id=state.batchId, status=state.status.value, updated_at=state.updatedAt, data=state.toDict()
            )
        )

    def saveUploadState(self, state: UploadState):
        with self._transaction() as session:
            self._writeUploadState(session, state)
        return state

    def getUploadState(self, batchId) -> Optional[UploadState]:
        with self._transaction() as session:
            return self._readUploadState(session, batchId)

    def updateUploadState(self, batchId, **changes) -> UploadState:
        """Read-modify-write of one batch record; raises KeyError for an unknown batch."""
        with self._transaction() as session:
            state = self._readUploadState(session, batchId)
            if state is None:
                raise KeyError(f'No upload state for batch {batchId}')

            for name, value in changes.items():
                if not hasattr(state, name):
                    raise AttributeError(f'UploadState has no field {name}')
                setattr(state, name, value)

            self._writeUploadState(session, state)
            return state

    def listUploadStates(self) -> List[UploadState]:
        with self._transaction() as session:
            records = session.scalars(select(UploadStateRecord).order_by(UploadStateRecord.updated_at.desc())).all()
            return [UploadState.fromDict(record.data) for record in records]

    def getIncompleteUploads(self) -> List[UploadState]:
        """Batches that can still be resumed: everything not completed, failed batches included."""
        return [s for s in self.listUploadStates() if s.status != TransferStatus.COMPLETED]

    def deleteUploadState(self, batchId) -> Optional[UploadState]:
        """Remove a batch with its chunk records and cached metadata, returns the removed state."""
        with self._transaction() as session:
            state = self._readUploadState(session, batchId)
            self._deleteBatches(session, [batchId])
        return state

    @staticmethod
    def _deleteBatches(session, batchIds):
        for record in (ChunkStateRecord, FileMetadataRecord, UploadStateRecord):
            session.execute(
                delete(record).where(record.batch_id.in_(batchIds)), execution_options={'synchronize_session': False}
            )

    # chunk_state

    @staticmethod
    def _recordToChunk(record: ChunkStateRecord) -> ChunkState:
        return ChunkState(
            batchId=record.batch_id,
            fileId=record.file_id,
            chunkIndex=record.chunk_index,
            uploaded=bool(record.uploaded),
            size=record.size,
            status=ChunkStatus(record.status),
            attempts=record.attempts,
            error=record.error,
        )

    @staticmethod
    def _writeChunk(session, chunk: ChunkState):
        session.merge(
            ChunkStateRecord(
                batch_id=chunk.batchId,
                file_id=chunk.fileId,
                chunk_index=chunk.chunkIndex,
                uploaded=chunk.uploaded,
                size=chunk.size,
                status=chunk.status.value,
                attempts=chunk.attempts,
                error=chunk.error,
                updated_at=time.time(),
            )
        )

    def _readChunk(self, session, batchId, fileId, chunkIndex) -> Optional[ChunkState]:
        record = session.get(ChunkStateRecord, (batchId, fileId, chunkIndex))
        return self._recordToChunk(record) if record else None

    def saveChunkStates(self, chunks: List[ChunkState]):
        with self._transaction() as session:
            for chunk in chunks:
                self._writeChunk(session, chunk)

    def saveChunkState(self, chunk: ChunkState):
        self.saveChunkStates([chunk])
        return chunk

    def getChunkState(self, batchId, fileId, chunkIndex) -> Optional[ChunkState]:
        with self._transaction() as session:
            return self._readChunk(session, batchId, fileId, chunkIndex)

    def getChunkStates(self, batchId, fileId=None) -> List[ChunkState]:
        query = select(ChunkStateRecord).where(ChunkStateRecord.batch_id == batchId)
        if fileId is not None:
            query = query.where(ChunkStateRecord.file_id == fileId)

        with self._transaction() as session:
            records = session.scalars(query.order_by(ChunkStateRecord.chunk_index)).all()
            return [self._recordToChunk(record) for record in records]

    def _updateChunk(self, batchId, fileId, chunkIndex, mutate):
        with self._transaction() as session:
            chunk = self._readChunk(session, batchId, fileId, chunkIndex)
            if chunk is None:
                raise KeyError(f'No chunk state for {batchId}-{fileId}-{chunkIndex}')
            mutate(chunk)
            self._writeChunk(session, chunk)
            return chunk

    def markChunkUploading(self, batchId, fileId, chunkIndex) -> ChunkState:

        def mutate(chunk):
            chunk.status = ChunkStatus.UPLOADING

        return self._updateChunk(batchId, fileId, chunkIndex, mutate)

    def completeChunk(self, batchId, fileId, chunkIndex, size) -> int:
        """
        Mark a chunk acknowledged by the server and add its size to the batch's uploadedSize,
        atomically. Completing an already completed chunk changes nothing.

        Returns:
            int: The batch's uploadedSize after the update
        """
        with self._transaction() as session:
            chunk = self._readChunk(session, batchId, fileId, chunkIndex)
            if chunk is None:
                raise KeyError(f'No chunk state for {batchId}-{fileId}-{chunkIndex}')

            state = self._readUploadState(session, batchId)
            alreadyCompleted = chunk.status == ChunkStatus.COMPLETED

            chunk.status = ChunkStatus.COMPLETED
            chunk.uploaded = True
            chunk.size = size
            chunk.error = None
            self._writeChunk(session, chunk)

            if state is None:
                return 0

            if not alreadyCompleted:
                state.uploadedSize += size
                self._writeUploadState(session, state)
            return state.uploadedSize

    def failChunk(self, batchId, fileId, chunkIndex, error, maxAttempts) -> ChunkState:
        """Count a failed attempt; the chunk returns to pending until maxAttempts is reached."""

        def mutate(chunk):
            chunk.attempts += 1
            chunk.error = str(error)
            chunk.uploaded = False
            chunk.status = ChunkStatus.PENDING if chunk.attempts < maxAttempts else ChunkStatus.ERROR

        return self._updateChunk(batchId, fileId, chunkIndex, mutate)

    def releaseChunk(self, batchId, fileId, chunkIndex) -> ChunkState:
        """Return an aborted in-flight chunk to pending, keeping its attempts."""

        def mutate(chunk):
            if chunk.status == ChunkStatus.UPLOADING:
                chunk.status = ChunkStatus.PENDING

        return self._updateChunk(batchId, fileId, chunkIndex, mutate)

    def prepareResume(self, batchId) -> List[ChunkState]:
        """
        Requeue every unfinished chunk of a batch before workers restart.
        Uploading chunks (left by a crash) go back to pending with their attempts kept;
        chunks that exhausted their retries get a fresh attempt budget.

        Returns:
            list: Chunks still to transfer, ordered by index
        """
        ofBatch = ChunkStateRecord.batch_id == batchId
        noSync = {'synchronize_session': False}

        with self._transaction() as session:
            session.execute(
                update(ChunkStateRecord)
                .where(ofBatch, ChunkStateRecord.status == ChunkStatus.UPLOADING.value)
                .values(status=ChunkStatus.PENDING.value),
                execution_options=noSync,
            )
            session.execute(
                update(ChunkStateRecord)
                .where(ofBatch, ChunkStateRecord.status == ChunkStatus.ERROR.value)
                .values(status=ChunkStatus.PENDING.value, attempts=0),
                execution_options=noSync,
            )
            records = session.scalars(
                select(ChunkStateRecord)
                .where(ofBatch, ChunkStateRecord.status != ChunkStatus.COMPLETED.value)
                .order_by(ChunkStateRecord.chunk_index)
            ).all()
            return [self._recordToChunk(record) for record in records]

    # file_metadata

    def saveMetadata(self, batchId, metadata: List[FileMetadata]):
        with self._transaction() as session:
            session.merge(
                FileMetadataRecord(batch_id=batchId, updated_at=time.time(), data=[m.toDict() for m in metadata])
            )

    def getMetadata(self, batchId) -> Optional[List[FileMetadata]]:
        with self._transaction() as session:
            record = session.get(FileMetadataRecord, batchId)
            return [FileMetadata.fromDict(m) for m in record.data] if record else None

    # retention

    def cleanupOldUploads(self, retention=RETENTION, now=None) -> List[UploadState]:
        """
        Delete batches not updated within the retention window, with their chunk records and cached metadata.
        Cached metadata is judged by its batch; only entries without a batch expire on their own age.

        Returns:
            list: The removed upload states, so callers can release their spool files
        """
        cutoff = (now if now is not None else time.time()) - retention.total_seconds()

        with self._transaction() as session:
            records = session.scalars(select(UploadStateRecord).where(UploadStateRecord.updated_at < cutoff)).all()
            removed = [UploadState.fromDict(record.data) for record in records]

            if removed:
                self._deleteBatches(session, [state.batchId for state in removed])

            session.execute(
                delete(FileMetadataRecord).where(
                    FileMetadataRecord.updated_at < cutoff,
                    FileMetadataRecord.batch_id.not_in(select(UploadStateRecord.batch_id)),
                ),
                execution_options={'synchronize_session': False},
            )

        if removed:
            logger.info(f'[STORE] Removed {len(removed)} uploads older than {retention}')
        return removed

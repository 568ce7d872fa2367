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
import logging
import platform
import threading
import json

# Error reporting is disabled unless a SENTRY_DSN is configured explicitly
# (environment variable or .secret file).
import sentry_sdk

from pathlib import Path

from signalslot import Signal

from sentry_sdk.integrations.logging import SentryHandler, LoggingIntegration
from sentry_sdk.integrations import atexit as sentryAtexit

PUBLIC_VERSION = '1.2.0'

APP_NAME = 'filesh'

# Map string levels to logging constants for standard level names
LOG_LEVEL_MAPPING = {'DEBUG': logging.DEBUG, 'INFO': logging.INFO, 'WARNING': logging.WARNING, 'ERROR': logging.ERROR}


def configureGlobalLogLevel(logLevel):
    """
    Configure the global logging level for the application.
    This affects all loggers created via getLogger().

    Args:
        logLevel: Logging level (logging.DEBUG, logging.INFO, etc.)
    """
    rootLogger = logging.getLogger()
    rootLogger.setLevel(logLevel)

    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')

    if not rootLogger.handlers:
        consoleHandler = logging.StreamHandler()
        consoleHandler.setLevel(logLevel)
        consoleHandler.setFormatter(formatter)
        rootLogger.addHandler(consoleHandler)
    else:
        for handler in rootLogger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, SentryHandler):
                handler.setLevel(logLevel)
                handler.setFormatter(formatter)


if os.getenv('FILESH_LOGGING_LEVEL', '').upper() in LOG_LEVEL_MAPPING:
    configureGlobalLogLevel(LOG_LEVEL_MAPPING[os.getenv('FILESH_LOGGING_LEVEL').upper()])


def getLogger(name, version=PUBLIC_VERSION):
    """
    Get a logger with Sentry integration.

    Sentry is only initialized when SENTRY_DSN can be resolved through SecretGetter, so
    by default records stay local. The returned adapter stamps every record with the version.

    Args:
        name: Logger name
        version: Version string for logging context
    """
    try:
        sentryDsn = None
        if not sentry_sdk.get_client().is_active():
            sentryDsn = SecretGetter.getInstance().get('SENTRY_DSN')

            if sentryDsn:
                # Suppress "sentry is attempting to send pending events..." on exit
                sentryAtexit.default_callback = lambda pending, timeout: None

                sentry_sdk.init(
                    dsn=sentryDsn,
                    default_integrations=False,
                    integrations=[
                        LoggingIntegration(),
                        sentryAtexit.AtexitIntegration(),
                    ],
                )

        logger = logging.getLogger(name)

        if not any(isinstance(h, SentryHandler) for h in logger.handlers):
            formatter = logging.Formatter('%(asctime)s version[%(version)s] : %(message)s')

            sentryHandler = SentryHandler()
            sentryHandler.setFormatter(formatter)
            logger.addHandler(sentryHandler)

        adapter = logging.LoggerAdapter(logger, {'version': version or 'unknown'})

        if sentryDsn:
            adapter.debug(f'Sentry initialized with DSN: {sentryDsn}')

        return adapter

    except Exception as e:
        fallbackLogger = logging.getLogger(name)
        fallbackLogger.warning(f"Failed to initialize Sentry: {e}")
        return fallbackLogger


def classForName(qualifiedName):
    """
    Get a class or module by its fully qualified name.
    """
    if not isinstance(qualifiedName, str):
        qualifiedName = str(qualifiedName)

    if '.' not in qualifiedName:
        return __import__(qualifiedName)

    parts = qualifiedName.split('.')
    moduleName = ".".join(parts[:-1])
    module = __import__(moduleName, fromlist=[parts[-1]])

    try:
        return getattr(module, parts[-1])
    except AttributeError:
        raise ImportError(f"Unable to import '{qualifiedName}'.")


class Singleton:
    """
    Thread-safe singleton base class.
    Subclasses override initialize() instead of __init__; it runs once per class.
    """

    _instances = {}
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        if cls not in cls._instances:
            with cls._lock:
                if cls not in cls._instances:
                    cls._instances[cls] = super().__new__(cls)
        return cls._instances[cls]

    def __init__(self, *args, **kwargs):
        if not hasattr(self, '_initialized'):
            self.initialize(*args, **kwargs)
            self._initialized = True

    def initialize(self, *args, **kwargs):
        pass

    @classmethod
    def getInstance(cls):
        if cls not in cls._instances:
            cls()
        return cls._instances[cls]

    @classmethod
    def resetInstance(cls):
        """Drop the cached instance, only meant for test isolation."""
        with cls._lock:
            cls._instances.pop(cls, None)


class EventService(Singleton):
    """
    Dispatches transfer events through 'signalslot', one Signal per event key.
    Observers must accept **kwargs, and triggers pass keyword arguments only.
    """

    def initialize(self):
        self.signals = {}
        self._signalsLock = threading.RLock()

    def reset(self):
        """Forget every registered event. Test suites use it for isolation."""
        with self._signalsLock:
            self.signals.clear()

    def isRegistered(self, event):
        return event in self.signals

    def register(self, event):
        with self._signalsLock:
            if self.isRegistered(event):
                return False
            self.signals[event] = Signal()
            return True

    def trigger(self, event, **kwargs):
        signal = self.signals.get(event)
        if signal is not None:
            signal.emit(**kwargs)

    def subscribe(self, event, observer):
        with self._signalsLock:
            if not self.isRegistered(event):
                raise KeyError(f"You must register event '{event}' first.")

            signal = self.signals[event]
            if observer not in signal._slots:
                signal.connect(observer)

    def unsubscribe(self, event, observer):
        with self._signalsLock:
            signal = self.signals.get(event)
            if signal is not None and observer in signal._slots:
                signal.disconnect(observer)


class Event:
    """Named handle on an EventService event"""

    def __init__(self, key):
        self.key = key

    @property
    def eventService(self):
        return EventService.getInstance()

    def subscribe(self, observer):
        return self.eventService.subscribe(self.key, observer)

    def unsubscribe(self, observer):
        return self.eventService.unsubscribe(self.key, observer)

    def trigger(self, **kwargs):
        return self.eventService.trigger(self.key, **kwargs)


class StorageLocator(Singleton):
    """
    Resolves where the transfer store, spool files and .env/.secret live.

    FILESH_STORAGE_LOCATION, when it names an existing directory, wins over
    every other location for both reading and writing.
    """

    def initialize(self, appName=APP_NAME):
        self.appName = appName
        self._homeDir = os.path.expanduser(f'~{os.path.sep}.{appName}')
        self._platformDir = self._getPlatformDir()

    def _getPlatformDir(self):
        system = platform.system()

        if system == 'Windows':
            return os.path.join(os.getenv('APPDATA', os.path.expanduser('~')), self.appName)
        if system == 'Darwin':
            return os.path.expanduser(f'~/Library/Application Support/{self.appName}')
        return os.path.expanduser(f'~/.config/{self.appName}')

    def _getEnvStorageLocation(self):
        location = os.getenv('FILESH_STORAGE_LOCATION')
        if location and os.path.isdir(location):
            return location
        return None

    def ensureStorageDir(self):
        """
        Returns the first writable directory of override, home, platform dir and
        the working directory, creating it if needed.
        """
        location = self._getEnvStorageLocation()
        candidates = [location] if location else [self._homeDir, self._platformDir, os.path.abspath('.')]

        for storageDir in candidates:
            testFile = os.path.join(storageDir, '.write_test')
            try:
                os.makedirs(storageDir, exist_ok=True)
                with open(testFile, 'w') as f:
                    f.write('test')
                return storageDir
            except OSError as e:
                logging.getLogger(__name__).warning(f'[Storage] Unable to use {storageDir} => {e}.')
            finally:
                if os.path.exists(testFile):
                    os.remove(testFile)

        return os.path.abspath('.')

    def findStorage(self, filename):
        """
        Path of a config or data file: the override directory, else the first existing
        of working directory, home and platform dir. Falls back to the home path.
        """
        location = self._getEnvStorageLocation()
        if location:
            return os.path.join(location, filename)

        homePath = os.path.join(self._homeDir, filename)
        for path in (os.path.abspath(filename), homePath, os.path.join(self._platformDir, filename)):
            if os.path.exists(path):
                return path
        return homePath


class SecretGetter(Singleton):
    """
    Resolves secrets with caching.
    Environment variables win; otherwise the .secret JSON file found by StorageLocator is consulted.
    """

    DEFAULT_SECRET_FILE = '.secret'

    def initialize(self, secretFileName=DEFAULT_SECRET_FILE):
        self.secretFileName = secretFileName
        self._cache = {}
        self._secretData = None

    def getPath(self):
        return StorageLocator.getInstance().findStorage(self.secretFileName)

    def _loadSecretFile(self):
        if self._secretData is not None:
            return

        secretPath = self.getPath()

        if not os.path.exists(secretPath):
            self._secretData = {}
            return

        try:
            self._secretData = json.loads(Path(secretPath).read_text())
        except (json.JSONDecodeError, OSError) as e:
            logging.getLogger(__name__).warning(f"Failed to load secret file {secretPath}: {e}")
            self._secretData = {}

    def get(self, key: str):
        """
        Get secret value by key.

        Returns:
            str or None: Secret value if found, None otherwise
        """
        if self._cache.get(key):
            return self._cache[key]

        value = os.getenv(key)
        if value:
            self._cache[key] = value
            return value

        self._loadSecretFile()

        value = self._secretData.get(key)
        if value:
            self._cache[key] = value

        return value


# Event pattern: RESTful + /[action] (create, update, get, delete, others...)
class FileshEvent:
    chunkUpdate = Event('/transfer/chunk/update')
    batchUpdate = Event('/transfer/batch/update')
    downloadProgress = Event('/transfer/download/update')
    shareLinkCreate = Event('/share/link/create')

    @classmethod
    def all(cls):
        return [cls.chunkUpdate, cls.batchUpdate, cls.downloadProgress, cls.shareLinkCreate]


def registerEvents():
    """Register every FileshEvent with the EventService; safe to call repeatedly."""
    eventService = EventService.getInstance()
    for event in FileshEvent.all():
        eventService.register(event.key)


registerEvents()

#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# zipcast - Stream storage listings into ZIP archives of known size
# Copyright (C) 2024-2025 zipcast contributors
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
import sys
import threading

# Error reporting is strictly disabled by default. Nothing is sent anywhere
# unless ZIPCAST_SENTRY_DSN is explicitly set.
import sentry_sdk

from signalslot import Signal

from sentry_sdk.integrations.logging import SentryHandler, LoggingIntegration
from sentry_sdk.integrations import atexit as sentryAtexit

PUBLIC_VERSION = '1.2.0'

# Map string levels to logging constants for standard level names
LOG_LEVEL_MAPPING = {'DEBUG': logging.DEBUG, 'INFO': logging.INFO, 'WARNING': logging.WARNING, 'ERROR': logging.ERROR}


def configureGlobalLogLevel(logLevel):
    """
    Configure the global logging level for the application.
    This affects all loggers created via getLogger().

    Log records always go to stderr: stdout may be carrying archive bytes.

    Args:
        logLevel: Logging level (logging.DEBUG, logging.INFO, etc.)
    """
    rootLogger = logging.getLogger()
    rootLogger.setLevel(logLevel)

    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')

    # Add console handler if none exists
    if not rootLogger.handlers:
        consoleHandler = logging.StreamHandler(sys.stderr)
        consoleHandler.setLevel(logLevel)
        consoleHandler.setFormatter(formatter)
        rootLogger.addHandler(consoleHandler)
    else:
        # Update existing handlers
        for handler in rootLogger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, SentryHandler):
                handler.setLevel(logLevel)
                handler.setFormatter(formatter)


if os.getenv('ZIPCAST_LOGGING_LEVEL'):
    logLevel = LOG_LEVEL_MAPPING.get(os.getenv('ZIPCAST_LOGGING_LEVEL').upper(), logging.WARNING)
    configureGlobalLogLevel(logLevel)


def getLogger(name, version=PUBLIC_VERSION):
    """
    Get a logger with Sentry integration. Sentry is only initialized once, and only
    when ZIPCAST_SENTRY_DSN is present in the environment.

    Args:
        name: Logger name
        version: Version string for logging context
    """
    try:
        sentryDsn = os.getenv('ZIPCAST_SENTRY_DSN')
        sentryInitialized = False

        if sentryDsn and not sentry_sdk.get_client().is_active():
            # Suppress "sentry is attempting to send pending events..." on exit
            sentryAtexit.default_callback = lambda pending, timeout: None

            sentry_sdk.init(
                dsn=sentryDsn,
                release=f'zipcast@{version}',
                default_integrations=False,
                integrations=[
                    LoggingIntegration(),
                    sentryAtexit.AtexitIntegration(),
                ],
            )
            sentryInitialized = True

        logger = logging.getLogger(name)

        # Add Sentry handler if not already present
        if not any(isinstance(h, SentryHandler) for h in logger.handlers):
            extra = {'version': version or 'unknown'}
            formatter = logging.Formatter('%(asctime)s version[%(version)s] : %(message)s')

            syslog = SentryHandler()
            syslog.setFormatter(formatter)
            logger.addHandler(syslog)
            logger = logging.LoggerAdapter(logger, extra)

        if sentryInitialized:
            logger.debug('Sentry initialized')

        return logger

    except Exception as e:
        fallbackLogger = logging.getLogger(name)

        # If Sentry setup fails, log the error and continue with standard logging
        fallbackLogger.warning(f"Failed to initialize Sentry: {e}")

        return fallbackLogger


class Singleton:
    """
    Thread-safe singleton base class that can be inherited by other classes.
    Subclasses override initialize() for custom initialization.
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
        """
        Only calls initialize() once for the lifetime of the singleton.
        Passes all arguments to the initialize method.
        """
        if not hasattr(self, '_initialized'):
            self.initialize(*args, **kwargs)
            self._initialized = True

    def initialize(self, *args, **kwargs):
        """Template method for subclasses, called once on first construction."""
        pass

    @classmethod
    def getInstance(cls):
        """
        Static access method for the singleton instance.
        """
        if cls not in cls._instances:
            cls()
        return cls._instances[cls]

    @classmethod
    def resetInstance(cls):
        """Drop the instance so the next construction initializes again. Test suites only."""
        with cls._lock:
            cls._instances.pop(cls, None)


class EventService(Singleton):
    """
    Dispatches events to every subscribed component. Uses the 'signalslot'
    library to manage signal dispatching; observers must accept **kwargs.
    """

    def initialize(self):
        self.signals = {}

    def reset(self):
        """
        Clears all registered signals. Should only be used in test suites
        to ensure test isolation.
        """
        self.signals.clear()

    def trigger(self, event, **kwargs):
        """
        Trigger an event, calling all connected observers (slots).
        """
        signalObject = self.signals.get(event)
        if signalObject is None:
            return

        signalObject.emit(**kwargs)

    def isRegistered(self, event):
        return event in self.signals

    def register(self, event):
        """
        Register a new event by creating a Signal object for it.
        """
        if self.isRegistered(event):
            return False
        self.signals[event] = Signal()
        return True

    def subscribe(self, event, observer):
        """
        Subscribe an observer to an event.
        """
        if not self.isRegistered(event):
            raise KeyError(f"You must register event '{event}' first.")

        signalObject = self.signals[event]
        if signalObject.is_connected(observer):
            return

        signalObject.connect(observer)

    def unsubscribe(self, event, observer):
        if not self.isRegistered(event):
            return

        signalObject = self.signals[event]
        if signalObject.is_connected(observer):
            signalObject.disconnect(observer)


class Event:
    """ Simple Event wrapper"""

    def __init__(self, key):
        self.key = key

        self.eventService = EventService.getInstance()

    def subscribe(self, observer):
        return self.eventService.subscribe(self.key, observer)

    def unsubscribe(self, observer):
        return self.eventService.unsubscribe(self.key, observer)

    def trigger(self, **kwargs):
        return self.eventService.trigger(self.key, **kwargs)


# Event pattern: RESTful + /[action] (create, update, get, delete, others...)
class ZipcastEvent:
    archiveEntryCreate = Event('/archive/entry/create')
    archiveProgressUpdate = Event('/archive/progress/update')


def registerZipcastEvents():
    eventService = EventService.getInstance()
    for event in (ZipcastEvent.archiveEntryCreate, ZipcastEvent.archiveProgressUpdate):
        eventService.register(event.key)


registerZipcastEvents()

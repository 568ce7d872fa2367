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

import atexit
import platform
import shutil
import tempfile

# Initialize SettingsGetter with a throw-away storage directory
from bases.Settings import SettingsGetter

TEST_STORAGE_DIR = tempfile.mkdtemp(prefix='filesh-tests-')
atexit.register(shutil.rmtree, TEST_STORAGE_DIR, True)

settingsGetter = SettingsGetter(platform=platform.system(), storageDir=TEST_STORAGE_DIR)

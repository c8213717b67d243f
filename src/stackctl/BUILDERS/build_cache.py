# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
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
Local cache of build stage outputs.
Lets unchanged stages be skipped on the next build.
"""

import hashlib
import json
import logging
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..MODELS.build_stage import BuildStage

logger = logging.getLogger(__name__)


@dataclass
class CachedStage:
    """Information about a cached stage output."""
    key: str
    stage_name: str
    path: str
    created: str


class BuildCache:
    """
    Content-addressable store of stage handoff content.

    An entry is keyed by the stage's base environment, its commands and
    environment, the digest of its prepared input filesystem, and the
    paths it hands off.
    """

    def __init__(self, cache_dir: str):
        """
        Initialize the build cache.

        Args:
            cache_dir: Directory for cache storage.
        """
        self.cache_dir = Path(cache_dir)
        self.entries_dir = self.cache_dir / "stages"
        self.index_file = self.cache_dir / "index.json"

        self.entries_dir.mkdir(parents=True, exist_ok=True)
        self._index = self._load_index()

    def _load_index(self) -> Dict[str, Any]:
        """Load the cache index from disk."""
        if self.index_file.exists():
            try:
                with open(self.index_file, 'r') as f:
                    return json.load(f)
            except (json.JSONDecodeError, IOError):
                logger.warning("Build cache index is unreadable, starting empty")
        return {"stages": {}}

    def _save_index(self) -> None:
        """Save the cache index to disk."""
        with open(self.index_file, 'w') as f:
            json.dump(self._index, f, indent=2)

    @staticmethod
    def compute_key(stage: BuildStage, inputs_digest: str, handoff_paths: List[str]) -> str:
        """
        Computes the cache key for a stage.

        Args:
            stage: The stage about to run
            inputs_digest: Digest of the stage's filesystem after inputs were copied
            handoff_paths: Paths the stage must hand off

        Returns:
            Hex digest
        """
        material = {
            "base": stage.base_environment,
            "working_dir": stage.working_dir,
            "environment": sorted(stage.environment.items()),
            "build_args": sorted(stage.build_args.items()),
            "commands": stage.commands,
            "inputs": inputs_digest,
            "handoff": sorted(handoff_paths),
        }
        encoded = json.dumps(material, sort_keys=True).encode()
        return hashlib.sha256(encoded).hexdigest()

    def get(self, key: str) -> Optional[CachedStage]:
        """
        Get a cached stage output.

        Returns:
            CachedStage if found and still on disk, None otherwise
        """
        info = self._index["stages"].get(key)
        if info is None:
            return None

        path = Path(info["path"])
        if not path.exists():
            del self._index["stages"][key]
            self._save_index()
            return None

        return CachedStage(key=key, stage_name=info["stage_name"], path=str(path), created=info["created"])

    def put(self, key: str, stage_name: str, source_dir: str) -> CachedStage:
        """
        Stores a copy of a stage's handoff directory.

        Args:
            key: Cache key from compute_key
            stage_name: Stage the content belongs to
            source_dir: Directory holding the handoff content

        Returns:
            CachedStage object
        """
        target = self.entries_dir / key
        if target.exists():
            shutil.rmtree(target)
        shutil.copytree(source_dir, target, symlinks=True)

        created = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        self._index["stages"][key] = {
            "stage_name": stage_name,
            "path": str(target),
            "created": created,
        }
        self._save_index()
        return CachedStage(key=key, stage_name=stage_name, path=str(target), created=created)

    def restore(self, entry: CachedStage, dest_dir: str) -> None:
        """Copies a cached stage output into dest_dir."""
        shutil.copytree(entry.path, dest_dir, symlinks=True, dirs_exist_ok=True)

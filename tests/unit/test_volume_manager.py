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
Unit tests for the volume manager.
"""
import os

from stackctl.MANAGERS.volume_manager import VolumeManager
from stackctl.MODELS.service_definition import VolumeMount


class TestVolumeManager:
    """Tests for VolumeManager."""

    def test_create_volumes(self, tmp_path):
        """Named volumes are directories under the volumes root."""
        vm = VolumeManager(base_dir=str(tmp_path))
        paths = vm.create_volumes(["vol1", "vol2"])
        assert all(os.path.isdir(p) for p in paths)
        assert paths[0] == os.path.join(vm.volumes_root, "vol1")

    def test_create_volumes_keeps_content(self, tmp_path):
        """Test that creating the same volume twice keeps its data."""
        vm = VolumeManager(base_dir=str(tmp_path))
        path = vm.create_volumes(["data"])[0]
        with open(os.path.join(path, "file"), "w") as f:
            f.write("x")
        vm.create_volumes(["data"])
        assert os.path.exists(os.path.join(path, "file"))

    def test_remove_volumes(self, tmp_path):
        """Test volume removal."""
        vm = VolumeManager(base_dir=str(tmp_path))
        path = vm.create_volumes(["test-vol"])[0]
        vm.remove_volumes(["test-vol", "never-created"])
        assert not os.path.exists(path)

    def test_resolve_source_named_volume(self, tmp_path):
        """Test resolving named volume source."""
        vm = VolumeManager(base_dir=str(tmp_path))
        assert vm.resolve_source("my-data") == os.path.join(vm.volumes_root, "my-data")

    def test_resolve_source_relative_path(self, tmp_path):
        """Test resolving relative path source."""
        vm = VolumeManager(base_dir=str(tmp_path))
        assert vm.resolve_source("./data") == os.path.join(str(tmp_path), "data")

    def test_resolve_target(self, tmp_path):
        """Absolute targets land under the service root."""
        vm = VolumeManager(base_dir=str(tmp_path))
        root = str(tmp_path / "run" / "web")
        assert vm.resolve_target("/app/data", root) == os.path.join(root, "app", "data")

    def test_prepare_volumes_links_source(self, tmp_path):
        """The target becomes a link to the volume directory."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vm.create_volumes(["data"])
        root = str(tmp_path / "run" / "db")
        vm.prepare_volumes([VolumeMount(source="data", target="/var/lib/db")], root)

        target = os.path.join(root, "var", "lib", "db")
        with open(os.path.join(target, "written"), "w") as f:
            f.write("persisted")
        assert os.path.exists(os.path.join(vm.volumes_root, "data", "written"))

        # preparing again is a no-op
        vm.prepare_volumes([VolumeMount(source="data", target="/var/lib/db")], root)
        assert os.path.exists(os.path.join(target, "written"))

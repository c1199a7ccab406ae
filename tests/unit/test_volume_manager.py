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
import pytest
from homestack.MANAGERS.volume_manager import VolumeManager, NamedVolume
from homestack.MODELS.service_definition import VolumeMount, VolumeType


class TestVolumeManager:
    """Tests for VolumeManager."""

    def test_init(self, tmp_path):
        """Test initialization."""
        vm = VolumeManager(base_dir=str(tmp_path))
        assert os.path.exists(vm.volumes_root)
        assert vm.volumes_root == str(tmp_path / ".homestack" / "volumes")

    def test_create_volume(self, tmp_path):
        """Test volume creation."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vol = vm.create_volume("test-vol")
        assert isinstance(vol, NamedVolume)
        assert vol.name == "test-vol"
        assert os.path.exists(vol.path)

    def test_create_volume_idempotent(self, tmp_path):
        """Test that creating the same volume twice returns existing volume."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vol1 = vm.create_volume("test-vol")
        with open(os.path.join(vol1.path, "keep.txt"), "w") as f:
            f.write("data")
        vol2 = vm.create_volume("test-vol")
        assert vol1.path == vol2.path
        assert os.path.exists(os.path.join(vol2.path, "keep.txt"))

    def test_get_volume(self, tmp_path):
        """Test getting a volume."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vm.create_volume("test-vol")
        vol = vm.get_volume("test-vol")
        assert vol is not None
        assert vol.name == "test-vol"
        assert vm.get_volume("missing") is None

    def test_list_volumes(self, tmp_path):
        """Test listing volumes."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vm.create_volume("vol1")
        vm.create_volume("vol2")
        volumes = vm.list_volumes()
        assert [v.name for v in volumes] == ["vol1", "vol2"]

    def test_remove_volume(self, tmp_path):
        """Test volume removal."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vm.create_volume("test-vol")
        result = vm.remove_volume("test-vol", force=True)
        assert result is True
        assert vm.get_volume("test-vol") is None

    def test_remove_volume_in_use(self, tmp_path):
        vm = VolumeManager(base_dir=str(tmp_path))
        vm.prepare_volumes([VolumeMount(source="data", target="data")], service_name="db")
        assert vm.remove_volume("data") is False
        vm.release("db")
        assert vm.remove_volume("data") is True

    def test_resolve_source_named_volume(self, tmp_path):
        """Test resolving named volume source."""
        vm = VolumeManager(base_dir=str(tmp_path))
        path = vm.resolve_source("my-data")
        assert path == os.path.join(vm.volumes_root, "my-data")

    def test_resolve_source_relative_path(self, tmp_path):
        """Test resolving relative path source."""
        vm = VolumeManager(base_dir=str(tmp_path))
        path = vm.resolve_source("./data")
        assert path == str(tmp_path / "data")

    def test_resolve_target(self, tmp_path):
        """Test resolving target path."""
        vm = VolumeManager(base_dir=str(tmp_path))
        path = vm.resolve_target("/app/data")
        assert path == str(tmp_path / "app" / "data")

    def test_resolve_target_under_service_root(self, tmp_path):
        vm = VolumeManager(base_dir=str(tmp_path), rootfs_root=str(tmp_path / "rootfs"))
        path = vm.resolve_target("/var/lib/data", service_name="db")
        assert path == str(tmp_path / "rootfs" / "db" / "var" / "lib" / "data")

    def test_get_volume_size(self, tmp_path):
        """Test getting volume size."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vol = vm.create_volume("test-vol")

        test_file = os.path.join(vol.path, "test.txt")
        with open(test_file, 'w') as f:
            f.write("Hello, World!")

        assert vm.get_volume_size("test-vol") == 13

    def test_prune(self, tmp_path):
        """Test pruning empty and anonymous volumes."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vm.create_volume("empty-vol")
        anon = vm.create_volume("web-anon-cache")
        with open(os.path.join(anon.path, "x"), "w") as f:
            f.write("12345")
        kept = vm.create_volume("data")
        with open(os.path.join(kept.path, "x"), "w") as f:
            f.write("1")

        result = vm.prune()
        assert sorted(result["volumes_removed"]) == ["empty-vol", "web-anon-cache"]
        assert result["space_reclaimed"] == 5
        assert vm.get_volume("data") is not None


class TestPrepareVolumes:
    """Mapping mounts into a service's view."""

    def test_named_volume_is_symlinked(self, tmp_path):
        vm = VolumeManager(base_dir=str(tmp_path))
        mapped = vm.prepare_volumes([VolumeMount(source="data", target="var/data")], service_name="db")
        target = tmp_path / "var" / "data"
        assert os.path.islink(target)
        assert os.path.realpath(target) == os.path.realpath(mapped["var/data"])
        assert vm.get_volume("data").in_use_by == {"db"}

    def test_bind_mount_created_when_missing(self, tmp_path):
        vm = VolumeManager(base_dir=str(tmp_path))
        mounts = [VolumeMount(source="./site", target="/srv/www", type=VolumeType.BIND)]
        mapped = vm.prepare_volumes(mounts, service_name="web", service_working_dir=str(tmp_path / "work"))
        assert mapped["/srv/www"] == str(tmp_path / "site")
        assert os.path.isdir(tmp_path / "site")

    def test_read_only_mount_is_a_frozen_copy(self, tmp_path):
        source = tmp_path / "conf"
        source.mkdir()
        (source / "app.ini").write_text("x=1\n")

        vm = VolumeManager(base_dir=str(tmp_path))
        mounts = [VolumeMount(source="./conf", target="etc", type=VolumeType.BIND, read_only=True)]
        vm.prepare_volumes(mounts, service_name="web")

        copied = tmp_path / "etc" / "app.ini"
        assert not os.path.islink(tmp_path / "etc")
        assert copied.read_text() == "x=1\n"
        assert not os.access(copied, os.W_OK) or os.geteuid() == 0

        # A second start replaces the frozen copy
        (source / "app.ini").write_text("x=2\n")
        vm.prepare_volumes(mounts, service_name="web")
        assert copied.read_text() == "x=2\n"

    def test_tmpfs_is_emptied_on_start(self, tmp_path):
        vm = VolumeManager(base_dir=str(tmp_path))
        mounts = [VolumeMount(source="", target="tmp", type=VolumeType.TMPFS)]
        mapped = vm.prepare_volumes(mounts, service_name="web")
        with open(os.path.join(mapped["tmp"], "scratch"), "w") as f:
            f.write("x")
        mapped = vm.prepare_volumes(mounts, service_name="web")
        assert os.listdir(mapped["tmp"]) == []

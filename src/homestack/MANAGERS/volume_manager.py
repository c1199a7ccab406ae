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
Volume management for services, handling named volumes, bind mounts and
their mapping into a service's filesystem view.
"""
import logging
import os
import shutil
import stat
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from ..exceptions import ServiceStartError
from ..MODELS.service_definition import VolumeMount, VolumeType

logger = logging.getLogger(__name__)

_WRITE_BITS = stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH


@dataclass
class NamedVolume:
    """A volume stored under the volumes root."""

    name: str
    path: str
    created_at: str
    in_use_by: Set[str] = field(default_factory=set)

    @property
    def anonymous(self) -> bool:
        return "-anon" in self.name


class VolumeManager:
    """
    Manages volume mappings by creating symlinks or copying directories.
    """
    def __init__(self,
                 base_dir: str = ".",
                 volumes_root: str = ".homestack/volumes",
                 rootfs_root: Optional[str] = None):
        """
        Initializes the volume manager.

        :param base_dir: The base directory for resolving relative paths.
        :param volumes_root: The root directory for named volume storage.
        :param rootfs_root: Directory holding each service's view of absolute
            paths. Absolute targets land under the base directory when omitted.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.volumes_root = os.path.abspath(os.path.join(base_dir, volumes_root))
        self.rootfs_root = os.path.abspath(rootfs_root) if rootfs_root else None
        self._in_use: Dict[str, Set[str]] = {}
        os.makedirs(self.volumes_root, exist_ok=True)

    # Named volumes

    def create_volume(self, name: str) -> NamedVolume:
        """
        Creates a named volume, returning the existing one if present.
        """
        path = os.path.join(self.volumes_root, name)
        if not os.path.isdir(path):
            os.makedirs(path, exist_ok=True)
            logger.debug("Created volume %s at %s", name, path)
        return self._describe(name, path)

    def get_volume(self, name: str) -> Optional[NamedVolume]:
        path = os.path.join(self.volumes_root, name)
        if not os.path.isdir(path):
            return None
        return self._describe(name, path)

    def list_volumes(self) -> List[NamedVolume]:
        return [
            self._describe(entry, os.path.join(self.volumes_root, entry))
            for entry in sorted(os.listdir(self.volumes_root))
            if not entry.startswith('.') and os.path.isdir(os.path.join(self.volumes_root, entry))
        ]

    def remove_volume(self, name: str, force: bool = False) -> bool:
        """
        Removes a named volume and its data.

        :param force: Remove even while a service uses it.
        :return: True if the volume was removed.
        """
        volume = self.get_volume(name)
        if volume is None:
            return False
        if volume.in_use_by and not force:
            logger.warning("Volume %s is in use by %s", name, ", ".join(sorted(volume.in_use_by)))
            return False
        shutil.rmtree(volume.path)
        self._in_use.pop(name, None)
        return True

    def get_volume_size(self, name: str) -> int:
        """
        Total size in bytes of the files in a volume.
        """
        volume = self.get_volume(name)
        if volume is None:
            return 0
        total = 0
        for root, _, files in os.walk(volume.path):
            for filename in files:
                fp = os.path.join(root, filename)
                if not os.path.islink(fp):
                    total += os.path.getsize(fp)
        return total

    def prune(self) -> Dict[str, object]:
        """
        Removes unused volumes that are anonymous or empty.

        :return: ``volumes_removed`` (names) and ``space_reclaimed`` (bytes).
        """
        removed = []
        reclaimed = 0
        for volume in self.list_volumes():
            if volume.in_use_by:
                continue
            size = self.get_volume_size(volume.name)
            if volume.anonymous or not os.listdir(volume.path):
                if self.remove_volume(volume.name):
                    removed.append(volume.name)
                    reclaimed += size
        return {"volumes_removed": removed, "space_reclaimed": reclaimed}

    def _describe(self, name: str, path: str) -> NamedVolume:
        created = datetime.fromtimestamp(os.stat(path).st_mtime, tz=timezone.utc)
        return NamedVolume(
            name=name,
            path=path,
            created_at=created.isoformat().replace("+00:00", "Z"),
            in_use_by=set(self._in_use.get(name, set())),
        )

    # Mounting

    def prepare_volumes(self,
                        mounts: List[VolumeMount],
                        service_name: Optional[str] = None,
                        service_working_dir: Optional[str] = None) -> Dict[str, str]:
        """
        Prepares volumes for a service.

        :param mounts: List of volume mounts.
        :param service_name: The service the mounts belong to.
        :param service_working_dir: The directory where the service will run.
        :return: Mapping of target path to resolved source path.
        :raises ServiceStartError: If a mount cannot be created.
        """
        mapped = {}
        for mount in mounts:
            if mount.type == VolumeType.VOLUME:
                source_path = self.create_volume(mount.source).path
                if service_name:
                    self._in_use.setdefault(mount.source, set()).add(service_name)
            elif mount.type == VolumeType.TMPFS:
                source_path = os.path.join(self.volumes_root, ".tmpfs", service_name or "_", mount.target.strip('/'))
                shutil.rmtree(source_path, ignore_errors=True)
                os.makedirs(source_path, exist_ok=True)
            else:
                source_path = self.resolve_source(mount.source)
                if not os.path.exists(source_path):
                    os.makedirs(source_path, exist_ok=True)

            target_path = self.resolve_target(mount.target, service_working_dir, service_name)
            logger.info("Mapping volume: %s -> %s%s", source_path, target_path, " (ro)" if mount.read_only else "")

            try:
                self._link(source_path, target_path, mount.read_only)
            except OSError as e:
                raise ServiceStartError(f"Error preparing volume {mount.source}: {e}") from e
            mapped[mount.target] = source_path
        return mapped

    def release(self, service_name: str):
        """Drops the in-use marks a service holds."""
        for users in self._in_use.values():
            users.discard(service_name)

    def _link(self, source_path: str, target_path: str, read_only: bool):
        target_parent = os.path.dirname(target_path)
        if target_parent:
            os.makedirs(target_parent, exist_ok=True)

        if os.path.lexists(target_path):
            if (not read_only and os.path.islink(target_path)
                    and os.path.realpath(target_path) == os.path.realpath(source_path)):
                return
            if os.path.islink(target_path) or not os.path.isdir(target_path):
                os.unlink(target_path)
            else:
                self._make_writable(target_path)
                shutil.rmtree(target_path)

        if read_only:
            # A symlink would let the service write through, so hand it a frozen copy
            self._copy(source_path, target_path)
            self._strip_write_bits(target_path)
            return

        try:
            is_dir = os.path.isdir(source_path)
            os.symlink(source_path, target_path, target_is_directory=is_dir)
        except (OSError, NotImplementedError):
            logger.warning("Symlink failed for %s, falling back to copy.", target_path)
            self._copy(source_path, target_path)

    def _copy(self, source_path: str, target_path: str):
        if os.path.isdir(source_path):
            shutil.copytree(source_path, target_path, dirs_exist_ok=True)
        else:
            shutil.copy2(source_path, target_path)

    def _strip_write_bits(self, path: str):
        for root, dirs, files in os.walk(path, topdown=False):
            for entry in files + dirs:
                p = os.path.join(root, entry)
                if not os.path.islink(p):
                    os.chmod(p, os.stat(p).st_mode & ~_WRITE_BITS)
        os.chmod(path, os.stat(path).st_mode & ~_WRITE_BITS)

    def _make_writable(self, path: str):
        os.chmod(path, os.stat(path).st_mode | stat.S_IWUSR)
        for root, dirs, files in os.walk(path):
            for entry in dirs + files:
                p = os.path.join(root, entry)
                if not os.path.islink(p):
                    os.chmod(p, os.stat(p).st_mode | stat.S_IWUSR)

    def resolve_source(self, source: str) -> str:
        """
        Resolves the source path of a volume.

        :param source: The source path or volume name.
        :return: The absolute path to the source.
        """
        source = os.path.expanduser(source)
        if not os.path.isabs(source) and not source.startswith('.'):
            return os.path.join(self.volumes_root, source)
        return os.path.abspath(os.path.join(self.base_dir, source))

    def resolve_target(self,
                       target: str,
                       working_dir: Optional[str] = None,
                       service_name: Optional[str] = None) -> str:
        """
        Resolves the target path of a volume.

        :param target: The target path inside the service's view.
        :param working_dir: The working directory of the service.
        :param service_name: Selects the service's root for absolute targets.
        :return: The absolute path to the target.
        """
        if target.startswith('/') or target.startswith('\\'):
            root = self.base_dir
            if self.rootfs_root and service_name:
                root = os.path.join(self.rootfs_root, service_name)
            return os.path.abspath(os.path.join(root, target.lstrip('/\\')))

        # Relative to working_dir if provided, else base_dir
        root = working_dir if working_dir else self.base_dir
        return os.path.abspath(os.path.join(self.base_dir, root, target))

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
Backups of named volumes and project directories as compressed tarballs.
"""
import io
import json
import logging
import os
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from ..exceptions import BackupError
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)

MANIFEST = "homestack-backup.json"
SUFFIX = ".tar.gz"


@dataclass
class BackupInfo:
    name: str
    path: str
    size: int
    created_at: str


class BackupManager:
    """
    Archives volumes under ``volumes/<name>/`` and extra paths under
    ``paths/<basename>/`` of a timestamped ``.tar.gz``. The manifest records
    where each extra path came from so an in-place restore puts it back there.
    """

    def __init__(self, volume_manager: VolumeManager, backup_dir: str, project: str, base_dir: str = "."):
        """
        :param volume_manager: Source of named volumes.
        :param backup_dir: Where archives are written.
        :param project: Project name, used as the archive prefix.
        :param base_dir: Directory relative paths are resolved against.
        """
        self.volume_manager = volume_manager
        self.backup_dir = os.path.abspath(backup_dir)
        self.project = project
        self.base_dir = os.path.abspath(base_dir)

    def create_backup(self,
                      volumes: Optional[Iterable[str]] = None,
                      paths: Iterable[str] = (),
                      destination: Optional[str] = None) -> str:
        """
        Writes an archive of the given volumes (all volumes when omitted) and paths.

        :return: Path of the archive.
        :raises BackupError: If a volume or path does not exist.
        """
        if volumes is None:
            selected = self.volume_manager.list_volumes()
        else:
            selected = []
            for name in volumes:
                volume = self.volume_manager.get_volume(name)
                if volume is None:
                    raise BackupError(f"Volume {name} does not exist")
                selected.append(volume)

        resolved_paths = []
        arcnames = set()
        for p in paths:
            full = os.path.abspath(os.path.join(self.base_dir, os.path.expanduser(p)))
            if not os.path.exists(full):
                raise BackupError(f"Path {p} does not exist")
            base = os.path.basename(full.rstrip(os.sep)) or "root"
            arcname, counter = f"paths/{base}", 1
            while arcname in arcnames:
                arcname = f"paths/{base}-{counter}"
                counter += 1
            arcnames.add(arcname)
            resolved_paths.append((full, arcname))

        out_dir = os.path.abspath(destination) if destination else self.backup_dir
        os.makedirs(out_dir, exist_ok=True)
        archive = self._archive_path(out_dir)

        manifest = {
            "project": self.project,
            "created_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "volumes": [v.name for v in selected],
            "paths": [{"arcname": arcname, "source": self._source_of(full)} for full, arcname in resolved_paths],
        }

        try:
            with tarfile.open(archive, "w:gz") as tar:
                data = json.dumps(manifest, indent=2).encode()
                info = tarfile.TarInfo(MANIFEST)
                info.size = len(data)
                info.mtime = int(datetime.now(timezone.utc).timestamp())
                tar.addfile(info, io.BytesIO(data))
                for volume in selected:
                    tar.add(volume.path, arcname=f"volumes/{volume.name}")
                for full, arcname in resolved_paths:
                    tar.add(full, arcname=arcname)
        except OSError as e:
            if os.path.exists(archive):
                os.unlink(archive)
            raise BackupError(f"Failed to write {archive}: {e}") from e

        logger.info("Backup written to %s", archive)
        return archive

    def _source_of(self, full: str) -> str:
        # Paths inside the project are recorded relative to it
        relative = os.path.relpath(full, self.base_dir)
        if relative in (os.curdir, os.pardir) or relative.startswith(os.pardir + os.sep):
            return full
        return relative

    def _archive_path(self, out_dir: str) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        base = os.path.join(out_dir, f"{self.project}-{stamp}")
        candidate = base + SUFFIX
        counter = 1
        while os.path.exists(candidate):
            candidate = f"{base}-{counter}{SUFFIX}"
            counter += 1
        return candidate

    def list_backups(self) -> List[BackupInfo]:
        """
        Archives of this project, oldest first.
        """
        if not os.path.isdir(self.backup_dir):
            return []
        names = [
            entry for entry in os.listdir(self.backup_dir)
            if entry.startswith(f"{self.project}-") and entry.endswith(SUFFIX)
        ]
        backups = []
        for entry in sorted(names, key=self._sequence):
            path = os.path.join(self.backup_dir, entry)
            st = os.stat(path)
            created = datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)
            backups.append(BackupInfo(
                name=entry,
                path=path,
                size=st.st_size,
                created_at=created.isoformat().replace("+00:00", "Z"),
            ))
        return backups

    def _sequence(self, name: str):
        # <project>-<date>-<time>[-<counter>].tar.gz
        parts = name[len(self.project) + 1:-len(SUFFIX)].split("-")
        counter = int(parts[2]) if len(parts) > 2 and parts[2].isdigit() else 0
        return ("-".join(parts[:2]), counter, name)

    def prune_backups(self, keep: int) -> List[str]:
        """
        Deletes all but the newest ``keep`` archives.

        :return: Names of the deleted archives.
        """
        if keep < 0:
            raise BackupError("keep must be zero or positive")
        backups = self.list_backups()
        doomed = backups[:max(len(backups) - keep, 0)]
        for backup in doomed:
            os.unlink(backup.path)
            logger.info("Removed backup %s", backup.name)
        return [b.name for b in doomed]

    def restore_backup(self, archive: str, target_dir: Optional[str] = None) -> List[str]:
        """
        Restores an archive. Volumes go back to the volumes root and paths to
        the project directory, unless ``target_dir`` is given, in which case
        the archive layout is recreated under it.

        :return: The restored volume and path names.
        :raises BackupError: If the archive is missing or contains unsafe members.
        """
        if not os.path.isfile(archive):
            candidate = os.path.join(self.backup_dir, archive)
            if not os.path.isfile(candidate):
                raise BackupError(f"Backup {archive} not found")
            archive = candidate

        restored = []
        with tempfile.TemporaryDirectory(prefix="homestack-restore-") as staging:
            try:
                with tarfile.open(archive, "r:*") as tar:
                    members = tar.getmembers()
                    for member in members:
                        self._check_member(member, staging)
                    if hasattr(tarfile, "data_filter"):
                        tar.extractall(staging, members=members, filter="data")
                    else:
                        tar.extractall(staging, members=members)
            except tarfile.TarError as e:
                raise BackupError(f"Cannot read {archive}: {e}") from e

            plan = self._restore_plan(staging, target_dir)
            for src, dest, label in plan:
                os.makedirs(os.path.dirname(dest), exist_ok=True)
                if os.path.isdir(src):
                    shutil.copytree(src, dest, dirs_exist_ok=True, symlinks=True)
                else:
                    shutil.copy2(src, dest)
                restored.append(label)

        logger.info("Restored %s from %s", ", ".join(restored) or "nothing", archive)
        return restored

    def _restore_plan(self, staging: str, target_dir: Optional[str]) -> List[Tuple[str, str, str]]:
        """
        Works out where every archived volume and path goes before anything is copied.

        :return: (extracted path, destination, label) triples.
        :raises BackupError: If a recorded path lies outside the project.
        """
        plan = []
        target_root = os.path.abspath(target_dir) if target_dir else None

        volumes_src = os.path.join(staging, "volumes")
        if os.path.isdir(volumes_src):
            dest_root = os.path.join(target_root, "volumes") if target_root else self.volume_manager.volumes_root
            for entry in sorted(os.listdir(volumes_src)):
                plan.append((os.path.join(volumes_src, entry), os.path.join(dest_root, entry), f"volumes/{entry}"))

        for arcname, source in self._archived_paths(staging):
            src = os.path.normpath(os.path.join(staging, arcname))
            if not arcname.startswith("paths/") or not src.startswith(os.path.join(staging, "paths") + os.sep):
                raise BackupError(f"Refusing to restore {arcname}: outside the archived paths")
            if not os.path.lexists(src):
                raise BackupError(f"Archive lists {arcname} but does not contain it")
            if target_root:
                plan.append((src, os.path.join(target_root, arcname), arcname))
                continue
            dest = os.path.abspath(os.path.join(self.base_dir, source))
            if os.path.isabs(source) or not dest.startswith(self.base_dir + os.sep):
                raise BackupError(f"Path {source} lies outside the project, restore it with a target directory")
            plan.append((src, dest, f"paths/{source}"))
        return plan

    def _archived_paths(self, staging: str) -> List[Tuple[str, str]]:
        manifest_path = os.path.join(staging, MANIFEST)
        if os.path.isfile(manifest_path):
            with open(manifest_path, "r", encoding="utf-8") as f:
                try:
                    entries = json.load(f).get("paths", [])
                except (ValueError, AttributeError) as e:
                    raise BackupError(f"Unreadable backup manifest: {e}") from e
            result = []
            for entry in entries:
                if isinstance(entry, dict):
                    if not entry.get("arcname") or not entry.get("source"):
                        raise BackupError(f"Incomplete path entry in backup manifest: {entry}")
                    result.append((str(entry["arcname"]), str(entry["source"])))
                else:
                    # Older manifests only kept the base name
                    result.append((f"paths/{entry}", str(entry)))
            return result

        paths_src = os.path.join(staging, "paths")
        if not os.path.isdir(paths_src):
            return []
        return [(f"paths/{entry}", entry) for entry in sorted(os.listdir(paths_src))]

    def _check_member(self, member: tarfile.TarInfo, root: str):
        dest = os.path.realpath(os.path.join(root, member.name))
        if member.name.startswith(("/", "\\")) or not dest.startswith(os.path.realpath(root) + os.sep):
            raise BackupError(f"Refusing to extract {member.name}: outside the target directory")
        if member.issym() or member.islnk():
            link_base = os.path.dirname(dest) if member.issym() else os.path.realpath(root)
            link_dest = os.path.realpath(os.path.join(link_base, member.linkname))
            if os.path.isabs(member.linkname) or not link_dest.startswith(os.path.realpath(root) + os.sep):
                raise BackupError(f"Refusing to extract link {member.name} -> {member.linkname}")
        elif not (member.isfile() or member.isdir()):
            raise BackupError(f"Refusing to extract special file {member.name}")

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
Execution of system processes with log redirection and lifecycle management.
"""
import logging
import os
import subprocess
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psutil

from ..exceptions import ServiceStartError

logger = logging.getLogger(__name__)


class ProcessRunner:
    """
    Manages the execution of a single system process and its children.
    """
    def __init__(self, name: str, log_file: Optional[str] = None):
        """
        Initializes the process runner.

        Args:
            name (str): Identifier for the process.
            log_file (Optional[str]): Path to a file where stdout/stderr will be appended.
        """
        self.name = name
        self.log_file = log_file
        self.process: Optional[subprocess.Popen] = None
        self._attached: Optional[psutil.Process] = None
        self._pgid: Optional[int] = None
        self._log_handle = None

    @property
    def pid(self) -> Optional[int]:
        if self.process is not None:
            return self.process.pid
        if self._attached is not None:
            return self._attached.pid
        return None

    @property
    def create_time(self) -> Optional[float]:
        proc = self._psutil_process()
        if proc is None:
            return None
        try:
            return proc.create_time()
        except psutil.Error:
            return None

    def start(self,
              command: List[str],
              env: Dict[str, str],
              working_dir: Optional[str] = None):
        """
        Starts the process in its own session so the whole tree can be signalled.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): Environment variables for the process.
            working_dir (Optional[str]): Directory to start the process in.

        Raises:
            ServiceStartError: If the executable cannot be spawned.
        """
        if working_dir and not os.path.exists(working_dir):
            os.makedirs(working_dir, exist_ok=True)

        stdout = None
        if self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            self._close_log()
            self._log_handle = open(self.log_file, 'a')
            stamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            self._log_handle.write(f"--- {stamp} starting {self.name}\n")
            self._log_handle.flush()
            stdout = self._log_handle

        logger.info("[%s] Starting command: %s", self.name, " ".join(command))

        try:
            self.process = subprocess.Popen(
                command,
                env=env,
                cwd=working_dir,
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=subprocess.STDOUT if stdout else None,
                text=True,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
                start_new_session=True,
            )
        except OSError as e:
            self._close_log()
            raise ServiceStartError(f"[{self.name}] Failed to start {command[0]}: {e}") from e
        self._attached = None
        self._pgid = self.process.pid

    def attach(self, pid: int, create_time: Optional[float] = None) -> bool:
        """
        Adopts a process started by an earlier invocation.

        Args:
            pid (int): Recorded process id.
            create_time (Optional[float]): Recorded creation time, guards against pid reuse.

        Returns:
            bool: True if the process is still alive and was adopted.
        """
        try:
            proc = psutil.Process(pid)
            if create_time is not None and abs(proc.create_time() - create_time) > 1.0:
                return False
            if not proc.is_running() or proc.status() == psutil.STATUS_ZOMBIE:
                return False
            pgid = os.getpgid(pid)
        except (psutil.Error, OSError):
            return False
        self.process = None
        self._attached = proc
        # Only a session leader owns a group worth signalling
        self._pgid = pid if pgid == pid else None
        return True

    def stop(self, timeout: float = 10):
        """
        Stops the process tree by sending SIGTERM, followed by SIGKILL if it doesn't stop.

        Args:
            timeout (float): Seconds to wait for termination before killing.
        """
        proc = self._psutil_process()
        tree: Dict[int, psutil.Process] = {}
        if proc is not None and self.is_running():
            logger.info("[%s] Stopping process %s...", self.name, proc.pid)
            try:
                descendants = proc.children(recursive=True)
            except psutil.Error:
                descendants = []
            for p in descendants + [proc]:
                tree[p.pid] = p
        if self._pgid is not None:
            # The leader may be gone while the rest of its session lives on
            for p in self._group_members(self._pgid):
                tree.setdefault(p.pid, p)

        if tree:
            members = list(tree.values())
            for p in members:
                try:
                    p.terminate()
                except psutil.NoSuchProcess:
                    pass
            _, alive = psutil.wait_procs(members, timeout=timeout)
            if alive:
                logger.warning("[%s] Process did not terminate, killing...", self.name)
                for p in alive:
                    try:
                        p.kill()
                    except psutil.NoSuchProcess:
                        pass
                psutil.wait_procs(alive, timeout=timeout)

        if self.process is not None:
            try:
                self.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()
        self._close_log()

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """
        Waits for the process to exit.

        Returns:
            Optional[int]: Exit code, or None if unknown (adopted process) or still running.
        """
        if self.process is not None:
            try:
                return self.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                return None
        if self._attached is not None:
            try:
                self._attached.wait(timeout=timeout)
            except psutil.TimeoutExpired:
                return None
            except psutil.NoSuchProcess:
                pass
        return None

    def is_running(self) -> bool:
        """
        Checks if the process is currently running.

        Returns:
            bool: True if running, False otherwise.
        """
        if self.process is not None:
            return self.process.poll() is None
        if self._attached is not None:
            try:
                return self._attached.is_running() and self._attached.status() != psutil.STATUS_ZOMBIE
            except psutil.Error:
                return False
        return False

    def get_exit_code(self) -> Optional[int]:
        """
        Gets the exit code of the process.

        Returns:
            Optional[int]: Exit code if process finished, None otherwise.
        """
        if self.process is not None:
            return self.process.poll()
        return None

    def stats(self) -> Dict[str, Any]:
        """
        Resource usage of the process tree.

        Returns:
            Dict[str, Any]: ``cpu_percent``, ``memory_rss`` (bytes) and ``uptime`` (seconds).
        """
        proc = self._psutil_process()
        if proc is None or not self.is_running():
            return {}
        try:
            with proc.oneshot():
                rss = proc.memory_info().rss
                cpu = proc.cpu_percent(interval=None)
                uptime = time.time() - proc.create_time()
            for child in proc.children(recursive=True):
                try:
                    rss += child.memory_info().rss
                except psutil.Error:
                    continue
        except psutil.Error:
            return {}
        return {"cpu_percent": cpu, "memory_rss": rss, "uptime": uptime}

    def _group_members(self, pgid: int) -> List[psutil.Process]:
        members = []
        for p in psutil.process_iter():
            try:
                if os.getpgid(p.pid) == pgid and p.status() != psutil.STATUS_ZOMBIE:
                    members.append(p)
            except (psutil.Error, OSError):
                continue
        return members

    def _psutil_process(self) -> Optional[psutil.Process]:
        if self._attached is not None:
            return self._attached
        if self.process is not None:
            try:
                return psutil.Process(self.process.pid)
            except psutil.NoSuchProcess:
                return None
        return None

    def _close_log(self):
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None

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
from typing import Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)


class ProcessRunner:
    """
    Manages the execution of a single system process.

    The pid (with its creation time, to survive pid reuse) is written to
    ``pid_file`` so that another invocation can find and stop the process.
    """
    def __init__(self, name: str, log_file: Optional[str] = None, pid_file: Optional[str] = None):
        """
        Initializes the process runner.

        Args:
            name (str): Identifier for the process.
            log_file (Optional[str]): Path to a file where stdout/stderr will be redirected.
            pid_file (Optional[str]): Path where the pid is recorded while running.
        """
        self.name = name
        self.log_file = log_file
        self.pid_file = pid_file
        self.process: Optional[subprocess.Popen] = None
        self._log_handle = None
        self._attached: Optional[psutil.Process] = None

    def start(self,
              command: List[str],
              env: Dict[str, str],
              working_dir: Optional[str] = None) -> int:
        """
        Starts the process.

        Args:
            command (List[str]): Command and arguments to execute.
            env (Dict[str, str]): Environment variables for the process.
            working_dir (Optional[str]): Directory to start the process in.

        Returns:
            int: The pid of the started process.

        Raises:
            OSError: If the executable cannot be started.
        """
        if working_dir and not os.path.exists(working_dir):
            os.makedirs(working_dir, exist_ok=True)

        stdout = subprocess.DEVNULL
        if self.log_file:
            log_dir = os.path.dirname(self.log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            self._log_handle = open(self.log_file, 'a')
            stdout = self._log_handle

        logger.info("[%s] Starting command: %s", self.name, ' '.join(command))

        try:
            self.process = subprocess.Popen(
                command,
                env=env,
                cwd=working_dir,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
                start_new_session=True,
            )
        except OSError:
            self._close_log()
            raise

        if self.pid_file:
            self._write_pid_file(self.process.pid)
        return self.process.pid

    @classmethod
    def attach(cls, name: str, pid_file: str, log_file: Optional[str] = None) -> Optional["ProcessRunner"]:
        """
        Rebuilds a runner for a process started by an earlier invocation.

        Returns None when the pid file is missing or the process is gone.
        """
        try:
            with open(pid_file, 'r') as f:
                pid_text, _, created_text = f.read().strip().partition(' ')
            proc = psutil.Process(int(pid_text))
            if created_text and float(created_text) > 0 and abs(proc.create_time() - float(created_text)) > 1.0:
                return None
        except (OSError, ValueError, psutil.Error):
            return None

        runner = cls(name, log_file=log_file, pid_file=pid_file)
        runner._attached = proc
        return runner

    def stop(self, timeout: float = 10):
        """
        Stops the process and its children by sending SIGTERM, followed by
        SIGKILL if they don't stop.

        Args:
            timeout (float): Seconds to wait for termination before killing.
        """
        proc = self._psutil_process()
        if proc is not None:
            logger.info("[%s] Stopping process...", self.name)
            try:
                family = proc.children(recursive=True) + [proc]
            except psutil.NoSuchProcess:
                family = []
            for p in family:
                try:
                    p.terminate()
                except psutil.NoSuchProcess:
                    pass
            _, alive = psutil.wait_procs(family, timeout=timeout)
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
        if self.pid_file and os.path.exists(self.pid_file):
            os.remove(self.pid_file)

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
            except psutil.NoSuchProcess:
                return False
        return False

    def get_exit_code(self) -> Optional[int]:
        """
        Gets the exit code of the process.

        Returns:
            Optional[int]: Exit code if process finished, None otherwise.
        """
        if self.process:
            return self.process.poll()
        return None

    @property
    def pid(self) -> Optional[int]:
        if self.process is not None:
            return self.process.pid
        if self._attached is not None:
            return self._attached.pid
        return None

    def _psutil_process(self) -> Optional[psutil.Process]:
        if not self.is_running():
            return None
        if self._attached is not None:
            return self._attached
        try:
            return psutil.Process(self.process.pid)
        except psutil.NoSuchProcess:
            return None

    def _write_pid_file(self, pid: int) -> None:
        os.makedirs(os.path.dirname(self.pid_file) or '.', exist_ok=True)
        try:
            created = psutil.Process(pid).create_time()
        except psutil.Error:
            created = 0.0
        with open(self.pid_file, 'w') as f:
            f.write(f"{pid} {created}")

    def _close_log(self) -> None:
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None

"""
Log aggregation and tailing for natively run services.
"""
import os
import time
from typing import Callable, Dict, List, Optional, TextIO


class LogAggregator:
    """
    Aggregates and tails logs from multiple service log files.
    """
    def __init__(self, log_dir: str):
        """
        Initializes the log aggregator.

        :param log_dir: The directory where log files are stored.
        """
        self.log_dir = log_dir

    def path(self, name: str) -> str:
        return os.path.join(self.log_dir, f"{name}.log")

    def read(self, name: str, offset: int = 0) -> str:
        """
        Returns a service's log content from ``offset`` bytes on.
        """
        path = self.path(name)
        if not os.path.exists(path):
            return ""
        with open(path, 'r', errors='replace') as f:
            f.seek(offset)
            return f.read()

    def size(self, name: str) -> int:
        path = self.path(name)
        return os.path.getsize(path) if os.path.exists(path) else 0

    def dump(self, service_names: List[str], emit: Callable[[str], None]) -> None:
        """
        Emits every existing log line, prefixed with the service name.
        """
        for name in service_names:
            for line in self.read(name).splitlines():
                emit(f"{name:15} | {line}")

    def tail_logs(self, service_names: List[str], emit: Callable[[str], None],
                  should_stop: Optional[Callable[[], bool]] = None):
        """
        Follows logs for the specified services until interrupted.

        :param service_names: Names of the services to tail.
        :param emit: Receives each prefixed line.
        :param should_stop: Polled between reads; tailing ends when it returns True.
        """
        files: Dict[str, TextIO] = {}
        try:
            while not (should_stop and should_stop()):
                idle = True
                for name in service_names:
                    if name not in files:
                        path = self.path(name)
                        if os.path.exists(path):
                            f = open(path, 'r', errors='replace')
                            f.seek(0, os.SEEK_END)
                            files[name] = f

                    if name in files:
                        line = files[name].readline()
                        if line:
                            idle = False
                            emit(f"{name:15} | {line.rstrip()}")
                if idle:
                    time.sleep(0.1)
        finally:
            for f in files.values():
                f.close()

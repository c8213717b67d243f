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
Readiness probing for started services: port, log line and health
command probes polled until they pass or the service's timeout expires.
"""
import logging
import re
import threading
import time
from typing import Optional

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception,
    retry_if_result,
    stop_after_delay,
    stop_when_event_set,
    wait_fixed,
)

from ..BACKENDS.base import ServiceBackend
from ..errors import StackctlError, ServiceNotReady, StartFailed, UpCancelled
from ..MODELS.service_definition import ProbeKind, ReadinessProbe, ServiceSpec
from ..UTILS.port_finder import is_port_open

logger = logging.getLogger(__name__)


def _is_probe_error(error: BaseException) -> bool:
    # failures of the probe mechanism itself are retried, ours are not
    return not isinstance(error, StackctlError)


class ReadinessMonitor:
    """
    Waits for a started service to become ready.

    A service without a probe is ready as soon as it has started. If the
    service exits while being probed the wait fails at once instead of
    running into the timeout.
    """

    def __init__(self, backend: ServiceBackend, timeout: float = 60.0, interval: float = 1.0):
        """
        :param backend: Backend the services were started on.
        :param timeout: Default seconds to wait when a probe sets none.
        :param interval: Default seconds between probe attempts.
        """
        self.backend = backend
        self.timeout = timeout
        self.interval = interval

    def wait_until_ready(self, spec: ServiceSpec, handle: str,
                         cancel: Optional[threading.Event] = None) -> float:
        """
        Polls the service's readiness probe.

        :param spec: The service definition.
        :param handle: Backend handle of the started service.
        :param cancel: When set, the wait is abandoned.
        :return: Seconds from the start of the wait until the service was ready.
        :raises ServiceNotReady: If the probe did not pass within the timeout.
        :raises StartFailed: If the service exited before becoming ready.
        :raises UpCancelled: If ``cancel`` was set during the wait.
        """
        probe = spec.readiness
        started = time.monotonic()
        if probe is None:
            return 0.0

        timeout = probe.timeout or self.timeout
        interval = probe.interval or self.interval
        sleep = cancel.wait if cancel is not None else time.sleep
        logger.info("[%s] Waiting for %s probe (timeout %.0fs)", spec.name, probe.kind.value, timeout)

        if probe.start_period > 0:
            sleep(min(probe.start_period, timeout))

        stop = stop_after_delay(max(timeout - (time.monotonic() - started), 0))
        if cancel is not None:
            stop = stop | stop_when_event_set(cancel)

        retryer = Retrying(
            stop=stop,
            wait=wait_fixed(interval),
            retry=retry_if_result(lambda ready: not ready) | retry_if_exception(_is_probe_error),
            sleep=sleep,
        )
        try:
            for attempt in retryer:
                with attempt:
                    ready = self._attempt(spec, handle, probe, cancel, started + timeout)
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result(ready)
        except RetryError as e:
            if cancel is not None and cancel.is_set():
                raise UpCancelled([]) from None
            elapsed = time.monotonic() - started
            last = e.last_attempt
            if last.failed:
                logger.debug("[%s] last probe error: %s", spec.name, last.exception())
            raise ServiceNotReady(spec.name, elapsed) from None

        elapsed = time.monotonic() - started
        logger.info("[%s] Ready after %.1fs", spec.name, elapsed)
        return elapsed

    def _attempt(self, spec: ServiceSpec, handle: str, probe: ReadinessProbe,
                 cancel: Optional[threading.Event], deadline: float) -> bool:
        if cancel is not None and cancel.is_set():
            raise UpCancelled([])
        if not self.backend.is_running(handle):
            code = self.backend.exit_code(handle)
            reason = "exited before becoming ready"
            if code is not None:
                reason = f"exited with code {code} before becoming ready"
            raise StartFailed(spec.name, reason)
        return self.check(spec, handle, probe, max(deadline - time.monotonic(), 0.1))

    def check(self, spec: ServiceSpec, handle: str, probe: ReadinessProbe,
              check_timeout: float = 5.0) -> bool:
        """
        Runs a probe once.
        """
        if probe.kind == ProbeKind.PORT:
            host, port = self.backend.probe_address(handle, spec, probe.host, probe.port)
            return is_port_open(port, host, timeout=min(check_timeout, 1.0))
        if probe.kind == ProbeKind.LOG:
            return re.search(probe.pattern, self.backend.logs(handle), re.MULTILINE) is not None
        return self.backend.run_check(handle, spec, probe.test, check_timeout)

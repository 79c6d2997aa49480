"""
CI Runner module.

This module launches self-hosted runners for a provider driver and
supervises them: binary provisioning, registration, process spawn and log
classification. The ci-runner entrypoint ties these together and cleans up
the registration when the runner stops.
"""

from .manager import RunnerManager, gpu_present, in_container
from .supervisor import RunnerSupervisor
from .watcher import RunnerEvent, RunnerLogWatcher

__all__ = [
    "RunnerManager",
    "RunnerSupervisor",
    "RunnerEvent",
    "RunnerLogWatcher",
    "gpu_present",
    "in_container",
]

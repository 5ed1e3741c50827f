"""
System metrics of the host running the backup.
"""
from abc import ABC, abstractmethod
from pathlib import Path

import psutil


class MetricsProvider(ABC):
    """
    ABC for system metrics.
    """

    @abstractmethod
    def cpu_load_per_core(self) -> float:
        pass

    @abstractmethod
    def memory_usage(self) -> float:
        """
        Used memory in percent.
        """

    @abstractmethod
    def io_wait(self) -> float:
        """
        CPU time spent waiting for I/O in percent.
        """

    @abstractmethod
    def disk_free(self, path: Path) -> float:
        """
        Free space of the file system containing path in percent.
        """


class SystemMetrics(MetricsProvider):
    """
    psutil based metrics.
    """

    def __init__(self, io_sample_interval: float = 1.0):
        """
        :param io_sample_interval: seconds to sample the cpu times for the io wait
        """
        self.io_sample_interval = io_sample_interval

    def cpu_load_per_core(self) -> float:
        load_1min = psutil.getloadavg()[0]
        return load_1min / (psutil.cpu_count() or 1)

    def memory_usage(self) -> float:
        return psutil.virtual_memory().percent

    def io_wait(self) -> float:
        times = psutil.cpu_times_percent(interval=self.io_sample_interval)
        # iowait is only reported on linux
        return getattr(times, 'iowait', 0.0)

    def disk_free(self, path: Path) -> float:
        # the backup dir might not exist yet
        path = Path(path)
        while not path.exists() and path != path.parent:
            path = path.parent
        return 100.0 - psutil.disk_usage(str(path)).percent

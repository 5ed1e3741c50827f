from abc import ABC, abstractmethod
from pathlib import Path


class Transport(ABC):
    """
    ABC for remote storage implementations.
    Implements how to store a single file remotely. Retries are up to the caller.
    """

    @abstractmethod
    def put(self, local_path: Path, remote_path: str) -> None:
        """
        Upload the file.
        :param local_path: file to upload
        :param remote_path: target path relative to the remote base dir
        :raises TransportError: if the transfer failed
        """
        pass

    def close(self) -> None:
        """
        Release open connections.
        """
        pass

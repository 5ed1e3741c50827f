"""
Delivers artifacts to remote storage with a bounded number of attempts.
"""
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Sequence

import tenacity
from loguru import logger

from incremental_backup.remote.base import Transport
from incremental_backup.utils.datatypes import Artifact, UploadResult
from incremental_backup.utils.errors import TransportError, UploadFailure
from incremental_backup.utils.retry import bounded_retry


class Uploader:
    """
    Upload dispatcher. Failed artifacts stay on the local disk.
    """

    def __init__(self, transport: Transport, remote_dir: str = '', attempts: int = 3,
                 delay: float = 10.0, sleep: Callable[[float], None] = time.sleep):
        """
        :param transport: remote storage
        :param remote_dir: sub directory for this backup class
        :param attempts: max attempts per artifact
        :param delay: seconds between two attempts
        :param sleep: sleep function
        """
        self.transport = transport
        self.remote_dir = remote_dir.strip('/')
        self.attempts = attempts
        self.delay = delay
        self._sleep = sleep

    def _remote_path(self, name: str) -> str:
        return f'{self.remote_dir}/{name}' if self.remote_dir else name

    def _put(self, artifact: Artifact):
        # the checksum goes last, a remote checksum implies a complete payload
        for path in artifact.files:
            self.transport.put(path, self._remote_path(path.name))

    def upload(self, artifact: Artifact) -> UploadResult:
        """
        Upload the payload and its checksum file.
        :param artifact: artifact to upload
        :return: result, never raises for transport errors
        """
        attempt_number = 0

        def before_sleep(retry_state: tenacity.RetryCallState):
            logger.warning(f'Upload of {artifact.path.name} failed '
                           f'(attempt {retry_state.attempt_number}/{self.attempts}): '
                           f'{retry_state.outcome.exception()}. '
                           f'Retrying in {self.delay:g} seconds...')

        retrying = bounded_retry(
            delay=self.delay,
            attempts=self.attempts,
            retry=tenacity.retry_if_exception_type((TransportError, OSError)),
            sleep=self._sleep,
            before_sleep=before_sleep,
        )
        try:
            for attempt in retrying:
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    logger.info(f'Uploading {artifact.path.name} '
                                f'(attempt {attempt_number}/{self.attempts})')
                    self._put(artifact)
        except (TransportError, OSError) as e:
            failure = UploadFailure(f'Failed to upload {artifact.path.name} after '
                                    f'{attempt_number} attempts: {e}')
            logger.error(f'{failure}. The artifact stays in {artifact.path.parent}')
            return UploadResult(artifact, ok=False, attempts=attempt_number, error=str(failure))
        logger.success(f'Successfully uploaded {artifact.path.name}')
        return UploadResult(artifact, ok=True, attempts=attempt_number)

    def upload_all(self, artifacts: Sequence[Artifact], workers: int = 1) -> List[UploadResult]:
        """
        Upload a batch. One failed artifact does not stop the others.
        :param artifacts: artifacts of the run
        :param workers: parallel uploads
        :return: results in the order of the artifacts
        """
        if workers <= 1 or len(artifacts) <= 1:
            return [self.upload(x) for x in artifacts]
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='upload') as pool:
            return list(pool.map(self.upload, artifacts))

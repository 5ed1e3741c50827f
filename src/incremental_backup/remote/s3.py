from pathlib import Path

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from incremental_backup.remote.base import Transport
from incremental_backup.utils.errors import TransportError


class S3Transport(Transport):
    """
    Stores artifacts in an S3 bucket.
    """

    def __init__(self, s3_endpoint: str, s3_bucket: str, s3_access_key_id: str,
                 s3_secret_access_key: str, prefix: str = ''):
        """
        :param s3_endpoint:
        :param s3_bucket:
        :param s3_access_key_id:
        :param s3_secret_access_key:
        :param prefix: key prefix for all uploads
        """
        self._s3_endpoint = s3_endpoint
        self._s3_bucket = s3_bucket
        self._prefix = prefix.strip('/')

        self.s3 = boto3.resource(
            's3',
            endpoint_url=self._s3_endpoint,
            aws_access_key_id=s3_access_key_id,
            aws_secret_access_key=s3_secret_access_key,
            aws_session_token=None,
        )
        self.bucket = self.s3.Bucket(self._s3_bucket)

    def _key(self, remote_path: str) -> str:
        remote_path = remote_path.strip('/')
        return f'{self._prefix}/{remote_path}' if self._prefix else remote_path

    def put(self, local_path: Path, remote_path: str) -> None:
        key = self._key(remote_path)
        logger.debug(f'Uploading {local_path} to s3://{self._s3_bucket}/{key}')
        try:
            self.bucket.upload_file(str(local_path), key)
        except (BotoCoreError, ClientError, OSError) as e:
            raise TransportError(f'S3 upload of {local_path.name} failed: {e}') from e

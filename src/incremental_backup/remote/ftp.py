import ftplib
import posixpath
from pathlib import Path
from typing import Optional

from loguru import logger

from incremental_backup.remote.base import Transport
from incremental_backup.utils.errors import TransportError


class FTPTransport(Transport):
    """
    Stores artifacts on an FTP server.
    A new connection is opened for each upload so a broken one never survives a retry.
    """

    def __init__(self, host: str, user: str, password: str, base_dir: str = '/',
                 port: int = 21, tls: bool = False, timeout: float = 30.0):
        """
        :param host: ftp server
        :param user: login
        :param password: password
        :param base_dir: remote directory for all uploads
        :param port: default: 21
        :param tls: use explicit FTPS
        :param timeout: socket timeout in seconds
        """
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._base_dir = base_dir or '/'
        self._tls = tls
        self._timeout = timeout

    def _connect(self) -> ftplib.FTP:
        ftp = ftplib.FTP_TLS(timeout=self._timeout) if self._tls else ftplib.FTP(
            timeout=self._timeout)
        ftp.connect(self._host, self._port)
        ftp.login(self._user, self._password)
        if self._tls:
            ftp.prot_p()
        return ftp

    @staticmethod
    def _makedirs(ftp: ftplib.FTP, directory: str):
        """
        mkdir -p for ftp. Changes into the directory.
        """
        if directory.startswith('/'):
            ftp.cwd('/')
        for part in [x for x in directory.split('/') if x]:
            try:
                ftp.cwd(part)
            except ftplib.error_perm:
                ftp.mkd(part)
                ftp.cwd(part)

    def put(self, local_path: Path, remote_path: str) -> None:
        directory, name = posixpath.split(posixpath.join(self._base_dir, remote_path))
        ftp: Optional[ftplib.FTP] = None
        try:
            ftp = self._connect()
            self._makedirs(ftp, directory)
            with open(local_path, 'rb') as f:
                ftp.storbinary(f'STOR {name}', f)
            logger.debug(f'Stored {local_path} as {directory}/{name} on {self._host}')
        except (*ftplib.all_errors, OSError) as e:
            raise TransportError(f'FTP upload of {local_path.name} failed: {e}') from e
        finally:
            if ftp is not None:
                try:
                    ftp.quit()
                except ftplib.all_errors:
                    ftp.close()

"""
Ephemeral database credential files.

When both a database user and password are configured, the credentials are
written to a private temporary file, copied into the remote login's home
directory and referenced by the dump commands, so they never show up on a
command line. The bundle is a context manager: the local and the remote copy
are removed on every exit path.
"""

import os
import logging
import tempfile
from typing import Optional

from dbdump.config import BackupConfig, Engine
from .commands import remove_remote_file
from .transport import RemoteConnectionError


logger = logging.getLogger(__name__)


class CredentialError(Exception):
    """Raised when the credential file cannot be created or uploaded."""
    pass


def _mysql_option_file(user: str, password: str) -> str:
    def escape(value: str) -> str:
        return value.replace('\\', '\\\\').replace('"', '\\"')
    return f'[client]\nuser="{escape(user)}"\npassword="{escape(password)}"\n'


def _pgpass_file(user: str, password: str) -> str:
    def escape(value: str) -> str:
        return value.replace('\\', '\\\\').replace(':', '\\:')
    return f"*:*:*:{escape(user)}:{escape(password)}\n"


def render_credentials(engine: Engine, user: str, password: str) -> Optional[str]:
    """
    Render the engine-specific credential file content.

    Returns:
        File content, or None for engines without credential file support
    """
    if engine is Engine.MYSQL:
        return _mysql_option_file(user, password)
    if engine is Engine.POSTGRESQL:
        return _pgpass_file(user, password)
    return None


class CredentialBundle:
    """
    Scoped credential file shared by all remote commands of a run.

    Usage:
        with CredentialBundle(config, transport) as bundle:
            builder = DumpCommandBuilder(config, bundle.remote_name)
    """

    def __init__(self, config: BackupConfig, transport):
        self.config = config
        self.transport = transport
        self.local_path = None
        self.remote_name = None
        self._uploaded = False

    @property
    def active(self) -> bool:
        return self.remote_name is not None

    def acquire(self):
        """
        Write and upload the credential file, if this run needs one.

        Raises:
            RemoteConnectionError: If the upload hits a connection failure
            CredentialError: If the file cannot be written or uploaded
        """
        profile = self.config.profile
        if not profile.has_credentials:
            return

        content = render_credentials(self.config.engine, profile.db_user, profile.db_password)
        if content is None:
            logger.warning(
                f"{self.config.engine.value} dumps do not support authentication, "
                f"ignoring database credentials"
            )
            return

        fd, self.local_path = tempfile.mkstemp(prefix='dbdump_')
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(content)
            os.chmod(self.local_path, 0o600)
        except OSError as e:
            self.release()
            raise CredentialError(f"Failed to write credential file: {e}")

        name = os.path.basename(self.local_path)
        result = self.transport.upload(self.local_path, name)

        if result.connection_failed:
            self.release()
            raise RemoteConnectionError(self.transport.host, result.output)
        if not result.ok:
            self.release()
            raise CredentialError(f"Failed to upload credential file: {result.output}")

        self._uploaded = True
        self.remote_name = name
        logger.debug(f"Credential file uploaded as ~/{name}")

    def release(self):
        """Remove the remote and local credential files. Safe to call twice."""
        if self._uploaded:
            name = os.path.basename(self.local_path)
            if self.transport.is_connected:
                result = self.transport.run(remove_remote_file(name))
                if not result.ok:
                    logger.warning(f"Failed to remove remote credential file ~/{name}: {result.output}")
            else:
                logger.warning(f"Connection lost, remote credential file ~/{name} was not removed")
            self._uploaded = False

        if self.local_path and os.path.exists(self.local_path):
            try:
                os.remove(self.local_path)
            except OSError as e:
                logger.warning(f"Failed to remove local credential file {self.local_path}: {e}")

        self.local_path = None
        self.remote_name = None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.release()

"""
SSH transport for remote dump commands.

Runs one command at a time on the remote host over a single paramiko
connection. Exit code 255 is reserved for connection-level failures, the
same convention the OpenSSH client uses, so callers can tell a broken
connection apart from a failing remote command.
"""

import socket
import time
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from dbdump.config import ConnectionProfile


logger = logging.getLogger(__name__)

CONNECTION_FAILURE = 255

# paramiko reports this when the channel closed without an exit status
NO_EXIT_STATUS = -1

CHUNK_SIZE = 64 * 1024
POLL_INTERVAL = 0.05

# Failures of an established session; local file errors are not among them
CHANNEL_ERRORS = (paramiko.SSHException, EOFError, ConnectionError, socket.timeout)


class RemoteConnectionError(Exception):
    """Raised when the SSH connection to the remote host fails (exit code 255)."""

    def __init__(self, host: str, output: str):
        self.host = host
        self.output = output
        super().__init__(f"Connection to {host} failed: {output}")


class CommandError(Exception):
    """Raised when a remote command exits non-zero (other than 255)."""

    def __init__(self, command: str, exit_code: int, output: str):
        self.command = command
        self.exit_code = exit_code
        self.output = output
        super().__init__(f"Remote command exited with {exit_code}: {output}")


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a single remote invocation."""

    exit_code: int
    output: str = ''

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def connection_failed(self) -> bool:
        return self.exit_code == CONNECTION_FAILURE


class TransportClient:
    """
    Executes commands on the remote host over SSH.

    The connection is opened lazily on first use and reused for every
    subsequent command of the run. Nothing is ever retried.
    """

    def __init__(self, profile: ConnectionProfile, timeout: int = 30):
        """
        Initialize SSH transport.

        Args:
            profile: Connection profile with host, login, port and identity file
            timeout: TCP/authentication timeout in seconds
        """
        self.host = profile.ssh_host
        self.port = profile.ssh_port
        self.username = profile.ssh_login
        self.identity_file = profile.identity_file
        self.timeout = timeout

        self.ssh_client = None

    @property
    def is_connected(self) -> bool:
        if self.ssh_client is None:
            return False
        transport = self.ssh_client.get_transport()
        return transport is not None and transport.is_active()

    def _connect(self):
        """
        Establish the SSH connection if not already connected.

        Raises:
            RemoteConnectionError: If connection or authentication fails
        """
        if self.is_connected:
            return

        self.close()

        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())
            self.ssh_client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                key_filename=str(self.identity_file),
                timeout=self.timeout,
                allow_agent=False,
                look_for_keys=False,
            )
            logger.debug(f"Connected to {self.username}@{self.host}:{self.port}")

        except paramiko.AuthenticationException as e:
            self.close()
            raise RemoteConnectionError(self.host, f"SSH authentication failed: {e}")
        except (paramiko.SSHException, socket.error) as e:
            self.close()
            raise RemoteConnectionError(self.host, f"SSH connection failed: {e}")

    def run(self, command, output_file: Optional[Union[str, Path]] = None) -> CommandResult:
        """
        Run a remote command.

        Args:
            command: Command to run (a RemoteCommand or a ready shell string)
            output_file: If given, remote stdout is streamed into this file and
                only stderr is captured

        Returns:
            CommandResult with the remote exit code and captured output.
            Connection-level failures are reported as exit code 255.
        """
        command_line = str(command)
        logger.debug(f"Running on {self.host}: {command_line}")

        try:
            self._connect()
            channel = self.ssh_client.get_transport().open_session()
            channel.exec_command(command_line)
        except RemoteConnectionError as e:
            return CommandResult(CONNECTION_FAILURE, e.output)
        except CHANNEL_ERRORS as e:
            return CommandResult(CONNECTION_FAILURE, f"SSH session failed: {e}")

        try:
            if output_file is None:
                output = bytearray()
                exit_code = self._pump(channel, output, output)
            else:
                errors = bytearray()
                with open(output_file, 'wb') as sink:
                    exit_code = self._pump(channel, sink, errors)
                output = errors
        except CHANNEL_ERRORS as e:
            _discard(output_file)
            return CommandResult(CONNECTION_FAILURE, f"SSH channel failed: {e}")
        except OSError as e:
            return CommandResult(1, f"Failed to write {output_file}: {e}")
        finally:
            channel.close()

        if exit_code == NO_EXIT_STATUS:
            _discard(output_file)
            return CommandResult(CONNECTION_FAILURE, "SSH session closed before the remote command exited")

        return CommandResult(exit_code, bytes(output).decode('utf-8', errors='replace').strip())

    def _pump(self, channel, stdout_sink, stderr_sink) -> int:
        """
        Drain stdout and stderr until the remote command exits.

        Both streams are read in the same loop so a chatty stderr can
        never stall the stdout stream.
        """
        def drain() -> bool:
            moved = False
            while channel.recv_ready():
                data = channel.recv(CHUNK_SIZE)
                if not data:
                    break
                _write(stdout_sink, data)
                moved = True
            while channel.recv_stderr_ready():
                data = channel.recv_stderr(CHUNK_SIZE)
                if not data:
                    break
                _write(stderr_sink, data)
                moved = True
            return moved

        while not channel.exit_status_ready():
            if not drain():
                time.sleep(POLL_INTERVAL)

        # Data that arrived together with the exit status
        while drain():
            pass

        return channel.recv_exit_status()

    def upload(self, local_path: Union[str, Path], remote_name: str, mode: int = 0o600) -> CommandResult:
        """
        Copy a local file into the remote login's home directory via SFTP.

        Args:
            local_path: Local file to copy
            remote_name: File name relative to the remote home directory
            mode: Permission bits applied to the remote file

        Returns:
            CommandResult (exit code 0, 1 for a file error, 255 for a connection failure)
        """
        try:
            self._connect()
            sftp = self.ssh_client.open_sftp()
        except RemoteConnectionError as e:
            return CommandResult(CONNECTION_FAILURE, e.output)
        except CHANNEL_ERRORS as e:
            return CommandResult(CONNECTION_FAILURE, f"SFTP session failed: {e}")

        try:
            sftp.put(str(local_path), remote_name)
            sftp.chmod(remote_name, mode)
            return CommandResult(0)
        except CHANNEL_ERRORS as e:
            return CommandResult(CONNECTION_FAILURE, f"SFTP transfer failed: {e}")
        except OSError as e:
            return CommandResult(1, f"Failed to upload {local_path}: {e}")
        finally:
            sftp.close()

    def close(self):
        """Close the SSH connection."""
        if self.ssh_client:
            try:
                self.ssh_client.close()
            except CHANNEL_ERRORS as e:
                logger.debug(f"Error while closing SSH connection: {e}")
            self.ssh_client = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


def _write(sink, data: bytes):
    if isinstance(sink, bytearray):
        sink.extend(data)
    else:
        sink.write(data)


def _discard(output_file):
    """Remove a partially streamed output file."""
    if output_file is None:
        return
    try:
        Path(output_file).unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove partial output {output_file}: {e}")

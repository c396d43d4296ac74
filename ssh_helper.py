"""
SSH Helper for Vast.ai Instances
Runs commands on rented instances over paramiko, with optional line streaming.
"""

import os
import codecs
import time
import logging
import paramiko
from typing import Callable, List, Tuple, Optional
from pathlib import Path


class SSHConnection:
    """Manages an SSH connection to a Vast.ai instance"""

    def __init__(self, host: str, port: int, username: str = "root", logger: Optional[logging.Logger] = None):
        """
        Initialize SSH connection.

        Args:
            host: SSH host (Vast.ai proxy host or public IP)
            port: SSH port
            username: SSH username (default: root for vast.ai)
            logger: Optional logger
        """
        self.host = host
        self.port = port
        self.username = username
        self.logger = logger or logging.getLogger(__name__)
        self.client: Optional[paramiko.SSHClient] = None

    def _load_key(self, ssh_key_path: Optional[str]) -> Optional[paramiko.PKey]:
        key_paths = [ssh_key_path] if ssh_key_path else [
            os.path.expanduser("~/.ssh/id_ed25519"),
            os.path.expanduser("~/.ssh/id_rsa")
        ]

        for key_path in key_paths:
            if not Path(key_path).exists():
                continue
            try:
                if 'ed25519' in key_path:
                    return paramiko.Ed25519Key.from_private_key_file(key_path)
                return paramiko.RSAKey.from_private_key_file(key_path)
            except (paramiko.SSHException, OSError) as key_error:
                self.logger.debug(f"Could not load key from {key_path}: {key_error}")

        return None

    def connect(self, ssh_key_path: Optional[str] = None, timeout: int = 30) -> bool:
        """
        Establish SSH connection.

        Host keys are not verified; instances are short-lived and their keys unknown.

        Args:
            ssh_key_path: Path to SSH private key (default: tries ed25519 then RSA, then the agent)
            timeout: Connection timeout in seconds

        Returns:
            bool: True if connected successfully
        """
        try:
            self.client = paramiko.SSHClient()
            self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

            self.logger.info(f"Connecting to {self.username}@{self.host}:{self.port}")
            self.client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                pkey=self._load_key(ssh_key_path),
                timeout=timeout,
                look_for_keys=True,
                allow_agent=True
            )

            transport = self.client.get_transport()
            if transport:
                transport.set_keepalive(30)

            self.logger.info(f"SSH connected to {self.host}:{self.port}")
            return True

        except (paramiko.SSHException, OSError) as e:
            self.logger.error(f"SSH connection failed: {e}")
            self.close()
            return False

    def execute_command(self, command: str, timeout: int = 300) -> Tuple[bool, str, str, int]:
        """
        Execute command over SSH and wait for it.

        Args:
            command: Command to execute
            timeout: Command timeout in seconds

        Returns:
            Tuple of (success, stdout, stderr, exit_code)
        """
        if not self.client:
            return False, "", "SSH not connected", -1

        try:
            stdin, stdout, stderr = self.client.exec_command(command, timeout=timeout)
            exit_code = stdout.channel.recv_exit_status()

            stdout_text = stdout.read().decode('utf-8', errors='replace')
            stderr_text = stderr.read().decode('utf-8', errors='replace')

            return exit_code == 0, stdout_text, stderr_text, exit_code

        except (paramiko.SSHException, OSError) as e:
            self.logger.error(f"Command execution failed: {e}")
            return False, "", str(e), -1

    def stream_command(
        self,
        command: str,
        timeout: int = 900,
        on_line: Optional[Callable[[str], None]] = None
    ) -> Tuple[int, str]:
        """
        Execute a command with stderr merged into stdout, passing lines through as they arrive.

        Args:
            command: Command to execute
            timeout: Wall-clock limit in seconds
            on_line: Called with each complete output line (without newline)

        Returns:
            Tuple of (exit_code, full output text)

        Raises:
            TimeoutError: Command still running after `timeout` seconds
            ConnectionError: Not connected, or the session failed
        """
        if not self.client:
            raise ConnectionError("SSH not connected")

        try:
            channel = self.client.get_transport().open_session()
            channel.set_combine_stderr(True)
            channel.exec_command(command)
        except paramiko.SSHException as e:
            raise ConnectionError(f"Could not start remote command: {e}") from e

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        chunks: List[str] = []
        pending = ""
        deadline = time.monotonic() + timeout

        def feed(data: str):
            nonlocal pending
            chunks.append(data)
            pending += data
            *complete, pending = pending.split('\n')
            if on_line:
                for line in complete:
                    on_line(line)

        try:
            while True:
                if time.monotonic() > deadline:
                    raise TimeoutError(f"Command did not finish within {timeout}s")

                if channel.recv_ready():
                    feed(decoder.decode(channel.recv(4096)))
                    continue

                if channel.exit_status_ready():
                    while channel.recv_ready():
                        feed(decoder.decode(channel.recv(4096)))
                    feed(decoder.decode(b"", final=True))
                    break

                time.sleep(0.1)

            if pending and on_line:
                on_line(pending)

            return channel.recv_exit_status(), "".join(chunks)

        finally:
            channel.close()

    def close(self):
        """Close SSH connection."""
        if self.client:
            self.client.close()
            self.client = None
            self.logger.info("SSH connection closed")

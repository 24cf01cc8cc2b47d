"""Wake and shutdown primitives.

WakeOnLan broadcasts a magic packet (fire-and-forget, there is no
acknowledgment). SshShutdown opens an SSH session with paramiko and runs
the shutdown command. Network problems are raised as TransportError so
the dispatcher can retry them. Problems a retry cannot fix (bad
credentials, missing key file, command rejected) raise ShutdownFailed.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from pathlib import Path

import paramiko

from constants import SHUTDOWN_COMMAND, WOL_BROADCAST, WOL_PORT
from errors import NotControllable, ShutdownFailed, TransportError
from registry import Device

logger = logging.getLogger(__name__)


def magic_packet(mac: str) -> bytes:
    """6 bytes of 0xFF followed by the MAC address repeated 16 times."""
    raw = bytes.fromhex(mac.replace(":", "").replace("-", ""))
    if len(raw) != 6:
        raise ValueError(f"invalid MAC address '{mac}'")
    return b"\xff" * 6 + raw * 16


class WakeOnLan:
    """Sends Wake-on-LAN magic packets over UDP broadcast."""

    def __init__(self, broadcast: str = WOL_BROADCAST, port: int = WOL_PORT):
        self.broadcast = broadcast
        self.port = port

    async def wakeup(self, device: Device):
        if device.mac is None:
            raise NotControllable(device.id, "no MAC address configured")
        logger.debug("sending wake-on-lan request to %s [%s]", device, device.mac)
        packet = magic_packet(device.mac)
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
                sock.sendto(packet, (self.broadcast, self.port))
        except OSError as e:
            raise TransportError(f"failed to send wake-on-lan packet to {device}: {e}") from e


class SshShutdown:
    """Runs ``shutdown -h now`` on a server over SSH."""

    def __init__(self, timeout: float = 10.0, command: str = SHUTDOWN_COMMAND):
        self.timeout = timeout
        self.command = command

    async def shutdown(self, device: Device):
        # paramiko is blocking; keep it off the event loop
        await asyncio.to_thread(self._shutdown, device)

    def _shutdown(self, device: Device):
        creds = device.credentials
        if creds is None:
            raise NotControllable(device.id, "no credentials configured")
        if creds.key_file and not Path(creds.key_file).exists():
            raise ShutdownFailed(
                device.id,
                f"missing private key at {creds.key_file} to authenticate "
                f"SSH session for {creds.username}")

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            logger.debug("creating an SSH session to %s for %s using %s", device,
                         creds.username, "private key" if creds.key_file else "password")
            client.connect(
                device.ip,
                port=creds.port,
                username=creds.username,
                password=creds.password,
                key_filename=creds.key_file,
                passphrase=creds.passphrase,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
                allow_agent=False,
                look_for_keys=False,
            )

            logger.debug('executing "%s" on %s', self.command, device)
            _, stdout, stderr = client.exec_command(self.command, timeout=self.timeout)
            status = stdout.channel.recv_exit_status()
            # -1: the server went down before reporting a status, which is the goal
            if status not in (0, -1):
                detail = stderr.read().decode("utf-8", errors="replace").strip()
                raise ShutdownFailed(
                    device.id, f'"{self.command}" exited with status {status}: {detail}')
        except paramiko.AuthenticationException as e:
            raise ShutdownFailed(device.id, f"authentication failed: {e}") from e
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise TransportError(f"SSH session to {device} failed: {e}") from e
        finally:
            client.close()

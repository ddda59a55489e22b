# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""SSH local-forward management over a multiplexed control connection.

Forwards are added and cancelled with `ssh -O forward|cancel -L ...` against an
existing ControlMaster socket, so no new SSH session is opened per port. The
registry of active forwards lives in SSHForwarder; agents talk to it through
the HTTP protocol served by autofwd.forwarder.server, using the client helpers
at the bottom of this module.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests
from pydantic import BaseModel, ConfigDict, Field, field_validator

from autofwd.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_REMOTE_HOST = "localhost"
SSH_COMMAND_TIMEOUT = 30.0  # seconds
REQUEST_TIMEOUT = 10.0  # seconds


class ForwardingRequest(BaseModel):
    """Body of a POST to the forwarding server."""

    model_config = ConfigDict(populate_by_name=True)

    local_port: int = Field(alias="localPort", ge=1, le=65535)
    remote_host: str = Field(default=DEFAULT_REMOTE_HOST, alias="remoteHost", min_length=1)
    remote_port: int = Field(alias="remotePort", ge=1, le=65535)
    tag: Optional[str] = None

    @field_validator("remote_host", mode="before")
    @classmethod
    def _null_host_is_localhost(cls, value: Any) -> Any:
        return DEFAULT_REMOTE_HOST if value is None else value

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass(frozen=True)
class ForwardingKey:
    """Registry key; str() gives the `-L` argument `local:host:remote`."""

    local_port: int
    remote_host: str
    remote_port: int

    @classmethod
    def from_request(cls, request: ForwardingRequest) -> "ForwardingKey":
        return cls(request.local_port, request.remote_host, request.remote_port)

    def __str__(self) -> str:
        return f"{self.local_port}:{self.remote_host}:{self.remote_port}"


@dataclass
class ForwardingEntry:
    tag: Optional[str] = None


@dataclass(frozen=True)
class ForwardingMatch:
    """Which registered forwards a removal applies to.

    - remote_host and remote_port: forwards to exactly that host and port
    - remote_port only: forwards to that port on "localhost"
    - remote_host only: every forward to that host
    - tag only: every forward created with that tag
    """

    remote_host: Optional[str] = None
    remote_port: Optional[int] = None
    tag: Optional[str] = None

    @classmethod
    def from_query(
        cls,
        remote_port: Optional[int] = None,
        remote_host: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> Optional["ForwardingMatch"]:
        """Pick one branch by precedence; None when nothing usable was given."""
        if remote_port is not None and remote_host:
            return cls(remote_host=remote_host, remote_port=remote_port)
        if remote_port is not None:
            return cls(remote_host=DEFAULT_REMOTE_HOST, remote_port=remote_port)
        if remote_host:
            return cls(remote_host=remote_host)
        if tag:
            return cls(tag=tag)
        return None

    def matches(self, key: ForwardingKey, entry: ForwardingEntry) -> bool:
        if self.remote_host is None and self.remote_port is None and self.tag is None:
            return False
        if self.remote_host is not None and key.remote_host != self.remote_host:
            return False
        if self.remote_port is not None and key.remote_port != self.remote_port:
            return False
        if self.tag is not None and entry.tag != self.tag:
            return False
        return True


class SSHForwarder:
    """Registry of forwards active on one SSH control connection.

    Every mutation holds `_lock` across the registry check and the ssh call,
    so two requests never drive the control socket at the same time and
    requests for the same key are applied in arrival order.
    """

    def __init__(self, remote_host: str, control_path: str, ssh_command: str = "ssh"):
        self.remote_host = remote_host
        self.control_path = control_path
        self.ssh_command = ssh_command
        self._forwardings: Dict[ForwardingKey, ForwardingEntry] = {}
        self._lock = asyncio.Lock()

    def forwardings(self) -> List[Tuple[ForwardingKey, ForwardingEntry]]:
        """Snapshot of the registry."""
        return list(self._forwardings.items())

    def is_active(self, key: ForwardingKey) -> bool:
        return key in self._forwardings

    async def _run_ssh(self, args: List[str]) -> bool:
        """Run one ssh control command. True when ssh exited with status 0."""
        ssh_args = ["-o", f"ControlPath={self.control_path}", *args, self.remote_host]
        logger.debug(f"Running SSH: {self.ssh_command} {' '.join(ssh_args)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                self.ssh_command,
                *ssh_args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Failed to run {self.ssh_command}", exc=e)
            return False

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=SSH_COMMAND_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error(f"SSH command timed out: {' '.join(args)}")
            return False

        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            if message:
                logger.debug(f"ssh stderr: {message}")
            return False
        return True

    async def start_forwarding(self, request: ForwardingRequest) -> bool:
        """Add a local forward. Returns True if it is active afterwards."""
        key = ForwardingKey.from_request(request)
        logger.debug(f"Starting SSH forwarding: {key}")

        async with self._lock:
            if key in self._forwardings:
                return True

            if not await self._run_ssh(["-O", "forward", "-L", str(key)]):
                logger.error(f"Failed to start SSH forwarding: {key}")
                return False

            self._forwardings[key] = ForwardingEntry(tag=request.tag)
            logger.debug(f"Current forwardings: {self._keys()}")
        return True

    async def stop_forwarding(self, match: ForwardingMatch) -> List[ForwardingKey]:
        """Cancel every registered forward matching `match`.

        Each key is cancelled on its own; keys whose cancel fails stay
        registered so a later request can retry them. Returns the removed keys.
        """
        removed: List[ForwardingKey] = []
        async with self._lock:
            targets = [key for key, entry in self._forwardings.items() if match.matches(key, entry)]
            for key in targets:
                logger.info(f"Stopping SSH forwarding: {key}")
                if not await self._run_ssh(["-O", "cancel", "-L", str(key)]):
                    logger.error(f"Failed to stop SSH forwarding: {key}")
                    continue
                self._forwardings.pop(key, None)
                removed.append(key)
            logger.debug(f"Current forwardings: {self._keys()}")
        return removed

    async def stop_forwarding_by_tag(self, tag: str) -> List[ForwardingKey]:
        return await self.stop_forwarding(ForwardingMatch(tag=tag))

    async def stop_all(self) -> None:
        """Cancel every registered forward (shutdown path)."""
        logger.debug("Stopping all SSH forwarding")
        async with self._lock:
            for key in list(self._forwardings):
                if await self._run_ssh(["-O", "cancel", "-L", str(key)]):
                    self._forwardings.pop(key, None)
                else:
                    logger.error(f"Failed to stop SSH forwarding: {key}")

    def _keys(self) -> List[str]:
        return [str(k) for k in self._forwardings]


# ========== Client helpers (used by agents) ==========


async def _send(method: str, url: str, **kwargs: Any) -> Optional[requests.Response]:
    def _do() -> requests.Response:
        return requests.request(method, url, timeout=REQUEST_TIMEOUT, **kwargs)

    try:
        return await asyncio.get_running_loop().run_in_executor(None, _do)
    except requests.RequestException as e:
        logger.error(f"Forwarding server request failed ({method} {url})", exc=e)
        return None


async def add_ssh_forwarding(server_url: str, request: ForwardingRequest) -> bool:
    """Ask the forwarding server to add a forward. True if it accepted the request."""
    response = await _send("POST", server_url, json=request.to_wire())
    if response is None:
        return False
    if response.status_code != 200:
        logger.error(f"Forwarding server rejected request: {response.status_code} {response.text}")
        return False
    return True


async def delete_ssh_forwarding(
    server_url: str,
    remote_port: Optional[int] = None,
    remote_host: Optional[str] = None,
    tag: Optional[str] = None,
) -> bool:
    """Ask the forwarding server to remove forwards by port, host, or tag."""
    params: Dict[str, str] = {}
    if remote_port is not None:
        params["remotePort"] = str(remote_port)
    if remote_host:
        params["remoteHost"] = remote_host
    if tag:
        params["tag"] = tag
    logger.debug(f"Deleting forwarding: {params}")

    response = await _send("DELETE", server_url, params=params)
    if response is None:
        return False
    if response.status_code != 200:
        logger.error(f"Forwarding server rejected delete: {response.status_code} {response.text}")
        return False
    return True


async def list_ssh_forwardings(server_url: str) -> Optional[List[Dict[str, Any]]]:
    """Active forwards as reported by the server, or None if it is unreachable."""
    response = await _send("GET", server_url, headers={"Accept": "application/json"})
    if response is None or response.status_code != 200:
        return None
    try:
        return response.json()
    except ValueError as e:
        logger.error("Forwarding server returned invalid JSON", exc=e)
        return None

"""Pollers that turn system state changes into open/close events."""

from autofwd.detector.docker import ContainerInfo, DockerDetector
from autofwd.detector.port import PortDetector, TcpEntry

__all__ = ["ContainerInfo", "DockerDetector", "PortDetector", "TcpEntry"]

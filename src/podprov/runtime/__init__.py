"""Gateways to the container runtime and the OS account tools."""

from podprov.runtime.gateway import RuntimeGateway, ContainerStats, OWNER_LABEL, owner_labels
from podprov.runtime.podman import PodmanGateway
from podprov.runtime.accounts import AccountGateway, PasswordState, SystemAccounts

__all__ = [
    "RuntimeGateway",
    "ContainerStats",
    "OWNER_LABEL",
    "owner_labels",
    "PodmanGateway",
    "AccountGateway",
    "PasswordState",
    "SystemAccounts",
]

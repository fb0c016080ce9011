"""Caller authentication and the permission gate."""

from model_runner.auth.clients import ApiClient, ClientStore, YamlClientStore
from model_runner.auth.permissions import Decision, Operation, Permission, check, require


__all__ = [
    "ApiClient",
    "ClientStore",
    "Decision",
    "Operation",
    "Permission",
    "YamlClientStore",
    "check",
    "require",
]

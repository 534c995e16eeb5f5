"""Sandbox policy construction."""

from flotilla.sandbox.policy import (
    AgentSandboxContext,
    FilesystemPolicy,
    NetworkPolicy,
    SandboxPolicy,
    SandboxPolicyBuilder,
    default_policy,
)

__all__ = [
    "AgentSandboxContext",
    "FilesystemPolicy",
    "NetworkPolicy",
    "SandboxPolicy",
    "SandboxPolicyBuilder",
    "default_policy",
]

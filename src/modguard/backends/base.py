"""
Isolation runtime base module

Re-exports the runtime interface for runtime implementations.
"""

from modguard.backends import ContainerSpec, IsolationRuntime

__all__ = ["ContainerSpec", "IsolationRuntime"]

"""
This package provides the remote shell/file-transfer channel used to reach
the cluster.
"""

from typing import Any

from .base import RemoteShell, TransferCallback
from .ssh import ParamikoShell


def create_shell(backend_type: str = "ssh", **kwargs: Any) -> RemoteShell:
    """
    Create and connect a remote shell of the specified type.

    Args:
        backend_type: The type of shell to create ("ssh").
        **kwargs: Arguments passed to the shell constructor.

    Raises:
        ValueError: If the specified backend type is not supported.
    """
    if backend_type == "ssh":
        # Filter out None values to avoid passing None to the backend
        ssh_kwargs = {k: v for k, v in kwargs.items() if v is not None}
        return ParamikoShell(**ssh_kwargs)
    raise ValueError(f"Unsupported backend type: {backend_type}")


__all__ = ["RemoteShell", "TransferCallback", "ParamikoShell", "create_shell"]

"""A minimal user-space TCP responder over a Linux TUN device: header parsing and building in ``packet``, the responder and command in ``server``."""

__version__ = "0.1.0"
__all__ = ["packet", "server"]
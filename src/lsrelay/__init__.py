"""lsrelay - async RPC relay to an extension service and a language server."""

__version__ = "0.1.0"
__build__ = "1"

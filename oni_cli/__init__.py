"""
Oni CLI - command line front end for the Oni gateway.

Every subcommand maps onto one gateway RPC method and runs in-process.
"""

__version__ = "0.3.0"

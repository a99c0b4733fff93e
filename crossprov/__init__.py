"""
crossprov - cross-compilation toolchain provisioning.

Fetches pre-built toolchain artifacts, installs them, and produces the
environment a downstream cross-compiling build inherits.
"""

__version__ = "0.1.0"

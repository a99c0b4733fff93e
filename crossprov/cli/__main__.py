"""
Entry point for running crossprov CLI as a module.

Usage: python -m crossprov.cli [command] [options]
"""

from .parser import main

if __name__ == "__main__":
    main()

"""
Entry point for running crossprov as a module.

Usage: python -m crossprov [command] [options]
"""

from crossprov.cli.parser import main

if __name__ == "__main__":
    main()

"""crossprov CLI commands."""

"""Forum persistence layer: storage gateway, session store and admin CLI."""

__version__ = "0.1.0"

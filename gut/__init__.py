"""gut - template synchronisation for fleets of Git repositories."""

__version__ = "0.4.0"

"""tftpi - provisioning engine for Turing Pi compute modules."""

from .__version__ import __version__

__all__ = ["__version__"]

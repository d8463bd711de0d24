"""Deploy and tear down a virtual garden control plane in a hosting cluster."""

__version__ = "0.1.0"

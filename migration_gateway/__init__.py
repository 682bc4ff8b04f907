"""Migration gateway: routes API traffic between a legacy and a new provider."""

__version__ = "0.1.0"

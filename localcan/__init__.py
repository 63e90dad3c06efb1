"""
LocalCan: local domains, certificates and a reverse proxy for dev servers.
"""

__version__ = "0.1.0"

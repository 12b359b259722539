"""portscope - port discovery and attribution for Docker, TrueNAS and plain hosts."""

__version__ = "0.1.0"

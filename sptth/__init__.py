"""Local DNS resolver and HTTPS reverse proxy with a self-managed certificate authority."""

__version__ = "0.1.0"